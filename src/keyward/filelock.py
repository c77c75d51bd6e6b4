"""
Advisory locking for the Keyward registry.

Registry mutation is load -> mutate -> persist under one exclusive lock so
that two concurrent onboard/offboard runs cannot lose an update. Readers
(list, verify) take a shared lock. The audit log takes its own lock of
the same kind for appends.

Unix uses fcntl.flock(), Windows uses msvcrt.locking(); elsewhere an
O_EXCL sidecar file is used and stale sidecars left by dead processes
are reclaimed.
"""

import os
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

if sys.platform == "win32":
    try:
        import msvcrt
        LOCK_BACKEND = "msvcrt"
    except ImportError:
        LOCK_BACKEND = "sidecar"
else:
    try:
        import fcntl
        LOCK_BACKEND = "fcntl"
    except ImportError:
        LOCK_BACKEND = "sidecar"


class LockError(Exception):
    """Base exception for locking errors."""
    pass


class RegistryLockTimeout(LockError):
    """Raised when the lock is not acquired within the timeout."""
    pass


class FileLock:
    """
    Advisory lock on a dedicated lock file.

    Usage:
        with FileLock(project / ".keyward" / "registry.lock", owner="onboard"):
            registry = store.load()
            ...
            store.save(registry)

    The lock file is never the protected artifact itself: the registry is
    replaced atomically with os.replace(), which would orphan a lock held
    on the old inode.
    """

    SIDECAR_SUFFIX = ".pid"

    def __init__(
        self,
        path: Path,
        exclusive: bool = True,
        timeout: float = 10.0,
        poll_interval: float = 0.05,
        owner: str = "",
    ):
        self.path = Path(path)
        self.exclusive = exclusive
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.owner = owner
        self._handle = None
        self._sidecar: Optional[Path] = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

    @property
    def locked(self) -> bool:
        return self._handle is not None or self._sidecar is not None

    def acquire(self) -> None:
        """Block until the lock is held or the timeout expires."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout

        while True:
            if self._try_acquire():
                return
            if time.monotonic() >= deadline:
                raise RegistryLockTimeout(
                    f"Could not acquire {'exclusive' if self.exclusive else 'shared'} "
                    f"lock on {self.path} within {self.timeout}s"
                )
            time.sleep(self.poll_interval)

    def release(self) -> None:
        """Release the lock if held."""
        if LOCK_BACKEND == "sidecar":
            if self._sidecar is not None:
                try:
                    os.unlink(self._sidecar)
                except FileNotFoundError:
                    pass
                self._sidecar = None
            return

        if self._handle is None:
            return
        try:
            if LOCK_BACKEND == "fcntl":
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
            else:
                self._handle.seek(0)
                msvcrt.locking(self._handle.fileno(), msvcrt.LK_UNLCK, 1)
        finally:
            self._handle.close()
            self._handle = None

    def _try_acquire(self) -> bool:
        if LOCK_BACKEND == "sidecar":
            return self._try_sidecar()

        handle = open(self.path, "a+")
        try:
            if LOCK_BACKEND == "fcntl":
                mode = fcntl.LOCK_EX if self.exclusive else fcntl.LOCK_SH
                fcntl.flock(handle.fileno(), mode | fcntl.LOCK_NB)
            else:
                # msvcrt has no shared mode; readers serialize too
                handle.seek(0)
                msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            handle.close()
            return False

        if self.exclusive:
            handle.seek(0)
            handle.truncate()
            handle.write(f"{os.getpid()} {self.owner}\n")
            handle.flush()
        self._handle = handle
        return True

    def _try_sidecar(self) -> bool:
        sidecar = Path(str(self.path) + self.SIDECAR_SUFFIX)
        try:
            fd = os.open(sidecar, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            if self._sidecar_is_stale(sidecar):
                try:
                    os.unlink(sidecar)
                except FileNotFoundError:
                    pass
            return False
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self._sidecar = sidecar
        return True

    @staticmethod
    def _sidecar_is_stale(sidecar: Path) -> bool:
        try:
            pid = int(sidecar.read_text().strip())
            os.kill(pid, 0)
            return False
        except (ValueError, ProcessLookupError):
            return True
        except OSError:
            return False


@contextmanager
def registry_lock(path: Path, timeout: float = 10.0, owner: str = ""):
    """Exclusive lock for the load -> mutate -> persist cycle."""
    lock = FileLock(path, exclusive=True, timeout=timeout, owner=owner)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()


@contextmanager
def shared_lock(path: Path, timeout: float = 10.0):
    """Shared lock for readers of the registry."""
    lock = FileLock(path, exclusive=False, timeout=timeout)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()
