"""
Change tracking for Keyward

Records registry and document changes in version control. Tracking is a
side effect: a failure here is reported by the caller as a warning and
never undoes the change that was already made.
"""

import subprocess
from pathlib import Path
from typing import Iterable, List


class ChangeTrackingError(Exception):
    """Raised when a change could not be recorded"""
    pass


class ChangeTracker:
    """Abstract change-tracking sink."""

    def record_change(self, paths: Iterable[str], message: str) -> bool:
        """
        Record a change to `paths`.

        Returns:
            True if something was recorded, False if there was nothing to record
        """
        raise NotImplementedError


class NullChangeTracker(ChangeTracker):
    """Tracks nothing (--skip-git, or tracking disabled in config)."""

    def record_change(self, paths: Iterable[str], message: str) -> bool:
        return False


class RecordingChangeTracker(ChangeTracker):
    """Keeps changes in memory."""

    def __init__(self):
        self.changes: List[tuple] = []

    def record_change(self, paths: Iterable[str], message: str) -> bool:
        self.changes.append((sorted(paths), message))
        return True


class GitChangeTracker(ChangeTracker):
    """Stages the given paths and commits them with git."""

    def __init__(self, repo_root: Path, binary: str = "git", timeout: float = 30.0):
        self.repo_root = Path(repo_root)
        self.binary = binary
        self.timeout = timeout

    def _git(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.binary] + list(args),
                cwd=self.repo_root,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise ChangeTrackingError(f"'{self.binary}' not found")
        except subprocess.CalledProcessError as e:
            raise ChangeTrackingError(
                f"git {args[0]} failed: {(e.stderr or e.stdout or '').strip()}"
            )
        except subprocess.TimeoutExpired:
            raise ChangeTrackingError(f"git {args[0]} timed out")

    def is_repository(self) -> bool:
        try:
            self._git("rev-parse", "--is-inside-work-tree")
            return True
        except ChangeTrackingError:
            return False

    def record_change(self, paths: Iterable[str], message: str) -> bool:
        existing = []
        for p in sorted(set(paths)):
            full = self.repo_root / p
            # Removed files still need staging
            if full.exists() or self._tracked(p):
                existing.append(p)
        if not existing:
            return False

        self._git("add", "-A", "--", *existing)
        staged = self._git("diff", "--cached", "--name-only", "--", *existing)
        if not staged.stdout.strip():
            return False
        self._git("commit", "-m", message, "--", *existing)
        return True

    def _tracked(self, path: str) -> bool:
        try:
            result = self._git("ls-files", "--", path)
        except ChangeTrackingError:
            return False
        return bool(result.stdout.strip())
