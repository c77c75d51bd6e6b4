"""
Encryption Gateway for Keyward

The gateway is the only component that touches envelope cryptography.
The engine asks it to re-wrap a document for a recipient set, to decrypt a
document with a private key, to encrypt plaintext for a recipient set, and
to report the recipients a document is currently wrapped for.

SopsGateway drives the `sops` binary for age-encrypted documents.
See envelope.py for the self-contained x25519 gateway.
"""

import os
import subprocess
import threading
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional

import yaml

from .documents import DocumentNotFoundError, FileDocumentStore
from .logging import get_logger


logger = get_logger()


class FailureReason(Enum):
    """Why a per-document gateway call failed."""
    ACCESS_DENIED = "access_denied"
    MALFORMED = "malformed"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"


class GatewayError(Exception):
    """Base exception for gateway errors"""
    reason = FailureReason.UNAVAILABLE

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class AccessDeniedError(GatewayError):
    """Raised when the key is not a recipient of the document"""
    reason = FailureReason.ACCESS_DENIED


class MalformedError(GatewayError):
    """Raised when a document is not a readable envelope"""
    reason = FailureReason.MALFORMED


class UnavailableError(GatewayError):
    """Raised when the encryption backend cannot be reached"""
    reason = FailureReason.UNAVAILABLE


class GatewayTimeout(GatewayError):
    """Raised when a gateway call exceeds its time budget"""
    reason = FailureReason.TIMEOUT


class Cancellation:
    """
    Write guard shared by a re-wrap and whoever is waiting on it.

    The re-wrap enters commit() right before it writes. Once cancel() has
    won, commit() raises GatewayTimeout and the document is left as it was;
    once commit() has won, cancel() returns False and the write goes ahead.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self._committed = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Cancel unless the write has started; True if cancelled."""
        with self._lock:
            if self._committed:
                return False
            self._cancelled = True
            return True

    @contextmanager
    def commit(self, path: Optional[str] = None):
        with self._lock:
            if self._cancelled:
                raise GatewayTimeout("Re-wrap cancelled after its deadline", path)
            self._committed = True
        yield


@contextmanager
def committing(cancellation: Optional[Cancellation], path: Optional[str] = None):
    """commit() on `cancellation`, or nothing when there is none."""
    if cancellation is None:
        yield
    else:
        with cancellation.commit(path):
            yield


class EncryptionGateway:
    """Abstract encryption gateway."""

    def rewrap(
        self,
        path: str,
        recipient_keys: Iterable[str],
        cancellation: Optional[Cancellation] = None,
    ) -> bool:
        """
        Make `recipient_keys` exactly the recipients of the document.

        Implementations write inside `committing(cancellation, path)` so a
        re-wrap abandoned after a timeout never touches the document.

        Returns:
            True if the envelope changed, False if it already matched
        """
        raise NotImplementedError

    def decrypt(self, path: str, private_key: str) -> bytes:
        raise NotImplementedError

    def encrypt(self, plaintext: bytes, recipient_keys: Iterable[str]) -> bytes:
        """Encrypt plaintext for the recipients; returns ciphertext."""
        raise NotImplementedError

    def recipients(self, path: str) -> List[str]:
        """Sorted public keys the document is currently wrapped for."""
        raise NotImplementedError


class SopsGateway(EncryptionGateway):
    """
    Gateway backed by the `sops` CLI and age recipients.

    The operator identity is handed to sops through SOPS_AGE_KEY for
    re-wraps, which must decrypt the data key before re-wrapping it.
    """

    def __init__(
        self,
        store: FileDocumentStore,
        identity: Optional[str] = None,
        binary: str = "sops",
        timeout: float = 30.0,
    ):
        self.store = store
        self.identity = identity
        self.binary = binary
        self.timeout = timeout

    def _env(self, private_key: Optional[str]) -> dict:
        env = dict(os.environ)
        env.pop("SOPS_AGE_KEY_FILE", None)
        env.pop("SOPS_AGE_KEY", None)
        if private_key:
            env["SOPS_AGE_KEY"] = private_key
        return env

    def _run(
        self,
        args: List[str],
        path: Optional[str] = None,
        private_key: Optional[str] = None,
        stdin: Optional[bytes] = None,
    ) -> bytes:
        try:
            result = subprocess.run(
                [self.binary] + args,
                input=stdin,
                capture_output=True,
                timeout=self.timeout,
                env=self._env(private_key),
                cwd=str(self.store.root),
            )
        except FileNotFoundError:
            raise UnavailableError(f"'{self.binary}' not found. Install sops.", path)
        except subprocess.TimeoutExpired:
            raise GatewayTimeout(f"sops timed out after {self.timeout}s", path)

        if result.returncode != 0:
            stderr = result.stderr.decode(errors="replace").strip()
            lowered = stderr.lower()
            if "metadata not found" in lowered or "unmarshal" in lowered:
                raise MalformedError(f"Not a sops document: {stderr}", path)
            if "no master keys" in lowered or "key service" in lowered:
                raise UnavailableError(stderr or "sops failed", path)
            raise AccessDeniedError(stderr or "sops could not decrypt the data key", path)
        return result.stdout

    def _full_path(self, path: str) -> str:
        return str(Path(self.store.root) / path)

    def recipients(self, path: str) -> List[str]:
        try:
            raw = self.store.read_bytes(path)
        except DocumentNotFoundError as e:
            raise MalformedError(str(e), path)
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise MalformedError(f"Unreadable document: {e}", path)
        if not isinstance(data, dict) or not isinstance(data.get("sops"), dict):
            raise MalformedError("Document has no sops metadata", path)
        entries = data["sops"].get("age") or []
        return sorted(str(e.get("recipient", "")).strip() for e in entries if isinstance(e, dict))

    def rewrap(
        self,
        path: str,
        recipient_keys: Iterable[str],
        cancellation: Optional[Cancellation] = None,
    ) -> bool:
        expected = set(recipient_keys)
        current = set(self.recipients(path))
        added = sorted(expected - current)
        removed = sorted(current - expected)
        if not added and not removed:
            return False

        args = ["rotate", "-i"]
        if added:
            args += ["--add-age", ",".join(added)]
        if removed:
            args += ["--rm-age", ",".join(removed)]
        args.append(self._full_path(path))

        # sops rewrites in place; its own timeout bounds a committed call
        with committing(cancellation, path):
            self._run(args, path=path, private_key=self.identity)
        logger.debug(
            f"Re-wrapped {path}",
            document=path,
            added=len(added),
            removed=len(removed),
        )
        return True

    def decrypt(self, path: str, private_key: str) -> bytes:
        if not self.store.exists(path):
            raise MalformedError(f"Document not found: {path}", path)
        return self._run(["-d", self._full_path(path)], path=path, private_key=private_key)

    def encrypt(self, plaintext: bytes, recipient_keys: Iterable[str]) -> bytes:
        keys = sorted(set(recipient_keys))
        if not keys:
            raise MalformedError("Cannot encrypt for an empty recipient set")
        return self._run(
            [
                "-e",
                "--input-type", "yaml",
                "--output-type", "yaml",
                "--age", ",".join(keys),
                "/dev/stdin",
            ],
            stdin=plaintext,
        )
