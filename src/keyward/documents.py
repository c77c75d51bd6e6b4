"""
Document stores for Keyward

A document store enumerates encrypted documents and reads/writes their
ciphertext. Paths are always relative to the store root with POSIX
separators, the same form access rule patterns are matched against.
"""

import shutil
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .registry import normalize_path
from .storage import atomic_write


class DocumentError(Exception):
    """Base exception for document store errors"""
    pass


class DocumentNotFoundError(DocumentError):
    """Raised when a document does not exist"""
    pass


def _timestamp() -> str:
    return datetime.now().strftime("%Y%m%dT%H%M%S%f")


class DocumentStore:
    """Abstract document store."""

    def list_paths(self) -> List[str]:
        """Sorted relative paths of every encrypted document."""
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def read_bytes(self, path: str) -> bytes:
        raise NotImplementedError

    def write_bytes(self, path: str, data: bytes) -> None:
        """Replace a document; readers see the old or the new content."""
        raise NotImplementedError

    def backup(self, path: str) -> str:
        """Copy the current ciphertext aside; returns the backup location."""
        raise NotImplementedError


class FileDocumentStore(DocumentStore):
    """
    Documents on disk below a project root.

    Only files matching `glob` under the configured `roots` are listed,
    e.g. secrets/**/*.enc.yaml and examples/**/*.enc.yaml.
    """

    def __init__(
        self,
        root: Path,
        roots: Iterable[str] = ("secrets", "examples"),
        glob: str = "*.enc.yaml",
        backup_dir: Optional[Path] = None,
    ):
        self.root = Path(root).resolve()
        self.roots = list(roots)
        self.glob = glob
        self.backup_dir = Path(backup_dir) if backup_dir else self.root / ".keyward" / "backups"

    def _resolve(self, path: str) -> Path:
        full = (self.root / normalize_path(path)).resolve()
        try:
            full.relative_to(self.root)
        except ValueError:
            raise DocumentError(f"Path escapes the project root: {path}")
        return full

    def list_paths(self) -> List[str]:
        paths = set()
        for name in self.roots:
            base = self.root / name
            if not base.is_dir():
                continue
            for candidate in base.rglob(self.glob):
                if candidate.is_file():
                    paths.add(candidate.relative_to(self.root).as_posix())
        return sorted(paths)

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def read_bytes(self, path: str) -> bytes:
        full = self._resolve(path)
        try:
            return full.read_bytes()
        except FileNotFoundError:
            raise DocumentNotFoundError(f"Document not found: {path}")

    def write_bytes(self, path: str, data: bytes) -> None:
        atomic_write(self._resolve(path), data)

    def backup(self, path: str) -> str:
        source = self._resolve(path)
        if not source.is_file():
            raise DocumentNotFoundError(f"Document not found: {path}")
        target = self.backup_dir / f"{normalize_path(path)}.{_timestamp()}.bak"
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
        return str(target)


class MemoryDocumentStore(DocumentStore):
    """In-memory document store for tests and dry runs."""

    def __init__(self, documents: Optional[Dict[str, bytes]] = None):
        self._lock = threading.Lock()
        self.documents: Dict[str, bytes] = {}
        self.backups: Dict[str, bytes] = {}
        self.writes = 0
        for path, data in (documents or {}).items():
            self.documents[normalize_path(path)] = data

    def list_paths(self) -> List[str]:
        with self._lock:
            return sorted(self.documents)

    def exists(self, path: str) -> bool:
        with self._lock:
            return normalize_path(path) in self.documents

    def read_bytes(self, path: str) -> bytes:
        with self._lock:
            try:
                return self.documents[normalize_path(path)]
            except KeyError:
                raise DocumentNotFoundError(f"Document not found: {path}")

    def write_bytes(self, path: str, data: bytes) -> None:
        with self._lock:
            self.documents[normalize_path(path)] = bytes(data)
            self.writes += 1

    def backup(self, path: str) -> str:
        with self._lock:
            key = normalize_path(path)
            if key not in self.documents:
                raise DocumentNotFoundError(f"Document not found: {path}")
            location = f"{key}.{_timestamp()}.bak"
            self.backups[location] = self.documents[key]
            return location
