"""
Keyward Storage Module

Persistent storage for Keyward projects. Manages the .keyward/ directory,
the project configuration, and the Key Registry artifact.

The registry is written by a deterministic serializer (stable ordering,
one principal per line) so changes are reviewable in diffs, and replaced
atomically so that readers only ever observe a complete file.
"""

import json
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .filelock import registry_lock, shared_lock
from .registry import (
    Group,
    KeyRegistry,
    Principal,
    RegistryCorruptError,
    DEFAULT_RULES,
)


KEYWARD_DIR = ".keyward"
CONFIG_FILE = "config.json"
REGISTRY_FILE = "registry.yaml"
LOCK_FILE = "registry.lock"
AUDIT_FILE = "audit.log"
BACKUPS_DIR = "backups"

REGISTRY_HEADER = "# keyward registry -- managed by `keyward onboard` / `keyward offboard`"
SOPS_HEADER = "# generated by keyward from .keyward/registry.yaml -- do not edit by hand"

# Group names used in SOPS key anchors
SOPS_GROUP_NAMES = {
    Group.DEVELOPER: "developers",
    Group.ADMINISTRATOR: "administrators",
    Group.SERVICE: "ci",
}


class StorageError(Exception):
    """Base exception for storage errors"""
    pass


class ProjectNotFoundError(StorageError):
    """Raised when no .keyward directory is found"""
    pass


class ProjectExistsError(StorageError):
    """Raised when trying to init in an existing project"""
    pass


@dataclass
class ProjectConfig:
    """Configuration for a Keyward project"""
    project_name: str
    version: str = "1"
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    key_scheme: str = "age"
    document_roots: List[str] = field(default_factory=lambda: ["secrets", "examples"])
    document_glob: str = "*.enc.yaml"
    max_workers: int = 4
    rewrap_timeout: float = 30.0
    rotation_categories: List[str] = field(default_factory=lambda: ["production"])
    keys_dir: str = "keys"
    sops_config: str = ".sops.yaml"
    track_changes: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_name": self.project_name,
            "version": self.version,
            "created_at": self.created_at,
            "key_scheme": self.key_scheme,
            "document_roots": list(self.document_roots),
            "document_glob": self.document_glob,
            "max_workers": self.max_workers,
            "rewrap_timeout": self.rewrap_timeout,
            "rotation_categories": list(self.rotation_categories),
            "keys_dir": self.keys_dir,
            "sops_config": self.sops_config,
            "track_changes": self.track_changes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectConfig":
        defaults = cls(project_name=data["project_name"])
        return cls(
            project_name=data["project_name"],
            version=str(data.get("version", defaults.version)),
            created_at=data.get("created_at", defaults.created_at),
            key_scheme=data.get("key_scheme", defaults.key_scheme),
            document_roots=list(data.get("document_roots", defaults.document_roots)),
            document_glob=data.get("document_glob", defaults.document_glob),
            max_workers=int(data.get("max_workers", defaults.max_workers)),
            rewrap_timeout=float(data.get("rewrap_timeout", defaults.rewrap_timeout)),
            rotation_categories=list(
                data.get("rotation_categories", defaults.rotation_categories)
            ),
            keys_dir=data.get("keys_dir", defaults.keys_dir),
            sops_config=data.get("sops_config", defaults.sops_config),
            track_changes=bool(data.get("track_changes", defaults.track_changes)),
        )


def find_project_root(start_path: Optional[Path] = None) -> Optional[Path]:
    """
    Find the directory containing .keyward by searching up from start_path.

    Returns None if not found.
    """
    current = Path(start_path or os.getcwd()).resolve()

    while current != current.parent:
        if (current / KEYWARD_DIR).is_dir():
            return current
        current = current.parent

    if (current / KEYWARD_DIR).is_dir():
        return current

    return None


def atomic_write(path: Path, data: bytes) -> None:
    """
    Replace `path` with `data` so readers see the old or the new file only.

    Writes a temporary file in the same directory, fsyncs it, then
    os.replace()s it over the target.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            os.chmod(tmp_name, path.stat().st_mode & 0o777)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _q(value: Any) -> str:
    # JSON string literals are valid YAML double-quoted scalars
    return json.dumps(str(value))


def _qlist(values: List[str]) -> str:
    return "[" + ", ".join(_q(v) for v in values) + "]"


def render_registry(registry: KeyRegistry) -> str:
    """
    Serialize a registry to its persisted text form.

    Output depends only on registry content: groups in fixed order,
    principals sorted by name (one per line), rules in declared order,
    recipients sorted.
    """
    lines = [REGISTRY_HEADER, f"version: {registry.version}", "principals:"]
    for group in Group:
        members = registry.list_by_group(group)
        if not members:
            lines.append(f"  {group.value}: []")
            continue
        lines.append(f"  {group.value}:")
        for p in members:
            lines.append(f"    - {{name: {_q(p.name)}, key: {_q(p.public_key)}}}")

    lines.append("rules:")
    for rule in registry.rules:
        data = rule.to_dict()
        lines.append(f"  - category: {_q(rule.category)}")
        lines.append(f"    pattern: {_q(rule.pattern)}")
        lines.append(f"    groups: {_qlist(data['groups'])}")
        lines.append(f"    recipients: {_qlist(registry.rule_recipients(rule))}")

    return "\n".join(lines) + "\n"


def parse_registry(text: str) -> KeyRegistry:
    """
    Parse the persisted registry text.

    Raises:
        RegistryCorruptError: If the text is not valid YAML or not a valid registry
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise RegistryCorruptError(f"Registry is not valid YAML: {e}")
    return KeyRegistry.from_dict(data)


def render_sops_config(registry: KeyRegistry) -> str:
    """
    Render SOPS creation rules for the registry.

    Keys are declared once under anchors (`&alice_key`) in per-group lists
    and referenced by alias from each rule, the layout SOPS users expect.
    """
    lines = [SOPS_HEADER, "keys:"]
    for group in Group:
        name = SOPS_GROUP_NAMES[group]
        members = registry.list_by_group(group)
        if not members:
            lines.append(f"  {name}: &{name} []")
            continue
        lines.append(f"  {name}: &{name}")
        for p in members:
            lines.append(f"    - &{p.name}_key {p.public_key}")

    lines.append("creation_rules:")
    for rule in registry.rules:
        recipients = registry.rule_recipients(rule)
        lines.append(f"  - path_regex: {_q(rule.pattern)}")
        lines.append("    key_groups:")
        if not recipients:
            lines.append("      - age: []")
            continue
        lines.append("      - age:")
        for name in recipients:
            lines.append(f"          - *{name}_key")

    return "\n".join(lines) + "\n"


class ConfigStore:
    """
    Where the Key Registry lives.

    Mutators hold `locked()` for the whole load -> mutate -> save cycle;
    `save()` must only be called while the lock is held.
    """

    def load(self) -> KeyRegistry:
        raise NotImplementedError

    def save(self, registry: KeyRegistry) -> None:
        raise NotImplementedError

    def locked(self, owner: str = ""):
        raise NotImplementedError

    @property
    def location(self) -> str:
        return "<registry>"


class FileConfigStore(ConfigStore):
    """Registry persisted as a YAML file next to a lock file."""

    def __init__(
        self,
        path: Path,
        lock_path: Optional[Path] = None,
        lock_timeout: float = 10.0,
    ):
        self.path = Path(path)
        self.lock_path = Path(lock_path) if lock_path else self.path.with_name(LOCK_FILE)
        self.lock_timeout = lock_timeout
        self._held = threading.local()

    @property
    def location(self) -> str:
        return str(self.path)

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> KeyRegistry:
        """
        Load the registry.

        Raises:
            StorageError: If the file does not exist
            RegistryCorruptError: If it cannot be parsed
        """
        if not self.path.is_file():
            raise StorageError(f"Registry not found: {self.path}")
        if getattr(self._held, "lock", None) is not None:
            return parse_registry(self.path.read_text(encoding="utf-8"))
        with shared_lock(self.lock_path, timeout=self.lock_timeout):
            return parse_registry(self.path.read_text(encoding="utf-8"))

    def save(self, registry: KeyRegistry) -> None:
        atomic_write(self.path, render_registry(registry).encode("utf-8"))

    @contextmanager
    def locked(self, owner: str = ""):
        with registry_lock(self.lock_path, timeout=self.lock_timeout, owner=owner) as lock:
            self._held.lock = lock
            try:
                yield self
            finally:
                self._held.lock = None


class MemoryConfigStore(ConfigStore):
    """
    In-memory registry store.

    Keeps the serialized text rather than the object so every load goes
    through the same parser as the file store.
    """

    def __init__(self, registry: Optional[KeyRegistry] = None):
        self._lock = threading.RLock()
        self.text = render_registry(registry if registry is not None else KeyRegistry())
        self.saves = 0

    @property
    def location(self) -> str:
        return "<memory>"

    def load(self) -> KeyRegistry:
        with self._lock:
            return parse_registry(self.text)

    def save(self, registry: KeyRegistry) -> None:
        with self._lock:
            self.text = render_registry(registry)
            self.saves += 1

    @contextmanager
    def locked(self, owner: str = ""):
        with self._lock:
            yield self


class ProjectStorage:
    """
    Manages the on-disk layout of a Keyward project.

    Directory structure:
        <root>/
        ├── .keyward/
        │   ├── config.json      # ProjectConfig
        │   ├── registry.yaml    # Key Registry
        │   ├── registry.lock    # mutation lock
        │   ├── audit.log        # append-only audit log
        │   └── backups/         # ciphertext backups taken before rotation
        ├── .sops.yaml           # exported creation rules (optional)
        └── keys/<group>/<name>.pub
    """

    def __init__(self, project_path: Optional[Path] = None):
        if project_path:
            self.project_root = Path(project_path).resolve()
        else:
            self.project_root = find_project_root() or Path.cwd().resolve()

        self.keyward_dir = self.project_root / KEYWARD_DIR
        self.config_path = self.keyward_dir / CONFIG_FILE
        self.registry_path = self.keyward_dir / REGISTRY_FILE
        self.lock_path = self.keyward_dir / LOCK_FILE
        self.audit_path = self.keyward_dir / AUDIT_FILE
        self.backups_dir = self.keyward_dir / BACKUPS_DIR

    def is_initialized(self) -> bool:
        return self.config_path.is_file() and self.registry_path.is_file()

    def init_project(
        self,
        project_name: str,
        key_scheme: str = "age",
        force: bool = False,
    ) -> ProjectConfig:
        """
        Initialize a new Keyward project.

        Creates .keyward/ with config.json, an empty registry holding the
        default access rules, and a .gitignore for key material.

        Raises:
            ProjectExistsError: If the project exists and force=False
        """
        if self.is_initialized() and not force:
            raise ProjectExistsError(f"Keyward already initialized in {self.project_root}")

        self.keyward_dir.mkdir(parents=True, exist_ok=True)
        self.backups_dir.mkdir(exist_ok=True)

        config = ProjectConfig(project_name=project_name, key_scheme=key_scheme)
        self.save_config(config)

        store = self.config_store()
        with store.locked(owner="init"):
            store.save(KeyRegistry(rules=DEFAULT_RULES))

        gitignore_path = self.keyward_dir / ".gitignore"
        with open(gitignore_path, "w") as f:
            f.write("# Keyward local state\n")
            f.write("*.lock\n")
            f.write("backups/\n")
            f.write("*.key\n")

        return config

    def load_config(self) -> ProjectConfig:
        """
        Raises:
            ProjectNotFoundError: If the project is not initialized
        """
        if not self.is_initialized():
            raise ProjectNotFoundError("No Keyward project found. Run 'keyward init' first.")

        with open(self.config_path, "r") as f:
            data = json.load(f)

        return ProjectConfig.from_dict(data)

    def save_config(self, config: ProjectConfig) -> None:
        atomic_write(self.config_path, json.dumps(config.to_dict(), indent=2).encode())

    def config_store(self) -> FileConfigStore:
        return FileConfigStore(self.registry_path, self.lock_path)

    def sops_config_path(self, config: ProjectConfig) -> Optional[Path]:
        if not config.sops_config:
            return None
        return self.project_root / config.sops_config

    def export_sops_config(self, registry: KeyRegistry, config: ProjectConfig) -> Optional[Path]:
        """Write the SOPS creation rules; returns the path, or None if disabled."""
        path = self.sops_config_path(config)
        if path is None:
            return None
        try:
            atomic_write(path, render_sops_config(registry).encode("utf-8"))
        except OSError as e:
            raise StorageError(f"Could not export {path}: {e}")
        return path

    def public_key_path(self, principal: Principal, config: ProjectConfig) -> Optional[Path]:
        if not config.keys_dir:
            return None
        return self.project_root / config.keys_dir / principal.group.value / f"{principal.name}.pub"

    def write_public_key(self, principal: Principal, config: ProjectConfig) -> Optional[Path]:
        """Save the principal's public key to keys/<group>/<name>.pub."""
        path = self.public_key_path(principal, config)
        if path is None:
            return None
        try:
            atomic_write(path, (principal.public_key + "\n").encode())
        except OSError as e:
            raise StorageError(f"Could not write public key file {path}: {e}")
        return path

    def remove_public_key(self, principal: Principal, config: ProjectConfig) -> Optional[Path]:
        """Delete the principal's public key file if present."""
        path = self.public_key_path(principal, config)
        if path is None or not path.exists():
            return None
        try:
            path.unlink()
        except OSError as e:
            raise StorageError(f"Could not remove public key file {path}: {e}")
        return path

    def relative(self, path: Path) -> str:
        """Path relative to the project root, POSIX separators."""
        try:
            return Path(path).resolve().relative_to(self.project_root).as_posix()
        except ValueError:
            return str(path)
