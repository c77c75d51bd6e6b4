"""
Rotation Engine for Keyward

Replaces the sensitive values in an encrypted YAML document with freshly
generated ones and re-encrypts it for exactly the recipients it already
has. Rotation is content-only; it never changes who can read a document.

Classification is a heuristic over the document's field names:

- database-credential: database hints (database, db, mysql, postgres, ...)
  or any password-like field. Values become 32-character passwords.
- api-key: API hints (api, token, stripe, sendgrid, github) or any other
  secret-bearing field. Values become hex tokens, keeping a recognisable
  prefix such as `sk_live_` or `ghp_`.
- generic: neither. No value is replaced; the document only gets a
  rotation annotation and is flagged for manual update.
"""

import re
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import yaml

from .documents import DocumentError, DocumentStore
from .gateway import AccessDeniedError, EncryptionGateway, GatewayError
from .logging import get_logger, log_context
from .registry import KeyRegistry


logger = get_logger()

SECRET_FIELD_PATTERN = re.compile(r"password|passwd|token|key|secret|credential", re.IGNORECASE)
PASSWORD_FIELD_PATTERN = re.compile(r"password|passwd", re.IGNORECASE)
TOKEN_PREFIX_PATTERN = re.compile(r"^([A-Za-z]{2,}(?:_[A-Za-z]+)?_)")

DATABASE_HINTS = frozenset({"database", "db", "mysql", "postgres", "postgresql", "mongo", "mongodb", "redis"})
API_HINTS = frozenset({"api", "token", "stripe", "sendgrid", "github"})

ROTATION_FIELD = "_rotation"
PASSWORD_LENGTH = 32
TOKEN_LENGTH = 64


class RotationError(Exception):
    """
    Raised when a document cannot be rotated.

    `kind` is one of: not_governed, stale, decryption_denied, malformed,
    unavailable, timeout, write_failed.
    """

    def __init__(self, message: str, kind: str, path: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.path = path


class Classification(Enum):
    DATABASE_CREDENTIAL = "database-credential"
    API_KEY = "api-key"
    GENERIC = "generic"

    @property
    def log_label(self) -> str:
        return {
            Classification.DATABASE_CREDENTIAL: "DATABASE",
            Classification.API_KEY: "API_KEYS",
            Classification.GENERIC: "GENERIC",
        }[self]


class SecretGenerator:
    """Random values for rotated fields, from the `secrets` module."""

    ALPHABETS = {
        "password": string.ascii_letters + string.digits,
        "token": "0123456789abcdef",
    }

    def generate(self, kind: str, length: int = PASSWORD_LENGTH) -> str:
        try:
            alphabet = self.ALPHABETS[kind]
        except KeyError:
            raise ValueError(f"Unknown secret kind: {kind}")
        if length < 1:
            raise ValueError("Secret length must be positive")
        return "".join(secrets.choice(alphabet) for _ in range(length))


@dataclass
class RotationRecord:
    """What one rotation did."""
    path: str
    classification: Classification
    timestamp: str
    fields_changed: int
    fields: List[str] = field(default_factory=list)
    manual_update_required: bool = False
    backup: Optional[str] = None
    recipients: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "classification": self.classification.value,
            "timestamp": self.timestamp,
            "fields_changed": self.fields_changed,
            "fields": list(self.fields),
            "manual_update_required": self.manual_update_required,
            "backup": self.backup,
            "recipients": self.recipients,
        }

    def log_line(self) -> str:
        """`timestamp | DATABASE | path | Success` style summary line."""
        outcome = "Manual update required" if self.manual_update_required else "Success"
        return f"{self.timestamp} | {self.classification.log_label} | {self.path} | {outcome}"


@dataclass
class RotationFailure:
    path: str
    kind: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "kind": self.kind, "message": self.message}


def iter_fields(data: Any, prefix: str = "") -> Iterable[Tuple[str, Any, Any, Any]]:
    """
    Yield (dotted_path, value, container, key) for every scalar leaf.

    The top-level rotation annotation is skipped.
    """
    if isinstance(data, dict):
        items = data.items()
    elif isinstance(data, list):
        items = enumerate(data)
    else:
        return
    for key, value in items:
        if not prefix and key == ROTATION_FIELD:
            continue
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, (dict, list)):
            yield from iter_fields(value, path)
        else:
            yield path, value, data, key


def _words(dotted: str) -> set:
    return {w for w in re.split(r"[^a-z0-9]+", dotted.lower()) if w}


def is_secret_field(dotted: str, value: Any) -> bool:
    leaf = dotted.rsplit(".", 1)[-1]
    if isinstance(value, bool) or value is None:
        return False
    return isinstance(value, (str, int, float)) and bool(SECRET_FIELD_PATTERN.search(leaf))


def classify(paths: Sequence[str]) -> Classification:
    """Pick a classification from a document's dotted field paths."""
    words = set()
    for p in paths:
        words |= _words(p)
    leaves = [p.rsplit(".", 1)[-1] for p in paths]

    if words & DATABASE_HINTS or any(PASSWORD_FIELD_PATTERN.search(leaf) for leaf in leaves):
        return Classification.DATABASE_CREDENTIAL
    if words & API_HINTS or any(SECRET_FIELD_PATTERN.search(leaf) for leaf in leaves):
        return Classification.API_KEY
    return Classification.GENERIC


class RotationEngine:
    """
    Rotates document content without touching recipients.

    Usage:
        engine = RotationEngine(gateway, store, identity=operator_private_key)
        record = engine.rotate("secrets/production/api.enc.yaml", registry)
    """

    def __init__(
        self,
        gateway: EncryptionGateway,
        store: DocumentStore,
        identity: Optional[str],
        generator: Optional[SecretGenerator] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.identity = identity
        self.generator = generator or SecretGenerator()

    def _new_value(self, classification: Classification, old: Any) -> str:
        if classification == Classification.DATABASE_CREDENTIAL:
            return self.generator.generate("password", PASSWORD_LENGTH)
        prefix = ""
        if isinstance(old, str):
            match = TOKEN_PREFIX_PATTERN.match(old)
            if match:
                prefix = match.group(1)
        return prefix + self.generator.generate("token", TOKEN_LENGTH)

    def _gateway_call(self, path: str, fn, *args):
        try:
            return fn(*args)
        except AccessDeniedError as e:
            raise RotationError(f"Cannot decrypt {path}: {e}", "decryption_denied", path)
        except GatewayError as e:
            raise RotationError(f"{path}: {e}", e.reason.value, path)

    def rotate(
        self,
        path: str,
        registry: KeyRegistry,
        field_selectors: Optional[Sequence[str]] = None,
        reason: str = "scheduled rotation",
    ) -> RotationRecord:
        """
        Rotate one document.

        Args:
            path: Document path relative to the store root
            registry: Registry giving the document's expected recipients
            field_selectors: fnmatch globs over dotted field paths (default: all)
            reason: Recorded in the document's rotation annotation

        Raises:
            RotationError: With `kind` describing the failure
        """
        selectors = list(field_selectors) if field_selectors else ["*"]

        with log_context(operation="rotate", document=path):
            if not registry.is_governed(path):
                raise RotationError(f"{path} is not governed by any access rule", "not_governed", path)

            expected = registry.recipient_keys(path)
            actual = self._gateway_call(path, self.gateway.recipients, path)
            if sorted(actual) != expected:
                raise RotationError(
                    f"{path} is stale (recipients differ from the registry); reconcile first",
                    "stale",
                    path,
                )

            if not self.identity:
                raise RotationError("No operator identity to decrypt with", "decryption_denied", path)
            plaintext = self._gateway_call(path, self.gateway.decrypt, path, self.identity)

            try:
                data = yaml.safe_load(plaintext) if plaintext.strip() else {}
            except yaml.YAMLError as e:
                raise RotationError(f"{path} is not valid YAML: {e}", "malformed", path)
            if not isinstance(data, dict):
                raise RotationError(f"{path} is not a YAML mapping", "malformed", path)

            leaves = list(iter_fields(data))
            classification = classify([leaf[0] for leaf in leaves])

            changed = []
            if classification != Classification.GENERIC:
                for dotted, value, container, key in leaves:
                    if not is_secret_field(dotted, value):
                        continue
                    if not any(fnmatchcase(dotted, s) for s in selectors):
                        continue
                    container[key] = self._new_value(classification, value)
                    changed.append(dotted)

            timestamp = datetime.now().astimezone().isoformat(timespec="seconds")
            manual = classification == Classification.GENERIC
            data[ROTATION_FIELD] = {
                "rotated_at": timestamp,
                "reason": reason,
                "classification": classification.value,
                "manual_update_required": manual,
            }

            rendered = yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
            ciphertext = self._gateway_call(
                path, self.gateway.encrypt, rendered.encode("utf-8"), expected
            )

            try:
                backup = self.store.backup(path)
                self.store.write_bytes(path, ciphertext)
            except (DocumentError, OSError) as e:
                raise RotationError(f"Could not write {path}: {e}", "write_failed", path)

            record = RotationRecord(
                path=path,
                classification=classification,
                timestamp=timestamp,
                fields_changed=len(changed),
                fields=changed,
                manual_update_required=manual,
                backup=backup,
                recipients=len(expected),
            )

            if manual:
                logger.warning(
                    f"Rotated {path} as generic; manual update of secret values required",
                    classification=classification.value,
                )
            else:
                logger.info(
                    f"Rotated {len(changed)} field(s) in {path}",
                    classification=classification.value,
                    backup=backup,
                )
            return record

    def rotate_many(
        self,
        paths: Iterable[str],
        registry: KeyRegistry,
        field_selectors: Optional[Sequence[str]] = None,
        reason: str = "scheduled rotation",
    ) -> Tuple[List[RotationRecord], List[RotationFailure]]:
        """Rotate each path; failures are collected, never raised."""
        records = []
        failures = []
        for path in paths:
            try:
                records.append(self.rotate(path, registry, field_selectors, reason))
            except RotationError as e:
                logger.error(f"Rotation failed for {path}: {e}", kind=e.kind)
                failures.append(RotationFailure(path=path, kind=e.kind, message=str(e)))
            except Exception as e:
                logger.exception(f"Unexpected error rotating {path}")
                failures.append(RotationFailure(
                    path=path, kind="malformed", message=f"{type(e).__name__}: {e}"
                ))
        return records, failures
