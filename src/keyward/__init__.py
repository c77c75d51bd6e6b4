"""
Keyward: access control for encrypted secrets

Tracks which principals (by public key) may decrypt which documents, and
keeps every encrypted document's recipient set consistent with that policy
as principals are onboarded and offboarded.
"""

__version__ = "0.1.0"
__author__ = "Keyward Contributors"
__license__ = "CC BY-SA 4.0"

from .registry import (
    Group,
    Principal,
    RemovedPrincipal,
    AccessRule,
    KeyRegistry,
    DEFAULT_RULES,
    check_invariants,
    RegistryError,
    ConfigError,
    DuplicateNameError,
    DuplicateKeyError,
    UnknownCategoryError,
    NotFoundError,
    InvalidKeyFormatError,
    InvalidGroupError,
    InvalidNameError,
    RegistryCorruptError,
    InvariantViolation,
)
from .keys import (
    KeyPair,
    KeyScheme,
    AgeScheme,
    X25519Scheme,
    get_scheme,
    fingerprint,
    read_identity,
    KeySchemeError,
    InvalidKeySchemeError,
    KeySchemeUnavailable,
)
from .storage import (
    ProjectStorage,
    ProjectConfig,
    ConfigStore,
    FileConfigStore,
    MemoryConfigStore,
    render_registry,
    parse_registry,
    render_sops_config,
    find_project_root,
    StorageError,
    ProjectNotFoundError,
    ProjectExistsError,
)
from .policy import PolicyMutator
from .documents import DocumentStore, FileDocumentStore, MemoryDocumentStore
from .gateway import (
    EncryptionGateway,
    SopsGateway,
    FailureReason,
    GatewayError,
    AccessDeniedError,
    MalformedError,
    UnavailableError,
    GatewayTimeout,
)
from .envelope import EnvelopeGateway
from .reconcile import Reconciler, ReconciliationReport, DocumentOutcome, OutcomeStatus
from .verify import AccessVerifier, AccessReport, CategoryAccess, is_key_registered
from .rotation import (
    RotationEngine,
    RotationRecord,
    RotationFailure,
    RotationError,
    Classification,
    SecretGenerator,
)
from .audit import AuditLog, AuditEntry, AuditEvent, AuditOutcome, AuditError
from .tracking import ChangeTracker, GitChangeTracker, NullChangeTracker, ChangeTrackingError
from .lifecycle import Keyward, OnboardResult, OffboardResult, RegistryListing

__all__ = [
    # Registry
    "Group",
    "Principal",
    "RemovedPrincipal",
    "AccessRule",
    "KeyRegistry",
    "DEFAULT_RULES",
    "check_invariants",
    "RegistryError",
    "ConfigError",
    "DuplicateNameError",
    "DuplicateKeyError",
    "UnknownCategoryError",
    "NotFoundError",
    "InvalidKeyFormatError",
    "InvalidGroupError",
    "InvalidNameError",
    "RegistryCorruptError",
    "InvariantViolation",
    # Keys
    "KeyPair",
    "KeyScheme",
    "AgeScheme",
    "X25519Scheme",
    "get_scheme",
    "fingerprint",
    "read_identity",
    "KeySchemeError",
    "InvalidKeySchemeError",
    "KeySchemeUnavailable",
    # Storage
    "ProjectStorage",
    "ProjectConfig",
    "ConfigStore",
    "FileConfigStore",
    "MemoryConfigStore",
    "render_registry",
    "parse_registry",
    "render_sops_config",
    "find_project_root",
    "StorageError",
    "ProjectNotFoundError",
    "ProjectExistsError",
    "PolicyMutator",
    # Documents and gateways
    "DocumentStore",
    "FileDocumentStore",
    "MemoryDocumentStore",
    "EncryptionGateway",
    "SopsGateway",
    "EnvelopeGateway",
    "FailureReason",
    "GatewayError",
    "AccessDeniedError",
    "MalformedError",
    "UnavailableError",
    "GatewayTimeout",
    # Engine
    "Reconciler",
    "ReconciliationReport",
    "DocumentOutcome",
    "OutcomeStatus",
    "AccessVerifier",
    "AccessReport",
    "CategoryAccess",
    "is_key_registered",
    "RotationEngine",
    "RotationRecord",
    "RotationFailure",
    "RotationError",
    "Classification",
    "SecretGenerator",
    # Sinks
    "AuditLog",
    "AuditEntry",
    "AuditEvent",
    "AuditOutcome",
    "AuditError",
    "ChangeTracker",
    "GitChangeTracker",
    "NullChangeTracker",
    "ChangeTrackingError",
    # Lifecycle
    "Keyward",
    "OnboardResult",
    "OffboardResult",
    "RegistryListing",
    "__version__",
]
