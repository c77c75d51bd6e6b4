"""
Access Verifier for Keyward

Reports, per category, how many governed documents a private key can
decrypt right now, and cross-checks that against what the registry says
the key should be able to read.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .documents import DocumentError, DocumentStore
from .gateway import AccessDeniedError, EncryptionGateway, FailureReason, GatewayError
from .keys import KeyScheme, KeySchemeError
from .logging import get_logger, log_context
from .reconcile import call_with_timeout
from .registry import KeyRegistry, Principal


logger = get_logger()


def is_key_registered(public_key: Optional[str], registry: KeyRegistry) -> Optional[Principal]:
    """Principal currently holding `public_key`, or None."""
    if not public_key:
        return None
    return registry.find_by_key(public_key)


@dataclass
class CategoryAccess:
    """accessible/total for one category."""
    category: str
    accessible: int = 0
    total: int = 0
    expected: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "accessible": self.accessible,
            "total": self.total,
            "expected": self.expected,
        }


@dataclass
class DocumentFailure:
    """A decryption attempt that failed for a reason other than access denial."""
    path: str
    reason: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "reason": self.reason, "message": self.message}


@dataclass
class Inconsistency:
    """A document whose decryptability disagrees with the registry."""
    path: str
    expected: bool
    actual: bool

    @property
    def description(self) -> str:
        if self.expected:
            return "registry grants access but the document cannot be decrypted (not reconciled?)"
        return "document can be decrypted but the registry does not grant access (residual access)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "expected": self.expected,
            "actual": self.actual,
            "description": self.description,
        }


@dataclass
class AccessReport:
    """What a candidate key can read."""
    public_key: Optional[str] = None
    principal: Optional[Principal] = None
    categories: List[CategoryAccess] = field(default_factory=list)
    accessible_paths: List[str] = field(default_factory=list)
    errors: List[DocumentFailure] = field(default_factory=list)
    inconsistencies: List[Inconsistency] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    checked_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def accessible(self) -> int:
        return sum(c.accessible for c in self.categories)

    @property
    def total(self) -> int:
        return sum(c.total for c in self.categories)

    @property
    def registered(self) -> bool:
        return self.principal is not None

    @property
    def consistent(self) -> bool:
        return not self.inconsistencies

    def category(self, name: str) -> Optional[CategoryAccess]:
        for c in self.categories:
            if c.category == name:
                return c
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "public_key": self.public_key,
            "registered": self.registered,
            "principal": self.principal.to_dict() if self.principal else None,
            "categories": [c.to_dict() for c in self.categories],
            "accessible": self.accessible,
            "total": self.total,
            "accessible_paths": list(self.accessible_paths),
            "errors": [e.to_dict() for e in self.errors],
            "inconsistencies": [i.to_dict() for i in self.inconsistencies],
            "notes": list(self.notes),
            "checked_at": self.checked_at,
        }


class AccessVerifier:
    """
    Attempts decryption of every governed document with one key.

    A failure on one document is recorded, never raised.
    """

    def __init__(
        self,
        gateway: EncryptionGateway,
        scheme: KeyScheme,
        timeout: Optional[float] = 30.0,
    ):
        self.gateway = gateway
        self.scheme = scheme
        self.timeout = timeout

    def verify(
        self,
        private_key: str,
        store: DocumentStore,
        registry: KeyRegistry,
    ) -> AccessReport:
        report = AccessReport()

        try:
            report.public_key = self.scheme.public_key_for(private_key)
        except KeySchemeError as e:
            report.notes.append(f"Could not derive public key: {e}")
        report.principal = is_key_registered(report.public_key, registry)
        if report.public_key and report.principal is None:
            report.notes.append("Key is not registered to any principal")

        by_category: Dict[str, CategoryAccess] = {}
        for category in registry.categories:
            access = CategoryAccess(category=category)
            if report.principal is not None:
                rule = registry.rule(category)
                access.expected = report.principal.group in rule.groups
            by_category[category] = access
            report.categories.append(access)

        for path in store.list_paths():
            category = registry.category_of(path)
            if category is None:
                continue
            access = by_category[category]
            access.total += 1

            with log_context(document=path):
                actual = self._try_decrypt(path, private_key, report)
            if actual is None:
                continue
            if actual:
                access.accessible += 1
                report.accessible_paths.append(path)

            if report.public_key:
                expected = report.public_key in registry.recipient_keys(path)
                if expected != actual:
                    report.inconsistencies.append(
                        Inconsistency(path=path, expected=expected, actual=actual)
                    )

        if report.inconsistencies:
            logger.warning(
                f"Access for key disagrees with the registry on "
                f"{len(report.inconsistencies)} document(s)",
                paths=[i.path for i in report.inconsistencies],
            )
        logger.info(
            f"Verified access: {report.accessible}/{report.total} documents decryptable",
            errors=len(report.errors),
        )
        return report

    def _try_decrypt(self, path: str, private_key: str, report: AccessReport) -> Optional[bool]:
        try:
            call_with_timeout(self.gateway.decrypt, self.timeout, path, private_key, path=path)
            return True
        except AccessDeniedError:
            return False
        except GatewayError as e:
            report.errors.append(DocumentFailure(path, e.reason.value, str(e)))
        except (DocumentError, OSError) as e:
            report.errors.append(DocumentFailure(path, "unavailable", str(e)))
        except Exception as e:
            logger.exception(f"Unexpected error decrypting {path}")
            report.errors.append(
                DocumentFailure(path, FailureReason.MALFORMED.value, f"{type(e).__name__}: {e}")
            )
        logger.warning(f"Could not check {path}: {report.errors[-1].message}")
        return None
