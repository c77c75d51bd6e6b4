"""
Keyward lifecycle operations

The Keyward facade binds a config store, a document store, an encryption
gateway, a key scheme and the sinks (audit log, change tracker) and exposes
the operations the CLI drives: onboard, offboard, list, verify, reconcile
and rotate.

Onboard/offboard run in order:
    Policy Mutator -> Reconciliation -> (offboard) Rotation -> sinks

Sink failures (audit, change tracking, .sops.yaml export, key files) are
logged as warnings and collected on the result; they never undo or abort
the access-control change itself.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .audit import AuditEntry, AuditError, AuditEvent, AuditLog, AuditOutcome
from .documents import DocumentStore, FileDocumentStore
from .envelope import EnvelopeGateway
from .gateway import EncryptionGateway, SopsGateway
from .keys import KeyScheme, fingerprint, get_scheme, read_identity
from .logging import get_logger, log_context
from .policy import PolicyMutator
from .reconcile import OutcomeStatus, ReconciliationReport, Reconciler
from .registry import (
    ConfigError,
    Group,
    KeyRegistry,
    Principal,
    RemovedPrincipal,
    normalize_path,
    validate_name,
)
from .rotation import RotationEngine, RotationFailure, RotationRecord, SecretGenerator
from .storage import ConfigStore, ProjectConfig, ProjectStorage, StorageError
from .tracking import ChangeTracker, ChangeTrackingError, GitChangeTracker, NullChangeTracker
from .verify import AccessReport, AccessVerifier


logger = get_logger()


@dataclass
class OnboardResult:
    principal: Principal
    reconciliation: ReconciliationReport
    generated_private_key: Optional[str] = None
    change_recorded: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.reconciliation.ok

    def to_dict(self) -> Dict[str, Any]:
        """Machine-readable form. Never includes the private key."""
        return {
            "principal": self.principal.to_dict(),
            "key_fingerprint": self.principal.key_fingerprint,
            "key_generated": self.generated_private_key is not None,
            "reconciliation": self.reconciliation.to_dict(),
            "change_recorded": self.change_recorded,
            "warnings": list(self.warnings),
        }


@dataclass
class OffboardResult:
    removed: RemovedPrincipal
    reconciliation: ReconciliationReport
    affected_documents: List[str] = field(default_factory=list)
    rotation_records: List[RotationRecord] = field(default_factory=list)
    rotation_failures: List[RotationFailure] = field(default_factory=list)
    rotation_skipped: List[str] = field(default_factory=list)
    change_recorded: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def residual_access(self) -> List[str]:
        """Affected documents whose re-wrap failed; the removed key may still open them."""
        failed = {o.path for o in self.reconciliation.failed}
        return [p for p in self.affected_documents if p in failed]

    @property
    def ok(self) -> bool:
        return self.reconciliation.ok and not self.rotation_failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "removed": self.removed.principal.to_dict(),
            "categories": list(self.removed.categories),
            "affected_documents": list(self.affected_documents),
            "residual_access": self.residual_access,
            "reconciliation": self.reconciliation.to_dict(),
            "rotation_records": [r.to_dict() for r in self.rotation_records],
            "rotation_failures": [f.to_dict() for f in self.rotation_failures],
            "rotation_skipped": list(self.rotation_skipped),
            "change_recorded": self.change_recorded,
            "warnings": list(self.warnings),
        }


@dataclass
class RuleSummary:
    category: str
    pattern: str
    groups: List[str]
    recipients: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "pattern": self.pattern,
            "groups": list(self.groups),
            "recipients": list(self.recipients),
        }


@dataclass
class RegistryListing:
    principals_by_group: Dict[Group, List[Principal]]
    rules: List[RuleSummary]
    access: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(len(v) for v in self.principals_by_group.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principals": {
                group.value: [
                    dict(p.to_dict(), fingerprint=p.key_fingerprint, access=self.access.get(p.name, []))
                    for p in members
                ]
                for group, members in self.principals_by_group.items()
            },
            "rules": [r.to_dict() for r in self.rules],
            "total": self.total,
        }


class Keyward:
    """
    Lifecycle facade.

    Usage:
        kw = Keyward.open(Path("."), identity=operator_key)
        result = kw.onboard("alice", "developer", public_key="age1...")
        if not result.ok:
            for outcome in result.reconciliation.failed:
                print(outcome.path, outcome.reason.value)
    """

    def __init__(
        self,
        config_store: ConfigStore,
        documents: DocumentStore,
        gateway: EncryptionGateway,
        scheme: KeyScheme,
        config: Optional[ProjectConfig] = None,
        identity: Optional[str] = None,
        audit: Optional[AuditLog] = None,
        tracker: Optional[ChangeTracker] = None,
        generator: Optional[SecretGenerator] = None,
        project: Optional[ProjectStorage] = None,
    ):
        self.config_store = config_store
        self.documents = documents
        self.gateway = gateway
        self.scheme = scheme
        self.config = config or ProjectConfig(project_name="keyward", key_scheme=scheme.name)
        self.identity = identity
        self.audit = audit
        self.tracker = tracker or NullChangeTracker()
        self.project = project

        self.mutator = PolicyMutator(config_store, scheme)
        self.reconciler = Reconciler(
            gateway,
            max_workers=self.config.max_workers,
            timeout=self.config.rewrap_timeout,
        )
        self.verifier = AccessVerifier(gateway, scheme, timeout=self.config.rewrap_timeout)
        self.rotation = RotationEngine(gateway, documents, identity, generator)

    @classmethod
    def init(
        cls,
        root: Path,
        project_name: str,
        key_scheme: str = "age",
        force: bool = False,
    ) -> ProjectConfig:
        """Create a project in `root` and record it in the audit log."""
        get_scheme(key_scheme)
        project = ProjectStorage(root)
        config = project.init_project(project_name, key_scheme=key_scheme, force=force)
        try:
            AuditLog(project.audit_path).append(
                AuditEntry(AuditEvent.INIT, "", details={"project": project_name, "key_scheme": key_scheme})
            )
        except AuditError as e:
            logger.warning(f"Audit log append failed: {e}")
        logger.info(f"Initialized keyward project '{project_name}'", path=str(project.project_root))
        return config

    @classmethod
    def open(
        cls,
        root: Optional[Path] = None,
        identity: Optional[str] = None,
        track_changes: Optional[bool] = None,
    ) -> "Keyward":
        """
        Build the file-based stack for the project at (or above) `root`.

        Raises:
            ProjectNotFoundError: If there is no initialized project
            InvalidKeySchemeError: If the configured scheme is unknown
        """
        project = ProjectStorage(root)
        config = project.load_config()
        scheme = get_scheme(config.key_scheme)
        identity = read_identity(identity) if identity else None

        documents = FileDocumentStore(
            project.project_root,
            roots=config.document_roots,
            glob=config.document_glob,
            backup_dir=project.backups_dir,
        )
        if scheme.name == "age":
            gateway = SopsGateway(documents, identity=identity, timeout=config.rewrap_timeout)
        else:
            gateway = EnvelopeGateway(documents, identity=identity, scheme=scheme)

        if track_changes is None:
            track_changes = config.track_changes
        tracker = NullChangeTracker()
        if track_changes:
            git = GitChangeTracker(project.project_root)
            if git.is_repository():
                tracker = git

        return cls(
            config_store=project.config_store(),
            documents=documents,
            gateway=gateway,
            scheme=scheme,
            config=config,
            identity=identity,
            audit=AuditLog(project.audit_path),
            tracker=tracker,
            project=project,
        )

    # Sinks

    def _audit(self, entry: AuditEntry, warnings: List[str]) -> None:
        if self.audit is None:
            return
        try:
            self.audit.append(entry)
        except AuditError as e:
            logger.warning(f"Audit log append failed: {e}")
            warnings.append(f"audit log: {e}")

    def _track(self, paths: List[str], message: str, warnings: List[str]) -> bool:
        if not paths:
            return False
        try:
            return self.tracker.record_change(paths, message)
        except ChangeTrackingError as e:
            logger.warning(f"Could not record change: {e}")
            warnings.append(f"change tracking: {e}")
            return False

    def _export(
        self,
        registry: KeyRegistry,
        warnings: List[str],
        added: Optional[Principal] = None,
        removed: Optional[Principal] = None,
    ) -> List[str]:
        """Write .sops.yaml and public key files; returns changed project paths."""
        if self.project is None:
            return []
        changed = [self.project.relative(self.project.registry_path)]
        try:
            path = self.project.export_sops_config(registry, self.config)
            if path:
                changed.append(self.project.relative(path))
            if added is not None:
                path = self.project.write_public_key(added, self.config)
                if path:
                    changed.append(self.project.relative(path))
            if removed is not None:
                path = self.project.remove_public_key(removed, self.config)
                if path:
                    changed.append(self.project.relative(path))
        except StorageError as e:
            logger.warning(str(e))
            warnings.append(str(e))
        return changed

    @staticmethod
    def _changed_documents(report: ReconciliationReport) -> List[str]:
        return [o.path for o in report.outcomes if o.status == OutcomeStatus.RECONCILED]

    # Operations

    def onboard(
        self,
        name: str,
        group: Any,
        public_key: Optional[str] = None,
        generate: bool = False,
    ) -> OnboardResult:
        """
        Add a principal and re-wrap every governed document.

        Raises:
            ConfigError: On invalid input (nothing changed)
            KeySchemeError: If a key pair could not be generated
        """
        with log_context(operation="onboard", principal=name):
            validate_name(name)
            group = Group.parse(group)
            if generate and public_key:
                raise ConfigError("Provide a public key or ask for one to be generated, not both")
            if not generate and not public_key:
                raise ConfigError("A public key is required (or generate one)")

            private_key = None
            if generate:
                pair = self.scheme.generate_key_pair()
                public_key, private_key = pair.public_key, pair.private_key

            registry, principal = self.mutator.add_principal(name, group, public_key)
            report = self.reconciler.reconcile(registry, self.documents)

            warnings: List[str] = []
            changed = self._export(registry, warnings, added=principal)
            changed += self._changed_documents(report)
            recorded = self._track(
                changed, f"Onboard {name} ({group.value}) to keyward", warnings
            )

            self._audit(AuditEntry(
                event=AuditEvent.ONBOARD,
                principal=name,
                key_fingerprint=principal.key_fingerprint,
                outcome=AuditOutcome.SUCCESS if report.ok else AuditOutcome.PARTIAL,
                details={
                    "group": group.value,
                    "key_generated": generate,
                    "reconciled": report.reconciled,
                    "failed": [o.path for o in report.failed],
                },
            ), warnings)

            if not report.ok:
                logger.error(
                    f"Onboarded '{name}' but {len(report.failed)} document(s) were not re-wrapped",
                    failed=[o.path for o in report.failed],
                )

            return OnboardResult(
                principal=principal,
                reconciliation=report,
                generated_private_key=private_key,
                change_recorded=recorded,
                warnings=warnings,
            )

    def offboard(self, name: str, rotate_affected: bool = False) -> OffboardResult:
        """
        Remove a principal, re-wrap every governed document, and optionally
        rotate the affected documents in the configured rotation categories.

        Raises:
            NotFoundError: If the principal does not exist (nothing changed)
        """
        with log_context(operation="offboard", principal=name):
            registry, removed = self.mutator.remove_principal(name)

            rules = [registry.rule(c) for c in removed.categories]
            affected = [
                path for path in self.documents.list_paths()
                if any(rule.matches(path) for rule in rules if rule is not None)
            ]

            report = self.reconciler.reconcile(registry, self.documents)
            result = OffboardResult(removed=removed, reconciliation=report, affected_documents=affected)

            if result.residual_access:
                logger.error(
                    f"'{name}' may still decrypt {len(result.residual_access)} document(s) "
                    "whose re-wrap failed",
                    paths=result.residual_access,
                )

            if rotate_affected:
                to_rotate = []
                for path in affected:
                    if registry.category_of(path) in self.config.rotation_categories:
                        to_rotate.append(path)
                    else:
                        result.rotation_skipped.append(path)
                result.rotation_records, result.rotation_failures = self.rotation.rotate_many(
                    to_rotate, registry, reason=f"offboarding {name}"
                )
                if result.rotation_failures:
                    logger.error(
                        f"{len(result.rotation_failures)} of {len(to_rotate)} rotation(s) failed",
                        paths=[f.path for f in result.rotation_failures],
                    )

            changed = self._export(registry, result.warnings, removed=removed.principal)
            changed += self._changed_documents(report)
            changed += [r.path for r in result.rotation_records]
            result.change_recorded = self._track(
                changed, f"Offboard {name} ({removed.group.value}) from keyward", result.warnings
            )

            self._audit(AuditEntry(
                event=AuditEvent.OFFBOARD,
                principal=name,
                key_fingerprint=fingerprint(removed.public_key),
                outcome=AuditOutcome.SUCCESS if result.ok else AuditOutcome.PARTIAL,
                details={
                    "group": removed.group.value,
                    "affected": len(affected),
                    "failed": [o.path for o in report.failed],
                    "residual_access": result.residual_access,
                    "rotated": [r.path for r in result.rotation_records],
                    "rotation_failed": [f.path for f in result.rotation_failures],
                },
            ), result.warnings)

            return result

    def list_registry(self) -> RegistryListing:
        registry = self.config_store.load()
        return RegistryListing(
            principals_by_group={g: registry.list_by_group(g) for g in Group},
            rules=[
                RuleSummary(
                    category=rule.category,
                    pattern=rule.pattern,
                    groups=rule.to_dict()["groups"],
                    recipients=registry.rule_recipients(rule),
                )
                for rule in registry.rules
            ],
            access={p.name: registry.categories_for(p) for p in registry.principals},
        )

    def verify(self, private_key: str) -> AccessReport:
        """Report what `private_key` can decrypt (accepts key file content)."""
        with log_context(operation="verify"):
            registry = self.config_store.load()
            return self.verifier.verify(read_identity(private_key), self.documents, registry)

    def reconcile(self, dry_run: bool = False) -> ReconciliationReport:
        """Converge every governed document to the current registry."""
        with log_context(operation="reconcile"):
            registry = self.config_store.load()
            report = self.reconciler.reconcile(registry, self.documents, dry_run=dry_run)
            if dry_run:
                return report

            warnings: List[str] = []
            self._track(self._changed_documents(report), "Reconcile keyward documents", warnings)
            self._audit(AuditEntry(
                event=AuditEvent.RECONCILE,
                principal="",
                outcome=AuditOutcome.SUCCESS if report.ok else AuditOutcome.PARTIAL,
                details={
                    "attempted": report.attempted,
                    "changed": report.changed,
                    "failed": [o.path for o in report.failed],
                },
            ), warnings)
            return report

    def rotate(
        self,
        paths: Sequence[str] = (),
        field_selectors: Optional[Sequence[str]] = None,
        reason: str = "manual rotation",
        category: Optional[str] = None,
    ) -> Tuple[List[RotationRecord], List[RotationFailure]]:
        """
        Rotate the given documents, plus every document in `category`.

        Failures are returned, not raised.

        Raises:
            UnknownCategoryError: If `category` names no access rule
        """
        with log_context(operation="rotate"):
            registry = self.config_store.load()
            targets = [normalize_path(p) for p in paths]
            if category is not None:
                selected = registry.documents_in(category, self.documents.list_paths())
                if not selected:
                    logger.warning(f"No documents in category '{category}'")
                targets += [p for p in selected if p not in targets]

            records, failures = self.rotation.rotate_many(
                targets, registry, field_selectors, reason
            )

            warnings: List[str] = []
            self._track([r.path for r in records], f"Rotate secrets ({reason})", warnings)
            self._audit(AuditEntry(
                event=AuditEvent.ROTATE,
                principal="",
                outcome=(
                    AuditOutcome.SUCCESS if not failures
                    else AuditOutcome.PARTIAL if records
                    else AuditOutcome.FAILURE
                ),
                details={
                    "reason": reason,
                    "category": category,
                    "rotated": [r.log_line() for r in records],
                    "failed": [f.path for f in failures],
                },
            ), warnings)
            return records, failures
