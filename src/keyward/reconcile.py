"""
Reconciliation Orchestrator for Keyward

Walks every governed document, computes the recipient set the registry
says it should have, and asks the gateway to converge the envelope to it.

Documents are independent: they are re-wrapped on a bounded thread pool,
each under its own timeout, and one failure never stops the others. The
call still blocks until every outcome has been collected.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from .documents import DocumentError, DocumentStore
from .gateway import (
    Cancellation,
    EncryptionGateway,
    FailureReason,
    GatewayError,
    GatewayTimeout,
)
from .logging import get_logger, log_context
from .registry import KeyRegistry


logger = get_logger()

NO_RECIPIENTS_WARNING = "no recipients; document is undecryptable until the policy is corrected"


class OutcomeStatus(Enum):
    RECONCILED = "reconciled"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    STALE = "stale"


@dataclass
class DocumentOutcome:
    """Result of reconciling one document."""
    path: str
    status: OutcomeStatus
    category: Optional[str] = None
    recipients: int = 0
    reason: Optional[FailureReason] = None
    message: str = ""
    warning: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "path": self.path,
            "status": self.status.value,
            "category": self.category,
            "recipients": self.recipients,
        }
        if self.reason:
            data["reason"] = self.reason.value
        if self.message:
            data["message"] = self.message
        if self.warning:
            data["warning"] = self.warning
        return data


@dataclass
class ReconciliationReport:
    """Aggregate of per-document outcomes, ordered by path."""
    outcomes: List[DocumentOutcome] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    finished_at: Optional[str] = None

    @property
    def attempted(self) -> int:
        return len(self.outcomes)

    @property
    def reconciled(self) -> int:
        return sum(1 for o in self.outcomes if o.status in (
            OutcomeStatus.RECONCILED, OutcomeStatus.UNCHANGED
        ))

    @property
    def changed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.RECONCILED)

    @property
    def failed(self) -> List[DocumentOutcome]:
        return [o for o in self.outcomes if o.failed]

    @property
    def stale(self) -> List[str]:
        return [o.path for o in self.outcomes if o.status == OutcomeStatus.STALE]

    @property
    def warnings(self) -> List[str]:
        return [f"{o.path}: {o.warning}" for o in self.outcomes if o.warning]

    @property
    def ok(self) -> bool:
        return not self.failed

    def outcome(self, path: str) -> Optional[DocumentOutcome]:
        for o in self.outcomes:
            if o.path == path:
                return o
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "reconciled": self.reconciled,
            "changed": self.changed,
            "failed": [o.to_dict() for o in self.failed],
            "warnings": self.warnings,
            "skipped": list(self.skipped),
            "ok": self.ok,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "documents": [o.to_dict() for o in self.outcomes],
        }


def call_with_timeout(
    fn: Callable,
    timeout: Optional[float],
    *args,
    path: str = "",
    cancellation: Optional[Cancellation] = None,
):
    """
    Run fn(*args) in a watchdog thread; raise GatewayTimeout if it overruns.

    The worker thread is a daemon and is abandoned on timeout. When a
    `cancellation` is given it is cancelled first, so the abandoned worker
    cannot write; if the worker already committed its write, the call waits
    for it and returns its result instead.
    """
    if not timeout:
        return fn(*args)

    result: Dict[str, Any] = {}

    def target():
        try:
            result["value"] = fn(*args)
        except BaseException as e:
            result["error"] = e

    worker = threading.Thread(target=target, name=f"keyward-rewrap:{path}", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        if cancellation is None or cancellation.cancel():
            raise GatewayTimeout(f"Re-wrap did not finish within {timeout}s", path)
        worker.join()
    if "error" in result:
        raise result["error"]
    return result.get("value")


class Reconciler:
    """
    Converges document envelopes to the registry.

    Usage:
        reconciler = Reconciler(gateway, max_workers=4, timeout=30.0)
        report = reconciler.reconcile(registry, store)
        for outcome in report.failed:
            print(outcome.path, outcome.reason.value)
    """

    def __init__(
        self,
        gateway: EncryptionGateway,
        max_workers: int = 4,
        timeout: Optional[float] = 30.0,
    ):
        self.gateway = gateway
        self.max_workers = max(1, int(max_workers))
        self.timeout = timeout

    def _governed(
        self,
        registry: KeyRegistry,
        store: DocumentStore,
        paths: Optional[Iterable[str]],
        report: ReconciliationReport,
    ) -> List[str]:
        candidates = sorted(set(paths)) if paths is not None else store.list_paths()
        governed = []
        for path in candidates:
            if registry.is_governed(path):
                governed.append(path)
            else:
                report.skipped.append(path)
        return governed

    def _reconcile_one(self, registry: KeyRegistry, path: str, dry_run: bool) -> DocumentOutcome:
        expected = registry.recipient_keys(path)
        outcome = DocumentOutcome(
            path=path,
            status=OutcomeStatus.UNCHANGED,
            category=registry.category_of(path),
            recipients=len(expected),
        )
        if not expected:
            outcome.warning = NO_RECIPIENTS_WARNING

        with log_context(document=path):
            try:
                if dry_run:
                    current = call_with_timeout(
                        self.gateway.recipients, self.timeout, path, path=path
                    )
                    if sorted(current) != expected:
                        outcome.status = OutcomeStatus.STALE
                else:
                    cancellation = Cancellation()
                    changed = call_with_timeout(
                        self.gateway.rewrap, self.timeout, path, expected, cancellation,
                        path=path, cancellation=cancellation,
                    )
                    if changed:
                        outcome.status = OutcomeStatus.RECONCILED
            except GatewayError as e:
                outcome.status = OutcomeStatus.FAILED
                outcome.reason = e.reason
                outcome.message = str(e)
            except (DocumentError, OSError) as e:
                outcome.status = OutcomeStatus.FAILED
                outcome.reason = FailureReason.UNAVAILABLE
                outcome.message = str(e)
            except Exception as e:
                logger.exception(f"Unexpected error reconciling {path}")
                outcome.status = OutcomeStatus.FAILED
                outcome.reason = FailureReason.MALFORMED
                outcome.message = f"{type(e).__name__}: {e}"

            if outcome.failed:
                logger.warning(
                    f"Failed to reconcile {path}: {outcome.message}",
                    reason=outcome.reason.value,
                )
            elif outcome.warning:
                logger.warning(f"{path}: {outcome.warning}")

        return outcome

    def reconcile(
        self,
        registry: KeyRegistry,
        store: DocumentStore,
        paths: Optional[Iterable[str]] = None,
        dry_run: bool = False,
    ) -> ReconciliationReport:
        """
        Reconcile every governed document (or just `paths`).

        With dry_run=True nothing is re-wrapped; documents whose recipients
        differ from the registry are reported as stale.
        """
        report = ReconciliationReport()
        governed = self._governed(registry, store, paths, report)

        if governed:
            workers = min(self.max_workers, len(governed))
            with logger.timed(f"reconcile {len(governed)} document(s) on {workers} worker(s)"):
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="keyward") as pool:
                    futures = [
                        pool.submit(self._reconcile_one, registry, path, dry_run)
                        for path in governed
                    ]
                    report.outcomes = [f.result() for f in futures]

        report.outcomes.sort(key=lambda o: o.path)
        report.finished_at = datetime.now().isoformat()

        logger.info(
            f"Reconciliation {'check ' if dry_run else ''}finished: "
            f"{report.reconciled}/{report.attempted} reconciled, "
            f"{len(report.failed)} failed, {len(report.skipped)} skipped",
            changed=report.changed,
            stale=len(report.stale),
        )
        return report
