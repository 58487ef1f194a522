"""Status Reporter.

Computes a Tenant's status block from the previous status and a pass
result, writes it back through the store, and keeps the operator's
in-memory view of every key.

A status is only written if no newer generation of the tenant has been
observed since the pass started; otherwise the write is discarded as stale
and the caller queues a fresh pass.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel

from tenantctl.api.tenant import LEDGER_FIELDS, Phase, ResourceKind, TenantStatus
from tenantctl.controller.models import SyncOutcome, SyncResult
from tenantctl.core.metrics import record_status_write
from tenantctl.store.base import ClusterStore, WriteOutcome

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


class ReportOutcome(str, Enum):
    WRITTEN = "written"
    STALE = "stale"
    CONFLICT = "conflict"
    ERROR = "error"


class ReportResult(BaseModel):
    outcome: ReportOutcome
    cause: str | None = None

    @property
    def written(self) -> bool:
        return self.outcome == ReportOutcome.WRITTEN


def compute_status(
    previous: TenantStatus,
    generation: int,
    sync: SyncResult | None = None,
    error: str | None = None,
    now: str | None = None,
) -> TenantStatus:
    """Derive the status for a finished pass.

    Args:
        previous: Status before the pass; supplies ledger values for kinds
            the pass did not attempt.
        generation: Tenant generation read at the start of the pass.
        sync: Synchronizer result, or None if the spec failed validation.
        error: Validation error message when ``sync`` is None.
        now: Timestamp override.

    Returns:
        The new status.
    """
    update: dict[str, object] = {
        "observed_generation": generation,
        "last_reconcile_time": now or utc_now(),
    }

    if sync is None:
        # Validation failure: nothing was attempted, the ledger stands
        update["phase"] = Phase.FAILED
        update["last_error"] = error or "invalid tenant spec"
        return previous.model_copy(update=update)

    for kind in ResourceKind:
        outcome = sync.get(kind).outcome
        if outcome.succeeded:
            update[LEDGER_FIELDS[kind]] = True
        elif outcome == SyncOutcome.FAILED:
            update[LEDGER_FIELDS[kind]] = False

    failure = sync.failure
    if failure is None:
        update["phase"] = Phase.READY
        update["last_error"] = None
    else:
        update["phase"] = Phase.RECONCILING if failure.retryable else Phase.FAILED
        update["last_error"] = f"{failure.kind.value}: {failure.cause}"

    return previous.model_copy(update=update)


class StatusReporter:
    """Writes status blocks and tracks the operator view."""

    def __init__(
        self,
        store: ClusterStore,
        call_timeout: float = 10.0,
        clock: Callable[[], str] = utc_now,
    ) -> None:
        self.store = store
        self.call_timeout = call_timeout
        self.clock = clock
        self._observed: dict[str, int] = {}
        self._uids: dict[str, str] = {}
        self._view: dict[str, TenantStatus] = {}

    # ----- Generation tracking -----

    def observe(self, name: str, generation: int, uid: str | None = None) -> bool:
        """Record a generation seen for ``name``.

        A uid different from the one last seen means the tenant was deleted
        and recreated under the same name; everything known about the old
        object is dropped first.

        Returns:
            True if it is newer than anything seen before.
        """
        known_uid = self._uids.get(name)
        if uid is not None and known_uid is not None and uid != known_uid:
            logger.info("Tenant %s was recreated (uid %s -> %s)", name, known_uid, uid)
            self.forget(name)
        if uid is not None:
            self._uids[name] = uid

        if generation > self._observed.get(name, 0):
            self._observed[name] = generation
            return True
        return False

    def observed_generation(self, name: str) -> int:
        return self._observed.get(name, 0)

    def tracked(self) -> set[str]:
        """Names with at least one observed generation."""
        return set(self._observed)

    def is_stale(self, name: str, generation: int) -> bool:
        return self._observed.get(name, 0) > generation

    # ----- Operator view -----

    def mark_pending(self, name: str) -> None:
        """Show a queued key that has never been processed as Pending."""
        self._view.setdefault(name, TenantStatus(phase=Phase.PENDING))

    def mark_running(self, name: str, previous: TenantStatus | None = None) -> None:
        base = self._view.get(name) or previous or TenantStatus()
        self._view[name] = base.model_copy(update={"phase": Phase.RECONCILING})

    def get(self, name: str) -> TenantStatus | None:
        return self._view.get(name)

    def snapshot(self) -> dict[str, TenantStatus]:
        return dict(self._view)

    def forget(self, name: str) -> None:
        self._view.pop(name, None)
        self._observed.pop(name, None)
        self._uids.pop(name, None)

    # ----- Reporting -----

    def compute(
        self,
        previous: TenantStatus,
        generation: int,
        sync: SyncResult | None = None,
        error: str | None = None,
    ) -> TenantStatus:
        return compute_status(
            previous, generation, sync=sync, error=error, now=self.clock()
        )

    async def report(
        self, name: str, status: TenantStatus, generation: int
    ) -> ReportResult:
        """Write ``status`` unless a newer generation has been observed."""
        if self.is_stale(name, generation):
            logger.info(
                "Discarding stale status for %s: computed for generation %d, "
                "generation %d observed",
                name,
                generation,
                self.observed_generation(name),
            )
            record_status_write(ReportOutcome.STALE.value)
            return ReportResult(outcome=ReportOutcome.STALE)

        try:
            written = await asyncio.wait_for(
                self.store.write_status(name, status.to_dict(), generation),
                timeout=self.call_timeout,
            )
        except TimeoutError:
            result = ReportResult(
                outcome=ReportOutcome.ERROR,
                cause=f"status write timed out after {self.call_timeout}s",
            )
        else:
            if written.outcome == WriteOutcome.OK:
                result = ReportResult(outcome=ReportOutcome.WRITTEN)
            elif written.outcome == WriteOutcome.CONFLICT:
                result = ReportResult(
                    outcome=ReportOutcome.CONFLICT, cause=written.cause
                )
            else:
                result = ReportResult(outcome=ReportOutcome.ERROR, cause=written.cause)

        record_status_write(result.outcome.value)
        if result.written:
            self._view[name] = status
        else:
            logger.warning(
                "Status write for %s failed (%s): %s",
                name,
                result.outcome.value,
                result.cause,
            )
            self._view[name] = status.model_copy(
                update={
                    "phase": Phase.RECONCILING,
                    "last_error": f"status write {result.outcome.value}: "
                    f"{result.cause}",
                }
            )
        return result
