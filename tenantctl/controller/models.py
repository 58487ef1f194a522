"""Result and state models for reconciliation passes."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from tenantctl.api.tenant import ResourceKind, TenantStatus


class SyncOutcome(str, Enum):
    """What happened to one child resource during a pass."""

    APPLIED = "applied"
    ALREADY_PRESENT = "already_present"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"

    @property
    def succeeded(self) -> bool:
        return self in (SyncOutcome.APPLIED, SyncOutcome.ALREADY_PRESENT)


class KindResult(BaseModel):
    """Outcome for a single child kind."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    outcome: SyncOutcome
    cause: str | None = None
    retryable: bool = True


class SyncResult(BaseModel):
    """Per-kind outcomes of one Synchronizer run, in creation order."""

    results: list[KindResult] = Field(default_factory=list)

    def get(self, kind: ResourceKind) -> KindResult:
        for result in self.results:
            if result.kind == kind:
                return result
        return KindResult(kind=kind, outcome=SyncOutcome.NOT_ATTEMPTED)

    @property
    def succeeded(self) -> bool:
        return all(self.get(kind).outcome.succeeded for kind in ResourceKind)

    @property
    def failure(self) -> KindResult | None:
        """The first failed kind, if any."""
        for result in self.results:
            if result.outcome == SyncOutcome.FAILED:
                return result
        return None

    @property
    def retryable(self) -> bool:
        failure = self.failure
        return failure is None or failure.retryable


class KeyState(str, Enum):
    """Per-key controller state."""

    IDLE = "Idle"
    QUEUED = "Queued"
    RUNNING = "Running"
    QUEUED_WITH_BACKOFF = "QueuedWithBackoff"
    FAILED = "Failed"


class ReconcileAction(str, Enum):
    """What the controller did with a key after a pass."""

    READY = "ready"
    RETRY = "retry"
    FAILED = "failed"
    STALE = "stale"
    DELETED = "deleted"


class ReconcileResult(BaseModel):
    """Summary of one reconciliation pass."""

    key: str
    action: ReconcileAction
    generation: int | None = None
    status: TenantStatus | None = None
    sync: SyncResult | None = None
    error: str | None = None
    requeue_after: float | None = None
