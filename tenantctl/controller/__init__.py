"""Reconciliation controller: synchronizer, work queue, status reporter."""

from tenantctl.controller.models import (
    KeyState,
    KindResult,
    ReconcileAction,
    ReconcileResult,
    SyncOutcome,
    SyncResult,
)
from tenantctl.controller.reconciler import TenantController
from tenantctl.controller.status import (
    ReportOutcome,
    ReportResult,
    StatusReporter,
    compute_status,
)
from tenantctl.controller.synchronizer import (
    ResourceSynchronizer,
    build_children,
    quota_hard,
)
from tenantctl.controller.workqueue import ExponentialBackoff, QueueShutDown, WorkQueue

__all__ = [
    "ExponentialBackoff",
    "KeyState",
    "KindResult",
    "QueueShutDown",
    "ReconcileAction",
    "ReconcileResult",
    "ReportOutcome",
    "ReportResult",
    "ResourceSynchronizer",
    "StatusReporter",
    "SyncOutcome",
    "SyncResult",
    "TenantController",
    "WorkQueue",
    "build_children",
    "compute_status",
    "quota_hard",
]
