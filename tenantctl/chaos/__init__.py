"""Fault injection for exercising the controller against an unreliable store.

Example:
    from tenantctl.chaos import FaultConfig, FaultInjectingStore, FaultRule

    config = FaultConfig(
        rules=[FaultRule(operation="create", target="ResourceQuota/*", times=2)],
        seed=42,
    )
    store = FaultInjectingStore(InMemoryClusterStore(), config)
"""

from .models import (
    DEFAULT_FAULT_MESSAGES,
    NON_RETRYABLE_FAULTS,
    FaultConfig,
    FaultProfile,
    FaultRule,
    FaultType,
    LatencyConfig,
    Operation,
    get_profile,
    list_profiles,
)
from .store import FaultInjectingStore

__all__ = [
    "DEFAULT_FAULT_MESSAGES",
    "NON_RETRYABLE_FAULTS",
    "FaultConfig",
    "FaultInjectingStore",
    "FaultProfile",
    "FaultRule",
    "FaultType",
    "LatencyConfig",
    "Operation",
    "get_profile",
    "list_profiles",
]
