"""Desired-state stores."""

from tenantctl.store.base import (
    ClusterStore,
    CreateOutcome,
    CreateResult,
    ResourceManifest,
    WatchEvent,
    WatchEventType,
    WriteOutcome,
    WriteResult,
)
from tenantctl.store.manifests import ManifestParser, load_tenant_manifests
from tenantctl.store.memory import InMemoryClusterStore

__all__ = [
    "ClusterStore",
    "CreateOutcome",
    "CreateResult",
    "InMemoryClusterStore",
    "ManifestParser",
    "ResourceManifest",
    "WatchEvent",
    "WatchEventType",
    "WriteOutcome",
    "WriteResult",
    "load_tenant_manifests",
]
