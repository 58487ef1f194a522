"""In-memory desired-state store.

Backs the ``memory`` backend of the CLI and the test-suite. It behaves like
a small API server: objects are keyed by kind/namespace/name, namespaced
creates need their namespace, the Tenant generation only moves when the
spec changes, and deleting a Tenant garbage-collects everything that lists
it as owner.
"""

import asyncio
import copy
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

from tenantctl.api.tenant import ResourceKind, TenantRecord
from tenantctl.core.exceptions import StoreError
from tenantctl.store.base import (
    ClusterStore,
    CreateResult,
    ResourceManifest,
    WatchEvent,
    WatchEventType,
    WriteOutcome,
    WriteResult,
)

logger = logging.getLogger(__name__)

ObjectKey = tuple[str, str | None, str]


class InMemoryClusterStore(ClusterStore):
    """Thread-unsafe, event-loop-local store for tests and local runs."""

    def __init__(self, tenants: list[TenantRecord] | None = None) -> None:
        self._tenants: dict[str, TenantRecord] = {}
        self._objects: dict[ObjectKey, dict[str, Any]] = {}
        self._watchers: list[asyncio.Queue[WatchEvent | None]] = []
        self._closed = False
        self.create_calls: list[ResourceManifest] = []
        self.status_writes: list[tuple[str, dict[str, Any], int]] = []
        for record in tenants or []:
            self.apply_tenant(record.name, record.spec)

    @property
    def store_type(self) -> str:
        return "memory"

    # ----- Tenant lifecycle (the "user" side of the store) -----

    def apply_tenant(self, name: str, spec: dict[str, Any]) -> TenantRecord:
        """Create a Tenant or update its spec, like ``kubectl apply``.

        The generation is bumped only when the spec actually changes.
        """
        current = self._tenants.get(name)
        if current is None:
            record = TenantRecord(
                name=name,
                generation=1,
                uid=str(uuid.uuid4()),
                resource_version="1",
                spec=copy.deepcopy(spec),
            )
            self._tenants[name] = record
            self._emit(WatchEventType.ADDED, record)
            return record

        if current.spec == spec:
            return current

        record = current.model_copy(
            update={
                "generation": current.generation + 1,
                "resource_version": self._next_version(current),
                "spec": copy.deepcopy(spec),
            }
        )
        self._tenants[name] = record
        self._emit(WatchEventType.MODIFIED, record)
        return record

    def delete_tenant(self, name: str) -> bool:
        """Delete a Tenant and garbage-collect the objects it owns."""
        record = self._tenants.pop(name, None)
        if record is None:
            return False

        owned = [
            key
            for key, body in self._objects.items()
            if _owner_uid(body) == record.uid
            or (key[1] is not None and key[1] == name)
        ]
        for key in owned:
            del self._objects[key]
        logger.debug("Deleted tenant %s and %d owned objects", name, len(owned))
        self._emit(WatchEventType.DELETED, record)
        return True

    # ----- ClusterStore -----

    async def list_tenants(self) -> list[TenantRecord]:
        return [record.model_copy(deep=True) for record in self._tenants.values()]

    async def get_tenant(self, name: str) -> TenantRecord | None:
        record = self._tenants.get(name)
        return record.model_copy(deep=True) if record else None

    async def watch(self) -> AsyncIterator[WatchEvent]:
        if self._closed:
            raise StoreError("store is closed", retryable=False)
        queue: asyncio.Queue[WatchEvent | None] = asyncio.Queue()
        self._watchers.append(queue)
        try:
            while not self._closed:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            self._watchers.remove(queue)

    async def create(self, manifest: ResourceManifest) -> CreateResult:
        self.create_calls.append(manifest)
        if manifest.key in self._objects:
            return CreateResult.already_exists()
        if manifest.namespaced:
            ns_key = (ResourceKind.NAMESPACE.value, None, manifest.namespace)
            if ns_key not in self._objects:
                return CreateResult.error(
                    f"namespaces \"{manifest.namespace}\" not found", retryable=True
                )
        self._objects[manifest.key] = copy.deepcopy(manifest.body)
        return CreateResult.created()

    async def write_status(
        self, name: str, status: dict[str, Any], generation: int
    ) -> WriteResult:
        self.status_writes.append((name, copy.deepcopy(status), generation))
        current = self._tenants.get(name)
        if current is None:
            return WriteResult(
                outcome=WriteOutcome.ERROR, cause=f"tenant {name!r} not found"
            )
        if current.generation != generation:
            return WriteResult(
                outcome=WriteOutcome.CONFLICT,
                cause=(
                    f"tenant {name!r} is at generation {current.generation}, "
                    f"status computed for {generation}"
                ),
            )
        record = current.model_copy(
            update={
                "status": copy.deepcopy(status),
                "resource_version": self._next_version(current),
            }
        )
        self._tenants[name] = record
        self._emit(WatchEventType.MODIFIED, record)
        return WriteResult(outcome=WriteOutcome.OK)

    async def close(self) -> None:
        self._closed = True
        for queue in self._watchers:
            queue.put_nowait(None)

    # ----- Inspection helpers -----

    def get_object(
        self, kind: ResourceKind, name: str, namespace: str | None = None
    ) -> dict[str, Any] | None:
        body = self._objects.get((kind.value, namespace, name))
        return copy.deepcopy(body) if body is not None else None

    def delete_object(
        self, kind: ResourceKind, name: str, namespace: str | None = None
    ) -> bool:
        """Remove a child object behind the controller's back."""
        return self._objects.pop((kind.value, namespace, name), None) is not None

    def objects(self) -> dict[ObjectKey, dict[str, Any]]:
        return copy.deepcopy(self._objects)

    def tenant_status(self, name: str) -> dict[str, Any] | None:
        record = self._tenants.get(name)
        return copy.deepcopy(record.status) if record else None

    def _emit(self, event_type: WatchEventType, record: TenantRecord) -> None:
        event = WatchEvent(type=event_type, record=record.model_copy(deep=True))
        for queue in self._watchers:
            queue.put_nowait(event)

    @staticmethod
    def _next_version(record: TenantRecord) -> str:
        return str(int(record.resource_version or "0") + 1)


def _owner_uid(body: dict[str, Any]) -> str | None:
    refs = body.get("metadata", {}).get("ownerReferences") or []
    return refs[0].get("uid") if refs else None
