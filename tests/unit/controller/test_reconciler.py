"""Tests for the Reconciliation Controller, driven one pass at a time."""

import asyncio
from collections.abc import AsyncIterator, Callable, Iterator
from typing import Any

import pytest

from tenantctl.api.tenant import Phase, ResourceKind, TenantRecord
from tenantctl.chaos import FaultConfig, FaultInjectingStore, FaultRule, FaultType
from tenantctl.chaos.models import Operation
from tenantctl.controller import KeyState, ReconcileAction, TenantController
from tenantctl.core.exceptions import ControllerError
from tenantctl.store import (
    CreateResult,
    InMemoryClusterStore,
    ResourceManifest,
    WatchEvent,
    WatchEventType,
)

ControllerFactory = Callable[..., TenantController]


class HookStore(InMemoryClusterStore):
    """Runs a callback once, right after the RoleBinding is created."""

    def __init__(self) -> None:
        super().__init__()
        self.hook: Callable[[], None] | None = None

    async def create(self, manifest: ResourceManifest) -> CreateResult:
        result = await super().create(manifest)
        if manifest.kind == ResourceKind.ROLE_BINDING and self.hook is not None:
            hook, self.hook = self.hook, None
            hook()
        return result


class ExplodingStore(InMemoryClusterStore):
    async def get_tenant(self, name: str) -> TenantRecord | None:
        raise RuntimeError("unexpected")


class SlowReadStore(InMemoryClusterStore):
    async def get_tenant(self, name: str) -> TenantRecord | None:
        await asyncio.sleep(1)
        return await super().get_tenant(name)


class CrashingListStore(InMemoryClusterStore):
    """The second list call, the first resync, fails with a non-store error."""

    def __init__(self) -> None:
        super().__init__()
        self.list_calls = 0

    async def list_tenants(self) -> list[TenantRecord]:
        self.list_calls += 1
        if self.list_calls == 2:
            raise RuntimeError("malformed list response")
        return await super().list_tenants()


class CrashingWatchStore(InMemoryClusterStore):
    """The first watch attempt fails with a non-store error."""

    def __init__(self) -> None:
        super().__init__()
        self.watch_attempts = 0

    async def watch(self) -> AsyncIterator[WatchEvent]:
        self.watch_attempts += 1
        if self.watch_attempts == 1:
            raise RuntimeError("malformed watch event")
        async for event in super().watch():
            yield event


async def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def _faulty(store: InMemoryClusterStore, *rules: FaultRule) -> FaultInjectingStore:
    return FaultInjectingStore(store, FaultConfig(rules=list(rules)))


@pytest.fixture
def controllers() -> Iterator[list[TenantController]]:
    """Shut down the queues of controllers built in a test."""
    built: list[TenantController] = []
    yield built
    for controller in built:
        controller.queue.shut_down()


@pytest.fixture
def build(
    make_controller: ControllerFactory, controllers: list[TenantController]
) -> ControllerFactory:
    def _build(store: Any, **overrides: Any) -> TenantController:
        controller = make_controller(store, **overrides)
        controllers.append(controller)
        return controller

    return _build


class TestConvergence:
    """Tests for passes that reach Ready."""

    @pytest.mark.anyio
    async def test_single_pass_reaches_ready(
        self,
        memory_store: InMemoryClusterStore,
        build: ControllerFactory,
        candidate_spec: dict[str, Any],
    ) -> None:
        memory_store.apply_tenant("candidate", candidate_spec)
        controller = build(memory_store)

        result = await controller.reconcile("candidate")

        assert result.action == ReconcileAction.READY
        status = memory_store.tenant_status("candidate")
        assert status is not None
        assert status["phase"] == "Ready"
        assert status["observedGeneration"] == 1
        assert all(
            status[field]
            for field in (
                "namespaceCreated",
                "quotaApplied",
                "networkPolicyApplied",
                "rbacApplied",
            )
        )
        quota = memory_store.get_object(
            ResourceKind.RESOURCE_QUOTA, "tenant-quota", "candidate"
        )
        assert quota is not None
        assert quota["spec"]["hard"]["pods"] == "200"
        assert controller.key_state("candidate") == KeyState.IDLE

    @pytest.mark.anyio
    async def test_repeat_pass_is_idempotent(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        memory_store.apply_tenant("acme", {"owner": "team-a"})
        controller = build(memory_store)
        await controller.reconcile("acme")
        objects = memory_store.objects()

        result = await controller.reconcile("acme")

        assert result.action == ReconcileAction.READY
        assert memory_store.objects() == objects


class TestTransientFailures:
    """Tests for failures that are retried with backoff."""

    @pytest.mark.anyio
    async def test_partial_ledger_then_recovery(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        """Test a failed NetworkPolicy leaves a partial ledger and a retry."""
        memory_store.apply_tenant("acme", {"owner": "team-a"})
        store = _faulty(
            memory_store,
            FaultRule(operation=Operation.CREATE, target="NetworkPolicy/*", times=1),
        )
        controller = build(store)

        first = await controller.reconcile("acme")

        assert first.action == ReconcileAction.RETRY
        assert first.requeue_after == pytest.approx(0.01)
        status = memory_store.tenant_status("acme")
        assert status is not None
        assert status["phase"] == "Reconciling"
        assert status["namespaceCreated"] is True
        assert status["quotaApplied"] is True
        assert status["networkPolicyApplied"] is False
        assert status["rbacApplied"] is False
        assert status["lastError"].startswith("NetworkPolicy: ")
        assert controller.key_state("acme") == KeyState.QUEUED_WITH_BACKOFF

        second = await controller.reconcile("acme")

        assert second.action == ReconcileAction.READY
        status = memory_store.tenant_status("acme")
        assert status is not None
        assert status["phase"] == "Ready"
        assert "lastError" not in status
        assert controller.backoff.failures("acme") == 0

    @pytest.mark.anyio
    async def test_backoff_grows(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        memory_store.apply_tenant("acme", {"owner": "team-a"})
        store = _faulty(memory_store, FaultRule(operation=Operation.CREATE))
        controller = build(store)

        delays = [(await controller.reconcile("acme")).requeue_after for _ in range(4)]

        assert delays == pytest.approx([0.01, 0.02, 0.04, 0.05])

    @pytest.mark.anyio
    async def test_read_failure_retries(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        memory_store.apply_tenant("acme", {"owner": "team-a"})
        store = _faulty(
            memory_store,
            FaultRule(
                operation=Operation.GET, fault=FaultType.CONNECTION_ERROR, times=1
            ),
        )
        controller = build(store)

        result = await controller.reconcile("acme")

        assert result.action == ReconcileAction.RETRY
        assert memory_store.create_calls == []
        assert controller.queue.has_delayed("acme")

    @pytest.mark.anyio
    async def test_read_timeout_retries(self, build: ControllerFactory) -> None:
        """Test a hung tenant read is bounded and retried with backoff."""
        store = SlowReadStore()
        store.apply_tenant("acme", {"owner": "team-a"})
        controller = build(store, call_timeout=0.05)

        result = await controller.reconcile("acme")

        assert result.action == ReconcileAction.RETRY
        assert result.error is not None
        assert "timed out" in result.error
        assert store.create_calls == []
        assert controller.queue.has_delayed("acme")

    @pytest.mark.anyio
    async def test_status_write_conflict_retries(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        memory_store.apply_tenant("acme", {"owner": "team-a"})
        store = _faulty(
            memory_store,
            FaultRule(
                operation=Operation.WRITE_STATUS, fault=FaultType.CONFLICT, times=1
            ),
        )
        controller = build(store)

        result = await controller.reconcile("acme")

        assert result.action == ReconcileAction.RETRY
        view = controller.get_status("acme")
        assert view is not None
        assert view.phase == Phase.RECONCILING
        assert (view.last_error or "").startswith("status write conflict")
        assert memory_store.tenant_status("acme") is None

    @pytest.mark.anyio
    async def test_unexpected_exception_is_contained(
        self, build: ControllerFactory
    ) -> None:
        store = ExplodingStore()
        controller = build(store)

        assert await controller.process("acme") is None
        assert controller.queue.has_delayed("acme")


class TestTerminalFailures:
    """Tests for failures that wait for a spec change."""

    @pytest.mark.anyio
    async def test_invalid_spec_short_circuits(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        """Test validation failure creates nothing and is not retried."""
        memory_store.apply_tenant(
            "broken", {"owner": "team-b", "quota": {"cpu": "not-a-number"}}
        )
        controller = build(memory_store)

        result = await controller.reconcile("broken")

        assert result.action == ReconcileAction.FAILED
        assert memory_store.create_calls == []
        status = memory_store.tenant_status("broken")
        assert status is not None
        assert status["phase"] == "Failed"
        assert status["lastError"].startswith("quota.cpu:")
        assert status["namespaceCreated"] is False
        assert controller.key_state("broken") == KeyState.FAILED

    @pytest.mark.anyio
    async def test_non_retryable_create_not_requeued(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        memory_store.apply_tenant("acme", {"owner": "team-a"})
        store = _faulty(
            memory_store,
            FaultRule(
                operation=Operation.CREATE,
                target="RoleBinding/*",
                fault=FaultType.FORBIDDEN,
            ),
        )
        controller = build(store)

        result = await controller.reconcile("acme")

        assert result.action == ReconcileAction.FAILED
        assert not controller.queue.has_delayed("acme")
        status = memory_store.tenant_status("acme")
        assert status is not None
        assert status["phase"] == "Failed"
        assert status["networkPolicyApplied"] is True
        assert status["rbacApplied"] is False

    @pytest.mark.anyio
    async def test_resync_skips_failed_key(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        memory_store.apply_tenant("broken", {"owner": "x", "quota": {"cpu": "bad"}})
        memory_store.apply_tenant("acme", {"owner": "team-a"})
        controller = build(memory_store)
        await controller.relist()
        for key in ("acme", "broken"):
            await controller.reconcile(key)
            controller.queue.done(await controller.queue.get())

        await controller.resync()

        assert controller.queue.is_queued("acme")
        assert not controller.queue.is_queued("broken")

    @pytest.mark.anyio
    async def test_spec_change_clears_failure(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        """Test a corrected spec re-triggers a failed tenant."""
        memory_store.apply_tenant("broken", {"owner": "x", "quota": {"cpu": "bad"}})
        controller = build(memory_store)
        await controller.reconcile("broken")
        assert controller.key_state("broken") == KeyState.FAILED

        record = memory_store.apply_tenant("broken", {"owner": "x"})
        controller.handle_event(WatchEvent(type=WatchEventType.MODIFIED, record=record))

        assert controller.key_state("broken") == KeyState.QUEUED
        result = await controller.reconcile("broken")
        assert result.action == ReconcileAction.READY
        assert result.generation == 2


class TestGenerations:
    """Tests for generation tracking and stale writes."""

    @pytest.mark.anyio
    async def test_stale_status_discarded(self, build: ControllerFactory) -> None:
        """Test a spec change mid-pass discards the old status and requeues."""
        store = HookStore()
        store.apply_tenant("acme", {"owner": "team-a"})
        controller = build(store)

        def bump() -> None:
            record = store.apply_tenant("acme", {"owner": "team-b"})
            controller.handle_event(
                WatchEvent(type=WatchEventType.MODIFIED, record=record)
            )

        store.hook = bump
        result = await controller.reconcile("acme")

        assert result.action == ReconcileAction.STALE
        assert store.status_writes == []
        assert controller.queue.is_queued("acme")

        result = await controller.reconcile("acme")

        assert result.action == ReconcileAction.READY
        status = store.tenant_status("acme")
        assert status is not None
        assert status["observedGeneration"] == 2

    @pytest.mark.anyio
    async def test_status_only_update_ignored(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        memory_store.apply_tenant("acme", {"owner": "team-a"})
        controller = build(memory_store)
        await controller.relist()
        controller.queue.done(await controller.queue.get())

        await controller.reconcile("acme")
        record = await memory_store.get_tenant("acme")
        assert record is not None
        controller.handle_event(WatchEvent(type=WatchEventType.MODIFIED, record=record))

        assert not controller.queue.is_queued("acme")

    @pytest.mark.anyio
    async def test_events_coalesce(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        controller = build(memory_store)
        for generation in range(1, 6):
            record = TenantRecord(name="acme", generation=generation)
            controller.handle_event(
                WatchEvent(type=WatchEventType.MODIFIED, record=record)
            )

        assert len(controller.queue) == 1
        assert controller.reporter.observed_generation("acme") == 5


    @pytest.mark.anyio
    async def test_recreated_tenant_reconciled(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        """Test a tenant deleted and recreated unseen is treated as a new object."""
        for owner in ("team-a", "team-b", "team-c"):
            memory_store.apply_tenant("acme", {"owner": owner})
        controller = build(memory_store)
        await controller.relist()
        assert (await controller.reconcile("acme")).action == ReconcileAction.READY

        memory_store.delete_tenant("acme")
        memory_store.apply_tenant("acme", {"owner": "team-d"})
        await controller.relist()

        assert controller.reporter.observed_generation("acme") == 1
        result = await controller.reconcile("acme")

        assert result.action == ReconcileAction.READY
        assert result.generation == 1
        status = memory_store.tenant_status("acme")
        assert status is not None
        assert status["phase"] == "Ready"
        assert status["observedGeneration"] == 1
        assert len(memory_store.objects()) == 4

    @pytest.mark.anyio
    async def test_recreated_tenant_clears_failure(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        memory_store.apply_tenant("acme", {"owner": "team-a", "quota": {"cpu": "x"}})
        controller = build(memory_store)
        await controller.reconcile("acme")
        assert controller.key_state("acme") == KeyState.FAILED

        memory_store.delete_tenant("acme")
        memory_store.apply_tenant("acme", {"owner": "team-a"})
        result = await controller.reconcile("acme")

        assert result.action == ReconcileAction.READY
        assert controller.key_state("acme") != KeyState.FAILED


class TestDeletion:
    """Tests for tenant deletion."""

    @pytest.mark.anyio
    async def test_missing_tenant_dropped(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        controller = build(memory_store)
        controller.enqueue("ghost")

        result = await controller.reconcile("ghost")

        assert result.action == ReconcileAction.DELETED
        assert controller.get_status("ghost") is None
        assert memory_store.status_writes == []

    @pytest.mark.anyio
    async def test_delete_event_drops_bookkeeping(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        memory_store.apply_tenant("acme", {"owner": "team-a"})
        store = _faulty(memory_store, FaultRule(operation=Operation.CREATE))
        controller = build(store)
        await controller.reconcile("acme")
        assert controller.queue.has_delayed("acme")

        record = await memory_store.get_tenant("acme")
        assert record is not None
        memory_store.delete_tenant("acme")
        controller.handle_event(WatchEvent(type=WatchEventType.DELETED, record=record))

        assert not controller.queue.has_delayed("acme")
        assert controller.backoff.failures("acme") == 0
        assert controller.get_status("acme") is None
        assert controller.reporter.tracked() == set()

    @pytest.mark.anyio
    async def test_relist_forgets_vanished(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        memory_store.apply_tenant("acme", {"owner": "team-a"})
        controller = build(memory_store)
        await controller.relist()
        memory_store.delete_tenant("acme")

        await controller.relist()

        assert controller.get_status("acme") is None


class TestLifecycle:
    """Tests for controller construction and start/stop."""

    def test_requires_a_worker(self, memory_store: InMemoryClusterStore) -> None:
        with pytest.raises(ValueError):
            TenantController(memory_store, workers=0)

    @pytest.mark.anyio
    async def test_start_twice(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        controller = build(memory_store)
        await controller.start()
        try:
            with pytest.raises(ControllerError):
                await controller.start()
        finally:
            await controller.stop()

    @pytest.mark.anyio
    async def test_enqueue_shows_pending(
        self, memory_store: InMemoryClusterStore, build: ControllerFactory
    ) -> None:
        controller = build(memory_store)
        controller.enqueue("acme")

        status = controller.get_status("acme")
        assert status is not None
        assert status.phase == Phase.PENDING
        assert controller.key_state("acme") == KeyState.QUEUED

    @pytest.mark.anyio
    async def test_resync_survives_unexpected_error(
        self, build: ControllerFactory
    ) -> None:
        """Test the periodic resync keeps running after a non-store error."""
        store = CrashingListStore()
        store.apply_tenant("acme", {"owner": "team-a"})
        controller = build(store, resync_interval=0.02)

        await controller.start()
        try:
            await _wait_for(lambda: store.list_calls >= 4)
            assert controller.running
        finally:
            await controller.stop()

    @pytest.mark.anyio
    async def test_watch_survives_unexpected_error(
        self, build: ControllerFactory
    ) -> None:
        store = CrashingWatchStore()
        controller = build(store)

        await controller.start()
        try:
            await _wait_for(lambda: store.watch_attempts >= 2)
            store.apply_tenant("acme", {"owner": "team-a"})
            await asyncio.sleep(0.02)
            assert await controller.wait_until_idle(timeout=5)

            status = store.tenant_status("acme")
            assert status is not None
            assert status["phase"] == "Ready"
        finally:
            await controller.stop()
