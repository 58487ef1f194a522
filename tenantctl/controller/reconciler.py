"""Reconciliation Controller.

Watches Tenant objects, queues their names and runs a fixed pool of
workers over the queue. Each pass reads the tenant fresh, validates it,
runs the Synchronizer once and hands the result to the Status Reporter.

Per-key lifecycle::

    Idle -> Queued -> Running -> Idle               (Ready)
                              -> QueuedWithBackoff  (transient failure)
                              -> Failed             (until the spec changes)
"""

import asyncio
import logging
from collections.abc import Iterable

from tenantctl.api.tenant import Phase, Tenant, TenantStatus
from tenantctl.controller.models import (
    KeyState,
    ReconcileAction,
    ReconcileResult,
    SyncResult,
)
from tenantctl.controller.status import ReportOutcome, StatusReporter
from tenantctl.controller.synchronizer import ResourceSynchronizer
from tenantctl.controller.workqueue import ExponentialBackoff, QueueShutDown, WorkQueue
from tenantctl.core.exceptions import ControllerError, StoreError, TenantValidationError
from tenantctl.core.logging import reconcile_context
from tenantctl.core.metrics import record_reconcile, record_retry
from tenantctl.store.base import ClusterStore, WatchEvent, WatchEventType

logger = logging.getLogger(__name__)


class TenantController:
    """Level-triggered controller for Tenant objects."""

    def __init__(
        self,
        store: ClusterStore,
        workers: int = 4,
        resync_interval: float = 300.0,
        backoff_initial: float = 1.0,
        backoff_max: float = 300.0,
        call_timeout: float = 10.0,
        synchronizer: ResourceSynchronizer | None = None,
        reporter: StatusReporter | None = None,
        watch_retry_max: float = 30.0,
    ) -> None:
        """
        Initialize the controller.

        Args:
            store: Desired-state store shared by every component.
            workers: Number of concurrent workers.
            resync_interval: Seconds between periodic resyncs; 0 disables them.
            backoff_initial: First retry delay after a transient failure.
            backoff_max: Retry delay cap.
            call_timeout: Timeout for each tenant read, create and status write.
            synchronizer: Override the default synchronizer.
            reporter: Override the default status reporter.
            watch_retry_max: Cap for the delay between watch reconnects.
        """
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.store = store
        self.workers = workers
        self.resync_interval = resync_interval
        self.watch_retry_initial = backoff_initial
        self.watch_retry_max = watch_retry_max
        self.call_timeout = call_timeout
        self.synchronizer = synchronizer or ResourceSynchronizer(
            store, call_timeout=call_timeout
        )
        self.reporter = reporter or StatusReporter(store, call_timeout=call_timeout)
        self.backoff: ExponentialBackoff[str] = ExponentialBackoff(
            initial=backoff_initial, maximum=backoff_max
        )
        self.queue: WorkQueue[str] = WorkQueue()

        # Key -> generation at which it failed terminally
        self._failed: dict[str, int] = {}
        self._worker_tasks: list[asyncio.Task[None]] = []
        self._background_tasks: list[asyncio.Task[None]] = []
        self._started = False

    # ----- Lifecycle -----

    @property
    def running(self) -> bool:
        return self._started and not self.queue.shutting_down

    async def start(self) -> None:
        """
        List every tenant, queue them, and start workers and the watch.

        Raises:
            ControllerError: If the controller was already started.
            StoreError: If the initial list fails.
        """
        if self._started:
            raise ControllerError("controller already started")
        self._started = True

        await self.relist()

        for index in range(self.workers):
            self._worker_tasks.append(
                asyncio.create_task(self._worker(), name=f"tenantctl-worker-{index}")
            )
        self._background_tasks.append(
            asyncio.create_task(self._watch_loop(), name="tenantctl-watch")
        )
        if self.resync_interval > 0:
            self._background_tasks.append(
                asyncio.create_task(self._resync_loop(), name="tenantctl-resync")
            )
        # Let the watch subscribe before the caller carries on
        await asyncio.sleep(0)
        logger.info(
            "Controller started with %d workers (store=%s)",
            self.workers,
            self.store.store_type,
        )

    async def stop(self, grace_period: float = 30.0) -> None:
        """Stop the watch, let in-flight passes finish, stop the workers."""
        if not self._started or self.queue.shutting_down:
            return
        self.queue.shut_down()

        for task in self._background_tasks:
            task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)

        if self._worker_tasks:
            _, pending = await asyncio.wait(self._worker_tasks, timeout=grace_period)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        logger.info("Controller stopped")

    async def __aenter__(self) -> "TenantController":
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()

    async def wait_until_idle(
        self, timeout: float | None = None, poll_interval: float = 0.01
    ) -> bool:
        """Wait until nothing is queued, running or scheduled for retry.

        Returns:
            True if the controller went idle, False on timeout.
        """
        try:
            async with asyncio.timeout(timeout):
                while not self.queue.is_idle():
                    await asyncio.sleep(poll_interval)
        except TimeoutError:
            return False
        return True

    # ----- Introspection -----

    def key_state(self, key: str) -> KeyState:
        if self.queue.is_processing(key):
            return KeyState.RUNNING
        if self.queue.is_queued(key):
            return KeyState.QUEUED
        if self.queue.has_delayed(key):
            return KeyState.QUEUED_WITH_BACKOFF
        if key in self._failed:
            return KeyState.FAILED
        return KeyState.IDLE

    def get_status(self, key: str) -> TenantStatus | None:
        """The operator's current view of ``key``."""
        return self.reporter.get(key)

    def statuses(self) -> dict[str, TenantStatus]:
        return self.reporter.snapshot()

    # ----- Triggers -----

    def enqueue(self, key: str) -> None:
        self.reporter.mark_pending(key)
        self.queue.add(key)

    def handle_event(self, event: WatchEvent) -> None:
        """Translate a watch notification into queue operations."""
        record = event.record
        if event.type == WatchEventType.DELETED:
            logger.info("Tenant %s deleted", record.name)
            self._forget(record.name)
            return

        if self.reporter.observe(record.name, record.generation, uid=record.uid):
            self._on_new_generation(record.name, record.generation)
        else:
            # Status-only update or a generation already handled
            logger.debug(
                "Ignoring %s event for %s at generation %d",
                event.type.value,
                record.name,
                record.generation,
            )

    async def relist(self) -> None:
        """List all tenants, queue new generations and drop vanished keys.

        Raises:
            StoreError: If listing fails.
        """
        records = await self.store.list_tenants()
        present = {record.name for record in records}
        for record in records:
            if self.reporter.observe(record.name, record.generation, uid=record.uid):
                self._on_new_generation(record.name, record.generation)
        for name in self._known_keys() - present:
            logger.info("Tenant %s no longer listed", name)
            self._forget(name)

    async def resync(self) -> None:
        """Periodic tick: re-queue every key that is not waiting or failed."""
        try:
            await self.relist()
        except StoreError as e:
            logger.warning("Resync list failed: %s", e)

        queued = 0
        for key in self._resync_candidates(self._known_keys()):
            self.enqueue(key)
            queued += 1
        logger.debug("Resync queued %d tenants", queued)

    def _resync_candidates(self, keys: Iterable[str]) -> list[str]:
        candidates = []
        for key in sorted(keys):
            if self.queue.has_delayed(key):
                continue
            if self._failed.get(key) == self.reporter.observed_generation(key):
                continue
            candidates.append(key)
        return candidates

    def _on_new_generation(self, key: str, generation: int) -> None:
        logger.info("Tenant %s at generation %d queued", key, generation)
        # A new spec restarts the backoff and clears terminal failure
        self.backoff.forget(key)
        self._failed.pop(key, None)
        self.queue.cancel_delayed(key)
        self.enqueue(key)

    def _forget(self, key: str) -> None:
        self.backoff.forget(key)
        self._failed.pop(key, None)
        self.queue.cancel_delayed(key)
        self.reporter.forget(key)

    def _known_keys(self) -> set[str]:
        return self.reporter.tracked()

    def _requeue_with_backoff(self, key: str) -> float:
        delay = self.backoff.next_delay(key)
        self.queue.add_after(key, delay)
        record_retry()
        logger.info(
            "Tenant %s requeued in %.2fs (failure %d)",
            key,
            delay,
            self.backoff.failures(key),
        )
        return delay

    # ----- Passes -----

    async def reconcile(self, key: str) -> ReconcileResult:
        """Run one pass over ``key`` and schedule any follow-up."""
        try:
            record = await asyncio.wait_for(
                self.store.get_tenant(key), timeout=self.call_timeout
            )
        except TimeoutError:
            cause = f"reading tenant timed out after {self.call_timeout}s"
            logger.warning("Reading tenant %s failed: %s", key, cause)
            delay = self._requeue_with_backoff(key)
            return ReconcileResult(
                key=key, action=ReconcileAction.RETRY, error=cause, requeue_after=delay
            )
        except StoreError as e:
            logger.warning("Reading tenant %s failed: %s", key, e)
            delay = self._requeue_with_backoff(key)
            return ReconcileResult(
                key=key, action=ReconcileAction.RETRY, error=str(e), requeue_after=delay
            )

        if record is None:
            logger.info("Tenant %s is gone, dropping it", key)
            self._forget(key)
            return ReconcileResult(key=key, action=ReconcileAction.DELETED)

        generation = record.generation
        if self.reporter.observe(key, generation, uid=record.uid):
            # Read ahead of its watch event, or a recreated tenant
            self.backoff.forget(key)
            self._failed.pop(key, None)
        previous = TenantStatus.from_dict(record.status)
        self.reporter.mark_running(key, previous)

        sync: SyncResult | None = None
        error: str | None = None
        try:
            tenant = Tenant.from_record(record)
        except TenantValidationError as e:
            error = e.message
            logger.warning("Tenant %s failed validation: %s", key, error)
        else:
            sync = await self.synchronizer.sync(tenant)

        status = self.reporter.compute(previous, generation, sync=sync, error=error)
        report = await self.reporter.report(key, status, generation)

        if report.outcome == ReportOutcome.STALE:
            self.queue.add(key)
            return ReconcileResult(
                key=key,
                action=ReconcileAction.STALE,
                generation=generation,
                status=status,
                sync=sync,
            )

        if not report.written:
            delay = self._requeue_with_backoff(key)
            return ReconcileResult(
                key=key,
                action=ReconcileAction.RETRY,
                generation=generation,
                status=status,
                sync=sync,
                error=report.cause,
                requeue_after=delay,
            )

        if status.phase == Phase.READY:
            self.backoff.forget(key)
            self._failed.pop(key, None)
            logger.info("Tenant %s is Ready at generation %d", key, generation)
            action = ReconcileAction.READY
            delay = None
        elif status.phase == Phase.FAILED:
            self.backoff.forget(key)
            self._failed[key] = generation
            logger.error(
                "Tenant %s failed at generation %d: %s",
                key,
                generation,
                status.last_error,
            )
            action = ReconcileAction.FAILED
            delay = None
        else:
            action = ReconcileAction.RETRY
            delay = self._requeue_with_backoff(key)

        return ReconcileResult(
            key=key,
            action=action,
            generation=generation,
            status=status,
            sync=sync,
            error=status.last_error,
            requeue_after=delay,
        )

    async def process(self, key: str) -> ReconcileResult | None:
        """Run a pass with logging context and metrics.

        Unexpected exceptions are logged and the key is retried with backoff.
        """
        with reconcile_context(key):
            with record_reconcile() as ctx:
                try:
                    result = await self.reconcile(key)
                except Exception:
                    logger.exception("Unexpected error reconciling %s", key)
                    self._requeue_with_backoff(key)
                    return None
                ctx["result"] = result.action.value
                return result

    async def _worker(self) -> None:
        while True:
            try:
                key = await self.queue.get()
            except QueueShutDown:
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def _watch_loop(self) -> None:
        delay = self.watch_retry_initial
        while not self.queue.shutting_down:
            try:
                async for event in self.store.watch():
                    delay = self.watch_retry_initial
                    self.handle_event(event)
            except StoreError as e:
                if not e.retryable:
                    logger.error("Tenant watch stopped: %s", e)
                    return
                logger.warning("Tenant watch failed, retrying in %.1fs: %s", delay, e)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.watch_retry_max)
            except Exception:
                logger.exception("Tenant watch crashed, retrying in %.1fs", delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.watch_retry_max)

            if self.queue.shutting_down:
                return
            # Catch up on anything missed while the watch was down
            try:
                await self.relist()
            except StoreError as e:
                logger.warning("Relist after watch restart failed: %s", e)
            except Exception:
                logger.exception("Relist after watch restart crashed")

    async def _resync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.resync_interval)
            try:
                await self.resync()
            except Exception:
                logger.exception("Resync crashed")
