"""Fault-injecting store wrapper for resilience testing."""

import asyncio
import fnmatch
import logging
import random
from collections import Counter
from collections.abc import AsyncIterator
from typing import Any

from tenantctl.api.tenant import TenantRecord
from tenantctl.core.exceptions import StoreError
from tenantctl.store.base import (
    ClusterStore,
    CreateResult,
    ResourceManifest,
    WatchEvent,
    WriteOutcome,
    WriteResult,
)

from .models import FaultConfig, FaultRule, FaultType, Operation

logger = logging.getLogger(__name__)


class FaultInjectingStore(ClusterStore):
    """Wraps a store and makes selected calls fail or slow down.

    Watches are passed through untouched.
    """

    def __init__(
        self,
        inner: ClusterStore,
        config: FaultConfig,
        seed: int | None = None,
    ) -> None:
        """Initialize the wrapper.

        Args:
            inner: Store that receives the calls that are let through.
            config: What to inject.
            seed: Random seed for reproducibility. Overrides config seed if provided.
        """
        self.inner = inner
        self.config = config
        self._rng = random.Random(seed if seed is not None else config.seed)
        self._remaining: dict[int, int | None] = {
            index: rule.times for index, rule in enumerate(config.rules)
        }
        self.injected: Counter[tuple[Operation, FaultType]] = Counter()

    @property
    def store_type(self) -> str:
        return f"faulty-{self.inner.store_type}"

    @property
    def is_active(self) -> bool:
        return self.config.enabled and not self.config.is_empty()

    def pick_fault(self, operation: Operation, target: str) -> FaultRule | None:
        """Return the first matching rule that fires for this call."""
        if not self.config.enabled:
            return None

        for index, rule in enumerate(self.config.rules):
            if rule.operation != operation:
                continue
            if not fnmatch.fnmatch(target, rule.target):
                continue
            if self._remaining[index] == 0:
                continue
            if self._rng.random() >= rule.probability:
                continue
            if self._remaining[index] is not None:
                self._remaining[index] -= 1
            self.injected[(operation, rule.fault)] += 1
            logger.debug(
                "Fault: injecting %s into %s %s",
                rule.fault.value,
                operation.value,
                target,
            )
            return rule
        return None

    async def inject_latency(self, operation: Operation) -> float:
        """Sleep for a random configured delay; returns the delay in seconds."""
        latency = self.config.latency
        if not self.config.enabled or latency is None or latency.max_ms <= 0:
            return 0.0
        if operation not in latency.operations:
            return 0.0
        delay = self._rng.randint(latency.min_ms, latency.max_ms) / 1000.0
        await asyncio.sleep(delay)
        return delay

    # ----- ClusterStore -----

    async def list_tenants(self) -> list[TenantRecord]:
        await self.inject_latency(Operation.LIST)
        rule = self.pick_fault(Operation.LIST, "*")
        if rule is not None:
            raise StoreError(rule.error_message(), retryable=rule.retryable)
        return await self.inner.list_tenants()

    async def get_tenant(self, name: str) -> TenantRecord | None:
        await self.inject_latency(Operation.GET)
        rule = self.pick_fault(Operation.GET, name)
        if rule is not None:
            raise StoreError(rule.error_message(), retryable=rule.retryable)
        return await self.inner.get_tenant(name)

    def watch(self) -> AsyncIterator[WatchEvent]:
        return self.inner.watch()

    async def create(self, manifest: ResourceManifest) -> CreateResult:
        await self.inject_latency(Operation.CREATE)
        tenant = manifest.namespace or manifest.name
        rule = self.pick_fault(Operation.CREATE, f"{manifest.kind.value}/{tenant}")
        if rule is None:
            return await self.inner.create(manifest)

        if rule.after_call:
            await self.inner.create(manifest)
        if rule.fault == FaultType.TIMEOUT:
            raise TimeoutError(rule.error_message())
        return CreateResult.error(rule.error_message(), retryable=rule.retryable)

    async def write_status(
        self, name: str, status: dict[str, Any], generation: int
    ) -> WriteResult:
        await self.inject_latency(Operation.WRITE_STATUS)
        rule = self.pick_fault(Operation.WRITE_STATUS, name)
        if rule is None:
            return await self.inner.write_status(name, status, generation)

        if rule.after_call:
            await self.inner.write_status(name, status, generation)
        if rule.fault == FaultType.TIMEOUT:
            raise TimeoutError(rule.error_message())
        if rule.fault == FaultType.CONFLICT:
            return WriteResult(
                outcome=WriteOutcome.CONFLICT, cause=rule.error_message()
            )
        return WriteResult(outcome=WriteOutcome.ERROR, cause=rule.error_message())

    async def close(self) -> None:
        await self.inner.close()

    def stats(self) -> dict[str, int]:
        """Injected fault counts keyed by ``operation:fault``."""
        return {
            f"{operation.value}:{fault.value}": count
            for (operation, fault), count in sorted(self.injected.items())
        }
