"""Prometheus metrics for tenantctl.

This module instruments the reconciliation loop:
- Counters for passes by result, child-resource creates and status writes
- A histogram of pass duration
- Gauges for queue depth and busy workers

Example usage:
    from tenantctl.core.metrics import configure_metrics, record_reconcile
    from tenantctl.core.settings import get_settings

    configure_metrics(settings=get_settings().metrics)

    with record_reconcile() as ctx:
        result = await controller.reconcile(key)
        ctx["result"] = result.action.value
"""

import logging
import time
from collections.abc import Generator
from contextlib import contextmanager
from threading import Lock
from typing import Any

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from tenantctl.core.settings import MetricsEndpointSettings

logger = logging.getLogger(__name__)

_init_lock = Lock()

_metrics_configured = False

_registry: CollectorRegistry | None = None


class ControllerMetrics:
    """Container for all controller Prometheus metrics."""

    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        settings: MetricsEndpointSettings | None = None,
    ) -> None:
        """Initialize controller metrics.

        Args:
            registry: Optional custom registry. Uses default if not provided.
            settings: Optional settings. Uses defaults if not provided.
        """
        self.registry = registry or REGISTRY
        self.settings = settings or MetricsEndpointSettings()
        prefix = self.settings.prefix
        buckets = tuple(self.settings.default_buckets)

        # ===== Counters =====

        self.reconcile_total = Counter(
            f"{prefix}_reconcile_total",
            "Total reconciliation passes by result",
            ["result"],
            registry=self.registry,
        )

        self.child_creates_total = Counter(
            f"{prefix}_child_creates_total",
            "Child resource create calls by kind and outcome",
            ["kind", "outcome"],
            registry=self.registry,
        )

        self.status_writes_total = Counter(
            f"{prefix}_status_writes_total",
            "Status writes by outcome",
            ["outcome"],
            registry=self.registry,
        )

        self.retries_total = Counter(
            f"{prefix}_workqueue_retries_total",
            "Keys re-queued with backoff",
            registry=self.registry,
        )

        # ===== Histograms =====

        self.reconcile_duration_seconds = Histogram(
            f"{prefix}_reconcile_duration_seconds",
            "Duration of a reconciliation pass in seconds",
            buckets=buckets,
            registry=self.registry,
        )

        # ===== Gauges =====

        self.queue_depth = Gauge(
            f"{prefix}_workqueue_depth",
            "Keys waiting to be processed",
            registry=self.registry,
        )

        self.active_workers = Gauge(
            f"{prefix}_active_workers",
            "Workers currently running a pass",
            registry=self.registry,
        )

    def collectors(self) -> list[Any]:
        return [
            self.reconcile_total,
            self.child_creates_total,
            self.status_writes_total,
            self.retries_total,
            self.reconcile_duration_seconds,
            self.queue_depth,
            self.active_workers,
        ]

    def record_reconcile(self, result: str, duration_seconds: float) -> None:
        """Record a finished pass.

        Args:
            result: ready, retry, failed, stale, deleted or error.
            duration_seconds: Wall time of the pass.
        """
        self.reconcile_total.labels(result=result).inc()
        self.reconcile_duration_seconds.observe(duration_seconds)

    def record_child_create(self, kind: str, outcome: str) -> None:
        self.child_creates_total.labels(kind=kind, outcome=outcome).inc()

    def record_status_write(self, outcome: str) -> None:
        self.status_writes_total.labels(outcome=outcome).inc()

    def record_retry(self) -> None:
        self.retries_total.inc()

    def set_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)


_metrics: ControllerMetrics | None = None


def configure_metrics(
    enabled: bool | None = None,
    settings: MetricsEndpointSettings | None = None,
    registry: CollectorRegistry | None = None,
) -> ControllerMetrics | None:
    """Configure Prometheus metrics.

    Should be called once during process startup.

    Args:
        enabled: Override enabled setting. If None, uses settings value.
        settings: The ``metrics`` section of the controller settings.
        registry: Custom registry for metrics. Useful for testing.

    Returns:
        Configured ControllerMetrics instance, or None if disabled.
    """
    global _metrics_configured, _metrics, _registry

    with _init_lock:
        if _metrics_configured:
            logger.debug("Metrics already configured, returning existing instance")
            return _metrics

        if settings is None:
            settings = MetricsEndpointSettings()

        is_enabled = enabled if enabled is not None else settings.enabled
        if not is_enabled:
            logger.info("Metrics collection is disabled")
            _metrics_configured = True
            return None

        _metrics = ControllerMetrics(registry=registry, settings=settings)
        _registry = registry

        _metrics_configured = True
        logger.info("Prometheus metrics configured with prefix '%s'", settings.prefix)

        return _metrics


def reset_metrics() -> None:
    """Reset metrics configuration state.

    Unregisters every collector so tests can configure metrics again.
    """
    global _metrics_configured, _metrics, _registry

    with _init_lock:
        if _metrics is not None:
            for collector in _metrics.collectors():
                try:
                    _metrics.registry.unregister(collector)
                except KeyError:
                    pass

        _metrics_configured = False
        _metrics = None
        _registry = None


def get_metrics() -> ControllerMetrics | None:
    """Get the global metrics instance, configuring it on first use."""
    if not _metrics_configured:
        configure_metrics()
    return _metrics


def get_registry() -> CollectorRegistry:
    """Get the registry metrics are registered with."""
    if _registry is not None:
        return _registry
    return REGISTRY


def generate_metrics() -> bytes:
    """Generate metrics output in Prometheus text format."""
    return generate_latest(get_registry())


def serve_metrics(host: str, port: int) -> None:
    """Expose the metrics registry over HTTP on a background thread."""
    start_http_server(port, addr=host, registry=get_registry())
    logger.info("Serving metrics on %s:%d", host, port)


# ===== Convenience Context Managers =====


@contextmanager
def record_reconcile() -> Generator[dict[str, Any], None, None]:
    """Time a reconciliation pass and record its result.

    Yields:
        Dictionary whose ``result`` key the caller sets before exiting.
        Left unset, the pass is counted as ``error``.
    """
    metrics = get_metrics()
    outcome: dict[str, Any] = {"result": "error"}
    started = time.monotonic()

    if metrics:
        metrics.active_workers.inc()

    try:
        yield outcome
    finally:
        if metrics:
            metrics.active_workers.dec()
            metrics.record_reconcile(
                result=outcome.get("result", "error"),
                duration_seconds=time.monotonic() - started,
            )


# ===== Convenience Functions =====


def record_child_create(kind: str, outcome: str) -> None:
    metrics = get_metrics()
    if metrics:
        metrics.record_child_create(kind=kind, outcome=outcome)


def record_status_write(outcome: str) -> None:
    metrics = get_metrics()
    if metrics:
        metrics.record_status_write(outcome=outcome)


def record_retry() -> None:
    metrics = get_metrics()
    if metrics:
        metrics.record_retry()


def set_queue_depth(depth: int) -> None:
    metrics = get_metrics()
    if metrics:
        metrics.set_queue_depth(depth)
