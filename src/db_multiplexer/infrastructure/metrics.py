"""Prometheus metrics for the database multiplexer."""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
    REGISTRY,
    CollectorRegistry,
)


class MetricsRegistry:
    """Registry of all multiplexer metrics."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize metrics registry."""
        self._registry = registry or REGISTRY

        # Pool metrics
        self.instances_active = Gauge(
            "dbmux_instances_active",
            "Number of managed instances held by the pool",
            registry=self._registry,
        )

        self.pool_rejections_total = Counter(
            "dbmux_pool_rejections_total",
            "Requests refused before queueing",
            ["reason"],  # capacity, not_provisioned
            registry=self._registry,
        )

        # Engine boot metrics
        self.instance_boots_total = Counter(
            "dbmux_instance_boots_total",
            "Engine boots attempted",
            ["status"],  # success, error
            registry=self._registry,
        )

        self.instance_boot_seconds = Histogram(
            "dbmux_instance_boot_seconds",
            "Engine boot latency in seconds",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )

        # Arbitration metrics
        self.acquisitions_total = Counter(
            "dbmux_acquisitions_total",
            "Exclusive access requests by outcome",
            ["outcome"],  # immediate, queued, busy, closed, terminated
            registry=self._registry,
        )

        self.lock_wait_seconds = Histogram(
            "dbmux_lock_wait_seconds",
            "Time spent queued before promotion",
            buckets=(0.001, 0.01, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=self._registry,
        )

        self.queue_depth = Gauge(
            "dbmux_queue_depth",
            "Connections waiting for a database",
            ["db_name"],
            registry=self._registry,
        )

        # Port allocation metrics
        self.port_allocations_total = Counter(
            "dbmux_port_allocations_total",
            "Port allocation requests by outcome",
            ["outcome"],  # reattached, preferred, scanned, exhausted, out_of_range
            registry=self._registry,
        )

        # Registry metrics
        self.registry_stale_removed_total = Counter(
            "dbmux_registry_stale_removed_total",
            "Registry entries removed because their process was gone",
            registry=self._registry,
        )

        self.registry_corrupt_total = Counter(
            "dbmux_registry_corrupt_total",
            "Registry loads that found an unparsable file",
            registry=self._registry,
        )

        # Server info
        self.info = Info(
            "db_multiplexer",
            "Database multiplexer information",
            registry=self._registry,
        )


# Global metrics registry
_metrics: MetricsRegistry | None = None


def setup_metrics(port: int = 8001, registry: CollectorRegistry | None = None) -> MetricsRegistry:
    """
    Set up Prometheus metrics server.

    Args:
        port: Port for the metrics HTTP server
        registry: Optional custom registry

    Returns:
        The metrics registry
    """
    global _metrics
    _metrics = MetricsRegistry(registry)

    from db_multiplexer import __version__
    _metrics.info.info({
        "version": __version__,
    })

    start_http_server(port, registry=registry or REGISTRY)

    return _metrics


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsRegistry()
    return _metrics
