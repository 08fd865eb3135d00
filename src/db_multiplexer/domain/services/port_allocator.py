"""Port Allocator - chooses the TCP port a logical database listens on.

Allocation order for ``allocate(data_dir, preferred_port)``:
    1. A live registry entry for ``data_dir`` -> reuse its port (re-attach).
    2. A stale entry for ``data_dir`` is ignored; allocation starts fresh.
    3. The preferred port, if given, must lie in the reserved range
       (PortOutOfRangeError otherwise). It is used only when no registry
       entry, live, stale or unparsable, claims it and a probe bind succeeds.
    4. Otherwise the range is scanned upward from its start with the same
       two checks.
    5. PortRangeExhaustedError if nothing qualifies.

A stale claim blocks a port even when it is physically free: the process
that owned it may be restarting and about to rebind.

Probing performs real binds on ``probe_host`` that are released immediately.
The answer is a snapshot; a third party may take the port right after.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from db_multiplexer.domain.exceptions import PortOutOfRangeError, PortRangeExhaustedError
from db_multiplexer.domain.value_objects import DEFAULT_PORT_RANGE, PortRange, PortRangeInfo
from db_multiplexer.infrastructure.logging import get_logger
from db_multiplexer.infrastructure.metrics import MetricsRegistry, get_metrics
from db_multiplexer.infrastructure.tracing import trace_span
from db_multiplexer.ports.outbound import InstanceRegistry

PortProbe = Callable[[str, int], Awaitable[bool]]

logger = get_logger(__name__)


async def probe_bind(host: str, port: int) -> bool:
    """Check whether ``host:port`` can be bound right now.

    Binds a listener and closes it immediately.
    """
    loop = asyncio.get_running_loop()
    try:
        server = await loop.create_server(asyncio.Protocol, host, port)
    except OSError:
        return False
    server.close()
    await server.wait_closed()
    return True


class PortAllocator:
    """Allocates ports from the reserved range, consulting the registry."""

    def __init__(
        self,
        registry: InstanceRegistry,
        port_range: PortRange = DEFAULT_PORT_RANGE,
        probe_host: str = "127.0.0.1",
        probe: PortProbe = probe_bind,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Initialize the allocator.

        Args:
            registry: Host-wide instance registry.
            port_range: Reserved range (default 12000-12999).
            probe_host: Host used for probe binds.
            probe: Bindability check.
            metrics: Metrics registry (default global).
        """
        self._registry = registry
        self._range = port_range
        self._probe_host = probe_host
        self._probe = probe
        self._metrics = metrics or get_metrics()

    @property
    def port_range(self) -> PortRange:
        return self._range

    async def is_port_free(self, port: int) -> bool:
        """Probe-bind check only; ignores the registry."""
        return await self._probe(self._probe_host, port)

    async def allocate(self, data_dir: str, preferred_port: int | None = None) -> int:
        """Return the port ``data_dir`` should listen on.

        Args:
            data_dir: Registry key of the logical database.
            preferred_port: Port to try first.

        Returns:
            A port inside the reserved range.

        Raises:
            PortOutOfRangeError: If ``preferred_port`` is outside the range.
            PortRangeExhaustedError: If no port in the range is usable.
        """
        with trace_span("ports.allocate", {"db.data_dir": data_dir}):
            state = await asyncio.to_thread(self._registry.load)

            existing = state.get(data_dir)
            if existing is not None:
                if await asyncio.to_thread(self._registry.is_process_running, existing.pid):
                    self._metrics.port_allocations_total.labels(outcome="reattached").inc()
                    logger.info(
                        "instance_already_running", data_dir=data_dir, port=existing.port
                    )
                    return existing.port
                logger.info(
                    "stale_instance_found", data_dir=data_dir, stale_port=existing.port
                )

            claimed = state.claimed_ports()

            if preferred_port is not None:
                if preferred_port not in self._range:
                    self._metrics.port_allocations_total.labels(outcome="out_of_range").inc()
                    raise PortOutOfRangeError(preferred_port, self._range.start, self._range.end)
                if await self._is_usable(preferred_port, claimed):
                    self._metrics.port_allocations_total.labels(outcome="preferred").inc()
                    return preferred_port
                logger.warning("preferred_port_unavailable", port=preferred_port)

            for port in self._range:
                if await self._is_usable(port, claimed):
                    self._metrics.port_allocations_total.labels(outcome="scanned").inc()
                    logger.debug("port_allocated", data_dir=data_dir, port=port)
                    return port

            self._metrics.port_allocations_total.labels(outcome="exhausted").inc()
            raise PortRangeExhaustedError(self._range.start, self._range.end)

    async def _is_usable(self, port: int, claimed: set[int]) -> bool:
        # The registry check is free; only unclaimed ports get a probe bind
        if port in claimed:
            return False
        return await self._probe(self._probe_host, port)

    def range_info(self) -> PortRangeInfo:
        """Usage of the reserved range according to the registry."""
        state = self._registry.load()
        used = tuple(sorted(p for p in state.claimed_ports() if p in self._range))
        return PortRangeInfo(
            start=self._range.start,
            end=self._range.end,
            total=len(self._range),
            used=len(used),
            available=len(self._range) - len(used),
            used_ports=used,
        )
