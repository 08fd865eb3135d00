"""Instance Pool - supervisor of the managed instances in one process.

The pool resolves logical database names to managed instances, creating
them on demand, and is the single entry point callers use to obtain
exclusive engine access.

Policies:
    - Capacity: at most ``max_instances`` instances exist. The limit is
      checked before an instance is constructed.
    - Provisioning: with ``auto_provision`` disabled, only databases that
      already exist (a storage directory under ``base_dir``, or an instance
      already in the pool) can be opened.
    - Capacity and provisioning failures are raised immediately and never
      queue. They are distinct from InstanceBusyError so callers can tell
      "not servable right now" from "try again shortly".

Every lifecycle event of every instance is forwarded to the pool's own
subscribers.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

from db_multiplexer.domain.exceptions import CapacityExceededError, NotProvisionedError
from db_multiplexer.domain.services.managed_instance import InstanceStats, ManagedInstance
from db_multiplexer.domain.value_objects import (
    DEFAULT_ACQUIRE_TIMEOUT,
    EventKind,
    EventListener,
    InstanceEvent,
)
from db_multiplexer.infrastructure.config import Config
from db_multiplexer.infrastructure.logging import get_logger
from db_multiplexer.infrastructure.metrics import MetricsRegistry, get_metrics
from db_multiplexer.ports.outbound import EngineFactory

logger = get_logger(__name__)


def validate_db_name(name: str) -> None:
    """Reject names that cannot serve as a single directory component.

    Raises:
        ValueError: If the name is empty, a relative path marker, or
            contains a path separator.
    """
    if not name or name in (".", ".."):
        raise ValueError(f"Invalid database name: {name!r}")
    if "/" in name or "\\" in name or "\x00" in name:
        raise ValueError(f"Database name must not contain path separators: {name!r}")


class InstancePool:
    """Owns the managed instances of this process, keyed by logical name."""

    def __init__(
        self,
        engine_factory: EngineFactory,
        base_dir: str | Path = Path("./data"),
        memory_mode: bool = False,
        max_instances: int = 100,
        auto_provision: bool = True,
        acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Initialize the pool.

        Args:
            engine_factory: Builds the engine for each instance.
            base_dir: Root under which each database gets a directory.
            memory_mode: Run every database in memory.
            max_instances: Upper bound on live instances.
            auto_provision: Create unknown databases on demand.
            acquire_timeout: Default queue timeout for ``acquire``.
            metrics: Metrics registry (default global).
        """
        if max_instances < 1:
            raise ValueError(f"max_instances must be positive, got {max_instances}")

        self._engine_factory = engine_factory
        self._base_dir = Path(base_dir)
        self._memory_mode = memory_mode
        self._max_instances = max_instances
        self._auto_provision = auto_provision
        self._acquire_timeout = acquire_timeout
        self._metrics = metrics or get_metrics()

        self._instances: dict[str, ManagedInstance] = {}
        self._listeners: list[EventListener] = []

    @classmethod
    def from_config(
        cls,
        config: Config,
        engine_factory: EngineFactory,
        metrics: MetricsRegistry | None = None,
    ) -> InstancePool:
        """Build a pool from the ``pool`` section of the configuration."""
        return cls(
            engine_factory=engine_factory,
            base_dir=config.pool.base_dir,
            memory_mode=config.pool.memory_mode,
            max_instances=config.pool.max_instances,
            auto_provision=config.pool.auto_provision,
            acquire_timeout=config.pool.acquire_timeout_seconds,
            metrics=metrics,
        )

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def memory_mode(self) -> bool:
        return self._memory_mode

    @property
    def max_instances(self) -> int:
        return self._max_instances

    @property
    def auto_provision(self) -> bool:
        return self._auto_provision

    @property
    def acquire_timeout(self) -> float:
        return self._acquire_timeout

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, name: object) -> bool:
        return name in self._instances

    # -- Events ------------------------------------------------------------

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener for the events of every instance."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _forward(self, event: InstanceEvent) -> None:
        if event.kind is EventKind.INITIALIZED:
            logger.info("instance_created", db_name=event.instance_name)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "event_listener_failed",
                    kind=event.kind.value,
                    db_name=event.instance_name,
                )

    # -- Resolution --------------------------------------------------------

    def storage_location_for(self, name: str) -> Path | None:
        """Storage directory for ``name`` (None in memory mode)."""
        if self._memory_mode:
            return None
        return self._base_dir / name

    def _is_provisioned(self, name: str) -> bool:
        location = self.storage_location_for(name)
        return location is not None and location.is_dir()

    def _create(self, name: str) -> ManagedInstance:
        validate_db_name(name)

        if len(self._instances) >= self._max_instances:
            self._metrics.pool_rejections_total.labels(reason="capacity").inc()
            logger.error(
                "max_instances_reached",
                db_name=name,
                current_instances=len(self._instances),
                max_instances=self._max_instances,
            )
            raise CapacityExceededError(name, self._max_instances)

        if not self._auto_provision and not self._is_provisioned(name):
            self._metrics.pool_rejections_total.labels(reason="not_provisioned").inc()
            logger.warning("database_not_provisioned", db_name=name)
            raise NotProvisionedError(name)

        instance = ManagedInstance(
            name,
            self.storage_location_for(name),
            self._engine_factory,
            metrics=self._metrics,
        )
        instance.subscribe(self._forward)
        self._instances[name] = instance
        self._metrics.instances_active.set(len(self._instances))
        return instance

    async def get_or_create(self, name: str) -> ManagedInstance:
        """Return the initialized instance for ``name``, creating it if needed.

        Raises:
            CapacityExceededError: If creation would exceed ``max_instances``.
            NotProvisionedError: If unknown and auto-provisioning is disabled.
            EngineBootError: If the engine failed to boot. The instance stays
                in the pool, uninitialized, and the next call retries.
            ValueError: If the name is not a valid database name.
        """
        instance = self._instances.get(name)
        if instance is None:
            instance = self._create(name)

        await instance.initialize()
        return instance

    async def acquire(
        self,
        name: str,
        holder: Any,
        timeout: float | None = None,
    ) -> ManagedInstance:
        """Resolve ``name`` and obtain exclusive access for ``holder``.

        Args:
            name: Logical database name.
            holder: Connection handle that will own the engine.
            timeout: Queue timeout (default: the pool's ``acquire_timeout``).

        Returns:
            The instance, locked to ``holder``.

        Raises:
            InstanceBusyError: If the database stayed locked for ``timeout``.
            CapacityExceededError, NotProvisionedError, EngineBootError:
                See ``get_or_create``.
        """
        instance = await self.get_or_create(name)
        if instance.is_locked:
            logger.debug("database_busy", db_name=name, queue_length=instance.queue_length)
        await instance.acquire(
            holder, self._acquire_timeout if timeout is None else timeout
        )
        return instance

    def get(self, name: str) -> ManagedInstance | None:
        """Look up an instance without creating or initializing it."""
        return self._instances.get(name)

    def names(self) -> list[str]:
        return list(self._instances)

    # -- Teardown ----------------------------------------------------------

    async def close_instance(self, name: str) -> bool:
        """Close and remove one instance.

        Returns:
            False if no instance with that name exists.
        """
        instance = self._instances.pop(name, None)
        if instance is None:
            return False
        self._metrics.instances_active.set(len(self._instances))
        await instance.close()
        return True

    async def close_all(self) -> None:
        """Close every instance and wait for all teardowns to finish."""
        instances = list(self._instances.values())
        self._instances.clear()
        self._metrics.instances_active.set(0)
        await asyncio.gather(*(instance.close() for instance in instances))
        logger.info("pool_closed", closed_instances=len(instances))

    # -- Observability -----------------------------------------------------

    def list(self) -> list[InstanceStats]:
        return [instance.stats() for instance in self._instances.values()]

    def stats(self) -> dict[str, Any]:
        """Aggregate pool statistics."""
        return {
            "total_instances": len(self._instances),
            "max_instances": self._max_instances,
            "instances": [s.to_dict() for s in self.list()],
        }
