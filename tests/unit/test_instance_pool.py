"""Unit tests for InstancePool."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from db_multiplexer.domain.exceptions import (
    CapacityExceededError,
    EngineBootError,
    InstanceBusyError,
    NotProvisionedError,
)
from db_multiplexer.domain.services import InstancePool, validate_db_name
from db_multiplexer.domain.value_objects import EventKind, InstanceEvent
from db_multiplexer.infrastructure.config import Config


@pytest.fixture
def pool(temp_dir: Path, engine_factory, metrics_registry) -> InstancePool:
    return InstancePool(
        engine_factory,
        base_dir=temp_dir / "data",
        max_instances=4,
        acquire_timeout=0.2,
        metrics=metrics_registry,
    )


@pytest.mark.unit
class TestValidateName:
    """Database name validation."""

    @pytest.mark.parametrize("name", ["orders", "my-db", "db_2", "Ünïcode", "a.b"])
    def test_valid_names(self, name: str) -> None:
        validate_db_name(name)

    @pytest.mark.parametrize("name", ["", ".", "..", "a/b", "..\\x", "nul\x00byte"])
    def test_invalid_names(self, name: str) -> None:
        with pytest.raises(ValueError):
            validate_db_name(name)

    async def test_pool_rejects_invalid_name(self, pool: InstancePool) -> None:
        with pytest.raises(ValueError):
            await pool.get_or_create("../escape")
        assert len(pool) == 0


@pytest.mark.unit
class TestGetOrCreate:
    """Instance resolution."""

    async def test_creates_and_initializes(self, pool: InstancePool, temp_dir: Path) -> None:
        instance = await pool.get_or_create("orders")

        assert instance.is_initialized
        assert instance.storage_location == temp_dir / "data" / "orders"
        assert "orders" in pool
        assert len(pool) == 1

    async def test_same_name_same_instance(self, pool: InstancePool, engine_factory) -> None:
        first = await pool.get_or_create("orders")
        second = await pool.get_or_create("orders")

        assert first is second
        assert engine_factory.boots == 1

    async def test_concurrent_first_access_boots_once(
        self, temp_dir: Path, make_engine_factory, metrics_registry
    ) -> None:
        factory = make_engine_factory(boot_delay=0.05)
        pool = InstancePool(factory, base_dir=temp_dir / "data", metrics=metrics_registry)

        instances = await asyncio.gather(*(pool.get_or_create("orders") for _ in range(5)))

        assert len({id(i) for i in instances}) == 1
        assert factory.boots == 1

    async def test_memory_mode(self, temp_dir: Path, engine_factory, metrics_registry) -> None:
        pool = InstancePool(
            engine_factory,
            base_dir=temp_dir / "data",
            memory_mode=True,
            metrics=metrics_registry,
        )

        instance = await pool.get_or_create("scratch")

        assert instance.memory_mode
        assert pool.storage_location_for("scratch") is None
        assert not (temp_dir / "data").exists()

    async def test_boot_failure_keeps_instance_for_retry(
        self, pool: InstancePool, engine_factory
    ) -> None:
        engine_factory.fail_next.append(OSError("no space left"))

        with pytest.raises(EngineBootError):
            await pool.get_or_create("orders")

        assert "orders" in pool
        instance = await pool.get_or_create("orders")
        assert instance.is_initialized

    def test_get_does_not_create(self, pool: InstancePool) -> None:
        assert pool.get("orders") is None
        assert len(pool) == 0


@pytest.mark.unit
class TestCapacity:
    """max_instances enforcement."""

    async def test_capacity_exceeded(
        self, temp_dir: Path, engine_factory, metrics_registry, make_holder
    ) -> None:
        """With max_instances=1: A served, B rejected, A still usable."""
        pool = InstancePool(
            engine_factory,
            base_dir=temp_dir / "data",
            max_instances=1,
            metrics=metrics_registry,
        )
        await pool.acquire("a", make_holder("h1"))

        with pytest.raises(CapacityExceededError) as exc_info:
            await pool.acquire("b", make_holder("h2"))

        assert exc_info.value.max_instances == 1
        assert "Maximum instances limit reached (1)" in str(exc_info.value)
        assert pool.names() == ["a"]
        assert engine_factory.boots == 1

    async def test_existing_instance_unaffected_by_capacity(
        self, temp_dir: Path, engine_factory, metrics_registry
    ) -> None:
        pool = InstancePool(
            engine_factory,
            base_dir=temp_dir / "data",
            max_instances=1,
            metrics=metrics_registry,
        )
        first = await pool.get_or_create("a")

        assert await pool.get_or_create("a") is first

    async def test_capacity_freed_by_close(
        self, temp_dir: Path, engine_factory, metrics_registry
    ) -> None:
        pool = InstancePool(
            engine_factory,
            base_dir=temp_dir / "data",
            max_instances=1,
            metrics=metrics_registry,
        )
        await pool.get_or_create("a")
        await pool.close_instance("a")

        instance = await pool.get_or_create("b")

        assert instance.name == "b"

    async def test_rejection_is_counted(
        self, temp_dir: Path, engine_factory, metrics_registry
    ) -> None:
        pool = InstancePool(
            engine_factory,
            base_dir=temp_dir / "data",
            max_instances=1,
            metrics=metrics_registry,
        )
        await pool.get_or_create("a")

        with pytest.raises(CapacityExceededError):
            await pool.get_or_create("b")

        counter = metrics_registry.pool_rejections_total.labels(reason="capacity")
        assert counter._value.get() == 1

    def test_invalid_max_instances(self, engine_factory) -> None:
        with pytest.raises(ValueError):
            InstancePool(engine_factory, max_instances=0)


@pytest.mark.unit
class TestProvisioning:
    """auto_provision=False."""

    async def test_unknown_database_rejected(
        self, temp_dir: Path, engine_factory, metrics_registry
    ) -> None:
        pool = InstancePool(
            engine_factory,
            base_dir=temp_dir / "data",
            auto_provision=False,
            metrics=metrics_registry,
        )

        with pytest.raises(NotProvisionedError) as exc_info:
            await pool.get_or_create("ghost")

        assert "auto-provision disabled" in str(exc_info.value)
        assert engine_factory.boots == 0
        assert len(pool) == 0

    async def test_existing_storage_is_served(
        self, temp_dir: Path, engine_factory, metrics_registry
    ) -> None:
        (temp_dir / "data" / "orders").mkdir(parents=True)
        pool = InstancePool(
            engine_factory,
            base_dir=temp_dir / "data",
            auto_provision=False,
            metrics=metrics_registry,
        )

        instance = await pool.get_or_create("orders")

        assert instance.is_initialized

    async def test_memory_mode_without_auto_provision(
        self, temp_dir: Path, engine_factory, metrics_registry
    ) -> None:
        pool = InstancePool(
            engine_factory,
            base_dir=temp_dir / "data",
            memory_mode=True,
            auto_provision=False,
            metrics=metrics_registry,
        )

        with pytest.raises(NotProvisionedError):
            await pool.get_or_create("scratch")


@pytest.mark.unit
class TestAcquire:
    """Pool-level exclusive access."""

    async def test_acquire_returns_locked_instance(self, pool: InstancePool, make_holder) -> None:
        holder = make_holder("a")

        instance = await pool.acquire("orders", holder)

        assert instance.current_holder is holder

    async def test_default_timeout_applies(self, pool: InstancePool, make_holder) -> None:
        await pool.acquire("orders", make_holder("a"))

        with pytest.raises(InstanceBusyError):
            await pool.acquire("orders", make_holder("b"))

    async def test_explicit_timeout_overrides_default(
        self, pool: InstancePool, make_holder
    ) -> None:
        holder_a = make_holder("a")
        instance = await pool.acquire("orders", holder_a)
        waiting = asyncio.create_task(pool.acquire("orders", make_holder("b"), timeout=2.0))
        await asyncio.sleep(0.3)  # longer than the pool default

        assert not waiting.done()
        instance.release(holder_a)
        await waiting

    async def test_databases_are_independent(self, pool: InstancePool, make_holder) -> None:
        a = await pool.acquire("orders", make_holder("a"))
        b = await pool.acquire("users", make_holder("b"))

        assert a is not b
        assert a.is_locked and b.is_locked


@pytest.mark.unit
class TestEventsAndTeardown:
    """Event forwarding, stats and close."""

    async def test_events_forwarded(self, pool: InstancePool, make_holder) -> None:
        events: list[InstanceEvent] = []
        pool.subscribe(events.append)
        holder = make_holder("a")

        instance = await pool.acquire("orders", holder)
        instance.release(holder)
        await pool.close_instance("orders")

        assert [e.kind for e in events] == [
            EventKind.INITIALIZED,
            EventKind.LOCKED,
            EventKind.UNLOCKED,
            EventKind.CLOSED,
        ]

    async def test_close_instance(self, pool: InstancePool, engine_factory) -> None:
        await pool.get_or_create("orders")

        assert await pool.close_instance("orders") is True
        assert await pool.close_instance("orders") is False
        assert "orders" not in pool
        assert engine_factory.engines[0].close_calls == 1

    async def test_close_all(self, pool: InstancePool, engine_factory) -> None:
        for name in ("a", "b", "c"):
            await pool.get_or_create(name)

        await pool.close_all()

        assert len(pool) == 0
        assert all(engine.close_calls == 1 for engine in engine_factory.engines)

    async def test_stats(self, pool: InstancePool, make_holder) -> None:
        await pool.acquire("orders", make_holder("a"))
        await pool.get_or_create("users")

        stats = pool.stats()

        assert stats["total_instances"] == 2
        assert stats["max_instances"] == 4
        by_name = {s["db_name"]: s for s in stats["instances"]}
        assert by_name["orders"]["locked"] is True
        assert by_name["users"]["locked"] is False

    def test_from_config(self, test_config: Config, engine_factory, metrics_registry) -> None:
        pool = InstancePool.from_config(test_config, engine_factory, metrics_registry)

        assert pool.base_dir == test_config.pool.base_dir
        assert pool.max_instances == 4
        assert pool.acquire_timeout == 0.5
        assert pool.auto_provision is True
