"""Integration tests for DatabaseMultiplexer over real TCP and SQLite."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import AsyncIterator

import httpx
import pytest

from db_multiplexer.adapters.inbound import create_app
from db_multiplexer.adapters.outbound import SQLiteEngine, sqlite_engine_factory
from db_multiplexer.adapters.outbound.json_registry import JSONFileRegistry
from db_multiplexer.application import DatabaseMultiplexer, auto_detect
from db_multiplexer.domain.exceptions import AlreadyServedError, CapacityExceededError
from db_multiplexer.domain.services import InstancePool, PortAllocator
from db_multiplexer.domain.value_objects import PORT_RANGE_END, PORT_RANGE_START


async def sql_line_handler(
    engine: SQLiteEngine, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
) -> None:
    """Minimal wire protocol: one SQL statement per line, one result line back."""
    while line := await reader.readline():
        cursor = await engine.connection.execute(line.decode().strip())
        rows = await cursor.fetchall()
        await engine.connection.commit()
        writer.write(f"{rows}\n".encode())
        await writer.drain()


async def query(
    reader: asyncio.StreamReader, writer: asyncio.StreamWriter, sql: str, timeout: float = 2.0
) -> str:
    writer.write(f"{sql}\n".encode())
    await writer.drain()
    return (await asyncio.wait_for(reader.readline(), timeout)).decode().strip()


@pytest.fixture
async def multiplexer(
    temp_dir: Path, registry: JSONFileRegistry, live_pids: set[int], metrics_registry
) -> AsyncIterator[DatabaseMultiplexer]:
    live_pids.add(os.getpid())
    pool = InstancePool(
        sqlite_engine_factory,
        base_dir=temp_dir / "data",
        max_instances=2,
        acquire_timeout=0.3,
        metrics=metrics_registry,
    )
    mux = DatabaseMultiplexer(
        pool,
        registry,
        PortAllocator(registry, metrics=metrics_registry),
        sql_line_handler,
    )
    try:
        yield mux
    finally:
        await mux.stop_all()


@pytest.mark.integration
class TestServe:
    """Listener lifecycle."""

    async def test_serve_registers_and_answers(
        self, multiplexer: DatabaseMultiplexer, registry: JSONFileRegistry
    ) -> None:
        served = await multiplexer.serve("orders")

        assert PORT_RANGE_START <= served.port <= PORT_RANGE_END
        entry = registry.find_by_name(served.registry_key)
        assert entry is not None
        assert entry.port == served.port
        assert entry.pid == os.getpid()

        reader, writer = await asyncio.open_connection("127.0.0.1", served.port)
        try:
            assert await query(reader, writer, "SELECT 40 + 2") == "[(42,)]"
        finally:
            writer.close()
            await writer.wait_closed()

    async def test_serve_is_idempotent(self, multiplexer: DatabaseMultiplexer) -> None:
        first = await multiplexer.serve("orders")
        second = await multiplexer.serve("orders")

        assert first is second
        assert len(multiplexer.served()) == 1

    async def test_concurrent_serve_shares_one_listener(
        self, multiplexer: DatabaseMultiplexer, registry: JSONFileRegistry
    ) -> None:
        """Overlapping serve calls for one name bind once and get the same result."""
        results = await asyncio.gather(*(multiplexer.serve("orders") for _ in range(3)))

        assert results[0] is results[1] is results[2]
        assert len(multiplexer.served()) == 1
        assert len(registry.list_all()) == 1

    async def test_failed_serve_can_be_retried(
        self,
        multiplexer: DatabaseMultiplexer,
        registry: JSONFileRegistry,
        live_pids: set[int],
        temp_dir: Path,
    ) -> None:
        other_pid = os.getpid() + 100_000
        live_pids.add(other_pid)
        key = str((temp_dir / "data" / "orders").resolve())
        registry.register(key, 12500, other_pid)

        with pytest.raises(AlreadyServedError):
            await multiplexer.serve("orders")

        live_pids.discard(other_pid)
        served = await multiplexer.serve("orders")

        assert served.port != 12500

    async def test_databases_get_distinct_ports(self, multiplexer: DatabaseMultiplexer) -> None:
        orders = await multiplexer.serve("orders")
        users = await multiplexer.serve("users")

        assert orders.port != users.port

    async def test_capacity_limit_applies(self, multiplexer: DatabaseMultiplexer) -> None:
        await multiplexer.serve("a")
        await multiplexer.serve("b")

        with pytest.raises(CapacityExceededError):
            await multiplexer.serve("c")

    async def test_already_served_by_other_process(
        self,
        multiplexer: DatabaseMultiplexer,
        registry: JSONFileRegistry,
        live_pids: set[int],
        temp_dir: Path,
    ) -> None:
        other_pid = os.getpid() + 100_000
        live_pids.add(other_pid)
        key = str((temp_dir / "data" / "orders").resolve())
        registry.register(key, 12500, other_pid)

        with pytest.raises(AlreadyServedError) as exc_info:
            await multiplexer.serve("orders")

        assert exc_info.value.port == 12500

    async def test_stale_entry_does_not_block_serving(
        self,
        multiplexer: DatabaseMultiplexer,
        registry: JSONFileRegistry,
        temp_dir: Path,
    ) -> None:
        key = str((temp_dir / "data" / "orders").resolve())
        registry.register(key, 12500, 999_999)

        served = await multiplexer.serve("orders")

        assert served.port != 12500
        assert registry.find_by_name(key).pid == os.getpid()

    async def test_stop_unregisters_and_closes(
        self, multiplexer: DatabaseMultiplexer, registry: JSONFileRegistry
    ) -> None:
        served = await multiplexer.serve("orders")

        assert await multiplexer.stop("orders") is True
        assert await multiplexer.stop("orders") is False

        assert registry.find_by_name(served.registry_key) is None
        assert "orders" not in multiplexer.pool
        with pytest.raises(OSError):
            await asyncio.open_connection("127.0.0.1", served.port)

    async def test_admin_delete_stops_served_database(
        self,
        multiplexer: DatabaseMultiplexer,
        registry: JSONFileRegistry,
        metrics_registry,
    ) -> None:
        """Deleting through the admin API frees the port and the registry entry."""
        served = await multiplexer.serve("orders")
        app = create_app(
            multiplexer.pool,
            registry,
            PortAllocator(registry, metrics=metrics_registry),
            multiplexer,
        )

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://admin"
        ) as client:
            response = await client.delete("/instances/orders")

        assert response.status_code == 200
        assert multiplexer.get("orders") is None
        assert registry.find_by_name(served.registry_key) is None
        with pytest.raises(OSError):
            await asyncio.open_connection("127.0.0.1", served.port)

    async def test_durable_data_survives_restart(self, multiplexer: DatabaseMultiplexer) -> None:
        served = await multiplexer.serve("orders")
        reader, writer = await asyncio.open_connection("127.0.0.1", served.port)
        await query(reader, writer, "CREATE TABLE t (v INTEGER)")
        await query(reader, writer, "INSERT INTO t VALUES (7)")
        writer.close()
        await writer.wait_closed()
        await multiplexer.stop("orders")

        served = await multiplexer.serve("orders")
        reader, writer = await asyncio.open_connection("127.0.0.1", served.port)
        try:
            assert await query(reader, writer, "SELECT v FROM t") == "[(7,)]"
        finally:
            writer.close()
            await writer.wait_closed()


@pytest.mark.integration
class TestConnectionArbitration:
    """Exclusive access across real client connections."""

    async def test_second_client_waits_for_first(self, multiplexer: DatabaseMultiplexer) -> None:
        served = await multiplexer.serve("orders")
        reader_a, writer_a = await asyncio.open_connection("127.0.0.1", served.port)
        assert await query(reader_a, writer_a, "SELECT 1") == "[(1,)]"

        reader_b, writer_b = await asyncio.open_connection("127.0.0.1", served.port)
        writer_b.write(b"SELECT 2\n")
        await writer_b.drain()
        await asyncio.sleep(0.1)

        instance = multiplexer.pool.get("orders")
        assert instance.queue_length == 1

        writer_a.close()
        await writer_a.wait_closed()

        line = await asyncio.wait_for(reader_b.readline(), 2.0)
        assert line == b"[(2,)]\n"
        writer_b.close()
        await writer_b.wait_closed()

    async def test_busy_client_is_disconnected(self, multiplexer: DatabaseMultiplexer) -> None:
        served = await multiplexer.serve("orders")
        reader_a, writer_a = await asyncio.open_connection("127.0.0.1", served.port)
        assert await query(reader_a, writer_a, "SELECT 1") == "[(1,)]"

        reader_b, writer_b = await asyncio.open_connection("127.0.0.1", served.port)

        # Pool acquire timeout is 0.3s; the server then drops the connection
        assert await asyncio.wait_for(reader_b.read(), 2.0) == b""

        instance = multiplexer.pool.get("orders")
        assert instance.current_holder is not None
        assert instance.queue_length == 0

        writer_a.close()
        await writer_a.wait_closed()
        writer_b.close()

    async def test_lock_released_after_disconnect(self, multiplexer: DatabaseMultiplexer) -> None:
        served = await multiplexer.serve("orders")
        reader, writer = await asyncio.open_connection("127.0.0.1", served.port)
        await query(reader, writer, "SELECT 1")
        writer.close()
        await writer.wait_closed()

        instance = multiplexer.pool.get("orders")
        for _ in range(50):
            if not instance.is_locked:
                break
            await asyncio.sleep(0.01)

        assert not instance.is_locked


@pytest.mark.integration
async def test_auto_detect_serves_embedded(multiplexer: DatabaseMultiplexer) -> None:
    detected = await auto_detect(multiplexer, "app", external_url=None)

    assert detected.embedded
    assert detected.url == f"postgresql://127.0.0.1:{detected.port}/app"
    assert multiplexer.get("app") is not None
