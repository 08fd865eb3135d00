"""Database Multiplexer - serves pooled instances over TCP.

Glues the components together along the connection data flow:

    serve(name):
        pool.get_or_create(name)      boot the engine
        allocator.allocate(key)       pick a port (startup only)
        asyncio.start_server(port)    bind
        registry.register(key, port)  record it, only after the bind

    per connection:
        pool.acquire(name, holder)    exclusive access, FIFO queue, timeout
        handler(engine, reader, writer)
        holder close/error            release, promote next waiter

Usage:
    pool = InstancePool(sqlite_engine_factory, base_dir="data")
    registry = JSONFileRegistry()
    mux = DatabaseMultiplexer(pool, registry, PortAllocator(registry), handler)

    served = await mux.serve("orders")
    print(served.port)
    ...
    await mux.stop_all()
"""

from __future__ import annotations

import asyncio
import functools
import os
from dataclasses import dataclass, field

from db_multiplexer.adapters.inbound.stream_holder import StreamHolder
from db_multiplexer.domain.exceptions import AlreadyServedError, MultiplexerError
from db_multiplexer.domain.services import InstancePool, PortAllocator
from db_multiplexer.infrastructure.logging import bound_context, get_logger
from db_multiplexer.ports.outbound import ConnectionHandler, InstanceRegistry

logger = get_logger(__name__)


@dataclass(eq=False)
class ServedDatabase:
    """A logical database listening on a port in this process."""

    name: str
    port: int
    registry_key: str
    server: asyncio.Server = field(repr=False)
    connections: set[StreamHolder] = field(default_factory=set, repr=False)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "port": self.port,
            "registry_key": self.registry_key,
            "connections": len(self.connections),
        }


class DatabaseMultiplexer:
    """Serves the databases of one pool, one TCP listener per database."""

    def __init__(
        self,
        pool: InstancePool,
        registry: InstanceRegistry,
        allocator: PortAllocator,
        handler: ConnectionHandler,
        host: str = "127.0.0.1",
        acquire_timeout: float | None = None,
    ) -> None:
        """Initialize the multiplexer.

        Args:
            pool: Instance pool owning the engines.
            registry: Host-wide registry.
            allocator: Port allocator.
            handler: Wire-protocol bridge invoked per granted connection.
            host: Host the listeners bind to.
            acquire_timeout: Queue timeout (default: the pool's).
        """
        self._pool = pool
        self._registry = registry
        self._allocator = allocator
        self._handler = handler
        self._host = host
        self._acquire_timeout = acquire_timeout
        self._served: dict[str, ServedDatabase] = {}
        self._starting: dict[str, asyncio.Task[ServedDatabase]] = {}

    @property
    def pool(self) -> InstancePool:
        return self._pool

    @property
    def host(self) -> str:
        return self._host

    def served(self) -> list[ServedDatabase]:
        return list(self._served.values())

    def get(self, name: str) -> ServedDatabase | None:
        return self._served.get(name)

    async def serve(self, name: str, preferred_port: int | None = None) -> ServedDatabase:
        """Start listening for ``name``. Idempotent per name.

        Concurrent calls for the same name share one start-up.

        Raises:
            AlreadyServedError: If another live process serves this database.
            PortOutOfRangeError, PortRangeExhaustedError: From the allocator.
            CapacityExceededError, NotProvisionedError, EngineBootError:
                From the pool.
            OSError: If binding or the registry write fails.
        """
        existing = self._served.get(name)
        if existing is not None:
            return existing

        task = self._starting.get(name)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._start(name, preferred_port), name=f"serve-{name}"
            )
            self._starting[name] = task
        return await asyncio.shield(task)

    async def _start(self, name: str, preferred_port: int | None) -> ServedDatabase:
        try:
            return await self._bind(name, preferred_port)
        finally:
            self._starting.pop(name, None)

    async def _bind(self, name: str, preferred_port: int | None) -> ServedDatabase:
        instance = await self._pool.get_or_create(name)
        key = instance.registry_key

        entry = await asyncio.to_thread(self._registry.find_by_name, key)
        if (
            entry is not None
            and entry.pid != os.getpid()
            and await asyncio.to_thread(self._registry.is_process_running, entry.pid)
        ):
            raise AlreadyServedError(key, entry.port, entry.pid)

        port = await self._allocator.allocate(key, preferred_port)
        server = await asyncio.start_server(
            functools.partial(self._handle_connection, name), self._host, port
        )
        try:
            await asyncio.to_thread(self._registry.register, key, port, os.getpid())
        except BaseException:
            server.close()
            await server.wait_closed()
            raise

        served = ServedDatabase(name=name, port=port, registry_key=key, server=server)
        self._served[name] = served
        logger.info("database_serving", db_name=name, host=self._host, port=port)
        return served

    async def _handle_connection(
        self,
        name: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        holder = StreamHolder(reader, writer)
        served = self._served.get(name)
        if served is not None:
            served.connections.add(holder)

        with bound_context(db_name=name, peer=str(holder.peer)):
            try:
                try:
                    instance = await self._pool.acquire(name, holder, self._acquire_timeout)
                except MultiplexerError as e:
                    logger.warning("connection_rejected", reason=type(e).__name__, error=str(e))
                    return

                try:
                    await self._handler(instance.engine, reader, writer)
                except Exception as e:
                    logger.exception("connection_failed")
                    holder.fail(e)
            finally:
                await holder.close()
                if served is not None:
                    served.connections.discard(holder)

    async def stop(self, name: str) -> bool:
        """Stop serving ``name``: close the listener, unregister, close the instance.

        Returns:
            False if ``name`` was not being served.
        """
        served = self._served.pop(name, None)
        if served is None:
            return False

        served.server.close()
        await asyncio.to_thread(self._registry.unregister, served.registry_key)
        await self._pool.close_instance(name)

        # Forced shutdown: open connections lose the engine anyway
        await asyncio.gather(*(holder.close() for holder in list(served.connections)))
        await served.server.wait_closed()

        logger.info("database_stopped", db_name=name, port=served.port)
        return True

    async def stop_all(self) -> None:
        """Stop every served database, then close the whole pool."""
        for name in list(self._served):
            await self.stop(name)
        await self._pool.close_all()
