"""SQLite engine adapter.

Default ``Engine`` implementation backed by aiosqlite. A durable engine keeps
its database in ``<storage_location>/database.sqlite3`` with WAL journaling;
an ephemeral engine (no storage location) lives in memory and disappears on
close.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import aiosqlite

from db_multiplexer.infrastructure.logging import get_logger

DATABASE_FILENAME = "database.sqlite3"
MEMORY_DATABASE = ":memory:"

logger = get_logger(__name__)


class SQLiteEngine:
    """Embedded SQLite engine for one logical database."""

    version = sqlite3.sqlite_version

    def __init__(self, storage_location: Path | None = None, busy_timeout: float = 5.0) -> None:
        """Initialize the engine. Nothing is opened until ``wait_ready``.

        Args:
            storage_location: Directory holding the database, None for memory.
            busy_timeout: SQLite busy timeout in seconds.
        """
        self._storage_location = storage_location
        self._busy_timeout = busy_timeout
        self._connection: aiosqlite.Connection | None = None

    @property
    def database(self) -> str:
        if self._storage_location is None:
            return MEMORY_DATABASE
        return str(self._storage_location / DATABASE_FILENAME)

    @property
    def connection(self) -> aiosqlite.Connection:
        """The open connection.

        Raises:
            RuntimeError: If the engine is not ready.
        """
        if self._connection is None:
            raise RuntimeError("SQLite engine is not ready")
        return self._connection

    @property
    def is_ready(self) -> bool:
        return self._connection is not None

    async def wait_ready(self) -> None:
        """Open the database. Idempotent."""
        if self._connection is not None:
            return

        conn = await aiosqlite.connect(self.database, timeout=self._busy_timeout)
        try:
            if self._storage_location is not None:
                await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA foreign_keys=ON")
        except Exception:
            await conn.close()
            raise

        self._connection = conn
        logger.debug("sqlite_engine_opened", database=self.database)

    async def close(self) -> None:
        """Close the database. Idempotent."""
        conn, self._connection = self._connection, None
        if conn is not None:
            await conn.close()
            logger.debug("sqlite_engine_closed", database=self.database)


def sqlite_engine_factory(storage_location: Path | None) -> SQLiteEngine:
    """EngineFactory producing SQLite engines."""
    return SQLiteEngine(storage_location)
