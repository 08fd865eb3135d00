"""Stream holder - an asyncio connection as a lock holder.

Wraps the reader/writer pair of one client connection and implements the
``TerminationSource`` port, so a managed instance locked to it is released
when the connection closes or fails. Each notification fires at most once.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from db_multiplexer.infrastructure.logging import get_logger

logger = get_logger(__name__)


class StreamHolder:
    """One client connection, as seen by the arbitration layer."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._close_callbacks: list[Callable[[], None]] = []
        self._error_callbacks: list[Callable[[BaseException], None]] = []
        self._closed = False
        self._failed = False

    @property
    def reader(self) -> asyncio.StreamReader:
        return self._reader

    @property
    def writer(self) -> asyncio.StreamWriter:
        return self._writer

    @property
    def peer(self) -> Any:
        return self._writer.get_extra_info("peername")

    @property
    def is_closed(self) -> bool:
        return self._closed

    def on_close(self, callback: Callable[[], None]) -> None:
        if self._closed:
            # Already gone (e.g. closed while queued); notify on the next loop turn
            asyncio.get_running_loop().call_soon(callback)
            return
        self._close_callbacks.append(callback)

    def on_error(self, callback: Callable[[BaseException], None]) -> None:
        self._error_callbacks.append(callback)

    def fail(self, error: BaseException) -> None:
        """Signal abnormal termination. Only the first call notifies."""
        if self._failed:
            return
        self._failed = True
        callbacks, self._error_callbacks = self._error_callbacks, []
        for callback in callbacks:
            callback(error)

    async def close(self) -> None:
        """Close the connection and signal graceful close. Idempotent."""
        if self._closed:
            return
        self._closed = True

        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("connection_close_error", peer=str(self.peer), error=str(e))

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback()

    def __repr__(self) -> str:
        return f"StreamHolder(peer={self.peer!r}, closed={self._closed})"
