"""Engine port - the embedded database engine behind one logical database.

The engine is opaque to the core. It is constructed synchronously from a
storage location, becomes usable once ``wait_ready`` completes, and is torn
down with ``close``. Engines are single-writer: the core guarantees at most
one connection uses an engine at a time.
"""

from __future__ import annotations

from abc import abstractmethod
from pathlib import Path
from typing import Callable, Protocol


class Engine(Protocol):
    """Protocol for an embedded database engine instance."""

    @abstractmethod
    async def wait_ready(self) -> None:
        """Complete the (potentially slow) boot.

        Raises:
            Exception: Any failure; the core reports it as EngineBootError.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release every resource held by the engine. Must be idempotent."""
        ...


EngineFactory = Callable[[Path | None], Engine]
"""Builds an engine for a storage directory, or an in-memory engine for None."""
