"""Instance registry port.

The registry is the host-wide ground truth for "is database X already
running, and where". It is shared by every process on the host and is
accessed read-entire / write-entire. Implementations are synchronous;
async callers off-load them with ``asyncio.to_thread``.

Concurrency:
    Two processes running ``register`` or ``cleanup_stale`` at the same time
    race on the read-modify-write cycle. No file locking is performed; the
    last writer wins.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Protocol

from db_multiplexer.domain.entities import RegistryEntry, RegistryState


class InstanceRegistry(Protocol):
    """Protocol for the durable data-dir -> {port, pid} directory."""

    @abstractmethod
    def load(self) -> RegistryState:
        """Read the full state. Unreadable state degrades to empty."""
        ...

    @abstractmethod
    def save(self, state: RegistryState) -> None:
        """Atomically replace the full state.

        Raises:
            OSError: If the write fails.
        """
        ...

    @abstractmethod
    def register(self, data_dir: str, port: int, pid: int) -> RegistryEntry:
        """Upsert an entry. Call only after the port was bound."""
        ...

    @abstractmethod
    def unregister(self, data_dir: str) -> bool:
        """Remove an entry. Returns False if it was absent."""
        ...

    @abstractmethod
    def find_by_name(self, data_dir: str) -> RegistryEntry | None:
        ...

    @abstractmethod
    def find_by_port(self, port: int) -> RegistryEntry | None:
        ...

    @abstractmethod
    def list_all(self) -> list[RegistryEntry]:
        ...

    @abstractmethod
    def cleanup_stale(self) -> int:
        """Remove entries whose process is gone. Returns the count removed."""
        ...

    @abstractmethod
    def is_process_running(self, pid: int) -> bool:
        """Liveness check used to tell live entries from stale ones."""
        ...
