"""JSON file implementation of the instance registry.

One registry file per host (``~/.db_multiplexer/registry.json`` by default)
records which logical databases are served on which ports by which
processes. Every mutating call reads the whole file, modifies the snapshot
and writes it back through a temp file + rename, so readers never observe a
half-written file.

Failure policy:
    - Reads degrade: a missing file is an empty registry, and an unreadable
      file, invalid JSON or a malformed root is logged and treated as empty.
    - A single malformed entry is not corruption: it is logged, skipped by
      queries and written back unchanged so other processes keep their claims.
    - Writes propagate: a failed write raises, since a silently lost
      ``register`` would leave a process believing its port is recorded.

Concurrency:
    There is no file locking. Two processes mutating the registry at the same
    time race on read-modify-write and the last writer wins.
"""

from __future__ import annotations

import json
import os
import sqlite3
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import psutil

from db_multiplexer.domain.entities import RegistryEntry, RegistryState
from db_multiplexer.domain.exceptions import CorruptRegistryError
from db_multiplexer.infrastructure.logging import get_logger
from db_multiplexer.infrastructure.metrics import MetricsRegistry, get_metrics

DEFAULT_REGISTRY_PATH = Path.home() / ".db_multiplexer" / "registry.json"

logger = get_logger(__name__)


def is_process_running(pid: int) -> bool:
    """Check whether ``pid`` identifies a live process."""
    if pid <= 0:
        return False
    return psutil.pid_exists(pid)


class JSONFileRegistry:
    """File-backed implementation of the InstanceRegistry protocol.

    Attributes:
        path: Location of the registry file.
        version: Engine version recorded in new entries.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        version: str = sqlite3.sqlite_version,
        process_checker: Callable[[int], bool] = is_process_running,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            path: Registry file (default ``~/.db_multiplexer/registry.json``).
            version: Engine version recorded in each entry.
            process_checker: Liveness check for pids.
            metrics: Metrics registry (default global).
        """
        self._path = Path(path) if path is not None else DEFAULT_REGISTRY_PATH
        self._version = version
        self._process_checker = process_checker
        self._metrics = metrics or get_metrics()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def version(self) -> str:
        return self._version

    # -- Persistence -------------------------------------------------------

    def load(self) -> RegistryState:
        """Read the registry, degrading to empty on any read or parse failure."""
        try:
            return self._read()
        except CorruptRegistryError as e:
            self._metrics.registry_corrupt_total.inc()
            logger.warning("registry_corrupt", path=str(self._path), error=str(e))
            return RegistryState()

    def _read(self) -> RegistryState:
        if not self._path.exists():
            return RegistryState()
        try:
            raw = self._path.read_text(encoding="utf-8")
            state = RegistryState.from_dict(json.loads(raw))
        except (OSError, ValueError) as e:
            raise CorruptRegistryError(f"Failed to load registry {self._path}: {e}") from e
        for data_dir, (_, reason) in state.unparsed.items():
            logger.warning("registry_entry_malformed", data_dir=data_dir, reason=reason)
        return state

    def save(self, state: RegistryState) -> None:
        """Atomically replace the registry file with ``state``.

        Raises:
            OSError: If the directory cannot be created or the write fails.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent,
            prefix=f".{self._path.stem}_",
            suffix=".tmp",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            tmp_path.replace(self._path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    # -- Mutations ---------------------------------------------------------

    def register(self, data_dir: str, port: int, pid: int) -> RegistryEntry:
        """Upsert the entry for ``data_dir``. Call only after binding ``port``."""
        state = self.load()
        entry = RegistryEntry(
            data_dir=data_dir,
            port=port,
            pid=pid,
            started=datetime.now(timezone.utc),
            version=self._version,
        )
        state.unparsed.pop(data_dir, None)
        state.instances[data_dir] = entry
        self.save(state)
        logger.info("instance_registered", data_dir=data_dir, port=port, pid=pid)
        return entry

    def unregister(self, data_dir: str) -> bool:
        """Remove the entry for ``data_dir``. No-op if absent."""
        state = self.load()
        if not state.remove(data_dir):
            return False
        self.save(state)
        logger.info("instance_unregistered", data_dir=data_dir)
        return True

    def cleanup_stale(self) -> int:
        """Remove every entry whose pid is no longer a live process.

        Returns:
            Number of entries removed.
        """
        state = self.load()
        stale = [
            data_dir
            for data_dir, entry in state.instances.items()
            if not self.is_process_running(entry.pid)
        ]
        for data_dir in stale:
            del state.instances[data_dir]

        if stale:
            self.save(state)
            self._metrics.registry_stale_removed_total.inc(len(stale))
            logger.info("stale_entries_removed", count=len(stale), data_dirs=stale)
        return len(stale)

    # -- Queries -----------------------------------------------------------

    def find_by_name(self, data_dir: str) -> RegistryEntry | None:
        return self.load().get(data_dir)

    def find_by_port(self, port: int) -> RegistryEntry | None:
        return self.load().find_by_port(port)

    def list_all(self) -> list[RegistryEntry]:
        return list(self.load())

    def is_process_running(self, pid: int) -> bool:
        return self._process_checker(pid)
