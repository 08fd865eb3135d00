"""Registry records.

The registry maps a logical database (its data directory) to the port and
process currently serving it. On disk the state is a single JSON object:

    {
      "instances": {
        "/srv/data/orders": {
          "port": 12000,
          "pid": 4242,
          "started": "2026-10-18T09:25:00+00:00",
          "version": "3.45.1"
        }
      }
    }

Entries are never edited in place; every change rewrites the whole state.
The file is shared by every process on the host, so a rewrite preserves what
it did not change: timestamps keep their original text and entries this
process cannot parse are carried through untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator


@dataclass(frozen=True, slots=True)
class RegistryEntry:
    """One logical database bound to a port by a process.

    Attributes:
        data_dir: Logical database identity (storage path or memory key).
        port: TCP port the database listens on.
        pid: OS process serving the database.
        started: When the entry was registered.
        version: Engine version string.
        started_text: ``started`` as read from disk, written back verbatim.
    """

    data_dir: str
    port: int
    pid: int
    started: datetime
    version: str
    started_text: str | None = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the payload (the key ``data_dir`` is stored by the parent)."""
        return {
            "port": self.port,
            "pid": self.pid,
            "started": self.started_text or self.started.isoformat(),
            "version": self.version,
        }

    def to_record(self) -> dict[str, Any]:
        """Flattened form including ``data_dir``, used for listings."""
        return {"data_dir": self.data_dir, **self.to_dict()}

    @classmethod
    def from_dict(cls, data_dir: str, payload: dict[str, Any]) -> RegistryEntry:
        """Deserialize one entry.

        Raises:
            KeyError: If a field is missing.
            ValueError: If a field has the wrong type or format.
        """
        port = payload["port"]
        pid = payload["pid"]
        if not isinstance(port, int) or isinstance(port, bool):
            raise ValueError(f"port must be an integer, got {port!r}")
        if not isinstance(pid, int) or isinstance(pid, bool):
            raise ValueError(f"pid must be an integer, got {pid!r}")
        started = str(payload["started"])
        return cls(
            data_dir=data_dir,
            port=port,
            pid=pid,
            started=datetime.fromisoformat(started),
            version=str(payload["version"]),
            started_text=started,
        )


@dataclass(slots=True)
class RegistryState:
    """Full registry snapshot keyed by data directory.

    Attributes:
        instances: Parsed entries.
        unparsed: Raw payloads of entries that failed to parse, with the
            reason. They are written back as they were read.
        key_order: Order of the entries in the file that was read.
    """

    instances: dict[str, RegistryEntry] = field(default_factory=dict)
    unparsed: dict[str, tuple[Any, str]] = field(default_factory=dict)
    key_order: list[str] = field(default_factory=list, repr=False)

    def __len__(self) -> int:
        return len(self.instances)

    def __iter__(self) -> Iterator[RegistryEntry]:
        return iter(self.instances.values())

    def get(self, data_dir: str) -> RegistryEntry | None:
        return self.instances.get(data_dir)

    def remove(self, data_dir: str) -> bool:
        """Drop ``data_dir``, parsed or not."""
        removed = self.instances.pop(data_dir, None) is not None
        return self.unparsed.pop(data_dir, None) is not None or removed

    def find_by_port(self, port: int) -> RegistryEntry | None:
        for entry in self.instances.values():
            if entry.port == port:
                return entry
        return None

    def claimed_ports(self) -> set[int]:
        """Ports claimed by any entry, live or stale.

        Unparsed entries still claim their port when it is readable.
        """
        ports = {entry.port for entry in self.instances.values()}
        for payload, _ in self.unparsed.values():
            port = payload.get("port") if isinstance(payload, dict) else None
            if isinstance(port, int) and not isinstance(port, bool):
                ports.add(port)
        return ports

    def to_dict(self) -> dict[str, Any]:
        """Serialize, keeping entries in the order they were read."""
        names = dict.fromkeys([*self.key_order, *self.instances, *self.unparsed])
        instances: dict[str, Any] = {}
        for data_dir in names:
            if data_dir in self.instances:
                instances[data_dir] = self.instances[data_dir].to_dict()
            elif data_dir in self.unparsed:
                instances[data_dir] = self.unparsed[data_dir][0]
        return {"instances": instances}

    @classmethod
    def from_dict(cls, data: Any) -> RegistryState:
        """Deserialize a full snapshot.

        Only a malformed root is an error. Entries that fail to parse are
        kept in ``unparsed``.

        Raises:
            ValueError: If the root or ``instances`` is not an object.
        """
        if not isinstance(data, dict):
            raise ValueError("registry root must be an object")
        instances = data.get("instances", {})
        if not isinstance(instances, dict):
            raise ValueError("'instances' must be an object")

        state = cls(key_order=list(instances))
        for data_dir, payload in instances.items():
            try:
                state.instances[data_dir] = RegistryEntry.from_dict(data_dir, payload)
            except (KeyError, ValueError, TypeError) as e:
                state.unparsed[data_dir] = (payload, f"{type(e).__name__}: {e}")
        return state
