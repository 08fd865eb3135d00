"""Reserved TCP port range."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

PORT_RANGE_START = 12000
PORT_RANGE_END = 12999


@dataclass(frozen=True, slots=True)
class PortRange:
    """A closed interval of TCP ports.

    Example:
        >>> r = PortRange(12000, 12002)
        >>> list(r)
        [12000, 12001, 12002]
        >>> 12003 in r
        False
    """

    start: int
    end: int

    def __post_init__(self) -> None:
        if not 1 <= self.start <= self.end <= 65535:
            raise ValueError(f"Invalid port range {self.start}-{self.end}")

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.start <= port <= self.end

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start, self.end + 1))

    def __len__(self) -> int:
        return self.end - self.start + 1

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


DEFAULT_PORT_RANGE = PortRange(PORT_RANGE_START, PORT_RANGE_END)


@dataclass(frozen=True, slots=True)
class PortRangeInfo:
    """Usage summary of a port range as seen by the registry."""

    start: int
    end: int
    total: int
    used: int
    available: int
    used_ports: tuple[int, ...]

    def to_dict(self) -> dict:
        return {
            "start": self.start,
            "end": self.end,
            "total": self.total,
            "used": self.used,
            "available": self.available,
            "used_ports": list(self.used_ports),
        }
