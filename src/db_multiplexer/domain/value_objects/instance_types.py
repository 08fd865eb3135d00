"""Instance state and lifecycle event types.

Lifecycle notifications are a tagged variant: every event is an
``InstanceEvent`` whose ``kind`` names exactly one state transition of the
instance identified by ``instance_name``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable


class LockState(str, Enum):
    """Access arbitration state of a managed instance."""

    FREE = "free"
    LOCKED = "locked"


class EventKind(str, Enum):
    """Lifecycle transitions of a managed instance."""

    INITIALIZED = "initialized"  # engine handle became ready
    LOCKED = "locked"  # a holder was granted exclusive access
    UNLOCKED = "unlocked"  # the holder released
    CLOSED = "closed"  # engine torn down, instance destroyed


@dataclass(frozen=True, slots=True)
class InstanceEvent:
    """A single lifecycle notification."""

    kind: EventKind
    instance_name: str


EventListener = Callable[[InstanceEvent], None]
"""Observer callback. Invoked synchronously on the event loop."""


DEFAULT_ACQUIRE_TIMEOUT = 5.0
"""Seconds a connection may queue for a busy database."""
