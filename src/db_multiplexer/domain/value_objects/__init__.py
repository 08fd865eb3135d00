"""Value objects for the multiplexer domain.

Exports:
    Port range:
        - PortRange: Closed interval of TCP ports
        - PortRangeInfo: Usage summary of the range
        - DEFAULT_PORT_RANGE, PORT_RANGE_START, PORT_RANGE_END

    Instance types:
        - LockState: FREE / LOCKED
        - EventKind, InstanceEvent, EventListener: lifecycle notifications
        - DEFAULT_ACQUIRE_TIMEOUT
"""

from db_multiplexer.domain.value_objects.instance_types import (
    DEFAULT_ACQUIRE_TIMEOUT,
    EventKind,
    EventListener,
    InstanceEvent,
    LockState,
)
from db_multiplexer.domain.value_objects.port_range import (
    DEFAULT_PORT_RANGE,
    PORT_RANGE_END,
    PORT_RANGE_START,
    PortRange,
    PortRangeInfo,
)

__all__ = [
    # Port range
    "PortRange",
    "PortRangeInfo",
    "DEFAULT_PORT_RANGE",
    "PORT_RANGE_START",
    "PORT_RANGE_END",
    # Instance types
    "LockState",
    "EventKind",
    "InstanceEvent",
    "EventListener",
    "DEFAULT_ACQUIRE_TIMEOUT",
]
