"""Application layer - serving pooled databases over TCP.

Exports:
    - DatabaseMultiplexer, ServedDatabase: one listener per logical database
    - auto_detect, can_connect, DetectedDatabase: external-or-embedded choice
"""

from db_multiplexer.application.detector import (
    DetectedDatabase,
    auto_detect,
    can_connect,
    check_tcp_connection,
)
from db_multiplexer.application.multiplexer import DatabaseMultiplexer, ServedDatabase

__all__ = [
    "DatabaseMultiplexer",
    "ServedDatabase",
    "DetectedDatabase",
    "auto_detect",
    "can_connect",
    "check_tcp_connection",
]
