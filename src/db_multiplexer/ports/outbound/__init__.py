"""Outbound ports."""

from db_multiplexer.ports.outbound.engine import Engine, EngineFactory
from db_multiplexer.ports.outbound.registry import InstanceRegistry
from db_multiplexer.ports.outbound.transport import ConnectionHandler

__all__ = [
    "Engine",
    "EngineFactory",
    "InstanceRegistry",
    "ConnectionHandler",
]
