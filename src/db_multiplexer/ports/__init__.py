"""Ports - the contracts between the core and its collaborators.

Inbound:
    - TerminationSource: connection handle that reports close/error

Outbound:
    - Engine, EngineFactory: the embedded database engine
    - ConnectionHandler: the wire-protocol bridge
    - InstanceRegistry: durable port/process directory
"""

from db_multiplexer.ports.inbound import TerminationSource
from db_multiplexer.ports.outbound import (
    ConnectionHandler,
    Engine,
    EngineFactory,
    InstanceRegistry,
)

__all__ = [
    "TerminationSource",
    "Engine",
    "EngineFactory",
    "ConnectionHandler",
    "InstanceRegistry",
]
