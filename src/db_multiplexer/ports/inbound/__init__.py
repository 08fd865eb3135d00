"""Inbound ports."""

from db_multiplexer.ports.inbound.holder import TerminationSource

__all__ = ["TerminationSource"]
