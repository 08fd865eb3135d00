"""Outbound adapters."""

from db_multiplexer.adapters.outbound.json_registry import (
    DEFAULT_REGISTRY_PATH,
    JSONFileRegistry,
    is_process_running,
)
from db_multiplexer.adapters.outbound.sqlite_engine import SQLiteEngine, sqlite_engine_factory

__all__ = [
    "DEFAULT_REGISTRY_PATH",
    "JSONFileRegistry",
    "is_process_running",
    "SQLiteEngine",
    "sqlite_engine_factory",
]
