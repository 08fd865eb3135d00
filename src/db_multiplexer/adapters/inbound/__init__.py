"""Inbound adapters.

Exports:
    - StreamHolder: asyncio connection acting as a lock holder
    - create_app, run_server: REST admin API (FastAPI)
"""

from db_multiplexer.adapters.inbound.rest_api import create_app, run_server
from db_multiplexer.adapters.inbound.stream_holder import StreamHolder

__all__ = [
    "StreamHolder",
    "create_app",
    "run_server",
]
