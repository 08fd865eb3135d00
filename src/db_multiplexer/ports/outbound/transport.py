"""Transport port - the wire-protocol bridge.

Once a connection holds exclusive access to an instance, the multiplexer
hands the engine and the raw stream to a connection handler. The handler
owns the protocol; returning means the client is done, raising means the
connection failed. Either way the instance is released afterwards.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

ConnectionHandler = Callable[[Any, asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]
"""``handler(engine, reader, writer)`` serves one client connection."""
