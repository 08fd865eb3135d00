"""Database auto-detection.

Chooses between an external PostgreSQL server and an embedded database:
the external URL wins when it is reachable, otherwise an embedded database
is served through the multiplexer.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Literal
from urllib.parse import urlsplit

from db_multiplexer.application.multiplexer import DatabaseMultiplexer
from db_multiplexer.infrastructure.logging import get_logger

POSTGRES_SCHEME = "postgresql"
POSTGRES_DEFAULT_PORT = 5432

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class DetectedDatabase:
    """Outcome of auto-detection."""

    kind: Literal["external", "embedded"]
    url: str
    port: int | None = None
    name: str | None = None

    @property
    def embedded(self) -> bool:
        return self.kind == "embedded"


async def check_tcp_connection(host: str, port: int, timeout: float) -> bool:
    """Whether a TCP connection to ``host:port`` opens within ``timeout``."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError) as e:
        logger.debug("probe_connection_close_error", host=host, port=port, error=str(e))
    return True


async def can_connect(url: str | None, timeout: float = 5.0) -> bool:
    """Check that a ``postgresql://`` URL points at a reachable server."""
    if not url or not url.startswith(f"{POSTGRES_SCHEME}://"):
        return False
    try:
        parts = urlsplit(url)
        host = parts.hostname
        port = parts.port or POSTGRES_DEFAULT_PORT
    except ValueError as e:
        logger.warning("invalid_database_url", error=str(e))
        return False
    if not host:
        logger.warning("invalid_database_url", error="missing host")
        return False
    return await check_tcp_connection(host, port, timeout)


async def auto_detect(
    multiplexer: DatabaseMultiplexer,
    name: str,
    external_url: str | None = None,
    preferred_port: int | None = None,
    timeout: float = 5.0,
) -> DetectedDatabase:
    """Resolve the database URL to use.

    Args:
        multiplexer: Serves the embedded fallback.
        name: Logical database name for the embedded fallback.
        external_url: External PostgreSQL URL to try first.
        preferred_port: Preferred port for the embedded fallback.
        timeout: Connect timeout for the external check.

    Returns:
        The external URL if reachable, otherwise the embedded database.
    """
    if external_url and external_url.startswith(f"{POSTGRES_SCHEME}://"):
        logger.info("checking_external_database")
        if await can_connect(external_url, timeout):
            logger.info("using_external_database")
            return DetectedDatabase(kind="external", url=external_url)
        logger.warning("external_database_unreachable")

    served = await multiplexer.serve(name, preferred_port)
    url = f"{POSTGRES_SCHEME}://{multiplexer.host}:{served.port}/{name}"
    logger.info("using_embedded_database", db_name=name, port=served.port)
    return DetectedDatabase(kind="embedded", url=url, port=served.port, name=name)
