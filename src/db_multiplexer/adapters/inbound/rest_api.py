"""REST admin API for the multiplexer.

Operator-facing view of the pool, the host-wide registry and the port range.
It never touches the engines themselves.

Endpoints:
    GET    /health             - Health check
    GET    /stats              - Pool statistics
    GET    /instances/{name}   - Stats for one instance
    DELETE /instances/{name}   - Stop serving (or just close) one instance
    GET    /registry           - All registry entries
    POST   /registry/cleanup   - Remove entries of dead processes
    GET    /ports              - Port range usage

Usage:
    app = create_app(pool, registry, allocator, multiplexer)
    # Run with uvicorn: uvicorn app:app --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from db_multiplexer import __version__
from db_multiplexer.domain.services import InstancePool, PortAllocator
from db_multiplexer.ports.outbound import InstanceRegistry

if TYPE_CHECKING:
    from db_multiplexer.application.multiplexer import DatabaseMultiplexer


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str = Field(..., description="Health status")
    version: str = Field(..., description="Service version")


class InstanceResponse(BaseModel):
    """Response model for a single instance."""

    db_name: str
    initialized: bool
    lock_state: str
    locked: bool
    queue_length: int
    uptime_seconds: float
    idle_seconds: float


class PoolStatsResponse(BaseModel):
    """Response model for pool statistics."""

    total_instances: int = Field(..., description="Instances held by the pool")
    max_instances: int = Field(..., description="Pool capacity")
    instances: list[InstanceResponse] = Field(default_factory=list)


class RegistryEntryResponse(BaseModel):
    """Response model for one registry entry."""

    data_dir: str
    port: int
    pid: int
    started: datetime
    version: str
    alive: bool = Field(..., description="Whether the owning process is running")


class CleanupResponse(BaseModel):
    """Response model for registry cleanup."""

    removed: int = Field(..., description="Stale entries removed")


class PortRangeResponse(BaseModel):
    """Response model for port range usage."""

    start: int
    end: int
    total: int
    used: int
    available: int
    used_ports: list[int]


def create_app(
    pool: InstancePool,
    registry: InstanceRegistry,
    allocator: PortAllocator,
    multiplexer: DatabaseMultiplexer | None = None,
) -> FastAPI:
    """Create the admin FastAPI application.

    Args:
        pool: The process's instance pool.
        registry: The host-wide registry.
        allocator: The port allocator.
        multiplexer: The multiplexer serving ``pool``, if any. Deleting a
            served instance then also closes its listener and registry entry.

    Returns:
        A configured FastAPI application.
    """
    app = FastAPI(
        title="DB Multiplexer Admin API",
        description="Inspect and manage multiplexed database instances",
        version=__version__,
    )

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(status="healthy", version=__version__)

    @app.get("/stats", response_model=PoolStatsResponse, tags=["Instances"])
    async def get_stats() -> dict[str, Any]:
        """Get pool statistics."""
        return pool.stats()

    @app.get("/instances/{name}", response_model=InstanceResponse, tags=["Instances"])
    async def get_instance(name: str) -> dict[str, Any]:
        """Get stats for one instance."""
        instance = pool.get(name)
        if instance is None:
            raise HTTPException(status_code=404, detail=f"Instance {name} not found")
        return instance.stats().to_dict()

    @app.delete("/instances/{name}", tags=["Instances"])
    async def close_instance(name: str) -> dict[str, str]:
        """Close one instance, dropping its holder and queued waiters.

        A served instance is stopped through the multiplexer so its port
        and registry entry are released too.
        """
        if multiplexer is not None and multiplexer.get(name) is not None:
            await multiplexer.stop(name)
            return {"message": f"Instance {name} stopped"}
        if not await pool.close_instance(name):
            raise HTTPException(status_code=404, detail=f"Instance {name} not found")
        return {"message": f"Instance {name} closed"}

    @app.get("/registry", response_model=list[RegistryEntryResponse], tags=["Registry"])
    async def list_registry() -> list[RegistryEntryResponse]:
        """List every registry entry with its liveness."""
        entries = await asyncio.to_thread(registry.list_all)
        return [
            RegistryEntryResponse(
                **entry.to_record(),
                alive=registry.is_process_running(entry.pid),
            )
            for entry in entries
        ]

    @app.post("/registry/cleanup", response_model=CleanupResponse, tags=["Registry"])
    async def cleanup_registry() -> CleanupResponse:
        """Remove entries whose process no longer exists."""
        try:
            removed = await asyncio.to_thread(registry.cleanup_stale)
        except OSError as e:
            raise HTTPException(status_code=500, detail=f"Registry write failed: {e}")
        return CleanupResponse(removed=removed)

    @app.get("/ports", response_model=PortRangeResponse, tags=["Ports"])
    async def port_range() -> dict[str, Any]:
        """Port range usage according to the registry."""
        info = await asyncio.to_thread(allocator.range_info)
        return info.to_dict()

    return app


def run_server(
    app: FastAPI,
    host: str = "127.0.0.1",
    port: int = 8000,
) -> None:
    """Run the admin API server.

    Args:
        app: Application from ``create_app``.
        host: Host to bind to.
        port: Port to bind to.
    """
    import uvicorn

    uvicorn.run(app, host=host, port=port)
