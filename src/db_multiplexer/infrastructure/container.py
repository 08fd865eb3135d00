"""Dependency injection container for the database multiplexer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

from fastapi import FastAPI
from opentelemetry import trace

from db_multiplexer.adapters.inbound.rest_api import create_app, run_server
from db_multiplexer.adapters.outbound.json_registry import JSONFileRegistry
from db_multiplexer.adapters.outbound.sqlite_engine import sqlite_engine_factory
from db_multiplexer.application.multiplexer import DatabaseMultiplexer
from db_multiplexer.domain.services import InstancePool, PortAllocator
from db_multiplexer.infrastructure.config import Config, get_config
from db_multiplexer.infrastructure.logging import get_logger, setup_logging
from db_multiplexer.infrastructure.metrics import MetricsRegistry, get_metrics, setup_metrics
from db_multiplexer.infrastructure.tracing import setup_tracing
from db_multiplexer.ports.outbound import ConnectionHandler, EngineFactory


@dataclass
class Container:
    """Wires configuration, observability and the multiplexer components."""

    config: Config
    tracer: trace.Tracer
    metrics: MetricsRegistry
    registry: JSONFileRegistry
    allocator: PortAllocator
    pool: InstancePool

    _instance: ClassVar[Container | None] = None

    @classmethod
    def create(
        cls,
        config: Config | None = None,
        engine_factory: EngineFactory = sqlite_engine_factory,
        metrics: MetricsRegistry | None = None,
        serve_metrics: bool = False,
    ) -> Container:
        """Create and initialize the container with all dependencies.

        Args:
            config: Configuration (default: ``get_config()``).
            engine_factory: Engine used for every database.
            metrics: Metrics registry (default global).
            serve_metrics: Start the Prometheus HTTP endpoint.
        """
        if cls._instance is not None:
            return cls._instance

        config = config or get_config()
        observability = config.observability
        setup_logging(observability.log_level, observability.log_format)
        tracer = setup_tracing(observability.otel_service_name, observability.otel_endpoint)
        if metrics is None:
            metrics = setup_metrics(config.server.metrics_port) if serve_metrics else get_metrics()

        registry = JSONFileRegistry(
            config.registry.path,
            version=config.registry.engine_version,
            metrics=metrics,
        )
        cls._instance = cls(
            config=config,
            tracer=tracer,
            metrics=metrics,
            registry=registry,
            allocator=PortAllocator(
                registry, probe_host=config.ports.probe_host, metrics=metrics
            ),
            pool=InstancePool.from_config(config, engine_factory, metrics),
        )

        get_logger(__name__).info(
            "db_multiplexer_container_initialized",
            base_dir=str(config.pool.base_dir),
            memory_mode=config.pool.memory_mode,
            max_instances=config.pool.max_instances,
            registry=str(config.registry.path),
        )
        return cls._instance

    @classmethod
    def get(cls) -> Container:
        """Get the singleton container instance."""
        if cls._instance is None:
            return cls.create()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the container (useful for testing)."""
        cls._instance = None

    def multiplexer(self, handler: ConnectionHandler) -> DatabaseMultiplexer:
        """Build a multiplexer serving this container's pool through ``handler``."""
        return DatabaseMultiplexer(
            self.pool,
            self.registry,
            self.allocator,
            handler,
            host=self.config.server.host,
            acquire_timeout=self.config.pool.acquire_timeout_seconds,
        )

    def admin_app(self, multiplexer: DatabaseMultiplexer | None = None) -> FastAPI:
        return create_app(self.pool, self.registry, self.allocator, multiplexer)

    def run_admin_api(self, multiplexer: DatabaseMultiplexer | None = None) -> None:
        """Serve the admin API on the configured host and port (blocking)."""
        run_server(self.admin_app(multiplexer), self.config.server.api_host, self.config.server.api_port)


def get_container() -> Container:
    """Get the dependency injection container."""
    return Container.get()
