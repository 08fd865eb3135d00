"""Configuration management for the database multiplexer."""

from __future__ import annotations

import sqlite3
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PoolConfig(BaseModel):
    """Instance pool configuration."""

    base_dir: Path = Field(default=Path("./data"), description="Root for per-database storage")
    memory_mode: bool = Field(default=False, description="Run every database in memory")
    max_instances: int = Field(default=100, ge=1, le=10000, description="Max live instances")
    auto_provision: bool = Field(
        default=True, description="Create unknown databases on first reference"
    )
    acquire_timeout_seconds: float = Field(
        default=5.0, gt=0, description="How long a connection may queue for a busy database"
    )


class RegistryConfig(BaseModel):
    """Host-wide instance registry configuration."""

    path: Path = Field(
        default=Path.home() / ".db_multiplexer" / "registry.json",
        description="Registry file location",
    )
    engine_version: str = Field(
        default=sqlite3.sqlite_version, description="Engine version recorded per entry"
    )


class PortConfig(BaseModel):
    """Port allocation configuration."""

    probe_host: str = Field(default="127.0.0.1", description="Host used for probe binds")


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="127.0.0.1", description="Host database listeners bind to")
    api_host: str = Field(default="127.0.0.1", description="Admin API host")
    api_port: int = Field(default=8000, ge=1, le=65535, description="Admin API port")
    metrics_port: int = Field(default=8001, ge=1, le=65535, description="Prometheus metrics port")


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Log level"
    )
    log_format: Literal["json", "console"] = Field(default="json", description="Log format")
    otel_endpoint: str | None = Field(
        default=None, description="OpenTelemetry collector endpoint"
    )
    otel_service_name: str = Field(
        default="db_multiplexer", description="Service name for tracing"
    )


class Config(BaseSettings):
    """Main configuration for the database multiplexer."""

    model_config = SettingsConfigDict(
        env_prefix="DB_MULTIPLEXER_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    pool: PoolConfig = Field(default_factory=PoolConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    ports: PortConfig = Field(default_factory=PortConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    def ensure_directories(self) -> None:
        """Ensure the storage root and registry directory exist."""
        if not self.pool.memory_mode:
            self.pool.base_dir.mkdir(parents=True, exist_ok=True)
        self.registry.path.parent.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_config() -> Config:
    """Get the global configuration instance."""
    config = Config()
    config.ensure_directories()
    return config
