"""Pytest configuration and fixtures for db_multiplexer tests."""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from typing import Callable, Generator

import pytest
from prometheus_client import CollectorRegistry

from db_multiplexer.adapters.outbound.json_registry import JSONFileRegistry
from db_multiplexer.infrastructure.config import Config, PoolConfig, RegistryConfig
from db_multiplexer.infrastructure.metrics import MetricsRegistry


class FakeEngine:
    """Engine double that records its lifecycle."""

    def __init__(
        self,
        storage_location: Path | None,
        boot_delay: float = 0.0,
        fail_with: Exception | None = None,
    ) -> None:
        self.storage_location = storage_location
        self.boot_delay = boot_delay
        self.fail_with = fail_with
        self.ready = False
        self.close_calls = 0

    async def wait_ready(self) -> None:
        if self.boot_delay:
            await asyncio.sleep(self.boot_delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.ready = True

    async def close(self) -> None:
        self.close_calls += 1
        self.ready = False


class FakeEngineFactory:
    """EngineFactory that counts boots and can be told to fail."""

    def __init__(self, boot_delay: float = 0.0) -> None:
        self.boot_delay = boot_delay
        self.fail_next: list[Exception] = []
        self.engines: list[FakeEngine] = []

    @property
    def boots(self) -> int:
        return len(self.engines)

    def __call__(self, storage_location: Path | None) -> FakeEngine:
        fail_with = self.fail_next.pop(0) if self.fail_next else None
        engine = FakeEngine(storage_location, self.boot_delay, fail_with)
        self.engines.append(engine)
        return engine


class FakeHolder:
    """Connection double implementing the TerminationSource port."""

    def __init__(self, label: str = "holder") -> None:
        self.label = label
        self._close_callbacks: list[Callable[[], None]] = []
        self._error_callbacks: list[Callable[[BaseException], None]] = []

    def on_close(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    def on_error(self, callback: Callable[[BaseException], None]) -> None:
        self._error_callbacks.append(callback)

    def close(self) -> None:
        for callback in self._close_callbacks:
            callback()

    def error(self, exc: BaseException | None = None) -> None:
        for callback in self._error_callbacks:
            callback(exc or ConnectionResetError("reset by peer"))

    def __repr__(self) -> str:
        return f"FakeHolder({self.label})"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config(temp_dir: Path) -> Config:
    """Provide a test configuration with temporary directories."""
    return Config(
        pool=PoolConfig(
            base_dir=temp_dir / "data",
            max_instances=4,
            acquire_timeout_seconds=0.5,  # Fast failure for tests
        ),
        registry=RegistryConfig(path=temp_dir / "registry" / "registry.json"),
    )


@pytest.fixture
def metrics_registry() -> MetricsRegistry:
    """Provide a fresh metrics registry for each test."""
    # Use a separate registry to avoid conflicts between tests
    registry = CollectorRegistry(auto_describe=True)
    return MetricsRegistry(registry=registry)


@pytest.fixture
def engine_factory() -> FakeEngineFactory:
    """Provide an engine factory that records every boot."""
    return FakeEngineFactory()


@pytest.fixture
def make_engine_factory() -> Callable[..., FakeEngineFactory]:
    """Provide a constructor for engine factories with custom boot behaviour."""
    return FakeEngineFactory


@pytest.fixture
def make_holder() -> Callable[[str], FakeHolder]:
    """Provide a factory for connection doubles."""
    return FakeHolder


@pytest.fixture
def live_pids() -> set[int]:
    """Pids the fake process checker reports as running."""
    return set()


@pytest.fixture
def registry(
    temp_dir: Path, live_pids: set[int], metrics_registry: MetricsRegistry
) -> JSONFileRegistry:
    """Provide a registry whose process liveness is controlled by ``live_pids``."""
    return JSONFileRegistry(
        path=temp_dir / "registry.json",
        version="test-1.0",
        process_checker=lambda pid: pid in live_pids,
        metrics=metrics_registry,
    )


# Markers for test categories
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
