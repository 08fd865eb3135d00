"""Error taxonomy for the multiplexer.

Arbitration and capacity errors are raised straight to the immediate caller;
nothing inside the core retries. ``InstanceBusyError`` is the only error that
means "try again shortly" - the capacity and provisioning errors mean the
database cannot be served right now no matter how often the caller retries.
"""

from __future__ import annotations


class MultiplexerError(Exception):
    """Base class for all multiplexer errors."""


class InstanceBusyError(MultiplexerError):
    """A database stayed locked for the whole acquire timeout."""

    def __init__(self, db_name: str, timeout: float) -> None:
        self.db_name = db_name
        self.timeout = timeout
        super().__init__(f"Database {db_name} busy - try again")


class InstanceClosedError(MultiplexerError):
    """The instance was closed before (or while) access was requested."""

    def __init__(self, db_name: str) -> None:
        self.db_name = db_name
        super().__init__(f"Database {db_name} has been closed")


class HolderTerminatedError(MultiplexerError):
    """The requesting connection ended while it was still queued."""

    def __init__(self, db_name: str) -> None:
        self.db_name = db_name
        super().__init__(f"Connection to {db_name} ended while waiting for access")


class CapacityExceededError(MultiplexerError):
    """Creating another instance would exceed the pool limit."""

    def __init__(self, db_name: str, max_instances: int) -> None:
        self.db_name = db_name
        self.max_instances = max_instances
        super().__init__(
            f"Maximum instances limit reached ({max_instances}). "
            f"Cannot create database: {db_name}"
        )


class NotProvisionedError(MultiplexerError):
    """Unknown database while auto-provisioning is disabled."""

    def __init__(self, db_name: str) -> None:
        self.db_name = db_name
        super().__init__(f"Database {db_name} does not exist (auto-provision disabled)")


class EngineBootError(MultiplexerError):
    """The underlying engine failed to become ready."""

    def __init__(self, db_name: str, cause: BaseException) -> None:
        self.db_name = db_name
        self.cause = cause
        super().__init__(f"Failed to boot engine for {db_name}: {cause}")


class PortOutOfRangeError(MultiplexerError):
    """A preferred port lies outside the reserved range."""

    def __init__(self, port: int, start: int, end: int) -> None:
        self.port = port
        super().__init__(f"Preferred port {port} outside allowed range {start}-{end}")


class PortRangeExhaustedError(MultiplexerError):
    """No port in the reserved range is both bindable and unclaimed."""

    def __init__(self, start: int, end: int) -> None:
        super().__init__(
            f"No available ports in range {start}-{end}. "
            f"Stop unused instances (DatabaseMultiplexer.stop_all) "
            f"or remove stale registry entries"
        )


class AlreadyServedError(MultiplexerError):
    """Another live process already serves this database."""

    def __init__(self, data_dir: str, port: int, pid: int) -> None:
        self.data_dir = data_dir
        self.port = port
        self.pid = pid
        super().__init__(f"Instance already running for {data_dir} on port {port} (pid {pid})")


class CorruptRegistryError(MultiplexerError):
    """The registry file could not be parsed."""
