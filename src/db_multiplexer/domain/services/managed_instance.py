"""Managed Instance - runtime state of one logical database.

A managed instance owns one embedded engine and arbitrates exclusive access
to it. The engine is single-writer, so at most one holder (a client
connection) may use it at a time; everyone else waits in a FIFO queue with a
short timeout.

State:
    Engine:  uninitialized -> ready  (one-way; reset only by close)
    Access:  free <-> locked

Invariants:
    - ``current_holder`` is set iff the instance is locked.
    - The instance is never free while a waiter is queued: a release hands
      the lock straight to the head of the queue before anything else runs.
    - At most one engine boot is in flight; concurrent ``initialize`` calls
      await the same boot task.
    - A holder whose connection ends is never left owning the lock: while
      queued its request is withdrawn, once granted it is released.

Concurrency:
    All methods run on one asyncio event loop. State transitions that must be
    atomic (release + promotion, timeout + dequeue) never span an ``await``.
    The boot spans suspension points, which is why it is guarded by an
    explicit in-flight task slot rather than by the loop's scheduling.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from db_multiplexer.domain.exceptions import (
    EngineBootError,
    HolderTerminatedError,
    InstanceBusyError,
    InstanceClosedError,
)
from db_multiplexer.domain.value_objects import (
    DEFAULT_ACQUIRE_TIMEOUT,
    EventKind,
    EventListener,
    InstanceEvent,
    LockState,
)
from db_multiplexer.infrastructure.logging import get_logger
from db_multiplexer.infrastructure.metrics import MetricsRegistry, get_metrics
from db_multiplexer.infrastructure.tracing import trace_span
from db_multiplexer.ports.inbound import TerminationSource
from db_multiplexer.ports.outbound import Engine, EngineFactory

MEMORY_KEY_PREFIX = "memory://"


@dataclass(eq=False)
class _Waiter:
    """A queued acquisition request."""

    ticket: int
    holder: Any
    future: asyncio.Future[None]
    enqueued_at: float
    timer: asyncio.TimerHandle | None = None
    granted: bool = False


@dataclass(frozen=True, slots=True)
class InstanceStats:
    """Point-in-time view of a managed instance."""

    db_name: str
    initialized: bool
    lock_state: LockState
    queue_length: int
    uptime_seconds: float
    idle_seconds: float

    @property
    def locked(self) -> bool:
        return self.lock_state is LockState.LOCKED

    def to_dict(self) -> dict[str, Any]:
        return {
            "db_name": self.db_name,
            "initialized": self.initialized,
            "lock_state": self.lock_state.value,
            "locked": self.locked,
            "queue_length": self.queue_length,
            "uptime_seconds": round(self.uptime_seconds, 3),
            "idle_seconds": round(self.idle_seconds, 3),
        }


class ManagedInstance:
    """One logical database: lazy engine boot plus exclusive-access arbitration.

    Example:
        >>> instance = ManagedInstance("orders", Path("data/orders"), sqlite_engine_factory)
        >>> await instance.initialize()
        >>> await instance.acquire(connection, timeout=5.0)
        >>> ...  # connection talks to instance.engine
        >>> instance.release(connection)
    """

    def __init__(
        self,
        name: str,
        storage_location: Path | None,
        engine_factory: EngineFactory,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the instance. The engine is not booted here.

        Args:
            name: Logical database name.
            storage_location: Storage directory, or None for in-memory mode.
            engine_factory: Builds the engine on first ``initialize``.
            metrics: Metrics registry (default global).
            clock: Monotonic clock used for stats.
        """
        self._name = name
        self._storage_location = storage_location
        self._engine_factory = engine_factory
        self._metrics = metrics or get_metrics()
        self._clock = clock
        self._logger = get_logger(__name__, db_name=name)

        self._engine: Engine | None = None
        self._boot_task: asyncio.Task[Engine] | None = None
        self._closed = False

        self._holder: Any = None
        self._waiters: dict[int, _Waiter] = {}
        self._tickets = itertools.count(1)

        self._listeners: list[EventListener] = []

        self._created_at = clock()
        self._last_access_at = self._created_at

    # -- Properties --------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def storage_location(self) -> Path | None:
        return self._storage_location

    @property
    def memory_mode(self) -> bool:
        return self._storage_location is None

    @property
    def registry_key(self) -> str:
        """Identity of this database in the host-wide registry."""
        if self._storage_location is None:
            return f"{MEMORY_KEY_PREFIX}{self._name}"
        return str(self._storage_location.resolve())

    @property
    def engine(self) -> Engine | None:
        return self._engine

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    @property
    def is_booting(self) -> bool:
        return self._boot_task is not None

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def lock_state(self) -> LockState:
        return LockState.FREE if self._holder is None else LockState.LOCKED

    @property
    def is_locked(self) -> bool:
        return self._holder is not None

    @property
    def current_holder(self) -> Any:
        return self._holder

    @property
    def queue_length(self) -> int:
        return len(self._waiters)

    # -- Events ------------------------------------------------------------

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a lifecycle listener.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: EventKind) -> None:
        event = InstanceEvent(kind=kind, instance_name=self._name)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self._logger.exception("event_listener_failed", kind=kind.value)

    # -- Engine lifecycle --------------------------------------------------

    async def initialize(self) -> Engine:
        """Boot the engine on first call; later calls return the same engine.

        Concurrent callers share one in-flight boot. A failed boot leaves the
        instance uninitialized, so the next call retries.

        Returns:
            The ready engine.

        Raises:
            EngineBootError: If the engine failed to boot.
            InstanceClosedError: If the instance was closed.
        """
        if self._closed:
            raise InstanceClosedError(self._name)
        if self._engine is not None:
            return self._engine

        if self._boot_task is None:
            self._boot_task = asyncio.get_running_loop().create_task(
                self._boot(), name=f"boot-{self._name}"
            )
        # Shield so a cancelled caller does not abort the boot other callers share
        return await asyncio.shield(self._boot_task)

    async def _boot(self) -> Engine:
        started = time.perf_counter()
        self._logger.debug(
            "instance_initializing",
            mode="memory" if self.memory_mode else "durable",
            data_dir=str(self._storage_location) if self._storage_location else None,
        )
        try:
            with trace_span(
                "instance.boot",
                {"db.name": self._name, "db.memory_mode": self.memory_mode},
            ):
                if self._storage_location is not None:
                    await asyncio.to_thread(
                        self._storage_location.mkdir, parents=True, exist_ok=True
                    )
                engine = self._engine_factory(self._storage_location)
                await engine.wait_ready()
        except asyncio.CancelledError:
            self._boot_task = None
            raise
        except Exception as e:
            self._boot_task = None
            self._metrics.instance_boots_total.labels(status="error").inc()
            self._logger.error("instance_boot_failed", error=str(e))
            raise EngineBootError(self._name, e) from e

        self._boot_task = None
        if self._closed:
            # Closed while booting; the engine must not outlive the instance
            await engine.close()
            raise InstanceClosedError(self._name)

        self._engine = engine
        elapsed = time.perf_counter() - started
        self._metrics.instance_boots_total.labels(status="success").inc()
        self._metrics.instance_boot_seconds.observe(elapsed)
        self._logger.info(
            "instance_initialized",
            data_dir="(in-memory)" if self.memory_mode else str(self._storage_location),
            memory_mode=self.memory_mode,
            init_time_ms=round(elapsed * 1000, 2),
        )
        self._emit(EventKind.INITIALIZED)
        return engine

    async def close(self) -> None:
        """Tear down the engine unconditionally, even while locked. Idempotent.

        Queued waiters fail immediately with InstanceClosedError instead of
        waiting out their timeouts. The current holder loses access without
        negotiation.
        """
        if self._closed:
            return
        self._closed = True

        waiters = list(self._waiters.values())
        self._waiters.clear()
        for waiter in waiters:
            if waiter.timer is not None:
                waiter.timer.cancel()
            if not waiter.future.done():
                waiter.future.set_exception(InstanceClosedError(self._name))
        if waiters:
            self._metrics.acquisitions_total.labels(outcome="closed").inc(len(waiters))
        # Drop the per-database series; auto-provisioned names are unbounded
        self._update_queue_gauge()
        self._metrics.queue_depth.remove(self._name)

        self._holder = None
        engine, self._engine = self._engine, None
        if engine is not None:
            try:
                await engine.close()
            except Exception as e:
                # Teardown continues; the instance is gone either way
                self._logger.warning("engine_close_failed", error=str(e))

        self._logger.info("instance_closed", abandoned_waiters=len(waiters))
        self._emit(EventKind.CLOSED)

    # -- Access arbitration ------------------------------------------------

    async def acquire(self, holder: Any, timeout: float = DEFAULT_ACQUIRE_TIMEOUT) -> None:
        """Obtain exclusive access for ``holder``.

        Grants immediately when free. Otherwise queues behind earlier
        requests and waits until promoted by a release.

        Args:
            holder: Opaque connection handle, compared by identity.
            timeout: Seconds to wait in the queue.

        Raises:
            InstanceBusyError: If not promoted within ``timeout``.
            InstanceClosedError: If the instance is (or gets) closed.
            HolderTerminatedError: If ``holder`` closed or failed while queued.
        """
        if self._closed:
            raise InstanceClosedError(self._name)

        if self._holder is None:
            self._grant(holder)
            self._metrics.acquisitions_total.labels(outcome="immediate").inc()
            return

        loop = asyncio.get_running_loop()
        waiter = _Waiter(
            ticket=next(self._tickets),
            holder=holder,
            future=loop.create_future(),
            enqueued_at=loop.time(),
        )
        self._waiters[waiter.ticket] = waiter
        waiter.timer = loop.call_later(timeout, self._expire, waiter, timeout)
        self._update_queue_gauge()
        self._logger.debug("database_busy_queueing", queue_length=len(self._waiters))
        self._bind_termination(holder, waiter)

        try:
            await waiter.future
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise

        self._metrics.acquisitions_total.labels(outcome="queued").inc()
        self._metrics.lock_wait_seconds.observe(loop.time() - waiter.enqueued_at)

    def release(self, holder: Any) -> bool:
        """Give up access held by ``holder`` and promote the next waiter.

        Safe to call more than once: a release by anything other than the
        current holder is ignored.

        Returns:
            True if ``holder`` was the current holder.
        """
        if self._holder is None or self._holder is not holder:
            self._logger.debug("release_ignored", locked=self.is_locked)
            return False

        self._holder = None
        self._last_access_at = self._clock()
        promoted = self._promote()

        self._emit(EventKind.UNLOCKED)
        if promoted:
            self._emit(EventKind.LOCKED)
        return True

    def _grant(self, holder: Any) -> None:
        self._holder = holder
        self._last_access_at = self._clock()
        self._bind_termination(holder)
        self._emit(EventKind.LOCKED)

    def _promote(self) -> bool:
        """Hand the lock to the oldest live waiter. Runs without suspending."""
        while self._waiters:
            ticket = next(iter(self._waiters))
            waiter = self._waiters.pop(ticket)
            if waiter.future.done():
                # Caller was cancelled; its cleanup has not run yet
                continue
            if waiter.timer is not None:
                waiter.timer.cancel()
            waiter.granted = True
            self._holder = waiter.holder
            self._last_access_at = self._clock()
            waiter.future.set_result(None)
            self._update_queue_gauge()
            return True

        self._update_queue_gauge()
        return False

    def _expire(self, waiter: _Waiter, timeout: float) -> None:
        """Timer callback: fail a waiter that was not promoted in time."""
        if waiter.future.done():
            return
        self._waiters.pop(waiter.ticket, None)
        self._update_queue_gauge()
        self._metrics.acquisitions_total.labels(outcome="busy").inc()
        self._logger.info("acquire_timed_out", timeout=timeout, queue_length=len(self._waiters))
        waiter.future.set_exception(InstanceBusyError(self._name, timeout))

    def _abandon(self, waiter: _Waiter) -> None:
        """Clean up after the awaiting task was cancelled."""
        if waiter.timer is not None:
            waiter.timer.cancel()
        if self._waiters.pop(waiter.ticket, None) is not None:
            self._update_queue_gauge()
        elif waiter.granted:
            # Promoted just before the cancellation landed
            self.release(waiter.holder)

    def _withdraw(self, waiter: _Waiter) -> None:
        """Drop a queued waiter whose holder went away before promotion."""
        if waiter.timer is not None:
            waiter.timer.cancel()
        self._update_queue_gauge()
        self._metrics.acquisitions_total.labels(outcome="terminated").inc()
        self._logger.info("waiter_terminated", queue_length=len(self._waiters))
        if not waiter.future.done():
            waiter.future.set_exception(HolderTerminatedError(self._name))

    def _bind_termination(self, holder: Any, waiter: _Waiter | None = None) -> None:
        """Act on the holder's connection ending, from enqueue onwards.

        While ``waiter`` is still queued the request is withdrawn; once the
        holder owns the lock it is released. Close and error are both bound;
        the first one to fire acts and the other becomes a no-op.
        """
        if not isinstance(holder, TerminationSource):
            return

        fired = False

        def on_terminated(*_: Any) -> None:
            nonlocal fired
            if fired:
                return
            fired = True
            if waiter is not None and self._waiters.pop(waiter.ticket, None) is not None:
                self._withdraw(waiter)
                return
            self.release(holder)

        holder.on_close(on_terminated)
        holder.on_error(on_terminated)

    def _update_queue_gauge(self) -> None:
        self._metrics.queue_depth.labels(db_name=self._name).set(len(self._waiters))

    # -- Observability -----------------------------------------------------

    def stats(self) -> InstanceStats:
        """Point-in-time stats. Does not count as an access."""
        now = self._clock()
        return InstanceStats(
            db_name=self._name,
            initialized=self.is_initialized,
            lock_state=self.lock_state,
            queue_length=len(self._waiters),
            uptime_seconds=now - self._created_at,
            idle_seconds=now - self._last_access_at,
        )

    def __repr__(self) -> str:
        return (
            f"ManagedInstance(name={self._name!r}, initialized={self.is_initialized}, "
            f"lock_state={self.lock_state.value}, queue_length={len(self._waiters)})"
        )
