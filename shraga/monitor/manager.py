"""Monitor manager — runs due monitors on a bounded worker pool.

The scheduler polls the store every tick and hands due monitors to the pool
over an unbuffered channel, so a busy pool throttles dispatch. Each worker
claims the monitor's lock in the store, probes it, saves the result and
always releases the lock.

Store calls are blocking and run on a thread pool owned by the manager;
probes run on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, TypeVar

from ..store.base import MonitorStore, StoreError
from .base import MIN_LOCK_LEASE, CheckResult, Monitor, Outcome, utcnow
from .channel import ChannelClosed, DispatchChannel
from .context import CANCELED, Cancelled, RunContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POOL_SIZE = 10
DEFAULT_TICK = 1.0  # seconds


async def _in_executor(executor: Executor | None, fn: Callable[..., T], *args: Any) -> T:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, fn, *args)


def _check_lease(lock_lease: float | None) -> float | None:
    """Reject leases that could expire while a probe still holds the lock."""
    if lock_lease and lock_lease < MIN_LOCK_LEASE:
        raise ValueError(
            f"lock lease must be 0 or at least {MIN_LOCK_LEASE:g}s, got {lock_lease:g}s"
        )
    return lock_lease or None


# ── Worker pool ──────────────────────────────────────────────────────────────


class WorkerPool:
    """Fixed set of workers, each running one monitor at a time."""

    def __init__(
        self,
        store: MonitorStore,
        channel: DispatchChannel[Monitor],
        size: int = DEFAULT_POOL_SIZE,
        executor: Executor | None = None,
        log: logging.Logger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if size < 1:
            raise ValueError(f"pool size must be at least 1, got {size}")
        self.store = store
        self.channel = channel
        self.size = size
        self._executor = executor
        self._log = log or logger
        self._clock = clock
        self._tasks: list[asyncio.Task[None]] = []

    def start(self, ctx: RunContext) -> None:
        """Spawn the workers. They exit once ``ctx`` ends or the channel closes."""
        if self._tasks:
            return
        self._log.info("Starting worker pool (%d workers)", self.size)
        for worker_id in range(self.size):
            self._tasks.append(
                asyncio.create_task(self._worker(ctx, worker_id), name=f"shraga-worker-{worker_id}")
            )

    async def wait(self) -> None:
        """Block until every worker has exited."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _worker(self, ctx: RunContext, worker_id: int) -> None:
        self._log.debug("worker %d started", worker_id)
        while True:
            try:
                monitor = await ctx.guard(self.channel.receive())
            except ChannelClosed:
                self._log.info("worker %d: channel closed, stopping", worker_id)
                return
            except Cancelled:
                self._log.debug("worker %d: context done, stopping", worker_id)
                return

            try:
                await self.work(ctx, monitor)
            except Exception:
                self._log.exception("worker %d: failed to monitor %s", worker_id, monitor.label())

    async def work(self, ctx: RunContext, monitor: Monitor) -> CheckResult | None:
        """Claim, probe, save, release. Returns None when the claim fails."""
        try:
            await _in_executor(self._executor, self.store.claim, monitor.id)
        except StoreError as e:
            self._log.warning("Skipping %s: %s", monitor.label(), e)
            return None

        try:
            result = await self._probe(ctx, monitor)
            try:
                await _in_executor(self._executor, self.store.save_result, result)
            except Exception:
                self._log.exception("Failed to save result for %s", monitor.label())
            self._log.debug(
                "Check %s: %s (%.1fms)", monitor.label(), result.outcome.value, result.latency_ms,
            )
            return result
        finally:
            try:
                await _in_executor(self._executor, self.store.release, monitor.id, self._clock())
            except Exception:
                self._log.exception("Failed to unlock %s", monitor.label())

    async def _probe(self, ctx: RunContext, monitor: Monitor) -> CheckResult:
        with ctx.child() as probe_ctx:
            try:
                return await monitor.probe(probe_ctx)
            except Exception as e:
                self._log.exception("Probe crashed for %s", monitor.label())
                return CheckResult(
                    monitor_id=monitor.id, outcome=Outcome.UNKNOWN,
                    error_msg=f"{type(e).__name__}: {e}", monitor_type=monitor.kind,
                )


# ── Scheduler ────────────────────────────────────────────────────────────────


class Scheduler:
    """Feeds due monitors into the dispatch channel once per tick."""

    def __init__(
        self,
        store: MonitorStore,
        channel: DispatchChannel[Monitor],
        tick: float = DEFAULT_TICK,
        lock_lease: float | None = None,
        executor: Executor | None = None,
        log: logging.Logger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.channel = channel
        self.tick = tick
        self.lock_lease = _check_lease(lock_lease)
        self._executor = executor
        self._log = log or logger
        self._clock = clock

    async def run(self, ctx: RunContext) -> str:
        """Dispatch until ``ctx`` is cancelled, then close the channel.

        Returns the cancellation cause.
        """
        closer = asyncio.create_task(self._close_on_cancel(ctx), name="shraga-channel-closer")
        try:
            while not ctx.cancelled:
                try:
                    await ctx.guard(asyncio.sleep(self.tick))
                    await self.dispatch_due(ctx)
                except (Cancelled, ChannelClosed):
                    break
        except BaseException:
            closer.cancel()
            self.channel.close()
            raise

        await closer
        return ctx.cause or CANCELED

    async def dispatch_due(self, ctx: RunContext) -> int:
        """Hand every due monitor to the pool. Returns how many were sent."""
        now = self._clock()
        if self.lock_lease:
            try:
                await _in_executor(
                    self._executor, self.store.release_stale,
                    now - timedelta(seconds=self.lock_lease),
                )
            except Exception:
                self._log.exception("Failed to release stale locks")

        try:
            monitors = await _in_executor(self._executor, self.store.list_due, now)
        except Exception:
            self._log.exception("Failed to get monitors")
            return 0

        for monitor in monitors:
            await ctx.guard(self.channel.send(monitor))
        return len(monitors)

    async def _close_on_cancel(self, ctx: RunContext) -> None:
        cause = await ctx.wait()
        self._log.info("Stopping dispatch: %s", cause)
        self.channel.close()


# ── Manager ──────────────────────────────────────────────────────────────────


class Manager:
    """Runs the scheduler and worker pool until the run context is cancelled.

    Lifecycle:
        ctx = RunContext()
        manager = Manager(store, pool_size=10)
        cause = await manager.run(ctx)   # returns after ctx.cancel(...)
    """

    def __init__(
        self,
        store: MonitorStore,
        pool_size: int = DEFAULT_POOL_SIZE,
        tick: float = DEFAULT_TICK,
        lock_lease: float | None = None,
        log: logging.Logger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.pool_size = pool_size
        self.tick = tick
        self.lock_lease = _check_lease(lock_lease)
        self._log = log or logger
        self._clock = clock

    async def run(self, ctx: RunContext) -> str:
        """Block until ``ctx`` is cancelled and every worker has drained."""
        executor = ThreadPoolExecutor(
            max_workers=self.pool_size + 1, thread_name_prefix="shraga-store",
        )
        channel: DispatchChannel[Monitor] = DispatchChannel()
        pool = WorkerPool(
            self.store, channel, size=self.pool_size,
            executor=executor, log=self._log, clock=self._clock,
        )
        scheduler = Scheduler(
            self.store, channel, tick=self.tick, lock_lease=self.lock_lease,
            executor=executor, log=self._log, clock=self._clock,
        )

        pool.start(ctx)
        self._log.info(
            "Manager started (workers=%d, tick=%ss, lease=%s)",
            self.pool_size, self.tick, self.lock_lease or "off",
        )
        try:
            cause = await scheduler.run(ctx)
        finally:
            await pool.wait()
            executor.shutdown(wait=True)

        self._log.info("Manager stopped: %s", cause)
        return cause
