"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from shraga.monitor.base import CheckResult, Monitor, Outcome, utcnow
from shraga.monitor.context import Cancelled, RunContext
from shraga.store.base import MonitorAlreadyLockedError, MonitorNotFoundError, StoreError
from shraga.store.sqlite import SqliteStore


class ProbeTracker:
    """Counts probes and the peak number running at once."""

    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self.calls: list[int] = []

    def enter(self, monitor_id: int) -> None:
        self.calls.append(monitor_id)
        self.active += 1
        self.peak = max(self.peak, self.active)

    def exit(self) -> None:
        self.active -= 1


@dataclass
class FakeMonitor(Monitor):
    """Monitor whose probe sleeps for ``delay`` and reports ``outcome``."""

    outcome: Outcome = Outcome.UP
    delay: float = 0.0
    error: Exception | None = None
    tracker: ProbeTracker | None = field(default=None, compare=False, repr=False)

    async def probe(self, ctx: RunContext) -> CheckResult:
        if self.tracker:
            self.tracker.enter(self.id)
        try:
            if self.error is not None:
                raise self.error
            if self.delay:
                await ctx.guard(asyncio.sleep(self.delay))
            return CheckResult(monitor_id=self.id, outcome=self.outcome)
        except Cancelled as e:
            return CheckResult(monitor_id=self.id, outcome=Outcome.DOWN, error_msg=str(e))
        finally:
            if self.tracker:
                self.tracker.exit()


class FakeStore:
    """In-memory store honouring the claim/release contract."""

    def __init__(self, monitors: list[Monitor] | None = None) -> None:
        self._lock = threading.Lock()
        self.monitors: dict[int, Monitor] = {m.id: m for m in monitors or []}
        self.results: list[CheckResult] = []
        self.releases: list[tuple[int, datetime]] = []
        self.fail_list_due = 0
        self.fail_save = False
        self.fail_release = False

    def list_due(self, now: datetime) -> list[Monitor]:
        with self._lock:
            if self.fail_list_due:
                self.fail_list_due -= 1
                raise StoreError("database is unavailable")
            return [replace(m) for m in self.monitors.values() if m.is_due(now)]

    def claim(self, monitor_id: int) -> None:
        with self._lock:
            monitor = self.monitors.get(monitor_id)
            if monitor is None:
                raise MonitorNotFoundError(monitor_id)
            if monitor.in_flight:
                raise MonitorAlreadyLockedError(monitor_id)
            monitor.in_flight = True

    def release(self, monitor_id: int, now: datetime) -> None:
        with self._lock:
            self.releases.append((monitor_id, now))
            if self.fail_release:
                raise StoreError("release failed")
            monitor = self.monitors.get(monitor_id)
            if monitor is not None:
                monitor.in_flight = False
                monitor.last_run_at = now

    def save_result(self, result: CheckResult) -> None:
        with self._lock:
            if self.fail_save:
                raise StoreError("disk full")
            self.results.append(result)

    def release_stale(self, older_than: datetime) -> int:
        return 0


@pytest.fixture
def tracker() -> ProbeTracker:
    return ProbeTracker()


@pytest.fixture
def make_monitor(tracker: ProbeTracker):
    """Factory for due FakeMonitors sharing the test's tracker."""

    def _make(monitor_id: int, **kwargs: Any) -> FakeMonitor:
        kwargs.setdefault("interval", 60)
        kwargs.setdefault("last_run_at", utcnow() - timedelta(seconds=120))
        return FakeMonitor(id=monitor_id, name=f"fake-{monitor_id}", tracker=tracker, **kwargs)

    return _make


@pytest.fixture
def fake_store():
    return FakeStore


@pytest.fixture
def run_until():
    """Run ``manager`` until ``predicate()`` holds (or timeout), then cancel it."""

    async def _run(manager: Any, predicate: Any, timeout: float = 5.0, cause: str = "test done") -> str:
        ctx = RunContext()
        task = asyncio.create_task(manager.run(ctx))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate() and loop.time() < deadline:
            await asyncio.sleep(0.01)
        ctx.cancel(cause)
        return await task

    return _run


@pytest.fixture
def store(tmp_path: Path) -> SqliteStore:
    """SqliteStore backed by a temp file."""
    return SqliteStore(db_path=tmp_path / "test_shraga.db")
