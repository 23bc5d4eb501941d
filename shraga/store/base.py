"""Store contract consumed by the scheduler and worker pool, plus its errors."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from ..monitor.base import CheckResult, Monitor, MonitorType


class StoreError(Exception):
    """Raised when the backing store fails."""


class MonitorNotFoundError(StoreError):
    def __init__(self, monitor_id: int) -> None:
        self.monitor_id = monitor_id
        super().__init__(f"monitor {monitor_id} not found")


class MonitorAlreadyLockedError(StoreError):
    def __init__(self, monitor_id: int) -> None:
        self.monitor_id = monitor_id
        super().__init__(f"monitor {monitor_id} is already locked")


class UnknownMonitorTypeError(StoreError):
    def __init__(self, kind: MonitorType | str) -> None:
        self.kind = kind
        value = getattr(kind, "value", kind)
        super().__init__(f"unknown monitor type: {value}")


class MonitorStore(Protocol):
    """What the core needs from persistence.

    ``claim`` must be a single conditional update: it succeeds only if the
    monitor exists and is not in flight. ``release`` clears the flag and
    stamps the last run time in one update and is idempotent.
    """

    def list_due(self, now: datetime) -> list[Monitor]: ...

    def claim(self, monitor_id: int) -> None: ...

    def release(self, monitor_id: int, now: datetime) -> None: ...

    def save_result(self, result: CheckResult) -> None: ...

    def release_stale(self, older_than: datetime) -> int: ...
