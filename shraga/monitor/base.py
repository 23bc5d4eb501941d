"""Monitor and result models shared by every check kind."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from .context import RunContext

DEFAULT_TIMEOUT = 30.0  # seconds
MIN_TIMEOUT = 1.0
MAX_TIMEOUT = 300.0

# A probe may spend MAX_TIMEOUT on the TLS inspection and again on the request.
MIN_LOCK_LEASE = 2 * MAX_TIMEOUT + 60.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_timeout(seconds: float | None) -> float:
    """Normalise a request timeout into [MIN_TIMEOUT, MAX_TIMEOUT].

    Unset (``None`` or 0) falls back to DEFAULT_TIMEOUT.
    """
    if not seconds:
        return DEFAULT_TIMEOUT
    return min(max(float(seconds), MIN_TIMEOUT), MAX_TIMEOUT)


class MonitorType(str, Enum):
    UNKNOWN = "unknown"
    HTTP = "http"


class Outcome(str, Enum):
    UNKNOWN = "unknown"
    UP = "up"
    DOWN = "down"
    WARN = "warn"


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one probe. Never mutated once created."""

    monitor_id: int
    outcome: Outcome
    checked_at: datetime = field(default_factory=utcnow)
    latency_ms: float = 0.0
    error_msg: str = ""
    monitor_type: MonitorType = MonitorType.UNKNOWN

    def details(self) -> dict[str, Any]:
        """Protocol-specific sub-result, empty for the base result."""
        return {}


@dataclass
class Monitor:
    """A recurring check target.

    ``id`` is assigned by the store. ``in_flight`` and ``last_run_at`` are
    scheduling state owned by the store and only changed through
    claim/release.
    """

    kind: ClassVar[MonitorType] = MonitorType.UNKNOWN

    id: int | None = None
    name: str = ""
    interval: float = 60.0  # seconds
    enabled: bool = True
    in_flight: bool = False
    last_run_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_enabled(self) -> bool:
        return self.enabled

    def is_due(self, now: datetime | None = None) -> bool:
        if not self.enabled or self.in_flight:
            return False
        if self.last_run_at is None:
            return True
        now = now or utcnow()
        return now >= self.last_run_at + timedelta(seconds=self.interval)

    async def probe(self, ctx: RunContext) -> CheckResult:
        raise NotImplementedError(f"{type(self).__name__} does not implement probe()")

    def label(self) -> str:
        return f"{self.name or self.kind.value}#{self.id}"
