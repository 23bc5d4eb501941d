"""Persistence for monitor definitions, locks and check results."""

from .base import (
    MonitorAlreadyLockedError,
    MonitorNotFoundError,
    MonitorStore,
    StoreError,
    UnknownMonitorTypeError,
)
from .sqlite import SqliteStore
