"""Monitor subsystem — check engine, dispatch channel, scheduler and worker pool."""

from .base import CheckResult, Monitor, MonitorType, Outcome, clamp_timeout
from .context import Cancelled, RunContext
from .http import HttpMonitor, HttpResult, SSLDetails, run_http_check
from .manager import Manager, Scheduler, WorkerPool
