"""Monitor registry — loads monitors.yaml and syncs it into the store.

Entries are matched to stored monitors by ``name``: new names are added,
known names have their definition updated while scheduling state (lock,
last run) is preserved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from .monitor.base import DEFAULT_TIMEOUT, Monitor, MonitorType
from .monitor.http import HttpMonitor
from .store.sqlite import SqliteStore

logger = logging.getLogger(__name__)

REGISTRY_PATH = Path("monitors.yaml")


@dataclass
class SyncReport:
    """What a sync changed, by monitor name."""

    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class MonitorRegistry:
    """Loads and caches monitor definitions from a YAML file."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path or REGISTRY_PATH)
        self._monitors: list[Monitor] = []
        self._skipped: list[str] = []
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> list[Monitor]:
        """Parse the YAML file and return its monitors."""
        if self._loaded and not force:
            return self._monitors

        self._monitors = []
        self._skipped = []
        if not self._path.exists():
            logger.warning("Monitors file not found: %s", self._path)
            self._loaded = True
            return self._monitors

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
            entries = _entry_list(raw)
        except (OSError, yaml.YAMLError, TypeError) as e:
            logger.error("Failed to parse %s: %s", self._path, e)
            self._loaded = True
            return self._monitors

        for i, entry in enumerate(entries):
            try:
                self._monitors.append(parse_monitor(entry))
            except (KeyError, TypeError, ValueError) as e:
                label = entry.get("name", f"#{i}") if isinstance(entry, dict) else f"#{i}"
                logger.warning("Skipping malformed monitor entry %s: %s", label, e)
                self._skipped.append(str(label))

        self._loaded = True
        logger.info("Loaded %d monitors from %s", len(self._monitors), self._path)
        return self._monitors

    @property
    def monitors(self) -> list[Monitor]:
        return self.load()

    def sync(self, store: SqliteStore) -> SyncReport:
        """Add or update every loaded monitor in ``store``."""
        report = SyncReport()
        for monitor in self.load():
            existing = store.get_monitor_by_name(monitor.name)
            if existing is None:
                store.add_monitor(monitor)
                report.added.append(monitor.name)
            elif existing.kind != monitor.kind:
                logger.warning(
                    "Monitor %s changed type (%s -> %s), not updating",
                    monitor.name, existing.kind.value, monitor.kind.value,
                )
                report.skipped.append(monitor.name)
            else:
                store.update_monitor(replace(monitor, id=existing.id))
                report.updated.append(monitor.name)
        report.skipped = self._skipped + report.skipped
        return report


# ── Parsers ──────────────────────────────────────────────────────────────────


def _entry_list(raw: Any) -> list[Any]:
    if not isinstance(raw, dict):
        raise TypeError(f"expected a mapping at the top level, got {type(raw).__name__}")
    entries = raw.get("monitors") or []
    if not isinstance(entries, list):
        raise TypeError(f"'monitors' must be a list, got {type(entries).__name__}")
    return entries


def _flag(raw: dict[str, Any], key: str, default: bool = False) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise TypeError(f"'{key}' must be true or false, got {value!r}")
    return value


def parse_monitor(raw: dict[str, Any]) -> Monitor:
    """Build a monitor from one YAML entry. Raises ValueError or TypeError on bad input."""
    if not isinstance(raw, dict):
        raise TypeError(f"expected a mapping, got {type(raw).__name__}")
    name = str(raw["name"]).strip()
    if not name:
        raise ValueError("monitor 'name' is required")

    kind = str(raw.get("type", MonitorType.HTTP.value)).lower()
    if kind != MonitorType.HTTP.value:
        raise ValueError(f"unknown monitor type: {kind}")

    interval = float(raw.get("interval_seconds", 60))
    if interval <= 0:
        raise ValueError(f"interval_seconds must be positive, got {interval}")

    address = str(raw.get("address", "")).strip()
    if not address:
        raise ValueError("http monitor needs an 'address'")

    headers = raw.get("headers") or {}
    if not isinstance(headers, dict):
        raise TypeError(f"'headers' must be a mapping, got {type(headers).__name__}")

    codes = raw.get("valid_status_codes", [200])
    if not isinstance(codes, list):
        codes = [codes]

    return HttpMonitor(
        name=name,
        interval=interval,
        enabled=_flag(raw, "enabled", True),
        address=address,
        method=str(raw.get("method", "GET")).upper(),
        headers={str(k): str(v) for k, v in headers.items()},
        body=str(raw.get("body") or ""),
        content_type=str(raw.get("content_type") or ""),
        valid_status_codes=[int(c) for c in codes],
        expected_response=str(raw.get("expected_response") or ""),
        check_response=_flag(raw, "check_response"),
        check_ssl=_flag(raw, "check_ssl"),
        warn_on_ssl_expiry=_flag(raw, "warn_on_ssl_expiry"),
        req_timeout=float(raw.get("timeout_seconds", DEFAULT_TIMEOUT)),
    )
