"""SQLite-backed monitor store — definitions, in-flight locks, result history.

Structured fields (status-code list, headers, HTTP sub-results) are JSON
encoded here and nowhere else. Connections are opened per call so the store
can be used from any worker thread.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..monitor.base import CheckResult, Monitor, MonitorType, clamp_timeout, utcnow
from ..monitor.http import HttpMonitor
from .base import (
    MonitorAlreadyLockedError,
    MonitorNotFoundError,
    StoreError,
    UnknownMonitorTypeError,
)

logger = logging.getLogger(__name__)

DB_PATH = Path("data") / "shraga.db"

# Owned by claim/release and insert; edits never overwrite them.
_SCHEDULING_COLUMNS = ("in_flight", "last_run_at", "created_at")


# ── Row codecs ───────────────────────────────────────────────────────────────


def _to_epoch(value: datetime | None) -> float | None:
    return value.timestamp() if value else None


def _from_epoch(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


def _http_to_row(monitor: HttpMonitor) -> dict[str, Any]:
    return {
        "address": monitor.address,
        "method": monitor.method or "GET",
        "headers": json.dumps(monitor.headers or {}),
        "body": monitor.body,
        "content_type": monitor.content_type,
        "valid_status_codes": json.dumps(list(monitor.valid_status_codes or [])),
        "expected_response": monitor.expected_response,
        "check_response": int(monitor.check_response),
        "check_ssl": int(monitor.check_ssl),
        "warn_on_ssl_expiry": int(monitor.warn_on_ssl_expiry),
        "req_timeout": clamp_timeout(monitor.req_timeout),
    }


def _http_from_row(row: dict[str, Any], base: dict[str, Any]) -> HttpMonitor:
    return HttpMonitor(
        **base,
        address=row["address"],
        method=row["method"],
        headers=json.loads(row["headers"] or "{}"),
        body=row["body"],
        content_type=row["content_type"],
        valid_status_codes=json.loads(row["valid_status_codes"] or "[]"),
        expected_response=row["expected_response"],
        check_response=bool(row["check_response"]),
        check_ssl=bool(row["check_ssl"]),
        warn_on_ssl_expiry=bool(row["warn_on_ssl_expiry"]),
        req_timeout=clamp_timeout(row["req_timeout"]),
    )


_CODECS: dict[MonitorType, tuple[Callable[[Any], dict[str, Any]], Callable[..., Monitor]]] = {
    MonitorType.HTTP: (_http_to_row, _http_from_row),
}


def _codec(kind: MonitorType) -> tuple[Callable[[Any], dict[str, Any]], Callable[..., Monitor]]:
    try:
        return _CODECS[kind]
    except KeyError:
        raise UnknownMonitorTypeError(kind) from None


def _monitor_to_row(monitor: Monitor) -> dict[str, Any]:
    to_row, _ = _codec(monitor.kind)
    row = {
        "name": monitor.name,
        "type": monitor.kind.value,
        "interval": float(monitor.interval),
        "enabled": int(monitor.enabled),
        "in_flight": int(monitor.in_flight),
        "last_run_at": _to_epoch(monitor.last_run_at),
        "created_at": _to_epoch(monitor.created_at),
        "updated_at": _to_epoch(monitor.updated_at),
    }
    row.update(to_row(monitor))
    return row


def _monitor_from_row(row: sqlite3.Row) -> Monitor:
    data = dict(row)
    try:
        kind = MonitorType(data["type"])
    except ValueError:
        raise UnknownMonitorTypeError(data["type"]) from None
    _, from_row = _codec(kind)
    base = {
        "id": data["id"],
        "name": data["name"],
        "interval": data["interval"],
        "enabled": bool(data["enabled"]),
        "in_flight": bool(data["in_flight"]),
        "last_run_at": _from_epoch(data["last_run_at"]),
        "created_at": _from_epoch(data["created_at"]),
        "updated_at": _from_epoch(data["updated_at"]),
    }
    return from_row(data, base)


def _result_from_row(row: sqlite3.Row) -> dict[str, Any]:
    d = dict(row)
    d["details"] = json.loads(d["details"]) if d["details"] else {}
    return d


# ── Store ────────────────────────────────────────────────────────────────────


class SqliteStore:
    """SQLite implementation of the monitor store."""

    def __init__(self, db_path: Path | str | None = None, busy_timeout: float = 5.0) -> None:
        self._db_path = Path(db_path or DB_PATH)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout = busy_timeout
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """One connection per call; commits on success, rolls back on error."""
        try:
            conn = sqlite3.connect(str(self._db_path), timeout=self._busy_timeout)
        except sqlite3.Error as e:
            raise StoreError(f"cannot open {self._db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS monitors (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    name               TEXT NOT NULL DEFAULT '',
                    type               TEXT NOT NULL,
                    interval           REAL NOT NULL,
                    enabled            INTEGER NOT NULL DEFAULT 1,
                    in_flight          INTEGER NOT NULL DEFAULT 0,
                    locked_at          REAL,
                    last_run_at        REAL,
                    address            TEXT NOT NULL DEFAULT '',
                    method             TEXT NOT NULL DEFAULT 'GET',
                    headers            TEXT NOT NULL DEFAULT '{}',
                    body               TEXT NOT NULL DEFAULT '',
                    content_type       TEXT NOT NULL DEFAULT '',
                    valid_status_codes TEXT NOT NULL DEFAULT '[]',
                    expected_response  TEXT NOT NULL DEFAULT '',
                    check_response     INTEGER NOT NULL DEFAULT 0,
                    check_ssl          INTEGER NOT NULL DEFAULT 0,
                    warn_on_ssl_expiry INTEGER NOT NULL DEFAULT 0,
                    req_timeout        REAL NOT NULL DEFAULT 30,
                    created_at         REAL,
                    updated_at         REAL
                );

                CREATE INDEX IF NOT EXISTS idx_monitors_due
                    ON monitors (enabled, in_flight, type);

                CREATE UNIQUE INDEX IF NOT EXISTS idx_monitors_name
                    ON monitors (name) WHERE name != '';

                CREATE TABLE IF NOT EXISTS check_results (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    monitor_id   INTEGER NOT NULL,
                    monitor_type TEXT NOT NULL,
                    outcome      TEXT NOT NULL,
                    checked_at   TEXT NOT NULL,
                    latency_ms   REAL,
                    error_msg    TEXT NOT NULL DEFAULT '',
                    details      TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_results_monitor
                    ON check_results (monitor_id, checked_at DESC);
            """)

    # ── Monitor definitions ───────────────────────────────────────────────

    def add_monitor(self, monitor: Monitor) -> Monitor:
        """Insert a monitor and return a copy carrying its new id."""
        now = utcnow()
        stamped = replace(monitor, created_at=now, updated_at=now)
        row = _monitor_to_row(stamped)
        columns = tuple(row)
        placeholders = ", ".join(f":{c}" for c in columns)
        with self._connect() as conn:
            cursor = conn.execute(
                f"INSERT INTO monitors ({', '.join(columns)}) VALUES ({placeholders})",
                row,
            )
            monitor_id = cursor.lastrowid
        logger.info("Added monitor %s (id=%d)", monitor.name or monitor.kind.value, monitor_id)
        return self.get_monitor(monitor_id)  # type: ignore[return-value]

    def update_monitor(self, monitor: Monitor) -> Monitor:
        """Overwrite a monitor's definition. Scheduling state is left untouched."""
        if monitor.id is None:
            raise MonitorNotFoundError(-1)
        row = _monitor_to_row(replace(monitor, updated_at=utcnow()))
        updates = {k: v for k, v in row.items() if k not in _SCHEDULING_COLUMNS}
        set_clause = ", ".join(f"{k} = :{k}" for k in updates)
        updates["id"] = monitor.id
        with self._connect() as conn:
            cursor = conn.execute(f"UPDATE monitors SET {set_clause} WHERE id = :id", updates)
        if cursor.rowcount == 0:
            raise MonitorNotFoundError(monitor.id)
        return self.get_monitor(monitor.id)  # type: ignore[return-value]

    def get_monitor(self, monitor_id: int) -> Monitor | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM monitors WHERE id = ?", (monitor_id,)).fetchone()
        return _monitor_from_row(row) if row else None

    def get_monitor_by_name(self, name: str) -> Monitor | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM monitors WHERE name = ?", (name,)).fetchone()
        return _monitor_from_row(row) if row else None

    def list_monitors(self) -> list[Monitor]:
        """All monitors of a known kind, ordered by id."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM monitors ORDER BY id").fetchall()
        return self._decode_rows(rows)

    def get_enabled_by_type(self, kind: MonitorType) -> list[Monitor]:
        _codec(kind)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM monitors WHERE enabled = 1 AND type = ? ORDER BY id",
                (kind.value,),
            ).fetchall()
        return [_monitor_from_row(r) for r in rows]

    def delete_monitor(self, monitor_id: int) -> bool:
        """Delete a monitor. Its result history is kept."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM monitors WHERE id = ?", (monitor_id,))
        return cursor.rowcount > 0

    def _decode_rows(self, rows: list[sqlite3.Row]) -> list[Monitor]:
        monitors = []
        for r in rows:
            try:
                monitors.append(_monitor_from_row(r))
            except UnknownMonitorTypeError as e:
                logger.warning("Skipping monitor %s: %s", r["id"], e)
        return monitors

    # ── Scheduling ────────────────────────────────────────────────────────

    def list_due(self, now: datetime) -> list[Monitor]:
        """Enabled, unlocked monitors whose interval has elapsed."""
        kinds = [k.value for k in _CODECS]
        marks = ", ".join("?" for _ in kinds)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM monitors "
                "WHERE enabled = 1 AND in_flight = 0 "
                f"AND type IN ({marks}) "
                "AND (last_run_at IS NULL OR last_run_at + interval <= ?) "
                "ORDER BY id",
                (*kinds, now.timestamp()),
            ).fetchall()
        return self._decode_rows(rows)

    def claim(self, monitor_id: int) -> None:
        """Atomically set the in-flight flag.

        Raises MonitorAlreadyLockedError or MonitorNotFoundError when the
        conditional update touches no row.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE monitors SET in_flight = 1, locked_at = ? "
                "WHERE id = ? AND in_flight = 0",
                (utcnow().timestamp(), monitor_id),
            )
            if cursor.rowcount == 1:
                return
            exists = conn.execute(
                "SELECT 1 FROM monitors WHERE id = ?", (monitor_id,),
            ).fetchone()
        if exists:
            raise MonitorAlreadyLockedError(monitor_id)
        raise MonitorNotFoundError(monitor_id)

    def release(self, monitor_id: int, now: datetime) -> None:
        """Clear the in-flight flag and stamp the last run time."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE monitors SET in_flight = 0, locked_at = NULL, last_run_at = ? "
                "WHERE id = ?",
                (now.timestamp(), monitor_id),
            )

    def release_stale(self, older_than: datetime) -> int:
        """Force-release locks taken before ``older_than``. Returns the count."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE monitors SET in_flight = 0, locked_at = NULL "
                "WHERE in_flight = 1 AND (locked_at IS NULL OR locked_at < ?)",
                (older_than.timestamp(),),
            )
        if cursor.rowcount:
            logger.warning("Released %d stale monitor lock(s)", cursor.rowcount)
        return cursor.rowcount

    # ── Results ───────────────────────────────────────────────────────────

    def save_result(self, result: CheckResult) -> None:
        details = result.details()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO check_results "
                "(monitor_id, monitor_type, outcome, checked_at, latency_ms, error_msg, details) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    result.monitor_id, result.monitor_type.value, result.outcome.value,
                    result.checked_at.isoformat(), result.latency_ms, result.error_msg,
                    json.dumps(details) if details else None,
                ),
            )

    def get_latest(self, monitor_id: int) -> dict[str, Any] | None:
        """Most recent result for a monitor."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM check_results WHERE monitor_id = ? "
                "ORDER BY checked_at DESC, id DESC LIMIT 1",
                (monitor_id,),
            ).fetchone()
        return _result_from_row(row) if row else None

    def get_history(self, monitor_id: int, limit: int = 100) -> list[dict[str, Any]]:
        """Results for a monitor, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM check_results WHERE monitor_id = ? "
                "ORDER BY checked_at DESC, id DESC LIMIT ?",
                (monitor_id, limit),
            ).fetchall()
        return [_result_from_row(r) for r in rows]

