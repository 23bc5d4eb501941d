"""HTTP check engine — runs one probe against a monitor's address.

A probe validates the status code, optionally the exact response body, and
optionally inspects the TLS certificate served by the host. Every failure is
reported as a DOWN result; nothing here raises to the caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar
from urllib.parse import urlsplit

import httpx

from .base import DEFAULT_TIMEOUT, CheckResult, Monitor, MonitorType, Outcome, utcnow
from .context import Cancelled, RunContext

logger = logging.getLogger(__name__)

SSL_WARN_WINDOW = timedelta(days=30)
DEFAULT_TLS_PORT = 443


# ── Models ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SSLDetails:
    valid: bool = False
    expiry: datetime | None = None


@dataclass(frozen=True)
class HttpResult(CheckResult):
    """Result of an HTTP probe."""

    monitor_type: MonitorType = MonitorType.HTTP
    ssl: SSLDetails = field(default_factory=SSLDetails)
    status_code: int | None = None
    status_code_valid: bool = False
    data_valid: bool = False  # body matched; False when not checked

    def details(self) -> dict[str, Any]:
        return {
            "ssl_valid": self.ssl.valid,
            "ssl_expiry": self.ssl.expiry.isoformat() if self.ssl.expiry else None,
            "status_code": self.status_code,
            "status_code_valid": self.status_code_valid,
            "data_valid": self.data_valid,
        }


@dataclass
class HttpMonitor(Monitor):
    """Monitor that issues one HTTP request per probe."""

    kind: ClassVar[MonitorType] = MonitorType.HTTP

    address: str = ""
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    content_type: str = ""
    valid_status_codes: list[int] = field(default_factory=lambda: [200])
    expected_response: str = ""
    check_response: bool = False
    check_ssl: bool = False
    warn_on_ssl_expiry: bool = False
    req_timeout: float = DEFAULT_TIMEOUT  # seconds, clamped by the store

    async def probe(self, ctx: RunContext) -> HttpResult:
        return await run_http_check(self, ctx)


# ── Probe ────────────────────────────────────────────────────────────────────


def build_request(monitor: HttpMonitor) -> httpx.Request:
    """Build the probe request. Raises ``httpx.InvalidURL`` for a bad address."""
    headers = httpx.Headers()
    if monitor.body and monitor.content_type:
        headers["Content-Type"] = monitor.content_type
    # Custom headers win over the defaults above, case-insensitively.
    for key, value in monitor.headers.items():
        headers[key] = value

    return httpx.Request(
        monitor.method or "GET",
        monitor.address,
        headers=headers,
        content=monitor.body.encode() if monitor.body else None,
    )


async def run_http_check(
    monitor: HttpMonitor,
    ctx: RunContext,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HttpResult:
    """Probe ``monitor.address`` once and classify the outcome."""
    logger.info("Start monitoring: %s", monitor.label())
    checked_at = utcnow()

    def down(message: str, **fields: Any) -> HttpResult:
        return HttpResult(
            monitor_id=monitor.id, outcome=Outcome.DOWN,
            checked_at=checked_at, error_msg=message, **fields,
        )

    try:
        request = build_request(monitor)
    except (httpx.InvalidURL, ValueError) as e:
        return down(str(e))

    ssl_details = SSLDetails()
    if monitor.check_ssl or monitor.warn_on_ssl_expiry:
        ssl_details = await check_ssl(monitor.address, ctx, timeout=monitor.req_timeout)

    async with httpx.AsyncClient(
        timeout=monitor.req_timeout, follow_redirects=True, transport=transport,
    ) as client:
        with ctx.child(timeout=monitor.req_timeout) as probe_ctx:
            t0 = time.perf_counter()
            try:
                resp = await probe_ctx.guard(client.send(request, stream=True))
            except (httpx.HTTPError, httpx.InvalidURL, Cancelled) as e:
                return down(_error_text(e), ssl=ssl_details)
            latency = round((time.perf_counter() - t0) * 1000, 3)

            try:
                if resp.status_code not in monitor.valid_status_codes:
                    return down(
                        f"unexpected status code: {resp.status_code}",
                        ssl=ssl_details, latency_ms=latency,
                        status_code=resp.status_code, status_code_valid=False,
                    )

                data_valid = False
                if monitor.check_response:
                    try:
                        await probe_ctx.guard(resp.aread())
                    except (httpx.HTTPError, Cancelled) as e:
                        return down(
                            _error_text(e), ssl=ssl_details, latency_ms=latency,
                            status_code=resp.status_code, status_code_valid=True,
                        )
                    got = resp.text
                    if got != monitor.expected_response:
                        return down(
                            f"response is not as expected: {got}",
                            ssl=ssl_details, latency_ms=latency,
                            status_code=resp.status_code, status_code_valid=True,
                        )
                    data_valid = True
            finally:
                await resp.aclose()

    outcome = Outcome.UP
    if (
        monitor.warn_on_ssl_expiry
        and ssl_details.valid
        and ssl_details.expiry is not None
        and ssl_details.expiry - utcnow() < SSL_WARN_WINDOW
    ):
        outcome = Outcome.WARN

    return HttpResult(
        monitor_id=monitor.id, outcome=outcome, checked_at=checked_at,
        latency_ms=latency, ssl=ssl_details, status_code=resp.status_code,
        status_code_valid=True, data_valid=data_valid,
    )


def _error_text(e: BaseException) -> str:
    return str(e) or type(e).__name__


# ── TLS certificate ──────────────────────────────────────────────────────────


async def check_ssl(
    address: str,
    ctx: RunContext,
    timeout: float = DEFAULT_TIMEOUT,
) -> SSLDetails:
    """Validate the certificate served for ``address`` and fetch its expiry.

    Any failure (bad URL, connect, handshake, verification) yields
    ``SSLDetails(valid=False)``.
    """
    try:
        url = httpx.URL(address)
        # httpx drops scheme-default ports, so read the port as written.
        port = urlsplit(address).port or DEFAULT_TLS_PORT
    except (httpx.InvalidURL, ValueError) as e:
        logger.error("Failed to parse URL %r: %s", address, e)
        return SSLDetails()

    host = url.host
    if not host:
        logger.error("No host in address %r, skipping SSL check", address)
        return SSLDetails()

    try:
        with ctx.child(timeout=timeout) as tls_ctx:
            cert = await tls_ctx.guard(_fetch_peer_cert(host, port))
        expiry = datetime.fromtimestamp(
            ssl.cert_time_to_seconds(cert["notAfter"]), tz=timezone.utc,
        )
    except (OSError, ValueError, KeyError, TypeError, Cancelled) as e:
        logger.error("Failed to establish SSL connection to %s:%d: %s", host, port, e)
        return SSLDetails()

    return SSLDetails(valid=True, expiry=expiry)


async def _fetch_peer_cert(host: str, port: int) -> dict[str, Any]:
    """Open a verified TLS connection and return the leaf certificate."""
    context = ssl.create_default_context()
    _, writer = await asyncio.open_connection(
        host, port, ssl=context, server_hostname=host,
    )
    try:
        return writer.get_extra_info("peercert") or {}
    finally:
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
