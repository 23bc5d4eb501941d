"""Tests for the HTTP check engine."""

from __future__ import annotations

import asyncio
import ssl
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from shraga.monitor.base import CheckResult, MonitorType, Outcome, utcnow
from shraga.monitor.context import RunContext
from shraga.monitor.http import (
    HttpMonitor,
    HttpResult,
    SSLDetails,
    build_request,
    check_ssl,
    run_http_check,
)


def probe(monitor: HttpMonitor, handler: Any, cancel_after: float | None = None) -> HttpResult:
    """Run one probe against an in-memory transport."""

    async def scenario() -> HttpResult:
        ctx = RunContext()
        if cancel_after is not None:
            asyncio.get_running_loop().call_later(cancel_after, ctx.cancel)
        return await run_http_check(monitor, ctx, transport=httpx.MockTransport(handler))

    return asyncio.run(scenario())


def http_monitor(**kwargs: Any) -> HttpMonitor:
    kwargs.setdefault("address", "http://service.test/health")
    return HttpMonitor(id=1, name="svc", **kwargs)


# ── Models ───────────────────────────────────────────────────────────────────


class TestHttpResult:
    def test_auto_timestamp(self) -> None:
        r = HttpResult(monitor_id=1, outcome=Outcome.UP)
        assert r.checked_at.tzinfo is not None
        assert r.monitor_type == MonitorType.HTTP

    def test_immutable(self) -> None:
        r = HttpResult(monitor_id=1, outcome=Outcome.UP)
        with pytest.raises(AttributeError):
            r.outcome = Outcome.DOWN  # type: ignore[misc]

    def test_details(self) -> None:
        expiry = utcnow() + timedelta(days=3)
        r = HttpResult(
            monitor_id=1, outcome=Outcome.WARN, ssl=SSLDetails(True, expiry),
            status_code=200, status_code_valid=True, data_valid=True,
        )
        assert r.details() == {
            "ssl_valid": True,
            "ssl_expiry": expiry.isoformat(),
            "status_code": 200,
            "status_code_valid": True,
            "data_valid": True,
        }

    def test_base_result_has_no_details(self) -> None:
        assert CheckResult(monitor_id=1, outcome=Outcome.UNKNOWN).details() == {}


# ── Request building ─────────────────────────────────────────────────────────


class TestBuildRequest:
    def test_content_type_only_with_body(self) -> None:
        req = build_request(http_monitor(method="POST", body="x", content_type="text/plain"))
        assert req.headers["Content-Type"] == "text/plain"
        assert req.content == b"x"

        req = build_request(http_monitor(content_type="text/plain"))
        assert "Content-Type" not in req.headers

    def test_custom_headers_override_defaults(self) -> None:
        req = build_request(http_monitor(
            method="POST", body="{}", content_type="text/plain",
            headers={"content-type": "application/json", "X-Token": "t"},
        ))
        assert req.headers.get_list("Content-Type") == ["application/json"]
        assert req.headers["X-Token"] == "t"

    def test_empty_method_defaults_to_get(self) -> None:
        assert build_request(http_monitor(method="")).method == "GET"

    def test_malformed_url_raises(self) -> None:
        with pytest.raises(httpx.InvalidURL):
            build_request(http_monitor(address="http://exa\x00mple.com"))


# ── Probe ────────────────────────────────────────────────────────────────────


class TestHTTPCheck:
    def test_success_with_body_match(self) -> None:
        result = probe(
            http_monitor(check_response=True, expected_response="ok"),
            lambda req: httpx.Response(200, text="ok"),
        )
        assert result.outcome == Outcome.UP
        assert result.status_code_valid is True
        assert result.data_valid is True
        assert result.status_code == 200
        assert result.error_msg == ""
        assert result.latency_ms >= 0

    def test_success_without_body_check_ignores_body(self) -> None:
        result = probe(http_monitor(), lambda req: httpx.Response(200, text="anything"))
        assert result.outcome == Outcome.UP
        assert result.data_valid is False

    def test_bad_status_is_down(self) -> None:
        result = probe(
            http_monitor(valid_status_codes=[200]),
            lambda req: httpx.Response(500, text="oops"),
        )
        assert result.outcome == Outcome.DOWN
        assert result.status_code_valid is False
        assert result.status_code == 500
        assert result.latency_ms > 0
        assert "500" in result.error_msg

    def test_any_listed_status_accepted(self) -> None:
        result = probe(
            http_monitor(valid_status_codes=[200, 204]),
            lambda req: httpx.Response(204),
        )
        assert result.outcome == Outcome.UP

    def test_empty_status_list_never_valid(self) -> None:
        result = probe(http_monitor(valid_status_codes=[]), lambda req: httpx.Response(200))
        assert result.outcome == Outcome.DOWN
        assert result.status_code_valid is False

    def test_body_mismatch(self) -> None:
        result = probe(
            http_monitor(check_response=True, expected_response="ok"),
            lambda req: httpx.Response(200, text="fail"),
        )
        assert result.outcome == Outcome.DOWN
        assert result.error_msg == "response is not as expected: fail"
        assert result.status_code_valid is True
        assert result.data_valid is False

    def test_body_match_is_exact(self) -> None:
        result = probe(
            http_monitor(check_response=True, expected_response="ok"),
            lambda req: httpx.Response(200, text="ok\n"),
        )
        assert result.outcome == Outcome.DOWN

    def test_connection_refused(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        result = probe(http_monitor(), refuse)
        assert result.outcome == Outcome.DOWN
        assert result.error_msg == "Connection refused"
        assert result.status_code is None
        assert result.status_code_valid is False
        assert result.data_valid is False
        assert result.latency_ms == 0

    def test_malformed_url_fails_before_network(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        with patch("shraga.monitor.http.check_ssl", new=AsyncMock()) as mock_ssl:
            result = probe(http_monitor(address="http://exa\x00mple.com", check_ssl=True), handler)

        assert result.outcome == Outcome.DOWN
        assert result.error_msg
        assert calls == []
        mock_ssl.assert_not_awaited()

    def test_request_carries_method_headers_and_body(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201)

        result = probe(
            http_monitor(
                method="POST", body='{"a": 1}', content_type="application/json",
                headers={"Authorization": "Bearer t"}, valid_status_codes=[201],
            ),
            handler,
        )
        assert result.outcome == Outcome.UP
        req = seen[0]
        assert req.method == "POST"
        assert req.headers["Authorization"] == "Bearer t"
        assert req.headers["Content-Type"] == "application/json"
        assert req.content == b'{"a": 1}'

    def test_timeout_is_down(self) -> None:
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200)

        result = probe(http_monitor(req_timeout=0.1), slow)
        assert result.outcome == Outcome.DOWN
        assert result.error_msg == "context deadline exceeded"

    def test_cancellation_aborts_request(self) -> None:
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200)

        result = probe(http_monitor(), slow, cancel_after=0.05)
        assert result.outcome == Outcome.DOWN
        assert result.error_msg == "context canceled"


# ── SSL expiry warning ───────────────────────────────────────────────────────


class TestSSLWarning:
    def _probe_with_cert(self, details: SSLDetails, **kwargs: Any) -> HttpResult:
        with patch("shraga.monitor.http.check_ssl", new=AsyncMock(return_value=details)):
            return probe(http_monitor(**kwargs), lambda req: httpx.Response(200, text="ok"))

    def test_cert_expiring_soon_warns(self) -> None:
        result = self._probe_with_cert(
            SSLDetails(valid=True, expiry=utcnow() + timedelta(days=10)),
            warn_on_ssl_expiry=True,
        )
        assert result.outcome == Outcome.WARN
        assert result.ssl.valid is True

    def test_cert_far_from_expiry_is_up(self) -> None:
        result = self._probe_with_cert(
            SSLDetails(valid=True, expiry=utcnow() + timedelta(days=90)),
            warn_on_ssl_expiry=True,
        )
        assert result.outcome == Outcome.UP

    def test_no_warning_when_disabled(self) -> None:
        result = self._probe_with_cert(
            SSLDetails(valid=True, expiry=utcnow() + timedelta(days=10)),
            check_ssl=True,
        )
        assert result.outcome == Outcome.UP
        assert result.ssl.expiry is not None

    def test_invalid_cert_does_not_abort_or_warn(self) -> None:
        result = self._probe_with_cert(SSLDetails(valid=False), warn_on_ssl_expiry=True)
        assert result.outcome == Outcome.UP
        assert result.ssl.valid is False

    def test_failed_check_beats_warning(self) -> None:
        details = SSLDetails(valid=True, expiry=utcnow() + timedelta(days=1))
        with patch("shraga.monitor.http.check_ssl", new=AsyncMock(return_value=details)):
            result = probe(
                http_monitor(warn_on_ssl_expiry=True, check_response=True, expected_response="ok"),
                lambda req: httpx.Response(200, text="nope"),
            )
        assert result.outcome == Outcome.DOWN

    def test_ssl_not_checked_unless_asked(self) -> None:
        with patch("shraga.monitor.http.check_ssl", new=AsyncMock()) as mock_ssl:
            probe(http_monitor(), lambda req: httpx.Response(200))
        mock_ssl.assert_not_awaited()


# ── check_ssl ────────────────────────────────────────────────────────────────


class TestCheckSSL:
    def _check(self, address: str) -> SSLDetails:
        async def scenario() -> SSLDetails:
            return await check_ssl(address, RunContext(), timeout=2)

        return asyncio.run(scenario())

    def test_valid_cert(self) -> None:
        cert = {"notAfter": "Jan  1 00:00:00 2099 GMT"}
        with patch("shraga.monitor.http._fetch_peer_cert", new=AsyncMock(return_value=cert)) as fetch:
            details = self._check("https://example.com/health")
        assert details.valid is True
        assert details.expiry is not None and details.expiry.year == 2099
        fetch.assert_awaited_once_with("example.com", 443)

    def test_explicit_port(self) -> None:
        cert = {"notAfter": "Jan  1 00:00:00 2099 GMT"}
        with patch("shraga.monitor.http._fetch_peer_cert", new=AsyncMock(return_value=cert)) as fetch:
            self._check("https://example.com:8443/")
        fetch.assert_awaited_once_with("example.com", 8443)

    def test_default_port_even_for_plain_http(self) -> None:
        cert = {"notAfter": "Jan  1 00:00:00 2099 GMT"}
        with patch("shraga.monitor.http._fetch_peer_cert", new=AsyncMock(return_value=cert)) as fetch:
            self._check("http://example.com/")
        fetch.assert_awaited_once_with("example.com", 443)

    @pytest.mark.parametrize("address,port", [
        ("http://example.com:80/", 80),
        ("https://example.com:443/", 443),
    ])
    def test_scheme_default_port_kept_when_written(self, address: str, port: int) -> None:
        cert = {"notAfter": "Jan  1 00:00:00 2099 GMT"}
        with patch("shraga.monitor.http._fetch_peer_cert", new=AsyncMock(return_value=cert)) as fetch:
            self._check(address)
        fetch.assert_awaited_once_with("example.com", port)

    def test_out_of_range_port_is_invalid(self) -> None:
        with patch("shraga.monitor.http._fetch_peer_cert", new=AsyncMock()) as fetch:
            assert self._check("https://example.com:99999/").valid is False
        fetch.assert_not_awaited()

    def test_handshake_failure_is_invalid(self) -> None:
        error = ssl.SSLCertVerificationError("certificate verify failed")
        with patch("shraga.monitor.http._fetch_peer_cert", new=AsyncMock(side_effect=error)):
            details = self._check("https://self-signed.test/")
        assert details == SSLDetails(valid=False, expiry=None)

    def test_connection_refused_is_invalid(self) -> None:
        with patch(
            "shraga.monitor.http._fetch_peer_cert",
            new=AsyncMock(side_effect=ConnectionRefusedError("refused")),
        ):
            assert self._check("https://down.test/").valid is False

    def test_missing_cert_is_invalid(self) -> None:
        with patch("shraga.monitor.http._fetch_peer_cert", new=AsyncMock(return_value={})):
            assert self._check("https://example.com/").valid is False

    def test_no_host_is_invalid(self) -> None:
        with patch("shraga.monitor.http._fetch_peer_cert", new=AsyncMock()) as fetch:
            assert self._check("not a url").valid is False
        fetch.assert_not_awaited()
