"""Tests for ResilientHttp: retry policy, error mapping and online/offline edges."""

from __future__ import annotations

import errno

import httpx
import pytest

from vex_client.client.http_client import ResilientHttp, is_connection_refused, is_retryable
from vex_client.shared.config import RetryConfig
from vex_client.shared.errors import VexApiError

FAST_RETRY = RetryConfig(max_retries=3, base_delay_s=0.001, max_delay_s=0.002)


class Recorder:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def make_http(handler, **kwargs) -> ResilientHttp:
    return ResilientHttp(
        "http://vex.test/",
        "secret",
        kwargs.pop("retry", FAST_RETRY),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestRetryClassification:
    """Which failures are worth retrying."""

    @pytest.mark.parametrize("status", [400, 401, 403, 422])
    def test_client_errors_not_retryable(self, status):
        assert not is_retryable(VexApiError("nope", status))

    @pytest.mark.parametrize("status", [500, 502, 503])
    def test_server_errors_retryable(self, status):
        assert is_retryable(VexApiError("boom", status))

    def test_network_error_retryable(self):
        assert is_retryable(httpx.ReadTimeout("timed out"))

    def test_connection_refused_not_retryable(self):
        exc = httpx.ConnectError("[Errno 111] Connection refused")
        assert is_connection_refused(exc)
        assert not is_retryable(exc)

    def test_connection_refused_found_in_cause_chain(self):
        try:
            try:
                raise OSError(errno.ECONNREFUSED, "refused by peer")
            except OSError as inner:
                raise httpx.ConnectError("connect failed") from inner
        except httpx.ConnectError as outer:
            assert is_connection_refused(outer)

    def test_unrelated_exception_not_retryable(self):
        assert not is_retryable(ValueError("bad"))


class TestRequests:
    """Request/response handling through ResilientHttp."""

    @pytest.mark.asyncio
    async def test_returns_json_and_sends_bearer(self):
        recorder = Recorder([httpx.Response(200, json={"ok": True})])
        http = make_http(recorder)

        assert await http.get("/sessions/abc") == {"ok": True}
        request = recorder.calls[0]
        assert request.headers["Authorization"] == "Bearer secret"
        assert str(request.url) == "http://vex.test/sessions/abc"
        await http.aclose()

    @pytest.mark.asyncio
    async def test_empty_body_returns_none(self):
        http = make_http(Recorder([httpx.Response(204)]))
        assert await http.delete("/sessions/abc") is None
        await http.aclose()

    @pytest.mark.asyncio
    async def test_client_error_raised_once(self):
        recorder = Recorder([httpx.Response(400, json={"message": "bad target"})])
        http = make_http(recorder)

        with pytest.raises(VexApiError) as info:
            await http.post("/sessions/abc/messages", {"to": "x"})

        assert info.value.status_code == 400
        assert info.value.message == "bad target"
        assert len(recorder.calls) == 1
        await http.aclose()

    @pytest.mark.asyncio
    async def test_server_error_retried_up_to_max_retries(self):
        recorder = Recorder([httpx.Response(503, json={"error": "down"})])
        http = make_http(recorder)

        with pytest.raises(VexApiError) as info:
            await http.get("/sessions/abc")

        assert info.value.status_code == 503
        assert len(recorder.calls) == FAST_RETRY.max_retries
        await http.aclose()

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self):
        recorder = Recorder([
            httpx.ReadTimeout("slow"),
            httpx.Response(500),
            httpx.Response(200, json={"value": 1}),
        ])
        http = make_http(recorder)

        assert await http.get("/x") == {"value": 1}
        assert len(recorder.calls) == 3
        await http.aclose()

    @pytest.mark.asyncio
    async def test_connection_refused_fails_fast(self):
        recorder = Recorder([httpx.ConnectError("[Errno 111] Connection refused")])
        http = make_http(recorder)

        with pytest.raises(httpx.ConnectError):
            await http.get("/x")
        assert len(recorder.calls) == 1
        await http.aclose()


class TestOnlineOffline:
    """Edge-triggered offline/online notifications."""

    @pytest.mark.asyncio
    async def test_offline_then_online_fire_once_each(self):
        events: list[str] = []
        recorder = Recorder([
            httpx.Response(503),
            httpx.Response(503),
            httpx.Response(503),
            httpx.Response(503),
            httpx.Response(503),
            httpx.Response(503),
            httpx.Response(200, json={}),
        ])
        http = make_http(
            recorder,
            on_offline=lambda: events.append("offline"),
            on_online=lambda: events.append("online"),
        )

        for _ in range(2):
            with pytest.raises(VexApiError):
                await http.get("/x")
        assert events == ["offline"]
        assert not http.is_online

        await http.get("/x")
        await http.get("/x")
        assert events == ["offline", "online"]
        assert http.is_online
        await http.aclose()

    @pytest.mark.asyncio
    async def test_client_error_does_not_mark_offline(self):
        events: list[str] = []
        http = make_http(
            Recorder([httpx.Response(401, json={"error": "unauthorized"})]),
            on_offline=lambda: events.append("offline"),
        )

        with pytest.raises(VexApiError):
            await http.get("/x")
        assert events == []
        assert http.is_online
        await http.aclose()

    @pytest.mark.asyncio
    async def test_refused_marks_offline(self):
        events: list[str] = []
        http = make_http(
            Recorder([httpx.ConnectError("Connection refused")]),
            on_offline=lambda: events.append("offline"),
        )

        with pytest.raises(httpx.ConnectError):
            await http.get("/x")
        assert events == ["offline"]
        await http.aclose()


class TestHealthCheck:
    """The /health probe never raises."""

    @pytest.mark.asyncio
    async def test_healthy(self):
        recorder = Recorder([httpx.Response(200, json={"status": "ok"})])
        http = make_http(recorder)
        assert await http.health_check() is True
        assert recorder.calls[0].url.path == "/health"
        await http.aclose()

    @pytest.mark.asyncio
    async def test_unhealthy_status(self):
        http = make_http(Recorder([httpx.Response(503)]))
        assert await http.health_check() is False
        await http.aclose()

    @pytest.mark.asyncio
    async def test_network_error_is_false_and_not_retried(self):
        recorder = Recorder([httpx.ConnectError("Connection refused")])
        http = make_http(recorder)
        assert await http.health_check() is False
        assert len(recorder.calls) == 1
        await http.aclose()
