"""Tests for cartly.transport."""

from __future__ import annotations

import json
import logging

import httpx
import pytest

from cartly.config import ServiceConfig
from cartly.errors import HTTPStatusError, InvalidResponseError, TransportError
from cartly.transport import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_JITTER_SECONDS,
    CHAT_COMPLETIONS_PATH,
    MAX_ATTEMPTS,
    Transport,
    backoff_seconds,
    request_id,
    streaming_timeout_for_path,
    timeout_for_path,
)

pytestmark = pytest.mark.anyio


def _transport(
    config: ServiceConfig,
    handler: httpx.MockTransport,
    sleeps: list[float],
) -> Transport:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return Transport(
        config,
        http_client=httpx.AsyncClient(transport=handler),
        sleep=fake_sleep,
        jitter=lambda low, high: high,
    )


class TestHelpers:
    """Tests for timeouts, backoff and request ids."""

    def test_timeouts(self) -> None:
        assert timeout_for_path(CHAT_COMPLETIONS_PATH) > timeout_for_path("/api/v1/records/receipts")
        assert streaming_timeout_for_path(CHAT_COMPLETIONS_PATH) > timeout_for_path(CHAT_COMPLETIONS_PATH)

    @pytest.mark.parametrize("attempt", [1, 2, 3])
    def test_backoff_bounds(self, attempt: int) -> None:
        base = BACKOFF_BASE_SECONDS * 2 ** (attempt - 1)
        assert backoff_seconds(attempt, lambda low, high: low) == pytest.approx(base)
        assert backoff_seconds(attempt, lambda low, high: high) == pytest.approx(base + BACKOFF_JITTER_SECONDS)

    def test_backoff_strictly_increases(self) -> None:
        worst_first = backoff_seconds(1, lambda low, high: high)
        best_second = backoff_seconds(2, lambda low, high: low)
        assert best_second > worst_first

    def test_request_id_order(self) -> None:
        headers = httpx.Headers({"x-correlation-id": "corr", "x-amzn-requestid": "amzn"})
        assert request_id(headers) == "corr"
        assert request_id(httpx.Headers({"x-request-id": "  "})) is None


class TestSend:
    """Tests for Transport.send_json() and send_query()."""

    async def test_headers_and_body(self, service_config: ServiceConfig) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        transport = _transport(service_config, httpx.MockTransport(handler), [])

        data = await transport.send_json("/api/v1/records/receipts", "POST", {"subject_id": "s1"})

        assert json.loads(data) == {"ok": True}
        request = seen[0]
        assert str(request.url) == "https://mnexium.test/api/v1/records/receipts"
        assert request.headers["x-mnexium-key"] == "mnx-test-key"  # pragma: allowlist secret
        assert request.headers["x-openai-key"] == "sk-test"  # pragma: allowlist secret
        assert request.headers["content-type"] == "application/json"
        assert json.loads(request.content) == {"subject_id": "s1"}

    async def test_no_secondary_key_header(self, service_config: ServiceConfig) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        config = ServiceConfig(api_key="k", base_url=service_config.base_url)
        transport = _transport(config, httpx.MockTransport(handler), [])

        await transport.send_query("/api/v1/chat/history/list", "GET", [("subject_id", "s 1"), ("limit", "50")])

        assert "x-openai-key" not in seen[0].headers
        assert "content-type" not in seen[0].headers
        assert seen[0].url.params["subject_id"] == "s 1"
        assert seen[0].url.params["limit"] == "50"

    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retries_then_succeeds(self, service_config: ServiceConfig, status: int) -> None:
        responses = iter([httpx.Response(status, text="busy"), httpx.Response(200, json={"ok": 1})])
        sleeps: list[float] = []
        transport = _transport(service_config, httpx.MockTransport(lambda request: next(responses)), sleeps)

        data = await transport.send_json("/api/v1/records/schemas", "POST", {})

        assert json.loads(data) == {"ok": 1}
        assert sleeps == [pytest.approx(0.6)]

    async def test_exhaustion_raises_last_status(self, service_config: ServiceConfig) -> None:
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(502, text="bad gateway")

        sleeps: list[float] = []
        transport = _transport(service_config, httpx.MockTransport(handler), sleeps)

        with pytest.raises(HTTPStatusError) as excinfo:
            await transport.send_json("/api/v1/records/schemas", "POST", {})

        assert excinfo.value.status == 502
        assert excinfo.value.body == "bad gateway"
        assert len(calls) == MAX_ATTEMPTS
        assert len(sleeps) == MAX_ATTEMPTS - 1
        assert sleeps[0] < sleeps[1]
        for attempt, delay in enumerate(sleeps, start=1):
            assert delay <= BACKOFF_BASE_SECONDS * 2 ** (attempt - 1) + BACKOFF_JITTER_SECONDS + 1e-9

    @pytest.mark.parametrize("status", [400, 401, 404, 409, 422])
    async def test_client_error_single_attempt(self, service_config: ServiceConfig, status: int) -> None:
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(status, text="")

        sleeps: list[float] = []
        transport = _transport(service_config, httpx.MockTransport(handler), sleeps)

        with pytest.raises(HTTPStatusError) as excinfo:
            await transport.send_json("/api/v1/records/schemas", "POST", {})

        assert excinfo.value.status == status
        assert excinfo.value.body == "Unknown server response"
        assert calls == [1]
        assert sleeps == []

    async def test_transport_errors_retried(self, service_config: ServiceConfig) -> None:
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            raise httpx.ConnectError("connection refused", request=request)

        sleeps: list[float] = []
        transport = _transport(service_config, httpx.MockTransport(handler), sleeps)

        with pytest.raises(TransportError, match="connection refused"):
            await transport.send_query("/api/v1/records/receipts", "GET")

        assert len(calls) == MAX_ATTEMPTS
        assert sleeps == [pytest.approx(0.6), pytest.approx(1.0)]

    async def test_redirect_is_invalid_response(self, service_config: ServiceConfig) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(302, headers={"location": "https://elsewhere.test"})

        transport = _transport(service_config, httpx.MockTransport(handler), [])

        with pytest.raises(InvalidResponseError):
            await transport.send_query("/api/v1/records/receipts", "GET")

    async def test_logs_attempts(self, service_config: ServiceConfig, caplog: pytest.LogCaptureFixture) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={}, headers={"x-request-id": "req-42"})

        transport = _transport(service_config, httpx.MockTransport(handler), [])
        body = {"mnx": {"records": {"sync": True, "tables": ["receipts", "receipt_items"]}}}

        with caplog.at_level(logging.INFO, logger="cartly.transport"):
            await transport.send_json(CHAT_COMPLETIONS_PATH, "POST", body)

        assert "has_records_sync=True" in caplog.text
        assert "has_receipt_tables=True" in caplog.text
        assert "request_id=req-42" in caplog.text
        assert "attempt=1" in caplog.text


class TestOpenStream:
    """Tests for Transport.open_stream()."""

    async def test_streams_lines(self, service_config: ServiceConfig) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="data: one\n\ndata: two\n")

        transport = _transport(service_config, httpx.MockTransport(handler), [])

        async with transport.open_stream(CHAT_COMPLETIONS_PATH, {"stream": True}) as response:
            lines = [line async for line in response.aiter_lines()]

        assert [line for line in lines if line] == ["data: one", "data: two"]
        assert seen[0].headers["accept"] == "text/event-stream"

    async def test_error_status_carries_body(self, service_config: ServiceConfig) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="no streaming here")

        transport = _transport(service_config, httpx.MockTransport(handler), [])

        with pytest.raises(HTTPStatusError) as excinfo:
            async with transport.open_stream(CHAT_COMPLETIONS_PATH, {}):
                pytest.fail("stream should not open")

        assert excinfo.value.status == 404
        assert excinfo.value.body == "no streaming here"
