"""Authenticated HTTP transport with bounded retry and backoff."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import httpx

from cartly.errors import HTTPStatusError, InvalidResponseError, TransportError, is_retryable_status
from cartly.models import RECORD_TABLES
from cartly.payloads import dump_payload

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Mapping

    from pydantic import BaseModel

    from cartly.config import ServiceConfig

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/api/v1/chat/completions"

MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 0.4
BACKOFF_JITTER_SECONDS = 0.2

REQUEST_ID_HEADERS = ("x-request-id", "x-correlation-id", "x-amzn-requestid")
API_KEY_HEADER = "x-mnexium-key"
SECONDARY_KEY_HEADER = "x-openai-key"


def timeout_for_path(path: str) -> float:
    """Per-call timeout; chat completions wait on model latency."""
    if path == CHAT_COMPLETIONS_PATH:
        return 240.0
    return 30.0


def streaming_timeout_for_path(path: str) -> float:
    if path == CHAT_COMPLETIONS_PATH:
        return 360.0
    return 60.0


def should_retry(status: int) -> bool:
    return is_retryable_status(status)


def backoff_seconds(
    attempt: int,
    jitter: Callable[[float, float], float] = random.uniform,
) -> float:
    """Delay after failed attempt ``attempt`` (numbered from 1)."""
    return BACKOFF_BASE_SECONDS * 2 ** (attempt - 1) + jitter(0.0, BACKOFF_JITTER_SECONDS)


def request_id(headers: Mapping[str, str]) -> str | None:
    """First non-blank correlation id among the known response headers."""
    for name in REQUEST_ID_HEADERS:
        value = (headers.get(name) or "").strip()
        if value:
            return value
    return None


def _describe_body(body: dict[str, Any] | None) -> dict[str, Any]:
    """Flags summarising whether a body carries a records-sync context."""
    if body is None:
        return {"has_mnx": False, "has_records_sync": False, "has_receipt_tables": False}
    mnx = body.get("mnx") if isinstance(body.get("mnx"), dict) else None
    records = mnx.get("records") if mnx and isinstance(mnx.get("records"), dict) else {}
    tables = records.get("tables") or []
    return {
        "has_mnx": mnx is not None,
        "has_records_sync": records.get("sync") is True,
        "has_receipt_tables": set(RECORD_TABLES).issubset(tables),
    }


class Transport:
    """Executes authenticated requests against the Mnexium API.

    Up to three attempts are made per call. 429, 5xx and connection-level
    failures are retried after exponential backoff with jitter; any other
    non-2xx status fails immediately.
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(base_url=config.base_url)
        self._sleep = sleep
        self._jitter = jitter

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, *, json_body: bool) -> dict[str, str]:
        headers = {API_KEY_HEADER: self.config.api_key}
        if self.config.secondary_key:
            headers[SECONDARY_KEY_HEADER] = self.config.secondary_key
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _url(self, path: str) -> httpx.URL:
        return httpx.URL(self.config.base_url).join(path)

    async def send_json(self, path: str, method: str, payload: BaseModel | dict[str, Any]) -> bytes:
        """Send a JSON body and return the raw response bytes."""
        body = dump_payload(payload)
        request = self._client.build_request(
            method,
            self._url(path),
            content=json.dumps(body).encode("utf-8"),
            headers=self._headers(json_body=True),
            timeout=timeout_for_path(path),
        )
        return await self._perform(request, path, body)

    async def send_query(
        self,
        path: str,
        method: str,
        params: list[tuple[str, str]] | None = None,
    ) -> bytes:
        """Send a body-less request with query items."""
        request = self._client.build_request(
            method,
            self._url(path),
            params=params or None,
            headers=self._headers(json_body=False),
            timeout=timeout_for_path(path),
        )
        return await self._perform(request, path, None)

    async def _perform(self, request: httpx.Request, path: str, body: dict[str, Any] | None) -> bytes:
        logger.info(
            "Outbound request. path=%s bytes=%d %s",
            path,
            len(request.content) if body is not None else 0,
            " ".join(f"{k}={v}" for k, v in _describe_body(body).items()),
        )

        for attempt in range(1, MAX_ATTEMPTS + 1):
            start = time.perf_counter()
            try:
                response = await self._client.send(request)
            except httpx.TransportError as exc:
                latency_ms = (time.perf_counter() - start) * 1000
                retrying = attempt < MAX_ATTEMPTS
                logger.warning(
                    "Request transport failure. path=%s latency_ms=%.1f attempt=%d retryable=true error=%s",
                    path,
                    latency_ms,
                    attempt,
                    exc,
                )
                if retrying:
                    await self._backoff(attempt)
                    continue
                raise TransportError(str(exc) or type(exc).__name__) from exc

            latency_ms = (time.perf_counter() - start) * 1000
            rid = request_id(response.headers) or "none"
            logger.info(
                "Request complete. path=%s status=%d latency_ms=%.1f attempt=%d request_id=%s",
                path,
                response.status_code,
                latency_ms,
                attempt,
                rid,
            )

            if response.is_success:
                return response.content

            if not response.is_error:
                logger.error(
                    "Invalid response. path=%s status=%d attempt=%d request_id=%s",
                    path,
                    response.status_code,
                    attempt,
                    rid,
                )
                raise InvalidResponseError

            retryable = should_retry(response.status_code)
            logger.warning(
                "Request failed. path=%s status=%d attempt=%d retryable=%s request_id=%s",
                path,
                response.status_code,
                attempt,
                str(retryable).lower(),
                rid,
            )
            if retryable and attempt < MAX_ATTEMPTS:
                await self._backoff(attempt)
                continue

            raise HTTPStatusError(response.status_code, response.text or "Unknown server response")

        msg = "Exhausted retry attempts"
        raise TransportError(msg)

    async def _backoff(self, attempt: int) -> None:
        await self._sleep(backoff_seconds(attempt, self._jitter))

    @asynccontextmanager
    async def open_stream(
        self,
        path: str,
        payload: BaseModel | dict[str, Any],
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming request; the response closes when the block exits.

        Streaming calls are not retried: a non-2xx status raises
        HTTPStatusError with the full body so the caller can decide whether
        to fall back to a plain request.
        """
        body = dump_payload(payload)
        request = self._client.build_request(
            "POST",
            self._url(path),
            content=json.dumps(body).encode("utf-8"),
            headers={**self._headers(json_body=True), "Accept": "text/event-stream"},
            timeout=streaming_timeout_for_path(path),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TransportError as exc:
            logger.warning("Stream transport failure. path=%s error=%s", path, exc)
            raise TransportError(str(exc) or type(exc).__name__) from exc

        try:
            logger.info(
                "Stream request complete. path=%s status=%d request_id=%s",
                path,
                response.status_code,
                request_id(response.headers) or "none",
            )
            if not response.is_success:
                error_body = (await response.aread()).decode("utf-8", errors="replace")
                logger.warning(
                    "Stream request failed. path=%s status=%d retryable=%s",
                    path,
                    response.status_code,
                    str(should_retry(response.status_code)).lower(),
                )
                raise HTTPStatusError(response.status_code, error_body or "Unknown server response")
            try:
                yield response
            except httpx.TransportError as exc:
                logger.warning("Stream interrupted. path=%s error=%s", path, exc)
                raise TransportError(str(exc) or type(exc).__name__) from exc
        finally:
            await response.aclose()
