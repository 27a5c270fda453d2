"""Shared test fixtures."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from cartly.client import MnexiumClient
from cartly.config import ServiceConfig

if TYPE_CHECKING:
    from collections.abc import Callable

ENV_VARS = (
    "MNEXIUM_API_KEY",
    "OPENAI_API_KEY",
    "MNEXIUM_BASE_URL",
    "MNEXIUM_MODEL",
    "MNEXIUM_OCR_SYSTEM_PROMPT",
    "CARTLY_SECRETS_URL",
    "CARTLY_IDENTITY_PATH",
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every cartly-related variable from the environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def service_config() -> ServiceConfig:
    """Provide a test service configuration."""
    return ServiceConfig(
        api_key="mnx-test-key",  # pragma: allowlist secret
        base_url="https://mnexium.test",
        secondary_key="sk-test",  # pragma: allowlist secret
    )


class Recorder:
    """Captures requests sent through an httpx.MockTransport."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def json_bodies(self) -> list[Any]:
        return [json.loads(request.content) if request.content else None for request in self.requests]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the transport, in order."""
    return []


@pytest.fixture
def make_client(
    service_config: ServiceConfig,
    sleeps: list[float],
) -> Callable[[Callable[[httpx.Request], httpx.Response]], tuple[MnexiumClient, Recorder]]:
    """Build a client whose HTTP traffic goes to ``handler``."""

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> tuple[MnexiumClient, Recorder]:
        recorder = Recorder(handler)
        client = MnexiumClient(
            service_config,
            http_client=recorder.client(),
            sleep=fake_sleep,
            jitter=lambda low, high: high,
        )
        return client, recorder

    return factory


@pytest.fixture
def mock_http() -> Callable[[Callable[[httpx.Request], httpx.Response]], tuple[httpx.AsyncClient, Recorder]]:
    """Build a bare httpx client whose traffic goes to ``handler``."""

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> tuple[httpx.AsyncClient, Recorder]:
        recorder = Recorder(handler)
        return recorder.client(), recorder

    return factory
