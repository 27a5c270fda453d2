"""Resolve a usable service configuration, or report why there is none."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cartly.config import config_from_keys, get_secrets_url, load_service_config
from cartly.errors import ServiceError
from cartly.secrets import fetch_remote_secrets

if TYPE_CHECKING:
    import httpx

    from cartly.config import ServiceConfig

logger = logging.getLogger(__name__)

SOURCE_CUSTOM = "custom"
SOURCE_REMOTE = "remote"
SOURCE_ENVIRONMENT = "environment"

DISCONNECTED_REASON = "Mnexium API key is missing. Set MNEXIUM_API_KEY or configure a secrets endpoint."


@dataclass(frozen=True)
class Connection:
    """Outcome of resolving configuration.

    ``config`` is None when no usable key was found; ``reason`` then says
    what is missing.
    """

    config: ServiceConfig | None
    source: str | None = None
    reason: str | None = None

    @property
    def connected(self) -> bool:
        return self.config is not None


async def connect(
    custom_api_key: str | None = None,
    custom_secondary_key: str | None = None,
    secrets_url: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Connection:
    """Resolve configuration from custom keys, then remote secrets, then the environment.

    A failed secrets fetch is logged and skipped. Never raises for a
    missing key.
    """
    config = config_from_keys(custom_api_key, custom_secondary_key)
    if config is not None:
        return Connection(config=config, source=SOURCE_CUSTOM)

    url = secrets_url or get_secrets_url()
    if url:
        try:
            secrets = await fetch_remote_secrets(url, http_client=http_client)
        except ServiceError:
            logger.exception("context=secrets_refresh url=%s", url)
        else:
            config = config_from_keys(secrets.mnexium_api_key, secrets.openai_api_key)
            if config is not None:
                return Connection(config=config, source=SOURCE_REMOTE)

    config = load_service_config()
    if config is not None:
        return Connection(config=config, source=SOURCE_ENVIRONMENT)

    logger.warning("No Mnexium API key available; running disconnected.")
    return Connection(config=None, reason=DISCONNECTED_REASON)
