"""Fetch API keys from a remote secrets endpoint."""

from __future__ import annotations

import json
import logging

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cartly.errors import HTTPStatusError, ParseError, TransportError

logger = logging.getLogger(__name__)

SECRETS_TIMEOUT_SECONDS = 15.0


class RemoteSecrets(BaseModel):
    """Keys served by the secrets endpoint."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    mnexium_api_key: str = Field(alias="mnexiumApiKey")
    openai_api_key: str | None = Field(default=None, alias="openaiApiKey")


def decode_secrets(data: bytes) -> RemoteSecrets:
    """Parse a secrets document, unwrapping a ``{"body": "<json>"}`` envelope.

    Raises ParseError if neither shape yields a non-blank Mnexium key.
    """
    try:
        document = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        msg = "secrets response is not valid JSON"
        raise ParseError(msg) from exc

    if isinstance(document, dict) and isinstance(document.get("body"), str) and "mnexiumApiKey" not in document:
        try:
            document = json.loads(document["body"])
        except json.JSONDecodeError as exc:
            msg = "secrets envelope body is not valid JSON"
            raise ParseError(msg) from exc

    try:
        secrets = RemoteSecrets.model_validate(document)
    except ValidationError as exc:
        msg = "could not decode the secrets response"
        raise ParseError(msg) from exc

    if not secrets.mnexium_api_key.strip():
        msg = "the secrets response did not include a Mnexium API key"
        raise ParseError(msg)
    return secrets


async def fetch_remote_secrets(url: str, http_client: httpx.AsyncClient | None = None) -> RemoteSecrets:
    """GET the secrets document at ``url``."""
    client = http_client or httpx.AsyncClient()
    try:
        response = await client.get(url, timeout=SECRETS_TIMEOUT_SECONDS)
    except httpx.TransportError as exc:
        logger.warning("Secrets request failed. error=%s", exc)
        raise TransportError(str(exc) or type(exc).__name__) from exc
    finally:
        if http_client is None:
            await client.aclose()

    if not response.is_success:
        logger.warning("Secrets request failed. status=%d", response.status_code)
        raise HTTPStatusError(response.status_code, response.text or "Unknown error")

    return decode_secrets(response.content)
