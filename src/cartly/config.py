"""Configuration via environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DEFAULT_BASE_URL = "https://www.mnexium.com"
DEFAULT_MODEL = "gpt-4.1-mini"
DEFAULT_OCR_SYSTEM_PROMPT = "sp_4a80827f-04b1-433f-9aaa-b8d88cdf2636"


@dataclass(frozen=True)
class ServiceConfig:
    """Connection settings for the Mnexium API."""

    api_key: str
    base_url: str = DEFAULT_BASE_URL
    secondary_key: str | None = None
    model: str = DEFAULT_MODEL
    ocr_system_prompt: str = DEFAULT_OCR_SYSTEM_PROMPT


def _normalized(value: str | None) -> str | None:
    """Trim a value, mapping blank strings to None."""
    if value is None:
        return None
    value = value.strip()
    return value or None


def get_api_key() -> str:
    """Return the MNEXIUM_API_KEY from the environment."""
    key = _normalized(os.environ.get("MNEXIUM_API_KEY"))
    if not key:
        msg = "MNEXIUM_API_KEY environment variable is required"
        raise ValueError(msg)
    return key


def get_secondary_key() -> str | None:
    """Return the optional OPENAI_API_KEY forwarded to the provider."""
    return _normalized(os.environ.get("OPENAI_API_KEY"))


def get_base_url() -> str:
    """Return the API base URL.

    Defaults to https://www.mnexium.com.
    """
    return _normalized(os.environ.get("MNEXIUM_BASE_URL")) or DEFAULT_BASE_URL


def get_model() -> str:
    """Return the chat model identifier.

    Defaults to gpt-4.1-mini.
    """
    return _normalized(os.environ.get("MNEXIUM_MODEL")) or DEFAULT_MODEL


def get_ocr_system_prompt() -> str:
    """Return the server-side system prompt id used for receipt OCR."""
    return (
        _normalized(os.environ.get("MNEXIUM_OCR_SYSTEM_PROMPT"))
        or DEFAULT_OCR_SYSTEM_PROMPT
    )


def get_secrets_url() -> str | None:
    """Return the remote secrets endpoint, if one is configured."""
    return _normalized(os.environ.get("CARTLY_SECRETS_URL"))


def get_identity_path() -> Path:
    """Return the CARTLY_IDENTITY_PATH, defaulting to ./data/identity.json.

    Always resolves to an absolute path.
    """
    return Path(os.environ.get("CARTLY_IDENTITY_PATH", "./data/identity.json")).resolve()


def config_from_keys(api_key: str | None, secondary_key: str | None = None) -> ServiceConfig | None:
    """Build a configuration from explicitly supplied keys.

    Returns None when ``api_key`` is blank. A blank ``secondary_key`` falls
    back to OPENAI_API_KEY from the environment.
    """
    key = _normalized(api_key)
    if not key:
        return None
    return ServiceConfig(
        api_key=key,
        base_url=get_base_url(),
        secondary_key=_normalized(secondary_key) or get_secondary_key(),
        model=get_model(),
        ocr_system_prompt=get_ocr_system_prompt(),
    )


def load_service_config() -> ServiceConfig | None:
    """Build configuration from the environment.

    Returns None when no usable API key is set, leaving the caller in a
    disconnected state instead of raising.
    """
    try:
        api_key = get_api_key()
    except ValueError:
        return None
    return config_from_keys(api_key)
