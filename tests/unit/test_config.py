"""Tests for cartly.config."""

from __future__ import annotations

from pathlib import Path

import pytest

from cartly.config import (
    DEFAULT_BASE_URL,
    DEFAULT_MODEL,
    DEFAULT_OCR_SYSTEM_PROMPT,
    config_from_keys,
    get_api_key,
    get_base_url,
    get_identity_path,
    get_model,
    get_ocr_system_prompt,
    get_secondary_key,
    get_secrets_url,
    load_service_config,
)

pytestmark = pytest.mark.usefixtures("clean_env")


class TestGetApiKey:
    """Tests for get_api_key()."""

    def test_returns_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MNEXIUM_API_KEY", "mnx-abc")  # pragma: allowlist secret
        assert get_api_key() == "mnx-abc"  # pragma: allowlist secret

    def test_trims_whitespace(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MNEXIUM_API_KEY", "  mnx-abc \n")  # pragma: allowlist secret
        assert get_api_key() == "mnx-abc"  # pragma: allowlist secret

    def test_missing_raises(self) -> None:
        with pytest.raises(ValueError, match="MNEXIUM_API_KEY"):
            get_api_key()

    def test_blank_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MNEXIUM_API_KEY", "   ")
        with pytest.raises(ValueError, match="MNEXIUM_API_KEY"):
            get_api_key()


class TestDefaults:
    """Tests for the optional settings and their defaults."""

    def test_base_url_default(self) -> None:
        assert get_base_url() == DEFAULT_BASE_URL == "https://www.mnexium.com"

    def test_base_url_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MNEXIUM_BASE_URL", "https://staging.mnexium.com")
        assert get_base_url() == "https://staging.mnexium.com"

    def test_model_default(self) -> None:
        assert get_model() == DEFAULT_MODEL == "gpt-4.1-mini"

    def test_model_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MNEXIUM_MODEL", "gpt-4o")
        assert get_model() == "gpt-4o"

    def test_blank_model_uses_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MNEXIUM_MODEL", " ")
        assert get_model() == DEFAULT_MODEL

    def test_secondary_key_optional(self) -> None:
        assert get_secondary_key() is None

    def test_ocr_system_prompt_default(self) -> None:
        assert get_ocr_system_prompt() == DEFAULT_OCR_SYSTEM_PROMPT

    def test_secrets_url_unset(self) -> None:
        assert get_secrets_url() is None

    def test_identity_path_default(self) -> None:
        path = get_identity_path()
        assert path.is_absolute()
        assert path == Path("./data/identity.json").resolve()

    def test_identity_path_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("CARTLY_IDENTITY_PATH", str(tmp_path / "id.json"))
        assert get_identity_path() == (tmp_path / "id.json").resolve()


class TestConfigFromKeys:
    """Tests for config_from_keys() and load_service_config()."""

    def test_blank_key_is_none(self) -> None:
        assert config_from_keys("  ") is None
        assert config_from_keys(None) is None

    def test_builds_config(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MNEXIUM_MODEL", "gpt-4o")

        config = config_from_keys(" mnx-1 ", " sk-1 ")

        assert config is not None
        assert config.api_key == "mnx-1"  # pragma: allowlist secret
        assert config.secondary_key == "sk-1"  # pragma: allowlist secret
        assert config.model == "gpt-4o"
        assert config.base_url == DEFAULT_BASE_URL

    def test_secondary_key_falls_back_to_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")  # pragma: allowlist secret

        config = config_from_keys("mnx-1", "")

        assert config is not None
        assert config.secondary_key == "sk-env"  # pragma: allowlist secret

    def test_load_without_key_is_disconnected(self) -> None:
        assert load_service_config() is None

    def test_load_with_blank_key_is_disconnected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MNEXIUM_API_KEY", "   ")

        assert load_service_config() is None

    def test_load_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MNEXIUM_API_KEY", "mnx-env")  # pragma: allowlist secret

        config = load_service_config()

        assert config is not None
        assert config.api_key == "mnx-env"  # pragma: allowlist secret
        assert config.secondary_key is None
