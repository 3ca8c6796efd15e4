"""Tests for settings resolution."""

import json

import pytest

from protech.config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_RETRIES,
    Settings,
    get_protech_home,
    load_settings,
    validate_backend_url,
)


class TestValidateBackendUrl:
    def test_https_accepted_and_trailing_slash_stripped(self):
        assert validate_backend_url("https://api.example.com/") == "https://api.example.com"

    def test_http_localhost_allowed(self):
        assert validate_backend_url("http://localhost:54321") == "http://localhost:54321"

    def test_http_remote_rejected(self):
        assert validate_backend_url("http://api.example.com") is None

    def test_http_localhost_rejected_when_disallowed(self):
        assert validate_backend_url("http://127.0.0.1", allow_localhost_http=False) is None

    @pytest.mark.parametrize("url", ["ftp://example.com", "https://", "", None])
    def test_invalid_urls(self, url):
        assert validate_backend_url(url) is None


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.max_retries == DEFAULT_MAX_RETRIES
        assert settings.batch_size == DEFAULT_BATCH_SIZE
        assert settings.has_backend is False

    def test_has_backend_needs_url_and_credential(self):
        assert Settings(backend_url="https://x.example.com").has_backend is False
        assert Settings(backend_url="https://x.example.com", api_key="k").has_backend is True
        assert Settings(backend_url="https://x.example.com", access_token="t").has_backend is True

    def test_resolved_db_path_defaults_to_home(self, protech_home):
        assert Settings().resolved_db_path() == protech_home / "protech.db"

    def test_redacted_masks_secrets(self):
        data = Settings(api_key="secret-key", access_token="token-value").redacted()
        assert data["api_key"] == "secr..."
        assert data["access_token"] == "toke..."


class TestLoadSettings:
    def test_home_from_env(self, protech_home):
        assert get_protech_home() == protech_home

    def test_empty_home_gives_defaults(self, protech_home):
        settings = load_settings()
        assert settings.shop_id is None
        assert settings.max_retries == DEFAULT_MAX_RETRIES

    def test_config_file_values(self, protech_home):
        protech_home.mkdir(parents=True)
        (protech_home / "config.json").write_text(
            json.dumps({"max_retries": "5", "batch_size": 10, "unknown_key": 1})
        )
        settings = load_settings()
        assert settings.max_retries == 5
        assert settings.batch_size == 10

    def test_credentials_file_and_token_alias(self, protech_home):
        protech_home.mkdir(parents=True)
        (protech_home / "credentials.json").write_text(
            json.dumps(
                {"backend_url": "https://api.example.com/", "token": "jwt", "shop_id": "shop-7"}
            )
        )
        settings = load_settings()
        assert settings.backend_url == "https://api.example.com"
        assert settings.access_token == "jwt"
        assert settings.shop_id == "shop-7"

    def test_env_overrides_files(self, protech_home, monkeypatch):
        protech_home.mkdir(parents=True)
        (protech_home / "credentials.json").write_text(json.dumps({"shop_id": "from-file"}))
        monkeypatch.setenv("PROTECH_SHOP_ID", "from-env")
        monkeypatch.setenv("PROTECH_REQUEST_TIMEOUT", "2.5")
        settings = load_settings()
        assert settings.shop_id == "from-env"
        assert settings.request_timeout == 2.5

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("PROTECH_SHOP_ID", "from-env")
        assert load_settings(shop_id="explicit").shop_id == "explicit"

    def test_none_override_ignored(self, monkeypatch):
        monkeypatch.setenv("PROTECH_SHOP_ID", "from-env")
        assert load_settings(shop_id=None).shop_id == "from-env"

    def test_unknown_override_rejected(self):
        with pytest.raises(ValueError, match="Unknown setting"):
            load_settings(colour="blue")

    def test_malformed_json_ignored(self, protech_home):
        protech_home.mkdir(parents=True)
        (protech_home / "config.json").write_text("{not json")
        assert load_settings().batch_size == DEFAULT_BATCH_SIZE

    def test_invalid_number_raises(self, monkeypatch):
        monkeypatch.setenv("PROTECH_MAX_RETRIES", "many")
        with pytest.raises(ValueError, match="Invalid protech configuration"):
            load_settings()

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValueError, match="batch_size"):
            load_settings(batch_size=0)

    def test_insecure_backend_url_dropped(self, monkeypatch):
        monkeypatch.setenv("PROTECH_BACKEND_URL", "http://api.example.com")
        assert load_settings().backend_url is None
