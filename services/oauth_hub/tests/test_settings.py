"""
Tests for settings loading.
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from services.oauth_hub.settings import Settings, get_settings, reset_settings


@pytest.fixture
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith(("TOKEN_", "ENCRYPTION_", "APP_BASE_URL", "NEXT_PUBLIC_APP_URL")):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(os.path.dirname(__file__))
    reset_settings()
    yield monkeypatch
    reset_settings()


class TestSettings:
    def test_defaults(self, clean_env):
        clean_env.setenv("TOKEN_ENCRYPTION_KEY", "secret")
        settings = Settings()
        assert settings.token_encryption_key == "secret"
        assert settings.oauth_state_max_age_seconds == 600
        assert settings.rate_limit_max_requests == 10
        assert settings.rate_limit_window_seconds == 60
        assert settings.token_refresh_buffer_minutes == 5
        assert settings.maintenance_lookahead_minutes == 60
        assert settings.audit_retention_days == 30
        assert settings.webhook_secrets == {}
        assert not settings.is_production

    def test_encryption_key_is_required(self, clean_env):
        with pytest.raises(ValidationError):
            Settings()

    def test_legacy_encryption_key_alias(self, clean_env):
        clean_env.setenv("ENCRYPTION_KEY", "legacy-secret")
        assert Settings().token_encryption_key == "legacy-secret"

    def test_redirect_uri_is_built_from_base_url(self, clean_env):
        settings = Settings(token_encryption_key="k", app_base_url="https://app.crewflow.ai/")
        assert settings.oauth_redirect_uri == (
            "https://app.crewflow.ai/api/integrations/oauth/callback"
        )

    def test_allowed_origins_fall_back_to_base_url(self, clean_env):
        settings = Settings(token_encryption_key="k", app_base_url="https://app.crewflow.ai")
        assert settings.get_allowed_origins() == ["https://app.crewflow.ai"]

        settings = Settings(
            token_encryption_key="k",
            allowed_origins=["https://crewflow.ai", "https://www.crewflow.ai"],
        )
        assert settings.get_allowed_origins() == [
            "https://crewflow.ai",
            "https://www.crewflow.ai",
        ]

    def test_webhook_secrets_from_json_env(self, clean_env):
        clean_env.setenv("TOKEN_ENCRYPTION_KEY", "secret")
        clean_env.setenv("WEBHOOK_SECRETS", '{"stripe": "whsec_123"}')
        assert Settings().webhook_secrets == {"stripe": "whsec_123"}

    def test_is_production(self, clean_env):
        settings = Settings(token_encryption_key="k", environment="Production")
        assert settings.is_production

    def test_get_settings_is_cached(self, clean_env):
        clean_env.setenv("TOKEN_ENCRYPTION_KEY", "secret")
        with patch("services.oauth_hub.settings.Settings", wraps=Settings) as settings_cls:
            first = get_settings()
            second = get_settings()
        assert first is second
        settings_cls.assert_called_once()
