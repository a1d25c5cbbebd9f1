"""
Base classes for OAuth Integration Hub tests.

Provides common setup and teardown for all hub tests: required environment
variables, settings with test defaults and a service container backed by
in-memory stores.
"""

import os
import time
from datetime import timedelta
from typing import Optional
from unittest.mock import patch

from fastapi.testclient import TestClient

from services.oauth_hub.container import ServiceContainer, build_in_memory_container
from services.oauth_hub.models.connection import (
    ConnectionHealth,
    ConnectionRecord,
    ConnectionStatus,
    utc_now,
)
from services.oauth_hub.security.security_manager import SecurityManager
from services.oauth_hub.settings import Settings, reset_settings

TEST_ENCRYPTION_KEY = "test-master-key-for-oauth-hub-tests"
TEST_ENCRYPTION_SALT = "dGVzdC1zYWx0LTE2Ynl0ZQ=="
TEST_APP_BASE_URL = "https://app.crewflow.test"

# Client credentials handed to the CredentialRegistry (never os.environ)
TEST_CREDENTIALS = {
    "CREWFLOW_SALESFORCE_CLIENT_ID": "sf-client-id",
    "CREWFLOW_SALESFORCE_CLIENT_SECRET": "sf-client-secret",
    "CREWFLOW_HUBSPOT_CLIENT_ID": "hs-client-id",
    "CREWFLOW_HUBSPOT_CLIENT_SECRET": "hs-client-secret",
    "CREWFLOW_SHOPIFY_CLIENT_ID": "shopify-client-id",
    "CREWFLOW_SHOPIFY_CLIENT_SECRET": "shopify-client-secret",
}

SALESFORCE_TOKEN_URL = "https://login.salesforce.com/services/oauth2/token"
SALESFORCE_USERINFO_URL = "https://login.salesforce.com/services/oauth2/userinfo"
SALESFORCE_REVOKE_URL = "https://login.salesforce.com/services/oauth2/revoke"
SALESFORCE_TEST_URL = "https://api.salesforce.com/services/data/v58.0/sobjects"
HUBSPOT_TOKEN_URL = "https://api.hubapi.com/oauth/v1/token"
HUBSPOT_TEST_URL = "https://api.hubapi.com/contacts/v1/lists/all/contacts/all"


class BaseOAuthHubTest:
    """Base class for all OAuth Integration Hub tests (unit and integration)."""

    def setup_method(self):
        """Set up the hub test environment with required variables."""
        self._saved_env = {
            name: os.environ.get(name)
            for name in ("TOKEN_ENCRYPTION_KEY", "TOKEN_ENCRYPTION_SALT", "ENVIRONMENT")
        }
        os.environ["TOKEN_ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
        os.environ["TOKEN_ENCRYPTION_SALT"] = TEST_ENCRYPTION_SALT
        os.environ["ENVIRONMENT"] = "test"
        reset_settings()

        # Seconds added to the wall clock seen by the SecurityManager
        self.clock_offset = 0.0
        self.environ = dict(TEST_CREDENTIALS)
        self.settings = self.make_settings()
        self.container = self.make_container()

    def teardown_method(self):
        """Restore the environment touched by setup_method."""
        for name, value in self._saved_env.items():
            if value is None:
                os.environ.pop(name, None)
            else:
                os.environ[name] = value
        reset_settings()

    def clock(self) -> float:
        return time.time() + self.clock_offset

    def make_settings(self, **overrides) -> Settings:
        values = {
            "token_encryption_key": TEST_ENCRYPTION_KEY,
            "token_encryption_salt": TEST_ENCRYPTION_SALT,
            "app_base_url": TEST_APP_BASE_URL,
            "cors_origins": [TEST_APP_BASE_URL],
            "maintenance_enabled": False,
            "environment": "test",
            "log_format": "text",
        }
        values.update(overrides)
        return Settings(**values)

    def make_container(self, settings: Optional[Settings] = None) -> ServiceContainer:
        settings = settings or self.settings
        return build_in_memory_container(
            settings=settings,
            environ=self.environ,
            security_manager=SecurityManager(settings, clock=self.clock),
        )

    @property
    def manager(self):
        return self.container.oauth_manager

    @property
    def audit_entries(self):
        return self.container.audit_store.entries

    def audit_events(self, event_type: str):
        return [entry for entry in self.audit_entries if entry.event_type == event_type]

    async def seed_connection(
        self,
        user_id: str = "user-1",
        integration_id: str = "salesforce",
        access_token: str = "stored-access-token",
        refresh_token: Optional[str] = "stored-refresh-token",
        expires_in: Optional[timedelta] = timedelta(hours=1),
        status: ConnectionStatus = ConnectionStatus.CONNECTED,
        **fields,
    ) -> ConnectionRecord:
        """Store a connection with tokens encrypted the way the manager does."""
        security = self.container.security_manager
        record = ConnectionRecord(
            user_id=user_id,
            integration_id=integration_id,
            access_token=security.encrypt(
                access_token, user_id, f"{integration_id}:access_token"
            ),
            refresh_token=(
                security.encrypt(refresh_token, user_id, f"{integration_id}:refresh_token")
                if refresh_token
                else None
            ),
            status=status,
            connection_health=ConnectionHealth.HEALTHY,
            connected_at=utc_now(),
            expires_at=utc_now() + expires_in if expires_in is not None else None,
            **fields,
        )
        return await self.container.connection_store.save(record)

    def decrypt_stored(self, record: ConnectionRecord, kind: str = "access_token") -> str:
        token = record.access_token if kind == "access_token" else record.refresh_token
        return self.container.security_manager.decrypt(
            token, record.user_id, f"{record.integration_id}:{kind}"
        )


class BaseOAuthHubIntegrationTest(BaseOAuthHubTest):
    """Base class for endpoint tests with the full app and an injected container."""

    def setup_method(self):
        super().setup_method()

        from services.oauth_hub.main import create_app

        self.app = create_app(container=self.container)
        self.client = TestClient(self.app)

        # Provider calls must be mocked explicitly with respx
        self.http_patches = [
            patch(
                "urllib.request.urlopen",
                side_effect=AssertionError(
                    "Real HTTP call detected! urllib.request.urlopen was called"
                ),
            ),
        ]
        for http_patch in self.http_patches:
            http_patch.start()

    def teardown_method(self):
        for http_patch in self.http_patches:
            http_patch.stop()
        super().teardown_method()
