"""
Tests for logging configuration and request correlation.
"""

import structlog

from services.oauth_hub.logging_config import REDACTED, redact_secrets
from services.oauth_hub.tests.test_base import BaseOAuthHubIntegrationTest


class TestRedactSecrets:
    def test_token_keys_are_masked(self):
        event = redact_secrets(
            None,
            "info",
            {
                "event": "token_exchange",
                "access_token": "ya29.secret",
                "refresh_token": "1//refresh",
                "client_secret": "shh",
                "code": "auth-code",
                "integration_id": "salesforce",
            },
        )
        assert event["access_token"] == REDACTED
        assert event["refresh_token"] == REDACTED
        assert event["client_secret"] == REDACTED
        assert event["code"] == REDACTED
        assert event["integration_id"] == "salesforce"

    def test_absent_values_stay_none(self):
        event = redact_secrets(None, "info", {"event": "refresh", "refresh_token": None})
        assert event["refresh_token"] is None

    def test_processor_runs_in_a_chain(self):
        captured = []

        def capture(logger, method_name, event_dict):
            captured.append(dict(event_dict))
            raise structlog.DropEvent

        logger = structlog.wrap_logger(
            structlog.PrintLogger(), processors=[redact_secrets, capture]
        )
        logger.info("oauth_callback", code="abc", state_present=True)
        assert captured == [
            {"event": "oauth_callback", "code": REDACTED, "state_present": True}
        ]


class TestRequestCorrelation(BaseOAuthHubIntegrationTest):
    def test_request_id_is_echoed(self):
        response = self.client.get("/health", headers={"X-Request-Id": "req-123"})
        assert response.headers["X-Request-Id"] == "req-123"

    def test_request_id_is_generated(self):
        response = self.client.get("/health")
        assert response.headers["X-Request-Id"]

    def test_error_body_carries_the_request_id(self):
        response = self.client.get(
            "/api/integrations/not-a-real-integration", headers={"X-Request-Id": "req-404"}
        )
        assert response.status_code == 404
        assert response.json()["error"]["request_id"] == "req-404"
