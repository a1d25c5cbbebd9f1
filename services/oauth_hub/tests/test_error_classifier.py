"""
Tests for OAuth error classification.
"""

import asyncio

import httpx
import pytest

from services.oauth_hub.exceptions import (
    EncryptionError,
    ExpiredStateError,
    IntegrationNotFoundError,
    InvalidStateError,
    OAuthError,
    OAuthNotConfiguredError,
)
from services.oauth_hub.schemas.errors import ErrorKind, RecoveryAction
from services.oauth_hub.services.error_classifier import (
    ERROR_PROFILES,
    ErrorClassifier,
    extract_provider_error,
    parse_retry_after,
)


class TestErrorClassifier:
    def setup_method(self):
        self.classifier = ErrorClassifier()

    def test_every_kind_has_a_profile(self):
        assert set(ERROR_PROFILES) == set(ErrorKind)

    def test_invalid_grant_requires_reconnect(self):
        error = self.classifier.classify_http_response(
            400, {"error": "invalid_grant", "error_description": "expired refresh token"}
        )
        assert error.kind == ErrorKind.INVALID_GRANT
        assert error.retryable is False
        assert error.action == RecoveryAction.RECONNECT
        assert error.provider_error == "invalid_grant"
        assert error.message == "HTTP 400: invalid_grant (expired refresh token)"

    def test_429_is_rate_limited_with_retry_after(self):
        error = self.classifier.classify_http_response(
            429, {"error": "invalid_grant"}, {"Retry-After": "42"}
        )
        assert error.kind == ErrorKind.RATE_LIMITED
        assert error.retryable
        assert error.retry_after == 42.0

    def test_server_error_is_retryable_provider_error(self):
        error = self.classifier.classify_http_response(503, "<html>down</html>")
        assert error.kind == ErrorKind.PROVIDER_ERROR
        assert error.retryable
        assert error.action == RecoveryAction.RETRY

    def test_mapped_code_wins_over_status(self):
        error = self.classifier.classify_http_response(500, {"error": "invalid_client"})
        assert error.kind == ErrorKind.INVALID_CLIENT

    @pytest.mark.parametrize(
        "status_code,context,kind",
        [
            (401, "token", ErrorKind.INVALID_CLIENT),
            (401, "api", ErrorKind.UNAUTHORIZED),
            (403, "token", ErrorKind.ACCESS_DENIED),
            (403, "api", ErrorKind.INSUFFICIENT_PERMISSIONS),
            (404, "api", ErrorKind.UNKNOWN_ERROR),
        ],
    )
    def test_bare_status_codes_depend_on_context(self, status_code, context, kind):
        error = self.classifier.classify_http_response(status_code, None, context=context)
        assert error.kind == kind

    def test_unauthorized_suggests_refresh(self):
        error = self.classifier.classify_http_response(401, None, context="api")
        assert error.retryable
        assert error.action == RecoveryAction.REFRESH_TOKEN

    def test_provider_error_codes_are_case_insensitive(self):
        error = self.classifier.classify_provider_error("Access_Denied", "User said no")
        assert error.kind == ErrorKind.ACCESS_DENIED
        assert error.message == "User said no"

    def test_unknown_provider_code(self):
        error = self.classifier.classify_provider_error("weird_code")
        assert error.kind == ErrorKind.UNKNOWN_ERROR
        assert error.action == RecoveryAction.MANUAL_INTERVENTION

    def test_register_provider_error(self):
        self.classifier.register_provider_error("SHOP_CLOSED", ErrorKind.ACCESS_DENIED)
        assert self.classifier.kind_for_provider_code("shop_closed") == ErrorKind.ACCESS_DENIED

    def test_custom_codes_in_constructor(self):
        classifier = ErrorClassifier({"Quota_Exceeded": ErrorKind.RATE_LIMITED})
        error = classifier.classify_http_response(400, {"error": "quota_exceeded"})
        assert error.kind == ErrorKind.RATE_LIMITED

    @pytest.mark.parametrize(
        "exc,kind",
        [
            (ExpiredStateError(700_000, 600_000), ErrorKind.EXPIRED_STATE),
            (InvalidStateError("bad", reason="decode"), ErrorKind.INVALID_STATE),
            (OAuthNotConfiguredError("slack"), ErrorKind.OAUTH_NOT_CONFIGURED),
            (IntegrationNotFoundError("nope"), ErrorKind.INVALID_CONFIGURATION),
            (httpx.ReadTimeout("slow"), ErrorKind.TIMEOUT),
            (asyncio.TimeoutError(), ErrorKind.TIMEOUT),
            (httpx.ConnectError("refused"), ErrorKind.NETWORK_ERROR),
            (EncryptionError("tampered"), ErrorKind.UNKNOWN_ERROR),
            (RuntimeError("boom"), ErrorKind.UNKNOWN_ERROR),
        ],
    )
    def test_classify_exception(self, exc, kind):
        assert self.classifier.classify_exception(exc).kind == kind

    def test_oauth_error_passes_through(self):
        classified = self.classifier.build(ErrorKind.RATE_LIMITED, "slow down")
        assert self.classifier.classify_exception(OAuthError(classified)) is classified

    def test_http_status_error_is_classified_from_response(self):
        request = httpx.Request("GET", "https://api.example.com/me")
        response = httpx.Response(401, json={"error": "invalid_token"}, request=request)
        exc = httpx.HTTPStatusError("unauthorized", request=request, response=response)
        assert self.classifier.classify_exception(exc).kind == ErrorKind.UNAUTHORIZED

    def test_user_message_never_contains_provider_detail(self):
        error = self.classifier.classify_http_response(
            400, {"error": "invalid_grant", "error_description": "secret internals"}
        )
        assert "secret internals" not in error.user_message
        assert self.classifier.get_user_message(error) == error.user_message


class TestRetryDelay:
    def setup_method(self):
        self.classifier = ErrorClassifier(
            retry_base_delay=1.0, retry_max_delay=8.0, retry_multiplier=2.0
        )

    def test_non_retryable_has_no_delay(self):
        error = self.classifier.build(ErrorKind.INVALID_GRANT)
        assert self.classifier.calculate_retry_delay(error) == 0.0

    def test_provider_retry_after_wins(self):
        error = self.classifier.build(ErrorKind.RATE_LIMITED, retry_after=5.0)
        assert self.classifier.calculate_retry_delay(error) == 5.0

    @pytest.mark.parametrize(
        "kind,delay",
        [
            (ErrorKind.RATE_LIMITED, 60.0),
            (ErrorKind.NETWORK_ERROR, 30.0),
            (ErrorKind.TIMEOUT, 15.0),
        ],
    )
    def test_default_delays(self, kind, delay):
        assert self.classifier.calculate_retry_delay(self.classifier.build(kind)) == delay

    def test_exponential_backoff_for_other_retryable_kinds(self):
        error = self.classifier.build(ErrorKind.PROVIDER_ERROR)
        delays = [self.classifier.calculate_retry_delay(error, attempt) for attempt in range(5)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 8.0]


class TestProviderErrorExtraction:
    def test_standard_body(self):
        assert extract_provider_error(
            {"error": "invalid_grant", "error_description": "bad"}
        ) == ("invalid_grant", "bad")

    def test_graph_style_body(self):
        assert extract_provider_error(
            {"error": {"code": 190, "message": "Invalid OAuth access token"}}
        ) == ("190", "Invalid OAuth access token")

    def test_errors_list_body(self):
        assert extract_provider_error(
            {"errors": [{"code": "RATE_LIMITED", "message": "slow down"}]}
        ) == ("rate_limited", "slow down")

    def test_non_mapping_body(self):
        assert extract_provider_error("nope") == (None, None)
        assert extract_provider_error(None) == (None, None)

    def test_retry_after_parsing(self):
        assert parse_retry_after({"retry-after": "12"}) == 12.0
        assert parse_retry_after({"Retry-After": "-3"}) == 0.0
        assert parse_retry_after({"Retry-After": "garbage"}) is None
        assert parse_retry_after({}) is None
        assert parse_retry_after({"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}) == 0.0
