"""
Tests for the OAuth orchestrator.

Provider endpoints are mocked with respx; connection records live in the
in-memory store so every state transition can be inspected directly.
"""

import asyncio
import base64
import hashlib
import hmac
import json
from datetime import timedelta
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx

from services.oauth_hub.exceptions import (
    IntegrationNotFoundError,
    NotFoundError,
    OAuthNotConfiguredError,
    TokenError,
    ValidationError,
)
from services.oauth_hub.models.connection import ConnectionHealth, ConnectionStatus
from services.oauth_hub.schemas.errors import ErrorKind, RecoveryAction
from services.oauth_hub.security.security_manager import SecurityManager
from services.oauth_hub.services.audit_service import AuditEvents, SecurityViolations
from services.oauth_hub.services.oauth_manager import TokenResponse, normalize_shop_domain
from services.oauth_hub.tests.test_base import (
    HUBSPOT_TEST_URL,
    HUBSPOT_TOKEN_URL,
    SALESFORCE_REVOKE_URL,
    SALESFORCE_TOKEN_URL,
    SALESFORCE_USERINFO_URL,
    TEST_APP_BASE_URL,
    BaseOAuthHubTest,
)

CALLBACK_URI = f"{TEST_APP_BASE_URL}/api/integrations/oauth/callback"


def _query(url: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


def _form(request: httpx.Request) -> dict:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


class TestGenerateAuthUrl(BaseOAuthHubTest):
    def test_salesforce_url_carries_pkce_and_state(self):
        url = self.manager.generate_auth_url("salesforce", "user-1", return_url="/settings")
        parsed = urlparse(url)
        query = _query(url)

        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
            "https://login.salesforce.com/services/oauth2/authorize"
        )
        assert query["client_id"] == "sf-client-id"
        assert query["response_type"] == "code"
        assert query["redirect_uri"] == CALLBACK_URI
        assert query["scope"] == "api refresh_token offline_access"
        assert query["prompt"] == "login consent"
        assert query["code_challenge_method"] == "S256"

        state = self.container.security_manager.parse_state(query["state"])
        assert state.user_id == "user-1"
        assert state.integration_id == "salesforce"
        assert state.return_url == "/settings"
        assert query["code_challenge"] == SecurityManager.compute_pkce_challenge(
            state.pkce_verifier
        )

    def test_shopify_url_uses_shop_domain_and_comma_scopes(self):
        url = self.manager.generate_auth_url(
            "shopify", "user-1", provider_params={"shop": "https://My-Store.myshopify.com/"}
        )
        parsed = urlparse(url)
        query = _query(url)
        assert parsed.netloc == "my-store.myshopify.com"
        assert query["scope"].split(",")[0] == "read_products"
        assert "code_challenge" not in query
        state = self.container.security_manager.parse_state(query["state"])
        assert state.provider_params == {"shop": "my-store"}

    def test_shopify_without_shop_leaves_placeholder(self):
        url = self.manager.generate_auth_url("shopify", "user-1")
        assert url.startswith("https://{shop}.myshopify.com/admin/oauth/authorize?")

    def test_unknown_integration(self):
        with pytest.raises(IntegrationNotFoundError):
            self.manager.generate_auth_url("myspace", "user-1")

    def test_api_key_integration_is_not_oauth(self):
        with pytest.raises(IntegrationNotFoundError):
            self.manager.generate_auth_url("woocommerce", "user-1")

    def test_integration_without_credentials(self):
        with pytest.raises(OAuthNotConfiguredError):
            self.manager.generate_auth_url("slack", "user-1")

    @pytest.mark.parametrize(
        "return_url",
        ["https://evil.example.com/phish", "//evil.example.com", "javascript:alert(1)"],
    )
    def test_open_redirect_return_urls_are_rejected(self, return_url):
        with pytest.raises(ValidationError):
            self.manager.generate_auth_url("hubspot", "user-1", return_url=return_url)

    def test_allowed_origin_return_url(self):
        url = self.manager.generate_auth_url(
            "hubspot", "user-1", return_url=f"{TEST_APP_BASE_URL}/dashboard"
        )
        state = self.container.security_manager.parse_state(_query(url)["state"])
        assert state.return_url == f"{TEST_APP_BASE_URL}/dashboard"

    def test_blank_user_id(self):
        with pytest.raises(ValidationError):
            self.manager.generate_auth_url("hubspot", "   ")

    @pytest.mark.parametrize("shop", ["bad shop", "-leading", "a" * 70, "evil.com/x"])
    def test_invalid_shop_domains(self, shop):
        with pytest.raises(ValidationError):
            normalize_shop_domain(shop)


class TestHandleCallback(BaseOAuthHubTest):
    def _start(self, integration_id: str = "salesforce", user_id: str = "user-1", **kwargs):
        url = self.manager.generate_auth_url(integration_id, user_id, **kwargs)
        return _query(url)["state"]

    @pytest.mark.asyncio
    async def test_successful_callback_persists_encrypted_tokens(self):
        state = self._start(return_url="/dashboard")
        with respx.mock(assert_all_called=False) as router:
            token_route = router.post(SALESFORCE_TOKEN_URL).mock(
                return_value=httpx.Response(
                    200,
                    json={
                        "access_token": "sf-access",
                        "refresh_token": "sf-refresh",
                        "expires_in": 3600,
                        "scope": "api refresh_token",
                        "token_type": "Bearer",
                    },
                )
            )
            router.get(SALESFORCE_USERINFO_URL).mock(
                return_value=httpx.Response(
                    200,
                    json={"user_id": "005xx", "name": "Ada Lovelace", "email": "ada@example.com"},
                )
            )
            result = await self.manager.handle_callback(
                "auth-code", state, {"ip": "203.0.113.5", "user_agent": "pytest"}
            )

        assert result.success
        assert result.integration_id == "salesforce"
        assert result.user_id == "user-1"
        assert result.return_url == "/dashboard"

        form = _form(token_route.calls.last.request)
        decoded = self.container.security_manager.parse_state(state)
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code"
        assert form["redirect_uri"] == CALLBACK_URI
        assert form["code_verifier"] == decoded.pkce_verifier

        record = await self.container.connection_store.get("user-1", "salesforce")
        assert record.status == ConnectionStatus.CONNECTED
        assert record.connection_health == ConnectionHealth.HEALTHY
        assert record.access_token != "sf-access"
        assert self.decrypt_stored(record) == "sf-access"
        assert self.decrypt_stored(record, "refresh_token") == "sf-refresh"
        assert record.provider_user_id == "005xx"
        assert record.provider_email == "ada@example.com"

        events = [entry.event_type for entry in self.audit_entries]
        assert AuditEvents.CONNECTION_INITIATED in events
        assert AuditEvents.CONNECTION_COMPLETED in events
        completed = self.audit_events(AuditEvents.CONNECTION_COMPLETED)[0]
        assert completed.details["scopes"] == ["api", "refresh_token"]
        assert completed.ip_address == "203.0.113.5"

    @pytest.mark.asyncio
    async def test_identity_lookup_failure_does_not_fail_callback(self):
        state = self._start()
        with respx.mock(assert_all_called=False) as router:
            router.post(SALESFORCE_TOKEN_URL).mock(
                return_value=httpx.Response(200, json={"access_token": "sf-access"})
            )
            router.get(SALESFORCE_USERINFO_URL).mock(return_value=httpx.Response(500))
            result = await self.manager.handle_callback("auth-code", state)
        assert result.success
        record = await self.container.connection_store.get("user-1", "salesforce")
        assert record.provider_user_id is None
        assert record.expires_at is None

    @pytest.mark.asyncio
    async def test_expired_state_never_reaches_token_endpoint(self):
        state = self._start()
        self.clock_offset = 11 * 60
        with respx.mock(assert_all_called=False) as router:
            token_route = router.post(SALESFORCE_TOKEN_URL).mock(
                return_value=httpx.Response(200, json={"access_token": "x"})
            )
            result = await self.manager.handle_callback("auth-code", state)

        assert not result.success
        assert result.error_code == ErrorKind.EXPIRED_STATE
        assert not token_route.called
        assert await self.container.connection_store.get("user-1", "salesforce") is None
        violations = self.audit_events(AuditEvents.SECURITY_VIOLATION)
        assert violations[0].details["violation_type"] == SecurityViolations.EXPIRED_STATE

    @pytest.mark.asyncio
    async def test_garbage_state_is_rejected(self):
        with respx.mock(assert_all_called=False) as router:
            token_route = router.post(SALESFORCE_TOKEN_URL)
            result = await self.manager.handle_callback("auth-code", "not-a-state")
        assert not result.success
        assert result.error_code == ErrorKind.INVALID_STATE
        assert result.error.action == RecoveryAction.REJECT
        assert not token_route.called
        violations = self.audit_events(AuditEvents.SECURITY_VIOLATION)
        assert violations[0].severity == "high"

    @pytest.mark.asyncio
    async def test_state_for_another_user_is_rejected(self):
        state = self._start(user_id="user-1")
        result = await self.manager.handle_callback(
            "auth-code", state, authenticated_user_id="user-2"
        )
        assert not result.success
        assert result.error_code == ErrorKind.INVALID_STATE
        violation = self.audit_events(AuditEvents.SECURITY_VIOLATION)[0]
        assert violation.details["violation_type"] == SecurityViolations.SUSPICIOUS_ACTIVITY
        assert violation.user_id == "user-2"

    def _forge_state(self, **fields) -> str:
        payload = {
            "integration_id": "salesforce",
            "user_id": "victim",
            "nonce": "forged-nonce-0001",
            "timestamp": int(self.clock() * 1000),
            **fields,
        }
        raw = json.dumps(payload).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    @pytest.mark.asyncio
    async def test_forged_state_with_foreign_return_url_is_rejected(self):
        state = self._forge_state(return_url="https://evil.example/phish")
        with respx.mock(assert_all_called=False) as router:
            token_route = router.post(SALESFORCE_TOKEN_URL).mock(
                return_value=httpx.Response(200, json={"access_token": "sf-access"})
            )
            result = await self.manager.handle_callback("auth-code", state)

        assert not result.success
        assert result.error_code == ErrorKind.INVALID_STATE
        assert result.return_url is None
        assert not token_route.called
        assert await self.container.connection_store.get("victim", "salesforce") is None
        violation = self.audit_events(AuditEvents.SECURITY_VIOLATION)[0]
        assert violation.details["violation_type"] == SecurityViolations.INVALID_STATE
        assert violation.details["reason"] == "return_url"
        assert violation.user_id == "victim"

    @pytest.mark.asyncio
    async def test_forged_state_with_protocol_relative_return_url_is_rejected(self):
        state = self._forge_state(return_url="//evil.example/phish")
        result = await self.manager.handle_callback_error(
            state, "access_denied", "User denied access"
        )
        assert not result.success
        assert result.error_code == ErrorKind.INVALID_STATE
        assert result.return_url is None

    @pytest.mark.asyncio
    async def test_state_with_relative_return_url_is_accepted(self):
        state = self._forge_state(user_id="user-1", return_url="/dashboard")
        with respx.mock(assert_all_called=False) as router:
            router.post(SALESFORCE_TOKEN_URL).mock(
                return_value=httpx.Response(200, json={"access_token": "sf-access"})
            )
            router.get(SALESFORCE_USERINFO_URL).mock(return_value=httpx.Response(404))
            result = await self.manager.handle_callback("auth-code", state)
        assert result.success
        assert result.return_url == "/dashboard"

    @pytest.mark.asyncio
    async def test_invalid_grant_at_exchange(self):
        state = self._start()
        with respx.mock(assert_all_called=False) as router:
            router.post(SALESFORCE_TOKEN_URL).mock(
                return_value=httpx.Response(400, json={"error": "invalid_grant"})
            )
            result = await self.manager.handle_callback("used-code", state)
        assert not result.success
        assert result.error_code == ErrorKind.INVALID_GRANT
        assert result.error.retryable is False
        assert result.return_url is None
        assert self.audit_events(AuditEvents.CONNECTION_FAILED)

    @pytest.mark.asyncio
    async def test_malformed_token_response(self):
        state = self._start()
        with respx.mock(assert_all_called=False) as router:
            router.post(SALESFORCE_TOKEN_URL).mock(
                return_value=httpx.Response(200, json={"token_type": "Bearer"})
            )
            result = await self.manager.handle_callback("auth-code", state)
        assert not result.success
        assert result.error_code == ErrorKind.PROVIDER_ERROR

    @pytest.mark.asyncio
    async def test_network_failure_at_exchange(self):
        state = self._start()
        with respx.mock(assert_all_called=False) as router:
            router.post(SALESFORCE_TOKEN_URL).mock(side_effect=httpx.ConnectError("down"))
            result = await self.manager.handle_callback("auth-code", state)
        assert result.error_code == ErrorKind.NETWORK_ERROR
        assert result.error.retryable

    @pytest.mark.asyncio
    async def test_failed_reconnect_keeps_existing_connection(self):
        await self.seed_connection()
        state = self._start()
        with respx.mock(assert_all_called=False) as router:
            router.post(SALESFORCE_TOKEN_URL).mock(
                return_value=httpx.Response(400, json={"error": "invalid_grant"})
            )
            await self.manager.handle_callback("auth-code", state)
        record = await self.container.connection_store.get("user-1", "salesforce")
        assert record.status == ConnectionStatus.CONNECTED
        assert record.error_count == 1
        assert record.last_error_code == ErrorKind.INVALID_GRANT.value

    @pytest.mark.asyncio
    async def test_missing_code(self):
        state = self._start()
        result = await self.manager.handle_callback(None, state)
        assert result.error_code == ErrorKind.INVALID_GRANT

    @pytest.mark.asyncio
    async def test_provider_reported_access_denied(self):
        state = self._start()
        result = await self.manager.handle_callback_error(
            state, "access_denied", "The user denied access"
        )
        assert not result.success
        assert result.error_code == ErrorKind.ACCESS_DENIED
        assert result.integration_id == "salesforce"
        failed = self.audit_events(AuditEvents.CONNECTION_FAILED)[0]
        assert failed.details["error_kind"] == ErrorKind.ACCESS_DENIED.value


class TestShopifyCallback(BaseOAuthHubTest):
    token_url = "https://my-store.myshopify.com/admin/oauth/access_token"

    def _signed_params(self, state: str, secret: str = "shopify-client-secret") -> dict:
        params = {
            "code": "shop-code",
            "shop": "my-store.myshopify.com",
            "state": state,
            "timestamp": "1700000000",
        }
        message = "&".join(f"{key}={value}" for key, value in sorted(params.items()))
        params["hmac"] = hmac.new(
            secret.encode(), message.encode(), hashlib.sha256
        ).hexdigest()
        return params

    @pytest.mark.asyncio
    async def test_signed_callback_connects_store(self):
        url = self.manager.generate_auth_url(
            "shopify", "user-1", provider_params={"shop": "my-store"}
        )
        state = _query(url)["state"]
        with respx.mock(assert_all_called=False) as router:
            token_route = router.post(self.token_url).mock(
                return_value=httpx.Response(
                    200, json={"access_token": "shpat_123", "scope": "read_products,read_orders"}
                )
            )
            result = await self.manager.handle_callback(
                "shop-code", state, callback_params=self._signed_params(state)
            )
        assert result.success
        assert token_route.called
        record = await self.container.connection_store.get("user-1", "shopify")
        assert record.provider_params() == {"shop": "my-store"}
        assert record.refresh_token is None

    @pytest.mark.asyncio
    async def test_shop_can_be_supplied_at_callback(self):
        state = _query(self.manager.generate_auth_url("shopify", "user-1"))["state"]
        with respx.mock(assert_all_called=False) as router:
            router.post(self.token_url).mock(
                return_value=httpx.Response(200, json={"access_token": "shpat_123"})
            )
            result = await self.manager.handle_callback(
                "shop-code", state, callback_params=self._signed_params(state)
            )
        assert result.success

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected(self):
        url = self.manager.generate_auth_url(
            "shopify", "user-1", provider_params={"shop": "my-store"}
        )
        state = _query(url)["state"]
        with respx.mock(assert_all_called=False) as router:
            token_route = router.post(self.token_url)
            result = await self.manager.handle_callback(
                "shop-code", state, callback_params=self._signed_params(state, "wrong")
            )
        assert not result.success
        assert result.error_code == ErrorKind.INVALID_SIGNATURE
        assert not token_route.called
        violation = self.audit_events(AuditEvents.SECURITY_VIOLATION)[0]
        assert violation.details["violation_type"] == SecurityViolations.INVALID_SIGNATURE


class TestRefreshTokens(BaseOAuthHubTest):
    @pytest.mark.asyncio
    async def test_successful_refresh_rotates_tokens(self):
        await self.seed_connection(expires_in=timedelta(minutes=2))
        with respx.mock(assert_all_called=False) as router:
            token_route = router.post(SALESFORCE_TOKEN_URL).mock(
                return_value=httpx.Response(
                    200,
                    json={
                        "access_token": "new-access",
                        "refresh_token": "new-refresh",
                        "expires_in": 7200,
                    },
                )
            )
            result = await self.manager.refresh_tokens("user-1", "salesforce")

        assert result.success
        assert result.status == ConnectionStatus.CONNECTED
        form = _form(token_route.calls.last.request)
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "stored-refresh-token"
        assert form["client_secret"] == "sf-client-secret"

        record = await self.container.connection_store.get("user-1", "salesforce")
        assert self.decrypt_stored(record) == "new-access"
        assert self.decrypt_stored(record, "refresh_token") == "new-refresh"
        assert record.expires_at > result.expires_at - timedelta(seconds=1)
        assert self.audit_events(AuditEvents.TOKEN_REFRESHED)

    @pytest.mark.asyncio
    async def test_refresh_without_new_refresh_token_keeps_old_one(self):
        await self.seed_connection()
        with respx.mock(assert_all_called=False) as router:
            router.post(SALESFORCE_TOKEN_URL).mock(
                return_value=httpx.Response(200, json={"access_token": "new-access"})
            )
            await self.manager.refresh_tokens("user-1", "salesforce")
        record = await self.container.connection_store.get("user-1", "salesforce")
        assert self.decrypt_stored(record, "refresh_token") == "stored-refresh-token"

    @pytest.mark.asyncio
    async def test_invalid_grant_marks_connection_error(self):
        await self.seed_connection()
        with respx.mock(assert_all_called=False) as router:
            router.post(SALESFORCE_TOKEN_URL).mock(
                return_value=httpx.Response(400, json={"error": "invalid_grant"})
            )
            result = await self.manager.refresh_tokens("user-1", "salesforce")

        assert not result.success
        assert result.error_code == ErrorKind.INVALID_GRANT
        assert result.error.retryable is False
        assert result.error.action == RecoveryAction.RECONNECT
        assert result.status == ConnectionStatus.ERROR

        record = await self.container.connection_store.get("user-1", "salesforce")
        assert record.status == ConnectionStatus.ERROR
        assert record.connection_health == ConnectionHealth.ERROR
        assert record.error_count == 1
        assert self.audit_events(AuditEvents.TOKEN_REFRESH_FAILED)

    @pytest.mark.asyncio
    async def test_retryable_failure_marks_health_warning(self):
        await self.seed_connection()
        with respx.mock(assert_all_called=False) as router:
            router.post(SALESFORCE_TOKEN_URL).mock(return_value=httpx.Response(503))
            result = await self.manager.refresh_tokens("user-1", "salesforce")
        assert result.error_code == ErrorKind.PROVIDER_ERROR
        record = await self.container.connection_store.get("user-1", "salesforce")
        assert record.status == ConnectionStatus.ERROR
        assert record.connection_health == ConnectionHealth.WARNING

    @pytest.mark.asyncio
    async def test_no_refresh_token_makes_no_network_call(self):
        await self.seed_connection(refresh_token=None, expires_in=timedelta(minutes=-5))
        with respx.mock(assert_all_called=False) as router:
            token_route = router.post(SALESFORCE_TOKEN_URL)
            result = await self.manager.refresh_tokens("user-1", "salesforce")
        assert not result.success
        assert result.error_code == ErrorKind.TOKEN_EXPIRED
        assert result.status == ConnectionStatus.EXPIRED
        assert not token_route.called
        failed = self.audit_events(AuditEvents.TOKEN_REFRESH_FAILED)
        assert len(failed) == 1
        assert failed[0].integration_id == "salesforce"
        assert failed[0].details["error_kind"] == ErrorKind.TOKEN_EXPIRED.value

    @pytest.mark.asyncio
    async def test_refresh_of_missing_connection(self):
        result = await self.manager.refresh_tokens("user-1", "salesforce")
        assert not result.success
        assert result.status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_provider_call(self):
        await self.seed_connection(expires_in=timedelta(minutes=1))
        calls = 0

        async def slow_token_request(definition, url, data):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return TokenResponse(access_token=f"new-access-{calls}", expires_in=3600)

        with patch.object(
            self.manager, "_post_token_request", side_effect=slow_token_request
        ):
            results = await asyncio.gather(
                *(self.manager.refresh_tokens("user-1", "salesforce") for _ in range(5))
            )

        assert calls == 1
        assert all(result.success for result in results)
        assert len({result.expires_at for result in results}) == 1
        record = await self.container.connection_store.get("user-1", "salesforce")
        assert self.decrypt_stored(record) == "new-access-1"
        assert not self.manager._ongoing_refreshes
        assert not self.manager._record_locks

    @pytest.mark.asyncio
    async def test_waiting_caller_times_out(self):
        self.settings = self.make_settings(refresh_lock_timeout_seconds=0.01)
        self.container = self.make_container()
        await self.seed_connection()
        release = asyncio.Event()

        async def blocked_token_request(definition, url, data):
            await release.wait()
            return TokenResponse(access_token="new-access")

        with patch.object(
            self.manager, "_post_token_request", side_effect=blocked_token_request
        ):
            first = asyncio.create_task(self.manager.refresh_tokens("user-1", "salesforce"))
            await asyncio.sleep(0)
            waiter = await self.manager.refresh_tokens("user-1", "salesforce")
            release.set()
            leader = await first

        assert not waiter.success
        assert waiter.error_code == ErrorKind.TIMEOUT
        assert leader.success
        assert not self.manager._record_locks


class TestConnectionLifecycle(BaseOAuthHubTest):
    @pytest.mark.asyncio
    async def test_expiry_is_computed_lazily(self):
        await self.seed_connection(expires_in=timedelta(seconds=-1))
        view = await self.manager.get_connection_status("user-1", "salesforce")
        assert view.status == ConnectionStatus.EXPIRED
        stored = await self.container.connection_store.get("user-1", "salesforce")
        assert stored.status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_status_of_missing_connection_is_disconnected(self):
        view = await self.manager.get_connection_status("user-1", "hubspot")
        assert view.status == ConnectionStatus.DISCONNECTED
        assert not view.has_refresh_token

    @pytest.mark.asyncio
    async def test_views_never_expose_tokens(self):
        await self.seed_connection()
        view = await self.manager.get_connection_status("user-1", "salesforce")
        dumped = view.model_dump()
        assert "access_token" not in dumped
        assert "refresh_token" not in dumped
        assert view.has_refresh_token

    @pytest.mark.asyncio
    async def test_user_connections(self):
        await self.seed_connection(integration_id="salesforce")
        await self.seed_connection(integration_id="hubspot")
        await self.seed_connection(user_id="user-2", integration_id="hubspot")
        views = await self.manager.get_user_connections("user-1")
        assert [view.integration_id for view in views] == ["hubspot", "salesforce"]

    @pytest.mark.asyncio
    async def test_mark_expired_connections(self):
        await self.seed_connection(integration_id="salesforce", expires_in=timedelta(minutes=-1))
        await self.seed_connection(integration_id="hubspot", expires_in=timedelta(hours=1))
        marked = await self.manager.mark_expired_connections()
        assert [record.integration_id for record in marked] == ["salesforce"]
        stored = await self.container.connection_store.get("user-1", "salesforce")
        assert stored.status == ConnectionStatus.EXPIRED
        assert self.audit_events(AuditEvents.TOKENS_EXPIRED)
        assert await self.manager.mark_expired_connections() == []

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self):
        await self.seed_connection()
        with respx.mock(assert_all_called=False) as router:
            revoke_route = router.post(SALESFORCE_REVOKE_URL).mock(
                return_value=httpx.Response(200)
            )
            first = await self.manager.disconnect(
                "user-1", "salesforce", {"ip": "203.0.113.5", "user_agent": "pytest"}
            )
            second = await self.manager.disconnect("user-1", "salesforce")

        assert first.success and first.found and first.token_revoked
        assert second.success and not second.found
        assert revoke_route.call_count == 1
        assert _form(revoke_route.calls.last.request)["token"] == "stored-access-token"
        assert await self.container.connection_store.get("user-1", "salesforce") is None
        assert len(self.audit_events(AuditEvents.INTEGRATION_DISCONNECTED)) == 1
        assert not self.manager._record_locks

    @pytest.mark.asyncio
    async def test_disconnect_survives_revoke_failure(self):
        await self.seed_connection()
        with respx.mock(assert_all_called=False) as router:
            router.post(SALESFORCE_REVOKE_URL).mock(side_effect=httpx.ConnectError("down"))
            result = await self.manager.disconnect("user-1", "salesforce")
        assert result.success and result.found
        assert not result.token_revoked
        assert await self.container.connection_store.get("user-1", "salesforce") is None


class TestConnectionCheck(BaseOAuthHubTest):
    @pytest.mark.asyncio
    async def test_healthy_check(self):
        await self.seed_connection(integration_id="hubspot")
        with respx.mock(assert_all_called=False) as router:
            route = router.get(HUBSPOT_TEST_URL).mock(return_value=httpx.Response(200, json={}))
            result = await self.manager.test_connection("user-1", "hubspot")
        assert result.healthy and result.tested
        assert result.status_code == 200
        assert route.calls.last.request.headers["Authorization"] == "Bearer stored-access-token"
        assert self.audit_events(AuditEvents.HEALTH_CHECK)[0].details["healthy"] is True

    @pytest.mark.asyncio
    async def test_shopify_check_uses_token_header_and_shop(self):
        await self.seed_connection(
            integration_id="shopify",
            refresh_token=None,
            expires_in=None,
            provider_metadata={"provider_params": {"shop": "my-store"}},
        )
        with respx.mock(assert_all_called=False) as router:
            route = router.get(
                "https://my-store.myshopify.com/admin/api/2023-10/shop.json"
            ).mock(return_value=httpx.Response(200, json={"shop": {}}))
            result = await self.manager.test_connection("user-1", "shopify")
        assert result.healthy
        headers = route.calls.last.request.headers
        assert headers["X-Shopify-Access-Token"] == "stored-access-token"
        assert "Authorization" not in headers

    @pytest.mark.asyncio
    async def test_unauthorized_check_marks_health_error(self):
        await self.seed_connection(integration_id="hubspot")
        with respx.mock(assert_all_called=False) as router:
            router.get(HUBSPOT_TEST_URL).mock(return_value=httpx.Response(401))
            result = await self.manager.test_connection("user-1", "hubspot")
        assert not result.healthy
        assert result.error.kind == ErrorKind.UNAUTHORIZED
        record = await self.container.connection_store.get("user-1", "hubspot")
        assert record.connection_health == ConnectionHealth.ERROR

    @pytest.mark.asyncio
    async def test_server_error_check_marks_health_warning(self):
        await self.seed_connection(integration_id="hubspot")
        with respx.mock(assert_all_called=False) as router:
            router.get(HUBSPOT_TEST_URL).mock(return_value=httpx.Response(502))
            result = await self.manager.test_connection("user-1", "hubspot")
        assert result.error.kind == ErrorKind.PROVIDER_ERROR
        record = await self.container.connection_store.get("user-1", "hubspot")
        assert record.connection_health == ConnectionHealth.WARNING

    @pytest.mark.asyncio
    async def test_healthy_check_restores_errored_connection(self):
        await self.seed_connection(
            integration_id="hubspot",
            status=ConnectionStatus.ERROR,
            last_error="HTTP 503",
            error_count=2,
        )
        with respx.mock(assert_all_called=False) as router:
            router.get(HUBSPOT_TEST_URL).mock(return_value=httpx.Response(200, json={}))
            await self.manager.test_connection("user-1", "hubspot")
        record = await self.container.connection_store.get("user-1", "hubspot")
        assert record.status == ConnectionStatus.CONNECTED
        assert record.error_count == 0
        assert record.last_used_at is not None

    @pytest.mark.asyncio
    async def test_expired_connection_is_not_checked(self):
        await self.seed_connection(integration_id="hubspot", expires_in=timedelta(minutes=-1))
        with respx.mock(assert_all_called=False) as router:
            route = router.get(HUBSPOT_TEST_URL)
            result = await self.manager.test_connection("user-1", "hubspot")
        assert not result.healthy and not result.tested
        assert result.error.kind == ErrorKind.UNAUTHORIZED
        assert not route.called

    @pytest.mark.asyncio
    async def test_unresolvable_check_is_healthy_but_untested(self):
        await self.seed_connection(integration_id="shopify", refresh_token=None, expires_in=None)
        result = await self.manager.test_connection("user-1", "shopify")
        assert result.healthy
        assert not result.tested

    @pytest.mark.asyncio
    async def test_check_without_connection(self):
        result = await self.manager.test_connection("user-1", "hubspot")
        assert not result.healthy
        assert result.error.kind == ErrorKind.TOKEN_EXPIRED


class TestGetAccessToken(BaseOAuthHubTest):
    @pytest.mark.asyncio
    async def test_returns_decrypted_token(self):
        await self.seed_connection()
        assert await self.manager.get_access_token("user-1", "salesforce") == (
            "stored-access-token"
        )
        record = await self.container.connection_store.get("user-1", "salesforce")
        assert record.last_used_at is not None

    @pytest.mark.asyncio
    async def test_refreshes_token_close_to_expiry(self):
        await self.seed_connection(integration_id="hubspot", expires_in=timedelta(minutes=2))
        with respx.mock(assert_all_called=False) as router:
            router.post(HUBSPOT_TOKEN_URL).mock(
                return_value=httpx.Response(
                    200, json={"access_token": "fresh-access", "expires_in": 3600}
                )
            )
            token = await self.manager.get_access_token("user-1", "hubspot")
        assert token == "fresh-access"

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self):
        await self.seed_connection(refresh_token=None, expires_in=timedelta(minutes=-1))
        with pytest.raises(TokenError):
            await self.manager.get_access_token("user-1", "salesforce")

    @pytest.mark.asyncio
    async def test_failed_refresh_raises_token_error(self):
        await self.seed_connection(integration_id="hubspot", expires_in=timedelta(minutes=-1))
        with respx.mock(assert_all_called=False) as router:
            router.post(HUBSPOT_TOKEN_URL).mock(
                return_value=httpx.Response(400, json={"error": "invalid_grant"})
            )
            with pytest.raises(TokenError) as exc_info:
                await self.manager.get_access_token("user-1", "hubspot")
        assert exc_info.value.classified.kind == ErrorKind.INVALID_GRANT

    @pytest.mark.asyncio
    async def test_missing_connection(self):
        with pytest.raises(NotFoundError):
            await self.manager.get_access_token("user-1", "salesforce")
