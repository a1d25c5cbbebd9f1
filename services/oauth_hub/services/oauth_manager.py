"""
OAuth orchestrator for the Integration Hub.

Drives the authorization-code flow, token refresh, disconnect and health
checks for every catalog integration, and owns the per-connection
lifecycle state machine:

    disconnected -> connected            handle_callback
    connected    -> expired              expires_at passes (lazy / sweep)
    connected|expired -> refreshing -> connected|error   refresh_tokens
    any          -> disconnected         disconnect

Every public flow returns a structured result; raw exceptions and
provider error bodies are classified before they leave this module.
"""

import asyncio
import re
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, urlencode, urlparse

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError

from services.oauth_hub.exceptions import (
    ExpiredStateError,
    IntegrationNotFoundError,
    InvalidConfigurationError,
    InvalidStateError,
    NotFoundError,
    OAuthError,
    OAuthNotConfiguredError,
    TokenError,
    ValidationError,
)
from services.oauth_hub.integrations.credential_registry import (
    CredentialRegistry,
    OAuthCredentials,
)
from services.oauth_hub.integrations.definitions import IntegrationDefinition
from services.oauth_hub.models.connection import (
    ConnectionHealth,
    ConnectionRecord,
    ConnectionStatus,
    ensure_utc,
    utc_now,
)
from services.oauth_hub.schemas.errors import ClassifiedError, ErrorKind
from services.oauth_hub.schemas.integration import (
    ConnectionStatusView,
    ConnectionTestResult,
    DisconnectResult,
    OAuthCallbackResult,
    TokenRefreshResult,
)
from services.oauth_hub.security.security_manager import OAuthState, SecurityManager
from services.oauth_hub.services.audit_service import (
    AuditEvents,
    AuditLogger,
    AuditSeverity,
    SecurityViolations,
)
from services.oauth_hub.services.error_classifier import (
    ErrorClassifier,
    extract_provider_error,
    is_retryable_kind,
)
from services.oauth_hub.settings import Settings
from services.oauth_hub.storage.base import ConnectionStore

logger = structlog.get_logger(__name__)

USER_AGENT = "CrewFlow/1.0"
SHOPIFY_DOMAIN_SUFFIX = ".myshopify.com"
SHOP_NAME_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
PROVIDER_PARAM_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,255}$")

RecordKey = Tuple[str, str]
RequestMetadata = Optional[Mapping[str, Optional[str]]]


def normalize_shop_domain(value: str) -> str:
    """
    Reduce a Shopify shop reference to its bare subdomain.

    Accepts ``my-store``, ``my-store.myshopify.com`` or a full
    ``https://my-store.myshopify.com/`` URL.

    Raises:
        ValidationError: If the value is not a valid shop name
    """
    shop = (value or "").strip().lower()
    for prefix in ("https://", "http://"):
        if shop.startswith(prefix):
            shop = shop[len(prefix) :]
    shop = shop.rstrip("/")
    if shop.endswith(SHOPIFY_DOMAIN_SUFFIX):
        shop = shop[: -len(SHOPIFY_DOMAIN_SUFFIX)]
    if not SHOP_NAME_PATTERN.match(shop):
        raise ValidationError("Invalid Shopify shop domain", field="shop", value=value)
    return shop


class TokenResponse(BaseModel):
    """Token endpoint payload; provider-specific extras are preserved."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None

    @field_validator("scope", mode="before")
    @classmethod
    def join_scope_list(cls, value):
        if isinstance(value, (list, tuple)):
            return " ".join(str(item) for item in value)
        return value

    @field_validator("expires_in", mode="before")
    @classmethod
    def coerce_expires_in(cls, value):
        if value in (None, ""):
            return None
        return int(float(value))


class _RecordLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class OAuthManager:
    """
    Core orchestrator for OAuth connections.

    All writes to a connection record go through a per-(user, integration)
    asyncio lock. Concurrent refreshes for the same pair share one
    in-flight provider call; later callers await its result.
    """

    def __init__(
        self,
        settings: Settings,
        security_manager: SecurityManager,
        credential_registry: CredentialRegistry,
        connection_store: ConnectionStore,
        audit_logger: AuditLogger,
        error_classifier: ErrorClassifier,
        definitions: Optional[Mapping[str, IntegrationDefinition]] = None,
    ):
        self.settings = settings
        self.security_manager = security_manager
        self.credential_registry = credential_registry
        self.connection_store = connection_store
        self.audit_logger = audit_logger
        self.error_classifier = error_classifier
        self.definitions: Mapping[str, IntegrationDefinition] = (
            credential_registry.definitions if definitions is None else definitions
        )
        self._record_locks: Dict[RecordKey, _RecordLock] = {}
        self._ongoing_refreshes: Dict[RecordKey, "asyncio.Future[TokenRefreshResult]"] = {}
        self.logger = logger

    # Helpers

    @asynccontextmanager
    async def _lock_for(self, user_id: str, integration_id: str) -> AsyncIterator[None]:
        """Serialize work on one record; the lock is dropped once nobody holds or awaits it."""
        key = (user_id, integration_id)
        entry = self._record_locks.get(key)
        if entry is None:
            entry = self._record_locks[key] = _RecordLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._record_locks.get(key) is entry:
                del self._record_locks[key]

    def _get_oauth_definition(self, integration_id: str) -> IntegrationDefinition:
        definition = self.definitions.get(integration_id)
        if definition is None or not definition.is_oauth:
            raise IntegrationNotFoundError(integration_id)
        return definition

    @staticmethod
    def _token_context(integration_id: str, token_kind: str) -> str:
        return f"{integration_id}:{token_kind}"

    def _encrypt_token(self, token: str, user_id: str, integration_id: str, kind: str) -> str:
        return self.security_manager.encrypt(
            token, user_id, self._token_context(integration_id, kind)
        )

    def _decrypt_token(self, token: str, user_id: str, integration_id: str, kind: str) -> str:
        return self.security_manager.decrypt(
            token, user_id, self._token_context(integration_id, kind)
        )

    @staticmethod
    def _auth_headers(definition: IntegrationDefinition, access_token: str) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        if definition.token_header:
            headers[definition.token_header] = access_token
        else:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            pass
        # Some token endpoints answer form-encoded
        pairs = parse_qsl(response.text or "", keep_blank_values=False)
        return dict(pairs) if pairs else None

    @staticmethod
    def _resolve_url(
        definition: IntegrationDefinition, template: str, params: Mapping[str, str]
    ) -> str:
        try:
            return definition.resolve(template, params)
        except KeyError as e:
            raise InvalidConfigurationError(
                f"Missing '{e.args[0]}' parameter for {definition.id}",
                {"integration_id": definition.id, "parameter": e.args[0]},
            ) from e

    def _normalize_provider_params(
        self,
        definition: IntegrationDefinition,
        provider_params: Optional[Mapping[str, str]],
    ) -> Dict[str, str]:
        """Keep only parameters the definition's endpoints consume."""
        accepted = set(definition.placeholders()) | set(definition.required_fields)
        normalized: Dict[str, str] = {}
        for name, value in (provider_params or {}).items():
            if name not in accepted or value in (None, ""):
                continue
            if name == "shop":
                normalized[name] = normalize_shop_domain(str(value))
            elif PROVIDER_PARAM_PATTERN.match(str(value)):
                normalized[name] = str(value)
            else:
                raise ValidationError(
                    f"Invalid value for '{name}'", field=name, value=value
                )
        return normalized

    def _validate_return_url(self, return_url: Optional[str]) -> Optional[str]:
        """
        Accept relative in-app paths or URLs on an allowed origin only.

        Raises:
            ValidationError: For open-redirect candidates
        """
        if not return_url:
            return None
        if return_url.startswith("/") and not return_url.startswith("//"):
            return return_url
        parsed = urlparse(return_url)
        if parsed.scheme in ("http", "https") and parsed.netloc:
            origin = f"{parsed.scheme}://{parsed.netloc}".lower()
            allowed = {o.rstrip("/").lower() for o in self.settings.get_allowed_origins()}
            if origin in allowed:
                return return_url
        raise ValidationError(
            "Return URL must be a relative path or an allowed origin",
            field="return_url",
            value=return_url,
        )

    def _to_view(
        self, record: ConnectionRecord, now: Optional[datetime] = None
    ) -> ConnectionStatusView:
        return ConnectionStatusView(
            user_id=record.user_id,
            integration_id=record.integration_id,
            status=record.effective_status(now),
            connection_health=record.connection_health,
            connected_at=ensure_utc(record.connected_at),
            last_used_at=ensure_utc(record.last_used_at),
            expires_at=ensure_utc(record.expires_at),
            has_refresh_token=bool(record.refresh_token),
            scope=record.scope,
            last_error=record.last_error,
            last_error_code=record.last_error_code,
            error_count=record.error_count,
            provider_user_id=record.provider_user_id,
            provider_username=record.provider_username,
            provider_email=record.provider_email,
        )

    def _apply_tokens(
        self,
        record: ConnectionRecord,
        tokens: TokenResponse,
        replace_refresh_token: bool,
    ) -> None:
        now = utc_now()
        record.access_token = self._encrypt_token(
            tokens.access_token, record.user_id, record.integration_id, "access_token"
        )
        if tokens.refresh_token:
            record.refresh_token = self._encrypt_token(
                tokens.refresh_token,
                record.user_id,
                record.integration_id,
                "refresh_token",
            )
        elif replace_refresh_token:
            record.refresh_token = None
        record.token_type = tokens.token_type or "Bearer"
        if tokens.scope:
            record.scope = tokens.scope
        record.expires_at = (
            now + timedelta(seconds=tokens.expires_in)
            if tokens.expires_in is not None
            else None
        )

    # Provider HTTP

    async def _post_token_request(
        self, definition: IntegrationDefinition, url: str, data: Dict[str, str]
    ) -> TokenResponse:
        """
        POST a form-encoded token request and validate the response.

        Raises:
            OAuthError: For any failure, already classified
        """
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.oauth_http_timeout_seconds
            ) as client:
                response = await client.post(url, data=data, headers=headers)
        except httpx.TimeoutException as e:
            raise OAuthError(
                self.error_classifier.build(
                    ErrorKind.TIMEOUT, f"Token request to {definition.id} timed out"
                )
            ) from e
        except httpx.TransportError as e:
            raise OAuthError(
                self.error_classifier.build(
                    ErrorKind.NETWORK_ERROR,
                    f"Token request to {definition.id} failed: {type(e).__name__}",
                )
            ) from e

        body = self._parse_body(response)
        if not response.is_success:
            classified = self.error_classifier.classify_http_response(
                response.status_code, body, response.headers, context="token"
            )
            self.logger.error(
                "oauth_token_request_failed",
                integration_id=definition.id,
                status_code=response.status_code,
                error_kind=classified.kind.value,
                provider_error=classified.provider_error,
            )
            raise OAuthError(classified)

        if not isinstance(body, dict) or not body.get("access_token"):
            code, description = extract_provider_error(body)
            if code:
                classified = self.error_classifier.classify_provider_error(
                    code, description, response.status_code
                )
            else:
                classified = self.error_classifier.build(
                    ErrorKind.PROVIDER_ERROR,
                    "Malformed token response: missing access_token",
                    status_code=response.status_code,
                )
            self.logger.error(
                "oauth_token_response_invalid",
                integration_id=definition.id,
                error_kind=classified.kind.value,
            )
            raise OAuthError(classified)

        try:
            return TokenResponse.model_validate(body)
        except PydanticValidationError as e:
            raise OAuthError(
                self.error_classifier.build(
                    ErrorKind.PROVIDER_ERROR,
                    "Malformed token response",
                    status_code=response.status_code,
                )
            ) from e

    async def exchange_code_for_tokens(
        self,
        definition: IntegrationDefinition,
        credentials: OAuthCredentials,
        code: str,
        state: OAuthState,
        provider_params: Optional[Mapping[str, str]] = None,
    ) -> TokenResponse:
        """Exchange an authorization code, sending the PKCE verifier when present."""
        token_url = self._resolve_url(
            definition, definition.token_url or "", provider_params or {}
        )
        data = {
            "grant_type": "authorization_code",
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
            "code": code,
            "redirect_uri": self.settings.oauth_redirect_uri,
        }
        if state.pkce_verifier:
            data["code_verifier"] = state.pkce_verifier

        tokens = await self._post_token_request(definition, token_url, data)
        self.logger.info(
            "oauth_tokens_exchanged",
            integration_id=definition.id,
            user_id=state.user_id,
            has_refresh_token=bool(tokens.refresh_token),
            expires_in=tokens.expires_in,
        )
        return tokens

    async def _fetch_provider_identity(
        self,
        definition: IntegrationDefinition,
        access_token: str,
        provider_params: Mapping[str, str],
    ) -> Optional[Dict[str, Any]]:
        if not definition.user_info_url:
            return None
        url = self._resolve_url(definition, definition.user_info_url, provider_params)
        async with httpx.AsyncClient(
            timeout=self.settings.oauth_http_timeout_seconds
        ) as client:
            response = await client.get(
                url, headers=self._auth_headers(definition, access_token)
            )
        response.raise_for_status()
        info = response.json()
        if not isinstance(info, dict):
            return None

        # Twitter and Asana wrap the profile in {"data": {...}}
        profile = info.get("data") if isinstance(info.get("data"), dict) else info
        user_id = profile.get("id") or profile.get("sub") or profile.get("user_id")
        username = (
            profile.get("username")
            or profile.get("name")
            or profile.get("login")
            or profile.get("user")
        )
        if not username and (profile.get("localizedFirstName") or profile.get("firstName")):
            first = profile.get("localizedFirstName") or profile.get("firstName") or ""
            last = profile.get("localizedLastName") or profile.get("lastName") or ""
            username = f"{first} {last}".strip()
        email = profile.get("email") or profile.get("emailAddress")
        return {
            "provider_user_id": str(user_id) if user_id is not None else None,
            "provider_username": str(username)[:255] if username else None,
            "provider_email": str(email)[:255] if email else None,
        }

    async def _revoke_tokens(
        self, definition: Optional[IntegrationDefinition], record: ConnectionRecord
    ) -> bool:
        """Best-effort provider-side revocation; never raises."""
        if definition is None or not definition.revoke_url or not record.access_token:
            return False
        credentials = self.credential_registry.get_credentials(definition.id)
        try:
            access_token = self._decrypt_token(
                record.access_token, record.user_id, record.integration_id, "access_token"
            )
            url = self._resolve_url(
                definition, definition.revoke_url, record.provider_params()
            )
            data = {"token": access_token, "token_type_hint": "access_token"}
            if credentials is not None:
                data["client_id"] = credentials.client_id
                data["client_secret"] = credentials.client_secret
            async with httpx.AsyncClient(
                timeout=self.settings.oauth_http_timeout_seconds
            ) as client:
                response = await client.post(
                    url,
                    data=data,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "User-Agent": USER_AGENT,
                    },
                )
            revoked = response.status_code in (200, 204)
            if not revoked:
                self.logger.warning(
                    "oauth_token_revoke_failed",
                    integration_id=definition.id,
                    status_code=response.status_code,
                )
            return revoked
        except Exception as e:
            self.logger.warning(
                "oauth_token_revoke_error",
                integration_id=definition.id,
                user_id=record.user_id,
                error=str(e),
            )
            return False

    # Authorization

    def generate_auth_url(
        self,
        integration_id: str,
        user_id: str,
        return_url: Optional[str] = None,
        provider_params: Optional[Mapping[str, str]] = None,
    ) -> str:
        """
        Build the provider authorize URL for a new connection.

        Placeholders such as ``{shop}`` are filled from ``provider_params``;
        unresolved ones are left for the client to complete.

        Raises:
            IntegrationNotFoundError: Unknown or non-OAuth integration
            OAuthNotConfiguredError: No client credentials deployed
            ValidationError: Bad user id, return URL or provider parameter
        """
        definition = self._get_oauth_definition(integration_id)
        credentials = self.credential_registry.get_credentials(integration_id)
        if credentials is None:
            raise OAuthNotConfiguredError(integration_id)
        if not user_id or not user_id.strip():
            raise ValidationError("User id is required", field="user_id")

        params = self._normalize_provider_params(definition, provider_params)
        safe_return_url = self._validate_return_url(return_url)

        pkce = self.security_manager.generate_pkce() if definition.requires_pkce else None
        state = self.security_manager.generate_state(
            integration_id,
            user_id,
            return_url=safe_return_url,
            pkce_verifier=pkce.code_verifier if pkce else None,
            provider_params=params,
        )

        query: Dict[str, str] = {
            "client_id": credentials.client_id,
            "response_type": "code",
            "redirect_uri": self.settings.oauth_redirect_uri,
            "state": state,
        }
        scope = definition.scope_string()
        if scope:
            query["scope"] = scope
        if pkce is not None:
            query["code_challenge"] = pkce.code_challenge
            query["code_challenge_method"] = pkce.code_challenge_method.value
        query.update(definition.auth_params())

        authorize_url = definition.resolve(
            definition.authorization_url or "", params, strict=False
        )
        separator = "&" if "?" in authorize_url else "?"

        self.logger.info(
            "oauth_authorization_url_generated",
            integration_id=integration_id,
            user_id=user_id,
            pkce=pkce is not None,
            unresolved=[name for name in definition.placeholders() if name not in params],
        )
        return f"{authorize_url}{separator}{urlencode(query)}"

    # Callback

    async def _validate_callback_state(
        self,
        state: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
        authenticated_user_id: Optional[str] = None,
    ) -> Union[OAuthState, OAuthCallbackResult]:
        """Decoded state, or the failure result to hand back to the caller."""
        try:
            oauth_state = self.security_manager.decode_and_validate_state(state)
        except ExpiredStateError as e:
            await self.audit_logger.log_security_event(
                violation_type=SecurityViolations.EXPIRED_STATE,
                description="Expired OAuth state presented at callback",
                severity=AuditSeverity.MEDIUM,
                details={"age_ms": e.age_ms, "max_age_ms": e.max_age_ms},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return OAuthCallbackResult.failure(
                self.error_classifier.classify_exception(e)
            )
        except InvalidStateError as e:
            await self.audit_logger.log_security_event(
                violation_type=SecurityViolations.INVALID_STATE,
                description="Invalid OAuth state presented at callback",
                severity=AuditSeverity.HIGH,
                details={"reason": e.reason},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return OAuthCallbackResult.failure(
                self.error_classifier.classify_exception(e)
            )

        if authenticated_user_id is not None and authenticated_user_id != oauth_state.user_id:
            await self.audit_logger.log_security_event(
                violation_type=SecurityViolations.SUSPICIOUS_ACTIVITY,
                description="OAuth state user does not match the authenticated user",
                severity=AuditSeverity.HIGH,
                user_id=authenticated_user_id,
                integration_id=oauth_state.integration_id,
                details={"state_user_id": oauth_state.user_id},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return OAuthCallbackResult.failure(
                self.error_classifier.build(
                    ErrorKind.INVALID_STATE, "OAuth state belongs to a different user"
                ),
                integration_id=oauth_state.integration_id,
            )

        # State is unsigned; its return URL is checked again here
        try:
            self._validate_return_url(oauth_state.return_url)
        except ValidationError:
            await self.audit_logger.log_security_event(
                violation_type=SecurityViolations.INVALID_STATE,
                description="OAuth state carries a disallowed return URL",
                severity=AuditSeverity.HIGH,
                user_id=oauth_state.user_id,
                integration_id=oauth_state.integration_id,
                details={"reason": "return_url", "return_url": oauth_state.return_url},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return OAuthCallbackResult.failure(
                self.error_classifier.build(
                    ErrorKind.INVALID_STATE, "OAuth state return URL is not allowed"
                ),
                integration_id=oauth_state.integration_id,
            )
        return oauth_state

    async def _record_connection_failure(
        self, user_id: str, integration_id: str, error: ClassifiedError
    ) -> None:
        """Note a failed attempt on an existing record without changing its status."""
        try:
            async with self._lock_for(user_id, integration_id):
                record = await self.connection_store.get(user_id, integration_id)
                if record is None:
                    return
                record.last_error = error.message
                record.last_error_code = error.code
                record.error_count += 1
                await self.connection_store.save(record)
        except Exception as e:
            self.logger.error(
                "connection_failure_record_failed",
                user_id=user_id,
                integration_id=integration_id,
                error=str(e),
            )

    async def _fail_callback(
        self,
        oauth_state: OAuthState,
        error: ClassifiedError,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> OAuthCallbackResult:
        self.logger.error(
            "oauth_callback_failed",
            user_id=oauth_state.user_id,
            integration_id=oauth_state.integration_id,
            error_kind=error.kind.value,
            error=error.message,
        )
        await self.audit_logger.log_user_action(
            user_id=oauth_state.user_id,
            event_type=AuditEvents.CONNECTION_FAILED,
            integration_id=oauth_state.integration_id,
            description=f"OAuth connection failed for {oauth_state.integration_id}",
            details=error.to_audit_details(),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self._record_connection_failure(
            oauth_state.user_id, oauth_state.integration_id, error
        )
        return OAuthCallbackResult.failure(
            error,
            integration_id=oauth_state.integration_id,
            user_id=oauth_state.user_id,
            return_url=oauth_state.return_url,
        )

    def _callback_provider_params(
        self,
        definition: IntegrationDefinition,
        oauth_state: OAuthState,
        callback_params: Optional[Mapping[str, str]],
    ) -> Dict[str, str]:
        params = self._normalize_provider_params(definition, oauth_state.provider_params)
        # The client may have filled placeholders the state did not carry
        for name in definition.required_fields:
            if name not in params and callback_params and callback_params.get(name):
                params.update(
                    self._normalize_provider_params(
                        definition, {name: callback_params[name]}
                    )
                )
        return params

    async def _persist_connection(
        self,
        user_id: str,
        integration_id: str,
        tokens: TokenResponse,
        provider_params: Mapping[str, str],
    ) -> ConnectionRecord:
        async with self._lock_for(user_id, integration_id):
            record = await self.connection_store.get(user_id, integration_id)
            if record is None:
                record = ConnectionRecord(user_id=user_id, integration_id=integration_id)
            self._apply_tokens(record, tokens, replace_refresh_token=True)
            record.status = ConnectionStatus.CONNECTED
            record.connection_health = ConnectionHealth.HEALTHY
            record.connected_at = utc_now()
            record.last_error = None
            record.last_error_code = None
            record.error_count = 0
            metadata = dict(record.provider_metadata or {})
            if provider_params:
                metadata["provider_params"] = dict(provider_params)
            record.provider_metadata = metadata or None
            return await self.connection_store.save(record)

    async def _enrich_identity(
        self,
        definition: IntegrationDefinition,
        user_id: str,
        access_token: str,
        provider_params: Mapping[str, str],
    ) -> None:
        """Store provider user identity; failures only log a warning."""
        try:
            identity = await self._fetch_provider_identity(
                definition, access_token, provider_params
            )
            if not identity:
                return
            async with self._lock_for(user_id, definition.id):
                record = await self.connection_store.get(user_id, definition.id)
                if record is None:
                    return
                record.provider_user_id = identity["provider_user_id"]
                record.provider_username = identity["provider_username"]
                record.provider_email = identity["provider_email"]
                await self.connection_store.save(record)
        except Exception as e:
            self.logger.warning(
                "provider_user_info_failed",
                integration_id=definition.id,
                user_id=user_id,
                error=str(e),
            )

    async def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        request_metadata: RequestMetadata = None,
        authenticated_user_id: Optional[str] = None,
        callback_params: Optional[Mapping[str, str]] = None,
    ) -> OAuthCallbackResult:
        """
        Complete an authorization-code callback.

        Steps run strictly in order: state validation, token exchange,
        persistence, best-effort identity enrichment, audit. A state
        failure never reaches the token endpoint.

        Args:
            code: Authorization code from the provider
            state: Opaque state token issued by generate_auth_url
            request_metadata: ``{"ip": ..., "user_agent": ...}``
            authenticated_user_id: Session user, checked against the state
            callback_params: Full callback query, for signed callbacks
        """
        metadata = request_metadata or {}
        ip_address = metadata.get("ip")
        user_agent = metadata.get("user_agent")

        checked = await self._validate_callback_state(
            state, ip_address, user_agent, authenticated_user_id
        )
        if isinstance(checked, OAuthCallbackResult):
            return checked
        oauth_state = checked
        user_id = oauth_state.user_id
        integration_id = oauth_state.integration_id

        try:
            definition = self.definitions.get(integration_id)
            if definition is None or not definition.is_oauth:
                raise InvalidConfigurationError(
                    f"Unknown OAuth integration '{integration_id}'",
                    {"integration_id": integration_id},
                )
            credentials = self.credential_registry.get_credentials(integration_id)
            if credentials is None:
                raise OAuthNotConfiguredError(integration_id)
        except Exception as e:
            return await self._fail_callback(
                oauth_state,
                self.error_classifier.classify_exception(e),
                ip_address,
                user_agent,
            )

        if definition.signs_callback and not self.security_manager.verify_query_signature(
            callback_params, credentials.client_secret
        ):
            await self.audit_logger.log_security_event(
                violation_type=SecurityViolations.INVALID_SIGNATURE,
                description=f"Callback signature verification failed for {integration_id}",
                severity=AuditSeverity.HIGH,
                user_id=user_id,
                integration_id=integration_id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return OAuthCallbackResult.failure(
                self.error_classifier.build(
                    ErrorKind.INVALID_SIGNATURE, "Callback signature did not verify"
                ),
                integration_id=integration_id,
                user_id=user_id,
                return_url=oauth_state.return_url,
            )

        await self.audit_logger.log_user_action(
            user_id=user_id,
            event_type=AuditEvents.CONNECTION_INITIATED,
            integration_id=integration_id,
            description=f"OAuth connection initiated for {integration_id}",
            ip_address=ip_address,
            user_agent=user_agent,
        )

        try:
            if not code:
                raise OAuthError(
                    self.error_classifier.build(
                        ErrorKind.INVALID_GRANT, "Callback did not include an authorization code"
                    )
                )
            provider_params = self._callback_provider_params(
                definition, oauth_state, callback_params
            )
            tokens = await self.exchange_code_for_tokens(
                definition, credentials, code, oauth_state, provider_params
            )
            record = await self._persist_connection(
                user_id, integration_id, tokens, provider_params
            )
            await self._enrich_identity(
                definition, user_id, tokens.access_token, provider_params
            )
        except Exception as e:
            return await self._fail_callback(
                oauth_state,
                self.error_classifier.classify_exception(e),
                ip_address,
                user_agent,
            )

        await self.audit_logger.log_user_action(
            user_id=user_id,
            event_type=AuditEvents.CONNECTION_COMPLETED,
            integration_id=integration_id,
            description=f"OAuth connection completed for {integration_id}",
            details={
                "scopes": record.scope.split() if record.scope else [],
                "has_refresh_token": bool(record.refresh_token),
                "expires_at": record.expires_at.isoformat() if record.expires_at else None,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info(
            "oauth_connection_completed", user_id=user_id, integration_id=integration_id
        )
        return OAuthCallbackResult(
            success=True,
            integration_id=integration_id,
            user_id=user_id,
            return_url=oauth_state.return_url,
        )

    async def handle_callback_error(
        self,
        state: Optional[str],
        error: str,
        error_description: Optional[str] = None,
        request_metadata: RequestMetadata = None,
    ) -> OAuthCallbackResult:
        """Record a provider-reported authorization failure (e.g. access_denied)."""
        metadata = request_metadata or {}
        ip_address = metadata.get("ip")
        user_agent = metadata.get("user_agent")

        checked = await self._validate_callback_state(state, ip_address, user_agent)
        if isinstance(checked, OAuthCallbackResult):
            return checked
        oauth_state = checked
        classified = self.error_classifier.classify_provider_error(error, error_description)
        return await self._fail_callback(oauth_state, classified, ip_address, user_agent)

    # Refresh

    async def refresh_tokens(self, user_id: str, integration_id: str) -> TokenRefreshResult:
        """
        Refresh a connection's tokens.

        Concurrent calls for the same (user, integration) share a single
        provider request; a caller that waits longer than
        ``refresh_lock_timeout_seconds`` gets a TIMEOUT failure.
        """
        key = (user_id, integration_id)
        ongoing = self._ongoing_refreshes.get(key)
        if ongoing is not None:
            self.logger.info(
                "token_refresh_joined", user_id=user_id, integration_id=integration_id
            )
            try:
                return await asyncio.wait_for(
                    asyncio.shield(ongoing),
                    timeout=self.settings.refresh_lock_timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = self.error_classifier.build(
                    ErrorKind.TIMEOUT, "Timed out waiting for an in-flight token refresh"
                )
                return TokenRefreshResult(
                    success=False,
                    integration_id=integration_id,
                    status=ConnectionStatus.REFRESHING,
                    error=error,
                    error_code=error.kind,
                    message=error.user_message,
                )

        future: "asyncio.Future[TokenRefreshResult]" = (
            asyncio.get_running_loop().create_future()
        )
        self._ongoing_refreshes[key] = future
        try:
            try:
                async with self._lock_for(user_id, integration_id):
                    result = await self._refresh_locked(user_id, integration_id)
            except Exception as e:
                error = self.error_classifier.classify_exception(e)
                self.logger.error(
                    "token_refresh_error",
                    user_id=user_id,
                    integration_id=integration_id,
                    error_kind=error.kind.value,
                    error=str(e),
                )
                result = self._refresh_failure(
                    integration_id, ConnectionStatus.ERROR, error
                )
            future.set_result(result)
            return result
        finally:
            self._ongoing_refreshes.pop(key, None)
            if not future.done():
                error = self.error_classifier.build(
                    ErrorKind.UNKNOWN_ERROR, "Token refresh was interrupted"
                )
                future.set_result(
                    TokenRefreshResult(
                        success=False,
                        integration_id=integration_id,
                        status=ConnectionStatus.ERROR,
                        error=error,
                        error_code=error.kind,
                        message=error.user_message,
                    )
                )

    def _refresh_failure(
        self, integration_id: str, status: ConnectionStatus, error: ClassifiedError
    ) -> TokenRefreshResult:
        return TokenRefreshResult(
            success=False,
            integration_id=integration_id,
            status=status,
            error=error,
            error_code=error.kind,
            message=error.user_message,
        )

    async def _refresh_locked(self, user_id: str, integration_id: str) -> TokenRefreshResult:
        record = await self.connection_store.get(user_id, integration_id)
        if record is None or record.status == ConnectionStatus.DISCONNECTED:
            return self._refresh_failure(
                integration_id,
                ConnectionStatus.DISCONNECTED,
                self.error_classifier.build(
                    ErrorKind.TOKEN_EXPIRED, "No connection on file"
                ),
            )
        if not record.refresh_token:
            self.logger.warning(
                "token_refresh_unavailable",
                user_id=user_id,
                integration_id=integration_id,
                reason="no_refresh_token",
            )
            error = self.error_classifier.build(
                ErrorKind.TOKEN_EXPIRED, "No refresh token available"
            )
            await self.audit_logger.log_user_action(
                user_id=user_id,
                event_type=AuditEvents.TOKEN_REFRESH_FAILED,
                integration_id=integration_id,
                description=f"Token refresh failed for {integration_id}",
                details=error.to_audit_details(),
            )
            return self._refresh_failure(
                integration_id, record.effective_status(), error
            )
        definition = self.definitions.get(integration_id)
        if definition is None or not definition.is_oauth:
            return self._refresh_failure(
                integration_id,
                record.effective_status(),
                self.error_classifier.build(
                    ErrorKind.INVALID_CONFIGURATION,
                    f"Unknown OAuth integration '{integration_id}'",
                ),
            )
        credentials = self.credential_registry.get_credentials(integration_id)
        if credentials is None:
            return self._refresh_failure(
                integration_id,
                record.effective_status(),
                self.error_classifier.classify_exception(
                    OAuthNotConfiguredError(integration_id)
                ),
            )

        record.status = ConnectionStatus.REFRESHING
        record = await self.connection_store.save(record)
        error: Optional[ClassifiedError] = None
        try:
            refresh_token = self._decrypt_token(
                record.refresh_token or "", user_id, integration_id, "refresh_token"
            )
            token_url = self._resolve_url(
                definition, definition.token_url or "", record.provider_params()
            )
            tokens = await self._post_token_request(
                definition,
                token_url,
                {
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": credentials.client_id,
                    "client_secret": credentials.client_secret,
                },
            )
            self._apply_tokens(record, tokens, replace_refresh_token=False)
            record.status = ConnectionStatus.CONNECTED
            record.connection_health = ConnectionHealth.HEALTHY
            record.last_error = None
            record.last_error_code = None
            record.error_count = 0
        except Exception as e:
            error = self.error_classifier.classify_exception(e)
            record.status = ConnectionStatus.ERROR
            record.connection_health = (
                ConnectionHealth.WARNING if error.retryable else ConnectionHealth.ERROR
            )
            record.last_error = error.message
            record.last_error_code = error.code
            record.error_count += 1
        finally:
            if record.status == ConnectionStatus.REFRESHING:
                record.status = ConnectionStatus.ERROR
                record.connection_health = ConnectionHealth.ERROR
            record = await self.connection_store.save(record)

        if error is not None:
            self.logger.error(
                "token_refresh_failed",
                user_id=user_id,
                integration_id=integration_id,
                error_kind=error.kind.value,
                error=error.message,
            )
            await self.audit_logger.log_user_action(
                user_id=user_id,
                event_type=AuditEvents.TOKEN_REFRESH_FAILED,
                integration_id=integration_id,
                description=f"Token refresh failed for {integration_id}",
                details=error.to_audit_details(),
            )
            return self._refresh_failure(integration_id, record.status, error)

        expires_at = ensure_utc(record.expires_at)
        self.logger.info(
            "token_refreshed",
            user_id=user_id,
            integration_id=integration_id,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        await self.audit_logger.log_user_action(
            user_id=user_id,
            event_type=AuditEvents.TOKEN_REFRESHED,
            integration_id=integration_id,
            description=f"Tokens refreshed for {integration_id}",
            details={"expires_at": expires_at.isoformat() if expires_at else None},
        )
        return TokenRefreshResult(
            success=True,
            integration_id=integration_id,
            status=record.status,
            expires_at=expires_at,
        )

    # Disconnect

    async def disconnect(
        self,
        user_id: str,
        integration_id: str,
        request_metadata: RequestMetadata = None,
    ) -> DisconnectResult:
        """Remove a connection. Disconnecting twice is a no-op success."""
        metadata = request_metadata or {}
        async with self._lock_for(user_id, integration_id):
            record = await self.connection_store.get(user_id, integration_id)
            if record is None:
                self.logger.info(
                    "integration_disconnect_noop",
                    user_id=user_id,
                    integration_id=integration_id,
                )
                return DisconnectResult(
                    success=True, found=False, integration_id=integration_id
                )
            token_revoked = await self._revoke_tokens(
                self.definitions.get(integration_id), record
            )
            await self.connection_store.delete(user_id, integration_id)

        await self.audit_logger.log_user_action(
            user_id=user_id,
            event_type=AuditEvents.INTEGRATION_DISCONNECTED,
            integration_id=integration_id,
            description=f"Integration {integration_id} disconnected",
            details={"token_revoked": token_revoked},
            ip_address=metadata.get("ip"),
            user_agent=metadata.get("user_agent"),
        )
        self.logger.info(
            "integration_disconnected",
            user_id=user_id,
            integration_id=integration_id,
            token_revoked=token_revoked,
        )
        return DisconnectResult(
            success=True,
            found=True,
            integration_id=integration_id,
            token_revoked=token_revoked,
        )

    # Health

    async def _update_health(
        self,
        user_id: str,
        integration_id: str,
        health: ConnectionHealth,
        error: Optional[ClassifiedError],
    ) -> None:
        async with self._lock_for(user_id, integration_id):
            record = await self.connection_store.get(user_id, integration_id)
            if record is None:
                return
            record.connection_health = health
            if error is None:
                record.last_used_at = utc_now()
                if record.status == ConnectionStatus.ERROR and not record.is_expired():
                    record.status = ConnectionStatus.CONNECTED
                    record.last_error = None
                    record.last_error_code = None
                    record.error_count = 0
            else:
                record.last_error = error.message
                record.last_error_code = error.code
            await self.connection_store.save(record)

    async def test_connection(self, user_id: str, integration_id: str) -> ConnectionTestResult:
        """
        Call the integration's health endpoint with the stored token.

        Integrations without a usable health endpoint are reported healthy
        but untested, and their stored health is left alone.
        """
        record = await self.connection_store.get(user_id, integration_id)
        if record is None or record.status == ConnectionStatus.DISCONNECTED:
            return ConnectionTestResult(
                integration_id=integration_id,
                healthy=False,
                tested=False,
                error=self.error_classifier.build(
                    ErrorKind.TOKEN_EXPIRED, "No active connection"
                ),
            )
        definition = self.definitions.get(integration_id)
        if definition is None:
            return ConnectionTestResult(
                integration_id=integration_id,
                healthy=False,
                tested=False,
                error=self.error_classifier.build(
                    ErrorKind.INVALID_CONFIGURATION,
                    f"Unknown integration '{integration_id}'",
                ),
            )
        if record.is_expired():
            kind = ErrorKind.UNAUTHORIZED if record.refresh_token else ErrorKind.TOKEN_EXPIRED
            return ConnectionTestResult(
                integration_id=integration_id,
                healthy=False,
                tested=False,
                error=self.error_classifier.build(kind, "Access token has expired"),
            )
        if not definition.test_endpoint:
            return ConnectionTestResult(
                integration_id=integration_id, healthy=True, tested=False
            )
        try:
            base_url = definition.resolve(
                definition.api_base_url, record.provider_params()
            )
        except KeyError as e:
            self.logger.info(
                "health_check_unresolvable",
                integration_id=integration_id,
                parameter=e.args[0],
            )
            return ConnectionTestResult(
                integration_id=integration_id, healthy=True, tested=False
            )

        status_code: Optional[int] = None
        error: Optional[ClassifiedError] = None
        started = time.perf_counter()
        try:
            access_token = self._decrypt_token(
                record.access_token, user_id, integration_id, "access_token"
            )
            async with httpx.AsyncClient(
                timeout=self.settings.health_check_timeout_seconds
            ) as client:
                response = await client.get(
                    f"{base_url.rstrip('/')}{definition.test_endpoint}",
                    headers=self._auth_headers(definition, access_token),
                )
            status_code = response.status_code
            if not response.is_success:
                error = self.error_classifier.classify_http_response(
                    response.status_code,
                    self._parse_body(response),
                    response.headers,
                    context="api",
                )
        except Exception as e:
            error = self.error_classifier.classify_exception(e)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        if error is None:
            health = ConnectionHealth.HEALTHY
        elif status_code in (401, 403) or not error.retryable:
            health = ConnectionHealth.ERROR
        else:
            health = ConnectionHealth.WARNING
        await self._update_health(user_id, integration_id, health, error)

        await self.audit_logger.log_user_action(
            user_id=user_id,
            event_type=AuditEvents.HEALTH_CHECK,
            integration_id=integration_id,
            description=f"Health check for {integration_id}",
            details={
                "healthy": error is None,
                "status_code": status_code,
                "response_time_ms": elapsed_ms,
                "error_kind": error.kind.value if error else None,
            },
        )
        return ConnectionTestResult(
            integration_id=integration_id,
            healthy=error is None,
            tested=True,
            error=error,
            status_code=status_code,
            response_time_ms=elapsed_ms,
        )

    # Read-only projections

    async def get_connection_status(
        self, user_id: str, integration_id: str
    ) -> ConnectionStatusView:
        record = await self.connection_store.get(user_id, integration_id)
        if record is None:
            return ConnectionStatusView(
                user_id=user_id,
                integration_id=integration_id,
                status=ConnectionStatus.DISCONNECTED,
            )
        return self._to_view(record)

    async def get_user_connections(self, user_id: str) -> List[ConnectionStatusView]:
        now = utc_now()
        records = await self.connection_store.list_for_user(user_id)
        return [
            self._to_view(record, now)
            for record in records
            if record.status != ConnectionStatus.DISCONNECTED
        ]

    async def get_access_token(self, user_id: str, integration_id: str) -> str:
        """
        Decrypted access token for API use, refreshed when close to expiry.

        Raises:
            NotFoundError: No connection exists
            TokenError: The token is expired and cannot be refreshed
        """
        record = await self.connection_store.get(user_id, integration_id)
        if record is None or record.status == ConnectionStatus.DISCONNECTED:
            raise NotFoundError("Connection", integration_id)

        buffer = timedelta(minutes=self.settings.token_refresh_buffer_minutes)
        if record.is_expired() or record.expires_within(buffer):
            if record.refresh_token:
                result = await self.refresh_tokens(user_id, integration_id)
                if not result.success:
                    raise TokenError(
                        result.message or "Token refresh failed",
                        integration_id=integration_id,
                        classified=result.error,
                    )
                record = await self.connection_store.get(user_id, integration_id)
                if record is None:
                    raise NotFoundError("Connection", integration_id)
            elif record.is_expired():
                raise TokenError(
                    "Access token has expired and cannot be refreshed",
                    integration_id=integration_id,
                    classified=self.error_classifier.build(
                        ErrorKind.TOKEN_EXPIRED, "No refresh token available"
                    ),
                )
        elif record.status == ConnectionStatus.ERROR:
            raise TokenError(
                "Connection requires attention",
                integration_id=integration_id,
            )

        access_token = self._decrypt_token(
            record.access_token, user_id, integration_id, "access_token"
        )
        async with self._lock_for(user_id, integration_id):
            current = await self.connection_store.get(user_id, integration_id)
            if current is not None:
                current.last_used_at = utc_now()
                await self.connection_store.save(current)
        return access_token

    @staticmethod
    def _sweepable(record: ConnectionRecord) -> bool:
        if record.status == ConnectionStatus.CONNECTED:
            return True
        return record.status == ConnectionStatus.ERROR and is_retryable_kind(
            record.last_error_code
        )

    async def mark_expired_connections(
        self, now: Optional[datetime] = None
    ) -> List[ConnectionRecord]:
        """
        Persist ``expired`` for records whose token has lapsed.

        Connected records qualify, as do records left in ``error`` by a
        transient failure. Records failed for any other reason keep their
        ``error`` status until the user reconnects.
        """
        now = now or utc_now()
        marked: List[ConnectionRecord] = []
        for candidate in await self.connection_store.list_expiring(now):
            if not self._sweepable(candidate):
                continue
            async with self._lock_for(candidate.user_id, candidate.integration_id):
                record = await self.connection_store.get(
                    candidate.user_id, candidate.integration_id
                )
                if (
                    record is None
                    or not self._sweepable(record)
                    or not record.is_expired(now)
                ):
                    continue
                record.status = ConnectionStatus.EXPIRED
                marked.append(await self.connection_store.save(record))

        if marked:
            self.logger.info("connections_marked_expired", count=len(marked))
            await self.audit_logger.log_system_action(
                event_type=AuditEvents.TOKENS_EXPIRED,
                description=f"Marked {len(marked)} connection(s) as expired",
                details={
                    "count": len(marked),
                    "connections": [
                        {"user_id": r.user_id, "integration_id": r.integration_id}
                        for r in marked
                    ],
                },
            )
        return marked
