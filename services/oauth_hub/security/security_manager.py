"""
Security primitives for the OAuth flow.

Self-contained OAuth state tokens, PKCE challenges, token encryption,
fixed-window rate limiting and webhook signature verification.

The state token rides through the user's browser and is treated as
attacker-influenceable input: every field is validated on decode.
"""

import base64
import binascii
import hashlib
import hmac
import json
import math
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional
from urllib.parse import urlparse

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from services.oauth_hub.exceptions import ExpiredStateError, InvalidStateError
from services.oauth_hub.security.encryption import TokenEncryption
from services.oauth_hub.settings import Settings

logger = structlog.get_logger(__name__)

DEFAULT_MAX_STATE_AGE_MS = 10 * 60 * 1000
MAX_STATE_TOKEN_LENGTH = 4096
# Tolerated clock skew for states stamped slightly in the future
STATE_CLOCK_SKEW_MS = 60 * 1000


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def now_millis() -> int:
    return int(time.time() * 1000)


class PKCEChallengeMethod(str, Enum):
    """PKCE challenge methods for OAuth security."""

    S256 = "S256"


class PKCEChallenge(BaseModel):
    """PKCE challenge for OAuth security."""

    code_verifier: str = Field(..., description="Code verifier")
    code_challenge: str = Field(..., description="Code challenge")
    code_challenge_method: PKCEChallengeMethod = Field(
        default=PKCEChallengeMethod.S256, description="Challenge method"
    )


class OAuthState(BaseModel):
    """Decoded contents of the ``state`` query parameter."""

    model_config = ConfigDict(extra="ignore")

    integration_id: str = Field(..., min_length=1, max_length=100)
    user_id: str = Field(..., min_length=1, max_length=255)
    nonce: str = Field(..., min_length=8, max_length=128)
    timestamp: int = Field(..., ge=0, description="Issue time in epoch milliseconds")
    return_url: Optional[str] = Field(None, max_length=2048)
    pkce_verifier: Optional[str] = Field(None, min_length=43, max_length=128)
    provider_params: Dict[str, str] = Field(default_factory=dict)

    @field_validator("integration_id", "user_id", "nonce")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("timestamp", mode="before")
    @classmethod
    def integer_timestamp(cls, value):
        # JSON booleans and floats are not acceptable timestamps
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("timestamp must be an integer")
        return value

    def age_ms(self, now_ms: Optional[int] = None) -> int:
        return (now_ms if now_ms is not None else now_millis()) - self.timestamp


class RateLimitResult(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    reset_time: float = Field(..., description="Window reset as epoch seconds")
    retry_after: Optional[int] = Field(None, description="Seconds until allowed again")

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset_time, tz=timezone.utc)

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_time)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass
class _RateWindow:
    count: int
    reset_time: float


class SecurityManager:
    """
    Cryptographic helpers and request throttling for the OAuth core.

    Rate-limit windows live in process memory; a horizontally scaled
    deployment needs a shared counter store keyed the same way.
    """

    def __init__(
        self,
        settings: Settings,
        encryption: Optional[TokenEncryption] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.encryption = encryption or TokenEncryption(
            settings.token_encryption_key, settings.token_encryption_salt
        )
        self.max_state_age_ms = settings.oauth_state_max_age_seconds * 1000
        self.rate_limit_window_seconds = settings.rate_limit_window_seconds
        self.rate_limit_max_requests = settings.rate_limit_max_requests
        self._clock = clock
        self._rate_limits: Dict[str, _RateWindow] = {}
        self.logger = structlog.get_logger(__name__)

    # OAuth state

    def generate_state(
        self,
        integration_id: str,
        user_id: str,
        return_url: Optional[str] = None,
        pkce_verifier: Optional[str] = None,
        provider_params: Optional[Dict[str, str]] = None,
    ) -> str:
        """Serialize a fresh OAuthState into a URL-safe opaque token."""
        state = OAuthState(
            integration_id=integration_id,
            user_id=user_id,
            return_url=return_url,
            nonce=str(uuid.uuid4()),
            timestamp=int(self._clock() * 1000),
            pkce_verifier=pkce_verifier,
            provider_params=provider_params or {},
        )
        payload = state.model_dump(exclude_none=True)
        if not payload.get("provider_params"):
            payload.pop("provider_params", None)
        token = _b64url_encode(
            json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        )
        self.logger.info(
            "oauth_state_generated",
            integration_id=integration_id,
            user_id=user_id,
            has_pkce=pkce_verifier is not None,
        )
        return token

    def parse_state(self, token: Optional[str]) -> OAuthState:
        """
        Decode a state token.

        Raises:
            InvalidStateError: If the token is missing, undecodable or
                structurally incomplete
        """
        if not token:
            raise InvalidStateError("Missing OAuth state", reason="missing")
        if len(token) > MAX_STATE_TOKEN_LENGTH:
            raise InvalidStateError("OAuth state too long", reason="oversized")
        try:
            raw = json.loads(_b64url_decode(token).decode("utf-8"))
        except (binascii.Error, ValueError, UnicodeDecodeError) as e:
            raise InvalidStateError("OAuth state is not decodable", reason="decode") from e
        if not isinstance(raw, dict):
            raise InvalidStateError("OAuth state is not an object", reason="structure")
        try:
            return OAuthState.model_validate(raw)
        except ValidationError as e:
            missing = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            raise InvalidStateError(
                "OAuth state is incomplete", reason=f"fields:{','.join(missing)}"
            ) from e

    def validate_state_age(
        self,
        state: OAuthState,
        max_age_ms: Optional[int] = None,
        now_ms: Optional[int] = None,
    ) -> None:
        """
        Reject states older than ``max_age_ms``; a state exactly at the
        limit is accepted.

        Raises:
            ExpiredStateError: If the state is too old
            InvalidStateError: If the state is stamped in the future
        """
        max_age = self.max_state_age_ms if max_age_ms is None else max_age_ms
        now = now_ms if now_ms is not None else int(self._clock() * 1000)
        age = state.age_ms(now)
        if age < -STATE_CLOCK_SKEW_MS:
            raise InvalidStateError("OAuth state issued in the future", reason="future")
        if age > max_age:
            raise ExpiredStateError(age_ms=age, max_age_ms=max_age)

    def decode_and_validate_state(self, token: Optional[str]) -> OAuthState:
        state = self.parse_state(token)
        self.validate_state_age(state)
        return state

    # PKCE

    @staticmethod
    def compute_pkce_challenge(verifier: str) -> str:
        return _b64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())

    def generate_pkce(self) -> PKCEChallenge:
        verifier = _b64url_encode(secrets.token_bytes(32))
        return PKCEChallenge(
            code_verifier=verifier,
            code_challenge=self.compute_pkce_challenge(verifier),
            code_challenge_method=PKCEChallengeMethod.S256,
        )

    def validate_pkce(self, verifier: str, challenge: str) -> bool:
        if not verifier or not challenge:
            return False
        try:
            expected = self.compute_pkce_challenge(verifier)
        except UnicodeEncodeError:
            return False
        return hmac.compare_digest(expected.encode("ascii"), challenge.encode("utf-8"))

    # Token encryption

    def encrypt(self, plaintext: str, user_id: str, context: Optional[str] = None) -> str:
        return self.encryption.encrypt_token(plaintext, user_id, context)

    def decrypt(self, ciphertext: str, user_id: str, context: Optional[str] = None) -> str:
        return self.encryption.decrypt_token(ciphertext, user_id, context)

    # Rate limiting

    def check_rate_limit(
        self,
        key: str,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> RateLimitResult:
        """Count one request against ``key``'s fixed window."""
        limit = max_requests or self.rate_limit_max_requests
        window = window_seconds or self.rate_limit_window_seconds
        now = self._clock()
        bucket_key = f"oauth:{key}"

        current = self._rate_limits.get(bucket_key)
        if current is None or now >= current.reset_time:
            current = _RateWindow(count=0, reset_time=now + window)
            self._rate_limits[bucket_key] = current

        if current.count >= limit:
            retry_after = max(1, math.ceil(current.reset_time - now))
            self.logger.warning(
                "rate_limit_exceeded", key=key, limit=limit, retry_after=retry_after
            )
            return RateLimitResult(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_time=current.reset_time,
                retry_after=retry_after,
            )

        current.count += 1
        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=limit - current.count,
            reset_time=current.reset_time,
        )

    def cleanup_rate_limits(self) -> int:
        """Drop expired windows; returns how many were removed."""
        now = self._clock()
        expired = [key for key, w in self._rate_limits.items() if now >= w.reset_time]
        for key in expired:
            del self._rate_limits[key]
        return len(expired)

    # Webhooks and request validation

    @staticmethod
    def compute_webhook_signature(payload: bytes, secret: str) -> str:
        return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    @staticmethod
    def _decode_signature(signature: str) -> Optional[bytes]:
        value = signature.strip()
        if value.lower().startswith("sha256="):
            value = value[len("sha256=") :]
        if len(value) == 64:
            try:
                return bytes.fromhex(value)
            except ValueError:
                pass
        try:
            return base64.b64decode(value, validate=True)
        except ValueError:
            return None

    def verify_webhook_signature(
        self, payload: bytes, signature: Optional[str], secret: Optional[str]
    ) -> bool:
        """
        Verify an HMAC-SHA256 signature over the raw payload.

        Accepts hex (optionally ``sha256=`` prefixed) or base64 digests and
        compares in constant time.
        """
        if not signature or not secret:
            return False
        provided = self._decode_signature(signature)
        if provided is None:
            return False
        expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
        return hmac.compare_digest(expected, provided)

    def verify_query_signature(
        self, params: Optional[Mapping[str, str]], secret: Optional[str]
    ) -> bool:
        """
        Verify a provider-signed callback query (Shopify style).

        The ``hmac`` parameter is the hex HMAC-SHA256 of the remaining
        parameters sorted by key and joined as ``k=v&k=v``.
        """
        if not params or not secret:
            return False
        signature = params.get("hmac")
        if not signature:
            return False
        message = "&".join(
            f"{key}={value}"
            for key, value in sorted(params.items())
            if key not in ("hmac", "signature")
        )
        expected = self.compute_webhook_signature(message.encode("utf-8"), secret)
        return hmac.compare_digest(
            expected.encode("ascii"), signature.strip().lower().encode("utf-8")
        )

    @staticmethod
    def validate_request_origin(
        origin: Optional[str], referer: Optional[str], allowed_origins: List[str]
    ) -> bool:
        """Accept a request whose Origin (or Referer origin) is allow-listed."""
        request_origin = origin
        if not request_origin and referer:
            parsed = urlparse(referer)
            if parsed.scheme and parsed.netloc:
                request_origin = f"{parsed.scheme}://{parsed.netloc}"
        if not request_origin:
            return False
        normalized = {allowed.rstrip("/").lower() for allowed in allowed_origins}
        return request_origin.rstrip("/").lower() in normalized

    @staticmethod
    def hash_value(value: str) -> str:
        """SHA-256 hex digest, used to log identifiers such as IPs."""
        return hashlib.sha256(value.encode("utf-8")).hexdigest()
