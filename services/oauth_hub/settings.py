"""
Settings and configuration for the OAuth Integration Hub.

Uses Pydantic Settings to manage environment variables and configuration.
Per-integration OAuth client credentials are not declared here; they are
read by the CredentialRegistry from the deployment environment.
"""

from typing import Dict, List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

OAUTH_CALLBACK_PATH = "/api/integrations/oauth/callback"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    db_url_oauth_hub: str = Field(
        default="sqlite:///./oauth_hub.db",
        description="Database connection string for connection and audit records",
        validation_alias=AliasChoices("DB_URL_OAUTH_HUB", "DATABASE_URL"),
    )

    # Service Configuration
    service_name: str = Field(default="oauth-hub", description="Service name")
    host: str = Field(default="0.0.0.0", description="Host to bind to")
    port: int = Field(default=8002, description="Port to bind to")
    debug: bool = Field(default=False, description="Debug mode")
    environment: str = Field(
        default="development",
        description="Environment (development, staging, production)",
    )

    # Application identity
    app_name: str = Field(default="CrewFlow", description="Application name")
    app_description: str = Field(
        default="AI-powered business automation platform",
        description="Application description shown on provider consent screens",
    )
    app_base_url: str = Field(
        default="http://localhost:3000",
        description="Public base URL used to build the OAuth callback redirect URI",
        validation_alias=AliasChoices("APP_BASE_URL", "NEXT_PUBLIC_APP_URL"),
    )

    # CORS and origin validation
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:3001"],
        description="Allowed CORS origins",
    )
    allowed_origins: List[str] = Field(
        default_factory=list,
        description="Origins accepted for state-changing requests in production "
        "(falls back to app_base_url when empty)",
    )

    # Token encryption
    token_encryption_key: str = Field(
        ...,
        description="Master secret used to derive token encryption keys",
        validation_alias=AliasChoices("TOKEN_ENCRYPTION_KEY", "ENCRYPTION_KEY"),
    )
    token_encryption_salt: Optional[str] = Field(
        default=None,
        description="Base64-encoded service salt for token encryption key derivation",
    )

    # OAuth flow security
    oauth_state_max_age_seconds: int = Field(
        default=600, description="Maximum lifetime of an OAuth state token"
    )
    rate_limit_window_seconds: int = Field(
        default=60, description="Fixed rate-limit window length"
    )
    rate_limit_max_requests: int = Field(
        default=10, description="Requests allowed per key per window"
    )
    webhook_rate_limit_max_requests: int = Field(
        default=100, description="Webhook deliveries allowed per source per window"
    )
    webhook_secrets: Dict[str, str] = Field(
        default_factory=dict,
        description="Webhook shared secrets keyed by provider (JSON object)",
    )

    # Outbound provider calls
    oauth_http_timeout_seconds: float = Field(
        default=15.0, description="Timeout for token exchange and refresh calls"
    )
    health_check_timeout_seconds: float = Field(
        default=30.0, description="Timeout for connection health checks"
    )

    # Token Management Configuration
    refresh_lock_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for waiting on concurrent token refresh operations (seconds)",
    )
    token_refresh_buffer_minutes: int = Field(
        default=5,
        description="Refresh access tokens this close to expiry before handing them out",
    )

    # Maintenance scheduler
    maintenance_enabled: bool = Field(
        default=True, description="Run the token maintenance loop in the background"
    )
    maintenance_interval_minutes: int = Field(
        default=15, description="Minutes between maintenance cycles"
    )
    maintenance_lookahead_minutes: int = Field(
        default=60, description="Refresh tokens expiring within this window"
    )
    audit_retention_days: int = Field(
        default=30, description="Audit log retention period"
    )

    # Retry policy
    retry_max_attempts: int = Field(default=3, description="Maximum retry attempts")
    retry_base_delay_seconds: float = Field(default=1.0, description="Base retry delay")
    retry_max_delay_seconds: float = Field(default=30.0, description="Retry delay cap")
    retry_backoff_multiplier: float = Field(
        default=2.0, description="Exponential backoff multiplier"
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json or text)")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def oauth_redirect_uri(self) -> str:
        """Fixed callback URI registered with every provider."""
        return f"{self.app_base_url.rstrip('/')}{OAUTH_CALLBACK_PATH}"

    def get_allowed_origins(self) -> List[str]:
        return self.allowed_origins or [self.app_base_url.rstrip("/")]


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance, creating it if necessary."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings
    _settings = None
