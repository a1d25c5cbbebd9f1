"""
Connection record model for the OAuth Integration Hub.

One row per (user, integration) pair holding encrypted OAuth tokens and the
lifecycle state of the connection.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Text, UniqueConstraint, func
from sqlalchemy import Enum as SQLEnum
from sqlmodel import Column, DateTime, Field, SQLModel


class ConnectionStatus(str, Enum):
    """Lifecycle status of a connection."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"
    EXPIRED = "expired"
    REFRESHING = "refreshing"


class ConnectionHealth(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"
    UNKNOWN = "unknown"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConnectionRecord(SQLModel, table=True):
    """
    A user's connection to one third-party integration.

    Tokens are stored encrypted. ``status`` is the last written lifecycle
    state; callers that report status use ``effective_status`` so that an
    elapsed ``expires_at`` is always reported as expired.
    """

    __tablename__ = "oauth_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "integration_id", name="uq_connection_user_integration"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=255)
    integration_id: str = Field(index=True, max_length=100)

    # Credentials (encrypted at rest)
    access_token: str = Field(default="", sa_column=Column(Text, nullable=False))
    refresh_token: Optional[str] = Field(default=None, sa_column=Column(Text))
    token_type: str = Field(default="Bearer", max_length=50)
    scope: Optional[str] = Field(default=None, sa_column=Column(Text))

    # Lifecycle
    status: ConnectionStatus = Field(
        default=ConnectionStatus.DISCONNECTED,
        sa_column=Column(SQLEnum(ConnectionStatus), nullable=False),
    )
    connection_health: ConnectionHealth = Field(
        default=ConnectionHealth.UNKNOWN,
        sa_column=Column(SQLEnum(ConnectionHealth), nullable=False),
    )

    # Timestamps
    connected_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    last_used_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    expires_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), index=True)
    )

    # Diagnostics
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text))
    last_error_code: Optional[str] = Field(default=None, max_length=50)
    error_count: int = Field(default=0)

    # Provider identity
    provider_user_id: Optional[str] = Field(default=None, max_length=255)
    provider_username: Optional[str] = Field(default=None, max_length=255)
    provider_email: Optional[str] = Field(default=None, max_length=255)
    provider_metadata: Optional[Dict[str, Any]] = Field(
        default=None, sa_column=Column(JSON)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now()),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(
            DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
        ),
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires_at = ensure_utc(self.expires_at)
        if expires_at is None:
            return False
        return expires_at <= (now or utc_now())

    def expires_within(self, window: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the token is still valid but expires inside ``window``."""
        expires_at = ensure_utc(self.expires_at)
        if expires_at is None:
            return False
        now = now or utc_now()
        return now < expires_at <= now + window

    def effective_status(self, now: Optional[datetime] = None) -> ConnectionStatus:
        """Status with expiry recomputed from ``expires_at``."""
        if self.status == ConnectionStatus.CONNECTED and self.is_expired(now):
            return ConnectionStatus.EXPIRED
        return self.status

    def provider_params(self) -> Dict[str, str]:
        """Connect-time parameters such as a Shopify shop domain."""
        metadata = self.provider_metadata or {}
        return dict(metadata.get("provider_params") or {})
