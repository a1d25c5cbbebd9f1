"""
Audit log model for the OAuth Integration Hub.

Append-only record of connection lifecycle events and security violations.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Text, func
from sqlmodel import Column, DateTime, Field, SQLModel


class AuditLog(SQLModel, table=True):
    """
    Audit entry for an OAuth lifecycle or security event.

    ``user_id`` is empty for system events such as maintenance cycles.
    """

    __tablename__ = "oauth_audit_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[str] = Field(default=None, index=True, max_length=255)
    integration_id: Optional[str] = Field(default=None, index=True, max_length=100)

    event_type: str = Field(index=True, max_length=100)
    description: str = Field(default="", sa_column=Column(Text))
    severity: Optional[str] = Field(default=None, max_length=20)

    # Additional context
    details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    # Request metadata
    ip_address: Optional[str] = Field(default=None, max_length=45)
    user_agent: Optional[str] = Field(default=None, max_length=500)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now(), index=True),
    )
