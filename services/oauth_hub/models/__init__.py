"""
Database models for the OAuth Integration Hub.
"""

from services.oauth_hub.models.audit import AuditLog
from services.oauth_hub.models.connection import (
    ConnectionHealth,
    ConnectionRecord,
    ConnectionStatus,
)

__all__ = [
    "AuditLog",
    "ConnectionHealth",
    "ConnectionRecord",
    "ConnectionStatus",
]
