"""
Storage interfaces consumed by the OAuth core.

The core never talks to a database directly; it reads and writes
connection records and audit entries through these protocols.
"""

from datetime import datetime
from typing import List, Optional, Protocol

from services.oauth_hub.models.audit import AuditLog
from services.oauth_hub.models.connection import ConnectionRecord


class ConnectionStore(Protocol):
    """Record store keyed by (user_id, integration_id)."""

    async def get(self, user_id: str, integration_id: str) -> Optional[ConnectionRecord]:
        ...

    async def list_for_user(self, user_id: str) -> List[ConnectionRecord]:
        ...

    async def list_all(self) -> List[ConnectionRecord]:
        ...

    async def list_expiring(self, cutoff: datetime) -> List[ConnectionRecord]:
        """Records with an ``expires_at`` at or before ``cutoff``."""
        ...

    async def save(self, record: ConnectionRecord) -> ConnectionRecord:
        """Insert or update the record for its (user_id, integration_id) pair."""
        ...

    async def delete(self, user_id: str, integration_id: str) -> bool:
        ...


class AuditStore(Protocol):
    """Append-only audit entry store."""

    async def append(self, entry: AuditLog) -> AuditLog:
        ...

    async def query(
        self,
        user_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        event_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLog]:
        ...

    async def prune(self, older_than: datetime) -> int:
        """Delete entries created before ``older_than``; returns the count."""
        ...
