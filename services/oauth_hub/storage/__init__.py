"""
Storage collaborators for connection records and audit entries.
"""

from services.oauth_hub.storage.base import AuditStore, ConnectionStore
from services.oauth_hub.storage.memory import InMemoryAuditStore, InMemoryConnectionStore
from services.oauth_hub.storage.sql import SQLAuditStore, SQLConnectionStore

__all__ = [
    "AuditStore",
    "ConnectionStore",
    "InMemoryAuditStore",
    "InMemoryConnectionStore",
    "SQLAuditStore",
    "SQLConnectionStore",
]
