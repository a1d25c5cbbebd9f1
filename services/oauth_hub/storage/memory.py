"""
In-process stores for tests and single-process deployments.

Records are copied on the way in and out so callers cannot mutate stored
state without going through ``save``.
"""

import itertools
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from services.oauth_hub.models.audit import AuditLog
from services.oauth_hub.models.connection import ConnectionRecord, ensure_utc, utc_now


def _copy_record(record: ConnectionRecord) -> ConnectionRecord:
    return ConnectionRecord(**record.model_dump())


class InMemoryConnectionStore:
    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], ConnectionRecord] = {}
        self._ids = itertools.count(1)

    async def get(self, user_id: str, integration_id: str) -> Optional[ConnectionRecord]:
        record = self._records.get((user_id, integration_id))
        return _copy_record(record) if record else None

    async def list_for_user(self, user_id: str) -> List[ConnectionRecord]:
        return [
            _copy_record(record)
            for (owner, _), record in sorted(self._records.items())
            if owner == user_id
        ]

    async def list_all(self) -> List[ConnectionRecord]:
        return [_copy_record(record) for _, record in sorted(self._records.items())]

    async def list_expiring(self, cutoff: datetime) -> List[ConnectionRecord]:
        return [
            _copy_record(record)
            for _, record in sorted(self._records.items())
            if record.expires_at is not None and ensure_utc(record.expires_at) <= cutoff
        ]

    async def save(self, record: ConnectionRecord) -> ConnectionRecord:
        key = (record.user_id, record.integration_id)
        stored = _copy_record(record)
        existing = self._records.get(key)
        if existing is not None:
            stored.id = existing.id
            stored.created_at = existing.created_at
        elif stored.id is None:
            stored.id = next(self._ids)
        stored.updated_at = utc_now()
        self._records[key] = stored
        return _copy_record(stored)

    async def delete(self, user_id: str, integration_id: str) -> bool:
        return self._records.pop((user_id, integration_id), None) is not None


class InMemoryAuditStore:
    def __init__(self) -> None:
        self._entries: List[AuditLog] = []
        self._ids = itertools.count(1)

    @property
    def entries(self) -> List[AuditLog]:
        return list(self._entries)

    async def append(self, entry: AuditLog) -> AuditLog:
        if entry.id is None:
            entry.id = next(self._ids)
        self._entries.append(entry)
        return entry

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
        matches = [
            entry
            for entry in self._entries
            if (user_id is None or entry.user_id == user_id)
            and (integration_id is None or entry.integration_id == integration_id)
            and (event_type is None or entry.event_type == event_type)
            and (start_date is None or ensure_utc(entry.created_at) >= start_date)
            and (end_date is None or ensure_utc(entry.created_at) <= end_date)
        ]
        matches.sort(key=lambda entry: ensure_utc(entry.created_at), reverse=True)
        return matches[offset : offset + limit]

    async def prune(self, older_than: datetime) -> int:
        kept = [e for e in self._entries if ensure_utc(e.created_at) >= older_than]
        removed = len(self._entries) - len(kept)
        self._entries = kept
        return removed
