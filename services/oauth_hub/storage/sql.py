"""
SQLModel-backed stores for connection records and audit entries.
"""

from datetime import datetime
from typing import Callable, List, Optional

import structlog
from sqlalchemy import delete as sa_delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from services.oauth_hub.database import get_async_session
from services.oauth_hub.exceptions import ServiceError
from services.oauth_hub.models.audit import AuditLog
from services.oauth_hub.models.connection import ConnectionRecord, ensure_utc

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], async_sessionmaker[AsyncSession]]

_MUTABLE_FIELDS = tuple(
    name
    for name in ConnectionRecord.model_fields
    if name not in ("id", "user_id", "integration_id", "created_at", "updated_at")
)


def _normalize(record: ConnectionRecord) -> ConnectionRecord:
    record.expires_at = ensure_utc(record.expires_at)
    record.connected_at = ensure_utc(record.connected_at)
    record.last_used_at = ensure_utc(record.last_used_at)
    record.created_at = ensure_utc(record.created_at)
    record.updated_at = ensure_utc(record.updated_at)
    return record


class SQLConnectionStore:
    """Connection records persisted through async SQLAlchemy sessions."""

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory or get_async_session

    async def get(self, user_id: str, integration_id: str) -> Optional[ConnectionRecord]:
        try:
            async_session = self._session_factory()
            async with async_session() as session:
                result = await session.execute(
                    select(ConnectionRecord).where(
                        ConnectionRecord.user_id == user_id,
                        ConnectionRecord.integration_id == integration_id,
                    )
                )
                record = result.scalar_one_or_none()
                return _normalize(record) if record else None
        except SQLAlchemyError as e:
            logger.error(
                "connection_lookup_failed",
                user_id=user_id,
                integration_id=integration_id,
                error=str(e),
            )
            raise ServiceError("Failed to load connection record") from e

    async def list_for_user(self, user_id: str) -> List[ConnectionRecord]:
        return await self._list(
            select(ConnectionRecord)
            .where(ConnectionRecord.user_id == user_id)
            .order_by(ConnectionRecord.integration_id)
        )

    async def list_all(self) -> List[ConnectionRecord]:
        return await self._list(
            select(ConnectionRecord).order_by(
                ConnectionRecord.user_id, ConnectionRecord.integration_id
            )
        )

    async def list_expiring(self, cutoff: datetime) -> List[ConnectionRecord]:
        return await self._list(
            select(ConnectionRecord)
            .where(ConnectionRecord.expires_at.is_not(None))  # type: ignore[union-attr]
            .where(ConnectionRecord.expires_at <= cutoff)  # type: ignore[operator]
            .order_by(ConnectionRecord.expires_at)
        )

    async def _list(self, query) -> List[ConnectionRecord]:
        try:
            async_session = self._session_factory()
            async with async_session() as session:
                result = await session.execute(query)
                return [_normalize(record) for record in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error("connection_query_failed", error=str(e))
            raise ServiceError("Failed to query connection records") from e

    async def save(self, record: ConnectionRecord) -> ConnectionRecord:
        try:
            async_session = self._session_factory()
            async with async_session() as session:
                result = await session.execute(
                    select(ConnectionRecord).where(
                        ConnectionRecord.user_id == record.user_id,
                        ConnectionRecord.integration_id == record.integration_id,
                    )
                )
                existing = result.scalar_one_or_none()
                if existing is None:
                    existing = ConnectionRecord(
                        **record.model_dump(exclude={"id", "created_at", "updated_at"})
                    )
                    session.add(existing)
                else:
                    for name in _MUTABLE_FIELDS:
                        setattr(existing, name, getattr(record, name))
                await session.commit()
                await session.refresh(existing)
                return _normalize(existing)
        except IntegrityError as e:
            logger.error(
                "connection_save_conflict",
                user_id=record.user_id,
                integration_id=record.integration_id,
                error=str(e),
            )
            raise ServiceError("Connection record already exists") from e
        except SQLAlchemyError as e:
            logger.error(
                "connection_save_failed",
                user_id=record.user_id,
                integration_id=record.integration_id,
                error=str(e),
            )
            raise ServiceError("Failed to save connection record") from e

    async def delete(self, user_id: str, integration_id: str) -> bool:
        try:
            async_session = self._session_factory()
            async with async_session() as session:
                result = await session.execute(
                    sa_delete(ConnectionRecord).where(
                        ConnectionRecord.user_id == user_id,  # type: ignore[arg-type]
                        ConnectionRecord.integration_id == integration_id,  # type: ignore[arg-type]
                    )
                )
                await session.commit()
                return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            logger.error(
                "connection_delete_failed",
                user_id=user_id,
                integration_id=integration_id,
                error=str(e),
            )
            raise ServiceError("Failed to delete connection record") from e


class SQLAuditStore:
    """Audit entries persisted through async SQLAlchemy sessions."""

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory or get_async_session

    async def append(self, entry: AuditLog) -> AuditLog:
        async_session = self._session_factory()
        async with async_session() as session:
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
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
        query = select(AuditLog)
        if user_id:
            query = query.where(AuditLog.user_id == user_id)
        if integration_id:
            query = query.where(AuditLog.integration_id == integration_id)
        if event_type:
            query = query.where(AuditLog.event_type == event_type)
        if start_date:
            query = query.where(AuditLog.created_at >= start_date)
        if end_date:
            query = query.where(AuditLog.created_at <= end_date)
        query = (
            query.order_by(AuditLog.created_at.desc())  # type: ignore[attr-defined]
            .offset(offset)
            .limit(limit)
        )

        async_session = self._session_factory()
        async with async_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def prune(self, older_than: datetime) -> int:
        async_session = self._session_factory()
        async with async_session() as session:
            result = await session.execute(
                sa_delete(AuditLog).where(AuditLog.created_at < older_than)  # type: ignore[arg-type]
            )
            await session.commit()
            return result.rowcount or 0
