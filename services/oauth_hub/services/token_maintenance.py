"""
Background token maintenance for the OAuth Integration Hub.

A single recurring task sweeps expired connections, refreshes tokens
that have lapsed, are about to, or failed transiently on an earlier
attempt, hands refresh failures to the RecoveryService and prunes old
audit entries. Cycles never overlap.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from services.oauth_hub.models.connection import (
    ConnectionRecord,
    ConnectionStatus,
    utc_now,
)
from services.oauth_hub.schemas.integration import TokenRefreshResult
from services.oauth_hub.security.security_manager import SecurityManager
from services.oauth_hub.services.audit_service import AuditEvents, AuditLogger
from services.oauth_hub.services.error_classifier import is_retryable_kind
from services.oauth_hub.services.oauth_manager import OAuthManager
from services.oauth_hub.services.recovery_service import RecoveryService
from services.oauth_hub.settings import Settings
from services.oauth_hub.storage.base import ConnectionStore

logger = structlog.get_logger(__name__)

# Slack before a missed cycle is reported as overdue
OVERDUE_GRACE = timedelta(minutes=1)


class MaintenanceStats(BaseModel):
    """Counters for one maintenance cycle."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    total: int = 0
    active: int = 0
    expired: int = 0
    expiring_soon: int = 0
    retrying: int = 0
    marked_expired: int = 0
    refreshed: int = 0
    failed: int = 0
    recovered: int = 0
    skipped: int = 0
    audit_pruned: int = 0
    rate_limits_cleaned: int = 0
    errors: List[str] = Field(default_factory=list)


class TokenMaintenanceScheduler:
    """
    Recurring token refresh and cleanup.

    ``start`` runs a cycle immediately and then every
    ``maintenance_interval_minutes``. ``force_maintenance_cycle`` waits for
    a running cycle to finish before starting its own.
    """

    def __init__(
        self,
        settings: Settings,
        oauth_manager: OAuthManager,
        recovery_service: RecoveryService,
        connection_store: ConnectionStore,
        audit_logger: AuditLogger,
        security_manager: SecurityManager,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.oauth_manager = oauth_manager
        self.recovery_service = recovery_service
        self.connection_store = connection_store
        self.audit_logger = audit_logger
        self.security_manager = security_manager
        self.interval = timedelta(minutes=settings.maintenance_interval_minutes)
        self.lookahead = timedelta(minutes=settings.maintenance_lookahead_minutes)
        self._clock = clock
        self._cycle_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._last_stats: Optional[MaintenanceStats] = None
        self._last_cycle_at: Optional[datetime] = None
        self._next_maintenance_at: Optional[datetime] = None
        self._cycles_completed = 0
        self.logger = logger

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            self.logger.info("token_maintenance_already_running")
            return
        self._task = asyncio.create_task(self._run_loop())
        self.logger.info(
            "token_maintenance_started",
            interval_minutes=self.settings.maintenance_interval_minutes,
            lookahead_minutes=self.settings.maintenance_lookahead_minutes,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._next_maintenance_at = None
        self.logger.info("token_maintenance_stopped")

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.run_cycle()
                await asyncio.sleep(self.interval.total_seconds())
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("token_maintenance_cycle_error", error=str(e), exc_info=True)
                await asyncio.sleep(self.interval.total_seconds())

    # Cycle

    async def force_maintenance_cycle(self) -> MaintenanceStats:
        self.logger.info("token_maintenance_forced")
        return await self.run_cycle()

    async def run_cycle(self) -> MaintenanceStats:
        async with self._cycle_lock:
            return await self._run_cycle_locked()

    async def _run_cycle_locked(self) -> MaintenanceStats:
        now = self._clock()
        stats = MaintenanceStats(started_at=now)
        self.logger.info("token_maintenance_cycle_started")

        try:
            marked = await self.oauth_manager.mark_expired_connections(now)
            stats.marked_expired = len(marked)
        except Exception as e:
            stats.errors.append(f"expiry sweep failed: {e}")
            self.logger.error("token_expiry_sweep_failed", error=str(e))

        records = await self.connection_store.list_all()
        stats.total = len(records)
        expired: List[ConnectionRecord] = []
        expiring: List[ConnectionRecord] = []
        retrying: List[ConnectionRecord] = []
        for record in records:
            status = record.effective_status(now)
            if status == ConnectionStatus.CONNECTED:
                stats.active += 1
                if record.expires_within(self.lookahead, now):
                    expiring.append(record)
            elif status == ConnectionStatus.EXPIRED:
                expired.append(record)
            elif status == ConnectionStatus.ERROR and is_retryable_kind(
                record.last_error_code
            ):
                retrying.append(record)
        stats.expired = len(expired)
        stats.expiring_soon = len(expiring)
        stats.retrying = len(retrying)

        # Expired connections first, then those about to expire, then
        # connections left in error by a transient failure
        for record in expired + expiring + retrying:
            await self._maintain_record(record, stats)

        try:
            stats.audit_pruned = await self.audit_logger.cleanup_old_logs(
                self.settings.audit_retention_days
            )
        except Exception as e:
            stats.errors.append(f"audit cleanup failed: {e}")
            self.logger.error("audit_cleanup_failed", error=str(e))
        stats.rate_limits_cleaned = self.security_manager.cleanup_rate_limits()

        finished = self._clock()
        stats.finished_at = finished
        stats.duration_ms = round((finished - now).total_seconds() * 1000, 2)
        self._last_stats = stats
        self._last_cycle_at = finished
        self._next_maintenance_at = finished + self.interval
        self._cycles_completed += 1

        summary = stats.model_dump(
            mode="json", exclude={"started_at", "finished_at", "errors"}
        )
        self.logger.info("token_maintenance_cycle_completed", **summary)
        await self.audit_logger.log_system_action(
            event_type=AuditEvents.MAINTENANCE_CYCLE,
            description="Token maintenance cycle completed",
            details={**summary, "errors": stats.errors},
        )
        return stats

    async def _maintain_record(self, record: ConnectionRecord, stats: MaintenanceStats) -> None:
        """Refresh one connection; failures stay local to this record."""
        if not record.refresh_token:
            stats.skipped += 1
            self.logger.info(
                "token_refresh_skipped",
                user_id=record.user_id,
                integration_id=record.integration_id,
                reason="no_refresh_token",
            )
            return
        try:
            result = await self.oauth_manager.refresh_tokens(
                record.user_id, record.integration_id
            )
            if result.success:
                stats.refreshed += 1
                return
            stats.failed += 1
            if result.error is not None:
                recovery = await self.recovery_service.attempt_recovery(
                    record.user_id, record.integration_id, result.error
                )
                if recovery.success:
                    stats.recovered += 1
        except Exception as e:
            stats.failed += 1
            stats.errors.append(f"{record.user_id}/{record.integration_id}: {e}")
            self.logger.error(
                "token_maintenance_record_failed",
                user_id=record.user_id,
                integration_id=record.integration_id,
                error=str(e),
            )

    async def refresh_user_token(self, user_id: str, integration_id: str) -> TokenRefreshResult:
        self.logger.info(
            "token_refresh_requested", user_id=user_id, integration_id=integration_id
        )
        return await self.oauth_manager.refresh_tokens(user_id, integration_id)

    # Introspection

    def get_health_status(self) -> Dict[str, Any]:
        now = self._clock()
        issues: List[str] = []
        if not self.is_running:
            issues.append("Token maintenance scheduler is not running")
        if self._last_stats is None:
            issues.append("No maintenance cycle has completed yet")
        elif self._last_stats.failed > self._last_stats.refreshed:
            issues.append(
                f"Refresh failures ({self._last_stats.failed}) exceeded successes "
                f"({self._last_stats.refreshed}) in the last cycle"
            )
        if (
            self.is_running
            and self._next_maintenance_at is not None
            and now > self._next_maintenance_at + OVERDUE_GRACE
        ):
            issues.append("Next maintenance cycle is overdue")

        return {
            "running": self.is_running,
            "healthy": not issues,
            "issues": issues,
            "cycles_completed": self._cycles_completed,
            "last_cycle_at": self._last_cycle_at.isoformat() if self._last_cycle_at else None,
            "next_maintenance_at": (
                self._next_maintenance_at.isoformat() if self._next_maintenance_at else None
            ),
            "last_stats": (
                self._last_stats.model_dump(mode="json") if self._last_stats else None
            ),
        }
