"""
Audit logging service for the OAuth Integration Hub.

Records connection lifecycle events and security violations to structured
logs and to the audit store. Security violations are the hub's only
intrusion-detection surface, so every short-circuit path reports one.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog

from services.oauth_hub.models.audit import AuditLog
from services.oauth_hub.storage.base import AuditStore

logger = structlog.get_logger(__name__)


class AuditEvents:
    """Standard audit event types for consistency."""

    CONNECTION_INITIATED = "connection_initiated"
    CONNECTION_COMPLETED = "connection_completed"
    CONNECTION_FAILED = "connection_failed"
    INTEGRATION_DISCONNECTED = "integration_disconnected"

    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    TOKENS_EXPIRED = "tokens_expired"

    RECOVERY_ATTEMPT = "recovery_attempt"
    HEALTH_CHECK = "health_check"

    SECURITY_VIOLATION = "security_violation"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    WEBHOOK_RECEIVED = "webhook_received"

    MAINTENANCE_CYCLE = "maintenance_cycle"


class SecurityViolations:
    """Security violation types."""

    RATE_LIMIT = "rate_limit"
    INVALID_STATE = "invalid_state"
    EXPIRED_STATE = "expired_state"
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_ORIGIN = "invalid_origin"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


class AuditSeverity:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditLogger:
    """
    Audit logging service.

    Writes are best-effort: a failure to persist is logged and reported as
    ``None`` so the OAuth flow that triggered the event is never aborted by
    the audit trail.
    """

    def __init__(self, store: AuditStore):
        self.store = store
        self.logger = structlog.get_logger(__name__)

    async def log_event(
        self,
        event_type: str,
        description: str = "",
        user_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> Optional[AuditLog]:
        """
        Log an audit event to both structured logs and the audit store.

        Args:
            event_type: The event being recorded (use AuditEvents constants)
            description: Human-readable summary
            user_id: ID of the user involved (None for system events)
            integration_id: Integration the event concerns
            details: Additional structured details
            ip_address: IP address of the request
            user_agent: User agent string from request
            severity: Severity tag for security events

        Returns:
            The stored AuditLog, or None if persistence failed
        """
        self.logger.info(
            "audit_event",
            event_type=event_type,
            user_id=user_id,
            integration_id=integration_id,
            severity=severity,
            details=details or {},
        )

        entry = AuditLog(
            user_id=user_id,
            integration_id=integration_id,
            event_type=event_type,
            description=description,
            severity=severity,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
        )
        try:
            return await self.store.append(entry)
        except Exception as e:
            self.logger.error(
                "audit_persist_failed",
                event_type=event_type,
                user_id=user_id,
                integration_id=integration_id,
                error=str(e),
            )
            return None

    async def log_user_action(
        self,
        user_id: str,
        event_type: str,
        integration_id: Optional[str] = None,
        description: str = "",
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditLog]:
        """Convenience method for logging user-specific actions."""
        return await self.log_event(
            event_type=event_type,
            description=description,
            user_id=user_id,
            integration_id=integration_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def log_system_action(
        self,
        event_type: str,
        description: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        """Convenience method for logging system actions (no user)."""
        return await self.log_event(
            event_type=event_type,
            description=description,
            details=details,
        )

    async def log_security_event(
        self,
        violation_type: str,
        description: str,
        severity: str = AuditSeverity.MEDIUM,
        user_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditLog]:
        """
        Log a security violation.

        Args:
            violation_type: One of the SecurityViolations constants
            description: What happened
            severity: Security severity level (low, medium, high, critical)
            user_id: User involved (if any)
            integration_id: Integration involved (if any)
            details: Additional security details
            ip_address: IP address involved
            user_agent: User agent string

        Returns:
            The stored AuditLog, or None if persistence failed
        """
        security_details = dict(details or {})
        security_details.update(
            {
                "security_event": True,
                "violation_type": violation_type,
                "severity": severity,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

        self.logger.warning(
            "security_audit_event",
            violation_type=violation_type,
            user_id=user_id,
            integration_id=integration_id,
            severity=severity,
            ip_address=ip_address,
        )

        return await self.log_event(
            event_type=AuditEvents.SECURITY_VIOLATION,
            description=description,
            user_id=user_id,
            integration_id=integration_id,
            details=security_details,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=severity,
        )

    async def query_audit_logs(
        self,
        user_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        event_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLog]:
        """Query audit logs with filtering and pagination, newest first."""
        audit_logs = await self.store.query(
            user_id=user_id,
            integration_id=integration_id,
            event_type=event_type,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset,
        )
        self.logger.debug(
            "audit_query_executed",
            filters={
                "user_id": user_id,
                "integration_id": integration_id,
                "event_type": event_type,
            },
            result_count=len(audit_logs),
        )
        return audit_logs

    async def cleanup_old_logs(self, retention_days: int = 30) -> int:
        """
        Delete audit entries older than the retention period.

        Args:
            retention_days: Number of days to retain

        Returns:
            Number of deleted entries
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        deleted = await self.store.prune(cutoff)
        self.logger.info(
            "audit_logs_cleaned_up",
            retention_days=retention_days,
            deleted_count=deleted,
            cutoff_date=cutoff.isoformat(),
        )
        return deleted
