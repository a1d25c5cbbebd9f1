"""
Automatic recovery for failed OAuth connections.

Executes the recovery action the ErrorClassifier suggests for a failure
and keeps per-kind counters for observability. Reconnection always
requires the user; this service never re-authorizes on their behalf.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from services.oauth_hub.exceptions import NotFoundError, OAuthError
from services.oauth_hub.models.connection import ConnectionStatus
from services.oauth_hub.schemas.errors import ClassifiedError, ErrorKind, RecoveryAction
from services.oauth_hub.schemas.integration import (
    BulkRecoveryResult,
    ConnectionHealthIssue,
    ConnectionStatusView,
    ConnectionTestResult,
    ConnectionTestSuiteResponse,
    RecoveryResult,
    UserHealthResponse,
)
from services.oauth_hub.services.audit_service import AuditEvents, AuditLogger
from services.oauth_hub.services.error_classifier import ErrorClassifier
from services.oauth_hub.services.oauth_manager import OAuthManager
from services.oauth_hub.settings import Settings
from services.oauth_hub.utils.retry import RetryError, retry_async

logger = structlog.get_logger(__name__)


def _empty_stats() -> Dict[str, Any]:
    return {
        "total_attempts": 0,
        "successful_recoveries": 0,
        "failed_recoveries": 0,
        "by_error_kind": {},
        "last_attempt_at": None,
    }


class RecoveryService:
    """Dispatches recovery actions against the OAuth orchestrator."""

    def __init__(
        self,
        settings: Settings,
        oauth_manager: OAuthManager,
        error_classifier: ErrorClassifier,
        audit_logger: AuditLogger,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.settings = settings
        self.oauth_manager = oauth_manager
        self.error_classifier = error_classifier
        self.audit_logger = audit_logger
        self._sleep = sleep
        self._stats: Dict[str, Any] = _empty_stats()
        self.logger = logger

    async def attempt_recovery(
        self,
        user_id: str,
        integration_id: str,
        error: Union[ClassifiedError, BaseException],
    ) -> RecoveryResult:
        """
        Run the suggested recovery action for ``error``.

        Never raises; unexpected failures become an unsuccessful result.
        """
        classified = (
            error
            if isinstance(error, ClassifiedError)
            else self.error_classifier.classify_exception(error)
        )
        self.logger.info(
            "recovery_attempt_started",
            user_id=user_id,
            integration_id=integration_id,
            error_kind=classified.kind.value,
            action=classified.action.value,
        )

        try:
            result = await self._dispatch(user_id, integration_id, classified)
        except Exception as e:
            self.logger.error(
                "recovery_attempt_error",
                user_id=user_id,
                integration_id=integration_id,
                error=str(e),
            )
            result = RecoveryResult(
                success=False,
                integration_id=integration_id,
                action=classified.action,
                message=f"Recovery failed: {e}",
                error_kind=classified.kind,
            )

        self._record_attempt(classified.kind, result.success)
        await self.audit_logger.log_user_action(
            user_id=user_id,
            event_type=AuditEvents.RECOVERY_ATTEMPT,
            integration_id=integration_id,
            description=f"Recovery attempt ({result.action.value}) for {integration_id}",
            details={
                "success": result.success,
                "action": result.action.value,
                "error_kind": classified.kind.value,
                "message": result.message,
                "requires_user_action": result.requires_user_action,
            },
        )
        self.logger.info(
            "recovery_attempt_finished",
            user_id=user_id,
            integration_id=integration_id,
            success=result.success,
            action=result.action.value,
        )
        return result

    async def _dispatch(
        self, user_id: str, integration_id: str, error: ClassifiedError
    ) -> RecoveryResult:
        action = error.action

        if action == RecoveryAction.REFRESH_TOKEN:
            return await self._refresh(user_id, integration_id, error)

        if action == RecoveryAction.RETRY:
            if error.kind == ErrorKind.RATE_LIMITED:
                delay = self.error_classifier.calculate_retry_delay(error)
                return RecoveryResult(
                    success=False,
                    integration_id=integration_id,
                    action=action,
                    message=f"Rate limited by provider; retry after {delay:.0f} seconds",
                    error_kind=error.kind,
                    retry_after=delay,
                )
            return await self._retry(user_id, integration_id, error)

        if action == RecoveryAction.RECONNECT:
            await self.oauth_manager.disconnect(user_id, integration_id)
            return RecoveryResult(
                success=False,
                integration_id=integration_id,
                action=action,
                message="The user must reconnect this integration",
                error_kind=error.kind,
                requires_user_action=True,
            )

        if action == RecoveryAction.REJECT:
            return RecoveryResult(
                success=False,
                integration_id=integration_id,
                action=action,
                message="The request was rejected; start the connection again",
                error_kind=error.kind,
                requires_user_action=True,
            )

        return RecoveryResult(
            success=False,
            integration_id=integration_id,
            action=RecoveryAction.MANUAL_INTERVENTION,
            message=f"Manual intervention required: {error.user_message}",
            error_kind=error.kind,
        )

    async def _refresh(
        self, user_id: str, integration_id: str, error: ClassifiedError
    ) -> RecoveryResult:
        refresh = await self.oauth_manager.refresh_tokens(user_id, integration_id)
        if refresh.success:
            return RecoveryResult(
                success=True,
                integration_id=integration_id,
                action=RecoveryAction.REFRESH_TOKEN,
                message="Tokens refreshed",
                error_kind=error.kind,
            )
        follow_up = refresh.error
        return RecoveryResult(
            success=False,
            integration_id=integration_id,
            action=RecoveryAction.REFRESH_TOKEN,
            message=refresh.message or "Token refresh failed",
            error_kind=follow_up.kind if follow_up else error.kind,
            requires_user_action=bool(
                follow_up and follow_up.action == RecoveryAction.RECONNECT
            ),
        )

    async def _retry(
        self, user_id: str, integration_id: str, error: ClassifiedError
    ) -> RecoveryResult:
        async def check() -> ConnectionTestResult:
            result = await self.oauth_manager.test_connection(user_id, integration_id)
            check_error = result.error
            if (
                not result.healthy
                and check_error is not None
                and check_error.retryable
                and check_error.action == RecoveryAction.RETRY
            ):
                raise OAuthError(check_error)
            return result

        retry_kwargs: Dict[str, Any] = {
            "max_attempts": self.settings.retry_max_attempts,
            "base_delay": self.settings.retry_base_delay_seconds,
            "max_delay": self.settings.retry_max_delay_seconds,
            "exponential_base": self.settings.retry_backoff_multiplier,
        }
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep

        try:
            check_result = await retry_async(check, **retry_kwargs)
        except (RetryError, OAuthError) as e:
            last = e.last_exception if isinstance(e, RetryError) else e
            last_error = (
                last.classified
                if isinstance(last, OAuthError)
                else self.error_classifier.classify_exception(last)
            )
            if last_error.action == RecoveryAction.REFRESH_TOKEN:
                return await self._refresh(user_id, integration_id, last_error)
            return RecoveryResult(
                success=False,
                integration_id=integration_id,
                action=RecoveryAction.RETRY,
                message=f"Connection still failing: {last_error.user_message}",
                error_kind=last_error.kind,
                retry_after=self.error_classifier.calculate_retry_delay(last_error),
            )

        if check_result.healthy:
            return RecoveryResult(
                success=True,
                integration_id=integration_id,
                action=RecoveryAction.RETRY,
                message="Connection is healthy again",
                error_kind=error.kind,
            )
        check_error = check_result.error
        if check_error is not None and check_error.action == RecoveryAction.REFRESH_TOKEN:
            return await self._refresh(user_id, integration_id, check_error)
        return RecoveryResult(
            success=False,
            integration_id=integration_id,
            action=RecoveryAction.RETRY,
            message=check_error.user_message if check_error else "Connection is unhealthy",
            error_kind=check_error.kind if check_error else error.kind,
            requires_user_action=bool(
                check_error and check_error.action == RecoveryAction.RECONNECT
            ),
        )

    def _record_attempt(self, kind: ErrorKind, success: bool) -> None:
        self._stats["total_attempts"] += 1
        if success:
            self._stats["successful_recoveries"] += 1
        else:
            self._stats["failed_recoveries"] += 1
        per_kind = self._stats["by_error_kind"].setdefault(
            kind.value, {"attempts": 0, "successes": 0, "failures": 0}
        )
        per_kind["attempts"] += 1
        per_kind["successes" if success else "failures"] += 1
        self._stats["last_attempt_at"] = datetime.now(timezone.utc).isoformat()

    def _error_for_connection(self, view: ConnectionStatusView) -> ClassifiedError:
        """Rebuild a classified error from a connection's stored diagnostics."""
        if view.status == ConnectionStatus.EXPIRED:
            kind = ErrorKind.UNAUTHORIZED if view.has_refresh_token else ErrorKind.TOKEN_EXPIRED
            return self.error_classifier.build(kind, "Access token has expired")
        try:
            kind = ErrorKind(view.last_error_code) if view.last_error_code else None
        except ValueError:
            kind = None
        if kind is None:
            kind = ErrorKind.UNAUTHORIZED if view.has_refresh_token else ErrorKind.UNKNOWN_ERROR
        return self.error_classifier.build(kind, view.last_error)

    async def recover_connection(self, user_id: str, integration_id: str) -> RecoveryResult:
        """
        Manually triggered recovery for one connection.

        Errored or expired connections are recovered from their stored
        diagnostics; a connected one is checked first and only recovered
        if the check fails.

        Raises:
            NotFoundError: No connection exists
        """
        view = await self.oauth_manager.get_connection_status(user_id, integration_id)
        if view.status == ConnectionStatus.DISCONNECTED:
            raise NotFoundError("Connection", integration_id)

        if view.status in (ConnectionStatus.ERROR, ConnectionStatus.EXPIRED):
            return await self.attempt_recovery(
                user_id, integration_id, self._error_for_connection(view)
            )

        check = await self.oauth_manager.test_connection(user_id, integration_id)
        if check.healthy or check.error is None:
            return RecoveryResult(
                success=True,
                integration_id=integration_id,
                action=RecoveryAction.RETRY,
                message="Connection is healthy; no recovery needed",
            )
        return await self.attempt_recovery(user_id, integration_id, check.error)

    async def bulk_recovery(self, user_id: str) -> BulkRecoveryResult:
        """Attempt recovery on each errored or expired connection independently."""
        connections = await self.oauth_manager.get_user_connections(user_id)
        targets = [
            view
            for view in connections
            if view.status in (ConnectionStatus.ERROR, ConnectionStatus.EXPIRED)
        ]
        results: List[RecoveryResult] = []
        for view in targets:
            error = self._error_for_connection(view)
            try:
                results.append(
                    await self.attempt_recovery(user_id, view.integration_id, error)
                )
            except Exception as e:
                self.logger.error(
                    "bulk_recovery_item_failed",
                    user_id=user_id,
                    integration_id=view.integration_id,
                    error=str(e),
                )
                results.append(
                    RecoveryResult(
                        success=False,
                        integration_id=view.integration_id,
                        action=error.action,
                        message=f"Recovery failed: {e}",
                        error_kind=error.kind,
                    )
                )

        recovered = sum(1 for r in results if r.success)
        self.logger.info(
            "bulk_recovery_completed",
            user_id=user_id,
            total=len(results),
            recovered=recovered,
        )
        return BulkRecoveryResult(
            user_id=user_id,
            total=len(results),
            recovered=recovered,
            failed=len(results) - recovered,
            results=results,
        )

    async def health_check(self, user_id: str) -> UserHealthResponse:
        """Summarize connection health for a user from stored state."""
        connections = await self.oauth_manager.get_user_connections(user_id)
        issues: List[ConnectionHealthIssue] = []
        unhealthy = 0
        for view in connections:
            issue: Optional[ConnectionHealthIssue] = None
            if view.status == ConnectionStatus.EXPIRED:
                issue = ConnectionHealthIssue(
                    integration_id=view.integration_id,
                    issue="Access token has expired",
                    severity="medium" if view.has_refresh_token else "high",
                )
            elif view.status == ConnectionStatus.ERROR:
                issue = ConnectionHealthIssue(
                    integration_id=view.integration_id,
                    issue=view.last_error or "Connection is in an error state",
                    severity="high",
                )
            elif view.connection_health.value in ("error", "warning"):
                issue = ConnectionHealthIssue(
                    integration_id=view.integration_id,
                    issue=view.last_error or f"Connection health is {view.connection_health.value}",
                    severity="high" if view.connection_health.value == "error" else "low",
                )
            elif view.error_count >= 3:
                issue = ConnectionHealthIssue(
                    integration_id=view.integration_id,
                    issue=f"{view.error_count} recent errors",
                    severity="low",
                )
            if issue is not None:
                issues.append(issue)
                if issue.severity != "low":
                    unhealthy += 1

        return UserHealthResponse(
            user_id=user_id,
            healthy=len(connections) - unhealthy,
            unhealthy=unhealthy,
            total=len(connections),
            issues=issues,
        )

    async def run_test_suite(self, user_id: str) -> ConnectionTestSuiteResponse:
        """Test every connection of a user; one failing test never stops the rest."""
        connections = await self.oauth_manager.get_user_connections(user_id)
        results: List[ConnectionTestResult] = []
        for view in connections:
            try:
                result = await self.oauth_manager.test_connection(
                    user_id, view.integration_id
                )
            except Exception as e:
                self.logger.error(
                    "connection_test_failed",
                    user_id=user_id,
                    integration_id=view.integration_id,
                    error=str(e),
                )
                result = ConnectionTestResult(
                    integration_id=view.integration_id,
                    healthy=False,
                    error=self.error_classifier.classify_exception(e),
                )
            results.append(result)

        passed = sum(1 for r in results if r.healthy)
        self.logger.info(
            "connection_test_suite_completed",
            user_id=user_id,
            total=len(results),
            passed=passed,
        )
        return ConnectionTestSuiteResponse(
            user_id=user_id,
            total=len(results),
            passed=passed,
            failed=len(results) - passed,
            results=results,
        )

    def get_stats(self) -> Dict[str, Any]:
        stats = dict(self._stats)
        stats["by_error_kind"] = {
            kind: dict(counts) for kind, counts in self._stats["by_error_kind"].items()
        }
        total = stats["total_attempts"]
        stats["success_rate"] = (
            round(stats["successful_recoveries"] / total, 4) if total else 0.0
        )
        return stats

    def reset_stats(self) -> None:
        self._stats = _empty_stats()
        self.logger.info("recovery_stats_reset")
