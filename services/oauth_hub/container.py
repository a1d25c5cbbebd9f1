"""
Process-wide component wiring for the OAuth Integration Hub.

Each component is constructed exactly once and receives its collaborators
explicitly. The FastAPI lifespan builds the container and stores it on
``app.state``; tests build their own with in-memory stores.
"""

from dataclasses import dataclass
from typing import Mapping, Optional

import structlog

from services.oauth_hub.integrations.credential_registry import CredentialRegistry
from services.oauth_hub.integrations.definitions import IntegrationDefinition
from services.oauth_hub.security.security_manager import SecurityManager
from services.oauth_hub.services.audit_service import AuditLogger
from services.oauth_hub.services.error_classifier import ErrorClassifier
from services.oauth_hub.services.oauth_manager import OAuthManager
from services.oauth_hub.services.recovery_service import RecoveryService
from services.oauth_hub.services.token_maintenance import TokenMaintenanceScheduler
from services.oauth_hub.settings import Settings, get_settings
from services.oauth_hub.storage import (
    AuditStore,
    ConnectionStore,
    InMemoryAuditStore,
    InMemoryConnectionStore,
    SQLAuditStore,
    SQLConnectionStore,
)

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    security_manager: SecurityManager
    credential_registry: CredentialRegistry
    connection_store: ConnectionStore
    audit_store: AuditStore
    audit_logger: AuditLogger
    error_classifier: ErrorClassifier
    oauth_manager: OAuthManager
    recovery_service: RecoveryService
    scheduler: TokenMaintenanceScheduler

    @property
    def uses_sql_storage(self) -> bool:
        return isinstance(self.connection_store, SQLConnectionStore) or isinstance(
            self.audit_store, SQLAuditStore
        )


def build_container(
    settings: Optional[Settings] = None,
    connection_store: Optional[ConnectionStore] = None,
    audit_store: Optional[AuditStore] = None,
    environ: Optional[Mapping[str, str]] = None,
    definitions: Optional[Mapping[str, IntegrationDefinition]] = None,
    security_manager: Optional[SecurityManager] = None,
) -> ServiceContainer:
    """
    Wire every component once.

    Args:
        settings: Service settings (defaults to the cached global settings)
        connection_store: Connection record store (defaults to SQL)
        audit_store: Audit entry store (defaults to SQL)
        environ: Environment used for client credentials (defaults to os.environ)
        definitions: Integration catalog override
        security_manager: Pre-built SecurityManager, e.g. with a test clock
    """
    settings = settings or get_settings()
    connection_store = connection_store or SQLConnectionStore()
    audit_store = audit_store or SQLAuditStore()

    security_manager = security_manager or SecurityManager(settings)
    credential_registry = CredentialRegistry.from_settings(
        settings, definitions=definitions, environ=environ
    )
    audit_logger = AuditLogger(audit_store)
    error_classifier = ErrorClassifier(
        retry_base_delay=settings.retry_base_delay_seconds,
        retry_max_delay=settings.retry_max_delay_seconds,
        retry_multiplier=settings.retry_backoff_multiplier,
    )
    oauth_manager = OAuthManager(
        settings=settings,
        security_manager=security_manager,
        credential_registry=credential_registry,
        connection_store=connection_store,
        audit_logger=audit_logger,
        error_classifier=error_classifier,
    )
    recovery_service = RecoveryService(
        settings=settings,
        oauth_manager=oauth_manager,
        error_classifier=error_classifier,
        audit_logger=audit_logger,
    )
    scheduler = TokenMaintenanceScheduler(
        settings=settings,
        oauth_manager=oauth_manager,
        recovery_service=recovery_service,
        connection_store=connection_store,
        audit_logger=audit_logger,
        security_manager=security_manager,
    )

    logger.info(
        "service_container_built",
        connection_store=type(connection_store).__name__,
        audit_store=type(audit_store).__name__,
        configured_integrations=credential_registry.list_ready(),
    )
    return ServiceContainer(
        settings=settings,
        security_manager=security_manager,
        credential_registry=credential_registry,
        connection_store=connection_store,
        audit_store=audit_store,
        audit_logger=audit_logger,
        error_classifier=error_classifier,
        oauth_manager=oauth_manager,
        recovery_service=recovery_service,
        scheduler=scheduler,
    )


def build_in_memory_container(
    settings: Optional[Settings] = None,
    environ: Optional[Mapping[str, str]] = None,
    definitions: Optional[Mapping[str, IntegrationDefinition]] = None,
    security_manager: Optional[SecurityManager] = None,
) -> ServiceContainer:
    """Container backed by in-memory stores (tests and single-process demos)."""
    return build_container(
        settings=settings,
        connection_store=InMemoryConnectionStore(),
        audit_store=InMemoryAuditStore(),
        environ=environ,
        definitions=definitions,
        security_manager=security_manager,
    )
