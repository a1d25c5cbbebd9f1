"""
Master OAuth credential registry.

Holds the platform's client id/secret per integration so end users never
supply their own. Credentials are read once from the deployment
environment; the registry is read-only afterwards.
"""

import os
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from services.oauth_hub.integrations.definitions import (
    INTEGRATIONS,
    IntegrationDefinition,
    get_integration_requirements,
)
from services.oauth_hub.settings import Settings

logger = structlog.get_logger(__name__)


class OAuthCredentials(BaseModel):
    """Client credentials for one integration."""

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1, repr=False)


class CredentialRegistry:
    """
    Read-only lookup of client credentials by integration id.

    Primary environment names are ``CREWFLOW_{PREFIX}_CLIENT_ID`` and
    ``CREWFLOW_{PREFIX}_CLIENT_SECRET``; the unprefixed
    ``{PREFIX}_CLIENT_ID``/``{PREFIX}_CLIENT_SECRET`` pair is a fallback.
    """

    def __init__(
        self,
        definitions: Optional[Mapping[str, IntegrationDefinition]] = None,
        environ: Optional[Mapping[str, str]] = None,
        app_name: str = "CrewFlow",
        app_description: str = "",
        is_production: bool = False,
    ):
        self.definitions: Mapping[str, IntegrationDefinition] = MappingProxyType(
            dict(INTEGRATIONS if definitions is None else definitions)
        )
        self.app_name = app_name
        self.app_description = app_description
        self.is_production = is_production
        self._credentials: Mapping[str, OAuthCredentials] = MappingProxyType(
            self._load(os.environ if environ is None else environ)
        )
        logger.info(
            "credential_registry_loaded",
            configured=sorted(self._credentials),
            configured_count=len(self._credentials),
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        definitions: Optional[Mapping[str, IntegrationDefinition]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "CredentialRegistry":
        return cls(
            definitions=definitions,
            environ=environ,
            app_name=settings.app_name,
            app_description=settings.app_description,
            is_production=settings.is_production,
        )

    def _load(self, environ: Mapping[str, str]) -> Dict[str, OAuthCredentials]:
        loaded: Dict[str, OAuthCredentials] = {}
        for integration_id, definition in self.definitions.items():
            if not definition.is_oauth:
                continue
            prefix = definition.env_prefix
            client_id = environ.get(f"CREWFLOW_{prefix}_CLIENT_ID") or environ.get(
                f"{prefix}_CLIENT_ID"
            )
            client_secret = environ.get(
                f"CREWFLOW_{prefix}_CLIENT_SECRET"
            ) or environ.get(f"{prefix}_CLIENT_SECRET")
            if client_id and client_secret:
                loaded[integration_id] = OAuthCredentials(
                    client_id=client_id, client_secret=client_secret
                )
            else:
                logger.warning(
                    "oauth_provider_disabled",
                    integration_id=integration_id,
                    reason="missing_credentials",
                )
        return loaded

    def get_credentials(self, integration_id: str) -> Optional[OAuthCredentials]:
        """Credentials for ``integration_id``, or None when unavailable."""
        credentials = self._credentials.get(integration_id)
        if credentials is None:
            logger.warning(
                "oauth_credentials_unavailable", integration_id=integration_id
            )
        return credentials

    def is_ready(self, integration_id: str) -> bool:
        return integration_id in self._credentials

    def list_ready(self) -> List[str]:
        return sorted(self._credentials)

    def get_configuration_status(self) -> Dict[str, List[str]]:
        oauth_ids = sorted(
            integration_id
            for integration_id, definition in self.definitions.items()
            if definition.is_oauth
        )
        return {
            "configured": [i for i in oauth_ids if i in self._credentials],
            "missing": [i for i in oauth_ids if i not in self._credentials],
        }

    def validate_configuration(self) -> Dict[str, Any]:
        issues: List[str] = []
        status = self.get_configuration_status()
        if not status["configured"]:
            issues.append("No OAuth integrations are configured")
        if self.is_production:
            for integration_id in status["missing"]:
                if self.definitions[integration_id].production_ready:
                    issues.append(
                        f"Production integration '{integration_id}' has no credentials"
                    )
        return {"valid": not issues, "issues": issues}

    def get_integration_info(self, integration_id: str) -> Optional[Dict[str, Any]]:
        """Public description of an integration; never includes secrets."""
        definition = self.definitions.get(integration_id)
        if definition is None:
            return None
        return {
            "id": definition.id,
            "name": definition.name,
            "description": definition.description,
            "category": definition.category.value,
            "auth_type": definition.auth_type.value,
            "scopes": list(definition.scopes),
            "requires_pkce": definition.requires_pkce,
            "required_fields": list(definition.required_fields),
            "production_ready": definition.production_ready,
            "configured": self.is_ready(integration_id),
            "requirements": get_integration_requirements(
                integration_id, self.definitions
            ),
        }
