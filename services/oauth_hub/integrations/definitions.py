"""
Static catalog of third-party integrations.

Each IntegrationDefinition describes the provider endpoints, scopes and
OAuth quirks needed to run the authorization-code flow. Definitions are
immutable for the lifetime of the process.
"""

import re
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


class AuthType(str, Enum):
    OAUTH2 = "oauth2"
    API_KEY = "api_key"
    BASIC = "basic"


class IntegrationCategory(str, Enum):
    CRM = "crm"
    ECOMMERCE = "ecommerce"
    MARKETING = "marketing"
    SOCIAL = "social"
    PRODUCTIVITY = "productivity"
    COMMUNICATION = "communication"
    PROJECT_MANAGEMENT = "project_management"
    FINANCE = "finance"


class RateLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    requests_per_minute: Optional[int] = None
    requests_per_hour: Optional[int] = None
    requests_per_day: Optional[int] = None


class IntegrationDefinition(BaseModel):
    """Provider metadata for one integration."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Integration identifier")
    name: str = Field(..., description="Display name")
    description: str = Field(default="")
    category: IntegrationCategory
    auth_type: AuthType = AuthType.OAUTH2

    scopes: Tuple[str, ...] = Field(default_factory=tuple)
    scope_separator: str = Field(default=" ", description="Scope list delimiter")

    authorization_url: Optional[str] = Field(None, description="Authorize endpoint")
    token_url: Optional[str] = Field(None, description="Token endpoint")
    api_base_url: str = Field(..., description="API base URL")
    revoke_url: Optional[str] = None
    user_info_url: Optional[str] = None
    test_endpoint: Optional[str] = Field(
        None, description="Path under api_base_url used for health checks"
    )

    requires_pkce: bool = False
    supports_refresh_token: bool = True
    extra_auth_params: Tuple[Tuple[str, str], ...] = Field(default_factory=tuple)
    token_header: Optional[str] = Field(
        None, description="Header carrying the access token (defaults to Bearer)"
    )
    required_fields: Tuple[str, ...] = Field(
        default_factory=tuple, description="Connect-time parameters, e.g. shop"
    )
    signs_callback: bool = Field(
        default=False, description="Provider signs callback query with an hmac"
    )

    production_ready: bool = False
    webhooks: bool = False
    docs_url: Optional[str] = None
    rate_limits: Optional[RateLimits] = None

    @property
    def is_oauth(self) -> bool:
        return self.auth_type == AuthType.OAUTH2

    @property
    def env_prefix(self) -> str:
        return self.id.upper().replace("-", "_")

    def auth_params(self) -> Dict[str, str]:
        return dict(self.extra_auth_params)

    def scope_string(self) -> str:
        return self.scope_separator.join(self.scopes)

    def resolve(
        self,
        template: str,
        params: Optional[Mapping[str, str]] = None,
        strict: bool = True,
    ) -> str:
        """
        Fill ``{placeholder}`` segments such as ``{shop}``.

        With ``strict`` a missing value raises KeyError; otherwise the
        placeholder is left in place for the client to fill.
        """
        values = params or {}

        def replace(match: "re.Match[str]") -> str:
            name = match.group(1)
            if name not in values:
                if strict:
                    raise KeyError(name)
                return match.group(0)
            return values[name]

        return _PLACEHOLDER.sub(replace, template)

    def placeholders(self) -> List[str]:
        urls = [self.authorization_url, self.token_url, self.api_base_url]
        found: List[str] = []
        for url in urls:
            for name in _PLACEHOLDER.findall(url or ""):
                if name not in found:
                    found.append(name)
        return found


_GOOGLE_OFFLINE = (("access_type", "offline"), ("prompt", "consent"))
_FACEBOOK_REREQUEST = (("auth_type", "rerequest"),)


INTEGRATIONS: Dict[str, IntegrationDefinition] = {
    definition.id: definition
    for definition in [
        IntegrationDefinition(
            id="salesforce",
            name="Salesforce",
            description="World's leading CRM platform",
            category=IntegrationCategory.CRM,
            scopes=("api", "refresh_token", "offline_access"),
            authorization_url="https://login.salesforce.com/services/oauth2/authorize",
            token_url="https://login.salesforce.com/services/oauth2/token",
            api_base_url="https://api.salesforce.com",
            revoke_url="https://login.salesforce.com/services/oauth2/revoke",
            user_info_url="https://login.salesforce.com/services/oauth2/userinfo",
            test_endpoint="/services/data/v58.0/sobjects",
            requires_pkce=True,
            extra_auth_params=(("prompt", "login consent"),),
            production_ready=True,
            webhooks=True,
            docs_url="https://developer.salesforce.com/docs/apis",
            rate_limits=RateLimits(requests_per_day=15000),
        ),
        IntegrationDefinition(
            id="hubspot",
            name="HubSpot",
            description="Inbound marketing, sales, and service software",
            category=IntegrationCategory.CRM,
            scopes=("contacts", "content", "reports", "social", "automation"),
            authorization_url="https://app.hubspot.com/oauth/authorize",
            token_url="https://api.hubapi.com/oauth/v1/token",
            api_base_url="https://api.hubapi.com",
            test_endpoint="/contacts/v1/lists/all/contacts/all",
            requires_pkce=True,
            production_ready=True,
            webhooks=True,
            docs_url="https://developers.hubspot.com/docs/api/overview",
            rate_limits=RateLimits(requests_per_minute=100),
        ),
        IntegrationDefinition(
            id="shopify",
            name="Shopify",
            description="E-commerce platform for online stores",
            category=IntegrationCategory.ECOMMERCE,
            scopes=(
                "read_products",
                "write_products",
                "read_orders",
                "write_orders",
                "read_customers",
            ),
            scope_separator=",",
            authorization_url="https://{shop}.myshopify.com/admin/oauth/authorize",
            token_url="https://{shop}.myshopify.com/admin/oauth/access_token",
            api_base_url="https://{shop}.myshopify.com/admin/api/2023-10",
            test_endpoint="/shop.json",
            supports_refresh_token=False,
            token_header="X-Shopify-Access-Token",
            required_fields=("shop",),
            signs_callback=True,
            production_ready=True,
            webhooks=True,
            docs_url="https://shopify.dev/docs/api",
            rate_limits=RateLimits(requests_per_minute=40),
        ),
        IntegrationDefinition(
            id="woocommerce",
            name="WooCommerce",
            description="WordPress e-commerce plugin",
            category=IntegrationCategory.ECOMMERCE,
            auth_type=AuthType.API_KEY,
            api_base_url="{site_url}/wp-json/wc/v3",
            test_endpoint="/products",
            required_fields=("site_url",),
        ),
        IntegrationDefinition(
            id="google-ads",
            name="Google Ads",
            description="Online advertising platform",
            category=IntegrationCategory.MARKETING,
            scopes=("https://www.googleapis.com/auth/adwords",),
            authorization_url="https://accounts.google.com/o/oauth2/auth",
            token_url="https://oauth2.googleapis.com/token",
            api_base_url="https://googleads.googleapis.com",
            revoke_url="https://oauth2.googleapis.com/revoke",
            user_info_url="https://www.googleapis.com/oauth2/v2/userinfo",
            test_endpoint="/v14/customers:listAccessibleCustomers",
            requires_pkce=True,
            extra_auth_params=_GOOGLE_OFFLINE,
            production_ready=True,
        ),
        IntegrationDefinition(
            id="google-workspace",
            name="Google Workspace",
            description="Google Workspace (Gmail, Drive, Calendar, Docs)",
            category=IntegrationCategory.PRODUCTIVITY,
            scopes=(
                "https://www.googleapis.com/auth/userinfo.email",
                "https://www.googleapis.com/auth/userinfo.profile",
                "https://www.googleapis.com/auth/gmail.readonly",
                "https://www.googleapis.com/auth/drive.readonly",
                "https://www.googleapis.com/auth/calendar.readonly",
            ),
            authorization_url="https://accounts.google.com/o/oauth2/v2/auth",
            token_url="https://oauth2.googleapis.com/token",
            api_base_url="https://www.googleapis.com",
            revoke_url="https://oauth2.googleapis.com/revoke",
            user_info_url="https://www.googleapis.com/oauth2/v2/userinfo",
            test_endpoint="/oauth2/v2/userinfo",
            requires_pkce=True,
            extra_auth_params=_GOOGLE_OFFLINE,
            production_ready=True,
            webhooks=True,
            docs_url="https://developers.google.com/workspace",
            rate_limits=RateLimits(requests_per_minute=100),
        ),
        IntegrationDefinition(
            id="facebook-business",
            name="Facebook Business",
            description="Facebook pages, posts, insights, and advertising",
            category=IntegrationCategory.SOCIAL,
            scopes=(
                "pages_manage_posts",
                "pages_read_engagement",
                "pages_manage_metadata",
                "pages_read_user_content",
                "pages_manage_ads",
                "pages_show_list",
                "business_management",
                "read_insights",
                "ads_management",
                "ads_read",
                "email",
                "public_profile",
                "pages_messaging",
            ),
            scope_separator=",",
            authorization_url="https://www.facebook.com/v19.0/dialog/oauth",
            token_url="https://graph.facebook.com/v19.0/oauth/access_token",
            api_base_url="https://graph.facebook.com/v19.0",
            user_info_url="https://graph.facebook.com/v19.0/me?fields=id,name,email",
            test_endpoint="/me/accounts",
            extra_auth_params=_FACEBOOK_REREQUEST,
            production_ready=True,
            webhooks=True,
            docs_url="https://developers.facebook.com/docs/graph-api/",
            rate_limits=RateLimits(requests_per_minute=200, requests_per_hour=4800),
        ),
        IntegrationDefinition(
            id="facebook-ads",
            name="Facebook Ads",
            description="Facebook advertising platform",
            category=IntegrationCategory.MARKETING,
            scopes=("ads_management", "ads_read", "business_management"),
            scope_separator=",",
            authorization_url="https://www.facebook.com/v18.0/dialog/oauth",
            token_url="https://graph.facebook.com/v18.0/oauth/access_token",
            api_base_url="https://graph.facebook.com/v18.0",
            user_info_url="https://graph.facebook.com/v18.0/me?fields=id,name,email",
            test_endpoint="/me/adaccounts",
            extra_auth_params=_FACEBOOK_REREQUEST,
        ),
        IntegrationDefinition(
            id="mailchimp",
            name="Mailchimp",
            description="Email marketing platform",
            category=IntegrationCategory.MARKETING,
            scopes=("read", "write"),
            authorization_url="https://login.mailchimp.com/oauth2/authorize",
            token_url="https://login.mailchimp.com/oauth2/token",
            api_base_url="https://{dc}.api.mailchimp.com/3.0",
            test_endpoint="/lists",
            supports_refresh_token=False,
            required_fields=("dc",),
        ),
        IntegrationDefinition(
            id="jira",
            name="Jira",
            description="Issue and project tracking",
            category=IntegrationCategory.PROJECT_MANAGEMENT,
            scopes=("read:jira-work", "write:jira-work", "manage:jira-project"),
            authorization_url="https://auth.atlassian.com/authorize",
            token_url="https://auth.atlassian.com/oauth/token",
            api_base_url="https://api.atlassian.com/ex/jira/{cloudid}/rest/api/3",
            test_endpoint="/myself",
            extra_auth_params=(("audience", "api.atlassian.com"), ("prompt", "consent")),
            required_fields=("cloudid",),
        ),
        IntegrationDefinition(
            id="asana",
            name="Asana",
            description="Work management platform",
            category=IntegrationCategory.PROJECT_MANAGEMENT,
            scopes=("default",),
            authorization_url="https://app.asana.com/-/oauth_authorize",
            token_url="https://app.asana.com/-/oauth_token",
            api_base_url="https://app.asana.com/api/1.0",
            user_info_url="https://app.asana.com/api/1.0/users/me",
            test_endpoint="/users/me",
        ),
        IntegrationDefinition(
            id="monday",
            name="Monday.com",
            description="Work operating system",
            category=IntegrationCategory.PROJECT_MANAGEMENT,
            scopes=("boards:read", "boards:write", "users:read"),
            authorization_url="https://auth.monday.com/oauth2/authorize",
            token_url="https://auth.monday.com/oauth2/token",
            api_base_url="https://api.monday.com/v2",
            test_endpoint="/users",
            supports_refresh_token=False,
        ),
        IntegrationDefinition(
            id="slack",
            name="Slack",
            description="Team communication platform",
            category=IntegrationCategory.COMMUNICATION,
            scopes=("channels:read", "chat:write", "users:read", "files:write"),
            scope_separator=",",
            authorization_url="https://slack.com/oauth/v2/authorize",
            token_url="https://slack.com/api/oauth.v2.access",
            api_base_url="https://slack.com/api",
            revoke_url="https://slack.com/api/auth.revoke",
            user_info_url="https://slack.com/api/auth.test",
            test_endpoint="/auth.test",
            production_ready=True,
            webhooks=True,
        ),
        IntegrationDefinition(
            id="discord",
            name="Discord",
            description="Community chat platform",
            category=IntegrationCategory.COMMUNICATION,
            scopes=("bot", "messages.read", "guilds"),
            authorization_url="https://discord.com/api/oauth2/authorize",
            token_url="https://discord.com/api/oauth2/token",
            api_base_url="https://discord.com/api/v10",
            revoke_url="https://discord.com/api/oauth2/token/revoke",
            user_info_url="https://discord.com/api/v10/users/@me",
            test_endpoint="/users/@me",
        ),
        IntegrationDefinition(
            id="twitter",
            name="Twitter / X",
            description="Social media platform",
            category=IntegrationCategory.SOCIAL,
            scopes=("tweet.read", "tweet.write", "users.read", "offline.access"),
            authorization_url="https://twitter.com/i/oauth2/authorize",
            token_url="https://api.twitter.com/2/oauth2/token",
            api_base_url="https://api.twitter.com/2",
            revoke_url="https://api.twitter.com/2/oauth2/revoke",
            user_info_url="https://api.twitter.com/2/users/me",
            test_endpoint="/users/me",
            requires_pkce=True,
        ),
        IntegrationDefinition(
            id="linkedin",
            name="LinkedIn",
            description="Professional networking platform",
            category=IntegrationCategory.SOCIAL,
            scopes=("r_liteprofile", "r_emailaddress", "w_member_social"),
            authorization_url="https://www.linkedin.com/oauth/v2/authorization",
            token_url="https://www.linkedin.com/oauth/v2/accessToken",
            api_base_url="https://api.linkedin.com/v2",
            user_info_url="https://api.linkedin.com/v2/me",
            test_endpoint="/me",
            production_ready=True,
            docs_url="https://docs.microsoft.com/en-us/linkedin/",
            rate_limits=RateLimits(requests_per_minute=100, requests_per_day=50000),
        ),
        IntegrationDefinition(
            id="stripe",
            name="Stripe",
            description="Payment processing and financial services",
            category=IntegrationCategory.FINANCE,
            scopes=("read_only",),
            authorization_url="https://connect.stripe.com/oauth/authorize",
            token_url="https://connect.stripe.com/oauth/token",
            api_base_url="https://api.stripe.com/v1",
            test_endpoint="/account",
            production_ready=True,
            webhooks=True,
            docs_url="https://stripe.com/docs/api",
            rate_limits=RateLimits(requests_per_minute=100),
        ),
    ]
}


def get_integration(integration_id: str) -> Optional[IntegrationDefinition]:
    return INTEGRATIONS.get(integration_id)


def get_oauth_integrations(
    definitions: Optional[Mapping[str, IntegrationDefinition]] = None,
) -> List[IntegrationDefinition]:
    catalog = INTEGRATIONS if definitions is None else definitions
    return [definition for definition in catalog.values() if definition.is_oauth]


def validate_integration_definition(definition: IntegrationDefinition) -> Dict[str, Any]:
    """Check a definition for missing endpoints and production gaps."""
    errors: List[str] = []
    warnings: List[str] = []

    if not definition.id:
        errors.append("Integration ID is required")
    if not definition.name:
        errors.append("Integration name is required")

    if definition.is_oauth:
        if not definition.authorization_url:
            errors.append("OAuth authorization endpoint is required")
        if not definition.token_url:
            errors.append("OAuth token endpoint is required")
        if not definition.scopes:
            warnings.append("No OAuth scopes defined")

    if not definition.api_base_url:
        errors.append("API endpoint is required")

    if definition.production_ready:
        if not definition.test_endpoint:
            warnings.append("Test endpoint recommended for production integrations")
        if not definition.docs_url:
            warnings.append("Documentation URL recommended for production integrations")
        if not definition.rate_limits:
            warnings.append("Rate limits should be defined for production integrations")

    return {"valid": not errors, "errors": errors, "warnings": warnings}


def get_integration_requirements(
    integration_id: str,
    definitions: Optional[Mapping[str, IntegrationDefinition]] = None,
) -> Dict[str, Any]:
    """Environment variables, scopes and setup steps an operator needs."""
    catalog = INTEGRATIONS if definitions is None else definitions
    definition = catalog.get(integration_id)
    if definition is None:
        return {"env_vars": [], "scopes": [], "additional_steps": []}

    prefix = definition.env_prefix
    additional_steps: List[str] = []
    if definition.webhooks:
        additional_steps.append("Configure webhook endpoints in your provider dashboard")
    if definition.required_fields:
        additional_steps.append(
            f"Additional fields required: {', '.join(definition.required_fields)}"
        )

    return {
        "env_vars": [
            f"CREWFLOW_{prefix}_CLIENT_ID",
            f"CREWFLOW_{prefix}_CLIENT_SECRET",
        ],
        "scopes": list(definition.scopes),
        "additional_steps": additional_steps,
    }
