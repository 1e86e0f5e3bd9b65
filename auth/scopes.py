"""
auth/scopes.py -- Scope tiers -> provider scope strings and readable permissions.

ScopeProfileResolver is built once at startup (from_settings) and never
re-reads configuration. Each tier maps to an immutable tuple of scope
strings; when configuration leaves a tier empty, the built-in defaults below
are used.

Tier markers: a token response "belongs" to a tier only if its granted scope
string contains one of the tier's markers. The refresh engine and the
callback handler use has_marker() to refuse writing a response into a tier it
does not actually authorize (an IdP can silently return fewer scopes than
requested).
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from types import MappingProxyType
from typing import Optional

from core.config import Settings
from core.models import ScopeTier

RESOURCE_MANAGER_RESOURCE = "https://management.azure.com/"
GRAPH_RESOURCE = "https://graph.microsoft.com/"

# offline_access is what makes the IdP return a refresh token.
DEFAULT_SCOPES: Mapping[ScopeTier, tuple[str, ...]] = MappingProxyType(
    {
        ScopeTier.RESOURCE_MANAGER: (
            f"{RESOURCE_MANAGER_RESOURCE}user_impersonation",
            "offline_access",
            "openid",
            "profile",
            "email",
        ),
        ScopeTier.DIRECTORY_GRAPH: (
            f"{GRAPH_RESOURCE}Directory.Read.All",
            f"{GRAPH_RESOURCE}User.Read.All",
            f"{GRAPH_RESOURCE}Application.Read.All",
            f"{GRAPH_RESOURCE}Policy.Read.All",
            "offline_access",
        ),
    }
)

TIER_MARKERS: Mapping[ScopeTier, tuple[str, ...]] = MappingProxyType(
    {
        ScopeTier.RESOURCE_MANAGER: ("management.azure.com", "user_impersonation"),
        # The IdP often echoes Graph scopes without the resource prefix.
        ScopeTier.DIRECTORY_GRAPH: ("graph.microsoft.com", "Directory.Read.All", "User.Read.All"),
    }
)

PERMISSIONS: Mapping[ScopeTier, tuple[str, ...]] = MappingProxyType(
    {
        ScopeTier.RESOURCE_MANAGER: (
            "Read subscriptions, resource groups and resources",
            "Read role assignments on Azure resources",
            "Read cost and billing data where permitted",
        ),
        ScopeTier.DIRECTORY_GRAPH: (
            "Read directory data (users, groups, devices)",
            "Read registered applications and service principals",
            "Read conditional access and authentication policies",
        ),
    }
)

# Granted-scope token -> description. Keys are compared after stripping the
# Graph resource prefix, so both "Directory.Read.All" and
# "https://graph.microsoft.com/Directory.Read.All" match.
_GRANTED_DESCRIPTIONS: Mapping[str, str] = MappingProxyType(
    {
        f"{RESOURCE_MANAGER_RESOURCE}user_impersonation": "Access Azure Resource Manager as the signed-in user",
        "Directory.Read.All": "Read directory data",
        "User.Read.All": "Read all users' full profiles",
        "User.Read": "Sign in and read user profile",
        "Group.Read.All": "Read all groups",
        "Application.Read.All": "Read all applications",
        "Policy.Read.All": "Read your organization's policies",
        "Policy.Read.ConditionalAccess": "Read conditional access policies",
        "RoleManagement.Read.Directory": "Read directory role assignments",
        "Device.Read.All": "Read all devices",
        "SecurityEvents.Read.All": "Read security events",
        "IdentityRiskyUser.Read.All": "Read identity risky user information",
        "AuditLog.Read.All": "Read audit log data",
        "offline_access": "Maintain access to data you have given it access to",
        "openid": "Sign users in",
        "profile": "View users' basic profile",
        "email": "View users' email address",
    }
)


class ScopeProfileResolver:
    def __init__(self, configured: Optional[Mapping[ScopeTier, Sequence[str]]] = None) -> None:
        configured = configured or {}
        scopes: dict[ScopeTier, tuple[str, ...]] = {}
        for tier in (ScopeTier.RESOURCE_MANAGER, ScopeTier.DIRECTORY_GRAPH):
            values = tuple(s for s in configured.get(tier, ()) if s)
            scopes[tier] = values or DEFAULT_SCOPES[tier]
        self._scopes: Mapping[ScopeTier, tuple[str, ...]] = MappingProxyType(scopes)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScopeProfileResolver":
        return cls(
            {
                ScopeTier.RESOURCE_MANAGER: settings.resource_manager_scopes,
                ScopeTier.DIRECTORY_GRAPH: settings.directory_scopes,
            }
        )

    def scopes_for(self, tier: ScopeTier) -> list[str]:
        """Ordered, de-duplicated scope strings for a tier (BOTH = resource manager then directory)."""
        result: list[str] = []
        for part in tier.parts():
            for scope in self._scopes[part]:
                if scope not in result:
                    result.append(scope)
        return result

    def permissions_for(self, tier: ScopeTier) -> list[str]:
        """Human-readable capabilities for consent summaries. Not used for authorization."""
        return [p for part in tier.parts() for p in PERMISSIONS[part]]

    @staticmethod
    def parse_granted(scope_string: Optional[str]) -> list[str]:
        """Describe each granted scope token; unknown tokens are dropped."""
        descriptions: list[str] = []
        for token in (scope_string or "").split():
            key = token[len(GRAPH_RESOURCE) :] if token.startswith(GRAPH_RESOURCE) else token
            description = _GRANTED_DESCRIPTIONS.get(key)
            if description and description not in descriptions:
                descriptions.append(description)
        return descriptions

    @staticmethod
    def has_marker(tier: ScopeTier, scope_string: Optional[str]) -> bool:
        """True if the granted scope string authorizes this single tier."""
        if not scope_string:
            return False
        return any(marker in scope_string for marker in TIER_MARKERS[tier])
