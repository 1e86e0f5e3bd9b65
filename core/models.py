"""
core/models.py -- Domain dataclasses for the credential lifecycle.

Pattern: Data class. Stores, the refresh engine, and the flow coordinator do
the work; these types own the shape and the invariants that can be expressed
structurally.

Token records are frozen. A refresh produces a new CredentialBundle through
with_tier(), so updating one tier can never touch the other tier's fields.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum, IntFlag
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Scope tiers
# ---------------------------------------------------------------------------


class ScopeTier(IntFlag):
    """Which downstream API surface(s) a credential authorizes.

    The integer values double as the AvailableScopes bitmask persisted with a
    bundle: RESOURCE_MANAGER=1, DIRECTORY_GRAPH=2, BOTH=3.
    """

    NONE = 0
    RESOURCE_MANAGER = 1
    DIRECTORY_GRAPH = 2
    BOTH = RESOURCE_MANAGER | DIRECTORY_GRAPH

    def parts(self) -> list["ScopeTier"]:
        """Single tiers contained in this value, resource manager first."""
        return [t for t in (ScopeTier.RESOURCE_MANAGER, ScopeTier.DIRECTORY_GRAPH) if t & self]

    @classmethod
    def from_name(cls, name: str) -> "ScopeTier":
        """Parse 'ResourceManager' / 'resource_manager' / 'Both' style names."""
        key = name.replace("-", "_").strip()
        aliases = {
            "resourcemanager": cls.RESOURCE_MANAGER,
            "resource_manager": cls.RESOURCE_MANAGER,
            "directorygraph": cls.DIRECTORY_GRAPH,
            "directory_graph": cls.DIRECTORY_GRAPH,
            "directory": cls.DIRECTORY_GRAPH,
            "both": cls.BOTH,
        }
        try:
            return aliases[key.lower()]
        except KeyError:
            raise ValueError(f"Unknown scope tier: {name!r}") from None


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TierTokens:
    """One fully populated token set for a single tier.

    A tier is either represented by a complete TierTokens or absent from the
    bundle entirely -- there is no partially filled record. refresh_token may
    be empty when the IdP did not issue one; such a record cannot be renewed
    without re-consent.
    """

    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: str

    def expires_within(self, now: datetime, buffer: timedelta) -> bool:
        return self.expires_at <= now + buffer


@dataclass(frozen=True)
class CredentialBundle:
    """Durable record for one (tenant, client) pair, stored as a single secret."""

    tenant_ref: str
    client_ref: str
    client_name: str = ""
    resource_manager: Optional[TierTokens] = None
    directory: Optional[TierTokens] = None
    stored_at: Optional[datetime] = None

    @property
    def available_scopes(self) -> ScopeTier:
        tier = ScopeTier.NONE
        if self.resource_manager is not None:
            tier |= ScopeTier.RESOURCE_MANAGER
        if self.directory is not None:
            tier |= ScopeTier.DIRECTORY_GRAPH
        return tier

    def tokens_for(self, tier: ScopeTier) -> Optional[TierTokens]:
        if tier == ScopeTier.RESOURCE_MANAGER:
            return self.resource_manager
        if tier == ScopeTier.DIRECTORY_GRAPH:
            return self.directory
        raise ValueError(f"tokens_for() needs a single tier, got {tier!r}")

    def with_tier(self, tier: ScopeTier, tokens: Optional[TierTokens]) -> "CredentialBundle":
        """Return a copy with exactly one tier's record replaced."""
        if tier == ScopeTier.RESOURCE_MANAGER:
            return replace(self, resource_manager=tokens)
        if tier == ScopeTier.DIRECTORY_GRAPH:
            return replace(self, directory=tokens)
        raise ValueError(f"with_tier() needs a single tier, got {tier!r}")

    def populated(self) -> list[TierTokens]:
        return [t for t in (self.resource_manager, self.directory) if t is not None]

    def earliest_expiry(self) -> Optional[datetime]:
        expiries = [t.expires_at for t in self.populated()]
        return min(expiries) if expiries else None


@dataclass(frozen=True)
class TokenResponse:
    """Normalized token endpoint response."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: str = ""
    token_type: str = "Bearer"

    def to_tier_tokens(self) -> TierTokens:
        return TierTokens(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
            scope=self.scope,
        )


# ---------------------------------------------------------------------------
# Authorization flow
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthorizationRequest:
    """Pending authorization, cached under its state value until the callback."""

    client_ref: str
    tenant_ref: str
    tier: ScopeTier
    redirect_uri: str
    created_at: datetime
    client_name: str = ""
    description: Optional[str] = None


@dataclass(frozen=True)
class FlowErrorRecord:
    """Failure captured for a state value; read once by the frontend."""

    error: str
    description: Optional[str]
    recoverable: bool
    user_message: str
    timestamp: datetime
    # Raw IdP error code when the IdP itself reported the failure.
    provider_error: Optional[str] = None


@dataclass(frozen=True)
class FlowInitResult:
    """Result of initiating a flow.

    Either authorization_url/state are set (vault ready), or
    requires_provisioning is True and progress_id must be polled.
    """

    expires_at: datetime
    requested_tier: ScopeTier
    requested_permissions: list[str]
    authorization_url: Optional[str] = None
    state: Optional[str] = None
    requires_provisioning: bool = False
    progress_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Provisioning progress
# ---------------------------------------------------------------------------


class ProvisioningStatus(str, Enum):
    CREATING = "Creating"
    COMPLETED = "Completed"
    FAILED = "Failed"


@dataclass(frozen=True)
class ProvisioningProgress:
    progress_id: str
    status: ProvisioningStatus
    message: str
    percentage: int = 0
    authorization_url: Optional[str] = None
    state: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != ProvisioningStatus.CREATING
