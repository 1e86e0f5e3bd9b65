"""
API request and response models for the credential REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.

No response model carries a token value. Credential status exposes expiries,
granted permissions and whether a refresh token exists -- nothing a caller
could replay.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.credentials import CredentialStatus
from auth.refresh import RefreshResult
from core.models import FlowErrorRecord, FlowInitResult, ProvisioningProgress, ScopeTier

# Tenant and client references end up in vault and secret names.
REF_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9-]{0,63}$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ScopeTierEnum(str, Enum):
    ResourceManager = "ResourceManager"
    DirectoryGraph = "DirectoryGraph"
    Both = "Both"

    def to_tier(self) -> ScopeTier:
        return ScopeTier.from_name(self.value)


def tier_label(tier: ScopeTier) -> str:
    """ScopeTier -> the API's tier name ("ResourceManager" / "DirectoryGraph" / "Both" / "None")."""
    labels = {
        ScopeTier.RESOURCE_MANAGER: ScopeTierEnum.ResourceManager.value,
        ScopeTier.DIRECTORY_GRAPH: ScopeTierEnum.DirectoryGraph.value,
        ScopeTier.BOTH: ScopeTierEnum.Both.value,
    }
    return labels.get(tier, "None")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class InitiateRequest(BaseModel):
    """Request body for POST /api/v1/tenants/{tenant_id}/oauth/initiate."""

    model_config = ConfigDict(str_strip_whitespace=True)

    client_id: str = Field(pattern=REF_PATTERN, description="Client record the credentials belong to.")
    client_name: str = Field(default="", max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    scope_tier: ScopeTierEnum = ScopeTierEnum.ResourceManager


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class InitiateResponse(BaseModel):
    """Either authorization_url/state (vault ready) or progress_id (vault being created)."""

    model_config = ConfigDict(frozen=True)

    authorization_url: Optional[str] = None
    state: Optional[str] = None
    requires_provisioning: bool = False
    progress_id: Optional[str] = None
    expires_at: datetime
    requested_tier: str
    requested_permissions: list[str]

    @classmethod
    def from_result(cls, result: FlowInitResult) -> "InitiateResponse":
        return cls(
            authorization_url=result.authorization_url,
            state=result.state,
            requires_provisioning=result.requires_provisioning,
            progress_id=result.progress_id,
            expires_at=result.expires_at,
            requested_tier=tier_label(result.requested_tier),
            requested_permissions=list(result.requested_permissions),
        )


class ProgressResponse(BaseModel):
    """Progress polling contract for GET /api/v1/oauth/progress/{progress_id}."""

    model_config = ConfigDict(frozen=True)

    progress_id: str
    status: str
    message: str
    percentage: int
    authorization_url: Optional[str] = None
    state: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_progress(cls, progress: ProvisioningProgress) -> "ProgressResponse":
        return cls(
            progress_id=progress.progress_id,
            status=progress.status.value,
            message=progress.message,
            percentage=progress.percentage,
            authorization_url=progress.authorization_url,
            state=progress.state,
            expires_at=progress.expires_at,
        )


class FlowErrorResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    error: str
    description: Optional[str] = None
    recoverable: bool
    user_message: str
    timestamp: datetime
    provider_error: Optional[str] = None

    @classmethod
    def from_record(cls, record: FlowErrorRecord) -> "FlowErrorResponse":
        return cls(
            error=record.error,
            provider_error=record.provider_error,
            description=record.description,
            recoverable=record.recoverable,
            user_message=record.user_message,
            timestamp=record.timestamp,
        )


class TierStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: str
    expires_at: datetime
    expired: bool
    has_refresh_token: bool
    granted_permissions: list[str]


class CredentialStatusResponse(BaseModel):
    """Non-secret view of stored credentials for GET .../clients/{client_id}/oauth."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    client_id: str
    client_name: str
    available_scopes: str
    stored_at: Optional[datetime] = None
    tiers: list[TierStatusResponse]

    @classmethod
    def from_status(cls, status: CredentialStatus) -> "CredentialStatusResponse":
        return cls(
            tenant_id=status.tenant_ref,
            client_id=status.client_ref,
            client_name=status.client_name,
            available_scopes=tier_label(status.available_scopes),
            stored_at=status.stored_at,
            tiers=[
                TierStatusResponse(
                    tier=tier_label(t.tier),
                    expires_at=t.expires_at,
                    expired=t.expired,
                    has_refresh_token=t.has_refresh_token,
                    granted_permissions=list(t.granted_permissions),
                )
                for t in status.tiers
            ],
        )


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    refreshed_any: bool
    refreshed: list[str]
    failed: list[str]
    reconsent_required: list[str]
    persisted: bool

    @classmethod
    def from_result(cls, result: RefreshResult) -> "RefreshResponse":
        return cls(
            refreshed_any=result.refreshed_any,
            refreshed=[tier_label(t) for t in result.refreshed],
            failed=[tier_label(t) for t in result.failed],
            reconsent_required=[tier_label(t) for t in result.reconsent_required],
            persisted=result.persisted,
        )


class CredentialCheckResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
