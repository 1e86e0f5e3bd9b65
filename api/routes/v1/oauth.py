"""
api/routes/v1/oauth.py -- Authorization flow and credential management endpoints.

Routes:
  POST   /api/v1/tenants/{tenant_id}/oauth/initiate                 -- start a flow (rate-limited)
  GET    /api/v1/oauth/progress/{progress_id}                       -- poll vault provisioning
  GET    /api/v1/oauth/callback                                     -- IdP redirect target; 302 to frontend
  GET    /api/v1/oauth/errors/{state}                               -- one-time read of a flow error
  GET    /api/v1/tenants/{tenant_id}/clients/{client_id}/oauth      -- credential status (no secrets)
  POST   /api/v1/tenants/{tenant_id}/clients/{client_id}/oauth/refresh
  POST   /api/v1/tenants/{tenant_id}/clients/{client_id}/oauth/test -- call the resource manager with the token
  DELETE /api/v1/tenants/{tenant_id}/clients/{client_id}/oauth      -- revoke; 204

Handlers are plain `def`: every service call blocks on network or vault I/O,
so FastAPI runs them in its thread pool. CredentialError subclasses raised by
the services are mapped to status codes by the handler in api/main.py.

Caller identity is not checked here; tenant ids arrive in the path.
"""

from __future__ import annotations

from typing import Annotated, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from api.limiter import limiter
from api.models import (
    REF_PATTERN,
    CredentialCheckResponse,
    CredentialStatusResponse,
    ErrorDetail,
    FlowErrorResponse,
    InitiateRequest,
    InitiateResponse,
    ProgressResponse,
    RefreshResponse,
    ScopeTierEnum,
)
from auth.service import Services
from core.config import get_settings
from core.errors import describe_idp_error

_CALLBACK_FAILED_MESSAGE = "Authorization could not be completed. Please start again."

TenantId = Annotated[str, Path(pattern=REF_PATTERN)]
ClientId = Annotated[str, Path(pattern=REF_PATTERN)]

router = APIRouter()


def _services(request: Request) -> Services:
    return request.app.state.services


def _not_found(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=404, detail=ErrorDetail(code=code, message=message).model_dump())


def _initiate_limit() -> str:
    return get_settings().initiate_rate_limit


# ---------------------------------------------------------------------------
# Authorization flow
# ---------------------------------------------------------------------------


@limiter.limit(_initiate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/tenants/{tenant_id}/oauth/initiate", response_model=InitiateResponse)
def initiate(request: Request, tenant_id: TenantId, body: InitiateRequest) -> InitiateResponse:
    """Start an authorization flow for a client.

    When the tenant's vault already exists the response carries the
    authorization URL; otherwise it carries a progress_id to poll while the
    vault is created in the background.
    """
    result = _services(request).flow.initiate_flow(
        body.client_id,
        tenant_id,
        body.scope_tier.to_tier(),
        description=body.description,
        client_name=body.client_name,
    )
    return InitiateResponse.from_result(result)


@router.get("/oauth/progress/{progress_id}", response_model=ProgressResponse)
def progress(request: Request, progress_id: str) -> ProgressResponse:
    current = _services(request).flow.get_progress(progress_id)
    if current is None:
        raise _not_found("progress_not_found", "Progress id is unknown or has expired.")
    return ProgressResponse.from_progress(current)


@router.get("/oauth/callback")
def callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
) -> RedirectResponse:
    """IdP redirect target. Always answers with a 302 to the frontend.

    Details of a failure are not put in the URL beyond a short message; the
    frontend reads the full record once from /oauth/errors/{state}.
    """
    services = _services(request)
    ok = services.flow.handle_callback(code, state, error=error, error_description=error_description)
    frontend = services.settings.frontend_url.rstrip("/")
    if ok:
        return RedirectResponse(f"{frontend}/oauth/success?{urlencode({'state': state})}", status_code=302)

    if error:
        _, message = describe_idp_error(error, error_description)
    else:
        message = _CALLBACK_FAILED_MESSAGE
    query = urlencode({"state": state or "", "message": message})
    return RedirectResponse(f"{frontend}/oauth/error?{query}", status_code=302)


@router.get("/oauth/errors/{state}", response_model=FlowErrorResponse)
def flow_error(request: Request, state: str) -> FlowErrorResponse:
    record = _services(request).flow.get_flow_error(state)
    if record is None:
        raise _not_found("flow_error_not_found", "No error recorded for this state, or it was already read.")
    return FlowErrorResponse.from_record(record)


# ---------------------------------------------------------------------------
# Stored credentials
# ---------------------------------------------------------------------------


@router.get("/tenants/{tenant_id}/clients/{client_id}/oauth", response_model=CredentialStatusResponse)
def credential_status(request: Request, tenant_id: TenantId, client_id: ClientId) -> CredentialStatusResponse:
    status = _services(request).credentials.status(tenant_id, client_id)
    if status is None:
        raise _not_found("credentials_not_found", f"No credentials stored for client {client_id}.")
    return CredentialStatusResponse.from_status(status)


@router.post("/tenants/{tenant_id}/clients/{client_id}/oauth/refresh", response_model=RefreshResponse)
def refresh_credentials(
    request: Request,
    tenant_id: TenantId,
    client_id: ClientId,
    tier: Annotated[ScopeTierEnum, Query()] = ScopeTierEnum.Both,
) -> RefreshResponse:
    """Force a refresh of the requested tiers. Per-tier failures are reported, not raised."""
    result = _services(request).credentials.refresh(tenant_id, client_id, tier.to_tier(), force=True)
    if result is None:
        raise _not_found("credentials_not_found", f"No credentials stored for client {client_id}.")
    return RefreshResponse.from_result(result)


@router.post("/tenants/{tenant_id}/clients/{client_id}/oauth/test", response_model=CredentialCheckResponse)
def check_credentials(request: Request, tenant_id: TenantId, client_id: ClientId) -> CredentialCheckResponse:
    return CredentialCheckResponse(valid=_services(request).credentials.verify_access(tenant_id, client_id))


@router.delete("/tenants/{tenant_id}/clients/{client_id}/oauth", status_code=204)
def revoke_credentials(request: Request, tenant_id: TenantId, client_id: ClientId) -> Response:
    """Soft-delete the stored credentials. Idempotent."""
    _services(request).credentials.revoke(tenant_id, client_id)
    return Response(status_code=204)
