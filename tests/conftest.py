"""
tests/conftest.py -- Shared test fixtures for the credential service tests.

This module provides:
  - FakeClock: injectable clock that tests advance by hand
  - make_bundle() / make_token_response(): domain object builders
  - settings: Settings with every bootstrap value set and no settle delay
  - vault_manager: LocalVaultManager on a fresh named shared-memory SQLite DB
  - token_client: MagicMock standing in for TokenEndpointClient
  - services: real component graph (build_services) over the local vault
  - api_client: TestClient with a patched lifespan wired to `services`

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool and provisioning runs
on an executor thread. Plain :memory: DBs are per-connection and would
present a blank schema to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.oauth import TokenEndpointClient
from auth.service import Services, build_services
from core.config import Settings
from core.models import CredentialBundle, TierTokens, TokenResponse
from vault.bootstrap import BootstrapResolver
from vault.local import LocalVaultManager

TENANT = "3f2504e0-4f89-11d3-9a0c-0305e82c3301"
CLIENT = "client-1"

RM_SCOPE = "https://management.azure.com/user_impersonation offline_access openid profile email"
DG_SCOPE = "https://graph.microsoft.com/Directory.Read.All https://graph.microsoft.com/User.Read.All offline_access"

START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock; advance() moves time without sleeping."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_tokens(clock_now: datetime, minutes: int = 60, scope: str = RM_SCOPE, tag: str = "rm") -> TierTokens:
    return TierTokens(
        access_token=f"{tag}-access",
        refresh_token=f"{tag}-refresh",
        expires_at=clock_now + timedelta(minutes=minutes),
        scope=scope,
    )


def make_bundle(
    now: datetime = START,
    rm_minutes: Optional[int] = 60,
    dg_minutes: Optional[int] = None,
    tenant: str = TENANT,
    client: str = CLIENT,
) -> CredentialBundle:
    return CredentialBundle(
        tenant_ref=tenant,
        client_ref=client,
        client_name="Contoso",
        resource_manager=make_tokens(now, rm_minutes) if rm_minutes is not None else None,
        directory=make_tokens(now, dg_minutes, DG_SCOPE, "dg") if dg_minutes is not None else None,
        stored_at=now,
    )


def make_token_response(
    now: datetime = START,
    scope: str = RM_SCOPE,
    tag: str = "new",
    minutes: int = 60,
    refresh_token: Optional[str] = None,
) -> TokenResponse:
    return TokenResponse(
        access_token=f"{tag}-access",
        refresh_token=refresh_token if refresh_token is not None else f"{tag}-refresh",
        expires_at=now + timedelta(minutes=minutes),
        scope=scope,
    )


def memory_db_url(prefix: str = "vault") -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def wait_for(predicate, timeout: float = 5.0):
    """Poll predicate until it returns a truthy value (for background provisioning)."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(0.01)
    raise AssertionError("condition not met before timeout")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        environment="dev",
        vault_backend="local",
        vault_prefix="kv",
        vault_unique_suffix="cmp001",
        azure_subscription_id="00000000-0000-0000-0000-000000000001",
        azure_resource_group="rg-test",
        azure_location="eastus",
        azure_tenant_id="11111111-1111-1111-1111-111111111111",
        app_object_id="22222222-2222-2222-2222-222222222222",
        oauth_client_id="app-client-id",
        oauth_client_secret="app-client-secret",
        bootstrap_vault_url="",
        provisioning_settle_seconds=0,
        frontend_url="http://frontend.test",
    )


@pytest.fixture
def vault_manager() -> Generator[LocalVaultManager, None, None]:
    manager = LocalVaultManager(memory_db_url())
    yield manager
    manager.close()


@pytest.fixture
def token_client() -> MagicMock:
    return MagicMock(spec=TokenEndpointClient)


@pytest.fixture
def services(settings, vault_manager, token_client, clock) -> Generator[Services, None, None]:
    """Real component graph with the token endpoint client swapped for a mock."""
    svc = build_services(
        settings,
        manager=vault_manager,
        bootstrap=BootstrapResolver(settings),
        token_client=token_client,
        clock=clock,
    )
    yield svc
    svc.flow.shutdown(wait=True)


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.services = services
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(services) -> Generator[tuple[TestClient, Services], None, None]:
    """Yield (client, services) for API integration tests.

    follow_redirects=False so callback tests can assert on the Location header.
    """
    app.router.lifespan_context = _patch_lifespan(services)
    limiter.reset()
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, services
