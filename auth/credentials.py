"""
auth/credentials.py -- Read path for code that needs a usable bearer token.

Analyzers and other downstream callers go through CredentialProvider:

    cache hit (every populated tier outside the buffer)  -> bundle
    cache miss -> CredentialStore.get -> TokenRefreshEngine.ensure_fresh
               -> CredentialCache.put -> bundle

get_access_token() is the one call most consumers need. It raises
ReconsentRequired when the tier has never been authorized or cannot be made
valid again without the user.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import requests

from auth.refresh import RefreshResult, TokenRefreshEngine
from auth.scopes import ScopeProfileResolver
from auth.store import CredentialStore
from cache.store import CredentialCache
from core.errors import ReconsentRequired
from core.models import Clock, CredentialBundle, ScopeTier, utc_now

logger = logging.getLogger("credvault.auth.credentials")

VERIFY_URL = "https://management.azure.com/subscriptions?api-version=2020-01-01"


@dataclass(frozen=True)
class TierStatus:
    tier: ScopeTier
    expires_at: datetime
    expired: bool
    has_refresh_token: bool
    granted_permissions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CredentialStatus:
    """Non-secret view of a stored bundle, safe to hand to a UI."""

    tenant_ref: str
    client_ref: str
    client_name: str
    available_scopes: ScopeTier
    stored_at: Optional[datetime]
    tiers: list[TierStatus]


class CredentialProvider:
    def __init__(
        self,
        store: CredentialStore,
        cache: CredentialCache,
        refresh: TokenRefreshEngine,
        scopes: ScopeProfileResolver,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._cache = cache
        self._refresh = refresh
        self._scopes = scopes
        if session is None:
            session = requests.Session()
            session.max_redirects = 3
        self._session = session
        self._timeout = timeout
        self._clock = clock

    def get_bundle(
        self,
        tenant_ref: str,
        client_ref: str,
        tier: ScopeTier = ScopeTier.RESOURCE_MANAGER,
    ) -> Optional[CredentialBundle]:
        """Return the bundle with the requested tiers refreshed where possible, or None if nothing is stored."""
        cached = self._cache.get(tenant_ref, client_ref)
        if cached is not None and (cached.available_scopes & tier) == tier:
            return cached

        bundle = self._store.get(tenant_ref, client_ref)
        if bundle is None:
            return None
        result = self._refresh.ensure_fresh(bundle, tier, timeout=self._timeout)
        self._cache.put(tenant_ref, client_ref, result.bundle)
        return result.bundle

    def get_access_token(self, tenant_ref: str, client_ref: str, tier: ScopeTier) -> str:
        """Access token for a single tier. Raises ReconsentRequired when none is usable."""
        if len(tier.parts()) != 1:
            raise ValueError(f"get_access_token() needs a single tier, got {tier!r}")
        bundle = self.get_bundle(tenant_ref, client_ref, tier)
        if bundle is None:
            raise ReconsentRequired(tier, f"No credentials stored for client {client_ref}")
        tokens = bundle.tokens_for(tier)
        if tokens is None:
            raise ReconsentRequired(tier, f"Client {client_ref} has not authorized {tier.name} access")
        if tokens.expires_at <= self._clock():
            raise ReconsentRequired(tier, f"{tier.name} access for client {client_ref} has expired")
        return tokens.access_token

    def refresh(
        self,
        tenant_ref: str,
        client_ref: str,
        tier: ScopeTier = ScopeTier.BOTH,
        force: bool = True,
    ) -> Optional[RefreshResult]:
        """Explicit refresh. None when nothing is stored for the client."""
        bundle = self._store.get(tenant_ref, client_ref)
        if bundle is None:
            return None
        result = self._refresh.ensure_fresh(bundle, tier, force=force, timeout=self._timeout)
        self._cache.put(tenant_ref, client_ref, result.bundle)
        return result

    def revoke(self, tenant_ref: str, client_ref: str) -> None:
        self._store.revoke(tenant_ref, client_ref)
        self._cache.invalidate(tenant_ref, client_ref)

    def status(self, tenant_ref: str, client_ref: str) -> Optional[CredentialStatus]:
        bundle = self._store.get(tenant_ref, client_ref)
        if bundle is None:
            return None
        now = self._clock()
        tiers = []
        for tier in bundle.available_scopes.parts():
            tokens = bundle.tokens_for(tier)
            tiers.append(
                TierStatus(
                    tier=tier,
                    expires_at=tokens.expires_at,
                    expired=tokens.expires_at <= now,
                    has_refresh_token=bool(tokens.refresh_token),
                    granted_permissions=self._scopes.parse_granted(tokens.scope),
                )
            )
        return CredentialStatus(
            tenant_ref=bundle.tenant_ref,
            client_ref=bundle.client_ref,
            client_name=bundle.client_name,
            available_scopes=bundle.available_scopes,
            stored_at=bundle.stored_at,
            tiers=tiers,
        )

    def verify_access(self, tenant_ref: str, client_ref: str) -> bool:
        """Call the resource-manager subscriptions listing with the stored token; True on 2xx."""
        try:
            token = self.get_access_token(tenant_ref, client_ref, ScopeTier.RESOURCE_MANAGER)
        except ReconsentRequired as e:
            logger.info("Credential test for client %s: %s", client_ref, e)
            return False
        try:
            resp = self._session.get(
                VERIFY_URL,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.warning("Credential test for client %s could not reach the resource manager: %s", client_ref, e)
            return False
        logger.info("Credential test for client %s returned HTTP %d", client_ref, resp.status_code)
        return resp.ok
