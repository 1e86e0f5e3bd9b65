"""
auth/refresh.py -- Keep the tiers of a credential bundle fresh.

Each tier is refreshed on its own. A tier whose access token expires within
the buffer is renewed with its own refresh token and its own scope set; the
result is written into that tier only, and only when the granted scope string
carries the tier's marker. An IdP that quietly returns a narrower grant
cannot overwrite a working record with one that lacks the tier's access.

ensure_fresh() never raises for token problems. The caller gets a
RefreshResult and decides whether partial freshness is good enough (for
example resource-manager tokens fresh, directory tokens stale).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Optional

from auth.oauth import TokenEndpointClient
from auth.scopes import ScopeProfileResolver
from auth.store import CredentialStore
from cache.store import CredentialCache
from core.errors import TokenExchangeFailed, VaultError
from core.models import Clock, CredentialBundle, ScopeTier, utc_now

logger = logging.getLogger("credvault.auth.refresh")

# IdP error codes meaning the refresh token itself is dead.
_RECONSENT_ERRORS = frozenset({"invalid_grant", "interaction_required", "consent_required"})


@dataclass
class RefreshResult:
    bundle: CredentialBundle
    refreshed: list[ScopeTier] = field(default_factory=list)
    failed: list[ScopeTier] = field(default_factory=list)
    reconsent_required: list[ScopeTier] = field(default_factory=list)
    persisted: bool = False

    @property
    def refreshed_any(self) -> bool:
        return bool(self.refreshed)


class TokenRefreshEngine:
    """Renews expiring tiers and persists the updated bundle.

    Usage:
        engine = TokenRefreshEngine(token_client, scopes, store, cache)
        result = engine.ensure_fresh(bundle, ScopeTier.BOTH)
        if result.reconsent_required:
            ...  # send the user through the authorization flow for those tiers
    """

    def __init__(
        self,
        token_client: TokenEndpointClient,
        scopes: ScopeProfileResolver,
        store: CredentialStore,
        cache: CredentialCache,
        buffer: timedelta = timedelta(minutes=5),
        clock: Clock = utc_now,
    ) -> None:
        self._token_client = token_client
        self._scopes = scopes
        self._store = store
        self._cache = cache
        self.buffer = buffer
        self._clock = clock

    def ensure_fresh(
        self,
        bundle: CredentialBundle,
        tier: ScopeTier,
        force: bool = False,
        timeout: Optional[float] = None,
    ) -> RefreshResult:
        """Refresh every tier in `tier` that is inside the buffer (or all of them with force=True)."""
        now = self._clock()
        result = RefreshResult(bundle=bundle)

        for part in tier.parts():
            tokens = result.bundle.tokens_for(part)
            if tokens is None:
                result.reconsent_required.append(part)
                continue
            if not force and not tokens.expires_within(now, self.buffer):
                continue
            if not tokens.refresh_token:
                logger.warning(
                    "No refresh token for %s tier of client %s; re-consent required",
                    part.name,
                    bundle.client_ref,
                )
                result.reconsent_required.append(part)
                continue

            try:
                response = self._token_client.exchange_refresh_token(
                    tokens.refresh_token,
                    self._scopes.scopes_for(part),
                    timeout=timeout,
                )
            except TokenExchangeFailed as e:
                logger.warning(
                    "Refresh of %s tier failed for client %s: %s",
                    part.name,
                    bundle.client_ref,
                    e,
                )
                result.failed.append(part)
                if e.error in _RECONSENT_ERRORS:
                    result.reconsent_required.append(part)
                continue

            if not self._scopes.has_marker(part, response.scope):
                logger.warning(
                    "Refresh response for %s tier of client %s lacks the tier's scope; keeping previous tokens",
                    part.name,
                    bundle.client_ref,
                )
                result.failed.append(part)
                continue

            result.bundle = result.bundle.with_tier(part, response.to_tier_tokens())
            result.refreshed.append(part)
            logger.info("Refreshed %s tier for client %s", part.name, bundle.client_ref)

        if result.refreshed_any:
            result.bundle = replace(result.bundle, stored_at=now)
            try:
                self._store.put(result.bundle)
                result.persisted = True
            except VaultError as e:
                logger.error(
                    "Refreshed tokens for client %s could not be stored: %s",
                    bundle.client_ref,
                    e,
                )
            self._cache.invalidate(bundle.tenant_ref, bundle.client_ref)

        return result
