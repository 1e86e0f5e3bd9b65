"""
auth/store.py -- Vault-backed persistence for credential bundles.

Pattern: Repository + Data Mapper (same shape as the other stores).
CredentialStore is the repository; _bundle_to_json / _json_to_bundle are the
mappers. Nothing outside this module knows the stored JSON layout.

One secret per (tenant, client): client-{client}-oauth-tokens in the tenant's
vault. put() overwrites the whole value -- last writer wins. Two refreshes
racing for the same bundle both succeed; the loser's newly issued refresh
token is simply never stored, and the next read refreshes again if needed.
There is no optimistic-concurrency check to rely on.

Stored layout (version 1):
    {
      "version": 1,
      "tenant_ref": "...", "client_ref": "...", "client_name": "...",
      "stored_at": "2025-01-01T00:00:00+00:00",
      "available_scopes": 3,
      "resource_manager": {"access_token", "refresh_token", "expires_at", "scope"} | null,
      "directory": {...} | null
    }

Layer rule: auth/ may import from core/, vault/, and cache/; never from api/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional

from core.errors import VaultError
from core.models import CredentialBundle, TierTokens
from vault.base import VaultOutcome, secret_name_for_client
from vault.provisioner import SecretVaultProvisioner

logger = logging.getLogger("credvault.auth.store")

_FORMAT_VERSION = 1


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------


def _tokens_to_dict(tokens: Optional[TierTokens]) -> Optional[dict[str, str]]:
    if tokens is None:
        return None
    return {
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "expires_at": tokens.expires_at.isoformat(),
        "scope": tokens.scope,
    }


def _dict_to_tokens(data: Optional[dict[str, Any]]) -> Optional[TierTokens]:
    # A record missing its access token is treated as absent -- no partial tiers.
    if not data or not data.get("access_token"):
        return None
    return TierTokens(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or "",
        expires_at=datetime.fromisoformat(data["expires_at"]),
        scope=data.get("scope") or "",
    )


def _bundle_to_json(bundle: CredentialBundle) -> str:
    return json.dumps(
        {
            "version": _FORMAT_VERSION,
            "tenant_ref": bundle.tenant_ref,
            "client_ref": bundle.client_ref,
            "client_name": bundle.client_name,
            "stored_at": bundle.stored_at.isoformat() if bundle.stored_at else None,
            "available_scopes": int(bundle.available_scopes),
            "resource_manager": _tokens_to_dict(bundle.resource_manager),
            "directory": _tokens_to_dict(bundle.directory),
        }
    )


def _json_to_bundle(raw: str) -> CredentialBundle:
    data = json.loads(raw)
    stored_at = data.get("stored_at")
    return CredentialBundle(
        tenant_ref=data["tenant_ref"],
        client_ref=data["client_ref"],
        client_name=data.get("client_name") or "",
        resource_manager=_dict_to_tokens(data.get("resource_manager")),
        directory=_dict_to_tokens(data.get("directory")),
        stored_at=datetime.fromisoformat(stored_at) if stored_at else None,
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Reads and writes credential bundles in per-tenant vaults.

    Usage:
        store = CredentialStore(provisioner)
        store.put(bundle)
        bundle = store.get("tenant", "client")   # None if never stored or revoked
        store.revoke("tenant", "client")
    """

    def __init__(self, provisioner: SecretVaultProvisioner, timeout: Optional[float] = None) -> None:
        self._provisioner = provisioner
        self._timeout = timeout

    def get(self, tenant_ref: str, client_ref: str) -> Optional[CredentialBundle]:
        """Return the stored bundle, or None if there is none.

        Ensures the tenant vault exists first, so a vault deleted out of band
        is recreated (empty) instead of failing every read. Transient vault
        failures raise VaultUnavailable; other failures raise VaultError.
        """
        self._provisioner.ensure_exists(tenant_ref)
        vault = self._provisioner.open(tenant_ref)
        result = vault.get_secret(secret_name_for_client(client_ref), timeout=self._timeout)
        if result.outcome == VaultOutcome.NOT_FOUND:
            logger.info("No stored credentials for client %s (tenant %s)", client_ref, tenant_ref)
            return None
        result.raise_for_failure(f"Reading credentials for client {client_ref}")
        try:
            return _json_to_bundle(result.value)
        except (ValueError, KeyError, TypeError) as e:
            raise VaultError(f"Stored credentials for client {client_ref} are unreadable: {e}") from e

    def put(self, bundle: CredentialBundle) -> None:
        """Overwrite the stored bundle wholesale."""
        vault = self._provisioner.open(bundle.tenant_ref)
        result = vault.set_secret(
            secret_name_for_client(bundle.client_ref),
            _bundle_to_json(bundle),
            timeout=self._timeout,
        )
        if result.outcome == VaultOutcome.NOT_FOUND:
            raise VaultError(f"Vault {vault.name} does not exist; cannot store credentials")
        result.raise_for_failure(f"Storing credentials for client {bundle.client_ref}")
        logger.info(
            "Stored credentials for client %s (tenant %s, scopes=%s)",
            bundle.client_ref,
            bundle.tenant_ref,
            bundle.available_scopes.name or int(bundle.available_scopes),
        )

    def revoke(self, tenant_ref: str, client_ref: str) -> None:
        """Soft-delete the stored bundle. Already absent counts as revoked."""
        vault = self._provisioner.open(tenant_ref)
        result = vault.start_delete_secret(secret_name_for_client(client_ref), timeout=self._timeout)
        if result.outcome == VaultOutcome.NOT_FOUND:
            logger.info("No credentials to revoke for client %s (tenant %s)", client_ref, tenant_ref)
            return
        result.raise_for_failure(f"Revoking credentials for client {client_ref}")
        logger.info("Credentials revoked for client %s (tenant %s)", client_ref, tenant_ref)
