"""
vault/base.py -- Secret vault contract shared by the Azure and local backends.

Every vault call returns a VaultResult tagged with an outcome instead of
raising a provider-specific exception. Callers branch on the outcome:

  OK         -- the call succeeded; value holds the payload (if any).
  NOT_FOUND  -- the secret (or, for probe/open, the vault itself) is absent.
  TRANSIENT  -- network/DNS/throttling; safe for the caller to retry later.
  FATAL      -- anything else (authorization, malformed request, ...).

Only the store and provisioner convert TRANSIENT/FATAL into exceptions
(VaultUnavailable / VaultError), at the boundary where a caller needs one.

Layer rule: vault/ imports from core/ only.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

from core.errors import VaultError, VaultUnavailable


class VaultOutcome(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class VaultResult:
    outcome: VaultOutcome
    value: Any = None
    error: Optional[BaseException] = None

    @classmethod
    def ok(cls, value: Any = None) -> "VaultResult":
        return cls(VaultOutcome.OK, value)

    @classmethod
    def not_found(cls, error: Optional[BaseException] = None) -> "VaultResult":
        return cls(VaultOutcome.NOT_FOUND, error=error)

    @property
    def is_ok(self) -> bool:
        return self.outcome == VaultOutcome.OK

    def raise_for_failure(self, context: str) -> None:
        """Raise VaultUnavailable for TRANSIENT and VaultError for FATAL; no-op otherwise."""
        if self.outcome == VaultOutcome.TRANSIENT:
            raise VaultUnavailable(f"{context}: {self.error}") from self.error
        if self.outcome == VaultOutcome.FATAL:
            raise VaultError(f"{context}: {self.error}") from self.error


@dataclass(frozen=True)
class VaultParameters:
    """Everything needed to create one tenant vault."""

    name: str
    location: str
    tenant_id: str
    principal_id: str
    subscription_id: str
    resource_group: str
    tags: dict[str, str] = field(default_factory=dict)


class SecretVault(Protocol):
    """Data-plane operations on one vault.

    timeout bounds a single call in seconds; None uses the backend default.
    """

    name: str

    def probe(self, timeout: Optional[float] = None) -> VaultResult:
        """List the first page of secrets. NOT_FOUND when the vault does not exist or its host does not resolve."""
        ...

    def get_secret(self, name: str, timeout: Optional[float] = None) -> VaultResult: ...

    def set_secret(self, name: str, value: str, timeout: Optional[float] = None) -> VaultResult: ...

    def start_delete_secret(self, name: str, timeout: Optional[float] = None) -> VaultResult:
        """Soft delete; NOT_FOUND when there is nothing to delete."""
        ...


class VaultManager(Protocol):
    """Control-plane: open a vault client by name, create a vault."""

    def open(self, name: str) -> SecretVault: ...

    def create(self, params: VaultParameters, timeout: Optional[float] = None) -> VaultResult:
        """Create the vault. An 'already exists' response is reported as OK."""
        ...


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def tenant_short_id(tenant_ref: str) -> str:
    """First 8 lowercase alphanumerics of the tenant id ('3F2504E0-4F89-...' -> '3f2504e0')."""
    short = _NON_ALNUM.sub("", tenant_ref.lower())[:8]
    if not short:
        raise ValueError(f"Tenant reference {tenant_ref!r} has no alphanumeric characters")
    return short


def vault_name(prefix: str, environment: str, tenant_ref: str, suffix: str) -> str:
    """Deterministic per-tenant vault name. No index is stored; always recompute."""
    return f"{prefix}-{environment}-{tenant_short_id(tenant_ref)}-{suffix}"


def secret_name_for_client(client_ref: str) -> str:
    """Secret holding one client's credential bundle."""
    return f"client-{client_ref}-oauth-tokens"
