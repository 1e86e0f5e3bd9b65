"""
vault/bootstrap.py -- Resolve bootstrap values from the environment or the app's own vault.

Provisioning a tenant vault needs values only an administrator can supply:
the subscription and region to create it in, the directory tenant, and the
principal id of this application (for the access policy). Token exchange
needs the OAuth client id and secret.

Resolution order per value:
  1. Settings field (environment / .env).
  2. Secret in the bootstrap vault (BOOTSTRAP_VAULT_URL), when configured.
  3. Default, if the value has one.
  4. ConfigurationMissing with remediation text.

Resolved values are memoized for the process lifetime; bootstrap secrets are
not expected to change without a restart.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from core.config import Settings
from core.errors import ConfigurationMissing
from vault.base import SecretVault, VaultOutcome

logger = logging.getLogger("credvault.vault.bootstrap")


@dataclass(frozen=True)
class BootstrapValue:
    setting: str  # Settings attribute name
    secret: str  # secret name in the bootstrap vault
    hint: str  # how an administrator finds the value
    default: Optional[str] = None


SUBSCRIPTION_ID = BootstrapValue(
    "azure_subscription_id",
    "azure-subscription-id",
    "Find it with: az account show --query id -o tsv",
)
RESOURCE_GROUP = BootstrapValue(
    "azure_resource_group",
    "azure-resource-group-name",
    "Use the resource group that should hold tenant vaults.",
    default="rg-credvault-dev",
)
LOCATION = BootstrapValue(
    "azure_location",
    "azure-location",
    "Use an Azure region name, e.g. canadacentral. List them with: az account list-locations -o table",
)
DIRECTORY_TENANT_ID = BootstrapValue(
    "azure_tenant_id",
    "azure-tenant-id",
    "Find it with: az account show --query tenantId -o tsv",
)
APP_OBJECT_ID = BootstrapValue(
    "app_object_id",
    "app-object-id",
    "Find it with: az ad sp list --display-name '<app name>' --query '[0].id' -o tsv",
)
OAUTH_CLIENT_ID = BootstrapValue(
    "oauth_client_id",
    "oauth-client-id",
    "Use the application (client) id of the app registration.",
)
OAUTH_CLIENT_SECRET = BootstrapValue(
    "oauth_client_secret",
    "oauth-client-secret",
    "Create one under the app registration's 'Certificates & secrets'.",
)

PROVISIONING_VALUES = (SUBSCRIPTION_ID, RESOURCE_GROUP, LOCATION, DIRECTORY_TENANT_ID, APP_OBJECT_ID)


class BootstrapResolver:
    """Looks up bootstrap values; see module docstring for the order."""

    def __init__(self, settings: Settings, bootstrap_vault: Optional[SecretVault] = None) -> None:
        self._settings = settings
        self._vault = bootstrap_vault
        self._resolved: dict[str, str] = {}

    def get(self, value: BootstrapValue) -> str:
        cached = self._resolved.get(value.setting)
        if cached is not None:
            return cached

        resolved = getattr(self._settings, value.setting, "") or self._from_vault(value) or value.default
        if not resolved:
            env_var = value.setting.upper()
            where = f"Set {env_var} in the environment"
            if self._vault is not None:
                where += f" or add secret '{value.secret}' to vault '{self._vault.name}'"
            raise ConfigurationMissing(env_var, f"{where}. {value.hint}")

        self._resolved[value.setting] = resolved
        return resolved

    def require_all(self, values=PROVISIONING_VALUES) -> dict[str, str]:
        """Resolve every value up front so a missing one fails before any side effect."""
        return {v.setting: self.get(v) for v in values}

    def _from_vault(self, value: BootstrapValue) -> Optional[str]:
        if self._vault is None:
            return None
        result = self._vault.get_secret(value.secret)
        if result.outcome == VaultOutcome.NOT_FOUND:
            logger.warning("%s not found in bootstrap vault %s", value.secret, self._vault.name)
            return None
        result.raise_for_failure(f"Reading bootstrap secret {value.secret}")
        logger.debug("Using %s from bootstrap vault", value.secret)
        return result.value or None
