"""
vault/provisioner.py -- Check for and create per-tenant secret vaults.

Every tenant gets its own vault named {prefix}-{environment}-{tenantShort}-{suffix}.
The name is recomputed on every call; there is no lookup table to drift out
of sync with reality.

provision() reports progress at fixed milestones and stops at 90% -- the
flow coordinator reports 100% only after it has also built the authorization
URL. Creation races are resolved by the backend: "already exists" is success.

Layer rule: vault/ imports from core/ only.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from core.config import Settings
from core.errors import ProvisioningFailed
from vault.base import SecretVault, VaultManager, VaultOutcome, VaultParameters, vault_name
from vault.bootstrap import (
    APP_OBJECT_ID,
    DIRECTORY_TENANT_ID,
    LOCATION,
    RESOURCE_GROUP,
    SUBSCRIPTION_ID,
    BootstrapResolver,
)

logger = logging.getLogger("credvault.vault.provisioner")

# (message, percentage) -> None
ProgressCallback = Callable[[str, int], None]

VAULT_PURPOSE = "oauth-credential-bundles"


def _noop_progress(message: str, percentage: int) -> None:
    pass


class SecretVaultProvisioner:
    """Owns the mapping tenant -> vault and the vault lifecycle.

    Usage:
        provisioner = SecretVaultProvisioner(settings, manager, bootstrap)
        provisioner.ensure_exists("3f2504e0-4f89-11d3-9a0c-0305e82c3301")
        vault = provisioner.open("3f2504e0-4f89-11d3-9a0c-0305e82c3301")
    """

    def __init__(
        self,
        settings: Settings,
        manager: VaultManager,
        bootstrap: BootstrapResolver,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._manager = manager
        self._bootstrap = bootstrap
        self._sleep = sleep
        self._timeout = settings.http_timeout_seconds

    def vault_name(self, tenant_ref: str) -> str:
        s = self._settings
        return vault_name(s.vault_prefix, s.environment, tenant_ref, s.vault_unique_suffix)

    def open(self, tenant_ref: str) -> SecretVault:
        return self._manager.open(self.vault_name(tenant_ref))

    def exists(self, tenant_ref: str) -> bool:
        """Probe the vault by listing its first page of secrets.

        Not found / unresolvable host -> False. Anything else that fails is
        raised (VaultUnavailable for transient failures, VaultError otherwise)
        rather than being reported as "missing".
        """
        name = self.vault_name(tenant_ref)
        result = self._manager.open(name).probe(timeout=self._timeout)
        if result.outcome == VaultOutcome.NOT_FOUND:
            logger.debug("Vault %s does not exist or is not reachable", name)
            return False
        result.raise_for_failure(f"Checking vault {name}")
        logger.debug("Vault %s exists", name)
        return True

    def ensure_exists(self, tenant_ref: str) -> None:
        """Idempotent: create the tenant vault if it is missing.

        Raises ConfigurationMissing before any create attempt if a bootstrap
        value cannot be resolved.
        """
        if self.exists(tenant_ref):
            return
        logger.info("Vault %s does not exist, creating it", self.vault_name(tenant_ref))
        self.provision(tenant_ref)

    def provision(self, tenant_ref: str, on_progress: Optional[ProgressCallback] = None) -> None:
        """Create the tenant vault, reporting progress up to 90%.

        Raises ConfigurationMissing for missing bootstrap values and
        ProvisioningFailed when the backend rejects the create.
        """
        report = on_progress or _noop_progress
        name = self.vault_name(tenant_ref)

        report("Reading configuration...", 20)
        subscription_id = self._bootstrap.get(SUBSCRIPTION_ID)
        resource_group = self._bootstrap.get(RESOURCE_GROUP)
        location = self._bootstrap.get(LOCATION)

        report("Validating permissions...", 30)
        directory_tenant = self._bootstrap.get(DIRECTORY_TENANT_ID)
        principal_id = self._bootstrap.get(APP_OBJECT_ID)

        report("Configuring secure storage...", 50)
        params = VaultParameters(
            name=name,
            location=location,
            tenant_id=directory_tenant,
            principal_id=principal_id,
            subscription_id=subscription_id,
            resource_group=resource_group,
            tags={
                "Purpose": VAULT_PURPOSE,
                "Tenant": tenant_ref,
                "Environment": self._settings.environment,
                "CreatedBy": "credvault",
            },
        )

        report("Creating secure storage...", 70)
        logger.info("Provisioning vault %s for tenant %s in %s", name, tenant_ref, location)
        result = self._manager.create(params, timeout=self._settings.provisioning_timeout_seconds)
        if not result.is_ok:
            logger.error("Vault %s creation failed (%s): %s", name, result.outcome.value, result.error)
            raise ProvisioningFailed(f"Could not create vault {name}: {result.error}")

        report("Finalizing secure storage...", 85)
        if self._settings.provisioning_settle_seconds > 0:
            self._sleep(self._settings.provisioning_settle_seconds)

        logger.info("Vault %s ready for tenant %s", name, tenant_ref)
        report("Secure storage ready", 90)
