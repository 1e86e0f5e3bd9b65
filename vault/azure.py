"""
vault/azure.py -- Azure Key Vault backend.

Data plane: azure-keyvault-secrets SecretClient, one per vault, cached by name.
Control plane: azure-mgmt-keyvault KeyVaultManagementClient for creation.
Both authenticate with azure-identity DefaultAzureCredential (managed
identity in Azure, `az login` locally, or AZURE_CLIENT_ID/SECRET/TENANT_ID).

classify_azure_error() is the single place where azure.core exceptions are
turned into VaultResult outcomes. A vault that was never created has no DNS
record, so for probe() a request-level connection failure means NOT_FOUND;
for every other call the same failure is TRANSIENT.

Layer rule: vault/ imports from core/ only.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceRequestTimeoutError,
    ServiceResponseError,
)
from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient
from azure.mgmt.keyvault import KeyVaultManagementClient
from azure.mgmt.keyvault.models import (
    AccessPolicyEntry,
    NetworkRuleAction,
    NetworkRuleBypassOptions,
    NetworkRuleSet,
    Permissions,
    SecretPermissions,
    Sku,
    SkuFamily,
    SkuName,
    VaultCreateOrUpdateParameters,
    VaultProperties,
)

from vault.base import VaultOutcome, VaultResult, VaultParameters

logger = logging.getLogger("credvault.vault.azure")

_TRANSIENT_STATUS = frozenset({408, 429, 500, 502, 503, 504})

SOFT_DELETE_RETENTION_DAYS = 7


def vault_url(name: str) -> str:
    return f"https://{name}.vault.azure.net/"


def classify_azure_error(exc: AzureError, missing_host_is_not_found: bool = False) -> VaultResult:
    """Map an azure.core exception to a tagged VaultResult."""
    if isinstance(exc, ResourceNotFoundError):
        return VaultResult(VaultOutcome.NOT_FOUND, error=exc)
    if isinstance(exc, ClientAuthenticationError):
        return VaultResult(VaultOutcome.FATAL, error=exc)
    # Timeout subclasses first: a timeout is never proof of absence.
    if isinstance(exc, ServiceRequestTimeoutError):
        return VaultResult(VaultOutcome.TRANSIENT, error=exc)
    if isinstance(exc, ServiceRequestError):
        outcome = VaultOutcome.NOT_FOUND if missing_host_is_not_found else VaultOutcome.TRANSIENT
        return VaultResult(outcome, error=exc)
    if isinstance(exc, ServiceResponseError):
        return VaultResult(VaultOutcome.TRANSIENT, error=exc)
    if isinstance(exc, HttpResponseError):
        status = exc.status_code
        if status == 404:
            return VaultResult(VaultOutcome.NOT_FOUND, error=exc)
        if status in _TRANSIENT_STATUS:
            return VaultResult(VaultOutcome.TRANSIENT, error=exc)
    return VaultResult(VaultOutcome.FATAL, error=exc)


def _timeout_kwargs(timeout: Optional[float]) -> dict[str, Any]:
    if timeout is None:
        return {}
    return {"connection_timeout": timeout, "read_timeout": timeout}


class AzureSecretVault:
    """SecretVault over one Key Vault's data plane."""

    def __init__(self, name: str, client: SecretClient) -> None:
        self.name = name
        self._client = client

    @classmethod
    def from_url(cls, url: str, credential=None) -> "AzureSecretVault":
        name = url.split("//", 1)[-1].split(".", 1)[0]
        return cls(name, SecretClient(vault_url=url, credential=credential or DefaultAzureCredential()))

    def probe(self, timeout: Optional[float] = None) -> VaultResult:
        try:
            pages = self._client.list_properties_of_secrets(**_timeout_kwargs(timeout)).by_page()
            # Only the first page is fetched; it is enough to prove the vault answers.
            next(pages, None)
        except AzureError as e:
            return classify_azure_error(e, missing_host_is_not_found=True)
        return VaultResult.ok()

    def get_secret(self, name: str, timeout: Optional[float] = None) -> VaultResult:
        try:
            secret = self._client.get_secret(name, **_timeout_kwargs(timeout))
        except AzureError as e:
            return classify_azure_error(e)
        return VaultResult.ok(secret.value)

    def set_secret(self, name: str, value: str, timeout: Optional[float] = None) -> VaultResult:
        try:
            self._client.set_secret(name, value, content_type="application/json", **_timeout_kwargs(timeout))
        except AzureError as e:
            return classify_azure_error(e)
        return VaultResult.ok()

    def start_delete_secret(self, name: str, timeout: Optional[float] = None) -> VaultResult:
        try:
            # Soft delete: the poller is not awaited; the secret is recoverable until purged.
            self._client.begin_delete_secret(name, **_timeout_kwargs(timeout))
        except AzureError as e:
            return classify_azure_error(e)
        return VaultResult.ok()


class AzureVaultManager:
    """VaultManager backed by Azure Resource Manager."""

    def __init__(self, credential=None, connection_timeout: Optional[float] = None) -> None:
        self._credential = credential or DefaultAzureCredential()
        self._connection_timeout = connection_timeout
        self._clients: dict[str, AzureSecretVault] = {}

    def open(self, name: str) -> AzureSecretVault:
        vault = self._clients.get(name)
        if vault is None:
            kwargs: dict[str, Any] = {}
            if self._connection_timeout is not None:
                kwargs["connection_timeout"] = self._connection_timeout
            vault = AzureSecretVault(name, SecretClient(vault_url=vault_url(name), credential=self._credential, **kwargs))
            self._clients[name] = vault
        return vault

    def create(self, params: VaultParameters, timeout: Optional[float] = None) -> VaultResult:
        client = KeyVaultManagementClient(self._credential, params.subscription_id)
        parameters = build_create_parameters(params)
        logger.info(
            "Creating vault %s in %s/%s (%s)",
            params.name,
            params.subscription_id,
            params.resource_group,
            params.location,
        )
        try:
            poller = client.vaults.begin_create_or_update(params.resource_group, params.name, parameters)
            vault = poller.result(timeout=timeout)
        except ResourceExistsError:
            logger.info("Vault %s already exists -- treating create as success", params.name)
            return VaultResult.ok()
        except HttpResponseError as e:
            if e.status_code == 409:
                logger.info("Vault %s already exists (409) -- treating create as success", params.name)
                return VaultResult.ok()
            return classify_azure_error(e)
        except AzureError as e:
            return classify_azure_error(e)
        if vault is None:
            return VaultResult(VaultOutcome.TRANSIENT, error=TimeoutError(f"Vault {params.name} creation still running"))
        return VaultResult.ok(vault)


def build_create_parameters(params: VaultParameters) -> VaultCreateOrUpdateParameters:
    """Vault definition: deny-by-default network ACL, secrets-only access policy for the app."""
    policy = AccessPolicyEntry(
        tenant_id=params.tenant_id,
        object_id=params.principal_id,
        permissions=Permissions(
            secrets=[
                SecretPermissions.GET,
                SecretPermissions.LIST,
                SecretPermissions.SET,
                SecretPermissions.DELETE,
            ]
        ),
    )
    properties = VaultProperties(
        tenant_id=params.tenant_id,
        sku=Sku(family=SkuFamily.A, name=SkuName.STANDARD),
        access_policies=[policy],
        enabled_for_deployment=False,
        enabled_for_disk_encryption=False,
        enabled_for_template_deployment=False,
        enable_soft_delete=True,
        soft_delete_retention_in_days=SOFT_DELETE_RETENTION_DAYS,
        enable_purge_protection=True,
        network_acls=NetworkRuleSet(
            bypass=NetworkRuleBypassOptions.AZURE_SERVICES,
            default_action=NetworkRuleAction.DENY,
        ),
    )
    tags = {"CreatedAt": datetime.now(timezone.utc).strftime("%Y-%m-%d"), **params.tags}
    return VaultCreateOrUpdateParameters(location=params.location, properties=properties, tags=tags)
