"""
tests/test_azure_vault.py -- Unit tests for vault/azure.py.

No network: SecretClient and KeyVaultManagementClient are replaced with
MagicMock, and azure.core exceptions are raised directly.

Coverage:
  - classify_azure_error(): every branch, including probe-only NOT_FOUND for unresolvable hosts
  - AzureSecretVault: probe fetches one page, get/set/delete map exceptions to outcomes
  - AzureVaultManager.create(): already-exists is success, None result is transient
  - build_create_parameters(): deny-by-default ACL, secrets-only policy, soft delete, tags
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceRequestTimeoutError,
    ServiceResponseError,
)
from azure.mgmt.keyvault.models import NetworkRuleAction, SecretPermissions

from vault.azure import AzureSecretVault, AzureVaultManager, build_create_parameters, classify_azure_error, vault_url
from vault.base import VaultOutcome, VaultParameters


def _http_error(status: int) -> HttpResponseError:
    err = HttpResponseError(message=f"HTTP {status}")
    err.status_code = status
    return err


def _params() -> VaultParameters:
    return VaultParameters(
        name="kv-dev-3f2504e0-cmp001",
        location="eastus",
        tenant_id="dir-tenant",
        principal_id="app-object",
        subscription_id="sub",
        resource_group="rg",
        tags={"Purpose": "oauth-credential-bundles", "Tenant": "3f2504e0"},
    )


class TestClassifyAzureError:
    @pytest.mark.parametrize(
        "exc,expected",
        [
            (ResourceNotFoundError("gone"), VaultOutcome.NOT_FOUND),
            (ClientAuthenticationError("denied"), VaultOutcome.FATAL),
            (ServiceRequestTimeoutError("slow"), VaultOutcome.TRANSIENT),
            (ServiceRequestError("dns"), VaultOutcome.TRANSIENT),
            (ServiceResponseError("reset"), VaultOutcome.TRANSIENT),
        ],
    )
    def test_exception_types(self, exc, expected) -> None:
        assert classify_azure_error(exc).outcome == expected

    @pytest.mark.parametrize("status", [408, 429, 500, 503])
    def test_transient_status_codes(self, status: int) -> None:
        assert classify_azure_error(_http_error(status)).outcome == VaultOutcome.TRANSIENT

    def test_404_status_is_not_found(self) -> None:
        assert classify_azure_error(_http_error(404)).outcome == VaultOutcome.NOT_FOUND

    def test_403_status_is_fatal(self) -> None:
        assert classify_azure_error(_http_error(403)).outcome == VaultOutcome.FATAL

    def test_unresolvable_host_is_not_found_only_when_probing(self) -> None:
        exc = ServiceRequestError("Name or service not known")
        assert classify_azure_error(exc, missing_host_is_not_found=True).outcome == VaultOutcome.NOT_FOUND
        assert classify_azure_error(exc).outcome == VaultOutcome.TRANSIENT

    def test_timeout_is_never_not_found(self) -> None:
        exc = ServiceRequestTimeoutError("timed out")
        assert classify_azure_error(exc, missing_host_is_not_found=True).outcome == VaultOutcome.TRANSIENT


class TestAzureSecretVault:
    def test_probe_reads_first_page_only(self) -> None:
        client = MagicMock()
        pages = iter([["secret-1"], ["secret-2"]])
        client.list_properties_of_secrets.return_value.by_page.return_value = pages
        assert AzureSecretVault("kv", client).probe(timeout=3).is_ok
        assert next(pages) == ["secret-2"]
        client.list_properties_of_secrets.assert_called_once_with(connection_timeout=3, read_timeout=3)

    def test_probe_unresolvable_host(self) -> None:
        def failing_pages():
            raise ServiceRequestError("getaddrinfo failed")
            yield  # pragma: no cover

        client = MagicMock()
        client.list_properties_of_secrets.return_value.by_page.return_value = failing_pages()
        assert AzureSecretVault("kv", client).probe().outcome == VaultOutcome.NOT_FOUND

    def test_probe_permission_denied_is_fatal(self) -> None:
        client = MagicMock()
        client.list_properties_of_secrets.side_effect = ClientAuthenticationError("forbidden")
        assert AzureSecretVault("kv", client).probe().outcome == VaultOutcome.FATAL

    def test_get_secret_value(self) -> None:
        client = MagicMock()
        client.get_secret.return_value = MagicMock(value="payload")
        result = AzureSecretVault("kv", client).get_secret("s")
        assert result.is_ok and result.value == "payload"

    def test_get_missing_secret(self) -> None:
        client = MagicMock()
        client.get_secret.side_effect = ResourceNotFoundError("missing")
        assert AzureSecretVault("kv", client).get_secret("s").outcome == VaultOutcome.NOT_FOUND

    def test_set_secret_marks_json(self) -> None:
        client = MagicMock()
        assert AzureSecretVault("kv", client).set_secret("s", "{}").is_ok
        client.set_secret.assert_called_once_with("s", "{}", content_type="application/json")

    def test_set_secret_throttled(self) -> None:
        client = MagicMock()
        client.set_secret.side_effect = _http_error(429)
        assert AzureSecretVault("kv", client).set_secret("s", "{}").outcome == VaultOutcome.TRANSIENT

    def test_delete_does_not_wait_for_poller(self) -> None:
        client = MagicMock()
        assert AzureSecretVault("kv", client).start_delete_secret("s").is_ok
        client.begin_delete_secret.assert_called_once_with("s")
        client.begin_delete_secret.return_value.wait.assert_not_called()

    def test_delete_missing_secret(self) -> None:
        client = MagicMock()
        client.begin_delete_secret.side_effect = ResourceNotFoundError("missing")
        assert AzureSecretVault("kv", client).start_delete_secret("s").outcome == VaultOutcome.NOT_FOUND

    def test_from_url_derives_name(self) -> None:
        vault = AzureSecretVault.from_url("https://kv-app-main.vault.azure.net/", credential=MagicMock())
        assert vault.name == "kv-app-main"


class TestAzureVaultManager:
    def test_open_caches_clients(self) -> None:
        manager = AzureVaultManager(credential=MagicMock())
        first = manager.open("kv-dev-3f2504e0-cmp001")
        assert manager.open("kv-dev-3f2504e0-cmp001") is first
        assert vault_url(first.name) == "https://kv-dev-3f2504e0-cmp001.vault.azure.net/"

    @patch("vault.azure.KeyVaultManagementClient")
    def test_create_success(self, mgmt_cls) -> None:
        poller = mgmt_cls.return_value.vaults.begin_create_or_update.return_value
        poller.result.return_value = MagicMock(name="vault")
        result = AzureVaultManager(credential=MagicMock()).create(_params(), timeout=30)
        assert result.is_ok
        args = mgmt_cls.return_value.vaults.begin_create_or_update.call_args.args
        assert args[0] == "rg" and args[1] == "kv-dev-3f2504e0-cmp001"
        poller.result.assert_called_once_with(timeout=30)

    @patch("vault.azure.KeyVaultManagementClient")
    def test_create_already_exists_is_ok(self, mgmt_cls) -> None:
        mgmt_cls.return_value.vaults.begin_create_or_update.side_effect = ResourceExistsError("exists")
        assert AzureVaultManager(credential=MagicMock()).create(_params()).is_ok

    @patch("vault.azure.KeyVaultManagementClient")
    def test_create_conflict_status_is_ok(self, mgmt_cls) -> None:
        mgmt_cls.return_value.vaults.begin_create_or_update.side_effect = _http_error(409)
        assert AzureVaultManager(credential=MagicMock()).create(_params()).is_ok

    @patch("vault.azure.KeyVaultManagementClient")
    def test_create_forbidden_is_fatal(self, mgmt_cls) -> None:
        mgmt_cls.return_value.vaults.begin_create_or_update.side_effect = _http_error(403)
        assert AzureVaultManager(credential=MagicMock()).create(_params()).outcome == VaultOutcome.FATAL

    @patch("vault.azure.KeyVaultManagementClient")
    def test_create_still_running_is_transient(self, mgmt_cls) -> None:
        mgmt_cls.return_value.vaults.begin_create_or_update.return_value.result.return_value = None
        assert AzureVaultManager(credential=MagicMock()).create(_params()).outcome == VaultOutcome.TRANSIENT


class TestBuildCreateParameters:
    def test_network_denied_by_default(self) -> None:
        params = build_create_parameters(_params())
        assert params.properties.network_acls.default_action == NetworkRuleAction.DENY

    def test_access_policy_is_secrets_only(self) -> None:
        policy = build_create_parameters(_params()).properties.access_policies[0]
        assert policy.object_id == "app-object"
        assert set(policy.permissions.secrets) == {
            SecretPermissions.GET,
            SecretPermissions.LIST,
            SecretPermissions.SET,
            SecretPermissions.DELETE,
        }
        assert not policy.permissions.keys

    def test_soft_delete_and_purge_protection(self) -> None:
        props = build_create_parameters(_params()).properties
        assert props.enable_soft_delete is True
        assert props.enable_purge_protection is True
        assert props.soft_delete_retention_in_days == 7

    def test_tags_include_purpose_and_created_at(self) -> None:
        params = build_create_parameters(_params())
        assert params.tags["Purpose"] == "oauth-credential-bundles"
        assert params.tags["Tenant"] == "3f2504e0"
        assert "CreatedAt" in params.tags
        assert params.location == "eastus"
