"""
tests/test_flow.py -- Integration tests for auth/flow.py (AuthorizationFlowCoordinator).

Uses the real component graph from conftest (local vault, real store/cache/
progress) with the token endpoint mocked. Background provisioning really runs
on the executor; tests wait for the progress entry to reach a terminal state.

Coverage:
  - Vault missing: initiate returns a progress id, provisioning completes with a URL
  - Vault present: initiate returns URL + state synchronously
  - State values are unique and single use; unknown/expired state -> False, no record
  - IdP error -> one-time FlowErrorRecord with a classified code, pending state discarded
  - Code exchange failure / missing primary scope -> recorded error
  - Directory exchange failure is non-fatal; a failed upgrade keeps resource-manager access;
    a stored directory tier survives an upgrade
  - Provisioning failures (missing config, crash) end as Failed progress
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import CLIENT, DG_SCOPE, RM_SCOPE, TENANT, make_bundle, make_token_response, wait_for
from core.errors import TokenExchangeFailed
from core.models import ProvisioningStatus, ScopeTier


@pytest.fixture
def ready(services):
    """Services with the tenant vault already provisioned."""
    services.provisioner.ensure_exists(TENANT)
    return services


def _terminal_progress(services, progress_id):
    def finished():
        progress = services.flow.get_progress(progress_id)
        return progress if progress is not None and progress.is_terminal else None

    return wait_for(finished)


class TestInitiateWithoutVault:
    def test_provisioning_then_authorization_url(self, services) -> None:
        result = services.flow.initiate_flow(CLIENT, TENANT, ScopeTier.BOTH, client_name="Contoso")

        assert result.requires_provisioning
        assert result.authorization_url is None
        assert result.progress_id

        progress = _terminal_progress(services, result.progress_id)
        assert progress.status == ProvisioningStatus.COMPLETED
        assert progress.percentage == 100
        assert progress.authorization_url.startswith(services.settings.authorize_url)
        assert progress.state
        assert services.provisioner.exists(TENANT)

    def test_state_from_progress_completes_callback(self, services, clock) -> None:
        result = services.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER)
        progress = _terminal_progress(services, result.progress_id)
        services.token_client.exchange_code.return_value = make_token_response(clock.now, RM_SCOPE)

        assert services.flow.handle_callback("auth-code", progress.state)
        assert services.store.get(TENANT, CLIENT).resource_manager.access_token == "new-access"

    def test_missing_configuration_fails_progress(self, services) -> None:
        services.settings.azure_location = ""
        result = services.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER)
        progress = _terminal_progress(services, result.progress_id)
        assert progress.status == ProvisioningStatus.FAILED
        assert "administrator" in progress.message
        assert progress.authorization_url is None

    def test_crashed_task_fails_progress(self, services) -> None:
        with patch.object(services.provisioner, "provision", side_effect=RuntimeError("boom")):
            result = services.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER)
            progress = _terminal_progress(services, result.progress_id)
        assert progress.status == ProvisioningStatus.FAILED
        wait_for(lambda: services.flow.pending_tasks() == 0)

    def test_none_tier_rejected(self, services) -> None:
        with pytest.raises(ValueError):
            services.flow.initiate_flow(CLIENT, TENANT, ScopeTier.NONE)


class TestInitiateWithVault:
    def test_returns_url_synchronously(self, ready) -> None:
        result = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER)
        assert not result.requires_provisioning
        query = parse_qs(urlparse(result.authorization_url).query)
        assert query["client_id"] == ["app-client-id"]
        assert query["response_type"] == ["code"]
        assert query["state"] == [result.state]
        assert "https://management.azure.com/user_impersonation" in query["scope"][0].split()
        assert result.requested_permissions == ready.scopes.permissions_for(ScopeTier.RESOURCE_MANAGER)

    def test_state_values_are_unique(self, ready) -> None:
        states = {ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.BOTH).state for _ in range(20)}
        assert len(states) == 20

    def test_expiry_is_state_ttl(self, ready, clock) -> None:
        result = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.BOTH)
        assert (result.expires_at - clock.now).total_seconds() == ready.settings.state_ttl_seconds


class TestCallback:
    def test_unknown_state(self, ready) -> None:
        assert not ready.flow.handle_callback("code", "never-issued")
        assert ready.flow.get_flow_error("never-issued") is None
        ready.token_client.exchange_code.assert_not_called()

    def test_state_is_single_use(self, ready, clock) -> None:
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER).state
        ready.token_client.exchange_code.return_value = make_token_response(clock.now, RM_SCOPE)
        assert ready.flow.handle_callback("code", state)
        assert not ready.flow.handle_callback("code", state)
        assert ready.token_client.exchange_code.call_count == 1

    def test_expired_state(self, ready, clock) -> None:
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER).state
        clock.advance(seconds=ready.settings.state_ttl_seconds)
        assert not ready.flow.handle_callback("code", state)
        assert ready.flow.purge_expired() == 0

    def test_idp_error_recorded_once(self, ready) -> None:
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER).state
        assert not ready.flow.handle_callback(None, state, error="access_denied", error_description="User declined")

        record = ready.flow.get_flow_error(state)
        assert record.error == "authorization_denied"
        assert record.provider_error == "access_denied"
        assert record.recoverable
        assert "declined" in record.user_message
        assert ready.flow.get_flow_error(state) is None
        # The pending request is gone too.
        assert not ready.flow.handle_callback("code", state)

    def test_unknown_idp_error_uses_provider_description(self, ready) -> None:
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER).state
        ready.flow.handle_callback(None, state, error="weird_error", error_description="Something odd")
        record = ready.flow.get_flow_error(state)
        assert not record.recoverable
        assert record.user_message == "Something odd"
        assert record.error == "token_exchange_failed"
        assert record.provider_error == "weird_error"

    def test_code_exchange_failure_recorded(self, ready) -> None:
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER).state
        ready.token_client.exchange_code.side_effect = TokenExchangeFailed(
            "rejected", status_code=400, error="invalid_grant", description="AADSTS70008: code expired"
        )
        assert not ready.flow.handle_callback("code", state)
        record = ready.flow.get_flow_error(state)
        assert record.error == "token_exchange_failed"
        assert record.description == "AADSTS70008: code expired"
        assert not record.recoverable
        assert ready.store.get(TENANT, CLIENT) is None

    def test_missing_code_recorded(self, ready) -> None:
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER).state
        assert not ready.flow.handle_callback(None, state)
        assert ready.flow.get_flow_error(state).error == "token_exchange_failed"

    def test_grant_without_primary_scope_rejected(self, ready, clock) -> None:
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER).state
        ready.token_client.exchange_code.return_value = make_token_response(clock.now, "openid profile")
        assert not ready.flow.handle_callback("code", state)
        assert ready.flow.get_flow_error(state) is not None
        assert ready.store.get(TENANT, CLIENT) is None


class TestCallbackStorage:
    def test_both_tiers_stored(self, ready, clock) -> None:
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.BOTH, client_name="Contoso").state
        ready.token_client.exchange_code.return_value = make_token_response(clock.now, RM_SCOPE, "rm2")
        ready.token_client.exchange_refresh_token.return_value = make_token_response(clock.now, DG_SCOPE, "dg2")

        assert ready.flow.handle_callback("code", state)

        bundle = ready.store.get(TENANT, CLIENT)
        assert bundle.available_scopes == ScopeTier.BOTH
        assert bundle.resource_manager.access_token == "rm2-access"
        assert bundle.directory.access_token == "dg2-access"
        assert bundle.client_name == "Contoso"
        # The directory exchange redeems the refresh token issued with the code.
        assert ready.token_client.exchange_refresh_token.call_args.args[0] == "rm2-refresh"

    def test_directory_failure_is_not_fatal(self, ready, clock) -> None:
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.BOTH).state
        ready.token_client.exchange_code.return_value = make_token_response(clock.now, RM_SCOPE)
        ready.token_client.exchange_refresh_token.side_effect = TokenExchangeFailed("no graph", status_code=400)

        assert ready.flow.handle_callback("code", state)
        assert ready.store.get(TENANT, CLIENT).available_scopes == ScopeTier.RESOURCE_MANAGER

    def test_failed_upgrade_keeps_resource_manager_access(self, ready, clock) -> None:
        """RM -> Both with a failing directory exchange still leaves a usable RM tier only."""
        ready.store.put(make_bundle(clock.now, rm_minutes=60))
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.BOTH).state
        ready.token_client.exchange_code.return_value = make_token_response(clock.now, RM_SCOPE, "rm2")
        ready.token_client.exchange_refresh_token.side_effect = TokenExchangeFailed("no graph", status_code=400)

        assert ready.flow.handle_callback("code", state)

        bundle = ready.store.get(TENANT, CLIENT)
        assert bundle.available_scopes == ScopeTier.RESOURCE_MANAGER
        assert bundle.directory is None
        assert bundle.resource_manager.access_token == "rm2-access"
        assert bundle.resource_manager.refresh_token == "rm2-refresh"
        assert ready.credentials.get_access_token(TENANT, CLIENT, ScopeTier.RESOURCE_MANAGER) == "rm2-access"

    def test_upgrade_keeps_existing_directory_tier(self, ready, clock) -> None:
        previous = make_bundle(clock.now, rm_minutes=60, dg_minutes=60)
        ready.store.put(previous)
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.BOTH).state
        ready.token_client.exchange_code.return_value = make_token_response(clock.now, RM_SCOPE, "rm2")
        ready.token_client.exchange_refresh_token.return_value = make_token_response(clock.now, "openid", "x")

        assert ready.flow.handle_callback("code", state)

        bundle = ready.store.get(TENANT, CLIENT)
        assert bundle.resource_manager.access_token == "rm2-access"
        assert bundle.directory == previous.directory

    def test_callback_invalidates_cache(self, ready, clock) -> None:
        ready.cache.put(TENANT, CLIENT, make_bundle(clock.now))
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER).state
        ready.token_client.exchange_code.return_value = make_token_response(clock.now, RM_SCOPE)
        ready.flow.handle_callback("code", state)
        assert ready.cache.get(TENANT, CLIENT) is None

    def test_directory_only_flow_exchanges_code_for_directory_scopes(self, ready, clock) -> None:
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.DIRECTORY_GRAPH).state
        ready.token_client.exchange_code.return_value = make_token_response(clock.now, DG_SCOPE)

        assert ready.flow.handle_callback("code", state)

        assert ready.token_client.exchange_code.call_args.args[2] == ready.scopes.scopes_for(ScopeTier.DIRECTORY_GRAPH)
        ready.token_client.exchange_refresh_token.assert_not_called()
        assert ready.store.get(TENANT, CLIENT).available_scopes == ScopeTier.DIRECTORY_GRAPH


class TestHousekeeping:
    def test_purge_expired_counts_states_and_errors(self, ready, clock) -> None:
        ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER)
        state = ready.flow.initiate_flow(CLIENT, TENANT, ScopeTier.RESOURCE_MANAGER).state
        ready.flow.handle_callback(None, state, error="access_denied")
        clock.advance(minutes=11)
        assert ready.flow.purge_expired() == 2

    def test_service_purge_removes_soft_deleted_local_secrets(self, ready) -> None:
        with patch.object(ready.manager, "purge_deleted", return_value=3) as purge:
            assert ready.purge_expired() == 3
        purge.assert_called_once_with(timedelta(days=ready.settings.local_vault_retention_days))
