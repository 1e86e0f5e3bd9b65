"""
auth/flow.py -- Authorization-code flow: initiate, provision if needed, handle the callback.

Flow lifecycle, per state value:

    initiate_flow()
      vault exists  -> Ready: state cached, authorization URL returned
      vault missing -> ProvisioningInProgress: background task runs
                       provision() and then builds the URL; the caller polls
                       get_progress(progress_id)
    handle_callback()
      pending request popped from the state store (single use)
      -> Consumed(success) | Consumed(failure)
    state TTL elapses unconsumed -> Expired

Background provisioning runs on a ThreadPoolExecutor. Every submitted future
is kept in _tasks and has a done-callback, so a task that dies with an
unexpected exception still lands in the progress tracker as Failed and in
the log with its traceback. Nobody has to be polling for that to happen.

Callback failures are never raised. They are recorded as FlowErrorRecord
under the state value and read once by the frontend via get_flow_error();
the browser that can display them arrives in a different request.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta
from functools import partial
from typing import Optional

from auth.oauth import TokenEndpointClient, build_authorization_url, new_state
from auth.progress import ProgressTracker
from auth.scopes import ScopeProfileResolver
from auth.store import CredentialStore
from cache.store import CredentialCache, ExpiringStore
from core.errors import (
    ConfigurationMissing,
    CredentialError,
    ErrorCode,
    GENERIC_ERROR_MESSAGE,
    TokenExchangeFailed,
    VaultUnavailable,
    classify_idp_error,
    describe_idp_error,
)
from core.models import (
    AuthorizationRequest,
    Clock,
    CredentialBundle,
    FlowErrorRecord,
    FlowInitResult,
    ProvisioningProgress,
    ProvisioningStatus,
    ScopeTier,
    TierTokens,
    utc_now,
)
from vault.provisioner import SecretVaultProvisioner

logger = logging.getLogger("credvault.auth.flow")

_SETUP_FAILED_MESSAGE = "Failed to set up secure storage. Please try again or contact support."
_SETUP_CONFIG_MESSAGE = "Secure storage is not configured for this deployment. Please contact your administrator."
_SETUP_UNAVAILABLE_MESSAGE = "Secure storage is temporarily unavailable. Please try again in a few minutes."
_EXCHANGE_FAILED_MESSAGE = "We could not complete the authorization with your identity provider. Please try again."
_STORE_FAILED_MESSAGE = "Your authorization succeeded but the credentials could not be saved. Please try again."


class AuthorizationFlowCoordinator:
    """Drives the authorization-code handshake for (tenant, client) pairs.

    Usage:
        coordinator = AuthorizationFlowCoordinator(
            client_id=..., authorize_url=..., redirect_uri=...,
            scopes=scopes, provisioner=provisioner, store=store, cache=cache,
            token_client=token_client, progress=ProgressTracker(),
        )
        result = coordinator.initiate_flow("client-1", tenant_id, ScopeTier.BOTH)
        ok = coordinator.handle_callback(code, state)
    """

    def __init__(
        self,
        *,
        client_id: str,
        authorize_url: str,
        redirect_uri: str,
        scopes: ScopeProfileResolver,
        provisioner: SecretVaultProvisioner,
        store: CredentialStore,
        cache: CredentialCache,
        token_client: TokenEndpointClient,
        progress: ProgressTracker,
        executor: Optional[ThreadPoolExecutor] = None,
        state_ttl: timedelta = timedelta(minutes=10),
        error_ttl: timedelta = timedelta(minutes=10),
        clock: Clock = utc_now,
        timeout: Optional[float] = None,
    ) -> None:
        self.client_id = client_id
        self.authorize_url = authorize_url
        self.redirect_uri = redirect_uri
        self._scopes = scopes
        self._provisioner = provisioner
        self._store = store
        self._cache = cache
        self._token_client = token_client
        self._progress = progress
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="provision")
        self._clock = clock
        self._timeout = timeout
        self._pending: ExpiringStore[AuthorizationRequest] = ExpiringStore(state_ttl, clock)
        self._errors: ExpiringStore[FlowErrorRecord] = ExpiringStore(error_ttl, clock)
        self._tasks: dict[str, Future] = {}

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    def initiate_flow(
        self,
        client_ref: str,
        tenant_ref: str,
        tier: ScopeTier,
        description: Optional[str] = None,
        client_name: str = "",
    ) -> FlowInitResult:
        """Start a flow. Never blocks on vault creation.

        Raises VaultUnavailable / VaultError when the existence probe itself
        fails; the caller retries.
        """
        if tier == ScopeTier.NONE:
            raise ValueError("A flow needs at least one scope tier")
        permissions = self._scopes.permissions_for(tier)

        if not self._provisioner.exists(tenant_ref):
            progress_id = str(uuid.uuid4())
            self._progress.start(progress_id)
            future = self._executor.submit(
                self._provision_and_authorize,
                progress_id,
                client_ref,
                tenant_ref,
                tier,
                description,
                client_name,
            )
            self._tasks[progress_id] = future
            future.add_done_callback(partial(self._on_task_done, progress_id))
            logger.info(
                "Vault missing for tenant %s; provisioning in background (progress %s)",
                tenant_ref,
                progress_id,
            )
            return FlowInitResult(
                expires_at=self._progress.expires_at(progress_id) or self._clock(),
                requested_tier=tier,
                requested_permissions=permissions,
                requires_provisioning=True,
                progress_id=progress_id,
            )

        url, state, expires_at = self._begin_authorization(client_ref, tenant_ref, tier, description, client_name)
        return FlowInitResult(
            expires_at=expires_at,
            requested_tier=tier,
            requested_permissions=permissions,
            authorization_url=url,
            state=state,
        )

    def _begin_authorization(
        self,
        client_ref: str,
        tenant_ref: str,
        tier: ScopeTier,
        description: Optional[str],
        client_name: str,
    ) -> tuple[str, str, datetime]:
        state = new_state()
        request = AuthorizationRequest(
            client_ref=client_ref,
            tenant_ref=tenant_ref,
            tier=tier,
            redirect_uri=self.redirect_uri,
            created_at=self._clock(),
            client_name=client_name,
            description=description,
        )
        self._pending.set(state, request)
        url = build_authorization_url(
            self.authorize_url,
            self.client_id,
            self.redirect_uri,
            self._scopes.scopes_for(tier),
            state,
        )
        expires_at = self._pending.expires_at(state) or request.created_at
        logger.info("Authorization flow started for client %s (tenant %s, tier %s)", client_ref, tenant_ref, tier.name)
        return url, state, expires_at

    # ------------------------------------------------------------------
    # Background provisioning
    # ------------------------------------------------------------------

    def _provision_and_authorize(
        self,
        progress_id: str,
        client_ref: str,
        tenant_ref: str,
        tier: ScopeTier,
        description: Optional[str],
        client_name: str,
    ) -> None:
        def report(message: str, percentage: int) -> None:
            self._progress.update(progress_id, ProvisioningStatus.CREATING, message, percentage)

        try:
            self._provisioner.provision(tenant_ref, on_progress=report)
            report("Preparing authorization...", 95)
            url, state, expires_at = self._begin_authorization(client_ref, tenant_ref, tier, description, client_name)
        except ConfigurationMissing as e:
            logger.error("Provisioning for tenant %s blocked by missing configuration: %s", tenant_ref, e)
            self._progress.fail(progress_id, _SETUP_CONFIG_MESSAGE)
            return
        except VaultUnavailable as e:
            logger.warning("Provisioning for tenant %s hit an unavailable vault service: %s", tenant_ref, e)
            self._progress.fail(progress_id, _SETUP_UNAVAILABLE_MESSAGE)
            return
        except CredentialError as e:
            logger.error("Provisioning for tenant %s failed: %s", tenant_ref, e)
            self._progress.fail(progress_id, _SETUP_FAILED_MESSAGE)
            return

        self._progress.complete(progress_id, url, state, expires_at)

    def _on_task_done(self, progress_id: str, future: Future) -> None:
        self._tasks.pop(progress_id, None)
        if future.cancelled():
            logger.warning("Provisioning task %s was cancelled", progress_id)
            self._progress.fail(progress_id, _SETUP_FAILED_MESSAGE)
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Provisioning task %s crashed", progress_id, exc_info=exc)
            self._progress.fail(progress_id, _SETUP_FAILED_MESSAGE)

    def get_progress(self, progress_id: str) -> Optional[ProvisioningProgress]:
        return self._progress.get(progress_id)

    def pending_tasks(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> bool:
        """Complete a flow from the IdP redirect. Returns True only when credentials were stored.

        Unknown, expired or already-used state values return False without
        recording anything. Every other failure is recorded under the state.
        """
        if error:
            # The flow is over either way; a retry starts a new one.
            if state:
                self._pending.discard(state)
            classified = classify_idp_error(error)
            logger.warning("Authorization returned error %s (%s)", error, classified.value)
            if state:
                recoverable, message = describe_idp_error(error, error_description)
                self._record_error(
                    state,
                    classified.value,
                    error_description,
                    recoverable,
                    message,
                    provider_error=error,
                )
            return False

        request = self._pending.pop(state) if state else None
        if request is None:
            logger.warning("Callback with unknown, expired or already used state")
            return False

        if not code:
            self._record_error(
                state,
                ErrorCode.TOKEN_EXCHANGE_FAILED.value,
                "Callback carried no authorization code",
                False,
                _EXCHANGE_FAILED_MESSAGE,
            )
            return False

        primary = request.tier.parts()[0]
        try:
            response = self._token_client.exchange_code(
                code,
                request.redirect_uri,
                self._scopes.scopes_for(primary),
                timeout=self._timeout,
            )
        except TokenExchangeFailed as e:
            logger.error("Code exchange failed for client %s: %s", request.client_ref, e)
            self._record_error(
                state,
                ErrorCode.TOKEN_EXCHANGE_FAILED.value,
                e.description or str(e),
                e.transient,
                _EXCHANGE_FAILED_MESSAGE,
            )
            return False

        if not self._scopes.has_marker(primary, response.scope):
            logger.error(
                "Code exchange for client %s granted no %s access (scope=%r)",
                request.client_ref,
                primary.name,
                response.scope,
            )
            self._record_error(
                state,
                ErrorCode.TOKEN_EXCHANGE_FAILED.value,
                "The granted permissions do not include the requested access",
                True,
                _EXCHANGE_FAILED_MESSAGE,
            )
            return False

        issued: dict[ScopeTier, TierTokens] = {primary: response.to_tier_tokens()}
        if primary == ScopeTier.RESOURCE_MANAGER and request.tier & ScopeTier.DIRECTORY_GRAPH:
            directory = self._exchange_directory(request, response.refresh_token)
            if directory is not None:
                issued[ScopeTier.DIRECTORY_GRAPH] = directory

        try:
            self._merge_and_store(request, issued)
        except CredentialError as e:
            logger.error("Storing credentials for client %s failed: %s", request.client_ref, e)
            self._record_error(
                state,
                ErrorCode.CALLBACK_PROCESSING_FAILED.value,
                str(e),
                isinstance(e, VaultUnavailable),
                _STORE_FAILED_MESSAGE,
            )
            return False

        logger.info(
            "Authorization completed for client %s (tenant %s, issued %s)",
            request.client_ref,
            request.tenant_ref,
            "+".join(t.name for t in issued),
        )
        return True

    def _exchange_directory(self, request: AuthorizationRequest, refresh_token: str) -> Optional[TierTokens]:
        """Second exchange for directory tokens. Failure leaves the directory tier unavailable."""
        if not refresh_token:
            logger.warning("No refresh token issued for client %s; directory access unavailable", request.client_ref)
            return None
        try:
            response = self._token_client.exchange_refresh_token(
                refresh_token,
                self._scopes.scopes_for(ScopeTier.DIRECTORY_GRAPH),
                timeout=self._timeout,
            )
        except TokenExchangeFailed as e:
            logger.warning("Directory token exchange failed for client %s: %s", request.client_ref, e)
            return None
        if not self._scopes.has_marker(ScopeTier.DIRECTORY_GRAPH, response.scope):
            logger.warning("Directory token exchange for client %s returned no directory scope", request.client_ref)
            return None
        return response.to_tier_tokens()

    def _merge_and_store(self, request: AuthorizationRequest, issued: dict[ScopeTier, TierTokens]) -> CredentialBundle:
        existing = self._store.get(request.tenant_ref, request.client_ref)
        bundle = existing or CredentialBundle(tenant_ref=request.tenant_ref, client_ref=request.client_ref)
        for tier, tokens in issued.items():
            bundle = bundle.with_tier(tier, tokens)
        bundle = replace(
            bundle,
            client_name=request.client_name or bundle.client_name,
            stored_at=self._clock(),
        )
        self._store.put(bundle)
        self._cache.invalidate(request.tenant_ref, request.client_ref)
        return bundle

    def _record_error(
        self,
        state: str,
        error: str,
        description: Optional[str],
        recoverable: bool,
        user_message: str,
        provider_error: Optional[str] = None,
    ) -> None:
        self._errors.set(
            state,
            FlowErrorRecord(
                error=error,
                description=description,
                recoverable=recoverable,
                user_message=user_message or GENERIC_ERROR_MESSAGE,
                timestamp=self._clock(),
                provider_error=provider_error,
            ),
        )

    def get_flow_error(self, state: str) -> Optional[FlowErrorRecord]:
        """One-time read: the record is removed as it is returned."""
        return self._errors.pop(state)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        return self._pending.purge_expired() + self._errors.purge_expired() + self._progress.purge_expired()

    def shutdown(self, wait: bool = True) -> None:
        pending = self.pending_tasks()
        if pending:
            logger.warning("Stopping provisioning workers with %d task(s) still running", pending)
        self._executor.shutdown(wait=wait)
