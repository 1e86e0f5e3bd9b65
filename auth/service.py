"""
auth/service.py -- Wire the credential subsystem together from Settings.

build_services() is the only place that chooses concrete backends. The API
lifespan calls it once and hangs the result on app.state; tests call it with
a local vault manager and a fake token session.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import requests

from auth.credentials import CredentialProvider
from auth.flow import AuthorizationFlowCoordinator
from auth.oauth import TokenEndpointClient
from auth.progress import ProgressTracker
from auth.refresh import TokenRefreshEngine
from auth.scopes import ScopeProfileResolver
from auth.store import CredentialStore
from cache.store import CredentialCache
from core.config import Settings
from core.models import Clock, utc_now
from vault.azure import AzureSecretVault, AzureVaultManager
from vault.base import VaultManager
from vault.bootstrap import OAUTH_CLIENT_ID, OAUTH_CLIENT_SECRET, BootstrapResolver
from vault.local import LocalVaultManager
from vault.provisioner import SecretVaultProvisioner

logger = logging.getLogger("credvault.auth.service")


@dataclass
class Services:
    settings: Settings
    scopes: ScopeProfileResolver
    manager: VaultManager
    provisioner: SecretVaultProvisioner
    store: CredentialStore
    cache: CredentialCache
    progress: ProgressTracker
    token_client: TokenEndpointClient
    refresh: TokenRefreshEngine
    flow: AuthorizationFlowCoordinator
    credentials: CredentialProvider

    def purge_expired(self) -> int:
        removed = self.flow.purge_expired() + self.cache.purge_expired()
        if isinstance(self.manager, LocalVaultManager):
            removed += self.manager.purge_deleted(timedelta(days=self.settings.local_vault_retention_days))
        return removed

    def close(self) -> None:
        self.flow.shutdown(wait=False)
        close = getattr(self.manager, "close", None)
        if close is not None:
            close()


def _build_manager(settings: Settings) -> VaultManager:
    if settings.vault_backend == "local":
        logger.info("Using local vault backend at %s", settings.local_vault_db_url)
        return LocalVaultManager(settings.local_vault_db_url)

    logger.info("Using Azure Key Vault backend")
    return AzureVaultManager(connection_timeout=settings.http_timeout_seconds)


def _build_bootstrap(settings: Settings) -> BootstrapResolver:
    if not settings.bootstrap_vault_url:
        return BootstrapResolver(settings)

    return BootstrapResolver(settings, AzureSecretVault.from_url(settings.bootstrap_vault_url))


def build_services(
    settings: Settings,
    manager: Optional[VaultManager] = None,
    bootstrap: Optional[BootstrapResolver] = None,
    session: Optional[requests.Session] = None,
    token_client: Optional[TokenEndpointClient] = None,
    clock: Clock = utc_now,
) -> Services:
    """Assemble every component from settings. Collaborators can be injected for tests.

    The OAuth client id and secret are resolved here, so a deployment with
    neither env vars nor bootstrap secrets fails at startup with
    ConfigurationMissing instead of at the first callback.
    """
    manager = manager or _build_manager(settings)
    bootstrap = bootstrap or _build_bootstrap(settings)
    timeout = settings.http_timeout_seconds

    scopes = ScopeProfileResolver.from_settings(settings)
    provisioner = SecretVaultProvisioner(settings, manager, bootstrap)
    store = CredentialStore(provisioner, timeout=timeout)
    cache = CredentialCache(
        ttl=timedelta(seconds=settings.credential_cache_ttl_seconds),
        buffer=timedelta(minutes=settings.credential_cache_buffer_minutes),
        clock=clock,
    )
    progress = ProgressTracker(ttl=timedelta(seconds=settings.progress_ttl_seconds), clock=clock)

    client_id = bootstrap.get(OAUTH_CLIENT_ID)
    if token_client is None:
        token_client = TokenEndpointClient(
            settings.token_url,
            client_id,
            bootstrap.get(OAUTH_CLIENT_SECRET),
            session=session,
            timeout=timeout,
            clock=clock,
        )
    refresh = TokenRefreshEngine(
        token_client,
        scopes,
        store,
        cache,
        buffer=timedelta(minutes=settings.credential_cache_buffer_minutes),
        clock=clock,
    )
    flow = AuthorizationFlowCoordinator(
        client_id=client_id,
        authorize_url=settings.authorize_url,
        redirect_uri=settings.oauth_redirect_uri,
        scopes=scopes,
        provisioner=provisioner,
        store=store,
        cache=cache,
        token_client=token_client,
        progress=progress,
        executor=ThreadPoolExecutor(max_workers=settings.provisioning_workers, thread_name_prefix="provision"),
        state_ttl=timedelta(seconds=settings.state_ttl_seconds),
        error_ttl=timedelta(seconds=settings.error_ttl_seconds),
        clock=clock,
        timeout=timeout,
    )
    credentials = CredentialProvider(store, cache, refresh, scopes, session=session, timeout=timeout, clock=clock)

    logger.info(
        "Credential services ready (backend=%s, environment=%s)",
        settings.vault_backend,
        settings.environment,
    )
    return Services(
        settings=settings,
        scopes=scopes,
        manager=manager,
        provisioner=provisioner,
        store=store,
        cache=cache,
        progress=progress,
        token_client=token_client,
        refresh=refresh,
        flow=flow,
        credentials=credentials,
    )
