"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for credvault happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. oauth_client_id -> OAUTH_CLIENT_ID). List fields such as
      RESOURCE_MANAGER_SCOPES are parsed from JSON arrays.

  @model_validator(mode="after"): Cross-field validation of the per-tenant
      vault naming parts. A vault name is recomputed on every call from
      (prefix, environment, tenant short id, suffix), so an invalid part would
      break every tenant at once -- it is rejected at startup instead.

Bootstrap values (subscription, region, principal id, OAuth client secret) may
be left empty here; vault/bootstrap.py falls back to the application's own
vault for them and raises ConfigurationMissing only when neither source has a
value.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
vault/, or cache/.
"""

import logging
import re
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("credvault.config")

_DEFAULT_LOCAL_VAULT_DB = f"sqlite:///{Path(__file__).parent.parent / 'credvault_vaults.db'}"

# Azure Key Vault names: 3-24 chars, alphanumerics and dashes.
_VAULT_NAME_MAX = 24
_VAULT_NAME_MIN = 3
_TENANT_SHORT_LEN = 8
_NAME_PART_RE = re.compile(r"^[a-z0-9]+$")

VAULT_BACKENDS = ("azure", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    environment: str = "dev"

    # ------------------------------------------------------------------
    # Per-tenant secret vaults
    # ------------------------------------------------------------------

    vault_backend: str = "azure"
    vault_prefix: str = "kv"
    vault_unique_suffix: str = "cmp001"
    local_vault_db_url: str = _DEFAULT_LOCAL_VAULT_DB
    # Soft-deleted local secrets are hard-deleted after this many days.
    local_vault_retention_days: int = 7
    # The application's own vault. Holds bootstrap secrets that are not set
    # in the environment (see vault/bootstrap.py). Empty = env vars only.
    bootstrap_vault_url: str = ""

    # ------------------------------------------------------------------
    # Provisioning bootstrap (empty string = resolve from bootstrap vault)
    # ------------------------------------------------------------------

    azure_subscription_id: str = ""
    azure_resource_group: str = "rg-credvault-dev"
    azure_location: str = ""
    azure_tenant_id: str = ""
    app_object_id: str = ""

    provisioning_workers: int = 4
    # Upper bound on waiting for the vault create operation.
    provisioning_timeout_seconds: float = 300.0
    # Pause after creation so DNS for the new vault can propagate.
    provisioning_settle_seconds: float = 5.0

    # ------------------------------------------------------------------
    # OAuth (identity provider)
    # ------------------------------------------------------------------

    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    oauth_redirect_uri: str = "http://localhost:8000/api/v1/oauth/callback"
    oauth_authority: str = "https://login.microsoftonline.com/common/oauth2/v2.0"

    # Empty list = built-in defaults in auth/scopes.py
    resource_manager_scopes: list[str] = []
    directory_scopes: list[str] = []

    # ------------------------------------------------------------------
    # Lifetimes
    # ------------------------------------------------------------------

    state_ttl_seconds: int = 600
    error_ttl_seconds: int = 600
    progress_ttl_seconds: int = 600
    credential_cache_ttl_seconds: int = 1800
    credential_cache_buffer_minutes: int = 5
    purge_interval_seconds: int = 300

    http_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:3000"
    allowed_origins: list[str] = ["http://localhost:3000"]
    initiate_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_vault_naming(self) -> "Settings":
        """Reject naming parts that cannot form a valid vault name.

        Each part must be lowercase alphanumeric (the name joins them with
        dashes), and the longest name -- with an 8-char tenant short id --
        must fit the 24-char Key Vault limit.
        """
        if self.vault_backend not in VAULT_BACKENDS:
            raise ValueError(f"VAULT_BACKEND must be one of {VAULT_BACKENDS}, got {self.vault_backend!r}")

        parts = {
            "VAULT_PREFIX": self.vault_prefix,
            "ENVIRONMENT": self.environment,
            "VAULT_UNIQUE_SUFFIX": self.vault_unique_suffix,
        }
        for env_name, value in parts.items():
            if not _NAME_PART_RE.match(value):
                raise ValueError(f"{env_name} must be lowercase alphanumeric, got {value!r}")

        longest = len(self.vault_prefix) + len(self.environment) + len(self.vault_unique_suffix) + _TENANT_SHORT_LEN + 3
        if not _VAULT_NAME_MIN <= longest <= _VAULT_NAME_MAX:
            raise ValueError(
                f"Vault names would be {longest} characters; Key Vault allows "
                f"{_VAULT_NAME_MIN}-{_VAULT_NAME_MAX}. Shorten VAULT_PREFIX, ENVIRONMENT or VAULT_UNIQUE_SUFFIX."
            )

        if not self.oauth_client_secret and not self.bootstrap_vault_url and not self.debug:
            logger.warning(
                "OAUTH_CLIENT_SECRET and BOOTSTRAP_VAULT_URL are both unset -- token exchange will fail"
            )
        return self

    @property
    def token_url(self) -> str:
        return f"{self.oauth_authority.rstrip('/')}/token"

    @property
    def authorize_url(self) -> str:
        return f"{self.oauth_authority.rstrip('/')}/authorize"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
