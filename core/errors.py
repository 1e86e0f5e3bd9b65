"""
core/errors.py -- Error taxonomy and the IdP error message table.

Two kinds of failure exist in this system:

  Raised: ConfigurationMissing, TokenExchangeFailed, ReconsentRequired,
      VaultError / VaultUnavailable, ProvisioningFailed. All derive from
      CredentialError so the API layer can map them with one handler.

  Captured as data: authorization_denied and invalid_or_expired_state never
      cross a function boundary as exceptions. The callback handler records a
      FlowErrorRecord (or returns False) because the browser-facing frontend
      that displays the error reads it later, in a different request.

Layer rule: core/ is the kernel; no imports from other project packages.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    CONFIGURATION_MISSING = "configuration_missing"
    INVALID_OR_EXPIRED_STATE = "invalid_or_expired_state"
    AUTHORIZATION_DENIED = "authorization_denied"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    RECONSENT_REQUIRED = "reconsent_required"
    VAULT_UNAVAILABLE = "vault_unavailable"
    VAULT_ERROR = "vault_error"
    PROVISIONING_FAILED = "provisioning_failed"
    CALLBACK_PROCESSING_FAILED = "callback_processing_failed"
    INTERNAL_ERROR = "internal_error"


class CredentialError(Exception):
    code: ErrorCode = ErrorCode.INTERNAL_ERROR


class ConfigurationMissing(CredentialError):
    """A bootstrap value is absent from both the environment and the bootstrap vault.

    Fatal: an administrator has to supply it. remediation names the env var,
    the secret, and how to look the value up.
    """

    code = ErrorCode.CONFIGURATION_MISSING

    def __init__(self, setting: str, remediation: str) -> None:
        super().__init__(f"{setting} is not configured. {remediation}")
        self.setting = setting
        self.remediation = remediation


class TokenExchangeFailed(CredentialError):
    """The IdP token endpoint rejected a grant or could not be reached.

    transient is True for connection failures, 429 and 5xx responses. Nothing
    retries automatically; the flag only informs the caller.
    """

    code = ErrorCode.TOKEN_EXCHANGE_FAILED

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
        description: Optional[str] = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.description = description
        self.transient = transient


class ReconsentRequired(CredentialError):
    """A tier has no usable token and no refresh token that could renew it."""

    code = ErrorCode.RECONSENT_REQUIRED

    def __init__(self, tier, message: Optional[str] = None) -> None:
        super().__init__(message or f"Re-authorization required for {tier!r}")
        self.tier = tier


class VaultError(CredentialError):
    """Non-transient vault failure (permission denied, malformed secret, ...)."""

    code = ErrorCode.VAULT_ERROR


class VaultUnavailable(VaultError):
    """Transient network/DNS/throttling failure talking to a vault. Caller retries."""

    code = ErrorCode.VAULT_UNAVAILABLE


class ProvisioningFailed(CredentialError):
    """Vault creation failed. Surfaced through the progress tracker, not to the flow initiator."""

    code = ErrorCode.PROVISIONING_FAILED


# ---------------------------------------------------------------------------
# IdP error table
# ---------------------------------------------------------------------------

# code -> (user recoverable, user message)
IDP_ERRORS: dict[str, tuple[bool, str]] = {
    "access_denied": (
        True,
        "You declined to authorize access to your environment. "
        "To set up access, please try again and click 'Accept' when prompted.",
    ),
    "consent_required": (
        True,
        "Consent is required before access can be granted. Please try again and accept the requested permissions.",
    ),
    "invalid_request": (
        False,
        "There was a technical issue with the authorization request. Please try again or contact support.",
    ),
    "unauthorized_client": (
        False,
        "This application is not authorized for your organization. "
        "Please contact your administrator to approve it, or sign in with an account that has access.",
    ),
    "unsupported_response_type": (
        False,
        "There was a technical configuration issue. Please contact support.",
    ),
    "invalid_scope": (
        False,
        "The requested permissions are not available. Please contact support.",
    ),
    "server_error": (
        False,
        "The identity provider is experiencing issues. Please try again in a few minutes.",
    ),
    "temporarily_unavailable": (
        True,
        "The identity provider is temporarily unavailable. Please try again in a few minutes.",
    ),
}

_DENIAL_CODES = frozenset({"access_denied", "consent_required"})

GENERIC_ERROR_MESSAGE = "An unexpected error occurred during authentication. Please try again."


def describe_idp_error(error: str, description: Optional[str] = None) -> tuple[bool, str]:
    """Return (recoverable, user_message) for an IdP error code.

    Unknown codes are treated as not recoverable and fall back to the
    provider's own description, or a generic apology when there is none.
    """
    known = IDP_ERRORS.get(error)
    if known is not None:
        return known
    return False, description or GENERIC_ERROR_MESSAGE


def classify_idp_error(error: str) -> ErrorCode:
    if error in _DENIAL_CODES:
        return ErrorCode.AUTHORIZATION_DENIED
    return ErrorCode.TOKEN_EXCHANGE_FAILED
