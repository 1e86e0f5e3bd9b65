"""
auth/oauth.py -- Identity provider protocol helpers: authorization URL, state, token endpoint.

Authorization URL and state:
  Built with Authlib's RFC 6749 helpers. prepare_grant_uri() assembles
  client_id, response_type=code, redirect_uri, scope (space-joined) and state,
  plus response_mode=query; generate_token() produces the opaque state value
  (48 chars from a CSPRNG).

  State is NOT kept in a browser session here. The flow coordinator caches
  the pending request server-side under the state value and pops it on the
  callback, which is what makes each state single-use.

Token endpoint:
  TokenEndpointClient posts form-encoded grants with a shared requests.Session
  (connection pooling, max_redirects=3 as in the rest of the codebase).
  Every failure is raised as TokenExchangeFailed; nothing retries. The
  transient flag is set for connection errors, 429 and 5xx so callers can
  decide whether to try again later.

Security notes:
  Token values and the client secret are never logged -- only lengths and
  whether a refresh token was issued.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional, Sequence

import requests
from authlib.common.security import generate_token
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri

from core.errors import TokenExchangeFailed
from core.models import Clock, TokenResponse, utc_now

logger = logging.getLogger("credvault.auth.oauth")

STATE_LENGTH = 48


def new_state() -> str:
    """Opaque, unguessable state value for one authorization request."""
    return generate_token(STATE_LENGTH)


def build_authorization_url(
    authorize_url: str,
    client_id: str,
    redirect_uri: str,
    scopes: Sequence[str],
    state: str,
) -> str:
    return prepare_grant_uri(
        authorize_url,
        client_id,
        "code",
        redirect_uri=redirect_uri,
        scope=list(scopes),
        state=state,
        response_mode="query",
    )


class TokenEndpointClient:
    """Performs authorization_code and refresh_token grants against the IdP.

    Usage:
        client = TokenEndpointClient(settings.token_url, client_id, client_secret)
        tokens = client.exchange_code(code, redirect_uri, ["https://management.azure.com/user_impersonation"])
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        clock: Clock = utc_now,
    ) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self._client_secret = client_secret
        if session is None:
            session = requests.Session()
            session.max_redirects = 3
        self._session = session
        self._timeout = timeout
        self._clock = clock

    def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        scopes: Sequence[str],
        timeout: Optional[float] = None,
    ) -> TokenResponse:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
        }
        return self._request(form, timeout, previous_refresh_token="")

    def exchange_refresh_token(
        self,
        refresh_token: str,
        scopes: Sequence[str],
        timeout: Optional[float] = None,
    ) -> TokenResponse:
        """Redeem a refresh token for the given scopes.

        If the response carries no new refresh token, the one passed in is
        kept -- it is still valid.
        """
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "scope": " ".join(scopes),
        }
        return self._request(form, timeout, previous_refresh_token=refresh_token)

    def _request(self, form: dict[str, str], timeout: Optional[float], previous_refresh_token: str) -> TokenResponse:
        grant = form["grant_type"]
        data = {"client_id": self.client_id, "client_secret": self._client_secret, **form}
        try:
            resp = self._session.post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=timeout if timeout is not None else self._timeout,
            )
        except requests.RequestException as e:
            logger.warning("Token endpoint unreachable (%s grant): %s", grant, e)
            raise TokenExchangeFailed(f"Token endpoint unreachable: {e}", transient=True) from e

        payload = _json_or_empty(resp)
        if not resp.ok:
            error = payload.get("error")
            description = payload.get("error_description")
            transient = resp.status_code == 429 or resp.status_code >= 500
            logger.error(
                "Token %s grant failed: %d %s",
                grant,
                resp.status_code,
                error or "(no error code)",
            )
            raise TokenExchangeFailed(
                f"Token {grant} grant failed with HTTP {resp.status_code}: {error or 'unknown error'}",
                status_code=resp.status_code,
                error=error,
                description=description,
                transient=transient,
            )

        access_token = payload.get("access_token")
        expires_in = payload.get("expires_in")
        if not access_token or expires_in is None:
            logger.error("Token %s response missing access_token or expires_in", grant)
            raise TokenExchangeFailed(
                "Token response missing access_token or expires_in",
                status_code=resp.status_code,
            )
        try:
            expires_at = self._clock() + timedelta(seconds=int(expires_in))
        except (TypeError, ValueError, OverflowError) as e:
            raise TokenExchangeFailed(f"Invalid expires_in value: {expires_in!r}", status_code=resp.status_code) from e

        refresh_token = payload.get("refresh_token") or previous_refresh_token
        logger.info(
            "Token %s grant succeeded (access_token_len=%d, has_refresh=%s)",
            grant,
            len(access_token),
            bool(refresh_token),
        )
        return TokenResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scope=payload.get("scope") or "",
            token_type=payload.get("token_type") or "Bearer",
        )


def _json_or_empty(resp: requests.Response) -> dict[str, Any]:
    try:
        payload = resp.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}
