"""Google OAuth for Calendar access (authorization code + PKCE).

Provides:
- new_code_verifier() / code_challenge(): PKCE S256 pair
- build_auth_url(): consent URL with offline access
- exchange_code(): authorization code -> tokens
- refresh_access_token(): refresh grant, used as the token health check
- revoke_token(): best-effort revocation at Google
- fetch_user_email(): account e-mail from userinfo

Tokens are secrets: never log them.
"""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import urlencode

import requests

from tezeus.infra.time import utc_now
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
REQUIRED_SCOPES = (CALENDAR_SCOPE,)

STATE_TTL = timedelta(minutes=10)
TOKEN_HEALTHCHECK_INTERVAL = timedelta(hours=6)

HTTP_TIMEOUT = 10


class OAuthConfigError(RuntimeError):
    """Raised when the Google client credentials are not configured."""


class OAuthExchangeError(Exception):
    """Raised when Google rejects a code exchange or returns no refresh token."""


@dataclass(frozen=True)
class TokenGrant:
    access_token: str | None
    refresh_token: str | None
    expires_at: datetime | None
    scopes: str | None


def _get_config() -> dict[str, str]:
    client_id = os.environ.get("GOOGLE_CLIENT_ID", "")
    client_secret = os.environ.get("GOOGLE_CLIENT_SECRET", "")
    redirect_uri = os.environ.get("GOOGLE_REDIRECT_URI", "")
    if not client_id or not client_secret:
        raise OAuthConfigError("GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET not configured")
    return {"client_id": client_id, "client_secret": client_secret, "redirect_uri": redirect_uri}


def new_state() -> str:
    return secrets.token_urlsafe(32)


def new_code_verifier() -> str:
    """43+ char URL-safe verifier (RFC 7636)."""
    return secrets.token_urlsafe(64)


def code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def redirect_uri() -> str:
    uri = _get_config()["redirect_uri"]
    if not uri:
        raise OAuthConfigError("GOOGLE_REDIRECT_URI not configured")
    return uri


def build_auth_url(*, state: str, verifier: str, redirect_to: str) -> str:
    params = {
        "client_id": _get_config()["client_id"],
        "redirect_uri": redirect_to,
        "response_type": "code",
        "scope": " ".join(REQUIRED_SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
        "state": state,
        "code_challenge": code_challenge(verifier),
        "code_challenge_method": "S256",
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def _post_form(url: str, data: dict[str, str]) -> requests.Response:
    return requests.post(
        url,
        data=data,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        timeout=HTTP_TIMEOUT,
    )


def _grant_from(body: dict) -> TokenGrant:
    expires_in = body.get("expires_in")
    return TokenGrant(
        access_token=body.get("access_token"),
        refresh_token=body.get("refresh_token"),
        expires_at=utc_now() + timedelta(seconds=int(expires_in)) if expires_in else None,
        scopes=body.get("scope"),
    )


def exchange_code(*, code: str, verifier: str, redirect_to: str) -> TokenGrant:
    """Trade an authorization code for tokens.

    Raises:
        OAuthExchangeError: Google refused, or no refresh token came back.
    """
    config = _get_config()
    try:
        response = _post_form(
            GOOGLE_TOKEN_URL,
            {
                "code": code,
                "client_id": config["client_id"],
                "client_secret": config["client_secret"],
                "redirect_uri": redirect_to,
                "grant_type": "authorization_code",
                "code_verifier": verifier,
            },
        )
    except requests.RequestException as e:
        raise OAuthExchangeError(type(e).__name__) from e

    if not response.ok:
        logger.warning(
            "google code exchange rejected",
            extra={"extra_fields": safe_log_context(status_code=response.status_code)},
        )
        raise OAuthExchangeError(f"Token exchange failed with status {response.status_code}")

    grant = _grant_from(response.json())
    if not grant.refresh_token:
        raise OAuthExchangeError("Google did not return a refresh token")
    return grant


def refresh_access_token(refresh_token: str) -> TokenGrant | None:
    """Refresh grant. None means the refresh token no longer works."""
    config = _get_config()
    try:
        response = _post_form(
            GOOGLE_TOKEN_URL,
            {
                "client_id": config["client_id"],
                "client_secret": config["client_secret"],
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
    except requests.RequestException as e:
        logger.warning(
            "google token refresh unreachable",
            extra={"extra_fields": safe_log_context(error=type(e).__name__)},
        )
        return None

    if not response.ok:
        logger.warning(
            "google token refresh rejected",
            extra={"extra_fields": safe_log_context(status_code=response.status_code)},
        )
        return None
    return _grant_from(response.json())


def revoke_token(token: str) -> bool:
    """Revoke at Google. Best effort: failures are logged and reported as False."""
    try:
        response = _post_form(GOOGLE_REVOKE_URL, {"token": token})
    except requests.RequestException as e:
        logger.warning(
            "google revoke unreachable",
            extra={"extra_fields": safe_log_context(error=type(e).__name__)},
        )
        return False
    if not response.ok:
        logger.warning(
            "google revoke failed",
            extra={"extra_fields": safe_log_context(status_code=response.status_code)},
        )
    return response.ok


def fetch_user_email(access_token: str | None) -> str | None:
    if not access_token:
        return None
    try:
        response = requests.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=HTTP_TIMEOUT,
        )
    except requests.RequestException:
        return None
    if not response.ok:
        return None
    return response.json().get("email")


def needs_health_check(last_check: datetime | None, now: datetime | None = None) -> bool:
    if last_check is None:
        return True
    return (now or utc_now()) - last_check > TOKEN_HEALTHCHECK_INTERVAL
