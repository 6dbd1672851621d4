"""Google Calendar connection of a workspace member.

Each operation first drops expired or used OAuth states. Google calls run
outside database transactions.
"""

from __future__ import annotations

from typing import Any

from tezeus.infra.db import txn
from tezeus.infra.repositories.calendar_repository import (
    delete_stale_states,
    get_authorization,
    get_oauth_state,
    insert_oauth_state,
    mark_state_used,
    mark_token_checked,
    revoke_authorization,
    upsert_authorization,
)
from tezeus.infra.time import utc_now
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

from . import oauth

logger = get_logger(__name__)


class InvalidStateError(Exception):
    """Raised when an OAuth state is unknown, foreign, used or expired."""


def _cleanup_states() -> None:
    with txn() as cur:
        delete_stale_states(cur, now=utc_now())


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def get_status(*, workspace_id: str, user_id: str) -> dict[str, Any]:
    """Connection status, refreshing the token at most every 6 hours."""
    _cleanup_states()
    with txn() as cur:
        authorization = get_authorization(cur, workspace_id=workspace_id, user_id=user_id)

    if authorization is None:
        return {
            "connected": False,
            "requires_reconnect": False,
            "google_email": None,
            "authorized_at": None,
            "scopes": [],
            "revoked_at": None,
        }

    revoked_at = authorization["revoked_at"]
    requires_reconnect = revoked_at is not None
    last_check = authorization["last_token_check_at"]

    if not requires_reconnect and oauth.needs_health_check(last_check):
        grant = oauth.refresh_access_token(authorization["refresh_token"])
        with txn() as cur:
            if grant is None:
                requires_reconnect = True
                revoked_at = utc_now()
                revoke_authorization(cur, authorization_id=authorization["id"])
            else:
                mark_token_checked(
                    cur,
                    authorization_id=authorization["id"],
                    access_token=grant.access_token,
                    token_expires_at=grant.expires_at,
                )
                last_check = utc_now()
        logger.info(
            "google token health check",
            extra={"extra_fields": safe_log_context(workspace_id=workspace_id, healthy=not requires_reconnect)},
        )

    scopes = authorization["scopes"]
    return {
        "connected": not requires_reconnect,
        "requires_reconnect": requires_reconnect,
        "google_email": authorization["google_email"],
        "authorized_at": _iso(authorization["authorized_at"]),
        "scopes": scopes.split() if scopes else [],
        "revoked_at": _iso(revoked_at),
        "last_token_check_at": _iso(last_check),
    }


def create_auth_url(*, workspace_id: str, user_id: str) -> dict[str, Any]:
    _cleanup_states()
    redirect_to = oauth.redirect_uri()
    state = oauth.new_state()
    verifier = oauth.new_code_verifier()
    expires_at = utc_now() + oauth.STATE_TTL

    with txn() as cur:
        insert_oauth_state(
            cur,
            state=state,
            workspace_id=workspace_id,
            user_id=user_id,
            code_verifier=verifier,
            redirect_uri=redirect_to,
            expires_at=expires_at,
        )

    return {
        "auth_url": oauth.build_auth_url(state=state, verifier=verifier, redirect_to=redirect_to),
        "state": state,
        "expires_at": expires_at.isoformat(),
    }


def exchange_code(*, workspace_id: str, user_id: str, code: str, state: str) -> dict[str, Any]:
    """Finish the consent flow.

    Raises:
        InvalidStateError: State unusable for this caller.
        oauth.OAuthExchangeError: Google refused the code.
    """
    _cleanup_states()
    with txn() as cur:
        oauth_state = get_oauth_state(cur, state=state)
        if (
            oauth_state is None
            or oauth_state["workspace_id"] != workspace_id
            or oauth_state["user_id"] != user_id
            or oauth_state["used"]
            or oauth_state["expires_at"] < utc_now()
        ):
            raise InvalidStateError("Invalid or expired state")
        mark_state_used(cur, state_id=oauth_state["id"])

    grant = oauth.exchange_code(
        code=code,
        verifier=oauth_state["code_verifier"],
        redirect_to=oauth_state["redirect_uri"],
    )
    google_email = oauth.fetch_user_email(grant.access_token)

    with txn() as cur:
        upsert_authorization(
            cur,
            workspace_id=workspace_id,
            user_id=user_id,
            google_email=google_email,
            refresh_token=grant.refresh_token or "",
            access_token=grant.access_token,
            token_expires_at=grant.expires_at,
            scopes=grant.scopes,
        )

    logger.info(
        "google calendar connected",
        extra={"extra_fields": safe_log_context(workspace_id=workspace_id, user_id=user_id)},
    )
    return {"success": True, "google_email": google_email}


def disconnect(*, workspace_id: str, user_id: str) -> dict[str, Any]:
    _cleanup_states()
    with txn() as cur:
        authorization = get_authorization(cur, workspace_id=workspace_id, user_id=user_id)
    if authorization is None:
        return {"success": True, "connected": False}

    oauth.revoke_token(authorization["refresh_token"])
    with txn() as cur:
        revoke_authorization(cur, authorization_id=authorization["id"])
    return {"success": True, "connected": False}
