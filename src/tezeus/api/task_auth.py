"""Shared authentication helpers for worker tasks.

Worker routes accept a Google OIDC id token (Cloud Tasks) or, in local dev
only, the X-Internal-Task-Secret header.
"""

from __future__ import annotations

import base64
import hmac
import json
import os

from fastapi import HTTPException, Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from tezeus.observability.correlation import get_correlation_id
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Local dev audience - enables the X-Internal-Task-Secret fallback and
# relaxed webhook secrets
LOCAL_DEV_AUDIENCE = "tezeus-tasks-local"


def is_local_dev() -> bool:
    return os.environ.get("TASKS_OIDC_AUDIENCE", "") == LOCAL_DEV_AUDIENCE


def _extract_unverified_claim(token: str, claim: str) -> str | None:
    """Read one JWT claim without verifying it.

    Only for diagnostics after verification already failed. Never use the
    value for an auth decision.
    """
    try:
        payload_segment = token.split(".")[1]
        padding = 4 - len(payload_segment) % 4
        if padding != 4:
            payload_segment += "=" * padding
        payload = json.loads(base64.urlsafe_b64decode(payload_segment))
        value = payload.get(claim)
        return str(value) if value is not None else None
    except Exception:
        return None


def extract_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:]


def verify_task_oidc(token: str) -> bool:
    """Verify a Cloud Tasks OIDC token.

    Audience comes from TASKS_OIDC_AUDIENCE; the signer e-mail is checked
    against TASKS_OIDC_SERVICE_ACCOUNT when set. Fails closed when the
    audience is not configured.
    """
    if not token:
        return False

    audience = os.environ.get("TASKS_OIDC_AUDIENCE")
    if not audience:
        logger.error(
            "TASKS_OIDC_AUDIENCE not configured - fail closed",
            extra={"extra_fields": safe_log_context(reason="missing_audience_env")},
        )
        return False

    try:
        req = google_requests.Request()
        claims = id_token.verify_oauth2_token(token, req, audience=audience)
    except ValueError as e:
        logger.warning(
            "OIDC token verification failed",
            extra={
                "extra_fields": safe_log_context(
                    error=str(e),
                    expected_audience=audience,
                    received_audience=_extract_unverified_claim(token, "aud"),
                )
            },
        )
        return False

    expected_email = os.environ.get("TASKS_OIDC_SERVICE_ACCOUNT")
    if expected_email and claims.get("email", "") != expected_email:
        logger.warning(
            "OIDC service account mismatch",
            extra={"extra_fields": safe_log_context(reason="service_account_mismatch")},
        )
        return False

    return True


def verify_task_auth(request: Request) -> bool:
    """OIDC, or X-Internal-Task-Secret when running with the local dev audience."""
    if is_local_dev():
        internal_secret = os.environ.get("INTERNAL_TASK_SECRET", "")
        request_secret = request.headers.get("X-Internal-Task-Secret", "")
        if internal_secret and hmac.compare_digest(request_secret, internal_secret):
            logger.info(
                "task auth via internal secret (local dev)",
                extra={"extra_fields": safe_log_context(auth_method="internal_secret")},
            )
            return True

    token = extract_bearer_token(request)
    if not token:
        logger.warning(
            "task auth failed: missing Bearer token",
            extra={"extra_fields": safe_log_context(reason="missing_bearer_token")},
        )
        return False
    return verify_task_oidc(token)


def require_task_auth(request: Request) -> None:
    """Raise 401 unless the request is an authenticated worker task."""
    if not verify_task_auth(request):
        logger.warning(
            "task request rejected",
            extra={"extra_fields": safe_log_context(correlationId=get_correlation_id(), path=request.url.path)},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")
