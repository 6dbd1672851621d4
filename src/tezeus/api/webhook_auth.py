"""Shared-secret check for provider and N8N webhooks.

A webhook is accepted when one of the given headers matches the secret held
in the named env var. With the secret unset, requests are rejected unless
the service runs with the local dev audience.
"""

from __future__ import annotations

import hmac
import os

from fastapi import Request

from tezeus.observability.correlation import get_correlation_id
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

from .task_auth import is_local_dev

logger = get_logger(__name__)


def verify_webhook_secret(request: Request, *, env_var: str, headers: tuple[str, ...]) -> bool:
    correlation_id = get_correlation_id()
    expected = os.environ.get(env_var, "")

    if not expected:
        if is_local_dev():
            logger.warning(
                "webhook secret not set - skipping validation (local dev)",
                extra={"extra_fields": safe_log_context(env_var=env_var, correlationId=correlation_id)},
            )
            return True
        logger.error(
            "webhook secret not configured - rejecting (fail-closed)",
            extra={"extra_fields": safe_log_context(env_var=env_var, correlationId=correlation_id)},
        )
        return False

    for header in headers:
        provided = request.headers.get(header)
        if provided and hmac.compare_digest(provided, expected):
            return True

    logger.warning(
        "webhook secret mismatch",
        extra={"extra_fields": safe_log_context(env_var=env_var, correlationId=correlation_id)},
    )
    return False
