"""Callbacks posted by N8N flows.

- POST /webhooks/n8n/message-status: provider status relayed by N8N
- POST /webhooks/disparador: campaign dispatcher progress
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tezeus.api.webhook_auth import verify_webhook_secret
from tezeus.domain.campaigns import InvalidCallbackError, apply_callback
from tezeus.domain.message_status import (
    InvalidStatusPayloadError,
    MessageNotFoundError,
    reconcile_status,
)
from tezeus.infra.db import txn
from tezeus.observability.correlation import get_correlation_id
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = get_logger(__name__)


async def _json_body(request: Request) -> dict[str, Any] | None:
    try:
        payload = await request.json()
    except Exception:
        return None
    return payload if isinstance(payload, dict) else None


@router.post("/n8n/message-status")
async def n8n_message_status(request: Request) -> JSONResponse:
    """Apply a message status reported by N8N.

    Returns:
        200 with ``action`` updated or skipped.
        400 if workspace_id or status is missing.
        401 if the shared secret does not match.
        404 if no message matched, with the strategies tried.
    """
    if not verify_webhook_secret(
        request,
        env_var="N8N_CALLBACK_SECRET",
        headers=("X-Webhook-Secret", "x-secret"),
    ):
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    payload = await _json_body(request)
    if payload is None:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON"})

    try:
        with txn() as cur:
            result = reconcile_status(cur, payload)
    except InvalidStatusPayloadError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except MessageNotFoundError as e:
        return JSONResponse(
            status_code=404,
            content={
                "error": "Message not found",
                "provider_id": e.provider_id,
                "strategies": list(e.strategies),
            },
        )
    return JSONResponse(status_code=200, content=result)


@router.post("/disparador")
async def disparador_callback(request: Request) -> JSONResponse:
    """Record campaign dispatcher progress.

    Returns:
        200 on success.
        400 for unknown events, missing ids or unknown campaigns.
        401 if the shared secret does not match.
    """
    if not verify_webhook_secret(
        request,
        env_var="DISPARADOR_WEBHOOK_SECRET",
        headers=("x-secret", "x-disparador-secret"),
    ):
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    payload = await _json_body(request)
    if payload is None:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON"})

    try:
        with txn() as cur:
            result = apply_callback(cur, payload)
    except InvalidCallbackError as e:
        logger.warning(
            "disparador callback rejected",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=get_correlation_id(),
                    reason=str(e),
                    event=payload.get("event"),
                )
            },
        )
        return JSONResponse(status_code=400, content={"error": str(e)})

    logger.info(
        "disparador callback applied",
        extra={
            "extra_fields": safe_log_context(
                campaign_id=payload.get("campaign_id"),
                event=result["event"],
            )
        },
    )
    return JSONResponse(status_code=200, content=result)
