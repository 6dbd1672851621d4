"""Campaign dispatcher trigger.

POST /campaigns/{campaign_id}/trigger hands the campaign to the workspace's
N8N dispatcher flow. Progress comes back through /webhooks/disparador.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, Depends, HTTPException, Path

from tezeus.api.rbac import WorkspaceRoleContext, require_workspace_role
from tezeus.domain.campaigns import (
    CampaignHasNoContactsError,
    CampaignNotFoundError,
    WebhookNotConfiguredError,
    prepare_trigger,
)
from tezeus.infra.db import txn
from tezeus.infra.http import post_json
from tezeus.observability.correlation import get_correlation_id
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

router = APIRouter(prefix="/campaigns", tags=["campaigns"])

logger = get_logger(__name__)

TRIGGER_TIMEOUT = 20


def _trigger_headers() -> dict[str, str]:
    secret = os.environ.get("DISPARADOR_WEBHOOK_SECRET", "")
    return {"x-secret": secret} if secret else {}


@router.post("/{campaign_id}/trigger")
def trigger_campaign(
    campaign_id: str = Path(..., description="Campaign UUID"),
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("user")),
) -> dict:
    """Start a campaign.

    Returns:
        200 when N8N accepted the campaign.
        400 CAMPAIGN_HAS_NO_CONTACTS.
        404 if the campaign is not in the workspace.
        424 if no dispatcher webhook is configured.
        502 if N8N answered non-2xx or was unreachable.
    """
    correlation_id = get_correlation_id()

    try:
        with txn() as cur:
            url, payload = prepare_trigger(
                cur,
                workspace_id=ctx.workspace_id,
                campaign_id=campaign_id,
                triggered_by=ctx.user.id,
            )
    except CampaignNotFoundError:
        raise HTTPException(status_code=404, detail="Campaign not found")
    except CampaignHasNoContactsError:
        raise HTTPException(status_code=400, detail="CAMPAIGN_HAS_NO_CONTACTS")
    except WebhookNotConfiguredError:
        raise HTTPException(status_code=424, detail="Dispatcher webhook not configured")

    result = post_json(url, payload, headers=_trigger_headers(), timeout=TRIGGER_TIMEOUT)
    log_ctx = safe_log_context(
        correlationId=correlation_id,
        campaign_id=campaign_id,
        contacts=len(payload["contacts"]),
        status_code=result.status_code,
    )
    if not result.ok:
        logger.error("disparador trigger rejected", extra={"extra_fields": log_ctx})
        raise HTTPException(
            status_code=502,
            detail={"error": "Dispatcher webhook failed", "status_code": result.status_code},
        )

    logger.info("disparador triggered", extra={"extra_fields": log_ctx})
    return {
        "success": True,
        "campaign_id": campaign_id,
        "status": "disparando",
        "contacts": len(payload["contacts"]),
    }
