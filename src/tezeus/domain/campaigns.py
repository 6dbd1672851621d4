"""Campaign dispatcher (disparador): trigger payloads and N8N callbacks.

N8N does the actual bulk sending. We mark the campaign, queue one send event
per contact, hand N8N the campaign, and record what it reports back.
"""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tezeus.infra.repositories.campaigns_repository import (
    get_campaign,
    get_response_kind,
    list_campaign_contacts,
    set_campaign_status,
    upsert_response_event,
    upsert_send_event,
    upsert_send_events,
)
from tezeus.infra.repositories.connections_repository import list_connections
from tezeus.infra.time import utc_now
from tezeus.infra.workspace_settings import get_disparador_webhook_url

TRIGGER_EVENT = "disparador.campaign.trigger"

COMPLETED = "campaign.completed"
SENT = "send.sent"
FAILED = "send.failed"
RESPONSE = "response"

_EVENT_SYNONYMS: dict[str, str] = {
    "disparador.campaign.completed": COMPLETED,
    "campaign.completed": COMPLETED,
    "completed": COMPLETED,
    "disparador.send.sent": SENT,
    "send.sent": SENT,
    "sent": SENT,
    "disparador.send.failed": FAILED,
    "send.failed": FAILED,
    "failed": FAILED,
    "disparador.response": RESPONSE,
    "response": RESPONSE,
}

DEFAULT_FAILURE = "Falha não especificada"

_DEFINITE_KINDS = ("positive", "negative")


class CampaignNotFoundError(Exception):
    """Raised when the campaign does not exist in the workspace."""

    pass


class CampaignHasNoContactsError(Exception):
    """Raised when a campaign without contacts is triggered."""

    pass


class WebhookNotConfiguredError(Exception):
    """Raised when no dispatcher webhook URL is configured."""

    pass


class InvalidCallbackError(ValueError):
    """Raised when a dispatcher callback is incomplete or unsupported."""


def normalize_event(event: Any) -> str | None:
    return _EVENT_SYNONYMS.get(str(event or "").strip())


def merge_response_kind(existing: str | None, incoming: str | None) -> str:
    """A positive/negative classification is never downgraded to ``any``."""
    kind = incoming if incoming in _DEFINITE_KINDS else "any"
    if kind == "any" and existing in _DEFINITE_KINDS:
        return existing
    return kind


def prepare_trigger(
    cur: PgCursor,
    *,
    workspace_id: str,
    campaign_id: str,
    triggered_by: str,
) -> tuple[str, dict[str, Any]]:
    """Mark the campaign as dispatching and build the N8N request.

    Returns:
        (webhook_url, payload)

    Raises:
        CampaignNotFoundError, CampaignHasNoContactsError,
        WebhookNotConfiguredError
    """
    campaign = get_campaign(cur, campaign_id=campaign_id, workspace_id=workspace_id)
    if campaign is None:
        raise CampaignNotFoundError(campaign_id)

    contacts = list_campaign_contacts(cur, campaign_id=campaign_id)
    if not contacts:
        raise CampaignHasNoContactsError(campaign_id)

    webhook_url = get_disparador_webhook_url(cur, workspace_id=workspace_id)
    if not webhook_url:
        raise WebhookNotConfiguredError(workspace_id)

    set_campaign_status(cur, campaign_id=campaign_id, status="disparando")
    upsert_send_events(
        cur,
        campaign_id=campaign_id,
        contact_ids=[contact["id"] for contact in contacts],
        status="queued",
    )

    now = utc_now().isoformat()
    connections = [
        {
            "id": conn["id"],
            "instance_name": conn["instance_name"],
            "provider": conn["provider"],
            "status": conn["status"],
            "phone_number": conn["phone_number"],
        }
        for conn in list_connections(cur, workspace_id=workspace_id)
    ]
    payload = {
        "event": TRIGGER_EVENT,
        "workspace_id": workspace_id,
        "campaign_id": campaign_id,
        "triggered_by": triggered_by,
        "campaign": {"id": campaign["id"], "name": campaign["name"], "start_at": now},
        "messages": [{"variation": 1, "content": campaign["message"]}] if campaign["message"] else [],
        "contacts": contacts,
        "connections": connections,
        "date_time": now,
    }
    return webhook_url, payload


def apply_callback(cur: PgCursor, payload: dict[str, Any]) -> dict[str, Any]:
    """Record one N8N dispatcher event.

    Raises:
        InvalidCallbackError: Unknown event or missing ids.
    """
    event = normalize_event(payload.get("event"))
    workspace_id = str(payload.get("workspace_id") or "")
    campaign_id = str(payload.get("campaign_id") or "")
    contact_id = str(payload.get("contact_id") or "")

    if not event or not workspace_id or not campaign_id:
        raise InvalidCallbackError("INVALID_PAYLOAD")

    if get_campaign(cur, campaign_id=campaign_id, workspace_id=workspace_id) is None:
        raise InvalidCallbackError("CAMPAIGN_NOT_FOUND")

    if event == COMPLETED:
        set_campaign_status(cur, campaign_id=campaign_id, status="concluida")
        return {"success": True, "event": event}

    if not contact_id:
        raise InvalidCallbackError("contact_id is required for this event")

    if event in (SENT, FAILED):
        failed = event == FAILED
        upsert_send_event(
            cur,
            campaign_id=campaign_id,
            contact_id=contact_id,
            status="failed" if failed else "sent",
            error=(str(payload.get("error") or "") or DEFAULT_FAILURE) if failed else None,
            provider_message_id=str(payload["external_id"]) if payload.get("external_id") else None,
        )
        return {"success": True, "event": event}

    existing = get_response_kind(cur, campaign_id=campaign_id, contact_id=contact_id)
    kind = merge_response_kind(existing, payload.get("kind"))
    upsert_response_event(
        cur,
        campaign_id=campaign_id,
        contact_id=contact_id,
        kind=kind,
        response_text=str(payload["raw"]) if payload.get("raw") else None,
    )
    return {"success": True, "event": event, "kind": kind}
