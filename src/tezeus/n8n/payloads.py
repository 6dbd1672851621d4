"""N8N request bodies.

The send payload mimics an Evolution ``messages.upsert`` event so a single
N8N flow can relay it to either provider. It carries provider credentials
and the recipient phone: it goes to N8N only, never to logs.
"""

from __future__ import annotations

from typing import Any

from tezeus.infra.time import utc_now
from tezeus.whatsapp.models import ProviderConfig
from tezeus.whatsapp.phone import to_jid

SEND_EVENT = "send.message"

# message_type -> (WhatsApp message key, default file name)
_MEDIA_KEYS: dict[str, tuple[str, str]] = {
    "image": ("imageMessage", "image.jpg"),
    "video": ("videoMessage", "video.mp4"),
    "audio": ("audioMessage", "audio.ogg"),
    "document": ("documentMessage", "document"),
    "file": ("documentMessage", "document"),
}


def _quoted(phone: str, quoted_message: dict[str, Any] | None) -> dict[str, Any] | None:
    if not quoted_message:
        return None
    return {
        "key": {
            "remoteJid": to_jid(phone),
            "fromMe": quoted_message.get("sender_type") == "agent",
            "id": quoted_message.get("external_id") or quoted_message.get("id"),
        },
        "message": {"conversation": quoted_message.get("content") or ""},
    }


def build_message(
    message_type: str,
    content: str | None,
    file_url: str | None,
    file_name: str | None,
) -> tuple[dict[str, Any], str]:
    """WhatsApp ``message`` object and ``messageType`` for a stored message."""
    media = _MEDIA_KEYS.get(message_type)
    if media is None or not file_url:
        return {"conversation": content or ""}, "conversation"

    key, default_name = media
    body: dict[str, Any] = {"url": file_url, "fileName": file_name or default_name}
    if key != "audioMessage":
        body["caption"] = content or ""
    return {key: body}, key


def instance_token(connection_metadata: dict[str, Any] | None) -> str | None:
    metadata = connection_metadata or {}
    return metadata.get("token") or metadata.get("instanceToken") or metadata.get("instance_token")


def build_send_payload(
    message: dict[str, Any],
    *,
    config: ProviderConfig,
    destination: str,
    connection_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Send request for the workspace N8N flow.

    Args:
        message: Row from ``messages_repository.get_send_payload``.
        config: Provider config with the connection's instance applied.
        destination: The N8N webhook URL the payload is posted to.
        connection_metadata: ``connections.metadata`` (Z-API instance token).
    """
    phone = message["phone"]
    external_id = message["external_id"] or message["id"]
    wa_message, wa_type = build_message(
        message["message_type"],
        message["content"],
        message["file_url"],
        message["file_name"],
    )
    quoted = _quoted(phone, message.get("quoted_message"))
    if quoted:
        wa_message["quoted"] = quoted

    now = utc_now()
    payload: dict[str, Any] = {
        "event": SEND_EVENT,
        "instance": config.instance,
        "workspace_id": message["workspace_id"],
        "connection_id": message["connection_id"],
        "conversation_id": message["conversation_id"],
        "phone_number": phone,
        "external_id": external_id,
        "provider": config.provider,
        "data": {
            "key": {"remoteJid": to_jid(phone), "fromMe": True, "id": external_id},
            "message": wa_message,
            "messageType": wa_type,
            "messageTimestamp": int(now.timestamp() * 1000),
        },
        "destination": destination,
        "date_time": now.isoformat(),
        "sender": phone,
    }

    if config.provider == "evolution":
        payload["server_url"] = config.base_url
        payload["apikey"] = config.api_key
    elif config.provider == "zapi":
        payload["zapi_url"] = config.base_url
        payload["zapi_token"] = config.token
        payload["zapi_client_token"] = config.client_token
        payload["instance_id"] = config.instance
        payload["instance_token"] = instance_token(connection_metadata)
    return payload


def build_status_payload(
    *,
    workspace_id: str,
    connection_id: str,
    instance: str,
    message_id: str | None,
    external_id: str | None,
    status: str,
    provider: str,
) -> dict[str, Any]:
    """Lean status event forwarded to N8N after a local status update."""
    return {
        "event": "message.status",
        "provider": provider,
        "instance": instance,
        "workspace_id": workspace_id,
        "connection_id": connection_id,
        "message_id": message_id,
        "external_id": external_id,
        "status": status,
        "date_time": utc_now().isoformat(),
    }
