"""Z-API adapter - validate and normalize webhook payloads."""

from typing import Any

from .evolution_adapter import InvalidPayloadError
from .models import ZapiEvent
from .phone import is_lid_jid, sanitize_phone

STATUS_MAP: dict[str, str] = {
    "SENT": "sent",
    "DELIVERED": "delivered",
    "RECEIVED": "delivered",
    "READ": "read",
    "READ_BY_ME": "read",
    "PLAYED": "read",
    "FAILED": "failed",
    "PENDING": "sending",
}

STATUS_CALLBACK = "MessageStatusCallback"
DELIVERY_CALLBACK = "DeliveryCallback"
RECEIVED_CALLBACK = "ReceivedCallback"

# payload key -> (media kind, url fields in preference order)
_MEDIA_FIELDS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("image", "image", ("downloadUrl", "imageUrl")),
    ("video", "video", ("downloadUrl", "videoUrl")),
    ("audio", "audio", ("downloadUrl", "audioUrl")),
    ("document", "document", ("downloadUrl", "documentUrl")),
)


def normalize_status(status: str | None) -> str | None:
    """``DELIVERED`` -> ``delivered``; unknown values are lower-cased."""
    if not status or not isinstance(status, str):
        return None
    return STATUS_MAP.get(status.upper(), status.lower())


def is_status_callback(payload: dict[str, Any]) -> bool:
    """True for explicit status callbacks, or ``ids`` plus ``status``.

    Ordinary message callbacks may carry a ``status`` field of their own, so
    a bare status is not enough.
    """
    if payload.get("type") == STATUS_CALLBACK or payload.get("event") == DELIVERY_CALLBACK:
        return True
    ids = payload.get("ids")
    return isinstance(ids, list) and len(ids) > 0 and bool(payload.get("status"))


def extract_media(payload: dict[str, Any]) -> tuple[str | None, str | None]:
    """Return (media_kind, url) of the first media block found."""
    for key, kind, url_fields in _MEDIA_FIELDS:
        block = payload.get(key)
        if isinstance(block, dict):
            for url_field in url_fields:
                if block.get(url_field):
                    return kind, block[url_field]
            return kind, None
    return None, None


def extract_phone(value: str | None) -> str | None:
    """Phone from a Z-API ``phone`` field. LIDs and group ids yield None."""
    if not value or not isinstance(value, str):
        return None
    if is_lid_jid(value) or "-group" in value or value.endswith("@g.us"):
        return None
    digits = sanitize_phone(value.split("@")[0])
    return digits or None


def _message_ids(payload: dict[str, Any]) -> tuple[str, ...]:
    ids = payload.get("ids")
    if isinstance(ids, list) and ids:
        return tuple(str(i) for i in ids if i)
    single = payload.get("messageId") or payload.get("id")
    return (str(single),) if single else ()


def parse_event(payload: dict[str, Any]) -> ZapiEvent:
    """Validate a Z-API webhook payload and normalize it.

    Raises:
        InvalidPayloadError: If no instance identifier is present.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError("payload must be an object")

    instance_id = payload.get("instanceName") or payload.get("instance") or payload.get("instanceId")
    if not instance_id:
        raise InvalidPayloadError("missing instance")

    raw_phone = payload.get("phone") if isinstance(payload.get("phone"), str) else None
    chat_lid = payload.get("chatLid") if isinstance(payload.get("chatLid"), str) else None
    if not chat_lid and is_lid_jid(raw_phone):
        chat_lid = raw_phone

    text_block = payload.get("text")
    text = text_block.get("message") if isinstance(text_block, dict) else None
    media_kind, media_url = extract_media(payload)
    if text is None and media_kind:
        text = (payload.get(media_kind) or {}).get("caption")

    return ZapiEvent(
        event_type=str(payload.get("type") or payload.get("event") or "UNKNOWN"),
        instance_id=str(instance_id),
        is_status_callback=is_status_callback(payload),
        status=normalize_status(payload.get("status")),
        message_ids=_message_ids(payload),
        phone=extract_phone(raw_phone),
        chat_lid=chat_lid,
        from_me=bool(payload.get("fromMe", False)),
        is_group=bool(payload.get("isGroup", False)),
        text=text,
        sender_name=payload.get("senderName") or payload.get("chatName"),
        media_url=media_url,
        media_kind=media_kind,
        raw=payload,
    )
