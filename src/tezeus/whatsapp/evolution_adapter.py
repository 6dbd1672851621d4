"""Evolution API adapter - validate and normalize webhook payloads."""

from typing import Any

from .models import EvolutionEvent


class InvalidPayloadError(Exception):
    """Raised when a webhook payload has an invalid shape."""


# Evolution ack names -> numeric ack level
ACK_LEVELS: dict[str, int] = {
    "PENDING": 0,
    "SERVER_ACK": 1,
    "DELIVERY_ACK": 2,
    "READ": 3,
    "PLAYED": 4,
}

# Numeric ack level -> message status
_ACK_STATUS: dict[int, str] = {
    0: "sending",
    1: "sent",
    2: "delivered",
    3: "read",
    4: "read",
}

_MEDIA_KINDS: tuple[tuple[str, str], ...] = (
    ("audioMessage", "audio"),
    ("imageMessage", "image"),
    ("videoMessage", "video"),
    ("documentMessage", "document"),
)


def normalize_event_name(event: str | None) -> str:
    """``messages.upsert`` -> ``MESSAGES_UPSERT``."""
    return (event or "").upper().replace(".", "_")


def ack_to_status(ack: Any = None, status: str | None = None) -> str | None:
    """Map an Evolution ack (numeric ``ack`` or named ``status``) to a message status.

    Returns None for unknown values.
    """
    level: int | None = None
    if isinstance(ack, int) and not isinstance(ack, bool):
        level = ack
    elif isinstance(status, str):
        level = ACK_LEVELS.get(status.upper())
    if level is None:
        return None
    return _ACK_STATUS.get(level)


def message_kind(message: dict[str, Any] | None) -> str:
    """Classify a WhatsApp message body as audio, image, video, document or text."""
    if not message:
        return "text"
    for key, kind in _MEDIA_KINDS:
        if message.get(key):
            return kind
    return "text"


def extract_text(message: dict[str, Any] | None) -> str | None:
    """Text of a message: plain, extended, or the media caption."""
    if not message:
        return None
    if message.get("conversation"):
        return message["conversation"]
    extended = message.get("extendedTextMessage") or {}
    if extended.get("text"):
        return extended["text"]
    for key, _ in _MEDIA_KINDS:
        caption = (message.get(key) or {}).get("caption")
        if caption:
            return caption
    return None


def parse_event(payload: dict[str, Any]) -> EvolutionEvent:
    """Validate an Evolution webhook payload and normalize it.

    Args:
        payload: Raw webhook body.

    Returns:
        EvolutionEvent. Contact fields stay in memory only.

    Raises:
        InvalidPayloadError: If the event or instance name is missing.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError("payload must be an object")

    event = normalize_event_name(payload.get("event"))
    if not event:
        raise InvalidPayloadError("missing event")

    instance = payload.get("instance") or payload.get("instanceName")
    if not instance or not isinstance(instance, str):
        raise InvalidPayloadError("missing instance")

    data = payload.get("data")
    if not isinstance(data, dict):
        # CONTACTS_* events carry a list; the route reads it from raw
        return EvolutionEvent(event=event, instance=instance, raw=payload)

    key = data.get("key") or {}
    message = data.get("message") or {}

    status = None
    if event == "MESSAGES_UPDATE":
        status = ack_to_status(data.get("ack"), data.get("status"))

    return EvolutionEvent(
        event=event,
        instance=instance,
        key_id=data.get("keyId") or key.get("id"),
        short_key_id=key.get("id"),
        remote_jid=key.get("remoteJid") or data.get("remoteJid"),
        from_me=bool(key.get("fromMe", data.get("fromMe", False))),
        message_type=message_kind(message) if message else data.get("messageType"),
        text=extract_text(message),
        push_name=data.get("pushName"),
        status=status,
        message_id=data.get("messageId") or key.get("id"),
        raw=payload,
    )


def dedup_key(event: EvolutionEvent) -> str | None:
    """Key for the short-lived duplicate filter: ``EVENT:id``.

    Status updates add the mapped status (``MESSAGES_UPDATE:id:read``) so a
    later ack of the same message is not filtered.

    Returns None when the event carries no message identifier, in which case
    it is never treated as a duplicate.
    """
    data = event.raw.get("data")
    if not isinstance(data, dict):
        return None
    ident = data.get("keyId") or data.get("messageId") or (data.get("key") or {}).get("id")
    if not ident:
        return None
    if event.event == "MESSAGES_UPDATE" and event.status:
        return f"{event.event}:{ident}:{event.status}"
    return f"{event.event}:{ident}"


def extract_qr_code(body: Any) -> str | None:
    """QR code from an ``/instance/connect`` response or QRCODE_UPDATED data.

    Looks at ``base64``, then ``code``, then ``qrcode`` (a string or an
    object carrying ``base64``/``code``).
    """
    if not isinstance(body, dict):
        return None
    for key in ("base64", "code"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    qrcode = body.get("qrcode")
    if isinstance(qrcode, dict):
        return qrcode.get("base64") or qrcode.get("code") or None
    if isinstance(qrcode, str) and qrcode:
        return qrcode
    return None
