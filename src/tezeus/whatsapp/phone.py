"""Phone number and WhatsApp JID helpers."""

import re

_JID_SUFFIX = re.compile(r"@(s\.whatsapp\.net|lid|g\.us|broadcast|c\.us)$")
_NON_DIGITS = re.compile(r"\D")

# Some Evolution builds append the device suffix "62" to the number
_MAX_PHONE_DIGITS = 13
_DEVICE_SUFFIX = "62"


def sanitize_phone(value: str | None) -> str:
    """Keep digits only; drop the device suffix on over-long numbers."""
    if not value:
        return ""
    digits = _NON_DIGITS.sub("", value)
    if len(digits) > _MAX_PHONE_DIGITS and digits.endswith(_DEVICE_SUFFIX):
        digits = digits[: -len(_DEVICE_SUFFIX)]
    return digits


def extract_phone_from_jid(jid: str | None) -> str:
    """Return the sanitized phone of a JID like ``5511999999999@s.whatsapp.net``."""
    if not jid:
        return ""
    return sanitize_phone(_JID_SUFFIX.sub("", jid))


def is_group_jid(jid: str | None) -> bool:
    return bool(jid) and jid.endswith("@g.us")


def is_broadcast_jid(jid: str | None) -> bool:
    return bool(jid) and jid.endswith("@broadcast")


def is_lid_jid(jid: str | None) -> bool:
    return bool(jid) and jid.endswith("@lid")


def to_jid(phone: str) -> str:
    """Build the individual-chat JID for a phone number."""
    return f"{sanitize_phone(phone)}@s.whatsapp.net"
