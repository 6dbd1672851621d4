"""Redaction helpers for safe logging.

Contact phones, WhatsApp JIDs, e-mails and provider credentials must never
reach the logs. Everything taken from a webhook, a provider response or a
request body passes through here first.
"""

import re
from typing import Any

_JID_PATTERN = re.compile(r"[\w.+-]+@(?:s\.whatsapp\.net|c\.us|g\.us|lid|broadcast)\b")
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_BEARER_PATTERN = re.compile(r"(?i)bearer\s+[a-z0-9._\-]+")

_REDACTED = "[REDACTED]"

# Keys whose values are replaced wholesale, whatever their shape
SECRET_KEYS = frozenset(
    {
        "apikey",
        "api_key",
        "token",
        "access_token",
        "refresh_token",
        "client_secret",
        "zapi_token",
        "zapi_client_token",
        "instance_token",
        "evolution_token",
        "secret",
        "password",
        "authorization",
    }
)


def redact_string(value: str) -> str:
    """Replace JIDs, phone numbers, e-mails and bearer tokens in a string."""
    result = _JID_PATTERN.sub(_REDACTED, value)
    result = _BEARER_PATTERN.sub(_REDACTED, result)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns a string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # structure only
        return f"dict(keys={sorted(str(k) for k in value.keys())})"
    if isinstance(value, (list, tuple, set)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def mask_phone(value: str | None) -> str:
    """Keep only the last four digits of a phone number: ``***1234``."""
    if not value:
        return ""
    digits = re.sub(r"\D", "", value)
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    context: dict[str, str] = {}
    for key, value in kwargs.items():
        if key.lower() in SECRET_KEYS and value:
            context[key] = _REDACTED
        else:
            context[key] = redact_value(value)
    return context
