"""Tests for observability utilities."""

import json
import logging
import re

from tezeus.observability.correlation import (
    generate_request_id,
    get_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from tezeus.observability.logging import JsonFormatter, get_logger
from tezeus.observability.redaction import (
    mask_phone,
    redact_string,
    redact_value,
    safe_log_context,
)


class TestRedaction:
    def test_redact_phone_number(self):
        result = redact_string("Call me at +55 11 99999-8888")
        assert "99999" not in result
        assert "[REDACTED]" in result

    def test_redact_jid(self):
        result = redact_string("from 5511999998888@s.whatsapp.net")
        assert "5511999998888" not in result

    def test_redact_lid(self):
        assert "203948573" not in redact_string("sender 203948573@lid")

    def test_redact_email(self):
        result = redact_string("Email: user@example.com")
        assert "user@example.com" not in result

    def test_redact_bearer(self):
        result = redact_string("Authorization: Bearer eyJhbGciOi.abc.def")
        assert "eyJhbGciOi" not in result

    def test_redact_value_dict_only_keys(self):
        result = redact_value({"phone": "5511999998888", "text": "oi"})
        assert result == "dict(keys=['phone', 'text'])"

    def test_redact_value_list_only_len(self):
        assert redact_value(["a", "b", "c"]) == "list(len=3)"

    def test_redact_value_scalars(self):
        assert redact_value(None) == "null"
        assert redact_value(True) == "true"
        assert redact_value(42) == "42"

    def test_mask_phone(self):
        assert mask_phone("+55 11 99999-8888") == "***8888"
        assert mask_phone("123") == "***"
        assert mask_phone(None) == ""


class TestSafeLogContext:
    def test_values_redacted(self):
        ctx = safe_log_context(phone="+5511999998888", count=42)
        assert "[REDACTED]" in ctx["phone"]
        assert ctx["count"] == "42"

    def test_secret_keys_replaced(self):
        ctx = safe_log_context(apikey="abc", client_secret="xyz", token="t", status_code=401)
        assert ctx["apikey"] == "[REDACTED]"
        assert ctx["client_secret"] == "[REDACTED]"
        assert ctx["token"] == "[REDACTED]"
        assert ctx["status_code"] == "401"

    def test_empty_secret_shows_null(self):
        assert safe_log_context(token=None)["token"] == "null"


class TestCorrelation:
    def test_set_and_reset(self):
        token = set_correlation_id("cid-1")
        try:
            assert get_correlation_id() == "cid-1"
        finally:
            reset_correlation_id(token)
        assert get_correlation_id() == ""

    def test_request_id_format(self):
        assert re.fullmatch(r"send_\d{13}_[a-z0-9]{9}", generate_request_id("send"))


class TestJsonLogging:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("tezeus.test", logging.INFO, __file__, 1, "message sent", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_format_includes_service_and_fields(self):
        out = json.loads(JsonFormatter().format(self._record(extra_fields={"message_id": "m-1"})))
        assert out["service"] == "tezeus"
        assert out["level"] == "INFO"
        assert out["message"] == "message sent"
        assert out["message_id"] == "m-1"

    def test_correlation_id_attached(self):
        token = set_correlation_id("cid-log")
        try:
            out = json.loads(JsonFormatter().format(self._record()))
        finally:
            reset_correlation_id(token)
        assert out["correlationId"] == "cid-log"

    def test_get_logger_single_handler(self):
        first = get_logger("tezeus.test.handlers")
        second = get_logger("tezeus.test.handlers")
        assert first is second
        assert len(first.handlers) == 1
        assert first.propagate is False
