"""Tests for Z-API webhook parsing."""

import pytest

from tezeus.whatsapp.evolution_adapter import InvalidPayloadError
from tezeus.whatsapp.zapi_adapter import (
    extract_media,
    extract_phone,
    is_status_callback,
    normalize_status,
    parse_event,
)


class TestStatus:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("SENT", "sent"),
            ("DELIVERED", "delivered"),
            ("RECEIVED", "delivered"),
            ("READ", "read"),
            ("PLAYED", "read"),
            ("FAILED", "failed"),
            ("PENDING", "sending"),
        ],
    )
    def test_known(self, raw, expected):
        assert normalize_status(raw) == expected

    def test_unknown_is_lowercased(self):
        assert normalize_status("QUEUED") == "queued"

    def test_missing(self):
        assert normalize_status(None) is None
        assert normalize_status(3) is None


class TestStatusCallbackDetection:
    def test_explicit_type(self):
        assert is_status_callback({"type": "MessageStatusCallback"})

    def test_delivery_callback_event(self):
        assert is_status_callback({"event": "DeliveryCallback"})

    def test_ids_and_status(self):
        assert is_status_callback({"ids": ["A"], "status": "READ"})

    def test_message_with_own_status_is_not_a_callback(self):
        assert not is_status_callback({"type": "ReceivedCallback", "status": "RECEIVED", "messageId": "A"})


class TestPhoneAndMedia:
    def test_phone_digits(self):
        assert extract_phone("5511999998888") == "5511999998888"

    def test_lid_and_groups_have_no_phone(self):
        assert extract_phone("123456789@lid") is None
        assert extract_phone("120363-group") is None
        assert extract_phone("120363@g.us") is None

    def test_image_download_url_preferred(self):
        payload = {"image": {"downloadUrl": "https://a/1.jpg", "imageUrl": "https://b/1.jpg"}}
        assert extract_media(payload) == ("image", "https://a/1.jpg")

    def test_document_without_url(self):
        assert extract_media({"document": {"fileName": "x.pdf"}}) == ("document", None)

    def test_no_media(self):
        assert extract_media({"text": {"message": "oi"}}) == (None, None)


class TestParseEvent:
    def test_received_text(self):
        event = parse_event({
            "type": "ReceivedCallback",
            "instanceId": "3C0FFEE",
            "messageId": "Z1",
            "phone": "5511999998888",
            "fromMe": False,
            "isGroup": False,
            "senderName": "João",
            "text": {"message": "Bom dia"},
        })
        assert event.event_type == "ReceivedCallback"
        assert event.instance_id == "3C0FFEE"
        assert event.is_status_callback is False
        assert event.message_ids == ("Z1",)
        assert event.phone == "5511999998888"
        assert event.text == "Bom dia"
        assert event.sender_name == "João"

    def test_lid_phone_moves_to_chat_lid(self):
        event = parse_event({"type": "ReceivedCallback", "instanceId": "I", "messageId": "Z2", "phone": "998877@lid"})
        assert event.phone is None
        assert event.chat_lid == "998877@lid"

    def test_media_caption_as_text(self):
        event = parse_event({
            "type": "ReceivedCallback",
            "instanceId": "I",
            "messageId": "Z3",
            "phone": "5511999998888",
            "image": {"imageUrl": "https://cdn/x.jpg", "caption": "olha"},
        })
        assert event.media_kind == "image"
        assert event.media_url == "https://cdn/x.jpg"
        assert event.text == "olha"

    def test_status_callback_with_ids(self):
        event = parse_event({
            "type": "MessageStatusCallback",
            "instanceId": "I",
            "status": "READ",
            "ids": ["A", "B"],
            "phone": "5511999998888",
        })
        assert event.is_status_callback is True
        assert event.status == "read"
        assert event.message_ids == ("A", "B")

    def test_missing_instance(self):
        with pytest.raises(InvalidPayloadError):
            parse_event({"type": "ReceivedCallback"})
