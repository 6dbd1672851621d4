"""Tests for the Evolution and Z-API clients (HTTP mocked)."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from tezeus.infra.http import HttpResult
from tezeus.whatsapp.models import ProviderConfig
from tezeus.whatsapp.providers import (
    DisconnectResult,
    EvolutionProvider,
    ProviderConfigError,
    QrCodeResult,
    ZapiProvider,
    build_provider,
)

EVOLUTION = ProviderConfig(
    provider="evolution",
    instance="loja-centro",
    base_url="https://evo.example.com/",
    api_key="evo-key",
    is_active=True,
)
ZAPI = ProviderConfig(
    provider="zapi",
    instance="3C0FFEE",
    token="inst-token",
    client_token="client-token",
    is_active=True,
)


def _ok(body, status=200):
    return HttpResult(ok=True, status_code=status, body=body, elapsed_ms=12)


def _fail(status, body=None):
    return HttpResult(ok=False, status_code=status, body=body, elapsed_ms=30, error=f"HTTP {status}")


class TestBuildProvider:
    def test_evolution(self):
        assert isinstance(build_provider(EVOLUTION), EvolutionProvider)

    def test_zapi(self):
        assert isinstance(build_provider(ZAPI), ZapiProvider)

    def test_evolution_missing_credentials(self):
        with pytest.raises(ProviderConfigError):
            build_provider(ProviderConfig(provider="evolution", base_url="https://evo"))

    def test_zapi_missing_credentials(self):
        with pytest.raises(ProviderConfigError):
            build_provider(ProviderConfig(provider="zapi", instance="I"))


class TestEvolutionSend:
    def test_send_text(self):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_ok({"key": {"id": "EVO-1"}})) as req:
            result = EvolutionProvider(EVOLUTION).send_text("5511999998888", "Olá")
        assert result.success is True
        assert result.provider == "evolution"
        assert result.provider_msg_id == "EVO-1"
        method, url = req.call_args.args
        assert method == "POST"
        assert url == "https://evo.example.com/message/sendText/loja-centro"
        assert req.call_args.kwargs["payload"] == {"number": "5511999998888", "text": "Olá"}
        assert req.call_args.kwargs["headers"] == {"apikey": "evo-key"}
        assert req.call_args.kwargs["max_attempts"] == 3

    def test_send_media(self):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_ok({"key": {"id": "EVO-2"}})) as req:
            EvolutionProvider(EVOLUTION).send_media(
                "5511999998888",
                "https://files/x.pdf",
                "document",
                caption="boleto",
                file_name="x.pdf",
                mime_type="application/pdf",
            )
        payload = req.call_args.kwargs["payload"]
        assert req.call_args.args[1].endswith("/message/sendMedia/loja-centro")
        assert payload["mediatype"] == "document"
        assert payload["fileName"] == "x.pdf"
        assert payload["mimetype"] == "application/pdf"

    def test_client_error_is_permanent(self):
        body = {"response": {"message": ["number not on WhatsApp"]}}
        with patch("tezeus.whatsapp.providers.request_json", return_value=_fail(400, body)):
            result = EvolutionProvider(EVOLUTION).send_text("5511999998888", "Olá")
        assert result.success is False
        assert result.permanent is True
        assert "number not on WhatsApp" in result.error

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_retryable_errors_not_permanent(self, status):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_fail(status)):
            result = EvolutionProvider(EVOLUTION).send_text("5511999998888", "Olá")
        assert result.permanent is False

    def test_missing_instance(self):
        config = ProviderConfig(provider="evolution", base_url="https://evo", api_key="k")
        with pytest.raises(ProviderConfigError):
            EvolutionProvider(config).send_text("5511999998888", "Olá")


class TestEvolutionInstance:
    def test_connection_ok(self):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_ok([])):
            result = EvolutionProvider(EVOLUTION).test_connection()
        assert result.ok is True
        assert result.response_time_ms == 12

    def test_create_instance_registers_webhook(self):
        body = {"instance": {"instanceName": "nova"}, "hash": "h-123", "qrcode": {"base64": "data:image/png;base64,AAA"}}
        with patch("tezeus.whatsapp.providers.request_json", return_value=_ok(body, status=201)) as req:
            result = EvolutionProvider(EVOLUTION).create_instance("nova", "https://api.example.com/webhooks/evolution")
        assert result.ok is True
        assert result.qr_code == "data:image/png;base64,AAA"
        assert result.instance_token == "h-123"
        webhook = req.call_args.kwargs["payload"]["webhook"]
        assert webhook["url"] == "https://api.example.com/webhooks/evolution"
        assert "MESSAGES_UPSERT" in webhook["events"]

    def test_create_instance_failure(self):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_fail(403, {"message": "Forbidden"})):
            result = EvolutionProvider(EVOLUTION).create_instance("nova", "https://x")
        assert result.ok is False
        assert "Forbidden" in result.error


class TestZapi:
    def test_send_text_url_and_headers(self):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_ok({"zaapId": "z", "messageId": "ZAPI-1"})) as req:
            result = ZapiProvider(ZAPI).send_text("5511999998888", "Olá")
        assert result.provider_msg_id == "ZAPI-1"
        assert req.call_args.args[1] == "https://api.z-api.io/instances/3C0FFEE/token/inst-token/send-text"
        assert req.call_args.kwargs["headers"] == {"Client-Token": "client-token"}
        assert req.call_args.kwargs["payload"] == {"phone": "5511999998888", "message": "Olá"}

    def test_send_document_uses_extension_endpoint(self):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_ok({"messageId": "ZAPI-2"})) as req:
            ZapiProvider(ZAPI).send_media("5511999998888", "https://files/a.pdf", "document", file_name="a.pdf")
        assert req.call_args.args[1].endswith("/send-document/pdf")
        assert req.call_args.kwargs["payload"]["document"] == "https://files/a.pdf"

    def test_send_image(self):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_ok({"messageId": "ZAPI-3"})) as req:
            ZapiProvider(ZAPI).send_media("5511999998888", "https://files/a.jpg", "image", caption="foto")
        assert req.call_args.args[1].endswith("/send-image")
        assert req.call_args.kwargs["payload"] == {"phone": "5511999998888", "image": "https://files/a.jpg", "caption": "foto"}

    def test_status_not_connected(self):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_ok({"connected": False})):
            result = ZapiProvider(ZAPI).test_connection()
        assert result.ok is True
        assert result.message == "Instance reachable but not connected"

    def test_create_instance_requires_partner_token(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ProviderConfigError):
                ZapiProvider(ZAPI).create_instance("nova", "https://x")

    def test_create_instance_subscribes(self):
        responses = [_ok({"id": "NEWINST", "token": "NEWTOKEN"}), _ok({})]
        with patch.dict("os.environ", {"ZAPI_PARTNER_TOKEN": "partner"}), \
             patch("tezeus.whatsapp.providers.request_json", side_effect=responses) as req:
            result = ZapiProvider(ZAPI).create_instance("nova", "https://api.example.com/webhooks/zapi")
        assert result.ok is True
        assert result.instance_id == "NEWINST"
        assert result.instance_token == "NEWTOKEN"
        assert req.call_count == 2
        assert req.call_args_list[1].args[1].endswith("/instances/NEWINST/token/NEWTOKEN/integrator/on-demand/subscription")


class TestQrCodeAndDisconnect:
    def test_evolution_connect_returns_qr(self):
        body = {"code": "2@abc", "base64": "data:image/png;base64,QR", "count": 1}
        with patch("tezeus.whatsapp.providers.request_json", return_value=_ok(body)) as req:
            result = EvolutionProvider(EVOLUTION).fetch_qr_code()
        assert result == QrCodeResult(ok=True, qr_code="data:image/png;base64,QR", response_time_ms=12)
        assert req.call_args.args == ("GET", "https://evo.example.com/instance/connect/loja-centro")
        assert req.call_args.kwargs["headers"] == {"apikey": "evo-key"}

    def test_evolution_connect_without_qr(self):
        # an instance that is already paired answers with its state only
        with patch("tezeus.whatsapp.providers.request_json", return_value=_ok({"instance": {"state": "open"}})):
            result = EvolutionProvider(EVOLUTION).fetch_qr_code()
        assert result.ok is False
        assert result.error == "No QR code in provider response"

    def test_evolution_logout(self):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_ok({"status": "SUCCESS"})) as req:
            result = EvolutionProvider(EVOLUTION).disconnect()
        assert result == DisconnectResult(ok=True, response_time_ms=12)
        assert req.call_args.args == ("DELETE", "https://evo.example.com/instance/logout/loja-centro")

    def test_evolution_logout_failure(self):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_fail(404, {"message": "instance not found"})):
            result = EvolutionProvider(EVOLUTION).disconnect()
        assert result.ok is False
        assert "instance not found" in result.error

    def test_zapi_qr_image(self):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_ok({"value": "data:image/png;base64,ZQ"})) as req:
            result = ZapiProvider(ZAPI).fetch_qr_code()
        assert result.qr_code == "data:image/png;base64,ZQ"
        assert req.call_args.args[1] == "https://api.z-api.io/instances/3C0FFEE/token/inst-token/qr-code/image"

    def test_zapi_qr_failure(self):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_fail(502)):
            result = ZapiProvider(ZAPI).fetch_qr_code()
        assert result == QrCodeResult(ok=False, error="HTTP 502", response_time_ms=30)

    def test_zapi_disconnect(self):
        with patch("tezeus.whatsapp.providers.request_json", return_value=_ok({"value": True})) as req:
            result = ZapiProvider(ZAPI).disconnect()
        assert result.ok is True
        assert req.call_args.args == ("GET", "https://api.z-api.io/instances/3C0FFEE/token/inst-token/disconnect")
        assert req.call_args.kwargs["headers"] == {"Client-Token": "client-token"}
