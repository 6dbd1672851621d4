"""Worker delivery of stored outgoing messages."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from tezeus.api.factory import create_app
from tezeus.api.routes.tasks_messages import provider_message_id, sanitize_error
from tezeus.n8n.client import N8nResult
from tezeus.whatsapp.models import ProviderConfig, SendResult

from .helpers import _mock_txn

ROUTE = "tezeus.api.routes.tasks_messages"
CONFIG = ProviderConfig(provider="evolution", instance="loja", base_url="https://evo", api_key="k")


def _message(**overrides):
    message = {
        "id": "m-1",
        "workspace_id": "ws-1",
        "connection_id": "conn-1",
        "conversation_id": "c-1",
        "status": "sending",
        "phone": "5511999990000",
        "external_id": "ext-1",
        "message_type": "text",
        "content": "Olá",
        "file_url": None,
        "file_name": None,
        "mime_type": None,
        "instance_name": "loja",
        "provider": "evolution",
    }
    message.update(overrides)
    return message


@pytest.fixture
def client():
    with patch("tezeus.api.task_auth.verify_task_auth", return_value=True), \
         patch(f"{ROUTE}.txn", _mock_txn()):
        yield TestClient(create_app(role="worker"))


def test_provider_message_id_shapes():
    assert provider_message_id({"key": {"id": "wa-1"}}) == "wa-1"
    assert provider_message_id([{"messageId": "z-1"}]) == "z-1"
    assert provider_message_id({"zaapId": "zp"}) == "zp"
    assert provider_message_id("ok") is None
    assert provider_message_id([]) is None


def test_sanitize_error_truncates():
    assert sanitize_error(None) == "Unknown error"
    assert len(sanitize_error("x" * 2000)) == 500


def test_requires_task_auth():
    with patch("tezeus.api.task_auth.verify_task_auth", return_value=False):
        response = TestClient(create_app(role="worker")).post("/tasks/messages/send", json={"message_id": "m-1"})
    assert response.status_code == 401


def test_missing_message_id(client):
    assert client.post("/tasks/messages/send", json={}).status_code == 400


def test_unknown_message_acknowledged(client):
    with patch(f"{ROUTE}._load", return_value=(None, None, None, {})):
        response = client.post("/tasks/messages/send", json={"message_id": "m-1"})
    assert response.status_code == 200
    assert response.json()["status"] == "not_found"


def test_already_sent_is_skipped(client):
    with patch(f"{ROUTE}._load", return_value=(_message(status="sent"), None, CONFIG, {})), \
         patch(f"{ROUTE}.send_with_optional_fallback") as send:
        response = client.post("/tasks/messages/send", json={"message_id": "m-1"})
    assert response.json() == {"status": "skipped", "message_id": "m-1", "current_status": "sent"}
    send.assert_not_called()


def test_sent_via_n8n(client):
    n8n = N8nResult(ok=True, status_code=200, body={"key": {"id": "wa-9"}})
    with patch(f"{ROUTE}._load", return_value=(_message(), "https://n8n/hook", CONFIG, {})), \
         patch(f"{ROUTE}.post_send", return_value=n8n) as post, \
         patch(f"{ROUTE}.mark_sent") as mark_sent, \
         patch(f"{ROUTE}.send_with_optional_fallback") as send:
        response = client.post("/tasks/messages/send", json={"message_id": "m-1"})
    assert response.json() == {"status": "sent", "method": "n8n", "message_id": "m-1"}
    assert post.call_args.args[0] == "https://n8n/hook"
    assert mark_sent.call_args.kwargs["provider_msg_id"] == "wa-9"
    assert mark_sent.call_args.kwargs["method"] == "n8n"
    send.assert_not_called()


def test_n8n_failure_falls_back_to_direct(client):
    n8n = N8nResult(ok=False, status_code=500, error="N8N webhook failed with status 500")
    direct = SendResult(success=True, provider="evolution", provider_msg_id="wa-2")
    with patch(f"{ROUTE}._load", return_value=(_message(), "https://n8n/hook", CONFIG, {})), \
         patch(f"{ROUTE}.post_send", return_value=n8n), \
         patch(f"{ROUTE}.send_with_optional_fallback", return_value=direct) as send, \
         patch(f"{ROUTE}.mark_sent") as mark_sent:
        response = client.post("/tasks/messages/send", json={"message_id": "m-1"})
    assert response.json()["method"] == "direct"
    assert send.call_args.kwargs["phone"] == "5511999990000"
    assert send.call_args.kwargs["instance"] == "loja"
    metadata = mark_sent.call_args.kwargs["metadata"]
    assert metadata["n8n_error"] == "N8N webhook failed with status 500"


def test_no_n8n_sends_directly(client):
    direct = SendResult(success=True, provider="zapi", provider_msg_id="z-1", failover_from="evolution")
    with patch(f"{ROUTE}._load", return_value=(_message(), None, CONFIG, {})), \
         patch(f"{ROUTE}.post_send") as post, \
         patch(f"{ROUTE}.send_with_optional_fallback", return_value=direct), \
         patch(f"{ROUTE}.mark_sent") as mark_sent:
        response = client.post("/tasks/messages/send", json={"message_id": "m-1"})
    post.assert_not_called()
    assert response.json()["provider"] == "zapi"
    assert mark_sent.call_args.kwargs["metadata"]["failover_from"] == "evolution"


def test_permanent_failure_acknowledged(client):
    failed = SendResult(success=False, provider="evolution", error="HTTP 400", status_code=400, permanent=True)
    with patch(f"{ROUTE}._load", return_value=(_message(), None, CONFIG, {})), \
         patch(f"{ROUTE}.send_with_optional_fallback", return_value=failed), \
         patch(f"{ROUTE}.mark_failed") as mark_failed:
        response = client.post("/tasks/messages/send", json={"message_id": "m-1"})
    assert response.status_code == 200
    assert response.json()["permanent"] is True
    assert mark_failed.call_args.kwargs["metadata"]["error"] == "HTTP 400"


def test_transient_failure_retried(client):
    failed = SendResult(success=False, provider="evolution", error="ConnectTimeout")
    with patch(f"{ROUTE}._load", return_value=(_message(status="failed"), None, CONFIG, {})), \
         patch(f"{ROUTE}.send_with_optional_fallback", return_value=failed), \
         patch(f"{ROUTE}.mark_failed"):
        response = client.post("/tasks/messages/send", json={"message_id": "m-1"})
    assert response.status_code == 500
    assert response.json()["status"] == "failed"


def test_zapi_direct_send_uses_connection_instance(client):
    from tezeus.infra.http import HttpResult

    zapi = ProviderConfig(provider="zapi", token="workspace-token", client_token="ct", is_active=True)
    metadata = {"instanceId": "3CINSTANCE", "token": "INSTTOKEN"}
    message = _message(provider="zapi", instance_name="Loja Centro")
    http = HttpResult(ok=True, status_code=200, body={"messageId": "z-1"}, elapsed_ms=5)
    with patch(f"{ROUTE}._load", return_value=(message, None, zapi, metadata)), \
         patch(f"{ROUTE}.mark_sent") as mark_sent, \
         patch("tezeus.whatsapp.sender.txn", _mock_txn()), \
         patch("tezeus.whatsapp.sender.get_active_provider_config", return_value=zapi), \
         patch("tezeus.whatsapp.sender.get_provider_configs", return_value=[zapi]), \
         patch("tezeus.whatsapp.sender.insert_provider_log"), \
         patch("tezeus.whatsapp.providers.request_json", return_value=http) as request:
        response = client.post("/tasks/messages/send", json={"message_id": "m-1"})
    assert response.json()["status"] == "sent"
    url = request.call_args.args[1]
    assert url == "https://api.z-api.io/instances/3CINSTANCE/token/INSTTOKEN/send-text"
    assert mark_sent.call_args.kwargs["provider_msg_id"] == "z-1"


def test_zapi_n8n_payload_uses_connection_instance(client):
    zapi = ProviderConfig(provider="zapi", token="workspace-token", client_token="ct")
    metadata = {"instanceId": "3CINSTANCE", "token": "INSTTOKEN"}
    message = _message(provider="zapi", instance_name="Loja Centro")
    n8n = N8nResult(ok=True, status_code=200, body={"messageId": "z-2"})
    with patch(f"{ROUTE}._load", return_value=(message, "https://n8n/hook", zapi, metadata)), \
         patch(f"{ROUTE}.post_send", return_value=n8n) as post, \
         patch(f"{ROUTE}.mark_sent"):
        client.post("/tasks/messages/send", json={"message_id": "m-1"})
    payload = post.call_args.args[1]
    assert payload["instance_id"] == "3CINSTANCE"
    assert payload["instance_token"] == "INSTTOKEN"
