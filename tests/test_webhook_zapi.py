"""Z-API webhook route."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from tezeus.api.factory import create_app
from tezeus.domain.inbound import InboundResult, UnknownSenderError
from tezeus.domain.message_status import MessageNotFoundError
from tezeus.infra.workspace_settings import WebhookTarget
from tezeus.tasks.client import TasksClient

from .helpers import _mock_txn

ROUTE = "tezeus.api.routes.webhooks_zapi"
SECRET = {"z-api-token": "zapi-secret"}
CONNECTION = {"id": "conn-1", "workspace_id": "ws-1", "phone_number": None}


def _received(**overrides):
    payload = {
        "type": "ReceivedCallback",
        "instanceId": "inst-1",
        "messageId": "Z1",
        "phone": "5511999998888",
        "fromMe": False,
        "isGroup": False,
        "senderName": "Maria",
        "text": {"message": "Oi"},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def tasks_client():
    client = TasksClient(backend="inline")
    with patch(f"{ROUTE}._get_tasks_client", return_value=client):
        yield client


@pytest.fixture
def forward():
    with patch(f"{ROUTE}.forward_event") as forward_event:
        yield forward_event


@pytest.fixture
def client(tasks_client, forward):
    with patch.dict("os.environ", {"ZAPI_WEBHOOK_SECRET": "zapi-secret"}), \
         patch(f"{ROUTE}.txn", _mock_txn()), \
         patch(f"{ROUTE}.get_connection_by_instance", return_value=CONNECTION), \
         patch(f"{ROUTE}.get_inbound_forward_target", return_value=WebhookTarget("https://n8n/zapi")):
        yield TestClient(create_app(role="public"))


def test_secret_required(client):
    assert client.post("/webhooks/zapi", json=_received()).status_code == 401


def test_unknown_instance(client):
    with patch(f"{ROUTE}.get_connection_by_instance", return_value=None):
        response = client.post("/webhooks/zapi", json=_received(), headers=SECRET)
    assert response.status_code == 404


def test_inbound_stored_distributed_and_forwarded(client, tasks_client, forward):
    with patch(f"{ROUTE}.record_inbound", return_value=InboundResult("ct-1", "c-1", "m-1", True)) as record:
        response = client.post("/webhooks/zapi", json=_received(), headers=SECRET)
    assert response.status_code == 200
    message = record.call_args.kwargs["message"]
    assert message.provider == "zapi"
    assert message.phone == "5511999998888"
    assert message.content == "Oi"
    assert [t["task_id"] for t in tasks_client.get_scheduled_tasks()] == ["conversation-distribute:c-1"]
    payload = forward.call_args.args[1]
    assert payload["messageId"] == "Z1"
    assert payload["conversation_id"] == "c-1"
    assert forward.call_args.kwargs["kind"] == "zapi"


def test_replay_is_duplicate(client):
    with patch(f"{ROUTE}.record_inbound", return_value=InboundResult("ct-1", "c-1", "m-1", False)) as record:
        client.post("/webhooks/zapi", json=_received(), headers=SECRET)
        response = client.post("/webhooks/zapi", json=_received(), headers=SECRET)
    assert response.text == "duplicate"
    assert record.call_count == 1


def test_group_forwarded_without_storing(client, forward):
    with patch(f"{ROUTE}.record_inbound") as record:
        response = client.post("/webhooks/zapi", json=_received(isGroup=True), headers=SECRET)
    assert response.text == "ignored"
    record.assert_not_called()
    forward.assert_called_once()


def test_lid_only_sender_ignored(client):
    payload = _received(phone="123456@lid")
    with patch(f"{ROUTE}.record_inbound", side_effect=UnknownSenderError("lid")):
        response = client.post("/webhooks/zapi", json=payload, headers=SECRET)
    assert response.status_code == 200


def test_status_callback_updates_each_id(client, forward):
    payload = {"type": "MessageStatusCallback", "instanceId": "inst-1", "ids": ["A", "B", "C"], "status": "READ"}
    outcomes = [{"action": "updated"}, {"action": "skipped"}, MessageNotFoundError("C")]
    with patch(f"{ROUTE}.reconcile_status", side_effect=outcomes) as reconcile:
        response = client.post("/webhooks/zapi", json=payload, headers=SECRET)
    assert response.status_code == 200
    assert [c.args[1]["external_id"] for c in reconcile.call_args_list] == ["A", "B", "C"]
    assert reconcile.call_args_list[0].args[1]["status"] == "read"
    assert reconcile.call_args_list[0].args[1]["connection_id"] == "conn-1"
    forward.assert_called_once()


def test_connection_callback(client):
    payload = {"type": "DisconnectedCallback", "instanceId": "inst-1"}
    with patch(f"{ROUTE}.update_status") as update:
        response = client.post("/webhooks/zapi", json=payload, headers=SECRET)
    assert response.status_code == 200
    assert update.call_args.kwargs["status"] == "disconnected"


def test_processing_error_returns_500(client):
    with patch(f"{ROUTE}.record_inbound", side_effect=RuntimeError("db down")):
        response = client.post("/webhooks/zapi", json=_received(), headers=SECRET)
    assert response.status_code == 500


def test_retry_after_failure_is_processed(client):
    stored = InboundResult("ct-1", "c-1", "m-1", False)
    with patch(f"{ROUTE}.record_inbound", side_effect=[RuntimeError("db down"), stored]) as record:
        first = client.post("/webhooks/zapi", json=_received(), headers=SECRET)
        second = client.post("/webhooks/zapi", json=_received(), headers=SECRET)
    assert first.status_code == 500
    assert second.status_code == 200
    assert record.call_count == 2


def test_unknown_status_counted_as_skipped(client, forward):
    payload = {"type": "MessageStatusCallback", "instanceId": "inst-1", "ids": ["A"], "status": "DELETED"}
    response = client.post("/webhooks/zapi", json=payload, headers=SECRET)
    assert response.status_code == 200
    assert response.text == "ok"
