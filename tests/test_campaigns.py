"""Campaign dispatcher: trigger, callbacks and response classification."""

from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from tezeus.api.factory import create_app
from tezeus.domain.campaigns import (
    DEFAULT_FAILURE,
    CampaignHasNoContactsError,
    CampaignNotFoundError,
    InvalidCallbackError,
    WebhookNotConfiguredError,
    apply_callback,
    merge_response_kind,
    normalize_event,
    prepare_trigger,
)
from tezeus.infra.http import HttpResult

from .helpers import WORKSPACE_ID, _mock_txn

DOMAIN = "tezeus.domain.campaigns"

CAMPAIGN = {"id": "camp-1", "name": "Black Friday", "message": "Oferta!", "status": "rascunho"}
CONTACTS = [{"id": "ct-1", "name": "Ana", "phone": "5511999990000"}]


class TestEvents:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("disparador.campaign.completed", "campaign.completed"),
            ("completed", "campaign.completed"),
            ("disparador.send.sent", "send.sent"),
            ("failed", "send.failed"),
            (" response ", "response"),
            ("unknown", None),
            (None, None),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_event(raw) == expected

    def test_definite_kind_not_downgraded(self):
        assert merge_response_kind("positive", "any") == "positive"
        assert merge_response_kind("negative", None) == "negative"
        assert merge_response_kind("positive", "negative") == "negative"
        assert merge_response_kind(None, "weird") == "any"


class TestPrepareTrigger:
    def test_missing_campaign(self):
        with patch(f"{DOMAIN}.get_campaign", return_value=None):
            with pytest.raises(CampaignNotFoundError):
                prepare_trigger(MagicMock(), workspace_id=WORKSPACE_ID, campaign_id="camp-1", triggered_by="u-1")

    def test_no_contacts(self):
        with patch(f"{DOMAIN}.get_campaign", return_value=CAMPAIGN), \
             patch(f"{DOMAIN}.list_campaign_contacts", return_value=[]), \
             patch(f"{DOMAIN}.set_campaign_status") as set_status:
            with pytest.raises(CampaignHasNoContactsError):
                prepare_trigger(MagicMock(), workspace_id=WORKSPACE_ID, campaign_id="camp-1", triggered_by="u-1")
        set_status.assert_not_called()

    def test_no_webhook(self):
        with patch(f"{DOMAIN}.get_campaign", return_value=CAMPAIGN), \
             patch(f"{DOMAIN}.list_campaign_contacts", return_value=CONTACTS), \
             patch(f"{DOMAIN}.get_disparador_webhook_url", return_value=None):
            with pytest.raises(WebhookNotConfiguredError):
                prepare_trigger(MagicMock(), workspace_id=WORKSPACE_ID, campaign_id="camp-1", triggered_by="u-1")

    def test_marks_dispatching_and_builds_payload(self):
        connection = {
            "id": "conn-1",
            "instance_name": "loja",
            "provider": "evolution",
            "status": "connected",
            "phone_number": "5511888880000",
            "metadata": {"token": "secret"},
        }
        with patch(f"{DOMAIN}.get_campaign", return_value=CAMPAIGN), \
             patch(f"{DOMAIN}.list_campaign_contacts", return_value=CONTACTS), \
             patch(f"{DOMAIN}.get_disparador_webhook_url", return_value="https://n8n/disparador"), \
             patch(f"{DOMAIN}.set_campaign_status") as set_status, \
             patch(f"{DOMAIN}.upsert_send_events") as queued, \
             patch(f"{DOMAIN}.list_connections", return_value=[connection]):
            url, payload = prepare_trigger(
                MagicMock(), workspace_id=WORKSPACE_ID, campaign_id="camp-1", triggered_by="u-1"
            )
        assert url == "https://n8n/disparador"
        assert set_status.call_args.kwargs["status"] == "disparando"
        assert queued.call_args.kwargs == {"campaign_id": "camp-1", "contact_ids": ["ct-1"], "status": "queued"}
        assert payload["event"] == "disparador.campaign.trigger"
        assert payload["messages"] == [{"variation": 1, "content": "Oferta!"}]
        assert payload["contacts"] == CONTACTS
        assert "metadata" not in payload["connections"][0]


def _callback(**fields):
    payload = {"workspace_id": WORKSPACE_ID, "campaign_id": "camp-1", "contact_id": "ct-1"}
    payload.update(fields)
    return payload


class TestApplyCallback:
    def test_invalid_event(self):
        with pytest.raises(InvalidCallbackError, match="INVALID_PAYLOAD"):
            apply_callback(MagicMock(), _callback(event="nope"))

    def test_unknown_campaign(self):
        with patch(f"{DOMAIN}.get_campaign", return_value=None):
            with pytest.raises(InvalidCallbackError, match="CAMPAIGN_NOT_FOUND"):
                apply_callback(MagicMock(), _callback(event="sent"))

    def test_completed(self):
        with patch(f"{DOMAIN}.get_campaign", return_value=CAMPAIGN), \
             patch(f"{DOMAIN}.set_campaign_status") as set_status:
            result = apply_callback(MagicMock(), _callback(event="campaign.completed", contact_id=None))
        assert result == {"success": True, "event": "campaign.completed"}
        assert set_status.call_args.kwargs["status"] == "concluida"

    def test_contact_required(self):
        with patch(f"{DOMAIN}.get_campaign", return_value=CAMPAIGN):
            with pytest.raises(InvalidCallbackError):
                apply_callback(MagicMock(), _callback(event="sent", contact_id=""))

    def test_failed_default_error(self):
        with patch(f"{DOMAIN}.get_campaign", return_value=CAMPAIGN), \
             patch(f"{DOMAIN}.upsert_send_event") as upsert:
            apply_callback(MagicMock(), _callback(event="send.failed"))
        assert upsert.call_args.kwargs["status"] == "failed"
        assert upsert.call_args.kwargs["error"] == DEFAULT_FAILURE

    def test_sent_keeps_provider_id(self):
        with patch(f"{DOMAIN}.get_campaign", return_value=CAMPAIGN), \
             patch(f"{DOMAIN}.upsert_send_event") as upsert:
            apply_callback(MagicMock(), _callback(event="sent", external_id="wa-1"))
        assert upsert.call_args.kwargs["provider_message_id"] == "wa-1"
        assert upsert.call_args.kwargs["error"] is None

    def test_response_keeps_positive(self):
        with patch(f"{DOMAIN}.get_campaign", return_value=CAMPAIGN), \
             patch(f"{DOMAIN}.get_response_kind", return_value="positive"), \
             patch(f"{DOMAIN}.upsert_response_event") as upsert:
            result = apply_callback(MagicMock(), _callback(event="response", kind="any", raw="talvez"))
        assert result["kind"] == "positive"
        assert upsert.call_args.kwargs["response_text"] == "talvez"


class TestTriggerRoute:
    @pytest.fixture
    def client(self, auth_headers):
        with patch("tezeus.api.routes.campaigns.txn", _mock_txn()):
            yield TestClient(create_app(role="public")), auth_headers

    def _prepared(self):
        return "https://n8n/disparador", {"contacts": CONTACTS}

    def test_trigger_ok(self, client):
        http, headers = client
        with patch.dict("os.environ", {"DISPARADOR_WEBHOOK_SECRET": "s3"}), \
             patch("tezeus.api.routes.campaigns.prepare_trigger", return_value=self._prepared()), \
             patch("tezeus.api.routes.campaigns.post_json", return_value=HttpResult(True, 200, {}, 10)) as post:
            response = http.post("/campaigns/camp-1/trigger", headers=headers)
        assert response.status_code == 200
        assert response.json() == {"success": True, "campaign_id": "camp-1", "status": "disparando", "contacts": 1}
        assert post.call_args.kwargs["headers"] == {"x-secret": "s3"}

    def test_trigger_n8n_rejects(self, client):
        http, headers = client
        with patch("tezeus.api.routes.campaigns.prepare_trigger", return_value=self._prepared()), \
             patch("tezeus.api.routes.campaigns.post_json", return_value=HttpResult(False, 500, None, 10, "HTTP 500")):
            response = http.post("/campaigns/camp-1/trigger", headers=headers)
        assert response.status_code == 502
        assert response.json()["detail"]["status_code"] == 500

    @pytest.mark.parametrize(
        "error, status",
        [
            (CampaignNotFoundError("camp-1"), 404),
            (CampaignHasNoContactsError("camp-1"), 400),
            (WebhookNotConfiguredError(WORKSPACE_ID), 424),
        ],
    )
    def test_trigger_errors(self, client, error, status):
        http, headers = client
        with patch("tezeus.api.routes.campaigns.prepare_trigger", side_effect=error):
            response = http.post("/campaigns/camp-1/trigger", headers=headers)
        assert response.status_code == status


class TestDisparadorCallbackRoute:
    @pytest.fixture
    def client(self):
        with patch.dict("os.environ", {"DISPARADOR_WEBHOOK_SECRET": "s3"}), \
             patch("tezeus.api.routes.n8n_callbacks.txn", _mock_txn()):
            yield TestClient(create_app(role="public"))

    def test_wrong_secret(self, client):
        response = client.post("/webhooks/disparador", json=_callback(event="sent"), headers={"x-secret": "no"})
        assert response.status_code == 401

    def test_alternate_header_accepted(self, client):
        with patch("tezeus.api.routes.n8n_callbacks.apply_callback", return_value={"success": True, "event": "send.sent"}):
            response = client.post(
                "/webhooks/disparador", json=_callback(event="sent"), headers={"x-disparador-secret": "s3"}
            )
        assert response.status_code == 200

    def test_rejected_callback(self, client):
        with patch("tezeus.api.routes.n8n_callbacks.apply_callback", side_effect=InvalidCallbackError("CAMPAIGN_NOT_FOUND")):
            response = client.post("/webhooks/disparador", json=_callback(event="sent"), headers={"x-secret": "s3"})
        assert response.status_code == 400
        assert response.json() == {"error": "CAMPAIGN_NOT_FOUND"}
