"""Tests for the outbound JSON helper."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from tezeus.infra.http import post_json, request_json


def _response(status: int, body=None):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    if body is None:
        response.json.side_effect = ValueError("no json")
        response.text = "plain"
    else:
        response.json.return_value = body
    return response


class TestRequestJson:
    def test_success(self):
        with patch("tezeus.infra.http.requests.request", return_value=_response(200, {"ok": True})) as req:
            result = post_json("https://n8n/webhook", {"a": 1}, headers={"x-secret": "s"})
        assert result.ok is True
        assert result.body == {"ok": True}
        kwargs = req.call_args.kwargs
        assert kwargs["json"] == {"a": 1}
        assert kwargs["headers"] == {"Content-Type": "application/json", "x-secret": "s"}

    def test_non_json_body(self):
        with patch("tezeus.infra.http.requests.request", return_value=_response(200)):
            assert request_json("GET", "https://x").body == "plain"

    def test_client_error_not_retried(self):
        with patch("tezeus.infra.http.requests.request", return_value=_response(404, {"error": "nope"})) as req, \
             patch("tezeus.infra.http.time.sleep") as sleep:
            result = request_json("GET", "https://x", max_attempts=3)
        assert result.ok is False
        assert result.status_code == 404
        assert result.error == "HTTP 404"
        assert req.call_count == 1
        sleep.assert_not_called()

    def test_server_error_retried(self):
        responses = [_response(502, {}), _response(200, {"done": 1})]
        with patch("tezeus.infra.http.requests.request", side_effect=responses) as req, \
             patch("tezeus.infra.http.time.sleep") as sleep:
            result = request_json("POST", "https://x", payload={}, max_attempts=3)
        assert result.ok is True
        assert req.call_count == 2

    def test_zero_attempts_rejected(self):
        with patch("tezeus.infra.http.requests.request") as req:
            with pytest.raises(ValueError):
                request_json("GET", "https://x", max_attempts=0)
        req.assert_not_called()
        sleep.assert_called_once_with(1.0)

    def test_network_error_exhausts_attempts(self):
        with patch("tezeus.infra.http.requests.request", side_effect=requests.ConnectionError()) as req, \
             patch("tezeus.infra.http.time.sleep"):
            result = request_json("POST", "https://x", max_attempts=2)
        assert result.ok is False
        assert result.status_code is None
        assert result.error == "ConnectionError"
        assert req.call_count == 2
