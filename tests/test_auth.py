"""Tests for OIDC JWT authentication."""

from __future__ import annotations

import time
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from tezeus.api.factory import create_app

from .helpers import (
    _create_jwks,
    _create_token,
    _generate_rsa_keypair,
    _make_user,
    _mock_txn,
    _oidc_env,
)


@pytest.fixture
def rsa_keypair():
    return _generate_rsa_keypair()


@pytest.fixture
def jwks(rsa_keypair):
    _, public_key = rsa_keypair
    return _create_jwks(public_key)


@pytest.fixture
def oidc_env():
    return _oidc_env()


@pytest.fixture
def mock_jwks_fetch(jwks):
    with patch("tezeus.api.auth._fetch_jwks", return_value=jwks) as mock:
        yield mock


@pytest.fixture
def mock_db_user():
    """Only the subject ``user-123`` maps to an active system user."""
    user = _make_user(user_id="5b7c9e9a-0000-4000-8000-000000000001", profile="admin")

    def mock_get_user(auth_user_id: str):
        return user if auth_user_id == "user-123" else None

    with patch("tezeus.api.auth._get_user_from_db", side_effect=mock_get_user) as mock:
        mock.user = user
        yield mock


@pytest.fixture
def client(oidc_env):
    workspaces = [{"workspace_id": "ws-1", "name": "Loja Centro", "role": "admin"}]
    with patch.dict("os.environ", oidc_env), \
         patch("tezeus.api.routes.me.txn", _mock_txn()), \
         patch("tezeus.api.routes.me.list_user_workspaces", return_value=workspaces):
        yield TestClient(create_app(role="public"))


class TestAuthNoToken:
    def test_missing_auth_header(self, client):
        response = client.get("/me")
        assert response.status_code == 401
        assert "Missing authorization header" in response.json()["detail"]

    def test_not_configured(self, rsa_keypair):
        private_key, _ = rsa_keypair
        token = _create_token(private_key)
        with patch.dict("os.environ", {}, clear=True):
            response = TestClient(create_app(role="public")).get(
                "/me", headers={"Authorization": f"Bearer {token}"}
            )
        assert response.status_code == 401
        assert response.json()["detail"] == "OIDC not configured"


class TestAuthInvalidToken:
    def test_malformed_token(self, client, mock_jwks_fetch):
        response = client.get("/me", headers={"Authorization": "Bearer abc"})
        assert response.status_code == 401
        assert "Invalid token" in response.json()["detail"]

    def test_invalid_bearer_format(self, client):
        response = client.get("/me", headers={"Authorization": "Basic abc"})
        assert response.status_code == 401
        assert "Invalid authorization header" in response.json()["detail"]

    def test_expired_token(self, client, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        token = _create_token(private_key, exp=int(time.time()) - 3600)
        response = client.get("/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert "Token expired" in response.json()["detail"]

    def test_wrong_issuer(self, client, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        token = _create_token(private_key, iss="https://wrong-issuer.com")
        response = client.get("/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        # InvalidIssuerError is handled as a generic invalid token
        assert response.json()["detail"] == "Invalid token"

    def test_wrong_audience(self, client, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        token = _create_token(private_key, aud="another-api")
        response = client.get("/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"

    def test_unknown_kid(self, client, rsa_keypair, mock_jwks_fetch):
        private_key, _ = rsa_keypair
        token = _create_token(private_key, kid="unknown-key")
        response = client.get("/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        # cached JWKS, then one forced refresh
        assert mock_jwks_fetch.call_count == 2


class TestAuthUser:
    def test_user_not_found(self, client, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        token = _create_token(private_key, sub="someone-else")
        response = client.get("/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 403
        assert response.json()["detail"] == "User not found"

    def test_valid_token_returns_user_and_workspaces(self, client, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        token = _create_token(private_key, sub="user-123")
        response = client.get("/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == mock_db_user.user.id
        assert data["auth_user_id"] == "user-123"
        assert data["profile"] == "admin"
        assert data["workspaces"] == [{"workspace_id": "ws-1", "name": "Loja Centro", "role": "admin"}]


class TestAuthorizedParties:
    def test_azp_valid(self, oidc_env, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        token = _create_token(private_key, azp="tezeus-web")
        env = {**oidc_env, "OIDC_AUTHORIZED_PARTIES": "tezeus-web, tezeus-admin"}
        with patch.dict("os.environ", env), \
             patch("tezeus.api.routes.me.txn", _mock_txn()), \
             patch("tezeus.api.routes.me.list_user_workspaces", return_value=[]):
            response = TestClient(create_app(role="public")).get(
                "/me", headers={"Authorization": f"Bearer {token}"}
            )
        assert response.status_code == 200

    def test_azp_invalid(self, oidc_env, rsa_keypair, mock_jwks_fetch, mock_db_user):
        private_key, _ = rsa_keypair
        token = _create_token(private_key, azp="unknown-app")
        env = {**oidc_env, "OIDC_AUTHORIZED_PARTIES": "tezeus-web"}
        with patch.dict("os.environ", env):
            response = TestClient(create_app(role="public")).get(
                "/me", headers={"Authorization": f"Bearer {token}"}
            )
        assert response.status_code == 401


class TestJWKSCache:
    def test_jwks_cached(self, client, rsa_keypair, jwks, mock_db_user):
        private_key, _ = rsa_keypair
        token = _create_token(private_key)
        with patch("tezeus.api.auth._fetch_jwks", return_value=jwks) as mock_fetch:
            assert client.get("/me", headers={"Authorization": f"Bearer {token}"}).status_code == 200
            assert client.get("/me", headers={"Authorization": f"Bearer {token}"}).status_code == 200
        assert mock_fetch.call_count == 1

    def test_jwks_refresh_on_rotated_key(self, client, rsa_keypair, jwks, mock_db_user):
        private_key, _ = rsa_keypair
        token = _create_token(private_key)
        with patch("tezeus.api.auth._fetch_jwks", side_effect=[{"keys": []}, jwks]) as mock_fetch:
            response = client.get("/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert mock_fetch.call_count == 2
