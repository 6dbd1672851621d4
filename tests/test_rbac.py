"""Tests for workspace-scoped RBAC."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from tezeus.api.factory import create_app
from tezeus.api.rbac import (
    ROLE_HIERARCHY,
    WorkspaceRoleContext,
    _get_user_role_for_workspace,
    require_workspace_role,
)

from .helpers import _create_jwks, _create_token, _generate_rsa_keypair, _make_user, _mock_txn, _oidc_env

WORKSPACE_ID = "11111111-1111-4111-8111-111111111111"


@pytest.fixture
def rsa_keypair():
    return _generate_rsa_keypair()


@pytest.fixture
def auth_headers(rsa_keypair):
    private_key, public_key = rsa_keypair
    token = _create_token(private_key)
    with patch.dict("os.environ", _oidc_env()), \
         patch("tezeus.api.auth._fetch_jwks", return_value=_create_jwks(public_key)), \
         patch("tezeus.api.auth._get_user_from_db", return_value=_make_user()):
        yield {"Authorization": f"Bearer {token}", "X-Workspace-Id": WORKSPACE_ID}


@pytest.fixture
def role_app():
    app = FastAPI()

    @app.get("/as-user")
    def as_user(ctx: WorkspaceRoleContext = Depends(require_workspace_role("user"))):
        return {"workspace_id": ctx.workspace_id, "role": ctx.role}

    @app.get("/as-admin")
    def as_admin(ctx: WorkspaceRoleContext = Depends(require_workspace_role("admin"))):
        return {"role": ctx.role}

    return TestClient(app)


class TestRoleHierarchy:
    def test_order(self):
        assert ROLE_HIERARCHY == ["user", "admin", "master"]

    def test_invalid_min_role_rejected(self):
        with pytest.raises(ValueError):
            require_workspace_role("owner")


class TestRequireWorkspaceRole:
    def test_member_user_allowed(self, role_app, auth_headers):
        with patch("tezeus.api.rbac._get_user_role_for_workspace", return_value="user"):
            response = role_app.get("/as-user", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"workspace_id": WORKSPACE_ID, "role": "user"}

    def test_non_member_forbidden(self, role_app, auth_headers):
        with patch("tezeus.api.rbac._get_user_role_for_workspace", return_value=None):
            response = role_app.get("/as-user", headers=auth_headers)
        assert response.status_code == 403
        assert response.json()["detail"] == "No access to workspace"

    def test_insufficient_role(self, role_app, auth_headers):
        with patch("tezeus.api.rbac._get_user_role_for_workspace", return_value="user"):
            response = role_app.get("/as-admin", headers=auth_headers)
        assert response.status_code == 403
        assert response.json()["detail"] == "Insufficient role"

    @pytest.mark.parametrize("role", ["admin", "master"])
    def test_higher_roles_pass_admin_routes(self, role_app, auth_headers, role):
        with patch("tezeus.api.rbac._get_user_role_for_workspace", return_value=role):
            response = role_app.get("/as-admin", headers=auth_headers)
        assert response.status_code == 200

    def test_missing_workspace_header(self, role_app, auth_headers):
        headers = {"Authorization": auth_headers["Authorization"]}
        response = role_app.get("/as-user", headers=headers)
        assert response.status_code == 422

    def test_real_route_is_scoped(self, auth_headers):
        """Workspace routes in the app reject non-members before touching the database."""
        client = TestClient(create_app(role="public"))
        with patch("tezeus.api.rbac._get_user_role_for_workspace", return_value=None), \
             patch("tezeus.api.routes.conversations.txn") as mock_txn:
            response = client.post("/conversations/c-1/end", headers=auth_headers)
        assert response.status_code == 403
        mock_txn.assert_not_called()


class TestUserRoleLookup:
    def test_master_profile_is_master_everywhere(self):
        with patch("tezeus.api.rbac.txn") as mock_txn:
            role = _get_user_role_for_workspace(_make_user(profile="master"), WORKSPACE_ID)
        assert role == "master"
        mock_txn.assert_not_called()

    def test_member_role_from_workspace_members(self):
        cur = MagicMock()
        cur.fetchone.return_value = ("admin",)
        with patch("tezeus.api.rbac.txn", _mock_txn(cur)):
            role = _get_user_role_for_workspace(_make_user(), WORKSPACE_ID)
        assert role == "admin"
        sql, params = cur.execute.call_args[0]
        assert "workspace_members" in sql
        assert params == (WORKSPACE_ID, "user-uuid-1")

    def test_not_a_member(self):
        cur = MagicMock()
        cur.fetchone.return_value = None
        with patch("tezeus.api.rbac.txn", _mock_txn(cur)):
            assert _get_user_role_for_workspace(_make_user(), WORKSPACE_ID) is None
