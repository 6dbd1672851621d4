"""Shared pytest fixtures for Tezeus tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_oidc_jwks_cache():
    """Reset the module-level JWKS cache so keys from one test never leak into another."""
    import tezeus.api.auth as auth_module

    auth_module._jwks_cache = None
    auth_module._jwks_cache_time = 0
    yield
    auth_module._jwks_cache = None
    auth_module._jwks_cache_time = 0


@pytest.fixture(autouse=True)
def _reset_webhook_dedup():
    """Webhook dedup is process-wide; start every test with it empty."""
    from tezeus.whatsapp.dedup import recent_events

    recent_events.clear()
    yield
    recent_events.clear()


@pytest.fixture(scope="session")
def _session_rsa_keypair():
    from .helpers import _generate_rsa_keypair

    return _generate_rsa_keypair()


@pytest.fixture
def auth_headers(_session_rsa_keypair):
    """Headers of an authenticated admin of WORKSPACE_ID (user id ``user-uuid-1``)."""
    from unittest.mock import patch

    from .helpers import WORKSPACE_ID, _create_jwks, _create_token, _make_user, _oidc_env

    private_key, public_key = _session_rsa_keypair
    token = _create_token(private_key)
    with patch.dict("os.environ", _oidc_env()), \
         patch("tezeus.api.auth._fetch_jwks", return_value=_create_jwks(public_key)), \
         patch("tezeus.api.auth._get_user_from_db", return_value=_make_user()), \
         patch("tezeus.api.rbac._get_user_role_for_workspace", return_value="admin"):
        yield {"Authorization": f"Bearer {token}", "X-Workspace-Id": WORKSPACE_ID}
