"""Shared test helper functions for Tezeus tests.

This module contains helper functions that can be imported by both conftest.py
and individual test files. These are NOT fixtures - they are regular functions.
"""

from __future__ import annotations

import base64
import time

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

WORKSPACE_ID = "11111111-1111-4111-8111-111111111111"


def _generate_rsa_keypair():
    """Generate RSA key pair for test JWT signing."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )
    public_key = private_key.public_key()
    return private_key, public_key


def _create_jwks(public_key, kid: str = "test-key-1") -> dict:
    """Create JWKS from public key."""
    public_numbers = public_key.public_numbers()

    def int_to_base64(n: int) -> str:
        byte_length = (n.bit_length() + 7) // 8
        return (
            base64.urlsafe_b64encode(n.to_bytes(byte_length, "big"))
            .rstrip(b"=")
            .decode()
        )

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": kid,
                "n": int_to_base64(public_numbers.n),
                "e": int_to_base64(public_numbers.e),
            }
        ]
    }


def _create_token(
    private_key,
    kid: str = "test-key-1",
    sub: str = "user-123",
    iss: str = "https://auth.example.com",
    aud: str = "tezeus-api",
    exp: int | None = None,
    azp: str | None = None,
) -> str:
    """Create signed JWT for testing."""
    now = int(time.time())
    payload = {
        "sub": sub,
        "iss": iss,
        "aud": aud,
        "exp": exp if exp is not None else now + 3600,
        "iat": now,
    }
    if azp:
        payload["azp"] = azp

    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


def _oidc_env(jwks_url: str = "https://auth.example.com/.well-known/jwks.json") -> dict[str, str]:
    """Environment for a configured OIDC verifier matching _create_token defaults."""
    return {
        "OIDC_ISSUER": "https://auth.example.com",
        "OIDC_AUDIENCE": "tezeus-api",
        "OIDC_JWKS_URL": jwks_url,
    }


def _mock_jwks_response(jwks: dict):
    """requests.get replacement returning the given JWKS."""
    from unittest.mock import MagicMock

    response = MagicMock()
    response.json.return_value = jwks
    response.raise_for_status.return_value = None
    return response


def _make_user(user_id: str = "user-uuid-1", profile: str = "user"):
    from tezeus.api.auth import CurrentUser

    return CurrentUser(
        id=user_id,
        auth_user_id="user-123",
        email="agent@example.com",
        name="Agent",
        profile=profile,
    )


def _mock_txn(cursor=None):
    """Patch target for ``txn``: a context manager yielding ``cursor``."""
    from contextlib import contextmanager
    from unittest.mock import MagicMock

    cur = cursor if cursor is not None else MagicMock()

    @contextmanager
    def _txn(*args, **kwargs):
        yield cur

    return _txn
