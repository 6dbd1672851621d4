"""Per-workspace integration settings.

Resolves N8N webhook targets and WhatsApp provider credentials for a
workspace. Database rows win; environment variables are the fallback.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from psycopg2.extensions import cursor as PgCursor

from tezeus.whatsapp.models import ProviderConfig

from .db import fetchall, fetchone


@dataclass(frozen=True)
class WebhookTarget:
    """An N8N endpoint plus the optional bearer token it expects."""

    url: str
    token: str | None = None

    def headers(self) -> dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}


def legacy_secret_name(workspace_id: str) -> str:
    return f"N8N_WEBHOOK_URL_{workspace_id}"


def get_n8n_webhook_url(cur: PgCursor, *, workspace_id: str) -> str | None:
    """Workspace N8N webhook URL used for outbound sends.

    Priority:
    1. workspace_webhook_settings.webhook_url
    2. workspace_webhook_secrets row named N8N_WEBHOOK_URL_{workspace_id}
    """
    row = fetchone(
        cur,
        "SELECT webhook_url FROM workspace_webhook_settings WHERE workspace_id = %s",
        (workspace_id,),
    )
    if row and row[0]:
        return row[0]

    row = fetchone(
        cur,
        """
        SELECT webhook_url FROM workspace_webhook_secrets
        WHERE workspace_id = %s AND secret_name = %s
        """,
        (workspace_id, legacy_secret_name(workspace_id)),
    )
    if row and row[0]:
        return row[0]
    return None


def get_inbound_forward_target(cur: PgCursor, *, workspace_id: str) -> WebhookTarget | None:
    """Where provider webhooks are forwarded for a workspace.

    Workspace settings first, then N8N_INBOUND_WEBHOOK_URL / N8N_WEBHOOK_TOKEN.
    """
    row = fetchone(
        cur,
        "SELECT webhook_url, webhook_secret FROM workspace_webhook_settings WHERE workspace_id = %s",
        (workspace_id,),
    )
    if row and row[0]:
        return WebhookTarget(url=row[0], token=row[1] or None)

    env_url = os.environ.get("N8N_INBOUND_WEBHOOK_URL", "")
    if env_url:
        return WebhookTarget(url=env_url, token=os.environ.get("N8N_WEBHOOK_TOKEN") or None)
    return None


def get_status_forward_target(cur: PgCursor, *, workspace_id: str) -> WebhookTarget | None:
    """Target for message status updates: N8N_STATUS_WEBHOOK_URL, else the inbound target."""
    env_url = os.environ.get("N8N_STATUS_WEBHOOK_URL", "")
    if env_url:
        return WebhookTarget(url=env_url, token=os.environ.get("N8N_WEBHOOK_TOKEN") or None)
    return get_inbound_forward_target(cur, workspace_id=workspace_id)


def get_disparador_webhook_url(cur: PgCursor, *, workspace_id: str) -> str | None:
    """Campaign dispatcher webhook: env vars first, then disparador_settings."""
    for name in ("DISPARADOR_N8N_WEBHOOK_URL", "N8N_DISPARADOR_WEBHOOK_URL"):
        value = os.environ.get(name, "")
        if value:
            return value

    row = fetchone(
        cur,
        "SELECT value FROM disparador_settings WHERE workspace_id = %s AND key = %s",
        (workspace_id, "n8n_webhook_url"),
    )
    if row and row[0]:
        return row[0]
    return None


_PROVIDER_COLUMNS = """
    provider, is_active, enable_fallback, evolution_url, evolution_token,
    zapi_url, zapi_token, zapi_client_token
"""


def _row_to_config(row: tuple) -> ProviderConfig:
    provider, is_active, enable_fallback, evo_url, evo_token, zapi_url, zapi_token, zapi_client = row
    if provider == "evolution":
        return ProviderConfig(
            provider="evolution",
            base_url=evo_url or os.environ.get("EVOLUTION_BASE_URL") or None,
            api_key=evo_token or os.environ.get("EVOLUTION_API_KEY") or None,
            is_active=bool(is_active),
            enable_fallback=bool(enable_fallback),
        )
    return ProviderConfig(
        provider="zapi",
        base_url=zapi_url or None,
        token=zapi_token or None,
        client_token=zapi_client or None,
        is_active=bool(is_active),
        enable_fallback=bool(enable_fallback),
    )


def get_provider_configs(cur: PgCursor, *, workspace_id: str) -> list[ProviderConfig]:
    """All provider rows of a workspace, active first."""
    rows = fetchall(
        cur,
        f"""
        SELECT {_PROVIDER_COLUMNS}
        FROM whatsapp_providers
        WHERE workspace_id = %s
        ORDER BY is_active DESC, provider
        """,
        (workspace_id,),
    )
    return [_row_to_config(row) for row in rows]


def get_active_provider_config(cur: PgCursor, *, workspace_id: str) -> ProviderConfig | None:
    """The active provider of a workspace.

    Falls back to an env-configured Evolution server (EVOLUTION_BASE_URL +
    EVOLUTION_API_KEY) when the workspace has no active row.
    """
    for config in get_provider_configs(cur, workspace_id=workspace_id):
        if config.is_active:
            return config

    base_url = os.environ.get("EVOLUTION_BASE_URL", "")
    api_key = os.environ.get("EVOLUTION_API_KEY", "")
    if base_url and api_key:
        return ProviderConfig(provider="evolution", base_url=base_url, api_key=api_key, is_active=True)
    return None


def get_provider_config(cur: PgCursor, *, workspace_id: str, provider: str) -> ProviderConfig | None:
    """Config row for one named provider, active or not."""
    for config in get_provider_configs(cur, workspace_id=workspace_id):
        if config.provider == provider:
            return config
    return None
