"""WhatsApp connection endpoints: creation, connectivity test, QR refresh and disconnect."""

from __future__ import annotations

import os
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel

from tezeus.api.rbac import WorkspaceRoleContext, require_workspace_role
from tezeus.infra.db import txn
from tezeus.infra.repositories.connections_repository import (
    get_connection,
    insert_connection,
    set_qr_code,
    update_status,
)
from tezeus.infra.repositories.provider_logs_repository import insert_provider_log
from tezeus.infra.workspace_settings import get_provider_config
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context
from tezeus.whatsapp.models import ProviderConfig
from tezeus.whatsapp.providers import ProviderConfigError, build_provider

router = APIRouter(prefix="/connections", tags=["connections"])

logger = get_logger(__name__)

_WEBHOOK_PATHS = {"evolution": "/webhooks/evolution", "zapi": "/webhooks/zapi"}


class CreateConnectionRequest(BaseModel):
    instance_name: str
    provider: Literal["evolution", "zapi"] = "evolution"
    phone_number: str | None = None
    queue_id: str | None = None
    auto_create_crm_card: bool = False
    default_pipeline_id: str | None = None


def _webhook_url(provider: str) -> str:
    base = os.environ.get("PUBLIC_BASE_URL", "").rstrip("/")
    if not base:
        raise HTTPException(status_code=500, detail="PUBLIC_BASE_URL not configured")
    return f"{base}{_WEBHOOK_PATHS[provider]}"


def _provider_config(workspace_id: str, provider: str) -> ProviderConfig:
    with txn() as cur:
        config = get_provider_config(cur, workspace_id=workspace_id, provider=provider)
    if config is None:
        raise HTTPException(status_code=400, detail=f"Provider {provider} not configured for workspace")
    return config


def _load_connection(workspace_id: str, connection_id: str) -> dict:
    with txn() as cur:
        connection = get_connection(cur, connection_id=connection_id)
    if connection is None or connection["workspace_id"] != workspace_id:
        raise HTTPException(status_code=404, detail="Connection not found")
    return connection


@router.post("/{connection_id}/test")
def run_connection_test(
    connection_id: str = Path(..., description="Connection UUID"),
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("user")),
) -> dict:
    """Check the provider behind a connection and log the outcome."""
    connection = _load_connection(ctx.workspace_id, connection_id)

    config = _provider_config(ctx.workspace_id, connection["provider"]).for_connection(
        connection["instance_name"],
        connection.get("metadata"),
    )
    try:
        result = build_provider(config).test_connection()
    except ProviderConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))

    with txn() as cur:
        insert_provider_log(
            cur,
            workspace_id=ctx.workspace_id,
            provider=config.provider,
            action="test_connection",
            success=result.ok,
            response_time_ms=result.response_time_ms,
            error_message=None if result.ok else result.message,
            metadata={"connection_id": connection_id},
        )

    return {
        "success": result.ok,
        "provider": config.provider,
        "message": result.message,
        "response_time_ms": result.response_time_ms,
    }


@router.post("", status_code=201)
def create_connection(
    body: CreateConnectionRequest,
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("admin")),
) -> dict:
    """Create the provider instance, subscribe our webhook and store the connection."""
    config = _provider_config(ctx.workspace_id, body.provider)
    webhook_url = _webhook_url(body.provider)

    try:
        result = build_provider(config).create_instance(
            body.instance_name,
            webhook_url,
            phone_number=body.phone_number,
        )
    except ProviderConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not result.ok:
        logger.warning(
            "instance creation failed",
            extra={"extra_fields": safe_log_context(workspace_id=ctx.workspace_id, provider=body.provider)},
        )
        raise HTTPException(status_code=502, detail=result.error or "Instance creation failed")

    metadata: dict[str, str] = {}
    if result.instance_id:
        metadata["instanceId"] = result.instance_id
    if result.instance_token:
        metadata["token"] = result.instance_token

    with txn() as cur:
        connection_id = insert_connection(
            cur,
            workspace_id=ctx.workspace_id,
            instance_name=body.instance_name,
            provider=body.provider,
            queue_id=body.queue_id,
            auto_create_crm_card=body.auto_create_crm_card,
            default_pipeline_id=body.default_pipeline_id,
            metadata=metadata,
        )

    logger.info(
        "connection created",
        extra={"extra_fields": safe_log_context(connection_id=connection_id, provider=body.provider)},
    )
    return {
        "success": True,
        "connection_id": connection_id,
        "status": "connecting",
        "qr_code": result.qr_code,
    }


@router.post("/{connection_id}/qr-code")
def refresh_qr_code(
    connection_id: str = Path(..., description="Connection UUID"),
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("admin")),
) -> dict:
    """Fetch a new pairing QR code and keep it on the connection.

    Returns 400 when the connection is already connected, 502 when the
    provider returns no QR code.
    """
    connection = _load_connection(ctx.workspace_id, connection_id)
    if connection["status"] == "connected":
        raise HTTPException(status_code=400, detail="Connection already connected")

    config = _provider_config(ctx.workspace_id, connection["provider"]).for_connection(
        connection["instance_name"],
        connection.get("metadata"),
    )
    try:
        result = build_provider(config).fetch_qr_code()
    except ProviderConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not result.ok:
        logger.warning(
            "qr code refresh failed",
            extra={"extra_fields": safe_log_context(connection_id=connection_id, provider=config.provider)},
        )
        raise HTTPException(status_code=502, detail=result.error or "QR code refresh failed")

    with txn() as cur:
        set_qr_code(cur, connection_id=connection_id, qr_code=result.qr_code)

    logger.info(
        "qr code refreshed",
        extra={"extra_fields": safe_log_context(connection_id=connection_id, provider=config.provider)},
    )
    return {
        "success": True,
        "connection_id": connection_id,
        "status": "qr",
        "qr_code": result.qr_code,
    }


@router.post("/{connection_id}/disconnect")
def disconnect_connection(
    connection_id: str = Path(..., description="Connection UUID"),
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("admin")),
) -> dict:
    """Mark the connection disconnected and log the instance out.

    The local status changes even when the provider logout fails or the
    provider is not configured; ``provider_logout`` reports the outcome.
    """
    connection = _load_connection(ctx.workspace_id, connection_id)
    with txn() as cur:
        update_status(cur, connection_id=connection_id, status="disconnected")
        config = get_provider_config(cur, workspace_id=ctx.workspace_id, provider=connection["provider"])

    log_ctx = safe_log_context(connection_id=connection_id, provider=connection["provider"])
    if config is None:
        logger.warning("provider not configured, disconnect is local only", extra={"extra_fields": log_ctx})
        return {"success": True, "connection_id": connection_id, "status": "disconnected", "provider_logout": False}

    config = config.for_connection(connection["instance_name"], connection.get("metadata"))
    try:
        result = build_provider(config).disconnect()
    except ProviderConfigError:
        logger.warning("provider credentials incomplete, disconnect is local only", extra={"extra_fields": log_ctx})
        return {"success": True, "connection_id": connection_id, "status": "disconnected", "provider_logout": False}

    with txn() as cur:
        insert_provider_log(
            cur,
            workspace_id=ctx.workspace_id,
            provider=config.provider,
            action="disconnect",
            success=result.ok,
            response_time_ms=result.response_time_ms,
            error_message=result.error,
            metadata={"connection_id": connection_id},
        )
    if not result.ok:
        logger.warning("provider logout failed", extra={"extra_fields": log_ctx})

    return {
        "success": True,
        "connection_id": connection_id,
        "status": "disconnected",
        "provider_logout": result.ok,
    }
