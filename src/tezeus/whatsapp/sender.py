"""Direct provider send with optional failover.

Uses the workspace's active provider. When it fails and the workspace has
``enable_fallback`` on, the other configured provider gets one try. Every
attempt is recorded in ``whatsapp_provider_logs``.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from tezeus.infra.db import txn
from tezeus.infra.repositories.provider_logs_repository import insert_provider_log
from tezeus.infra.workspace_settings import get_active_provider_config, get_provider_configs
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

from .models import ProviderConfig, SendResult
from .providers import ProviderConfigError, build_provider

logger = get_logger(__name__)


def _alternate(configs: list[ProviderConfig], primary: ProviderConfig) -> ProviderConfig | None:
    for config in configs:
        if config.provider != primary.provider:
            return config
    return None


def _send_once(
    config: ProviderConfig,
    *,
    phone: str,
    message_type: str,
    text: str,
    media_url: str | None,
    file_name: str | None,
    mime_type: str | None,
) -> SendResult:
    try:
        provider = build_provider(config)
        if message_type != "text" and media_url:
            return provider.send_media(
                phone,
                media_url,
                message_type,
                caption=text or None,
                file_name=file_name,
                mime_type=mime_type,
            )
        return provider.send_text(phone, text)
    except ProviderConfigError as e:
        return SendResult(success=False, provider=config.provider, error=str(e), permanent=True)


def _record_attempt(workspace_id: str, result: SendResult, action: str, message_type: str) -> None:
    """Write a provider log row. Failures here are logged and swallowed."""
    try:
        with txn() as cur:
            insert_provider_log(
                cur,
                workspace_id=workspace_id,
                provider=result.provider,
                action=action,
                success=result.success,
                response_time_ms=result.response_time_ms,
                error_message=result.error,
                metadata={
                    "message_type": message_type,
                    "status_code": result.status_code,
                    "failover_from": result.failover_from,
                },
            )
    except Exception:
        logger.exception(
            "provider log insert failed",
            extra={"extra_fields": safe_log_context(workspace_id=workspace_id, provider=result.provider)},
        )


def send_with_optional_fallback(
    *,
    workspace_id: str,
    phone: str,
    message_type: str,
    text: str,
    media_url: str | None = None,
    file_name: str | None = None,
    mime_type: str | None = None,
    instance: str | None = None,
    connection_metadata: dict[str, Any] | None = None,
) -> SendResult:
    """Send through the active provider, failing over when allowed.

    Args:
        workspace_id: Tenant.
        phone: Recipient digits (never logged).
        message_type: ``text`` or a media type.
        text: Body, or caption for media.
        media_url: Public file URL for media.
        file_name: Document file name.
        mime_type: Media MIME type.
        instance: Instance of the conversation's connection.
        connection_metadata: ``connections.metadata`` (Z-API instance id and token).

    Returns:
        The successful result (``failover_from`` set when the alternate
        provider delivered it), or the primary's failure.
    """
    with txn() as cur:
        primary = get_active_provider_config(cur, workspace_id=workspace_id)
        configs = get_provider_configs(cur, workspace_id=workspace_id)

    if primary is None:
        return SendResult(
            success=False,
            provider="none",
            error="No active WhatsApp provider configured",
            permanent=True,
        )

    primary = primary.for_connection(instance, connection_metadata)
    action = "send_text" if message_type == "text" else "send_media"
    send_args = {
        "phone": phone,
        "message_type": message_type,
        "text": text,
        "media_url": media_url,
        "file_name": file_name,
        "mime_type": mime_type,
    }

    result = _send_once(primary, **send_args)
    _record_attempt(workspace_id, result, action, message_type)
    if result.success or not primary.enable_fallback:
        return result

    alternate = _alternate(configs, primary)
    if alternate is None:
        return result
    alternate = alternate.for_connection(instance, connection_metadata)
    if not alternate.is_configured:
        logger.info(
            "fallback provider not configured",
            extra={"extra_fields": safe_log_context(workspace_id=workspace_id, provider=alternate.provider)},
        )
        return result

    logger.warning(
        "primary provider failed, trying fallback",
        extra={
            "extra_fields": safe_log_context(
                workspace_id=workspace_id,
                primary=primary.provider,
                fallback=alternate.provider,
                status_code=result.status_code,
            )
        },
    )
    fallback = replace(_send_once(alternate, **send_args), failover_from=primary.provider)
    _record_attempt(workspace_id, fallback, action, message_type)
    if fallback.success:
        return fallback
    return result
