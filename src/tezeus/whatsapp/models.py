"""WhatsApp provider and webhook models."""

from dataclasses import dataclass, field, replace
from typing import Any, Literal

ProviderName = Literal["evolution", "zapi"]

PROVIDERS: tuple[str, ...] = ("evolution", "zapi")


@dataclass(frozen=True)
class ProviderConfig:
    """Credentials of one provider for one workspace.

    ``instance`` is the Evolution instance name or the Z-API instance id.
    Credentials are secrets: never log them.
    """

    provider: ProviderName
    instance: str | None = None
    base_url: str | None = None
    api_key: str | None = None
    token: str | None = None
    client_token: str | None = None
    is_active: bool = False
    enable_fallback: bool = False

    def with_instance(self, instance: str | None) -> "ProviderConfig":
        if not instance:
            return self
        return replace(self, instance=instance)

    def for_connection(self, instance: str | None, metadata: dict[str, Any] | None = None) -> "ProviderConfig":
        """Bind to a connection. Z-API connections carry their own instance id and token."""
        metadata = metadata or {}
        if self.provider == "zapi" and metadata.get("instanceId") and metadata.get("token"):
            return replace(self, instance=metadata["instanceId"], token=metadata["token"])
        return self.with_instance(instance)

    @property
    def is_configured(self) -> bool:
        if self.provider == "evolution":
            return bool(self.base_url and self.api_key and self.instance)
        return bool(self.token and self.client_token and self.instance)


@dataclass(frozen=True)
class SendResult:
    """Outcome of a provider send attempt."""

    success: bool
    provider: str
    provider_msg_id: str | None = None
    error: str | None = None
    status_code: int | None = None
    response_time_ms: int = 0
    failover_from: str | None = None
    permanent: bool = False


@dataclass(frozen=True)
class EvolutionEvent:
    """Evolution webhook, normalized.

    ``remote_jid``, ``text`` and ``push_name`` are contact data: keep them in
    memory for the request and never log them.
    """

    event: str
    instance: str
    key_id: str | None = None
    short_key_id: str | None = None
    remote_jid: str | None = None
    from_me: bool = False
    message_type: str | None = None
    text: str | None = None
    push_name: str | None = None
    status: str | None = None
    message_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class ZapiEvent:
    """Z-API webhook, normalized. ``phone`` and ``text`` are contact data."""

    event_type: str
    instance_id: str
    is_status_callback: bool
    status: str | None = None
    message_ids: tuple[str, ...] = ()
    phone: str | None = None
    chat_lid: str | None = None
    from_me: bool = False
    is_group: bool = False
    text: str | None = None
    sender_name: str | None = None
    media_url: str | None = None
    media_kind: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)
