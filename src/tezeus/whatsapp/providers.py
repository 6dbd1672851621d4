"""WhatsApp provider clients: Evolution API and Z-API.

Security: never log the recipient phone, message text or credentials. Only
hashes, lengths and status codes.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from typing import Any

from tezeus.infra.http import HttpResult, request_json
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

from .evolution_adapter import extract_qr_code
from .models import ProviderConfig, SendResult

logger = get_logger(__name__)

HTTP_TIMEOUT = 15

# Evolution gets three attempts on network errors and 5xx
EVOLUTION_MAX_ATTEMPTS = 3

ZAPI_DEFAULT_BASE = "https://api.z-api.io"
ZAPI_ON_DEMAND_URL = f"{ZAPI_DEFAULT_BASE}/instances/integrator/on-demand"

EVOLUTION_WEBHOOK_EVENTS = (
    "QRCODE_UPDATED",
    "MESSAGES_UPSERT",
    "MESSAGES_UPDATE",
    "CONNECTION_UPDATE",
)

MEDIA_TYPES = ("image", "video", "audio", "document")


class ProviderConfigError(RuntimeError):
    """Raised when a provider is missing credentials or an instance."""


@dataclass(frozen=True)
class ConnectionTestResult:
    ok: bool
    message: str
    response_time_ms: int = 0


@dataclass(frozen=True)
class CreateInstanceResult:
    ok: bool
    qr_code: str | None = None
    instance_id: str | None = None
    instance_token: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class QrCodeResult:
    ok: bool
    qr_code: str | None = None
    error: str | None = None
    response_time_ms: int = 0


@dataclass(frozen=True)
class DisconnectResult:
    ok: bool
    error: str | None = None
    response_time_ms: int = 0


def _hash_identifier(value: str) -> str:
    """Non-reversible short hash for log correlation."""
    return hashlib.sha256(value.encode()).hexdigest()[:12]


def _error_text(result: HttpResult) -> str:
    body = result.body
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        response = body.get("response")
        if isinstance(response, dict) and isinstance(response.get("message"), list) and response["message"]:
            message = response["message"][0]
        if isinstance(message, list):
            message = message[0] if message else None
        if message:
            return f"{result.error or 'error'}: {message}"
    return result.error or "unknown error"


def _is_permanent(result: HttpResult) -> bool:
    """4xx other than 429 will not succeed on retry."""
    code = result.status_code
    return code is not None and 400 <= code < 500 and code != 429


class WhatsAppProvider:
    """Common surface of the provider clients."""

    name: str = ""

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config

    def send_text(self, phone: str, text: str) -> SendResult:
        raise NotImplementedError

    def send_media(
        self,
        phone: str,
        media_url: str,
        media_type: str,
        caption: str | None = None,
        file_name: str | None = None,
        mime_type: str | None = None,
    ) -> SendResult:
        raise NotImplementedError

    def test_connection(self) -> ConnectionTestResult:
        raise NotImplementedError

    def create_instance(
        self,
        instance_name: str,
        webhook_url: str,
        phone_number: str | None = None,
    ) -> CreateInstanceResult:
        raise NotImplementedError

    def fetch_qr_code(self) -> QrCodeResult:
        """Ask the provider for a fresh pairing QR code."""
        raise NotImplementedError

    def disconnect(self) -> DisconnectResult:
        """Log the WhatsApp session out of the instance."""
        raise NotImplementedError

    @staticmethod
    def _qr_result(http: HttpResult, qr_code: str | None) -> QrCodeResult:
        if not http.ok:
            return QrCodeResult(ok=False, error=_error_text(http), response_time_ms=http.elapsed_ms)
        if not qr_code:
            return QrCodeResult(ok=False, error="No QR code in provider response", response_time_ms=http.elapsed_ms)
        return QrCodeResult(ok=True, qr_code=qr_code, response_time_ms=http.elapsed_ms)

    @staticmethod
    def _disconnect_result(http: HttpResult) -> DisconnectResult:
        if http.ok:
            return DisconnectResult(ok=True, response_time_ms=http.elapsed_ms)
        return DisconnectResult(ok=False, error=_error_text(http), response_time_ms=http.elapsed_ms)

    def _result(self, http: HttpResult, provider_msg_id: str | None) -> SendResult:
        if http.ok:
            return SendResult(
                success=True,
                provider=self.name,
                provider_msg_id=provider_msg_id,
                status_code=http.status_code,
                response_time_ms=http.elapsed_ms,
            )
        return SendResult(
            success=False,
            provider=self.name,
            error=_error_text(http),
            status_code=http.status_code,
            response_time_ms=http.elapsed_ms,
            permanent=_is_permanent(http),
        )

    def _log_send(self, action: str, phone: str, result: SendResult, **extra: Any) -> None:
        log_ctx = safe_log_context(
            provider=self.name,
            action=action,
            to_hash=_hash_identifier(phone),
            success=result.success,
            status_code=result.status_code,
            response_time_ms=result.response_time_ms,
            **extra,
        )
        if result.success:
            logger.info("provider send ok", extra={"extra_fields": log_ctx})
        else:
            logger.warning("provider send failed", extra={"extra_fields": log_ctx})


class EvolutionProvider(WhatsAppProvider):
    """Evolution API client (``apikey`` header, instance in the path)."""

    name = "evolution"

    def __init__(self, config: ProviderConfig) -> None:
        super().__init__(config)
        if not config.base_url or not config.api_key:
            raise ProviderConfigError("Missing Evolution config: evolution_url, evolution_token")
        self.base_url = config.base_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {"apikey": self.config.api_key or ""}

    def _instance(self) -> str:
        if not self.config.instance:
            raise ProviderConfigError("Missing Evolution instance")
        return self.config.instance

    @staticmethod
    def _message_id(body: Any) -> str | None:
        if not isinstance(body, dict):
            return None
        key = body.get("key") or {}
        return key.get("id") or body.get("messageId")

    def send_text(self, phone: str, text: str) -> SendResult:
        http = request_json(
            "POST",
            f"{self.base_url}/message/sendText/{self._instance()}",
            payload={"number": phone, "text": text},
            headers=self._headers(),
            timeout=HTTP_TIMEOUT,
            max_attempts=EVOLUTION_MAX_ATTEMPTS,
        )
        result = self._result(http, self._message_id(http.body))
        self._log_send("send_text", phone, result, text_len=len(text))
        return result

    def send_media(
        self,
        phone: str,
        media_url: str,
        media_type: str,
        caption: str | None = None,
        file_name: str | None = None,
        mime_type: str | None = None,
    ) -> SendResult:
        payload: dict[str, Any] = {
            "number": phone,
            "mediatype": media_type,
            "media": media_url,
            "caption": caption or "",
        }
        if file_name:
            payload["fileName"] = file_name
        if mime_type:
            payload["mimetype"] = mime_type

        http = request_json(
            "POST",
            f"{self.base_url}/message/sendMedia/{self._instance()}",
            payload=payload,
            headers=self._headers(),
            timeout=HTTP_TIMEOUT,
            max_attempts=EVOLUTION_MAX_ATTEMPTS,
        )
        result = self._result(http, self._message_id(http.body))
        self._log_send("send_media", phone, result, media_type=media_type)
        return result

    def test_connection(self) -> ConnectionTestResult:
        http = request_json(
            "GET",
            f"{self.base_url}/instance/fetchInstances",
            headers=self._headers(),
            timeout=HTTP_TIMEOUT,
        )
        if http.ok:
            return ConnectionTestResult(True, "Connection established", http.elapsed_ms)
        return ConnectionTestResult(False, _error_text(http), http.elapsed_ms)

    def create_instance(
        self,
        instance_name: str,
        webhook_url: str,
        phone_number: str | None = None,
    ) -> CreateInstanceResult:
        payload: dict[str, Any] = {
            "instanceName": instance_name,
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
            "groupsIgnore": True,
            "alwaysOnline": False,
            "readMessages": False,
            "readStatus": False,
            "syncFullHistory": False,
            "webhook": {
                "url": webhook_url,
                "byEvents": True,
                "base64": True,
                "events": list(EVOLUTION_WEBHOOK_EVENTS),
            },
        }
        if phone_number:
            payload["number"] = phone_number

        http = request_json(
            "POST",
            f"{self.base_url}/instance/create",
            payload=payload,
            headers=self._headers(),
            timeout=HTTP_TIMEOUT,
        )
        if not http.ok:
            return CreateInstanceResult(ok=False, error=_error_text(http))

        body = http.body if isinstance(http.body, dict) else {}
        qrcode = body.get("qrcode")
        return CreateInstanceResult(
            ok=True,
            qr_code=(qrcode or {}).get("base64") if isinstance(qrcode, dict) else body.get("qr"),
            instance_id=instance_name,
            instance_token=body.get("hash") if isinstance(body.get("hash"), str) else None,
        )

    def fetch_qr_code(self) -> QrCodeResult:
        http = request_json(
            "GET",
            f"{self.base_url}/instance/connect/{self._instance()}",
            headers=self._headers(),
            timeout=HTTP_TIMEOUT,
        )
        return self._qr_result(http, extract_qr_code(http.body))

    def disconnect(self) -> DisconnectResult:
        http = request_json(
            "DELETE",
            f"{self.base_url}/instance/logout/{self._instance()}",
            headers=self._headers(),
            timeout=HTTP_TIMEOUT,
        )
        return self._disconnect_result(http)


class ZapiProvider(WhatsAppProvider):
    """Z-API client (``Client-Token`` header, instance id and token in the path)."""

    name = "zapi"

    _MEDIA_ENDPOINTS = {
        "image": "send-image",
        "video": "send-video",
        "audio": "send-audio",
        "document": "send-document",
    }

    def __init__(self, config: ProviderConfig) -> None:
        super().__init__(config)
        if not config.token and not config.client_token:
            raise ProviderConfigError("Missing Z-API config: zapi_token")

    def _headers(self) -> dict[str, str]:
        return {"Client-Token": self.config.client_token or self.config.token or ""}

    def _instance_url(self) -> str:
        base = (self.config.base_url or "").rstrip("/")
        if "/token/" in base:
            return base
        if not self.config.instance or not self.config.token:
            raise ProviderConfigError("Missing Z-API instance")
        root = base or ZAPI_DEFAULT_BASE
        return f"{root}/instances/{self.config.instance}/token/{self.config.token}"

    @staticmethod
    def _message_id(body: Any) -> str | None:
        if not isinstance(body, dict):
            return None
        return body.get("messageId") or body.get("id")

    def send_text(self, phone: str, text: str) -> SendResult:
        http = request_json(
            "POST",
            f"{self._instance_url()}/send-text",
            payload={"phone": phone, "message": text},
            headers=self._headers(),
            timeout=HTTP_TIMEOUT,
        )
        result = self._result(http, self._message_id(http.body))
        self._log_send("send_text", phone, result, text_len=len(text))
        return result

    def send_media(
        self,
        phone: str,
        media_url: str,
        media_type: str,
        caption: str | None = None,
        file_name: str | None = None,
        mime_type: str | None = None,
    ) -> SendResult:
        endpoint = self._MEDIA_ENDPOINTS.get(media_type, "send-document")
        payload: dict[str, Any] = {"phone": phone, media_type if media_type in MEDIA_TYPES else "document": media_url}
        if caption:
            payload["caption"] = caption
        if endpoint == "send-document" and file_name:
            payload["fileName"] = file_name
            extension = file_name.rsplit(".", 1)[-1] if "." in file_name else ""
            if extension:
                endpoint = f"send-document/{extension}"

        http = request_json(
            "POST",
            f"{self._instance_url()}/{endpoint}",
            payload=payload,
            headers=self._headers(),
            timeout=HTTP_TIMEOUT,
        )
        result = self._result(http, self._message_id(http.body))
        self._log_send("send_media", phone, result, media_type=media_type)
        return result

    def test_connection(self) -> ConnectionTestResult:
        http = request_json("GET", f"{self._instance_url()}/status", headers=self._headers(), timeout=HTTP_TIMEOUT)
        if http.ok:
            connected = isinstance(http.body, dict) and bool(http.body.get("connected"))
            message = "Connection established" if connected else "Instance reachable but not connected"
            return ConnectionTestResult(True, message, http.elapsed_ms)
        return ConnectionTestResult(False, f"{_error_text(http)}. Check the Client-Token", http.elapsed_ms)

    def create_instance(
        self,
        instance_name: str,
        webhook_url: str,
        phone_number: str | None = None,
    ) -> CreateInstanceResult:
        partner_token = os.environ.get("ZAPI_PARTNER_TOKEN", "")
        if not partner_token:
            raise ProviderConfigError("Missing Z-API config: ZAPI_PARTNER_TOKEN")

        auth = {"Authorization": f"Bearer {partner_token}"}
        http = request_json(
            "POST",
            ZAPI_ON_DEMAND_URL,
            payload={"name": instance_name, "deliveryCallbackUrl": webhook_url, "receivedCallbackUrl": webhook_url},
            headers=auth,
            timeout=HTTP_TIMEOUT,
        )
        if not http.ok:
            return CreateInstanceResult(ok=False, error=_error_text(http))

        body = http.body if isinstance(http.body, dict) else {}
        instance_id = body.get("id") or body.get("instanceId")
        instance_token = body.get("token")

        if instance_id and instance_token:
            subscription = request_json(
                "POST",
                f"{ZAPI_DEFAULT_BASE}/instances/{instance_id}/token/{instance_token}/integrator/on-demand/subscription",
                headers=auth,
                timeout=HTTP_TIMEOUT,
            )
            if not subscription.ok:
                # the instance exists; subscription can be retried from the panel
                logger.warning(
                    "zapi instance subscription failed",
                    extra={"extra_fields": safe_log_context(status_code=subscription.status_code)},
                )

        return CreateInstanceResult(
            ok=True,
            qr_code=body.get("qrcode") or body.get("qr"),
            instance_id=instance_id,
            instance_token=instance_token,
        )

    def fetch_qr_code(self) -> QrCodeResult:
        http = request_json(
            "GET",
            f"{self._instance_url()}/qr-code/image",
            headers=self._headers(),
            timeout=HTTP_TIMEOUT,
        )
        body = http.body
        qr_code = None
        if isinstance(body, dict):
            qr_code = body.get("qrcode") or body.get("value") or body.get("code") or body.get("base64")
        elif isinstance(body, str) and body.startswith("data:image"):
            qr_code = body
        return self._qr_result(http, qr_code)

    def disconnect(self) -> DisconnectResult:
        http = request_json(
            "GET",
            f"{self._instance_url()}/disconnect",
            headers=self._headers(),
            timeout=HTTP_TIMEOUT,
        )
        return self._disconnect_result(http)


def build_provider(config: ProviderConfig) -> WhatsAppProvider:
    """Instantiate the client for ``config.provider``.

    Raises:
        ProviderConfigError: Unknown provider or missing credentials.
    """
    if config.provider == "evolution":
        return EvolutionProvider(config)
    if config.provider == "zapi":
        return ZapiProvider(config)
    raise ProviderConfigError(f"Unknown provider: {config.provider}")
