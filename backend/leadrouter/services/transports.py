"""Transportes salientes: canal oficial (Meta Cloud API) y gateway (Whapi)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from leadrouter.core.config import Settings
from leadrouter.core.config import settings as default_settings
from leadrouter.core.logging import get_logger, log_event
from leadrouter.services import phone as phone_utils

logger = get_logger(__name__)

MEDIA_TYPES = ("image", "video", "audio", "document")


class TransportError(RuntimeError):
    """Falla transitoria al enviar o consultar un mensaje."""


class TransportConfigError(TransportError):
    """Credenciales del transporte ausentes."""


@dataclass(slots=True)
class SendResult:
    message_id: str | None
    raw: dict[str, Any]


async def _post(
    url: str,
    *,
    json: dict[str, Any],
    headers: dict[str, str],
    transport: httpx.AsyncBaseTransport | None,
    provider: str,
) -> dict[str, Any]:
    try:
        async with httpx.AsyncClient(timeout=15.0, transport=transport) as client:
            response = await client.post(url, json=json, headers=headers)
    except httpx.RequestError as exc:
        logger.exception(f"{provider}.request_failed", extra={"error": str(exc)})
        raise TransportError(f"Error de red con {provider}: {exc}") from exc
    if response.status_code >= 400:
        logger.error(
            f"{provider}.response_error",
            extra={"status": response.status_code, "body": response.text[:500]},
        )
        raise TransportError(f"{provider} respondió {response.status_code}: {response.text[:200]}")
    try:
        data = response.json()
    except ValueError as exc:
        raise TransportError(f"Respuesta no JSON de {provider}") from exc
    return data if isinstance(data, dict) else {}


class MetaTransport:
    """Canal oficial: `send(phone, type, content) -> message id`; estados llegan por webhook."""

    channel = "official"

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._transport = transport

    def _endpoint(self) -> tuple[str, dict[str, str]]:
        cfg = self._settings
        if not cfg.meta_access_token or not cfg.meta_phone_number_id:
            raise TransportConfigError("META_ACCESS_TOKEN/META_PHONE_NUMBER_ID não configurados")
        url = f"https://graph.facebook.com/{cfg.meta_graph_version}/{cfg.meta_phone_number_id}/messages"
        return url, {"Authorization": f"Bearer {cfg.meta_access_token}"}

    async def send(
        self,
        phone: str,
        content: str,
        *,
        message_type: str = "text",
        media_url: str | None = None,
    ) -> SendResult:
        url, headers = self._endpoint()
        to = phone_utils.normalize(phone, country_code=self._settings.phone_country_code)
        body: dict[str, Any] = {"messaging_product": "whatsapp", "to": to}
        if message_type in MEDIA_TYPES and media_url:
            media: dict[str, Any] = {"link": media_url}
            if content and message_type != "audio":
                media["caption"] = content
            body.update({"type": message_type, message_type: media})
        else:
            body.update({"type": "text", "text": {"body": content}})

        data = await _post(url, json=body, headers=headers, transport=self._transport, provider="meta")
        messages = data.get("messages") or []
        message_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        log_event(logger, "meta.message_sent", to=to, message_id=message_id, message_type=body["type"])
        return SendResult(message_id=message_id, raw=data)


class WhapiTransport:
    """Gateway: `send(token, phone, content)` y `get_status(token, message_id)` por polling."""

    channel = "gateway"

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._transport = transport

    def token_for(self, alias: str, *, seller_token: str | None = None) -> str:
        """Resuelve el alias de credencial (`customer`, `relay`) al token real."""
        cfg = self._settings
        token = seller_token or (cfg.relay_whapi_token if alias == "relay" else cfg.whapi_token)
        if not token:
            raise TransportConfigError(f"Token Whapi ausente para `{alias}`")
        return token

    async def send(
        self,
        token: str,
        phone: str,
        content: str,
        *,
        message_type: str = "text",
        media_url: str | None = None,
    ) -> SendResult:
        base = self._settings.whapi_base_url.rstrip("/")
        to = phone_utils.to_gateway_chat_id(phone, country_code=self._settings.phone_country_code)
        if message_type in MEDIA_TYPES and media_url:
            url = f"{base}/messages/{message_type}"
            body: dict[str, Any] = {"to": to, "media": media_url}
            if content:
                body["caption"] = content
        else:
            url = f"{base}/messages/text"
            body = {"to": to, "body": content}

        data = await _post(
            url,
            json=body,
            headers={"Authorization": f"Bearer {token}"},
            transport=self._transport,
            provider="whapi",
        )
        message = data.get("message") if isinstance(data.get("message"), dict) else {}
        message_id = message.get("id") or data.get("id")
        log_event(logger, "whapi.message_sent", to=to, message_id=message_id)
        return SendResult(message_id=message_id, raw=data)

    async def get_status(self, token: str, message_id: str) -> str:
        """Estado crudo del gateway para un mensaje (`pending`, `sent`, `delivered`, `read`...)."""
        base = self._settings.whapi_base_url.rstrip("/")
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.get(
                    f"{base}/statuses/{message_id}",
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.RequestError as exc:
            raise TransportError(f"Error de red consultando estado: {exc}") from exc
        if response.status_code >= 400:
            raise TransportError(f"whapi respondió {response.status_code} al consultar estado")
        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError("Respuesta no JSON al consultar estado") from exc
        if isinstance(data, dict):
            statuses = data.get("statuses")
            if isinstance(statuses, list) and statuses and isinstance(statuses[-1], dict):
                return str(statuses[-1].get("status") or "pending")
            return str(data.get("status") or "pending")
        return "pending"
