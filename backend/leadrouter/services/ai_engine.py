"""Cliente del motor conversacional externo (chatflow de Dify)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from leadrouter.core.config import Settings
from leadrouter.core.config import settings as default_settings
from leadrouter.core.logging import get_logger, log_event

logger = get_logger(__name__)


class AIEngineError(RuntimeError):
    """Falla transitoria del motor (timeout, 5xx, respuesta inválida)."""


class AIEngineConfigError(AIEngineError):
    """Configuración ausente; reintentar reproduce el mismo error."""


class _Usage(BaseModel):
    total_tokens: int | None = None


class _Metadata(BaseModel):
    usage: _Usage | None = None


class ChatMessageResponse(BaseModel):
    """DTO de `POST /chat-messages` en modo `blocking`."""

    model_config = ConfigDict(extra="ignore")

    answer: str = ""
    conversation_id: str | None = None
    message_id: str | None = None
    metadata: _Metadata | None = None


@dataclass(slots=True)
class EngineReply:
    text: str
    conversation_handle: str | None
    message_id: str | None = None
    tokens_used: int | None = None


class DifyClient:
    """`send_turn(handle | None, text, user_id) -> EngineReply`."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._transport = transport

    def _ensure_configured(self) -> tuple[str, str]:
        if not self._settings.dify_api_key:
            raise AIEngineConfigError("DIFY_API_KEY não configurada")
        return self._settings.dify_api_url.rstrip("/"), self._settings.dify_api_key

    async def send_turn(
        self,
        conversation_handle: str | None,
        text: str,
        user_id: str,
        *,
        inputs: dict[str, Any] | None = None,
    ) -> EngineReply:
        base_url, api_key = self._ensure_configured()
        payload: dict[str, Any] = {
            "inputs": inputs or {},
            "query": text,
            "response_mode": "blocking",
            "user": user_id,
        }
        if conversation_handle:
            payload["conversation_id"] = conversation_handle

        try:
            async with httpx.AsyncClient(
                timeout=self._settings.dify_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    f"{base_url}/chat-messages",
                    json=payload,
                    headers={"Authorization": f"Bearer {api_key}"},
                )
        except httpx.RequestError as exc:
            logger.exception("ai_engine.request_failed", extra={"error": str(exc)})
            raise AIEngineError(f"Error de red con el motor: {exc}") from exc

        if response.status_code in (401, 403):
            raise AIEngineConfigError(f"Motor rechazó las credenciales ({response.status_code})")
        if response.status_code >= 400:
            logger.error(
                "ai_engine.response_error",
                extra={"status": response.status_code, "body": response.text[:500]},
            )
            raise AIEngineError(f"Motor respondió {response.status_code}: {response.text[:200]}")

        try:
            parsed = ChatMessageResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise AIEngineError(f"Respuesta inesperada del motor: {exc}") from exc

        usage = parsed.metadata.usage if parsed.metadata else None
        reply = EngineReply(
            text=parsed.answer.strip(),
            conversation_handle=parsed.conversation_id or conversation_handle,
            message_id=parsed.message_id,
            tokens_used=usage.total_tokens if usage else None,
        )
        log_event(
            logger,
            "ai_engine.turn_completed",
            engine_message_id=reply.message_id,
            tokens_used=reply.tokens_used,
            new_handle=conversation_handle is None and reply.conversation_handle is not None,
        )
        return reply
