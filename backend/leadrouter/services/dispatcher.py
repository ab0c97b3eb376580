"""Envío saliente con registro de entrega por intento."""

from __future__ import annotations

from typing import Any

from leadrouter.core.config import Settings
from leadrouter.core.config import settings as default_settings
from leadrouter.core.logging import get_logger, log_event
from leadrouter.models.conversation import Conversation
from leadrouter.models.lead import DeliveryLog
from leadrouter.repositories.store import Datastore
from leadrouter.services.transports import (
    MetaTransport,
    TransportConfigError,
    TransportError,
    WhapiTransport,
)

logger = get_logger(__name__)


class DeliveryFailedError(TransportError):
    """El transporte rechazó el envío; el intento quedó registrado como `failed`."""

    def __init__(self, message: str, log: DeliveryLog) -> None:
        super().__init__(message)
        self.log = log


class Dispatcher:
    """Elige transporte e identidad y deja un `delivery_logs` por cada intento."""

    def __init__(
        self,
        store: Datastore | None = None,
        *,
        settings: Settings | None = None,
        meta: MetaTransport | None = None,
        whapi: WhapiTransport | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._store = store or Datastore(settings=self._settings)
        self._meta = meta or MetaTransport(settings=self._settings)
        self._whapi = whapi or WhapiTransport(settings=self._settings)

    @property
    def whapi(self) -> WhapiTransport:
        return self._whapi

    async def send(
        self,
        *,
        channel: str,
        phone: str,
        content: str,
        token_alias: str,
        message_type: str = "text",
        media_url: str | None = None,
        seller_id: str | None = None,
        seller_token: str | None = None,
        conversation_id: str | None = None,
        retry_of: str | None = None,
        retry_count: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> DeliveryLog:
        entry: dict[str, Any] = {
            "direction": "outbound",
            "channel": channel,
            "phone_from": self._settings.meta_phone_number_id if channel == "official" else None,
            "phone_to": phone,
            "content": content,
            "message_type": message_type,
            "media_url": media_url,
            "token_alias": token_alias,
            "seller_id": seller_id,
            "conversation_id": conversation_id,
            "retry_of": retry_of,
            "retry_count": retry_count,
            "metadata": metadata or {},
        }
        try:
            if channel == "official":
                result = await self._meta.send(
                    phone, content, message_type=message_type, media_url=media_url
                )
            else:
                token = self._whapi.token_for(token_alias, seller_token=seller_token)
                result = await self._whapi.send(
                    token, phone, content, message_type=message_type, media_url=media_url
                )
        except TransportConfigError:
            raise
        except (TransportError, ValueError) as exc:
            log = await self._store.delivery_logs.create(
                {**entry, "status": "failed", "error_message": str(exc)[:1000]}
            )
            log_event(
                logger,
                "dispatch.failed",
                channel=channel,
                token_alias=token_alias,
                conversation_id=conversation_id,
                delivery_log_id=log.id,
                error=str(exc),
            )
            raise DeliveryFailedError(str(exc), log) from exc

        status = "sent" if result.message_id else "pending"
        log = await self._store.delivery_logs.create(
            {**entry, "message_id": result.message_id, "status": status}
        )
        log_event(
            logger,
            "dispatch.sent",
            channel=channel,
            token_alias=token_alias,
            conversation_id=conversation_id,
            delivery_log_id=log.id,
            message_id=result.message_id,
        )
        return log

    async def send_to_customer(
        self,
        conversation: Conversation,
        content: str,
        *,
        message_type: str = "text",
        media_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> DeliveryLog:
        """Responde al cliente por el mismo canal por el que escribió."""
        channel = conversation.channel
        return await self.send(
            channel=channel,
            phone=conversation.phone_number,
            content=content,
            token_alias="official" if channel == "official" else "customer",
            message_type=message_type,
            media_url=media_url,
            conversation_id=conversation.id,
            metadata=metadata,
        )

    async def send_via_relay(
        self,
        phone: str,
        content: str,
        *,
        seller_id: str | None = None,
        conversation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> DeliveryLog:
        """Mensajes internos a vendedores, siempre desde la cuenta relay del gateway."""
        return await self.send(
            channel="gateway",
            phone=phone,
            content=content,
            token_alias="relay",
            seller_id=seller_id,
            conversation_id=conversation_id,
            metadata={"sender": self._settings.relay_sender_name, **(metadata or {})},
        )
