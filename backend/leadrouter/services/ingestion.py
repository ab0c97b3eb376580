"""Ingesta de mensajes entrantes ya normalizados por cada canal."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from leadrouter.core.config import Settings
from leadrouter.core.config import settings as default_settings
from leadrouter.core.logging import get_logger, log_event
from leadrouter.models.conversation import Channel, Conversation, Message, MessageType, SenderType
from leadrouter.repositories.store import Datastore
from leadrouter.services import phone as phone_utils
from leadrouter.services.authority import AuthorityService
from leadrouter.services.message_queue import MessageQueue

logger = get_logger(__name__)

DEFAULT_CUSTOMER_NAME = "Cliente WhatsApp"


@dataclass(slots=True)
class InboundMessage:
    """DTO común a ambos webhooks."""

    channel: Channel
    phone: str
    content: str
    sender_type: SenderType = "customer"
    message_type: MessageType = "text"
    customer_name: str | None = None
    media_url: str | None = None
    external_id: str | None = None
    author_phone: str | None = None


@dataclass(slots=True)
class IngestResult:
    conversation: Conversation
    message: Message | None
    queued: bool
    duplicate: bool = False


class IngestionService:
    def __init__(
        self,
        store: Datastore | None = None,
        *,
        settings: Settings | None = None,
        queue: MessageQueue | None = None,
        authority: AuthorityService | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._store = store or Datastore(settings=self._settings)
        self._queue = queue or MessageQueue(self._store, settings=self._settings)
        self._authority = authority or AuthorityService(self._store, settings=self._settings)

    async def _conversation_for(self, inbound: InboundMessage, phone: str) -> Conversation:
        conversation = await self._store.conversations.find_by_phone(phone, inbound.channel)
        if conversation is not None:
            if inbound.customer_name and not conversation.customer_name:
                conversation = await self._store.conversations.update(
                    conversation.id, {"customer_name": inbound.customer_name}
                )
            return conversation
        conversation = await self._store.conversations.create(
            phone_number=phone,
            channel=inbound.channel,
            customer_name=inbound.customer_name or DEFAULT_CUSTOMER_NAME,
        )
        log_event(logger, "ingestion.conversation_created", conversation_id=conversation.id, channel=inbound.channel)
        return conversation

    async def ingest(self, inbound: InboundMessage, *, now: datetime | None = None) -> IngestResult:
        """Persiste el mensaje y lo encola sólo si el bot es la autoridad vigente.

        Lanza `InvalidPhoneError` antes de persistir nada cuando el número es inválido.
        """
        phone = phone_utils.normalize(inbound.phone, country_code=self._settings.phone_country_code)
        if inbound.channel == "gateway":
            phone = phone_utils.restore_mobile_digit(phone, country_code=self._settings.phone_country_code)

        conversation = await self._conversation_for(inbound, phone)
        if inbound.external_id and await self._store.messages.exists_external_id(inbound.external_id):
            log_event(logger, "ingestion.duplicate_ignored", conversation_id=conversation.id, external_id=inbound.external_id)
            return IngestResult(conversation, None, queued=False, duplicate=True)

        sender_name = (
            inbound.customer_name or conversation.customer_name
            if inbound.sender_type == "customer"
            else None
        )
        message = await self._store.messages.create(
            conversation_id=conversation.id,
            sender_type=inbound.sender_type,
            sender_name=sender_name,
            content=inbound.content,
            message_type=inbound.message_type,
            media_url=inbound.media_url,
            message_source=inbound.channel,
            whatsapp_message_id=inbound.external_id,
        )

        if inbound.sender_type == "seller":
            # Respuesta humana desde el número atendido: el bot deja de actuar.
            seller = None
            if inbound.author_phone:
                author = phone_utils.validate(inbound.author_phone, country_code=self._settings.phone_country_code)
                if author.is_valid:
                    author_phone = author.formatted
                    if inbound.channel == "gateway":
                        author_phone = phone_utils.restore_mobile_digit(
                            author_phone, country_code=self._settings.phone_country_code
                        )
                    seller = await self._store.sellers.find_by_phone(author_phone)
            taker = seller.id if seller else "whatsapp_operator"
            conversation = await self._authority.seller_took_over(conversation.id, taker)
            return IngestResult(conversation, message, queued=False)

        if inbound.sender_type != "customer":
            return IngestResult(conversation, message, queued=False)

        # Toca `updated_at` para el barrido de inactividad.
        conversation = await self._store.conversations.update(conversation.id, {})
        if not conversation.bot_is_authoritative:
            log_event(
                logger,
                "ingestion.queue_skipped",
                conversation_id=conversation.id,
                status=conversation.status,
                fallback_mode=conversation.fallback_mode,
            )
            return IngestResult(conversation, message, queued=False)

        await self._queue.enqueue(conversation.id, inbound.content, now=now)
        return IngestResult(conversation, message, queued=True)
