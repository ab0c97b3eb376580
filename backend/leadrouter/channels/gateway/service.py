"""Procesa eventos del gateway: mensajes de clientes, respuestas de vendedores y estados.

Los mensajes `from_me` salen del propio número atendido. Los que enviamos por la
API vuelven como eco; sólo los escritos a mano por una persona cambian la autoridad.
"""

from __future__ import annotations

from leadrouter.core.logging import get_logger, log_event
from leadrouter.core.security import mask_phone
from leadrouter.repositories.store import Datastore
from leadrouter.services import phone as phone_utils
from leadrouter.services.delivery_monitor import DeliveryMonitor
from leadrouter.services.ingestion import InboundMessage, IngestionService
from leadrouter.services.phone import InvalidPhoneError

from . import schemas

logger = get_logger(__name__)


def is_group_chat(chat_id: str) -> bool:
    return chat_id.endswith(phone_utils.GROUP_CHAT_SUFFIX) or "-" in chat_id


def message_content(message: schemas.GatewayMessage) -> tuple[str, str, str | None]:
    kind = message.type
    if kind == "text":
        return (message.text.body if message.text else ""), "text", None
    if kind == "image":
        return "[Imagem]", "image", message.image.link if message.image else None
    if kind == "video":
        return "[Vídeo]", "video", message.video.link if message.video else None
    if kind == "audio":
        return "[Áudio]", "audio", message.audio.link if message.audio else None
    if kind == "voice":
        return "[Mensagem de voz]", "audio", message.voice.link if message.voice else None
    if kind == "document":
        filename = (message.document.filename if message.document else None) or "arquivo"
        return f"[Documento: {filename}]", "document", message.document.link if message.document else None
    if kind == "location" and message.location:
        return (
            f"[Localização: {message.location.latitude}, {message.location.longitude}]",
            "location",
            None,
        )
    if kind == "reaction":
        emoji = (message.reaction.emoji if message.reaction else None) or "👍"
        return f"Reagiu com {emoji}", "reaction", None
    return f"[Mensagem não suportada: {kind}]", "text", None


async def _is_echo(message: schemas.GatewayMessage, store: Datastore) -> bool:
    if message.source == "api":
        return True
    return await store.delivery_logs.find_by_message_id(message.id) is not None


def to_inbound(message: schemas.GatewayMessage) -> InboundMessage:
    content, message_type, media = message_content(message)
    return InboundMessage(
        channel="gateway",
        phone=phone_utils.from_chat_id(message.chat_id),
        content=content,
        sender_type="seller" if message.from_me else "customer",
        message_type=message_type,
        customer_name=None if message.from_me else message.from_name,
        media_url=media,
        external_id=message.id,
        author_phone=message.from_ if message.from_me else None,
    )


async def handle_webhook(
    payload: schemas.WebhookPayload,
    *,
    store: Datastore,
    ingestion: IngestionService,
    monitor: DeliveryMonitor,
) -> schemas.WebhookAck:
    ack = schemas.WebhookAck()
    for message in payload.messages:
        ack.messages += 1
        if is_group_chat(message.chat_id):
            ack.ignored += 1
            log_event(logger, "gateway.group_ignored", message_id=message.id)
            continue
        if message.from_me and await _is_echo(message, store):
            ack.ignored += 1
            log_event(logger, "gateway.echo_ignored", message_id=message.id)
            continue
        try:
            inbound = to_inbound(message)
            result = await ingestion.ingest(inbound)
        except InvalidPhoneError as exc:
            ack.rejected += 1
            logger.warning(
                "gateway.phone_rejected",
                extra={"phone": mask_phone(message.chat_id), "reason": exc.reason},
            )
            continue
        ack.queued += int(result.queued)
    for status in payload.statuses:
        ack.statuses += 1
        await monitor.apply_status_event(status.id, status.status)
    log_event(logger, "gateway.webhook_processed", **ack.model_dump())
    return ack
