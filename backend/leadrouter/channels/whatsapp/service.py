"""Traduce los eventos de Meta a mensajes internos y estados de entrega."""

from __future__ import annotations

from leadrouter.core.logging import get_logger, log_event
from leadrouter.core.security import mask_phone
from leadrouter.services.delivery_monitor import DeliveryMonitor
from leadrouter.services.ingestion import DEFAULT_CUSTOMER_NAME, InboundMessage, IngestionService
from leadrouter.services.phone import InvalidPhoneError

from . import schemas

logger = get_logger(__name__)


def message_content(message: schemas.WhatsAppMessage) -> tuple[str, str, str | None]:
    """Devuelve `(contenido, tipo, media)` con las etiquetas que ven operadores y el bot."""
    kind = message.type
    if kind == "text":
        return (message.text.body if message.text else ""), "text", None
    if kind == "image":
        return "[Imagem]", "image", message.image.id if message.image else None
    if kind == "audio":
        return "[Áudio]", "audio", message.audio.id if message.audio else None
    if kind == "voice":
        return "[Mensagem de voz]", "audio", message.voice.id if message.voice else None
    if kind == "video":
        return "[Vídeo]", "video", message.video.id if message.video else None
    if kind == "document":
        filename = (message.document.filename if message.document else None) or "arquivo"
        return f"[Documento: {filename}]", "document", message.document.id if message.document else None
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


def _customer_name(value: schemas.ChangeValue, wa_id: str) -> str:
    for contact in value.contacts:
        if contact.wa_id == wa_id and contact.profile and contact.profile.name:
            return contact.profile.name
    return DEFAULT_CUSTOMER_NAME


async def handle_webhook(
    payload: schemas.WebhookPayload,
    *,
    ingestion: IngestionService,
    monitor: DeliveryMonitor,
) -> schemas.WebhookAck:
    ack = schemas.WebhookAck()
    for entry in payload.entry:
        for change in entry.changes:
            value = change.value
            for message in value.messages:
                ack.messages += 1
                content, message_type, media = message_content(message)
                inbound = InboundMessage(
                    channel="official",
                    phone=message.from_,
                    content=content,
                    message_type=message_type,
                    customer_name=_customer_name(value, message.from_),
                    media_url=media,
                    external_id=message.id,
                )
                try:
                    result = await ingestion.ingest(inbound)
                except InvalidPhoneError as exc:
                    ack.rejected += 1
                    logger.warning(
                        "whatsapp.phone_rejected",
                        extra={"phone": mask_phone(message.from_), "reason": exc.reason},
                    )
                    continue
                ack.queued += int(result.queued)
            for status in value.statuses:
                ack.statuses += 1
                error = status.errors[0].title if status.errors else None
                await monitor.apply_status_event(status.id, status.status, error=error)
    log_event(logger, "whatsapp.webhook_processed", **ack.model_dump())
    return ack
