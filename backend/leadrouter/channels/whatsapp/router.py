"""Endpoints del canal oficial de WhatsApp (Meta Cloud API)."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse

from leadrouter.api.deps import get_delivery_monitor, get_ingestion, get_settings
from leadrouter.core.config import Settings
from leadrouter.core.logging import get_logger
from leadrouter.repositories.base import RepositoryError
from leadrouter.services.delivery_monitor import DeliveryMonitor
from leadrouter.services.ingestion import IngestionService

from . import schemas, service
from .deps import verify_meta_signature

router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])

logger = get_logger(__name__)


@router.get("/webhook", summary="Verificación del webhook por Meta", response_class=PlainTextResponse)
async def verify_webhook(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
    cfg: Settings = Depends(get_settings),
) -> str:
    """Devuelve `hub.challenge` cuando el token coincide con el configurado."""
    if (
        hub_mode == "subscribe"
        and cfg.meta_verify_token
        and hub_verify_token == cfg.meta_verify_token
    ):
        return hub_challenge or ""
    logger.warning("whatsapp.verification_rejected", extra={"mode": hub_mode})
    raise HTTPException(status_code=403, detail="forbidden")


@router.post(
    "/webhook",
    response_model=schemas.WebhookAck,
    summary="Webhook de recepción WhatsApp",
    dependencies=[Depends(verify_meta_signature)],
)
async def whatsapp_webhook(
    payload: schemas.WebhookPayload,
    ingestion: IngestionService = Depends(get_ingestion),
    monitor: DeliveryMonitor = Depends(get_delivery_monitor),
) -> schemas.WebhookAck:
    """Persiste mensajes entrantes y actualiza estados de entrega."""
    try:
        return await service.handle_webhook(payload, ingestion=ingestion, monitor=monitor)
    except RepositoryError as exc:
        raise HTTPException(status_code=502, detail="Error al conectar a Supabase") from exc
