"""Endpoints del canal gateway (Whapi)."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from leadrouter.api.deps import get_delivery_monitor, get_ingestion, get_store
from leadrouter.repositories.base import RepositoryError
from leadrouter.repositories.store import Datastore
from leadrouter.services.authority import ConflictError
from leadrouter.services.delivery_monitor import DeliveryMonitor
from leadrouter.services.ingestion import IngestionService

from . import schemas, service
from .deps import verify_gateway_token

router = APIRouter(prefix="/gateway", tags=["gateway"])


@router.post(
    "/webhook",
    response_model=schemas.WebhookAck,
    summary="Webhook de mensajes y estados del gateway",
    dependencies=[Depends(verify_gateway_token)],
)
async def gateway_webhook(
    payload: schemas.WebhookPayload,
    store: Datastore = Depends(get_store),
    ingestion: IngestionService = Depends(get_ingestion),
    monitor: DeliveryMonitor = Depends(get_delivery_monitor),
) -> schemas.WebhookAck:
    try:
        return await service.handle_webhook(payload, store=store, ingestion=ingestion, monitor=monitor)
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except RepositoryError as exc:
        raise HTTPException(status_code=502, detail="Error al conectar a Supabase") from exc
