"""Rutas del monitor de entregas para el panel de operadores."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from leadrouter.api.auth import get_actor
from leadrouter.api.deps import get_delivery_monitor
from leadrouter.api.errors import DomainError, to_http
from leadrouter.services.authority import Actor
from leadrouter.services.delivery_monitor import DeliveryMonitor

router = APIRouter(prefix="/delivery", tags=["delivery"])


@router.post("/{log_id}/check", summary="Consulta el estado actual de un envío")
async def check_delivery(
    log_id: str,
    _: Actor = Depends(get_actor),
    monitor: DeliveryMonitor = Depends(get_delivery_monitor),
) -> dict[str, str]:
    try:
        status = await monitor.check_status(log_id)
    except DomainError as exc:
        raise to_http(exc) from exc
    return {"id": log_id, "status": status}


@router.post("/{log_id}/retry", summary="Reenvía un mensaje fallido")
async def retry_delivery(
    log_id: str,
    force: bool = Query(default=False, description="Permite reenviar aunque no figure como fallido."),
    _: Actor = Depends(get_actor),
    monitor: DeliveryMonitor = Depends(get_delivery_monitor),
) -> dict[str, Any]:
    try:
        log = await monitor.retry_failed(log_id, force=force)
    except DomainError as exc:
        raise to_http(exc) from exc
    return log.model_dump(mode="json")
