"""Disparadores de los procesos periódicos; los invoca un cron externo o `scripts/run_ticks.py`."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from leadrouter.api.auth import verify_cron_secret
from leadrouter.api.deps import (
    get_authority,
    get_delivery_monitor,
    get_evaluation_service,
    get_queue,
    get_queue_processor,
    get_transfer_orchestrator,
)
from leadrouter.api.errors import DomainError, to_http
from leadrouter.services.authority import AuthorityService
from leadrouter.services.delivery_monitor import DeliveryMonitor
from leadrouter.services.message_queue import MessageQueue
from leadrouter.services.qualification import EvaluationService
from leadrouter.services.queue_processor import QueueProcessor
from leadrouter.services.transfer import TransferOrchestrator

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(verify_cron_secret)])

LimitQuery = Query(default=None, ge=1, le=500, description="Tamaño del lote; por defecto el configurado.")


@router.post("/queue-tick", summary="Procesa los lotes vencidos de la cola")
async def queue_tick(
    limit: int | None = LimitQuery,
    processor: QueueProcessor = Depends(get_queue_processor),
) -> dict[str, int]:
    try:
        result = await processor.tick(limit=limit)
    except DomainError as exc:
        raise to_http(exc) from exc
    return result.as_dict()


@router.post("/idle-sweep", summary="Marca conversaciones inactivas para evaluación")
async def idle_sweep(
    limit: int | None = LimitQuery,
    authority: AuthorityService = Depends(get_authority),
) -> dict[str, Any]:
    try:
        moved = await authority.sweep_idle(limit=limit)
    except DomainError as exc:
        raise to_http(exc) from exc
    return {"moved": len(moved), "conversation_ids": moved}


@router.post("/evaluate", summary="Evalúa conversaciones en espera")
async def evaluate(
    limit: int | None = LimitQuery,
    service: EvaluationService = Depends(get_evaluation_service),
) -> dict[str, int]:
    try:
        return await service.run_pending(limit=limit)
    except DomainError as exc:
        raise to_http(exc) from exc


@router.post("/transfer", summary="Traspasa leads calificados a vendedores")
async def transfer(
    limit: int | None = LimitQuery,
    orchestrator: TransferOrchestrator = Depends(get_transfer_orchestrator),
) -> dict[str, int]:
    try:
        return await orchestrator.process_qualified(limit=limit)
    except DomainError as exc:
        raise to_http(exc) from exc


@router.post("/delivery-check", summary="Consulta estados de entregas sin confirmar")
async def delivery_check(
    limit: int | None = LimitQuery,
    monitor: DeliveryMonitor = Depends(get_delivery_monitor),
) -> dict[str, int]:
    try:
        return await monitor.check_pending(limit=limit)
    except DomainError as exc:
        raise to_http(exc) from exc


@router.post("/queue-cleanup", summary="Reintenta, desatasca y purga entradas de la cola")
async def queue_cleanup(queue: MessageQueue = Depends(get_queue)) -> dict[str, Any]:
    try:
        report = await queue.cleanup()
    except DomainError as exc:
        raise to_http(exc) from exc
    return report.as_dict()
