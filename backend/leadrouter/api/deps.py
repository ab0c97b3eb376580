"""Fábricas de servicios para inyectar en las rutas vía `Depends`.

Las pruebas sustituyen `get_store` (y, si hace falta, los clientes externos)
con `app.dependency_overrides`.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException

from leadrouter.core.config import Settings, settings
from leadrouter.core.logging import get_logger
from leadrouter.repositories.base import RepositoryError
from leadrouter.repositories.store import Datastore
from leadrouter.services.ai_engine import DifyClient
from leadrouter.services.authority import AuthorityService
from leadrouter.services.delivery_monitor import DeliveryMonitor
from leadrouter.services.dispatcher import Dispatcher
from leadrouter.services.ingestion import IngestionService
from leadrouter.services.message_queue import MessageQueue
from leadrouter.services.qualification import EvaluationService
from leadrouter.services.queue_processor import QueueProcessor
from leadrouter.services.transfer import TransferOrchestrator

logger = get_logger(__name__)


def get_settings() -> Settings:
    return settings


def get_store(cfg: Settings = Depends(get_settings)) -> Datastore:
    try:
        return Datastore(settings=cfg)
    except RepositoryError as exc:
        logger.error("deps.store_unavailable", extra={"error": str(exc)})
        raise HTTPException(status_code=500, detail="Supabase no está configurado") from exc


def get_engine(cfg: Settings = Depends(get_settings)) -> DifyClient:
    return DifyClient(settings=cfg)


def get_dispatcher(
    store: Datastore = Depends(get_store), cfg: Settings = Depends(get_settings)
) -> Dispatcher:
    return Dispatcher(store, settings=cfg)


def get_queue(store: Datastore = Depends(get_store), cfg: Settings = Depends(get_settings)) -> MessageQueue:
    return MessageQueue(store, settings=cfg)


def get_authority(
    store: Datastore = Depends(get_store), cfg: Settings = Depends(get_settings)
) -> AuthorityService:
    return AuthorityService(store, settings=cfg)


def get_ingestion(
    store: Datastore = Depends(get_store),
    cfg: Settings = Depends(get_settings),
    queue: MessageQueue = Depends(get_queue),
    authority: AuthorityService = Depends(get_authority),
) -> IngestionService:
    return IngestionService(store, settings=cfg, queue=queue, authority=authority)


def get_queue_processor(
    store: Datastore = Depends(get_store),
    cfg: Settings = Depends(get_settings),
    queue: MessageQueue = Depends(get_queue),
    engine: DifyClient = Depends(get_engine),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> QueueProcessor:
    return QueueProcessor(store, settings=cfg, queue=queue, engine=engine, dispatcher=dispatcher)


def get_evaluation_service(
    store: Datastore = Depends(get_store),
    cfg: Settings = Depends(get_settings),
    authority: AuthorityService = Depends(get_authority),
) -> EvaluationService:
    return EvaluationService(store, settings=cfg, authority=authority)


def get_transfer_orchestrator(
    store: Datastore = Depends(get_store),
    cfg: Settings = Depends(get_settings),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    authority: AuthorityService = Depends(get_authority),
) -> TransferOrchestrator:
    return TransferOrchestrator(store, settings=cfg, dispatcher=dispatcher, authority=authority)


def get_delivery_monitor(
    store: Datastore = Depends(get_store),
    cfg: Settings = Depends(get_settings),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> DeliveryMonitor:
    return DeliveryMonitor(store, settings=cfg, dispatcher=dispatcher)
