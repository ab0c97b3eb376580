"""Rutas de operadores: autoridad de la conversación, traspasos manuales y cierre de leads.

Todas exigen un JWT de Supabase válido; los roles se leen de `user_roles`.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from leadrouter.api.auth import get_actor, require_elevated
from leadrouter.api.deps import get_authority, get_store, get_transfer_orchestrator
from leadrouter.api.errors import DomainError, to_http
from leadrouter.core.logging import get_logger, log_event
from leadrouter.repositories.store import Datastore
from leadrouter.services.authority import Actor, AuthorityService, can_view_sensitive, visible_conversation
from leadrouter.services.qualification import Transcript, build_summary
from leadrouter.services.transfer import TransferOrchestrator, TransferResult

router = APIRouter(prefix="/conversations", tags=["conversations"])

logger = get_logger(__name__)


class TransferPayload(BaseModel):
    """Traspaso manual a un vendedor."""

    seller_id: str | None = Field(default=None, description="Vendedor elegido; se calcula cuando se omite.")
    summary: str | None = Field(default=None, max_length=4000)
    reason: str = Field(default="manual_transfer", max_length=200)
    notes: str | None = Field(default=None, max_length=2000)
    product_interest: str | None = Field(default=None, max_length=200)


class OperatorPayload(BaseModel):
    operator_id: str | None = Field(default=None, description="`null` libera la conversación.")


class SalePayload(BaseModel):
    sold: bool = True
    sale_value: float | None = Field(default=None, ge=0)


def _transfer_view(result: TransferResult) -> dict[str, Any]:
    return {
        "lead": result.lead.model_dump(mode="json"),
        "seller_id": result.seller.id,
        "seller_name": result.seller.name,
        "notified": result.notified,
        "delivery_log_id": result.delivery_log_id,
        "first_message_sent": result.first_message_sent,
    }


@router.get("/{conversation_id}", summary="Detalle de la conversación según permisos")
async def get_conversation(
    conversation_id: str,
    actor: Actor = Depends(get_actor),
    authority: AuthorityService = Depends(get_authority),
    store: Datastore = Depends(get_store),
) -> dict[str, Any]:
    try:
        conversation = await authority.get(conversation_id)
        messages = (
            await store.messages.list_for_conversation(conversation.id)
            if can_view_sensitive(conversation, actor)
            else []
        )
    except DomainError as exc:
        raise to_http(exc) from exc
    return visible_conversation(conversation, actor, messages)


@router.post("/{conversation_id}/assume", summary="El operador toma el control manual")
async def assume_control(
    conversation_id: str,
    actor: Actor = Depends(get_actor),
    authority: AuthorityService = Depends(get_authority),
) -> dict[str, Any]:
    try:
        conversation = await authority.assume_control(conversation_id, actor.user_id)
    except DomainError as exc:
        raise to_http(exc) from exc
    return visible_conversation(conversation, actor)


@router.post("/{conversation_id}/return-to-bot", summary="Devuelve la conversación al bot")
async def return_to_bot(
    conversation_id: str,
    actor: Actor = Depends(get_actor),
    authority: AuthorityService = Depends(get_authority),
) -> dict[str, Any]:
    try:
        conversation = await authority.return_to_bot(conversation_id, actor)
    except DomainError as exc:
        raise to_http(exc) from exc
    return visible_conversation(conversation, actor)


@router.post("/{conversation_id}/transfer", summary="Traspaso manual a un vendedor")
async def transfer_conversation(
    conversation_id: str,
    payload: TransferPayload,
    actor: Actor = Depends(get_actor),
    authority: AuthorityService = Depends(get_authority),
    orchestrator: TransferOrchestrator = Depends(get_transfer_orchestrator),
    store: Datastore = Depends(get_store),
) -> dict[str, Any]:
    try:
        conversation = await authority.get(conversation_id)
        if not can_view_sensitive(conversation, actor):
            raise HTTPException(status_code=403, detail="forbidden")
        summary = payload.summary
        if not summary:
            messages = await store.messages.list_for_conversation(conversation.id)
            summary = build_summary(Transcript.from_messages(conversation, messages))
        result = await orchestrator.transfer(
            conversation.id,
            summary,
            payload.reason,
            seller_id=payload.seller_id,
            notes=payload.notes,
            product_interest=payload.product_interest,
            actor_id=actor.user_id,
        )
    except DomainError as exc:
        raise to_http(exc) from exc
    log_event(
        logger,
        "conversations.manual_transfer",
        conversation_id=conversation_id,
        actor_id=actor.user_id,
        seller_id=result.seller.id,
        notified=result.notified,
    )
    return _transfer_view(result)


@router.post("/{conversation_id}/operator", summary="Asigna o libera al operador responsable")
async def assign_operator(
    conversation_id: str,
    payload: OperatorPayload,
    actor: Actor = Depends(require_elevated),
    authority: AuthorityService = Depends(get_authority),
) -> dict[str, Any]:
    try:
        conversation = await authority.assign_operator(conversation_id, payload.operator_id, actor=actor)
    except DomainError as exc:
        raise to_http(exc) from exc
    return visible_conversation(conversation, actor)


@router.post("/leads/{lead_id}/retry-notification", summary="Reenvía el aviso al vendedor")
async def retry_notification(
    lead_id: str,
    actor: Actor = Depends(get_actor),
    orchestrator: TransferOrchestrator = Depends(get_transfer_orchestrator),
) -> dict[str, Any]:
    try:
        result = await orchestrator.retry_notification(lead_id)
    except DomainError as exc:
        raise to_http(exc) from exc
    log_event(logger, "conversations.notification_retried", lead_id=lead_id, actor_id=actor.user_id)
    return _transfer_view(result)


@router.post("/leads/{lead_id}/sale", summary="Registra el resultado comercial del lead")
async def record_sale(
    lead_id: str,
    payload: SalePayload,
    actor: Actor = Depends(get_actor),
    orchestrator: TransferOrchestrator = Depends(get_transfer_orchestrator),
) -> dict[str, Any]:
    try:
        if payload.sold:
            lead = await orchestrator.record_sale(lead_id, payload.sale_value, actor_id=actor.user_id)
        else:
            lead = await orchestrator.mark_lost(lead_id, actor_id=actor.user_id)
    except DomainError as exc:
        raise to_http(exc) from exc
    return lead.model_dump(mode="json")
