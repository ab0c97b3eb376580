"""Máquina de estados de autoridad de la conversación (bot / operador / vendedor).

La tabla de transiciones es pura; `AuthorityService` la aplica sobre Supabase con
actualizaciones condicionadas al estado leído, de modo que la verificación de
autoridad y la escritura ocurren en la misma sentencia.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

from leadrouter.core.config import Settings
from leadrouter.core.config import settings as default_settings
from leadrouter.core.logging import get_logger, log_event
from leadrouter.core.security import mask_phone
from leadrouter.models.conversation import Conversation, ConversationStatus, Message
from leadrouter.repositories.base import iso, utcnow
from leadrouter.repositories.store import Datastore

logger = get_logger(__name__)

Event = Literal[
    "went_idle",
    "qualified",
    "not_qualified",
    "transferred",
    "closed",
    "assume_control",
    "return_to_bot",
]

# (estado actual, evento) -> estado destino. Los eventos de fallback no cambian `status`.
TRANSITIONS: dict[tuple[str, str], str] = {
    ("bot_attending", "went_idle"): "waiting_evaluation",
    ("waiting_evaluation", "qualified"): "qualified_for_transfer",
    ("waiting_evaluation", "not_qualified"): "finished",
    ("qualified_for_transfer", "transferred"): "sent_to_seller",
    # Traspaso manual: un operador puede enviar a vendedor desde cualquier estado abierto.
    ("bot_attending", "transferred"): "sent_to_seller",
    ("waiting_evaluation", "transferred"): "sent_to_seller",
    # Reasignación a otro vendedor.
    ("sent_to_seller", "transferred"): "sent_to_seller",
    ("sent_to_seller", "closed"): "finished",
    ("qualified_for_transfer", "closed"): "finished",
}

STATUSES: tuple[ConversationStatus, ...] = (
    "bot_attending",
    "waiting_evaluation",
    "qualified_for_transfer",
    "sent_to_seller",
    "finished",
)
ELEVATED_ROLES = frozenset({"manager", "admin"})


class AuthorityError(RuntimeError):
    """Transición no permitida desde el estado actual."""


class ConflictError(AuthorityError):
    """Otra escritura cambió la conversación entre la lectura y la actualización."""


class ConversationNotFoundError(LookupError):
    pass


class PermissionDeniedError(PermissionError):
    pass


def next_status(status: str, event: Event) -> str:
    """Estado destino para `event`; lanza `AuthorityError` si no está permitido."""
    target = TRANSITIONS.get((status, event))
    if target is None:
        raise AuthorityError(f"Transición inválida: {status} --{event}-->")
    return target


def can_transition(status: str, event: Event) -> bool:
    return (status, event) in TRANSITIONS


def check_invariants(conversation: Conversation | dict[str, Any]) -> list[str]:
    """Lista de invariantes rotos; vacía cuando el registro es consistente."""
    data = conversation.model_dump() if isinstance(conversation, Conversation) else conversation
    problems: list[str] = []
    if bool(data.get("fallback_mode")) != (data.get("fallback_taken_by") is not None):
        problems.append("fallback_mode_requires_taker")
    if data.get("status") == "sent_to_seller" and not data.get("assigned_seller_id"):
        problems.append("sent_to_seller_requires_seller")
    if data.get("status") not in STATUSES:
        problems.append("unknown_status")
    return problems


@dataclass(slots=True)
class Actor:
    """Usuario autenticado que actúa sobre conversaciones."""

    user_id: str
    roles: tuple[str, ...] = ()

    @property
    def is_elevated(self) -> bool:
        return bool(ELEVATED_ROLES.intersection(self.roles))


def can_view_sensitive(conversation: Conversation, actor: Actor) -> bool:
    if actor.is_elevated:
        return True
    return actor.user_id in {
        conversation.assigned_operator_id,
        conversation.assigned_seller_id,
        conversation.fallback_taken_by,
    }


def visible_conversation(
    conversation: Conversation, actor: Actor, messages: list[Message] | None = None
) -> dict[str, Any]:
    """Vista de lectura aplicando la política de datos sensibles."""
    payload = conversation.model_dump(mode="json")
    if can_view_sensitive(conversation, actor):
        payload["messages"] = [message.model_dump(mode="json") for message in messages or []]
        payload["restricted"] = False
        return payload
    payload["phone_number"] = mask_phone(conversation.phone_number)
    payload["messages"] = []
    payload["restricted"] = True
    return payload


class AuthorityService:
    """Aplica las transiciones de autoridad y deja rastro en `system_logs`."""

    def __init__(self, store: Datastore | None = None, *, settings: Settings | None = None) -> None:
        self._settings = settings or default_settings
        self._store = store or Datastore(settings=self._settings)

    async def get(self, conversation_id: str) -> Conversation:
        conversation = await self._store.conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def _apply(
        self,
        conversation: Conversation,
        patch: dict[str, Any],
        *,
        expect: dict[str, Any],
        event: str,
        actor_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Conversation:
        updated = await self._store.conversations.update_if(conversation.id, patch, expect=expect)
        if updated is None:
            log_event(logger, "authority.conflict", conversation_id=conversation.id, transition=event)
            raise ConflictError(f"La conversación {conversation.id} cambió durante `{event}`")
        problems = check_invariants(updated)
        if problems:
            logger.error(
                "authority.invariant_broken",
                extra={"conversation_id": updated.id, "problems": problems, "transition": event},
            )
        log_event(
            logger,
            "authority.transition",
            conversation_id=updated.id,
            transition=event,
            from_status=conversation.status,
            to_status=updated.status,
            fallback_mode=updated.fallback_mode,
        )
        await self._store.system_logs.record(
            "status_change",
            "authority",
            f"{event}: {conversation.status} -> {updated.status}",
            {
                "conversation_id": updated.id,
                "phone": mask_phone(updated.phone_number),
                "previous_status": conversation.status,
                "new_status": updated.status,
                "fallback_mode": updated.fallback_mode,
                "actor_id": actor_id,
                **(details or {}),
            },
        )
        return updated

    async def _transition(
        self,
        conversation: Conversation,
        event: str,
        *,
        extra_patch: dict[str, Any] | None = None,
        require_bot: bool = False,
        actor_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Conversation:
        target = next_status(conversation.status, event)
        expect: dict[str, Any] = {"status": conversation.status}
        if require_bot:
            if conversation.fallback_mode:
                raise AuthorityError(f"Conversación {conversation.id} en modo manual")
            expect["fallback_mode"] = False
        patch = {"status": target, **(extra_patch or {})}
        return await self._apply(
            conversation, patch, expect=expect, event=event, actor_id=actor_id, details=details
        )

    async def assume_control(self, conversation_id: str, operator_id: str) -> Conversation:
        """Un operador toma el control manual; el bot deja de actuar."""
        conversation = await self.get(conversation_id)
        if conversation.fallback_mode:
            if conversation.fallback_taken_by == operator_id:
                return conversation
            raise ConflictError(f"Conversación ya controlada por {conversation.fallback_taken_by}")
        return await self._apply(
            conversation,
            {"fallback_mode": True, "fallback_taken_by": operator_id},
            expect={"fallback_mode": False},
            event="assume_control",
            actor_id=operator_id,
        )

    async def seller_took_over(self, conversation_id: str, seller_id: str) -> Conversation:
        """Un vendedor respondió desde su número: queda como responsable manual."""
        conversation = await self.get(conversation_id)
        if conversation.fallback_mode:
            return conversation
        return await self._apply(
            conversation,
            {"fallback_mode": True, "fallback_taken_by": seller_id},
            expect={"fallback_mode": False},
            event="assume_control",
            actor_id=seller_id,
            details={"via": "seller_reply"},
        )

    async def return_to_bot(self, conversation_id: str, operator: Actor) -> Conversation:
        """Devuelve la conversación al bot; sólo quien la tomó o un rol elevado."""
        conversation = await self.get(conversation_id)
        if conversation.status == "bot_attending" and not conversation.fallback_mode:
            raise AuthorityError("A conversa já está sendo atendida pelo bot")
        if (
            conversation.fallback_mode
            and conversation.fallback_taken_by != operator.user_id
            and not operator.is_elevated
        ):
            raise PermissionDeniedError("Somente quem assumiu a conversa pode devolvê-la ao bot")
        return await self._apply(
            conversation,
            {"status": "bot_attending", "fallback_mode": False, "fallback_taken_by": None},
            expect={"status": conversation.status, "fallback_mode": conversation.fallback_mode},
            event="return_to_bot",
            actor_id=operator.user_id,
        )

    async def mark_idle(self, conversation: Conversation) -> Conversation:
        if await self._store.queue.has_outstanding(conversation.id):
            raise AuthorityError("Conversación con mensajes pendientes en la cola")
        return await self._transition(conversation, "went_idle", require_bot=True)

    async def apply_evaluation(
        self, conversation: Conversation, *, should_transfer: bool, evaluation: dict[str, Any]
    ) -> Conversation:
        event = "qualified" if should_transfer else "not_qualified"
        metadata = {**conversation.metadata, "evaluation": evaluation}
        return await self._transition(
            conversation,
            event,
            extra_patch={"metadata": metadata},
            require_bot=True,
            details={"reason": evaluation.get("reason")},
        )

    async def mark_sent_to_seller(
        self, conversation: Conversation, seller_id: str, *, actor_id: str | None = None
    ) -> Conversation:
        if conversation.status == "sent_to_seller" and conversation.assigned_seller_id == seller_id:
            return conversation
        # Un traspaso manual resuelve también el modo manual.
        return await self._transition(
            conversation,
            "transferred",
            extra_patch={
                "assigned_seller_id": seller_id,
                "fallback_mode": False,
                "fallback_taken_by": None,
            },
            actor_id=actor_id,
            details={"seller_id": seller_id},
        )

    async def finish(
        self, conversation: Conversation, reason: str, *, actor_id: str | None = None
    ) -> Conversation:
        if conversation.status == "finished":
            return conversation
        metadata = {**conversation.metadata, "finished_reason": reason}
        return await self._transition(
            conversation,
            "closed",
            extra_patch={"metadata": metadata},
            actor_id=actor_id,
            details={"reason": reason},
        )

    async def assign_operator(
        self, conversation_id: str, operator_id: str | None, *, actor: Actor
    ) -> Conversation:
        """Asigna o libera (`operator_id=None`) al operador responsable."""
        if not actor.is_elevated:
            raise PermissionDeniedError("Apenas gerentes ou administradores podem atribuir operadores")
        conversation = await self.get(conversation_id)
        return await self._apply(
            conversation,
            {"assigned_operator_id": operator_id},
            expect={"assigned_operator_id": conversation.assigned_operator_id},
            event="assign_operator" if operator_id else "unassign_operator",
            actor_id=actor.user_id,
            details={"operator_id": operator_id},
        )

    async def sweep_idle(self, *, now: datetime | None = None, limit: int | None = None) -> list[str]:
        """Pasa a `waiting_evaluation` las conversaciones del bot sin actividad del cliente."""
        now = now or utcnow()
        threshold = now - timedelta(minutes=self._settings.idle_minutes)
        candidates = await self._store.conversations.list_by_status(
            "bot_attending",
            fallback_mode=False,
            updated_before=threshold,
            limit=limit or self._settings.evaluation_batch_size,
        )
        moved: list[str] = []
        for conversation in candidates:
            last_customer = await self._store.messages.last_from(conversation.id, "customer")
            if last_customer is None or last_customer.created_at is None:
                continue
            if last_customer.created_at >= threshold:
                continue
            if await self._store.queue.has_outstanding(conversation.id):
                continue
            try:
                await self.mark_idle(conversation)
            except AuthorityError as exc:
                log_event(logger, "authority.idle_skipped", conversation_id=conversation.id, error=str(exc))
                continue
            moved.append(conversation.id)
        log_event(logger, "authority.idle_sweep", checked=len(candidates), moved=len(moved), threshold=iso(threshold))
        return moved
