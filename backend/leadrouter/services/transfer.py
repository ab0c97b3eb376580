"""Orquestador de traspaso de leads calificados a vendedores.

Los pasos no comparten transacción: si el aviso al vendedor falla, el lead y el
cambio de la conversación se conservan y sólo se reintenta el aviso.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from openai import AsyncOpenAI

from leadrouter.core.config import Settings
from leadrouter.core.config import settings as default_settings
from leadrouter.core.logging import get_logger, log_event
from leadrouter.core.security import mask_phone
from leadrouter.models.conversation import Conversation
from leadrouter.models.lead import Lead, Seller
from leadrouter.repositories.base import RepositoryError, iso, utcnow
from leadrouter.repositories.store import Datastore
from leadrouter.services import openai as openai_service
from leadrouter.services.authority import AuthorityError, AuthorityService, ConversationNotFoundError
from leadrouter.services.dispatcher import Dispatcher
from leadrouter.services.phone import format_display
from leadrouter.services.qualification import Transcript, build_summary
from leadrouter.services.seller_matching import LeadCriteria, LeastWorkloadMatcher, SellerMatcher
from leadrouter.services.transports import TransportConfigError, TransportError

logger = get_logger(__name__)


class TransferError(RuntimeError):
    """El traspaso no pudo completarse (sin vendedor, lead inexistente, estado inválido)."""


class LeadNotFoundError(LookupError):
    pass


@dataclass(slots=True)
class TransferResult:
    lead: Lead
    seller: Seller
    notified: bool
    delivery_log_id: str | None = None
    first_message_sent: bool = False


def seller_notification(conversation: Conversation, summary: str, notes: str | None = None) -> str:
    """Texto del aviso interno al vendedor."""
    body = (
        "🎯 *NOVO LEAD RECEBIDO*\n\n"
        f"*Cliente:* {conversation.customer_name or 'Cliente'}\n"
        f"*Telefone:* {format_display(conversation.phone_number)}\n"
        f"*ID da Conversa:* {conversation.id}\n\n"
        f"*📋 Resumo do Atendimento:*\n{summary}"
    )
    if notes:
        body += f"\n\n*📝 Observações do operador:*\n{notes}"
    return body + "\n\n---\n_Lead distribuído automaticamente pelo sistema_\n_Responda o cliente o quanto antes_"


def default_first_message(seller: Seller, conversation: Conversation, product_interest: str | None) -> str:
    name = conversation.customer_name or "tudo bem"
    interest = product_interest or "nossos produtos"
    return (
        f"Olá, {name}! Aqui é {seller.name}. "
        f"Vi que você conversou com nosso atendimento sobre {interest} e vou dar continuidade pessoalmente. "
        "Posso te ajudar com mais alguma informação agora?"
    )


_FIRST_MESSAGE_PROMPT = """Crie uma mensagem de apresentação profissional de um vendedor para um novo cliente.
A mensagem deve ser calorosa e profissional, referenciar o interesse específico do cliente,
demonstrar que o histórico foi lido, oferecer próximos passos concretos e ter no máximo 3 parágrafos.
Retorne apenas a mensagem, sem aspas ou formatação extra."""


class TransferOrchestrator:
    def __init__(
        self,
        store: Datastore | None = None,
        *,
        settings: Settings | None = None,
        dispatcher: Dispatcher | None = None,
        authority: AuthorityService | None = None,
        matcher: SellerMatcher | None = None,
        openai_client: AsyncOpenAI | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._store = store or Datastore(settings=self._settings)
        self._dispatcher = dispatcher or Dispatcher(self._store, settings=self._settings)
        self._authority = authority or AuthorityService(self._store, settings=self._settings)
        self._matcher = matcher or LeastWorkloadMatcher()
        self._openai_client = openai_client

    async def _select_seller(self, seller_id: str | None, criteria: LeadCriteria) -> Seller:
        if seller_id:
            seller = await self._store.sellers.get(seller_id)
            if seller is None or seller.deleted or not seller.active:
                raise TransferError(f"Vendedor {seller_id} indisponível")
            return seller
        sellers = await self._store.sellers.list_available()
        chosen = self._matcher.match(criteria, sellers)
        if chosen is None:
            raise TransferError("Nenhum vendedor ativo disponível")
        return next(seller for seller in sellers if seller.id == chosen)

    async def _adjust_workload(self, seller_id: str, delta: int) -> None:
        """Reintenta ante escrituras concurrentes sobre `current_workload`."""
        for _ in range(3):
            current = await self._store.sellers.get(seller_id)
            if current is None or (delta < 0 and current.current_workload <= 0):
                return
            if await self._store.sellers.adjust_workload(current, delta) is not None:
                return
        logger.warning("transfer.workload_not_updated", extra={"seller_id": seller_id, "delta": delta})

    async def transfer(
        self,
        conversation_id: str,
        summary: str,
        reason: str,
        *,
        seller_id: str | None = None,
        notes: str | None = None,
        product_interest: str | None = None,
        actor_id: str | None = None,
    ) -> TransferResult:
        conversation = await self._store.conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        if conversation.status == "finished":
            raise TransferError("Conversa finalizada não pode ser transferida")

        # 1. Vendedor
        existing = await self._store.leads.find_open_for_conversation(conversation.id)
        if existing is not None and not seller_id:
            seller_id = existing.seller_id
        seller = await self._select_seller(
            seller_id, LeadCriteria(product_interest=product_interest, summary=summary)
        )

        # 2. Lead (idempotente por conversación)
        lead = existing if existing is not None and existing.seller_id == seller.id else None
        if existing is not None and lead is None:
            await self._store.leads.update(
                existing.id,
                {"status": "lost", "metadata": {**existing.metadata, "reassigned_to": seller.id}},
            )
            await self._adjust_workload(existing.seller_id, -1)
            log_event(
                logger,
                "transfer.lead_reassigned",
                lead_id=existing.id,
                previous_seller_id=existing.seller_id,
                seller_id=seller.id,
            )
        if lead is None:
            lead = await self._store.leads.create(
                conversation_id=conversation.id,
                seller_id=seller.id,
                customer_name=conversation.customer_name,
                phone_number=conversation.phone_number,
                summary=summary,
                reason=reason,
                product_interest=product_interest,
                metadata={"transferred_by": actor_id or "automatic", "notes": notes},
            )
            await self._adjust_workload(seller.id, +1)
            log_event(logger, "transfer.lead_created", lead_id=lead.id, seller_id=seller.id, conversation_id=conversation.id)

        # 3. Conversación → sent_to_seller
        conversation = await self._authority.mark_sent_to_seller(conversation, seller.id, actor_id=actor_id)

        # 4. Aviso al vendedor por la cuenta relay
        notified, delivery_log_id = await self._notify(lead, seller, conversation, summary, notes)

        # 5. Primer mensaje automático al cliente
        first_sent = False
        if seller.auto_first_message:
            first_sent = await self._send_first_message(seller, conversation, product_interest, summary)

        await self._store.system_logs.record(
            "intelligent_transfer",
            "transfer",
            f"Lead enviado para {seller.name}",
            {
                "conversation_id": conversation.id,
                "lead_id": lead.id,
                "seller_id": seller.id,
                "phone": mask_phone(conversation.phone_number),
                "reason": reason,
                "notified": notified,
                "manual": bool(actor_id),
            },
        )
        return TransferResult(lead, seller, notified, delivery_log_id, first_sent)

    async def _notify(
        self,
        lead: Lead,
        seller: Seller,
        conversation: Conversation,
        summary: str,
        notes: str | None,
    ) -> tuple[bool, str | None]:
        text = seller_notification(conversation, summary, notes)
        try:
            log = await self._dispatcher.send_via_relay(
                seller.phone_number,
                text,
                seller_id=seller.id,
                conversation_id=conversation.id,
                metadata={"lead_id": lead.id, "kind": "lead_notification"},
            )
        except TransportConfigError:
            raise
        except TransportError as exc:
            attempts = int(lead.metadata.get("notification_attempts", 0)) + 1
            await self._store.leads.update(
                lead.id,
                {
                    "metadata": {
                        **lead.metadata,
                        "notification_status": "failed",
                        "notification_error": str(exc),
                        "notification_attempts": attempts,
                    }
                },
            )
            logger.warning(
                "transfer.notify_failed",
                extra={"lead_id": lead.id, "seller_id": seller.id, "error": str(exc)},
            )
            await self._store.system_logs.record(
                "error",
                "transfer",
                "Falha ao notificar vendedor; lead mantido para reenvio",
                {"lead_id": lead.id, "seller_id": seller.id, "error": str(exc)},
            )
            return False, getattr(getattr(exc, "log", None), "id", None)

        await self._store.leads.update(
            lead.id,
            {
                "sent_at": iso(utcnow()),
                "metadata": {
                    **lead.metadata,
                    "notification_status": "sent",
                    "notification_log_id": log.id,
                    "notification_attempts": int(lead.metadata.get("notification_attempts", 0)) + 1,
                },
            },
        )
        log_event(logger, "transfer.seller_notified", lead_id=lead.id, seller_id=seller.id, delivery_log_id=log.id)
        return True, log.id

    async def _compose_first_message(
        self, seller: Seller, conversation: Conversation, product_interest: str | None, summary: str
    ) -> str:
        if not self._settings.openai_api_key and self._openai_client is None:
            return default_first_message(seller, conversation, product_interest)
        prompt = (
            f"- Vendedor: {seller.name}\n"
            f"- Cliente: {conversation.customer_name or 'Cliente'}\n"
            f"- Interesse: {product_interest or 'produtos em geral'}\n"
            f"- Resumo do atendimento: {summary}"
        )
        try:
            text = await openai_service.complete(
                _FIRST_MESSAGE_PROMPT,
                prompt,
                settings=self._settings,
                client=self._openai_client,
                temperature=0.7,
            )
        except openai_service.CompletionError as exc:
            logger.warning("transfer.first_message_generation_failed", extra={"error": str(exc)})
            text = ""
        return text or default_first_message(seller, conversation, product_interest)

    async def _send_first_message(
        self, seller: Seller, conversation: Conversation, product_interest: str | None, summary: str
    ) -> bool:
        """Nunca interrumpe el traspaso: cualquier falla queda sólo registrada."""
        try:
            text = await self._compose_first_message(seller, conversation, product_interest, summary)
            if seller.whapi_token:
                await self._dispatcher.send(
                    channel="gateway",
                    phone=conversation.phone_number,
                    content=text,
                    token_alias="seller",
                    seller_token=seller.whapi_token,
                    seller_id=seller.id,
                    conversation_id=conversation.id,
                    metadata={"kind": "auto_first_message"},
                )
            else:
                await self._dispatcher.send_to_customer(
                    conversation, text, metadata={"kind": "auto_first_message", "seller_id": seller.id}
                )
            await self._store.messages.create(
                conversation_id=conversation.id,
                sender_type="seller",
                sender_name=seller.name,
                content=text,
                message_source=conversation.channel,
                metadata={"auto_first_message": True, "seller_id": seller.id},
            )
        except (TransportError, RepositoryError) as exc:
            logger.warning(
                "transfer.first_message_failed",
                extra={"seller_id": seller.id, "conversation_id": conversation.id, "error": str(exc)},
            )
            return False
        return True

    async def retry_notification(self, lead_id: str) -> TransferResult:
        """Reenvía sólo el aviso al vendedor de un lead existente."""
        lead = await self._store.leads.get(lead_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        seller = await self._store.sellers.get(lead.seller_id)
        conversation = await self._store.conversations.get(lead.conversation_id)
        if seller is None or conversation is None:
            raise TransferError("Lead sem vendedor ou conversa associada")
        notified, log_id = await self._notify(
            lead, seller, conversation, lead.summary, lead.metadata.get("notes")
        )
        return TransferResult(lead, seller, notified, log_id)

    async def process_qualified(self, *, limit: int | None = None) -> dict[str, int]:
        """Traspasa las conversaciones `qualified_for_transfer` usando el resumen de la evaluación."""
        conversations = await self._store.conversations.list_by_status(
            "qualified_for_transfer",
            fallback_mode=False,
            limit=limit or self._settings.transfer_batch_size,
        )
        counts = {"transferred": 0, "notified": 0, "failed": 0}
        for conversation in conversations:
            evaluation = conversation.metadata.get("evaluation") or {}
            summary = evaluation.get("summary")
            if not summary:
                messages = await self._store.messages.list_for_conversation(conversation.id)
                summary = build_summary(Transcript.from_messages(conversation, messages))
            try:
                result = await self.transfer(
                    conversation.id,
                    summary,
                    evaluation.get("reason") or "qualified_lead",
                    product_interest=(evaluation.get("matched_keywords") or [None])[0],
                )
            except (TransferError, AuthorityError) as exc:
                counts["failed"] += 1
                logger.warning(
                    "transfer.batch_item_failed",
                    extra={"conversation_id": conversation.id, "error": str(exc)},
                )
                continue
            counts["transferred"] += 1
            counts["notified"] += int(result.notified)
        log_event(logger, "transfer.batch_completed", **counts)
        return counts

    async def record_sale(self, lead_id: str, sale_value: float | None, *, actor_id: str | None = None) -> Lead:
        return await self._close_lead(lead_id, "sold", sale_value=sale_value, actor_id=actor_id)

    async def mark_lost(self, lead_id: str, *, actor_id: str | None = None) -> Lead:
        return await self._close_lead(lead_id, "lost", actor_id=actor_id)

    async def _close_lead(
        self,
        lead_id: str,
        status: str,
        *,
        sale_value: float | None = None,
        actor_id: str | None = None,
        now: datetime | None = None,
    ) -> Lead:
        lead = await self._store.leads.get(lead_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)
        if lead.status != "attending":
            raise TransferError(f"Lead já encerrado ({lead.status})")
        updated = await self._store.leads.update(
            lead_id,
            {
                "status": status,
                "generated_sale": status == "sold",
                "sale_value": sale_value if status == "sold" else None,
                "metadata": {**lead.metadata, "closed_at": iso(now or utcnow()), "closed_by": actor_id},
            },
        )
        await self._adjust_workload(lead.seller_id, -1)
        conversation = await self._store.conversations.get(lead.conversation_id)
        if conversation is not None:
            try:
                await self._authority.finish(conversation, f"lead_{status}", actor_id=actor_id)
            except AuthorityError as exc:
                log_event(logger, "transfer.finish_skipped", lead_id=lead_id, error=str(exc))
        log_event(logger, "transfer.lead_closed", lead_id=lead_id, status=status)
        return updated or lead
