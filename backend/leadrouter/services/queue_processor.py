"""Procesador de la cola: lote vencido → motor conversacional → respuesta al cliente."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from leadrouter.core.config import Settings
from leadrouter.core.config import settings as default_settings
from leadrouter.core.logging import get_logger, log_event
from leadrouter.core.security import mask_phone
from leadrouter.models.conversation import QueueEntry
from leadrouter.repositories.base import RepositoryError, iso, utcnow
from leadrouter.repositories.store import Datastore
from leadrouter.services.ai_engine import AIEngineConfigError, AIEngineError, DifyClient
from leadrouter.services.dispatcher import Dispatcher
from leadrouter.services.message_queue import MessageQueue
from leadrouter.services.transports import TransportConfigError, TransportError

logger = get_logger(__name__)


@dataclass(slots=True)
class TickResult:
    processed: int = 0
    errors: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"processed": self.processed, "errors": self.errors, "skipped": self.skipped}


class QueueProcessor:
    """`tick()` procesa un lote acotado; los fallos quedan en la entrada, sin reintento inline."""

    def __init__(
        self,
        store: Datastore | None = None,
        *,
        settings: Settings | None = None,
        queue: MessageQueue | None = None,
        engine: DifyClient | None = None,
        dispatcher: Dispatcher | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._store = store or Datastore(settings=self._settings)
        self._queue = queue or MessageQueue(self._store, settings=self._settings)
        self._engine = engine or DifyClient(settings=self._settings)
        self._dispatcher = dispatcher or Dispatcher(self._store, settings=self._settings)

    async def tick(self, *, limit: int | None = None, now: datetime | None = None) -> TickResult:
        result = TickResult()
        entries = await self._queue.dequeue_due(limit, now=now)
        pending = list(entries)
        try:
            while pending:
                outcome = await self._process(pending.pop(0))
                if outcome == "sent":
                    result.processed += 1
                elif outcome == "error":
                    result.errors += 1
                else:
                    result.skipped += 1
        finally:
            # Un error fatal aborta el tick; lo reclamado y no procesado vuelve a la cola.
            for entry in pending:
                await self._queue.release(entry)
        log_event(logger, "queue.tick_completed", claimed=len(entries), **result.as_dict())
        return result

    async def _process(self, entry: QueueEntry) -> str:
        try:
            conversation = await self._store.conversations.get(entry.conversation_id)
        except RepositoryError as exc:
            await self._queue.mark_error(entry.id, f"load: {exc}")
            logger.warning(
                "queue.entry_failed",
                extra={"entry_id": entry.id, "conversation_id": entry.conversation_id, "stage": "load", "error": str(exc)},
            )
            return "error"
        if conversation is None:
            await self._queue.discard(entry.id)
            log_event(logger, "queue.entry_orphaned", entry_id=entry.id, conversation_id=entry.conversation_id)
            return "skipped"

        # Re-chequeo de autoridad en el último momento posible.
        if not conversation.bot_is_authoritative:
            reason = "fallback_mode" if conversation.fallback_mode else f"status:{conversation.status}"
            await self._queue.mark_skipped(entry.id, reason)
            log_event(
                logger,
                "queue.entry_skipped",
                entry_id=entry.id,
                conversation_id=conversation.id,
                reason=reason,
            )
            return "skipped"

        query = entry.joined_text()
        if not query:
            await self._queue.mark_skipped(entry.id, "empty_batch")
            return "skipped"

        stage = "ai_engine"
        try:
            reply = await self._engine.send_turn(
                conversation.engine_conversation_id, query, conversation.phone_number
            )
            if not reply.text:
                raise AIEngineError("Motor devolvió respuesta vacía")

            metadata = {
                **conversation.metadata,
                "engine_conversation_id": reply.conversation_handle,
                "last_engine_message_id": reply.message_id,
                "last_processed_at": iso(utcnow()),
            }
            stage = "persist"
            # Guard: si un operador tomó el control durante la llamada al motor, no se responde.
            updated = await self._store.conversations.update_if(
                conversation.id,
                {"metadata": metadata},
                expect={"status": "bot_attending", "fallback_mode": False},
            )
            if updated is None:
                await self._queue.mark_skipped(entry.id, "authority_changed")
                log_event(logger, "queue.entry_superseded", entry_id=entry.id, conversation_id=conversation.id)
                return "skipped"

            await self._store.messages.create(
                conversation_id=conversation.id,
                sender_type="bot",
                sender_name="Bot",
                content=reply.text,
                message_source=conversation.channel,
                metadata={
                    "engine_message_id": reply.message_id,
                    "tokens_used": reply.tokens_used,
                    "queue_entry_id": entry.id,
                    "grouped_messages_count": len(entry.messages_content),
                },
            )

            stage = "dispatch"
            await self._dispatcher.send_to_customer(
                updated, reply.text, metadata={"queue_entry_id": entry.id}
            )
        except (AIEngineConfigError, TransportConfigError) as exc:
            await self._queue.mark_error(entry.id, f"{stage}: {exc}")
            logger.error(
                "queue.fatal_configuration",
                extra={"entry_id": entry.id, "stage": stage, "error": str(exc)},
            )
            raise
        except (AIEngineError, TransportError, RepositoryError) as exc:
            await self._queue.mark_error(entry.id, f"{stage}: {exc}")
            logger.warning(
                "queue.entry_failed",
                extra={
                    "entry_id": entry.id,
                    "conversation_id": conversation.id,
                    "stage": stage,
                    "error": str(exc),
                },
            )
            await self._store.system_logs.record(
                "error",
                "queue_processor",
                f"Falha ao processar fila ({stage})",
                {
                    "entry_id": entry.id,
                    "conversation_id": conversation.id,
                    "phone": mask_phone(conversation.phone_number),
                    "stage": stage,
                    "error": str(exc),
                    "retry_count": entry.retry_count,
                },
            )
            return "error"

        await self._queue.mark_sent(entry.id)
        log_event(
            logger,
            "queue.entry_sent",
            entry_id=entry.id,
            conversation_id=conversation.id,
            grouped_messages=len(entry.messages_content),
        )
        return "sent"
