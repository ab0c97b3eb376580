"""Cola de mensajes con ventana de debounce por conversación."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from leadrouter.core.config import Settings
from leadrouter.core.config import settings as default_settings
from leadrouter.core.logging import get_logger, log_event
from leadrouter.models.conversation import QueueEntry
from leadrouter.repositories.base import iso, utcnow
from leadrouter.repositories.store import Datastore

logger = get_logger(__name__)

DEBOUNCE_POLICIES = ("extend", "fixed")
_RETIRED_STATUSES = ("sent", "skipped", "failed")


@dataclass(slots=True)
class CleanupReport:
    deleted: int = 0
    orphaned: int = 0
    rescheduled: int = 0
    gave_up: int = 0
    unstuck: int = 0
    stats: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {
            "deleted": self.deleted,
            "orphaned": self.orphaned,
            "rescheduled": self.rescheduled,
            "gave_up": self.gave_up,
            "unstuck": self.unstuck,
            "stats": dict(self.stats),
        }


class MessageQueue:
    """Acumula textos entrantes y entrega lotes vencidos al procesador."""

    def __init__(self, store: Datastore | None = None, *, settings: Settings | None = None) -> None:
        self._settings = settings or default_settings
        self._store = store or Datastore(settings=self._settings)
        if self._settings.debounce_policy not in DEBOUNCE_POLICIES:
            raise ValueError(f"debounce_policy inválida: {self._settings.debounce_policy}")

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self._settings.debounce_seconds)

    async def enqueue(self, conversation_id: str, text: str, *, now: datetime | None = None) -> QueueEntry:
        """Agrega el texto a la ventana abierta de la conversación o abre una nueva."""
        now = now or utcnow()
        deadline = now + self.window
        repo = self._store.queue

        entry = await repo.find_waiting(conversation_id)
        if entry is not None:
            scheduled_for = deadline if self._settings.debounce_policy == "extend" else entry.scheduled_for
            updated = await repo.append(entry, text, scheduled_for=scheduled_for)
            if updated is not None:
                log_event(
                    logger,
                    "queue.message_appended",
                    conversation_id=conversation_id,
                    entry_id=updated.id,
                    batch_size=len(updated.messages_content),
                    scheduled_for=iso(updated.scheduled_for),
                )
                return updated
            # El procesador reclamó la ventana entre la lectura y la escritura.
            log_event(logger, "queue.window_closed_during_append", conversation_id=conversation_id, entry_id=entry.id)

        created = await repo.create(
            conversation_id=conversation_id,
            text=text,
            scheduled_for=deadline,
            max_retries=self._settings.queue_max_retries,
        )
        log_event(
            logger,
            "queue.window_opened",
            conversation_id=conversation_id,
            entry_id=created.id,
            scheduled_for=iso(deadline),
        )
        return created

    async def dequeue_due(self, limit: int | None = None, *, now: datetime | None = None) -> list[QueueEntry]:
        """Reclama (waiting → processing) las entradas vencidas, más antiguas primero.

        Una conversación con otra entrada en `processing` queda para el siguiente tick
        para conservar el orden de llegada.
        """
        now = now or utcnow()
        limit = limit or self._settings.queue_batch_size
        repo = self._store.queue
        due = await repo.list_due(now, limit=limit)

        claimed: list[QueueEntry] = []
        seen: set[str] = set()
        for entry in due:
            if entry.conversation_id in seen or await repo.has_processing(entry.conversation_id):
                continue
            taken = await repo.transition(entry.id, {"status": "processing"}, from_status="waiting")
            if taken is None:
                continue
            seen.add(entry.conversation_id)
            claimed.append(taken)
        return claimed

    async def mark_sent(self, entry_id: str, *, now: datetime | None = None) -> None:
        await self._store.queue.transition(
            entry_id,
            {"status": "sent", "processed_at": iso(now or utcnow()), "last_error": None},
            from_status="processing",
        )

    async def mark_skipped(self, entry_id: str, reason: str, *, now: datetime | None = None) -> None:
        await self._store.queue.transition(
            entry_id,
            {"status": "skipped", "processed_at": iso(now or utcnow()), "last_error": reason},
            from_status=("waiting", "processing"),
        )

    async def mark_error(self, entry_id: str, error: str, *, now: datetime | None = None) -> None:
        await self._store.queue.transition(
            entry_id,
            {"status": "error", "processed_at": iso(now or utcnow()), "last_error": error[:1000]},
            from_status="processing",
        )

    async def release(self, entry: QueueEntry, *, now: datetime | None = None) -> None:
        """Devuelve a `waiting` una entrada reclamada que no llegó a procesarse."""
        repo = self._store.queue
        pending = await repo.find_waiting(entry.conversation_id)
        if pending is None:
            await repo.transition(entry.id, {"status": "waiting"}, from_status="processing")
            log_event(logger, "queue.entry_released", entry_id=entry.id, conversation_id=entry.conversation_id)
            return
        # Se abrió otra ventana mientras estaba reclamada: los textos reclamados van delante.
        await repo.transition(
            pending.id,
            {"messages_content": [*entry.messages_content, *pending.messages_content]},
            from_status="waiting",
        )
        await repo.transition(
            entry.id,
            {"status": "skipped", "processed_at": iso(now or utcnow()), "last_error": f"merged_into:{pending.id}"},
            from_status="processing",
        )
        log_event(
            logger,
            "queue.entry_released",
            entry_id=entry.id,
            conversation_id=entry.conversation_id,
            merged_into=pending.id,
        )

    async def discard(self, entry_id: str) -> None:
        await self._store.queue.delete(entry_id)

    async def cleanup(self, *, now: datetime | None = None) -> CleanupReport:
        """Reaper: retira terminados, decide reintentos de errores y libera entradas atascadas."""
        now = now or utcnow()
        cfg = self._settings
        repo = self._store.queue
        report = CleanupReport()

        report.deleted = await repo.delete_processed_before(
            _RETIRED_STATUSES, now - timedelta(hours=cfg.queue_retention_hours)
        )

        for entry in await repo.list_by_status(("waiting",)):
            if await self._store.conversations.get(entry.conversation_id) is None:
                await repo.transition(
                    entry.id,
                    {"status": "failed", "processed_at": iso(now), "last_error": "conversation_not_found"},
                    from_status="waiting",
                )
                report.orphaned += 1

        for entry in await repo.list_by_status(("error",)):
            if entry.retry_count >= entry.max_retries:
                await repo.transition(
                    entry.id, {"status": "failed", "processed_at": iso(now)}, from_status="error"
                )
                report.gave_up += 1
                await self._store.system_logs.record(
                    "error",
                    "queue_cleanup",
                    "Entrada de fila descartada após esgotar tentativas",
                    {"entry_id": entry.id, "conversation_id": entry.conversation_id, "last_error": entry.last_error},
                )
                continue
            pending = await repo.find_waiting(entry.conversation_id)
            if pending is not None:
                # Una sola ventana abierta: los textos fallidos van delante de los nuevos.
                await repo.transition(
                    pending.id,
                    {"messages_content": [*entry.messages_content, *pending.messages_content]},
                    from_status="waiting",
                )
                await repo.transition(
                    entry.id,
                    {"status": "skipped", "processed_at": iso(now), "last_error": f"merged_into:{pending.id}"},
                    from_status="error",
                )
                report.rescheduled += 1
                continue
            backoff = cfg.queue_retry_backoff_seconds * (2**entry.retry_count)
            await repo.transition(
                entry.id,
                {
                    "status": "waiting",
                    "retry_count": entry.retry_count + 1,
                    "scheduled_for": iso(now + timedelta(seconds=backoff)),
                    "processed_at": None,
                },
                from_status="error",
            )
            report.rescheduled += 1

        stuck_before = now - timedelta(hours=cfg.queue_stuck_hours)
        for entry in await repo.list_by_status(("processing",), column="scheduled_for", before=stuck_before):
            await repo.transition(
                entry.id,
                {"status": "waiting", "scheduled_for": iso(now), "last_error": "processing_timeout"},
                from_status="processing",
            )
            report.unstuck += 1

        report.stats = await repo.count_by_status()
        log_event(logger, "queue.cleanup_completed", **report.as_dict())
        return report
