"""Repositorio de la tabla `message_queue` (ventanas de debounce)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from leadrouter.models.conversation import OPEN_QUEUE_STATUSES, QueueEntry
from leadrouter.repositories.base import SupabaseRepository, eq, in_, iso, utcnow


class MessageQueueRepository(SupabaseRepository):
    table = "message_queue"

    async def get(self, entry_id: str) -> QueueEntry | None:
        row = await self._first({"id": eq(entry_id)})
        return QueueEntry.model_validate(row) if row else None

    async def find_waiting(self, conversation_id: str) -> QueueEntry | None:
        row = await self._first(
            {"conversation_id": eq(conversation_id), "status": eq("waiting")},
            order="created_at.asc",
        )
        return QueueEntry.model_validate(row) if row else None

    async def has_outstanding(self, conversation_id: str) -> bool:
        """Ventanas abiertas o en curso, y errores que el reaper todavía reintentará."""
        rows = await self._select(
            {"conversation_id": eq(conversation_id), "status": in_((*OPEN_QUEUE_STATUSES, "error"))},
            columns="status,retry_count,max_retries",
        )
        return any(
            row.get("status") != "error" or int(row.get("retry_count") or 0) < int(row.get("max_retries") or 0)
            for row in rows
        )

    async def has_processing(self, conversation_id: str) -> bool:
        row = await self._first(
            {"conversation_id": eq(conversation_id), "status": eq("processing")}
        )
        return row is not None

    async def create(
        self,
        *,
        conversation_id: str,
        text: str,
        scheduled_for: datetime,
        max_retries: int,
    ) -> QueueEntry:
        row = await self._insert(
            {
                "conversation_id": conversation_id,
                "messages_content": [text],
                "status": "waiting",
                "scheduled_for": iso(scheduled_for),
                "retry_count": 0,
                "max_retries": max_retries,
                "created_at": iso(utcnow()),
            }
        )
        return QueueEntry.model_validate(row)

    async def append(
        self, entry: QueueEntry, text: str, *, scheduled_for: datetime
    ) -> QueueEntry | None:
        """Agrega texto a una ventana abierta; `None` si el procesador ya la tomó."""
        rows = await self._update(
            {"id": eq(entry.id), "status": eq("waiting")},
            {
                "messages_content": [*entry.messages_content, text],
                "scheduled_for": iso(scheduled_for),
            },
        )
        return QueueEntry.model_validate(rows[0]) if rows else None

    async def list_due(self, now: datetime, *, limit: int) -> list[QueueEntry]:
        rows = await self._select(
            {"status": eq("waiting"), "scheduled_for": f"lte.{iso(now)}"},
            order="scheduled_for.asc,created_at.asc",
            limit=limit,
        )
        return [QueueEntry.model_validate(row) for row in rows]

    async def transition(
        self, entry_id: str, patch: dict[str, Any], *, from_status: str | tuple[str, ...]
    ) -> QueueEntry | None:
        """Cambia el estado sólo si la entrada sigue en `from_status`."""
        expected = in_(from_status) if isinstance(from_status, tuple) else eq(from_status)
        rows = await self._update({"id": eq(entry_id), "status": expected}, patch)
        return QueueEntry.model_validate(rows[0]) if rows else None

    async def delete(self, entry_id: str) -> int:
        return await self._delete({"id": eq(entry_id)})

    async def list_by_status(
        self,
        statuses: tuple[str, ...],
        *,
        column: str | None = None,
        before: datetime | None = None,
        limit: int = 500,
    ) -> list[QueueEntry]:
        params = {"status": in_(statuses)}
        if column and before is not None:
            params[column] = f"lt.{iso(before)}"
        rows = await self._select(params, order="created_at.asc", limit=limit)
        return [QueueEntry.model_validate(row) for row in rows]

    async def delete_processed_before(self, statuses: tuple[str, ...], before: datetime) -> int:
        return await self._delete({"status": in_(statuses), "processed_at": f"lt.{iso(before)}"})

    async def count_by_status(self) -> dict[str, int]:
        rows = await self._select({}, columns="status", limit=None)
        counts: dict[str, int] = {}
        for row in rows:
            status = str(row.get("status"))
            counts[status] = counts.get(status, 0) + 1
        return counts
