"""Repositorios de registros: entregas salientes, auditoría y roles."""

from __future__ import annotations

from typing import Any

from leadrouter.core.logging import get_logger
from leadrouter.models.lead import DeliveryLog
from leadrouter.repositories.base import RepositoryError, SupabaseRepository, eq, in_, iso, utcnow

logger = get_logger(__name__)


class DeliveryLogsRepository(SupabaseRepository):
    table = "delivery_logs"

    async def get(self, log_id: str) -> DeliveryLog | None:
        row = await self._first({"id": eq(log_id)})
        return DeliveryLog.model_validate(row) if row else None

    async def find_by_message_id(self, message_id: str) -> DeliveryLog | None:
        row = await self._first({"message_id": eq(message_id)}, order="created_at.desc")
        return DeliveryLog.model_validate(row) if row else None

    async def create(self, payload: dict[str, Any]) -> DeliveryLog:
        now = iso(utcnow())
        row = await self._insert({"created_at": now, "updated_at": now, **payload})
        return DeliveryLog.model_validate(row)

    async def update(self, log_id: str, patch: dict[str, Any]) -> DeliveryLog | None:
        rows = await self._update({"id": eq(log_id)}, {**patch, "updated_at": iso(utcnow())})
        return DeliveryLog.model_validate(rows[0]) if rows else None

    async def list_unconfirmed(self, *, limit: int) -> list[DeliveryLog]:
        rows = await self._select(
            {"direction": eq("outbound"), "status": in_(("sent", "pending"))},
            order="created_at.asc",
            limit=limit,
        )
        return [DeliveryLog.model_validate(row) for row in rows]

    async def list_retries_of(self, log_id: str) -> list[DeliveryLog]:
        rows = await self._select({"retry_of": eq(log_id)}, order="created_at.asc")
        return [DeliveryLog.model_validate(row) for row in rows]


class SystemLogsRepository(SupabaseRepository):
    """Auditoría durable para remediación por operadores (`system_logs`)."""

    table = "system_logs"

    async def record(
        self,
        type_: str,
        source: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        try:
            await self._insert(
                {
                    "type": type_,
                    "source": source,
                    "message": message,
                    "details": details or {},
                    "created_at": iso(utcnow()),
                }
            )
        except RepositoryError:
            # La auditoría no debe tumbar la operación principal; queda en el log JSON.
            logger.exception(
                "system_logs.write_failed", extra={"type": type_, "source": source, "details": details}
            )


class UserRolesRepository(SupabaseRepository):
    table = "user_roles"

    async def roles_for(self, user_id: str) -> list[str]:
        rows = await self._select({"user_id": eq(user_id)}, columns="role")
        return [str(row["role"]) for row in rows if row.get("role")]
