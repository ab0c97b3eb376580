"""Repositorio de conversaciones y mensajes."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from leadrouter.models.conversation import Channel, Conversation, Message
from leadrouter.repositories.base import RepositoryError, SupabaseRepository, eq, in_, iso, utcnow


class ConversationsRepository(SupabaseRepository):
    table = "conversations"

    async def get(self, conversation_id: str) -> Conversation | None:
        row = await self._first({"id": eq(conversation_id)})
        return Conversation.model_validate(row) if row else None

    async def find_by_phone(self, phone_number: str, channel: Channel) -> Conversation | None:
        """Conversación vigente para el par (teléfono, canal); la más reciente gana."""
        row = await self._first(
            {"phone_number": eq(phone_number), "channel": eq(channel)},
            order="created_at.desc",
        )
        return Conversation.model_validate(row) if row else None

    async def create(
        self,
        *,
        phone_number: str,
        channel: Channel,
        customer_name: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation:
        now = iso(utcnow())
        row = await self._insert(
            {
                "phone_number": phone_number,
                "channel": channel,
                "customer_name": customer_name,
                "status": "bot_attending",
                "fallback_mode": False,
                "fallback_taken_by": None,
                "assigned_seller_id": None,
                "assigned_operator_id": None,
                "metadata": metadata or {},
                "created_at": now,
                "updated_at": now,
            }
        )
        return Conversation.model_validate(row)

    async def update(self, conversation_id: str, patch: dict[str, Any]) -> Conversation:
        updated = await self.update_if(conversation_id, patch)
        if updated is None:
            raise RepositoryError(f"Conversación {conversation_id} no encontrada")
        return updated

    async def update_if(
        self,
        conversation_id: str,
        patch: dict[str, Any],
        *,
        expect: Mapping[str, Any] | None = None,
    ) -> Conversation | None:
        """Actualiza sólo si las columnas de `expect` siguen con el valor leído.

        Devuelve `None` cuando otra escritura ganó la carrera (0 filas afectadas).
        """
        filters = {"id": eq(conversation_id)}
        for column, value in (expect or {}).items():
            if isinstance(value, (list, tuple)):
                filters[column] = in_(list(value))
            else:
                filters[column] = eq(value)
        rows = await self._update(filters, {**patch, "updated_at": iso(utcnow())})
        return Conversation.model_validate(rows[0]) if rows else None

    async def list_by_status(
        self,
        status: str,
        *,
        fallback_mode: bool | None = False,
        updated_before: datetime | None = None,
        limit: int = 50,
    ) -> list[Conversation]:
        params = {"status": eq(status)}
        if fallback_mode is not None:
            params["fallback_mode"] = eq(fallback_mode)
        if updated_before is not None:
            params["updated_at"] = f"lt.{iso(updated_before)}"
        rows = await self._select(params, order="updated_at.asc", limit=limit)
        return [Conversation.model_validate(row) for row in rows]


class MessagesRepository(SupabaseRepository):
    table = "messages"

    async def create(
        self,
        *,
        conversation_id: str,
        sender_type: str,
        content: str,
        message_type: str = "text",
        sender_name: str | None = None,
        media_url: str | None = None,
        message_source: Channel | None = None,
        whatsapp_message_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        row = await self._insert(
            {
                "conversation_id": conversation_id,
                "sender_type": sender_type,
                "sender_name": sender_name,
                "content": content,
                "message_type": message_type,
                "media_url": media_url,
                "message_source": message_source,
                "whatsapp_message_id": whatsapp_message_id,
                "metadata": metadata or {},
                "created_at": iso(utcnow()),
            }
        )
        return Message.model_validate(row)

    async def list_for_conversation(self, conversation_id: str, *, limit: int | None = None) -> list[Message]:
        """Transcript en orden de creación (orden autoritativo)."""
        rows = await self._select(
            {"conversation_id": eq(conversation_id)}, order="created_at.asc", limit=limit
        )
        return [Message.model_validate(row) for row in rows]

    async def last_from(self, conversation_id: str, sender_type: str) -> Message | None:
        row = await self._first(
            {"conversation_id": eq(conversation_id), "sender_type": eq(sender_type)},
            order="created_at.desc",
        )
        return Message.model_validate(row) if row else None

    async def exists_external_id(self, whatsapp_message_id: str) -> bool:
        row = await self._first({"whatsapp_message_id": eq(whatsapp_message_id)})
        return row is not None

    async def update_status(self, whatsapp_message_id: str, status: str) -> int:
        rows = await self._update({"whatsapp_message_id": eq(whatsapp_message_id)}, {"status": status})
        return len(rows)
