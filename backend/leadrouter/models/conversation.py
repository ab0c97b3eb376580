"""Modelos base para conversaciones, mensajes y la cola de procesamiento."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ConversationStatus = Literal[
    "bot_attending",
    "waiting_evaluation",
    "qualified_for_transfer",
    "sent_to_seller",
    "finished",
]
Channel = Literal["official", "gateway"]
SenderType = Literal["customer", "bot", "seller", "system"]
MessageType = Literal["text", "image", "audio", "video", "document", "location", "reaction"]
QueueStatus = Literal["waiting", "processing", "sent", "skipped", "error", "failed"]

OPEN_QUEUE_STATUSES: tuple[str, ...] = ("waiting", "processing")


class Record(BaseModel):
    """Base para filas de Supabase: ignora columnas que no usamos."""

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _metadata_default(cls, data: Any) -> Any:
        if isinstance(data, dict) and "metadata" in data and not isinstance(data["metadata"], dict):
            data = {**data, "metadata": {}}
        return data


class Conversation(Record):
    """Una conversación por (teléfono del cliente, canal)."""

    id: str
    phone_number: str
    customer_name: str | None = None
    channel: Channel = "official"
    status: ConversationStatus = "bot_attending"
    fallback_mode: bool = False
    fallback_taken_by: str | None = None
    assigned_seller_id: str | None = None
    assigned_operator_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def bot_is_authoritative(self) -> bool:
        return self.status == "bot_attending" and not self.fallback_mode

    @property
    def engine_conversation_id(self) -> str | None:
        value = self.metadata.get("engine_conversation_id")
        return str(value) if value else None


class Message(Record):
    """Unidad de contenido dentro de una conversación (append-only)."""

    id: str
    conversation_id: str
    sender_type: SenderType
    sender_name: str | None = None
    content: str = ""
    message_type: MessageType = "text"
    media_url: str | None = None
    message_source: Channel | None = None
    whatsapp_message_id: str | None = None
    status: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class QueueEntry(Record):
    """Ventana de debounce abierta o cerrada para una conversación."""

    id: str
    conversation_id: str
    messages_content: list[str] = Field(default_factory=list)
    status: QueueStatus = "waiting"
    scheduled_for: datetime
    processed_at: datetime | None = None
    retry_count: int = 0
    max_retries: int = 3
    last_error: str | None = None
    created_at: datetime | None = None

    @field_validator("messages_content", mode="before")
    @classmethod
    def _content_list(cls, value: Any) -> Any:
        return value if value is not None else []

    def joined_text(self, separator: str = "\n") -> str:
        """Une los textos acumulados en orden de llegada, descartando vacíos."""
        parts = [part.strip() for part in self.messages_content if part and part.strip()]
        return separator.join(parts)
