"""Modelos de leads, vendedores y registros de entrega."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import Field, field_validator

from leadrouter.models.conversation import Channel, Record

LeadStatus = Literal["attending", "sold", "lost"]
DeliveryStatus = Literal["sent", "pending", "delivered", "read", "failed"]
TokenAlias = Literal["relay", "customer", "seller", "official"]


class Lead(Record):
    id: str
    conversation_id: str
    customer_name: str | None = None
    phone_number: str | None = None
    seller_id: str
    summary: str = ""
    reason: str | None = None
    status: LeadStatus = "attending"
    generated_sale: bool = False
    sale_value: float | None = None
    product_interest: str | None = None
    sent_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class Seller(Record):
    """Vendedor con referencia a su credencial de transporte y métricas operativas."""

    id: str
    name: str
    phone_number: str
    active: bool = True
    deleted: bool = False
    current_workload: int = 0
    max_concurrent_leads: int | None = None
    conversion_rate: float = 0.0
    performance_score: float = 0.0
    specialties: list[str] = Field(default_factory=list)
    auto_first_message: bool = False
    whapi_token: str | None = None

    @field_validator("specialties", mode="before")
    @classmethod
    def _specialties_list(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []

    @property
    def has_capacity(self) -> bool:
        if self.max_concurrent_leads is None:
            return True
        return self.current_workload < self.max_concurrent_leads


class DeliveryLog(Record):
    """Un intento de envío saliente y su estado según el transporte."""

    id: str
    direction: Literal["outbound", "inbound"] = "outbound"
    channel: Channel = "gateway"
    phone_from: str | None = None
    phone_to: str
    content: str = ""
    message_type: str = "text"
    media_url: str | None = None
    message_id: str | None = None
    status: DeliveryStatus = "pending"
    error_message: str | None = None
    token_alias: TokenAlias = "customer"
    seller_id: str | None = None
    conversation_id: str | None = None
    retry_of: str | None = None
    retry_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
