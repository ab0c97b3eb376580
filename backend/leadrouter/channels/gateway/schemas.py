"""Esquemas Pydantic para el webhook del gateway (Whapi Cloud)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TextBody(_Payload):
    body: str = ""


class Media(_Payload):
    id: str | None = None
    link: str | None = None
    mime_type: str | None = None
    filename: str | None = None
    caption: str | None = None


class Location(_Payload):
    latitude: float | None = None
    longitude: float | None = None
    name: str | None = None
    address: str | None = None


class Reaction(_Payload):
    emoji: str | None = None
    message_id: str | None = None


class GatewayMessage(_Payload):
    id: str
    from_me: bool = False
    type: str = "text"
    chat_id: str
    timestamp: int | None = None
    source: str | None = None
    from_: str | None = Field(default=None, alias="from")
    from_name: str | None = None
    text: TextBody | None = None
    image: Media | None = None
    video: Media | None = None
    audio: Media | None = None
    voice: Media | None = None
    document: Media | None = None
    location: Location | None = None
    reaction: Reaction | None = None


class GatewayStatus(_Payload):
    id: str
    status: str
    recipient_id: str | None = None
    timestamp: int | str | None = None


class EventInfo(_Payload):
    type: str | None = None
    event: str | None = None


class WebhookPayload(_Payload):
    messages: list[GatewayMessage] = Field(default_factory=list)
    statuses: list[GatewayStatus] = Field(default_factory=list)
    event: EventInfo | None = None
    channel_id: str | None = None


class WebhookAck(BaseModel):
    status: str = "accepted"
    messages: int = 0
    queued: int = 0
    ignored: int = 0
    rejected: int = 0
    statuses: int = 0
