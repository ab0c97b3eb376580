"""Esquemas Pydantic para el webhook de WhatsApp Business (Meta Cloud API)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Profile(_Payload):
    name: str | None = None


class Contact(_Payload):
    wa_id: str | None = None
    profile: Profile | None = None


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


class Reaction(_Payload):
    emoji: str | None = None
    message_id: str | None = None


class WhatsAppMessage(_Payload):
    """Mensaje entrante tal como lo envía Meta en `value.messages[]`."""

    id: str
    from_: str = Field(alias="from")
    type: str = "text"
    timestamp: str | None = None
    text: TextBody | None = None
    image: Media | None = None
    audio: Media | None = None
    voice: Media | None = None
    video: Media | None = None
    document: Media | None = None
    location: Location | None = None
    reaction: Reaction | None = None


class StatusError(_Payload):
    code: int | None = None
    title: str | None = None


class WhatsAppStatus(_Payload):
    """Callback de estado de un mensaje saliente."""

    id: str
    status: str
    recipient_id: str | None = None
    timestamp: str | None = None
    errors: list[StatusError] = Field(default_factory=list)


class ChangeValue(_Payload):
    messaging_product: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    contacts: list[Contact] = Field(default_factory=list)
    messages: list[WhatsAppMessage] = Field(default_factory=list)
    statuses: list[WhatsAppStatus] = Field(default_factory=list)


class Change(_Payload):
    field: str | None = None
    value: ChangeValue = Field(default_factory=ChangeValue)


class Entry(_Payload):
    id: str | None = None
    changes: list[Change] = Field(default_factory=list)


class WebhookPayload(_Payload):
    object: str | None = None
    entry: list[Entry] = Field(default_factory=list)


class WebhookAck(BaseModel):
    status: str = "accepted"
    messages: int = 0
    queued: int = 0
    rejected: int = 0
    statuses: int = 0
