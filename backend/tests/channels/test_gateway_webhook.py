"""Cobertura del webhook del gateway (Whapi)."""

from httpx import AsyncClient

from leadrouter.api import deps
from leadrouter.channels.gateway.schemas import GatewayMessage
from leadrouter.channels.gateway.service import is_group_chat, message_content, to_inbound


def _message(**overrides) -> dict:
    message = {
        "id": "gw-in-1",
        "from_me": False,
        "type": "text",
        "chat_id": "555197519607@s.whatsapp.net",
        "from": "555197519607",
        "from_name": "Maria",
        "source": "mobile",
        "text": {"body": "Tem o sofá em cinza?"},
    }
    message.update(overrides)
    return message


def test_group_chats_are_detected() -> None:
    assert is_group_chat("120363025@g.us")
    assert is_group_chat("555199999999-1610000000")
    assert not is_group_chat("555197519607@s.whatsapp.net")


def test_media_messages_keep_link() -> None:
    message = GatewayMessage.model_validate(
        _message(type="image", image={"link": "https://cdn.example/img.jpg"}, text=None)
    )
    assert message_content(message) == ("[Imagem]", "image", "https://cdn.example/img.jpg")


def test_from_me_maps_to_seller_sender() -> None:
    inbound = to_inbound(GatewayMessage.model_validate(_message(from_me=True, **{"from": "555188887777"})))
    assert inbound.sender_type == "seller"
    assert inbound.customer_name is None
    assert inbound.author_phone == "555188887777"


async def test_customer_message_restores_mobile_digit(async_client: AsyncClient, supabase) -> None:
    response = await async_client.post("/api/gateway/webhook", json={"messages": [_message()]})

    assert response.status_code == 200
    assert response.json()["queued"] == 1
    [conversation] = supabase.rows("conversations")
    assert conversation["phone_number"] == "5551997519607"
    assert conversation["channel"] == "gateway"


async def test_group_messages_are_ignored(async_client: AsyncClient, supabase) -> None:
    response = await async_client.post(
        "/api/gateway/webhook", json={"messages": [_message(chat_id="120363025@g.us")]}
    )

    assert response.json()["ignored"] == 1
    assert supabase.rows("messages") == []


async def test_api_echo_is_ignored(async_client: AsyncClient, supabase, seed_conversation) -> None:
    conversation = seed_conversation()
    supabase.seed("delivery_logs", channel="gateway", phone_to="5551997519607", message_id="wa-5", status="sent")

    response = await async_client.post(
        "/api/gateway/webhook",
        json={
            "messages": [
                _message(id="wa-5", from_me=True, source="mobile"),
                _message(id="wa-6", from_me=True, source="api"),
            ]
        },
    )

    assert response.json()["ignored"] == 2
    assert supabase.get("conversations", conversation["id"])["fallback_mode"] is False


async def test_human_reply_from_attended_number_takes_over(
    async_client: AsyncClient, supabase, seed_conversation, seed_seller
) -> None:
    conversation = seed_conversation()
    seller = seed_seller()

    response = await async_client.post(
        "/api/gateway/webhook",
        json={"messages": [_message(id="gw-out-1", from_me=True, **{"from": "555188887777"})]},
    )

    assert response.json()["queued"] == 0
    row = supabase.get("conversations", conversation["id"])
    assert row["fallback_mode"] is True
    assert row["fallback_taken_by"] == seller["id"]
    [message] = supabase.rows("messages")
    assert message["sender_type"] == "seller"


async def test_status_events_are_applied(async_client: AsyncClient, supabase) -> None:
    log = supabase.seed("delivery_logs", channel="gateway", phone_to="5551997519607", message_id="wa-9", status="sent")

    response = await async_client.post(
        "/api/gateway/webhook", json={"statuses": [{"id": "wa-9", "status": "read"}]}
    )

    assert response.json()["statuses"] == 1
    assert supabase.get("delivery_logs", log["id"])["status"] == "read"


async def test_webhook_token_is_checked_when_configured(async_client: AsyncClient, app, settings) -> None:
    app.dependency_overrides[deps.get_settings] = lambda: settings.model_copy(
        update={"gateway_webhook_token": "gw-secret"}
    )

    denied = await async_client.post("/api/gateway/webhook", json={"messages": []})
    allowed = await async_client.post("/api/gateway/webhook?token=gw-secret", json={"messages": []})

    assert denied.status_code == 403
    assert allowed.status_code == 200
