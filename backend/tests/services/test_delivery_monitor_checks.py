"""Pruebas del monitor de entregas."""

from datetime import timedelta

import pytest

from leadrouter.repositories.base import utcnow
from leadrouter.services.delivery_monitor import (
    MISSING_ID_MESSAGE,
    STALE_MESSAGE,
    DeliveryLogNotFoundError,
    DeliveryMonitor,
    DeliveryMonitorError,
    map_status,
)


@pytest.fixture(name="monitor")
def fixture_monitor(store, settings, dispatcher) -> DeliveryMonitor:
    return DeliveryMonitor(store, settings=settings, dispatcher=dispatcher)


@pytest.fixture(name="seed_log")
def fixture_seed_log(supabase):
    def seed(**overrides):
        values = {
            "direction": "outbound",
            "channel": "gateway",
            "phone_to": "5551988887777",
            "content": "Novo lead",
            "message_type": "text",
            "message_id": "wa-77",
            "status": "sent",
            "token_alias": "relay",
            "retry_count": 0,
            "metadata": {},
        }
        values.update(overrides)
        return supabase.seed("delivery_logs", **values)

    return seed


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("sent", "pending"), ("device", "delivered"), ("played", "read"), ("deleted", "failed"), (None, "pending")],
)
def test_map_status(raw, expected) -> None:
    assert map_status(raw) == expected


async def test_gateway_status_is_polled_with_log_credential(monitor, supabase, seed_log, whapi) -> None:
    log = seed_log()
    whapi.statuses["wa-77"] = "delivered"

    status = await monitor.check_status(log["id"])

    assert status == "delivered"
    row = supabase.get("delivery_logs", log["id"])
    assert row["status"] == "delivered"
    assert row["metadata"]["transport_status"] == "delivered"
    assert "last_checked_at" in row["metadata"]


async def test_missing_transport_id_fails(monitor, supabase, seed_log) -> None:
    log = seed_log(message_id=None)

    assert await monitor.check_status(log["id"]) == "failed"
    assert supabase.get("delivery_logs", log["id"])["error_message"] == MISSING_ID_MESSAGE
    assert supabase.find("system_logs", source="delivery_monitor")


async def test_stale_pending_log_becomes_failed(monitor, supabase, seed_log) -> None:
    log = seed_log(channel="official", token_alias="official", message_id="wamid.1", status="pending")

    assert await monitor.check_status(log["id"]) == "pending"
    status = await monitor.check_status(log["id"], now=utcnow() + timedelta(minutes=20))

    assert status == "failed"
    assert supabase.get("delivery_logs", log["id"])["error_message"] == STALE_MESSAGE


async def test_transport_error_keeps_status(monitor, supabase, seed_log, whapi) -> None:
    log = seed_log(status="delivered")
    whapi.status_error = True

    assert await monitor.check_status(log["id"]) == "delivered"
    assert "last_check_error" in supabase.get("delivery_logs", log["id"])["metadata"]


async def test_status_never_regresses(monitor, seed_log, whapi) -> None:
    log = seed_log(status="delivered")
    whapi.statuses["wa-77"] = "sent"

    assert await monitor.check_status(log["id"]) == "delivered"


async def test_final_status_is_not_polled(monitor, seed_log, whapi) -> None:
    log = seed_log(status="read")
    whapi.status_error = True

    assert await monitor.check_status(log["id"]) == "read"


async def test_check_pending_counts_results(monitor, seed_log, whapi) -> None:
    seed_log(message_id="wa-1")
    seed_log(message_id="wa-2")
    seed_log(message_id="wa-3", status="read")
    whapi.statuses.update({"wa-1": "read", "wa-2": "sent"})

    counts = await monitor.check_pending()

    assert counts == {"checked": 2, "read": 1, "pending": 1}


async def test_retry_creates_linked_log(monitor, supabase, seed_log, whapi) -> None:
    original = seed_log(status="failed", error_message="gateway down")

    new_log = await monitor.retry_failed(original["id"])

    assert new_log.retry_of == original["id"]
    assert new_log.retry_count == 1
    assert new_log.content == "[Reenvio] Novo lead"
    assert new_log.status == "sent"
    assert new_log.metadata["original_error"] == "gateway down"
    assert whapi.sent[-1]["token"] == "relay-token"
    assert supabase.get("delivery_logs", original["id"])["status"] == "failed"

    again = await monitor.retry_failed(new_log.id, force=True)
    assert again.content == "[Reenvio] Novo lead"
    assert again.retry_count == 2


async def test_retry_rules(monitor, seed_log, whapi) -> None:
    with pytest.raises(DeliveryMonitorError):
        await monitor.retry_failed(seed_log(status="delivered")["id"])
    with pytest.raises(DeliveryMonitorError):
        await monitor.retry_failed(seed_log(status="failed", retry_count=3)["id"])
    with pytest.raises(DeliveryLogNotFoundError):
        await monitor.retry_failed("missing")

    whapi.failing_tokens = {"relay-token"}
    failed_again = await monitor.retry_failed(seed_log(status="failed")["id"])
    assert failed_again.status == "failed"


async def test_retry_uses_seller_credential(monitor, seed_log, seed_seller, whapi) -> None:
    seller = seed_seller(whapi_token="seller-token")
    original = seed_log(status="failed", token_alias="seller", seller_id=seller["id"])

    await monitor.retry_failed(original["id"])

    assert whapi.sent[-1]["token"] == "seller-token"


async def test_status_event_updates_message_and_log(monitor, supabase, seed_log) -> None:
    log = seed_log(channel="official", message_id="wamid.9")
    supabase.seed("messages", conversation_id="conv-1", sender_type="bot", content="oi", whatsapp_message_id="wamid.9")

    assert await monitor.apply_status_event("wamid.9", "read") is True
    assert supabase.get("delivery_logs", log["id"])["status"] == "read"
    assert supabase.find("messages", whatsapp_message_id="wamid.9")[0]["status"] == "read"

    await monitor.apply_status_event("wamid.9", "delivered")
    assert supabase.get("delivery_logs", log["id"])["status"] == "read"

    await monitor.apply_status_event("wamid.9", "failed", error="Message undeliverable")
    row = supabase.get("delivery_logs", log["id"])
    assert row["status"] == "failed"
    assert row["error_message"] == "Message undeliverable"

    assert await monitor.apply_status_event("unknown", "read") is False
