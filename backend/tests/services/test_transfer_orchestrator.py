"""Pruebas del orquestador de traspaso a vendedores."""

from types import SimpleNamespace

import pytest
from openai import OpenAIError

from leadrouter.models.conversation import Conversation
from leadrouter.models.lead import Seller
from leadrouter.services import openai as openai_service
from leadrouter.services.seller_matching import LeadCriteria, LeastWorkloadMatcher
from leadrouter.services.transfer import LeadNotFoundError, TransferError, TransferOrchestrator, seller_notification


@pytest.fixture(name="orchestrator")
def fixture_orchestrator(store, settings, dispatcher) -> TransferOrchestrator:
    return TransferOrchestrator(store, settings=settings, dispatcher=dispatcher)


def _qualified(seed_conversation, **overrides):
    return seed_conversation(
        status="qualified_for_transfer",
        metadata={
            "evaluation": {
                "summary": "- Cliente: Maria\n- Sinais de compra: preço",
                "reason": "qualified_lead",
                "matched_keywords": ["preço"],
            }
        },
        **overrides,
    )


async def test_process_qualified_creates_lead_and_notifies_seller(
    orchestrator, supabase, seed_conversation, seed_seller, whapi
) -> None:
    conversation = _qualified(seed_conversation)
    seller = seed_seller()

    counts = await orchestrator.process_qualified()

    assert counts == {"transferred": 1, "notified": 1, "failed": 0}
    [lead] = supabase.rows("leads")
    assert lead["seller_id"] == seller["id"]
    assert lead["status"] == "attending"
    assert lead["sent_at"] is not None
    assert lead["metadata"]["notification_status"] == "sent"
    assert supabase.get("sellers", seller["id"])["current_workload"] == 1

    row = supabase.get("conversations", conversation["id"])
    assert row["status"] == "sent_to_seller"
    assert row["assigned_seller_id"] == seller["id"]

    [notification] = whapi.sent
    assert notification["token"] == "relay-token"
    assert notification["to"] == "555188887777@s.whatsapp.net"
    assert "NOVO LEAD RECEBIDO" in notification["body"]
    assert "+55 (51) 99751-9607" in notification["body"]
    [log] = supabase.rows("delivery_logs")
    assert log["token_alias"] == "relay"
    assert log["metadata"]["lead_id"] == lead["id"]


async def test_notification_failure_keeps_lead_and_conversation(
    orchestrator, supabase, seed_conversation, seed_seller, whapi
) -> None:
    conversation = _qualified(seed_conversation)
    seed_seller()
    whapi.failing_tokens = {"relay-token"}

    result = await orchestrator.transfer(conversation["id"], "resumo", "qualified_lead")

    assert result.notified is False
    assert result.delivery_log_id is not None
    lead = supabase.get("leads", result.lead.id)
    assert lead["status"] == "attending"
    assert lead["metadata"]["notification_status"] == "failed"
    assert lead["metadata"]["notification_attempts"] == 1
    assert supabase.get("conversations", conversation["id"])["status"] == "sent_to_seller"
    assert supabase.get("delivery_logs", result.delivery_log_id)["status"] == "failed"

    whapi.failing_tokens.clear()
    retried = await orchestrator.retry_notification(result.lead.id)

    assert retried.notified is True
    lead = supabase.get("leads", result.lead.id)
    assert lead["metadata"]["notification_status"] == "sent"
    assert lead["metadata"]["notification_attempts"] == 2
    assert len(supabase.rows("leads")) == 1


async def test_transfer_is_idempotent_per_conversation(
    orchestrator, supabase, seed_conversation, seed_seller
) -> None:
    conversation = _qualified(seed_conversation)
    seller = seed_seller()

    await orchestrator.transfer(conversation["id"], "resumo", "qualified_lead")
    await orchestrator.transfer(conversation["id"], "resumo", "qualified_lead")

    assert len(supabase.rows("leads")) == 1
    assert supabase.get("sellers", seller["id"])["current_workload"] == 1


async def test_reassignment_closes_previous_lead(orchestrator, supabase, seed_conversation, seed_seller) -> None:
    conversation = _qualified(seed_conversation)
    first = seed_seller()
    second = seed_seller(name="Ana", phone_number="5551977776666")

    await orchestrator.transfer(conversation["id"], "resumo", "qualified_lead", seller_id=first["id"])
    await orchestrator.transfer(conversation["id"], "resumo", "manual", seller_id=second["id"], actor_id="manager-1")

    statuses = {row["seller_id"]: row["status"] for row in supabase.rows("leads")}
    assert statuses == {first["id"]: "lost", second["id"]: "attending"}
    assert supabase.get("conversations", conversation["id"])["assigned_seller_id"] == second["id"]
    assert supabase.get("sellers", first["id"])["current_workload"] == 0
    assert supabase.get("sellers", second["id"])["current_workload"] == 1


async def test_manual_transfer_clears_fallback(orchestrator, supabase, seed_conversation, seed_seller) -> None:
    conversation = seed_conversation(fallback_mode=True, fallback_taken_by="operator-1")
    seed_seller()

    await orchestrator.transfer(conversation["id"], "resumo", "manual", actor_id="operator-1")

    row = supabase.get("conversations", conversation["id"])
    assert row["status"] == "sent_to_seller"
    assert row["fallback_mode"] is False
    assert row["fallback_taken_by"] is None


async def test_transfer_without_sellers_changes_nothing(orchestrator, supabase, seed_conversation) -> None:
    conversation = _qualified(seed_conversation)

    with pytest.raises(TransferError):
        await orchestrator.transfer(conversation["id"], "resumo", "qualified_lead")

    assert supabase.rows("leads") == []
    assert supabase.get("conversations", conversation["id"])["status"] == "qualified_for_transfer"


async def test_finished_conversation_cannot_be_transferred(orchestrator, seed_conversation, seed_seller) -> None:
    conversation = seed_conversation(status="finished")
    seed_seller()

    with pytest.raises(TransferError):
        await orchestrator.transfer(conversation["id"], "resumo", "manual")


async def test_auto_first_message_goes_to_customer(orchestrator, supabase, seed_conversation, seed_seller, whapi) -> None:
    conversation = _qualified(seed_conversation)
    seed_seller(auto_first_message=True)

    result = await orchestrator.transfer(conversation["id"], "resumo", "qualified_lead", product_interest="sofá")

    assert result.first_message_sent is True
    customer_send = whapi.sent[-1]
    assert customer_send["token"] == "customer-token"
    assert customer_send["to"] == "555197519607@s.whatsapp.net"
    assert "Carlos" in customer_send["body"]
    assert "sofá" in customer_send["body"]
    [seller_message] = supabase.find("messages", sender_type="seller")
    assert seller_message["metadata"]["auto_first_message"] is True


def _chat_client(content: str | None = None, error: Exception | None = None):
    calls = []

    async def create(**kwargs):
        calls.append(kwargs)
        if error is not None:
            raise error
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create))), calls


async def test_first_message_uses_injected_settings_for_model(
    store, settings, dispatcher, seed_conversation, seed_seller, whapi
) -> None:
    conversation = _qualified(seed_conversation)
    seed_seller(auto_first_message=True)
    client, calls = _chat_client("Olá Maria, aqui é o Carlos!")
    cfg = settings.model_copy(update={"openai_api_key": "sk-test", "openai_model": "gpt-test"})
    orchestrator = TransferOrchestrator(store, settings=cfg, dispatcher=dispatcher, openai_client=client)

    result = await orchestrator.transfer(conversation["id"], "resumo", "qualified_lead")

    assert result.first_message_sent is True
    assert calls[0]["model"] == "gpt-test"
    assert whapi.sent[-1]["body"] == "Olá Maria, aqui é o Carlos!"


async def test_first_message_generation_failure_falls_back_to_template(
    store, settings, dispatcher, supabase, seed_conversation, seed_seller, whapi
) -> None:
    conversation = _qualified(seed_conversation)
    seed_seller(auto_first_message=True)
    client, _ = _chat_client(error=OpenAIError("quota exceeded"))
    orchestrator = TransferOrchestrator(store, settings=settings, dispatcher=dispatcher, openai_client=client)

    result = await orchestrator.transfer(conversation["id"], "resumo", "qualified_lead", product_interest="mesa")

    assert result.notified is True
    assert result.first_message_sent is True
    assert "Vi que você conversou com nosso atendimento sobre mesa" in whapi.sent[-1]["body"]
    assert supabase.get("conversations", conversation["id"])["status"] == "sent_to_seller"


async def test_completion_without_api_key_raises_completion_error(settings) -> None:
    without_key = settings.model_copy(update={"openai_api_key": None})

    with pytest.raises(openai_service.CompletionError):
        await openai_service.complete("sistema", "usuario", settings=without_key)


async def test_record_sale_closes_lead_and_conversation(
    orchestrator, supabase, seed_conversation, seed_seller
) -> None:
    conversation = _qualified(seed_conversation)
    seller = seed_seller()
    result = await orchestrator.transfer(conversation["id"], "resumo", "qualified_lead")

    lead = await orchestrator.record_sale(result.lead.id, 1890.0, actor_id="seller-1")

    assert lead.status == "sold"
    assert lead.generated_sale is True
    assert lead.sale_value == 1890.0
    assert supabase.get("sellers", seller["id"])["current_workload"] == 0
    assert supabase.get("conversations", conversation["id"])["status"] == "finished"
    with pytest.raises(TransferError):
        await orchestrator.mark_lost(result.lead.id)


async def test_unknown_lead_raises_not_found(orchestrator) -> None:
    with pytest.raises(LeadNotFoundError):
        await orchestrator.retry_notification("missing")
    with pytest.raises(LeadNotFoundError):
        await orchestrator.record_sale("missing", None)


def _seller(seller_id: str, **values) -> Seller:
    return Seller(id=seller_id, name=values.pop("name", seller_id), phone_number="5551988887777", **values)


def test_matcher_prefers_specialty_then_workload() -> None:
    matcher = LeastWorkloadMatcher()
    sellers = [
        _seller("a", current_workload=1),
        _seller("b", current_workload=3, specialties=["Sofás"]),
        _seller("c", current_workload=0, conversion_rate=0.2),
        _seller("d", current_workload=0, conversion_rate=0.5),
    ]

    assert matcher.match(LeadCriteria(product_interest="sofas de couro"), sellers) == "b"
    assert matcher.match(LeadCriteria(summary="mesa"), sellers) == "d"


def test_matcher_skips_sellers_at_capacity() -> None:
    matcher = LeastWorkloadMatcher()
    sellers = [
        _seller("full", current_workload=2, max_concurrent_leads=2, specialties=["mesa"]),
        _seller("free", current_workload=5),
        _seller("off", active=False),
    ]

    assert matcher.match(LeadCriteria(summary="mesa"), sellers) == "free"
    assert matcher.match(LeadCriteria(), [_seller("off", active=False)]) is None


def test_seller_notification_includes_operator_notes(seed_conversation) -> None:
    conversation = Conversation.model_validate(seed_conversation())
    text = seller_notification(conversation, "resumo", "ligar à tarde")
    assert "*📝 Observações do operador:*\nligar à tarde" in text
