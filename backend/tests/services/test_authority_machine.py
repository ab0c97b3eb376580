"""Pruebas de la máquina de autoridad de la conversación."""

import random
from datetime import timedelta

import pytest

from leadrouter.models.conversation import Conversation
from leadrouter.repositories.base import iso, utcnow
from leadrouter.services.authority import (
    STATUSES,
    TRANSITIONS,
    Actor,
    AuthorityError,
    AuthorityService,
    ConflictError,
    ConversationNotFoundError,
    PermissionDeniedError,
    can_transition,
    check_invariants,
    next_status,
    visible_conversation,
)


@pytest.fixture(name="authority")
def fixture_authority(store, settings) -> AuthorityService:
    return AuthorityService(store, settings=settings)


def test_transition_table_targets_known_statuses() -> None:
    for (source, _event), target in TRANSITIONS.items():
        assert source in STATUSES
        assert target in STATUSES
    assert next_status("bot_attending", "went_idle") == "waiting_evaluation"
    assert next_status("waiting_evaluation", "not_qualified") == "finished"
    assert not can_transition("finished", "went_idle")
    with pytest.raises(AuthorityError):
        next_status("finished", "qualified")


def test_check_invariants_flags_inconsistent_records() -> None:
    assert check_invariants({"status": "bot_attending", "fallback_mode": True, "fallback_taken_by": None}) == [
        "fallback_mode_requires_taker"
    ]
    assert check_invariants({"status": "sent_to_seller", "fallback_mode": False}) == ["sent_to_seller_requires_seller"]


async def test_assume_control_is_idempotent_for_same_operator(authority, supabase, seed_conversation) -> None:
    conversation = seed_conversation()

    first = await authority.assume_control(conversation["id"], "operator-1")
    again = await authority.assume_control(conversation["id"], "operator-1")

    assert first.fallback_mode is True
    assert again.fallback_taken_by == "operator-1"
    assert first.status == "bot_attending"
    with pytest.raises(ConflictError):
        await authority.assume_control(conversation["id"], "operator-2")
    [log] = supabase.rows("system_logs")
    assert log["type"] == "status_change"
    assert log["details"]["actor_id"] == "operator-1"


async def test_return_to_bot_requires_taker_or_elevated_role(authority, seed_conversation) -> None:
    conversation = seed_conversation(fallback_mode=True, fallback_taken_by="operator-1")

    with pytest.raises(PermissionDeniedError):
        await authority.return_to_bot(conversation["id"], Actor("operator-2"))

    restored = await authority.return_to_bot(conversation["id"], Actor("manager-1", ("manager",)))

    assert restored.status == "bot_attending"
    assert restored.fallback_mode is False
    assert restored.fallback_taken_by is None
    with pytest.raises(AuthorityError):
        await authority.return_to_bot(conversation["id"], Actor("operator-1"))


async def test_unknown_conversation_raises_not_found(authority) -> None:
    with pytest.raises(ConversationNotFoundError):
        await authority.assume_control("missing", "operator-1")


async def test_assign_operator_is_limited_to_elevated_roles(authority, seed_conversation) -> None:
    conversation = seed_conversation()

    with pytest.raises(PermissionDeniedError):
        await authority.assign_operator(conversation["id"], "operator-1", actor=Actor("operator-1"))

    updated = await authority.assign_operator(conversation["id"], "operator-1", actor=Actor("admin-1", ("admin",)))
    assert updated.assigned_operator_id == "operator-1"
    released = await authority.assign_operator(conversation["id"], None, actor=Actor("admin-1", ("admin",)))
    assert released.assigned_operator_id is None


async def test_stale_read_loses_the_race(authority, supabase, seed_conversation) -> None:
    row = seed_conversation()
    stale = Conversation.model_validate(row)
    supabase.get("conversations", row["id"]).update({"status": "waiting_evaluation"})

    with pytest.raises(ConflictError):
        await authority.mark_idle(stale)


async def test_mark_idle_refuses_with_outstanding_queue(authority, supabase, seed_conversation) -> None:
    row = seed_conversation()
    supabase.seed("message_queue", conversation_id=row["id"], status="waiting", messages_content=["oi"])

    with pytest.raises(AuthorityError):
        await authority.mark_idle(Conversation.model_validate(row))


async def test_sweep_idle_moves_only_quiet_bot_conversations(authority, supabase, seed_conversation) -> None:
    old = iso(utcnow() - timedelta(minutes=30))
    quiet = seed_conversation(updated_at=old)
    supabase.seed("messages", conversation_id=quiet["id"], sender_type="customer", content="oi", created_at=old)
    busy = seed_conversation(phone_number="5551911112222", updated_at=old)
    supabase.seed("messages", conversation_id=busy["id"], sender_type="customer", content="oi", created_at=old)
    supabase.seed("message_queue", conversation_id=busy["id"], status="processing", messages_content=["oi"])
    manual = seed_conversation(
        phone_number="5551933334444", updated_at=old, fallback_mode=True, fallback_taken_by="operator-1"
    )
    supabase.seed("messages", conversation_id=manual["id"], sender_type="customer", content="oi", created_at=old)
    silent = seed_conversation(phone_number="5551955556666", updated_at=old)

    moved = await authority.sweep_idle()

    assert moved == [quiet["id"]]
    assert supabase.get("conversations", quiet["id"])["status"] == "waiting_evaluation"
    for other in (busy, manual, silent):
        assert supabase.get("conversations", other["id"])["status"] == "bot_attending"


@pytest.mark.parametrize(("retry_count", "expected_status"), [(1, "bot_attending"), (3, "waiting_evaluation")])
async def test_sweep_idle_waits_for_retryable_queue_errors(
    authority, supabase, seed_conversation, retry_count, expected_status
) -> None:
    old = iso(utcnow() - timedelta(minutes=30))
    conversation = seed_conversation(updated_at=old)
    supabase.seed("messages", conversation_id=conversation["id"], sender_type="customer", content="oi", created_at=old)
    supabase.seed(
        "message_queue",
        conversation_id=conversation["id"],
        status="error",
        messages_content=["oi"],
        retry_count=retry_count,
        max_retries=3,
    )

    await authority.sweep_idle()

    assert supabase.get("conversations", conversation["id"])["status"] == expected_status


async def test_random_walk_preserves_invariants(authority, supabase, seed_conversation) -> None:
    row = seed_conversation()
    rng = random.Random(20240611)
    actors = [Actor("operator-1"), Actor("operator-2"), Actor("manager-1", ("manager",))]

    async def step(conversation: Conversation) -> None:
        choice = rng.randrange(6)
        actor = rng.choice(actors)
        if choice == 0:
            await authority.assume_control(conversation.id, actor.user_id)
        elif choice == 1:
            await authority.return_to_bot(conversation.id, actor)
        elif choice == 2:
            await authority.mark_idle(conversation)
        elif choice == 3:
            await authority.apply_evaluation(
                conversation, should_transfer=rng.random() < 0.5, evaluation={"reason": "walk"}
            )
        elif choice == 4:
            await authority.mark_sent_to_seller(conversation, rng.choice(["seller-1", "seller-2"]))
        else:
            await authority.finish(conversation, "walk")

    for _ in range(300):
        conversation = Conversation.model_validate(supabase.get("conversations", row["id"]))
        try:
            await step(conversation)
        except (AuthorityError, PermissionDeniedError):
            pass
        current = supabase.get("conversations", row["id"])
        assert check_invariants(current) == []
        assert current["status"] in STATUSES


def test_visible_conversation_masks_for_unrelated_actor() -> None:
    conversation = Conversation(
        id="conv-1",
        phone_number="5551997519607",
        assigned_seller_id="seller-1",
        status="sent_to_seller",
    )

    hidden = visible_conversation(conversation, Actor("operator-9"), [])
    assert hidden["restricted"] is True
    assert hidden["phone_number"] == "5551****9607"
    assert hidden["messages"] == []

    shown = visible_conversation(conversation, Actor("seller-1"), [])
    assert shown["restricted"] is False
    assert shown["phone_number"] == "5551997519607"
