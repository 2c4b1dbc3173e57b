from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterator

import pytest

from fitplan.memory import (
    ChatMessage,
    GenerationLedger,
    GenerationNotFoundError,
    GenerationPhase,
    LedgerError,
    LocalDatabase,
    SQLiteDocumentStore,
)
from fitplan.plans import PlanType


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def ledger(clock: Clock) -> Iterator[GenerationLedger]:
    with LocalDatabase(":memory:") as database:
        yield GenerationLedger(SQLiteDocumentStore(database), clock=clock)


def test_create_counts_user_messages(ledger: GenerationLedger) -> None:
    history = [ChatMessage.user("vegetarian"), ChatMessage.assistant("How many meals?")]

    entry = ledger.create("u1", PlanType.DIET, history, "vegetarian")

    stored = ledger.get(entry.id)
    assert stored is not None
    assert stored.phase is GenerationPhase.CONVERSATION
    assert stored.message_count == 1
    assert [message.content for message in stored.conversation_history] == [
        "vegetarian",
        "How many meals?",
    ]


def test_append_message_updates_history_and_context(ledger: GenerationLedger, clock: Clock) -> None:
    entry = ledger.create("u1", PlanType.DIET, [ChatMessage.user("hi")], "hi")
    clock.advance(minutes=1)

    updated = ledger.append_message(entry.id, ChatMessage.user("no nuts"), "hi\nno nuts")

    assert updated.message_count == 2
    assert updated.collected_context == "hi\nno nuts"
    assert updated.updated_at == clock.now


def test_append_outside_conversation_is_rejected(ledger: GenerationLedger) -> None:
    entry = ledger.create("u1", PlanType.DIET)
    ledger.start_generation(entry.id)

    with pytest.raises(LedgerError):
        ledger.append_message(entry.id, ChatMessage.user("late"))


def test_phases_only_move_forward(ledger: GenerationLedger) -> None:
    entry = ledger.create("u1", PlanType.WORKOUT_HOME)
    ledger.start_generation(entry.id)
    ledger.mark_completed(entry.id, "plan-1")

    after_failure = ledger.mark_failed(entry.id, "too late")
    again = ledger.start_generation(entry.id)

    assert after_failure.phase is GenerationPhase.COMPLETED
    assert again.phase is GenerationPhase.COMPLETED
    stored = ledger.get(entry.id)
    assert stored is not None
    assert stored.result_plan_id == "plan-1"
    assert stored.error_message is None


def test_unknown_generation_raises(ledger: GenerationLedger) -> None:
    with pytest.raises(GenerationNotFoundError):
        ledger.start_generation("missing")


def test_listings(ledger: GenerationLedger, clock: Clock) -> None:
    talking = ledger.create("u1", PlanType.DIET, [ChatMessage.user("a")])
    clock.advance(minutes=1)
    generating = ledger.create("u1", PlanType.WORKOUT_GYM)
    ledger.start_generation(generating.id)
    clock.advance(minutes=1)
    done = ledger.create("u1", PlanType.DIET)
    ledger.start_generation(done.id)
    ledger.mark_completed(done.id, "plan-9")
    ledger.create("someone-else", PlanType.DIET)

    active = ledger.list_active("u1")
    unnotified = ledger.list_completed_unnotified("u1")

    assert [entry.id for entry in active] == [generating.id, talking.id]
    assert [entry.id for entry in unnotified] == [done.id]
    assert [entry.id for entry in ledger.list_recent_completed("u1", PlanType.DIET)] == [done.id]
    assert ledger.list_recent_completed("u1", PlanType.WORKOUT_GYM) == []

    ledger.mark_notification_sent(done.id)
    assert ledger.list_completed_unnotified("u1") == []


def test_recovery_descriptions(ledger: GenerationLedger) -> None:
    entry = ledger.create("u1", PlanType.WORKOUT_HOME, [ChatMessage.user("a")])
    assert entry.is_recoverable
    assert entry.recovery_description == "Continue your home workout plan conversation"

    failed = ledger.mark_failed(entry.id, "boom")
    assert not failed.is_recoverable


def test_cleanup_removes_only_expired_terminal_entries(ledger: GenerationLedger, clock: Clock) -> None:
    old = ledger.create("u1", PlanType.DIET)
    ledger.mark_failed(old.id, "boom")
    still_talking = ledger.create("u1", PlanType.DIET)
    clock.advance(days=6)
    recent = ledger.create("u1", PlanType.DIET)
    ledger.mark_completed(recent.id, "plan-2")
    clock.advance(days=2)

    removed = ledger.cleanup("u1")

    assert removed == 1
    assert ledger.get(old.id) is None
    assert ledger.get(recent.id) is not None
    assert ledger.get(still_talking.id) is not None


def test_delete(ledger: GenerationLedger) -> None:
    entry = ledger.create("u1", PlanType.DIET)
    ledger.delete(entry.id)
    assert ledger.get(entry.id) is None
