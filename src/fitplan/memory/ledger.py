"""Durable, cross-device record of plan-generation attempts."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..collaborators import DocumentStore, QueryFilter
from ..plans import PlanType
from .schema import ChatMessage, ChatRole, GenerationPhase, PendingGeneration, utc_now
from .store import DocumentNotFoundError

__all__ = [
    "DEFAULT_RETENTION",
    "GenerationLedger",
    "GenerationNotFoundError",
    "LEDGER_COLLECTION",
    "LedgerError",
]

LOGGER = logging.getLogger(__name__)

LEDGER_COLLECTION = "pending_generations"
DEFAULT_RETENTION = timedelta(days=7)


class LedgerError(RuntimeError):
    """Raised when the ledger cannot record or read an entry."""


class GenerationNotFoundError(LedgerError):
    """Raised when an operation targets an unknown ledger entry."""


def _user_message_count(messages: Iterable[ChatMessage]) -> int:
    return sum(1 for message in messages if message.role is ChatRole.USER)


class GenerationLedger:
    """Tracks each generation attempt from conversation to completion.

    Phases only move forward (``conversation -> generating -> completed|failed``).
    A transition to the current phase, or to an earlier one, is a logged no-op,
    so repeating a call after a crash is safe.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = utc_now,
        collection: str = LEDGER_COLLECTION,
    ) -> None:
        self._store = store
        self._retention = retention
        self._clock = clock
        self._collection = collection

    def create(
        self,
        user_id: str,
        plan_type: PlanType,
        messages: Iterable[ChatMessage] = (),
        collected_context: str = "",
    ) -> PendingGeneration:
        history = list(messages)
        now = self._clock()
        entry = PendingGeneration(
            user_id=user_id,
            plan_type=plan_type,
            conversation_history=history,
            collected_context=collected_context,
            message_count=_user_message_count(history),
            created_at=now,
            updated_at=now,
        )
        self._write(entry)
        LOGGER.info("Created ledger entry %s for %s (%s)", entry.id, user_id, plan_type.value)
        return entry

    def get(self, generation_id: str) -> Optional[PendingGeneration]:
        data = self._store.get(self._collection, generation_id)
        if data is None:
            return None
        return PendingGeneration.model_validate(data)

    def append_message(
        self,
        generation_id: str,
        message: ChatMessage,
        collected_context: Optional[str] = None,
    ) -> PendingGeneration:
        entry = self._require(generation_id)
        if entry.phase is not GenerationPhase.CONVERSATION:
            raise LedgerError(
                f"Cannot append to generation {generation_id} in phase {entry.phase.value}"
            )
        history = [*entry.conversation_history, message]
        fields: Dict[str, Any] = {
            "conversation_history": [item.model_dump() for item in history],
            "message_count": _user_message_count(history),
        }
        if collected_context is not None:
            fields["collected_context"] = collected_context
        return self._update(entry, fields)

    def update_conversation(
        self,
        generation_id: str,
        messages: Iterable[ChatMessage],
        collected_context: str,
    ) -> PendingGeneration:
        """Replace the stored history wholesale, e.g. after a local rollback."""
        entry = self._require(generation_id)
        history = list(messages)
        return self._update(
            entry,
            {
                "conversation_history": [item.model_dump() for item in history],
                "collected_context": collected_context,
                "message_count": _user_message_count(history),
            },
        )

    def start_generation(self, generation_id: str) -> PendingGeneration:
        return self._advance(
            generation_id,
            GenerationPhase.GENERATING,
            {"generation_started_at": self._clock()},
        )

    def mark_completed(self, generation_id: str, result_plan_id: str) -> PendingGeneration:
        return self._advance(
            generation_id,
            GenerationPhase.COMPLETED,
            {"completed_at": self._clock(), "result_plan_id": result_plan_id},
        )

    def mark_failed(self, generation_id: str, error_message: str) -> PendingGeneration:
        return self._advance(
            generation_id,
            GenerationPhase.FAILED,
            {"completed_at": self._clock(), "error_message": error_message},
        )

    def mark_notification_sent(self, generation_id: str) -> PendingGeneration:
        entry = self._require(generation_id)
        if entry.notification_sent:
            return entry
        return self._update(entry, {"notification_sent": True})

    def list_active(self, user_id: str) -> List[PendingGeneration]:
        """Entries still in conversation or generation, newest first."""
        return self._query(
            [
                QueryFilter("user_id", "==", user_id),
                QueryFilter(
                    "phase",
                    "in",
                    [GenerationPhase.CONVERSATION.value, GenerationPhase.GENERATING.value],
                ),
            ],
            order_by="updated_at",
            descending=True,
        )

    def list_completed_unnotified(self, user_id: str) -> List[PendingGeneration]:
        return self._query(
            [
                QueryFilter("user_id", "==", user_id),
                QueryFilter("phase", "==", GenerationPhase.COMPLETED.value),
                QueryFilter("notification_sent", "==", False),
            ],
            order_by="completed_at",
            descending=True,
        )

    def list_recent_completed(
        self,
        user_id: str,
        plan_type: Optional[PlanType] = None,
        limit: int = 10,
    ) -> List[PendingGeneration]:
        filters = [
            QueryFilter("user_id", "==", user_id),
            QueryFilter("phase", "==", GenerationPhase.COMPLETED.value),
        ]
        if plan_type is not None:
            filters.append(QueryFilter("plan_type", "==", plan_type.value))
        return self._query(filters, order_by="completed_at", descending=True, limit=limit)

    def delete(self, generation_id: str) -> None:
        self._store.delete(self._collection, generation_id)

    def cleanup(self, user_id: str) -> int:
        """Delete terminal entries that finished before the retention window."""
        cutoff = self._clock() - self._retention
        stale = self._query(
            [
                QueryFilter("user_id", "==", user_id),
                QueryFilter(
                    "phase",
                    "in",
                    [GenerationPhase.COMPLETED.value, GenerationPhase.FAILED.value],
                ),
                QueryFilter("completed_at", "<", cutoff),
            ]
        )
        for entry in stale:
            self._store.delete(self._collection, entry.id)
        if stale:
            LOGGER.info("Removed %d expired ledger entries for %s", len(stale), user_id)
        return len(stale)

    def _advance(
        self,
        generation_id: str,
        target: GenerationPhase,
        fields: Dict[str, Any],
    ) -> PendingGeneration:
        entry = self._require(generation_id)
        if not entry.phase.can_advance_to(target):
            LOGGER.info(
                "Ignoring ledger transition %s -> %s for %s",
                entry.phase.value,
                target.value,
                generation_id,
            )
            return entry
        LOGGER.debug("Ledger %s: %s -> %s", generation_id, entry.phase.value, target.value)
        return self._update(entry, {"phase": target.value, **fields})

    def _require(self, generation_id: str) -> PendingGeneration:
        entry = self.get(generation_id)
        if entry is None:
            raise GenerationNotFoundError(f"Unknown generation id: {generation_id}")
        return entry

    def _update(self, entry: PendingGeneration, fields: Dict[str, Any]) -> PendingGeneration:
        fields = {**fields, "updated_at": self._clock()}
        try:
            self._store.update(self._collection, entry.id, fields)
        except DocumentNotFoundError as error:
            raise GenerationNotFoundError(f"Unknown generation id: {entry.id}") from error
        return PendingGeneration.model_validate({**entry.model_dump(), **fields})

    def _write(self, entry: PendingGeneration) -> None:
        self._store.set(self._collection, entry.id, entry.model_dump())

    def _query(
        self,
        filters: List[QueryFilter],
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[PendingGeneration]:
        documents = self._store.query(
            self._collection,
            filters,
            order_by=order_by,
            descending=descending,
            limit=limit,
        )
        return [PendingGeneration.model_validate(data) for data in documents]
