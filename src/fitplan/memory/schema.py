"""Typed records tracked by the fitplan session and ledger stores."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..plans import PlanType

__all__ = [
    "AssistantResponseType",
    "ChatMessage",
    "ChatRole",
    "GenerationPhase",
    "LEDGER_SCHEMA_VERSION",
    "PendingGeneration",
    "RecordModel",
    "utc_now",
]

LEDGER_SCHEMA_VERSION = 2


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class AssistantResponseType(str, Enum):
    """Whether an assistant turn asks for more detail or declares readiness."""

    QUESTION = "question"
    READY = "ready"


class ChatMessage(RecordModel):
    """Single turn in a preference-gathering conversation."""

    id: str = Field(default_factory=_new_id)
    role: ChatRole
    content: str
    response_type: Optional[AssistantResponseType] = None
    timestamp: datetime = Field(default_factory=utc_now)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role=ChatRole.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: str,
        response_type: AssistantResponseType = AssistantResponseType.QUESTION,
    ) -> "ChatMessage":
        return cls(role=ChatRole.ASSISTANT, content=content, response_type=response_type)


class GenerationPhase(str, Enum):
    """Lifecycle phase of a ledger entry; phases only ever move forward."""

    CONVERSATION = "conversation"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return {
            GenerationPhase.CONVERSATION: 0,
            GenerationPhase.GENERATING: 1,
            GenerationPhase.COMPLETED: 2,
            GenerationPhase.FAILED: 2,
        }[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == 2

    def can_advance_to(self, target: "GenerationPhase") -> bool:
        return target.rank > self.rank


class PendingGeneration(RecordModel):
    """Durable ledger entry for one plan-generation attempt."""

    id: str = Field(default_factory=_new_id)
    user_id: str
    plan_type: PlanType
    phase: GenerationPhase = GenerationPhase.CONVERSATION
    conversation_history: List[ChatMessage] = Field(default_factory=list)
    collected_context: str = ""
    message_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    generation_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result_plan_id: Optional[str] = None
    error_message: Optional[str] = None
    notification_sent: bool = False
    schema_version: int = LEDGER_SCHEMA_VERSION

    @property
    def is_recoverable(self) -> bool:
        """Whether the user can pick this entry up again from another device."""
        if self.phase is GenerationPhase.CONVERSATION:
            return self.message_count > 0
        if self.phase is GenerationPhase.GENERATING:
            return True
        if self.phase is GenerationPhase.COMPLETED:
            return not self.notification_sent
        return False

    @property
    def recovery_description(self) -> str:
        if self.phase is GenerationPhase.CONVERSATION:
            return f"Continue your {self.plan_type.display_name.lower()} conversation"
        if self.phase is GenerationPhase.GENERATING:
            return f"Your {self.plan_type.display_name.lower()} is being generated"
        if self.phase is GenerationPhase.COMPLETED:
            return f"Your {self.plan_type.display_name.lower()} is ready"
        return f"{self.plan_type.display_name} generation failed"
