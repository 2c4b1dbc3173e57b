"""Conversation session record and its tagged-union lifecycle state."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..memory.schema import ChatMessage, ChatRole, RecordModel, utc_now
from ..plans import PlanType

__all__ = [
    "AtMaxMessagesError",
    "Completed",
    "ConversationError",
    "ConversationSession",
    "Conversing",
    "EmptyInputError",
    "Failed",
    "FailureKind",
    "FailureReason",
    "Generating",
    "Idle",
    "InvalidTransitionError",
    "PlanGenerationError",
    "Ready",
    "SESSION_SCHEMA_VERSION",
    "SessionBusyError",
    "SessionState",
]

SESSION_SCHEMA_VERSION = 1


class FailureKind(str, Enum):
    USER_NOT_AUTHENTICATED = "user_not_authenticated"
    EMPTY_PREFERENCES = "empty_preferences"
    NETWORK_ERROR = "network_error"
    PARSING_ERROR = "parsing_error"
    VALIDATION_FAILED = "validation_failed"
    INSUFFICIENT_DATA = "insufficient_data"
    SERVICE_ERROR = "service_error"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


_RETRYABLE = {FailureKind.NETWORK_ERROR, FailureKind.PARSING_ERROR, FailureKind.SERVICE_ERROR}


class FailureReason(RecordModel):
    """Why a session failed, with a short message that is safe to show users."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: FailureKind
    detail: str = ""
    fields: List[str] = Field(default_factory=list)

    @property
    def is_retryable(self) -> bool:
        return self.kind in _RETRYABLE

    @property
    def description(self) -> str:
        if self.kind is FailureKind.USER_NOT_AUTHENTICATED:
            return "Please sign in to generate plans."
        if self.kind is FailureKind.EMPTY_PREFERENCES:
            return "Please enter your preferences."
        if self.kind is FailureKind.NETWORK_ERROR:
            return f"Network error: {self.detail}"
        if self.kind is FailureKind.PARSING_ERROR:
            return "Failed to parse AI response. Please try again."
        if self.kind is FailureKind.VALIDATION_FAILED:
            return f"Validation failed: {', '.join(self.fields[:3])}"
        if self.kind is FailureKind.INSUFFICIENT_DATA:
            return f"Could not generate complete plan. Missing: {', '.join(self.fields[:3])}"
        if self.kind is FailureKind.CANCELLED:
            return "Generation was cancelled."
        return self.detail or "Something went wrong. Please try again."


class PlanGenerationError(RuntimeError):
    """Internal carrier for a :class:`FailureReason` raised inside the pipeline."""

    def __init__(self, reason: FailureReason) -> None:
        super().__init__(reason.description)
        self.reason = reason


class ConversationError(RuntimeError):
    """Base error for calls the session cannot accept."""


class EmptyInputError(ConversationError):
    def __init__(self) -> None:
        super().__init__("Message is empty.")


class AtMaxMessagesError(ConversationError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"Message limit of {limit} reached; the session is ready to generate.")
        self.limit = limit


class SessionBusyError(ConversationError):
    """Raised when a call arrives while another turn is still in flight."""

    def __init__(self) -> None:
        super().__init__("A request is already in progress for this session.")


class InvalidTransitionError(ConversationError):
    pass


class _StateModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def accepts_messages(self) -> bool:
        return False

    @property
    def can_start_generation(self) -> bool:
        return False

    @property
    def is_terminal(self) -> bool:
        return False


class Idle(_StateModel):
    kind: Literal["idle"] = "idle"


class Conversing(_StateModel):
    kind: Literal["conversing"] = "conversing"

    @property
    def accepts_messages(self) -> bool:
        return True


class Ready(_StateModel):
    kind: Literal["ready"] = "ready"

    @property
    def can_start_generation(self) -> bool:
        return True


class Generating(_StateModel):
    """Generation in flight; ``stale`` marks one restored from a previous process."""

    kind: Literal["generating"] = "generating"
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    stale: bool = False

    @property
    def can_start_generation(self) -> bool:
        return self.stale


class Completed(_StateModel):
    kind: Literal["completed"] = "completed"
    plan_id: Optional[str] = None
    filled_field_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return True


class Failed(_StateModel):
    kind: Literal["failed"] = "failed"
    reason: FailureReason
    during_generation: bool = False

    @property
    def can_start_generation(self) -> bool:
        return self.during_generation and self.reason.is_retryable

    @property
    def is_terminal(self) -> bool:
        return True


SessionState = Annotated[
    Union[Idle, Conversing, Ready, Generating, Completed, Failed],
    Field(discriminator="kind"),
]


def _new_token() -> str:
    return uuid.uuid4().hex


class ConversationSession(RecordModel):
    """Everything that survives a restart for one plan type, persisted as one record."""

    plan_type: PlanType
    token: str = Field(default_factory=_new_token)
    state: SessionState = Field(default_factory=Idle)
    messages: List[ChatMessage] = Field(default_factory=list)
    collected_context: str = ""
    ready_summary: Optional[str] = None
    generation_id: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: datetime = Field(default_factory=utc_now)
    schema_version: int = SESSION_SCHEMA_VERSION

    @property
    def user_message_count(self) -> int:
        return sum(1 for message in self.messages if message.role is ChatRole.USER)
