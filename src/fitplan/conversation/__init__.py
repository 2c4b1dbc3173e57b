"""Conversational preference gathering and plan-generation lifecycle."""

from .machine import ConversationStateMachine, GatheringReply, parse_gathering_reply
from .persistence import ConversationPersistence
from .state import (
    AtMaxMessagesError,
    Completed,
    ConversationError,
    ConversationSession,
    Conversing,
    EmptyInputError,
    Failed,
    FailureKind,
    FailureReason,
    Generating,
    Idle,
    InvalidTransitionError,
    Ready,
    SessionBusyError,
)

__all__ = [
    "AtMaxMessagesError",
    "Completed",
    "ConversationError",
    "ConversationPersistence",
    "ConversationSession",
    "ConversationStateMachine",
    "Conversing",
    "EmptyInputError",
    "Failed",
    "FailureKind",
    "FailureReason",
    "GatheringReply",
    "Generating",
    "Idle",
    "InvalidTransitionError",
    "Ready",
    "SessionBusyError",
    "parse_gathering_reply",
]
