"""Persistence for conversation snapshots, the generation ledger and plans."""

from .ledger import GenerationLedger, GenerationNotFoundError, LedgerError
from .schema import ChatMessage, GenerationPhase, PendingGeneration
from .store import (
    InMemoryKeyValueStore,
    LocalDatabase,
    PlanArchive,
    SQLiteDocumentStore,
    SQLiteKeyValueStore,
)

__all__ = [
    "ChatMessage",
    "GenerationLedger",
    "GenerationNotFoundError",
    "GenerationPhase",
    "InMemoryKeyValueStore",
    "LedgerError",
    "LocalDatabase",
    "PendingGeneration",
    "PlanArchive",
    "SQLiteDocumentStore",
    "SQLiteKeyValueStore",
]
