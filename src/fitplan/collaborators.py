"""Interfaces for the services the pipeline talks to but does not own."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from .plans import Plan

__all__ = [
    "ContextProvider",
    "DocumentStore",
    "KeyValueStore",
    "PlanStorage",
    "QueryFilter",
    "UserContext",
]


@dataclass(slots=True)
class UserContext:
    """Profile, health and history summaries gathered for prompt enrichment."""

    profile_summary: str = ""
    health_summary: str = ""
    history_summary: str = ""

    def is_empty(self) -> bool:
        return not (self.profile_summary or self.health_summary or self.history_summary)

    def format_for_prompt(self) -> str:
        sections = []
        if self.profile_summary:
            sections.append(f"Profile:\n{self.profile_summary}")
        if self.health_summary:
            sections.append(f"Health data:\n{self.health_summary}")
        if self.history_summary:
            sections.append(f"Recent history:\n{self.history_summary}")
        return "\n\n".join(sections)


@runtime_checkable
class ContextProvider(Protocol):
    def get_context(self, user_id: str) -> UserContext:
        ...


@runtime_checkable
class PlanStorage(Protocol):
    """Where finished plans are persisted."""

    def save(self, plan: Plan) -> None:
        ...

    def update(self, plan: Plan) -> None:
        ...

    def load_pending(self, user_id: str) -> List[Plan]:
        ...


@runtime_checkable
class KeyValueStore(Protocol):
    """Device-local string store used for session snapshots."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


@dataclass(frozen=True, slots=True)
class QueryFilter:
    """Single ``field <op> value`` predicate; ``op`` is one of ``==``, ``in``, ``<``, ``<=``, ``>``, ``>=``."""

    field: str
    op: str
    value: Any


@runtime_checkable
class DocumentStore(Protocol):
    """Remote document database holding the generation ledger."""

    def set(self, collection: str, document_id: str, data: Mapping[str, Any]) -> None:
        ...

    def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        ...

    def update(self, collection: str, document_id: str, fields: Mapping[str, Any]) -> None:
        ...

    def delete(self, collection: str, document_id: str) -> None:
        ...

    def query(
        self,
        collection: str,
        filters: Sequence[QueryFilter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...
