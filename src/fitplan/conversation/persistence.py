"""Save and restore a conversation session as a single serialized record."""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from ..collaborators import KeyValueStore
from ..plans import PlanType
from .state import SESSION_SCHEMA_VERSION, ConversationSession

__all__ = ["ConversationPersistence"]

LOGGER = logging.getLogger(__name__)


class ConversationPersistence:
    """Reads and writes the session for one plan type under its own key.

    The whole session (state, messages, context, summary, generation id) is
    written at once, so a restore never sees a half-updated snapshot.
    """

    def __init__(self, store: KeyValueStore, plan_type: PlanType) -> None:
        self._store = store
        self._plan_type = plan_type

    @property
    def key(self) -> str:
        return f"{self._plan_type.persistence_key}.session"

    def save(self, session: ConversationSession) -> None:
        self._store.set(self.key, session.model_dump_json())

    def restore(self) -> Optional[ConversationSession]:
        raw = self._store.get(self.key)
        if raw is None:
            return None
        try:
            session = ConversationSession.model_validate_json(raw)
        except ValidationError as error:
            LOGGER.warning("Discarding unreadable %s session snapshot: %s", self._plan_type.value, error)
            self._store.remove(self.key)
            return None
        if session.plan_type is not self._plan_type:
            LOGGER.warning(
                "Session under %s belongs to %s; discarding", self.key, session.plan_type.value
            )
            self._store.remove(self.key)
            return None
        if session.schema_version > SESSION_SCHEMA_VERSION:
            LOGGER.warning(
                "Session snapshot schema %d is newer than supported %d; discarding",
                session.schema_version,
                SESSION_SCHEMA_VERSION,
            )
            self._store.remove(self.key)
            return None
        return session

    def clear(self) -> None:
        self._store.remove(self.key)
