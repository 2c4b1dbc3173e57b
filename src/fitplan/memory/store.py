"""SQLite-backed storage for session snapshots, ledger documents and plans."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from ..collaborators import QueryFilter
from ..plans import GenerationStatus, Plan, plan_from_payload
from .schema import utc_now

__all__ = [
    "DEFAULT_DB_PATH",
    "DocumentNotFoundError",
    "InMemoryKeyValueStore",
    "LocalDatabase",
    "PlanArchive",
    "SQLiteDocumentStore",
    "SQLiteKeyValueStore",
]

DEFAULT_DB_PATH = Path("data/fitplan.sqlite")
LOGGER = logging.getLogger(__name__)

_FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_OPERATORS = {"==": "=", "<": "<", "<=": "<=", ">": ">", ">=": ">="}


class DocumentNotFoundError(LookupError):
    """Raised when updating a document that does not exist."""


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return _as_iso(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serialisable")


def _dump_json(data: Any) -> str:
    """Convert arbitrary JSON-like payloads into a persisted string."""
    return json.dumps(data, default=_json_default)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


def _bind(value: Any) -> Any:
    if isinstance(value, datetime):
        return _as_iso(value)
    if isinstance(value, Enum):
        return value.value
    return value


class LocalDatabase:
    """Shared SQLite connection used by the stores in this module."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        if str(db_path) == ":memory:":
            self.db_path: Optional[Path] = None
            target = ":memory:"
        else:
            self.db_path = Path(db_path).resolve()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(self.db_path)
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(target, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._bootstrap()

    @classmethod
    def from_config(cls, paths: Mapping[str, Any]) -> "LocalDatabase":
        db_path = paths.get("db_path")
        if db_path:
            return cls(Path(db_path))
        data_path = paths.get("data") or "data"
        return cls(Path(data_path) / "fitplan.sqlite")

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database connection is closed.")
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "LocalDatabase":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _bootstrap(self) -> None:
        self.connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS kv_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (collection, id)
            );

            CREATE TABLE IF NOT EXISTS plans (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                plan_type TEXT NOT NULL,
                status TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_plans_user_status
                ON plans(user_id, status);
            """
        )
        self.connection.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self.connection
                self.connection.commit()
            except Exception:
                self.connection.rollback()
                raise

    def fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(query, params).fetchone()

    def fetchall(self, query: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(query, params).fetchall()


class InMemoryKeyValueStore:
    """Process-local key-value store; snapshots vanish with the process."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None) -> None:
        self._values: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._values)


class SQLiteKeyValueStore:
    """Device-local key-value store persisted in the ``kv_entries`` table."""

    def __init__(self, database: LocalDatabase) -> None:
        self._db = database

    def get(self, key: str) -> Optional[str]:
        row = self._db.fetchone("SELECT value FROM kv_entries WHERE key = ?", (key,))
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO kv_entries (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, _as_iso(utc_now())),
            )

    def remove(self, key: str) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))


class SQLiteDocumentStore:
    """Document collections stored as JSON rows and queried through ``json_extract``.

    Writes are last-write-wins; ``update`` merges top-level fields into the
    stored document.
    """

    def __init__(self, database: LocalDatabase) -> None:
        self._db = database

    def set(self, collection: str, document_id: str, data: Mapping[str, Any]) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO documents (collection, id, data, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(collection, id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
                """,
                (collection, document_id, _dump_json(dict(data)), _as_iso(utc_now())),
            )

    def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        row = self._db.fetchone(
            "SELECT data FROM documents WHERE collection = ? AND id = ?",
            (collection, document_id),
        )
        if not row:
            return None
        return _load_json(row["data"], default={})

    def update(self, collection: str, document_id: str, fields: Mapping[str, Any]) -> None:
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT data FROM documents WHERE collection = ? AND id = ?",
                (collection, document_id),
            ).fetchone()
            if not row:
                raise DocumentNotFoundError(f"{collection}/{document_id}")
            merged = _load_json(row["data"], default={})
            merged.update(json.loads(_dump_json(dict(fields))))
            conn.execute(
                "UPDATE documents SET data = ?, updated_at = ? WHERE collection = ? AND id = ?",
                (_dump_json(merged), _as_iso(utc_now()), collection, document_id),
            )

    def delete(self, collection: str, document_id: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, document_id),
            )

    def query(
        self,
        collection: str,
        filters: Sequence[QueryFilter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        query = "SELECT data FROM documents WHERE collection = ?"
        params: List[Any] = [collection]
        for item in filters:
            path = self._json_path(item.field)
            if item.op == "in":
                values = list(item.value)
                if not values:
                    return []
                placeholders = ",".join("?" for _ in values)
                query += f" AND json_extract(data, '{path}') IN ({placeholders})"
                params.extend(_bind(value) for value in values)
            elif item.op in _OPERATORS:
                query += f" AND json_extract(data, '{path}') {_OPERATORS[item.op]} ?"
                params.append(_bind(item.value))
            else:
                raise ValueError(f"Unsupported query operator: {item.op!r}")
        if order_by:
            direction = "DESC" if descending else "ASC"
            query += f" ORDER BY json_extract(data, '{self._json_path(order_by)}') {direction}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        return [_load_json(row["data"], default={}) for row in self._db.fetchall(query, params)]

    @staticmethod
    def _json_path(field: str) -> str:
        if not _FIELD_PATTERN.match(field):
            raise ValueError(f"Invalid document field name: {field!r}")
        return f"$.{field}"


class PlanArchive:
    """Plan storage backed by the ``plans`` table."""

    _PENDING = (GenerationStatus.PENDING.value, GenerationStatus.GENERATING.value)

    def __init__(self, database: LocalDatabase) -> None:
        self._db = database

    def save(self, plan: Plan) -> None:
        timestamp = _as_iso(utc_now())
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO plans (id, user_id, plan_type, status, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (
                    plan.id,
                    plan.user_id,
                    plan.plan_type.value,
                    plan.generation_status.value,
                    plan.model_dump_json(),
                    _as_iso(plan.created_at),
                    timestamp,
                ),
            )
        LOGGER.info("Archived %s %s (%s)", plan.plan_type.value, plan.id, plan.generation_status.value)

    def update(self, plan: Plan) -> None:
        if self.get(plan.id) is None:
            raise KeyError(f"Unknown plan id: {plan.id}")
        self.save(plan)

    def get(self, plan_id: str) -> Optional[Plan]:
        row = self._db.fetchone("SELECT plan_type, payload FROM plans WHERE id = ?", (plan_id,))
        if not row:
            return None
        return plan_from_payload(row["plan_type"], row["payload"])

    def load_pending(self, user_id: str) -> List[Plan]:
        rows = self._db.fetchall(
            "SELECT plan_type, payload FROM plans WHERE user_id = ? AND status IN (?, ?) "
            "ORDER BY created_at ASC",
            (user_id, *self._PENDING),
        )
        return [plan_from_payload(row["plan_type"], row["payload"]) for row in rows]

    def list_for_user(self, user_id: str) -> List[Plan]:
        rows = self._db.fetchall(
            "SELECT plan_type, payload FROM plans WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        )
        return [plan_from_payload(row["plan_type"], row["payload"]) for row in rows]
