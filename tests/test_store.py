from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from conftest import diet_document
from fitplan.collaborators import KeyValueStore, PlanStorage, QueryFilter
from fitplan.memory import LocalDatabase, PlanArchive, SQLiteDocumentStore, SQLiteKeyValueStore
from fitplan.memory.store import DocumentNotFoundError
from fitplan.plans import DietPlan, GenerationStatus, PlanType
from fitplan.reconcile import PartialSuccessReconciler


@pytest.fixture()
def database() -> Iterator[LocalDatabase]:
    with LocalDatabase(":memory:") as db:
        yield db


def test_key_value_store_round_trip(database: LocalDatabase) -> None:
    store = SQLiteKeyValueStore(database)
    assert isinstance(store, KeyValueStore)

    store.set("diet_planner.session", "{}")
    store.set("diet_planner.session", '{"v": 2}')

    assert store.get("diet_planner.session") == '{"v": 2}'
    store.remove("diet_planner.session")
    assert store.get("diet_planner.session") is None


def test_document_update_merges_fields(database: LocalDatabase) -> None:
    store = SQLiteDocumentStore(database)
    store.set("things", "a", {"name": "first", "count": 1})

    store.update("things", "a", {"count": 2})

    assert store.get("things", "a") == {"name": "first", "count": 2}
    with pytest.raises(DocumentNotFoundError):
        store.update("things", "missing", {"count": 3})


def test_document_query_filters_and_orders(database: LocalDatabase) -> None:
    store = SQLiteDocumentStore(database)
    for index, colour in enumerate(["red", "blue", "red", "green"]):
        store.set("things", f"id-{index}", {"colour": colour, "rank": index, "flag": index % 2 == 0})

    reds = store.query("things", [QueryFilter("colour", "==", "red")], order_by="rank", descending=True)
    flagged = store.query("things", [QueryFilter("flag", "==", True)])
    some = store.query("things", [QueryFilter("colour", "in", ["blue", "green"])], order_by="rank", limit=1)
    late = store.query("things", [QueryFilter("rank", ">=", 2)])

    assert [doc["rank"] for doc in reds] == [2, 0]
    assert {doc["rank"] for doc in flagged} == {0, 2}
    assert [doc["colour"] for doc in some] == ["blue"]
    assert len(late) == 2
    assert store.query("things", [QueryFilter("colour", "in", [])]) == []


def test_document_query_rejects_bad_field_names(database: LocalDatabase) -> None:
    store = SQLiteDocumentStore(database)
    with pytest.raises(ValueError):
        store.query("things", [QueryFilter("colour') OR 1=1 --", "==", "x")])
    with pytest.raises(ValueError):
        store.query("things", [QueryFilter("colour", "~", "x")])


def test_plan_archive_save_get_and_update(database: LocalDatabase) -> None:
    archive = PlanArchive(database)
    assert isinstance(archive, PlanStorage)
    result = PartialSuccessReconciler().reconcile(diet_document(days=2), plan_type=PlanType.DIET, user_id="u1")
    plan = result.plan
    assert isinstance(plan, DietPlan)

    archive.save(plan)
    loaded = archive.get(plan.id)

    assert loaded == plan
    plan.generation_status = GenerationStatus.GENERATING
    archive.update(plan)
    assert [item.id for item in archive.load_pending("u1")] == [plan.id]
    assert [item.id for item in archive.list_for_user("u1")] == [plan.id]
    assert archive.list_for_user("u2") == []


def test_plan_archive_update_requires_existing_plan(database: LocalDatabase) -> None:
    result = PartialSuccessReconciler().reconcile(diet_document(days=1), plan_type=PlanType.DIET, user_id="u1")
    assert result.plan is not None
    with pytest.raises(KeyError):
        PlanArchive(database).update(result.plan)


def test_file_database_creates_parent_directories(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "fitplan.sqlite"
    with LocalDatabase(target) as db:
        SQLiteKeyValueStore(db).set("k", "v")
    assert target.exists()
    with LocalDatabase.from_config({"db_path": str(target)}) as db:
        assert SQLiteKeyValueStore(db).get("k") == "v"
