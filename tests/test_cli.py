from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from conftest import diet_document
from fitplan.cli import app
from fitplan.config import load_config
from fitplan.memory import ChatMessage, GenerationLedger, LocalDatabase, PlanArchive, SQLiteDocumentStore
from fitplan.plans import PlanType
from fitplan.reconcile import PartialSuccessReconciler

runner = CliRunner()


def _init(tmp_path: Path) -> Path:
    config_path = tmp_path / "config.yaml"
    result = runner.invoke(app, ["init", "--config", str(config_path)])
    assert result.exit_code == 0, result.output
    return config_path


def test_init_writes_default_config(tmp_path: Path) -> None:
    config_path = _init(tmp_path)

    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert data["gateway"]["api_key_env"] == "GEMINI_API_KEY"
    assert data["conversation"]["max_user_messages"] == 20
    config = load_config(config_path)
    assert config.ledger.retention_days == 7
    assert config.conversation.acceptable_completeness == 0.70


def test_init_refuses_to_overwrite(tmp_path: Path) -> None:
    config_path = _init(tmp_path)

    result = runner.invoke(app, ["init", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "already exists" in result.output


def test_missing_config_is_a_usage_error(tmp_path: Path) -> None:
    result = runner.invoke(app, ["pending", "--user", "u1", "--config", str(tmp_path / "nope.yaml")])

    assert result.exit_code == 2


def test_invalid_config_exits_with_message(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("conversation:\n  max_user_messages: 0\n", encoding="utf-8")

    result = runner.invoke(app, ["cleanup", "--user", "u1", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "max_user_messages" in result.output


def test_pending_lists_and_notifies(tmp_path: Path) -> None:
    config_path = _init(tmp_path)
    with LocalDatabase(tmp_path / "data" / "fitplan.sqlite") as database:
        ledger = GenerationLedger(SQLiteDocumentStore(database))
        talking = ledger.create("u1", PlanType.DIET, [ChatMessage.user("vegetarian")])
        done = ledger.create("u1", PlanType.WORKOUT_GYM)
        ledger.start_generation(done.id)
        ledger.mark_completed(done.id, "plan-7")

    result = runner.invoke(app, ["pending", "--user", "u1", "--config", str(config_path), "--notify"])

    assert result.exit_code == 0, result.output
    assert talking.id in result.output
    assert "Continue your diet plan conversation" in result.output
    assert "plan plan-7" in result.output
    assert "Marked 1 generation(s) as notified." in result.output

    again = runner.invoke(app, ["pending", "--user", "u1", "--config", str(config_path)])
    assert "Completed generations" not in again.output


def test_pending_with_nothing_to_show(tmp_path: Path) -> None:
    config_path = _init(tmp_path)

    result = runner.invoke(app, ["pending", "--user", "nobody", "--config", str(config_path)])

    assert result.exit_code == 0
    assert "No pending generations." in result.output


def test_cleanup_reports_removed_count(tmp_path: Path) -> None:
    config_path = _init(tmp_path)

    result = runner.invoke(app, ["cleanup", "--user", "u1", "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    assert "Removed 0 expired generation record(s)." in result.output


def test_plans_lists_stored_plans(tmp_path: Path) -> None:
    config_path = _init(tmp_path)
    result = PartialSuccessReconciler().reconcile(
        diet_document(drop=("sodium",)),
        plan_type=PlanType.DIET,
        user_id="u1",
    )
    assert result.plan is not None
    with LocalDatabase(tmp_path / "data" / "fitplan.sqlite") as database:
        PlanArchive(database).save(result.plan)

    output = runner.invoke(app, ["plans", "--user", "u1", "--config", str(config_path)])

    assert output.exit_code == 0, output.output
    assert result.plan.id in output.output
    assert "Diet Plan [partial_success, 28 filled]" in output.output


def test_chat_rejects_unknown_plan_type(tmp_path: Path) -> None:
    config_path = _init(tmp_path)

    result = runner.invoke(
        app,
        ["chat", "--plan-type", "yoga", "--user", "u1", "--config", str(config_path)],
    )

    assert result.exit_code == 2


def test_chat_reports_first_turn_failure_as_conversation_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    config_path = _init(tmp_path)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    result = runner.invoke(
        app,
        ["chat", "--plan-type", "diet", "--user", "u1", "--config", str(config_path)],
        input="Vegetarian, no nuts\n",
    )

    assert result.exit_code == 0, result.output
    assert "Conversation failed: AI service credential is not configured." in result.output
    assert "Generation failed" not in result.output
