from __future__ import annotations

import json

import pytest

from conftest import diet_document, workout_document
from fitplan.analysis import (
    UNPARSEABLE,
    CompletenessAnalyzer,
    RecoveryStrategy,
    choose_recovery_strategy,
)
from fitplan.plans import PlanType
from fitplan.structured import load_json_document


def test_complete_diet_document_is_accepted() -> None:
    result = CompletenessAnalyzer(PlanType.DIET).analyze(json.dumps(diet_document()))

    assert result.completeness == 1.0
    assert result.recovery_strategy is RecoveryStrategy.ACCEPT
    assert result.missing_fields == []
    assert result.expected_count == 503


def test_missing_sodium_everywhere_is_accepted_with_defaults() -> None:
    document = diet_document(drop=("sodium",))

    result = CompletenessAnalyzer(PlanType.DIET).analyze(json.dumps(document))

    assert result.completeness == pytest.approx(475 / 503)
    assert result.recovery_strategy is RecoveryStrategy.ACCEPT_WITH_DEFAULTS
    assert result.is_valid
    assert len(result.missing_fields) == 28
    assert "daily_plans[0].meals[0].nutrition.sodium" in result.missing_fields


def test_fenced_response_with_trailing_commas_is_parsed() -> None:
    body = json.dumps(diet_document(days=1), indent=2).replace("\n  }\n}", "\n  },\n}")
    text = f"Here you go:\n```json\n{body}\n```"

    result = CompletenessAnalyzer(PlanType.DIET).analyze(text)

    assert result.raw_data is not None
    assert result.recovery_strategy is RecoveryStrategy.ACCEPT


def test_typographic_quotes_inside_strings_survive_parsing() -> None:
    document = diet_document()
    document["daily_plans"][0]["meals"][0]["recipe"]["explanation"] = "A “power” breakfast"
    text = json.dumps(document, ensure_ascii=False)

    result = CompletenessAnalyzer(PlanType.DIET).analyze(text)

    assert result.recovery_strategy is RecoveryStrategy.ACCEPT
    assert result.completeness == 1.0
    assert result.raw_data is not None
    explanation = result.raw_data["daily_plans"][0]["meals"][0]["recipe"]["explanation"]
    assert explanation == "A “power” breakfast"


def test_curly_quoted_keys_are_normalised() -> None:
    text = "{“type”: “question”, “message”: “Goals?”}"

    assert load_json_document(text) == {"type": "question", "message": "Goals?"}


def test_garbage_response_aborts() -> None:
    result = CompletenessAnalyzer(PlanType.DIET).analyze("I could not build a plan, sorry.")

    assert result.completeness == 0.0
    assert result.recovery_strategy is RecoveryStrategy.ABORT
    assert result.missing_fields == [UNPARSEABLE]
    assert result.raw_data is None


def test_mostly_empty_meals_abort() -> None:
    document = diet_document()
    for day in document["daily_plans"]:
        day["meals"] = [{"type": meal["type"]} for meal in day["meals"]]

    result = CompletenessAnalyzer(PlanType.DIET).analyze(json.dumps(document))

    assert result.completeness < 0.7
    assert result.recovery_strategy is RecoveryStrategy.ABORT
    assert result.raw_data is not None


@pytest.mark.parametrize(
    ("fraction", "strategy"),
    [
        (1.0, RecoveryStrategy.ACCEPT),
        (0.95, RecoveryStrategy.ACCEPT_WITH_DEFAULTS),
        (0.70, RecoveryStrategy.ACCEPT_WITH_DEFAULTS),
        (0.6999, RecoveryStrategy.ABORT),
        (0.6, RecoveryStrategy.ABORT),
    ],
)
def test_recovery_strategy_thresholds(fraction: float, strategy: RecoveryStrategy) -> None:
    assert choose_recovery_strategy(fraction, 0.70) is strategy


def test_custom_threshold_is_respected() -> None:
    document = diet_document(drop=("sodium",))
    analyzer = CompletenessAnalyzer(PlanType.DIET, threshold=0.99)

    assert analyzer.analyze(json.dumps(document)).recovery_strategy is RecoveryStrategy.ABORT


def test_workout_rest_days_do_not_need_exercises() -> None:
    document = workout_document(days=4, rest_days=(2, 4))

    result = CompletenessAnalyzer(PlanType.WORKOUT_HOME).analyze(json.dumps(document))

    assert result.recovery_strategy is RecoveryStrategy.ACCEPT
    assert result.missing_fields == []


def test_workout_day_without_exercises_is_reported() -> None:
    document = workout_document(days=2)
    document["days"][1].pop("exercises")

    result = CompletenessAnalyzer(PlanType.WORKOUT_GYM).analyze(json.dumps(document))

    assert "days[1].exercises" in result.missing_fields
    assert result.completeness < 1.0


def test_non_mapping_list_items_count_as_missing() -> None:
    document = workout_document(days=1)
    document["days"].append("rest")

    result = CompletenessAnalyzer(PlanType.WORKOUT_HOME).analyze(json.dumps(document))

    assert "days[1]" in result.missing_fields
