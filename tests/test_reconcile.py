from __future__ import annotations

import json

from conftest import diet_document, workout_document
from fitplan.plans import DietPlan, GenerationStatus, MealType, PlanType, WorkoutPlan
from fitplan.reconcile import DEFAULT_MEAL_CALORIES, MacroSplit, PartialSuccessReconciler


def _reconcile(document: object, plan_type: PlanType = PlanType.DIET):
    return PartialSuccessReconciler().reconcile(
        document,
        plan_type=plan_type,
        user_id="user-1",
        preferences="Vegetarian",
    )


def test_complete_document_needs_no_defaults() -> None:
    result = _reconcile(diet_document())

    assert result.status is GenerationStatus.COMPLETED
    assert result.success
    assert result.filled_fields == []
    assert isinstance(result.plan, DietPlan)
    assert result.plan.total_days == 7
    assert result.plan.user_id == "user-1"
    assert not result.plan.has_filled_data


def test_missing_sodium_is_filled_and_recorded_per_meal() -> None:
    result = _reconcile(diet_document(drop=("sodium",)))

    assert result.status is GenerationStatus.PARTIAL_SUCCESS
    assert len(result.filled_fields) == 28
    assert result.filled_fields[0] == "Day 1 Breakfast sodium (default 500mg)"
    assert result.plan is not None
    assert result.plan.generation_status is GenerationStatus.PARTIAL_SUCCESS
    assert result.plan.filled_fields == result.filled_fields
    sodium = {meal.nutrition.sodium for day in result.plan.daily_plans for meal in day.meals}
    assert sodium == {500}


def test_reconciliation_is_deterministic() -> None:
    document = diet_document(drop=("fiber", "sugar"))

    first = _reconcile(document)
    second = _reconcile(document)

    assert first.filled_fields == second.filled_fields
    assert first.plan is not None and second.plan is not None
    assert first.plan.daily_plans == second.plan.daily_plans


def test_missing_macros_are_estimated_from_calories() -> None:
    document = diet_document(days=1)
    breakfast = document["daily_plans"][0]["meals"][0]
    for key in ("protein", "carbs", "fat"):
        breakfast["nutrition"].pop(key)

    result = _reconcile(document)

    assert result.plan is not None
    nutrition = result.plan.daily_plans[0].meals[0].nutrition
    assert nutrition.calories == 400
    assert (nutrition.protein, nutrition.carbs, nutrition.fat) == MacroSplit().grams(400)
    assert nutrition.protein == 25
    assert "Day 1 Breakfast protein (estimated 25g)" in result.filled_fields


def test_missing_day_total_is_summed_from_meals() -> None:
    document = diet_document(days=2)
    document["daily_plans"][1].pop("total_calories")

    result = _reconcile(document)

    assert result.plan is not None
    assert result.plan.daily_plans[1].total_calories == 1900
    assert "Day 2 total_calories (summed from meals)" in result.filled_fields


def test_missing_summary_is_calculated_from_days() -> None:
    document = diet_document(days=2)
    document.pop("summary")

    result = _reconcile(document)

    assert result.plan is not None
    assert result.plan.summary.avg_calories_per_day == 1900
    assert result.plan.summary.avg_protein_per_day == 100
    assert "summary (calculated from daily plans)" in result.filled_fields


def test_missing_recipe_gets_placeholder() -> None:
    document = diet_document(days=1)
    document["daily_plans"][0]["meals"][2].pop("recipe")

    result = _reconcile(document)

    assert result.plan is not None
    recipe = result.plan.daily_plans[0].meals[2].recipe
    assert recipe.is_placeholder
    assert recipe.name == "Suggested Dinner"
    assert "Day 1 Dinner recipe (placeholder)" in result.filled_fields


def test_document_without_days_fails() -> None:
    result = _reconcile({"summary": {"avg_calories_per_day": 2000}})

    assert result.status is GenerationStatus.FAILED
    assert result.plan is None
    assert not result.success


def test_non_object_document_fails() -> None:
    assert _reconcile(["not", "a", "plan"]).status is GenerationStatus.FAILED


def test_complete_workout_document() -> None:
    result = _reconcile(workout_document(days=3, rest_days=(2,)), PlanType.WORKOUT_HOME)

    assert result.status is GenerationStatus.COMPLETED
    assert isinstance(result.plan, WorkoutPlan)
    assert result.plan.plan_type is PlanType.WORKOUT_HOME
    assert result.plan.days[1].is_rest_day
    assert result.plan.days[1].exercises == []


def test_workout_day_without_exercises_gets_placeholder() -> None:
    document = workout_document(days=2)
    document["days"][0]["exercises"] = []
    document.pop("title")

    result = _reconcile(document, PlanType.WORKOUT_GYM)

    assert result.status is GenerationStatus.PARTIAL_SUCCESS
    assert result.plan is not None
    assert result.plan.days[0].exercises[0].is_placeholder
    assert result.plan.title == "Gym Workout Plan"
    assert "Day 1 exercises (placeholder)" in result.filled_fields
    assert "title (default Gym Workout Plan)" in result.filled_fields


def test_non_finite_numbers_fall_back_to_defaults() -> None:
    document = diet_document(days=1)
    nutrition = document["daily_plans"][0]["meals"][0]["nutrition"]
    nutrition["calories"] = float("inf")
    nutrition["sugar"] = float("nan")
    raw = json.dumps(document)
    assert "Infinity" in raw and "NaN" in raw

    result = _reconcile(json.loads(raw))

    assert result.plan is not None
    breakfast = result.plan.daily_plans[0].meals[0].nutrition
    assert breakfast.calories == DEFAULT_MEAL_CALORIES[MealType.BREAKFAST]
    assert breakfast.sugar == 10
    assert f"Day 1 Breakfast calories (default {breakfast.calories} kcal)" in result.filled_fields
    assert "Day 1 Breakfast sugar (default 10g)" in result.filled_fields
