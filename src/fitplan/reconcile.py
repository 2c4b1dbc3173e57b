"""Turn a partially complete generation response into a usable plan."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .plans import (
    DailyPlan,
    DietPlan,
    Difficulty,
    GenerationStatus,
    Ingredient,
    Meal,
    MealType,
    NutritionInfo,
    NutritionSummary,
    Plan,
    PlanType,
    Recipe,
    WorkoutDay,
    WorkoutExercise,
    WorkoutPlan,
)

__all__ = [
    "DEFAULT_DAILY_CALORIES",
    "DEFAULT_MEAL_CALORIES",
    "MacroSplit",
    "PartialSuccessReconciler",
    "ReconciliationResult",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MEAL_CALORIES: Dict[MealType, int] = {
    MealType.BREAKFAST: 400,
    MealType.LUNCH: 600,
    MealType.DINNER: 700,
    MealType.SNACK: 200,
}
FALLBACK_MEAL_CALORIES = 500
DEFAULT_DAILY_CALORIES = 2000
DEFAULT_FIBER = 5
DEFAULT_SUGAR = 10
DEFAULT_SODIUM = 500

DEFAULT_SETS = 3
DEFAULT_REPS = "10-12"
DEFAULT_REST_SECONDS = 60
DEFAULT_FOCUS = "Full body"

_POSITIONAL_MEALS = (MealType.BREAKFAST, MealType.LUNCH, MealType.DINNER, MealType.SNACK)
_SUMMARY_KEYS = (
    ("avg_calories_per_day", "calories"),
    ("avg_protein_per_day", "protein"),
    ("avg_carbs_per_day", "carbs"),
    ("avg_fat_per_day", "fat"),
)
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")

PLACEHOLDER_EXPLANATION = "This is a placeholder. Please customize based on your preferences."
DEFAULT_INSTRUCTIONS = ["Follow standard preparation for this dish."]


@dataclass(frozen=True, slots=True)
class MacroSplit:
    """Share of calories attributed to each macronutrient."""

    protein: float = 0.25
    carbs: float = 0.45
    fat: float = 0.30

    def grams(self, calories: int) -> Tuple[int, int, int]:
        return (
            round(calories * self.protein / 4),
            round(calories * self.carbs / 4),
            round(calories * self.fat / 9),
        )


@dataclass(slots=True)
class ReconciliationResult:
    status: GenerationStatus
    plan: Optional[Plan]
    filled_fields: List[str] = field(default_factory=list)
    message: str = ""

    @property
    def success(self) -> bool:
        return self.plan is not None and self.status is not GenerationStatus.FAILED


class _MissingSkeleton(ValueError):
    pass


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return round(value) if math.isfinite(value) else None
    if isinstance(value, str):
        match = _NUMBER.search(value)
        return round(float(match.group())) if match else None
    return None


def _as_text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _as_text_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [text for text in (_as_text(item) for item in value) if text]


def _mappings(value: Any) -> List[Tuple[int, Any]]:
    if not isinstance(value, list):
        return []
    return list(enumerate(value))


class PartialSuccessReconciler:
    """Fill every gap in a parsed plan document with deterministic defaults.

    Each substitution is recorded as ``"Day <n> <Meal> <field> (...)"`` in
    ``filled_fields``; the same input always yields the same plan content and
    the same notes. The result is ``completed`` when nothing had to be filled,
    ``partial_success`` otherwise, and ``failed`` only when the document has no
    usable day at all.
    """

    def __init__(
        self,
        *,
        meal_calories: Optional[Mapping[MealType, int]] = None,
        macro_split: MacroSplit = MacroSplit(),
        daily_calories: int = DEFAULT_DAILY_CALORIES,
    ) -> None:
        self._meal_calories = dict(DEFAULT_MEAL_CALORIES)
        self._meal_calories.update(meal_calories or {})
        self._macro_split = macro_split
        self._daily_calories = daily_calories

    def reconcile(
        self,
        document: Any,
        *,
        plan_type: PlanType,
        user_id: str,
        preferences: str = "",
    ) -> ReconciliationResult:
        filled: List[str] = []
        try:
            if not isinstance(document, Mapping):
                raise _MissingSkeleton("Response is not a JSON object")
            if plan_type.is_workout:
                plan: Plan = self._build_workout(document, plan_type, user_id, preferences, filled)
            else:
                plan = self._build_diet(document, user_id, preferences, filled)
        except _MissingSkeleton as error:
            LOGGER.warning("Cannot reconcile %s response: %s", plan_type.value, error)
            return ReconciliationResult(GenerationStatus.FAILED, None, [], str(error))

        status = GenerationStatus.PARTIAL_SUCCESS if filled else GenerationStatus.COMPLETED
        plan.generation_status = status
        plan.filled_fields = list(filled)
        if filled:
            message = f"Plan generated with {len(filled)} field(s) filled with defaults."
            LOGGER.info("Reconciled %s %s with %d filled field(s)", plan_type.value, plan.id, len(filled))
        else:
            message = "Plan generated successfully."
        return ReconciliationResult(status, plan, filled, message)

    # Diet -------------------------------------------------------------------------------
    def _build_diet(
        self,
        data: Mapping[str, Any],
        user_id: str,
        preferences: str,
        filled: List[str],
    ) -> DietPlan:
        entries = _mappings(data.get("daily_plans"))
        if not any(isinstance(raw, Mapping) for _, raw in entries):
            raise _MissingSkeleton("Response contained no usable daily plans")

        days: List[DailyPlan] = []
        for index, raw in entries:
            if not isinstance(raw, Mapping):
                filled.append(f"Day {index + 1} (unreadable entry skipped)")
                continue
            days.append(self._build_day(raw, index + 1, filled))

        return DietPlan(
            user_id=user_id,
            preferences=preferences,
            total_days=len(days),
            daily_plans=days,
            summary=self._build_summary(data.get("summary"), days, filled),
        )

    def _build_day(self, raw: Mapping[str, Any], position: int, filled: List[str]) -> DailyPlan:
        label = f"Day {position}"
        number = _as_int(raw.get("day"))
        if not number or number <= 0:
            number = position
            filled.append(f"{label} day (assigned {position})")

        meals: List[Meal] = []
        seen: Dict[MealType, int] = {}
        for index, meal_raw in _mappings(raw.get("meals")):
            if not isinstance(meal_raw, Mapping):
                filled.append(f"{label} meal {index + 1} (unreadable entry skipped)")
                continue
            meals.append(self._build_meal(meal_raw, index, label, seen, filled))
        if not meals:
            meals = [self._default_meal(meal_type) for meal_type in _POSITIONAL_MEALS]
            filled.append(f"{label} meals (default set of {len(meals)})")

        meal_sum = sum(meal.nutrition.calories for meal in meals)
        total = _as_int(raw.get("total_calories")) or 0
        if total <= 0:
            if meal_sum > 0:
                total = meal_sum
                filled.append(f"{label} total_calories (summed from meals)")
            else:
                total = self._daily_calories
                filled.append(f"{label} total_calories (default {total} kcal)")
        elif abs(total - meal_sum) > max(100, meal_sum // 10):
            LOGGER.debug("%s states %d kcal but meals sum to %d", label, total, meal_sum)

        return DailyPlan(day=number, date=_as_text(raw.get("date")), total_calories=total, meals=meals)

    def _build_meal(
        self,
        raw: Mapping[str, Any],
        index: int,
        day_label: str,
        seen: Dict[MealType, int],
        filled: List[str],
    ) -> Meal:
        meal_type = self._meal_type(raw.get("type"))
        if meal_type is None:
            meal_type = _POSITIONAL_MEALS[index] if index < len(_POSITIONAL_MEALS) else MealType.SNACK
            filled.append(f"{day_label} meal {index + 1} type (assumed {meal_type.value})")
        seen[meal_type] = seen.get(meal_type, 0) + 1
        label = f"{day_label} {meal_type.display_name}"
        if seen[meal_type] > 1:
            label = f"{label} {seen[meal_type]}"

        recipe_raw = raw.get("recipe")
        if isinstance(recipe_raw, Mapping) and recipe_raw:
            recipe = self._build_recipe(recipe_raw, meal_type, label, filled)
        else:
            recipe = self._placeholder_recipe(meal_type)
            filled.append(f"{label} recipe (placeholder)")

        nutrition_raw = raw.get("nutrition")
        if isinstance(nutrition_raw, Mapping) and nutrition_raw:
            nutrition = self._build_nutrition(nutrition_raw, meal_type, label, filled)
        else:
            nutrition = self._default_nutrition(meal_type)
            filled.append(f"{label} nutrition (estimated {nutrition.calories} kcal)")

        return Meal(type=meal_type, recipe=recipe, nutrition=nutrition, is_done=raw.get("is_done") is True)

    @staticmethod
    def _meal_type(value: Any) -> Optional[MealType]:
        text = _as_text(value).lower()
        try:
            return MealType(text)
        except ValueError:
            return None

    def _build_recipe(
        self,
        raw: Mapping[str, Any],
        meal_type: MealType,
        label: str,
        filled: List[str],
    ) -> Recipe:
        name = _as_text(raw.get("name"))
        if not name:
            name = f"Untitled {meal_type.display_name}"
            filled.append(f"{label} name (untitled)")

        prep_time = _as_int(raw.get("prep_time")) or 0
        if prep_time <= 0:
            prep_time = 30
            filled.append(f"{label} prep_time (default 30 min)")

        servings = _as_int(raw.get("servings")) or 0
        if servings <= 0:
            servings = 1
            filled.append(f"{label} servings (default 1)")

        try:
            difficulty = Difficulty(_as_text(raw.get("difficulty")).lower())
        except ValueError:
            difficulty = Difficulty.MEDIUM
            filled.append(f"{label} difficulty (default medium)")

        ingredients = self._ingredients(raw.get("ingredients"))
        if not ingredients:
            ingredients = [Ingredient(name="Ingredients not specified", amount="As needed")]
            filled.append(f"{label} ingredients (not specified)")

        instructions = _as_text_list(raw.get("instructions"))
        if not instructions:
            instructions = list(DEFAULT_INSTRUCTIONS)
            filled.append(f"{label} instructions (generic)")

        explanation = _as_text(raw.get("explanation"))
        if not explanation:
            explanation = f"A {meal_type.value} chosen to fit your daily targets."
            filled.append(f"{label} explanation (generic)")

        return Recipe(
            name=name,
            image_url=_as_text(raw.get("image_url")) or None,
            prep_time=prep_time,
            servings=servings,
            difficulty=difficulty,
            ingredients=ingredients,
            instructions=instructions,
            explanation=explanation,
            tags=_as_text_list(raw.get("tags")),
            cooking_tips=_as_text_list(raw.get("cooking_tips")),
            common_mistakes=_as_text_list(raw.get("common_mistakes")),
            visual_cues=_as_text_list(raw.get("visual_cues")),
        )

    @staticmethod
    def _ingredients(value: Any) -> List[Ingredient]:
        items: List[Ingredient] = []
        for _, raw in _mappings(value):
            if isinstance(raw, Mapping):
                name = _as_text(raw.get("name"))
                if not name:
                    continue
                items.append(
                    Ingredient(
                        name=name,
                        amount=_as_text(raw.get("amount")) or "As needed",
                        category=_as_text(raw.get("category")) or "other",
                    )
                )
            elif _as_text(raw):
                items.append(Ingredient(name=_as_text(raw), amount="As needed"))
        return items

    def _build_nutrition(
        self,
        raw: Mapping[str, Any],
        meal_type: MealType,
        label: str,
        filled: List[str],
    ) -> NutritionInfo:
        calories = _as_int(raw.get("calories")) or 0
        if calories <= 0:
            calories = self._baseline_calories(meal_type)
            filled.append(f"{label} calories (default {calories} kcal)")

        values: Dict[str, int] = {"calories": calories}
        for key, estimate in zip(("protein", "carbs", "fat"), self._macro_split.grams(calories)):
            amount = _as_int(raw.get(key)) or 0
            if amount <= 0:
                amount = estimate
                filled.append(f"{label} {key} (estimated {estimate}g)")
            values[key] = amount

        for key, default, unit in (
            ("fiber", DEFAULT_FIBER, "g"),
            ("sugar", DEFAULT_SUGAR, "g"),
            ("sodium", DEFAULT_SODIUM, "mg"),
        ):
            amount = _as_int(raw.get(key)) or 0
            if amount <= 0:
                amount = default
                filled.append(f"{label} {key} (default {default}{unit})")
            values[key] = amount
        return NutritionInfo(**values)

    def _baseline_calories(self, meal_type: MealType) -> int:
        return self._meal_calories.get(meal_type, FALLBACK_MEAL_CALORIES)

    def _default_nutrition(self, meal_type: MealType) -> NutritionInfo:
        calories = self._baseline_calories(meal_type)
        protein, carbs, fat = self._macro_split.grams(calories)
        return NutritionInfo(
            calories=calories,
            protein=protein,
            carbs=carbs,
            fat=fat,
            fiber=DEFAULT_FIBER,
            sugar=DEFAULT_SUGAR,
            sodium=DEFAULT_SODIUM,
        )

    @staticmethod
    def _placeholder_recipe(meal_type: MealType) -> Recipe:
        return Recipe(
            name=f"Suggested {meal_type.display_name}",
            prep_time=20,
            servings=1,
            difficulty=Difficulty.EASY,
            ingredients=[Ingredient(name="Ingredients not specified", amount="As needed")],
            instructions=list(DEFAULT_INSTRUCTIONS),
            explanation=PLACEHOLDER_EXPLANATION,
            is_placeholder=True,
        )

    def _default_meal(self, meal_type: MealType) -> Meal:
        return Meal(
            type=meal_type,
            recipe=self._placeholder_recipe(meal_type),
            nutrition=self._default_nutrition(meal_type),
        )

    @staticmethod
    def _daily_averages(days: Sequence[DailyPlan]) -> Dict[str, int]:
        if not days:
            return {key: 0 for key, _ in _SUMMARY_KEYS}
        averages: Dict[str, int] = {}
        for key, attribute in _SUMMARY_KEYS:
            if attribute == "calories":
                total = sum(day.total_calories for day in days)
            else:
                total = sum(getattr(meal.nutrition, attribute) for day in days for meal in day.meals)
            averages[key] = round(total / len(days))
        return averages

    def _build_summary(self, raw: Any, days: Sequence[DailyPlan], filled: List[str]) -> NutritionSummary:
        computed = self._daily_averages(days)
        if not isinstance(raw, Mapping) or not raw:
            filled.append("summary (calculated from daily plans)")
            return NutritionSummary(**computed)

        values: Dict[str, int] = {}
        for key, _ in _SUMMARY_KEYS:
            amount = _as_int(raw.get(key)) or 0
            if amount <= 0:
                amount = computed[key]
                filled.append(f"summary {key} (calculated {amount})")
            values[key] = amount
        return NutritionSummary(
            **values,
            dietary_restrictions=_as_text_list(raw.get("dietary_restrictions")),
        )

    # Workout ----------------------------------------------------------------------------
    def _build_workout(
        self,
        data: Mapping[str, Any],
        plan_type: PlanType,
        user_id: str,
        preferences: str,
        filled: List[str],
    ) -> WorkoutPlan:
        entries = _mappings(data.get("days"))
        if not any(isinstance(raw, Mapping) for _, raw in entries):
            raise _MissingSkeleton("Response contained no usable workout days")

        days: List[WorkoutDay] = []
        for index, raw in entries:
            if not isinstance(raw, Mapping):
                filled.append(f"Day {index + 1} (unreadable entry skipped)")
                continue
            days.append(self._build_workout_day(raw, index + 1, filled))

        title = _as_text(data.get("title"))
        if not title:
            title = plan_type.display_name
            filled.append(f"title (default {title})")

        declared = _as_int(data.get("total_days")) or 0
        if declared <= 0:
            filled.append(f"total_days (counted {len(days)})")
        elif declared != len(days):
            LOGGER.debug("Workout declares %d days but contains %d", declared, len(days))

        return WorkoutPlan(
            user_id=user_id,
            plan_type=plan_type,
            preferences=preferences,
            title=title,
            total_days=len(days),
            difficulty=_as_text(data.get("difficulty")) or "intermediate",
            equipment=_as_text_list(data.get("equipment")),
            goals=_as_text_list(data.get("goals")),
            personalization_notes=_as_text(data.get("personalization_notes")),
            days=days,
        )

    def _build_workout_day(self, raw: Mapping[str, Any], position: int, filled: List[str]) -> WorkoutDay:
        label = f"Day {position}"
        number = _as_int(raw.get("day"))
        if not number or number <= 0:
            number = position
            filled.append(f"{label} day (assigned {position})")

        is_rest_day = raw.get("is_rest_day") is True
        focus = _as_text_list(raw.get("focus"))
        exercises: List[WorkoutExercise] = []
        for index, item in _mappings(raw.get("exercises")):
            if isinstance(item, Mapping):
                exercises.append(self._build_exercise(item, f"{label} exercise {index + 1}", filled))
        if not is_rest_day:
            if not focus:
                focus = [DEFAULT_FOCUS]
                filled.append(f"{label} focus (default {DEFAULT_FOCUS})")
            if not exercises:
                exercises = [self._placeholder_exercise()]
                filled.append(f"{label} exercises (placeholder)")

        warmup = [self._build_exercise(item) for _, item in _mappings(raw.get("warmup")) if isinstance(item, Mapping)]
        cooldown = [
            self._build_exercise(item) for _, item in _mappings(raw.get("cooldown")) if isinstance(item, Mapping)
        ]

        duration = _as_int(raw.get("estimated_duration_minutes")) or 0
        if duration <= 0 and not is_rest_day:
            duration = self._estimate_duration(exercises, [*warmup, *cooldown])
            filled.append(f"{label} estimated_duration_minutes (estimated {duration} min)")

        return WorkoutDay(
            day=number,
            date=_as_text(raw.get("date")),
            is_rest_day=is_rest_day,
            focus=focus,
            notes=_as_text(raw.get("notes")),
            estimated_duration_minutes=max(duration, 0),
            intensity_level=_as_text(raw.get("intensity_level")) or ("rest" if is_rest_day else "moderate"),
            exercises=exercises,
            warmup=warmup,
            cooldown=cooldown,
        )

    @staticmethod
    def _build_exercise(
        raw: Mapping[str, Any],
        label: Optional[str] = None,
        filled: Optional[List[str]] = None,
    ) -> WorkoutExercise:
        """Build one exercise; gaps are only recorded when ``filled`` is given."""

        def note(text: str) -> None:
            if filled is not None:
                filled.append(f"{label} {text}")

        name = _as_text(raw.get("name"))
        if not name:
            name = "Unnamed exercise"
            note("name (unnamed)")

        sets = _as_int(raw.get("sets")) or 0
        if sets <= 0:
            sets = DEFAULT_SETS
            note(f"sets (default {DEFAULT_SETS})")

        duration = _as_int(raw.get("duration_seconds"))
        reps = _as_text(raw.get("reps"))
        if not reps and not duration:
            reps = DEFAULT_REPS
            note(f"reps (default {DEFAULT_REPS})")

        rest = _as_int(raw.get("rest_seconds")) or 0
        if rest <= 0 and filled is not None:
            rest = DEFAULT_REST_SECONDS
            note(f"rest_seconds (default {DEFAULT_REST_SECONDS}s)")

        return WorkoutExercise(
            name=name,
            sets=sets,
            reps=reps,
            duration_seconds=duration if duration and duration > 0 else None,
            rest_seconds=max(rest, 0),
            notes=_as_text(raw.get("notes")),
            equipment_needed=_as_text_list(raw.get("equipment_needed")),
        )

    @staticmethod
    def _placeholder_exercise() -> WorkoutExercise:
        return WorkoutExercise(
            name="Placeholder exercise",
            sets=DEFAULT_SETS,
            reps=DEFAULT_REPS,
            rest_seconds=DEFAULT_REST_SECONDS,
            notes="Placeholder: swap in an exercise that suits your equipment and goals.",
            is_placeholder=True,
        )

    @staticmethod
    def _estimate_duration(main: Sequence[WorkoutExercise], extras: Sequence[WorkoutExercise]) -> int:
        seconds = 0
        for exercise in main:
            seconds += exercise.sets * ((exercise.duration_seconds or 40) + exercise.rest_seconds)
        for exercise in extras:
            seconds += (exercise.duration_seconds or 60) * max(exercise.sets, 1)
        return max(10, round(seconds / 60))
