"""Plan entities produced by the generation pipeline."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "DailyPlan",
    "DietPlan",
    "Difficulty",
    "GenerationStatus",
    "Ingredient",
    "Meal",
    "MealType",
    "NutritionInfo",
    "NutritionSummary",
    "Plan",
    "PlanType",
    "Recipe",
    "WorkoutDay",
    "WorkoutExercise",
    "WorkoutPlan",
    "plan_from_payload",
]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class PlanType(str, Enum):
    """Kind of plan a conversation is gathering preferences for."""

    DIET = "diet"
    WORKOUT_HOME = "workout_home"
    WORKOUT_GYM = "workout_gym"

    @property
    def display_name(self) -> str:
        return {
            PlanType.DIET: "Diet Plan",
            PlanType.WORKOUT_HOME: "Home Workout Plan",
            PlanType.WORKOUT_GYM: "Gym Workout Plan",
        }[self]

    @property
    def is_workout(self) -> bool:
        return self is not PlanType.DIET

    @property
    def persistence_key(self) -> str:
        """Key under which the local session record for this plan type lives."""
        return f"{self.value}_planner"


class GenerationStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"


class MealType(str, Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    SNACK = "snack"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class PlanModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Ingredient(PlanModel):
    name: str
    amount: str
    category: str = "other"


class Recipe(PlanModel):
    name: str
    image_url: Optional[str] = None
    prep_time: int = 30
    servings: int = 1
    difficulty: Difficulty = Difficulty.MEDIUM
    ingredients: List[Ingredient] = Field(default_factory=list)
    instructions: List[str] = Field(default_factory=list)
    explanation: str = ""
    tags: List[str] = Field(default_factory=list)
    cooking_tips: List[str] = Field(default_factory=list)
    common_mistakes: List[str] = Field(default_factory=list)
    visual_cues: List[str] = Field(default_factory=list)
    is_placeholder: bool = False


class NutritionInfo(PlanModel):
    calories: int = 0
    protein: int = 0
    carbs: int = 0
    fat: int = 0
    fiber: int = 0
    sugar: int = 0
    sodium: int = 0


class Meal(PlanModel):
    type: MealType
    recipe: Recipe
    nutrition: NutritionInfo
    is_done: bool = False


class DailyPlan(PlanModel):
    day: int
    date: str = ""
    total_calories: int
    meals: List[Meal] = Field(default_factory=list)


class NutritionSummary(PlanModel):
    avg_calories_per_day: int = 0
    avg_protein_per_day: int = 0
    avg_carbs_per_day: int = 0
    avg_fat_per_day: int = 0
    dietary_restrictions: List[str] = Field(default_factory=list)


class DietPlan(PlanModel):
    """Multi-day meal plan with per-meal nutrition and a daily summary."""

    id: str = Field(default_factory=_new_id)
    user_id: str
    plan_type: PlanType = PlanType.DIET
    preferences: str = ""
    total_days: int
    daily_plans: List[DailyPlan]
    summary: NutritionSummary
    generation_status: GenerationStatus = GenerationStatus.COMPLETED
    filled_fields: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utc_now)

    @property
    def has_filled_data(self) -> bool:
        return bool(self.filled_fields)


class WorkoutExercise(PlanModel):
    name: str
    sets: int = 3
    reps: str = "10-12"
    duration_seconds: Optional[int] = None
    rest_seconds: int = 60
    notes: str = ""
    equipment_needed: List[str] = Field(default_factory=list)
    is_placeholder: bool = False


class WorkoutDay(PlanModel):
    day: int
    date: str = ""
    is_rest_day: bool = False
    focus: List[str] = Field(default_factory=list)
    notes: str = ""
    estimated_duration_minutes: int = 0
    intensity_level: str = "moderate"
    exercises: List[WorkoutExercise] = Field(default_factory=list)
    warmup: List[WorkoutExercise] = Field(default_factory=list)
    cooldown: List[WorkoutExercise] = Field(default_factory=list)


class WorkoutPlan(PlanModel):
    """Multi-day training programme for the home or gym setting."""

    id: str = Field(default_factory=_new_id)
    user_id: str
    plan_type: PlanType
    preferences: str = ""
    title: str
    total_days: int
    difficulty: str = "intermediate"
    equipment: List[str] = Field(default_factory=list)
    goals: List[str] = Field(default_factory=list)
    personalization_notes: str = ""
    days: List[WorkoutDay]
    generation_status: GenerationStatus = GenerationStatus.COMPLETED
    filled_fields: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utc_now)

    @property
    def has_filled_data(self) -> bool:
        return bool(self.filled_fields)


Plan = Union[DietPlan, WorkoutPlan]


def plan_from_payload(plan_type: PlanType | str, payload: str) -> Plan:
    """Rebuild a stored plan from its JSON payload."""
    kind = PlanType(plan_type)
    if kind is PlanType.DIET:
        return DietPlan.model_validate_json(payload)
    return WorkoutPlan.model_validate_json(payload)
