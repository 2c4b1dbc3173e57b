"""Routing table that maps AI task kinds to their request configuration."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional

from .plans import PlanType

__all__ = [
    "AIRequestConfig",
    "AITaskType",
    "ModelTier",
    "TaskRouter",
    "ThinkingLevel",
    "generation_task_for",
]


class ModelTier(str, Enum):
    """Model capability tier; the gateway maps each tier to a concrete model."""

    FAST = "fast"
    DEEP = "deep"


class ThinkingLevel(str, Enum):
    NONE = "none"
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def budget_tokens(self) -> Optional[int]:
        """Reasoning-token budget sent to the provider, or ``None`` to omit it."""
        return _THINKING_BUDGETS[self]


_THINKING_BUDGETS: Dict[ThinkingLevel, Optional[int]] = {
    ThinkingLevel.NONE: None,
    ThinkingLevel.MINIMAL: 1024,
    ThinkingLevel.LOW: 4096,
    ThinkingLevel.MEDIUM: 8192,
    ThinkingLevel.HIGH: 24576,
}


class AITaskType(str, Enum):
    DIET_GENERATION = "diet_generation"
    WORKOUT_GENERATION = "workout_generation"
    CONVERSATIONAL_GATHERING = "conversational_gathering"
    CLARIFYING_QUESTIONS = "clarifying_questions"
    PLAN_ADJUSTMENT = "plan_adjustment"
    RECIPE_SUGGESTION = "recipe_suggestion"
    EXERCISE_ALTERNATIVE = "exercise_alternative"


@dataclass(frozen=True, slots=True)
class AIRequestConfig:
    """Per-call generation settings handed to the gateway client."""

    tier: ModelTier
    thinking: ThinkingLevel
    max_output_tokens: int
    temperature: float
    json_mode: bool = True

    def as_fallback(self) -> "AIRequestConfig":
        """Fast-tier variant used for the single attempt after a deep-tier failure."""
        return replace(self, tier=ModelTier.FAST, thinking=ThinkingLevel.HIGH)


_DEFAULT_ROUTES: Dict[AITaskType, AIRequestConfig] = {
    AITaskType.DIET_GENERATION: AIRequestConfig(ModelTier.DEEP, ThinkingLevel.HIGH, 32000, 1.0),
    AITaskType.WORKOUT_GENERATION: AIRequestConfig(ModelTier.DEEP, ThinkingLevel.HIGH, 32000, 1.0),
    AITaskType.CONVERSATIONAL_GATHERING: AIRequestConfig(
        ModelTier.FAST, ThinkingLevel.MINIMAL, 2000, 0.7
    ),
    AITaskType.CLARIFYING_QUESTIONS: AIRequestConfig(
        ModelTier.FAST, ThinkingLevel.MINIMAL, 2000, 0.5
    ),
    AITaskType.PLAN_ADJUSTMENT: AIRequestConfig(ModelTier.FAST, ThinkingLevel.MEDIUM, 16000, 0.8),
    AITaskType.RECIPE_SUGGESTION: AIRequestConfig(ModelTier.FAST, ThinkingLevel.LOW, 4000, 0.9),
    AITaskType.EXERCISE_ALTERNATIVE: AIRequestConfig(ModelTier.FAST, ThinkingLevel.LOW, 4000, 0.6),
}


def generation_task_for(plan_type: PlanType) -> AITaskType:
    """Return the generation task used for ``plan_type``."""
    if plan_type.is_workout:
        return AITaskType.WORKOUT_GENERATION
    return AITaskType.DIET_GENERATION


class TaskRouter:
    """Dispatch table mapping task kinds to model tier, thinking and sampling settings."""

    def __init__(self, overrides: Optional[Mapping[AITaskType | str, Mapping[str, Any]]] = None) -> None:
        self._registry: Dict[AITaskType, AIRequestConfig] = dict(_DEFAULT_ROUTES)
        for task, values in (overrides or {}).items():
            task_type = self._normalize_task(task)
            self._registry[task_type] = self._coerce_override(self._registry[task_type], values)

    def config_for(self, task: AITaskType | str) -> AIRequestConfig:
        """Return the request configuration registered for ``task``."""
        return self._registry[self._normalize_task(task)]

    def available_tasks(self) -> Iterable[AITaskType]:
        return self._registry.keys()

    @staticmethod
    def _normalize_task(task: AITaskType | str) -> AITaskType:
        """Resolve ``task`` into a concrete ``AITaskType`` enum member."""
        if isinstance(task, AITaskType):
            return task
        try:
            return AITaskType(task)
        except ValueError as error:
            valid = ", ".join(item.value for item in AITaskType)
            raise KeyError(f"Unknown task '{task}'. Expected one of: {valid}") from error

    @staticmethod
    def _coerce_override(base: AIRequestConfig, values: Mapping[str, Any]) -> AIRequestConfig:
        unknown = set(values) - {"tier", "thinking", "max_output_tokens", "temperature", "json_mode"}
        if unknown:
            raise ValueError(f"Unknown routing override keys: {', '.join(sorted(unknown))}")
        updates: Dict[str, Any] = {}
        if "tier" in values:
            updates["tier"] = ModelTier(values["tier"])
        if "thinking" in values:
            updates["thinking"] = ThinkingLevel(values["thinking"])
        if "max_output_tokens" in values:
            updates["max_output_tokens"] = int(values["max_output_tokens"])
        if "temperature" in values:
            updates["temperature"] = float(values["temperature"])
        if "json_mode" in values:
            updates["json_mode"] = bool(values["json_mode"])
        return replace(base, **updates)
