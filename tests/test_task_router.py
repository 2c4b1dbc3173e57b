from __future__ import annotations

import pytest

from fitplan.plans import PlanType
from fitplan.router import (
    AITaskType,
    ModelTier,
    TaskRouter,
    ThinkingLevel,
    generation_task_for,
)


def test_generation_tasks_use_deep_tier_with_high_thinking() -> None:
    router = TaskRouter()
    for task in (AITaskType.DIET_GENERATION, AITaskType.WORKOUT_GENERATION):
        config = router.config_for(task)
        assert config.tier is ModelTier.DEEP
        assert config.thinking is ThinkingLevel.HIGH
        assert config.max_output_tokens == 32000
        assert config.temperature == 1.0


def test_gathering_is_fast_and_light() -> None:
    config = TaskRouter().config_for("conversational_gathering")
    assert config.tier is ModelTier.FAST
    assert config.thinking is ThinkingLevel.MINIMAL
    assert config.max_output_tokens == 2000
    assert config.temperature == 0.7


def test_every_task_has_a_route() -> None:
    router = TaskRouter()
    assert set(router.available_tasks()) == set(AITaskType)


def test_unknown_task_lists_valid_options() -> None:
    with pytest.raises(KeyError) as excinfo:
        TaskRouter().config_for("write_poem")
    assert "diet_generation" in str(excinfo.value)


def test_overrides_replace_only_named_fields() -> None:
    router = TaskRouter({"recipe_suggestion": {"temperature": 0.3, "thinking": "none"}})
    config = router.config_for(AITaskType.RECIPE_SUGGESTION)
    assert config.temperature == 0.3
    assert config.thinking is ThinkingLevel.NONE
    assert config.max_output_tokens == 4000
    assert config.thinking.budget_tokens is None


def test_unknown_override_keys_are_rejected() -> None:
    with pytest.raises(ValueError):
        TaskRouter({"plan_adjustment": {"model": "other"}})


def test_fallback_config_keeps_limits() -> None:
    config = TaskRouter().config_for(AITaskType.DIET_GENERATION).as_fallback()
    assert config.tier is ModelTier.FAST
    assert config.thinking is ThinkingLevel.HIGH
    assert config.max_output_tokens == 32000


@pytest.mark.parametrize(
    ("plan_type", "task"),
    [
        (PlanType.DIET, AITaskType.DIET_GENERATION),
        (PlanType.WORKOUT_HOME, AITaskType.WORKOUT_GENERATION),
        (PlanType.WORKOUT_GYM, AITaskType.WORKOUT_GENERATION),
    ],
)
def test_generation_task_for_plan_type(plan_type: PlanType, task: AITaskType) -> None:
    assert generation_task_for(plan_type) is task
