from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from fitplan.collaborators import UserContext  # noqa: E402
from fitplan.memory.store import InMemoryKeyValueStore  # noqa: E402
from fitplan.models.gateway import AIGatewayClient, GatewayError  # noqa: E402
from fitplan.router import AIRequestConfig  # noqa: E402

MEAL_TYPES = ("breakfast", "lunch", "dinner", "snack")

ScriptItem = Union[str, GatewayError, Callable[[], str]]


@dataclass
class SentRequest:
    prompt: str
    system_prompt: str
    config: AIRequestConfig


class ScriptedGateway(AIGatewayClient):
    """Gateway replaying scripted responses; callables run when their turn comes."""

    def __init__(self, responses: Optional[List[ScriptItem]] = None, *, max_attempts: int = 3) -> None:
        self.sleeps: List[float] = []
        super().__init__(max_attempts=max_attempts, retry_base_delay=1.0, sleep=self.sleeps.append)
        self.responses: List[ScriptItem] = list(responses or [])
        self.requests: List[SentRequest] = []

    def queue(self, *items: ScriptItem) -> None:
        self.responses.extend(items)

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def _raw_send(self, prompt: str, system_prompt: str, config: AIRequestConfig) -> str:
        self.requests.append(SentRequest(prompt, system_prompt, config))
        if not self.responses:
            raise AssertionError("ScriptedGateway ran out of responses")
        item = self.responses.pop(0)
        if isinstance(item, GatewayError):
            raise item
        if callable(item):
            return item()
        return item


@dataclass
class RecordingPlanStorage:
    saved: List[Any] = field(default_factory=list)
    fail: bool = False

    def save(self, plan: Any) -> None:
        if self.fail:
            raise RuntimeError("storage unavailable")
        self.saved.append(plan)

    def update(self, plan: Any) -> None:
        self.saved = [plan if item.id == plan.id else item for item in self.saved]

    def load_pending(self, user_id: str) -> List[Any]:
        return []


@dataclass
class StaticContextProvider:
    context: UserContext = field(
        default_factory=lambda: UserContext(profile_summary="Age 34, vegetarian, 70kg")
    )
    calls: int = 0

    def get_context(self, user_id: str) -> UserContext:
        self.calls += 1
        return self.context


def question(message: str = "What are your goals?") -> str:
    return json.dumps({"type": "question", "message": message})


def ready(message: str = "Great, I have what I need.", summary: str = "Vegetarian, 2000 kcal") -> str:
    return json.dumps({"type": "ready", "message": message, "summary": summary})


def _meal(meal_type: str, calories: int) -> Dict[str, Any]:
    return {
        "type": meal_type,
        "recipe": {
            "name": f"{meal_type.title()} bowl",
            "prep_time": 15,
            "servings": 1,
            "difficulty": "easy",
            "ingredients": [{"name": "Oats", "amount": "80g", "category": "grains"}],
            "instructions": ["Combine everything.", "Serve."],
            "explanation": "Balanced and quick.",
        },
        "nutrition": {
            "calories": calories,
            "protein": 25,
            "carbs": 50,
            "fat": 15,
            "fiber": 6,
            "sugar": 8,
            "sodium": 400,
        },
    }


def diet_document(days: int = 7, *, drop: tuple[str, ...] = ()) -> Dict[str, Any]:
    """Complete diet document; ``drop`` removes nutrition keys from every meal."""
    calories = {"breakfast": 400, "lunch": 600, "dinner": 700, "snack": 200}
    daily_plans = []
    for day in range(1, days + 1):
        meals = [_meal(meal_type, calories[meal_type]) for meal_type in MEAL_TYPES]
        for meal in meals:
            for key in drop:
                meal["nutrition"].pop(key, None)
        daily_plans.append({"day": day, "total_calories": 1900, "meals": meals})
    return {
        "daily_plans": daily_plans,
        "summary": {
            "avg_calories_per_day": 1900,
            "avg_protein_per_day": 100,
            "avg_carbs_per_day": 200,
            "avg_fat_per_day": 60,
        },
    }


def workout_document(days: int = 3, *, rest_days: tuple[int, ...] = ()) -> Dict[str, Any]:
    entries = []
    for day in range(1, days + 1):
        if day in rest_days:
            entries.append({"day": day, "is_rest_day": True, "notes": "Recover."})
            continue
        entries.append(
            {
                "day": day,
                "focus": ["Upper body"],
                "estimated_duration_minutes": 45,
                "exercises": [
                    {"name": "Push-up", "sets": 3, "reps": "12", "rest_seconds": 60},
                    {"name": "Plank", "sets": 3, "reps": "30s", "rest_seconds": 45},
                ],
            }
        )
    return {"title": "Home strength", "total_days": days, "days": entries}


@pytest.fixture()
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture()
def plan_storage() -> RecordingPlanStorage:
    return RecordingPlanStorage()
