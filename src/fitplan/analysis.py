"""Completeness scoring for generated plan documents."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .plans import PlanType
from .structured import load_json_document

__all__ = [
    "ACCEPTABLE_COMPLETENESS",
    "AnalysisResult",
    "CompletenessAnalyzer",
    "DIET_CHECKLIST",
    "FieldChecklist",
    "RecoveryStrategy",
    "UNPARSEABLE",
    "ValidationOutcome",
    "WORKOUT_CHECKLIST",
    "checklist_for",
    "choose_recovery_strategy",
]

LOGGER = logging.getLogger(__name__)

ACCEPTABLE_COMPLETENESS = 0.70
UNPARSEABLE = "<unparseable>"


class RecoveryStrategy(str, Enum):
    ABORT = "abort"
    ACCEPT_WITH_DEFAULTS = "accept_with_defaults"
    ACCEPT = "accept"


@dataclass(frozen=True, slots=True)
class FieldChecklist:
    """Expected fields of one node in a plan document.

    ``children`` maps a field name to the checklist applied to its value, or
    to every element when the value is a list. ``exempt`` returns fields that
    do not apply to a particular node (rest days have no exercises).
    """

    fields: Tuple[str, ...]
    children: Mapping[str, "FieldChecklist"] = field(default_factory=dict)
    exempt: Optional[Callable[[Mapping[str, Any]], FrozenSet[str]]] = None


_NUTRITION = FieldChecklist(("calories", "protein", "carbs", "fat", "fiber", "sugar", "sodium"))
_RECIPE = FieldChecklist(
    ("name", "prep_time", "servings", "difficulty", "ingredients", "instructions", "explanation")
)
_MEAL = FieldChecklist(
    ("type", "recipe", "nutrition"),
    children={"recipe": _RECIPE, "nutrition": _NUTRITION},
)
_DAY = FieldChecklist(("day", "total_calories", "meals"), children={"meals": _MEAL})
_SUMMARY = FieldChecklist(
    ("avg_calories_per_day", "avg_protein_per_day", "avg_carbs_per_day", "avg_fat_per_day")
)
DIET_CHECKLIST = FieldChecklist(
    ("daily_plans", "summary"),
    children={"daily_plans": _DAY, "summary": _SUMMARY},
)


def _rest_day_exemptions(day: Mapping[str, Any]) -> FrozenSet[str]:
    if day.get("is_rest_day") is True:
        return frozenset({"focus", "exercises"})
    return frozenset()


_EXERCISE = FieldChecklist(("name", "sets", "reps", "rest_seconds"))
_WORKOUT_DAY = FieldChecklist(
    ("day", "focus", "exercises"),
    children={"exercises": _EXERCISE},
    exempt=_rest_day_exemptions,
)
WORKOUT_CHECKLIST = FieldChecklist(
    ("title", "total_days", "days"),
    children={"days": _WORKOUT_DAY},
)


def checklist_for(plan_type: PlanType) -> FieldChecklist:
    if plan_type.is_workout:
        return WORKOUT_CHECKLIST
    return DIET_CHECKLIST


def choose_recovery_strategy(
    fraction: float,
    threshold: float = ACCEPTABLE_COMPLETENESS,
) -> RecoveryStrategy:
    """Map a completeness fraction onto the recovery strategy."""
    if fraction >= 1.0:
        return RecoveryStrategy.ACCEPT
    if fraction >= threshold:
        return RecoveryStrategy.ACCEPT_WITH_DEFAULTS
    return RecoveryStrategy.ABORT


@dataclass(frozen=True, slots=True)
class ValidationOutcome:
    is_valid: bool
    completeness: float
    missing_fields: Tuple[str, ...]
    recovery_strategy: RecoveryStrategy


@dataclass(slots=True)
class AnalysisResult:
    """Completeness of one response plus the parsed document, when there is one."""

    completeness: float
    missing_fields: List[str]
    recovery_strategy: RecoveryStrategy
    raw_data: Optional[Dict[str, Any]] = None
    present_count: int = 0
    expected_count: int = 0

    @property
    def is_valid(self) -> bool:
        return self.recovery_strategy is not RecoveryStrategy.ABORT

    def outcome(self) -> ValidationOutcome:
        return ValidationOutcome(
            is_valid=self.is_valid,
            completeness=self.completeness,
            missing_fields=tuple(self.missing_fields),
            recovery_strategy=self.recovery_strategy,
        )


@dataclass(slots=True)
class _Tally:
    present: int = 0
    expected: int = 0
    missing: List[str] = field(default_factory=list)


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return bool(value)
    return True


def _walk(node: Mapping[str, Any], checklist: FieldChecklist, prefix: str, tally: _Tally) -> None:
    exempt = checklist.exempt(node) if checklist.exempt else frozenset()
    for name in checklist.fields:
        if name in exempt:
            continue
        path = f"{prefix}.{name}" if prefix else name
        value = node.get(name)
        tally.expected += 1
        if not _is_present(value):
            tally.missing.append(path)
            continue
        tally.present += 1
        child = checklist.children.get(name)
        if child is None:
            continue
        if isinstance(value, Mapping):
            _walk(value, child, path, tally)
        elif isinstance(value, list):
            for index, item in enumerate(value):
                item_path = f"{path}[{index}]"
                if isinstance(item, Mapping):
                    _walk(item, child, item_path, tally)
                else:
                    # unreadable element counts as one missing field
                    tally.expected += 1
                    tally.missing.append(item_path)


class CompletenessAnalyzer:
    """Score a raw generation response against the checklist for its plan type.

    Completeness is the fraction of expected fields that are present; fields
    nested under a missing container are not counted. Parse failures score
    zero and always abort.
    """

    def __init__(
        self,
        plan_type: PlanType = PlanType.DIET,
        *,
        threshold: float = ACCEPTABLE_COMPLETENESS,
        checklist: Optional[FieldChecklist] = None,
    ) -> None:
        self._plan_type = plan_type
        self._threshold = threshold
        self._checklist = checklist or checklist_for(plan_type)

    @property
    def threshold(self) -> float:
        return self._threshold

    def analyze(self, text: str) -> AnalysisResult:
        document = load_json_document(text)
        if not isinstance(document, dict):
            LOGGER.warning("Generation response for %s is not a JSON object", self._plan_type.value)
            return AnalysisResult(
                completeness=0.0,
                missing_fields=[UNPARSEABLE],
                recovery_strategy=RecoveryStrategy.ABORT,
            )

        tally = _Tally()
        _walk(document, self._checklist, "", tally)
        fraction = tally.present / tally.expected if tally.expected else 0.0
        strategy = choose_recovery_strategy(fraction, self._threshold)
        LOGGER.info(
            "Completeness %.3f (%d/%d fields) for %s -> %s",
            fraction,
            tally.present,
            tally.expected,
            self._plan_type.value,
            strategy.value,
        )
        if tally.missing:
            LOGGER.debug("Missing fields: %s", ", ".join(tally.missing[:20]))
        return AnalysisResult(
            completeness=fraction,
            missing_fields=tally.missing,
            recovery_strategy=strategy,
            raw_data=document,
            present_count=tally.present,
            expected_count=tally.expected,
        )
