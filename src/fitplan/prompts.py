"""Prompt templates and builders for preference gathering and plan generation."""

from __future__ import annotations

from typing import Optional, Sequence

from .collaborators import UserContext
from .memory.schema import ChatMessage, ChatRole
from .plans import PlanType

JSON_RESPONSE_INSTRUCTION = (
    "Output valid JSON only. Emit a single JSON object and nothing else: "
    "no markdown fences, no explanatory text."
)

MORE_DETAILS_MESSAGE = "I'd like to provide more details about my preferences."

_GATHERING_TOPICS = {
    PlanType.DIET: (
        "Dietary restrictions or allergies",
        "Calorie goals (if any)",
        "Cooking time preference (quick meals vs elaborate)",
        "Budget constraints",
        "Cuisine preferences",
        "Household size / servings needed",
        "Specific health goals",
    ),
    PlanType.WORKOUT_HOME: (
        "Fitness goals (strength, weight loss, muscle gain, endurance)",
        "Current fitness level / experience",
        "Equipment available at home",
        "Days per week they can train",
        "Time per session",
        "Injuries or limitations",
        "Exercise preferences or dislikes",
    ),
    PlanType.WORKOUT_GYM: (
        "Fitness goals (strength, weight loss, muscle gain, endurance)",
        "Current fitness level / experience",
        "Days per week they can get to the gym",
        "Time per session",
        "Injuries or limitations",
        "Preferred machines, free weights or classes",
    ),
}

_READY_MESSAGES = {
    PlanType.DIET: "Great! I have everything I need to create your personalized meal plan.",
    PlanType.WORKOUT_HOME: "Perfect! I have everything I need to create your home workout plan.",
    PlanType.WORKOUT_GYM: "Perfect! I have everything I need to create your gym workout plan.",
}


def _assistant_role(plan_type: PlanType) -> str:
    if plan_type.is_workout:
        return "a friendly fitness coach"
    return "a friendly nutrition assistant"


def _plan_noun(plan_type: PlanType) -> str:
    if plan_type is PlanType.DIET:
        return "personalized 7-day meal plan"
    return f"personalized {plan_type.display_name.lower()}"


def build_gathering_system_prompt(plan_type: PlanType, *, forced: bool = False) -> str:
    """System prompt for one preference-gathering turn.

    The forced variant is used once the message cap is reached and asks the
    model to wrap up with a ``ready`` reply and a summary.
    """
    if forced:
        return (
            f"You are {_assistant_role(plan_type)}. The user has provided enough information.\n\n"
            "RESPOND WITH THIS EXACT JSON FORMAT:\n"
            "{\n"
            '    "type": "ready",\n'
            f'    "message": "{_READY_MESSAGES[plan_type]}",\n'
            '    "summary": "<Summarize everything you learned about the user\'s needs>"\n'
            "}\n\n"
            f"{JSON_RESPONSE_INSTRUCTION}"
        )

    topics = "\n".join(f"- {topic}" for topic in _GATHERING_TOPICS[plan_type])
    return (
        f"You are {_assistant_role(plan_type)} gathering information to create a "
        f"{_plan_noun(plan_type)}.\n\n"
        "BEHAVIOR RULES:\n"
        "1. Ask ONE focused, conversational question at a time\n"
        "2. Be warm and encouraging\n"
        "3. Remember what the user already told you and never repeat a question\n"
        "4. After gathering enough info (typically 3-6 exchanges), indicate you're ready\n"
        "5. You can be ready earlier if the user provides comprehensive info upfront\n\n"
        "INFORMATION TO GATHER (not all required):\n"
        f"{topics}\n\n"
        "RESPOND WITH EXACTLY THIS JSON FORMAT:\n\n"
        "If you need more info:\n"
        '{"type": "question", "message": "<Your question to the user>"}\n\n'
        "If you have enough info:\n"
        '{"type": "ready", "message": "<Message saying you are ready>", '
        '"summary": "<Brief summary of the preferences you collected>"}\n\n'
        f"{JSON_RESPONSE_INSTRUCTION}"
    )


def build_conversation_prompt(history: Sequence[ChatMessage], collected_context: str) -> str:
    """User prompt carrying the transcript and the context collected so far."""
    lines = ["CONVERSATION HISTORY:"]
    for message in history:
        role = "User" if message.role is ChatRole.USER else "Assistant"
        lines.append(f"{role}: {message.content}")
    return (
        "\n".join(lines)
        + "\n\nCOLLECTED CONTEXT SO FAR:\n"
        + collected_context
        + "\n\nBased on this conversation, provide your next response."
    )


def accumulate_context(existing: str, addition: str) -> str:
    """Append a new user message to the collected preference context."""
    if not existing:
        return addition
    return f"{existing}\n\nAdditional info: {addition}"


def build_enhanced_preferences(preferences: str, context: Optional[UserContext]) -> str:
    """Prefix the collected preferences with external user context when there is any."""
    if context is None or context.is_empty():
        return preferences
    return f"USER CONTEXT:\n{context.format_for_prompt()}\n\nUSER REQUEST:\n{preferences}"


_DIET_SCHEMA = """{
  "daily_plans": [
    {
      "day": 1,
      "date": "",
      "total_calories": 2000,
      "meals": [
        {
          "type": "breakfast|lunch|dinner|snack",
          "recipe": {
            "name": "",
            "image_url": null,
            "prep_time": 15,
            "servings": 1,
            "difficulty": "easy|medium|hard",
            "ingredients": [{"name": "", "amount": "", "category": ""}],
            "instructions": [""],
            "explanation": "",
            "tags": [""],
            "cooking_tips": [""],
            "common_mistakes": [""],
            "visual_cues": [""]
          },
          "nutrition": {"calories": 0, "protein": 0, "carbs": 0, "fat": 0, "fiber": 0, "sugar": 0, "sodium": 0}
        }
      ]
    }
  ],
  "summary": {
    "avg_calories_per_day": 0,
    "avg_protein_per_day": 0,
    "avg_carbs_per_day": 0,
    "avg_fat_per_day": 0,
    "dietary_restrictions": [""]
  }
}"""

_WORKOUT_SCHEMA = """{
  "title": "",
  "total_days": 7,
  "difficulty": "beginner|intermediate|advanced",
  "equipment": [""],
  "goals": [""],
  "personalization_notes": "",
  "days": [
    {
      "day": 1,
      "date": "",
      "is_rest_day": false,
      "focus": [""],
      "notes": "",
      "estimated_duration_minutes": 45,
      "intensity_level": "low|moderate|high",
      "exercises": [
        {"name": "", "sets": 3, "reps": "10-12", "duration_seconds": null, "rest_seconds": 60,
         "notes": "", "equipment_needed": [""]}
      ],
      "warmup": [],
      "cooldown": []
    }
  ]
}"""


def build_plan_system_prompt(plan_type: PlanType) -> str:
    """System prompt for the plan-generation call."""
    if plan_type is PlanType.DIET:
        return (
            "You are an expert nutritionist and chef. Create a complete 7-day meal plan with "
            "breakfast, lunch, dinner and one snack per day. Every meal needs a full recipe "
            "(ingredients with amounts, step-by-step instructions, and a short explanation of "
            "why it fits the user) and complete nutrition values in grams, with sodium in "
            "milligrams. Daily totals must match the sum of the meals.\n\n"
            f"Return JSON with exactly this structure:\n{_DIET_SCHEMA}\n\n"
            f"{JSON_RESPONSE_INSTRUCTION}"
        )
    setting = "at home" if plan_type is PlanType.WORKOUT_HOME else "in a gym"
    return (
        f"You are an expert strength and conditioning coach. Create a complete 7-day "
        f"training plan to be performed {setting}, including rest days where appropriate. "
        "Every training day needs a focus, a warmup, the main exercises with sets, reps or "
        "duration, and rest periods, plus a cooldown. Only prescribe equipment the user has "
        "access to.\n\n"
        f"Return JSON with exactly this structure:\n{_WORKOUT_SCHEMA}\n\n"
        f"{JSON_RESPONSE_INSTRUCTION}"
    )


def build_plan_prompt(
    plan_type: PlanType,
    enhanced_preferences: str,
    ready_summary: Optional[str] = None,
) -> str:
    """User prompt for plan generation from the gathered preferences."""
    sections = [f"Create a {_plan_noun(plan_type)} for this user.", "", enhanced_preferences]
    if ready_summary:
        sections.extend(["", "CONVERSATION SUMMARY:", ready_summary])
    return "\n".join(sections)


__all__ = [
    "JSON_RESPONSE_INSTRUCTION",
    "MORE_DETAILS_MESSAGE",
    "accumulate_context",
    "build_conversation_prompt",
    "build_enhanced_preferences",
    "build_gathering_system_prompt",
    "build_plan_prompt",
    "build_plan_system_prompt",
]
