# memory.py
# Coach memory: long-lived user goals and preferences.
#
# normalize_memory() is the only place defaults are filled in; everything
# downstream works with a fully-populated CoachMemory.

from typing import Any, Literal

from pydantic import BaseModel, Field

MAX_LIST_ITEMS = 12
MAX_GOALS = 5
MAX_NOTES_CHARS = 240


class Goal(BaseModel):
    type: str
    value: str
    notes: str = ""


class Preferences(BaseModel):
    days_per_week: int | None = None
    equipment: list[str] = Field(default_factory=list)
    injuries_to_avoid: list[str] = Field(default_factory=list)
    favorite_exercises: list[str] = Field(default_factory=list)


class CoachMemory(BaseModel):
    goals: list[Goal] = Field(default_factory=list)
    preferences: Preferences = Field(default_factory=Preferences)
    communication_style: Literal["gentle", "tough", "neutral"] = "neutral"
    notes: str = ""


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None and str(item).strip()]


def normalize_memory(raw: CoachMemory | dict[str, Any] | None) -> CoachMemory:
    """Coerce arbitrary stored memory into a valid CoachMemory."""
    if isinstance(raw, CoachMemory):
        return raw
    if not isinstance(raw, dict):
        return CoachMemory()

    goals: list[Goal] = []
    for entry in raw.get("goals") or []:
        if isinstance(entry, dict) and entry.get("type") and entry.get("value") is not None:
            goals.append(
                Goal(
                    type=str(entry["type"]),
                    value=str(entry["value"]),
                    notes=str(entry.get("notes") or ""),
                )
            )

    prefs = raw.get("preferences") if isinstance(raw.get("preferences"), dict) else {}
    days = prefs.get("days_per_week")
    style = raw.get("communication_style")

    return CoachMemory(
        goals=goals,
        preferences=Preferences(
            days_per_week=days if isinstance(days, int) and not isinstance(days, bool) else None,
            equipment=_string_list(prefs.get("equipment")),
            injuries_to_avoid=_string_list(prefs.get("injuries_to_avoid")),
            favorite_exercises=_string_list(prefs.get("favorite_exercises")),
        ),
        communication_style=style if style in ("gentle", "tough", "neutral") else "neutral",
        notes=raw.get("notes") if isinstance(raw.get("notes"), str) else "",
    )


def summarize_memory(raw: CoachMemory | dict[str, Any] | None) -> dict[str, Any]:
    """Bounded, JSON-ready view of memory for the model payload."""
    memory = normalize_memory(raw)
    return {
        "goals": [goal.model_dump() for goal in memory.goals[:MAX_GOALS]],
        "preferences": {
            "days_per_week": memory.preferences.days_per_week,
            "equipment": memory.preferences.equipment[:MAX_LIST_ITEMS],
            "injuries_to_avoid": memory.preferences.injuries_to_avoid[:MAX_LIST_ITEMS],
            "favorite_exercises": memory.preferences.favorite_exercises[:MAX_LIST_ITEMS],
        },
        "communication_style": memory.communication_style,
        "notes": memory.notes[:MAX_NOTES_CHARS],
    }


def upsert_goal(
    raw: CoachMemory | dict[str, Any] | None,
    goal_type: str,
    value: str,
    notes: str | None = None,
) -> CoachMemory:
    """Replace the goal with the same type (case-insensitive) or append it."""
    memory = normalize_memory(raw)
    goals = list(memory.goals)
    new_goal = Goal(type=goal_type, value=value, notes=notes or "")
    for index, goal in enumerate(goals):
        if goal.type.lower() == goal_type.lower():
            goals[index] = new_goal
            break
    else:
        goals.append(new_goal)
    return memory.model_copy(update={"goals": goals})
