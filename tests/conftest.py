import json
from datetime import datetime, timedelta, timezone

import pytest

from iron_coach.llm import ModelResponse
from iron_coach.models import ContextConfig, ContextScopes, ToolCall
from iron_coach.store import (
    Equipment,
    Exercise,
    InMemoryCoachStore,
    Settings,
    Template,
    TemplateItem,
    Workout,
    WorkoutItem,
    WorkoutSet,
    WorkoutSpace,
)

NOW = datetime(2026, 3, 10, 18, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------


class ScriptedModel:
    """ChatModel that replays canned responses and records every call."""

    def __init__(self, responses):
        self.model = "scripted-model"
        self.responses = list(responses)
        self.calls = []

    async def complete(self, messages, *, tools=None, temperature=None, on_delta=None):
        self.calls.append({"messages": messages, "tools": tools, "temperature": temperature})
        if not self.responses:
            raise AssertionError("ScriptedModel ran out of responses")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            if on_delta is not None:
                on_delta(item)
            return ModelResponse(content=item)
        return item


def tool_response(*calls, content=""):
    """ModelResponse requesting tools. Each call is (id, name, args dict or raw str)."""
    return ModelResponse(
        content=content,
        tool_calls=[
            ToolCall(id=call_id, name=name, arguments=args if isinstance(args, str) else json.dumps(args))
            for call_id, name, args in calls
        ],
    )


def action_message(exercise_ids, *, kind="create_workout", text="Here is your workout.", needs_review=None):
    payload = {
        "name": "Leg Day",
        "exercises": [{"exerciseId": i, "sets": [{"reps": 8}, {"reps": 8}]} for i in exercise_ids],
    }
    if needs_review is not None:
        payload["needsReview"] = needs_review
    envelope = {
        "contractVersion": "coach_action_v1",
        "assistantText": text,
        "actionDraft": {
            "kind": kind,
            "confidence": 0.8,
            "risk": "low",
            "title": "Leg Day",
            "summary": "A balanced lower body session.",
            "payload": payload,
        },
    }
    return f"{text}\n```json\n{json.dumps(envelope)}\n```"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def build_exercises():
    return [
        Exercise(id=1, name="Back Squat", aliases=["squat"], muscle_group="Legs",
                 primary_muscles=["quadriceps", "glutes"], required_equipment_ids=["barbell", "rack"]),
        Exercise(id=2, name="Goblet Squat", aliases=["db goblet squat"], muscle_group="Legs",
                 primary_muscles=["quadriceps"], required_equipment_ids=["dumbbell"]),
        Exercise(id=3, name="Romanian Deadlift", aliases=["rdl"], muscle_group="Legs",
                 primary_muscles=["hamstrings", "glutes"], required_equipment_ids=["barbell"]),
        Exercise(id=4, name="Walking Lunge", muscle_group="Legs", primary_muscles=["quadriceps", "glutes"]),
        Exercise(id=5, name="Standing Calf Raise", muscle_group="Legs", primary_muscles=["calves"]),
        Exercise(id=6, name="Bench Press", aliases=["bb bench"], muscle_group="Chest",
                 primary_muscles=["chest", "triceps"], required_equipment_ids=["barbell", "bench"]),
        Exercise(id=7, name="Overhead Press", aliases=["ohp"], muscle_group="Shoulders",
                 primary_muscles=["shoulders"], required_equipment_ids=["barbell"]),
        Exercise(id=8, name="Push-Up", aliases=["pushup"], muscle_group="Chest", primary_muscles=["chest"]),
        Exercise(id=9, name="Dumbbell Row", aliases=["db row"], muscle_group="Back",
                 primary_muscles=["lats"], required_equipment_ids=["dumbbell", "bench"]),
        Exercise(id=10, name="Pull-Up", muscle_group="Back", primary_muscles=["lats", "biceps"],
                 required_equipment_ids=["pullup_bar"]),
    ]


def build_store(**overrides):
    defaults = dict(
        exercises=build_exercises(),
        equipment=[
            Equipment(id="barbell", name="Barbell", category="free_weights"),
            Equipment(id="dumbbell", name="Dumbbells", category="free_weights"),
            Equipment(id="bench", name="Flat Bench", category="benches"),
            Equipment(id="rack", name="Squat Rack", category="racks"),
            Equipment(id="pullup_bar", name="Pull-Up Bar", category="bars"),
        ],
        spaces=[
            WorkoutSpace(id=1, name="Home Garage", equipment_ids=["dumbbell", "bench", "pullup_bar"], is_default=True),
            WorkoutSpace(id=2, name="Downtown Gym", equipment_ids=["barbell", "dumbbell", "bench", "rack", "pullup_bar"]),
        ],
        workouts=[
            Workout(
                id=1,
                started_at=NOW - timedelta(days=2, hours=1),
                finished_at=NOW - timedelta(days=2),
                session_note="Felt strong today",
                exercise_notes={2: "Slow eccentric"},
                items=[
                    WorkoutItem(exercise_id=2, sets=[WorkoutSet(set_number=i, weight=24, reps=10) for i in (1, 2, 3)]),
                    WorkoutItem(exercise_id=9, sets=[WorkoutSet(set_number=i, weight=30, reps=8) for i in (1, 2, 3)]),
                ],
            ),
            Workout(
                id=2,
                started_at=NOW - timedelta(days=5, hours=1),
                finished_at=NOW - timedelta(days=5),
                items=[
                    WorkoutItem(exercise_id=2, sets=[WorkoutSet(set_number=1, weight=28, reps=6)]),
                ],
            ),
        ],
        templates=[
            Template(
                id=1,
                name="Push Day",
                items=[
                    TemplateItem(exercise_id=6, sort_order=0, target_sets=4, target_reps=6),
                    TemplateItem(exercise_id=7, sort_order=1, target_sets=3, target_reps=8),
                    TemplateItem(exercise_id=8, sort_order=2, target_sets=3, target_reps=15),
                ],
            ),
        ],
        settings=Settings(weight_unit="kg", rest_enabled=True, rest_default_seconds=90),
    )
    defaults.update(overrides)
    return InMemoryCoachStore(**defaults)


@pytest.fixture
def store():
    return build_store()


@pytest.fixture
def all_scopes():
    return ContextScopes(sessions=True, templates=True, exercise_history=True, settings=True, spaces=True)


@pytest.fixture
def context_on(all_scopes):
    return ContextConfig(enabled=True, scopes=all_scopes, active_gym_id=1)
