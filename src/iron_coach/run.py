# run.py
# Entry point. Config and wiring only, no coach logic lives here.
#
#   python -m iron_coach.run
#
# Needs OPENAI_API_KEY (or OPENAI_BASE_URL for a compatible endpoint) in the
# environment or a .env file. Set COACH_TRACE=1 to see the turn trace.

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from iron_coach import display
from iron_coach.config import CoachSettings
from iron_coach.llm import OpenAIChatModel
from iron_coach.models import ContextConfig, ContextScopes, ResponseMode
from iron_coach.orchestrator import CoachOrchestrator
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

# Demo prompts: one general, one workout with context on, one template
# conversion, one with context off (must not claim to see equipment).
PROMPTS = [
    ("How should I warm up before heavy squats?", None, True),
    ("Build me a 45 minute leg workout for today.", None, True),
    ("Convert my push template into template JSON.", ResponseMode.TEMPLATE_JSON, True),
    ("Give me a quick upper body routine.", None, False),
]


def seed_store() -> InMemoryCoachStore:
    now = datetime.now(timezone.utc)
    exercises = [
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
    equipment = [
        Equipment(id="barbell", name="Barbell", category="free_weights"),
        Equipment(id="dumbbell", name="Dumbbells", category="free_weights"),
        Equipment(id="bench", name="Flat Bench", category="benches"),
        Equipment(id="rack", name="Squat Rack", category="racks"),
        Equipment(id="pullup_bar", name="Pull-Up Bar", category="bars"),
    ]
    spaces = [
        WorkoutSpace(id=1, name="Home Garage", equipment_ids=["dumbbell", "bench", "pullup_bar"], is_default=True),
        WorkoutSpace(id=2, name="Downtown Gym", equipment_ids=["barbell", "dumbbell", "bench", "rack", "pullup_bar"]),
    ]
    workouts = [
        Workout(
            id=1,
            started_at=now - timedelta(days=2, hours=1),
            finished_at=now - timedelta(days=2),
            items=[
                WorkoutItem(exercise_id=2, sets=[WorkoutSet(set_number=i, weight=24, reps=10) for i in (1, 2, 3)]),
                WorkoutItem(exercise_id=9, sets=[WorkoutSet(set_number=i, weight=30, reps=8) for i in (1, 2, 3)]),
            ],
        ),
    ]
    templates = [
        Template(
            id=1,
            name="Push Day",
            items=[
                TemplateItem(exercise_id=6, sort_order=0, target_sets=4, target_reps=6),
                TemplateItem(exercise_id=7, sort_order=1, target_sets=3, target_reps=8),
                TemplateItem(exercise_id=8, sort_order=2, target_sets=3, target_reps=15),
            ],
        ),
    ]
    return InMemoryCoachStore(
        exercises=exercises,
        equipment=equipment,
        spaces=spaces,
        workouts=workouts,
        templates=templates,
        settings=Settings(active_space_id=1, weight_unit="kg"),
    )


async def main() -> None:
    settings = CoachSettings.from_env()
    logging.basicConfig(level=logging.INFO if settings.trace else logging.WARNING)
    display.configure(settings.trace)

    store = seed_store()
    coach = CoachOrchestrator(OpenAIChatModel(settings), store, settings)
    scopes = ContextScopes(sessions=True, templates=True, exercise_history=True, settings=True, spaces=True)

    for prompt, mode, context_on in PROMPTS:
        config = ContextConfig(enabled=context_on, scopes=scopes, active_gym_id=1)
        result = await coach.run_turn(prompt, context_config=config, response_mode=mode)
        print(f"\n[{result.validation.status}] {result.assistant_text}\n")
        for proposal in result.pending_proposals:
            print(f"  pending: {proposal.summary}")


if __name__ == "__main__":
    asyncio.run(main())
