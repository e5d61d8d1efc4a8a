# store.py
# Persistent-store collaborator.
#
# The coach core never touches storage directly: tool handlers and the
# context builder call a CoachStore. Records are normalized here, once, so
# downstream code never has to default missing fields.
#
# InMemoryCoachStore is a reference implementation for tests and the demo.

from datetime import datetime, timezone
from typing import Any, Protocol

from pydantic import BaseModel, Field

BODYWEIGHT = "bodyweight"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class Exercise(BaseModel):
    id: int
    name: str = "Unknown Exercise"
    aliases: list[str] = Field(default_factory=list)
    muscle_group: str = "Unknown"
    primary_muscles: list[str] = Field(default_factory=list)
    secondary_muscles: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    equipment: list[str] = Field(default_factory=list)
    required_equipment_ids: list[str] = Field(default_factory=list)
    optional_equipment_ids: list[str] = Field(default_factory=list)
    is_custom: bool = False


class Equipment(BaseModel):
    id: str
    name: str = "Unknown"
    category: str = "unknown"


class WorkoutSpace(BaseModel):
    id: int
    name: str = "Untitled"
    description: str = ""
    equipment_ids: list[str] = Field(default_factory=list)
    is_default: bool = False
    is_temporary: bool = False
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if not self.is_temporary or self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now


class WorkoutSet(BaseModel):
    set_number: int | None = None
    weight: float | None = None
    reps: int | None = None


class WorkoutItem(BaseModel):
    exercise_id: int
    exercise: Exercise | None = None
    sets: list[WorkoutSet] = Field(default_factory=list)


class Workout(BaseModel):
    id: int
    started_at: datetime | None = None
    finished_at: datetime | None = None
    session_note: str = ""
    exercise_notes: dict[int, str] = Field(default_factory=dict)
    items: list[WorkoutItem] = Field(default_factory=list)

    @property
    def performed_at(self) -> datetime | None:
        return self.finished_at or self.started_at


class TemplateItem(BaseModel):
    exercise_id: int
    exercise: Exercise | None = None
    sort_order: int = 0
    target_sets: int | None = None
    target_reps: int | None = None
    notes: str = ""


class Template(BaseModel):
    id: int
    name: str = "Untitled"
    space_id: int | None = None
    updated_at: datetime | None = None
    items: list[TemplateItem] = Field(default_factory=list)


class Settings(BaseModel):
    rest_enabled: bool | None = None
    rest_default_seconds: int | None = None
    weight_unit: str | None = None
    active_space_id: int | None = None
    coach_memory: dict[str, Any] | None = None


class PlannedWorkout(BaseModel):
    date: str
    template_id: int | None = None
    exercises: list[dict[str, Any]] | None = None
    source: str = "coach"


def normalize_gym_name(name: str | None) -> str:
    return " ".join(str(name or "").lower().split())


def resolve_active_space(
    spaces: list[WorkoutSpace], active_id: int | None
) -> WorkoutSpace | None:
    """The non-expired space matching active_id, if any."""
    if active_id is None:
        return None
    for space in spaces:
        if space.id == active_id and not space.is_expired():
            return space
    return None


def missing_equipment_ids(exercise: Exercise, available: list[str]) -> list[str]:
    """Required equipment for `exercise` that `available` does not cover."""
    have = set(available) | {BODYWEIGHT}
    return [eq for eq in exercise.required_equipment_ids if eq not in have]


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class CoachStore(Protocol):
    """Read queries and write mutations consumed by the coach core.

    All operations are treated as already-transactional and opaque.
    """

    async def list_recent_workouts(self, limit: int) -> list[Workout]: ...

    async def get_workout(self, workout_id: int) -> Workout | None: ...

    async def list_templates(self) -> list[Template]: ...

    async def get_template(self, template_id: int) -> Template | None: ...

    async def list_exercises(self) -> list[Exercise]: ...

    async def list_equipment(self) -> list[Equipment]: ...

    async def list_workout_spaces(self) -> list[WorkoutSpace]: ...

    async def get_workout_space(self, space_id: int) -> WorkoutSpace | None: ...

    async def get_settings(self) -> Settings: ...

    async def create_template(
        self, name: str, space_id: int | None, items: list[TemplateItem]
    ) -> int: ...

    async def add_planned_workout(self, planned: PlannedWorkout) -> int: ...

    async def save_settings(self, settings: Settings) -> None: ...

    async def create_workout_space(
        self,
        name: str,
        description: str = "",
        equipment_ids: list[str] | None = None,
        is_default: bool = False,
        is_temporary: bool = False,
        expires_at: datetime | None = None,
    ) -> int: ...

    async def update_workout_space(self, space_id: int, patch: dict[str, Any]) -> None: ...

    async def set_active_workout_space(self, space_id: int) -> None: ...

    async def create_custom_exercise(self, name: str) -> int: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryCoachStore:
    """Dict-backed CoachStore. Joins exercises onto items on read."""

    def __init__(
        self,
        exercises: list[Exercise] | None = None,
        equipment: list[Equipment] | None = None,
        spaces: list[WorkoutSpace] | None = None,
        workouts: list[Workout] | None = None,
        templates: list[Template] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.exercises: dict[int, Exercise] = {ex.id: ex for ex in exercises or []}
        self.equipment: dict[str, Equipment] = {eq.id: eq for eq in equipment or []}
        self.spaces: dict[int, WorkoutSpace] = {sp.id: sp for sp in spaces or []}
        self.workouts: dict[int, Workout] = {wo.id: wo for wo in workouts or []}
        self.templates: dict[int, Template] = {tp.id: tp for tp in templates or []}
        self.settings: Settings = settings or Settings()
        self.planned: list[PlannedWorkout] = []

    @staticmethod
    def _next_id(existing: dict[int, Any]) -> int:
        return max(existing, default=0) + 1

    def _join_workout(self, workout: Workout) -> Workout:
        items = [
            item.model_copy(update={"exercise": self.exercises.get(item.exercise_id)})
            for item in workout.items
        ]
        return workout.model_copy(update={"items": items})

    def _join_template(self, template: Template) -> Template:
        items = sorted(
            (
                item.model_copy(update={"exercise": self.exercises.get(item.exercise_id)})
                for item in template.items
            ),
            key=lambda item: item.sort_order,
        )
        return template.model_copy(update={"items": items})

    # -- reads ---------------------------------------------------------------

    async def list_recent_workouts(self, limit: int) -> list[Workout]:
        epoch = datetime.min.replace(tzinfo=timezone.utc)

        def sort_key(workout: Workout) -> datetime:
            when = workout.performed_at or epoch
            return when if when.tzinfo else when.replace(tzinfo=timezone.utc)

        ordered = sorted(self.workouts.values(), key=sort_key, reverse=True)
        return [self._join_workout(wo) for wo in ordered[:limit]]

    async def get_workout(self, workout_id: int) -> Workout | None:
        workout = self.workouts.get(workout_id)
        return self._join_workout(workout) if workout else None

    async def list_templates(self) -> list[Template]:
        return [self._join_template(tp) for tp in self.templates.values()]

    async def get_template(self, template_id: int) -> Template | None:
        template = self.templates.get(template_id)
        return self._join_template(template) if template else None

    async def list_exercises(self) -> list[Exercise]:
        return list(self.exercises.values())

    async def list_equipment(self) -> list[Equipment]:
        return list(self.equipment.values())

    async def list_workout_spaces(self) -> list[WorkoutSpace]:
        return list(self.spaces.values())

    async def get_workout_space(self, space_id: int) -> WorkoutSpace | None:
        return self.spaces.get(space_id)

    async def get_settings(self) -> Settings:
        return self.settings

    # -- writes --------------------------------------------------------------

    async def create_template(
        self, name: str, space_id: int | None, items: list[TemplateItem]
    ) -> int:
        template_id = self._next_id(self.templates)
        self.templates[template_id] = Template(
            id=template_id,
            name=name,
            space_id=space_id,
            updated_at=datetime.now(timezone.utc),
            items=items,
        )
        return template_id

    async def add_planned_workout(self, planned: PlannedWorkout) -> int:
        self.planned.append(planned)
        return len(self.planned)

    async def save_settings(self, settings: Settings) -> None:
        self.settings = settings

    async def create_workout_space(
        self,
        name: str,
        description: str = "",
        equipment_ids: list[str] | None = None,
        is_default: bool = False,
        is_temporary: bool = False,
        expires_at: datetime | None = None,
    ) -> int:
        space_id = self._next_id(self.spaces)
        self.spaces[space_id] = WorkoutSpace(
            id=space_id,
            name=name,
            description=description,
            equipment_ids=list(equipment_ids or []),
            is_default=is_default,
            is_temporary=is_temporary,
            expires_at=expires_at,
        )
        return space_id

    async def update_workout_space(self, space_id: int, patch: dict[str, Any]) -> None:
        space = self.spaces.get(space_id)
        if space is None:
            raise KeyError(f"Workout space {space_id} not found.")
        self.spaces[space_id] = space.model_copy(update=patch)

    async def set_active_workout_space(self, space_id: int) -> None:
        self.settings = self.settings.model_copy(update={"active_space_id": space_id})

    async def create_custom_exercise(self, name: str) -> int:
        exercise_id = self._next_id(self.exercises)
        self.exercises[exercise_id] = Exercise(id=exercise_id, name=name, is_custom=True)
        return exercise_id
