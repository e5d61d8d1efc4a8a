# tools.py
# Tool registry: the fixed coach tool catalog.
#
# Each ToolName maps to one immutable ToolDefinition (schema, write flag,
# handler). The orchestrator looks tools up through get_tool() and never
# calls handlers directly; write tools only run via execute_tool() after an
# explicit confirmation.
#
# Input schemas are JSON Schema (validated with jsonschema). Handlers return
# JSON-ready dicts and raise ToolExecutionError for domain failures.

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from functools import lru_cache
from typing import Any, Awaitable, Callable, Iterable, NamedTuple

from jsonschema import Draft202012Validator

from iron_coach.memory import upsert_goal
from iron_coach.models import ContextScopes
from iron_coach.store import (
    BODYWEIGHT,
    CoachStore,
    Exercise,
    PlannedWorkout,
    TemplateItem,
    Workout,
    WorkoutSpace,
    missing_equipment_ids,
    normalize_gym_name,
    resolve_active_space,
)

MAX_LIST_LIMIT = 50
MAX_SESSION_LIMIT = 20
MAX_RANGE_DAYS = 365
MAX_SUBSTITUTIONS = 5


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ToolNotFoundError(Exception):
    """Raised when a tool name is absent from the registry."""


class ToolExecutionError(Exception):
    """Raised by a handler when the request cannot be fulfilled."""


# ---------------------------------------------------------------------------
# Registry types
# ---------------------------------------------------------------------------


class ToolName(str, Enum):
    GET_RECENT_SESSIONS = "get_recent_sessions"
    GET_SESSION_DETAIL = "get_session_detail"
    GET_TRAINING_SUMMARY = "get_training_summary"
    GET_TEMPLATES = "get_templates"
    GET_TEMPLATE_DETAIL = "get_template_detail"
    SEARCH_EXERCISES = "search_exercises"
    GET_EXERCISE_HISTORY = "get_exercise_history"
    GET_PERSONAL_RECORDS = "get_personal_records"
    GET_WORKOUT_SPACES = "get_workout_spaces"
    GET_ACTIVE_SPACE = "get_active_space"
    GET_EQUIPMENT_FOR_SPACE = "get_equipment_for_space"
    GET_EXERCISE_SUBSTITUTIONS = "get_exercise_substitutions"
    CREATE_TEMPLATE = "create_template"
    ADD_PLANNED_WORKOUT = "add_planned_workout"
    UPDATE_USER_GOAL = "update_user_goal"
    CREATE_WORKOUT_SPACE = "create_workout_space"
    UPDATE_WORKOUT_SPACE = "update_workout_space"
    SET_ACTIVE_SPACE = "set_active_space"


@dataclass
class ToolContext:
    """Per-turn collaborators handed to every handler."""

    store: CoachStore
    scopes: ContextScopes
    active_gym_id: int | None = None
    now: datetime | None = None

    def clock(self) -> datetime:
        return self.now or datetime.now(timezone.utc)


Handler = Callable[[dict[str, Any], ToolContext], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ToolDefinition:
    name: ToolName
    description: str
    input_schema: dict[str, Any]
    is_write_tool: bool
    handler: Handler

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class ToolInputValidation(NamedTuple):
    valid: bool
    errors: list[str]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _clamp_limit(value: Any, fallback: int, high: int) -> int:
    try:
        parsed = int(value if value is not None else fallback)
    except (TypeError, ValueError):
        return fallback
    return max(1, min(high, parsed))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _parse_expires_at(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ToolExecutionError("expiresAt must be an ISO 8601 date.") from exc


def _sets(workout_item: Any) -> list[dict[str, Any]]:
    return [{"set_number": s.set_number, "weight": s.weight, "reps": s.reps} for s in workout_item.sets]


async def _recent_workouts(store: CoachStore, limit: int) -> list[Workout]:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    workouts = await store.list_recent_workouts(limit)
    return sorted(workouts, key=lambda w: _aware(w.performed_at) if w.performed_at else epoch, reverse=True)


async def _find_exercise(store: CoachStore, id_or_name: Any) -> Exercise | None:
    text = str(id_or_name if id_or_name is not None else "").strip()
    if not text:
        return None
    exercises = await store.list_exercises()
    if text.isdigit():
        return next((ex for ex in exercises if ex.id == int(text)), None)
    lowered = text.lower()
    return next((ex for ex in exercises if ex.name.lower() == lowered), None)


def _space_by_name(spaces: list[WorkoutSpace], name: str) -> WorkoutSpace | None:
    wanted = normalize_gym_name(name)
    if not wanted:
        return None
    return next(
        (s for s in spaces if not s.is_expired() and normalize_gym_name(s.name) == wanted),
        None,
    )


async def _valid_equipment_ids(store: CoachStore, equipment_ids: Iterable[str]) -> list[str]:
    known = {eq.id for eq in await store.list_equipment()}
    return [eq for eq in equipment_ids if eq in known]


# ---------------------------------------------------------------------------
# Read handlers
# ---------------------------------------------------------------------------


async def _get_recent_sessions(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    limit = _clamp_limit(args.get("limit"), 5, MAX_SESSION_LIMIT)
    sessions = []
    for workout in await _recent_workouts(ctx.store, limit):
        summary = {
            "id": workout.id,
            "started_at": _iso(workout.started_at),
            "finished_at": _iso(workout.finished_at),
            "total_exercises": len(workout.items),
            "total_sets": sum(len(item.sets) for item in workout.items),
        }
        if ctx.scopes.notes:
            summary["session_note"] = workout.session_note
        sessions.append(summary)
    return {"sessions": sessions}


async def _get_session_detail(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    workout = await ctx.store.get_workout(args["sessionId"])
    if workout is None:
        return {"error": "Session not found."}
    include_notes = ctx.scopes.notes
    return {
        "id": workout.id,
        "started_at": _iso(workout.started_at),
        "finished_at": _iso(workout.finished_at),
        "session_note": workout.session_note if include_notes else "",
        "exercises": [
            {
                "exercise_id": item.exercise_id,
                "name": item.exercise.name if item.exercise else "Unknown Exercise",
                "muscle_group": item.exercise.muscle_group if item.exercise else "Unknown",
                "note": workout.exercise_notes.get(item.exercise_id, "") if include_notes else "",
                "sets": _sets(item),
            }
            for item in workout.items
        ],
    }


async def _get_training_summary(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    days = _clamp_limit(args.get("rangeDays"), 30, MAX_RANGE_DAYS)
    now = _aware(ctx.clock())
    cutoff = now - timedelta(days=days)

    sessions = [
        w
        for w in await _recent_workouts(ctx.store, MAX_SESSION_LIMIT)
        if w.performed_at and _aware(w.performed_at) >= cutoff
    ]

    total_sets = total_exercises = 0
    total_volume = 0.0
    dates: set[date] = set()
    for workout in sessions:
        dates.add(_aware(workout.performed_at).date())
        for item in workout.items:
            total_exercises += 1
            for s in item.sets:
                total_sets += 1
                if s.weight is not None and s.reps is not None:
                    total_volume += s.weight * s.reps

    streak = 0
    cursor = now.date()
    for day in sorted(dates, reverse=True):
        if day != cursor:
            break
        streak += 1
        cursor -= timedelta(days=1)

    return {
        "range_days": days,
        "workouts": len(sessions),
        "total_exercises": total_exercises,
        "total_sets": total_sets,
        "total_volume": round(total_volume) if total_volume else None,
        "streak_days": streak,
    }


async def _get_templates(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    limit = _clamp_limit(args.get("limit"), 10, MAX_LIST_LIMIT)
    templates = sorted(await ctx.store.list_templates(), key=lambda t: t.name)
    return {
        "templates": [
            {"id": t.id, "name": t.name, "updated_at": _iso(t.updated_at)} for t in templates[:limit]
        ]
    }


async def _get_template_detail(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    template = await ctx.store.get_template(args["templateId"])
    if template is None:
        return {"error": "Template not found."}
    return {
        "id": template.id,
        "name": template.name,
        "exercises": [
            {
                "exercise_id": item.exercise_id,
                "name": item.exercise.name if item.exercise else "Unknown Exercise",
                "muscle_group": item.exercise.muscle_group if item.exercise else "Unknown",
                "target_sets": item.target_sets,
                "target_reps": item.target_reps,
            }
            for item in template.items
        ],
    }


async def _search_exercises(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    limit = _clamp_limit(args.get("limit"), 10, MAX_LIST_LIMIT)
    query = str(args.get("query", "")).lower()
    group = str(args.get("muscleGroup") or "").lower()

    matches = [
        ex
        for ex in await ctx.store.list_exercises()
        if (query in ex.name.lower() or query in ex.muscle_group.lower())
        and (not group or ex.muscle_group.lower() == group)
    ]
    matches.sort(key=lambda ex: ex.name)
    return {
        "exercises": [
            {
                "id": ex.id,
                "name": ex.name,
                "muscle_group": ex.muscle_group,
                "required_equipment_ids": ex.required_equipment_ids,
                "optional_equipment_ids": ex.optional_equipment_ids,
            }
            for ex in matches[:limit]
        ]
    }


async def _get_exercise_history(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    exercise = await _find_exercise(ctx.store, args.get("exerciseIdOrName"))
    if exercise is None:
        return {"error": "Exercise not found."}
    limit = _clamp_limit(args.get("limit"), 5, MAX_SESSION_LIMIT)

    history = []
    for workout in await _recent_workouts(ctx.store, MAX_SESSION_LIMIT):
        item = next((it for it in workout.items if it.exercise_id == exercise.id), None)
        if item is not None:
            history.append(
                {"session_id": workout.id, "date": _iso(workout.performed_at), "sets": _sets(item)}
            )
    return {"exercise": {"id": exercise.id, "name": exercise.name}, "history": history[:limit]}


async def _get_personal_records(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    target = None
    if args.get("exerciseIdOrName"):
        target = await _find_exercise(ctx.store, args["exerciseIdOrName"])
    names = {ex.id: ex.name for ex in await ctx.store.list_exercises()}

    records: dict[int, dict[str, Any]] = {}
    for workout in await _recent_workouts(ctx.store, MAX_SESSION_LIMIT):
        for item in workout.items:
            if target is not None and item.exercise_id != target.id:
                continue
            record = records.setdefault(
                item.exercise_id, {"max_weight": None, "max_reps": None, "last_date": None}
            )
            for s in item.sets:
                if s.weight is not None and (record["max_weight"] is None or s.weight > record["max_weight"]):
                    record["max_weight"] = s.weight
                    record["last_date"] = _iso(workout.performed_at)
                if s.reps is not None and (record["max_reps"] is None or s.reps > record["max_reps"]):
                    record["max_reps"] = s.reps
                    record["last_date"] = _iso(workout.performed_at)

    rows = [
        {"exercise_id": exercise_id, "name": names.get(exercise_id, "Unknown"), **record}
        for exercise_id, record in records.items()
    ]
    return {"records": sorted(rows, key=lambda r: r["name"])}


async def _get_workout_spaces(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    spaces = sorted(await ctx.store.list_workout_spaces(), key=lambda s: s.name)
    return {
        "spaces": [
            {
                "id": s.id,
                "name": s.name,
                "description": s.description,
                "equipment_count": len(s.equipment_ids),
                "is_default": s.is_default,
                "is_temporary": s.is_temporary,
                "expires_at": _iso(s.expires_at),
            }
            for s in spaces
        ]
    }


async def _get_active_space(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    active = resolve_active_space(await ctx.store.list_workout_spaces(), ctx.active_gym_id)
    if active is None:
        return {"active_space": None}
    return {
        "active_space": {
            "id": active.id,
            "name": active.name,
            "equipment_count": len(active.equipment_ids),
            "is_temporary": active.is_temporary,
            "expires_at": _iso(active.expires_at),
        }
    }


async def _get_equipment_for_space(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    if args.get("spaceId"):
        target = await ctx.store.get_workout_space(args["spaceId"])
    else:
        target = resolve_active_space(await ctx.store.list_workout_spaces(), ctx.active_gym_id)
    if target is None:
        return {"error": "Space not found."}
    by_id = {eq.id: eq for eq in await ctx.store.list_equipment()}
    return {
        "space": {
            "id": target.id,
            "name": target.name,
            "is_temporary": target.is_temporary,
            "expires_at": _iso(target.expires_at),
        },
        "equipment": [
            {"id": eq.id, "name": eq.name, "category": eq.category}
            for eq in (by_id.get(i) for i in target.equipment_ids)
            if eq is not None
        ],
    }


async def _get_exercise_substitutions(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    exercises = await ctx.store.list_exercises()
    exercise = next((ex for ex in exercises if ex.id == args["exerciseId"]), None)
    if exercise is None:
        return {"error": "Exercise not found."}

    if args.get("spaceId"):
        space = await ctx.store.get_workout_space(args["spaceId"])
    else:
        space = resolve_active_space(await ctx.store.list_workout_spaces(), ctx.active_gym_id)
    equipment_names = {eq.id: eq.name for eq in await ctx.store.list_equipment()}

    group = exercise.muscle_group.lower()
    options = [
        ex
        for ex in exercises
        if ex.id != exercise.id
        and ex.muscle_group.lower() == group
        and (space is None or not missing_equipment_ids(ex, space.equipment_ids))
    ]
    options.sort(key=lambda ex: ex.name)

    substitutions = []
    for option in options[:MAX_SUBSTITUTIONS]:
        equipment_id = next(iter(option.required_equipment_ids), BODYWEIGHT)
        substitutions.append(
            {
                "exercise_id": option.id,
                "name": option.name,
                "equipment_id": equipment_id,
                "reason": f"Uses {equipment_names.get(equipment_id, equipment_id)}",
            }
        )
    return {"substitutions": substitutions}


# ---------------------------------------------------------------------------
# Write handlers (only reached through an explicit confirmation)
# ---------------------------------------------------------------------------


async def _create_template(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    known = {ex.id for ex in await ctx.store.list_exercises()}
    for entry in args["exercises"]:
        if entry["exerciseId"] not in known:
            raise ToolExecutionError(f"Exercise {entry['exerciseId']} not found.")
    space_id = args.get("spaceId")
    if space_id is not None and await ctx.store.get_workout_space(space_id) is None:
        raise ToolExecutionError("Workout space not found.")

    items = [
        TemplateItem(
            exercise_id=entry["exerciseId"],
            sort_order=index,
            target_sets=entry.get("sets"),
            target_reps=entry.get("reps"),
            notes=f"Warmup sets: {entry['warmupSets']}" if entry.get("warmupSets") else "",
        )
        for index, entry in enumerate(args["exercises"])
    ]
    name = str(args.get("name", "")).strip() or "Untitled Template"
    template_id = await ctx.store.create_template(name, space_id, items)
    return {
        "template_id": template_id,
        "exercises": [{"exercise_id": item.exercise_id} for item in items],
    }


async def _add_planned_workout(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    template_id = args.get("templateId")
    exercises = args.get("exercises")
    if not template_id and not exercises:
        raise ToolExecutionError("Provide a templateId or exercises.")
    if template_id and await ctx.store.get_template(template_id) is None:
        raise ToolExecutionError("Template not found.")
    planned_id = await ctx.store.add_planned_workout(
        PlannedWorkout(date=args["date"], template_id=template_id, exercises=exercises or None)
    )
    return {"planned_workout_id": planned_id}


async def _update_user_goal(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    settings = await ctx.store.get_settings()
    memory = upsert_goal(settings.coach_memory, args["goalType"], args["value"], args.get("notes"))
    await ctx.store.save_settings(settings.model_copy(update={"coach_memory": memory.model_dump()}))
    return {"updated": True}


async def _create_workout_space(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    spaces = await ctx.store.list_workout_spaces()
    active = resolve_active_space(spaces, ctx.active_gym_id)
    if active is not None:
        return {"space_id": active.id, "reused": True, "match": "active"}
    named = _space_by_name(spaces, args["name"])
    if named is not None:
        return {"space_id": named.id, "reused": True, "match": "name"}

    space_id = await ctx.store.create_workout_space(
        args["name"],
        description=args.get("description") or "",
        equipment_ids=await _valid_equipment_ids(ctx.store, args.get("equipmentIds") or []),
        is_default=bool(args.get("isDefault")),
        is_temporary=bool(args.get("isTemporary")),
        expires_at=_parse_expires_at(args.get("expiresAt")),
    )
    return {"space_id": space_id}


async def _update_workout_space(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    space_id = args["spaceId"]
    if await ctx.store.get_workout_space(space_id) is None:
        raise ToolExecutionError("Workout space not found.")

    patch: dict[str, Any] = {}
    for key, field in (
        ("name", "name"),
        ("description", "description"),
        ("isDefault", "is_default"),
        ("isTemporary", "is_temporary"),
    ):
        if args.get(key) is not None:
            patch[field] = args[key]
    if "equipmentIds" in args:
        patch["equipment_ids"] = await _valid_equipment_ids(ctx.store, args["equipmentIds"] or [])
    if "expiresAt" in args:
        patch["expires_at"] = _parse_expires_at(args["expiresAt"])

    await ctx.store.update_workout_space(space_id, patch)
    return {"updated": True}


async def _set_active_space(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    space_id = args["spaceId"]
    if await ctx.store.get_workout_space(space_id) is None:
        raise ToolExecutionError("Workout space not found.")
    await ctx.store.set_active_workout_space(space_id)
    return {"active_space_id": space_id}


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def _object(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


_LIMIT = {"type": "integer", "minimum": 1, "maximum": MAX_LIST_LIMIT}
_SESSION_LIMIT = {"type": "integer", "minimum": 1, "maximum": MAX_SESSION_LIMIT}
_ID = {"type": "integer"}
_SPACE_FIELDS = {
    "description": {"type": "string", "maxLength": 200},
    "equipmentIds": {"type": "array", "items": {"type": "string"}},
    "isDefault": {"type": "boolean"},
    "isTemporary": {"type": "boolean"},
    "expiresAt": {"type": ["string", "null"], "maxLength": 32},
}


def _tool(name: ToolName, description: str, schema: dict[str, Any], handler: Handler, write: bool = False) -> ToolDefinition:
    return ToolDefinition(name=name, description=description, input_schema=schema, is_write_tool=write, handler=handler)


TOOLS: dict[ToolName, ToolDefinition] = {
    tool.name: tool
    for tool in (
        _tool(
            ToolName.GET_RECENT_SESSIONS,
            "Get recent workout sessions with summary stats.",
            _object({"limit": _SESSION_LIMIT}),
            _get_recent_sessions,
        ),
        _tool(
            ToolName.GET_SESSION_DETAIL,
            "Get detailed data for a single workout session.",
            _object({"sessionId": _ID}, ["sessionId"]),
            _get_session_detail,
        ),
        _tool(
            ToolName.GET_TRAINING_SUMMARY,
            "Summarize training volume and streaks for a given time window.",
            _object({"rangeDays": {"type": "integer", "minimum": 1, "maximum": MAX_RANGE_DAYS}}),
            _get_training_summary,
        ),
        _tool(
            ToolName.GET_TEMPLATES,
            "List available workout templates with summary info.",
            _object({"limit": _LIMIT}),
            _get_templates,
        ),
        _tool(
            ToolName.GET_TEMPLATE_DETAIL,
            "Get full details for a template.",
            _object({"templateId": _ID}, ["templateId"]),
            _get_template_detail,
        ),
        _tool(
            ToolName.SEARCH_EXERCISES,
            "Search exercises by name or muscle group.",
            _object(
                {
                    "query": {"type": "string", "minLength": 1},
                    "limit": _LIMIT,
                    "muscleGroup": {"type": "string"},
                },
                ["query"],
            ),
            _search_exercises,
        ),
        _tool(
            ToolName.GET_EXERCISE_HISTORY,
            "Get recent sessions that include the specified exercise.",
            _object({"exerciseIdOrName": {"type": "string"}, "limit": _SESSION_LIMIT}, ["exerciseIdOrName"]),
            _get_exercise_history,
        ),
        _tool(
            ToolName.GET_PERSONAL_RECORDS,
            "Detect personal records from recent workout history.",
            _object({"exerciseIdOrName": {"type": "string"}}),
            _get_personal_records,
        ),
        _tool(
            ToolName.GET_WORKOUT_SPACES,
            "List available workout spaces and equipment counts.",
            _object({}),
            _get_workout_spaces,
        ),
        _tool(
            ToolName.GET_ACTIVE_SPACE,
            "Get the active workout space.",
            _object({}),
            _get_active_space,
        ),
        _tool(
            ToolName.GET_EQUIPMENT_FOR_SPACE,
            "Get equipment available for a workout space.",
            _object({"spaceId": _ID}),
            _get_equipment_for_space,
        ),
        _tool(
            ToolName.GET_EXERCISE_SUBSTITUTIONS,
            "Suggest available substitutions for an exercise in a workout space.",
            _object({"exerciseId": _ID, "spaceId": _ID}, ["exerciseId"]),
            _get_exercise_substitutions,
        ),
        _tool(
            ToolName.CREATE_TEMPLATE,
            "Create a workout template with exercises and targets.",
            _object(
                {
                    "name": {"type": "string", "minLength": 1, "maxLength": 80},
                    "spaceId": _ID,
                    "exercises": {
                        "type": "array",
                        "minItems": 1,
                        "maxItems": 20,
                        "items": _object(
                            {"exerciseId": _ID, "sets": _ID, "reps": _ID, "warmupSets": _ID},
                            ["exerciseId"],
                        ),
                    },
                },
                ["name", "exercises"],
            ),
            _create_template,
            write=True,
        ),
        _tool(
            ToolName.ADD_PLANNED_WORKOUT,
            "Add a planned workout entry with a date and optional template or exercise list.",
            _object(
                {
                    "date": {"type": "string", "minLength": 4, "maxLength": 32},
                    "templateId": _ID,
                    "exercises": {
                        "type": "array",
                        "maxItems": 20,
                        "items": _object({"exerciseId": _ID, "sets": _ID, "reps": _ID}, ["exerciseId"]),
                    },
                },
                ["date"],
            ),
            _add_planned_workout,
            write=True,
        ),
        _tool(
            ToolName.UPDATE_USER_GOAL,
            "Update a user goal in Coach Memory.",
            _object(
                {
                    "goalType": {"type": "string", "minLength": 1, "maxLength": 40},
                    "value": {"type": "string", "minLength": 1, "maxLength": 120},
                    "notes": {"type": "string", "maxLength": 240},
                },
                ["goalType", "value"],
            ),
            _update_user_goal,
            write=True,
        ),
        _tool(
            ToolName.CREATE_WORKOUT_SPACE,
            "Create a workout space with an equipment list.",
            _object({"name": {"type": "string", "minLength": 1, "maxLength": 80}, **_SPACE_FIELDS}, ["name"]),
            _create_workout_space,
            write=True,
        ),
        _tool(
            ToolName.UPDATE_WORKOUT_SPACE,
            "Update an existing workout space.",
            _object(
                {"spaceId": _ID, "name": {"type": "string", "minLength": 1, "maxLength": 80}, **_SPACE_FIELDS},
                ["spaceId"],
            ),
            _update_workout_space,
            write=True,
        ),
        _tool(
            ToolName.SET_ACTIVE_SPACE,
            "Set the active workout space used for new workouts.",
            _object({"spaceId": _ID}, ["spaceId"]),
            _set_active_space,
            write=True,
        ),
    )
}

# Read tools per context scope (ContextScopes field names).
READ_TOOL_SCOPES: dict[str, tuple[ToolName, ...]] = {
    "sessions": (
        ToolName.GET_RECENT_SESSIONS,
        ToolName.GET_SESSION_DETAIL,
        ToolName.GET_TRAINING_SUMMARY,
    ),
    "templates": (ToolName.GET_TEMPLATES, ToolName.GET_TEMPLATE_DETAIL),
    "exercise_history": (
        ToolName.SEARCH_EXERCISES,
        ToolName.GET_EXERCISE_HISTORY,
        ToolName.GET_PERSONAL_RECORDS,
    ),
    "spaces": (
        ToolName.GET_WORKOUT_SPACES,
        ToolName.GET_ACTIVE_SPACE,
        ToolName.GET_EQUIPMENT_FOR_SPACE,
        ToolName.GET_EXERCISE_SUBSTITUTIONS,
    ),
}

WRITE_TOOLS: frozenset[ToolName] = frozenset(name for name, tool in TOOLS.items() if tool.is_write_tool)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def get_tool(name: str) -> ToolDefinition | None:
    try:
        return TOOLS[ToolName(name)]
    except ValueError:
        return None


def is_write_tool(name: str) -> bool:
    tool = get_tool(name)
    return bool(tool and tool.is_write_tool)


def allowed_tool_names(
    scopes: ContextScopes, *, context_enabled: bool, enable_write_tools: bool
) -> list[str]:
    """Read tools for enabled scopes (only with context on), plus write tools when enabled."""
    allowed: list[str] = []
    if context_enabled:
        for scope, names in READ_TOOL_SCOPES.items():
            if getattr(scopes, scope):
                allowed.extend(name.value for name in names)
    if enable_write_tools:
        allowed.extend(name.value for name in ToolName if name in WRITE_TOOLS)
    return allowed


@lru_cache(maxsize=1)
def _catalog() -> dict[str, dict[str, Any]]:
    return {name.value: tool.to_openai() for name, tool in TOOLS.items()}


def openai_tools(allowed: Iterable[str]) -> list[dict[str, Any]]:
    """OpenAI function-tool definitions for the allow-listed names, catalog order."""
    wanted = set(allowed)
    return [spec for name, spec in _catalog().items() if name in wanted]


@lru_cache(maxsize=None)
def _validator(name: ToolName) -> Draft202012Validator:
    return Draft202012Validator(TOOLS[name].input_schema)


def validate_tool_input(tool: ToolDefinition, payload: Any) -> ToolInputValidation:
    errors = sorted(_validator(tool.name).iter_errors(payload), key=lambda err: list(err.path))
    messages = [f"{'/'.join(map(str, err.path)) or '<root>'}: {err.message}" for err in errors]
    return ToolInputValidation(not messages, messages)


_SUMMARIES: dict[ToolName, Callable[[dict[str, Any]], str]] = {
    ToolName.CREATE_TEMPLATE: lambda a: (
        f"Create template: {a.get('name') or 'Untitled'} ({len(a.get('exercises') or [])} exercises)"
    ),
    ToolName.ADD_PLANNED_WORKOUT: lambda a: f"Add planned workout: {a.get('date') or 'Unknown date'}",
    ToolName.UPDATE_USER_GOAL: lambda a: f"Update goal: {a.get('goalType') or 'Goal'}",
    ToolName.GET_RECENT_SESSIONS: lambda a: f"Fetch recent sessions ({a.get('limit', 'default')})",
    ToolName.GET_SESSION_DETAIL: lambda a: f"Fetch session detail ({a.get('sessionId', 'unknown')})",
    ToolName.GET_TEMPLATES: lambda a: f"Fetch templates ({a.get('limit', 'default')})",
    ToolName.GET_TEMPLATE_DETAIL: lambda a: f"Fetch template detail ({a.get('templateId', 'unknown')})",
    ToolName.SEARCH_EXERCISES: lambda a: f"Search exercises ({a.get('query', '')})",
    ToolName.GET_EXERCISE_HISTORY: lambda a: f"Fetch exercise history ({a.get('exerciseIdOrName', 'unknown')})",
    ToolName.GET_EXERCISE_SUBSTITUTIONS: lambda a: f"Fetch substitutions ({a.get('exerciseId', 'unknown')})",
    ToolName.GET_PERSONAL_RECORDS: lambda a: "Fetch personal records",
    ToolName.GET_TRAINING_SUMMARY: lambda a: f"Fetch training summary ({a.get('rangeDays', 'default')} days)",
    ToolName.GET_WORKOUT_SPACES: lambda a: "Fetch workout spaces",
    ToolName.GET_ACTIVE_SPACE: lambda a: "Fetch active space",
    ToolName.GET_EQUIPMENT_FOR_SPACE: lambda a: f"Fetch equipment for space ({a.get('spaceId', 'active')})",
    ToolName.CREATE_WORKOUT_SPACE: lambda a: f"Create workout space: {a.get('name') or 'Untitled'}",
    ToolName.UPDATE_WORKOUT_SPACE: lambda a: f"Update workout space: {a.get('spaceId', 'unknown')}",
    ToolName.SET_ACTIVE_SPACE: lambda a: f"Set active space: {a.get('spaceId', 'unknown')}",
}


def summarize_tool_call(name: str, payload: Any) -> str:
    """Short human-readable line for the UI and proposal cards."""
    args = payload if isinstance(payload, dict) else {}
    try:
        return _SUMMARIES[ToolName(name)](args)
    except ValueError:
        return name


async def execute_tool(name: str, payload: dict[str, Any] | None, context: ToolContext) -> dict[str, Any]:
    tool = get_tool(name)
    if tool is None:
        raise ToolNotFoundError(f"Tool '{name}' is not in the registry.")
    return await tool.handler(payload or {}, context)
