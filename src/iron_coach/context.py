# context.py
# Context snapshot builder.
#
# Assembles a byte-budgeted, JSON-ready summary of the user's data for the
# model. Snapshots are built fresh every turn and never mutated afterwards:
# truncation always produces new dicts.
#
# The contract is computed from the pre-truncation snapshot so UI trust
# indicators stay accurate even when the payload itself was trimmed.

import time
from datetime import datetime, timezone
from typing import Any, Callable, NamedTuple

from iron_coach.fingerprint import payload_size
from iron_coach.memory import summarize_memory
from iron_coach.models import (
    ContextContract,
    ContextMeta,
    ContextScopes,
    ExerciseCandidate,
    LaunchContext,
)
from iron_coach.resolver import normalize_tokens
from iron_coach.store import (
    BODYWEIGHT,
    CoachStore,
    Exercise,
    Settings,
    Template,
    Workout,
    missing_equipment_ids,
    resolve_active_space,
)

DEFAULT_SESSION_LIMIT = 5
MAX_SESSION_LIMIT = 20
DEFAULT_TEMPLATE_LIMIT = 10
MAX_TEMPLATE_LIMIT = 50
DEFAULT_MAX_BYTES = 60_000
MIN_MAX_BYTES = 1_024
MAX_MISSING_EXERCISES = 20
MAX_LAST_USED = 10
DEFAULT_CANDIDATE_LIMIT = 40

Snapshot = dict[str, Any]


class ContextBuild(NamedTuple):
    snapshot: Snapshot
    meta: ContextMeta
    contract: ContextContract


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _clamp(value: int | None, default: int, low: int, high: int) -> int:
    if value is None:
        return default
    return max(low, min(high, int(value)))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _minutes(started: datetime | None, finished: datetime | None) -> int | None:
    if not started or not finished:
        return None
    try:
        return max(0, round((finished - started).total_seconds() / 60))
    except TypeError:
        # naive vs aware datetimes
        return None


def _summarize_session(workout: Workout) -> dict[str, Any]:
    exercises = []
    for item in workout.items:
        exercise = item.exercise
        exercises.append(
            {
                "exercise_id": item.exercise_id,
                "name": exercise.name if exercise else "Unknown Exercise",
                "muscle_group": exercise.muscle_group if exercise else "Unknown",
                "sets": [
                    {"set_number": s.set_number, "weight": s.weight, "reps": s.reps}
                    for s in item.sets
                ],
                "note": workout.exercise_notes.get(item.exercise_id, "").strip() or None,
            }
        )
    return {
        "id": workout.id,
        "started_at": _iso(workout.started_at),
        "finished_at": _iso(workout.finished_at),
        "duration_minutes": _minutes(workout.started_at, workout.finished_at),
        "session_note": workout.session_note.strip() or None,
        "exercises": exercises,
    }


def _summarize_template(template: Template) -> dict[str, Any]:
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
            for item in sorted(template.items, key=lambda it: it.sort_order)
        ],
        "updated_at": _iso(template.updated_at),
    }


def _summarize_exercise_library(
    exercises: list[Exercise], sessions: list[dict[str, Any]]
) -> dict[str, Any]:
    groups: dict[str, int] = {}
    for exercise in exercises:
        groups[exercise.muscle_group] = groups.get(exercise.muscle_group, 0) + 1

    last_used: dict[int, dict[str, Any]] = {}
    for session in sessions:
        date = session["finished_at"] or session["started_at"] or ""
        for entry in session["exercises"]:
            previous = last_used.get(entry["exercise_id"])
            if previous is None or date > (previous["date"] or ""):
                last_used[entry["exercise_id"]] = {
                    "exercise_id": entry["exercise_id"],
                    "name": entry["name"],
                    "date": date or None,
                }

    ordered = sorted(last_used.values(), key=lambda e: e["name"])
    ordered.sort(key=lambda e: e["date"] or "", reverse=True)
    return {
        "total_count": len(exercises),
        "custom_count": sum(1 for ex in exercises if ex.is_custom),
        "muscle_groups": [{"name": k, "count": v} for k, v in sorted(groups.items())],
        "last_used": ordered[:MAX_LAST_USED],
    }


def _settings_summary(settings: Settings | None) -> dict[str, Any] | None:
    if settings is None:
        return None
    return {
        "rest_enabled": settings.rest_enabled,
        "rest_default_seconds": settings.rest_default_seconds,
        "weight_unit": settings.weight_unit,
    }


def _strip_notes(snapshot: Snapshot) -> Snapshot:
    return {
        **snapshot,
        "sessions": [
            {
                **session,
                "session_note": None,
                "exercises": [{**ex, "note": None} for ex in session["exercises"]],
            }
            for session in snapshot["sessions"]
        ],
    }


def _drop_last_used(snapshot: Snapshot) -> Snapshot:
    library = snapshot["exercise_library"]
    if library is None:
        return snapshot
    return {**snapshot, "exercise_library": {**library, "last_used": []}}


def _drop_equipment(snapshot: Snapshot) -> Snapshot:
    space = snapshot["active_space"]
    return {
        **snapshot,
        "active_space": {**space, "equipment_ids": []} if space else space,
        "available_equipment": [],
        "missing_equipment": [],
    }


# Least-essential first. Applied after per-item session/template trimming.
_TRUNCATION_STAGES: list[tuple[str, Callable[[Snapshot], Snapshot]]] = [
    ("notes", _strip_notes),
    ("exercise_library.last_used", _drop_last_used),
    ("equipment", _drop_equipment),
    ("settings", lambda s: {**s, "settings": None}),
    ("memory", lambda s: {**s, "memory_summary": None}),
    ("sessions.all", lambda s: {**s, "sessions": []}),
    ("templates.all", lambda s: {**s, "templates": []}),
    ("exercise_library", lambda s: {**s, "exercise_library": None}),
    ("launch_context", lambda s: {**s, "launch_context": None}),
    ("active_space", lambda s: {**s, "active_space": None}),
]


def truncate_snapshot(snapshot: Snapshot, max_bytes: int) -> tuple[Snapshot, list[str]]:
    """Remove sections in fixed priority order until the snapshot fits."""
    omitted: list[str] = []
    working = snapshot

    for key in ("sessions", "templates"):
        trimmed = False
        while payload_size(working) > max_bytes and len(working[key]) > 1:
            working = {**working, key: working[key][:-1]}
            trimmed = True
        if trimmed:
            omitted.append(key)

    for label, stage in _TRUNCATION_STAGES:
        if payload_size(working) <= max_bytes:
            break
        working = stage(working)
        omitted.append(label)

    return working, omitted


def build_context_contract(
    snapshot: Snapshot, context_bytes: int, build_ms: float
) -> ContextContract:
    space = snapshot.get("active_space") or {}
    sessions = snapshot.get("sessions") or []
    library = snapshot.get("exercise_library") or {}
    total = library.get("total_count", 0)
    custom = library.get("custom_count", 0)
    last = sessions[0] if sessions else None
    return ContextContract(
        active_gym_id=space.get("id"),
        active_gym_name=space.get("name"),
        equipment_count=sum(
            1 for eq in space.get("equipment_ids", []) if eq and eq != BODYWEIGHT
        ),
        recent_workouts_count=len(sessions),
        last_workout_date=(last["finished_at"] or last["started_at"]) if last else None,
        templates_count=len(snapshot.get("templates") or []),
        custom_exercises_count=custom,
        exercise_library_count=max(0, total - custom),
        context_bytes=context_bytes,
        build_ms=build_ms,
    )


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


async def build_context_snapshot(
    store: CoachStore,
    *,
    scopes: ContextScopes,
    session_limit: int | None = DEFAULT_SESSION_LIMIT,
    template_limit: int | None = DEFAULT_TEMPLATE_LIMIT,
    max_bytes: int | None = DEFAULT_MAX_BYTES,
    memory_summary: Any = None,
    launch_context: LaunchContext | None = None,
    active_gym_id: int | None = None,
    now: datetime | None = None,
) -> ContextBuild:
    """
    Fetch every enabled scope through the store and assemble the snapshot.

    Returns (snapshot, meta, contract). The serialized snapshot never exceeds
    `max_bytes` (floored at MIN_MAX_BYTES).
    """
    started = time.perf_counter()
    sessions_limit = _clamp(session_limit, DEFAULT_SESSION_LIMIT, 1, MAX_SESSION_LIMIT)
    templates_limit = _clamp(template_limit, DEFAULT_TEMPLATE_LIMIT, 1, MAX_TEMPLATE_LIMIT)
    budget = max(MIN_MAX_BYTES, max_bytes if max_bytes is not None else DEFAULT_MAX_BYTES)

    sessions: list[dict[str, Any]] = []
    if scopes.sessions or scopes.exercise_history:
        for workout in await store.list_recent_workouts(sessions_limit):
            sessions.append(_summarize_session(workout))
        sessions.sort(key=lambda s: s["finished_at"] or s["started_at"] or "", reverse=True)

    templates: list[dict[str, Any]] = []
    if scopes.templates:
        rows = sorted(await store.list_templates(), key=lambda t: t.name)
        templates = [_summarize_template(t) for t in rows[:templates_limit]]

    all_exercises = await store.list_exercises()
    exercise_library = (
        _summarize_exercise_library(all_exercises, sessions) if scopes.exercise_history else None
    )

    settings_row = await store.get_settings() if (scopes.settings or scopes.spaces) else None

    active_space: dict[str, Any] | None = None
    available_equipment: list[dict[str, Any]] = []
    missing: list[dict[str, Any]] = []
    if scopes.spaces:
        spaces = await store.list_workout_spaces()
        target_id = active_gym_id
        if target_id is None and settings_row is not None:
            target_id = settings_row.active_space_id
        space = resolve_active_space(spaces, target_id)
        if space is not None:
            active_space = {
                "id": space.id,
                "name": space.name,
                "is_temporary": space.is_temporary,
                "expires_at": _iso(space.expires_at),
                "equipment_ids": list(space.equipment_ids),
            }
            equipment_map = {eq.id: eq for eq in await store.list_equipment()}
            available_equipment = sorted(
                (
                    {"id": eq.id, "name": eq.name, "category": eq.category}
                    for eq in (equipment_map.get(i) for i in space.equipment_ids)
                    if eq is not None
                ),
                key=lambda e: e["name"],
            )

            referenced: set[int] = set()
            if scopes.sessions:
                referenced.update(e["exercise_id"] for s in sessions for e in s["exercises"])
            if scopes.templates:
                referenced.update(e["exercise_id"] for t in templates for e in t["exercises"])
            by_id = {ex.id: ex for ex in all_exercises}
            for exercise_id in referenced:
                exercise = by_id.get(exercise_id)
                if exercise is None:
                    continue
                lacking = missing_equipment_ids(exercise, space.equipment_ids)
                if lacking:
                    missing.append(
                        {
                            "exercise_id": exercise_id,
                            "name": exercise.name,
                            "missing_equipment": [
                                equipment_map[i].name if i in equipment_map else i
                                for i in lacking
                            ],
                        }
                    )
            missing = sorted(missing, key=lambda m: m["name"])[:MAX_MISSING_EXERCISES]

    snapshot: Snapshot = {
        "generated_at": (now or datetime.now(timezone.utc)).isoformat(),
        "scopes": scopes.model_dump(),
        "sessions": sessions if scopes.sessions else [],
        "templates": templates,
        "exercise_library": exercise_library,
        "settings": _settings_summary(settings_row) if scopes.settings else None,
        "active_space": active_space,
        "available_equipment": available_equipment,
        "missing_equipment": missing,
        "memory_summary": summarize_memory(memory_summary) if memory_summary else None,
        "launch_context": launch_context.model_dump() if launch_context else None,
    }
    if not scopes.notes:
        snapshot = _strip_notes(snapshot)

    size = payload_size(snapshot)
    final, omitted = (snapshot, []) if size <= budget else truncate_snapshot(snapshot, budget)
    final_size = payload_size(final) if omitted else size
    build_ms = round((time.perf_counter() - started) * 1000, 2)

    meta = ContextMeta(size_bytes=final_size, truncated=bool(omitted), omitted=omitted)
    contract = build_context_contract(snapshot, final_size, build_ms)
    return ContextBuild(final, meta, contract)


# ---------------------------------------------------------------------------
# Request context and candidates
# ---------------------------------------------------------------------------


async def build_request_context(
    store: CoachStore, active_gym_id: int | None = None
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Compact always-available summary, independent of context scopes."""
    started = time.perf_counter()
    space = resolve_active_space(await store.list_workout_spaces(), active_gym_id)
    exercises = await store.list_exercises()
    templates = await store.list_templates()
    workouts = await store.list_recent_workouts(MAX_SESSION_LIMIT)

    equipment_ids = list(space.equipment_ids) if space else []
    custom = sum(1 for ex in exercises if ex.is_custom)
    last = workouts[0].performed_at if workouts else None
    context = {
        "active_gym_id": space.id if space else None,
        "gym_name": space.name if space else None,
        "equipment_ids": equipment_ids,
        "equipment_count": sum(1 for eq in equipment_ids if eq != BODYWEIGHT),
        "exercise_library_count": len(exercises) - custom,
        "custom_exercises_count": custom,
        "templates_count": len(templates),
        "recent_workouts_count": len(workouts),
        "last_workout_date": _iso(last),
    }
    meta = {
        "context_bytes": payload_size(context),
        "context_build_ms": round((time.perf_counter() - started) * 1000, 2),
    }
    return context, meta


def to_candidate(exercise: Exercise) -> ExerciseCandidate:
    return ExerciseCandidate(
        exercise_id=exercise.id,
        name=exercise.name,
        aliases=exercise.aliases,
        equipment=exercise.equipment or exercise.required_equipment_ids,
        primary_muscles=exercise.primary_muscles,
    )


async def get_exercise_candidates(
    store: CoachStore,
    *,
    active_gym_id: int | None,
    context_enabled: bool,
    user_message: str,
    limit: int = DEFAULT_CANDIDATE_LIMIT,
) -> list[ExerciseCandidate]:
    """Turn-scoped pool of exercises the model may reference, most relevant first."""
    exercises = await store.list_exercises()
    if context_enabled and active_gym_id is not None:
        space = resolve_active_space(await store.list_workout_spaces(), active_gym_id)
        if space is not None:
            exercises = [ex for ex in exercises if not missing_equipment_ids(ex, space.equipment_ids)]

    wanted = set(normalize_tokens(user_message))

    def relevance(exercise: Exercise) -> int:
        words: set[str] = set()
        for label in [exercise.name, exercise.muscle_group, *exercise.aliases, *exercise.primary_muscles]:
            words.update(normalize_tokens(label))
        return len(wanted & words)

    ranked = sorted(exercises, key=lambda ex: (-relevance(ex), ex.name.lower()))
    return [to_candidate(ex) for ex in ranked[:limit]]
