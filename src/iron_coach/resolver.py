# resolver.py
# Exercise resolution: free-text or numeric exercise references -> canonical ids.
#
# Resolution order, first match wins:
#   numeric id in pool -> exact normalized name/alias -> fuzzy token score
#
# A fuzzy match is only accepted when it clears the threshold AND beats the
# runner-up by more than the tie margin. Anything else becomes needs_review
# with ranked suggestions. Nothing is ever silently dropped.

from typing import Any, Iterable, Literal, NamedTuple, Sequence

from pydantic import BaseModel, Field

DEFAULT_THRESHOLD = 0.74
DEFAULT_TIE_MARGIN = 0.08
DEFAULT_MAX_SUGGESTIONS = 3
TEMPLATE_THRESHOLD = 0.58
TEMPLATE_TIE_MARGIN = 0.06

MIN_SUGGESTION_SCORE = 0.35
MIN_TIE_SUGGESTION_SCORE = 0.4
TIE_SUGGESTION_WINDOW = 0.12

_TOKEN_EXPANSIONS = {
    "db": ["dumbbell"],
    "bb": ["barbell"],
    "kb": ["kettlebell"],
    "bw": ["bodyweight"],
    "rdl": ["romanian", "deadlift"],
    "ohp": ["overhead", "press"],
    "pushup": ["push", "up"],
    "pushups": ["push", "up"],
}

_NAME_FIELDS = ("name", "exerciseName", "exercise", "title", "label")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class ExerciseSuggestion(BaseModel):
    exercise_id: int
    name: str
    score: float


class Resolution(BaseModel):
    status: Literal["resolved", "needs_review"]
    requested_name: str = ""
    exercise_id: int | None = None
    name: str | None = None
    score: float | None = None
    matched_by: Literal["id_exact", "name_exact", "fuzzy"] | None = None
    suggestions: list[ExerciseSuggestion] = Field(default_factory=list)


class NeedsReview(BaseModel):
    requested_name: str
    suggestions: list[ExerciseSuggestion] = Field(default_factory=list)


class ResolvedTemplateExercise(BaseModel):
    exercise_id: int | None = None
    sets: int | None = None
    reps: int | None = None
    warmup_sets: int | None = None
    draft_name: str = ""


class MappingEntry(BaseModel):
    draft_name: str
    draft_id: int | None = None
    resolved_id: int | None = None
    resolved_name: str | None = None
    created_custom: bool = False
    match_source: str | None = None
    needs_review: NeedsReview | None = None


class TemplateMapping(BaseModel):
    resolved_exercises: list[ResolvedTemplateExercise] = Field(default_factory=list)
    mapping: list[MappingEntry] = Field(default_factory=list)
    mapped_count: int = 0
    created_custom_count: int = 0
    unresolved_count: int = 0
    needs_review: list[NeedsReview] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def singularize(token: str) -> str:
    if len(token) <= 3:
        return token
    if token.endswith("ies") and len(token) > 4:
        return token[:-3] + "y"
    if token.endswith(("ses", "xes", "zes", "ches", "shes")):
        return token[:-2]
    if token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def normalize_tokens(value: Any) -> list[str]:
    """Lowercase, split on non-alphanumerics, expand abbreviations, singularize."""
    text = "".join(ch if ch.isascii() and ch.isalnum() else " " for ch in str(value or "").lower())
    tokens: list[str] = []
    for raw in text.split():
        expanded: list[str] = []
        for token in _TOKEN_EXPANSIONS.get(raw, [raw]):
            token = singularize(token)
            if token and token not in expanded:
                expanded.append(token)
        tokens.extend(expanded)
    return tokens


def normalize_exercise_name(value: Any) -> str:
    return " ".join(normalize_tokens(value))


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class _SearchEntry(NamedTuple):
    exercise_id: int
    name: str
    labels: list[str]


def _to_entry(exercise: Any) -> _SearchEntry | None:
    exercise_id = getattr(exercise, "exercise_id", None)
    if exercise_id is None:
        exercise_id = getattr(exercise, "id", None)
    if exercise_id is None:
        return None
    name = str(getattr(exercise, "name", "") or "").strip() or "Unknown Exercise"
    aliases = [str(a).strip() for a in getattr(exercise, "aliases", None) or [] if a]
    labels = [label for label in [name, *aliases] if label]
    return _SearchEntry(exercise_id, name, labels)


def score_label(query_normalized: str, query_tokens: set[str], label: str) -> float:
    normalized = normalize_exercise_name(label)
    if not normalized:
        return 0.0
    if normalized == query_normalized:
        return 1.0
    label_tokens = set(normalized.split())
    coverage = len(query_tokens & label_tokens) / len(query_tokens) if query_tokens else 0.0
    bonus = 0.0
    if normalized.startswith(query_normalized):
        bonus += 0.08
    if query_normalized in normalized:
        bonus += 0.05
    return min(0.99, coverage + bonus)


def _needs_review(
    requested_name: str, ranked: Iterable[ExerciseSuggestion], max_suggestions: int
) -> Resolution:
    suggestions = [
        s.model_copy(update={"score": round(s.score, 3)}) for s in list(ranked)[:max_suggestions]
    ]
    return Resolution(status="needs_review", requested_name=requested_name, suggestions=suggestions)


def resolve_exercise_id(
    query: Any,
    *,
    candidates: Sequence[Any] | None = None,
    all_exercises: Sequence[Any] | None = None,
    threshold: float = DEFAULT_THRESHOLD,
    tie_margin: float = DEFAULT_TIE_MARGIN,
    max_suggestions: int = DEFAULT_MAX_SUGGESTIONS,
) -> Resolution:
    """
    Resolve one reference against the candidate pool (or the full library
    when no pool is given). Pool items are Exercise or ExerciseCandidate.
    """
    requested = str(query if query is not None else "").strip()
    pool = [e for e in map(_to_entry, candidates or all_exercises or []) if e is not None]
    if not requested or not pool:
        return _needs_review(requested, [], max_suggestions)

    if requested.isdigit():
        query_id = int(requested)
        for entry in pool:
            if entry.exercise_id == query_id:
                return Resolution(
                    status="resolved",
                    requested_name=requested,
                    exercise_id=query_id,
                    name=entry.name,
                    score=1.0,
                    matched_by="id_exact",
                )

    query_normalized = normalize_exercise_name(requested)
    query_tokens = set(query_normalized.split())

    exact: dict[int, _SearchEntry] = {}
    for entry in pool:
        if any(normalize_exercise_name(label) == query_normalized for label in entry.labels):
            exact.setdefault(entry.exercise_id, entry)
    if len(exact) == 1:
        (entry,) = exact.values()
        return Resolution(
            status="resolved",
            requested_name=requested,
            exercise_id=entry.exercise_id,
            name=entry.name,
            score=1.0,
            matched_by="name_exact",
        )
    if len(exact) > 1:
        ranked = sorted(
            (ExerciseSuggestion(exercise_id=e.exercise_id, name=e.name, score=1.0) for e in exact.values()),
            key=lambda s: s.name,
        )
        return _needs_review(requested, ranked, max_suggestions)

    ranked = sorted(
        (
            ExerciseSuggestion(
                exercise_id=entry.exercise_id,
                name=entry.name,
                score=max(score_label(query_normalized, query_tokens, label) for label in entry.labels),
            )
            for entry in pool
        ),
        key=lambda s: (-s.score, s.name),
    )

    top = ranked[0]
    if top.score < threshold:
        return _needs_review(
            requested, (s for s in ranked if s.score >= MIN_SUGGESTION_SCORE), max_suggestions
        )

    if len(ranked) > 1 and top.score - ranked[1].score <= tie_margin:
        floor = max(MIN_TIE_SUGGESTION_SCORE, top.score - TIE_SUGGESTION_WINDOW)
        return _needs_review(requested, (s for s in ranked if s.score >= floor), max_suggestions)

    return Resolution(
        status="resolved",
        requested_name=requested,
        exercise_id=top.exercise_id,
        name=top.name,
        score=round(top.score, 3),
        matched_by="fuzzy",
    )


# ---------------------------------------------------------------------------
# Template drafts
# ---------------------------------------------------------------------------


def _parse_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    text = str(value).strip()
    sign = -1 if text.startswith("-") else 1
    digits = ""
    for ch in text.lstrip("+-"):
        if not ch.isdigit():
            break
        digits += ch
    return sign * int(digits) if digits else None


def _draft_name(draft: Any) -> str:
    if isinstance(draft, str):
        return draft
    if not isinstance(draft, dict):
        return ""
    for field in _NAME_FIELDS:
        value = draft.get(field)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def _draft_id(draft: Any) -> int | None:
    if not isinstance(draft, dict):
        return None
    value = draft.get("exerciseId")
    if value is None:
        value = draft.get("id")
    return _parse_int(value)


def _draft_field(draft: Any, *keys: str) -> int | None:
    if not isinstance(draft, dict):
        return None
    for key in keys:
        if draft.get(key) is not None:
            return _parse_int(draft[key])
    return None


async def resolve_template_exercises(
    draft_exercises: Sequence[Any],
    *,
    store: Any = None,
    create_missing: bool = False,
    candidates: Sequence[Any] | None = None,
    all_exercises: Sequence[Any] | None = None,
    max_suggestions: int = DEFAULT_MAX_SUGGESTIONS,
) -> TemplateMapping:
    """
    Map template draft entries onto library exercises.

    Every entry ends resolved or in needs_review. With create_missing, an
    unresolved named entry becomes a new custom exercise through the store.
    """
    if not draft_exercises:
        return TemplateMapping()

    exercises = list(all_exercises) if all_exercises else []
    if not exercises and store is not None:
        exercises = await store.list_exercises()
    by_id = {ex.id: ex for ex in exercises}

    pool: list[Any] = []
    for candidate in candidates or []:
        candidate_id = getattr(candidate, "exercise_id", None) or getattr(candidate, "id", None)
        pool.append(by_id.get(candidate_id, candidate))
    pool = pool or exercises

    result = TemplateMapping()
    for draft in draft_exercises:
        name = _draft_name(draft)
        draft_id = _draft_id(draft)
        resolved_id: int | None = None
        resolved_name: str | None = None
        match_source: str | None = None
        created = False
        review: NeedsReview | None = None

        if draft_id is not None and draft_id in by_id:
            resolved_id, resolved_name, match_source = draft_id, by_id[draft_id].name, "id"

        if resolved_id is None and name:
            outcome = resolve_exercise_id(
                name,
                candidates=pool,
                all_exercises=exercises,
                threshold=TEMPLATE_THRESHOLD,
                tie_margin=TEMPLATE_TIE_MARGIN,
                max_suggestions=max_suggestions,
            )
            if outcome.status == "resolved":
                resolved_id, resolved_name = outcome.exercise_id, outcome.name
                match_source = outcome.matched_by
            else:
                review = NeedsReview(
                    requested_name=outcome.requested_name or name,
                    suggestions=outcome.suggestions,
                )

        if resolved_id is None and name and create_missing and store is not None:
            resolved_id = await store.create_custom_exercise(name)
            resolved_name, match_source, created = name, "custom", True
            result.created_custom_count += 1
            review = None

        if resolved_id is None and review is None:
            label = f"Exercise #{draft_id}" if draft_id is not None else "Unnamed exercise"
            review = NeedsReview(requested_name=name or label)

        if review is not None:
            result.needs_review.append(review)

        result.resolved_exercises.append(
            ResolvedTemplateExercise(
                exercise_id=resolved_id,
                sets=_draft_field(draft, "sets", "targetSets"),
                reps=_draft_field(draft, "reps", "targetReps"),
                warmup_sets=_draft_field(draft, "warmupSets"),
                draft_name=name,
            )
        )
        result.mapping.append(
            MappingEntry(
                draft_name=name,
                draft_id=draft_id,
                resolved_id=resolved_id,
                resolved_name=resolved_name,
                created_custom=created,
                match_source=match_source,
                needs_review=review,
            )
        )

    result.mapped_count = sum(1 for item in result.resolved_exercises if item.exercise_id is not None)
    result.unresolved_count = len(result.resolved_exercises) - result.mapped_count
    return result
