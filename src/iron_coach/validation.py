# validation.py
# Response validation: mode-specific structural contracts for the final text.
#
# Modes:
#   template_json  exactly one fenced ```json block, ids from library AND candidates
#   workout        coach_action_v1 draft with candidate ids, or a plain list of
#                  at least 3 "N sets of M reps" / "NxM" lines
#   general        always valid
#
# Failures are ValidationResult(valid=False), never exceptions. The repair
# round-trip itself is driven by the orchestrator; this module only supplies
# the prompt and the fallback text.

import json
import re
from typing import Any, Iterable, Literal, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError
from pydantic.alias_generators import to_camel

from iron_coach.action_draft import (
    CreateTemplateDraft,
    CreateWorkoutDraft,
    parse_action_draft_message,
)
from iron_coach.models import ExerciseCandidate, ResponseMode, SelectedGym, ValidationResult
from iron_coach.parsing import extract_brace_candidate, extract_json_fences, parse_json

_STRICT_JSON_FENCE_RE = re.compile(r"^\s*```json\s*(.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)
_CONTEXT_CLAIM_RE = re.compile(
    r"available equipment|using .*equipment|based on .*equipment|i can see .*equipment|with your equipment",
    re.IGNORECASE,
)
_WORKOUT_REQUEST_RE = re.compile(r"\b(workout|routine|session|plan)\b", re.IGNORECASE)
_EDIT_REQUEST_RE = re.compile(
    r"\b(add|remove|swap|replace|adjust|change|include|exclude|without|update)\b", re.IGNORECASE
)
_SWAP_EDIT_RE = re.compile(
    r"\b(?:swap|replace|change)\s+(.+?)\s+(?:to|with|for)\s+(.+?)(?:[.!?]|$)", re.IGNORECASE
)
_LEG_KEYWORD_RE = re.compile(
    r"\b(leg|legs|quad|quads|hamstring|hamstrings|glute|glutes|calf|calves|adductor|abductor)\b",
    re.IGNORECASE,
)
_ADD_COUNT_RE = re.compile(r"\badd\s+(\d+)\b", re.IGNORECASE)
_WORKOUT_LIST_LINE_RE = re.compile(
    r"^\s*(?:[-*]|\d+[.)])\s+.+?(\d+\s*(?:sets?\s*(?:of)?\s*\d+\s*reps?|[x×]\s*\d+))",
    re.IGNORECASE | re.MULTILINE,
)
_LEG_METADATA_TOKENS = ("leg", "quad", "hamstring", "glute", "calf", "calves", "adductor", "abductor")

MIN_WORKOUT_LIST_LINES = 3

TEMPLATE_JSON_SCHEMA_TEXT = (
    "{ name: string, exercises: [{ exerciseId: number, sets: number, reps: number, "
    "warmupSets?: number }], needsReview?: [{ requestedName: string, "
    "suggestions?: [{ exerciseId: number, name: string }] }] }"
)

FALLBACK_MESSAGES = {
    ResponseMode.TEMPLATE_JSON: "Coach had trouble formatting template JSON. Please tap Retry.",
    ResponseMode.WORKOUT: "Coach had trouble formatting a complete workout. Please tap Retry.",
    ResponseMode.GENERAL: "Coach response validation failed. Please tap Retry.",
}

CONTEXT_CLAIM_ERROR = "Context is off, so the response cannot claim it can see available equipment."
WORKOUT_CONTRACT_ERROR = (
    "Workout responses must include coach_action_v1 actionDraft with exerciseId values from candidates."
)
TEMPLATE_FENCE_ERROR = "Template conversion must return only one fenced ```json block with no extra text."


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReviewSuggestion(_Schema):
    exercise_id: StrictInt = Field(gt=0)
    name: str = Field(min_length=1)


class ReviewEntry(_Schema):
    requested_name: str = Field(min_length=1)
    suggestions: list[ReviewSuggestion] | None = Field(default=None, max_length=5)


class TemplateJsonExercise(_Schema):
    exercise_id: StrictInt = Field(gt=0)
    name: str | None = Field(default=None, min_length=1)
    exercise_name: str | None = Field(default=None, min_length=1)
    sets: StrictInt = Field(gt=0)
    reps: StrictInt = Field(gt=0)
    warmup_sets: StrictInt | None = Field(default=None, ge=0)


class TemplateJson(_Schema):
    name: str = Field(min_length=1)
    exercises: list[TemplateJsonExercise] = Field(min_length=1)
    needs_review: list[ReviewEntry] | None = None


class WorkoutPlanExercise(_Schema):
    name: str = Field(min_length=1)
    sets: StrictInt | str
    reps: StrictInt | str


class WorkoutPlan(_Schema):
    name: str | None = Field(default=None, min_length=1)
    exercises: list[WorkoutPlanExercise] = Field(min_length=1)


def _format_errors(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        path = ".".join(str(p) for p in err["loc"]) or "root"
        parts.append(f"{path}: {err['msg']}")
    return "; ".join(parts) or "Validation failed."


# ---------------------------------------------------------------------------
# Mode and edit intent
# ---------------------------------------------------------------------------


def classify_response_mode(user_message: str, response_mode: ResponseMode | str | None = None) -> ResponseMode:
    if response_mode in (ResponseMode.TEMPLATE_JSON, ResponseMode.WORKOUT):
        return ResponseMode(response_mode)
    if _WORKOUT_REQUEST_RE.search(user_message or ""):
        return ResponseMode.WORKOUT
    return ResponseMode.GENERAL


class EditIntent(NamedTuple):
    is_edit_request: bool = False
    kind: Literal["add_legs_exercises", "swap_exercise", "generic_edit"] | None = None
    add_count: int | None = None
    from_exercise_name: str | None = None
    to_exercise_name: str | None = None


def parse_edit_intent(user_message: str) -> EditIntent:
    text = (user_message or "").strip()
    if not text:
        return EditIntent()

    is_edit = bool(_EDIT_REQUEST_RE.search(text))
    add_match = _ADD_COUNT_RE.search(text)
    add_count = int(add_match.group(1)) if add_match and int(add_match.group(1)) > 0 else None

    if is_edit and add_count and _LEG_KEYWORD_RE.search(text):
        return EditIntent(True, "add_legs_exercises", add_count)

    swap = _SWAP_EDIT_RE.search(text)
    if is_edit and swap:
        return EditIntent(True, "swap_exercise", None, swap.group(1).strip(), swap.group(2).strip())

    return EditIntent(is_edit, "generic_edit" if is_edit else None)


def _metadata_tokens(values: Iterable[Any]) -> list[str]:
    tokens: list[str] = []
    for value in values:
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            tokens.extend(_metadata_tokens(value))
            continue
        tokens.extend(re.sub(r"[^a-z0-9]+", " ", str(value).lower()).split())
    return tokens


def is_leg_exercise(exercise: Any) -> bool:
    """True when muscle/tag metadata classifies the exercise as legs."""
    if exercise is None:
        return False
    fields = [
        getattr(exercise, "primary_muscles", None),
        getattr(exercise, "secondary_muscles", None),
        getattr(exercise, "tags", None),
        getattr(exercise, "muscle_group", None),
    ]
    return any(
        leg in token for token in _metadata_tokens(fields) for leg in _LEG_METADATA_TOKENS
    )


def validate_add_leg_edit(
    current_draft: CreateWorkoutDraft,
    next_draft: CreateWorkoutDraft | CreateTemplateDraft,
    add_count: int,
    exercise_catalog: dict[int, Any] | None,
) -> tuple[bool, str | None]:
    previous = current_draft.payload.exercises or []
    following = next_draft.payload.exercises or []

    if not previous:
        return False, "No current draft exercises are available to edit."
    if len(following) != len(previous) + add_count:
        return False, f"Expected {add_count} appended exercises, but got {len(following) - len(previous)}."

    for before, after in zip(previous, following):
        if before.model_dump(by_alias=True) != after.model_dump(by_alias=True):
            return False, "Existing exercises must remain unchanged and in the same order."

    seen = {ex.exercise_id for ex in previous}
    for entry in following[len(previous):]:
        if entry.exercise_id in seen:
            return False, f"Appended exerciseId {entry.exercise_id} already exists in the draft."
        if not is_leg_exercise((exercise_catalog or {}).get(entry.exercise_id)):
            return False, f"Appended exerciseId {entry.exercise_id} is not classified as legs."
        seen.add(entry.exercise_id)

    return True, None


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


def _check_ids(
    exercise_ids: Iterable[int],
    suggestion_ids: Iterable[int],
    allowed_candidate_ids: set[int] | None,
    library_ids: set[int] | None,
) -> str | None:
    # Empty sets mean "unknown", not "nothing allowed".
    for exercise_id in exercise_ids:
        if library_ids and exercise_id not in library_ids:
            return f"Unknown exerciseId {exercise_id} (not in library)."
        if allowed_candidate_ids and exercise_id not in allowed_candidate_ids:
            return f"exerciseId {exercise_id} is outside the allowed candidate list."
    for suggestion_id in suggestion_ids:
        if library_ids and suggestion_id not in library_ids:
            return f"needsReview suggestion {suggestion_id} is not in the library."
        if allowed_candidate_ids and suggestion_id not in allowed_candidate_ids:
            return f"needsReview suggestion {suggestion_id} is outside the candidate list."
    return None


def validate_template_json_output(
    text: str,
    allowed_candidate_ids: set[int] | None = None,
    library_ids: set[int] | None = None,
) -> ValidationResult:
    mode = ResponseMode.TEMPLATE_JSON
    match = _STRICT_JSON_FENCE_RE.match(text or "")
    # the lazy body must not swallow a second fence
    if not match or "```" in match.group(1):
        return ValidationResult(valid=False, mode=mode, error=TEMPLATE_FENCE_ERROR)

    parsed = parse_json(match.group(1))
    if not parsed.ok:
        return ValidationResult(valid=False, mode=mode, error="Template JSON could not be parsed.")

    try:
        template = TemplateJson.model_validate(parsed.value)
    except ValidationError as exc:
        return ValidationResult(valid=False, mode=mode, error=_format_errors(exc))

    error = _check_ids(
        (ex.exercise_id for ex in template.exercises),
        (s.exercise_id for r in template.needs_review or [] for s in r.suggestions or []),
        allowed_candidate_ids,
        library_ids,
    )
    if error:
        return ValidationResult(valid=False, mode=mode, error=error)
    return ValidationResult(valid=True, mode=mode, parsed=template.model_dump(by_alias=True, exclude_none=True))


def _validate_context_off(text: str) -> str | None:
    return CONTEXT_CLAIM_ERROR if _CONTEXT_CLAIM_RE.search(text) else None


def has_plain_workout_list(text: str) -> bool:
    return len(_WORKOUT_LIST_LINE_RE.findall(text or "")) >= MIN_WORKOUT_LIST_LINES


def validate_coach_response(
    *,
    user_message: str,
    assistant_text: str,
    response_mode: ResponseMode | str | None = None,
    context_enabled: bool = False,
    allowed_candidate_ids: set[int] | None = None,
    library_ids: set[int] | None = None,
    current_draft: Any = None,
    edit_intent: EditIntent | None = None,
    exercise_catalog: dict[int, Any] | None = None,
) -> ValidationResult:
    """Apply the contract for the classified mode to the final assistant text."""
    mode = classify_response_mode(user_message, response_mode)
    text = (assistant_text or "").strip()

    if mode is ResponseMode.TEMPLATE_JSON:
        return validate_template_json_output(text, allowed_candidate_ids, library_ids)

    if mode is ResponseMode.GENERAL:
        return ValidationResult(valid=True, mode=mode)

    draft = parse_action_draft_message(text).action_draft
    if isinstance(draft, (CreateWorkoutDraft, CreateTemplateDraft)):
        suggestion_ids = [
            s.exercise_id for r in draft.payload.needs_review or [] for s in r.suggestions or []
        ]
        error = _check_ids(
            (ex.exercise_id for ex in draft.payload.exercises or []),
            suggestion_ids,
            allowed_candidate_ids,
            library_ids,
        )
        if error is None and (
            edit_intent is not None
            and edit_intent.kind == "add_legs_exercises"
            and isinstance(current_draft, CreateWorkoutDraft)
        ):
            _, error = validate_add_leg_edit(
                current_draft, draft, edit_intent.add_count or 0, exercise_catalog
            )
        if error is None and not context_enabled:
            error = _validate_context_off(text)
        if error:
            return ValidationResult(valid=False, mode=mode, error=error)
        return ValidationResult(valid=True, mode=mode, parsed=draft.model_dump(by_alias=True))

    if not context_enabled:
        error = _validate_context_off(text)
        if error:
            return ValidationResult(valid=False, mode=mode, error=error)
    if has_plain_workout_list(text):
        return ValidationResult(valid=True, mode=mode)
    return ValidationResult(valid=False, mode=mode, error=WORKOUT_CONTRACT_ERROR)


# ---------------------------------------------------------------------------
# Workout plan extraction
# ---------------------------------------------------------------------------


class WorkoutPlanExtraction(NamedTuple):
    valid: bool
    parsed: WorkoutPlan | None = None
    error: str | None = None
    source: Literal["code_fence", "raw"] | None = None
    raw_json: str | None = None


def extract_workout_plan_output(text: str) -> WorkoutPlanExtraction:
    """Find a {name?, exercises:[{name, sets, reps}]} plan in fenced JSON, then raw text."""
    last_error: str | None = None
    for raw in extract_json_fences(text):
        parsed = parse_json(raw)
        if not parsed.ok:
            last_error = "Workout plan JSON could not be parsed."
            continue
        try:
            return WorkoutPlanExtraction(True, WorkoutPlan.model_validate(parsed.value), source="code_fence", raw_json=raw)
        except ValidationError as exc:
            last_error = _format_errors(exc)

    candidate = extract_brace_candidate(text)
    if candidate:
        parsed = parse_json(candidate)
        if not parsed.ok:
            last_error = "Workout plan JSON could not be parsed."
        else:
            try:
                return WorkoutPlanExtraction(True, WorkoutPlan.model_validate(parsed.value), source="raw", raw_json=candidate)
            except ValidationError as exc:
                last_error = _format_errors(exc)

    return WorkoutPlanExtraction(
        False,
        error=last_error or "Workout responses must include JSON with a WorkoutPlan object.",
        raw_json=candidate,
    )


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------


def format_candidate_list(candidates: list[ExerciseCandidate]) -> str:
    if not candidates:
        return "[]"
    return json.dumps([{"exerciseId": c.exercise_id, "name": c.name} for c in candidates], indent=2)


def build_repair_prompt(
    mode: ResponseMode,
    *,
    context_enabled: bool,
    invalid_content: str,
    selected_gym: SelectedGym | None = None,
    candidates: list[ExerciseCandidate] | None = None,
) -> str:
    candidate_list = format_candidate_list(candidates or [])
    gym_label = f"Selected gym: {selected_gym.name}" if selected_gym and selected_gym.name else "Selected gym: none"

    if mode is ResponseMode.TEMPLATE_JSON:
        lines = [
            "REPAIR TASK: The previous output failed template JSON validation.",
            "Return ONLY a fenced ```json block, with no extra text before or after.",
            f"Schema: {TEMPLATE_JSON_SCHEMA_TEXT}",
            "Use only these candidate exercises and IDs:",
            candidate_list,
            "Each exercise in exercises must include a valid exerciseId from candidates.",
            "If no valid ID is possible, return needsReview with candidate suggestions.",
            "Invalid content:",
            invalid_content,
            "Rule: return ONLY the corrected output.",
        ]
    elif mode is ResponseMode.WORKOUT and not context_enabled:
        lines = [
            "REPAIR TASK: Context sharing is OFF.",
            "Do NOT claim you can see equipment.",
            "Return a generic workout as coach_action_v1 actionDraft with at least 5 exercises.",
            "Every exercise must include exerciseId from candidates only.",
            "If a request cannot be mapped safely, return needsReview with candidate suggestions.",
            "Candidate list:",
            candidate_list,
            "Include a brief line asking the user to enable context or choose a gym for personalization.",
            "Invalid content:",
            invalid_content,
            "Rule: return ONLY the corrected output with concise assistant text.",
        ]
    else:
        lines = [
            "REPAIR TASK: The previous workout output failed validation.",
            "Return coach_action_v1 actionDraft output with at least 5 exercises.",
            "Every exercise must include exerciseId from the provided candidate list.",
            "If you cannot map safely, return needsReview with candidate suggestions.",
            "Candidate list:",
            candidate_list,
            gym_label,
            "Prefer coach_action_v1 actionDraft output for deterministic parsing.",
            "Invalid content:",
            invalid_content,
            "Rule: return ONLY the corrected output with concise assistant text.",
        ]
    return "\n".join(lines)


def get_validation_failure_message(mode: ResponseMode) -> str:
    return FALLBACK_MESSAGES.get(mode, FALLBACK_MESSAGES[ResponseMode.GENERAL])
