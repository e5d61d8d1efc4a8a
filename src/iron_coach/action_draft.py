# action_draft.py
# Versioned structured-output envelope the model may emit.
#
#   {"contractVersion": "coach_action_v1", "assistantText": "...", "actionDraft": {...}}
#
# actionDraft is a tagged union over `kind`. IDs arrive as numbers or numeric
# strings and are normalized to positive ints here, at the boundary, so
# nothing downstream re-checks them. Unknown keys are preserved.

import math
from typing import Annotated, Any, ClassVar, Literal, NamedTuple, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from iron_coach.parsing import extract_brace_candidate, extract_fenced_blocks, parse_json_object, strip_code_fences

ACTION_DRAFT_CONTRACT_VERSION = "coach_action_v1"


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------


def _coerce_number(value: Any) -> int | float:
    if isinstance(value, bool):
        raise ValueError("Value must be numeric.")
    if isinstance(value, int):
        return value
    try:
        number = float(value if isinstance(value, float) else str(value).strip())
    except ValueError as exc:
        raise ValueError("Value must be numeric.") from exc
    if not math.isfinite(number):
        raise ValueError("Value must be numeric.")
    if isinstance(value, float):
        return number
    return int(number) if number.is_integer() else number


def _coerce_positive_id(value: Any) -> int:
    try:
        number = _coerce_number(value)
    except ValueError as exc:
        raise ValueError("ID must be a positive integer.") from exc
    if float(number).is_integer() and number > 0:
        return int(number)
    raise ValueError("ID must be a positive integer.")


NumericValue = Annotated[int | float, BeforeValidator(_coerce_number)]
NumericId = Annotated[int, BeforeValidator(_coerce_positive_id)]


class _Contract(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class DraftSet(_Contract):
    reps: NumericValue | None = None
    weight: NumericValue | None = None
    duration: NumericValue | None = None
    rpe: NumericValue | None = None


class DraftExercise(_Contract):
    exercise_id: NumericId
    sets: list[DraftSet] | None = None
    notes: str | None = None


class DraftSuggestion(_Contract):
    exercise_id: NumericId
    name: str = Field(min_length=1)


class DraftNeedsReview(_Contract):
    requested_name: str = Field(min_length=1)
    suggestions: list[DraftSuggestion] | None = Field(default=None, max_length=5)


class _ExercisePayload(_Contract):
    name: str | None = Field(default=None, min_length=1)
    title: str | None = Field(default=None, min_length=1)
    gym_id: NumericId | None = None
    exercises: list[DraftExercise] | None = None
    needs_review: list[DraftNeedsReview] | None = None

    label: ClassVar[str] = "Draft"

    @model_validator(mode="after")
    def _require_title_and_exercises(self):
        if not (self.name or self.title) or not (self.exercises or self.needs_review):
            raise ValueError(f"{self.label} draft requires a title and exercises or needsReview.")
        return self

    def referenced_ids(self) -> list[int]:
        """Every exercise id the payload points at, suggestions included."""
        ids = [ex.exercise_id for ex in self.exercises or []]
        for review in self.needs_review or []:
            ids.extend(s.exercise_id for s in review.suggestions or [])
        return ids


class WorkoutPayload(_ExercisePayload):
    planned_duration_mins: NumericValue | None = None

    label: ClassVar[str] = "Workout"


class TemplatePayload(_ExercisePayload):
    frequency_hint: str | None = None

    label: ClassVar[str] = "Template"


class GymPayload(_Contract):
    name: str | None = Field(default=None, min_length=1)
    title: str | None = Field(default=None, min_length=1)
    equipment_ids: list[str] | None = None

    @model_validator(mode="after")
    def _require_name(self):
        if not (self.name or self.title):
            raise ValueError("Gym draft requires a name or title.")
        return self


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------


class _DraftBase(_Contract):
    confidence: float = Field(ge=0, le=1)
    risk: Literal["low", "medium", "high"]
    title: str = Field(min_length=1)
    summary: str = Field(min_length=1)


class CreateWorkoutDraft(_DraftBase):
    kind: Literal["create_workout"]
    payload: WorkoutPayload


class CreateTemplateDraft(_DraftBase):
    kind: Literal["create_template"]
    payload: TemplatePayload


class CreateGymDraft(_DraftBase):
    kind: Literal["create_gym"]
    payload: GymPayload


ActionDraft = Annotated[
    Union[CreateWorkoutDraft, CreateTemplateDraft, CreateGymDraft],
    Field(discriminator="kind"),
]


class ActionDraftContract(_Contract):
    contract_version: Literal["coach_action_v1"]
    assistant_text: str = Field(min_length=1)
    action_draft: ActionDraft | None = None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class ActionDraftParse(NamedTuple):
    assistant_text: str
    action_draft: CreateWorkoutDraft | CreateTemplateDraft | CreateGymDraft | None = None
    contract_version: str | None = None
    parse_errors: list[str] | None = None


def _format_errors(exc: ValidationError) -> str:
    messages = [err["msg"].removeprefix("Value error, ") for err in exc.errors()]
    return "; ".join(messages) or "Validation failed."


def validate_action_draft_contract(payload: Any) -> ActionDraftContract:
    """Raises pydantic.ValidationError when the payload does not conform."""
    return ActionDraftContract.model_validate(payload)


def parse_action_draft_message(message: str | None) -> ActionDraftParse:
    """
    Extract the envelope from raw model output.

    Scans every fenced block in order; with no fences, tries the brace-matched
    substring. The first block that validates wins. Never raises.
    """
    text = message if isinstance(message, str) else ""
    errors: list[str] = []

    blocks = extract_fenced_blocks(text)
    if not blocks:
        candidate = extract_brace_candidate(text)
        blocks = [candidate] if candidate else []

    for raw in blocks:
        parsed = parse_json_object(raw)
        if not parsed.ok:
            errors.append("Unable to parse action draft JSON.")
            continue
        try:
            contract = validate_action_draft_contract(parsed.value)
        except ValidationError as exc:
            errors.append(f"Invalid action draft contract: {_format_errors(exc)}")
            continue
        return ActionDraftParse(
            assistant_text=contract.assistant_text,
            action_draft=contract.action_draft,
            contract_version=contract.contract_version,
        )

    return ActionDraftParse(
        assistant_text=strip_code_fences(text) or text.strip(),
        parse_errors=errors or None,
    )
