# models.py
# Data contracts for the coach orchestration core.
# No business logic lives here: pure schema and validation.

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: str = Field(default="", description="Raw JSON text emitted by the model.")


class ConversationMessage(BaseModel):
    """One entry of the outbound message list."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] | None = None

    def to_openai(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["content"] = self.content or None
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ]
        if self.tool_call_id is not None:
            message["tool_call_id"] = self.tool_call_id
        return message


# ---------------------------------------------------------------------------
# Tools and proposals
# ---------------------------------------------------------------------------


class ToolErrorCode(str, Enum):
    NOT_FOUND = "tool_not_found"
    BLOCKED_BY_SCOPE = "tool_blocked_by_scope"
    INPUT_INVALID = "tool_input_invalid"
    EXECUTION_FAILED = "tool_execution_failed"


class ToolEvent(BaseModel):
    """UI-facing record of one processed tool call."""

    name: str
    status: Literal["success", "error", "pending"]
    summary: str
    code: ToolErrorCode | None = None


class ProposalStatus(str, Enum):
    PENDING = "pending"
    CONFIRMING = "confirming"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class Proposal(BaseModel):
    """A queued write-tool request awaiting explicit confirmation."""

    id: str = Field(..., description="Tool call id the proposal was created from.")
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    summary: str
    status: ProposalStatus = ProposalStatus.PENDING
    result: Any = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Context configuration
# ---------------------------------------------------------------------------


class ContextScopes(BaseModel):
    sessions: bool = False
    templates: bool = False
    exercise_history: bool = False
    notes: bool = False
    settings: bool = False
    spaces: bool = False


class LaunchContext(BaseModel):
    """Where the coach was opened from (gym page, exercise page, ...)."""

    source: str | None = None
    gym_id: int | None = None
    gym_name: str | None = None
    exercise_id: int | None = None
    exercise_name: str | None = None


class SelectedGym(BaseModel):
    id: int
    name: str | None = None


class ContextState(BaseModel):
    """Authoritative context availability sent to the model every turn."""

    context_enabled: bool = False
    selected_gym: SelectedGym | None = None
    equipment_summary: str | list[str] = Field(default_factory=list)


class ContextConfig(BaseModel):
    enabled: bool = False
    scopes: ContextScopes = Field(default_factory=ContextScopes)
    session_limit: int = 5
    template_limit: int = 10
    max_bytes: int | None = None
    launch_context: LaunchContext | None = None
    active_gym_id: int | None = None
    context_state: ContextState | None = None


# ---------------------------------------------------------------------------
# Context snapshot outputs
# ---------------------------------------------------------------------------


class Fingerprint(BaseModel):
    """Deterministic digest of a context payload."""

    model_config = ConfigDict(frozen=True)

    algorithm: str
    hash: str
    context_bytes: int


class ContextMeta(BaseModel):
    size_bytes: int
    truncated: bool = False
    omitted: list[str] = Field(default_factory=list)


class ContextContract(BaseModel):
    """Compact counts used for UI trust display. Pre-truncation values."""

    version: Literal["coach_context_v1"] = "coach_context_v1"
    active_gym_id: int | None = None
    active_gym_name: str | None = None
    equipment_count: int = 0
    recent_workouts_count: int = 0
    last_workout_date: str | None = None
    templates_count: int = 0
    custom_exercises_count: int = 0
    exercise_library_count: int = 0
    context_bytes: int = 0
    build_ms: float = 0.0


class ExerciseCandidate(BaseModel):
    """Read-only projection of a library exercise the model may reference."""

    model_config = ConfigDict(frozen=True)

    exercise_id: int
    name: str
    aliases: list[str] = Field(default_factory=list)
    equipment: list[str] = Field(default_factory=list)
    primary_muscles: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Validation and turn result
# ---------------------------------------------------------------------------


class ResponseMode(str, Enum):
    GENERAL = "general"
    WORKOUT = "workout"
    TEMPLATE_JSON = "template_json"


class ValidationResult(BaseModel):
    valid: bool
    mode: ResponseMode
    error: str | None = None
    parsed: Any = None


class ResponseValidationOutcome(BaseModel):
    status: Literal["ok", "repaired", "failed"] = "ok"
    mode: ResponseMode = ResponseMode.GENERAL
    repaired: bool = False
    error: str | None = None


class PromptWindowMeta(BaseModel):
    original_messages: int
    used_messages: int
    dropped_messages: int
    max_messages: int
    max_chars: int
    chars_used: int
    retried_with_minimal_history: bool = False


class TurnDebug(BaseModel):
    """Diagnostics bundle for one turn. Never sent to the model."""

    model: str
    allowed_tools: list[str] = Field(default_factory=list)
    tool_calls: list[ToolCall] = Field(default_factory=list)
    model_calls: int = 0
    context_meta: ContextMeta | None = None
    context_contract: ContextContract | None = None
    request_context: dict[str, Any] = Field(default_factory=dict)
    request_fingerprint: Fingerprint | None = None
    snapshot_fingerprint: Fingerprint | None = None
    context_state: ContextState | None = None
    prompt_window: PromptWindowMeta | None = None
    estimated_tokens: int = 0
    context_window_retry: bool = False
    context_window_retry_error: str | None = None
    exercise_candidate_count: int = 0
    response_validation: ResponseValidationOutcome | None = None
    action_contract_version: str | None = None
    action_parse_errors: list[str] | None = None


class TurnResult(BaseModel):
    assistant_text: str
    conversation: list[ConversationMessage]
    tool_events: list[ToolEvent] = Field(default_factory=list)
    pending_proposals: list[Proposal] = Field(default_factory=list)
    debug: TurnDebug
    context_contract: ContextContract | None = None
    fingerprint: Fingerprint
    snapshot_fingerprint: Fingerprint | None = None
    payload_summary: dict[str, Any] = Field(default_factory=dict)
    action_draft: Any = Field(default=None, description="ActionDraft or None.")
    action_contract_version: str | None = None
    action_parse_errors: list[str] | None = None
    validation: ResponseValidationOutcome
