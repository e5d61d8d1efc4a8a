# orchestrator.py
# Coach turn orchestrator.
#
# The orchestrator owns all control flow for one user turn. The model is a
# passive responder: it may request tools, but every request goes through
# the allow-list, the registry and schema validation here first, and write
# tools never run inside a turn. They are queued as Proposals and only
# execute through confirm_proposal().
#
# Control flow:
#   request context + candidates → optional snapshot → system messages
#   → bounded history window → tool loop (≤ MAX_TOOL_LOOPS model calls)
#   → response validation → one repair call or fallback → action draft parse
#
# All terminal output is delegated to display.py. Diagnostics go to logging.

import json
import logging
import math
from typing import Any, Iterable

from iron_coach import display
from iron_coach.action_draft import parse_action_draft_message
from iron_coach.config import CoachSettings
from iron_coach.context import (
    DEFAULT_CANDIDATE_LIMIT,
    build_context_snapshot,
    build_request_context,
    get_exercise_candidates,
    to_candidate,
)
from iron_coach.fingerprint import build_fingerprint
from iron_coach.llm import ChatModel, DeltaCallback, ModelResponse, is_context_window_overflow
from iron_coach.memory import summarize_memory
from iron_coach.models import (
    ContextConfig,
    ContextContract,
    ContextState,
    ConversationMessage,
    ExerciseCandidate,
    Proposal,
    ProposalStatus,
    PromptWindowMeta,
    ResponseMode,
    ResponseValidationOutcome,
    SelectedGym,
    ToolCall,
    ToolErrorCode,
    ToolEvent,
    TurnDebug,
    TurnResult,
)
from iron_coach.parsing import parse_json_object
from iron_coach.store import CoachStore, Exercise
from iron_coach.tools import (
    ToolContext,
    allowed_tool_names,
    execute_tool,
    get_tool,
    openai_tools,
    summarize_tool_call,
    validate_tool_input,
)
from iron_coach.validation import (
    build_repair_prompt,
    classify_response_mode,
    get_validation_failure_message,
    parse_edit_intent,
    validate_coach_response,
)

logger = logging.getLogger(__name__)

MAX_TOOL_LOOPS = 2
EMPTY_RESPONSE_MESSAGE = "I ran into an issue while preparing your response."
TOOL_BLOCKED_MESSAGE = "Tool blocked by context settings."
TOOL_NOT_FOUND_MESSAGE = "Tool not found."


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ProposalStateError(Exception):
    """Raised when confirming or cancelling a proposal that is no longer pending."""


# ---------------------------------------------------------------------------
# System Prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = " ".join(
    [
        "You are a supportive AI fitness coach.",
        "Be concise, practical, and friendly.",
        "Reply with a succinct assistantText.",
        "If proposing an action, include a JSON object in a fenced ```json``` block using contractVersion "
        "coach_action_v1 with assistantText and an optional actionDraft.",
        "Action drafts must include kind, confidence, risk, title, summary, and payload. For workouts/templates: "
        "payload includes name/title, optional gymId, and exercises: [{ exerciseId, sets?: [{ reps?, weight?, "
        "duration?, rpe? }], notes? }]. For gyms: payload includes name/title and optional equipmentIds.",
        "For workout/template drafts, every exercise must include exerciseId from the provided candidate exercise list.",
        "Never invent exercise IDs or exercise names outside the candidate list.",
        "If you cannot confidently map a requested exercise, return needsReview: [{ requestedName, suggestions: "
        "[{ exerciseId, name }] }] and do not guess.",
        "Never ask users to copy/paste JSON. Do not expose raw template or workout JSON in assistantText.",
        "For workout requests and workout edits, prefer actionDraft kind create_workout with a complete, updated "
        "exercise list.",
        "For template requests, prefer actionDraft kind create_template and guide users to save/open the template.",
        "Apply requested workout edits directly; do not enter repeated confirmation loops.",
        "The Context availability payload is authoritative for whether context sharing is enabled.",
        "Never fabricate available equipment. Only use equipment_summary when provided.",
        "If context_enabled is false, do NOT claim you can see equipment. Still provide a generic workout and "
        "include a brief nudge to enable context or choose a gym for personalization.",
        "If the user asks to adjust an existing workout draft, return an updated create_workout actionDraft even "
        "when context_enabled is false.",
        "When asked to produce a workout, include at least 5 exercises with sets and reps.",
        "If context is missing, continue with safe generic assumptions when possible; only ask one clarifying "
        "question when the request is impossible without missing details.",
        "Do not invent user data. Use tools when you need workout history, templates, or exercises.",
        "Respect workout space equipment constraints. Never recommend exercises that require unavailable equipment.",
        "If context_enabled is true and equipment_summary exists, use only that equipment when generating workouts.",
        "Do not suggest creating a new gym/space if active_gym_id is present or if a gym with the same normalized "
        "name already exists.",
        "Only suggest creating a gym if there is no active_gym_id and no existing gyms match by normalized name.",
        "If active_gym_id is present but equipment_summary is missing, do not claim you can see equipment. Continue "
        "using the provided candidate list and include a brief nudge to enable context sharing for better "
        "personalization.",
        "When you provide a plan or recommendation, include a line: 'Designed for: <space name>'. If unknown, ask "
        "the user.",
        "If the context snapshot includes launch_context.source 'gym_detail', start your next reply with: "
        "\"I'll design workouts for <gym name>.\" Use the active space name if available.",
        "If the context snapshot includes launch_context.source 'exercise_detail', start your next reply with: "
        "\"Let's break down <exercise name>.\" Use the exercise name if available.",
        "Avoid high-risk actionDrafts unless the user explicitly requests overwriting or destructive changes.",
        "Avoid asking multiple clarifying questions; propose reasonable defaults instead.",
        "Avoid medical advice; recommend a professional for injuries or health concerns.",
    ]
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


def _candidate_payload(candidates: list[ExerciseCandidate]) -> list[dict[str, Any]]:
    return [
        {
            "exerciseId": c.exercise_id,
            "name": c.name,
            "aliases": c.aliases,
            "equipment": c.equipment,
            "primaryMuscles": c.primary_muscles,
        }
        for c in candidates
    ]


def build_system_messages(
    *,
    context_state: ContextState | None = None,
    memory_summary: dict[str, Any] | None = None,
    request_context: dict[str, Any] | None = None,
    candidates: list[ExerciseCandidate] | None = None,
    snapshot: dict[str, Any] | None = None,
) -> list[ConversationMessage]:
    """Regenerated every model call; each block is included only when present."""
    blocks = [SYSTEM_PROMPT]
    if context_state is not None:
        blocks.append(f"Context availability (authoritative JSON):\n{_dumps(context_state.model_dump(mode='json'))}")
    if memory_summary:
        blocks.append(f"Coach memory summary (JSON):\n{_dumps(memory_summary)}")
    if request_context:
        blocks.append(f"Coach request context (JSON):\n{_dumps(request_context)}")
    if candidates:
        blocks.append(
            "Exercise candidates (authoritative JSON, choose exerciseId only from this list):\n"
            f"{_dumps(_candidate_payload(candidates))}"
        )
    if snapshot:
        blocks.append(f"Context snapshot (JSON, may be truncated):\n{_dumps(snapshot)}")
    return [ConversationMessage(role="system", content=block) for block in blocks]


def _history_entry(entry: Any) -> ConversationMessage | None:
    if isinstance(entry, ConversationMessage):
        role, content = entry.role, entry.content
    elif isinstance(entry, dict):
        role, content = str(entry.get("role") or "").strip(), entry.get("content")
    else:
        return None
    if role not in ("user", "assistant"):
        return None
    return ConversationMessage(role=role, content=content if isinstance(content, str) else str(content or ""))


def build_prompt_history_window(
    chat_history: Iterable[Any],
    user_message: str,
    *,
    max_messages: int = 24,
    max_chars: int = 32_000,
) -> tuple[list[ConversationMessage], PromptWindowMeta]:
    """
    Bound prior turns by message count, then by characters, newest first.
    Once a message does not fit, it and everything older is dropped.

    Only user/assistant entries survive. The latest user message is always
    kept, even when it alone exceeds max_chars.
    """
    normalized = [m for m in (_history_entry(e) for e in chat_history or ()) if m is not None]
    latest = ConversationMessage(role="user", content=str(user_message or ""))
    full = [*normalized, latest]
    by_count = full[-max_messages:] if max_messages > 0 else [latest]

    window: list[ConversationMessage] = []
    chars = 0
    for message in reversed(by_count):
        total = chars + len(message.content)
        if window and total > max_chars:
            break
        window.insert(0, message)
        chars = total

    if not window or window[-1] is not latest:
        window.append(latest)
        chars += len(latest.content)

    meta = PromptWindowMeta(
        original_messages=len(full),
        used_messages=len(window),
        dropped_messages=max(0, len(full) - len(window)),
        max_messages=max_messages,
        max_chars=max_chars,
        chars_used=chars,
    )
    return window, meta


def estimate_tokens(messages: list[dict[str, Any]]) -> int:
    return math.ceil(len(_dumps(messages)) / 4)


def normalize_context_state(config: ContextConfig, request_context: dict[str, Any]) -> ContextState:
    """Authoritative availability block; equipment is never reported with context off."""
    provided = config.context_state
    selected = provided.selected_gym if provided else None
    if selected is None and request_context.get("active_gym_id") is not None:
        selected = SelectedGym(id=request_context["active_gym_id"], name=request_context.get("gym_name"))

    equipment: str | list[str] = []
    if config.enabled and provided is not None:
        summary = provided.equipment_summary
        if isinstance(summary, str):
            equipment = summary.strip() or []
        else:
            equipment = list(summary)
    return ContextState(context_enabled=config.enabled, selected_gym=selected, equipment_summary=equipment)


def _tool_message(call_id: str, body: dict[str, Any]) -> ConversationMessage:
    return ConversationMessage(role="tool", tool_call_id=call_id, content=_dumps(body))


def _tool_error(
    call: ToolCall, code: ToolErrorCode, summary: str, error: str, **extra: Any
) -> tuple[ToolEvent, ConversationMessage]:
    event = ToolEvent(name=call.name, status="error", summary=summary, code=code)
    body = {"status": "error", "code": code.value, "error": error, **extra}
    return event, _tool_message(call.id, body)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class CoachOrchestrator:
    """
    Runs coach turns against a ChatModel and a CoachStore.

    Example:
        coach = CoachOrchestrator(OpenAIChatModel(settings), store, settings)
        result = await coach.run_turn("Build me a push day", context_config=config)
        for proposal in result.pending_proposals:
            await coach.confirm_proposal(proposal, config)
    """

    def __init__(self, model: ChatModel, store: CoachStore, settings: CoachSettings | None = None) -> None:
        self.model = model
        self.store = store
        self.settings = settings or CoachSettings()
        display.banner(model.model, self.settings.enable_write_tools)

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        user_message: str,
        *,
        chat_history: Iterable[Any] = (),
        context_config: ContextConfig | None = None,
        response_mode: ResponseMode | str | None = None,
        memory_enabled: bool = False,
        memory: Any = None,
        current_draft: Any = None,
        on_delta: DeltaCallback | None = None,
    ) -> TurnResult:
        config = context_config or ContextConfig()
        settings = self.settings
        mode_label = str(getattr(response_mode, "value", response_mode) or "auto")
        display.turn_started(user_message, mode_label)

        allowed = allowed_tool_names(
            config.scopes,
            context_enabled=config.enabled,
            enable_write_tools=settings.enable_write_tools,
        )
        tool_specs = openai_tools(allowed)
        debug = TurnDebug(model=self.model.model, allowed_tools=list(allowed))

        # ── Request context, candidates, snapshot ───────────────────────
        request_context, request_meta = await self._request_context(config.active_gym_id)
        request_fingerprint = build_fingerprint(request_context, request_meta.get("context_bytes"))
        context_state = normalize_context_state(config, request_context)

        library = await self._library()
        library_ids = {ex.id for ex in library if ex.id > 0}
        candidates = await self._candidates(config, context_state, user_message, library)
        candidate_ids = {c.exercise_id for c in candidates if c.exercise_id > 0}

        snapshot: dict[str, Any] | None = None
        contract: ContextContract | None = None
        snapshot_fingerprint = None
        if config.enabled:
            built = await build_context_snapshot(
                self.store,
                scopes=config.scopes,
                session_limit=config.session_limit,
                template_limit=config.template_limit,
                max_bytes=config.max_bytes or settings.context_max_bytes,
                memory_summary=memory if memory_enabled else None,
                launch_context=config.launch_context,
                active_gym_id=config.active_gym_id,
            )
            snapshot, contract = built.snapshot, built.contract
            debug.context_meta = built.meta
            debug.context_contract = contract
            snapshot_fingerprint = build_fingerprint(snapshot, built.meta.size_bytes)
            debug.snapshot_fingerprint = snapshot_fingerprint
            display.payload_built(contract, snapshot_fingerprint, list(allowed))
            if built.meta.truncated:
                display.snapshot_truncated(built.meta)

        payload_summary = self._payload_summary(config, contract, request_context, request_meta, candidates)

        system_messages = build_system_messages(
            context_state=context_state,
            memory_summary=summarize_memory(memory) if memory_enabled else None,
            request_context=request_context,
            candidates=candidates,
            snapshot=snapshot,
        )
        history, window_meta = build_prompt_history_window(
            chat_history,
            user_message,
            max_messages=settings.max_history_messages,
            max_chars=settings.max_history_chars,
        )

        debug.request_context = request_context
        debug.request_fingerprint = request_fingerprint
        debug.context_state = context_state
        debug.prompt_window = window_meta
        debug.exercise_candidate_count = len(candidates)
        debug.estimated_tokens = estimate_tokens([m.to_openai() for m in [*system_messages, *history]])

        logger.info(
            "coach_payload gym=%s eq=%s ex=%s bytes=%s ms=%s fp=%s",
            request_context.get("active_gym_id") or "none",
            request_context.get("equipment_count", 0),
            request_context.get("exercise_library_count", 0) + request_context.get("custom_exercises_count", 0),
            request_meta.get("context_bytes", 0),
            request_meta.get("context_build_ms", 0),
            request_fingerprint.hash,
        )

        # ── Tool loop ───────────────────────────────────────────────────
        tool_context = ToolContext(store=self.store, scopes=config.scopes, active_gym_id=config.active_gym_id)
        tool_events: list[ToolEvent] = []
        proposals: list[Proposal] = []
        final_text: str | None = None
        last_response: ModelResponse | None = None

        for iteration in range(1, MAX_TOOL_LOOPS + 1):
            display.model_call(iteration, MAX_TOOL_LOOPS, len(system_messages) + len(history))
            try:
                response = await self._call_model(system_messages + history, tool_specs, on_delta, debug)
            except Exception as exc:
                if debug.context_window_retry or not is_context_window_overflow(exc):
                    raise
                debug.context_window_retry = True
                debug.context_window_retry_error = str(getattr(exc, "message", "") or exc).strip() or (
                    "Context window exceeded"
                )
                display.context_window_retry(debug.context_window_retry_error)
                history = [ConversationMessage(role="user", content=str(user_message or ""))]
                debug.prompt_window = window_meta.model_copy(
                    update={
                        "used_messages": 1,
                        "dropped_messages": max(0, window_meta.original_messages - 1),
                        "chars_used": len(history[0].content),
                        "retried_with_minimal_history": True,
                    }
                )
                debug.estimated_tokens = estimate_tokens([m.to_openai() for m in [*system_messages, *history]])
                response = await self._call_model(system_messages + history, tool_specs, on_delta, debug)

            last_response = response
            debug.tool_calls = list(response.tool_calls)

            if not response.tool_calls:
                final_text = response.content
                if final_text.strip():
                    history.append(ConversationMessage(role="assistant", content=final_text))
                break

            history.append(
                ConversationMessage(role="assistant", content=response.content, tool_calls=list(response.tool_calls))
            )
            for call in response.tool_calls:
                event, message, proposal = await self._process_tool_call(call, allowed, tool_context)
                tool_events.append(event)
                history.append(message)
                if proposal is not None:
                    proposals.append(proposal)
                    display.proposal_queued(proposal)

        if final_text is None and last_response is not None and last_response.content.strip():
            # Loop cap reached while the model was still calling tools.
            final_text = last_response.content
            history.append(ConversationMessage(role="assistant", content=final_text))

        # ── Validation and repair ───────────────────────────────────────
        outcome = ResponseValidationOutcome(mode=classify_response_mode(user_message, response_mode))
        if not final_text or not final_text.strip():
            final_text = EMPTY_RESPONSE_MESSAGE
            history.append(ConversationMessage(role="assistant", content=final_text))
        else:
            final_text, outcome = await self._validate_and_repair(
                user_message=user_message,
                final_text=final_text,
                conversation=system_messages + history,
                response_mode=response_mode,
                context_state=context_state,
                candidates=candidates,
                candidate_ids=candidate_ids,
                library=library,
                library_ids=library_ids,
                current_draft=current_draft,
                debug=debug,
            )
            if outcome.status != "ok":
                self._replace_last_assistant(history, final_text)

        # ── Action draft ────────────────────────────────────────────────
        parsed = parse_action_draft_message(final_text)
        assistant_text = parsed.assistant_text or final_text
        self._replace_last_assistant(history, assistant_text)

        debug.response_validation = outcome
        debug.action_contract_version = parsed.contract_version
        debug.action_parse_errors = parsed.parse_errors

        display.final_result(assistant_text, outcome.status)
        return TurnResult(
            assistant_text=assistant_text,
            conversation=history,
            tool_events=tool_events,
            pending_proposals=proposals,
            debug=debug,
            context_contract=contract,
            fingerprint=request_fingerprint,
            snapshot_fingerprint=snapshot_fingerprint,
            payload_summary=payload_summary,
            action_draft=parsed.action_draft,
            action_contract_version=parsed.contract_version,
            action_parse_errors=parsed.parse_errors,
            validation=outcome,
        )

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    async def confirm_proposal(self, proposal: Proposal, context_config: ContextConfig | None = None) -> Proposal:
        """Execute a queued write tool exactly once: pending → confirming → success | error."""
        if proposal.status is not ProposalStatus.PENDING:
            raise ProposalStateError(f"Proposal {proposal.id} is {proposal.status.value}, not pending.")

        config = context_config or ContextConfig()
        proposal.status = ProposalStatus.CONFIRMING
        context = ToolContext(store=self.store, scopes=config.scopes, active_gym_id=config.active_gym_id)
        try:
            proposal.result = await execute_tool(proposal.name, proposal.input, context)
            proposal.status = ProposalStatus.SUCCESS
        except Exception as exc:
            logger.warning("proposal %s (%s) failed: %s", proposal.id, proposal.name, exc)
            proposal.error = str(exc) or "Tool failed."
            proposal.status = ProposalStatus.ERROR
        display.proposal_resolved(proposal)
        return proposal

    def cancel_proposal(self, proposal: Proposal) -> Proposal:
        if proposal.status is not ProposalStatus.PENDING:
            raise ProposalStateError(f"Proposal {proposal.id} is {proposal.status.value}, not pending.")
        proposal.status = ProposalStatus.CANCELLED
        return proposal

    # ------------------------------------------------------------------
    # Internal: payload
    # ------------------------------------------------------------------

    async def _request_context(self, active_gym_id: int | None) -> tuple[dict[str, Any], dict[str, Any]]:
        try:
            return await build_request_context(self.store, active_gym_id)
        except Exception as exc:
            logger.warning("request context unavailable, using empty summary: %s", exc)
            empty = {
                "active_gym_id": None,
                "gym_name": None,
                "equipment_ids": [],
                "equipment_count": 0,
                "exercise_library_count": 0,
                "custom_exercises_count": 0,
                "templates_count": 0,
                "recent_workouts_count": 0,
                "last_workout_date": None,
            }
            return empty, {"context_bytes": 0, "context_build_ms": 0}

    async def _library(self) -> list[Exercise]:
        try:
            return await self.store.list_exercises()
        except Exception as exc:
            logger.warning("exercise library unavailable: %s", exc)
            return []

    async def _candidates(
        self,
        config: ContextConfig,
        context_state: ContextState,
        user_message: str,
        library: list[Exercise],
    ) -> list[ExerciseCandidate]:
        limit = self.settings.candidate_limit or DEFAULT_CANDIDATE_LIMIT
        try:
            candidates = await get_exercise_candidates(
                self.store,
                active_gym_id=config.active_gym_id,
                context_enabled=context_state.context_enabled,
                user_message=user_message,
                limit=limit,
            )
        except Exception as exc:
            logger.warning("exercise candidates unavailable: %s", exc)
            candidates = []
        if not candidates and library:
            candidates = [to_candidate(ex) for ex in library[:limit]]
        return candidates

    @staticmethod
    def _payload_summary(
        config: ContextConfig,
        contract: ContextContract | None,
        request_context: dict[str, Any],
        request_meta: dict[str, Any],
        candidates: list[ExerciseCandidate],
    ) -> dict[str, Any]:
        """UI counts. Template and session counts stay None unless their scope is shared."""
        source: dict[str, Any] = contract.model_dump() if contract else {}

        def pick(key: str, fallback_key: str | None = None, default: Any = None) -> Any:
            if key in source and source[key] is not None:
                return source[key]
            return request_context.get(fallback_key or key, default)

        templates_on = config.enabled and config.scopes.templates
        sessions_on = config.enabled and config.scopes.sessions
        return {
            "active_gym_id": pick("active_gym_id"),
            "active_gym_name": pick("active_gym_name", "gym_name"),
            "equipment_count": pick("equipment_count", default=0),
            "equipment_ids": request_context.get("equipment_ids", []),
            "exercise_library_count": pick("exercise_library_count", default=0),
            "custom_exercises_count": pick("custom_exercises_count", default=0),
            "templates_count": pick("templates_count") if templates_on else None,
            "recent_workouts_count": pick("recent_workouts_count") if sessions_on else None,
            "context_bytes": contract.context_bytes if contract else request_meta.get("context_bytes"),
            "build_ms": contract.build_ms if contract else request_meta.get("context_build_ms"),
            "candidate_exercise_count": len(candidates),
            "summary_only": contract is None,
        }

    # ------------------------------------------------------------------
    # Internal: model and tools
    # ------------------------------------------------------------------

    async def _call_model(
        self,
        messages: list[ConversationMessage],
        tool_specs: list[dict[str, Any]],
        on_delta: DeltaCallback | None,
        debug: TurnDebug,
    ) -> ModelResponse:
        debug.model_calls += 1
        return await self.model.complete(
            [m.to_openai() for m in messages],
            tools=tool_specs or None,
            temperature=self.settings.temperature,
            on_delta=on_delta,
        )

    async def _process_tool_call(
        self,
        call: ToolCall,
        allowed: list[str],
        context: ToolContext,
    ) -> tuple[ToolEvent, ConversationMessage, Proposal | None]:
        """
        Gate order: argument JSON, allow-list, registry, input schema, then write → proposal
        or read → execute. Every outcome becomes exactly one tool message.
        """
        parsed = parse_json_object(call.arguments or "{}")
        if not parsed.ok:
            error = parsed.error or "Tool arguments are not valid JSON."
            event, message = _tool_error(
                call, ToolErrorCode.INPUT_INVALID, "Invalid tool input.", error, errors=[error]
            )
            display.tool_event(event, {})
            return event, message, None
        args: dict[str, Any] = parsed.value

        if call.name not in allowed:
            event, message = _tool_error(call, ToolErrorCode.BLOCKED_BY_SCOPE, TOOL_BLOCKED_MESSAGE, TOOL_BLOCKED_MESSAGE)
            display.tool_event(event, args)
            return event, message, None

        tool = get_tool(call.name)
        if tool is None:
            event, message = _tool_error(call, ToolErrorCode.NOT_FOUND, TOOL_NOT_FOUND_MESSAGE, TOOL_NOT_FOUND_MESSAGE)
            display.tool_event(event, args)
            return event, message, None

        validation = validate_tool_input(tool, args)
        if not validation.valid:
            event, message = _tool_error(
                call,
                ToolErrorCode.INPUT_INVALID,
                "Invalid tool input.",
                "; ".join(validation.errors),
                errors=validation.errors,
            )
            display.tool_event(event, args)
            return event, message, None

        summary = summarize_tool_call(call.name, args)
        if tool.is_write_tool:
            proposal = Proposal(id=call.id, name=call.name, input=args, summary=summary)
            event = ToolEvent(name=call.name, status="pending", summary=summary)
            display.tool_event(event, args)
            message = _tool_message(call.id, {"status": "pending_confirmation", "summary": summary})
            return event, message, proposal

        try:
            result = await execute_tool(call.name, args, context)
        except Exception as exc:
            logger.warning("tool %s failed: %s", call.name, exc)
            event, message = _tool_error(
                call, ToolErrorCode.EXECUTION_FAILED, summary, str(exc) or "Tool failed."
            )
            display.tool_event(event, args)
            return event, message, None

        event = ToolEvent(name=call.name, status="success", summary=summary)
        display.tool_event(event, args)
        return event, _tool_message(call.id, {"status": "success", "result": result}), None

    # ------------------------------------------------------------------
    # Internal: validation
    # ------------------------------------------------------------------

    async def _validate_and_repair(
        self,
        *,
        user_message: str,
        final_text: str,
        conversation: list[ConversationMessage],
        response_mode: ResponseMode | str | None,
        context_state: ContextState,
        candidates: list[ExerciseCandidate],
        candidate_ids: set[int],
        library: list[Exercise],
        library_ids: set[int],
        current_draft: Any,
        debug: TurnDebug,
    ) -> tuple[str, ResponseValidationOutcome]:
        catalog = {ex.id: ex for ex in library}
        edit_intent = parse_edit_intent(user_message)

        def validate(text: str):
            return validate_coach_response(
                user_message=user_message,
                assistant_text=text,
                response_mode=response_mode,
                context_enabled=context_state.context_enabled,
                allowed_candidate_ids=candidate_ids,
                library_ids=library_ids,
                current_draft=current_draft,
                edit_intent=edit_intent,
                exercise_catalog=catalog,
            )

        first = validate(final_text)
        if first.valid:
            return final_text, ResponseValidationOutcome(status="ok", mode=first.mode)

        display.validation_failed(first.mode.value, first.error or "Validation failed.")
        prompt = build_repair_prompt(
            first.mode,
            context_enabled=context_state.context_enabled,
            invalid_content=final_text,
            selected_gym=context_state.selected_gym,
            candidates=candidates,
        )
        messages = [
            *[m.to_openai() for m in conversation],
            {"role": "assistant", "content": final_text},
            {"role": "user", "content": prompt},
        ]
        debug.model_calls += 1
        try:
            repaired = (await self.model.complete(messages, temperature=self.settings.temperature)).content.strip()
        except Exception as exc:
            logger.warning("repair call failed, treating as empty: %s", exc)
            repaired = ""

        second = validate(repaired)
        if second.valid:
            display.repair_outcome("repaired", None)
            return repaired, ResponseValidationOutcome(status="repaired", mode=second.mode, repaired=True)

        error = second.error or first.error or "Validation failed."
        display.repair_outcome("failed", error)
        fallback = get_validation_failure_message(first.mode)
        return fallback, ResponseValidationOutcome(status="failed", mode=second.mode, repaired=True, error=error)

    @staticmethod
    def _replace_last_assistant(history: list[ConversationMessage], content: str) -> None:
        if history and history[-1].role == "assistant" and not history[-1].tool_calls:
            history[-1] = ConversationMessage(role="assistant", content=content)
        else:
            history.append(ConversationMessage(role="assistant", content=content))
