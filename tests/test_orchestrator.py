import json
from unittest.mock import AsyncMock, patch

import pytest

from conftest import NOW, ScriptedModel, action_message, build_exercises, build_store, tool_response
from iron_coach.config import CoachSettings
from iron_coach.context import to_candidate
from iron_coach.models import (
    ContextConfig,
    ContextScopes,
    ContextState,
    ConversationMessage,
    Proposal,
    ProposalStatus,
    ResponseMode,
    ToolCall,
    ToolErrorCode,
)
from iron_coach.orchestrator import (
    EMPTY_RESPONSE_MESSAGE,
    MAX_TOOL_LOOPS,
    SYSTEM_PROMPT,
    TOOL_BLOCKED_MESSAGE,
    CoachOrchestrator,
    ProposalStateError,
    build_prompt_history_window,
    build_system_messages,
    normalize_context_state,
)
from iron_coach.tools import ToolContext
from iron_coach.validation import WORKOUT_CONTRACT_ERROR, get_validation_failure_message

OVERFLOW = RuntimeError("This model's maximum context length is 8192 tokens.")


def _coach(store, responses, **settings):
    model = ScriptedModel(responses)
    return CoachOrchestrator(model, store, CoachSettings(**settings)), model


def _tool_messages(result):
    return [json.loads(m.content) for m in result.conversation if m.role == "tool"]


def _non_system(messages):
    return [m for m in messages if m["role"] != "system"]


# ---------------------------------------------------------------------------
# Plain turns
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_general_reply_single_call(store):
    coach, model = _coach(store, ["Sleep at least seven hours."])
    result = await coach.run_turn("How do I recover faster?")

    assert result.assistant_text == "Sleep at least seven hours."
    assert result.validation.status == "ok"
    assert result.debug.model_calls == 1
    assert model.calls[0]["tools"] is None
    assert [m.role for m in result.conversation] == ["user", "assistant"]
    assert result.snapshot_fingerprint is None
    assert result.fingerprint == result.debug.request_fingerprint

@pytest.mark.asyncio
async def test_deltas_are_forwarded(store):
    coach, _ = _coach(store, ["Hi there."])
    deltas = []
    await coach.run_turn("hello", on_delta=deltas.append)
    assert deltas == ["Hi there."]

@pytest.mark.asyncio
async def test_empty_response_uses_fallback_text(store):
    coach, _ = _coach(store, ["   "])
    result = await coach.run_turn("hello")
    assert result.assistant_text == EMPTY_RESPONSE_MESSAGE
    assert [m.content for m in result.conversation if m.role == "assistant"] == [EMPTY_RESPONSE_MESSAGE]
    assert result.debug.model_calls == 1

@pytest.mark.asyncio
async def test_empty_response_reports_requested_mode(store):
    coach, _ = _coach(store, ["", ""])
    result = await coach.run_turn("Build me a leg workout")
    assert result.validation.status == "ok"
    assert result.validation.mode is ResponseMode.WORKOUT

    result = await coach.run_turn("Convert this", response_mode="template_json")
    assert result.validation.mode is ResponseMode.TEMPLATE_JSON
    assert result.debug.response_validation.mode is ResponseMode.TEMPLATE_JSON

@pytest.mark.asyncio
async def test_system_messages_are_first(store, context_on):
    coach, model = _coach(store, ["ok"])
    await coach.run_turn("hello", context_config=context_on, memory_enabled=True, memory={"notes": "bad knee"})

    system = [m["content"] for m in model.calls[0]["messages"] if m["role"] == "system"]
    assert system[0] == SYSTEM_PROMPT
    assert system[1].startswith("Context availability (authoritative JSON):")
    assert system[2].startswith("Coach memory summary (JSON):")
    assert "bad knee" in system[2]
    assert system[3].startswith("Coach request context (JSON):")
    assert system[4].startswith("Exercise candidates")
    assert system[5].startswith("Context snapshot (JSON, may be truncated):")
    assert model.calls[0]["messages"][-1] == {"role": "user", "content": "hello"}

# ---------------------------------------------------------------------------
# Tool loop
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_read_tool_executes_and_loops(store, context_on):
    coach, model = _coach(
        store,
        [tool_response(("c1", "get_templates", {})), "You have a Push Day template."],
    )
    result = await coach.run_turn("Which templates do I have?", context_config=context_on)

    assert result.assistant_text == "You have a Push Day template."
    assert result.tool_events[0].status == "success"
    body = _tool_messages(result)[0]
    assert body["status"] == "success"
    assert body["result"]["templates"][0]["name"] == "Push Day"
    assert len(model.calls) == 2
    roles = [m["role"] for m in _non_system(model.calls[1]["messages"])]
    assert roles == ["user", "assistant", "tool"]

@pytest.mark.asyncio
async def test_loop_never_exceeds_cap(store, context_on):
    coach, model = _coach(
        store,
        [
            tool_response(("c1", "get_templates", {})),
            tool_response(("c2", "get_recent_sessions", {}), content="Still checking your sessions."),
        ],
    )
    result = await coach.run_turn("Summarize my training", context_config=context_on)

    assert len(model.calls) == MAX_TOOL_LOOPS
    assert len(result.tool_events) == 2
    assert result.assistant_text == "Still checking your sessions."

@pytest.mark.asyncio
async def test_tool_blocked_when_context_off(store):
    coach, _ = _coach(store, [tool_response(("c1", "get_templates", {})), "I can't see your templates."])
    result = await coach.run_turn("Which templates do I have?")

    event = result.tool_events[0]
    assert event.status == "error"
    assert event.code is ToolErrorCode.BLOCKED_BY_SCOPE
    assert _tool_messages(result)[0] == {
        "status": "error",
        "code": "tool_blocked_by_scope",
        "error": TOOL_BLOCKED_MESSAGE,
    }

@pytest.mark.asyncio
async def test_invalid_tool_input(store, context_on):
    coach, _ = _coach(store, [tool_response(("c1", "get_session_detail", {})), "Which one do you mean?"])
    result = await coach.run_turn("What did I do last time?", context_config=context_on)

    assert result.tool_events[0].code is ToolErrorCode.INPUT_INVALID
    body = _tool_messages(result)[0]
    assert body["errors"] == ["<root>: 'sessionId' is a required property"]

@pytest.mark.asyncio
async def test_malformed_arguments_are_rejected_without_executing(store, context_on):
    plain, _ = _coach(store, ["You have one template."])
    with patch.object(store, "list_templates", AsyncMock(wraps=store.list_templates)) as list_templates:
        await plain.run_turn("Which templates do I have?", context_config=context_on)
        baseline = list_templates.await_count

    coach, _ = _coach(store, [tool_response(("c1", "get_templates", "{not json")), "Let me try that again."])
    with patch.object(store, "list_templates", AsyncMock(wraps=store.list_templates)) as list_templates:
        result = await coach.run_turn("Which templates do I have?", context_config=context_on)
        calls_during_turn = list_templates.await_count

    event = result.tool_events[0]
    assert event.status == "error"
    assert event.code is ToolErrorCode.INPUT_INVALID
    body = _tool_messages(result)[0]
    assert body["status"] == "error"
    assert body["code"] == "tool_input_invalid"
    assert body["error"].startswith("Malformed JSON")
    assert "result" not in body
    # only the context builders read templates; the tool handler never ran
    assert calls_during_turn == baseline

@pytest.mark.asyncio
async def test_non_object_arguments_are_rejected(store, context_on):
    coach, _ = _coach(store, [])
    ctx = ToolContext(store=store, scopes=context_on.scopes, now=NOW)
    event, message, proposal = await coach._process_tool_call(
        ToolCall(id="x", name="get_templates", arguments="[1, 2]"), ["get_templates"], ctx
    )
    assert event.code is ToolErrorCode.INPUT_INVALID
    assert json.loads(message.content)["error"] == "Expected a JSON object."
    assert proposal is None

@pytest.mark.asyncio
async def test_unknown_tool_is_not_found(store):
    coach, _ = _coach(store, [])
    ctx = ToolContext(store=store, scopes=ContextScopes(), now=NOW)
    event, message, proposal = await coach._process_tool_call(
        ToolCall(id="x", name="mystery", arguments="{}"), ["mystery"], ctx
    )
    assert event.code is ToolErrorCode.NOT_FOUND
    assert json.loads(message.content)["error"] == "Tool not found."
    assert proposal is None

@pytest.mark.asyncio
async def test_read_tool_failure_becomes_error_message(store, all_scopes):
    coach, _ = _coach(store, [])
    ctx = ToolContext(store=store, scopes=all_scopes, now=NOW)
    with patch.object(store, "list_templates", AsyncMock(side_effect=RuntimeError("db down"))):
        event, message, _ = await coach._process_tool_call(
            ToolCall(id="x", name="get_templates", arguments="{}"), ["get_templates"], ctx
        )
    assert event.code is ToolErrorCode.EXECUTION_FAILED
    assert json.loads(message.content)["error"] == "db down"

# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_write_tool_becomes_pending_proposal(store):
    args = {"name": "Legs", "exercises": [{"exerciseId": 2, "sets": 3, "reps": 10}]}
    coach, _ = _coach(
        store,
        [tool_response(("w1", "create_template", args)), "I've drafted that template for you."],
        enable_write_tools=True,
    )
    result = await coach.run_turn("Save a legs template")

    proposal = result.pending_proposals[0]
    assert proposal.id == "w1"
    assert proposal.status is ProposalStatus.PENDING
    assert proposal.input == args
    assert result.tool_events[0].status == "pending"
    assert _tool_messages(result)[0]["status"] == "pending_confirmation"
    assert len(store.templates) == 1

    confirmed = await coach.confirm_proposal(proposal)
    assert confirmed.status is ProposalStatus.SUCCESS
    assert len(store.templates) == 2
    assert store.templates[confirmed.result["template_id"]].name == "Legs"

    with pytest.raises(ProposalStateError):
        await coach.confirm_proposal(proposal)
    assert len(store.templates) == 2

@pytest.mark.asyncio
async def test_confirm_failure_sets_error(store):
    coach, _ = _coach(store, [])
    proposal = Proposal(
        id="w2",
        name="create_template",
        input={"name": "Bad", "exercises": [{"exerciseId": 99}]},
        summary="Create template: Bad (1 exercises)",
    )
    await coach.confirm_proposal(proposal)
    assert proposal.status is ProposalStatus.ERROR
    assert proposal.error == "Exercise 99 not found."

def test_cancel_proposal(store):
    coach, _ = _coach(store, [])
    proposal = Proposal(id="w3", name="set_active_space", input={"spaceId": 2}, summary="Set active space")
    assert coach.cancel_proposal(proposal).status is ProposalStatus.CANCELLED
    with pytest.raises(ProposalStateError):
        coach.cancel_proposal(proposal)
    assert store.settings.active_space_id is None

# ---------------------------------------------------------------------------
# Context window retry
# ---------------------------------------------------------------------------

HISTORY = [
    {"role": "user", "content": "I trained legs yesterday."},
    {"role": "assistant", "content": "Nice work."},
    {"role": "user", "content": "My knees felt fine."},
    {"role": "assistant", "content": "Good to hear."},
]

@pytest.mark.asyncio
async def test_context_window_retry_uses_minimal_history(store):
    coach, model = _coach(store, [OVERFLOW, "Take a rest day."])
    result = await coach.run_turn("What should I do today?", chat_history=HISTORY)

    assert result.assistant_text == "Take a rest day."
    assert result.debug.context_window_retry is True
    assert "maximum context length" in result.debug.context_window_retry_error
    assert result.debug.prompt_window.retried_with_minimal_history is True
    assert result.debug.prompt_window.used_messages == 1
    assert len(_non_system(model.calls[0]["messages"])) == 5
    assert _non_system(model.calls[1]["messages"]) == [{"role": "user", "content": "What should I do today?"}]

@pytest.mark.asyncio
async def test_second_overflow_propagates(store):
    coach, _ = _coach(store, [OVERFLOW, OVERFLOW])
    with pytest.raises(RuntimeError, match="maximum context length"):
        await coach.run_turn("hi", chat_history=HISTORY)

@pytest.mark.asyncio
async def test_other_model_errors_propagate(store):
    coach, model = _coach(store, [RuntimeError("invalid api key")])
    with pytest.raises(RuntimeError, match="invalid api key"):
        await coach.run_turn("hi")
    assert len(model.calls) == 1

# ---------------------------------------------------------------------------
# Validation and repair
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_valid_workout_draft_passes(store, context_on):
    coach, model = _coach(store, [action_message([2, 4, 5, 8, 9])])
    result = await coach.run_turn("Build me a workout", context_config=context_on)

    assert result.validation.status == "ok"
    assert result.assistant_text == "Here is your workout."
    assert [e.exercise_id for e in result.action_draft.payload.exercises] == [2, 4, 5, 8, 9]
    assert result.action_contract_version == "coach_action_v1"
    assert len(model.calls) == 1

@pytest.mark.asyncio
async def test_repair_succeeds(store, context_on):
    coach, model = _coach(store, [action_message([1, 2, 4]), action_message([2, 4, 5])])
    result = await coach.run_turn("Build me a leg workout", context_config=context_on)

    assert result.validation.status == "repaired"
    assert result.validation.repaired is True
    assert [e.exercise_id for e in result.action_draft.payload.exercises] == [2, 4, 5]
    assert result.debug.model_calls == 2
    repair_call = model.calls[1]
    assert repair_call["tools"] is None
    assert repair_call["messages"][-1]["content"].startswith("REPAIR TASK")
    assert repair_call["messages"][-2]["role"] == "assistant"
    assert result.conversation[-1].content == "Here is your workout."

@pytest.mark.asyncio
async def test_repair_failure_falls_back(store, context_on):
    coach, model = _coach(store, [action_message([1]), "Still not a workout."])
    result = await coach.run_turn("Build me a leg workout", context_config=context_on)

    fallback = get_validation_failure_message(ResponseMode.WORKOUT)
    assert result.validation.status == "failed"
    assert result.validation.error == WORKOUT_CONTRACT_ERROR
    assert result.assistant_text == fallback
    assert result.action_draft is None
    assert result.conversation[-1].content == fallback
    assert len(model.calls) == 2

@pytest.mark.asyncio
async def test_out_of_candidate_id_triggers_one_repair():
    store = build_store(exercises=build_exercises()[:3])
    coach, model = _coach(store, [action_message([99]), action_message([1, 2, 3])])
    result = await coach.run_turn("Plan a leg workout")

    assert result.validation.status == "repaired"
    assert len(model.calls) == 2
    assert "Context sharing is OFF" in model.calls[1]["messages"][-1]["content"]

@pytest.mark.asyncio
async def test_repair_transport_error_is_treated_as_empty(store, context_on):
    coach, _ = _coach(store, [action_message([1]), RuntimeError("network down")])
    result = await coach.run_turn("Build me a leg workout", context_config=context_on)
    assert result.validation.status == "failed"
    assert result.assistant_text == get_validation_failure_message(ResponseMode.WORKOUT)

@pytest.mark.asyncio
async def test_template_mode_repair(store):
    template = '```json\n{"name": "Legs", "exercises": [{"exerciseId": 2, "sets": 3, "reps": 10}]}\n```'
    coach, _ = _coach(store, ["Sure! " + template, template])
    result = await coach.run_turn("Convert this", response_mode="template_json")
    assert result.validation.status == "repaired"
    assert result.validation.mode is ResponseMode.TEMPLATE_JSON
    assert result.assistant_text == template

# ---------------------------------------------------------------------------
# Payload summary and context state
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_payload_summary_with_context(store, context_on):
    coach, _ = _coach(store, ["ok"])
    result = await coach.run_turn("hello", context_config=context_on)
    summary = result.payload_summary

    assert summary["summary_only"] is False
    assert summary["active_gym_name"] == "Home Garage"
    assert summary["templates_count"] == 1
    assert summary["recent_workouts_count"] == 2
    assert summary["candidate_exercise_count"] == 6
    assert result.context_contract.version == "coach_context_v1"
    assert result.snapshot_fingerprint is not None

@pytest.mark.asyncio
async def test_payload_summary_hides_unshared_counts(store):
    coach, _ = _coach(store, ["ok", "ok"])
    result = await coach.run_turn("hello", context_config=ContextConfig(enabled=True, scopes=ContextScopes(sessions=True)))
    assert result.payload_summary["templates_count"] is None
    assert result.payload_summary["recent_workouts_count"] == 2

    result = await coach.run_turn("hello")
    assert result.payload_summary["summary_only"] is True
    assert result.payload_summary["templates_count"] is None
    assert result.context_contract is None

@pytest.mark.asyncio
async def test_store_failure_degrades_request_context(store):
    coach, _ = _coach(store, ["ok"])
    with patch.object(store, "list_workout_spaces", AsyncMock(side_effect=RuntimeError("offline"))):
        result = await coach.run_turn("hello")
    assert result.debug.request_context["active_gym_id"] is None
    assert result.assistant_text == "ok"

def test_normalize_context_state_hides_equipment_when_off():
    provided = ContextState(context_enabled=True, equipment_summary=["dumbbell"])
    state = normalize_context_state(
        ContextConfig(enabled=False, context_state=provided), {"active_gym_id": 1, "gym_name": "Home Garage"}
    )
    assert state.context_enabled is False
    assert state.equipment_summary == []
    assert state.selected_gym.name == "Home Garage"

    state = normalize_context_state(ContextConfig(enabled=True, context_state=provided), {})
    assert state.equipment_summary == ["dumbbell"]
    assert state.selected_gym is None

# ---------------------------------------------------------------------------
# History window and system messages
# ---------------------------------------------------------------------------

def test_history_window_bounds_by_count():
    history = [{"role": "user", "content": f"m{i}"} for i in range(30)]
    window, meta = build_prompt_history_window(history, "latest", max_messages=24)
    assert len(window) == 24
    assert window[-1].content == "latest"
    assert window[0].content == "m7"
    assert meta.original_messages == 31
    assert meta.dropped_messages == 7

def test_history_window_bounds_by_chars():
    history = [{"role": "assistant", "content": "a" * 100} for _ in range(5)]
    window, meta = build_prompt_history_window(history, "now", max_chars=250)
    assert len(window) == 3
    assert meta.chars_used == 203

def test_history_window_never_leaves_a_gap():
    history = [{"role": "user", "content": "a" * 10}, {"role": "assistant", "content": "b" * 100}]
    window, meta = build_prompt_history_window(history, "c" * 10, max_chars=50)
    assert [m.content for m in window] == ["c" * 10]
    assert meta.dropped_messages == 2
    assert meta.chars_used == 10

def test_history_window_keeps_oversized_latest_message():
    window, meta = build_prompt_history_window([{"role": "user", "content": "hi"}], "x" * 500, max_chars=100)
    assert [m.content for m in window] == ["x" * 500]
    assert meta.chars_used == 500

def test_history_window_drops_non_conversation_roles():
    history = [
        {"role": "system", "content": "ignore"},
        {"role": "tool", "content": "{}"},
        ConversationMessage(role="assistant", content="kept"),
        "junk",
    ]
    window, _ = build_prompt_history_window(history, "latest")
    assert [m.role for m in window] == ["assistant", "user"]

def test_build_system_messages_omits_empty_blocks():
    messages = build_system_messages()
    assert [m.content for m in messages] == [SYSTEM_PROMPT]

    messages = build_system_messages(candidates=[to_candidate(build_exercises()[0])])
    payload = json.loads(messages[1].content.split("\n", 1)[1])
    assert payload[0]["exerciseId"] == 1
    assert payload[0]["primaryMuscles"] == ["quadriceps", "glutes"]
