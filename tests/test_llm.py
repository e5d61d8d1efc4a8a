from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from iron_coach.config import CoachSettings
from iron_coach.llm import OpenAIChatModel, is_context_window_overflow
from iron_coach.models import ToolCall


def _client(create):
    client = MagicMock()
    client.chat.completions.create = create
    return client


def _chunk(content=None, tool_calls=None):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=tool_calls))])


def _tc_delta(index, call_id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


async def _stream(chunks):
    for chunk in chunks:
        yield chunk


# ---------------------------------------------------------------------------
# Overflow detection
# ---------------------------------------------------------------------------

class _ApiError(Exception):
    def __init__(self, message, code=None):
        super().__init__(message)
        self.message = message
        self.code = code

def test_overflow_detected_by_code():
    assert is_context_window_overflow(_ApiError("bad request", code="context_length_exceeded")) is True

def test_overflow_detected_by_message():
    assert is_context_window_overflow(RuntimeError("Too many tokens in request")) is True
    assert is_context_window_overflow(_ApiError("This model's maximum context length is 4096")) is True

def test_other_errors_are_not_overflow():
    assert is_context_window_overflow(_ApiError("Rate limit reached", code="rate_limit_exceeded")) is False

# ---------------------------------------------------------------------------
# Non-streaming
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_complete_returns_content_and_tool_calls():
    message = SimpleNamespace(
        content=None,
        tool_calls=[
            SimpleNamespace(id="call_1", function=SimpleNamespace(name="get_templates", arguments='{"limit": 3}'))
        ],
    )
    create = AsyncMock(return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)]))
    model = OpenAIChatModel(CoachSettings(model="test-model", temperature=0.5), client=_client(create))

    tools = [{"type": "function", "function": {"name": "get_templates"}}]
    response = await model.complete([{"role": "user", "content": "hi"}], tools=tools)

    assert response.content == ""
    assert response.tool_calls == [ToolCall(id="call_1", name="get_templates", arguments='{"limit": 3}')]
    kwargs = create.call_args.kwargs
    assert kwargs["model"] == "test-model"
    assert kwargs["temperature"] == 0.5
    assert kwargs["tools"] == tools
    assert kwargs["tool_choice"] == "auto"

@pytest.mark.asyncio
async def test_complete_without_tools_omits_tool_choice():
    message = SimpleNamespace(content="Hello!", tool_calls=None)
    create = AsyncMock(return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)]))
    model = OpenAIChatModel(CoachSettings(), client=_client(create))

    response = await model.complete([{"role": "user", "content": "hi"}], temperature=0.0)

    assert response.content == "Hello!"
    assert response.tool_calls == []
    kwargs = create.call_args.kwargs
    assert "tools" not in kwargs
    assert "tool_choice" not in kwargs
    assert kwargs["temperature"] == 0.0

# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stream_forwards_text_deltas():
    chunks = [_chunk("Hel"), SimpleNamespace(choices=[]), _chunk("lo"), _chunk(None)]
    create = AsyncMock(return_value=_stream(chunks))
    model = OpenAIChatModel(CoachSettings(), client=_client(create))

    deltas = []
    response = await model.complete([{"role": "user", "content": "hi"}], on_delta=deltas.append)

    assert response.content == "Hello"
    assert deltas == ["Hel", "lo"]
    assert create.call_args.kwargs["stream"] is True

@pytest.mark.asyncio
async def test_stream_merges_tool_call_fragments_by_index():
    chunks = [
        _chunk("Checking"),
        _chunk(tool_calls=[_tc_delta(0, "call_a", "get_templates", '{"li')]),
        _chunk(tool_calls=[_tc_delta(1, "call_b", "get_recent_sessions", "{}")]),
        _chunk(tool_calls=[_tc_delta(0, arguments='mit": 2}')]),
        _chunk(" now"),
    ]
    create = AsyncMock(return_value=_stream(chunks))
    model = OpenAIChatModel(CoachSettings(), client=_client(create))

    deltas = []
    response = await model.complete([{"role": "user", "content": "hi"}], on_delta=deltas.append)

    assert response.tool_calls == [
        ToolCall(id="call_a", name="get_templates", arguments='{"limit": 2}'),
        ToolCall(id="call_b", name="get_recent_sessions", arguments="{}"),
    ]
    assert response.content == "Checking now"
    assert deltas == ["Checking"]
