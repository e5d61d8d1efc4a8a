# llm.py
# Model service: chat completions with tool calling.
#
# The orchestrator only sees the ChatModel protocol. OpenAIChatModel is the
# production implementation on openai.AsyncOpenAI; tests script their own.
#
# Streaming: content deltas are forwarded to on_delta until the first
# tool-call delta arrives; tool-call fragments are merged by index.

from typing import Any, Callable, Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from iron_coach.config import CoachSettings
from iron_coach.models import ToolCall

DeltaCallback = Callable[[str], None]

_OVERFLOW_PHRASES = ("context length", "maximum context length", "too many tokens")


class ModelResponse(BaseModel):
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)


class ChatModel(Protocol):
    model: str

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> ModelResponse: ...


def is_context_window_overflow(error: BaseException) -> bool:
    """True when a model-service error means the prompt was too long."""
    code = str(getattr(error, "code", "") or "").lower()
    if "context" in code:
        return True
    message = str(getattr(error, "message", "") or error).lower()
    return any(phrase in message for phrase in _OVERFLOW_PHRASES)


class OpenAIChatModel:
    """
    ChatModel over any OpenAI-compatible endpoint.

    Example:
        model = OpenAIChatModel(CoachSettings.from_env())
        response = await model.complete([{"role": "user", "content": "hi"}])
    """

    def __init__(self, settings: CoachSettings, client: AsyncOpenAI | None = None) -> None:
        self.model = settings.model
        self._temperature = settings.temperature
        self._client = client or AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
        )

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self._temperature if temperature is None else temperature,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        if on_delta is None:
            return await self._complete(kwargs)
        return await self._stream(kwargs, on_delta)

    async def _complete(self, kwargs: dict[str, Any]) -> ModelResponse:
        response = await self._client.chat.completions.create(**kwargs)
        message = response.choices[0].message
        tool_calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "")
            for tc in message.tool_calls or []
        ]
        return ModelResponse(content=message.content or "", tool_calls=tool_calls)

    async def _stream(self, kwargs: dict[str, Any], on_delta: DeltaCallback) -> ModelResponse:
        stream = await self._client.chat.completions.create(**kwargs, stream=True)
        content: list[str] = []
        buffers: dict[int, dict[str, str]] = {}

        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta is None:
                continue
            if delta.tool_calls:
                for tc in delta.tool_calls:
                    buf = buffers.setdefault(tc.index, {"id": "", "name": "", "args": ""})
                    if tc.id:
                        buf["id"] = tc.id
                    if tc.function and tc.function.name:
                        buf["name"] = tc.function.name
                    if tc.function and tc.function.arguments:
                        buf["args"] += tc.function.arguments
            if delta.content:
                content.append(delta.content)
                if not buffers:
                    on_delta(delta.content)

        tool_calls = [
            ToolCall(id=buf["id"] or f"call_{index}", name=buf["name"], arguments=buf["args"])
            for index, buf in sorted(buffers.items())
        ]
        return ModelResponse(content="".join(content), tool_calls=tool_calls)
