# config.py
# Process configuration. Read once from the environment (and .env), then
# injected into the orchestrator and model client at construction.

import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

load_dotenv()

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


class CoachSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    openai_api_key: str | None = None
    openai_base_url: str | None = None
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    enable_write_tools: bool = False
    max_history_messages: int = 24
    max_history_chars: int = 32_000
    candidate_limit: int = 40
    context_max_bytes: int = 60_000
    trace: bool = False

    @classmethod
    def from_env(cls) -> "CoachSettings":
        defaults = cls()
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            model=os.getenv("COACH_MODEL") or defaults.model,
            temperature=float(os.getenv("COACH_TEMPERATURE") or defaults.temperature),
            enable_write_tools=_env_bool("COACH_ENABLE_WRITE_TOOLS", defaults.enable_write_tools),
            max_history_messages=int(os.getenv("COACH_MAX_HISTORY_MESSAGES") or defaults.max_history_messages),
            max_history_chars=int(os.getenv("COACH_MAX_HISTORY_CHARS") or defaults.max_history_chars),
            candidate_limit=int(os.getenv("COACH_CANDIDATE_LIMIT") or defaults.candidate_limit),
            context_max_bytes=int(os.getenv("COACH_CONTEXT_MAX_BYTES") or defaults.context_max_bytes),
            trace=_env_bool("COACH_TRACE", defaults.trace),
        )
