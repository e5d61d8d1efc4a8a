# parsing.py
# Tolerant JSON extraction from model output.
#
# Malformed model output is an expected input, not an exceptional one:
# nothing here raises on bad JSON. Callers inspect JsonParse.ok instead.

import json
import re
from typing import Any, NamedTuple

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_JSON_FENCE_RE = re.compile(r"```json\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class JsonParse(NamedTuple):
    ok: bool
    value: Any = None
    error: str | None = None


def parse_json(raw: str | None) -> JsonParse:
    if raw is None or not str(raw).strip():
        return JsonParse(False, None, "Empty JSON payload.")
    try:
        # strict=False tolerates literal newlines inside strings
        return JsonParse(True, json.loads(raw, strict=False))
    except (json.JSONDecodeError, TypeError) as exc:
        return JsonParse(False, None, f"Malformed JSON: {exc}")


def parse_json_object(raw: str | None) -> JsonParse:
    """Like parse_json, but only a JSON object counts as success."""
    result = parse_json(raw)
    if result.ok and not isinstance(result.value, dict):
        return JsonParse(False, None, "Expected a JSON object.")
    return result


def extract_fenced_blocks(text: str) -> list[str]:
    """Bodies of every ``` or ```json fenced block, in order."""
    return [match.group(1) for match in _FENCE_RE.finditer(text or "")]


def extract_json_fences(text: str) -> list[str]:
    """Bodies of ```json fenced blocks only, in order."""
    return [match.group(1) for match in _JSON_FENCE_RE.finditer(text or "")]


def extract_brace_candidate(text: str) -> str | None:
    """Best-effort substring from the first '{' to the last '}'."""
    value = (text or "").strip()
    if not value:
        return None
    first = value.find("{")
    last = value.rfind("}")
    if first >= 0 and last > first:
        return value[first : last + 1]
    return None


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()
