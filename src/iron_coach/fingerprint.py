# fingerprint.py
# SHA-256 fingerprint for coach context payloads.
#
# Guarantees: the same payload content always yields the same fingerprint,
# regardless of dict key order. Used to audit what the model was shown and
# to detect when the context changed between turns.
#
# stdlib only, no external dependencies.

import hashlib
import json
from typing import Any

from iron_coach.models import Fingerprint

ALGORITHM = "sha256"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def canonical_json(value: Any) -> str:
    """Deterministic serialization. sort_keys is non-negotiable."""
    return json.dumps(
        value,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        default=str,
    )


def payload_size(value: Any) -> int:
    """UTF-8 byte length of the canonical serialization."""
    return len(canonical_json(value).encode("utf-8"))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def build_fingerprint(payload: Any, context_bytes: int | None = None) -> Fingerprint:
    """
    Fingerprint = SHA256(canonical_json(payload)).

    `context_bytes` overrides the measured size when the caller already knows
    the authoritative payload size (e.g. the pre-serialized snapshot).
    """
    serialized = canonical_json(payload)
    size = context_bytes if context_bytes is not None else len(serialized.encode("utf-8"))
    return Fingerprint(algorithm=ALGORITHM, hash=_sha256(serialized), context_bytes=size)
