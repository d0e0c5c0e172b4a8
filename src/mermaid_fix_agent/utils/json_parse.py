"""JSON helpers for model output that may be partial, fenced, or chatty."""
from __future__ import annotations

import json
import re
from typing import Any

from partial_json_parser import loads as partial_loads

_JSON_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_BRACED = re.compile(r"\{[\s\S]*\}")


def parse_streaming_json(partial: str) -> dict[str, Any]:
    """Parse potentially incomplete JSON from a stream.

    Uses three-tier fallback:
    1. Standard json.loads() for complete JSON
    2. partial_json_parser.loads() for incomplete JSON
    3. Empty dict fallback
    """
    if not partial or not partial.strip():
        return {}
    try:
        result = json.loads(partial)
        if isinstance(result, dict):
            return result
        return {}
    except json.JSONDecodeError:
        pass
    try:
        result = partial_loads(partial)
        if isinstance(result, dict):
            return result
        return {}
    except Exception:
        return {}


def parse_json_object(text: str) -> dict[str, Any] | None:
    """Find a complete JSON object in free-form model text.

    Tries, in order: the whole text, the body of a ```json fence, and the
    outermost ``{...}`` span. Returns None when nothing parses to a dict.
    """
    if not text or not text.strip():
        return None

    candidates = [text.strip()]
    fence = _JSON_FENCE.search(text)
    if fence:
        candidates.append(fence.group(1).strip())
    braced = _BRACED.search(text)
    if braced:
        candidates.append(braced.group(0))

    for candidate in candidates:
        try:
            result = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(result, dict):
            return result
    return None
