from __future__ import annotations

import json
import time
import uuid
from enum import Enum


def strip_markdown_fences(content: str) -> str:
    """Remove markdown code fences (```json ... ```) wrapping a JSON payload."""
    text = content.strip()
    if text.startswith("```"):
        lines = [line for line in text.splitlines() if not line.strip().startswith("```")]
        return "\n".join(lines).strip()
    return text


def extract_json_array(content: str) -> list | None:
    """Parse the substring between the first ``[`` and the last ``]``.

    Returns *None* when there is no such span or it is not a JSON array.
    """
    text = strip_markdown_fences(content)
    start = text.find("[")
    end = text.rfind("]")
    if start < 0 or end <= start:
        return None
    try:
        data = json.loads(text[start : end + 1])
    except ValueError:
        return None
    return data if isinstance(data, list) else None


def json_serializable(obj: object) -> object:
    """Default handler for :func:`json.dumps` that gracefully converts
    non-serializable types (enums, sets, etc.) to JSON-safe primitives."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, Enum):
        return obj.name
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    return str(obj)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())
