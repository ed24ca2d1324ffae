"""Permissive extraction of JSON payloads from free-form model replies."""

import json
import re
from typing import Any

_FENCED_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def extract_json(text: str) -> Any:
    """Return the first JSON value found in ``text``.

    Tries, in order: the whole reply, any fenced code block, the widest
    ``[...]`` span, the widest ``{...}`` span.

    Raises:
        ValueError: If no candidate parses as JSON.
    """
    candidates = [text.strip()]
    candidates += [m.strip() for m in _FENCED_RE.findall(text)]
    for pattern in (_ARRAY_RE, _OBJECT_RE):
        match = pattern.search(text)
        if match:
            candidates.append(match.group(0))

    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise ValueError("No JSON payload found in reply")


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"yes", "true", "y", "1", "はい"}


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."
