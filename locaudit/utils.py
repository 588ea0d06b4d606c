"""Shared utility functions used across locaudit modules."""
from __future__ import annotations

import json
import math
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def extract_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` substring of *text*, or None.

    Braces inside JSON string literals are ignored, so a reason like
    ``"use {name} placeholder"`` does not end the object early.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:idx + 1]
        # Unbalanced from this brace; try the next one
        start = text.find("{", start + 1)
    return None


def utcnow() -> datetime:
    """Current instant as a naive UTC datetime truncated to whole seconds."""
    return datetime.now(UTC).replace(tzinfo=None, microsecond=0)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (2.5 -> 3, unlike round())."""
    return math.floor(value + 0.5)
