"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
from typing import Optional


def _first_object_span(text: str) -> Optional[str]:
    """Return the first balanced top-level {...} span, ignoring braces in strings."""
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for pos in range(start, len(text)):
        ch = text[pos]
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
                return text[start:pos + 1]
    return None


def extract_json_object(raw: str) -> Optional[dict]:
    """Extract the first JSON object from an LLM reply.

    Models wrap JSON in prose or markdown fences, so the reply is never
    parsed as a whole. Tries in order:
    1. The first balanced top-level '{...}' span
    2. The substring between the first '{' and the last '}'
    3. Return None
    """
    if not raw:
        return None

    candidates = []
    span = _first_object_span(raw)
    if span is not None:
        candidates.append(span)
    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start >= 0 and end > start and raw[start:end] not in candidates:
        candidates.append(raw[start:end])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None
