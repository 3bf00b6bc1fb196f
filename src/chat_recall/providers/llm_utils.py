"""Shared utilities for parsing LLM responses."""

import json
from typing import Any


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = [line for line in text.split("\n") if not line.strip().startswith("```")]
        text = "\n".join(lines)
    return text


def parse_llm_json(raw: str) -> Any:
    """Parse JSON from an LLM response, handling code fences and preamble text.

    Tries in order:
    1. Strip markdown code fences, then json.loads
    2. Extract substring between the first '[' and last ']', then json.loads
    3. Extract substring between the first '{' and last '}', then json.loads
    4. Return None
    """
    if not raw:
        return None

    try:
        return json.loads(_strip_fences(raw))
    except json.JSONDecodeError:
        pass

    for open_char, close_char in (("[", "]"), ("{", "}")):
        start = raw.find(open_char)
        end = raw.rfind(close_char) + 1
        if start >= 0 and end > start:
            try:
                return json.loads(raw[start:end])
            except json.JSONDecodeError:
                continue

    return None


def parse_llm_json_array(raw: str) -> list | None:
    """Like ``parse_llm_json`` but only accepts a top-level JSON array."""
    parsed = parse_llm_json(raw)
    if isinstance(parsed, list):
        return parsed
    return None
