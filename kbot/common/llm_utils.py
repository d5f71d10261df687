"""Shared helpers for building prompts and parsing LLM responses."""

from __future__ import annotations

import json
import re
from typing import Iterable

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*$")


def parse_llm_json(raw: str) -> dict:
    """Parse a JSON object from an LLM response.

    Tries in order:
    1. Strip markdown code fences (with or without a language tag), then json.loads
    2. Extract substring between first '{' and last '}', then json.loads
    3. Return empty dict

    Non-object payloads (lists, scalars) are treated as unparseable.
    """
    if not raw:
        return {}

    lines = [line for line in raw.split("\n") if not _FENCE_RE.match(line)]
    text = "\n".join(lines).strip()

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    end = text.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            parsed = json.loads(text[start:end])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    return {}


def clip(text: str, limit: int) -> str:
    """Trim text to at most ``limit`` characters, marking the cut."""
    if text is None:
        return ""
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)].rstrip() + "..."


def format_replies(replies: Iterable) -> str:
    """Render thread replies as ``<@user>: text`` lines for a prompt."""
    return "\n\n".join(f"<@{r.user_id}>: {r.text}" for r in replies)
