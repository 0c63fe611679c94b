"""Token estimation utilities.

Uses a simple heuristic: ~4 characters per token.
"""

from __future__ import annotations

import json
import math
from typing import Any

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate token count for a string using the ~4 chars/token heuristic."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def entry_text(entry: dict[str, Any]) -> str:
    """Flatten the textual payload of a conversation entry.

    Plain messages contribute their content, function calls their name and
    arguments, and function call outputs their output.
    """
    entry_type = entry.get("type")
    if entry_type == "function_call":
        return f"{entry.get('name', '')}({as_text(entry.get('arguments', ''))})"
    if entry_type == "function_call_output":
        return as_text(entry.get("output", ""))
    return as_text(entry.get("content", ""))


def estimate_message_tokens(message: dict[str, Any]) -> int:
    """Estimate token count for a single conversation entry."""
    return estimate_tokens(entry_text(message))


def estimate_messages_tokens(messages: list[dict[str, Any]]) -> int:
    """Estimate total token count for a list of conversation entries."""
    total = 0
    for msg in messages:
        total += estimate_message_tokens(msg)
    return total


def as_text(value: Any) -> str:
    """Render an arbitrary content payload as text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
