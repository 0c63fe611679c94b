"""Normalize raw conversation entries into taggable units.

Host conversations use the provider-agnostic entry shapes:
- ``{type: "message", id, role, content}`` (``type`` may be omitted)
- ``{type: "function_call", id, name, call_id, arguments}``
- ``{type: "function_call_output", id, call_id, output}``

A function call immediately followed by its output collapses into a single
``function_call_with_output`` unit that takes the output's id.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any

from .errors import MissingMessageIdError
from .tokens import as_text
from .types import (
    ConversationUnit,
    FunctionCallOutputUnit,
    FunctionCallUnit,
    FunctionCallWithOutputUnit,
    MessageUnit,
    TaggableUnit,
    TaggedMessage,
)

_ROLES = ("system", "user", "assistant", "developer")


def require_ids(entries: list[dict[str, Any]]) -> None:
    """Raise MissingMessageIdError if any entry lacks a usable id."""
    for index, entry in enumerate(entries):
        entry_id = entry.get("id")
        if not isinstance(entry_id, str) or not entry_id:
            raise MissingMessageIdError(index=index, entry_type=entry.get("type", "message"))


def normalize_entries(
    entries: list[dict[str, Any]],
    known_tagged_messages: Mapping[str, TaggedMessage] | None = None,
    clock: Callable[[], float] = time.time,
) -> list[TaggableUnit]:
    """Convert raw entries into a flat list of taggable units.

    Units that already have tagging metadata are annotated with their current
    tags and summary so the tagger can keep or revise them.

    Raises:
        MissingMessageIdError: If any entry lacks an id. Nothing is returned for
            the batch in that case.
    """
    require_ids(entries)
    known = known_tagged_messages or {}

    units: list[TaggableUnit] = []
    i = 0
    while i < len(entries):
        entry = entries[i]
        next_entry = entries[i + 1] if i + 1 < len(entries) else None

        if _is_call_followed_by_output(entry, next_entry):
            unit: ConversationUnit = FunctionCallWithOutputUnit(
                id=next_entry["id"],
                name=str(entry.get("name", "")),
                call_id=entry.get("call_id"),
                arguments=as_text(entry.get("arguments", "")),
                output=as_text(next_entry.get("output", "")),
                timestamp=_timestamp(next_entry, clock),
            )
            i += 2
        else:
            unit = _convert_entry(entry, clock)
            i += 1

        existing = known.get(unit.id)
        if existing is not None:
            units.append(
                TaggableUnit(
                    unit=unit,
                    topic_tags=list(existing.topic_tags),
                    summary=existing.summary,
                )
            )
        else:
            units.append(TaggableUnit(unit=unit))

    return units


def _is_call_followed_by_output(entry: dict[str, Any], next_entry: dict[str, Any] | None) -> bool:
    if next_entry is None:
        return False
    if entry.get("type") != "function_call" or next_entry.get("type") != "function_call_output":
        return False
    call_id = entry.get("call_id")
    output_call_id = next_entry.get("call_id")
    # Adjacent call/output pairs match unless both carry different call ids.
    return not (call_id and output_call_id and call_id != output_call_id)


def _convert_entry(entry: dict[str, Any], clock: Callable[[], float]) -> ConversationUnit:
    entry_type = entry.get("type", "message")
    timestamp = _timestamp(entry, clock)

    if entry_type == "function_call":
        return FunctionCallUnit(
            id=entry["id"],
            name=str(entry.get("name", "")),
            call_id=entry.get("call_id"),
            arguments=as_text(entry.get("arguments", "")),
            timestamp=timestamp,
        )
    if entry_type == "function_call_output":
        return FunctionCallOutputUnit(
            id=entry["id"],
            call_id=entry.get("call_id"),
            output=as_text(entry.get("output", "")),
            timestamp=timestamp,
        )

    role = entry.get("role", "user")
    if role not in _ROLES:
        # Tool-role messages from chat-completions style histories read as assistant turns.
        role = "assistant" if role == "tool" else "user"
    return MessageUnit(
        id=entry["id"],
        role=role,
        content=as_text(entry.get("content", "")),
        timestamp=timestamp,
    )


def _timestamp(entry: dict[str, Any], clock: Callable[[], float]) -> float:
    value = entry.get("timestamp")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Millisecond epoch values are scaled down to seconds.
        return value / 1000 if value > 1e11 else float(value)
    return clock()

