"""Chat-history snapshots and bounded payload serialization for critique prompts."""

from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

TRUNCATION_MARKER = "... [truncated]"
REPORT_ROLE = "feedback"
RELEVANT_ROLES: frozenset[str] = frozenset({"user", "assistant", "userMandatoryInstructions", REPORT_ROLE})
NO_HISTORY_PLACEHOLDER = "(No chat history available)"

ENTITY_FIELDS: tuple[str, ...] = ("id", "name", "longDescription", "rules", "type")
MESSAGE_FIELDS: tuple[str, ...] = ("role", "content")
_MAX_DEPTH = 8


def truncate(text: Any, limit: int, marker: str = TRUNCATION_MARKER) -> str:
    """Return ``text`` cut to ``limit`` characters followed by ``marker`` when cut."""

    value = "" if text is None else str(text)
    if limit <= 0 or len(value) <= limit:
        return value
    return f"{value[:limit]}{marker}"


def select_relevant_turns(history: Sequence[Mapping[str, Any]] | None, turns: int) -> list[Mapping[str, Any]]:
    """Return the trailing messages that cover the last ``turns`` assistant replies.

    Only user, assistant, mandatory-instruction and report messages count.
    """

    if not history or turns <= 0:
        return []
    selected: list[Mapping[str, Any]] = []
    assistant_seen = 0
    for message in reversed(history):
        if not isinstance(message, Mapping):
            continue
        role = str(message.get("role", ""))
        if role not in RELEVANT_ROLES:
            continue
        if role == "assistant":
            if assistant_seen >= turns:
                break
            assistant_seen += 1
        selected.append(message)
    selected.reverse()
    return selected


def format_chat_history(
    history: Sequence[Mapping[str, Any]] | None,
    turns: int,
    *,
    limit: int = 5000,
) -> str:
    """Format the relevant tail of ``history`` as ``role: content`` lines."""

    selected = select_relevant_turns(history, turns)
    if not selected:
        return NO_HISTORY_PLACEHOLDER
    lines = [f"{message.get('role', '')}: {truncate(message.get('content', ''), limit)}" for message in selected]
    return "\n\n".join(lines)


def find_previous_report(history: Sequence[Mapping[str, Any]] | None) -> tuple[str | None, int]:
    """Return the most recent report message and how many messages ago it was posted."""

    if not history:
        return None, 0
    for offset, message in enumerate(reversed(history)):
        if isinstance(message, Mapping) and message.get("role") == REPORT_ROLE:
            return str(message.get("content") or ""), offset
    return None, 0


def serialize_payload(payload: Any, *, limit: int = 5000) -> str:
    """Serialize ``payload`` as JSON with long strings truncated and image fields dropped."""

    bounded = _bound(payload, limit, 0)
    return json.dumps(bounded, indent=2, ensure_ascii=False, default=str)


def _bound(value: Any, limit: int, depth: int) -> Any:
    if isinstance(value, str):
        return truncate(value, limit)
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if depth >= _MAX_DEPTH:
        return TRUNCATION_MARKER
    if isinstance(value, Mapping):
        return _bound_mapping(value, limit, depth)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_bound(item, limit, depth + 1) for item in value]
    return truncate(str(value), limit)


def _bound_mapping(value: Mapping[str, Any], limit: int, depth: int) -> dict[str, Any]:
    if _looks_like_message(value):
        allowed: Sequence[str] | None = MESSAGE_FIELDS
    elif _looks_like_entity(value):
        allowed = ENTITY_FIELDS
    else:
        allowed = None
    result: dict[str, Any] = {}
    for key, item in value.items():
        name = str(key)
        if _is_image_field(name):
            continue
        if allowed is not None and name not in allowed:
            continue
        result[name] = _bound(item, limit, depth + 1)
    return result


def _looks_like_message(value: Mapping[str, Any]) -> bool:
    return "role" in value and "content" in value


def _looks_like_entity(value: Mapping[str, Any]) -> bool:
    return "id" in value and ("longDescription" in value or "rules" in value)


def _is_image_field(name: str) -> bool:
    lowered = name.lower()
    return "image" in lowered or lowered.startswith("img")


__all__ = [
    "ENTITY_FIELDS",
    "MESSAGE_FIELDS",
    "NO_HISTORY_PLACEHOLDER",
    "REPORT_ROLE",
    "TRUNCATION_MARKER",
    "find_previous_report",
    "format_chat_history",
    "select_relevant_turns",
    "serialize_payload",
    "truncate",
]
