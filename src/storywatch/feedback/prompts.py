"""Prompt builders for critique, synthesis and report generation.

Every prompt asks the generator for critique only. The engine never lets a
prompt's output drive further model calls outside the internal call type.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping, Sequence

from .history import truncate

NO_ASSISTANT_ENTITIES = "(No 'assistant' type entities found)"
_JSON_FENCE_RE = re.compile(r"^```(?:json)?\s*(?P<body>.*?)\s*```$", re.DOTALL)
_HEADING_RE = re.compile(r"^(#{1,6}\s+\S.*|\*\*[^*]+\*\*:?)$")
_BULLET_MAX_CHARS = 240

_DOCUMENT_LABELS: dict[str, str] = {
    "GeneralMemory": "General memory",
    "nodeEdition": "Entity edition critique",
    "chatText": "Narrative text critique",
    "assistantFeedback": "Assistant behaviour critique",
    "nodeEdit": "Manual entity edit notes",
}

_GUIDANCE: dict[str, str] = {
    "chat_text_generation": (
        "Judge the narrative: pacing, consistency with the established world, "
        "voice of each character, and whether the user's instructions were honoured."
    ),
    "node_edition_json": (
        "Judge the proposed entity edits: were existing facts preserved, are new "
        "entities justified, and do the edits follow the world rules."
    ),
    "node_edition_yaml": (
        "Judge the proposed entity edits: were existing facts preserved, are new "
        "entities justified, and do the edits follow the world rules."
    ),
    "action_generation": "Judge whether the suggested actions are varied and fit the current scene.",
    "node_sort": "Judge whether the ordering reflects narrative relevance.",
}
_DEFAULT_GUIDANCE = (
    "Judge the quality of the response against the request: accuracy, "
    "consistency with the world state, and adherence to instructions."
)


def guidance_for(call_type: str | None) -> str:
    """Return critique guidance specialised for *call_type*."""

    return _GUIDANCE.get(str(call_type or ""), _DEFAULT_GUIDANCE)


def personality_context(entities: Sequence[Mapping[str, Any]] | None) -> str:
    """Describe the assistant-typed entities as ``Name``/``Description`` blocks."""

    blocks: list[str] = []
    for entity in entities or ():
        if not isinstance(entity, Mapping) or entity.get("type") != "assistant":
            continue
        name = entity.get("name") or "(unnamed)"
        description = entity.get("longDescription") or ""
        blocks.append(f"Name: {name}\nDescription: {description}")
    if not blocks:
        return NO_ASSISTANT_ENTITIES
    return "\n---\n".join(blocks)


def document_update_prompt(
    *,
    task_type: str,
    document_name: str,
    document: str,
    payload_json: str,
    chat_history: str | None,
    personality: str,
    limit: int = 5000,
) -> str:
    label = _DOCUMENT_LABELS.get(document_name, document_name)
    history_section = f"\n## Recent conversation\n{chat_history}\n" if chat_history else ""
    return f"""You are a silent reviewer watching an interactive story application.
You never speak to the user and never write story content. You only critique.

## Assistant personality
{personality}
{history_section}
## Current document: {label}
{truncate(document, limit)}

## New observation ({task_type})
{payload_json}

## Instructions
Rewrite the document so it reflects the new observation. Keep lasting lessons,
drop stale remarks, and stay concise. Either return the full updated document
as plain text, or return JSON of the form
{{"memory_update_diffs": {{"rpl": "..."}}}} or
{{"memory_update_diffs": {{"df": [{{"prev_txt": "...", "next_txt": "...", "occ": 1}}]}}}}.
"""


def call_feedback_prompt(
    *,
    call_type: str,
    prompt: str,
    response: str,
    personality: str,
    chat_history: str | None = None,
) -> str:
    history_section = f"\n## Recent conversation\n{chat_history}\n" if chat_history else ""
    return f"""You are a silent reviewer of model calls made by an interactive story application.

## Assistant personality
{personality}
{history_section}
## Call type
{call_type}

## Guidance
{guidance_for(call_type)}

## Prompt sent
{prompt}

## Response received
{response}

## Instructions
Write a short critique (a few sentences) of the response. Point out concrete
problems and what should change next time. Do not rewrite the response.
"""


def synthesis_prompt(
    documents: Mapping[str, str],
    recent_feedback: Sequence[Mapping[str, str]],
    *,
    limit: int = 5000,
    cap: int = 5000,
) -> str:
    sections = []
    for name, text in documents.items():
        label = _DOCUMENT_LABELS.get(name, name)
        sections.append(f"### {label}\n{truncate(text, limit)}")
    feedback_lines = [
        f"- [{item.get('call_type', '')}] {truncate(item.get('feedback', ''), limit)}" for item in recent_feedback
    ] or ["- (no recent call feedback)"]
    joined_sections = "\n\n".join(sections)
    joined_feedback = "\n".join(feedback_lines)
    return f"""You maintain the general memory of a silent reviewer for an interactive story application.

## Current documents
{joined_sections}

## Recent call feedback
{joined_feedback}

## Instructions
Produce an updated general memory that merges the durable lessons from all
documents and the recent feedback. Remove repetition. Stay under {cap} characters.
Return only the new general memory text.
"""


def chat_reset_prompt(general_memory: str, chat_history: str, *, limit: int = 5000) -> str:
    return f"""The user just cleared the conversation of an interactive story application.

## Current general memory
{truncate(general_memory, limit)}

## Conversation before the reset
{chat_history}

## Instructions
Reflect on why the user may have reset the conversation and what the assistant
should do differently. Merge those observations into the general memory and
return only the new general memory text.
"""


def final_report_prompt(
    *,
    general_memory: str,
    chat_text: str,
    node_edition: str,
    chat_history: str | None,
    personality: str,
    previous_report: str | None = None,
    previous_report_age: int = 0,
    limit: int = 5000,
) -> str:
    if previous_report:
        previous_section = (
            f"\n## Previous report ({previous_report_age} messages ago)\n{truncate(previous_report, limit)}\n"
            "Do not repeat points that are still unchanged since that report.\n"
        )
    else:
        previous_section = ""
    history = chat_history or "(No chat history available)"
    return f"""You are a silent reviewer writing a short report for the author of an interactive story.

## Assistant personality
{personality}

## General memory
{truncate(general_memory, limit)}

## Narrative text critique
{truncate(chat_text, limit)}

## Entity edition critique
{truncate(node_edition, limit)}

## Recent conversation
{history}
{previous_section}
## Instructions
Write a brief critique-only report with a few headings and short points.
Do not continue the story and do not address characters.
"""


def format_report(text: str) -> str:
    """Normalise a generated report: keep headings, bullet short paragraphs."""

    cleaned = (text or "").strip()
    if not cleaned:
        return ""
    formatted: list[str] = []
    for block in re.split(r"\n\s*\n", cleaned):
        lines = [line.rstrip() for line in block.strip().splitlines() if line.strip()]
        if not lines:
            continue
        if _HEADING_RE.match(lines[0]):
            formatted.append(lines[0])
            lines = lines[1:]
            if not lines:
                continue
        paragraph = " ".join(line.strip() for line in lines)
        if _should_bullet(paragraph):
            formatted.append(f"- {paragraph}")
        else:
            formatted.append("\n".join(lines))
    return "\n\n".join(formatted)


def parse_memory_update(text: str) -> Mapping[str, Any] | None:
    """Return the ``memory_update_diffs`` mapping in a JSON reply, or ``None``."""

    candidate = (text or "").strip()
    match = _JSON_FENCE_RE.match(candidate)
    if match:
        candidate = match.group("body").strip()
    if not candidate.startswith("{"):
        return None
    try:
        parsed = json.loads(candidate)
    except ValueError:
        return None
    if not isinstance(parsed, Mapping):
        return None
    update = parsed.get("memory_update_diffs")
    if isinstance(update, Mapping) and ("rpl" in update or "df" in update):
        return update
    return None


def _should_bullet(paragraph: str) -> bool:
    if paragraph.startswith(("-", "*", "#")) or paragraph[:2].rstrip(".").isdigit():
        return False
    return len(paragraph) <= _BULLET_MAX_CHARS and paragraph[:1].isupper()


__all__ = [
    "NO_ASSISTANT_ENTITIES",
    "call_feedback_prompt",
    "chat_reset_prompt",
    "document_update_prompt",
    "final_report_prompt",
    "format_report",
    "guidance_for",
    "parse_memory_update",
    "personality_context",
    "synthesis_prompt",
]
