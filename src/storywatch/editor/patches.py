"""Find/replace patch helpers used to materialize model-proposed field edits."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, MutableMapping, Sequence

LOGGER = logging.getLogger(__name__)

IMAGE_REFRESH_KEY = "img_upd"


@dataclass(slots=True)
class TextDiffInstruction:
    """Replace the ``occ``-th occurrence of ``prev_txt`` with ``next_txt``."""

    prev_txt: str
    next_txt: str = ""
    occ: int = 1

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "TextDiffInstruction":
        prev_txt = payload.get("prev_txt")
        next_txt = payload.get("next_txt")
        occ = payload.get("occ", 1)
        try:
            occurrence = int(occ) if occ is not None else 1
        except (TypeError, ValueError):
            occurrence = 1
        return cls(
            prev_txt=str(prev_txt) if prev_txt is not None else "",
            next_txt=str(next_txt) if next_txt is not None else "",
            occ=occurrence,
        )


@dataclass(slots=True)
class EntityUpdateResult:
    """Outcome of :func:`apply_entity_updates`."""

    entities: list[dict[str, Any]]
    added: tuple[str, ...] = ()
    updated: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()
    image_refresh: set[str] = field(default_factory=set)


def apply_diff(base: str, instructions: Iterable[TextDiffInstruction | Mapping[str, Any]]) -> str:
    """Apply ``instructions`` to ``base`` in order and return the patched text.

    Each instruction sees the previous step's output. An empty ``prev_txt``
    appends ``next_txt``. A ``prev_txt`` that cannot be found at the requested
    occurrence leaves the text unchanged for that step.
    """

    text = base or ""
    for raw in instructions or ():
        instruction = _coerce_instruction(raw)
        if not instruction.prev_txt:
            if instruction.next_txt:
                text = f"{text}{instruction.next_txt}"
            continue
        index = _find_occurrence(text, instruction.prev_txt, instruction.occ)
        if index < 0:
            LOGGER.debug(
                "Diff target %r (occurrence %s) not found; skipping instruction",
                instruction.prev_txt[:80],
                instruction.occ,
            )
            continue
        end = index + len(instruction.prev_txt)
        text = f"{text[:index]}{instruction.next_txt}{text[end:]}"
    return text


def apply_field_update(value: Any, update: Mapping[str, Any] | None) -> Any:
    """Return ``value`` after applying a ``{"rpl": ...}`` or ``{"df": [...]}`` update."""

    if not isinstance(update, Mapping):
        return value
    if "rpl" in update:
        return update["rpl"]
    diffs = update.get("df")
    if diffs and isinstance(value, str):
        return apply_diff(value, _instruction_list(diffs))
    if diffs and value is None:
        return apply_diff("", _instruction_list(diffs))
    return value


def apply_entity_updates(
    entities: Sequence[Mapping[str, Any]],
    updates: Mapping[str, Any] | None,
) -> EntityUpdateResult:
    """Apply an entity edit response (``n_nodes``/``u_nodes``/``d_nodes``) to ``entities``.

    The input sequence is not mutated; a new list of entity dicts is returned.
    """

    working: list[dict[str, Any]] = [copy.deepcopy(dict(entity)) for entity in entities or ()]
    if not isinstance(updates, Mapping):
        return EntityUpdateResult(entities=working)

    deleted_ids = {str(entity_id) for entity_id in updates.get("d_nodes") or ()}
    deleted: list[str] = []
    if deleted_ids:
        kept: list[dict[str, Any]] = []
        for entity in working:
            if str(entity.get("id")) in deleted_ids:
                deleted.append(str(entity.get("id")))
            else:
                kept.append(entity)
        working = kept

    updated: list[str] = []
    image_refresh: set[str] = set()
    field_updates = updates.get("u_nodes") or {}
    if isinstance(field_updates, Mapping):
        by_id = {str(entity.get("id")): entity for entity in working}
        for entity_id, changes in field_updates.items():
            target = by_id.get(str(entity_id))
            if target is None or not isinstance(changes, Mapping):
                LOGGER.debug("Skipping update for unknown entity %s", entity_id)
                continue
            _apply_entity_changes(target, changes)
            if changes.get(IMAGE_REFRESH_KEY):
                image_refresh.add(str(entity_id))
            updated.append(str(entity_id))

    added: list[str] = []
    existing_ids = {str(entity.get("id")) for entity in working}
    for new_entity in updates.get("n_nodes") or ():
        if not isinstance(new_entity, Mapping):
            continue
        entity_id = str(new_entity.get("id", ""))
        if entity_id and entity_id in existing_ids:
            LOGGER.debug("Entity %s already exists; ignoring duplicate addition", entity_id)
            continue
        working.append(copy.deepcopy(dict(new_entity)))
        existing_ids.add(entity_id)
        added.append(entity_id)

    return EntityUpdateResult(
        entities=working,
        added=tuple(added),
        updated=tuple(updated),
        deleted=tuple(deleted),
        image_refresh=image_refresh,
    )


def _apply_entity_changes(target: MutableMapping[str, Any], changes: Mapping[str, Any]) -> None:
    for field_name, update in changes.items():
        if field_name == IMAGE_REFRESH_KEY:
            continue
        target[field_name] = apply_field_update(target.get(field_name), update)


def _find_occurrence(text: str, needle: str, occurrence: int) -> int:
    if occurrence < 1:
        return -1
    position = 0
    seen = 0
    while True:
        index = text.find(needle, position)
        if index < 0:
            return -1
        seen += 1
        if seen == occurrence:
            return index
        # Matches never overlap.
        position = index + len(needle)


def _instruction_list(raw: Any) -> List[TextDiffInstruction]:
    if isinstance(raw, (TextDiffInstruction, Mapping)):
        raw = [raw]
    return [_coerce_instruction(item) for item in raw]


def _coerce_instruction(raw: TextDiffInstruction | Mapping[str, Any]) -> TextDiffInstruction:
    if isinstance(raw, TextDiffInstruction):
        return raw
    if isinstance(raw, Mapping):
        return TextDiffInstruction.from_mapping(raw)
    raise TypeError(f"Unsupported diff instruction: {type(raw).__name__}")


__all__ = [
    "EntityUpdateResult",
    "TextDiffInstruction",
    "apply_diff",
    "apply_entity_updates",
    "apply_field_update",
]
