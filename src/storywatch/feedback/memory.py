"""Critique documents and their persistence in a single durable slot."""

from __future__ import annotations

import copy
import json
import logging
from typing import TYPE_CHECKING, Any, Mapping

from .types import KeyValueSlot, TaskType, task_type_name

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from .ledger import CallLedger

LOGGER = logging.getLogger(__name__)

DEFAULT_MEMORY_KEY = "storywatch.memory"

GENERAL_MEMORY = "GeneralMemory"
NODE_EDITION = "nodeEdition"
CHAT_TEXT = "chatText"
ASSISTANT_FEEDBACK = "assistantFeedback"
NODE_EDIT = "nodeEdit"

FEATURE_DOCUMENTS: tuple[str, ...] = (NODE_EDITION, CHAT_TEXT, ASSISTANT_FEEDBACK, NODE_EDIT)
DOCUMENT_NAMES: tuple[str, ...] = (GENERAL_MEMORY, *FEATURE_DOCUMENTS)
FEATURE_SECTION = "featureSpecificMemory"
CALLS_SECTION = "llmCalls"

DEFAULT_DOCUMENTS: dict[str, str] = {
    GENERAL_MEMORY: (
        "# General memory\n\n"
        "No observations yet. Lessons about the story, the world and the "
        "assistant's behaviour will be collected here."
    ),
    NODE_EDITION: (
        "# Entity edition critique\n\n"
        "No entity edits have been reviewed yet."
    ),
    CHAT_TEXT: (
        "# Narrative text critique\n\n"
        "No narrative text has been reviewed yet."
    ),
    ASSISTANT_FEEDBACK: (
        "# Assistant behaviour critique\n\n"
        "No assistant replies have been reviewed yet."
    ),
    NODE_EDIT: (
        "# Manual entity edit notes\n\n"
        "No manual edits by the user have been observed yet."
    ),
}

_ROUTES: dict[str, str] = {
    TaskType.NODE_EDIT_FEEDBACK.value: NODE_EDIT,
    TaskType.STORY_FEEDBACK.value: NODE_EDITION,
    TaskType.NODE_UPDATE_FEEDBACK.value: NODE_EDITION,
    TaskType.ASSISTANT_FEEDBACK.value: ASSISTANT_FEEDBACK,
    TaskType.CHAT_TEXT_FEEDBACK.value: CHAT_TEXT,
}


def document_for_task(task_type: str | TaskType) -> str:
    """Return the document a task type writes into (``GeneralMemory`` by default)."""

    return _ROUTES.get(task_type_name(task_type), GENERAL_MEMORY)


class MemoryStore:
    """Holds the five critique documents and persists them with the ledger."""

    def __init__(
        self,
        slot: KeyValueSlot,
        *,
        key: str = DEFAULT_MEMORY_KEY,
        ledger: "CallLedger | None" = None,
    ) -> None:
        self._slot = slot
        self._key = key
        self._ledger = ledger
        self._documents: dict[str, str] = dict(DEFAULT_DOCUMENTS)

    @property
    def key(self) -> str:
        return self._key

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------
    def get(self, name: str) -> str:
        return self._documents.get(name) or DEFAULT_DOCUMENTS.get(name, "")

    def set(self, name: str, text: str | None) -> None:
        if name not in DEFAULT_DOCUMENTS:
            raise KeyError(f"Unknown memory document: {name}")
        value = (text or "").strip()
        self._documents[name] = value or DEFAULT_DOCUMENTS[name]
        self.save()

    def documents(self) -> dict[str, str]:
        return {name: self.get(name) for name in DOCUMENT_NAMES}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load(self) -> None:
        """Populate documents (and the attached ledger) from the durable slot."""

        raw = None
        try:
            raw = self._slot.get(self._key)
        except Exception:
            LOGGER.exception("Unable to read memory slot %s", self._key)
        payload = self._decode(raw)
        self._apply(payload)

    def save(self) -> None:
        blob = json.dumps(self.export(), ensure_ascii=False)
        try:
            self._slot.set(self._key, blob)
        except Exception:
            LOGGER.exception("Unable to persist memory slot %s", self._key)

    def export(self) -> dict[str, Any]:
        features: dict[str, Any] = {name: self.get(name) for name in FEATURE_DOCUMENTS}
        features[CALLS_SECTION] = self._ledger.to_payload() if self._ledger is not None else {}
        return {GENERAL_MEMORY: self.get(GENERAL_MEMORY), FEATURE_SECTION: features}

    def import_data(self, data: Mapping[str, Any] | str | None) -> None:
        """Replace the current memory with ``data`` (repairing gaps) and persist it."""

        payload = self._decode(data) if isinstance(data, str) else data
        self._apply(payload if isinstance(payload, Mapping) else {})
        self.save()

    def reset(self) -> None:
        self._documents = dict(DEFAULT_DOCUMENTS)
        if self._ledger is not None:
            self._ledger.load_payload({})
        try:
            self._slot.remove(self._key)
        except Exception:
            LOGGER.exception("Unable to clear memory slot %s", self._key)

    def to_json(self) -> str:
        return json.dumps(self.export(), ensure_ascii=False, indent=2)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _decode(self, raw: Any) -> Mapping[str, Any]:
        if raw is None or raw == "":
            return {}
        if isinstance(raw, Mapping):
            return raw
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            LOGGER.warning("Stored memory under %s is not valid JSON; using defaults", self._key)
            return {}
        if not isinstance(payload, Mapping):
            LOGGER.warning("Stored memory under %s has an unexpected shape; using defaults", self._key)
            return {}
        return payload

    def _apply(self, payload: Mapping[str, Any]) -> None:
        features = payload.get(FEATURE_SECTION)
        if not isinstance(features, Mapping):
            features = {}
        documents: dict[str, str] = {GENERAL_MEMORY: _coerce_document(payload.get(GENERAL_MEMORY), GENERAL_MEMORY)}
        for name in FEATURE_DOCUMENTS:
            documents[name] = _coerce_document(features.get(name), name)
        self._documents = documents
        if self._ledger is not None:
            calls = features.get(CALLS_SECTION)
            self._ledger.load_payload(copy.deepcopy(calls) if isinstance(calls, Mapping) else {})


def _coerce_document(value: Any, name: str) -> str:
    if isinstance(value, str) and value.strip():
        return value
    return DEFAULT_DOCUMENTS[name]


__all__ = [
    "ASSISTANT_FEEDBACK",
    "CHAT_TEXT",
    "DEFAULT_DOCUMENTS",
    "DEFAULT_MEMORY_KEY",
    "DOCUMENT_NAMES",
    "FEATURE_DOCUMENTS",
    "GENERAL_MEMORY",
    "MemoryStore",
    "NODE_EDIT",
    "NODE_EDITION",
    "document_for_task",
]
