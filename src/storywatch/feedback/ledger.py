"""Bounded ledger of outbound model calls and their classification into feedback tasks."""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Any, Callable, Mapping, Sequence

from .history import truncate
from .types import (
    CHAT_RESET_EVENT,
    NARRATIVE_CALL_TYPE,
    NARRATIVE_ID_PREFIX,
    NARRATIVE_PROMPT_MARKERS,
    SYSTEM_EVENT_TYPE,
    CallRecord,
    CallStatus,
    FeedbackConfig,
    TaskType,
    is_internal_call,
)

LOGGER = logging.getLogger(__name__)

LedgerListener = Callable[[list[CallRecord]], None]
EnqueueCallback = Callable[..., Any]

ERROR_MARKER = "..."


def classify_call(record: CallRecord) -> str | None:
    """Return the feedback task type for a completed call, or ``None`` when exempt."""

    if is_internal_call(record.call_type):
        return None
    if not record.response:
        return None
    if _looks_like_narrative(record):
        return TaskType.CHAT_TEXT_FEEDBACK.value
    return TaskType.LLM_CALL_FEEDBACK.value


def _elapsed_ms(start: float, end: float) -> float:
    return max(0.0, (end - start) * 1000.0)


def _looks_like_narrative(record: CallRecord) -> bool:
    if record.call_type == NARRATIVE_CALL_TYPE:
        return True
    if record.id.startswith(NARRATIVE_ID_PREFIX):
        return True
    prompt = record.prompt or ""
    return any(marker in prompt for marker in NARRATIVE_PROMPT_MARKERS)


class CallLedger:
    """Tracks call lifecycles, enforces retention and hands completed calls to a queue.

    ``enqueue`` is invoked as ``enqueue(task_type, payload, chat_history, history_turns=None)``.
    ``on_change`` is invoked after every mutation, before listeners are notified.
    """

    def __init__(
        self,
        *,
        config: FeedbackConfig | None = None,
        enqueue: EnqueueCallback | None = None,
        on_change: Callable[[], None] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._config = config or FeedbackConfig()
        self._enqueue = enqueue
        self._on_change = on_change
        self._clock = clock or time.time
        self._records: dict[str, CallRecord] = {}
        self._order: dict[str, int] = {}
        self._sequence = 0
        self._pending_histories: dict[str, Sequence[Mapping[str, Any]]] = {}
        self._listeners: list[LedgerListener] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def initiate(
        self,
        call_id: str,
        call_type: str,
        model: str,
        prompt: str,
        chat_history: Sequence[Mapping[str, Any]] | None = None,
    ) -> CallRecord | None:
        if call_id in self._records:
            LOGGER.error("Call %s already exists in the ledger; ignoring initiate", call_id)
            return None
        record = CallRecord(
            id=call_id,
            prompt=truncate(prompt, self._config.truncate_length),
            call_type=call_type,
            model_used=model,
            start_time=self._clock(),
            status=CallStatus.RUNNING,
        )
        self._insert(record)
        if chat_history:
            self._pending_histories[call_id] = list(chat_history)
        self._changed()
        return record

    def finalize(self, call_id: str, response: str) -> CallRecord | None:
        record = self._records.get(call_id)
        if record is None:
            LOGGER.warning("Cannot finalize unknown call %s", call_id)
            return None
        if record.status is not CallStatus.RUNNING:
            LOGGER.warning("Cannot finalize call %s in state %s", call_id, record.status.value)
            return None
        record.response = truncate(response, self._config.truncate_length)
        record.status = CallStatus.COMPLETED
        record.end_time = self._clock()
        record.duration = _elapsed_ms(record.start_time, record.end_time)
        self._enforce_capacity()
        history = self._pending_histories.pop(call_id, None)
        self._changed()
        self._classify(record, history)
        return record

    def fail(self, call_id: str, error: Any) -> CallRecord | None:
        record = self._records.get(call_id)
        if record is None:
            LOGGER.warning("Cannot fail unknown call %s", call_id)
            return None
        if record.status not in (CallStatus.RUNNING, CallStatus.QUEUED):
            LOGGER.warning("Cannot fail call %s in state %s", call_id, record.status.value)
            return None
        record.status = CallStatus.FAILED
        record.error = truncate(error, self._config.error_truncate_length, ERROR_MARKER)
        record.end_time = self._clock()
        if record.start_time:
            record.duration = _elapsed_ms(record.start_time, record.end_time)
        self._pending_histories.pop(call_id, None)
        self._changed()
        return record

    def record_external_event(
        self,
        call_id: str,
        prompt: str,
        response: str,
        event_type: str = SYSTEM_EVENT_TYPE,
        previous_chat_history: Sequence[Mapping[str, Any]] | None = None,
    ) -> CallRecord | None:
        """Insert an already-completed system event and classify it immediately."""

        if call_id in self._records:
            LOGGER.error("Event %s already exists in the ledger; ignoring", call_id)
            return None
        now = self._clock()
        record = CallRecord(
            id=call_id,
            prompt=truncate(prompt, self._config.truncate_length),
            call_type=event_type,
            model_used="N/A",
            start_time=now,
            status=CallStatus.COMPLETED,
            response=truncate(response, self._config.truncate_length),
            end_time=now,
            duration=0.0,
        )
        self._insert(record)
        self._enforce_capacity()
        self._changed()
        self._classify(record, previous_chat_history)
        if event_type == CHAT_RESET_EVENT and previous_chat_history:
            self._dispatch(
                TaskType.UPDATE_GENERAL_MEMORY.value,
                {"reason": CHAT_RESET_EVENT, "call_id": call_id},
                previous_chat_history,
                history_turns=self._config.reset_history_turns,
            )
        return record

    # ------------------------------------------------------------------
    # Queries and feedback
    # ------------------------------------------------------------------
    def get(self, call_id: str) -> CallRecord | None:
        return self._records.get(call_id)

    def feedback_for(self, call_id: str) -> str | None:
        record = self._records.get(call_id)
        return record.feedback if record is not None else None

    def set_feedback(self, call_id: str, feedback: str) -> bool:
        record = self._records.get(call_id)
        if record is None:
            LOGGER.debug("Call %s left the ledger before its feedback was ready", call_id)
            return False
        record.feedback = truncate(feedback, self._config.truncate_length)
        self._changed()
        return True

    def snapshot(self) -> list[CallRecord]:
        """Return copies of all records, newest first."""

        return [dataclasses.replace(record) for record in self._newest_first()]

    def recent_feedback(self, limit: int) -> list[CallRecord]:
        """Return up to ``limit`` newest completed records that carry feedback."""

        if limit <= 0:
            return []
        result = [
            record
            for record in self._newest_first()
            if record.status is CallStatus.COMPLETED and record.feedback
        ]
        return result[:limit]

    def clear(self) -> None:
        self._records.clear()
        self._order.clear()
        self._pending_histories.clear()
        self._changed()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._records

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def to_payload(self) -> dict[str, dict[str, Any]]:
        return {record.id: record.to_dict() for record in self._oldest_first()}

    def load_payload(self, payload: Mapping[str, Any] | None) -> None:
        """Replace the ledger contents from a persisted mapping without notifying."""

        self._records.clear()
        self._order.clear()
        if not isinstance(payload, Mapping):
            return
        records = []
        for key, raw in payload.items():
            if not isinstance(raw, Mapping):
                continue
            try:
                record = CallRecord.from_dict({**raw, "id": key})
            except (TypeError, ValueError) as exc:
                LOGGER.warning("Dropping unreadable ledger record %s: %s", key, exc)
                continue
            if record.id:
                records.append(record)
        for record in sorted(records, key=lambda item: item.start_time):
            self._insert(record)
        self._enforce_capacity()

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------
    def subscribe(self, listener: LedgerListener) -> Callable[[], None]:
        if listener not in self._listeners:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: LedgerListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _insert(self, record: CallRecord) -> None:
        self._sequence += 1
        self._records[record.id] = record
        self._order[record.id] = self._sequence

    def _sort_key(self, record: CallRecord) -> tuple[float, int]:
        return (record.start_time, self._order.get(record.id, 0))

    def _newest_first(self) -> list[CallRecord]:
        return sorted(self._records.values(), key=self._sort_key, reverse=True)

    def _oldest_first(self) -> list[CallRecord]:
        return sorted(self._records.values(), key=self._sort_key)

    def _enforce_capacity(self) -> None:
        excess = len(self._records) - self._config.ledger_capacity
        if excess <= 0:
            return
        # Internal records go first, then user calls; oldest first within each group.
        candidates = sorted(
            self._records.values(),
            key=lambda record: (not is_internal_call(record.call_type), self._sort_key(record)),
        )
        for record in candidates[:excess]:
            self._records.pop(record.id, None)
            self._order.pop(record.id, None)
            self._pending_histories.pop(record.id, None)
        LOGGER.debug("Ledger trimmed to %s records", self._config.ledger_capacity)

    def _classify(self, record: CallRecord, history: Sequence[Mapping[str, Any]] | None) -> None:
        task_type = classify_call(record)
        if task_type is None:
            return
        payload = {
            "call_id": record.id,
            "call_type": record.call_type,
            "prompt": record.prompt,
            "response": record.response or "",
        }
        self._dispatch(task_type, payload, history)

    def _dispatch(
        self,
        task_type: str,
        payload: dict[str, Any],
        history: Sequence[Mapping[str, Any]] | None,
        *,
        history_turns: int | None = None,
    ) -> None:
        if self._enqueue is None:
            return
        try:
            self._enqueue(task_type, payload, history, history_turns=history_turns)
        except Exception:  # pragma: no cover - enqueue never raises in practice
            LOGGER.exception("Failed to enqueue %s for call %s", task_type, payload.get("call_id"))

    def _changed(self) -> None:
        if self._on_change is not None:
            try:
                self._on_change()
            except Exception:
                LOGGER.exception("Ledger persistence callback failed")
        self.notify_listeners()

    def notify_listeners(self) -> None:
        """Push a fresh newest-first snapshot to every subscriber."""

        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(list(snapshot))
            except Exception:
                LOGGER.exception("Ledger listener %s failed", listener)


__all__ = ["CallLedger", "LedgerListener", "classify_call"]
