"""Shared data contracts for the feedback engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence

INTERNAL_CALL_PREFIX = "internal_feedback:"
SYSTEM_EVENT_TYPE = "system_event"
CHAT_RESET_EVENT = "chat_reset_event"
SYSTEM_EVENT_TYPES: frozenset[str] = frozenset(
    {
        SYSTEM_EVENT_TYPE,
        "story_refocus_event",
        CHAT_RESET_EVENT,
        "assistant_message_edit_event",
        "chat_regenerate_event",
        "chat_input_regenerate_event",
    }
)
NARRATIVE_CALL_TYPE = "chat_text_generation"
NARRATIVE_ID_PREFIX = "chatText-"
NARRATIVE_PROMPT_MARKERS: tuple[str, ...] = (
    "Generate a detailed chapter",
    "Generate appropriate dialogue",
    "# TASK:\nYou are the Game Engine of a Node-base game",
)
ENTITY_EDIT_CALL_TYPES: frozenset[str] = frozenset({"node_edition_json", "node_edition_yaml"})


def is_internal_call(call_type: str | None) -> bool:
    """Return ``True`` when *call_type* marks a feedback-generation call."""

    return bool(call_type) and str(call_type).startswith(INTERNAL_CALL_PREFIX)


def is_system_event(call_type: str | None) -> bool:
    return bool(call_type) and str(call_type) in SYSTEM_EVENT_TYPES


def internal_call_type(task_type: str | Enum) -> str:
    return f"{INTERNAL_CALL_PREFIX}{task_type_name(task_type)}"


class CallStatus(str, Enum):
    """Lifecycle of a recorded model call."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class CallRecord:
    """One outbound model call tracked by the ledger."""

    id: str
    prompt: str
    call_type: str
    model_used: str
    start_time: float
    status: CallStatus = CallStatus.RUNNING
    response: str | None = None
    end_time: float | None = None
    duration: float | None = None  # milliseconds
    error: str | None = None
    feedback: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CallRecord":
        try:
            status = CallStatus(str(payload.get("status", CallStatus.COMPLETED.value)))
        except ValueError:
            status = CallStatus.COMPLETED
        return cls(
            id=str(payload.get("id", "")),
            prompt=str(payload.get("prompt") or ""),
            call_type=str(payload.get("call_type") or ""),
            model_used=str(payload.get("model_used") or ""),
            start_time=_timestamp(payload.get("start_time")) or 0.0,
            status=status,
            response=_optional_str(payload.get("response")),
            end_time=_timestamp(payload.get("end_time")),
            duration=_optional_float(payload.get("duration")),
            error=_optional_str(payload.get("error")),
            feedback=_optional_str(payload.get("feedback")),
        )


class TaskType(str, Enum):
    """Known feedback task types."""

    ASSISTANT_FEEDBACK = "assistantFeedback"
    NODE_EDIT_FEEDBACK = "nodeEditFeedback"
    STORY_FEEDBACK = "storyFeedback"
    NODE_UPDATE_FEEDBACK = "nodeUpdateFeedback"
    FINAL_REPORT = "finalReport"
    LLM_CALL_FEEDBACK = "llmCallFeedback"
    CHAT_TEXT_FEEDBACK = "chatTextFeedback"
    UPDATE_GENERAL_MEMORY = "updateGeneralMemory"


def task_type_name(task_type: Any) -> str:
    """Return the wire name of *task_type*, unwrapping enum members."""

    if isinstance(task_type, Enum):
        return str(task_type.value)
    return str(task_type)


class ConcurrencyClass(str, Enum):
    """Scheduling category that bounds how many tasks of a type run at once."""

    EXCLUSIVE = "exclusive"
    SINGLETON = "singleton"
    SEQUENTIAL = "sequential"


_CONCURRENCY_BY_TYPE: dict[str, ConcurrencyClass] = {
    TaskType.FINAL_REPORT.value: ConcurrencyClass.EXCLUSIVE,
    TaskType.STORY_FEEDBACK.value: ConcurrencyClass.SINGLETON,
    TaskType.NODE_UPDATE_FEEDBACK.value: ConcurrencyClass.SINGLETON,
}


def concurrency_class(task_type: str | Enum) -> ConcurrencyClass:
    """Return the scheduling class for *task_type*; unknown types are sequential."""

    return _CONCURRENCY_BY_TYPE.get(task_type_name(task_type), ConcurrencyClass.SEQUENTIAL)


@dataclass(slots=True)
class FeedbackTask:
    """Unit of queued critique work."""

    id: int
    type: str
    payload: dict[str, Any]
    enqueue_time: float

    @property
    def concurrency(self) -> ConcurrencyClass:
        return concurrency_class(self.type)


@dataclass(slots=True)
class FeedbackConfig:
    """Tunable limits for the feedback engine."""

    truncate_length: int = 5000
    error_truncate_length: int = 1000
    ledger_capacity: int = 50
    debounce_seconds: float = 0.05
    history_turns: int = 10
    report_history_turns: int = 5
    reset_history_turns: int = 20
    synthesis_interval: int = 5
    synthesis_recent_feedback: int = 5
    general_memory_cap: int = 5000
    document_prompt_limit: int = 5000
    report_followup_delay: float = 0.1
    auto_final_report: bool = True
    skip_feedback_call_types: tuple[str, ...] = (
        "image_prompt_generation",
        "action_generation",
        "image_generation_novelai",
    )
    generation_timeout: float | None = None

    def clamp(self) -> FeedbackConfig:
        """Clamp values into safe operating ranges and return ``self``."""

        self.truncate_length = max(100, int(self.truncate_length or 100))
        self.error_truncate_length = max(50, int(self.error_truncate_length or 50))
        self.ledger_capacity = max(1, int(self.ledger_capacity or 1))
        self.debounce_seconds = max(0.0, float(self.debounce_seconds or 0.0))
        self.history_turns = max(0, int(self.history_turns or 0))
        self.report_history_turns = max(0, int(self.report_history_turns or 0))
        self.reset_history_turns = max(0, int(self.reset_history_turns or 0))
        self.synthesis_interval = max(1, int(self.synthesis_interval or 1))
        self.synthesis_recent_feedback = max(0, int(self.synthesis_recent_feedback or 0))
        self.general_memory_cap = max(100, int(self.general_memory_cap or 100))
        self.document_prompt_limit = max(100, int(self.document_prompt_limit or 100))
        self.report_followup_delay = max(0.0, float(self.report_followup_delay or 0.0))
        self.skip_feedback_call_types = tuple(str(item) for item in self.skip_feedback_call_types or ())
        if self.generation_timeout is not None:
            self.generation_timeout = max(1.0, float(self.generation_timeout))
        return self


class FeedbackGenerator(Protocol):
    """Produces critique text for a prompt."""

    async def generate(self, prompt: str, call_type_hint: str | None = None) -> str:  # pragma: no cover - protocol stub
        ...


class EntitySource(Protocol):
    def list_entities(self) -> Sequence[Mapping[str, Any]]:  # pragma: no cover - protocol stub
        ...


class MessageSink(Protocol):
    """Receives finished reports for display."""

    def deliver(self, message: Mapping[str, Any]) -> Any:  # pragma: no cover - protocol stub
        ...


class KeyValueSlot(Protocol):
    """Durable single-key storage used to persist the memory blob."""

    def get(self, key: str) -> str | None:  # pragma: no cover - protocol stub
        ...

    def set(self, key: str, value: str) -> None:  # pragma: no cover - protocol stub
        ...

    def remove(self, key: str) -> None:  # pragma: no cover - protocol stub
        ...


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _timestamp(value: Any) -> float | None:
    """Accept epoch seconds or an ISO-8601 string; anything else is ``None``."""

    number = _optional_float(value)
    if number is not None or not isinstance(value, str):
        return number
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


__all__ = [
    "CHAT_RESET_EVENT",
    "CallRecord",
    "CallStatus",
    "ConcurrencyClass",
    "ENTITY_EDIT_CALL_TYPES",
    "EntitySource",
    "FeedbackConfig",
    "FeedbackGenerator",
    "FeedbackTask",
    "INTERNAL_CALL_PREFIX",
    "KeyValueSlot",
    "MessageSink",
    "NARRATIVE_CALL_TYPE",
    "NARRATIVE_ID_PREFIX",
    "NARRATIVE_PROMPT_MARKERS",
    "SYSTEM_EVENT_TYPE",
    "SYSTEM_EVENT_TYPES",
    "TaskType",
    "concurrency_class",
    "internal_call_type",
    "is_internal_call",
    "is_system_event",
    "task_type_name",
]
