"""Asynchronous feedback engine: call ledger, task coordinator and critique memory."""

from .coordinator import TaskCoordinator
from .engine import FeedbackEngine
from .ledger import CallLedger, classify_call
from .memory import DOCUMENT_NAMES, MemoryStore, document_for_task
from .types import (
    INTERNAL_CALL_PREFIX,
    CallRecord,
    CallStatus,
    ConcurrencyClass,
    FeedbackConfig,
    FeedbackTask,
    TaskType,
)

__all__ = [
    "CallLedger",
    "CallRecord",
    "CallStatus",
    "ConcurrencyClass",
    "DOCUMENT_NAMES",
    "FeedbackConfig",
    "FeedbackEngine",
    "FeedbackTask",
    "INTERNAL_CALL_PREFIX",
    "MemoryStore",
    "TaskCoordinator",
    "TaskType",
    "classify_call",
    "document_for_task",
]
