"""FIFO feedback queue with per-type concurrency classes and a coalescing scheduler."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Mapping, Sequence

from ..services.telemetry import emit
from .history import NO_HISTORY_PLACEHOLDER, format_chat_history
from .types import (
    ConcurrencyClass,
    FeedbackConfig,
    FeedbackTask,
    TaskType,
    concurrency_class,
    is_system_event,
    task_type_name,
)

__all__ = ["TaskCoordinator", "TaskRunner", "HISTORY_CONTEXT_KEY"]

LOGGER = logging.getLogger(__name__)

TaskRunner = Callable[[FeedbackTask], Awaitable[Any]]

HISTORY_CONTEXT_KEY = "chat_history_context"
_EXCLUSIVE_SLOT = TaskType.FINAL_REPORT.value
_SEQUENTIAL_SLOT = "sequential"
_PLACEHOLDER_TYPES = frozenset({TaskType.FINAL_REPORT.value, TaskType.UPDATE_GENERAL_MEMORY.value})


class TaskCoordinator:
    """Schedules feedback tasks by inspecting only the head of the queue.

    ``finalReport`` runs alone. ``storyFeedback`` and ``nodeUpdateFeedback``
    each allow one in-flight instance and are launched without waiting.
    Every other type runs one at a time and is awaited before the next head
    is inspected. A busy head blocks everything queued behind it.
    """

    def __init__(self, runner: TaskRunner, *, config: FeedbackConfig | None = None) -> None:
        if runner is None:
            raise ValueError("runner is required")
        self._runner = runner
        self._config = config or FeedbackConfig()
        self._queue: deque[FeedbackTask] = deque()
        self._active: dict[str, set[asyncio.Task[None]]] = {}
        self._deferred: set[asyncio.TimerHandle] = set()
        self._timer: asyncio.TimerHandle | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._next_id = 0
        self._feedback_count = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def add_task(
        self,
        task_type: str | TaskType,
        data: Mapping[str, Any] | None = None,
        chat_history: Sequence[Mapping[str, Any]] | None = None,
        *,
        history_turns: int | None = None,
    ) -> FeedbackTask | None:
        """Queue a task and (re)arm the coalescing timer. Never raises."""

        try:
            task = self._build_task(task_type_name(task_type), data, chat_history, history_turns)
        except Exception:
            LOGGER.exception("Unable to queue feedback task %s", task_type)
            return None
        if self._closed:
            LOGGER.debug("Coordinator closed; dropping %s task", task.type)
            return None
        self._queue.append(task)
        self._idle.clear()
        emit("feedback.task_queued", {"task_id": task.id, "task_type": task.type, "queue_depth": len(self._queue)})
        self._schedule()
        return task

    def add_task_later(
        self,
        delay: float,
        task_type: str | TaskType,
        data: Mapping[str, Any] | None = None,
        chat_history: Sequence[Mapping[str, Any]] | None = None,
    ) -> None:
        """Queue a task after ``delay`` seconds; the pending enqueue counts as outstanding work."""

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.add_task(task_type, data, chat_history)
            return
        holder: list[asyncio.TimerHandle] = []

        def _fire() -> None:
            if holder:
                self._deferred.discard(holder[0])
            self.add_task(task_type, data, chat_history)
            self._check_idle()

        handle = loop.call_later(max(0.0, delay), _fire)
        holder.append(handle)
        self._deferred.add(handle)
        self._idle.clear()

    def note_feedback(self, call_type: str | None) -> bool:
        """Count a record that received feedback; enqueue a synthesis every N records."""

        if is_system_event(call_type):
            return False
        self._feedback_count += 1
        if self._feedback_count % self._config.synthesis_interval:
            return False
        LOGGER.debug("Feedback count reached %s; scheduling general memory synthesis", self._feedback_count)
        self.add_task(
            TaskType.UPDATE_GENERAL_MEMORY.value,
            {"reason": "periodic", "feedback_count": self._feedback_count},
        )
        return True

    @property
    def feedback_count(self) -> int:
        return self._feedback_count

    def pending(self) -> list[FeedbackTask]:
        return list(self._queue)

    def active_counts(self) -> dict[str, int]:
        return {slot: len(handles) for slot, handles in self._active.items() if handles}

    def is_idle(self) -> bool:
        return (
            not self._queue
            and not any(self._active.values())
            and not self._deferred
            and self._timer is None
            and self._drain_task is None
        )

    async def join(self) -> None:
        """Wait until the queue is empty and no task is running or pending."""

        while not self.is_idle():
            if self._queue and self._timer is None and self._drain_task is None and not self._busy_head():
                self._schedule()
            self._idle.clear()
            await self._idle.wait()

    def reset(self) -> None:
        """Drop queued and deferred work; in-flight tasks finish on their own."""

        self._cancel_timer()
        for handle in list(self._deferred):
            handle.cancel()
        self._deferred.clear()
        self._queue.clear()
        self._feedback_count = 0
        self._check_idle()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.reset()
        handles: list[asyncio.Task[Any]] = [task for tasks in self._active.values() for task in tasks]
        if self._drain_task is not None:
            handles.append(self._drain_task)
        for handle in handles:
            handle.cancel()
        for handle in handles:
            with contextlib.suppress(asyncio.CancelledError):
                await handle
        self._active.clear()
        self._drain_task = None
        self._idle.set()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def _build_task(
        self,
        task_type: str,
        data: Mapping[str, Any] | None,
        chat_history: Sequence[Mapping[str, Any]] | None,
        history_turns: int | None,
    ) -> FeedbackTask:
        payload: dict[str, Any] = dict(data or {})
        if chat_history is not None:
            if history_turns is None:
                history_turns = (
                    self._config.report_history_turns
                    if task_type == TaskType.FINAL_REPORT.value
                    else self._config.history_turns
                )
            payload[HISTORY_CONTEXT_KEY] = format_chat_history(
                chat_history, history_turns, limit=self._config.truncate_length
            )
        elif task_type in _PLACEHOLDER_TYPES and HISTORY_CONTEXT_KEY not in payload:
            payload[HISTORY_CONTEXT_KEY] = NO_HISTORY_PLACEHOLDER
        self._next_id += 1
        return FeedbackTask(id=self._next_id, type=task_type, payload=payload, enqueue_time=time.time())

    def _schedule(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("No running event loop; %s queued task(s) wait for the next pass", len(self._queue))
            return
        self._cancel_timer()
        self._timer = loop.call_later(self._config.debounce_seconds, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._kick()

    def _kick(self) -> None:
        if self._closed:
            return
        if self._drain_task is not None:
            return
        if not self._queue:
            self._check_idle()
            return
        loop = asyncio.get_running_loop()
        self._drain_task = loop.create_task(self._drain(), name="feedback-drain")

    async def _drain(self) -> None:
        try:
            while self._queue and not self._closed:
                head = self._queue[0]
                kind = concurrency_class(head.type)
                if kind is ConcurrencyClass.EXCLUSIVE:
                    if self._any_active():
                        break
                    self._queue.popleft()
                    await self._run_to_completion(head, _EXCLUSIVE_SLOT)
                elif kind is ConcurrencyClass.SINGLETON:
                    if self._slot_busy(head.type):
                        break
                    self._queue.popleft()
                    self._launch(head, head.type)
                else:
                    if self._slot_busy(_EXCLUSIVE_SLOT):
                        break
                    self._queue.popleft()
                    await self._run_to_completion(head, _SEQUENTIAL_SLOT)
        finally:
            self._drain_task = None
            self._check_idle()

    def _busy_head(self) -> bool:
        if not self._queue:
            return False
        head = self._queue[0]
        kind = concurrency_class(head.type)
        if kind is ConcurrencyClass.EXCLUSIVE:
            return self._any_active()
        if kind is ConcurrencyClass.SINGLETON:
            return self._slot_busy(head.type)
        return self._slot_busy(_EXCLUSIVE_SLOT)

    def _any_active(self) -> bool:
        return any(self._active.values())

    def _slot_busy(self, slot: str) -> bool:
        return bool(self._active.get(slot))

    def _launch(self, task: FeedbackTask, slot: str) -> asyncio.Task[None]:
        loop = asyncio.get_running_loop()
        handle = loop.create_task(self._execute(task), name=f"feedback-{task.type}-{task.id}")
        self._active.setdefault(slot, set()).add(handle)
        handle.add_done_callback(functools.partial(self._on_done, slot))
        return handle

    async def _run_to_completion(self, task: FeedbackTask, slot: str) -> None:
        handle = self._launch(task, slot)
        try:
            await handle
        finally:
            self._active.get(slot, set()).discard(handle)

    def _on_done(self, slot: str, handle: asyncio.Task[None]) -> None:
        self._active.get(slot, set()).discard(handle)
        if self._closed:
            return
        if self._queue:
            self._kick()
        self._check_idle()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def _execute(self, task: FeedbackTask) -> None:
        started = time.perf_counter()
        emit("feedback.task_started", {"task_id": task.id, "task_type": task.type})
        LOGGER.debug("Running feedback task %s (%s)", task.id, task.type)
        try:
            timeout = self._config.generation_timeout
            if timeout:
                await asyncio.wait_for(self._runner(task), timeout=timeout)
            else:
                await self._runner(task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            latency_ms = (time.perf_counter() - started) * 1000.0
            LOGGER.exception("Feedback task %s (%s) failed; dropping it", task.id, task.type)
            emit(
                "feedback.task_failed",
                {
                    "task_id": task.id,
                    "task_type": task.type,
                    "latency_ms": round(latency_ms, 3),
                    "error": str(exc) or exc.__class__.__name__,
                },
            )
            return
        latency_ms = (time.perf_counter() - started) * 1000.0
        emit(
            "feedback.task_completed",
            {"task_id": task.id, "task_type": task.type, "latency_ms": round(latency_ms, 3)},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _check_idle(self) -> None:
        if self.is_idle():
            self._idle.set()
