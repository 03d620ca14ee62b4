"""Feedback engine wiring the ledger, the task coordinator and the memory store."""

from __future__ import annotations

import dataclasses
import inspect
import logging
from typing import Any, Callable, Mapping, Sequence

from ..editor.patches import apply_diff, apply_field_update
from ..services.storage import InMemorySlot
from ..services.telemetry import emit
from . import prompts
from .coordinator import HISTORY_CONTEXT_KEY, TaskCoordinator
from .history import REPORT_ROLE, find_previous_report, serialize_payload, truncate
from .ledger import CallLedger, LedgerListener
from .memory import (
    ASSISTANT_FEEDBACK,
    CHAT_TEXT,
    DEFAULT_MEMORY_KEY,
    GENERAL_MEMORY,
    NODE_EDIT,
    NODE_EDITION,
    MemoryStore,
    document_for_task,
)
from .types import (
    CHAT_RESET_EVENT,
    ENTITY_EDIT_CALL_TYPES,
    SYSTEM_EVENT_TYPE,
    CallRecord,
    EntitySource,
    FeedbackConfig,
    FeedbackGenerator,
    FeedbackTask,
    KeyValueSlot,
    MessageSink,
    TaskType,
    internal_call_type,
    task_type_name,
)

LOGGER = logging.getLogger(__name__)

ChatHistorySource = Callable[[], Sequence[Mapping[str, Any]]]

_CALL_FEEDBACK_TYPES = frozenset({TaskType.LLM_CALL_FEEDBACK.value, TaskType.CHAT_TEXT_FEEDBACK.value})


class FeedbackEngine:
    """Watches model calls, critiques them and keeps the critique documents current.

    One instance owns its ledger, queue and documents; several engines can
    coexist in the same process.
    """

    apply_diff = staticmethod(apply_diff)

    def __init__(
        self,
        *,
        generator: FeedbackGenerator,
        entity_source: EntitySource | None = None,
        message_sink: MessageSink | None = None,
        slot: KeyValueSlot | None = None,
        chat_history_source: ChatHistorySource | None = None,
        config: FeedbackConfig | None = None,
        memory_key: str = DEFAULT_MEMORY_KEY,
    ) -> None:
        if generator is None:
            raise ValueError("generator is required")
        self._config = dataclasses.replace(config or FeedbackConfig()).clamp()
        self._generator = generator
        self._entity_source = entity_source
        self._message_sink = message_sink
        self._chat_history_source = chat_history_source
        self._store: MemoryStore | None = None
        self._coordinator = TaskCoordinator(self._run_task, config=self._config)
        self._ledger = CallLedger(
            config=self._config,
            enqueue=self._coordinator.add_task,
            on_change=self._persist,
        )
        self._store = MemoryStore(slot or InMemorySlot(), key=memory_key, ledger=self._ledger)
        self._store.load()
        self._saw_narrative_feedback = False
        self._saw_entity_edit_feedback = False

        attach = getattr(generator, "attach_ledger", None)
        if callable(attach):
            attach(self._ledger)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def config(self) -> FeedbackConfig:
        return self._config

    @property
    def ledger(self) -> CallLedger:
        return self._ledger

    @property
    def coordinator(self) -> TaskCoordinator:
        return self._coordinator

    @property
    def memory(self) -> MemoryStore:
        assert self._store is not None
        return self._store

    # ------------------------------------------------------------------
    # Ledger surface
    # ------------------------------------------------------------------
    def initiate(
        self,
        call_id: str,
        call_type: str,
        model: str,
        prompt: str,
        chat_history: Sequence[Mapping[str, Any]] | None = None,
    ) -> CallRecord | None:
        return self._ledger.initiate(call_id, call_type, model, prompt, chat_history)

    def finalize(self, call_id: str, response: str) -> CallRecord | None:
        return self._ledger.finalize(call_id, response)

    def fail(self, call_id: str, error: Any) -> CallRecord | None:
        return self._ledger.fail(call_id, error)

    def record_external_event(
        self,
        call_id: str,
        prompt: str,
        response: str,
        event_type: str = SYSTEM_EVENT_TYPE,
        previous_chat_history: Sequence[Mapping[str, Any]] | None = None,
    ) -> CallRecord | None:
        return self._ledger.record_external_event(call_id, prompt, response, event_type, previous_chat_history)

    def get_ledger_snapshot(self) -> list[CallRecord]:
        return self._ledger.snapshot()

    def subscribe(self, listener: LedgerListener) -> Callable[[], None]:
        return self._ledger.subscribe(listener)

    def unsubscribe(self, listener: LedgerListener) -> None:
        self._ledger.unsubscribe(listener)

    def get_call_feedback(self, call_id: str) -> str | None:
        return self._ledger.feedback_for(call_id)

    def clear_ledger(self) -> None:
        self._ledger.clear()

    # ------------------------------------------------------------------
    # Task surface
    # ------------------------------------------------------------------
    def add_task(
        self,
        task_type: str | TaskType,
        data: Mapping[str, Any] | None = None,
        chat_history: Sequence[Mapping[str, Any]] | None = None,
    ) -> FeedbackTask | None:
        kind = task_type_name(task_type)
        payload = dict(data or {})
        if kind == TaskType.FINAL_REPORT.value and chat_history:
            previous, age = find_previous_report(chat_history)
            if previous:
                payload.setdefault("previous_report", truncate(previous, self._config.truncate_length))
                payload.setdefault("previous_report_age", age)
        return self._coordinator.add_task(kind, payload, chat_history)

    def record_entity_edit(
        self,
        original: Mapping[str, Any],
        edited: Mapping[str, Any],
        context: str | None = None,
    ) -> FeedbackTask | None:
        """Queue a critique of an edit the user made to an entity by hand."""

        payload: dict[str, Any] = {"original": dict(original or {}), "edited": dict(edited or {})}
        if context:
            payload["context"] = context
        return self.add_task(TaskType.NODE_EDIT_FEEDBACK, payload)

    async def join(self) -> None:
        await self._coordinator.join()

    async def aclose(self) -> None:
        await self._coordinator.aclose()
        closer = getattr(self._generator, "aclose", None)
        if callable(closer):
            result = closer()
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------
    # Memory surface
    # ------------------------------------------------------------------
    def get_document(self, name: str) -> str:
        return self.memory.get(name)

    def reset_memory(self) -> None:
        self._coordinator.reset()
        self.memory.reset()
        self._saw_narrative_feedback = False
        self._saw_entity_edit_feedback = False
        self._ledger.notify_listeners()
        emit("feedback.memory_reset", {"key": self.memory.key})

    def export_memory(self) -> dict[str, Any]:
        return self.memory.export()

    def import_memory(self, data: Mapping[str, Any] | str) -> None:
        self.memory.import_data(data)
        self._ledger.notify_listeners()

    def memory_json(self) -> str:
        return self.memory.to_json()

    @staticmethod
    def guidance_for(call_type: str | None) -> str:
        return prompts.guidance_for(call_type)

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------
    async def _run_task(self, task: FeedbackTask) -> None:
        if task.type in _CALL_FEEDBACK_TYPES:
            await self._run_call_feedback(task)
        elif task.type == TaskType.UPDATE_GENERAL_MEMORY.value:
            await self._run_synthesis(task)
        elif task.type == TaskType.FINAL_REPORT.value:
            await self._run_final_report(task)
        else:
            await self._update_document(task, document_for_task(task.type))

    async def _run_call_feedback(self, task: FeedbackTask) -> None:
        payload = task.payload
        call_id = str(payload.get("call_id", ""))
        call_type = str(payload.get("call_type", ""))
        if call_type in self._config.skip_feedback_call_types:
            LOGGER.debug("Skipping feedback for %s call %s", call_type, call_id)
            return
        prompt = prompts.call_feedback_prompt(
            call_type=call_type,
            prompt=str(payload.get("prompt", "")),
            response=str(payload.get("response", "")),
            personality=self._personality(),
            chat_history=payload.get(HISTORY_CONTEXT_KEY),
        )
        feedback = (await self._generate(prompt, task.type)).strip()
        if not feedback:
            LOGGER.warning("Empty feedback generated for call %s", call_id)
            return
        if self._ledger.set_feedback(call_id, feedback):
            self._coordinator.note_feedback(call_type)
        if task.type == TaskType.CHAT_TEXT_FEEDBACK.value:
            await self._update_document(task, CHAT_TEXT)
            self._saw_narrative_feedback = True
        elif call_type in ENTITY_EDIT_CALL_TYPES:
            self._saw_entity_edit_feedback = True
        self._maybe_request_final_report()

    async def _update_document(self, task: FeedbackTask, document_name: str) -> None:
        observation = {key: value for key, value in task.payload.items() if key != HISTORY_CONTEXT_KEY}
        prompt = prompts.document_update_prompt(
            task_type=task.type,
            document_name=document_name,
            document=self.memory.get(document_name),
            payload_json=serialize_payload(observation, limit=self._config.truncate_length),
            chat_history=_history_from(task),
            personality=self._personality(),
            limit=self._config.document_prompt_limit,
        )
        result = await self._generate(prompt, task.type)
        self._apply_document_result(document_name, result)

    def _apply_document_result(self, document_name: str, result: str) -> None:
        current = self.memory.get(document_name)
        update = prompts.parse_memory_update(result)
        if update is not None:
            updated = apply_field_update(current, update)
            text = updated if isinstance(updated, str) else str(updated or "")
        else:
            text = (result or "").strip()
        if not text.strip():
            LOGGER.warning("Generator returned an empty %s document; keeping the previous text", document_name)
            return
        self.memory.set(document_name, text)
        emit("feedback.document_updated", {"document": document_name, "length": len(text)})

    async def _run_synthesis(self, task: FeedbackTask) -> None:
        payload = task.payload
        general = self.memory.get(GENERAL_MEMORY)
        if payload.get("reason") == CHAT_RESET_EVENT:
            prompt = prompts.chat_reset_prompt(
                general,
                _history_from(task) or "",
                limit=self._config.document_prompt_limit,
            )
        else:
            documents = {
                GENERAL_MEMORY: general,
                CHAT_TEXT: self.memory.get(CHAT_TEXT),
                NODE_EDITION: self.memory.get(NODE_EDITION),
                ASSISTANT_FEEDBACK: self.memory.get(ASSISTANT_FEEDBACK),
                NODE_EDIT: self.memory.get(NODE_EDIT),
            }
            report = payload.get("report")
            if report:
                documents["Latest report"] = str(report)
            recent = [
                {"call_type": record.call_type, "feedback": record.feedback or ""}
                for record in self._ledger.recent_feedback(self._config.synthesis_recent_feedback)
            ]
            prompt = prompts.synthesis_prompt(
                documents,
                recent,
                limit=self._config.document_prompt_limit,
                cap=self._config.general_memory_cap,
            )
        result = (await self._generate(prompt, task.type)).strip()
        if not result:
            LOGGER.warning("Synthesis produced no text; general memory unchanged")
            return
        self.memory.set(GENERAL_MEMORY, result[: self._config.general_memory_cap])
        emit("feedback.document_updated", {"document": GENERAL_MEMORY, "length": len(self.memory.get(GENERAL_MEMORY))})

    async def _run_final_report(self, task: FeedbackTask) -> None:
        payload = task.payload
        prompt = prompts.final_report_prompt(
            general_memory=self.memory.get(GENERAL_MEMORY),
            chat_text=self.memory.get(CHAT_TEXT),
            node_edition=self.memory.get(NODE_EDITION),
            chat_history=_history_from(task),
            personality=self._personality(),
            previous_report=payload.get("previous_report"),
            previous_report_age=int(payload.get("previous_report_age") or 0),
            limit=self._config.document_prompt_limit,
        )
        report = prompts.format_report(await self._generate(prompt, task.type))
        if not report:
            LOGGER.warning("Final report generation returned no text; nothing delivered")
            return
        await self._deliver({"role": REPORT_ROLE, "content": report})
        emit("feedback.report_delivered", {"task_id": task.id, "length": len(report)})
        self._coordinator.add_task_later(
            self._config.report_followup_delay,
            TaskType.UPDATE_GENERAL_MEMORY.value,
            {"reason": "final_report", "report": truncate(report, self._config.truncate_length)},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _generate(self, prompt: str, task_type: str) -> str:
        result = await self._generator.generate(prompt, internal_call_type(task_type))
        return "" if result is None else str(result)

    async def _deliver(self, message: Mapping[str, Any]) -> None:
        if self._message_sink is None:
            LOGGER.info("Final report ready but no message sink is attached")
            return
        result = self._message_sink.deliver(message)
        if inspect.isawaitable(result):
            await result

    def _maybe_request_final_report(self) -> None:
        if not self._config.auto_final_report:
            return
        if not (self._saw_narrative_feedback and self._saw_entity_edit_feedback):
            return
        self._saw_narrative_feedback = False
        self._saw_entity_edit_feedback = False
        if any(task.type == TaskType.FINAL_REPORT.value for task in self._coordinator.pending()):
            LOGGER.debug("Final report already queued; not requesting another")
            return
        history = None
        if self._chat_history_source is not None:
            try:
                history = list(self._chat_history_source())
            except Exception:
                LOGGER.exception("Chat history source failed; requesting report without history")
        self.add_task(TaskType.FINAL_REPORT, {"reason": "auto"}, history)

    def _personality(self) -> str:
        if self._entity_source is None:
            return prompts.personality_context(())
        try:
            entities = self._entity_source.list_entities()
        except Exception:
            LOGGER.exception("Entity source failed; continuing without personality context")
            entities = ()
        return prompts.personality_context(entities)

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save()


def _history_from(task: FeedbackTask) -> str | None:
    value = task.payload.get(HISTORY_CONTEXT_KEY)
    return str(value) if value else None


__all__ = ["ChatHistorySource", "FeedbackEngine"]
