from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any

import pytest

from storywatch.feedback.engine import FeedbackEngine
from storywatch.feedback.generator import GeneratorSettings, OpenAIFeedbackGenerator
from storywatch.feedback.memory import DEFAULT_DOCUMENTS, DEFAULT_MEMORY_KEY
from storywatch.feedback.types import CallStatus, TaskType
from storywatch.services.storage import InMemorySlot, JsonFileSlot

from tests.helpers import RecordingSink, StaticEntities, StubGenerator, fast_config


def _engine(generator: StubGenerator | None = None, **kwargs: Any) -> FeedbackEngine:
    config = kwargs.pop("config", None) or fast_config(auto_final_report=False)
    return FeedbackEngine(
        generator=generator or StubGenerator(),
        slot=kwargs.pop("slot", None) or InMemorySlot(),
        config=config,
        **kwargs,
    )


async def _settle(engine: FeedbackEngine) -> None:
    await asyncio.wait_for(engine.join(), timeout=3.0)


def _queued(events: list[dict]) -> list[str]:
    return [event["task_type"] for event in events if event["event"] == "feedback.task_queued"]


@pytest.mark.asyncio
async def test_completed_narrative_call_enqueues_one_chat_text_task() -> None:
    engine = _engine()

    engine.initiate("c1", "chat_text_generation", "model-x", "prompt")
    engine.finalize("c1", "response")

    record = engine.ledger.get("c1")
    assert record.status is CallStatus.COMPLETED
    assert record.duration >= 0
    assert [task.type for task in engine.coordinator.pending()] == ["chatTextFeedback"]
    await engine.aclose()


@pytest.mark.asyncio
async def test_chat_text_feedback_writes_record_and_document() -> None:
    generator = StubGenerator()
    engine = _engine(generator)

    engine.initiate("c1", "chat_text_generation", "model-x", "Write the next scene")
    engine.finalize("c1", "The rain kept falling.")
    await _settle(engine)

    assert engine.get_call_feedback("c1") == "critique for internal_feedback:chatTextFeedback"
    assert engine.get_document("chatText") == "critique for internal_feedback:chatTextFeedback"
    assert generator.hints() == ["internal_feedback:chatTextFeedback", "internal_feedback:chatTextFeedback"]
    critique_prompt = generator.calls[0][0]
    assert "Write the next scene" in critique_prompt
    assert "The rain kept falling." in critique_prompt


@pytest.mark.asyncio
async def test_five_feedback_completions_schedule_one_synthesis(telemetry_events: list[dict]) -> None:
    engine = _engine()

    for index in range(5):
        engine.initiate(f"c{index}", "node_sort", "m", "p")
        engine.finalize(f"c{index}", "r")
    await _settle(engine)
    assert _queued(telemetry_events).count("updateGeneralMemory") == 1

    for index in range(5, 10):
        engine.initiate(f"c{index}", "node_sort", "m", "p")
        engine.finalize(f"c{index}", "r")
    await _settle(engine)
    assert _queued(telemetry_events).count("updateGeneralMemory") == 2
    assert engine.get_document("GeneralMemory") == "critique for internal_feedback:updateGeneralMemory"


@pytest.mark.asyncio
async def test_synthesis_prompt_includes_documents_and_recent_feedback() -> None:
    generator = StubGenerator(
        lambda prompt, hint: "Synthesized memory " + "x" * 6000 if hint.endswith("updateGeneralMemory") else "fb"
    )
    engine = _engine(generator)
    engine.memory.set("nodeEdit", "User renames characters often.")
    for index in range(5):
        engine.initiate(f"c{index}", "node_sort", "m", "p")
        engine.finalize(f"c{index}", "r")
    await _settle(engine)

    synthesis_prompts = [prompt for prompt, hint in generator.calls if hint.endswith("updateGeneralMemory")]
    assert len(synthesis_prompts) == 1
    assert "User renames characters often." in synthesis_prompts[0]
    assert "[node_sort] fb" in synthesis_prompts[0]
    general = engine.get_document("GeneralMemory")
    assert general.startswith("Synthesized memory")
    assert len(general) == engine.config.general_memory_cap


@pytest.mark.asyncio
async def test_feedback_calls_routed_through_ledger_never_recurse(telemetry_events: list[dict]) -> None:
    completions = SimpleNamespace(calls=[])

    async def _create(**payload: Any) -> Any:
        completions.calls.append(payload)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="Needs tighter pacing."))])

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=_create)))
    generator = OpenAIFeedbackGenerator(
        GeneratorSettings(base_url="https://example.test/v1", api_key="k", model="critic"),
        client=client,  # type: ignore[arg-type]
    )
    engine = FeedbackEngine(generator=generator, slot=InMemorySlot(), config=fast_config(auto_final_report=False))

    engine.initiate("c1", "chat_text_generation", "model-x", "prompt")
    engine.finalize("c1", "response")
    await _settle(engine)

    assert _queued(telemetry_events) == ["chatTextFeedback"]
    internal = [record for record in engine.get_ledger_snapshot() if record.call_type.startswith("internal_feedback:")]
    assert len(internal) == 2
    assert all(record.status is CallStatus.COMPLETED for record in internal)
    assert len(completions.calls) == 2
    assert engine.coordinator.feedback_count == 1


@pytest.mark.asyncio
async def test_document_update_uses_personality_history_and_bounded_payload() -> None:
    generator = StubGenerator(lambda prompt, hint: "Assistant was too eager.")
    entities = StaticEntities(
        [
            {"id": "a1", "name": "Aria", "longDescription": "A dry-witted narrator.", "type": "assistant"},
            {"id": "c1", "name": "Bram", "longDescription": "A smith.", "type": "character"},
        ]
    )
    engine = _engine(generator, entity_source=entities)
    history = [
        {"role": "user", "content": "Describe the forge"},
        {"role": "system", "content": "hidden system chatter"},
        {"role": "assistant", "content": "Sparks fly."},
    ]

    engine.add_task(
        "assistantFeedback",
        {"reply": "Sparks fly.", "image": "data:image/png;base64,AAAA", "notes": "n" * 6000},
        history,
    )
    await _settle(engine)

    prompt = generator.calls[0][0]
    assert "Name: Aria\nDescription: A dry-witted narrator." in prompt
    assert "Bram" not in prompt
    assert "user: Describe the forge" in prompt
    assert "hidden system chatter" not in prompt
    assert "data:image/png" not in prompt
    assert "n" * 5000 + "... [truncated]" in prompt
    assert engine.get_document("assistantFeedback") == "Assistant was too eager."


@pytest.mark.asyncio
async def test_memory_update_diffs_are_applied_to_document() -> None:
    reply = json.dumps(
        {"memory_update_diffs": {"df": [{"prev_txt": "No manual edits", "next_txt": "Manual edits"}]}}
    )
    engine = _engine(StubGenerator(lambda prompt, hint: f"```json\n{reply}\n```"))

    engine.record_entity_edit(
        {"id": "n1", "name": "Mira", "longDescription": "Scout", "image": "x"},
        {"id": "n1", "name": "Mira Vale", "longDescription": "Scout", "image": "y"},
        "renamed",
    )
    await _settle(engine)

    assert engine.get_document("nodeEdit") == DEFAULT_DOCUMENTS["nodeEdit"].replace("No manual edits", "Manual edits")


@pytest.mark.asyncio
async def test_story_feedback_targets_node_edition() -> None:
    engine = _engine(StubGenerator(lambda prompt, hint: "Entity edits lose rules."))

    engine.add_task("storyFeedback", {"entities": [{"id": "n1", "rules": "no magic"}]})
    await _settle(engine)

    assert engine.get_document("nodeEdition") == "Entity edits lose rules."


@pytest.mark.asyncio
async def test_final_report_is_delivered_once_then_folded_back() -> None:
    def responder(prompt: str, hint: str | None) -> str:
        if hint == "internal_feedback:finalReport":
            return "## Pacing\n\nThe middle chapters drag."
        return "memory"

    generator = StubGenerator(responder)
    sink = RecordingSink()
    engine = _engine(generator, message_sink=sink)
    history = [
        {"role": "user", "content": "start"},
        {"role": "feedback", "content": "Earlier report text"},
        {"role": "user", "content": "continue"},
        {"role": "assistant", "content": "The road bends."},
    ]

    engine.add_task("finalReport", None, history)
    await _settle(engine)

    assert sink.messages == [{"role": "feedback", "content": "## Pacing\n\n- The middle chapters drag."}]
    assert generator.hints() == ["internal_feedback:finalReport", "internal_feedback:updateGeneralMemory"]
    report_prompt = generator.calls[0][0]
    assert "Previous report (2 messages ago)" in report_prompt
    assert "Earlier report text" in report_prompt
    synthesis_prompt = generator.calls[1][0]
    assert "The middle chapters drag." in synthesis_prompt


@pytest.mark.asyncio
async def test_async_message_sink_is_awaited() -> None:
    delivered: list[dict] = []

    class _AsyncSink:
        async def deliver(self, message: dict) -> None:
            await asyncio.sleep(0)
            delivered.append(message)

    engine = _engine(StubGenerator(lambda prompt, hint: "Report body."), message_sink=_AsyncSink())
    engine.add_task("finalReport")
    await _settle(engine)

    assert delivered == [{"role": "feedback", "content": "- Report body."}]


@pytest.mark.asyncio
async def test_skipped_call_types_are_not_critiqued() -> None:
    generator = StubGenerator()
    engine = _engine(generator)

    engine.initiate("img-1", "image_prompt_generation", "m", "draw a castle")
    engine.finalize("img-1", "castle, dusk, oil painting")
    await _settle(engine)

    assert generator.calls == []
    assert engine.get_call_feedback("img-1") is None


@pytest.mark.asyncio
async def test_generator_failure_drops_task_and_continues() -> None:
    generator = StubGenerator(failures=["internal_feedback:llmCallFeedback"])
    engine = _engine(generator)

    engine.initiate("c1", "node_sort", "m", "p")
    engine.finalize("c1", "r")
    engine.add_task("assistantFeedback", {"reply": "ok"})
    await _settle(engine)

    assert engine.get_call_feedback("c1") is None
    assert engine.get_document("assistantFeedback") == "critique for internal_feedback:assistantFeedback"


@pytest.mark.asyncio
async def test_auto_final_report_after_narrative_and_entity_feedback() -> None:
    sink = RecordingSink()
    history = [{"role": "user", "content": "go"}, {"role": "assistant", "content": "went"}]
    engine = _engine(
        StubGenerator(lambda prompt, hint: "Observation."),
        message_sink=sink,
        chat_history_source=lambda: history,
        config=fast_config(auto_final_report=True),
    )

    engine.initiate("c1", "chat_text_generation", "m", "p")
    engine.finalize("c1", "story text")
    engine.initiate("e1", "node_edition_json", "m", "p")
    engine.finalize("e1", '{"u_nodes": {}}')
    await _settle(engine)

    assert len(sink.messages) == 1


@pytest.mark.asyncio
async def test_auto_final_report_needs_both_kinds_of_feedback() -> None:
    sink = RecordingSink()
    engine = _engine(message_sink=sink, config=fast_config(auto_final_report=True))

    engine.initiate("c1", "chat_text_generation", "m", "p")
    engine.finalize("c1", "story text")
    engine.initiate("c2", "chat_text_generation", "m", "p")
    engine.finalize("c2", "more story text")
    await _settle(engine)

    assert sink.messages == []


@pytest.mark.asyncio
async def test_chat_reset_event_reflects_on_previous_history() -> None:
    generator = StubGenerator(lambda prompt, hint: "Reset lesson.")
    engine = _engine(generator)
    history = [{"role": "user", "content": "this story is boring"}, {"role": "assistant", "content": "Sorry."}]

    engine.record_external_event("reset-1", "Chat reset by user", "Conversation cleared", "chat_reset_event", history)
    await _settle(engine)

    reset_prompts = [prompt for prompt, hint in generator.calls if hint == "internal_feedback:updateGeneralMemory"]
    assert len(reset_prompts) == 1
    assert "cleared the conversation" in reset_prompts[0]
    assert "this story is boring" in reset_prompts[0]
    assert engine.get_document("GeneralMemory") == "Reset lesson."
    # System events receive feedback but do not count toward periodic synthesis.
    assert engine.get_call_feedback("reset-1") == "Reset lesson."
    assert engine.coordinator.feedback_count == 0


@pytest.mark.asyncio
async def test_reset_memory_clears_everything_and_notifies(slot: InMemorySlot) -> None:
    engine = _engine(slot=slot)
    snapshots: list[list] = []
    engine.subscribe(snapshots.append)
    engine.memory.set("chatText", "notes")
    engine.initiate("c1", "t", "m", "p")
    engine.add_task("assistantFeedback")

    engine.reset_memory()

    assert engine.coordinator.pending() == []
    assert engine.get_ledger_snapshot() == []
    assert engine.get_document("chatText") == DEFAULT_DOCUMENTS["chatText"]
    assert DEFAULT_MEMORY_KEY not in slot
    assert snapshots[-1] == []
    await _settle(engine)


@pytest.mark.asyncio
async def test_export_import_roundtrip_through_engine() -> None:
    engine = _engine()
    engine.initiate("c1", "node_sort", "m", "p")
    engine.finalize("c1", "r")
    await _settle(engine)
    exported = engine.export_memory()

    other = _engine()
    received: list[list] = []
    other.subscribe(received.append)
    other.import_memory(exported)

    assert other.export_memory() == exported
    assert [record.id for record in received[-1]] == ["c1"]
    assert json.loads(other.memory_json()) == exported


@pytest.mark.asyncio
async def test_memory_persists_across_engine_instances(tmp_path) -> None:
    path = tmp_path / "memory.json"
    first = _engine(StubGenerator(lambda prompt, hint: "Remember the lighthouse."), slot=JsonFileSlot(path))
    first.add_task("assistantFeedback", {"reply": "x"})
    await _settle(first)

    second = _engine(slot=JsonFileSlot(path))

    assert second.get_document("assistantFeedback") == "Remember the lighthouse."


@pytest.mark.asyncio
async def test_independent_engines_do_not_share_state() -> None:
    first = _engine()
    second = _engine()

    first.initiate("c1", "t", "m", "p")

    assert len(first.get_ledger_snapshot()) == 1
    assert second.get_ledger_snapshot() == []
    await first.aclose()
    await second.aclose()


def test_apply_diff_and_guidance_exposed_on_engine() -> None:
    assert FeedbackEngine.apply_diff("abcabc", [{"prev_txt": "abc", "next_txt": "X", "occ": 2}]) == "abcX"
    assert "entity edits" in FeedbackEngine.guidance_for("node_edition_json")
    assert FeedbackEngine.guidance_for("unknown") != FeedbackEngine.guidance_for("chat_text_generation")


def test_engine_requires_generator() -> None:
    with pytest.raises(ValueError):
        FeedbackEngine(generator=None)  # type: ignore[arg-type]


@pytest.mark.parametrize("start_time", ["not-a-number", "2024-05-01T10:00:00.000Z", [1]])
def test_engine_starts_from_memory_with_odd_ledger_timestamps(start_time: object) -> None:
    blob = {"GeneralMemory": "kept", "featureSpecificMemory": {"llmCalls": {"c1": {"start_time": start_time}}}}

    engine = _engine(slot=InMemorySlot({DEFAULT_MEMORY_KEY: json.dumps(blob)}))

    assert engine.get_document("GeneralMemory") == "kept"
    assert [record.id for record in engine.get_ledger_snapshot()] == ["c1"]


def test_import_memory_tolerates_odd_ledger_timestamps() -> None:
    engine = _engine()

    engine.import_memory(
        {"GeneralMemory": "imported", "featureSpecificMemory": {"llmCalls": {"c1": {"start_time": "x"}}}}
    )

    assert engine.get_document("GeneralMemory") == "imported"
    assert engine.get_ledger_snapshot()[0].start_time == 0.0


@pytest.mark.asyncio
async def test_enum_task_types_route_like_their_names() -> None:
    engine = _engine(StubGenerator(lambda prompt, hint: "Edits drop rules."))

    task = engine.coordinator.add_task(TaskType.STORY_FEEDBACK, {"entity": "n1"})
    await _settle(engine)

    assert task.type == "storyFeedback"
    assert engine.get_document("nodeEdition") == "Edits drop rules."
