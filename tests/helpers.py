"""Shared test helpers and stub collaborators for the feedback engine tests."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Mapping, Sequence

from storywatch.feedback.types import FeedbackConfig


def fast_config(**overrides: Any) -> FeedbackConfig:
    """Config with no debounce or report delay so tests settle quickly."""

    values: dict[str, Any] = {"debounce_seconds": 0.0, "report_followup_delay": 0.0}
    values.update(overrides)
    return FeedbackConfig(**values)


class StubGenerator:
    """Records every prompt and returns canned text.

    ``responder`` receives ``(prompt, hint)`` and returns the text to yield.
    Hints listed in ``failures`` raise ``RuntimeError``. A hint mapped in
    ``gates`` waits on that event before answering.
    """

    def __init__(
        self,
        responder: Callable[[str, str | None], str] | None = None,
        *,
        failures: Sequence[str] = (),
        gates: Mapping[str, asyncio.Event] | None = None,
    ) -> None:
        self.calls: list[tuple[str, str | None]] = []
        self._responder = responder or (lambda prompt, hint: f"critique for {hint}")
        self._failures = set(failures)
        self._gates = dict(gates or {})

    async def generate(self, prompt: str, call_type_hint: str | None = None) -> str:
        self.calls.append((prompt, call_type_hint))
        gate = self._gates.get(call_type_hint or "")
        if gate is not None:
            await gate.wait()
        await asyncio.sleep(0)
        if call_type_hint in self._failures:
            raise RuntimeError(f"generator failed for {call_type_hint}")
        return self._responder(prompt, call_type_hint)

    def hints(self) -> list[str | None]:
        return [hint for _, hint in self.calls]


class RecordingSink:
    def __init__(self) -> None:
        self.messages: list[Mapping[str, Any]] = []

    def deliver(self, message: Mapping[str, Any]) -> None:
        self.messages.append(dict(message))


class StaticEntities:
    def __init__(self, entities: Sequence[Mapping[str, Any]] | None = None) -> None:
        self.entities = list(entities or [])

    def list_entities(self) -> Sequence[Mapping[str, Any]]:
        return list(self.entities)


class FakeClock:
    """Monotonic clock advancing by ``step`` seconds per call."""

    def __init__(self, start: float = 1_000.0, step: float = 1.0) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now
