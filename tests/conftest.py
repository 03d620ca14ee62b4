"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from storywatch.services import telemetry
from storywatch.services.storage import InMemorySlot


@pytest.fixture
def slot() -> InMemorySlot:
    return InMemorySlot()


@pytest.fixture
def telemetry_events(monkeypatch: pytest.MonkeyPatch) -> list[dict]:
    """Capture every telemetry event emitted during a test."""

    captured: list[dict] = []
    monkeypatch.setattr(telemetry, "_EVENT_LISTENERS", {})
    original_emit = telemetry.emit

    def _capture(event_name: str, payload=None) -> None:
        captured.append({"event": event_name, **dict(payload or {})})
        original_emit(event_name, payload)

    monkeypatch.setattr("storywatch.feedback.coordinator.emit", _capture)
    monkeypatch.setattr("storywatch.feedback.engine.emit", _capture)
    return captured
