"""Factory wiring settings, storage, logging and the OpenAI generator into an engine."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

from .feedback.engine import ChatHistorySource, FeedbackEngine
from .feedback.generator import GeneratorSettings, OpenAIFeedbackGenerator
from .feedback.types import EntitySource, FeedbackGenerator, MessageSink
from .services.settings import Settings, SettingsStore
from .services.storage import JsonFileSlot
from .utils.logging import setup_logging

LOGGER = logging.getLogger(__name__)


def create_engine(
    settings: Settings | None = None,
    *,
    settings_path: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    entity_source: EntitySource | None = None,
    message_sink: MessageSink | None = None,
    chat_history_source: ChatHistorySource | None = None,
    generator: FeedbackGenerator | None = None,
    configure_logging: bool = False,
) -> FeedbackEngine:
    """Build a :class:`FeedbackEngine` from persisted settings.

    Memory is stored in ``settings.memory_path`` (or the default slot file).
    A generator may be injected; otherwise an OpenAI-backed one is created.
    """

    if settings is None:
        settings = SettingsStore(settings_path).load(overrides=overrides)
    if configure_logging:
        setup_logging(logging.DEBUG if settings.debug_logging else logging.INFO)
    if generator is None:
        generator = OpenAIFeedbackGenerator(GeneratorSettings.from_settings(settings))
    slot = JsonFileSlot(settings.memory_path)
    LOGGER.debug("Feedback engine memory stored at %s", slot.path)
    return FeedbackEngine(
        generator=generator,
        entity_source=entity_source,
        message_sink=message_sink,
        slot=slot,
        chat_history_source=chat_history_source,
        config=settings.feedback,
    )


__all__ = ["create_engine"]
