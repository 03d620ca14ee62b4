"""Logging setup for hosts embedding the feedback engine.

Besides the rotating log file, feedback telemetry events can be mirrored into
the ``storywatch.events`` logger so each task's lifecycle is visible in the log.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Iterable

from ..services.telemetry import register_event_listener, unregister_event_listener

__all__ = [
    "FEEDBACK_EVENTS",
    "get_log_path",
    "mirror_feedback_events",
    "setup_logging",
    "stop_mirroring_feedback_events",
]

FEEDBACK_EVENTS: tuple[str, ...] = (
    "feedback.task_queued",
    "feedback.task_started",
    "feedback.task_completed",
    "feedback.task_failed",
    "feedback.document_updated",
    "feedback.report_delivered",
    "feedback.memory_reset",
)

_LOG_DIR_ENV = "STORYWATCH_LOG_DIR"
_LOG_FILENAME = "storywatch.log"
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_EVENT_LOGGER = logging.getLogger("storywatch.events")
_LOG_PATH: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    mirror_events: bool = True,
    force: bool = False,
) -> Path:
    """Send engine logs to ``storywatch.log`` (rotated) and optionally the console.

    Calling again without ``force`` keeps the first configuration.
    """

    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    directory = Path(log_dir or os.environ.get(_LOG_DIR_ENV) or Path.home() / ".storywatch" / "logs").expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / _LOG_FILENAME

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)

    # Third-party clients never log below WARNING.
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if mirror_events:
        mirror_feedback_events()
    else:
        stop_mirroring_feedback_events()

    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def mirror_feedback_events(events: Iterable[str] = FEEDBACK_EVENTS) -> None:
    """Log every telemetry event in *events* through ``storywatch.events``."""

    for name in events:
        register_event_listener(name, _log_event)


def stop_mirroring_feedback_events(events: Iterable[str] = FEEDBACK_EVENTS) -> None:
    for name in events:
        unregister_event_listener(name, _log_event)


def _log_event(payload: dict[str, Any]) -> None:
    event = str(payload.get("event", "feedback.unknown"))
    details = " ".join(f"{key}={value}" for key, value in sorted(payload.items()) if key != "event")
    level = logging.WARNING if event.endswith("_failed") else logging.INFO
    _EVENT_LOGGER.log(level, "%s %s", event, details)
