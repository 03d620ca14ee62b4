"""Utility helpers shared across the feedback engine."""

from .logging import FEEDBACK_EVENTS, get_log_path, mirror_feedback_events, setup_logging, stop_mirroring_feedback_events

__all__ = [
    "FEEDBACK_EVENTS",
    "get_log_path",
    "mirror_feedback_events",
    "setup_logging",
    "stop_mirroring_feedback_events",
]
