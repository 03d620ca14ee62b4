"""In-process telemetry bus for feedback engine events."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

__all__ = ["emit", "register_event_listener", "unregister_event_listener"]

LOGGER = logging.getLogger(__name__)

EventListener = Callable[[dict[str, Any]], None]

_EVENT_LISTENERS: dict[str, list[EventListener]] = {}


def register_event_listener(event_name: str, callback: EventListener) -> None:
    """Register a callback invoked whenever :func:`emit` fires *event_name*."""

    if not event_name or callback is None:
        return
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: EventListener) -> None:
    listeners = _EVENT_LISTENERS.get(event_name)
    if not listeners:
        return
    if callback in listeners:
        listeners.remove(callback)
    if not listeners:
        _EVENT_LISTENERS.pop(event_name, None)


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload: dict[str, Any] = {"event": event_name}
    if payload:
        event_payload.update(payload)
    for callback in list(_EVENT_LISTENERS.get(event_name, ())):
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)
