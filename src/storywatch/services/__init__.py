"""Service layer helpers (settings, storage slots, telemetry)."""

from .settings import SecretVault, Settings, SettingsStore, redact_secret
from .storage import InMemorySlot, JsonFileSlot
from .telemetry import emit, register_event_listener, unregister_event_listener

__all__ = [
    "InMemorySlot",
    "JsonFileSlot",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "emit",
    "redact_secret",
    "register_event_listener",
    "unregister_event_listener",
]
