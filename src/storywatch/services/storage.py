"""Durable key/value slots used to persist the feedback memory blob."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

__all__ = ["InMemorySlot", "JsonFileSlot"]

LOGGER = logging.getLogger(__name__)
_DEFAULT_SLOT_PATH = Path.home() / ".storywatch" / "memory.json"


class InMemorySlot:
    """Process-local slot, handy for tests and ephemeral engines."""

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def remove(self, key: str) -> None:
        self._values.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._values


class JsonFileSlot:
    """Slot backed by a JSON object on disk, rewritten atomically on every change."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path).expanduser() if path else _DEFAULT_SLOT_PATH

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> str | None:
        value = self._read_payload().get(key)
        if value is None:
            return None
        return value if isinstance(value, str) else json.dumps(value)

    def set(self, key: str, value: str) -> None:
        payload = self._read_payload()
        payload[key] = value
        self._write_payload(payload)

    def remove(self, key: str) -> None:
        payload = self._read_payload()
        if key not in payload:
            return
        payload.pop(key)
        self._write_payload(payload)

    def _write_payload(self, payload: Mapping[str, Any]) -> None:
        body = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)

    def _read_payload(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if isinstance(data, Mapping):
                return dict(data)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Memory slot file %s is not valid JSON: %s", self._path, exc)
        return {}
