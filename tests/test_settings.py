"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import pytest

from storywatch.feedback.types import FeedbackConfig
from storywatch.services.settings import SecretVault, Settings, SettingsStore, redact_secret


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "STORYWATCH_API_KEY",
        "STORYWATCH_BASE_URL",
        "STORYWATCH_MODEL",
        "STORYWATCH_ORGANIZATION",
        "STORYWATCH_MEMORY_PATH",
        "STORYWATCH_DEBUG_LOGGING",
        "STORYWATCH_REQUEST_TIMEOUT",
        "STORYWATCH_TEMPERATURE",
        "STORYWATCH_MAX_RETRIES",
    ):
        monkeypatch.delenv(name, raising=False)


def _store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "settings.key"))


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    assert _store(tmp_path).load() == Settings()


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    original = Settings(
        base_url="https://example.com/v1",
        api_key="super-secret",
        model="critic-large",
        organization="acme",
        default_headers={"X-Test": "1"},
        memory_path=str(tmp_path / "memory.json"),
        feedback=FeedbackConfig(ledger_capacity=20, skip_feedback_call_types=("node_sort",)),
    )

    store.save(original)
    reloaded = _store(tmp_path).load()

    assert reloaded == original


def test_api_key_is_encrypted_on_disk(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(Settings(api_key="super-secret"))

    raw = json.loads(store.path.read_text(encoding="utf-8"))

    assert "api_key" not in raw
    assert raw["api_key_ciphertext"].startswith("fernet:")
    assert "super-secret" not in store.path.read_text(encoding="utf-8")
    assert raw["version"] == 1


def test_load_legacy_plaintext_api_key_migrates(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.path.write_text(json.dumps({"base_url": "https://old", "api_key": "plain-key"}), encoding="utf-8")

    loaded = store.load()

    assert loaded.api_key == "plain-key"
    assert loaded.base_url == "https://old"
    raw = json.loads(store.path.read_text(encoding="utf-8"))
    assert "api_key" not in raw
    assert raw["api_key_ciphertext"].startswith("fernet:")


def test_undecryptable_key_is_dropped(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.path.write_text(
        json.dumps({"api_key_ciphertext": "fernet:not-a-token", "model": "m", "version": 1}),
        encoding="utf-8",
    )

    loaded = store.load()

    assert loaded.api_key == ""
    assert loaded.model == "m"


def test_invalid_json_falls_back_to_defaults(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    store = _store(tmp_path)
    store.path.write_text("{not json", encoding="utf-8")

    with caplog.at_level("WARNING"):
        loaded = store.load()

    assert loaded == Settings()
    assert "not valid JSON" in caplog.text


def test_unknown_fields_are_ignored(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.path.write_text(
        json.dumps({"model": "m", "theme": "dark", "feedback": {"history_turns": 3, "unknown": 1}, "version": 1}),
        encoding="utf-8",
    )

    loaded = store.load()

    assert loaded.model == "m"
    assert loaded.feedback.history_turns == 3


def test_feedback_config_is_clamped(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.path.write_text(
        json.dumps({"feedback": {"ledger_capacity": 0, "synthesis_interval": -4, "debounce_seconds": -1}, "version": 1}),
        encoding="utf-8",
    )

    feedback = store.load().feedback

    assert feedback.ledger_capacity == 1
    assert feedback.synthesis_interval == 1
    assert feedback.debounce_seconds == 0.0


def test_env_overrides_take_precedence(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(Settings(base_url="https://local", api_key="abc"))
    monkeypatch.setenv("STORYWATCH_BASE_URL", "https://env-base")
    monkeypatch.setenv("STORYWATCH_API_KEY", "env-key")
    monkeypatch.setenv("STORYWATCH_DEBUG_LOGGING", "yes")
    monkeypatch.setenv("STORYWATCH_MAX_RETRIES", "7")
    monkeypatch.setenv("STORYWATCH_TEMPERATURE", "warm")

    overridden = _store(tmp_path).load()

    assert overridden.base_url == "https://env-base"
    assert overridden.api_key == "env-key"
    assert overridden.debug_logging is True
    assert overridden.max_retries == 7
    assert overridden.temperature == 0.3


def test_runtime_overrides_merge_feedback_settings(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(replace(Settings(), feedback=FeedbackConfig(history_turns=4)))

    loaded = store.load(overrides={"model": "override", "feedback": {"ledger_capacity": 9}, "bogus": True})

    assert loaded.model == "override"
    assert loaded.feedback.ledger_capacity == 9
    assert loaded.feedback.history_turns == 4


def test_vault_rejects_foreign_tokens(tmp_path: Path) -> None:
    vault = SecretVault(key_path=tmp_path / "a.key")
    other = SecretVault(key_path=tmp_path / "b.key")
    token = vault.encrypt("secret")

    assert vault.decrypt(token) == "secret"
    with pytest.raises(ValueError):
        other.decrypt(token)
    assert vault.encrypt("") == ""


def test_redact_secret() -> None:
    assert redact_secret("") == ""
    assert redact_secret("abcd") == "****"
    assert redact_secret("sk-123456") == "sk*****56"
