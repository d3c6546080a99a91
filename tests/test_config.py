from dataclasses import replace
from pathlib import Path

import allure
import pytest

from delegation_engine.config import EventSettings, PoolDefaults, Settings
from delegation_engine.delegation.engine import build_event_sink
from delegation_engine.delegation.events import (
    InMemoryEventSink,
    LoggingEventSink,
    NullEventSink,
)

pytestmark = [
    allure.epic("Delegation Engine"),
    allure.feature("Configuration"),
]


def test_settings_defaults_without_environment() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".delegation_engine.db")
    assert settings.log_level == "WARNING"
    assert settings.storage.busy_timeout_ms == 5000
    assert settings.pool_defaults == PoolDefaults()
    assert settings.coordinator.batch_limit == 10
    assert settings.coordinator.optimal_session_buffer_percent == 20
    assert settings.events.sink == "logging"
    settings.validate()


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DELEGATION_ENGINE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("DELEGATION_ENGINE_LOG_LEVEL", "debug")
    monkeypatch.setenv("DELEGATION_ENGINE_WARM_POOL_SIZE", "2")
    monkeypatch.setenv("DELEGATION_ENGINE_MAX_POOL_SIZE", "6")
    monkeypatch.setenv("DELEGATION_ENGINE_CONTEXT_THRESHOLD_PERCENT", "70")
    monkeypatch.setenv("DELEGATION_ENGINE_AUTO_DELEGATE_ENABLED", "off")
    monkeypatch.setenv("DELEGATION_ENGINE_SKIP_USER_REQUIRED", "no")
    monkeypatch.setenv("DELEGATION_ENGINE_BATCH_LIMIT", "25")
    monkeypatch.setenv("DELEGATION_ENGINE_EVENT_SINK", " Memory ")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.log_level == "DEBUG"
    assert settings.pool_defaults.warm_pool_size == 2
    assert settings.pool_defaults.max_pool_size == 6
    assert settings.pool_defaults.context_threshold_percent == 70
    assert settings.pool_defaults.auto_delegate_enabled is False
    assert settings.pool_defaults.skip_user_required is False
    assert settings.coordinator.batch_limit == 25
    assert settings.events.sink == "memory"
    settings.validate()


def test_explicit_db_path_wins_over_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("DELEGATION_ENGINE_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DELEGATION_ENGINE_AUTO_DELEGATE_ENABLED", "maybe")

    with pytest.raises(ValueError, match="DELEGATION_ENGINE_AUTO_DELEGATE_ENABLED"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("change", "message"),
    [
        ({"log_level": "LOUD"}, "DELEGATION_ENGINE_LOG_LEVEL"),
        ({"events": EventSettings(sink="kafka")}, "DELEGATION_ENGINE_EVENT_SINK"),
        ({"pool_defaults": PoolDefaults(warm_pool_size=0)}, "Invalid pool defaults"),
        ({"pool_defaults": PoolDefaults(warm_pool_size=4, max_pool_size=2)}, "max_pool_size"),
        ({"pool_defaults": PoolDefaults(context_threshold_percent=99)}, "context_threshold"),
    ],
)
def test_validate_rejects_unusable_values(change: dict, message: str) -> None:
    settings = replace(Settings(), **change)

    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_build_event_sink_follows_settings() -> None:
    assert isinstance(build_event_sink(EventSettings(sink="logging")), LoggingEventSink)
    assert isinstance(build_event_sink(EventSettings(sink="null")), NullEventSink)
    memory = build_event_sink(EventSettings(sink="memory", buffer_size=5))
    assert isinstance(memory, InMemoryEventSink)
