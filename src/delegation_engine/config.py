"""Runtime configuration for the delegation engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from delegation_engine.delegation.errors import PolicyViolationError
from delegation_engine.delegation.models import PoolConfig


@dataclass(slots=True)
class StorageSettings:
    """SQLite connection policy."""

    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class PoolDefaults:
    """Policy applied to pools created on first use."""

    warm_pool_size: int = 1
    max_pool_size: int = 3
    context_threshold_percent: int = 80
    auto_delegate_enabled: bool = True
    skip_user_required: bool = True

    def to_pool_config(self) -> PoolConfig:
        return PoolConfig(
            warm_pool_size=self.warm_pool_size,
            max_pool_size=self.max_pool_size,
            context_threshold_percent=self.context_threshold_percent,
            auto_delegate_enabled=self.auto_delegate_enabled,
            skip_user_required=self.skip_user_required,
        )


@dataclass(slots=True)
class CoordinatorSettings:
    """Auto-delegation pass settings."""

    batch_limit: int = 10
    handoff_pending_task_limit: int = 5
    optimal_session_buffer_percent: int = 20
    mutate_max_attempts: int = 3


@dataclass(slots=True)
class EventSettings:
    """Event sink selection and redelivery sizing."""

    sink: str = "logging"
    buffer_size: int = 1_000
    redeliver_batch_size: int = 100


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".delegation_engine.db")
    log_level: str = "WARNING"
    storage: StorageSettings = field(default_factory=StorageSettings)
    pool_defaults: PoolDefaults = field(default_factory=PoolDefaults)
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    events: EventSettings = field(default_factory=EventSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("DELEGATION_ENGINE_DB_PATH", ".delegation_engine.db")),
            log_level=os.getenv("DELEGATION_ENGINE_LOG_LEVEL", "WARNING").strip().upper(),
            storage=StorageSettings(
                busy_timeout_ms=int(os.getenv("DELEGATION_ENGINE_BUSY_TIMEOUT_MS", "5000")),
            ),
            pool_defaults=PoolDefaults(
                warm_pool_size=int(os.getenv("DELEGATION_ENGINE_WARM_POOL_SIZE", "1")),
                max_pool_size=int(os.getenv("DELEGATION_ENGINE_MAX_POOL_SIZE", "3")),
                context_threshold_percent=int(
                    os.getenv("DELEGATION_ENGINE_CONTEXT_THRESHOLD_PERCENT", "80"),
                ),
                auto_delegate_enabled=_env_bool(
                    "DELEGATION_ENGINE_AUTO_DELEGATE_ENABLED",
                    default=True,
                ),
                skip_user_required=_env_bool(
                    "DELEGATION_ENGINE_SKIP_USER_REQUIRED",
                    default=True,
                ),
            ),
            coordinator=CoordinatorSettings(
                batch_limit=int(os.getenv("DELEGATION_ENGINE_BATCH_LIMIT", "10")),
                handoff_pending_task_limit=int(
                    os.getenv("DELEGATION_ENGINE_HANDOFF_PENDING_TASK_LIMIT", "5"),
                ),
                optimal_session_buffer_percent=int(
                    os.getenv("DELEGATION_ENGINE_OPTIMAL_SESSION_BUFFER_PERCENT", "20"),
                ),
                mutate_max_attempts=int(os.getenv("DELEGATION_ENGINE_MUTATE_MAX_ATTEMPTS", "3")),
            ),
            events=EventSettings(
                sink=os.getenv("DELEGATION_ENGINE_EVENT_SINK", "logging").strip().lower(),
                buffer_size=int(os.getenv("DELEGATION_ENGINE_EVENT_BUFFER_SIZE", "1000")),
                redeliver_batch_size=int(
                    os.getenv("DELEGATION_ENGINE_EVENT_REDELIVER_BATCH_SIZE", "100"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if self.storage.busy_timeout_ms <= 0:
            raise ValueError("DELEGATION_ENGINE_BUSY_TIMEOUT_MS must be > 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid DELEGATION_ENGINE_LOG_LEVEL: {self.log_level!r}")
        try:
            self.pool_defaults.to_pool_config().validate()
        except PolicyViolationError as error:
            raise ValueError(f"Invalid pool defaults: {error}") from error
        if self.coordinator.batch_limit <= 0:
            raise ValueError("DELEGATION_ENGINE_BATCH_LIMIT must be > 0.")
        if self.coordinator.handoff_pending_task_limit < 0:
            raise ValueError("DELEGATION_ENGINE_HANDOFF_PENDING_TASK_LIMIT must be >= 0.")
        if not 0 <= self.coordinator.optimal_session_buffer_percent < 100:
            raise ValueError(
                "DELEGATION_ENGINE_OPTIMAL_SESSION_BUFFER_PERCENT must be in [0, 100).",
            )
        if self.coordinator.mutate_max_attempts <= 0:
            raise ValueError("DELEGATION_ENGINE_MUTATE_MAX_ATTEMPTS must be > 0.")
        if self.events.sink not in {"logging", "memory", "null"}:
            raise ValueError(
                "DELEGATION_ENGINE_EVENT_SINK must be one of logging, memory, null; "
                f"got {self.events.sink!r}.",
            )
        if self.events.buffer_size <= 0:
            raise ValueError("DELEGATION_ENGINE_EVENT_BUFFER_SIZE must be > 0.")
        if self.events.redeliver_batch_size <= 0:
            raise ValueError("DELEGATION_ENGINE_EVENT_REDELIVER_BATCH_SIZE must be > 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
