"""Wires storage, the event outbox and the repositories into one engine."""

from __future__ import annotations

from types import TracebackType

from delegation_engine.config import EventSettings, Settings
from delegation_engine.delegation.coordinator import DelegationCoordinator
from delegation_engine.delegation.delegations import DelegationRepository
from delegation_engine.delegation.events import (
    EventOutbox,
    EventSink,
    InMemoryEventSink,
    LoggingEventSink,
    NullEventSink,
)
from delegation_engine.delegation.locks import KeyedLock
from delegation_engine.delegation.pools import PoolRepository
from delegation_engine.delegation.sessions import SessionRepository
from delegation_engine.delegation.work_items import WorkItemRepository
from delegation_engine.storage.database import Database


class DelegationEngine:
    """Entry point owning one database and every repository built on it."""

    def __init__(
        self,
        database: Database,
        *,
        sink: EventSink | None = None,
        settings: Settings | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        settings = settings if settings is not None else Settings(db_path=database.db_path)
        self.database = database
        self.settings = settings
        self.locks = locks if locks is not None else KeyedLock()
        self.outbox = EventOutbox(database, sink)
        self.pools = PoolRepository(
            database,
            self.outbox,
            defaults=settings.pool_defaults.to_pool_config(),
        )
        self.sessions = SessionRepository(database, self.outbox)
        self.work_items = WorkItemRepository(
            database,
            self.outbox,
            mutate_max_attempts=settings.coordinator.mutate_max_attempts,
        )
        self.delegations = DelegationRepository(database, self.outbox, locks=self.locks)
        self.coordinator = DelegationCoordinator(
            database=database,
            outbox=self.outbox,
            pools=self.pools,
            sessions=self.sessions,
            work_items=self.work_items,
            delegations=self.delegations,
            settings=settings.coordinator,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        sink: EventSink | None = None,
        locks: KeyedLock | None = None,
    ) -> DelegationEngine:
        """Open the database, migrate it to head and build the engine."""

        settings.validate()
        database = Database(settings.db_path, busy_timeout_ms=settings.storage.busy_timeout_ms)
        database.init_schema()
        return cls(
            database,
            sink=sink if sink is not None else build_event_sink(settings.events),
            settings=settings,
            locks=locks,
        )

    @property
    def sink(self) -> EventSink:
        return self.outbox.sink

    def redeliver_pending_events(self) -> int:
        return self.outbox.redeliver_pending(limit=self.settings.events.redeliver_batch_size)

    def close(self) -> None:
        self.database.close()

    def __enter__(self) -> DelegationEngine:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()


def build_event_sink(settings: EventSettings) -> EventSink:
    if settings.sink == "memory":
        return InMemoryEventSink(max_events=settings.buffer_size)
    if settings.sink == "null":
        return NullEventSink()
    return LoggingEventSink()
