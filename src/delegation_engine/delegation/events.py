"""Event sinks and the transactional outbox that feeds them.

State changes write an ``engine_events`` row inside the same transaction as
the change itself. Once the transaction commits, the outbox hands the rows to
the configured sink and stamps ``published_at`` on the ones that went out.
A sink failure never undoes a committed change: it is logged and the row
waits for ``redeliver_pending``.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from delegation_engine.delegation.models import EngineEventView, EntityType
from delegation_engine.storage.common import (
    dump_json,
    load_json_dict,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from delegation_engine.storage.database import Database
from delegation_engine.storage.sqlmodel_models import EngineEvent

logger = logging.getLogger(__name__)

_PENDING_EVENTS_KEY = "delegation_engine.pending_events"

EventCallback = Callable[[EngineEventView], None]


class EventSink(Protocol):
    def publish(self, event: EngineEventView) -> None: ...


class NullEventSink:
    """Drops every event."""

    def publish(self, event: EngineEventView) -> None:
        return None


class LoggingEventSink:
    """Writes each event payload to the module logger."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def publish(self, event: EngineEventView) -> None:
        payload = event.to_payload()
        logger.log(
            self.level,
            "event %s entity=%s %s -> %s",
            payload["type"],
            payload["entity_id"],
            payload["previous_status"],
            payload["new_status"],
        )


class InMemoryEventSink:
    """Bounded in-process buffer with subscriber callbacks."""

    def __init__(self, max_events: int = 1000) -> None:
        self._lock = threading.Lock()
        self._buffer: deque[EngineEventView] = deque(maxlen=max_events)
        self._subscribers: list[EventCallback] = []

    def publish(self, event: EngineEventView) -> None:
        with self._lock:
            self._buffer.append(event)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(event)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a callback; the returned callable removes it again."""

        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def events(self, event_type: str | None = None) -> list[EngineEventView]:
        with self._lock:
            snapshot = list(self._buffer)
        if event_type is None:
            return snapshot
        return [event for event in snapshot if event.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()


class EventOutbox:
    """Records transition events in-transaction and publishes them after commit."""

    def __init__(self, database: Database, sink: EventSink | None = None) -> None:
        self.database = database
        self.sink: EventSink = sink if sink is not None else NullEventSink()

    def record(  # noqa: PLR0913
        self,
        db: Session,
        *,
        project_id: str,
        entity_type: EntityType,
        entity_id: str,
        event_type: str,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> EngineEvent:
        """Stage one event row in the caller's transaction."""

        row = EngineEvent(
            project_id=project_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            event_type=event_type,
            status_from=status_from,
            status_to=status_to,
            details_json=dump_json(details or {}),
            created_at=to_db_datetime(utc_now()),
        )
        db.add(row)
        db.info.setdefault(_PENDING_EVENTS_KEY, []).append(row)
        return row

    def commit(self, db: Session) -> list[EngineEventView]:
        """Commit the transaction, then publish the events it staged."""

        db.commit()
        rows = db.info.pop(_PENDING_EVENTS_KEY, [])
        return self.dispatch(rows)

    def rollback(self, db: Session) -> None:
        db.rollback()
        db.info.pop(_PENDING_EVENTS_KEY, None)

    def dispatch(self, rows: Iterable[EngineEvent]) -> list[EngineEventView]:
        """Publish committed rows; failed ones stay pending for redelivery."""

        views = [_to_event_view(row) for row in rows]
        published: list[int] = []
        for view in views:
            try:
                self.sink.publish(view)
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "Event publish failed, left for redelivery: id=%s type=%s: %s",
                    view.event_id,
                    view.event_type,
                    error,
                )
                continue
            published.append(view.event_id)
        if published:
            self._mark_published(published)
        return views

    def redeliver_pending(self, *, limit: int = 100) -> int:
        """Retry events whose earlier publish failed. Returns how many went out."""

        with self.database.session() as db:
            rows = db.exec(
                select(EngineEvent)
                .where(col(EngineEvent.published_at).is_(None))
                .order_by(col(EngineEvent.id).asc())
                .limit(limit),
            ).all()
        if not rows:
            return 0
        before = self.pending_count()
        self.dispatch(rows)
        delivered = before - self.pending_count()
        logger.info("Redelivered %s of %s pending events", delivered, len(rows))
        return delivered

    def pending_count(self) -> int:
        with self.database.session() as db:
            rows = db.exec(
                select(EngineEvent.id).where(col(EngineEvent.published_at).is_(None)),
            ).all()
        return len(rows)

    def list_events(
        self,
        *,
        project_id: str,
        since_event_id: int = 0,
        limit: int = 100,
        entity_id: str | None = None,
    ) -> list[EngineEventView]:
        """Events for one project in commit order."""

        with self.database.session() as db:
            statement = (
                select(EngineEvent)
                .where(
                    EngineEvent.project_id == project_id,
                    col(EngineEvent.id) > since_event_id,
                )
                .order_by(col(EngineEvent.id).asc())
                .limit(limit)
            )
            if entity_id is not None:
                statement = statement.where(EngineEvent.entity_id == entity_id)
            rows = db.exec(statement).all()
        return [_to_event_view(row) for row in rows]

    def _mark_published(self, event_ids: list[int]) -> None:
        now = to_db_datetime(utc_now())
        try:
            with self.database.session() as db:
                db.exec(
                    sa_update(EngineEvent)
                    .where(
                        col(EngineEvent.id).in_(event_ids),
                        col(EngineEvent.published_at).is_(None),
                    )
                    .values(published_at=now),
                )
                db.commit()
        except OperationalError as error:
            # Rows stay unpublished; redelivery may send them twice.
            logger.warning("Could not mark %s events published: %s", len(event_ids), error)


def _to_event_view(row: EngineEvent) -> EngineEventView:
    if row.id is None:
        raise RuntimeError("Engine event row has no id; it was never flushed.")
    return EngineEventView(
        event_id=row.id,
        project_id=row.project_id,
        entity_type=EntityType(row.entity_type),
        entity_id=row.entity_id,
        event_type=row.event_type,
        status_from=row.status_from,
        status_to=row.status_to,
        created_at=to_utc_aware_datetime(row.created_at),
        details=load_json_dict(row.details_json),
        published_at=optional_utc(row.published_at),
    )
