"""Delegation requests and the atomic claim protocol.

A claim is arbitrated three ways at once: an in-process lock keyed by work
item id, a ``BEGIN IMMEDIATE`` SQLite transaction that re-reads the claim
table inside the lock, and the partial unique index on claimed requests for
writers in other processes. Losing a race is a normal ``ClaimResult``.
"""

from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from delegation_engine.delegation.claims import (
    claimed_request_in,
    finish_request_in,
    is_delegable_in,
    load_request_in,
    open_request_in,
    to_delegation_view,
    transition_request_in,
)
from delegation_engine.delegation.errors import (
    InvalidTransitionError,
    PolicyViolationError,
)
from delegation_engine.delegation.events import EventOutbox
from delegation_engine.delegation.locks import KeyedLock
from delegation_engine.delegation.models import (
    ClaimResult,
    DelegationStatus,
    DelegationView,
    DependencyClass,
    EntityType,
    SessionStatus,
    WorkItemStatus,
)
from delegation_engine.delegation.sessions import (
    assign_task_in,
    can_take_task,
    complete_task_in,
    load_pool_in,
    load_session_in,
    release_task_in,
)
from delegation_engine.delegation.work_items import load_item_in, transition_item_in
from delegation_engine.storage.common import to_db_datetime, utc_now
from delegation_engine.storage.database import Database
from delegation_engine.storage.sqlmodel_models import (
    ContainerPool,
    ContainerSession,
    DelegationRequest,
)

logger = logging.getLogger(__name__)

CLAIM_UNIQUE_COLUMN = "delegation_requests.item_id"


class DelegationRepository:
    """Persistence facade for delegation requests."""

    def __init__(
        self,
        database: Database,
        outbox: EventOutbox,
        *,
        locks: KeyedLock | None = None,
    ) -> None:
        self.database = database
        self.outbox = outbox
        self.locks = locks if locks is not None else KeyedLock()

    def can_delegate(self, item_id: str) -> bool:
        with self.database.session() as db:
            return is_delegable_in(db, load_item_in(db, item_id))

    def request_delegation(
        self,
        item_id: str,
        *,
        requested_by_session: str | None = None,
    ) -> DelegationView:
        """Open a pending request for a delegable item, or return the one already open."""

        with self.database.session() as db:
            item = load_item_in(db, item_id)
            if item.dependency_class != DependencyClass.AGENT_CAPABLE.value:
                raise PolicyViolationError(
                    f"Work item {item_id} requires a human and cannot be delegated.",
                )
            existing = open_request_in(db, item_id)
            if existing is not None:
                return to_delegation_view(existing)
            if not is_delegable_in(db, item):
                raise InvalidTransitionError(
                    f"Work item {item_id} is not delegable (status={item.status}, "
                    "or it is already claimed).",
                )
            row = _create_request_in(
                db,
                self.outbox,
                item_id=item_id,
                project_id=item.project_id,
                requested_by_session=requested_by_session,
            )
            self.outbox.commit(db)
            return to_delegation_view(row)

    def approve(self, request_id: str) -> DelegationView:
        with self.database.session() as db:
            row = load_request_in(db, request_id)
            transition_request_in(db, self.outbox, row, DelegationStatus.APPROVED)
            self.outbox.commit(db)
            return to_delegation_view(row)

    def atomic_claim(self, item_id: str, session_id: str) -> ClaimResult:
        """Give ``session_id`` exclusive ownership of ``item_id`` if nobody else holds it."""

        with self.locks.hold(item_id):
            try:
                return self._claim(item_id, session_id)
            except IntegrityError as error:
                if CLAIM_UNIQUE_COLUMN not in str(error.orig):
                    raise
                logger.info(
                    "Claim on %s by %s lost to a concurrent writer",
                    item_id,
                    session_id,
                )
                return ClaimResult(claimed=False, reason="claimed concurrently")

    def complete(self, request_id: str) -> DelegationView:
        """Close a claimed request and return its session to the idle pool."""

        with self.locks.hold(self._item_for_request(request_id)), self.database.session() as db:
            row = load_request_in(db, request_id)
            holder = finish_request_in(db, self.outbox, row, DelegationStatus.COMPLETED)
            if holder is not None:
                session_row = db.get(ContainerSession, holder)
                if session_row is not None and session_row.current_task_id == row.item_id:
                    pool = load_pool_in(db, session_row.pool_id)
                    if session_row.status == SessionStatus.ACTIVE.value:
                        complete_task_in(db, self.outbox, session_row, pool)
                    else:
                        release_task_in(db, self.outbox, session_row, pool)
            self.outbox.commit(db)
            return to_delegation_view(row)

    def cancel(self, request_id: str, reason: str | None = None) -> DelegationView:
        """Cancel a request; repeating the call on a cancelled request is a no-op."""

        return self._terminate(request_id, DelegationStatus.CANCELLED, reason=reason)

    def expire(self, request_id: str) -> DelegationView:
        return self._terminate(request_id, DelegationStatus.EXPIRED, reason="expired")

    def transfer_claim(self, request_id: str, new_session_id: str) -> DelegationView:
        """Move a claim to another session, typically a handoff successor."""

        with self.locks.hold(self._item_for_request(request_id)), self.database.session() as db:
            row = load_request_in(db, request_id)
            successor = load_session_in(db, new_session_id)
            transfer_claim_in(
                db,
                self.outbox,
                row,
                successor,
                load_pool_in(db, successor.pool_id),
            )
            self.outbox.commit(db)
            return to_delegation_view(row)

    def get_request(self, request_id: str) -> DelegationView:
        with self.database.session() as db:
            return to_delegation_view(load_request_in(db, request_id))

    def claimed_request(self, item_id: str) -> DelegationView | None:
        with self.database.session() as db:
            row = claimed_request_in(db, item_id)
            return to_delegation_view(row) if row is not None else None

    def list_requests(
        self,
        project_id: str,
        *,
        statuses: frozenset[DelegationStatus] | None = None,
        item_id: str | None = None,
        limit: int = 100,
    ) -> list[DelegationView]:
        with self.database.session() as db:
            statement = (
                select(DelegationRequest)
                .where(DelegationRequest.project_id == project_id)
                .order_by(col(DelegationRequest.created_at).desc())
                .limit(limit)
            )
            if statuses:
                statement = statement.where(
                    col(DelegationRequest.status).in_([status.value for status in statuses]),
                )
            if item_id is not None:
                statement = statement.where(DelegationRequest.item_id == item_id)
            rows = db.exec(statement).all()
        return [to_delegation_view(row) for row in rows]

    def _claim(self, item_id: str, session_id: str) -> ClaimResult:
        with self.database.session() as db:
            item = load_item_in(db, item_id)
            session_row = load_session_in(db, session_id)
            pool = load_pool_in(db, session_row.pool_id)
            if item.project_id != pool.project_id:
                raise PolicyViolationError(
                    f"Work item {item_id} and session {session_id} belong to different projects.",
                )

            existing = claimed_request_in(db, item_id)
            if existing is not None:
                if existing.session_id == session_id:
                    return ClaimResult(
                        claimed=True,
                        request_id=existing.request_id,
                        reason="already held by this session",
                    )
                return ClaimResult(claimed=False, reason="claimed by another session")
            if item.status not in {WorkItemStatus.PENDING.value, WorkItemStatus.IN_PROGRESS.value}:
                return ClaimResult(claimed=False, reason=f"work item is {item.status}")
            if not can_take_task(session_row, pool):
                raise InvalidTransitionError(
                    f"Session {session_id} cannot accept a task "
                    f"(status={session_row.status}, current_task={session_row.current_task_id}).",
                )

            request = open_request_in(db, item_id)
            if request is None:
                request = _create_request_in(
                    db,
                    self.outbox,
                    item_id=item_id,
                    project_id=item.project_id,
                    requested_by_session=session_id,
                )
            now = to_db_datetime(utc_now())
            transition_request_in(
                db,
                self.outbox,
                request,
                DelegationStatus.CLAIMED,
                values={"session_id": session_id, "claimed_at": now},
                details={"session_id": session_id},
            )
            if item.status == WorkItemStatus.PENDING.value:
                transition_item_in(
                    db,
                    self.outbox,
                    item,
                    WorkItemStatus.IN_PROGRESS,
                    details={"session_id": session_id, "request_id": request.request_id},
                )
            assign_task_in(db, self.outbox, session_row, pool, item_id)
            self.outbox.commit(db)
            logger.info("Session %s claimed work item %s", session_id, item_id)
            return ClaimResult(claimed=True, request_id=request.request_id)

    def _terminate(
        self,
        request_id: str,
        target: DelegationStatus,
        *,
        reason: str | None,
    ) -> DelegationView:
        with self.locks.hold(self._item_for_request(request_id)), self.database.session() as db:
            row = load_request_in(db, request_id)
            if row.status == target.value:
                return to_delegation_view(row)
            holder = finish_request_in(db, self.outbox, row, target, reason=reason)
            if holder is not None:
                session_row = db.get(ContainerSession, holder)
                if session_row is not None and session_row.current_task_id == row.item_id:
                    release_task_in(
                        db,
                        self.outbox,
                        session_row,
                        load_pool_in(db, session_row.pool_id),
                    )
            self.outbox.commit(db)
            return to_delegation_view(row)

    def _item_for_request(self, request_id: str) -> str:
        # Read outside the claim lock; the lock is always taken before a write transaction.
        with self.database.session() as db:
            return load_request_in(db, request_id).item_id


def transfer_claim_in(
    db: Session,
    outbox: EventOutbox,
    row: DelegationRequest,
    successor: ContainerSession,
    successor_pool: ContainerPool,
) -> DelegationRequest:
    """Rebind a claimed request to ``successor`` and hand it the task."""

    if row.status != DelegationStatus.CLAIMED.value:
        raise InvalidTransitionError(
            f"Only claimed requests can be transferred; {row.request_id} is {row.status}.",
        )
    previous_holder = row.session_id
    if previous_holder == successor.session_id:
        return row
    if previous_holder is not None:
        holder_row = db.get(ContainerSession, previous_holder)
        if holder_row is not None and holder_row.current_task_id == row.item_id:
            release_task_in(db, outbox, holder_row, load_pool_in(db, holder_row.pool_id))

    result = db.exec(
        sa_update(DelegationRequest)
        .where(
            col(DelegationRequest.request_id) == row.request_id,
            col(DelegationRequest.status) == DelegationStatus.CLAIMED.value,
        )
        .values(
            session_id=successor.session_id,
            updated_at=to_db_datetime(utc_now()),
        ),
    )
    if result.rowcount != 1:
        raise InvalidTransitionError(
            f"Delegation request changed concurrently; please retry (request_id={row.request_id}).",
        )
    db.refresh(row)
    outbox.record(
        db,
        project_id=row.project_id,
        entity_type=EntityType.DELEGATION,
        entity_id=row.request_id,
        event_type="delegation.transferred",
        status_from=DelegationStatus.CLAIMED.value,
        status_to=DelegationStatus.CLAIMED.value,
        details={
            "item_id": row.item_id,
            "from_session_id": previous_holder,
            "to_session_id": successor.session_id,
        },
    )
    assign_task_in(db, outbox, successor, successor_pool, row.item_id)
    return row


def _create_request_in(
    db: Session,
    outbox: EventOutbox,
    *,
    item_id: str,
    project_id: str,
    requested_by_session: str | None,
) -> DelegationRequest:
    now = to_db_datetime(utc_now())
    row = DelegationRequest(
        request_id=str(uuid4()),
        project_id=project_id,
        item_id=item_id,
        status=DelegationStatus.PENDING.value,
        requested_by_session=requested_by_session,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.flush()
    outbox.record(
        db,
        project_id=project_id,
        entity_type=EntityType.DELEGATION,
        entity_id=row.request_id,
        event_type="delegation.created",
        status_from=None,
        status_to=DelegationStatus.PENDING.value,
        details={"item_id": item_id, "requested_by_session": requested_by_session},
    )
    return row
