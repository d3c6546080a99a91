"""Delegation request row transitions shared by the claim protocol and session teardown."""

from __future__ import annotations

from typing import Any

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from delegation_engine.delegation.errors import InvalidTransitionError, NotFoundError
from delegation_engine.delegation.events import EventOutbox
from delegation_engine.delegation.models import (
    TERMINAL_DELEGATION_STATUSES,
    DelegationStatus,
    DelegationView,
    DependencyClass,
    EntityType,
    WorkItemStatus,
)
from delegation_engine.delegation.work_items import load_item_in, transition_item_in
from delegation_engine.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from delegation_engine.storage.sqlmodel_models import DelegationRequest, WorkItem

REQUEST_TRANSITIONS: dict[DelegationStatus, frozenset[DelegationStatus]] = {
    DelegationStatus.PENDING: frozenset(
        {
            DelegationStatus.APPROVED,
            DelegationStatus.CLAIMED,
            DelegationStatus.CANCELLED,
            DelegationStatus.EXPIRED,
        },
    ),
    DelegationStatus.APPROVED: frozenset(
        {DelegationStatus.CLAIMED, DelegationStatus.CANCELLED, DelegationStatus.EXPIRED},
    ),
    DelegationStatus.CLAIMED: frozenset(
        {DelegationStatus.COMPLETED, DelegationStatus.CANCELLED, DelegationStatus.EXPIRED},
    ),
    DelegationStatus.COMPLETED: frozenset(),
    DelegationStatus.CANCELLED: frozenset(),
    DelegationStatus.EXPIRED: frozenset(),
}


def load_request_in(db: Session, request_id: str) -> DelegationRequest:
    row = db.get(DelegationRequest, request_id)
    if row is None:
        raise NotFoundError(f"Delegation request not found: {request_id}")
    return row


def claimed_request_in(db: Session, item_id: str) -> DelegationRequest | None:
    return db.exec(
        select(DelegationRequest).where(
            DelegationRequest.item_id == item_id,
            DelegationRequest.status == DelegationStatus.CLAIMED.value,
        ),
    ).one_or_none()


def open_request_in(db: Session, item_id: str) -> DelegationRequest | None:
    """Newest pending or approved request for an item."""

    return db.exec(
        select(DelegationRequest)
        .where(
            DelegationRequest.item_id == item_id,
            col(DelegationRequest.status).in_(
                [DelegationStatus.PENDING.value, DelegationStatus.APPROVED.value],
            ),
        )
        .order_by(col(DelegationRequest.created_at).desc())
        .limit(1),
    ).one_or_none()


def is_delegable_in(db: Session, item: WorkItem) -> bool:
    return (
        item.dependency_class == DependencyClass.AGENT_CAPABLE.value
        and item.status == WorkItemStatus.PENDING.value
        and claimed_request_in(db, item.item_id) is None
    )


def transition_request_in(
    db: Session,
    outbox: EventOutbox,
    row: DelegationRequest,
    target: DelegationStatus,
    *,
    values: dict[str, Any] | None = None,
    details: dict[str, Any] | None = None,
) -> DelegationRequest:
    previous = DelegationStatus(row.status)
    if target not in REQUEST_TRANSITIONS[previous]:
        raise InvalidTransitionError(
            f"Delegation request {row.request_id} cannot move from "
            f"{previous.value} to {target.value}.",
        )
    result = db.exec(
        sa_update(DelegationRequest)
        .where(
            col(DelegationRequest.request_id) == row.request_id,
            col(DelegationRequest.status) == previous.value,
        )
        .values(
            status=target.value,
            updated_at=to_db_datetime(utc_now()),
            **(values or {}),
        ),
    )
    if result.rowcount != 1:
        raise InvalidTransitionError(
            "Delegation request changed concurrently; "
            f"please retry (request_id={row.request_id}).",
        )
    db.refresh(row)
    outbox.record(
        db,
        project_id=row.project_id,
        entity_type=EntityType.DELEGATION,
        entity_id=row.request_id,
        event_type="delegation.status_changed",
        status_from=previous.value,
        status_to=target.value,
        details={"item_id": row.item_id, "session_id": row.session_id, **(details or {})},
    )
    return row


def finish_request_in(
    db: Session,
    outbox: EventOutbox,
    row: DelegationRequest,
    target: DelegationStatus,
    *,
    reason: str | None = None,
) -> str | None:
    """Move a request to a terminal state.

    Cancelling or expiring a claimed request hands its work item back to
    ``pending``. Returns the session that held the claim, if any, so the caller
    can release it.
    """

    if target not in TERMINAL_DELEGATION_STATUSES:
        raise ValueError(f"Unsupported terminal status: {target}")
    previous = DelegationStatus(row.status)
    holder = row.session_id if previous == DelegationStatus.CLAIMED else None
    now = to_db_datetime(utc_now())
    values: dict[str, Any] = {}
    if target == DelegationStatus.COMPLETED:
        values["completed_at"] = now
    else:
        values["cancelled_at"] = now
        values["cancel_reason"] = reason
    transition_request_in(
        db,
        outbox,
        row,
        target,
        values=values,
        details={"reason": reason} if reason else None,
    )
    if holder is not None and target != DelegationStatus.COMPLETED:
        item = load_item_in(db, row.item_id)
        if item.status == WorkItemStatus.IN_PROGRESS.value:
            transition_item_in(
                db,
                outbox,
                item,
                WorkItemStatus.PENDING,
                details={"reason": "claim released", "request_id": row.request_id},
            )
    return holder


def release_session_claims_in(
    db: Session,
    outbox: EventOutbox,
    session_id: str,
    *,
    reason: str,
) -> list[str]:
    """Cancel every claim held by a session that is going away."""

    rows = db.exec(
        select(DelegationRequest).where(
            DelegationRequest.session_id == session_id,
            DelegationRequest.status == DelegationStatus.CLAIMED.value,
        ),
    ).all()
    for row in rows:
        finish_request_in(db, outbox, row, DelegationStatus.CANCELLED, reason=reason)
    return [row.request_id for row in rows]


def to_delegation_view(row: DelegationRequest) -> DelegationView:
    return DelegationView(
        request_id=row.request_id,
        project_id=row.project_id,
        item_id=row.item_id,
        session_id=row.session_id,
        status=DelegationStatus(row.status),
        requested_by_session=row.requested_by_session,
        claimed_at=optional_utc(row.claimed_at),
        completed_at=optional_utc(row.completed_at),
        cancelled_at=optional_utc(row.cancelled_at),
        cancel_reason=row.cancel_reason,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
