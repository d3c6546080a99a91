"""Container session repository: lifecycle and context-budget tracking."""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from delegation_engine.delegation.claims import release_session_claims_in
from delegation_engine.delegation.errors import (
    InvalidTransitionError,
    NotFoundError,
    PolicyViolationError,
)
from delegation_engine.delegation.events import EventOutbox
from delegation_engine.delegation.models import (
    DEFAULT_CONTEXT_MAX_TOKENS,
    LIVE_SESSION_STATUSES,
    TERMINAL_SESSION_STATUSES,
    ContextAction,
    ContextReport,
    EntityType,
    PoolStatus,
    SessionStatus,
    SessionView,
    compute_context_percent,
    recommend_context_action,
)
from delegation_engine.delegation.work_items import load_item_in
from delegation_engine.storage.common import (
    dump_json,
    load_json_dict,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from delegation_engine.storage.database import Database
from delegation_engine.storage.sqlmodel_models import ContainerPool, ContainerSession

logger = logging.getLogger(__name__)

ASSIGNABLE_SESSION_STATUSES = frozenset({SessionStatus.STARTING, SessionStatus.IDLE})


class SessionRepository:
    """Persistence facade for container sessions."""

    def __init__(self, database: Database, outbox: EventOutbox) -> None:
        self.database = database
        self.outbox = outbox

    def spawn_session(
        self,
        project_id: str,
        *,
        session_id: str | None = None,
        container_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        context_max_tokens: int = DEFAULT_CONTEXT_MAX_TOKENS,
    ) -> SessionView | None:
        """Create a ``starting`` session, or return None when the pool has no room."""

        with self.database.session() as db:
            pool = load_pool_for_project_in(db, project_id)
            row = spawn_in(
                db,
                self.outbox,
                pool,
                session_id=session_id,
                container_id=container_id,
                metadata=metadata,
                context_max_tokens=context_max_tokens,
            )
            if row is None:
                self.outbox.rollback(db)
                logger.info("Pool %s at capacity or not active; spawn refused", pool.pool_id)
                return None
            self.outbox.commit(db)
            return to_session_view(db, row, pool)

    def get_session(self, session_id: str) -> SessionView:
        with self.database.session() as db:
            row = load_session_in(db, session_id)
            return to_session_view(db, row)

    def list_sessions(
        self,
        project_id: str,
        *,
        statuses: frozenset[SessionStatus] | None = None,
    ) -> list[SessionView]:
        with self.database.session() as db:
            pool = find_pool_for_project_in(db, project_id)
            if pool is None:
                return []
            statement = (
                select(ContainerSession)
                .where(ContainerSession.pool_id == pool.pool_id)
                .order_by(col(ContainerSession.created_at).asc())
            )
            if statuses:
                statement = statement.where(
                    col(ContainerSession.status).in_([status.value for status in statuses]),
                )
            rows = db.exec(statement).all()
            return [to_session_view(db, row, pool) for row in rows]

    def heartbeat(self, session_id: str) -> SessionView:
        """Record liveness; a ``starting`` session becomes ``active``."""

        with self.database.session() as db:
            row = load_session_in(db, session_id)
            _require_not_terminal(row, "heartbeat")
            pool = load_pool_in(db, row.pool_id)
            if row.status == SessionStatus.STARTING.value:
                transition_session_in(db, self.outbox, row, pool, SessionStatus.ACTIVE)
            else:
                now = to_db_datetime(utc_now())
                row.last_activity_at = now
                row.updated_at = now
                db.add(row)
            self.outbox.commit(db)
            return to_session_view(db, row, pool)

    def mark_idle(self, session_id: str) -> SessionView:
        """Park a task-free session as a warm, ready worker."""

        with self.database.session() as db:
            row = load_session_in(db, session_id)
            pool = load_pool_in(db, row.pool_id)
            current = SessionStatus(row.status)
            if current == SessionStatus.IDLE:
                return to_session_view(db, row, pool)
            if current not in {SessionStatus.STARTING, SessionStatus.ACTIVE}:
                raise InvalidTransitionError(
                    f"Session {session_id} cannot become idle from {current.value}.",
                )
            if row.current_task_id is not None:
                raise InvalidTransitionError(
                    f"Session {session_id} still holds task {row.current_task_id}; "
                    "complete or release it first.",
                )
            transition_session_in(db, self.outbox, row, pool, SessionStatus.IDLE)
            self.outbox.commit(db)
            return to_session_view(db, row, pool)

    def update_context_usage(self, session_id: str, *, used: int, maximum: int) -> ContextReport:
        """Store a context report and recommend continue / prepare / handoff."""

        percent = compute_context_percent(used, maximum)
        now = to_db_datetime(utc_now())
        with self.database.session() as db:
            row = load_session_in(db, session_id)
            _require_not_terminal(row, "report context usage")
            pool = load_pool_in(db, row.pool_id)
            result = db.exec(
                sa_update(ContainerSession)
                .where(
                    col(ContainerSession.session_id) == session_id,
                    col(ContainerSession.status) == row.status,
                )
                .values(
                    context_used_tokens=used,
                    context_max_tokens=maximum,
                    context_percent=percent,
                    last_context_check_at=now,
                    last_activity_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                raise InvalidTransitionError(
                    f"Session state changed concurrently; please retry (session_id={session_id}).",
                )
            db.commit()
        report = recommend_context_action(percent, pool.context_threshold_percent)
        if report.action != ContextAction.CONTINUE:
            logger.info(
                "Session %s context %.2f%% (threshold %s%%): %s",
                session_id,
                percent,
                pool.context_threshold_percent,
                report.action.value,
            )
        return report

    def assign_task(self, session_id: str, item_id: str) -> SessionView:
        with self.database.session() as db:
            row = load_session_in(db, session_id)
            pool = load_pool_in(db, row.pool_id)
            item = load_item_in(db, item_id)
            if item.project_id != pool.project_id:
                raise PolicyViolationError(
                    f"Work item {item_id} belongs to another project than session {session_id}.",
                )
            assign_task_in(db, self.outbox, row, pool, item_id)
            self.outbox.commit(db)
            return to_session_view(db, row, pool)

    def complete_task(self, session_id: str) -> SessionView:
        """Finish the current task: count it and return the session to idle."""

        with self.database.session() as db:
            row = load_session_in(db, session_id)
            pool = load_pool_in(db, row.pool_id)
            complete_task_in(db, self.outbox, row, pool)
            self.outbox.commit(db)
            return to_session_view(db, row, pool)

    def mark_handoff_pending(self, session_id: str) -> SessionView:
        with self.database.session() as db:
            row = load_session_in(db, session_id)
            pool = load_pool_in(db, row.pool_id)
            mark_handoff_pending_in(db, self.outbox, row, pool)
            self.outbox.commit(db)
            return to_session_view(db, row, pool)

    def retire(self, session_id: str, summary: str | None = None) -> SessionView:
        """Retire a session; claims it still holds go back to the board."""

        with self.database.session() as db:
            row = load_session_in(db, session_id)
            pool = load_pool_in(db, row.pool_id)
            retire_in(db, self.outbox, row, pool, summary=summary)
            self.outbox.commit(db)
            return to_session_view(db, row, pool)

    def mark_error(self, session_id: str, reason: str) -> SessionView:
        with self.database.session() as db:
            row = load_session_in(db, session_id)
            _require_not_terminal(row, "enter error state")
            pool = load_pool_in(db, row.pool_id)
            released = release_session_claims_in(
                db,
                self.outbox,
                session_id,
                reason=f"session error: {reason}",
            )
            transition_session_in(
                db,
                self.outbox,
                row,
                pool,
                SessionStatus.ERROR,
                values={"current_task_id": None, "error_reason": reason},
                details={"reason": reason, "released_requests": released},
            )
            self.outbox.commit(db)
            logger.warning("Session %s entered error state: %s", session_id, reason)
            return to_session_view(db, row, pool)


def load_session_in(db: Session, session_id: str) -> ContainerSession:
    row = db.get(ContainerSession, session_id)
    if row is None:
        raise NotFoundError(f"Session not found: {session_id}")
    return row


def load_pool_in(db: Session, pool_id: str) -> ContainerPool:
    row = db.get(ContainerPool, pool_id)
    if row is None:
        raise NotFoundError(f"Pool not found: {pool_id}")
    return row


def find_pool_for_project_in(db: Session, project_id: str) -> ContainerPool | None:
    return db.exec(
        select(ContainerPool).where(ContainerPool.project_id == project_id),
    ).one_or_none()


def load_pool_for_project_in(db: Session, project_id: str) -> ContainerPool:
    pool = find_pool_for_project_in(db, project_id)
    if pool is None:
        raise NotFoundError(f"No container pool for project: {project_id}")
    return pool


def count_sessions_in(db: Session, pool_id: str, statuses: frozenset[SessionStatus]) -> int:
    return int(
        db.exec(
            select(func.count())
            .select_from(ContainerSession)
            .where(
                col(ContainerSession.pool_id) == pool_id,
                col(ContainerSession.status).in_([status.value for status in statuses]),
            ),
        ).one(),
    )


def spawn_in(  # noqa: PLR0913
    db: Session,
    outbox: EventOutbox,
    pool: ContainerPool,
    *,
    session_id: str | None = None,
    container_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    context_max_tokens: int = DEFAULT_CONTEXT_MAX_TOKENS,
    handoff_from_id: str | None = None,
) -> ContainerSession | None:
    """Admission check and insert in the caller's write transaction.

    Handoff successors are admitted while the pool is paused or draining
    because they continue work that was already admitted; the size cap still
    applies.
    """

    if context_max_tokens <= 0:
        raise PolicyViolationError(
            f"Context max tokens must be > 0, got {context_max_tokens}.",
        )
    if handoff_from_id is None and pool.status != PoolStatus.ACTIVE.value:
        return None
    if count_sessions_in(db, pool.pool_id, LIVE_SESSION_STATUSES) >= pool.max_pool_size:
        return None
    new_id = session_id or str(uuid4())
    if db.get(ContainerSession, new_id) is not None:
        raise PolicyViolationError(f"Session already exists: {new_id}")

    now = to_db_datetime(utc_now())
    row = ContainerSession(
        session_id=new_id,
        pool_id=pool.pool_id,
        container_id=container_id,
        status=SessionStatus.STARTING.value,
        context_used_tokens=0,
        context_max_tokens=context_max_tokens,
        context_percent=0.0,
        tasks_completed=0,
        handoff_from_id=handoff_from_id,
        metadata_json=dump_json(metadata or {}),
        last_activity_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    outbox.record(
        db,
        project_id=pool.project_id,
        entity_type=EntityType.SESSION,
        entity_id=new_id,
        event_type="session.created",
        status_from=None,
        status_to=SessionStatus.STARTING.value,
        details={"pool_id": pool.pool_id, "handoff_from_id": handoff_from_id},
    )
    db.flush()
    return row


def transition_session_in(  # noqa: PLR0913
    db: Session,
    outbox: EventOutbox,
    row: ContainerSession,
    pool: ContainerPool,
    target: SessionStatus,
    *,
    values: dict[str, Any] | None = None,
    details: dict[str, Any] | None = None,
) -> ContainerSession:
    previous = SessionStatus(row.status)
    now = to_db_datetime(utc_now())
    result = db.exec(
        sa_update(ContainerSession)
        .where(
            col(ContainerSession.session_id) == row.session_id,
            col(ContainerSession.status) == previous.value,
        )
        .values(
            status=target.value,
            last_activity_at=now,
            updated_at=now,
            **(values or {}),
        ),
    )
    if result.rowcount != 1:
        raise InvalidTransitionError(
            f"Session state changed concurrently; please retry (session_id={row.session_id}).",
        )
    db.refresh(row)
    outbox.record(
        db,
        project_id=pool.project_id,
        entity_type=EntityType.SESSION,
        entity_id=row.session_id,
        event_type="session.status_changed",
        status_from=previous.value,
        status_to=target.value,
        details=details,
    )
    return row


def can_take_task(row: ContainerSession, pool: ContainerPool) -> bool:
    """Fresh or idle, task-free, and below the handoff threshold."""

    return (
        SessionStatus(row.status) in ASSIGNABLE_SESSION_STATUSES
        and row.current_task_id is None
        and row.context_percent < pool.context_threshold_percent
    )


def assign_task_in(
    db: Session,
    outbox: EventOutbox,
    row: ContainerSession,
    pool: ContainerPool,
    item_id: str,
) -> ContainerSession:
    if not can_take_task(row, pool):
        raise InvalidTransitionError(
            f"Session {row.session_id} cannot accept a task "
            f"(status={row.status}, current_task={row.current_task_id}, "
            f"context={row.context_percent}%).",
        )
    transition_session_in(
        db,
        outbox,
        row,
        pool,
        SessionStatus.ACTIVE,
        values={"current_task_id": item_id},
        details={"task_id": item_id},
    )
    touch_pool_in(db, pool)
    return row


def complete_task_in(
    db: Session,
    outbox: EventOutbox,
    row: ContainerSession,
    pool: ContainerPool,
) -> ContainerSession:
    if row.status != SessionStatus.ACTIVE.value or row.current_task_id is None:
        raise InvalidTransitionError(
            f"Session {row.session_id} has no active task to complete (status={row.status}).",
        )
    finished = row.current_task_id
    return transition_session_in(
        db,
        outbox,
        row,
        pool,
        SessionStatus.IDLE,
        values={"current_task_id": None, "tasks_completed": row.tasks_completed + 1},
        details={"task_id": finished},
    )


def release_task_in(
    db: Session,
    outbox: EventOutbox,
    row: ContainerSession,
    pool: ContainerPool,
) -> ContainerSession:
    """Drop the current task without counting it as completed."""

    if row.current_task_id is None:
        return row
    released = row.current_task_id
    if row.status == SessionStatus.ACTIVE.value:
        return transition_session_in(
            db,
            outbox,
            row,
            pool,
            SessionStatus.IDLE,
            values={"current_task_id": None},
            details={"task_id": released, "released": True},
        )
    row.current_task_id = None
    row.updated_at = to_db_datetime(utc_now())
    db.add(row)
    db.flush()
    return row


def mark_handoff_pending_in(
    db: Session,
    outbox: EventOutbox,
    row: ContainerSession,
    pool: ContainerPool,
) -> ContainerSession:
    if row.status not in {SessionStatus.ACTIVE.value, SessionStatus.IDLE.value}:
        raise InvalidTransitionError(
            f"Session {row.session_id} cannot await handoff from {row.status}.",
        )
    return transition_session_in(
        db,
        outbox,
        row,
        pool,
        SessionStatus.HANDOFF_PENDING,
        details={"context_percent": row.context_percent},
    )


def retire_in(  # noqa: PLR0913
    db: Session,
    outbox: EventOutbox,
    row: ContainerSession,
    pool: ContainerPool,
    *,
    summary: str | None,
    release_claims: bool = True,
) -> ContainerSession:
    """Retire a session; ``release_claims=False`` leaves claims for a handoff to move."""

    if row.status == SessionStatus.RETIRED.value:
        raise InvalidTransitionError(f"Session {row.session_id} is already retired.")
    released: list[str] = []
    if release_claims:
        released = release_session_claims_in(db, outbox, row.session_id, reason="session retired")
    return transition_session_in(
        db,
        outbox,
        row,
        pool,
        SessionStatus.RETIRED,
        values={"current_task_id": None, "handoff_summary": summary},
        details={"released_requests": released} if released else None,
    )


def touch_pool_in(db: Session, pool: ContainerPool) -> None:
    now = to_db_datetime(utc_now())
    pool.last_activity_at = now
    pool.updated_at = now
    db.add(pool)


def successor_id_in(db: Session, session_id: str) -> str | None:
    return db.exec(
        select(ContainerSession.session_id).where(
            ContainerSession.handoff_from_id == session_id,
        ),
    ).first()


def to_session_view(
    db: Session,
    row: ContainerSession,
    pool: ContainerPool | None = None,
) -> SessionView:
    pool = pool if pool is not None else load_pool_in(db, row.pool_id)
    return SessionView(
        session_id=row.session_id,
        pool_id=row.pool_id,
        project_id=pool.project_id,
        container_id=row.container_id,
        status=SessionStatus(row.status),
        context_used_tokens=row.context_used_tokens,
        context_max_tokens=row.context_max_tokens,
        context_percent=row.context_percent,
        context_threshold_percent=pool.context_threshold_percent,
        last_context_check_at=optional_utc(row.last_context_check_at),
        current_task_id=row.current_task_id,
        tasks_completed=row.tasks_completed,
        handoff_from_id=row.handoff_from_id,
        handoff_to_id=successor_id_in(db, row.session_id),
        handoff_summary=row.handoff_summary,
        error_reason=row.error_reason,
        metadata=load_json_dict(row.metadata_json),
        last_activity_at=optional_utc(row.last_activity_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _require_not_terminal(row: ContainerSession, action: str) -> None:
    if SessionStatus(row.status) in TERMINAL_SESSION_STATUSES:
        raise InvalidTransitionError(
            f"Session {row.session_id} cannot {action} from {row.status}.",
        )
