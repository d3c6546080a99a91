"""Task board repository with optimistic versioning and an append-only audit trail."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from delegation_engine.delegation.errors import (
    InvalidTransitionError,
    NotFoundError,
    PolicyViolationError,
    VersionConflictError,
)
from delegation_engine.delegation.events import EventOutbox
from delegation_engine.delegation.models import (
    PRIORITY_RANK,
    WORK_ITEM_TRANSITIONS,
    AuditEntryView,
    DelegationStatus,
    DependencyClass,
    EntityType,
    Priority,
    WorkItemChanges,
    WorkItemCreate,
    WorkItemStatus,
    WorkItemView,
)
from delegation_engine.storage.common import (
    dump_json,
    load_json_list,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from delegation_engine.storage.database import Database
from delegation_engine.storage.sqlmodel_models import (
    DelegationRequest,
    WorkItem,
    WorkItemAuditEntry,
)

logger = logging.getLogger(__name__)

DEFAULT_MUTATE_ATTEMPTS = 3

PRIORITY_ORDER = case(
    {priority.value: rank for priority, rank in PRIORITY_RANK.items()},
    value=col(WorkItem.priority),
    else_=len(PRIORITY_RANK) + 1,
)


class WorkItemRepository:
    """Persistence facade for work items."""

    def __init__(
        self,
        database: Database,
        outbox: EventOutbox,
        *,
        mutate_max_attempts: int = DEFAULT_MUTATE_ATTEMPTS,
    ) -> None:
        self.database = database
        self.outbox = outbox
        self.mutate_max_attempts = mutate_max_attempts

    def create_work_item(self, project_id: str, payload: WorkItemCreate) -> WorkItemView:
        """Add an item to the board; unmet blockers make it start as blocked."""

        if not payload.title.strip():
            raise PolicyViolationError("Work item title must not be empty.")
        self.database.ensure_project(project_id)
        now = to_db_datetime(utc_now())
        item_id = payload.item_id or str(uuid4())
        blocked_by = _normalize_ids(payload.blocked_by, exclude=item_id)
        with self.database.session() as db:
            if db.get(WorkItem, item_id) is not None:
                raise PolicyViolationError(f"Work item already exists: {item_id}")
            if payload.parent_id is not None:
                parent = load_item_in(db, payload.parent_id)
                if parent.project_id != project_id:
                    raise PolicyViolationError(
                        f"Parent {payload.parent_id} belongs to another project.",
                    )
            status = WorkItemStatus.PENDING
            if blocked_by and not dependencies_met_in(db, blocked_by):
                status = WorkItemStatus.BLOCKED
            row = WorkItem(
                item_id=item_id,
                project_id=project_id,
                title=payload.title,
                description=payload.description,
                status=status.value,
                dependency_class=payload.dependency_class.value,
                priority=payload.priority.value,
                parent_id=payload.parent_id,
                blocked_by_json=dump_json(list(blocked_by)),
                tags_json=dump_json(list(payload.tags)),
                client_id=payload.client_id,
                version=0,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            if payload.created_by_agent:
                db.add(
                    WorkItemAuditEntry(
                        item_id=item_id,
                        agent_id=payload.created_by_agent,
                        note="Task created",
                        created_at=now,
                    ),
                )
            self.outbox.record(
                db,
                project_id=project_id,
                entity_type=EntityType.WORK_ITEM,
                entity_id=item_id,
                event_type="task.created",
                status_from=None,
                status_to=status.value,
                details={
                    "title": payload.title,
                    "priority": payload.priority.value,
                    "dependency_class": payload.dependency_class.value,
                },
            )
            self.outbox.commit(db)
            return to_work_item_view(db, row)

    def get_work_item(self, item_id: str) -> WorkItemView:
        with self.database.session() as db:
            row = load_item_in(db, item_id)
            return to_work_item_view(db, row, include_audit=True)

    def update_work_item(
        self,
        item_id: str,
        *,
        expected_version: int,
        changes: WorkItemChanges,
    ) -> WorkItemView:
        """Apply ``changes`` if the item is still at ``expected_version``."""

        with self.database.session() as db:
            row = load_item_in(db, item_id)
            _check_version(row, expected_version)
            if changes.is_empty():
                return to_work_item_view(db, row)

            previous = WorkItemStatus(row.status)
            target = changes.status if changes.status is not None else previous
            if target != previous:
                _check_transition(row, target)
                _check_release_in(db, row, target)
                if previous == WorkItemStatus.BLOCKED and target == WorkItemStatus.PENDING:
                    blockers = (
                        _normalize_ids(changes.blocked_by, exclude=item_id)
                        if changes.blocked_by is not None
                        else load_json_list(row.blocked_by_json)
                    )
                    if not dependencies_met_in(db, blockers):
                        raise InvalidTransitionError(
                            f"Work item {item_id} is still blocked by unfinished items.",
                        )

            values: dict[str, Any] = {"status": target.value}
            changed_fields = ["status"] if target != previous else []
            for name in ("title", "description", "client_id"):
                value = getattr(changes, name)
                if value is not None:
                    values[name] = value
                    changed_fields.append(name)
            if changes.priority is not None:
                values["priority"] = changes.priority.value
                changed_fields.append("priority")
            if changes.dependency_class is not None:
                values["dependency_class"] = changes.dependency_class.value
                changed_fields.append("dependency_class")
            if changes.tags is not None:
                values["tags_json"] = dump_json(list(changes.tags))
                changed_fields.append("tags")
            if changes.blocked_by is not None:
                values["blocked_by_json"] = dump_json(
                    list(_normalize_ids(changes.blocked_by, exclude=item_id)),
                )
                changed_fields.append("blocked_by")
            if target == WorkItemStatus.COMPLETED and previous != WorkItemStatus.COMPLETED:
                values["completed_at"] = to_db_datetime(utc_now())

            save_item_in(db, row, expected_version=expected_version, values=values)
            self.outbox.record(
                db,
                project_id=row.project_id,
                entity_type=EntityType.WORK_ITEM,
                entity_id=item_id,
                event_type="task.status_changed" if target != previous else "task.updated",
                status_from=previous.value,
                status_to=target.value,
                details={"version": row.version, "changed": changed_fields},
            )
            if target == WorkItemStatus.COMPLETED and previous != WorkItemStatus.COMPLETED:
                unblock_dependents_in(db, self.outbox, row)
            self.outbox.commit(db)
            return to_work_item_view(db, row)

    def mutate_work_item(
        self,
        item_id: str,
        mutation: Callable[[WorkItemView], WorkItemChanges],
        *,
        max_attempts: int | None = None,
    ) -> WorkItemView:
        """Re-read and re-apply ``mutation`` until it lands or attempts run out."""

        attempts = max_attempts if max_attempts is not None else self.mutate_max_attempts
        attempt = 0
        while True:
            attempt += 1
            current = self.get_work_item(item_id)
            try:
                return self.update_work_item(
                    item_id,
                    expected_version=current.version,
                    changes=mutation(current),
                )
            except VersionConflictError:
                if attempt >= attempts:
                    raise
                logger.info(
                    "Version conflict on work item %s (attempt %s/%s), reloading",
                    item_id,
                    attempt,
                    attempts,
                )

    def append_audit_entry(
        self,
        item_id: str,
        note: str,
        *,
        agent_id: str | None = None,
        expected_version: int | None = None,
    ) -> int:
        """Append one audit line and return the item's new version."""

        if not note.strip():
            raise PolicyViolationError("Audit note must not be empty.")
        now = to_db_datetime(utc_now())
        with self.database.session() as db:
            row = load_item_in(db, item_id)
            version = row.version if expected_version is None else expected_version
            _check_version(row, version)
            entry = WorkItemAuditEntry(
                item_id=item_id,
                agent_id=agent_id,
                note=note,
                created_at=now,
            )
            db.add(entry)
            save_item_in(db, row, expected_version=version, values={})
            self.outbox.record(
                db,
                project_id=row.project_id,
                entity_type=EntityType.WORK_ITEM,
                entity_id=item_id,
                event_type="task.updated",
                status_from=row.status,
                status_to=row.status,
                details={"version": row.version, "audit_agent_id": agent_id},
            )
            self.outbox.commit(db)
            return row.version

    def complete_work_item(
        self,
        item_id: str,
        *,
        agent_id: str | None = None,
        note: str | None = None,
    ) -> WorkItemView:
        """Mark an item completed and release dependents whose blockers are all done."""

        with self.database.session() as db:
            row = load_item_in(db, item_id)
            transition_item_in(
                db,
                self.outbox,
                row,
                WorkItemStatus.COMPLETED,
                details={"agent_id": agent_id} if agent_id else None,
            )
            if note:
                db.add(
                    WorkItemAuditEntry(
                        item_id=item_id,
                        agent_id=agent_id,
                        note=note,
                        created_at=to_db_datetime(utc_now()),
                    ),
                )
            released = unblock_dependents_in(db, self.outbox, row)
            self.outbox.commit(db)
            if released:
                logger.info("Completing %s unblocked %s", item_id, ", ".join(released))
            return to_work_item_view(db, row)

    def block(
        self,
        item_id: str,
        blocked_by: Iterable[str],
        *,
        expected_version: int | None = None,
    ) -> WorkItemView:
        """Move a pending or in-progress item to blocked on the given items."""

        with self.database.session() as db:
            row = load_item_in(db, item_id)
            if expected_version is not None:
                _check_version(row, expected_version)
            _check_transition(row, WorkItemStatus.BLOCKED)
            _check_release_in(db, row, WorkItemStatus.BLOCKED)
            ids = _normalize_ids(blocked_by, exclude=item_id)
            transition_item_in(
                db,
                self.outbox,
                row,
                WorkItemStatus.BLOCKED,
                values={"blocked_by_json": dump_json(list(ids))},
                details={"blocked_by": list(ids)},
            )
            self.outbox.commit(db)
            return to_work_item_view(db, row)

    def set_blocked_by(
        self,
        item_id: str,
        blocked_by: Iterable[str],
        *,
        expected_version: int | None = None,
    ) -> WorkItemView:
        """Replace the blocking set; a blocked item whose set is satisfied returns to pending."""

        with self.database.session() as db:
            row = load_item_in(db, item_id)
            version = row.version if expected_version is None else expected_version
            _check_version(row, version)
            ids = _normalize_ids(blocked_by, exclude=item_id)
            if row.status == WorkItemStatus.BLOCKED.value and dependencies_met_in(db, ids):
                transition_item_in(
                    db,
                    self.outbox,
                    row,
                    WorkItemStatus.PENDING,
                    values={"blocked_by_json": dump_json(list(ids))},
                    details={"blocked_by": list(ids), "reason": "blocking set satisfied"},
                )
            else:
                save_item_in(
                    db,
                    row,
                    expected_version=version,
                    values={"blocked_by_json": dump_json(list(ids))},
                )
                self.outbox.record(
                    db,
                    project_id=row.project_id,
                    entity_type=EntityType.WORK_ITEM,
                    entity_id=item_id,
                    event_type="task.updated",
                    status_from=row.status,
                    status_to=row.status,
                    details={"version": row.version, "blocked_by": list(ids)},
                )
            self.outbox.commit(db)
            return to_work_item_view(db, row)

    def dependencies_met(self, item_id: str) -> bool:
        with self.database.session() as db:
            row = load_item_in(db, item_id)
            return dependencies_met_in(db, load_json_list(row.blocked_by_json))

    def progress_percentage(self, item_id: str) -> int:
        return self.get_work_item(item_id).progress_percentage

    def list_work_items(
        self,
        project_id: str,
        *,
        status: WorkItemStatus | None = None,
        since_version: int | None = None,
        parent_id: str | None = None,
        limit: int | None = None,
    ) -> list[WorkItemView]:
        """List board items by priority, optionally only those changed past ``since_version``."""

        with self.database.session() as db:
            statement = (
                select(WorkItem)
                .where(WorkItem.project_id == project_id)
                .order_by(PRIORITY_ORDER, col(WorkItem.created_at).asc())
            )
            if status is not None:
                statement = statement.where(WorkItem.status == status.value)
            if since_version is not None:
                statement = statement.where(col(WorkItem.version) > since_version)
            if parent_id is not None:
                statement = statement.where(WorkItem.parent_id == parent_id)
            if limit is not None:
                statement = statement.limit(limit)
            rows = db.exec(statement).all()
            return to_work_item_views(db, rows)

    def next_delegable(
        self,
        project_id: str,
        *,
        include_human_required: bool = False,
        limit: int = 10,
    ) -> list[WorkItemView]:
        """Pending items with no live claim, highest priority first."""

        with self.database.session() as db:
            rows = delegable_rows_in(
                db,
                project_id,
                include_human_required=include_human_required,
                limit=limit,
            )
            return to_work_item_views(db, rows)


def load_item_in(db: Session, item_id: str) -> WorkItem:
    row = db.get(WorkItem, item_id)
    if row is None:
        raise NotFoundError(f"Work item not found: {item_id}")
    return row


def save_item_in(
    db: Session,
    row: WorkItem,
    *,
    expected_version: int,
    values: dict[str, Any],
) -> WorkItem:
    """Compare-and-swap write that bumps the version by one."""

    result = db.exec(
        sa_update(WorkItem)
        .where(
            col(WorkItem.item_id) == row.item_id,
            col(WorkItem.version) == expected_version,
        )
        .values(
            version=expected_version + 1,
            updated_at=to_db_datetime(utc_now()),
            **values,
        ),
    )
    if result.rowcount != 1:
        current = db.exec(select(WorkItem.version).where(WorkItem.item_id == row.item_id)).one()
        raise VersionConflictError(
            item_id=row.item_id,
            expected_version=expected_version,
            current_version=current,
        )
    db.refresh(row)
    return row


def transition_item_in(
    db: Session,
    outbox: EventOutbox,
    row: WorkItem,
    target: WorkItemStatus,
    *,
    values: dict[str, Any] | None = None,
    details: dict[str, Any] | None = None,
) -> WorkItem:
    """Move an item along the board state machine inside the caller's transaction."""

    previous = WorkItemStatus(row.status)
    _check_transition(row, target)
    payload: dict[str, Any] = {"status": target.value, **(values or {})}
    if target == WorkItemStatus.COMPLETED:
        payload["completed_at"] = to_db_datetime(utc_now())
    save_item_in(db, row, expected_version=row.version, values=payload)
    outbox.record(
        db,
        project_id=row.project_id,
        entity_type=EntityType.WORK_ITEM,
        entity_id=row.item_id,
        event_type="task.status_changed",
        status_from=previous.value,
        status_to=target.value,
        details={"version": row.version, **(details or {})},
    )
    return row


def dependencies_met_in(db: Session, blocked_by: Iterable[str]) -> bool:
    ids = set(blocked_by)
    if not ids:
        return True
    completed = db.exec(
        select(WorkItem.item_id).where(
            col(WorkItem.item_id).in_(ids),
            WorkItem.status == WorkItemStatus.COMPLETED.value,
        ),
    ).all()
    return len(set(completed)) == len(ids)


def unblock_dependents_in(db: Session, outbox: EventOutbox, completed: WorkItem) -> list[str]:
    """Return blocked items waiting on ``completed`` to pending once all their blockers are done."""

    candidates = db.exec(
        select(WorkItem).where(
            WorkItem.project_id == completed.project_id,
            WorkItem.status == WorkItemStatus.BLOCKED.value,
            col(WorkItem.blocked_by_json).is_not(None),
        ),
    ).all()
    released: list[str] = []
    for candidate in candidates:
        blockers = load_json_list(candidate.blocked_by_json)
        if completed.item_id not in blockers or not dependencies_met_in(db, blockers):
            continue
        transition_item_in(
            db,
            outbox,
            candidate,
            WorkItemStatus.PENDING,
            details={"reason": "blocking set satisfied", "unblocked_by": completed.item_id},
        )
        released.append(candidate.item_id)
    return released


def delegable_rows_in(
    db: Session,
    project_id: str,
    *,
    include_human_required: bool,
    limit: int | None = None,
) -> list[WorkItem]:
    statement = (
        select(WorkItem)
        .where(
            WorkItem.project_id == project_id,
            WorkItem.status == WorkItemStatus.PENDING.value,
        )
        .order_by(PRIORITY_ORDER, col(WorkItem.created_at).asc())
    )
    if not include_human_required:
        statement = statement.where(
            WorkItem.dependency_class == DependencyClass.AGENT_CAPABLE.value,
        )
    rows = db.exec(statement).all()
    claimed = claimed_item_ids_in(db, [row.item_id for row in rows])
    eligible = [row for row in rows if row.item_id not in claimed]
    return eligible[:limit] if limit is not None else eligible


def claimed_item_ids_in(db: Session, item_ids: Iterable[str]) -> set[str]:
    ids = list(item_ids)
    if not ids:
        return set()
    rows = db.exec(
        select(DelegationRequest.item_id).where(
            col(DelegationRequest.item_id).in_(ids),
            DelegationRequest.status == DelegationStatus.CLAIMED.value,
        ),
    ).all()
    return set(rows)


def to_work_item_view(db: Session, row: WorkItem, *, include_audit: bool = False) -> WorkItemView:
    return to_work_item_views(db, [row], include_audit=include_audit)[0]


def to_work_item_views(
    db: Session,
    rows: Iterable[WorkItem],
    *,
    include_audit: bool = False,
) -> list[WorkItemView]:
    rows = list(rows)
    if not rows:
        return []
    ids = [row.item_id for row in rows]
    counts = {
        parent_id: (int(total), int(done or 0))
        for parent_id, total, done in db.exec(
            select(
                WorkItem.parent_id,
                func.count(),
                func.sum(
                    case((WorkItem.status == WorkItemStatus.COMPLETED.value, 1), else_=0),
                ),
            )
            .where(col(WorkItem.parent_id).in_(ids))
            .group_by(WorkItem.parent_id),
        ).all()
    }
    audit: dict[str, list[AuditEntryView]] = {}
    if include_audit:
        entries = db.exec(
            select(WorkItemAuditEntry)
            .where(col(WorkItemAuditEntry.item_id).in_(ids))
            .order_by(col(WorkItemAuditEntry.created_at).asc(), col(WorkItemAuditEntry.id).asc()),
        ).all()
        for entry in entries:
            audit.setdefault(entry.item_id, []).append(
                AuditEntryView(
                    entry_id=entry.id or 0,
                    item_id=entry.item_id,
                    agent_id=entry.agent_id,
                    note=entry.note,
                    created_at=to_utc_aware_datetime(entry.created_at),
                ),
            )
    views = []
    for row in rows:
        total, done = counts.get(row.item_id, (0, 0))
        views.append(
            WorkItemView(
                item_id=row.item_id,
                project_id=row.project_id,
                title=row.title,
                description=row.description,
                status=WorkItemStatus(row.status),
                dependency_class=DependencyClass(row.dependency_class),
                priority=Priority(row.priority),
                parent_id=row.parent_id,
                blocked_by=tuple(load_json_list(row.blocked_by_json)),
                tags=tuple(load_json_list(row.tags_json)),
                client_id=row.client_id,
                version=row.version,
                completed_at=optional_utc(row.completed_at),
                created_at=to_utc_aware_datetime(row.created_at),
                updated_at=to_utc_aware_datetime(row.updated_at),
                subtask_count=total,
                completed_subtask_count=done,
                audit_trail=tuple(audit.get(row.item_id, ())),
            ),
        )
    return views


def _check_version(row: WorkItem, expected_version: int) -> None:
    if row.version != expected_version:
        raise VersionConflictError(
            item_id=row.item_id,
            expected_version=expected_version,
            current_version=row.version,
        )


def _check_transition(row: WorkItem, target: WorkItemStatus) -> None:
    current = WorkItemStatus(row.status)
    if target not in WORK_ITEM_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Work item {row.item_id} cannot move from {current.value} to {target.value}.",
        )


def _check_release_in(db: Session, row: WorkItem, target: WorkItemStatus) -> None:
    # A claimed item goes back to the board only through cancel or expire.
    if (
        row.status == WorkItemStatus.IN_PROGRESS.value
        and target in {WorkItemStatus.PENDING, WorkItemStatus.BLOCKED}
        and claimed_item_ids_in(db, [row.item_id])
    ):
        raise InvalidTransitionError(
            f"Work item {row.item_id} is claimed; cancel or expire its delegation first.",
        )


def _normalize_ids(ids: Iterable[str], *, exclude: str) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for raw in ids:
        value = raw.strip()
        if value and value != exclude:
            seen.setdefault(value, None)
    return tuple(seen)
