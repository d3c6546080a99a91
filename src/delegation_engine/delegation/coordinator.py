"""Auto-delegation, context-threshold handling and session handoff."""

from __future__ import annotations

import logging
from contextlib import nullcontext
from typing import Any

from sqlalchemy import func
from sqlmodel import Session, col, select

from delegation_engine.config import CoordinatorSettings
from delegation_engine.delegation.claims import claimed_request_in
from delegation_engine.delegation.delegations import DelegationRepository, transfer_claim_in
from delegation_engine.delegation.errors import InvalidTransitionError
from delegation_engine.delegation.events import EventOutbox
from delegation_engine.delegation.models import (
    ACTIVE_DELEGATION_STATUSES,
    LIVE_SESSION_STATUSES,
    TERMINAL_SESSION_STATUSES,
    ContextAction,
    ContextCheck,
    DelegationOutcome,
    DelegationRunSummary,
    DelegationStats,
    DelegationStatus,
    DependencyClass,
    EntityType,
    HandoffInstructions,
    HandoffResult,
    OutcomeStatus,
    PoolStatus,
    PoolView,
    SessionStatus,
    SessionView,
    WorkItemView,
)
from delegation_engine.delegation.pools import PoolRepository
from delegation_engine.delegation.sessions import (
    SessionRepository,
    assign_task_in,
    load_pool_in,
    load_session_in,
    mark_handoff_pending_in,
    retire_in,
    spawn_in,
    successor_id_in,
    to_session_view,
)
from delegation_engine.delegation.work_items import WorkItemRepository, delegable_rows_in
from delegation_engine.storage.database import Database
from delegation_engine.storage.sqlmodel_models import (
    ContainerSession,
    DelegationRequest,
    WorkItem,
)

logger = logging.getLogger(__name__)

DESCRIPTION_PREVIEW_CHARS = 100


class DelegationCoordinator:
    """Drives work from the board onto pool sessions and moves it across handoffs."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        database: Database,
        outbox: EventOutbox,
        pools: PoolRepository,
        sessions: SessionRepository,
        work_items: WorkItemRepository,
        delegations: DelegationRepository,
        settings: CoordinatorSettings | None = None,
    ) -> None:
        self.database = database
        self.outbox = outbox
        self.pools = pools
        self.sessions = sessions
        self.work_items = work_items
        self.delegations = delegations
        self.settings = settings if settings is not None else CoordinatorSettings()

    def process_pending_delegations(
        self,
        project_id: str,
        *,
        limit: int | None = None,
    ) -> DelegationRunSummary:
        """Claim pending agent-capable items for available sessions, best first.

        Stops at the first item for which no session is available: every later
        item would hit the same wall.
        """

        pool = self.pools.find_pool(project_id)
        if pool is None:
            return DelegationRunSummary(error="No container pool configured")
        if pool.status != PoolStatus.ACTIVE:
            return DelegationRunSummary(error=f"Pool is {pool.status.value}")
        if not pool.auto_delegate_enabled:
            return DelegationRunSummary(error="Auto-delegation disabled")

        summary = DelegationRunSummary()
        batch = self.work_items.next_delegable(
            project_id,
            limit=limit if limit is not None else self.settings.batch_limit,
        )
        for item in batch:
            outcome = self._delegate(pool, item)
            summary.add(outcome)
            if outcome.status == OutcomeStatus.NO_SESSION:
                break
        logger.info(
            "Delegation pass for %s: delegated=%s skipped=%s no_session=%s",
            project_id,
            len(summary.delegated),
            len(summary.skipped),
            len(summary.no_session),
        )
        return summary

    def delegate_task(self, item_id: str) -> DelegationOutcome:
        item = self.work_items.get_work_item(item_id)
        pool = self.pools.get_pool(item.project_id)
        return self._delegate(pool, item)

    def optimal_session_for_new_task(self, project_id: str) -> SessionView | None:
        """Idle session with the widest context margin for a fresh task."""

        return self.pools.find_available_session(
            project_id,
            buffer_percent=self.settings.optimal_session_buffer_percent,
        )

    def report_context(self, session_id: str, *, used: int, maximum: int) -> ContextCheck:
        """Store a context report; a busy session past its threshold is sent to handoff."""

        report = self.sessions.update_context_usage(session_id, used=used, maximum=maximum)
        session = self.sessions.get_session(session_id)
        handoff = None
        if (
            report.action == ContextAction.HANDOFF_REQUIRED
            and session.current_task_id is not None
            and session.status == SessionStatus.ACTIVE
        ):
            handoff = self.handle_threshold_reached(session_id)
            session = self.sessions.get_session(session_id)
        return ContextCheck(report=report, session=session, handoff=handoff)

    def handle_threshold_reached(self, session_id: str) -> HandoffInstructions:
        with self.database.session() as db:
            row = load_session_in(db, session_id)
            pool = load_pool_in(db, row.pool_id)
            mark_handoff_pending_in(db, self.outbox, row, pool)
            self.outbox.record(
                db,
                project_id=pool.project_id,
                entity_type=EntityType.SESSION,
                entity_id=session_id,
                event_type="session.handoff_needed",
                status_from=SessionStatus.HANDOFF_PENDING.value,
                status_to=SessionStatus.HANDOFF_PENDING.value,
                details={
                    "context_percent": row.context_percent,
                    "current_task": row.current_task_id,
                },
            )
            self.outbox.commit(db)
            session = to_session_view(db, row, pool)
            pending = delegable_rows_in(
                db,
                pool.project_id,
                include_human_required=False,
                limit=self.settings.handoff_pending_task_limit,
            )
            pending_tasks = tuple(
                {
                    "item_id": item.item_id,
                    "priority": item.priority,
                    "description": _truncate(item.description, DESCRIPTION_PREVIEW_CHARS),
                }
                for item in pending
            )
        logger.info(
            "Session %s reached its context threshold at %.2f%%; handoff requested",
            session_id,
            session.context_percent,
        )
        return HandoffInstructions(
            session_id=session_id,
            current_task_id=session.current_task_id,
            context_percent=session.context_percent,
            summary_prompt=build_summary_prompt(session),
            pending_tasks=pending_tasks,
        )

    def handoff(  # noqa: PLR0913
        self,
        old_session_id: str,
        *,
        summary: str,
        new_session_id: str | None = None,
        container_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> HandoffResult:
        """Retire ``old_session_id`` and move its claimed work to a fresh successor.

        Retirement happens before the successor is admitted so the live count
        never exceeds the pool maximum, and all of it commits or rolls back
        together.
        """

        locked_task_id = self.sessions.get_session(old_session_id).current_task_id
        guard = self.delegations.locks.hold(locked_task_id) if locked_task_id else nullcontext()
        with guard, self.database.session() as db:
            old = load_session_in(db, old_session_id)
            if SessionStatus(old.status) in TERMINAL_SESSION_STATUSES:
                raise InvalidTransitionError(
                    f"Session {old_session_id} is {old.status} and cannot hand off.",
                )
            if successor_id_in(db, old_session_id) is not None:
                raise InvalidTransitionError(
                    f"Session {old_session_id} already has a handoff successor.",
                )
            pool = load_pool_in(db, old.pool_id)
            task_id = old.current_task_id
            if task_id != locked_task_id:
                raise InvalidTransitionError(
                    f"Session {old_session_id} changed task during handoff "
                    f"({locked_task_id} -> {task_id}); retry.",
                )
            request = claimed_request_in(db, task_id) if task_id else None
            if request is not None and request.session_id != old_session_id:
                request = None

            retire_in(db, self.outbox, old, pool, summary=summary, release_claims=False)
            successor = spawn_in(
                db,
                self.outbox,
                pool,
                session_id=new_session_id,
                container_id=container_id,
                metadata=metadata,
                context_max_tokens=old.context_max_tokens,
                handoff_from_id=old_session_id,
            )
            if successor is None:
                raise InvalidTransitionError(
                    f"Pool {pool.pool_id} has no capacity for a handoff successor.",
                )
            if request is not None:
                transfer_claim_in(db, self.outbox, request, successor, pool)
            elif task_id is not None:
                assign_task_in(db, self.outbox, successor, pool, task_id)
            self.outbox.record(
                db,
                project_id=pool.project_id,
                entity_type=EntityType.SESSION,
                entity_id=old_session_id,
                event_type="session.handoff",
                status_from=SessionStatus.RETIRED.value,
                status_to=SessionStatus.RETIRED.value,
                details={
                    "handoff_to": successor.session_id,
                    "task_id": task_id,
                    "request_id": request.request_id if request is not None else None,
                },
            )
            self.outbox.commit(db)
            logger.info(
                "Session %s handed off to %s (task=%s)",
                old_session_id,
                successor.session_id,
                task_id,
            )
            return HandoffResult(
                predecessor=to_session_view(db, old, pool),
                successor=to_session_view(db, successor, pool),
                request_id=request.request_id if request is not None else None,
            )

    def complete_delegation(self, item_id: str) -> bool:
        """Close the claimed request for ``item_id``; False when nothing is claimed."""

        claimed = self.delegations.claimed_request(item_id)
        if claimed is None:
            return False
        self.delegations.complete(claimed.request_id)
        return True

    def stats(self, project_id: str) -> DelegationStats | None:
        pool = self.pools.find_pool(project_id)
        if pool is None:
            return None
        with self.database.session() as db:
            return _collect_stats(db, pool)

    def status(self, project_id: str) -> dict[str, Any]:
        """Dashboard snapshot: pool, live sessions, delegable backlog, active claims."""

        pool = self.pools.find_pool(project_id)
        if pool is None:
            return {"pool": None}
        sessions = self.sessions.list_sessions(project_id, statuses=LIVE_SESSION_STATUSES)
        pending = self.work_items.next_delegable(project_id, limit=self.settings.batch_limit)
        active = self.delegations.list_requests(
            project_id,
            statuses=ACTIVE_DELEGATION_STATUSES,
        )
        stats = self.stats(project_id)
        return {
            "pool": pool.to_dict(),
            "sessions": [session.to_dict() for session in sessions],
            "pending_tasks": [item.to_dict() for item in pending],
            "active_delegations": [request.to_dict() for request in active],
            "stats": stats.to_dict() if stats is not None else {},
        }

    def _delegate(self, pool: PoolView, item: WorkItemView) -> DelegationOutcome:
        if item.dependency_class == DependencyClass.HUMAN_REQUIRED and pool.skip_user_required:
            return DelegationOutcome(
                status=OutcomeStatus.SKIPPED,
                item_id=item.item_id,
                reason=DependencyClass.HUMAN_REQUIRED.value,
            )
        session = self.pools.find_available_session(pool.project_id)
        if session is None:
            reason = (
                "spawn_needed"
                if self.pools.can_spawn_new_session(pool.project_id)
                else "pool_exhausted"
            )
            return DelegationOutcome(
                status=OutcomeStatus.NO_SESSION,
                item_id=item.item_id,
                reason=reason,
            )
        try:
            result = self.delegations.atomic_claim(item.item_id, session.session_id)
        except InvalidTransitionError as error:
            # The session was taken between lookup and claim.
            logger.info("Session %s became unavailable: %s", session.session_id, error)
            return DelegationOutcome(
                status=OutcomeStatus.SKIPPED,
                item_id=item.item_id,
                session_id=session.session_id,
                reason="session_unavailable",
            )
        if not result.claimed:
            return DelegationOutcome(
                status=OutcomeStatus.SKIPPED,
                item_id=item.item_id,
                reason="claim_failed",
            )
        self._record_auto_assignment(pool, item, session, result.request_id)
        return DelegationOutcome(
            status=OutcomeStatus.DELEGATED,
            item_id=item.item_id,
            session_id=session.session_id,
            request_id=result.request_id,
        )

    def _record_auto_assignment(
        self,
        pool: PoolView,
        item: WorkItemView,
        session: SessionView,
        request_id: str | None,
    ) -> None:
        with self.database.session() as db:
            self.outbox.record(
                db,
                project_id=pool.project_id,
                entity_type=EntityType.DELEGATION,
                entity_id=request_id or item.item_id,
                event_type="delegation.auto_assigned",
                status_from=None,
                status_to=DelegationStatus.CLAIMED.value,
                details={
                    "item_id": item.item_id,
                    "session_id": session.session_id,
                    "context_before": session.context_percent,
                },
            )
            self.outbox.commit(db)


def build_summary_prompt(session: SessionView) -> str:
    """Prompt asking a session to summarize its state for the successor."""

    return (
        "Generate a concise handoff summary for session transfer. Include:\n"
        "\n"
        f"1. **Current Task Status**: {session.current_task_id or 'None'}\n"
        "   - What has been completed\n"
        "   - Current progress point\n"
        "\n"
        f"2. **Context Used**: {round(session.context_percent, 1)}%\n"
        "   - Key decisions made during this session\n"
        "   - Important discoveries or blockers encountered\n"
        "\n"
        "3. **Recommended Next Steps**:\n"
        "   - Immediate actions for the next session\n"
        "   - Any pending items that need attention\n"
        "\n"
        "Keep the summary under 500 words to preserve context in the new session.\n"
    )


def _collect_stats(db: Session, pool: PoolView) -> DelegationStats:
    project_id = pool.project_id

    def count(statement: Any) -> int:
        return int(db.exec(statement).one())

    total_tasks = count(
        select(func.count()).select_from(WorkItem).where(col(WorkItem.project_id) == project_id),
    )
    agent_capable = count(
        select(func.count())
        .select_from(WorkItem)
        .where(
            col(WorkItem.project_id) == project_id,
            col(WorkItem.dependency_class) == DependencyClass.AGENT_CAPABLE.value,
        ),
    )
    pending_delegable = len(delegable_rows_in(db, project_id, include_human_required=False))
    total_delegations = count(
        select(func.count())
        .select_from(DelegationRequest)
        .where(col(DelegationRequest.project_id) == project_id),
    )
    completed_delegations = count(
        select(func.count())
        .select_from(DelegationRequest)
        .where(
            col(DelegationRequest.project_id) == project_id,
            col(DelegationRequest.status) == DelegationStatus.COMPLETED.value,
        ),
    )
    active_delegations = count(
        select(func.count())
        .select_from(DelegationRequest)
        .where(
            col(DelegationRequest.project_id) == project_id,
            col(DelegationRequest.status).in_(
                [status.value for status in ACTIVE_DELEGATION_STATUSES],
            ),
        ),
    )
    retired_count, retired_tasks = db.exec(
        select(func.count(), func.coalesce(func.sum(ContainerSession.tasks_completed), 0)).where(
            col(ContainerSession.pool_id) == pool.pool_id,
            col(ContainerSession.status) == SessionStatus.RETIRED.value,
        ),
    ).one()
    average = round(int(retired_tasks) / int(retired_count), 2) if retired_count else 0.0
    return DelegationStats(
        pool_status=pool.status,
        active_sessions=pool.active_sessions,
        idle_sessions=pool.idle_sessions,
        total_tasks=total_tasks,
        agent_capable=agent_capable,
        pending_delegable=pending_delegable,
        total_delegations=total_delegations,
        completed_delegations=completed_delegations,
        active_delegations=active_delegations,
        avg_tasks_per_session=average,
    )


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."
