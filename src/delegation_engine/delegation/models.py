"""Domain models for container pools, sessions, work items and delegation requests."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from delegation_engine.delegation.errors import PolicyViolationError

HANDOFF_BUFFER_PERCENT = 10
DEFAULT_CONTEXT_MAX_TOKENS = 100_000

MIN_WARM_POOL_SIZE = 1
MAX_WARM_POOL_SIZE = 10
MAX_POOL_SIZE_LIMIT = 20
MIN_CONTEXT_THRESHOLD_PERCENT = 50
MAX_CONTEXT_THRESHOLD_PERCENT = 95


class PoolStatus(str, Enum):
    """Admission states of a container pool."""

    ACTIVE = "active"
    PAUSED = "paused"
    DRAINING = "draining"


class SessionStatus(str, Enum):
    """Container session lifecycle states."""

    STARTING = "starting"
    ACTIVE = "active"
    IDLE = "idle"
    HANDOFF_PENDING = "handoff_pending"
    RETIRED = "retired"
    ERROR = "error"


LIVE_SESSION_STATUSES = frozenset(
    {SessionStatus.STARTING, SessionStatus.ACTIVE, SessionStatus.IDLE},
)
TERMINAL_SESSION_STATUSES = frozenset({SessionStatus.RETIRED, SessionStatus.ERROR})


class WorkItemStatus(str, Enum):
    """Task board states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


WORK_ITEM_TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    WorkItemStatus.PENDING: frozenset(
        {WorkItemStatus.IN_PROGRESS, WorkItemStatus.BLOCKED, WorkItemStatus.COMPLETED},
    ),
    WorkItemStatus.IN_PROGRESS: frozenset(
        {WorkItemStatus.COMPLETED, WorkItemStatus.BLOCKED, WorkItemStatus.PENDING},
    ),
    WorkItemStatus.BLOCKED: frozenset({WorkItemStatus.PENDING}),
    WorkItemStatus.COMPLETED: frozenset(),
}


class DependencyClass(str, Enum):
    """Who can carry a work item to completion."""

    HUMAN_REQUIRED = "HUMAN_REQUIRED"
    AGENT_CAPABLE = "AGENT_CAPABLE"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK = {
    Priority.URGENT: 1,
    Priority.HIGH: 2,
    Priority.NORMAL: 3,
    Priority.LOW: 4,
}


class DelegationStatus(str, Enum):
    """Delegation request lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


ACTIVE_DELEGATION_STATUSES = frozenset(
    {DelegationStatus.PENDING, DelegationStatus.APPROVED, DelegationStatus.CLAIMED},
)
TERMINAL_DELEGATION_STATUSES = frozenset(
    {DelegationStatus.COMPLETED, DelegationStatus.CANCELLED, DelegationStatus.EXPIRED},
)


class ContextAction(str, Enum):
    """Recommendation returned for each context usage report."""

    CONTINUE = "continue"
    PREPARE_HANDOFF = "prepare_handoff"
    HANDOFF_REQUIRED = "handoff_required"


class EntityType(str, Enum):
    POOL = "pool"
    SESSION = "session"
    WORK_ITEM = "work_item"
    DELEGATION = "delegation"


@dataclass(slots=True, frozen=True)
class ContextReport:
    """Outcome of a context usage report."""

    action: ContextAction
    reason: str
    context_percent: float


def compute_context_percent(used: int, maximum: int) -> float:
    """Return consumed context as a percentage rounded to two decimals."""

    if maximum <= 0:
        raise PolicyViolationError(f"Context max tokens must be > 0, got {maximum}.")
    if used < 0:
        raise PolicyViolationError(f"Context used tokens must be >= 0, got {used}.")
    return round(used / maximum * 100, 2)


def recommend_context_action(context_percent: float, threshold_percent: int) -> ContextReport:
    """Map context usage onto the continue / prepare / required zones.

    The warning band is a fixed ``HANDOFF_BUFFER_PERCENT`` points below the
    pool threshold regardless of how low the threshold is configured.
    """

    shown = round(context_percent, 1)
    if context_percent >= threshold_percent:
        return ContextReport(
            action=ContextAction.HANDOFF_REQUIRED,
            reason=f"Context at {shown}%",
            context_percent=context_percent,
        )
    if context_percent >= threshold_percent - HANDOFF_BUFFER_PERCENT:
        return ContextReport(
            action=ContextAction.PREPARE_HANDOFF,
            reason=f"Context approaching threshold at {shown}%",
            context_percent=context_percent,
        )
    return ContextReport(
        action=ContextAction.CONTINUE,
        reason=f"Context at {shown}% - capacity available",
        context_percent=context_percent,
    )


def progress_percentage(*, completed: int, total: int) -> int:
    """Subtask completion ratio as a whole percentage (half rounds up)."""

    if total <= 0:
        return 0
    return math.floor(completed / total * 100 + 0.5)


@dataclass(slots=True)
class PoolConfig:
    """Operator-supplied pool policy."""

    warm_pool_size: int = 1
    max_pool_size: int = 3
    context_threshold_percent: int = 80
    auto_delegate_enabled: bool = True
    skip_user_required: bool = True
    config: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        """Raise ``PolicyViolationError`` for any out-of-range value."""

        if not MIN_WARM_POOL_SIZE <= self.warm_pool_size <= MAX_WARM_POOL_SIZE:
            raise PolicyViolationError(
                f"warm_pool_size must be between {MIN_WARM_POOL_SIZE} and "
                f"{MAX_WARM_POOL_SIZE}, got {self.warm_pool_size}.",
            )
        if not 1 <= self.max_pool_size <= MAX_POOL_SIZE_LIMIT:
            raise PolicyViolationError(
                f"max_pool_size must be between 1 and {MAX_POOL_SIZE_LIMIT}, "
                f"got {self.max_pool_size}.",
            )
        if self.max_pool_size < self.warm_pool_size:
            raise PolicyViolationError(
                "max_pool_size must be greater than or equal to warm_pool_size "
                f"({self.max_pool_size} < {self.warm_pool_size}).",
            )
        if not (
            MIN_CONTEXT_THRESHOLD_PERCENT
            <= self.context_threshold_percent
            <= MAX_CONTEXT_THRESHOLD_PERCENT
        ):
            raise PolicyViolationError(
                "context_threshold_percent must be between "
                f"{MIN_CONTEXT_THRESHOLD_PERCENT} and {MAX_CONTEXT_THRESHOLD_PERCENT}, "
                f"got {self.context_threshold_percent}.",
            )


@dataclass(slots=True, frozen=True)
class PoolView:
    """Pool snapshot with live session counts."""

    pool_id: str
    project_id: str
    status: PoolStatus
    warm_pool_size: int
    max_pool_size: int
    context_threshold_percent: int
    auto_delegate_enabled: bool
    skip_user_required: bool
    config: dict[str, Any]
    active_sessions: int
    idle_sessions: int
    last_activity_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def can_spawn_new_session(self) -> bool:
        return self.status == PoolStatus.ACTIVE and self.active_sessions < self.max_pool_size

    @property
    def needs_warmup(self) -> bool:
        return self.status == PoolStatus.ACTIVE and self.idle_sessions < self.warm_pool_size

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "project_id": self.project_id,
            "status": self.status.value,
            "warm_pool_size": self.warm_pool_size,
            "max_pool_size": self.max_pool_size,
            "context_threshold_percent": self.context_threshold_percent,
            "auto_delegate_enabled": self.auto_delegate_enabled,
            "skip_user_required": self.skip_user_required,
            "active_sessions": self.active_sessions,
            "idle_sessions": self.idle_sessions,
            "can_spawn": self.can_spawn_new_session,
            "needs_warmup": self.needs_warmup,
            "last_activity_at": _iso(self.last_activity_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "config": dict(self.config),
        }


@dataclass(slots=True, frozen=True)
class SessionView:
    """Container session snapshot, including the pool threshold it is judged by."""

    session_id: str
    pool_id: str
    project_id: str
    container_id: str | None
    status: SessionStatus
    context_used_tokens: int
    context_max_tokens: int
    context_percent: float
    context_threshold_percent: int
    last_context_check_at: datetime | None
    current_task_id: str | None
    tasks_completed: int
    handoff_from_id: str | None
    handoff_to_id: str | None
    handoff_summary: str | None
    error_reason: str | None
    metadata: dict[str, Any]
    last_activity_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def approaching_threshold(self) -> bool:
        return self.context_percent >= self.context_threshold_percent - HANDOFF_BUFFER_PERCENT

    @property
    def at_threshold(self) -> bool:
        return self.context_percent >= self.context_threshold_percent

    @property
    def context_available_percent(self) -> float:
        return 100.0 - self.context_percent

    @property
    def can_accept_task(self) -> bool:
        return (
            self.status == SessionStatus.IDLE
            and self.current_task_id is None
            and not self.at_threshold
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "pool_id": self.pool_id,
            "project_id": self.project_id,
            "container_id": self.container_id,
            "status": self.status.value,
            "context": {
                "used_tokens": self.context_used_tokens,
                "max_tokens": self.context_max_tokens,
                "percent": round(self.context_percent, 2),
                "threshold_percent": self.context_threshold_percent,
                "last_check": _iso(self.last_context_check_at),
            },
            "current_task_id": self.current_task_id,
            "tasks_completed": self.tasks_completed,
            "handoff_from_id": self.handoff_from_id,
            "handoff_to_id": self.handoff_to_id,
            "handoff_summary": self.handoff_summary,
            "error_reason": self.error_reason,
            "can_accept_task": self.can_accept_task,
            "approaching_threshold": self.approaching_threshold,
            "at_threshold": self.at_threshold,
            "last_activity_at": _iso(self.last_activity_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class WorkItemCreate:
    """Input payload for adding a work item to the board."""

    title: str
    description: str = ""
    item_id: str | None = None
    dependency_class: DependencyClass = DependencyClass.AGENT_CAPABLE
    priority: Priority = Priority.NORMAL
    parent_id: str | None = None
    blocked_by: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    client_id: str | None = None
    created_by_agent: str | None = None


@dataclass(slots=True)
class WorkItemChanges:
    """Partial update; ``None`` leaves a field untouched."""

    title: str | None = None
    description: str | None = None
    status: WorkItemStatus | None = None
    priority: Priority | None = None
    dependency_class: DependencyClass | None = None
    blocked_by: tuple[str, ...] | None = None
    tags: tuple[str, ...] | None = None
    client_id: str | None = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.title,
                self.description,
                self.status,
                self.priority,
                self.dependency_class,
                self.blocked_by,
                self.tags,
                self.client_id,
            )
        )


@dataclass(slots=True, frozen=True)
class AuditEntryView:
    """One write-once audit trail line."""

    entry_id: int
    item_id: str
    agent_id: str | None
    note: str
    created_at: datetime

    def render(self) -> str:
        agent = f" [{self.agent_id}]" if self.agent_id else ""
        return f"- {self.created_at.isoformat()}{agent}: {self.note}"


@dataclass(slots=True, frozen=True)
class WorkItemView:
    """Task board entry snapshot."""

    item_id: str
    project_id: str
    title: str
    description: str
    status: WorkItemStatus
    dependency_class: DependencyClass
    priority: Priority
    parent_id: str | None
    blocked_by: tuple[str, ...]
    tags: tuple[str, ...]
    client_id: str | None
    version: int
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    subtask_count: int = 0
    completed_subtask_count: int = 0
    audit_trail: tuple[AuditEntryView, ...] = ()

    @property
    def progress_percentage(self) -> int:
        return progress_percentage(
            completed=self.completed_subtask_count,
            total=self.subtask_count,
        )

    @property
    def audit_report(self) -> str:
        return "\n".join(entry.render() for entry in self.audit_trail)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "dependency_class": self.dependency_class.value,
            "priority": self.priority.value,
            "parent_id": self.parent_id,
            "blocked_by": list(self.blocked_by),
            "tags": list(self.tags),
            "client_id": self.client_id,
            "version": self.version,
            "progress_percentage": self.progress_percentage,
            "subtask_count": self.subtask_count,
            "completed_subtask_count": self.completed_subtask_count,
            "audit_trail": [entry.render() for entry in self.audit_trail],
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(slots=True, frozen=True)
class DelegationView:
    """Delegation request snapshot."""

    request_id: str
    project_id: str
    item_id: str
    session_id: str | None
    status: DelegationStatus
    requested_by_session: str | None
    claimed_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    cancel_reason: str | None
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "project_id": self.project_id,
            "item_id": self.item_id,
            "session_id": self.session_id,
            "status": self.status.value,
            "requested_by_session": self.requested_by_session,
            "claimed_at": _iso(self.claimed_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(slots=True, frozen=True)
class ClaimResult:
    """Claim outcome; contention is reported here, never raised."""

    claimed: bool
    request_id: str | None = None
    reason: str | None = None


@dataclass(slots=True, frozen=True)
class EngineEventView:
    """Published state transition notification."""

    event_id: int
    project_id: str
    entity_type: EntityType
    entity_id: str
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
    published_at: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "project_id": self.project_id,
            "previous_status": self.status_from,
            "new_status": self.status_to,
            "timestamp": self.created_at.isoformat(),
            "data": dict(self.details),
        }


class OutcomeStatus(str, Enum):
    DELEGATED = "delegated"
    SKIPPED = "skipped"
    NO_SESSION = "no_session"


@dataclass(slots=True, frozen=True)
class DelegationOutcome:
    """Result of trying to hand one work item to a session."""

    status: OutcomeStatus
    item_id: str
    session_id: str | None = None
    request_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "item_id": self.item_id,
            "session_id": self.session_id,
            "request_id": self.request_id,
            "reason": self.reason,
        }


@dataclass(slots=True)
class DelegationRunSummary:
    """Aggregated outcomes of one auto-delegation pass."""

    delegated: list[DelegationOutcome] = field(default_factory=list)
    skipped: list[DelegationOutcome] = field(default_factory=list)
    no_session: list[DelegationOutcome] = field(default_factory=list)
    error: str | None = None

    def add(self, outcome: DelegationOutcome) -> None:
        if outcome.status == OutcomeStatus.DELEGATED:
            self.delegated.append(outcome)
        elif outcome.status == OutcomeStatus.SKIPPED:
            self.skipped.append(outcome)
        else:
            self.no_session.append(outcome)

    def to_dict(self) -> dict[str, Any]:
        if self.error is not None:
            return {"error": self.error}
        return {
            "delegated": [outcome.to_dict() for outcome in self.delegated],
            "skipped": [outcome.to_dict() for outcome in self.skipped],
            "no_session": [outcome.to_dict() for outcome in self.no_session],
        }


@dataclass(slots=True, frozen=True)
class HandoffInstructions:
    """What a session at its context threshold should do next."""

    session_id: str
    current_task_id: str | None
    context_percent: float
    summary_prompt: str
    pending_tasks: tuple[dict[str, Any], ...] = ()
    action: str = "handoff"

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "session_id": self.session_id,
            "current_task": self.current_task_id,
            "context_percent": self.context_percent,
            "summary_prompt": self.summary_prompt,
            "pending_tasks": [dict(task) for task in self.pending_tasks],
        }


@dataclass(slots=True, frozen=True)
class ContextCheck:
    """Context report plus handoff instructions when the threshold was crossed."""

    report: ContextReport
    session: SessionView
    handoff: HandoffInstructions | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.report.action.value,
            "reason": self.report.reason,
            "context_percent": self.report.context_percent,
            "session": self.session.to_dict(),
            "handoff": self.handoff.to_dict() if self.handoff is not None else None,
        }


@dataclass(slots=True, frozen=True)
class HandoffResult:
    predecessor: SessionView
    successor: SessionView
    request_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "predecessor": self.predecessor.to_dict(),
            "successor": self.successor.to_dict(),
            "request_id": self.request_id,
        }


@dataclass(slots=True, frozen=True)
class DelegationStats:
    """Project-level delegation counters."""

    pool_status: PoolStatus
    active_sessions: int
    idle_sessions: int
    total_tasks: int
    agent_capable: int
    pending_delegable: int
    total_delegations: int
    completed_delegations: int
    active_delegations: int
    avg_tasks_per_session: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool_status": self.pool_status.value,
            "active_sessions": self.active_sessions,
            "idle_sessions": self.idle_sessions,
            "total_tasks": self.total_tasks,
            "agent_capable": self.agent_capable,
            "pending_delegable": self.pending_delegable,
            "total_delegations": self.total_delegations,
            "completed_delegations": self.completed_delegations,
            "active_delegations": self.active_delegations,
            "avg_tasks_per_session": self.avg_tasks_per_session,
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
