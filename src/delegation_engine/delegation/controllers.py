"""Controllers for delegation-engine CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import rich_click as click

from delegation_engine.config import Settings
from delegation_engine.delegation.engine import DelegationEngine
from delegation_engine.delegation.errors import DelegationEngineError
from delegation_engine.delegation.models import (
    DelegationStatus,
    DependencyClass,
    PoolConfig,
    PoolView,
    Priority,
    SessionStatus,
    SessionView,
    WorkItemChanges,
    WorkItemCreate,
    WorkItemStatus,
    WorkItemView,
)


@dataclass(slots=True)
class PoolCommand:
    """CLI input addressing one project's pool."""

    db_path: Path | None
    project_id: str


@dataclass(slots=True)
class PoolConfigureCommand:
    """CLI input for pool policy changes."""

    db_path: Path | None
    project_id: str
    warm_pool_size: int | None = None
    max_pool_size: int | None = None
    context_threshold_percent: int | None = None
    auto_delegate_enabled: bool | None = None
    skip_user_required: bool | None = None


@dataclass(slots=True)
class PoolTeardownCommand:
    db_path: Path | None
    project_id: str
    summary: str | None


@dataclass(slots=True)
class SessionSpawnCommand:
    """CLI input for starting a session in a project's pool."""

    db_path: Path | None
    project_id: str
    session_id: str | None
    container_id: str | None
    context_max_tokens: int


@dataclass(slots=True)
class SessionCommand:
    db_path: Path | None
    session_id: str


@dataclass(slots=True)
class SessionListCommand:
    db_path: Path | None
    project_id: str
    status: str | None


@dataclass(slots=True)
class SessionContextCommand:
    """CLI input for a context usage report."""

    db_path: Path | None
    session_id: str
    used: int
    maximum: int


@dataclass(slots=True)
class SessionRetireCommand:
    db_path: Path | None
    session_id: str
    summary: str | None


@dataclass(slots=True)
class SessionErrorCommand:
    db_path: Path | None
    session_id: str
    reason: str


@dataclass(slots=True)
class SessionHandoffCommand:
    """CLI input for moving a session's work to a successor."""

    db_path: Path | None
    session_id: str
    summary: str
    new_session_id: str | None
    container_id: str | None


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for adding a work item."""

    db_path: Path | None
    project_id: str
    title: str
    description: str = ""
    item_id: str | None = None
    dependency_class: str = DependencyClass.AGENT_CAPABLE.value
    priority: str = Priority.NORMAL.value
    parent_id: str | None = None
    blocked_by: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    client_id: str | None = None
    agent_id: str | None = None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    project_id: str
    status: str | None
    since_version: int | None
    limit: int


@dataclass(slots=True)
class TaskCommand:
    db_path: Path | None
    item_id: str


@dataclass(slots=True)
class TaskUpdateCommand:
    """CLI input for a versioned work item edit."""

    db_path: Path | None
    item_id: str
    expected_version: int
    title: str | None = None
    description: str | None = None
    status: str | None = None
    priority: str | None = None


@dataclass(slots=True)
class TaskAuditCommand:
    db_path: Path | None
    item_id: str
    note: str
    agent_id: str | None
    expected_version: int | None


@dataclass(slots=True)
class TaskCompleteCommand:
    db_path: Path | None
    item_id: str
    agent_id: str | None
    note: str | None


@dataclass(slots=True)
class TaskBlockCommand:
    db_path: Path | None
    item_id: str
    blocked_by: tuple[str, ...]


@dataclass(slots=True)
class DelegationRequestCommand:
    db_path: Path | None
    item_id: str
    requested_by_session: str | None


@dataclass(slots=True)
class DelegationClaimCommand:
    db_path: Path | None
    item_id: str
    session_id: str


@dataclass(slots=True)
class DelegationMutateCommand:
    """CLI input for approve/complete/expire operations."""

    db_path: Path | None
    request_id: str


@dataclass(slots=True)
class DelegationCancelCommand:
    db_path: Path | None
    request_id: str
    reason: str | None


@dataclass(slots=True)
class DelegationListCommand:
    db_path: Path | None
    project_id: str
    status: str | None
    limit: int


@dataclass(slots=True)
class DelegationRunCommand:
    """CLI input for one auto-delegation pass."""

    db_path: Path | None
    project_id: str
    limit: int | None


@dataclass(slots=True)
class EventsListCommand:
    db_path: Path | None
    project_id: str
    since_event_id: int
    limit: int
    entity_id: str | None


@dataclass(slots=True)
class EventsRedeliverCommand:
    db_path: Path | None


class DelegationCliController:
    """Runs CLI commands against a freshly opened engine and renders text lines."""

    def configure_pool(self, command: PoolConfigureCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            current = engine.pools.find_pool(command.project_id)
            base = _pool_config(current) if current is not None else (
                settings.pool_defaults.to_pool_config()
            )
            config = PoolConfig(
                warm_pool_size=_pick(command.warm_pool_size, base.warm_pool_size),
                max_pool_size=_pick(command.max_pool_size, base.max_pool_size),
                context_threshold_percent=_pick(
                    command.context_threshold_percent,
                    base.context_threshold_percent,
                ),
                auto_delegate_enabled=_pick(
                    command.auto_delegate_enabled,
                    base.auto_delegate_enabled,
                ),
                skip_user_required=_pick(command.skip_user_required, base.skip_user_required),
                config=base.config,
            )
            pool = engine.pools.configure_pool(command.project_id, config)
        return ["Pool configured.", *_pool_lines(pool)]

    def show_pool(self, command: PoolCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            pool = engine.pools.find_pool(command.project_id)
        if pool is None:
            return [f"No pool for project: {command.project_id}"]
        return _pool_lines(pool)

    def pause_pool(self, command: PoolCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            pool = engine.pools.pause(command.project_id)
        return [f"Pool paused: {pool.pool_id}"]

    def resume_pool(self, command: PoolCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            pool = engine.pools.resume(command.project_id)
        return [f"Pool resumed: {pool.pool_id}"]

    def drain_pool(self, command: PoolCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            pool = engine.pools.drain(command.project_id)
        return [f"Pool draining: {pool.pool_id}"]

    def teardown_pool(self, command: PoolTeardownCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            pool = engine.pools.teardown_pool(command.project_id, command.summary)
        return [f"Pool torn down: {pool.pool_id}", *_pool_lines(pool)]

    def status(self, command: PoolCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            snapshot = engine.coordinator.status(command.project_id)
        return json.dumps(snapshot, indent=2, sort_keys=True).splitlines()

    def stats(self, command: PoolCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            stats = engine.coordinator.stats(command.project_id)
        if stats is None:
            return [f"No pool for project: {command.project_id}"]
        return [f"{key}: {value}" for key, value in stats.to_dict().items()]

    def spawn_session(self, command: SessionSpawnCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            engine.pools.ensure_pool(command.project_id)
            session = engine.sessions.spawn_session(
                command.project_id,
                session_id=command.session_id,
                container_id=command.container_id,
                context_max_tokens=command.context_max_tokens,
            )
        if session is None:
            return ["No capacity: pool is full or not active. Retry later."]
        return [f"Session spawned: {session.session_id}", *_session_lines(session)]

    def list_sessions(self, command: SessionListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        statuses = (
            frozenset({SessionStatus(command.status.strip().lower())})
            if command.status
            else None
        )
        with _engine(settings) as engine:
            sessions = engine.sessions.list_sessions(command.project_id, statuses=statuses)
        lines = [f"Sessions: {len(sessions)}"]
        for session in sessions:
            lines.append(
                f"  {session.session_id} status={session.status.value} "
                f"context={session.context_percent:.2f}% "
                f"task={session.current_task_id or '-'} "
                f"completed={session.tasks_completed}",
            )
        return lines

    def show_session(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            session = engine.sessions.get_session(command.session_id)
        return _session_lines(session)

    def heartbeat(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            session = engine.sessions.heartbeat(command.session_id)
        return [f"Session {session.session_id}: {session.status.value}"]

    def mark_idle(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            session = engine.sessions.mark_idle(command.session_id)
        return [f"Session {session.session_id}: {session.status.value}"]

    def report_context(self, command: SessionContextCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            check = engine.coordinator.report_context(
                command.session_id,
                used=command.used,
                maximum=command.maximum,
            )
        lines = [
            f"Action: {check.report.action.value}",
            f"Reason: {check.report.reason}",
            f"Context: {check.report.context_percent:.2f}%",
        ]
        if check.handoff is not None:
            lines.append("Handoff required. Summary prompt:")
            lines.extend(f"  {line}" for line in check.handoff.summary_prompt.splitlines())
        return lines

    def complete_session_task(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            session = engine.sessions.complete_task(command.session_id)
        return [
            f"Session {session.session_id}: {session.status.value} "
            f"(tasks completed: {session.tasks_completed})",
        ]

    def retire_session(self, command: SessionRetireCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            session = engine.sessions.retire(command.session_id, command.summary)
        return [f"Session retired: {session.session_id}"]

    def fail_session(self, command: SessionErrorCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            session = engine.sessions.mark_error(command.session_id, command.reason)
        return [f"Session {session.session_id}: error ({command.reason})"]

    def handoff(self, command: SessionHandoffCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            result = engine.coordinator.handoff(
                command.session_id,
                summary=command.summary,
                new_session_id=command.new_session_id,
                container_id=command.container_id,
            )
        return [
            f"Handoff: {result.predecessor.session_id} -> {result.successor.session_id}",
            f"Task: {result.successor.current_task_id or '-'}",
            f"Delegation: {result.request_id or '-'}",
        ]

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = WorkItemCreate(
            title=command.title,
            description=command.description,
            item_id=command.item_id,
            dependency_class=DependencyClass(command.dependency_class.strip().upper()),
            priority=Priority(command.priority.strip().lower()),
            parent_id=command.parent_id,
            blocked_by=command.blocked_by,
            tags=command.tags,
            client_id=command.client_id,
            created_by_agent=command.agent_id,
        )
        with _engine(settings) as engine:
            item = engine.work_items.create_work_item(command.project_id, payload)
        return [f"Task created: {item.item_id}", *_task_lines(item)]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = WorkItemStatus(command.status.strip().lower()) if command.status else None
        with _engine(settings) as engine:
            items = engine.work_items.list_work_items(
                command.project_id,
                status=status,
                since_version=command.since_version,
                limit=command.limit,
            )
        lines = [f"Tasks: {len(items)}"]
        for item in items:
            lines.append(
                f"  {item.item_id} [{item.priority.value}] status={item.status.value} "
                f"class={item.dependency_class.value} v{item.version} {item.title}",
            )
        return lines

    def show_task(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            item = engine.work_items.get_work_item(command.item_id)
        return _task_lines(item)

    def update_task(self, command: TaskUpdateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        changes = WorkItemChanges(
            title=command.title,
            description=command.description,
            status=WorkItemStatus(command.status.strip().lower()) if command.status else None,
            priority=Priority(command.priority.strip().lower()) if command.priority else None,
        )
        with _engine(settings) as engine:
            item = engine.work_items.update_work_item(
                command.item_id,
                expected_version=command.expected_version,
                changes=changes,
            )
        return [f"Task updated: {item.item_id} (version {item.version})"]

    def audit_task(self, command: TaskAuditCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            version = engine.work_items.append_audit_entry(
                command.item_id,
                command.note,
                agent_id=command.agent_id,
                expected_version=command.expected_version,
            )
        return [f"Audit entry added: {command.item_id} (version {version})"]

    def complete_task(self, command: TaskCompleteCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            item = engine.work_items.complete_work_item(
                command.item_id,
                agent_id=command.agent_id,
                note=command.note,
            )
            closed = engine.coordinator.complete_delegation(command.item_id)
        lines = [f"Task completed: {item.item_id}"]
        if closed:
            lines.append("Claimed delegation completed.")
        return lines

    def block_task(self, command: TaskBlockCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            item = engine.work_items.block(command.item_id, command.blocked_by)
        blockers = ", ".join(item.blocked_by) or "-"
        return [f"Task blocked: {item.item_id} (by {blockers})"]

    def request_delegation(self, command: DelegationRequestCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            request = engine.delegations.request_delegation(
                command.item_id,
                requested_by_session=command.requested_by_session,
            )
        return [f"Delegation request: {request.request_id} status={request.status.value}"]

    def claim(self, command: DelegationClaimCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            result = engine.delegations.atomic_claim(command.item_id, command.session_id)
        if result.claimed:
            return [f"Claimed: {command.item_id} by {command.session_id} ({result.request_id})"]
        return [f"Not claimed: {command.item_id} ({result.reason or 'unavailable'})"]

    def approve(self, command: DelegationMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            request = engine.delegations.approve(command.request_id)
        return [f"Delegation approved: {request.request_id}"]

    def complete_delegation(self, command: DelegationMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            request = engine.delegations.complete(command.request_id)
        return [f"Delegation completed: {request.request_id}"]

    def cancel_delegation(self, command: DelegationCancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            request = engine.delegations.cancel(command.request_id, command.reason)
        return [f"Delegation cancelled: {request.request_id}"]

    def expire_delegation(self, command: DelegationMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            request = engine.delegations.expire(command.request_id)
        return [f"Delegation expired: {request.request_id}"]

    def list_delegations(self, command: DelegationListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        statuses = (
            frozenset({DelegationStatus(command.status.strip().lower())})
            if command.status
            else None
        )
        with _engine(settings) as engine:
            requests = engine.delegations.list_requests(
                command.project_id,
                statuses=statuses,
                limit=command.limit,
            )
        lines = [f"Delegations: {len(requests)}"]
        for request in requests:
            lines.append(
                f"  {request.request_id} item={request.item_id} "
                f"status={request.status.value} session={request.session_id or '-'}",
            )
        return lines

    def run_delegations(self, command: DelegationRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            summary = engine.coordinator.process_pending_delegations(
                command.project_id,
                limit=command.limit,
            )
        if summary.error is not None:
            return [f"Delegation skipped: {summary.error}"]
        lines = [
            f"Delegated: {len(summary.delegated)}",
            f"Skipped: {len(summary.skipped)}",
            f"No session: {len(summary.no_session)}",
        ]
        for outcome in [*summary.delegated, *summary.skipped, *summary.no_session]:
            lines.append(
                f"  {outcome.item_id} {outcome.status.value} "
                f"session={outcome.session_id or '-'} reason={outcome.reason or '-'}",
            )
        return lines

    def list_events(self, command: EventsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            events = engine.outbox.list_events(
                project_id=command.project_id,
                since_event_id=command.since_event_id,
                limit=command.limit,
                entity_id=command.entity_id,
            )
        lines = [f"Events: {len(events)}"]
        for event in events:
            lines.append(
                f"  #{event.event_id} {event.created_at.isoformat()} {event.event_type} "
                f"{event.entity_id} {event.status_from or '-'} -> {event.status_to or '-'}",
            )
        return lines

    def redeliver_events(self, command: EventsRedeliverCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            delivered = engine.redeliver_pending_events()
        return [f"Redelivered events: {delivered}"]


def _pick(value: object, fallback: object) -> object:
    return fallback if value is None else value


def _pool_config(pool: PoolView) -> PoolConfig:
    return PoolConfig(
        warm_pool_size=pool.warm_pool_size,
        max_pool_size=pool.max_pool_size,
        context_threshold_percent=pool.context_threshold_percent,
        auto_delegate_enabled=pool.auto_delegate_enabled,
        skip_user_required=pool.skip_user_required,
        config=dict(pool.config),
    )


def _pool_lines(pool: PoolView) -> list[str]:
    return [
        f"Pool: {pool.pool_id}",
        f"Project: {pool.project_id}",
        f"Status: {pool.status.value}",
        f"Warm pool size: {pool.warm_pool_size}",
        f"Max pool size: {pool.max_pool_size}",
        f"Context threshold: {pool.context_threshold_percent}%",
        f"Auto-delegate: {pool.auto_delegate_enabled}",
        f"Skip human-required: {pool.skip_user_required}",
        f"Live sessions: {pool.active_sessions}",
        f"Idle sessions: {pool.idle_sessions}",
        f"Can spawn: {pool.can_spawn_new_session}",
        f"Needs warmup: {pool.needs_warmup}",
    ]


def _session_lines(session: SessionView) -> list[str]:
    return [
        f"Session: {session.session_id}",
        f"Status: {session.status.value}",
        f"Container: {session.container_id or '-'}",
        f"Context: {session.context_used_tokens}/{session.context_max_tokens} "
        f"({session.context_percent:.2f}%)",
        f"Current task: {session.current_task_id or '-'}",
        f"Tasks completed: {session.tasks_completed}",
        f"Handoff from: {session.handoff_from_id or '-'}",
        f"Handoff to: {session.handoff_to_id or '-'}",
        f"Can accept task: {session.can_accept_task}",
    ]


def _task_lines(item: WorkItemView) -> list[str]:
    lines = [
        f"Task: {item.item_id}",
        f"Title: {item.title}",
        f"Status: {item.status.value}",
        f"Priority: {item.priority.value}",
        f"Dependency: {item.dependency_class.value}",
        f"Version: {item.version}",
        f"Progress: {item.progress_percentage}%",
        f"Blocked by: {', '.join(item.blocked_by) or '-'}",
    ]
    if item.audit_trail:
        lines.append("Audit trail:")
        lines.extend(f"  {entry.render()}" for entry in item.audit_trail)
    return lines


@contextmanager
def _engine(settings: Settings) -> Iterator[DelegationEngine]:
    try:
        engine = DelegationEngine.from_settings(settings)
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    try:
        yield engine
    except DelegationEngineError as error:
        raise click.ClickException(str(error)) from error
    finally:
        engine.close()
