"""CLI entrypoint for delegation-engine."""

import logging
import os
from pathlib import Path

import rich_click as click

from delegation_engine import __version__
from delegation_engine.delegation.controllers import (
    DelegationCancelCommand,
    DelegationClaimCommand,
    DelegationCliController,
    DelegationListCommand,
    DelegationMutateCommand,
    DelegationRequestCommand,
    DelegationRunCommand,
    EventsListCommand,
    EventsRedeliverCommand,
    PoolCommand,
    PoolConfigureCommand,
    PoolTeardownCommand,
    SessionCommand,
    SessionContextCommand,
    SessionErrorCommand,
    SessionHandoffCommand,
    SessionListCommand,
    SessionRetireCommand,
    SessionSpawnCommand,
    TaskAuditCommand,
    TaskBlockCommand,
    TaskCommand,
    TaskCompleteCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskUpdateCommand,
)
from delegation_engine.delegation.models import (
    DEFAULT_CONTEXT_MAX_TOKENS,
    DelegationStatus,
    DependencyClass,
    Priority,
    SessionStatus,
    WorkItemStatus,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DelegationCliController()

DB_PATH_HELP = "SQLite DB path (defaults to DELEGATION_ENGINE_DB_PATH)."


def _choices(enum_type: type) -> click.Choice:
    return click.Choice([member.value for member in enum_type], case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="delegation-engine")
def delegation_engine() -> None:
    """Delegate work items to pooled agent container sessions."""

    level = os.getenv("DELEGATION_ENGINE_LOG_LEVEL", "WARNING").strip().upper()
    logging.basicConfig(
        level=level if isinstance(logging.getLevelName(level), int) else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@delegation_engine.group()
def pool() -> None:
    """Container pool policy and lifecycle."""


@pool.command("configure")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
@click.option("--warm", "warm_pool_size", type=int, default=None, help="Warm pool size (1-10).")
@click.option("--max", "max_pool_size", type=int, default=None, help="Max pool size (<= 20).")
@click.option(
    "--threshold",
    "context_threshold_percent",
    type=int,
    default=None,
    help="Context threshold percent (50-95).",
)
@click.option(
    "--auto-delegate/--no-auto-delegate",
    "auto_delegate_enabled",
    default=None,
    help="Enable or disable automatic delegation passes.",
)
@click.option(
    "--skip-human-required/--include-human-required",
    "skip_user_required",
    default=None,
    help="Whether auto-delegation skips HUMAN_REQUIRED items.",
)
def pool_configure(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    warm_pool_size: int | None,
    max_pool_size: int | None,
    context_threshold_percent: int | None,
    auto_delegate_enabled: bool | None,
    skip_user_required: bool | None,
) -> None:
    """Create the project's pool or change its policy. Omitted options keep current values."""

    _emit_lines(
        CONTROLLER.configure_pool(
            PoolConfigureCommand(
                db_path=db_path,
                project_id=project_id,
                warm_pool_size=warm_pool_size,
                max_pool_size=max_pool_size,
                context_threshold_percent=context_threshold_percent,
                auto_delegate_enabled=auto_delegate_enabled,
                skip_user_required=skip_user_required,
            ),
        ),
    )


@pool.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
def pool_show(db_path: Path | None, project_id: str) -> None:
    """Show pool policy and live session counts."""

    _emit_lines(CONTROLLER.show_pool(PoolCommand(db_path=db_path, project_id=project_id)))


@pool.command("pause")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
def pool_pause(db_path: Path | None, project_id: str) -> None:
    """Stop admitting new sessions."""

    _emit_lines(CONTROLLER.pause_pool(PoolCommand(db_path=db_path, project_id=project_id)))


@pool.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
def pool_resume(db_path: Path | None, project_id: str) -> None:
    """Resume admitting new sessions."""

    _emit_lines(CONTROLLER.resume_pool(PoolCommand(db_path=db_path, project_id=project_id)))


@pool.command("drain")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
def pool_drain(db_path: Path | None, project_id: str) -> None:
    """Let running sessions finish without admitting new ones."""

    _emit_lines(CONTROLLER.drain_pool(PoolCommand(db_path=db_path, project_id=project_id)))


@pool.command("teardown")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
@click.option("--summary", default=None, help="Summary recorded on retired sessions.")
def pool_teardown(db_path: Path | None, project_id: str, summary: str | None) -> None:
    """Drain the pool and retire every session in it."""

    _emit_lines(
        CONTROLLER.teardown_pool(
            PoolTeardownCommand(db_path=db_path, project_id=project_id, summary=summary),
        ),
    )


@pool.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
def pool_status(db_path: Path | None, project_id: str) -> None:
    """Print a JSON snapshot of pool, sessions, backlog and claims."""

    _emit_lines(CONTROLLER.status(PoolCommand(db_path=db_path, project_id=project_id)))


@pool.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
def pool_stats(db_path: Path | None, project_id: str) -> None:
    """Delegation counters for the project."""

    _emit_lines(CONTROLLER.stats(PoolCommand(db_path=db_path, project_id=project_id)))


@delegation_engine.group()
def session() -> None:
    """Container session lifecycle."""


@session.command("spawn")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
@click.option("--session-id", default=None, help="Session id (generated when omitted).")
@click.option("--container-id", default=None, help="External container id.")
@click.option(
    "--context-max-tokens",
    type=click.IntRange(min=1),
    default=DEFAULT_CONTEXT_MAX_TOKENS,
    show_default=True,
    help="Context window size of the session.",
)
def session_spawn(
    db_path: Path | None,
    project_id: str,
    session_id: str | None,
    container_id: str | None,
    context_max_tokens: int,
) -> None:
    """Register a starting session if the pool has room."""

    _emit_lines(
        CONTROLLER.spawn_session(
            SessionSpawnCommand(
                db_path=db_path,
                project_id=project_id,
                session_id=session_id,
                container_id=container_id,
                context_max_tokens=context_max_tokens,
            ),
        ),
    )


@session.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
@click.option("--status", type=_choices(SessionStatus), default=None, help="Status filter.")
def session_list(db_path: Path | None, project_id: str, status: str | None) -> None:
    """List sessions of the project's pool."""

    _emit_lines(
        CONTROLLER.list_sessions(
            SessionListCommand(db_path=db_path, project_id=project_id, status=status),
        ),
    )


@session.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("session_id")
def session_show(db_path: Path | None, session_id: str) -> None:
    """Show one session."""

    _emit_lines(CONTROLLER.show_session(SessionCommand(db_path=db_path, session_id=session_id)))


@session.command("heartbeat")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("session_id")
def session_heartbeat(db_path: Path | None, session_id: str) -> None:
    """Record liveness; a starting session becomes active."""

    _emit_lines(CONTROLLER.heartbeat(SessionCommand(db_path=db_path, session_id=session_id)))


@session.command("idle")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("session_id")
def session_idle(db_path: Path | None, session_id: str) -> None:
    """Mark a session without a task as idle."""

    _emit_lines(CONTROLLER.mark_idle(SessionCommand(db_path=db_path, session_id=session_id)))


@session.command("context")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("session_id")
@click.option("--used", type=click.IntRange(min=0), required=True, help="Tokens used.")
@click.option("--max", "maximum", type=click.IntRange(min=1), required=True, help="Token limit.")
def session_context(db_path: Path | None, session_id: str, used: int, maximum: int) -> None:
    """Report context usage and print the recommended action."""

    _emit_lines(
        CONTROLLER.report_context(
            SessionContextCommand(
                db_path=db_path,
                session_id=session_id,
                used=used,
                maximum=maximum,
            ),
        ),
    )


@session.command("complete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("session_id")
def session_complete(db_path: Path | None, session_id: str) -> None:
    """Finish the session's current task and return it to idle."""

    _emit_lines(
        CONTROLLER.complete_session_task(SessionCommand(db_path=db_path, session_id=session_id)),
    )


@session.command("retire")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("session_id")
@click.option("--summary", default=None, help="Final summary of the session's work.")
def session_retire(db_path: Path | None, session_id: str, summary: str | None) -> None:
    """Retire a session and release its claims."""

    _emit_lines(
        CONTROLLER.retire_session(
            SessionRetireCommand(db_path=db_path, session_id=session_id, summary=summary),
        ),
    )


@session.command("fail")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("session_id")
@click.option("--reason", required=True, help="Why the session failed.")
def session_fail(db_path: Path | None, session_id: str, reason: str) -> None:
    """Move a session to error and release its claims."""

    _emit_lines(
        CONTROLLER.fail_session(
            SessionErrorCommand(db_path=db_path, session_id=session_id, reason=reason),
        ),
    )


@session.command("handoff")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("session_id")
@click.option("--summary", required=True, help="Handoff summary written by the old session.")
@click.option("--new-session-id", default=None, help="Successor session id.")
@click.option("--container-id", default=None, help="Successor container id.")
def session_handoff(
    db_path: Path | None,
    session_id: str,
    summary: str,
    new_session_id: str | None,
    container_id: str | None,
) -> None:
    """Retire a session and move its claimed task to a new successor."""

    _emit_lines(
        CONTROLLER.handoff(
            SessionHandoffCommand(
                db_path=db_path,
                session_id=session_id,
                summary=summary,
                new_session_id=new_session_id,
                container_id=container_id,
            ),
        ),
    )


@delegation_engine.group()
def task() -> None:
    """Work item board."""


@task.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="Task description.")
@click.option("--id", "item_id", default=None, help="Item id (generated when omitted).")
@click.option(
    "--dependency-class",
    type=_choices(DependencyClass),
    default=DependencyClass.AGENT_CAPABLE.value,
    show_default=True,
    help="Who can complete the task.",
)
@click.option(
    "--priority",
    type=_choices(Priority),
    default=Priority.NORMAL.value,
    show_default=True,
    help="Task priority.",
)
@click.option("--parent", "parent_id", default=None, help="Parent item id.")
@click.option(
    "--blocked-by",
    multiple=True,
    help="Id of an item that must complete first. Can be repeated.",
)
@click.option("--tag", "tags", multiple=True, help="Tag. Can be repeated.")
@click.option("--client-id", default=None, help="Id assigned by the calling client.")
@click.option("--agent", "agent_id", default=None, help="Agent creating the task.")
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    title: str,
    description: str,
    item_id: str | None,
    dependency_class: str,
    priority: str,
    parent_id: str | None,
    blocked_by: tuple[str, ...],
    tags: tuple[str, ...],
    client_id: str | None,
    agent_id: str | None,
) -> None:
    """Add a work item to the project board."""

    _emit_lines(
        CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                project_id=project_id,
                title=title,
                description=description,
                item_id=item_id,
                dependency_class=dependency_class,
                priority=priority,
                parent_id=parent_id,
                blocked_by=blocked_by,
                tags=tags,
                client_id=client_id,
                agent_id=agent_id,
            ),
        ),
    )


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
@click.option("--status", type=_choices(WorkItemStatus), default=None, help="Status filter.")
@click.option(
    "--since-version",
    type=click.IntRange(min=0),
    default=None,
    help="Only items whose version is greater than this.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max rows.",
)
def task_list(
    db_path: Path | None,
    project_id: str,
    status: str | None,
    since_version: int | None,
    limit: int,
) -> None:
    """List board items by priority."""

    _emit_lines(
        CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                project_id=project_id,
                status=status,
                since_version=since_version,
                limit=limit,
            ),
        ),
    )


@task.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("item_id")
def task_show(db_path: Path | None, item_id: str) -> None:
    """Show one item with its audit trail."""

    _emit_lines(CONTROLLER.show_task(TaskCommand(db_path=db_path, item_id=item_id)))


@task.command("update")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("item_id")
@click.option(
    "--expected-version",
    type=click.IntRange(min=0),
    required=True,
    help="Version the edit is based on.",
)
@click.option("--title", default=None, help="New title.")
@click.option("--description", default=None, help="New description.")
@click.option("--status", type=_choices(WorkItemStatus), default=None, help="New status.")
@click.option("--priority", type=_choices(Priority), default=None, help="New priority.")
def task_update(  # noqa: PLR0913
    db_path: Path | None,
    item_id: str,
    expected_version: int,
    title: str | None,
    description: str | None,
    status: str | None,
    priority: str | None,
) -> None:
    """Edit an item if nobody changed it since ``--expected-version``."""

    _emit_lines(
        CONTROLLER.update_task(
            TaskUpdateCommand(
                db_path=db_path,
                item_id=item_id,
                expected_version=expected_version,
                title=title,
                description=description,
                status=status,
                priority=priority,
            ),
        ),
    )


@task.command("audit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("item_id")
@click.option("--note", required=True, help="Audit note.")
@click.option("--agent", "agent_id", default=None, help="Agent writing the note.")
@click.option(
    "--expected-version",
    type=click.IntRange(min=0),
    default=None,
    help="Reject the note if the item changed past this version.",
)
def task_audit(
    db_path: Path | None,
    item_id: str,
    note: str,
    agent_id: str | None,
    expected_version: int | None,
) -> None:
    """Append a note to the item's audit trail."""

    _emit_lines(
        CONTROLLER.audit_task(
            TaskAuditCommand(
                db_path=db_path,
                item_id=item_id,
                note=note,
                agent_id=agent_id,
                expected_version=expected_version,
            ),
        ),
    )


@task.command("complete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("item_id")
@click.option("--agent", "agent_id", default=None, help="Agent completing the task.")
@click.option("--note", default=None, help="Completion note for the audit trail.")
def task_complete(
    db_path: Path | None,
    item_id: str,
    agent_id: str | None,
    note: str | None,
) -> None:
    """Complete an item, close its claim and unblock dependents."""

    _emit_lines(
        CONTROLLER.complete_task(
            TaskCompleteCommand(db_path=db_path, item_id=item_id, agent_id=agent_id, note=note),
        ),
    )


@task.command("block")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("item_id")
@click.option(
    "--by",
    "blocked_by",
    multiple=True,
    required=True,
    help="Blocking item id. Can be repeated.",
)
def task_block(db_path: Path | None, item_id: str, blocked_by: tuple[str, ...]) -> None:
    """Block an item on other items."""

    _emit_lines(
        CONTROLLER.block_task(
            TaskBlockCommand(db_path=db_path, item_id=item_id, blocked_by=blocked_by),
        ),
    )


@delegation_engine.group()
def delegation() -> None:
    """Delegation requests and claims."""


@delegation.command("request")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("item_id")
@click.option("--by-session", "requested_by_session", default=None, help="Requesting session.")
def delegation_request(
    db_path: Path | None,
    item_id: str,
    requested_by_session: str | None,
) -> None:
    """Open a delegation request for an agent-capable item."""

    _emit_lines(
        CONTROLLER.request_delegation(
            DelegationRequestCommand(
                db_path=db_path,
                item_id=item_id,
                requested_by_session=requested_by_session,
            ),
        ),
    )


@delegation.command("claim")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("item_id")
@click.option("--session", "session_id", required=True, help="Claiming session.")
def delegation_claim(db_path: Path | None, item_id: str, session_id: str) -> None:
    """Atomically claim an item for a session."""

    _emit_lines(
        CONTROLLER.claim(
            DelegationClaimCommand(db_path=db_path, item_id=item_id, session_id=session_id),
        ),
    )


@delegation.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("request_id")
def delegation_approve(db_path: Path | None, request_id: str) -> None:
    """Approve a pending request."""

    _emit_lines(
        CONTROLLER.approve(DelegationMutateCommand(db_path=db_path, request_id=request_id)),
    )


@delegation.command("complete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("request_id")
def delegation_complete(db_path: Path | None, request_id: str) -> None:
    """Complete a claimed request and free its session."""

    _emit_lines(
        CONTROLLER.complete_delegation(
            DelegationMutateCommand(db_path=db_path, request_id=request_id),
        ),
    )


@delegation.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("request_id")
@click.option("--reason", default=None, help="Cancellation reason.")
def delegation_cancel(db_path: Path | None, request_id: str, reason: str | None) -> None:
    """Cancel a request; a claimed item returns to pending."""

    _emit_lines(
        CONTROLLER.cancel_delegation(
            DelegationCancelCommand(db_path=db_path, request_id=request_id, reason=reason),
        ),
    )


@delegation.command("expire")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("request_id")
def delegation_expire(db_path: Path | None, request_id: str) -> None:
    """Expire a request."""

    _emit_lines(
        CONTROLLER.expire_delegation(
            DelegationMutateCommand(db_path=db_path, request_id=request_id),
        ),
    )


@delegation.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
@click.option("--status", type=_choices(DelegationStatus), default=None, help="Status filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max rows.",
)
def delegation_list(
    db_path: Path | None,
    project_id: str,
    status: str | None,
    limit: int,
) -> None:
    """List delegation requests, newest first."""

    _emit_lines(
        CONTROLLER.list_delegations(
            DelegationListCommand(
                db_path=db_path,
                project_id=project_id,
                status=status,
                limit=limit,
            ),
        ),
    )


@delegation.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Max items considered (defaults to DELEGATION_ENGINE_BATCH_LIMIT).",
)
def delegation_run(db_path: Path | None, project_id: str, limit: int | None) -> None:
    """Run one auto-delegation pass over pending items."""

    _emit_lines(
        CONTROLLER.run_delegations(
            DelegationRunCommand(db_path=db_path, project_id=project_id, limit=limit),
        ),
    )


@delegation_engine.group()
def events() -> None:
    """Engine event log."""


@events.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--project", "project_id", required=True, help="Project id.")
@click.option(
    "--since",
    "since_event_id",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Only events with a greater id.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max rows.",
)
@click.option("--entity", "entity_id", default=None, help="Entity id filter.")
def events_list(
    db_path: Path | None,
    project_id: str,
    since_event_id: int,
    limit: int,
    entity_id: str | None,
) -> None:
    """List committed events in order."""

    _emit_lines(
        CONTROLLER.list_events(
            EventsListCommand(
                db_path=db_path,
                project_id=project_id,
                since_event_id=since_event_id,
                limit=limit,
                entity_id=entity_id,
            ),
        ),
    )


@events.command("redeliver")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
def events_redeliver(db_path: Path | None) -> None:
    """Publish committed events the sink has not acknowledged yet."""

    _emit_lines(CONTROLLER.redeliver_events(EventsRedeliverCommand(db_path=db_path)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    delegation_engine()
