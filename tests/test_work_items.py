import allure
import pytest

from delegation_engine.delegation.engine import DelegationEngine
from delegation_engine.delegation.errors import (
    InvalidTransitionError,
    NotFoundError,
    PolicyViolationError,
    VersionConflictError,
)
from delegation_engine.delegation.events import InMemoryEventSink
from delegation_engine.delegation.models import (
    DependencyClass,
    PoolConfig,
    Priority,
    WorkItemChanges,
    WorkItemCreate,
    WorkItemStatus,
    WorkItemView,
)

pytestmark = [
    allure.epic("Delegation Engine"),
    allure.feature("Work Item Board"),
]

PROJECT = "project-alpha"


def _create(engine: DelegationEngine, item_id: str, **fields: object) -> WorkItemView:
    payload = WorkItemCreate(title=fields.pop("title", item_id), item_id=item_id, **fields)
    return engine.work_items.create_work_item(PROJECT, payload)


def test_create_work_item_defaults(engine: DelegationEngine, sink: InMemoryEventSink) -> None:
    item = _create(engine, "T1", description="Write the parser", tags=("parser", "core"))

    assert item.status == WorkItemStatus.PENDING
    assert item.version == 0
    assert item.priority == Priority.NORMAL
    assert item.dependency_class == DependencyClass.AGENT_CAPABLE
    assert item.tags == ("parser", "core")
    assert item.progress_percentage == 0
    created = sink.events("task.created")
    assert len(created) == 1
    assert created[0].status_to == WorkItemStatus.PENDING.value
    assert created[0].details["title"] == "T1"


def test_create_work_item_validation(engine: DelegationEngine) -> None:
    _create(engine, "T1")
    engine.work_items.create_work_item("project-beta", WorkItemCreate(title="B", item_id="B1"))

    with pytest.raises(PolicyViolationError):
        _create(engine, "T1")
    with pytest.raises(PolicyViolationError):
        _create(engine, "T2", title="   ")
    with pytest.raises(PolicyViolationError):
        _create(engine, "T3", parent_id="B1")
    with pytest.raises(NotFoundError):
        _create(engine, "T4", parent_id="missing")
    with pytest.raises(NotFoundError):
        engine.work_items.get_work_item("missing")


def test_agent_created_item_starts_its_audit_trail(engine: DelegationEngine) -> None:
    _create(engine, "T1", created_by_agent="planner")

    item = engine.work_items.get_work_item("T1")

    assert [entry.note for entry in item.audit_trail] == ["Task created"]
    assert item.audit_trail[0].agent_id == "planner"


def test_version_increases_on_every_save(engine: DelegationEngine) -> None:
    _create(engine, "T1")

    first = engine.work_items.update_work_item(
        "T1",
        expected_version=0,
        changes=WorkItemChanges(title="Renamed"),
    )
    version = engine.work_items.append_audit_entry("T1", "Looked into it", agent_id="agent-1")
    second = engine.work_items.update_work_item(
        "T1",
        expected_version=version,
        changes=WorkItemChanges(status=WorkItemStatus.IN_PROGRESS, priority=Priority.HIGH),
    )

    assert (first.version, version, second.version) == (1, 2, 3)
    assert second.title == "Renamed"
    assert second.priority == Priority.HIGH
    assert second.status == WorkItemStatus.IN_PROGRESS


def test_stale_version_is_a_retryable_conflict(engine: DelegationEngine) -> None:
    _create(engine, "T1")
    engine.work_items.update_work_item(
        "T1",
        expected_version=0,
        changes=WorkItemChanges(description="first writer"),
    )

    with pytest.raises(VersionConflictError) as conflict:
        engine.work_items.update_work_item(
            "T1",
            expected_version=0,
            changes=WorkItemChanges(description="second writer"),
        )

    assert conflict.value.expected_version == 0
    assert conflict.value.current_version == 1
    assert engine.work_items.get_work_item("T1").description == "first writer"
    with pytest.raises(VersionConflictError):
        engine.work_items.append_audit_entry("T1", "late note", expected_version=0)


def test_update_emits_status_and_field_events(
    engine: DelegationEngine,
    sink: InMemoryEventSink,
) -> None:
    _create(engine, "T1")

    engine.work_items.update_work_item(
        "T1",
        expected_version=0,
        changes=WorkItemChanges(title="New title"),
    )
    engine.work_items.update_work_item(
        "T1",
        expected_version=1,
        changes=WorkItemChanges(status=WorkItemStatus.IN_PROGRESS),
    )

    updated = sink.events("task.updated")
    changed = sink.events("task.status_changed")
    assert updated[-1].details["changed"] == ["title"]
    assert (changed[-1].status_from, changed[-1].status_to) == ("pending", "in_progress")


def test_completed_is_sticky(engine: DelegationEngine) -> None:
    _create(engine, "T1")
    done = engine.work_items.complete_work_item("T1", agent_id="agent-1", note="Shipped")

    assert done.status == WorkItemStatus.COMPLETED
    assert done.completed_at is not None
    with pytest.raises(InvalidTransitionError):
        engine.work_items.update_work_item(
            "T1",
            expected_version=done.version,
            changes=WorkItemChanges(status=WorkItemStatus.PENDING),
        )
    with pytest.raises(InvalidTransitionError):
        engine.work_items.complete_work_item("T1")
    trail = engine.work_items.get_work_item("T1").audit_trail
    assert trail[-1].note == "Shipped"
    assert trail[-1].agent_id == "agent-1"


def test_audit_trail_is_append_only_and_ordered(engine: DelegationEngine) -> None:
    _create(engine, "T1")
    engine.work_items.append_audit_entry("T1", "Started", agent_id="agent-1")
    engine.work_items.append_audit_entry("T1", "Reviewed")

    item = engine.work_items.get_work_item("T1")

    assert [entry.note for entry in item.audit_trail] == ["Started", "Reviewed"]
    lines = item.audit_report.splitlines()
    assert lines[0].endswith(" [agent-1]: Started")
    assert lines[1].endswith(": Reviewed")
    assert "[" not in lines[1]
    with pytest.raises(PolicyViolationError):
        engine.work_items.append_audit_entry("T1", "  ")


def test_progress_is_computed_from_subtasks(engine: DelegationEngine) -> None:
    _create(engine, "EPIC")
    for index in range(4):
        _create(engine, f"S{index}", parent_id="EPIC")
    for index in range(3):
        engine.work_items.complete_work_item(f"S{index}")

    assert engine.work_items.progress_percentage("EPIC") == 75
    epic = engine.work_items.get_work_item("EPIC")
    assert (epic.subtask_count, epic.completed_subtask_count) == (4, 3)
    children = engine.work_items.list_work_items(PROJECT, parent_id="EPIC")
    assert {child.item_id for child in children} == {"S0", "S1", "S2", "S3"}


def test_unmet_blockers_start_blocked_and_release_on_completion(
    engine: DelegationEngine,
    sink: InMemoryEventSink,
) -> None:
    _create(engine, "A")
    _create(engine, "B")
    waiting = _create(engine, "C", blocked_by=("A", "B", "C"))

    assert waiting.status == WorkItemStatus.BLOCKED
    assert waiting.blocked_by == ("A", "B")
    assert engine.work_items.dependencies_met("C") is False

    engine.work_items.complete_work_item("A")
    assert engine.work_items.get_work_item("C").status == WorkItemStatus.BLOCKED

    engine.work_items.complete_work_item("B")
    released = engine.work_items.get_work_item("C")
    assert released.status == WorkItemStatus.PENDING
    assert engine.work_items.dependencies_met("C") is True
    unblock = [
        event
        for event in sink.events("task.status_changed")
        if event.entity_id == "C"
    ]
    assert [(event.status_from, event.status_to) for event in unblock] == [("blocked", "pending")]


def test_block_and_replace_blocking_set(engine: DelegationEngine) -> None:
    _create(engine, "A")
    _create(engine, "B")
    _create(engine, "C")
    engine.work_items.complete_work_item("B")

    blocked = engine.work_items.block("C", ["A"])
    assert blocked.status == WorkItemStatus.BLOCKED
    assert blocked.blocked_by == ("A",)

    still_blocked = engine.work_items.set_blocked_by("C", ["A", "B"])
    assert still_blocked.status == WorkItemStatus.BLOCKED

    released = engine.work_items.set_blocked_by("C", ["B"])
    assert released.status == WorkItemStatus.PENDING
    assert released.blocked_by == ("B",)
    with pytest.raises(InvalidTransitionError):
        engine.work_items.block("B", ["A"])


def test_blocked_item_cannot_be_forced_pending_with_unmet_blockers(
    engine: DelegationEngine,
) -> None:
    _create(engine, "D")
    blocked = _create(engine, "B", blocked_by=("D",))

    with pytest.raises(InvalidTransitionError, match="still blocked"):
        engine.work_items.update_work_item(
            "B",
            expected_version=blocked.version,
            changes=WorkItemChanges(status=WorkItemStatus.PENDING),
        )
    assert engine.work_items.get_work_item("B").status == WorkItemStatus.BLOCKED
    assert engine.work_items.dependencies_met("B") is False

    cleared = engine.work_items.update_work_item(
        "B",
        expected_version=blocked.version,
        changes=WorkItemChanges(status=WorkItemStatus.PENDING, blocked_by=()),
    )
    assert cleared.status == WorkItemStatus.PENDING
    assert cleared.blocked_by == ()


def test_claimed_item_is_released_only_through_its_delegation(
    engine: DelegationEngine,
) -> None:
    engine.pools.configure_pool(PROJECT, PoolConfig(warm_pool_size=1, max_pool_size=2))
    engine.sessions.spawn_session(PROJECT, session_id="A")
    _create(engine, "T")
    _create(engine, "D")
    assert engine.delegations.atomic_claim("T", "A").claimed
    claimed = engine.work_items.get_work_item("T")

    for status in (WorkItemStatus.PENDING, WorkItemStatus.BLOCKED):
        with pytest.raises(InvalidTransitionError, match="is claimed"):
            engine.work_items.update_work_item(
                "T",
                expected_version=claimed.version,
                changes=WorkItemChanges(status=status),
            )
    with pytest.raises(InvalidTransitionError, match="is claimed"):
        engine.work_items.block("T", ["D"])

    assert engine.work_items.get_work_item("T").status == WorkItemStatus.IN_PROGRESS
    request = engine.delegations.claimed_request("T")
    assert request is not None
    assert engine.sessions.get_session("A").current_task_id == "T"

    engine.delegations.cancel(request.request_id, "reprioritised")
    assert engine.work_items.get_work_item("T").status == WorkItemStatus.PENDING
    assert engine.sessions.get_session("A").current_task_id is None


def test_mutate_reloads_after_concurrent_change(engine: DelegationEngine) -> None:
    _create(engine, "T1")
    calls: list[int] = []

    def rename(current: WorkItemView) -> WorkItemChanges:
        calls.append(current.version)
        if len(calls) == 1:
            engine.work_items.append_audit_entry("T1", "concurrent writer")
        return WorkItemChanges(title=f"seen v{current.version}")

    result = engine.work_items.mutate_work_item("T1", rename)

    assert calls == [0, 1]
    assert result.title == "seen v1"
    assert result.version == 2


def test_mutate_gives_up_after_max_attempts(engine: DelegationEngine) -> None:
    _create(engine, "T1")
    calls: list[int] = []

    def always_stale(current: WorkItemView) -> WorkItemChanges:
        calls.append(current.version)
        engine.work_items.append_audit_entry("T1", "interfering")
        return WorkItemChanges(title="never lands")

    with pytest.raises(VersionConflictError):
        engine.work_items.mutate_work_item("T1", always_stale, max_attempts=2)

    assert len(calls) == 2
    assert engine.work_items.get_work_item("T1").title == "T1"


def test_list_work_items_orders_by_priority(engine: DelegationEngine) -> None:
    _create(engine, "low", priority=Priority.LOW)
    _create(engine, "urgent", priority=Priority.URGENT)
    _create(engine, "normal")
    _create(engine, "high", priority=Priority.HIGH)

    listed = engine.work_items.list_work_items(PROJECT)

    assert [item.item_id for item in listed] == ["urgent", "high", "normal", "low"]
    engine.work_items.append_audit_entry("low", "touched")
    changed = engine.work_items.list_work_items(PROJECT, since_version=0)
    assert [item.item_id for item in changed] == ["low"]
    pending = engine.work_items.list_work_items(PROJECT, status=WorkItemStatus.PENDING, limit=2)
    assert len(pending) == 2


def test_next_delegable_skips_human_and_claimed_items(engine: DelegationEngine) -> None:
    engine.pools.ensure_pool(PROJECT)
    _create(engine, "human", dependency_class=DependencyClass.HUMAN_REQUIRED)
    _create(engine, "agent-1", priority=Priority.HIGH)
    _create(engine, "agent-2")
    engine.sessions.spawn_session(PROJECT, session_id="A")
    engine.delegations.atomic_claim("agent-1", "A")

    delegable = engine.work_items.next_delegable(PROJECT)
    with_human = engine.work_items.next_delegable(PROJECT, include_human_required=True)

    assert [item.item_id for item in delegable] == ["agent-2"]
    assert {item.item_id for item in with_human} == {"human", "agent-2"}
