import allure
import pytest

from delegation_engine.delegation.engine import DelegationEngine
from delegation_engine.delegation.errors import (
    InvalidTransitionError,
    NotFoundError,
    PolicyViolationError,
)
from delegation_engine.delegation.events import InMemoryEventSink
from delegation_engine.delegation.models import (
    ContextAction,
    DelegationStatus,
    PoolConfig,
    SessionStatus,
    WorkItemCreate,
    WorkItemStatus,
)

pytestmark = [
    allure.epic("Delegation Engine"),
    allure.feature("Container Sessions"),
]

PROJECT = "project-alpha"


@pytest.fixture()
def pool_engine(engine: DelegationEngine) -> DelegationEngine:
    engine.pools.configure_pool(
        PROJECT,
        PoolConfig(warm_pool_size=1, max_pool_size=4, context_threshold_percent=80),
    )
    return engine


def test_spawn_records_starting_session(
    pool_engine: DelegationEngine,
    sink: InMemoryEventSink,
) -> None:
    session = pool_engine.sessions.spawn_session(
        PROJECT,
        session_id="A",
        container_id="container-1",
        metadata={"image": "agent:latest"},
        context_max_tokens=200_000,
    )

    assert session is not None
    assert session.status == SessionStatus.STARTING
    assert session.container_id == "container-1"
    assert session.context_max_tokens == 200_000
    assert session.metadata == {"image": "agent:latest"}
    assert session.project_id == PROJECT
    created = sink.events("session.created")
    assert [event.entity_id for event in created] == ["A"]


def test_duplicate_session_id_is_rejected(pool_engine: DelegationEngine) -> None:
    pool_engine.sessions.spawn_session(PROJECT, session_id="A")

    with pytest.raises(PolicyViolationError):
        pool_engine.sessions.spawn_session(PROJECT, session_id="A")


def test_heartbeat_activates_starting_session(pool_engine: DelegationEngine) -> None:
    pool_engine.sessions.spawn_session(PROJECT, session_id="A")

    assert pool_engine.sessions.heartbeat("A").status == SessionStatus.ACTIVE
    assert pool_engine.sessions.heartbeat("A").status == SessionStatus.ACTIVE


def test_context_report_near_threshold_prepares_handoff(pool_engine: DelegationEngine) -> None:
    pool_engine.sessions.spawn_session(PROJECT, session_id="A")

    report = pool_engine.sessions.update_context_usage("A", used=75, maximum=100)

    assert report.context_percent == 75.0
    assert report.action == ContextAction.PREPARE_HANDOFF
    session = pool_engine.sessions.get_session("A")
    assert session.context_percent == 75.0
    assert session.context_used_tokens == 75
    assert session.last_context_check_at is not None
    assert session.approaching_threshold is True
    assert session.at_threshold is False
    assert session.context_available_percent == 25.0


def test_context_report_zones(pool_engine: DelegationEngine) -> None:
    pool_engine.sessions.spawn_session(PROJECT, session_id="A")

    low = pool_engine.sessions.update_context_usage("A", used=10_000, maximum=100_000)
    high = pool_engine.sessions.update_context_usage("A", used=90_000, maximum=100_000)

    assert low.action == ContextAction.CONTINUE
    assert low.reason == "Context at 10.0% - capacity available"
    assert high.action == ContextAction.HANDOFF_REQUIRED
    assert pool_engine.sessions.get_session("A").at_threshold is True


def test_context_report_rejects_bad_counts(pool_engine: DelegationEngine) -> None:
    pool_engine.sessions.spawn_session(PROJECT, session_id="A")

    with pytest.raises(PolicyViolationError):
        pool_engine.sessions.update_context_usage("A", used=10, maximum=0)
    with pytest.raises(NotFoundError):
        pool_engine.sessions.update_context_usage("missing", used=10, maximum=100)


def test_idle_session_never_holds_a_task(pool_engine: DelegationEngine) -> None:
    pool_engine.work_items.create_work_item(PROJECT, WorkItemCreate(title="Task", item_id="T1"))
    pool_engine.sessions.spawn_session(PROJECT, session_id="A")
    pool_engine.delegations.atomic_claim("T1", "A")

    with pytest.raises(InvalidTransitionError):
        pool_engine.sessions.mark_idle("A")

    session = pool_engine.sessions.complete_task("A")
    assert session.status == SessionStatus.IDLE
    assert session.current_task_id is None
    assert session.tasks_completed == 1
    assert session.can_accept_task is True
    assert pool_engine.sessions.mark_idle("A").status == SessionStatus.IDLE


def test_assign_task_requires_an_available_session(pool_engine: DelegationEngine) -> None:
    for item_id in ("T1", "T2"):
        pool_engine.work_items.create_work_item(
            PROJECT,
            WorkItemCreate(title=item_id, item_id=item_id),
        )
    pool_engine.sessions.spawn_session(PROJECT, session_id="A")

    assigned = pool_engine.sessions.assign_task("A", "T1")

    assert assigned.status == SessionStatus.ACTIVE
    assert assigned.current_task_id == "T1"
    with pytest.raises(InvalidTransitionError):
        pool_engine.sessions.assign_task("A", "T2")


def test_session_at_threshold_cannot_take_work(pool_engine: DelegationEngine) -> None:
    pool_engine.work_items.create_work_item(PROJECT, WorkItemCreate(title="Task", item_id="T1"))
    pool_engine.sessions.spawn_session(PROJECT, session_id="A")
    pool_engine.sessions.mark_idle("A")
    pool_engine.sessions.update_context_usage("A", used=85, maximum=100)

    assert pool_engine.sessions.get_session("A").can_accept_task is False
    with pytest.raises(InvalidTransitionError):
        pool_engine.sessions.assign_task("A", "T1")


def test_retire_releases_claimed_work(pool_engine: DelegationEngine) -> None:
    pool_engine.work_items.create_work_item(PROJECT, WorkItemCreate(title="Task", item_id="T1"))
    pool_engine.sessions.spawn_session(PROJECT, session_id="A")
    claim = pool_engine.delegations.atomic_claim("T1", "A")

    retired = pool_engine.sessions.retire("A", "wrapped up")

    assert retired.status == SessionStatus.RETIRED
    assert retired.handoff_summary == "wrapped up"
    assert retired.current_task_id is None
    assert claim.request_id is not None
    request = pool_engine.delegations.get_request(claim.request_id)
    assert request.status == DelegationStatus.CANCELLED
    assert request.cancel_reason == "session retired"
    assert pool_engine.work_items.get_work_item("T1").status == WorkItemStatus.PENDING
    with pytest.raises(InvalidTransitionError):
        pool_engine.sessions.retire("A")
    with pytest.raises(InvalidTransitionError):
        pool_engine.sessions.heartbeat("A")


def test_mark_error_records_reason_and_releases_work(
    pool_engine: DelegationEngine,
    sink: InMemoryEventSink,
) -> None:
    pool_engine.work_items.create_work_item(PROJECT, WorkItemCreate(title="Task", item_id="T1"))
    pool_engine.sessions.spawn_session(PROJECT, session_id="A")
    pool_engine.delegations.atomic_claim("T1", "A")

    failed = pool_engine.sessions.mark_error("A", "container crashed")

    assert failed.status == SessionStatus.ERROR
    assert failed.error_reason == "container crashed"
    assert failed.current_task_id is None
    assert pool_engine.delegations.claimed_request("T1") is None
    assert pool_engine.work_items.get_work_item("T1").status == WorkItemStatus.PENDING
    last = sink.events("session.status_changed")[-1]
    assert last.status_to == SessionStatus.ERROR.value
    assert last.details["reason"] == "container crashed"
    with pytest.raises(InvalidTransitionError):
        pool_engine.sessions.mark_error("A", "again")


def test_handoff_chain_resolves_both_ways(pool_engine: DelegationEngine) -> None:
    pool_engine.work_items.create_work_item(PROJECT, WorkItemCreate(title="Task", item_id="T1"))
    pool_engine.sessions.spawn_session(PROJECT, session_id="A")
    pool_engine.delegations.atomic_claim("T1", "A")

    result = pool_engine.coordinator.handoff("A", summary="Halfway there", new_session_id="B")

    successor = pool_engine.sessions.get_session("B")
    predecessor = pool_engine.sessions.get_session("A")
    assert successor.handoff_from_id == "A"
    assert predecessor.status == SessionStatus.RETIRED
    assert predecessor.handoff_to_id == "B"
    assert predecessor.handoff_summary == "Halfway there"
    assert result.predecessor.handoff_to_id == "B"
    assert result.successor.session_id == "B"


def test_list_sessions_filters_by_status(pool_engine: DelegationEngine) -> None:
    for session_id in ("A", "B", "C"):
        pool_engine.sessions.spawn_session(PROJECT, session_id=session_id)
    pool_engine.sessions.mark_idle("B")
    pool_engine.sessions.retire("C")

    idle = pool_engine.sessions.list_sessions(PROJECT, statuses=frozenset({SessionStatus.IDLE}))

    assert [session.session_id for session in idle] == ["B"]
    assert len(pool_engine.sessions.list_sessions(PROJECT)) == 3
    assert pool_engine.sessions.list_sessions("other-project") == []
