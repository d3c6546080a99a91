import threading
from pathlib import Path

import allure
import pytest

from delegation_engine.config import Settings
from delegation_engine.delegation.engine import DelegationEngine
from delegation_engine.delegation.errors import (
    InvalidTransitionError,
    NotFoundError,
    PolicyViolationError,
)
from delegation_engine.delegation.events import InMemoryEventSink
from delegation_engine.delegation.models import (
    ClaimResult,
    DelegationStatus,
    DependencyClass,
    PoolConfig,
    SessionStatus,
    WorkItemCreate,
    WorkItemStatus,
)

pytestmark = [
    allure.epic("Delegation Engine"),
    allure.feature("Atomic Claim"),
]

PROJECT = "project-alpha"


@pytest.fixture()
def board(engine: DelegationEngine) -> DelegationEngine:
    engine.pools.configure_pool(PROJECT, PoolConfig(warm_pool_size=1, max_pool_size=10))
    engine.work_items.create_work_item(PROJECT, WorkItemCreate(title="Shared", item_id="T1"))
    return engine


def _spawn_idle(engine: DelegationEngine, *session_ids: str) -> None:
    for session_id in session_ids:
        engine.sessions.spawn_session(PROJECT, session_id=session_id)
        engine.sessions.mark_idle(session_id)


def _race(claimers: list[tuple[DelegationEngine, str]], item_id: str) -> list[ClaimResult]:
    barrier = threading.Barrier(len(claimers))
    results: list[ClaimResult] = []
    errors: list[BaseException] = []
    guard = threading.Lock()

    def claim(engine: DelegationEngine, session_id: str) -> None:
        try:
            barrier.wait(timeout=5)
            result = engine.delegations.atomic_claim(item_id, session_id)
        except BaseException as error:  # noqa: BLE001
            with guard:
                errors.append(error)
            return
        with guard:
            results.append(result)

    threads = [
        threading.Thread(target=claim, args=(engine, session_id))
        for engine, session_id in claimers
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    assert errors == []
    return results


def _in_progress_transitions(sink: InMemoryEventSink, item_id: str) -> int:
    return sum(
        1
        for event in sink.events("task.status_changed")
        if event.entity_id == item_id and event.status_to == WorkItemStatus.IN_PROGRESS.value
    )


def test_concurrent_claims_have_exactly_one_winner(
    board: DelegationEngine,
    sink: InMemoryEventSink,
) -> None:
    _spawn_idle(board, "A", "B")

    results = _race([(board, "A"), (board, "B")], "T1")

    assert sorted(result.claimed for result in results) == [False, True]
    loser = next(result for result in results if not result.claimed)
    assert loser.reason == "claimed by another session"
    assert board.work_items.get_work_item("T1").status == WorkItemStatus.IN_PROGRESS
    assert _in_progress_transitions(sink, "T1") == 1
    claimed = board.delegations.claimed_request("T1")
    assert claimed is not None
    holder = board.sessions.get_session(claimed.session_id or "")
    assert holder.current_task_id == "T1"
    others = [
        session
        for session in board.sessions.list_sessions(PROJECT)
        if session.session_id != holder.session_id
    ]
    assert [session.status for session in others] == [SessionStatus.IDLE]


def test_claims_from_separate_engines_have_exactly_one_winner(
    board: DelegationEngine,
    db_path: Path,
) -> None:
    _spawn_idle(board, "A", "B", "C", "D")
    engines = [
        DelegationEngine.from_settings(Settings(db_path=db_path), sink=InMemoryEventSink())
        for _ in range(4)
    ]
    try:
        results = _race(list(zip(engines, ["A", "B", "C", "D"], strict=True)), "T1")
    finally:
        for other in engines:
            other.close()

    assert sum(result.claimed for result in results) == 1
    requests = board.delegations.list_requests(
        PROJECT,
        statuses=frozenset({DelegationStatus.CLAIMED}),
    )
    assert len(requests) == 1
    assert board.work_items.get_work_item("T1").version == 1


def test_many_sessions_racing_for_many_items(board: DelegationEngine) -> None:
    for index in range(2, 5):
        board.work_items.create_work_item(
            PROJECT,
            WorkItemCreate(title=f"Task {index}", item_id=f"T{index}"),
        )
    session_ids = [f"S{index}" for index in range(6)]
    _spawn_idle(board, *session_ids)

    winners: dict[str, list[str]] = {}
    for item_id in ("T1", "T2", "T3", "T4"):
        free = [
            session.session_id
            for session in board.sessions.list_sessions(
                PROJECT,
                statuses=frozenset({SessionStatus.IDLE}),
            )
        ]
        results = _race([(board, session_id) for session_id in free], item_id)
        winners[item_id] = [result.request_id or "" for result in results if result.claimed]

    assert all(len(request_ids) == 1 for request_ids in winners.values())
    holders = {
        board.delegations.get_request(request_ids[0]).session_id
        for request_ids in winners.values()
    }
    assert len(holders) == 4


def test_reclaim_by_holder_is_idempotent(board: DelegationEngine) -> None:
    _spawn_idle(board, "A", "B")
    first = board.delegations.atomic_claim("T1", "A")

    again = board.delegations.atomic_claim("T1", "A")
    other = board.delegations.atomic_claim("T1", "B")

    assert again.claimed is True
    assert again.request_id == first.request_id
    assert other.claimed is False


def test_claim_rejects_items_outside_the_claimable_states(board: DelegationEngine) -> None:
    _spawn_idle(board, "A")
    board.work_items.complete_work_item("T1")

    result = board.delegations.atomic_claim("T1", "A")

    assert result.claimed is False
    assert result.reason == "work item is completed"
    assert board.sessions.get_session("A").status == SessionStatus.IDLE


def test_claim_requires_a_free_session_in_the_same_project(board: DelegationEngine) -> None:
    board.work_items.create_work_item(PROJECT, WorkItemCreate(title="Second", item_id="T2"))
    board.work_items.create_work_item("project-beta", WorkItemCreate(title="Beta", item_id="B1"))
    _spawn_idle(board, "A")
    board.delegations.atomic_claim("T1", "A")

    with pytest.raises(InvalidTransitionError):
        board.delegations.atomic_claim("T2", "A")
    with pytest.raises(PolicyViolationError):
        board.delegations.atomic_claim("B1", "A")
    with pytest.raises(NotFoundError):
        board.delegations.atomic_claim("T2", "missing")
    assert board.work_items.get_work_item("T2").status == WorkItemStatus.PENDING


def test_request_approve_then_claim_reuses_request(board: DelegationEngine) -> None:
    _spawn_idle(board, "A")
    request = board.delegations.request_delegation("T1", requested_by_session="planner")

    assert board.delegations.request_delegation("T1").request_id == request.request_id
    approved = board.delegations.approve(request.request_id)
    assert approved.status == DelegationStatus.APPROVED

    result = board.delegations.atomic_claim("T1", "A")
    assert result.request_id == request.request_id
    claimed = board.delegations.get_request(request.request_id)
    assert claimed.status == DelegationStatus.CLAIMED
    assert claimed.session_id == "A"
    assert claimed.requested_by_session == "planner"
    assert claimed.claimed_at is not None
    assert board.delegations.can_delegate("T1") is False


def test_human_required_items_cannot_be_delegated(board: DelegationEngine) -> None:
    board.work_items.create_work_item(
        PROJECT,
        WorkItemCreate(
            title="Sign contract",
            item_id="H1",
            dependency_class=DependencyClass.HUMAN_REQUIRED,
        ),
    )

    assert board.delegations.can_delegate("H1") is False
    with pytest.raises(PolicyViolationError):
        board.delegations.request_delegation("H1")


def test_cancel_returns_item_and_session_and_is_idempotent(
    board: DelegationEngine,
    sink: InMemoryEventSink,
) -> None:
    _spawn_idle(board, "A")
    claim = board.delegations.atomic_claim("T1", "A")
    assert claim.request_id is not None

    cancelled = board.delegations.cancel(claim.request_id, "priorities changed")
    events_after_first = len(sink.events())
    repeated = board.delegations.cancel(claim.request_id, "again")

    assert cancelled.status == DelegationStatus.CANCELLED
    assert cancelled.cancel_reason == "priorities changed"
    assert cancelled.cancelled_at is not None
    assert repeated.cancel_reason == "priorities changed"
    assert len(sink.events()) == events_after_first
    assert board.work_items.get_work_item("T1").status == WorkItemStatus.PENDING
    session = board.sessions.get_session("A")
    assert session.status == SessionStatus.IDLE
    assert session.current_task_id is None
    assert board.delegations.can_delegate("T1") is True
    with pytest.raises(InvalidTransitionError):
        board.delegations.expire(claim.request_id)


def test_expire_pending_request(board: DelegationEngine) -> None:
    request = board.delegations.request_delegation("T1")

    expired = board.delegations.expire(request.request_id)

    assert expired.status == DelegationStatus.EXPIRED
    assert board.delegations.expire(request.request_id).status == DelegationStatus.EXPIRED
    assert board.work_items.get_work_item("T1").status == WorkItemStatus.PENDING


def test_complete_frees_session_and_counts_task(board: DelegationEngine) -> None:
    _spawn_idle(board, "A")
    claim = board.delegations.atomic_claim("T1", "A")
    assert claim.request_id is not None

    completed = board.delegations.complete(claim.request_id)

    assert completed.status == DelegationStatus.COMPLETED
    assert completed.completed_at is not None
    session = board.sessions.get_session("A")
    assert session.status == SessionStatus.IDLE
    assert session.tasks_completed == 1
    assert board.delegations.claimed_request("T1") is None
    with pytest.raises(InvalidTransitionError):
        board.delegations.complete(claim.request_id)


def test_transfer_claim_moves_task_between_sessions(
    board: DelegationEngine,
    sink: InMemoryEventSink,
) -> None:
    _spawn_idle(board, "A", "B")
    claim = board.delegations.atomic_claim("T1", "A")
    assert claim.request_id is not None

    moved = board.delegations.transfer_claim(claim.request_id, "B")

    assert moved.session_id == "B"
    assert moved.status == DelegationStatus.CLAIMED
    assert board.sessions.get_session("A").current_task_id is None
    assert board.sessions.get_session("B").current_task_id == "T1"
    transferred = sink.events("delegation.transferred")
    assert transferred[-1].details["from_session_id"] == "A"
    assert transferred[-1].details["to_session_id"] == "B"


def test_list_requests_filters(board: DelegationEngine) -> None:
    board.work_items.create_work_item(PROJECT, WorkItemCreate(title="Second", item_id="T2"))
    first = board.delegations.request_delegation("T1")
    board.delegations.request_delegation("T2")
    board.delegations.cancel(first.request_id)

    pending = board.delegations.list_requests(
        PROJECT,
        statuses=frozenset({DelegationStatus.PENDING}),
    )
    for_t1 = board.delegations.list_requests(PROJECT, item_id="T1")

    assert [request.item_id for request in pending] == ["T2"]
    assert [request.status for request in for_t1] == [DelegationStatus.CANCELLED]
