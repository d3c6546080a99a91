from datetime import UTC, datetime

import allure
import pytest

from delegation_engine.delegation.errors import PolicyViolationError
from delegation_engine.delegation.models import (
    AuditEntryView,
    ContextAction,
    PoolConfig,
    compute_context_percent,
    progress_percentage,
    recommend_context_action,
)

pytestmark = [
    allure.epic("Delegation Engine"),
    allure.feature("Context Budget & Progress"),
]


def test_context_percent_is_rounded_to_two_decimals() -> None:
    assert compute_context_percent(75, 100) == 75.0
    assert compute_context_percent(1, 3) == 33.33
    assert compute_context_percent(0, 200_000) == 0.0


@pytest.mark.parametrize(("used", "maximum"), [(10, 0), (10, -5), (-1, 100)])
def test_context_percent_rejects_invalid_counts(used: int, maximum: int) -> None:
    with pytest.raises(PolicyViolationError):
        compute_context_percent(used, maximum)


@pytest.mark.parametrize(
    ("percent", "threshold", "action"),
    [
        (10.0, 80, ContextAction.CONTINUE),
        (69.99, 80, ContextAction.CONTINUE),
        (70.0, 80, ContextAction.PREPARE_HANDOFF),
        (75.0, 80, ContextAction.PREPARE_HANDOFF),
        (80.0, 80, ContextAction.HANDOFF_REQUIRED),
        (97.5, 80, ContextAction.HANDOFF_REQUIRED),
        (40.0, 50, ContextAction.PREPARE_HANDOFF),
    ],
)
def test_context_zones_use_fixed_ten_point_buffer(
    percent: float,
    threshold: int,
    action: ContextAction,
) -> None:
    assert recommend_context_action(percent, threshold).action == action


def test_context_reasons_mention_usage() -> None:
    assert recommend_context_action(12.345, 80).reason == "Context at 12.3% - capacity available"
    assert recommend_context_action(75, 80).reason == "Context approaching threshold at 75%"
    assert recommend_context_action(85.0, 80).reason == "Context at 85.0%"


@pytest.mark.parametrize(
    ("completed", "total", "expected"),
    [(3, 4, 75), (0, 0, 0), (1, 3, 33), (2, 3, 67), (1, 8, 13), (5, 5, 100)],
)
def test_progress_percentage_rounds_half_up(completed: int, total: int, expected: int) -> None:
    assert progress_percentage(completed=completed, total=total) == expected


@pytest.mark.parametrize(
    "config",
    [
        PoolConfig(warm_pool_size=0),
        PoolConfig(warm_pool_size=11, max_pool_size=20),
        PoolConfig(max_pool_size=21),
        PoolConfig(warm_pool_size=3, max_pool_size=2),
        PoolConfig(context_threshold_percent=49),
        PoolConfig(context_threshold_percent=96),
    ],
)
def test_pool_config_rejects_out_of_range_values(config: PoolConfig) -> None:
    with pytest.raises(PolicyViolationError):
        config.validate()


def test_pool_config_accepts_boundaries() -> None:
    PoolConfig(warm_pool_size=10, max_pool_size=20, context_threshold_percent=95).validate()
    PoolConfig(warm_pool_size=1, max_pool_size=1, context_threshold_percent=50).validate()


def test_audit_entry_render_includes_agent_only_when_known() -> None:
    stamp = datetime(2026, 10, 19, 12, 30, tzinfo=UTC)
    with_agent = AuditEntryView(1, "T1", "agent-7", "Started work", stamp)
    anonymous = AuditEntryView(2, "T1", None, "Reviewed", stamp)

    assert with_agent.render() == "- 2026-10-19T12:30:00+00:00 [agent-7]: Started work"
    assert anonymous.render() == "- 2026-10-19T12:30:00+00:00: Reviewed"
