"""Tests for effective policy resolution."""

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from uuid import UUID

from custodian.retention.resolver import find_priority_conflicts, resolve_effective_policy
from custodian.retention.types import DataType

NOW = datetime(2026, 6, 1, tzinfo=UTC)
ORG = "acme-learning"


def _policy(
    pid: int,
    *,
    priority: int = 100,
    created_days_ago: int = 30,
    enabled: bool = True,
    organisation_id: str = ORG,
    data_type: str = "communications",
) -> SimpleNamespace:
    return SimpleNamespace(
        policy_id=UUID(int=pid),
        organisation_id=organisation_id,
        data_type=data_type,
        priority=priority,
        enabled=enabled,
        created_at=NOW - timedelta(days=created_days_ago),
    )


class TestResolveEffectivePolicy:
    """Tests for resolve_effective_policy."""

    def test_no_candidates_is_ungoverned(self) -> None:
        assert resolve_effective_policy([], ORG, DataType.COMMUNICATIONS, NOW) is None

    def test_disabled_policy_ignored(self) -> None:
        policies = [_policy(1, enabled=False)]

        assert resolve_effective_policy(policies, ORG, "communications", NOW) is None

    def test_other_tenant_and_data_type_ignored(self) -> None:
        policies = [
            _policy(1, organisation_id="globex-academy"),
            _policy(2, data_type="support_tickets"),
        ]

        assert resolve_effective_policy(policies, ORG, DataType.COMMUNICATIONS, NOW) is None

    def test_highest_priority_wins(self) -> None:
        low = _policy(1, priority=10, created_days_ago=1)
        high = _policy(2, priority=200, created_days_ago=90)

        effective = resolve_effective_policy([low, high], ORG, DataType.COMMUNICATIONS, NOW)

        assert effective is high

    def test_priority_tie_goes_to_newest(self) -> None:
        older = _policy(1, created_days_ago=60)
        newer = _policy(2, created_days_ago=5)

        effective = resolve_effective_policy([newer, older], ORG, DataType.COMMUNICATIONS, NOW)

        assert effective is newer

    def test_full_tie_goes_to_highest_id(self) -> None:
        first = _policy(7)
        second = _policy(9)

        assert resolve_effective_policy([second, first], ORG, "communications", NOW) is second
        assert resolve_effective_policy([first, second], ORG, "communications", NOW) is second

    def test_policy_created_after_as_of_ignored(self) -> None:
        existing = _policy(1, priority=10)
        future = _policy(2, priority=500, created_days_ago=-1)

        effective = resolve_effective_policy([existing, future], ORG, "communications", NOW)

        assert effective is existing

    def test_as_of_in_past_sees_older_configuration(self) -> None:
        old = _policy(1, priority=10, created_days_ago=100)
        recent = _policy(2, priority=50, created_days_ago=10)
        as_of = NOW - timedelta(days=30)

        assert resolve_effective_policy([old, recent], ORG, "communications", as_of) is old
        assert resolve_effective_policy([old, recent], ORG, "communications", NOW) is recent


class TestFindPriorityConflicts:
    """Tests for find_priority_conflicts."""

    def test_single_policy_has_no_conflict(self) -> None:
        assert find_priority_conflicts([_policy(1)], ORG, "communications", NOW) == []

    def test_distinct_priorities_have_no_conflict(self) -> None:
        policies = [_policy(1, priority=10), _policy(2, priority=20)]

        assert find_priority_conflicts(policies, ORG, "communications", NOW) == []

    def test_tied_top_priority_reported_winner_first(self) -> None:
        older = _policy(1, priority=50, created_days_ago=40)
        newer = _policy(2, priority=50, created_days_ago=4)
        lower = _policy(3, priority=5)

        conflicts = find_priority_conflicts([older, lower, newer], ORG, "communications", NOW)

        assert conflicts == [newer, older]

    def test_tie_below_top_priority_ignored(self) -> None:
        policies = [_policy(1, priority=5), _policy(2, priority=5), _policy(3, priority=80)]

        assert find_priority_conflicts(policies, ORG, "communications", NOW) == []
