"""Tests for compliance risk levels."""

import pytest

from custodian.retention.auditor import risk_level_for
from custodian.retention.types import RiskLevel


@pytest.mark.parametrize(
    ("rate", "overdue", "expected"),
    [
        (100.0, 0, RiskLevel.LOW),
        (95.0, 10, RiskLevel.LOW),
        (94.9, 0, RiskLevel.MEDIUM),
        (99.0, 11, RiskLevel.MEDIUM),
        (84.9, 0, RiskLevel.HIGH),
        (99.0, 51, RiskLevel.HIGH),
        (69.9, 0, RiskLevel.CRITICAL),
        (100.0, 101, RiskLevel.CRITICAL),
    ],
)
def test_risk_level_for(rate: float, overdue: int, expected: RiskLevel) -> None:
    assert risk_level_for(rate, overdue) == expected
