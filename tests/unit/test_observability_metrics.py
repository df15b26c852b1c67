"""Unit tests for Prometheus metrics module."""

from __future__ import annotations

import pytest
from prometheus_client import REGISTRY, CollectorRegistry, Counter

from custodian.observability.metrics import (
    MetricsConfig,
    get_metrics,
    record_certificate_issued,
    record_erase_batch,
    record_lock_contention,
    record_sweep,
    record_transition,
    set_compliance_rate,
)


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestMetricsConfig:
    """Tests for MetricsConfig."""

    def test_default_config(self) -> None:
        config = MetricsConfig()

        assert config.enabled is True
        assert config.prefix == "custodian"

    def test_from_env_custom(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test from_env with custom environment variables."""
        monkeypatch.setenv("METRICS_ENABLED", "false")
        monkeypatch.setenv("METRICS_PREFIX", "lms")

        config = MetricsConfig.from_env()

        assert config.enabled is False
        assert config.prefix == "lms"


class TestSweepMetrics:
    """Tests for sweep and transition metrics."""

    def test_record_sweep(self) -> None:
        before = _sample("custodian_sweeps_total", {"outcome": "completed"})
        observed = _sample("custodian_sweep_duration_seconds_count")

        record_sweep("completed", 1.5)
        record_sweep("completed")

        assert _sample("custodian_sweeps_total", {"outcome": "completed"}) == before + 2
        assert _sample("custodian_sweep_duration_seconds_count") == observed + 1

    def test_record_transition(self) -> None:
        before = _sample("custodian_lifecycle_transitions_total", {"to_status": "soft_deleted"})

        record_transition("soft_deleted")

        after = _sample("custodian_lifecycle_transitions_total", {"to_status": "soft_deleted"})
        assert after == before + 1


class TestErasureMetrics:
    """Tests for erase batch and certificate metrics."""

    def test_successful_batch_counts_records(self) -> None:
        labels = {"method": "overwrite_multiple"}
        batches = _sample(
            "custodian_erase_batches_total", {**labels, "outcome": "success"}
        )
        erased = _sample("custodian_records_erased_total", labels)

        record_erase_batch("overwrite_multiple", "success", record_count=4)

        assert _sample("custodian_erase_batches_total", {**labels, "outcome": "success"}) == (
            batches + 1
        )
        assert _sample("custodian_records_erased_total", labels) == erased + 4

    def test_failed_batch_counts_no_records(self) -> None:
        labels = {"method": "physical_destruction"}
        erased = _sample("custodian_records_erased_total", labels)

        record_erase_batch("physical_destruction", "failure", record_count=4)

        assert _sample("custodian_records_erased_total", labels) == erased

    def test_record_certificate_issued(self) -> None:
        before = _sample("custodian_certificates_issued_total")

        record_certificate_issued()

        assert _sample("custodian_certificates_issued_total") == before + 1


class TestLockAndComplianceMetrics:
    """Tests for lock contention and compliance gauges."""

    def test_record_lock_contention(self) -> None:
        labels = {"lock_type": "retention_sweep"}
        before = _sample("custodian_lock_contention_total", labels)

        record_lock_contention("retention_sweep")

        assert _sample("custodian_lock_contention_total", labels) == before + 1

    def test_set_compliance_rate(self) -> None:
        set_compliance_rate("acme-learning", "communications", 87.5)

        value = _sample(
            "custodian_compliance_rate",
            {"organisation_id": "acme-learning", "data_type": "communications"},
        )
        assert value == 87.5


class TestGetMetrics:
    """Tests for get_metrics."""

    def test_default_registry(self) -> None:
        output = get_metrics()

        assert b"custodian_sweeps_total" in output

    def test_custom_registry(self) -> None:
        registry = CollectorRegistry()
        Counter("isolated_total", "Isolated counter", registry=registry).inc()

        output = get_metrics(registry)

        assert b"isolated_total 1.0" in output
        assert b"custodian_sweeps_total" not in output
