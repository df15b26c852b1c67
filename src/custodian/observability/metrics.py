"""Prometheus metrics for Custodian observability.

This module provides Prometheus metrics for monitoring:
- Sweep cycles (outcome, duration, lifecycle transitions)
- Secure erase batches and certificates
- Execution lock contention
- Compliance scores per policy
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, generate_latest

__all__ = [
    "MetricsConfig",
    "SWEEP_COUNT",
    "SWEEP_DURATION",
    "LIFECYCLE_TRANSITIONS",
    "ERASE_BATCHES",
    "RECORDS_ERASED",
    "CERTIFICATES_ISSUED",
    "LOCK_CONTENTION",
    "COMPLIANCE_RATE",
    "get_metrics",
    "record_sweep",
    "record_transition",
    "record_erase_batch",
    "record_certificate_issued",
    "record_lock_contention",
    "set_compliance_rate",
]


@dataclass
class MetricsConfig:
    """Configuration for Prometheus metrics.

    Attributes:
        enabled: Whether metrics collection is enabled.
        prefix: Prefix for all metric names.
    """

    enabled: bool = True
    prefix: str = "custodian"

    @classmethod
    def from_env(cls) -> MetricsConfig:
        """Create configuration from environment variables."""
        return cls(
            enabled=os.getenv("METRICS_ENABLED", "true").lower() == "true",
            prefix=os.getenv("METRICS_PREFIX", "custodian"),
        )


_config = MetricsConfig.from_env()

# ============================================================================
# Sweep Metrics
# ============================================================================

SWEEP_COUNT = Counter(
    f"{_config.prefix}_sweeps_total",
    "Partition sweeps by outcome",
    ["outcome"],
)

SWEEP_DURATION = Histogram(
    f"{_config.prefix}_sweep_duration_seconds",
    "Time to sweep one partition",
    buckets=(0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0),
)

LIFECYCLE_TRANSITIONS = Counter(
    f"{_config.prefix}_lifecycle_transitions_total",
    "Lifecycle state transitions by target state",
    ["to_status"],
)

# ============================================================================
# Erasure Metrics
# ============================================================================

ERASE_BATCHES = Counter(
    f"{_config.prefix}_erase_batches_total",
    "Secure erase batches by method and outcome",
    ["method", "outcome"],
)

RECORDS_ERASED = Counter(
    f"{_config.prefix}_records_erased_total",
    "Records securely erased and certified",
    ["method"],
)

CERTIFICATES_ISSUED = Counter(
    f"{_config.prefix}_certificates_issued_total",
    "Secure deletion certificates issued",
)

# ============================================================================
# Lock and Compliance Metrics
# ============================================================================

LOCK_CONTENTION = Counter(
    f"{_config.prefix}_lock_contention_total",
    "Lease acquisitions refused because another holder owns the lease",
    ["lock_type"],
)

COMPLIANCE_RATE = Gauge(
    f"{_config.prefix}_compliance_rate",
    "Latest compliance rate per policy (percent)",
    ["organisation_id", "data_type"],
)


def get_metrics(registry: CollectorRegistry | None = None) -> bytes:
    """Get current metrics in Prometheus format."""
    return generate_latest(registry or REGISTRY)


# ============================================================================
# Convenience Functions for Recording Metrics
# ============================================================================


def record_sweep(outcome: str, duration_seconds: float | None = None) -> None:
    """Record a finished partition sweep (completed, skipped, aborted, failed)."""
    if not _config.enabled:
        return
    SWEEP_COUNT.labels(outcome=outcome).inc()
    if duration_seconds is not None:
        SWEEP_DURATION.observe(duration_seconds)


def record_transition(to_status: str) -> None:
    if not _config.enabled:
        return
    LIFECYCLE_TRANSITIONS.labels(to_status=to_status).inc()


def record_erase_batch(method: str, outcome: str, record_count: int = 0) -> None:
    """Record an erase batch; erased records are counted on success only."""
    if not _config.enabled:
        return
    ERASE_BATCHES.labels(method=method, outcome=outcome).inc()
    if outcome == "success" and record_count:
        RECORDS_ERASED.labels(method=method).inc(record_count)


def record_certificate_issued() -> None:
    if not _config.enabled:
        return
    CERTIFICATES_ISSUED.inc()


def record_lock_contention(lock_type: str) -> None:
    if not _config.enabled:
        return
    LOCK_CONTENTION.labels(lock_type=lock_type).inc()


def set_compliance_rate(organisation_id: str, data_type: str, rate: float) -> None:
    if not _config.enabled:
        return
    COMPLIANCE_RATE.labels(organisation_id=organisation_id, data_type=data_type).set(rate)
