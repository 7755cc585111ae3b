"""
Prometheus metrics for the erasure pipeline.

Features:
- Per-subsystem deletion stage outcomes and latency
- Verification outcomes per subsystem
- Recovery code events (issued, verified, wrong code, expired, ...)
- Certificate issuance and validation outcomes
- Background sweep runs
"""
import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import Counter, Histogram

# Pipeline stage metrics
erasure_stage_total = Counter(
    "erasure_stage_total",
    "Total erasure pipeline stage executions",
    ["subsystem", "outcome"]  # deleted, not_found, failed, timeout, skipped
)

erasure_stage_duration_seconds = Histogram(
    "erasure_stage_duration_seconds",
    "Erasure pipeline stage duration in seconds",
    ["subsystem"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

erasure_pipeline_total = Counter(
    "erasure_pipeline_total",
    "Total complete erasure runs",
    ["outcome"]  # success, partial
)

# Verification metrics
erasure_verification_total = Counter(
    "erasure_verification_total",
    "Total post-deletion verification checks",
    ["subsystem", "result"]  # verified, residue
)

# Recovery code metrics
recovery_code_events_total = Counter(
    "recovery_code_events_total",
    "Total recovery code events",
    ["event"]  # issued, verified, wrong_code, expired, max_attempts_exceeded, recovered, failed
)

# Certificate metrics
deletion_certificates_total = Counter(
    "deletion_certificates_total",
    "Total deletion certificate operations",
    ["event"]  # issued, valid, signature_mismatch, not_found
)

# Sweep metrics
erasure_sweep_runs_total = Counter(
    "erasure_sweep_runs_total",
    "Total background erasure sweep runs",
    ["status"]  # success, error
)

erasure_sweep_processed_total = Counter(
    "erasure_sweep_processed_total",
    "Total items handled by the background sweep",
    ["kind"]  # users, expired_codes
)


def record_stage(subsystem: str, outcome: str, duration: float) -> None:
    """Record a finished deletion stage."""
    erasure_stage_total.labels(subsystem=subsystem, outcome=outcome).inc()
    erasure_stage_duration_seconds.labels(subsystem=subsystem).observe(duration)


@contextmanager
def stage_timer() -> Iterator[dict]:
    """Yield a dict whose "elapsed" key is filled in on exit."""
    timing = {"elapsed": 0.0}
    start = time.perf_counter()
    try:
        yield timing
    finally:
        timing["elapsed"] = time.perf_counter() - start


def record_pipeline(success: bool) -> None:
    erasure_pipeline_total.labels(outcome="success" if success else "partial").inc()


def record_verification(subsystem: str, verified: bool) -> None:
    erasure_verification_total.labels(
        subsystem=subsystem,
        result="verified" if verified else "residue",
    ).inc()


def record_recovery_event(event: str) -> None:
    recovery_code_events_total.labels(event=event).inc()


def record_certificate_event(event: str) -> None:
    deletion_certificates_total.labels(event=event).inc()


def record_sweep_run(success: bool, users: int = 0, expired_codes: int = 0) -> None:
    """Record a sweep run and what it processed."""
    erasure_sweep_runs_total.labels(status="success" if success else "error").inc()
    if users:
        erasure_sweep_processed_total.labels(kind="users").inc(users)
    if expired_codes:
        erasure_sweep_processed_total.labels(kind="expired_codes").inc(expired_codes)
