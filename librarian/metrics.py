from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


policy_decisions_total = Counter(
    "policy_decisions_total",
    "Policy evaluations by entity, operation and decision",
    ["entity", "operation", "decision"],
)

policy_referential_gaps_total = Counter(
    "policy_referential_gaps_total",
    "Policy predicates that referenced a missing row",
    ["entity"],
)

rls_denied_reads_count = Counter(
    "rls_denied_reads_count",
    "Rows filtered out of select results by RLS",
    ["entity"],
)

rls_denied_writes_count = Counter(
    "rls_denied_writes_count",
    "Writes rejected by RLS",
    ["entity", "operation"],
)

loan_transitions_total = Counter(
    "loan_transitions_total",
    "Committed loan status transitions",
    ["from_status", "to_status"],
)

unit_of_work_duration_seconds = Histogram(
    "unit_of_work_duration_seconds",
    "Authorized unit of work duration in seconds",
    ["outcome"],
)


def observe_policy_decision(entity: str, operation: str, decision: str) -> None:
    policy_decisions_total.labels(entity=entity, operation=operation, decision=decision).inc()


def observe_referential_gap(entity: str) -> None:
    policy_referential_gaps_total.labels(entity=entity).inc()


def observe_rls_denied_read(entity: str, count: int = 1) -> None:
    if count > 0:
        rls_denied_reads_count.labels(entity=entity).inc(count)


def observe_rls_denied_write(entity: str, operation: str) -> None:
    rls_denied_writes_count.labels(entity=entity, operation=operation).inc()


def observe_loan_transition(from_status: str, to_status: str) -> None:
    loan_transitions_total.labels(from_status=from_status, to_status=to_status).inc()


def observe_unit_of_work(outcome: str, duration: float) -> None:
    unit_of_work_duration_seconds.labels(outcome=outcome).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
