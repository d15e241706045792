from __future__ import annotations

import io
import json
import logging

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import REGISTRY
from sqlalchemy.orm import Session

from conftest import World
from librarian import audit
from librarian.context import actor_scope, correlation_scope, get_log_context
from librarian.core.config import Settings
from librarian.library.models import Book
from librarian.logging import JsonLogFormatter, LogContextFilter
from librarian.main import bootstrap
from librarian.metrics import generate_metrics_payload, metrics_content_type
from librarian.otel import setup_inmemory_otel
from librarian.platform.security.context import Principal
from librarian.platform.security.errors import AuthorizationDenied
from librarian.platform.security.gateway import QueryGateway
from librarian.platform.security.policies import Operation


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel()
    exporter.clear()
    return exporter


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_denied_write_is_logged_counted_and_audited(
    db_session: Session,
    world: World,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="librarian.security")
    before = _sample("rls_denied_writes_count_total", {"entity": "books", "operation": "delete"})
    principal = Principal.for_user(world.c_id, correlation_id="corr-denied-1")

    with pytest.raises(AuthorizationDenied):
        with QueryGateway().unit_of_work(db_session, principal) as scope:
            scope.delete(scope.load(Book, world.book_id, Operation.DELETE))

    assert _sample("rls_denied_writes_count_total", {"entity": "books", "operation": "delete"}) == before + 1

    denied = [record for record in caplog.records if record.getMessage() == "policy.denied"]
    assert denied
    assert denied[0].entity == "books"
    assert denied[0].user_id == str(world.c_id)

    [entry] = audit.entries(action="rls.denied")
    assert entry.entity_id == str(world.book_id)
    assert entry.actor == str(world.c_id)
    assert entry.correlation_id == "corr-denied-1"
    assert entry.after["operation"] == "delete"
    assert entry.as_dict()["occurred_at"] == entry.occurred_at.isoformat()


def test_hidden_rows_are_counted_as_denied_reads(db_session: Session, world: World) -> None:
    before = _sample("rls_denied_reads_count_total", {"entity": "books"})

    with QueryGateway().unit_of_work(db_session, world.c) as scope:
        assert scope.select(Book) == []

    assert _sample("rls_denied_reads_count_total", {"entity": "books"}) == before + 1


def test_decisions_are_exported(db_session: Session, world: World) -> None:
    labels = {"entity": "books", "operation": "select", "decision": "ALLOW"}
    before = _sample("policy_decisions_total", labels)

    with QueryGateway().unit_of_work(db_session, world.a) as scope:
        scope.select(Book)

    assert _sample("policy_decisions_total", labels) > before
    assert b"policy_decisions_total" in generate_metrics_payload()
    assert metrics_content_type().startswith("text/plain")


def test_unit_of_work_span_carries_correlation_id_and_principal(
    db_session: Session,
    world: World,
    span_exporter: InMemorySpanExporter,
) -> None:
    principal = Principal.for_user(world.a_id, correlation_id="corr-span-1")

    with QueryGateway().unit_of_work(db_session, principal) as scope:
        scope.select(Book)

    spans = [span for span in span_exporter.get_finished_spans() if span.name == "librarian.unit_of_work"]
    assert spans
    assert spans[-1].attributes.get("correlation_id") == "corr-span-1"
    assert spans[-1].attributes.get("principal") == str(world.a_id)
    assert spans[-1].attributes.get("principal.anonymous") is False


def test_log_context_follows_the_unit_of_work(db_session: Session, world: World) -> None:
    seen: dict[str, str | None] = {}

    with QueryGateway().unit_of_work(db_session, Principal.for_user(world.b_id, correlation_id="corr-ctx-1")):
        seen.update(get_log_context())

    assert seen == {"correlation_id": "corr-ctx-1", "user_id": str(world.b_id)}
    assert get_log_context() == {"correlation_id": None, "user_id": None}


def test_nested_correlation_scope_reuses_the_outer_id() -> None:
    with correlation_scope() as outer:
        with correlation_scope() as inner:
            assert inner == outer
        with correlation_scope("explicit") as explicit:
            assert explicit == "explicit"


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.LogRecord("librarian.loans", logging.INFO, __file__, 1, "loan.transition", None, None)
    record.correlation_id = "corr-log-1"
    record.loan_id = "loan-1"
    record.to_status = "loaned"
    record.from_status = None
    record.password = "secret"

    payload = json.loads(JsonLogFormatter(service="librarian").format(record))

    assert payload["msg"] == "loan.transition"
    assert payload["service"] == "librarian"
    assert payload["correlation_id"] == "corr-log-1"
    assert payload["fields"] == {"loan_id": "loan-1", "to_status": "loaned"}


def test_json_formatter_truncates_long_errors() -> None:
    record = logging.LogRecord("librarian.gateway", logging.INFO, __file__, 1, "uow.failed", None, None)
    record.error = "x" * 50

    payload = json.loads(JsonLogFormatter(error_max_chars=10).format(record))

    assert payload["fields"]["error"] == "x" * 10
    assert "service" not in payload


def test_context_filter_stamps_actor_without_overriding_explicit_user() -> None:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(LogContextFilter())
    test_logger = logging.getLogger("librarian.tests.context")
    test_logger.addHandler(handler)
    test_logger.setLevel(logging.INFO)
    try:
        with correlation_scope("corr-filter-1"), actor_scope("user-1"):
            test_logger.info("first")
            test_logger.info("second", extra={"user_id": "user-2"})
    finally:
        test_logger.removeHandler(handler)

    first, second = (json.loads(line) for line in stream.getvalue().splitlines())
    assert first["correlation_id"] == "corr-filter-1"
    assert first["fields"] == {"user_id": "user-1"}
    assert second["fields"] == {"user_id": "user-2"}


def test_audit_trail_is_bounded() -> None:
    trail = audit.AuditTrail(max_entries=2)

    for index in range(3):
        trail.record("books", str(index), "book.touched", actor="user-1")

    assert len(trail) == 2
    assert [entry.entity_id for entry in trail.entries()] == ["1", "2"]
    assert trail.entries(entity_id="0") == []


def test_bootstrap_configures_logging_once_and_builds_gateway() -> None:
    root_logger = logging.getLogger()
    saved_handlers = list(root_logger.handlers)
    saved_level = root_logger.level
    try:
        gateway = bootstrap(Settings(otel_enabled=False, log_level="debug", loan_revalidate_availability_on_approval=False))
        bootstrap(Settings(otel_enabled=False))

        json_handlers = [handler for handler in root_logger.handlers if isinstance(handler.formatter, JsonLogFormatter)]
        assert len(json_handlers) == 1
        assert json_handlers[0].formatter.service == "librarian"
        assert root_logger.level == logging.DEBUG
        assert "book_loans_update_owner_approve" in gateway.evaluator.registry.names()
    finally:
        root_logger.handlers[:] = saved_handlers
        root_logger.setLevel(saved_level)
        if hasattr(root_logger, "_librarian_configured"):
            del root_logger._librarian_configured
