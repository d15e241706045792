from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy import event, inspect, select, update
from sqlalchemy.orm import Session

import librarian.models  # noqa: F401
from librarian.context import actor_scope, correlation_scope
from librarian.core.config import Settings, get_settings
from librarian.core.database import Base
from librarian.core.exceptions import RecordNotFound
from librarian.metrics import observe_unit_of_work
from librarian.otel import traced
from librarian.platform.security.context import Principal, ScopedContext, bind_principal, require_bound
from librarian.platform.security.errors import InvalidStateTransition
from librarian.platform.security.evaluator import PolicyEvaluator
from librarian.platform.security.policies import Decision, Entity, Operation, build_policy_registry
from librarian.platform.security.relationships import RelationshipIndex
from librarian.platform.security.rls import (
    apply_scalar_defaults,
    entity_for,
    filter_visible_rows,
    reject_unsanctioned_write,
    row_payload,
    validate_immutable_columns,
    validate_rls_write,
    validate_status_transition,
    validate_write_target,
)


logger = logging.getLogger("librarian.gateway")

ModelT = TypeVar("ModelT")
ResultT = TypeVar("ResultT")


def model_for(entity: Entity) -> type[Any]:
    for mapper in Base.registry.mappers:
        if getattr(mapper.class_, "__tablename__", None) == entity.value:
            return mapper.class_
    raise KeyError(f"No mapped model for entity '{entity.value}'")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_SANCTIONED_KEY = "librarian.sanctioned_writes"


def _flush_guard(principal: Principal) -> Callable[[Session, Any, Any], None]:
    """Build a ``before_flush`` listener that rejects changes made behind the gateway's back.

    Rows returned by ``select``/``get``/``load`` stay attached to the session;
    assigning to them, ``session.add`` or ``session.delete`` would otherwise be
    committed with the unit of work without any policy check.
    """

    def guard(session: Session, flush_context: Any, instances: Any) -> None:
        sanctioned = session.info.get(_SANCTIONED_KEY, set())
        pending = [
            *((obj, Operation.INSERT) for obj in session.new),
            *((obj, Operation.UPDATE) for obj in session.dirty if session.is_modified(obj)),
            *((obj, Operation.DELETE) for obj in session.deleted),
        ]
        for obj, operation in pending:
            if id(obj) not in sanctioned:
                reject_unsanctioned_write(entity_for(obj), operation, row_payload(obj), principal=principal)

    return guard


class AuthorizedSession:
    """A SQLAlchemy session whose every read and write passes the policy evaluator.

    Only usable while the principal binding it was created under is live;
    any call after release, or from a context bound to someone else, raises
    ``PrincipalUnbound``.
    """

    def __init__(self, session: Session, scope: ScopedContext, evaluator: PolicyEvaluator) -> None:
        self._session = session
        self._scope = scope
        self._evaluator = evaluator
        self._index = RelationshipIndex(session)

    @property
    def principal(self) -> Principal:
        return require_bound(self._scope)

    @contextmanager
    def _sanctioned(self, instance: Any) -> Iterator[None]:
        """Let ``instance`` through the flush guard for one already-evaluated write."""

        sanctioned = self._session.info.setdefault(_SANCTIONED_KEY, set())
        sanctioned.add(id(instance))
        try:
            yield
        finally:
            sanctioned.discard(id(instance))

    @property
    def index(self) -> RelationshipIndex:
        return self._index

    def evaluate(
        self,
        entity: Entity,
        operation: Operation,
        row: Mapping[str, Any],
        proposed: Mapping[str, Any] | None = None,
    ) -> Decision:
        return self._evaluator.evaluate(self.principal, entity, operation, row, proposed, index=self._index)

    def select(self, model: type[ModelT], *criteria: Any, order_by: Sequence[Any] = ()) -> list[ModelT]:
        principal = self.principal
        stmt = select(model)
        if criteria:
            stmt = stmt.where(*criteria)
        if order_by:
            stmt = stmt.order_by(*order_by)
        rows = self._session.scalars(stmt).all()
        return filter_visible_rows(rows, evaluator=self._evaluator, index=self._index, principal=principal)

    def get(self, model: type[ModelT], key: Any) -> ModelT | None:
        principal = self.principal
        row = self._session.get(model, key)
        if row is None:
            return None
        visible = filter_visible_rows([row], evaluator=self._evaluator, index=self._index, principal=principal)
        return visible[0] if visible else None

    def load(self, model: type[ModelT], key: Any, operation: Operation) -> ModelT | None:
        """Fetch the target of an update or delete, or ``None`` when no such row exists.

        The row is returned when the principal can see it or when some
        ``operation`` policy admits it as a target; otherwise the attempt is
        a denied write. It is not a read path: use ``get`` or ``select``.
        """

        principal = self.principal
        if operation not in (Operation.UPDATE, Operation.DELETE):
            raise ValueError(f"load targets updates and deletes, not {operation.value}")
        row = self._session.get(model, key)
        if row is None:
            return None
        validate_write_target(
            entity_for(row),
            operation,
            row_payload(row),
            evaluator=self._evaluator,
            index=self._index,
            principal=principal,
        )
        return row

    def insert(self, instance: ModelT) -> ModelT:
        principal = self.principal
        apply_scalar_defaults(instance)
        validate_rls_write(
            entity_for(instance),
            Operation.INSERT,
            row_payload(instance),
            evaluator=self._evaluator,
            index=self._index,
            principal=principal,
        )
        with self._sanctioned(instance):
            self._session.add(instance)
            self._session.flush()
        return instance

    def update(self, instance: ModelT, **changes: Any) -> ModelT:
        principal = self.principal
        entity = entity_for(instance)
        existing = row_payload(instance)
        unknown = sorted(set(changes) - set(existing))
        if unknown:
            raise ValueError(f"Unknown columns for '{entity.value}': {', '.join(unknown)}")
        validate_immutable_columns(entity, existing, changes, principal=principal)

        if entity == Entity.LOAN and "status" in changes and changes["status"] != existing.get("status"):
            status = changes.pop("status")
            return self.transition(instance, existing["status"], status, **changes)

        proposed = {**existing, **changes}
        validate_rls_write(
            entity,
            Operation.UPDATE,
            existing,
            evaluator=self._evaluator,
            index=self._index,
            principal=principal,
            proposed=proposed,
        )
        with self._sanctioned(instance):
            for key, value in changes.items():
                setattr(instance, key, value)
            self._session.flush()
        return instance

    def delete(self, instance: Any) -> None:
        principal = self.principal
        validate_rls_write(
            entity_for(instance),
            Operation.DELETE,
            row_payload(instance),
            evaluator=self._evaluator,
            index=self._index,
            principal=principal,
        )
        with self._sanctioned(instance):
            self._session.delete(instance)
            self._session.flush()

    def transition(self, instance: ModelT, from_status: str, to_status: str, **changes: Any) -> ModelT:
        """Move ``instance.status`` from ``from_status`` to ``to_status`` atomically.

        The policy check runs against the current row, then the write is a
        conditional UPDATE on the expected status. If a concurrent
        transaction changed the status first, no row matches and the
        transition is rejected rather than overwriting it.
        """

        principal = self.principal
        entity = entity_for(instance)
        existing = row_payload(instance)
        validate_immutable_columns(entity, existing, changes, principal=principal)
        if existing.get("status") != from_status:
            raise InvalidStateTransition(entity.value, principal.label(), str(existing.get("status")), str(to_status))

        proposed = {**existing, **changes, "status": to_status}
        validate_status_transition(
            entity,
            existing,
            proposed,
            evaluator=self._evaluator,
            index=self._index,
            principal=principal,
        )

        model = type(instance)
        mapper = inspect(model)
        key_criteria = [column == getattr(instance, mapper.get_property_by_column(column).key) for column in mapper.primary_key]
        values: dict[str, Any] = {**changes, "status": str(to_status)}
        if "updated_at" in existing:
            values.setdefault("updated_at", _utcnow())

        result = self._session.execute(
            update(model)
            .where(*key_criteria, model.status == str(from_status))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateTransition(
                entity.value,
                principal.label(),
                str(from_status),
                str(to_status),
                detail="row status changed concurrently",
            )
        self._session.flush()
        self._session.refresh(instance)
        return instance


class QueryGateway:
    """Runs units of work with a bound principal; the only write path to the store."""

    def __init__(self, evaluator: PolicyEvaluator | None = None) -> None:
        self._evaluator = evaluator or PolicyEvaluator()

    @property
    def evaluator(self) -> PolicyEvaluator:
        return self._evaluator

    @contextmanager
    def unit_of_work(self, session: Session, principal: Principal) -> Iterator[AuthorizedSession]:
        started = time.perf_counter()
        with (
            correlation_scope(principal.correlation_id),
            actor_scope(principal.label()),
            traced(
                "librarian.unit_of_work",
                {"principal.anonymous": principal.is_anonymous},
                tracer_name="librarian.gateway",
            ),
            bind_principal(principal) as scope,
        ):
            logger.debug("uow.started")
            authorized = AuthorizedSession(session, scope, self._evaluator)
            guard = _flush_guard(principal)
            event.listen(session, "before_flush", guard)
            try:
                yield authorized
                session.commit()
            except Exception as exc:
                session.rollback()
                duration_ms = round((time.perf_counter() - started) * 1000, 2)
                observe_unit_of_work("failed", duration_ms / 1000)
                logger.info("uow.failed", extra={"duration_ms": duration_ms, "error": str(exc)})
                raise
            finally:
                event.remove(session, "before_flush", guard)

            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_unit_of_work("committed", duration_ms / 1000)
            logger.debug("uow.finished", extra={"duration_ms": duration_ms})

    @contextmanager
    def unauthenticated(self, session: Session) -> Iterator[AuthorizedSession]:
        """Explicitly flagged path for callers without a principal; sees only public rows."""

        with self.unit_of_work(session, Principal.anonymous()) as authorized:
            yield authorized

    def run(self, session: Session, principal: Principal, callback: Callable[[AuthorizedSession], ResultT]) -> ResultT:
        with self.unit_of_work(session, principal) as authorized:
            return callback(authorized)


def build_gateway(settings: Settings | None = None) -> QueryGateway:
    settings = settings or get_settings()
    registry = build_policy_registry(
        revalidate_loan_availability=settings.loan_revalidate_availability_on_approval,
    )
    return QueryGateway(PolicyEvaluator(registry))


def _split_key(model: type[Any], payload: Mapping[str, Any]) -> tuple[Any, dict[str, Any]]:
    mapper = inspect(model)
    key_names = [mapper.get_property_by_column(column).key for column in mapper.primary_key]
    missing = [name for name in key_names if payload.get(name) is None]
    if missing:
        raise ValueError(f"Primary key columns required: {', '.join(missing)}")
    key = tuple(payload[name] for name in key_names)
    changes = {name: value for name, value in payload.items() if name not in key_names}
    return (key[0] if len(key) == 1 else key), changes


def authorized_query(
    scope: AuthorizedSession,
    entity: Entity,
    operation: Operation,
    payload: Mapping[str, Any] | None = None,
) -> list[Any]:
    """Generic entry point: column filters for select, column values for writes.

    Updates and deletes identify the target row by its primary key columns
    in ``payload``; the remaining keys of an update are the new values.
    """

    model = model_for(entity)
    payload = dict(payload or {})

    if operation == Operation.SELECT:
        criteria = [getattr(model, name) == value for name, value in payload.items()]
        return scope.select(model, *criteria)

    if operation == Operation.INSERT:
        return [scope.insert(model(**payload))]

    key, changes = _split_key(model, payload)
    instance = scope.load(model, key, operation)
    if instance is None:
        raise RecordNotFound(entity.value, key)

    if operation == Operation.UPDATE:
        return [scope.update(instance, **changes)]
    scope.delete(instance)
    return []
