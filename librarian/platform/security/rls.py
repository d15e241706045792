from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, TypeVar

from sqlalchemy import inspect

from librarian import audit
from librarian.metrics import observe_rls_denied_read, observe_rls_denied_write
from librarian.platform.security.context import Principal
from librarian.platform.security.errors import AuthorizationDenied, InvalidStateTransition
from librarian.platform.security.evaluator import PolicyEvaluator
from librarian.platform.security.policies import IMMUTABLE_COLUMNS, Entity, Operation, Row
from librarian.platform.security.relationships import RelationshipIndex


logger = logging.getLogger("librarian.security")

ModelT = TypeVar("ModelT")


def entity_for(instance_or_model: Any) -> Entity:
    model = instance_or_model if isinstance(instance_or_model, type) else type(instance_or_model)
    return Entity(model.__tablename__)


def row_payload(instance: Any) -> dict[str, Any]:
    """Column values of an ORM instance as a plain dict, keyed by attribute name."""

    mapper = inspect(instance).mapper
    return {attr.key: getattr(instance, attr.key) for attr in mapper.column_attrs}


def apply_scalar_defaults(instance: Any) -> None:
    """Fill unset columns that carry a scalar Python default so policies see final values."""

    mapper = inspect(instance).mapper
    for attr in mapper.column_attrs:
        column = attr.columns[0]
        default = column.default
        if getattr(instance, attr.key) is None and default is not None and default.is_scalar:
            setattr(instance, attr.key, default.arg)


def filter_visible_rows(
    rows: Sequence[ModelT],
    *,
    evaluator: PolicyEvaluator,
    index: RelationshipIndex,
    principal: Principal,
) -> list[ModelT]:
    """Drop rows that no select policy grants. Hidden rows are not an error."""

    visible: list[ModelT] = []
    denied_by_entity: dict[str, int] = {}
    for row in rows:
        entity = entity_for(row)
        if evaluator.is_allowed(principal, entity, Operation.SELECT, row_payload(row), index=index):
            visible.append(row)
            continue
        denied_by_entity[entity.value] = denied_by_entity.get(entity.value, 0) + 1

    for entity_name, count in denied_by_entity.items():
        observe_rls_denied_read(entity=entity_name, count=count)
    return visible


def validate_rls_write(
    entity: Entity,
    operation: Operation,
    row: Row,
    *,
    evaluator: PolicyEvaluator,
    index: RelationshipIndex,
    principal: Principal,
    proposed: Row | None = None,
) -> None:
    """Raise ``AuthorizationDenied`` unless some policy grants the write."""

    if evaluator.is_allowed(principal, entity, operation, row, proposed, index=index):
        return

    _emit_rls_denied(entity=entity, operation=operation, row=row, proposed=proposed, principal=principal)
    raise AuthorizationDenied(entity.value, operation.value, principal.label())


def validate_status_transition(
    entity: Entity,
    row: Row,
    proposed: Row,
    *,
    evaluator: PolicyEvaluator,
    index: RelationshipIndex,
    principal: Principal,
) -> None:
    """Like ``validate_rls_write`` for status changes, raising ``InvalidStateTransition``."""

    if evaluator.is_allowed(principal, entity, Operation.UPDATE, row, proposed, index=index):
        return

    _emit_rls_denied(entity=entity, operation=Operation.UPDATE, row=row, proposed=proposed, principal=principal)
    raise InvalidStateTransition(entity.value, principal.label(), str(row.get("status")), str(proposed.get("status")))


def validate_write_target(
    entity: Entity,
    operation: Operation,
    row: Row,
    *,
    evaluator: PolicyEvaluator,
    index: RelationshipIndex,
    principal: Principal,
) -> None:
    """Raise ``AuthorizationDenied`` unless ``row`` may be selected or targeted by ``operation``."""

    if evaluator.is_allowed(principal, entity, Operation.SELECT, row, index=index):
        return
    if evaluator.admits_target(principal, entity, operation, row, index=index):
        return

    _emit_rls_denied(entity=entity, operation=operation, row=row, proposed=None, principal=principal)
    raise AuthorizationDenied(entity.value, operation.value, principal.label())


def validate_immutable_columns(entity: Entity, row: Row, changes: Row, *, principal: Principal) -> None:
    changed = sorted(
        name for name in IMMUTABLE_COLUMNS.get(entity, ()) if name in changes and changes[name] != row.get(name)
    )
    if not changed:
        return

    _emit_rls_denied(
        entity=entity,
        operation=Operation.UPDATE,
        row=row,
        proposed={**row, **changes},
        principal=principal,
    )
    raise AuthorizationDenied(
        entity.value,
        Operation.UPDATE.value,
        principal.label(),
        detail=f"columns cannot change: {', '.join(changed)}",
    )


def reject_unsanctioned_write(entity: Entity, operation: Operation, row: Row, *, principal: Principal) -> None:
    """A change reached the flush without passing through the gateway's write methods."""

    _emit_rls_denied(entity=entity, operation=operation, row=row, proposed=None, principal=principal)
    raise AuthorizationDenied(
        entity.value,
        operation.value,
        principal.label(),
        detail="changes must go through insert, update, delete or transition",
    )


def _emit_rls_denied(
    *,
    entity: Entity,
    operation: Operation,
    row: Row,
    proposed: Row | None,
    principal: Principal,
) -> None:
    observe_rls_denied_write(entity=entity.value, operation=operation.value)
    logger.info(
        "policy.denied",
        extra={
            "entity": entity.value,
            "operation": operation.value,
            "decision": "DENY",
            "user_id": principal.label(),
        },
    )
    audit.record(
        "security.rls",
        str(row.get("id", "unknown")),
        "rls.denied",
        after={
            "entity": entity.value,
            "operation": operation.value,
            "status": str(row.get("status")) if "status" in row else None,
            "proposed_status": str(proposed.get("status")) if proposed is not None and "status" in proposed else None,
        },
        actor=principal.label(),
        correlation_id=principal.correlation_id,
    )
