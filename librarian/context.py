"""Ambient per-unit-of-work context read by logging, tracing and the audit trail.

The security layer keeps its own principal binding; this module only carries
the string labels the observability code needs, so it has no dependency on
the policy engine.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
actor_var: ContextVar[str | None] = ContextVar("actor", default=None)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_actor() -> str | None:
    return actor_var.get()


def new_correlation_id() -> str:
    return uuid.uuid4().hex


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """Bind a correlation id, reusing the enclosing one when none is given."""

    resolved = correlation_id or get_correlation_id() or new_correlation_id()
    token = correlation_id_var.set(resolved)
    try:
        yield resolved
    finally:
        correlation_id_var.reset(token)


@contextmanager
def actor_scope(actor: str) -> Iterator[str]:
    token = actor_var.set(actor)
    try:
        yield actor
    finally:
        actor_var.reset(token)


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "user_id": get_actor()}
