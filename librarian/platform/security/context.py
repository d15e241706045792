from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field

from librarian.platform.security.errors import PrincipalUnbound


@dataclass(frozen=True, slots=True)
class Principal:
    """The identity on whose behalf policies are evaluated.

    ``user_id`` is ``None`` for the anonymous principal, which only sees
    publicly readable rows.
    """

    user_id: uuid.UUID | None = None
    correlation_id: str | None = field(default=None, compare=False)

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    @classmethod
    def anonymous(cls, correlation_id: str | None = None) -> Principal:
        return cls(user_id=None, correlation_id=correlation_id)

    @classmethod
    def for_user(cls, user_id: uuid.UUID | str, correlation_id: str | None = None) -> Principal:
        if not isinstance(user_id, uuid.UUID):
            user_id = uuid.UUID(str(user_id))
        return cls(user_id=user_id, correlation_id=correlation_id)

    def label(self) -> str:
        return "anonymous" if self.user_id is None else str(self.user_id)


@dataclass(slots=True)
class ScopedContext:
    """Handle for one principal binding; inactive once the binding is released."""

    principal: Principal
    active: bool = True


_principal_var: ContextVar[ScopedContext | None] = ContextVar("principal_scope", default=None)


@contextmanager
def bind_principal(principal: Principal) -> Iterator[ScopedContext]:
    scope = ScopedContext(principal=principal)
    token = _principal_var.set(scope)
    try:
        yield scope
    finally:
        scope.active = False
        _principal_var.reset(token)


def current_scope() -> ScopedContext:
    scope = _principal_var.get()
    if scope is None or not scope.active:
        raise PrincipalUnbound("no principal is bound to the current context")
    return scope


def current_principal() -> Principal:
    return current_scope().principal


def require_bound(scope: ScopedContext) -> Principal:
    """Return the scope's principal if it is the live binding, else fail loudly."""

    if not scope.active:
        raise PrincipalUnbound("principal scope was already released")
    if _principal_var.get() is not scope:
        raise PrincipalUnbound("principal scope is not bound to the current context")
    return scope.principal
