from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from librarian.core.exceptions import RecordNotFound
from librarian.platform.security.gateway import AuthorizedSession
from librarian.platform.security.policies import Entity, Operation


class BaseRepository:
    model: type[Any]

    @property
    def entity(self) -> Entity:
        return Entity(self.model.__tablename__)

    def list(self, scope: AuthorizedSession, *criteria: Any, order_by: Sequence[Any] = ()) -> list[Any]:
        return scope.select(self.model, *criteria, order_by=order_by)

    def get(self, scope: AuthorizedSession, key: Any) -> Any | None:
        return scope.get(self.model, key)

    def require(self, scope: AuthorizedSession, key: Any) -> Any:
        row = scope.get(self.model, key)
        if row is None:
            raise RecordNotFound(self.entity.value, key)
        return row

    def require_target(self, scope: AuthorizedSession, key: Any, operation: Operation) -> Any:
        """Load the row an update or delete will act on; see ``AuthorizedSession.load``."""

        row = scope.load(self.model, key, operation)
        if row is None:
            raise RecordNotFound(self.entity.value, key)
        return row

    def add(self, scope: AuthorizedSession, instance: Any) -> Any:
        return scope.insert(instance)

    def update(self, scope: AuthorizedSession, instance: Any, **changes: Any) -> Any:
        return scope.update(instance, **changes)

    def remove(self, scope: AuthorizedSession, instance: Any) -> None:
        scope.delete(instance)
