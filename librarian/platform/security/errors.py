from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for policy enforcement failures."""


class AuthorizationDenied(AuthorizationError):
    """Raised when no policy grants a write for the principal."""

    def __init__(self, entity: str, operation: str, principal_id: str, detail: str | None = None) -> None:
        self.entity = entity
        self.operation = operation
        self.principal_id = principal_id
        message = f"{operation} on '{entity}' denied for principal {principal_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class InvalidStateTransition(AuthorizationDenied):
    """Raised when a status update does not match an allowed actor/from/to combination."""

    def __init__(
        self,
        entity: str,
        principal_id: str,
        from_status: str,
        to_status: str,
        detail: str | None = None,
    ) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            entity,
            "update",
            principal_id,
            detail or f"transition {from_status} -> {to_status} not permitted",
        )


class ReferentialGap(AuthorizationError):
    """A predicate's foreign lookup resolved to a missing row; evaluated as DENY."""

    def __init__(self, entity: str, key: object) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"Referenced {entity} row does not exist: {key}")


class PrincipalUnbound(RuntimeError):
    """An authorized query ran without a bound principal. Always a caller bug."""
