from __future__ import annotations


class RecordNotFound(LookupError):
    """Raised when a row does not exist or is not visible to the principal."""

    def __init__(self, resource: str, key: object) -> None:
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} not found: {key}")


class RecordConflict(Exception):
    """Raised when a write collides with a uniqueness constraint."""

    def __init__(self, resource: str, detail: str) -> None:
        self.resource = resource
        super().__init__(f"{resource}: {detail}")
