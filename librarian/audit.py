from __future__ import annotations

import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from librarian.context import get_actor, get_correlation_id
from librarian.core.config import get_settings


@dataclass(frozen=True, slots=True)
class AuditEntry:
    actor: str | None
    entity_type: str
    entity_id: str
    action: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    correlation_id: str | None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        return payload


class AuditTrail:
    """Bounded in-process record of denied writes and loan status changes.

    The oldest entries are discarded once ``max_entries`` is reached.
    """

    def __init__(self, max_entries: int | None = None) -> None:
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        *,
        actor: str | None = None,
        correlation_id: str | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            actor=actor or get_actor(),
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            before=before,
            after=after,
            correlation_id=correlation_id or get_correlation_id(),
        )
        with self._lock:
            self._entries.append(entry)
        return entry

    def entries(
        self,
        *,
        action: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> list[AuditEntry]:
        with self._lock:
            snapshot = list(self._entries)
        return [
            entry
            for entry in snapshot
            if (action is None or entry.action == action)
            and (entity_type is None or entry.entity_type == entity_type)
            and (entity_id is None or entry.entity_id == entity_id)
        ]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


trail = AuditTrail(get_settings().audit_max_entries)


def record(
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    *,
    actor: str | None = None,
    correlation_id: str | None = None,
) -> AuditEntry:
    return trail.record(
        entity_type, entity_id, action, before, after, actor=actor, correlation_id=correlation_id
    )


def entries(**filters: str | None) -> list[AuditEntry]:
    return trail.entries(**filters)


def clear() -> None:
    trail.clear()
