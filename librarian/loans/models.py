from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from librarian.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoanStatus(StrEnum):
    PENDING = "pending"
    CANCELLED = "cancelled"
    DENIED = "denied"
    LOANED = "loaned"
    RETURNED = "returned"


TERMINAL_LOAN_STATUSES = frozenset({LoanStatus.CANCELLED, LoanStatus.DENIED, LoanStatus.RETURNED})


class BookLoan(Base):
    __tablename__ = "book_loans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=False,
    )
    requester_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=LoanStatus.PENDING.value,
        server_default=LoanStatus.PENDING.value,
    )
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    loaned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    returned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("book_loans_book_idx", "book_id"),
        Index("book_loans_requester_idx", "requester_id"),
        Index("book_loans_owner_idx", "owner_id"),
        Index("book_loans_status_idx", "status"),
        Index("book_loans_composite_idx", "requester_id", "owner_id", "status"),
    )
