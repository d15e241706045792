from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from librarian import audit
from librarian.loans.models import TERMINAL_LOAN_STATUSES, BookLoan, LoanStatus
from librarian.loans.repository import LoanRepository
from librarian.loans.schemas import LoanRead, LoanRequestCreate, LoanRole
from librarian.metrics import observe_loan_transition
from librarian.platform.security.context import Principal
from librarian.platform.security.errors import InvalidStateTransition
from librarian.platform.security.gateway import QueryGateway, build_gateway
from librarian.platform.security.policies import LOAN_TRANSITIONS, Operation


logger = logging.getLogger("librarian.loans")

_ALLOWED_PAIRS = frozenset((from_status, to_status) for _, _, from_status, to_status in LOAN_TRANSITIONS)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class LoanService:
    """Loan requests and the pending -> loaned -> returned lifecycle.

    Each public transition has one fixed from/to pair. Who may perform it is
    decided by the book_loans update policies; this layer only stamps the
    matching timestamp and records the outcome.
    """

    gateway: QueryGateway = field(default_factory=build_gateway)
    loan_repository: LoanRepository = field(default_factory=LoanRepository)

    def request_loan(self, session: Session, principal: Principal, dto: LoanRequestCreate) -> LoanRead:
        with self.gateway.unit_of_work(session, principal) as scope:
            owner_id = scope.index.book_owner(dto.book_id)
            loan = self.loan_repository.add(
                scope,
                BookLoan(
                    id=uuid.uuid4(),
                    book_id=dto.book_id,
                    requester_id=principal.user_id,
                    owner_id=owner_id,
                    status=LoanStatus.PENDING.value,
                    requested_at=_utcnow(),
                    notes=dto.notes,
                ),
            )
            logger.info(
                "loan.requested",
                extra={"loan_id": str(loan.id), "user_id": principal.label(), "to_status": LoanStatus.PENDING.value},
            )
            return LoanRead.model_validate(loan)

    def cancel_loan(self, session: Session, principal: Principal, loan_id: uuid.UUID) -> LoanRead:
        return self._transition(session, principal, loan_id, LoanStatus.PENDING, LoanStatus.CANCELLED)

    def deny_loan(self, session: Session, principal: Principal, loan_id: uuid.UUID) -> LoanRead:
        return self._transition(session, principal, loan_id, LoanStatus.PENDING, LoanStatus.DENIED)

    def approve_loan(self, session: Session, principal: Principal, loan_id: uuid.UUID) -> LoanRead:
        return self._transition(session, principal, loan_id, LoanStatus.PENDING, LoanStatus.LOANED)

    def confirm_return(self, session: Session, principal: Principal, loan_id: uuid.UUID) -> LoanRead:
        return self._transition(session, principal, loan_id, LoanStatus.LOANED, LoanStatus.RETURNED)

    def get_loan(self, session: Session, principal: Principal, loan_id: uuid.UUID) -> LoanRead:
        with self.gateway.unit_of_work(session, principal) as scope:
            return LoanRead.model_validate(self.loan_repository.require(scope, loan_id))

    def list_loans(
        self,
        session: Session,
        principal: Principal,
        *,
        role: LoanRole | None = None,
        status: LoanStatus | None = None,
    ) -> list[LoanRead]:
        with self.gateway.unit_of_work(session, principal) as scope:
            rows = self.loan_repository.list_for_principal(
                scope,
                role=role,
                status=LoanStatus(status).value if status is not None else None,
            )
            return [LoanRead.model_validate(row) for row in rows]

    def _transition(
        self,
        session: Session,
        principal: Principal,
        loan_id: uuid.UUID,
        from_status: LoanStatus,
        to_status: LoanStatus,
    ) -> LoanRead:
        if (from_status, to_status) not in _ALLOWED_PAIRS:
            raise InvalidStateTransition("book_loans", principal.label(), from_status.value, to_status.value)

        now = _utcnow()
        stamps: dict[str, datetime] = {}
        if from_status == LoanStatus.PENDING:
            stamps["responded_at"] = now
        if to_status == LoanStatus.LOANED:
            stamps["loaned_at"] = now
        if to_status == LoanStatus.RETURNED:
            stamps["returned_at"] = now

        with self.gateway.unit_of_work(session, principal) as scope:
            loan = self.loan_repository.require_target(scope, loan_id, Operation.UPDATE)
            current = loan.status
            if LoanStatus(current) in TERMINAL_LOAN_STATUSES:
                raise InvalidStateTransition(
                    "book_loans", principal.label(), str(current), to_status.value, detail=f"loan is already {current}"
                )
            if current != from_status.value:
                raise InvalidStateTransition("book_loans", principal.label(), str(current), to_status.value)

            loan = scope.transition(loan, from_status.value, to_status.value, **stamps)
            observe_loan_transition(from_status=from_status.value, to_status=to_status.value)
            logger.info(
                "loan.transition",
                extra={
                    "loan_id": str(loan.id),
                    "user_id": principal.label(),
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                },
            )
            audit.record(
                "book_loans",
                str(loan.id),
                f"loan.{to_status.value}",
                before={"status": from_status.value},
                after={"status": to_status.value},
            )
            return LoanRead.model_validate(loan)


loan_service = LoanService()
