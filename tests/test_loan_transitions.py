from __future__ import annotations

import itertools
import uuid

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session

from conftest import World
from librarian.library.models import Book
from librarian.loans.models import BookLoan, LoanStatus
from librarian.platform.security.errors import AuthorizationDenied, InvalidStateTransition
from librarian.platform.security.evaluator import PolicyEvaluator
from librarian.platform.security.gateway import QueryGateway
from librarian.platform.security.policies import LOAN_TRANSITIONS, Decision, Entity, Operation, build_policy_registry
from librarian.platform.security.relationships import RelationshipIndex


ALLOWED = {
    (LoanStatus.PENDING, "requester", LoanStatus.CANCELLED),
    (LoanStatus.PENDING, "owner", LoanStatus.DENIED),
    (LoanStatus.PENDING, "owner", LoanStatus.LOANED),
    (LoanStatus.LOANED, "owner", LoanStatus.RETURNED),
}


@pytest.mark.parametrize(
    ("from_status", "actor", "to_status"),
    list(itertools.product(LoanStatus, ("requester", "owner", "stranger"), LoanStatus)),
)
def test_transition_grid(
    db_session: Session,
    world: World,
    from_status: LoanStatus,
    actor: str,
    to_status: LoanStatus,
) -> None:
    principal = {"requester": world.b, "owner": world.a, "stranger": world.c}[actor]
    row = {
        "id": uuid.uuid4(),
        "book_id": world.book_id,
        "requester_id": world.b_id,
        "owner_id": world.a_id,
        "status": from_status.value,
    }
    decision = PolicyEvaluator().evaluate(
        principal,
        Entity.LOAN,
        Operation.UPDATE,
        row,
        {**row, "status": to_status.value},
        index=RelationshipIndex(db_session),
    )

    expected = Decision.ALLOW if (from_status, actor, to_status) in ALLOWED else Decision.DENY
    assert decision == expected


def test_transition_table_matches_policy_names() -> None:
    registry = build_policy_registry()
    update_policies = [policy.name for policy in registry.policies_for(Entity.LOAN, Operation.UPDATE)]
    assert update_policies == [name for name, _, _, _ in LOAN_TRANSITIONS]


def _pending_loan(session: Session, world: World) -> BookLoan:
    loan = BookLoan(
        id=uuid.uuid4(),
        book_id=world.book_id,
        requester_id=world.b_id,
        owner_id=world.a_id,
        status=LoanStatus.PENDING.value,
    )
    session.add(loan)
    session.commit()
    return loan


def test_approval_revalidates_availability(db_session: Session, world: World) -> None:
    loan = _pending_loan(db_session, world)
    db_session.get(Book, world.book_id).available_for_loan = False
    db_session.commit()

    strict = QueryGateway(PolicyEvaluator(build_policy_registry(revalidate_loan_availability=True)))
    with pytest.raises(InvalidStateTransition):
        with strict.unit_of_work(db_session, world.a) as scope:
            scope.transition(scope.load(BookLoan, loan.id, Operation.UPDATE), "pending", "loaned")

    literal = QueryGateway(PolicyEvaluator(build_policy_registry(revalidate_loan_availability=False)))
    with literal.unit_of_work(db_session, world.a) as scope:
        approved = scope.transition(scope.load(BookLoan, loan.id, Operation.UPDATE), "pending", "loaned")
        assert approved.status == "loaned"


def test_setting_status_through_update_uses_transition_rules(db_session: Session, world: World) -> None:
    loan = _pending_loan(db_session, world)
    gateway = QueryGateway()

    with gateway.unit_of_work(db_session, world.a) as scope:
        scope.update(scope.load(BookLoan, loan.id, Operation.UPDATE), status="loaned")

    with pytest.raises(InvalidStateTransition):
        with gateway.unit_of_work(db_session, world.b) as scope:
            scope.update(scope.load(BookLoan, loan.id, Operation.UPDATE), status="pending")

    assert db_session.get(BookLoan, loan.id).status == "loaned"


def test_racing_transition_commits_at_most_once(db_session: Session, world: World) -> None:
    loan = _pending_loan(db_session, world)
    gateway = QueryGateway()

    with pytest.raises(InvalidStateTransition) as exc_info:
        with gateway.unit_of_work(db_session, world.a) as scope:
            stale = scope.load(BookLoan, loan.id, Operation.UPDATE)
            assert stale.status == "pending"
            # another writer cancels the request behind the loaded instance
            db_session.execute(
                update(BookLoan)
                .where(BookLoan.id == loan.id)
                .values(status="cancelled")
                .execution_options(synchronize_session=False)
            )
            scope.transition(stale, "pending", "loaned")

    assert "concurrently" in str(exc_info.value)


def test_transition_cannot_rewrite_loan_parties(db_session: Session, world: World) -> None:
    loan = _pending_loan(db_session, world)
    gateway = QueryGateway()

    with pytest.raises(AuthorizationDenied):
        with gateway.unit_of_work(db_session, world.a) as scope:
            scope.transition(scope.load(BookLoan, loan.id, Operation.UPDATE), "pending", "loaned", requester_id=world.c_id)

    with pytest.raises(AuthorizationDenied):
        with gateway.unit_of_work(db_session, world.a) as scope:
            scope.update(scope.load(BookLoan, loan.id, Operation.UPDATE), book_id=uuid.uuid4())

    stored = db_session.get(BookLoan, loan.id)
    assert (stored.status, stored.requester_id, stored.book_id) == ("pending", world.b_id, world.book_id)
