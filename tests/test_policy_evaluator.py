from __future__ import annotations

import uuid

from prometheus_client import REGISTRY
from sqlalchemy import delete
from sqlalchemy.orm import Session

from conftest import World
from librarian.library.models import Book, Contact, ContactStatus, UserGroup
from librarian.loans.models import LoanStatus
from librarian.platform.security.context import Principal
from librarian.platform.security.evaluator import PolicyEvaluator
from librarian.platform.security.policies import Decision, Entity, Operation, Policy, PolicyRegistry
from librarian.platform.security.relationships import RelationshipIndex
from librarian.platform.security.rls import row_payload


def _book_row(session: Session, book_id: uuid.UUID) -> dict:
    return row_payload(session.get(Book, book_id))


def _loan_request(world: World, requester_id: uuid.UUID) -> dict:
    return {
        "id": uuid.uuid4(),
        "book_id": world.book_id,
        "requester_id": requester_id,
        "owner_id": world.a_id,
        "status": LoanStatus.PENDING.value,
    }


def test_book_select_follows_ownership_or_shared_tag(db_session: Session, world: World) -> None:
    evaluator = PolicyEvaluator()
    index = RelationshipIndex(db_session)
    row = _book_row(db_session, world.book_id)

    assert evaluator.evaluate(world.a, Entity.BOOK, Operation.SELECT, row, index=index) == Decision.ALLOW
    assert evaluator.evaluate(world.b, Entity.BOOK, Operation.SELECT, row, index=index) == Decision.ALLOW
    assert evaluator.evaluate(world.c, Entity.BOOK, Operation.SELECT, row, index=index) == Decision.DENY

    assert evaluator.explain(world.a, Entity.BOOK, Operation.SELECT, row, index=index) == [
        "books_select_own",
        "books_select_shared_tags",
    ]
    assert evaluator.explain(world.b, Entity.BOOK, Operation.SELECT, row, index=index) == ["books_select_shared_tags"]


def test_anonymous_sees_users_but_never_books(db_session: Session, world: World) -> None:
    evaluator = PolicyEvaluator()
    index = RelationshipIndex(db_session)
    anonymous = Principal.anonymous()

    assert evaluator.evaluate(anonymous, Entity.BOOK, Operation.SELECT, _book_row(db_session, world.book_id), index=index) == Decision.DENY
    assert evaluator.evaluate(anonymous, Entity.USER, Operation.SELECT, {"id": world.c_id}, index=index) == Decision.ALLOW
    assert evaluator.evaluate(anonymous, Entity.GROUP, Operation.SELECT, {"id": world.group_id}, index=index) == Decision.DENY


def test_repeated_evaluation_is_stable(db_session: Session, world: World) -> None:
    evaluator = PolicyEvaluator()
    index = RelationshipIndex(db_session)
    row = _book_row(db_session, world.book_id)

    decisions = {evaluator.evaluate(world.b, Entity.BOOK, Operation.SELECT, row, index=index) for _ in range(5)}
    assert decisions == {Decision.ALLOW}


def test_membership_revocation_applies_to_next_evaluation(db_session: Session, world: World) -> None:
    evaluator = PolicyEvaluator()
    index = RelationshipIndex(db_session)
    row = _book_row(db_session, world.book_id)
    assert evaluator.is_allowed(world.b, Entity.BOOK, Operation.SELECT, row, index=index)

    db_session.execute(delete(UserGroup).where(UserGroup.user_id == world.b_id, UserGroup.group_id == world.group_id))
    db_session.flush()

    assert not evaluator.is_allowed(world.b, Entity.BOOK, Operation.SELECT, row, index=index)


def test_shared_reader_cannot_update_or_delete(db_session: Session, world: World) -> None:
    evaluator = PolicyEvaluator()
    index = RelationshipIndex(db_session)
    row = _book_row(db_session, world.book_id)
    proposed = {**row, "title": "Dune Messiah"}

    assert evaluator.evaluate(world.b, Entity.BOOK, Operation.UPDATE, row, proposed, index=index) == Decision.DENY
    assert evaluator.evaluate(world.b, Entity.BOOK, Operation.DELETE, row, index=index) == Decision.DENY
    assert evaluator.evaluate(world.a, Entity.BOOK, Operation.UPDATE, row, proposed, index=index) == Decision.ALLOW


def test_owner_cannot_hand_a_book_to_someone_else(db_session: Session, world: World) -> None:
    evaluator = PolicyEvaluator()
    index = RelationshipIndex(db_session)
    row = _book_row(db_session, world.book_id)

    proposed = {**row, "owner_id": world.b_id}
    assert evaluator.evaluate(world.a, Entity.BOOK, Operation.UPDATE, row, proposed, index=index) == Decision.DENY


def test_loan_request_requires_contact_and_shared_group(db_session: Session, world: World) -> None:
    evaluator = PolicyEvaluator()
    index = RelationshipIndex(db_session)

    allowed = evaluator.evaluate(world.b, Entity.LOAN, Operation.INSERT, _loan_request(world, world.b_id), index=index)
    denied = evaluator.evaluate(world.c, Entity.LOAN, Operation.INSERT, _loan_request(world, world.c_id), index=index)

    assert allowed == Decision.ALLOW
    assert denied == Decision.DENY


def test_loan_request_denied_for_pending_contact(db_session: Session, world: World) -> None:
    contact = db_session.get(Contact, (world.a_id, world.b_id))
    contact.status = ContactStatus.PENDING.value
    db_session.flush()

    evaluator = PolicyEvaluator()
    decision = evaluator.evaluate(
        world.b, Entity.LOAN, Operation.INSERT, _loan_request(world, world.b_id), index=RelationshipIndex(db_session)
    )
    assert decision == Decision.DENY


def test_loan_request_denied_for_unavailable_book(db_session: Session, world: World) -> None:
    db_session.get(Book, world.book_id).available_for_loan = False
    db_session.flush()

    evaluator = PolicyEvaluator()
    decision = evaluator.evaluate(
        world.b, Entity.LOAN, Operation.INSERT, _loan_request(world, world.b_id), index=RelationshipIndex(db_session)
    )
    assert decision == Decision.DENY


def test_loan_request_must_name_the_principal_as_requester(db_session: Session, world: World) -> None:
    evaluator = PolicyEvaluator()
    decision = evaluator.evaluate(
        world.c, Entity.LOAN, Operation.INSERT, _loan_request(world, world.b_id), index=RelationshipIndex(db_session)
    )
    assert decision == Decision.DENY


def test_contact_update_only_by_receiver_of_pending_request(db_session: Session, world: World) -> None:
    evaluator = PolicyEvaluator()
    index = RelationshipIndex(db_session)
    row = {"user_id": world.c_id, "contact_id": world.b_id, "status": ContactStatus.PENDING.value}

    accept = {**row, "status": ContactStatus.ACCEPTED.value}
    assert evaluator.is_allowed(world.b, Entity.CONTACT, Operation.UPDATE, row, accept, index=index)
    assert not evaluator.is_allowed(world.c, Entity.CONTACT, Operation.UPDATE, row, accept, index=index)
    assert not evaluator.is_allowed(world.b, Entity.CONTACT, Operation.UPDATE, row, row, index=index)


def test_missing_policies_deny(db_session: Session, world: World) -> None:
    evaluator = PolicyEvaluator()
    index = RelationshipIndex(db_session)

    assert evaluator.evaluate(world.a, Entity.USER, Operation.INSERT, {"id": uuid.uuid4()}, index=index) == Decision.DENY
    assert evaluator.evaluate(world.a, Entity.USER, Operation.DELETE, {"id": world.a_id}, index=index) == Decision.DENY


def test_update_checks_are_paired_per_policy(db_session: Session) -> None:
    def always(principal, row, index) -> bool:
        return True

    def never(principal, row, index) -> bool:
        return False

    split = PolicyRegistry(
        [
            Policy("opens_existing", Entity.TAG, Operation.UPDATE, using=always, with_check=never),
            Policy("opens_proposed", Entity.TAG, Operation.UPDATE, using=never, with_check=always),
        ]
    )
    paired = PolicyRegistry([Policy("opens_both", Entity.TAG, Operation.UPDATE, using=always, with_check=always)])
    index = RelationshipIndex(db_session)
    principal = Principal.for_user(uuid.uuid4())

    assert PolicyEvaluator(split).evaluate(principal, Entity.TAG, Operation.UPDATE, {}, {}, index=index) == Decision.DENY
    assert PolicyEvaluator(paired).evaluate(principal, Entity.TAG, Operation.UPDATE, {}, {}, index=index) == Decision.ALLOW


def test_referential_gap_fails_closed_and_is_counted(db_session: Session, world: World) -> None:
    evaluator = PolicyEvaluator()
    index = RelationshipIndex(db_session)
    row = {
        "id": uuid.uuid4(),
        "book_id": uuid.uuid4(),
        "requester_id": world.b_id,
        "owner_id": world.a_id,
        "status": LoanStatus.PENDING.value,
    }
    before = REGISTRY.get_sample_value("policy_referential_gaps_total", {"entity": "book_loans"}) or 0.0

    decision = evaluator.evaluate(
        world.a, Entity.LOAN, Operation.UPDATE, row, {**row, "status": LoanStatus.LOANED.value}, index=index
    )

    assert decision == Decision.DENY
    after = REGISTRY.get_sample_value("policy_referential_gaps_total", {"entity": "book_loans"}) or 0.0
    assert after == before + 1
