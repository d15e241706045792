from __future__ import annotations

import uuid

import pytest
from sqlalchemy.orm import Session

from conftest import World, add_user
from librarian.library.models import Contact, ContactStatus, SharedTag
from librarian.platform.security.errors import ReferentialGap
from librarian.platform.security.evaluator import PolicyEvaluator
from librarian.platform.security.policies import Decision, Entity, Operation
from librarian.platform.security.relationships import RelationshipIndex, as_key


def test_membership_and_creator_lookups(db_session: Session, world: World) -> None:
    index = RelationshipIndex(db_session)

    assert index.is_member(world.b_id, world.group_id)
    assert not index.is_member(world.c_id, world.group_id)
    assert index.is_group_creator(world.a_id, world.group_id)
    assert not index.is_group_creator(world.b_id, world.group_id)
    assert index.groups_of(world.b_id) == {world.group_id}
    assert index.common_groups(world.a_id, world.b_id) == {world.group_id}
    assert not index.shares_group(world.a_id, world.c_id)


def test_contacts_are_symmetric_and_accepted_only(db_session: Session, world: World) -> None:
    index = RelationshipIndex(db_session)
    assert index.is_contact_accepted(world.a_id, world.b_id)
    assert index.is_contact_accepted(world.b_id, world.a_id)

    db_session.add(Contact(user_id=world.c_id, contact_id=world.a_id, status=ContactStatus.PENDING.value))
    db_session.flush()
    assert not index.is_contact_accepted(world.a_id, world.c_id)


def test_shared_tag_paths(db_session: Session, world: World) -> None:
    index = RelationshipIndex(db_session)

    assert index.book_shared_to_groups_of(world.b_id, world.book_id)
    assert not index.book_shared_to_groups_of(world.c_id, world.book_id)
    assert index.tag_shared_to_groups_of(world.b_id, world.tag_id)
    assert index.book_shared_into(world.book_id, {world.group_id})
    assert not index.book_shared_into(world.book_id, set())


def test_unshare_is_visible_to_the_next_lookup(db_session: Session, world: World) -> None:
    index = RelationshipIndex(db_session)
    assert index.book_shared_to_groups_of(world.b_id, world.book_id)

    db_session.delete(db_session.get(SharedTag, (world.tag_id, world.group_id)))
    db_session.flush()

    assert not index.book_shared_to_groups_of(world.b_id, world.book_id)


def test_ownership_and_existence(db_session: Session, world: World) -> None:
    index = RelationshipIndex(db_session)

    assert index.owns_book(world.a_id, world.book_id)
    assert not index.owns_book(world.b_id, world.book_id)
    assert index.owns_tag(world.a_id, world.tag_id)
    assert index.book_owner(world.book_id) == world.a_id
    assert index.book_owner(uuid.uuid4()) is None
    assert index.group_exists(world.group_id)
    assert not index.tag_exists(uuid.uuid4())
    assert index.book_lendable(world.book_id)


def test_anonymous_never_matches(db_session: Session, world: World) -> None:
    index = RelationshipIndex(db_session)

    assert not index.is_member(None, world.group_id)
    assert not index.is_contact_accepted(None, world.a_id)
    assert index.groups_of(None) == set()
    assert not index.book_shared_to_groups_of(None, world.book_id)
    assert not index.owns_book(None, world.book_id)


def test_required_rows_raise_referential_gap(db_session: Session) -> None:
    add_user(db_session, "dora")
    index = RelationshipIndex(db_session)

    with pytest.raises(ReferentialGap):
        index.require_book(uuid.uuid4())
    with pytest.raises(ReferentialGap):
        index.require_group(None)
    with pytest.raises(ReferentialGap):
        index.book_lendable(uuid.uuid4())


def test_keys_are_coerced_or_never_match(db_session: Session, world: World) -> None:
    index = RelationshipIndex(db_session)

    assert as_key(str(world.a_id)) == world.a_id
    assert as_key(world.a_id.bytes) == world.a_id
    assert as_key("garbage") is None
    assert as_key(42) is None

    assert index.is_member(str(world.b_id), str(world.group_id))
    assert not index.is_member("not-a-uuid", world.group_id)
    assert index.book_owner("not-a-uuid") is None
    with pytest.raises(ReferentialGap):
        index.require_book("not-a-uuid")


def test_string_ids_in_rows_evaluate_without_raising(db_session: Session, world: World) -> None:
    evaluator = PolicyEvaluator()
    index = RelationshipIndex(db_session)
    row = {"id": str(world.book_id), "owner_id": str(world.a_id), "title": "Dune"}

    assert evaluator.evaluate(world.a, Entity.BOOK, Operation.SELECT, row, index=index) == Decision.ALLOW
    assert evaluator.evaluate(world.b, Entity.BOOK, Operation.SELECT, row, index=index) == Decision.ALLOW

    garbage = {"id": "garbage", "owner_id": "garbage", "title": "Dune"}
    assert evaluator.evaluate(world.b, Entity.BOOK, Operation.SELECT, garbage, index=index) == Decision.DENY
    loan = {"id": "x", "book_id": "garbage", "requester_id": str(world.b_id), "owner_id": "y", "status": "pending"}
    assert evaluator.evaluate(world.b, Entity.LOAN, Operation.INSERT, loan, index=index) == Decision.DENY
