from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from librarian.library.models import ContactStatus
from librarian.loans.models import LoanStatus
from librarian.platform.security.context import Principal
from librarian.platform.security.relationships import RelationshipIndex, as_key


class Entity(StrEnum):
    USER = "users"
    SESSION = "sessions"
    GROUP = "groups"
    MEMBERSHIP = "user_groups"
    CONTACT = "contacts"
    BOOK = "books"
    TAG = "tags"
    BOOK_TAG = "book_tags"
    SHARED_TAG = "shared_tags_to_groups"
    LOAN = "book_loans"


class Operation(StrEnum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class Decision(StrEnum):
    ALLOW = "ALLOW"
    DENY = "DENY"


Row = Mapping[str, Any]
Predicate = Callable[[Principal, Row, RelationshipIndex], bool]


# Key and party columns. An update that changes one is denied before any
# policy runs, so no grant can re-point a row at another user, book or group.
IMMUTABLE_COLUMNS: dict[Entity, frozenset[str]] = {
    Entity.USER: frozenset({"id"}),
    Entity.SESSION: frozenset({"id", "user_id"}),
    Entity.GROUP: frozenset({"id", "created_by_id"}),
    Entity.MEMBERSHIP: frozenset({"user_id", "group_id"}),
    Entity.CONTACT: frozenset({"user_id", "contact_id"}),
    Entity.BOOK: frozenset({"id", "owner_id"}),
    Entity.TAG: frozenset({"id", "created_by_id"}),
    Entity.BOOK_TAG: frozenset({"id", "book_id", "tag_id", "tagged_by_id"}),
    Entity.SHARED_TAG: frozenset({"tag_id", "group_id", "shared_by_id"}),
    Entity.LOAN: frozenset({"id", "book_id", "requester_id", "owner_id"}),
}


@dataclass(frozen=True, slots=True)
class Policy:
    """One named permissive rule for an entity and operation.

    ``using`` is checked against the existing row (select, update, delete);
    ``with_check`` against the proposed row (insert, update). An update
    policy without ``with_check`` applies ``using`` to the proposed row.
    """

    name: str
    entity: Entity
    operation: Operation
    using: Predicate | None = None
    with_check: Predicate | None = None

    def check_existing(self, principal: Principal, row: Row, index: RelationshipIndex) -> bool:
        if self.using is None:
            return False
        return self.using(principal, row, index)

    def check_proposed(self, principal: Principal, row: Row, index: RelationshipIndex) -> bool:
        predicate = self.with_check if self.with_check is not None else self.using
        if predicate is None:
            return False
        return predicate(principal, row, index)


def _is_principal(principal: Principal, value: Any) -> bool:
    return principal.user_id is not None and as_key(value) == principal.user_id


# users


def users_select_all(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return True


def users_update_own(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("id"))


# sessions


def sessions_own(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("user_id"))


# groups


def groups_select_member(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return index.is_member(principal.user_id, row.get("id"))


def groups_created_by_principal(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("created_by_id"))


# user_groups


def user_groups_select_member(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return index.is_member(principal.user_id, row.get("group_id"))


def user_groups_group_creator(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return index.is_group_creator(principal.user_id, row.get("group_id"))


def user_groups_delete_self(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("user_id"))


# books


def books_owned_by_principal(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("owner_id"))


def books_select_shared_tags(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return index.book_shared_to_groups_of(principal.user_id, row.get("id"))


# tags


def tags_created_by_principal(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("created_by_id"))


def tags_select_shared(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return index.tag_shared_to_groups_of(principal.user_id, row.get("id"))


# book_tags


def _book_of_group_member(principal: Principal, book_id: Any, index: RelationshipIndex) -> bool:
    owner_id = index.book_owner(book_id)
    if owner_id is None:
        return False
    return index.shares_group(principal.user_id, owner_id)


def book_tags_select_own_books(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return index.owns_book(principal.user_id, row.get("book_id"))


def book_tags_select_group_books(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _book_of_group_member(principal, row.get("book_id"), index)


def book_tags_insert_own_books(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("tagged_by_id")) and index.owns_book(principal.user_id, row.get("book_id"))


def book_tags_insert_group_books(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("tagged_by_id")) and _book_of_group_member(
        principal, row.get("book_id"), index
    )


def book_tags_tagged_by_principal(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("tagged_by_id"))


# shared_tags_to_groups


def shared_tags_select_member(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return index.is_member(principal.user_id, row.get("group_id"))


def shared_tags_insert_own(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return (
        _is_principal(principal, row.get("shared_by_id"))
        and index.owns_tag(principal.user_id, row.get("tag_id"))
        and index.is_member(principal.user_id, row.get("group_id"))
    )


def shared_tags_shared_by_principal(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("shared_by_id"))


# contacts


def contacts_party(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("user_id")) or _is_principal(principal, row.get("contact_id"))


def contacts_insert_own(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("user_id")) and row.get("contact_id") != principal.user_id


def contacts_update_pending_receiver(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("contact_id")) and row.get("status") == ContactStatus.PENDING


def contacts_update_resolved(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return row.get("status") in {ContactStatus.ACCEPTED, ContactStatus.BLOCKED}


# book_loans


def book_loans_select_requester(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("requester_id"))


def book_loans_select_owner(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return _is_principal(principal, row.get("owner_id"))


def book_loans_insert_request(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    """A pending request from the principal to an accepted contact for a lendable, shared book.

    The book must carry a tag shared into a group both parties belong to.
    A missing book raises ``ReferentialGap`` from the index.
    """

    owner_id = as_key(row.get("owner_id"))
    if not _is_principal(principal, row.get("requester_id")):
        return False
    if owner_id is None or owner_id == principal.user_id:
        return False
    if row.get("status") != LoanStatus.PENDING:
        return False
    if not index.is_contact_accepted(principal.user_id, owner_id):
        return False
    if not index.book_shared_into(row.get("book_id"), index.common_groups(principal.user_id, owner_id)):
        return False
    return index.book_lendable(row.get("book_id"))


def _loan_actor_in_status(actor_column: str, status: LoanStatus) -> Predicate:
    def predicate(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
        return _is_principal(principal, row.get(actor_column)) and row.get("status") == status

    predicate.__name__ = f"loan_{actor_column}_{status.value}"
    return predicate


def _all_of(*predicates: Predicate) -> Predicate:
    def predicate(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
        return all(item(principal, row, index) for item in predicates)

    return predicate


def book_loans_book_lendable(principal: Principal, row: Row, index: RelationshipIndex) -> bool:
    return index.book_lendable(row.get("book_id"))


# (policy name, actor column, from status, to status)
LOAN_TRANSITIONS: tuple[tuple[str, str, LoanStatus, LoanStatus], ...] = (
    ("book_loans_update_cancel", "requester_id", LoanStatus.PENDING, LoanStatus.CANCELLED),
    ("book_loans_update_owner_deny", "owner_id", LoanStatus.PENDING, LoanStatus.DENIED),
    ("book_loans_update_owner_approve", "owner_id", LoanStatus.PENDING, LoanStatus.LOANED),
    ("book_loans_update_owner_confirm_return", "owner_id", LoanStatus.LOANED, LoanStatus.RETURNED),
)


def _loan_transition_policies(revalidate_loan_availability: bool) -> list[Policy]:
    policies: list[Policy] = []
    for name, actor_column, from_status, to_status in LOAN_TRANSITIONS:
        with_check = _loan_actor_in_status(actor_column, to_status)
        if revalidate_loan_availability and to_status == LoanStatus.LOANED:
            with_check = _all_of(with_check, book_loans_book_lendable)
        policies.append(
            Policy(
                name,
                Entity.LOAN,
                Operation.UPDATE,
                using=_loan_actor_in_status(actor_column, from_status),
                with_check=with_check,
            )
        )
    return policies


class PolicyRegistry:
    """Ordered policies per (entity, operation); lookups of unknown pairs return no policies."""

    def __init__(self, policies: Iterable[Policy] = ()) -> None:
        self._policies: dict[tuple[Entity, Operation], tuple[Policy, ...]] = {}
        for policy in policies:
            self.register(policy)

    def register(self, policy: Policy) -> None:
        key = (policy.entity, policy.operation)
        existing = self._policies.get(key, ())
        if any(item.name == policy.name for item in existing):
            raise ValueError(f"Duplicate policy name '{policy.name}' for {policy.entity}.{policy.operation}")
        self._policies[key] = (*existing, policy)

    def policies_for(self, entity: Entity, operation: Operation) -> tuple[Policy, ...]:
        return self._policies.get((entity, operation), ())

    def names(self) -> list[str]:
        return [policy.name for policies in self._policies.values() for policy in policies]


def build_policy_registry(*, revalidate_loan_availability: bool = True) -> PolicyRegistry:
    select_, insert, update, delete = Operation.SELECT, Operation.INSERT, Operation.UPDATE, Operation.DELETE
    policies = [
        Policy("users_select_all", Entity.USER, select_, using=users_select_all),
        Policy("users_update_own", Entity.USER, update, using=users_update_own),
        Policy("sessions_select_own", Entity.SESSION, select_, using=sessions_own),
        Policy("sessions_delete_own", Entity.SESSION, delete, using=sessions_own),
        Policy("groups_select_member", Entity.GROUP, select_, using=groups_select_member),
        Policy("groups_insert_own", Entity.GROUP, insert, with_check=groups_created_by_principal),
        Policy("groups_update_creator", Entity.GROUP, update, using=groups_created_by_principal),
        Policy("groups_delete_creator", Entity.GROUP, delete, using=groups_created_by_principal),
        Policy("user_groups_select_member", Entity.MEMBERSHIP, select_, using=user_groups_select_member),
        Policy("user_groups_insert_creator", Entity.MEMBERSHIP, insert, with_check=user_groups_group_creator),
        Policy("user_groups_delete_self", Entity.MEMBERSHIP, delete, using=user_groups_delete_self),
        Policy("user_groups_delete_creator", Entity.MEMBERSHIP, delete, using=user_groups_group_creator),
        Policy("contacts_select_own", Entity.CONTACT, select_, using=contacts_party),
        Policy("contacts_insert_own", Entity.CONTACT, insert, with_check=contacts_insert_own),
        Policy(
            "contacts_update_own",
            Entity.CONTACT,
            update,
            using=contacts_update_pending_receiver,
            with_check=contacts_update_resolved,
        ),
        Policy("contacts_delete_own", Entity.CONTACT, delete, using=contacts_party),
        Policy("books_select_own", Entity.BOOK, select_, using=books_owned_by_principal),
        Policy("books_select_shared_tags", Entity.BOOK, select_, using=books_select_shared_tags),
        Policy("books_insert_own", Entity.BOOK, insert, with_check=books_owned_by_principal),
        Policy("books_update_own", Entity.BOOK, update, using=books_owned_by_principal),
        Policy("books_delete_own", Entity.BOOK, delete, using=books_owned_by_principal),
        Policy("tags_select_own", Entity.TAG, select_, using=tags_created_by_principal),
        Policy("tags_select_shared", Entity.TAG, select_, using=tags_select_shared),
        Policy("tags_insert_own", Entity.TAG, insert, with_check=tags_created_by_principal),
        Policy("tags_update_own", Entity.TAG, update, using=tags_created_by_principal),
        Policy("tags_delete_own", Entity.TAG, delete, using=tags_created_by_principal),
        Policy("book_tags_select_own_books", Entity.BOOK_TAG, select_, using=book_tags_select_own_books),
        Policy("book_tags_select_group_books", Entity.BOOK_TAG, select_, using=book_tags_select_group_books),
        Policy("book_tags_insert_own_books", Entity.BOOK_TAG, insert, with_check=book_tags_insert_own_books),
        Policy("book_tags_insert_group_books", Entity.BOOK_TAG, insert, with_check=book_tags_insert_group_books),
        Policy("book_tags_delete_own", Entity.BOOK_TAG, delete, using=book_tags_tagged_by_principal),
        Policy("shared_tags_select_member", Entity.SHARED_TAG, select_, using=shared_tags_select_member),
        Policy("shared_tags_insert_own", Entity.SHARED_TAG, insert, with_check=shared_tags_insert_own),
        Policy("shared_tags_delete_own", Entity.SHARED_TAG, delete, using=shared_tags_shared_by_principal),
        Policy("book_loans_select_requester", Entity.LOAN, select_, using=book_loans_select_requester),
        Policy("book_loans_select_owner", Entity.LOAN, select_, using=book_loans_select_owner),
        Policy("book_loans_insert_request", Entity.LOAN, insert, with_check=book_loans_insert_request),
        *_loan_transition_policies(revalidate_loan_availability),
    ]
    return PolicyRegistry(policies)
