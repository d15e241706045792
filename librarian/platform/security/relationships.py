from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from librarian.library.models import Book, BookTag, Contact, ContactStatus, Group, SharedTag, Tag, UserGroup
from librarian.platform.security.errors import ReferentialGap


def as_key(value: Any) -> uuid.UUID | None:
    """Coerce a row value to a UUID key; anything unparseable becomes ``None``."""

    if value is None or isinstance(value, uuid.UUID):
        return value
    if isinstance(value, bytes) and len(value) == 16:
        return uuid.UUID(bytes=value)
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class RelationshipIndex:
    """Membership, ownership and contact lookups used by policy predicates.

    Every method queries the bound session at call time. Nothing is cached
    between calls: a revoked membership or share must be visible to the very
    next evaluation. Ids are coerced with ``as_key``; a ``None`` or malformed
    id (the anonymous principal, a garbage row value) never matches.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def is_member(self, user_id: Any, group_id: Any) -> bool:
        user_id, group_id = as_key(user_id), as_key(group_id)
        if user_id is None or group_id is None:
            return False
        return self._exists(
            select(UserGroup.user_id).where(UserGroup.user_id == user_id, UserGroup.group_id == group_id)
        )

    def is_group_creator(self, user_id: Any, group_id: Any) -> bool:
        user_id, group_id = as_key(user_id), as_key(group_id)
        if user_id is None or group_id is None:
            return False
        return self._exists(select(Group.id).where(Group.id == group_id, Group.created_by_id == user_id))

    def is_contact_accepted(self, user_a: Any, user_b: Any) -> bool:
        user_a, user_b = as_key(user_a), as_key(user_b)
        if user_a is None or user_b is None:
            return False
        forward = (Contact.user_id == user_a) & (Contact.contact_id == user_b)
        backward = (Contact.user_id == user_b) & (Contact.contact_id == user_a)
        return self._exists(
            select(Contact.user_id).where(forward | backward, Contact.status == ContactStatus.ACCEPTED.value)
        )

    def groups_of(self, user_id: Any) -> set[uuid.UUID]:
        user_id = as_key(user_id)
        if user_id is None:
            return set()
        return set(self._session.scalars(select(UserGroup.group_id).where(UserGroup.user_id == user_id)))

    def common_groups(self, user_a: Any, user_b: Any) -> set[uuid.UUID]:
        user_a, user_b = as_key(user_a), as_key(user_b)
        if user_a is None or user_b is None:
            return set()
        return self.groups_of(user_a) & self.groups_of(user_b)

    def shares_group(self, user_a: Any, user_b: Any) -> bool:
        """True when both users belong to at least one common group (a user shares with themself)."""

        return bool(self.common_groups(user_a, user_b))

    def owns_book(self, user_id: Any, book_id: Any) -> bool:
        user_id, book_id = as_key(user_id), as_key(book_id)
        if user_id is None or book_id is None:
            return False
        return self._exists(select(Book.id).where(Book.id == book_id, Book.owner_id == user_id))

    def owns_tag(self, user_id: Any, tag_id: Any) -> bool:
        user_id, tag_id = as_key(user_id), as_key(tag_id)
        if user_id is None or tag_id is None:
            return False
        return self._exists(select(Tag.id).where(Tag.id == tag_id, Tag.created_by_id == user_id))

    def book_owner(self, book_id: Any) -> uuid.UUID | None:
        book_id = as_key(book_id)
        if book_id is None:
            return None
        return self._session.scalar(select(Book.owner_id).where(Book.id == book_id))

    def book_shared_into(self, book_id: Any, group_ids: set[uuid.UUID]) -> bool:
        """True when the book carries a tag shared into any of ``group_ids``."""

        book_id = as_key(book_id)
        if book_id is None or not group_ids:
            return False
        return self._exists(
            select(BookTag.id)
            .join(SharedTag, SharedTag.tag_id == BookTag.tag_id)
            .where(BookTag.book_id == book_id, SharedTag.group_id.in_(group_ids))
        )

    def book_shared_to_groups_of(self, user_id: Any, book_id: Any) -> bool:
        """Book -> tag -> shared group -> membership of ``user_id``."""

        user_id, book_id = as_key(user_id), as_key(book_id)
        if user_id is None or book_id is None:
            return False
        return self._exists(
            select(BookTag.id)
            .join(SharedTag, SharedTag.tag_id == BookTag.tag_id)
            .join(UserGroup, UserGroup.group_id == SharedTag.group_id)
            .where(BookTag.book_id == book_id, UserGroup.user_id == user_id)
        )

    def tag_shared_to_groups_of(self, user_id: Any, tag_id: Any) -> bool:
        user_id, tag_id = as_key(user_id), as_key(tag_id)
        if user_id is None or tag_id is None:
            return False
        return self._exists(
            select(SharedTag.tag_id)
            .join(UserGroup, UserGroup.group_id == SharedTag.group_id)
            .where(SharedTag.tag_id == tag_id, UserGroup.user_id == user_id)
        )

    def group_exists(self, group_id: Any) -> bool:
        group_id = as_key(group_id)
        if group_id is None:
            return False
        return self._exists(select(Group.id).where(Group.id == group_id))

    def tag_exists(self, tag_id: Any) -> bool:
        tag_id = as_key(tag_id)
        if tag_id is None:
            return False
        return self._exists(select(Tag.id).where(Tag.id == tag_id))

    def book_lendable(self, book_id: Any) -> bool:
        book = self.require_book(book_id)
        return bool(book.is_owned and book.available_for_loan)

    def require_book(self, book_id: Any) -> Book:
        key = as_key(book_id)
        book = self._session.get(Book, key) if key is not None else None
        if book is None:
            raise ReferentialGap("books", book_id)
        return book

    def require_group(self, group_id: Any) -> Group:
        key = as_key(group_id)
        group = self._session.get(Group, key) if key is not None else None
        if group is None:
            raise ReferentialGap("groups", group_id)
        return group

    def _exists(self, stmt: Select) -> bool:  # type: ignore[type-arg]
        return bool(self._session.scalar(select(stmt.exists())))
