from __future__ import annotations

import uuid

from sqlalchemy import or_

from librarian.library.models import Book, BookTag, Contact, Group, SharedTag, Tag, UserGroup
from librarian.platform.security.gateway import AuthorizedSession
from librarian.platform.security.repository import BaseRepository


class GroupRepository(BaseRepository):
    model = Group


class MembershipRepository(BaseRepository):
    model = UserGroup

    def list_for_group(self, scope: AuthorizedSession, group_id: uuid.UUID) -> list[UserGroup]:
        return self.list(scope, UserGroup.group_id == group_id, order_by=(UserGroup.joined_at.asc(),))


class ContactRepository(BaseRepository):
    model = Contact

    def find_between(self, scope: AuthorizedSession, user_a: uuid.UUID, user_b: uuid.UUID) -> list[Contact]:
        forward = (Contact.user_id == user_a) & (Contact.contact_id == user_b)
        backward = (Contact.user_id == user_b) & (Contact.contact_id == user_a)
        return self.list(scope, or_(forward, backward))


class BookRepository(BaseRepository):
    model = Book

    def search(
        self,
        scope: AuthorizedSession,
        *,
        owner_id: uuid.UUID | None = None,
        text: str | None = None,
    ) -> list[Book]:
        criteria = []
        if owner_id is not None:
            criteria.append(Book.owner_id == owner_id)
        if text:
            pattern = f"%{text.strip()}%"
            criteria.append(or_(Book.title.ilike(pattern), Book.author.ilike(pattern), Book.isbn.ilike(pattern)))
        return self.list(scope, *criteria, order_by=(Book.title.asc(),))


class TagRepository(BaseRepository):
    model = Tag


class BookTagRepository(BaseRepository):
    model = BookTag

    def list_for_book(self, scope: AuthorizedSession, book_id: uuid.UUID) -> list[BookTag]:
        return self.list(scope, BookTag.book_id == book_id, order_by=(BookTag.created_at.asc(),))


class SharedTagRepository(BaseRepository):
    model = SharedTag

    def list_for_group(self, scope: AuthorizedSession, group_id: uuid.UUID) -> list[SharedTag]:
        return self.list(scope, SharedTag.group_id == group_id, order_by=(SharedTag.shared_at.asc(),))
