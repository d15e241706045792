from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from librarian.accounts.models import User
from librarian.core.exceptions import RecordConflict, RecordNotFound
from librarian.library.models import Book, BookTag, Contact, ContactStatus, Group, SharedTag, Tag, UserGroup
from librarian.library.repository import (
    BookRepository,
    BookTagRepository,
    ContactRepository,
    GroupRepository,
    MembershipRepository,
    SharedTagRepository,
    TagRepository,
)
from librarian.library.schemas import (
    BookCreate,
    BookRead,
    BookTagRead,
    BookUpdate,
    ContactRead,
    ContactResolution,
    GroupCreate,
    GroupRead,
    GroupUpdate,
    MembershipRead,
    SharedTagRead,
    TagCreate,
    TagRead,
)
from librarian.platform.security.context import Principal
from librarian.platform.security.gateway import AuthorizedSession, QueryGateway, build_gateway
from librarian.platform.security.policies import Operation


logger = logging.getLogger("librarian.library")


@contextmanager
def _conflict_as(resource: str, detail: str) -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        raise RecordConflict(resource, detail) from exc


def _require_user(scope: AuthorizedSession, user_id: uuid.UUID) -> User:
    user = scope.get(User, user_id)
    if user is None:
        raise RecordNotFound("users", user_id)
    return user


@dataclass(slots=True)
class LibraryService:
    gateway: QueryGateway = field(default_factory=build_gateway)
    group_repository: GroupRepository = field(default_factory=GroupRepository)
    membership_repository: MembershipRepository = field(default_factory=MembershipRepository)
    contact_repository: ContactRepository = field(default_factory=ContactRepository)
    book_repository: BookRepository = field(default_factory=BookRepository)
    tag_repository: TagRepository = field(default_factory=TagRepository)
    book_tag_repository: BookTagRepository = field(default_factory=BookTagRepository)
    shared_tag_repository: SharedTagRepository = field(default_factory=SharedTagRepository)

    # groups

    def create_group(self, session: Session, principal: Principal, dto: GroupCreate) -> GroupRead:
        """Create a group and enrol its creator as the first member."""

        with self.gateway.unit_of_work(session, principal) as scope:
            group = self.group_repository.add(
                scope,
                Group(id=uuid.uuid4(), name=dto.name.strip(), description=dto.description, created_by_id=principal.user_id),
            )
            self.membership_repository.add(scope, UserGroup(user_id=principal.user_id, group_id=group.id))
            logger.info("group.created", extra={"entity": "groups", "user_id": principal.label()})
            return GroupRead.model_validate(group)

    def list_groups(self, session: Session, principal: Principal) -> list[GroupRead]:
        with self.gateway.unit_of_work(session, principal) as scope:
            rows = self.group_repository.list(scope, order_by=(Group.name.asc(),))
            return [GroupRead.model_validate(row) for row in rows]

    def get_group(self, session: Session, principal: Principal, group_id: uuid.UUID) -> GroupRead:
        with self.gateway.unit_of_work(session, principal) as scope:
            return GroupRead.model_validate(self.group_repository.require(scope, group_id))

    def rename_group(self, session: Session, principal: Principal, group_id: uuid.UUID, dto: GroupUpdate) -> GroupRead:
        changes = dto.model_dump(exclude_unset=True)
        if changes.get("name") is None:
            changes.pop("name", None)
        with self.gateway.unit_of_work(session, principal) as scope:
            group = self.group_repository.require_target(scope, group_id, Operation.UPDATE)
            if changes:
                group = self.group_repository.update(scope, group, **changes)
            return GroupRead.model_validate(group)

    def delete_group(self, session: Session, principal: Principal, group_id: uuid.UUID) -> None:
        with self.gateway.unit_of_work(session, principal) as scope:
            group = self.group_repository.require_target(scope, group_id, Operation.DELETE)
            self.group_repository.remove(scope, group)

    def add_member(
        self,
        session: Session,
        principal: Principal,
        group_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> MembershipRead:
        with _conflict_as("user_groups", "user is already a member"):
            with self.gateway.unit_of_work(session, principal) as scope:
                _require_user(scope, user_id)
                membership = self.membership_repository.add(scope, UserGroup(user_id=user_id, group_id=group_id))
                return MembershipRead.model_validate(membership)

    def remove_member(self, session: Session, principal: Principal, group_id: uuid.UUID, user_id: uuid.UUID) -> None:
        with self.gateway.unit_of_work(session, principal) as scope:
            membership = self.membership_repository.require_target(scope, (user_id, group_id), Operation.DELETE)
            self.membership_repository.remove(scope, membership)

    def leave_group(self, session: Session, principal: Principal, group_id: uuid.UUID) -> None:
        if principal.user_id is None:
            raise RecordNotFound("user_groups", group_id)
        self.remove_member(session, principal, group_id, principal.user_id)

    def list_members(self, session: Session, principal: Principal, group_id: uuid.UUID) -> list[MembershipRead]:
        with self.gateway.unit_of_work(session, principal) as scope:
            rows = self.membership_repository.list_for_group(scope, group_id)
            return [MembershipRead.model_validate(row) for row in rows]

    # contacts

    def request_contact(self, session: Session, principal: Principal, contact_id: uuid.UUID) -> ContactRead:
        with _conflict_as("contacts", "contact already exists"):
            with self.gateway.unit_of_work(session, principal) as scope:
                _require_user(scope, contact_id)
                if principal.user_id is not None and self.contact_repository.find_between(
                    scope, principal.user_id, contact_id
                ):
                    raise RecordConflict("contacts", "contact already exists")
                contact = self.contact_repository.add(
                    scope,
                    Contact(user_id=principal.user_id, contact_id=contact_id, status=ContactStatus.PENDING.value),
                )
                return ContactRead.model_validate(contact)

    def respond_to_contact(
        self,
        session: Session,
        principal: Principal,
        requester_id: uuid.UUID,
        resolution: ContactResolution,
    ) -> ContactRead:
        """Accept or block a pending request addressed to the principal."""

        with self.gateway.unit_of_work(session, principal) as scope:
            contact = self.contact_repository.require_target(scope, (requester_id, principal.user_id), Operation.UPDATE)
            contact = scope.transition(contact, contact.status, ContactStatus(resolution).value)
            return ContactRead.model_validate(contact)

    def remove_contact(self, session: Session, principal: Principal, other_id: uuid.UUID) -> None:
        with self.gateway.unit_of_work(session, principal) as scope:
            contact = scope.load(Contact, (principal.user_id, other_id), Operation.DELETE) or scope.load(
                Contact, (other_id, principal.user_id), Operation.DELETE
            )
            if contact is None:
                raise RecordNotFound("contacts", other_id)
            self.contact_repository.remove(scope, contact)

    def list_contacts(
        self,
        session: Session,
        principal: Principal,
        *,
        status: ContactStatus | None = None,
    ) -> list[ContactRead]:
        criteria = [] if status is None else [Contact.status == ContactStatus(status).value]
        with self.gateway.unit_of_work(session, principal) as scope:
            rows = self.contact_repository.list(scope, *criteria, order_by=(Contact.created_at.asc(),))
            return [ContactRead.model_validate(row) for row in rows]

    # books

    def create_book(self, session: Session, principal: Principal, dto: BookCreate) -> BookRead:
        payload = dto.model_dump(mode="python")
        with self.gateway.unit_of_work(session, principal) as scope:
            book = self.book_repository.add(scope, Book(id=uuid.uuid4(), owner_id=principal.user_id, **payload))
            return BookRead.model_validate(book)

    def get_book(self, session: Session, principal: Principal, book_id: uuid.UUID) -> BookRead:
        with self.gateway.unit_of_work(session, principal) as scope:
            return BookRead.model_validate(self.book_repository.require(scope, book_id))

    def list_books(
        self,
        session: Session,
        principal: Principal,
        *,
        owner_id: uuid.UUID | None = None,
        text: str | None = None,
    ) -> list[BookRead]:
        with self.gateway.unit_of_work(session, principal) as scope:
            rows = self.book_repository.search(scope, owner_id=owner_id, text=text)
            return [BookRead.model_validate(row) for row in rows]

    def update_book(self, session: Session, principal: Principal, book_id: uuid.UUID, dto: BookUpdate) -> BookRead:
        changes = dto.model_dump(exclude_unset=True)
        with self.gateway.unit_of_work(session, principal) as scope:
            book = self.book_repository.require_target(scope, book_id, Operation.UPDATE)
            if changes:
                book = self.book_repository.update(scope, book, **changes)
            return BookRead.model_validate(book)

    def delete_book(self, session: Session, principal: Principal, book_id: uuid.UUID) -> None:
        with self.gateway.unit_of_work(session, principal) as scope:
            book = self.book_repository.require_target(scope, book_id, Operation.DELETE)
            self.book_repository.remove(scope, book)

    # tags

    def create_tag(self, session: Session, principal: Principal, dto: TagCreate) -> TagRead:
        with self.gateway.unit_of_work(session, principal) as scope:
            tag = self.tag_repository.add(scope, Tag(id=uuid.uuid4(), name=dto.name.strip(), created_by_id=principal.user_id))
            return TagRead.model_validate(tag)

    def list_tags(self, session: Session, principal: Principal) -> list[TagRead]:
        with self.gateway.unit_of_work(session, principal) as scope:
            rows = self.tag_repository.list(scope, order_by=(Tag.name.asc(),))
            return [TagRead.model_validate(row) for row in rows]

    def rename_tag(self, session: Session, principal: Principal, tag_id: uuid.UUID, dto: TagCreate) -> TagRead:
        with self.gateway.unit_of_work(session, principal) as scope:
            tag = self.tag_repository.require_target(scope, tag_id, Operation.UPDATE)
            tag = self.tag_repository.update(scope, tag, name=dto.name.strip())
            return TagRead.model_validate(tag)

    def delete_tag(self, session: Session, principal: Principal, tag_id: uuid.UUID) -> None:
        with self.gateway.unit_of_work(session, principal) as scope:
            tag = self.tag_repository.require_target(scope, tag_id, Operation.DELETE)
            self.tag_repository.remove(scope, tag)

    def tag_book(self, session: Session, principal: Principal, book_id: uuid.UUID, tag_id: uuid.UUID) -> BookTagRead:
        with _conflict_as("book_tags", "book already carries this tag"):
            with self.gateway.unit_of_work(session, principal) as scope:
                book_tag = self.book_tag_repository.add(
                    scope,
                    BookTag(id=uuid.uuid4(), book_id=book_id, tag_id=tag_id, tagged_by_id=principal.user_id),
                )
                return BookTagRead.model_validate(book_tag)

    def untag_book(self, session: Session, principal: Principal, book_id: uuid.UUID, tag_id: uuid.UUID) -> None:
        with self.gateway.unit_of_work(session, principal) as scope:
            rows = self.book_tag_repository.list(
                scope,
                BookTag.book_id == book_id,
                BookTag.tag_id == tag_id,
                BookTag.tagged_by_id == principal.user_id,
            )
            if not rows:
                raise RecordNotFound("book_tags", (book_id, tag_id))
            for row in rows:
                self.book_tag_repository.remove(scope, row)

    def list_book_tags(self, session: Session, principal: Principal, book_id: uuid.UUID) -> list[BookTagRead]:
        with self.gateway.unit_of_work(session, principal) as scope:
            rows = self.book_tag_repository.list_for_book(scope, book_id)
            return [BookTagRead.model_validate(row) for row in rows]

    def share_tag(self, session: Session, principal: Principal, tag_id: uuid.UUID, group_id: uuid.UUID) -> SharedTagRead:
        with _conflict_as("shared_tags_to_groups", "tag already shared with this group"):
            with self.gateway.unit_of_work(session, principal) as scope:
                shared = self.shared_tag_repository.add(
                    scope,
                    SharedTag(tag_id=tag_id, group_id=group_id, shared_by_id=principal.user_id),
                )
                logger.info("tag.shared", extra={"entity": "shared_tags_to_groups", "user_id": principal.label()})
                return SharedTagRead.model_validate(shared)

    def unshare_tag(self, session: Session, principal: Principal, tag_id: uuid.UUID, group_id: uuid.UUID) -> None:
        with self.gateway.unit_of_work(session, principal) as scope:
            shared = self.shared_tag_repository.require_target(scope, (tag_id, group_id), Operation.DELETE)
            self.shared_tag_repository.remove(scope, shared)

    def list_shared_tags(self, session: Session, principal: Principal, group_id: uuid.UUID) -> list[SharedTagRead]:
        with self.gateway.unit_of_work(session, principal) as scope:
            rows = self.shared_tag_repository.list_for_group(scope, group_id)
            return [SharedTagRead.model_validate(row) for row in rows]


library_service = LibraryService()
