from __future__ import annotations

import uuid
from collections.abc import Generator
from dataclasses import dataclass

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import librarian.models  # noqa: F401
from librarian import audit
from librarian.accounts.models import User
from librarian.core.config import get_settings
from librarian.core.database import Base, session_scope
from librarian.library.models import Book, BookTag, Contact, ContactStatus, Group, SharedTag, Tag, UserGroup
from librarian.platform.security.context import Principal


@dataclass(frozen=True)
class World:
    """A owns "Dune", tagged "SciFi" and shared into group G; B is A's contact and in G; C is a stranger."""

    a_id: uuid.UUID
    b_id: uuid.UUID
    c_id: uuid.UUID
    group_id: uuid.UUID
    book_id: uuid.UUID
    tag_id: uuid.UUID

    @property
    def a(self) -> Principal:
        return Principal.for_user(self.a_id)

    @property
    def b(self) -> Principal:
        return Principal.for_user(self.b_id)

    @property
    def c(self) -> Principal:
        return Principal.for_user(self.c_id)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    try:
        with session_scope(SessionLocal) as session:
            yield session
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_state() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.clear()
    yield
    get_settings.cache_clear()
    audit.clear()


def add_user(session: Session, name: str) -> uuid.UUID:
    user = User(id=uuid.uuid4(), email=f"{name}@example.com", name=name, password_hash="hash")
    session.add(user)
    session.flush()
    return user.id


@pytest.fixture()
def world(db_session: Session) -> World:
    a_id = add_user(db_session, "alice")
    b_id = add_user(db_session, "bruno")
    c_id = add_user(db_session, "carla")

    group = Group(id=uuid.uuid4(), name="Readers", created_by_id=a_id)
    book = Book(id=uuid.uuid4(), owner_id=a_id, title="Dune", author="Frank Herbert")
    tag = Tag(id=uuid.uuid4(), name="SciFi", created_by_id=a_id)
    db_session.add_all([group, book, tag])
    db_session.flush()

    db_session.add_all(
        [
            UserGroup(user_id=a_id, group_id=group.id),
            UserGroup(user_id=b_id, group_id=group.id),
            BookTag(id=uuid.uuid4(), book_id=book.id, tag_id=tag.id, tagged_by_id=a_id),
            SharedTag(tag_id=tag.id, group_id=group.id, shared_by_id=a_id),
            Contact(user_id=a_id, contact_id=b_id, status=ContactStatus.ACCEPTED.value),
        ]
    )
    db_session.commit()

    return World(a_id=a_id, b_id=b_id, c_id=c_id, group_id=group.id, book_id=book.id, tag_id=tag.id)
