from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from librarian.accounts.models import User, UserSession
from librarian.accounts.repository import SessionRepository, UserRepository
from librarian.accounts.schemas import SessionRead, UserCreate, UserRead, UserUpdate
from librarian.core.config import get_settings
from librarian.core.exceptions import RecordConflict, RecordNotFound
from librarian.platform.security.context import Principal
from librarian.platform.security.gateway import QueryGateway, build_gateway
from librarian.platform.security.policies import Operation


logger = logging.getLogger("librarian.accounts")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # sqlite drops tzinfo on the way back out
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(slots=True)
class AccountService:
    """Users and login sessions.

    Registration and session bookkeeping run before any principal exists, so
    they write directly through the session. Everything a signed-in user does
    to their own account goes through the gateway.
    """

    gateway: QueryGateway = field(default_factory=build_gateway)
    user_repository: UserRepository = field(default_factory=UserRepository)
    session_repository: SessionRepository = field(default_factory=SessionRepository)

    def register_user(self, session: Session, dto: UserCreate) -> UserRead:
        email = dto.email.strip().lower()
        existing = session.scalar(select(User.id).where(User.email == email))
        if existing is not None:
            raise RecordConflict("users", "email already registered")

        user = User(email=email, name=dto.name.strip(), password_hash=dto.password_hash)
        session.add(user)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise RecordConflict("users", "email already registered")
        session.refresh(user)
        logger.info("account.registered", extra={"user_id": str(user.id)})
        return UserRead.model_validate(user)

    def create_session(self, session: Session, user_id: uuid.UUID) -> SessionRead:
        if session.get(User, user_id) is None:
            raise RecordNotFound("users", user_id)

        settings = get_settings()
        token = secrets.token_hex(settings.session_token_bytes)
        row = UserSession(
            id=token,
            user_id=user_id,
            expires_at=_utcnow() + timedelta(days=settings.session_expiry_days),
        )
        session.add(row)
        session.commit()
        session.refresh(row)
        return SessionRead.model_validate(row)

    def validate_session(self, session: Session, token: str) -> Principal | None:
        """Resolve a session token to a principal, dropping it if expired or orphaned."""

        row = session.get(UserSession, token)
        if row is None:
            return None

        if _as_utc(row.expires_at) <= _utcnow() or session.get(User, row.user_id) is None:
            session.delete(row)
            session.commit()
            return None
        return Principal.for_user(row.user_id)

    def invalidate_session(self, session: Session, token: str) -> bool:
        result = session.execute(delete(UserSession).where(UserSession.id == token))
        session.commit()
        return result.rowcount > 0

    def cleanup_expired_sessions(self, session: Session) -> int:
        result = session.execute(delete(UserSession).where(UserSession.expires_at <= _utcnow()))
        session.commit()
        if result.rowcount:
            logger.info("account.sessions_expired", extra={"entity": "sessions", "count": result.rowcount})
        return result.rowcount

    def list_users(self, session: Session) -> list[UserRead]:
        with self.gateway.unauthenticated(session) as scope:
            rows = self.user_repository.list(scope, order_by=(User.name.asc(),))
            return [UserRead.model_validate(row) for row in rows]

    def get_user(self, session: Session, principal: Principal, user_id: uuid.UUID) -> UserRead:
        with self.gateway.unit_of_work(session, principal) as scope:
            return UserRead.model_validate(self.user_repository.require(scope, user_id))

    def update_profile(self, session: Session, principal: Principal, user_id: uuid.UUID, dto: UserUpdate) -> UserRead:
        changes = dto.model_dump(exclude_unset=True, exclude_none=True)
        with self.gateway.unit_of_work(session, principal) as scope:
            user = self.user_repository.require_target(scope, user_id, Operation.UPDATE)
            if changes:
                user = self.user_repository.update(scope, user, **changes)
            return UserRead.model_validate(user)

    def list_sessions(self, session: Session, principal: Principal) -> list[SessionRead]:
        with self.gateway.unit_of_work(session, principal) as scope:
            rows = self.session_repository.list(scope, order_by=(UserSession.created_at.desc(),))
            return [SessionRead.model_validate(row) for row in rows]

    def revoke_session(self, session: Session, principal: Principal, token: str) -> None:
        with self.gateway.unit_of_work(session, principal) as scope:
            row = self.session_repository.require_target(scope, token, Operation.DELETE)
            self.session_repository.remove(scope, row)


account_service = AccountService()
