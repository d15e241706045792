from __future__ import annotations

from librarian.accounts.models import User, UserSession
from librarian.platform.security.repository import BaseRepository


class UserRepository(BaseRepository):
    model = User


class SessionRepository(BaseRepository):
    model = UserSession
