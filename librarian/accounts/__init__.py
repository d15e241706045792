from librarian.accounts.models import User, UserSession

__all__ = [
    "User",
    "UserSession",
]
