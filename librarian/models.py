from librarian.accounts.models import User, UserSession
from librarian.library.models import Book, BookTag, Contact, Group, SharedTag, Tag, UserGroup
from librarian.loans.models import BookLoan

__all__ = [
    "Book",
    "BookLoan",
    "BookTag",
    "Contact",
    "Group",
    "SharedTag",
    "Tag",
    "User",
    "UserGroup",
    "UserSession",
]
