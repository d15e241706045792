from librarian.library.models import Book, BookTag, Contact, ContactStatus, Group, SharedTag, Tag, UserGroup

__all__ = [
    "Book",
    "BookTag",
    "Contact",
    "ContactStatus",
    "Group",
    "SharedTag",
    "Tag",
    "UserGroup",
]
