from librarian.loans.models import BookLoan, LoanStatus

__all__ = [
    "BookLoan",
    "LoanStatus",
]
