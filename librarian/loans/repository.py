from __future__ import annotations

import uuid

from librarian.loans.models import BookLoan
from librarian.platform.security.gateway import AuthorizedSession
from librarian.platform.security.repository import BaseRepository


class LoanRepository(BaseRepository):
    model = BookLoan

    def list_for_principal(
        self,
        scope: AuthorizedSession,
        *,
        role: str | None = None,
        status: str | None = None,
    ) -> list[BookLoan]:
        criteria = []
        user_id: uuid.UUID | None = scope.principal.user_id
        if role == "requester":
            criteria.append(BookLoan.requester_id == user_id)
        elif role == "owner":
            criteria.append(BookLoan.owner_id == user_id)
        if status is not None:
            criteria.append(BookLoan.status == status)
        return self.list(scope, *criteria, order_by=(BookLoan.requested_at.desc(),))
