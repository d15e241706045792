from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


LoanRole = Literal["requester", "owner"]


class LoanRequestCreate(BaseModel):
    book_id: UUID
    notes: str | None = Field(default=None, max_length=2000)


class LoanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    book_id: UUID
    requester_id: UUID
    owner_id: UUID
    status: str
    requested_at: datetime
    responded_at: datetime | None
    loaned_at: datetime | None
    returned_at: datetime | None
    notes: str | None
