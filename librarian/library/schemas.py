from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


ContactResolution = Literal["accepted", "blocked"]


class GroupCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None


class GroupUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None


class GroupRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    created_by_id: UUID
    created_at: datetime


class MembershipRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    group_id: UUID
    joined_at: datetime


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    contact_id: UUID
    status: str
    created_at: datetime


class BookCreate(BaseModel):
    title: str = Field(min_length=1, max_length=512)
    author: str | None = Field(default=None, max_length=512)
    isbn: str | None = Field(default=None, max_length=32)
    description: str | None = None
    open_library_url: str | None = None
    is_owned: bool = True
    available_for_loan: bool = True


class BookUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=512)
    author: str | None = Field(default=None, max_length=512)
    isbn: str | None = Field(default=None, max_length=32)
    description: str | None = None
    open_library_url: str | None = None
    is_owned: bool | None = None
    available_for_loan: bool | None = None


class BookRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_id: UUID
    title: str
    author: str | None
    isbn: str | None
    description: str | None
    open_library_url: str | None
    is_owned: bool
    available_for_loan: bool
    created_at: datetime


class TagCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class TagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    created_by_id: UUID
    created_at: datetime


class BookTagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    book_id: UUID
    tag_id: UUID
    tagged_by_id: UUID
    created_at: datetime


class SharedTagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tag_id: UUID
    group_id: UUID
    shared_by_id: UUID
    shared_at: datetime
