from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class UserCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str | None
    created_at: datetime


class AccountCreate(BaseModel):
    name: str = Field(min_length=1)
    industry: str | None = None


class AccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    industry: str | None
    created_at: datetime
    updated_at: datetime


class ContactCreate(BaseModel):
    account_id: UUID | None = None
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    title: str | None = None
    email: EmailStr | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID | None
    first_name: str
    last_name: str
    title: str | None
    email: str | None
    created_at: datetime


class OpportunityCreate(BaseModel):
    name: str = Field(min_length=1)
    amount: Decimal | None = None
    stage_name: str = Field(default="Prospecting", min_length=1)
    type: str | None = None
    description: str | None = None
    owner_user_id: UUID | None = None
    account_id: UUID | None = None
    primary_contact_id: UUID | None = None
    close_date: date | None = None


class OpportunityUpdate(BaseModel):
    id: UUID
    name: str | None = Field(default=None, min_length=1)
    amount: Decimal | None = None
    stage_name: str | None = Field(default=None, min_length=1)
    type: str | None = None
    description: str | None = None
    owner_user_id: UUID | None = None
    account_id: UUID | None = None
    primary_contact_id: UUID | None = None
    close_date: date | None = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    amount: Decimal | None
    stage_name: str
    is_closed: bool
    type: str | None
    description: str | None
    owner_user_id: UUID | None
    account_id: UUID | None
    primary_contact_id: UUID | None
    close_date: date | None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    row_version: int | None = None


class OpportunityBatchCreateRequest(BaseModel):
    records: list[OpportunityCreate] = Field(min_length=1)


class OpportunityBatchUpdateRequest(BaseModel):
    records: list[OpportunityUpdate] = Field(min_length=1)


class OpportunityBatchIdsRequest(BaseModel):
    ids: list[UUID] = Field(min_length=1)


class RecordResultRead(BaseModel):
    id: UUID
    success: bool
    errors: list[str] = Field(default_factory=list)


class BatchResultRead(BaseModel):
    operation: str
    results: list[RecordResultRead]

    @property
    def succeeded_ids(self) -> list[UUID]:
        return [result.id for result in self.results if result.success]

    @property
    def failed_ids(self) -> list[UUID]:
        return [result.id for result in self.results if not result.success]


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subject: str
    entity_type: str
    entity_id: UUID
    assigned_contact_id: UUID | None
    owner_user_id: UUID | None
    due_date: date
    status: str
    created_at: datetime
