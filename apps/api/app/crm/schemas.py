from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, get_args
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


LeadSource = Literal["MANUAL", "WEBHOOK", "WEBSITE", "REFERRAL", "OTHER"]
CustomerPlan = Literal["FREE", "BASIC", "PRO", "ENTERPRISE"]
InvoiceType = Literal["QUOTE", "INVOICE"]
InvoiceStatus = Literal["DRAFT", "SENT", "PAID", "OVERDUE", "CANCELLED"]
INVOICE_STATUSES: tuple[str, ...] = get_args(InvoiceStatus)


def _clean_tag_names(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    value: Decimal = Field(default=Decimal("0"), ge=0)
    status: str | None = None
    source: LeadSource = "MANUAL"
    notes: str | None = None
    assigned_to_id: str | None = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value: list[str] | None) -> list[str] | None:
        return _clean_tag_names(value)


class LeadUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    value: Decimal | None = Field(default=None, ge=0)
    status: str | None = None
    source: LeadSource | None = None
    notes: str | None = None
    assigned_to_id: str | None = None
    tags: list[str] | None = None

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value: list[str] | None) -> list[str] | None:
        return _clean_tag_names(value)


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    name: str
    email: str | None
    phone: str | None
    company: str | None
    value: Decimal
    status: str
    source: str
    notes: str | None
    assigned_to_id: str | None
    created_by_id: str | None
    converted_at: datetime | None
    converted_to_id: UUID | None
    created_at: datetime
    updated_at: datetime
    tags: list[str] = Field(default_factory=list)


class LeadBulkRow(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    value: Decimal | None = Field(default=None, ge=0)
    status: str | None = None
    notes: str | None = None
    assigned_to_id: str | None = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class LeadBulkCreateRequest(BaseModel):
    # Shape is checked by the import service so a non-array answers 400, not 422.
    leads: Any = None


class LeadBulkCreateResponse(BaseModel):
    success: bool = True
    count: int
    ids: list[UUID]


class LeadConvertRequest(BaseModel):
    plan: str = "FREE"
    generate_invoice: bool = False

    @field_validator("plan")
    @classmethod
    def normalize_plan(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in get_args(CustomerPlan):
            raise ValueError("plan must be one of FREE, BASIC, PRO, ENTERPRISE")
        return normalized


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    name: str
    email: str | None
    phone: str | None
    company: str | None
    notes: str | None
    plan: str
    status: str
    created_at: datetime


class LeadConvertResponse(BaseModel):
    success: bool = True
    customer_id: UUID
    customer: CustomerRead


class InvoiceCreate(BaseModel):
    type: InvoiceType = "INVOICE"
    lead_id: UUID | None = None
    customer_id: UUID | None = None
    amount: Decimal = Field(ge=0)


class InvoiceStatusUpdate(BaseModel):
    # Checked against INVOICE_STATUSES by the invoice service so an unknown value answers 400.
    status: str
    paid_at: datetime | None = None


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    number: str
    type: str
    lead_id: UUID | None
    customer_id: UUID | None
    amount: Decimal
    status: str
    paid_at: datetime | None
    created_at: datetime
