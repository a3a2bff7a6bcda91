from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


Role = Literal["admin", "manager", "sales_rep", "user"]
SubscriptionPlanId = Literal["starter", "professional", "enterprise"]
SubscriptionStatus = Literal["trial", "active", "cancelled", "suspended"]
LeadStatus = Literal["new", "contacted", "qualified", "converted", "lost"]
CustomerStatus = Literal["prospect", "active", "negotiation", "inactive"]
DealStage = Literal["prospecting", "qualification", "proposal", "negotiation", "closed_won", "closed_lost"]
ActivityType = Literal["call", "email", "meeting", "task", "note"]
ActivityStatus = Literal["pending", "completed", "cancelled"]
RelatedRecordType = Literal["customer", "lead", "deal"]

Money = Annotated[Decimal, Field(ge=0, max_digits=12, decimal_places=2)]


class CamelModel(BaseModel):
    """Snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def _current_year() -> int:
    return datetime.now(timezone.utc).year


class OrganizationCreate(CamelModel):
    name: str = Field(min_length=1, max_length=200)
    slug: str = Field(min_length=1, max_length=64, pattern=r"^[a-z0-9-]+$")
    settings: dict[str, Any] = Field(default_factory=dict)


class OrganizationRead(CamelModel):
    id: int
    name: str
    slug: str
    subscription_plan: SubscriptionPlanId
    subscription_status: SubscriptionStatus
    subscription_id: str | None = None
    settings: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class UserCreate(CamelModel):
    username: str = Field(min_length=3, max_length=64)
    email: EmailStr
    password: str = Field(min_length=8, max_length=72)
    first_name: str | None = None
    last_name: str | None = None
    role: Role = "user"


class UserRead(CamelModel):
    id: int
    username: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    role: Role
    organization_id: int
    is_active: bool
    created_at: datetime
    updated_at: datetime


class UserRecord(UserRead):
    password_hash: str = Field(exclude=True, repr=False)

    def to_public(self) -> UserRead:
        return UserRead.model_validate(self.model_dump())


class UserRoleUpdate(CamelModel):
    role: str


class SignUpAdmin(CamelModel):
    username: str = Field(min_length=3, max_length=64)
    email: EmailStr
    password: str = Field(min_length=8, max_length=72)
    first_name: str | None = None
    last_name: str | None = None


class OrganizationSignUpRequest(OrganizationCreate):
    admin: SignUpAdmin


class OrganizationSignUpResponse(CamelModel):
    organization: OrganizationRead
    user: UserRead
    token: str


class LoginRequest(CamelModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class LoginResponse(CamelModel):
    token: str
    user: UserRead


class SuccessResponse(CamelModel):
    success: bool = True


class LeadCreate(CamelModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    source: str | None = None
    status: LeadStatus = "new"
    score: int = Field(default=0, ge=0, le=100)
    notes: str | None = None
    assigned_to: int | None = None


class LeadUpdate(CamelModel):
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    source: str | None = None
    status: LeadStatus | None = None
    score: int | None = Field(default=None, ge=0, le=100)
    notes: str | None = None
    assigned_to: int | None = None


class LeadRead(CamelModel):
    id: int
    organization_id: int
    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    source: str | None = None
    status: LeadStatus
    score: int
    notes: str | None = None
    assigned_to: int | None = None
    created_at: datetime
    updated_at: datetime


class LeadConvertRequest(CamelModel):
    """Customer fields for a conversion; anything omitted is copied from the lead."""

    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    status: CustomerStatus = "prospect"
    value: Money = Decimal("0")
    assigned_to: int | None = None


class CustomerCreate(CamelModel):
    name: str = Field(min_length=1)
    email: EmailStr
    phone: str | None = None
    company: str | None = None
    status: CustomerStatus = "prospect"
    value: Money = Decimal("0")
    last_contact: datetime | None = None
    assigned_to: int | None = None


class CustomerUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    status: CustomerStatus | None = None
    value: Money | None = None
    last_contact: datetime | None = None
    assigned_to: int | None = None


class CustomerRead(CamelModel):
    id: int
    organization_id: int
    name: str
    email: str
    phone: str | None = None
    company: str | None = None
    status: CustomerStatus
    value: Decimal
    last_contact: datetime | None = None
    converted_from_lead: int | None = None
    assigned_to: int | None = None
    created_at: datetime
    updated_at: datetime


class DealCreate(CamelModel):
    title: str = Field(min_length=1)
    value: Money = Decimal("0")
    stage: DealStage = "prospecting"
    probability: int | None = Field(default=None, ge=0, le=100)
    customer_id: int | None = None
    assigned_to: int | None = None
    expected_close_date: date | None = None
    notes: str | None = None


class DealUpdate(CamelModel):
    title: str | None = Field(default=None, min_length=1)
    value: Money | None = None
    stage: DealStage | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    customer_id: int | None = None
    assigned_to: int | None = None
    expected_close_date: date | None = None
    notes: str | None = None


class DealRead(CamelModel):
    id: int
    organization_id: int
    title: str
    value: Decimal
    stage: DealStage
    probability: int
    customer_id: int | None = None
    assigned_to: int | None = None
    expected_close_date: date | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime


class CustomerRef(CamelModel):
    type: Literal["customer"] = "customer"
    id: int


class LeadRef(CamelModel):
    type: Literal["lead"] = "lead"
    id: int


class DealRef(CamelModel):
    type: Literal["deal"] = "deal"
    id: int


RelatedRecord = Annotated[CustomerRef | LeadRef | DealRef, Field(discriminator="type")]

_REF_TYPES: dict[str, type[CustomerRef] | type[LeadRef] | type[DealRef]] = {
    "customer": CustomerRef,
    "lead": LeadRef,
    "deal": DealRef,
}


def related_ref(record_type: str, record_id: int) -> CustomerRef | LeadRef | DealRef:
    return _REF_TYPES[record_type](id=record_id)


class ActivityCreate(CamelModel):
    type: ActivityType
    title: str = Field(min_length=1)
    description: str | None = None
    due_date: datetime | None = None
    related_to: RelatedRecord | None = None
    assigned_to: int | None = None


class ActivityUpdate(CamelModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    due_date: datetime | None = None
    status: ActivityStatus | None = None
    assigned_to: int | None = None


class ActivityRead(CamelModel):
    id: int
    organization_id: int
    type: ActivityType
    title: str
    description: str | None = None
    status: ActivityStatus
    due_date: datetime | None = None
    completed_at: datetime | None = None
    related_to: RelatedRecord | None = None
    created_by: int
    assigned_to: int
    created_at: datetime
    updated_at: datetime


class SalesDataCreate(CamelModel):
    month: str = Field(min_length=1, max_length=16)
    year: int = Field(default_factory=_current_year, ge=1970, le=9999)
    revenue: Money
    deals: int = Field(ge=0)
    new_customers: int = Field(default=0, ge=0)


class SalesDataRead(CamelModel):
    id: int
    organization_id: int
    month: str
    year: int
    revenue: Decimal
    deals: int
    new_customers: int
    created_at: datetime


class DashboardMetrics(CamelModel):
    total_revenue: float
    total_deals: int
    total_customers: int
    total_leads: int
    conversion_rate: float
    avg_deal_value: float
