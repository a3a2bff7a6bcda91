from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, TypeVar

from pydantic import BaseModel

from app.core.errors import ConflictError
from app.crm.lifecycle import DEAL_STAGE_PROBABILITIES
from app.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    CustomerCreate,
    CustomerRead,
    DashboardMetrics,
    DealCreate,
    DealRead,
    LeadCreate,
    LeadRead,
    OrganizationCreate,
    OrganizationRead,
    RelatedRecordType,
    SalesDataCreate,
    SalesDataRead,
    UserCreate,
    UserRead,
    UserRecord,
)
from app.crm.seed import seed_demo_data


ModelT = TypeVar("ModelT", bound=BaseModel)

_TABLES = ("organizations", "users", "leads", "customers", "deals", "activities", "sales_data")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _newest_first(rows: list[ModelT]) -> list[ModelT]:
    return sorted(rows, key=lambda row: (getattr(row, "created_at"), getattr(row, "id")), reverse=True)


class MemoryStorage:
    """Dict-backed storage for demos and tests.

    Ids auto-increment per table. ``unit_of_work`` snapshots every table and
    restores the snapshot when the block raises.
    """

    def __init__(self, seed: bool = False) -> None:
        self._lock = threading.RLock()
        self._tables: dict[str, dict[int, Any]] = {name: {} for name in _TABLES}
        self._counters: dict[str, int] = defaultdict(int)
        self._depth = 0
        if seed:
            seed_demo_data(self)

    def _next_id(self, table: str) -> int:
        self._counters[table] += 1
        return self._counters[table]

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        with self._lock:
            snapshot = None
            if self._depth == 0:
                snapshot = ({name: dict(rows) for name, rows in self._tables.items()}, dict(self._counters))
            self._depth += 1
            try:
                yield
            except Exception:
                if snapshot is not None:
                    tables, counters = snapshot
                    self._tables = tables
                    self._counters = defaultdict(int, counters)
                raise
            finally:
                self._depth -= 1

    def _scoped(self, table: str, record_id: int, organization_id: int) -> Any | None:
        row = self._tables[table].get(record_id)
        if row is None or row.organization_id != organization_id:
            return None
        return row

    def _update(self, table: str, record_id: int, organization_id: int, changes: dict[str, Any]) -> Any | None:
        with self._lock:
            row = self._scoped(table, record_id, organization_id)
            if row is None:
                return None
            updated = row.model_copy(update={**changes, "updated_at": utcnow()})
            self._tables[table][record_id] = updated
            return updated

    # Organizations

    def create_organization(self, data: OrganizationCreate) -> OrganizationRead:
        with self._lock:
            if any(org.slug == data.slug for org in self._tables["organizations"].values()):
                raise ConflictError("Organization slug already exists")
            now = utcnow()
            organization = OrganizationRead(
                id=self._next_id("organizations"),
                name=data.name,
                slug=data.slug,
                subscription_plan="starter",
                subscription_status="trial",
                subscription_id=None,
                settings=dict(data.settings),
                created_at=now,
                updated_at=now,
            )
            self._tables["organizations"][organization.id] = organization
            return organization

    def get_organization(self, organization_id: int) -> OrganizationRead | None:
        return self._tables["organizations"].get(organization_id)

    def get_organization_by_slug(self, slug: str) -> OrganizationRead | None:
        return next((org for org in self._tables["organizations"].values() if org.slug == slug), None)

    def update_organization_subscription(
        self,
        organization_id: int,
        plan: str,
        status: str,
        subscription_id: str | None = None,
    ) -> OrganizationRead | None:
        changes: dict[str, Any] = {"subscription_plan": plan, "subscription_status": status}
        if subscription_id is not None:
            changes["subscription_id"] = subscription_id
        with self._lock:
            organization = self._tables["organizations"].get(organization_id)
            if organization is None:
                return None
            updated = organization.model_copy(update={**changes, "updated_at": utcnow()})
            self._tables["organizations"][organization_id] = updated
            return updated

    # Users

    def create_user(self, organization_id: int, data: UserCreate, password_hash: str) -> UserRead:
        with self._lock:
            email = str(data.email)
            for existing in self._tables["users"].values():
                if existing.username == data.username or existing.email == email:
                    raise ConflictError("Username or email already exists")
            now = utcnow()
            record = UserRecord(
                id=self._next_id("users"),
                username=data.username,
                email=email,
                first_name=data.first_name,
                last_name=data.last_name,
                role=data.role,
                organization_id=organization_id,
                is_active=True,
                created_at=now,
                updated_at=now,
                password_hash=password_hash,
            )
            self._tables["users"][record.id] = record
            return record.to_public()

    def get_user(self, user_id: int) -> UserRecord | None:
        return self._tables["users"].get(user_id)

    def get_user_by_username(self, username: str) -> UserRecord | None:
        return next((user for user in self._tables["users"].values() if user.username == username), None)

    def list_users(self, organization_id: int) -> list[UserRead]:
        users = [user for user in self._tables["users"].values() if user.organization_id == organization_id]
        return [user.to_public() for user in sorted(users, key=lambda user: user.id)]

    def count_users(self, organization_id: int) -> int:
        return sum(1 for user in self._tables["users"].values() if user.organization_id == organization_id)

    def update_user_role(self, user_id: int, organization_id: int, role: str) -> UserRead | None:
        updated = self._update("users", user_id, organization_id, {"role": role})
        return updated.to_public() if updated is not None else None

    # Leads

    def list_leads(self, organization_id: int, status: str | None = None) -> list[LeadRead]:
        leads = [
            lead
            for lead in self._tables["leads"].values()
            if lead.organization_id == organization_id and (not status or lead.status == status)
        ]
        return _newest_first(leads)

    def get_lead(self, lead_id: int, organization_id: int) -> LeadRead | None:
        return self._scoped("leads", lead_id, organization_id)

    def create_lead(self, organization_id: int, data: LeadCreate) -> LeadRead:
        with self._lock:
            now = utcnow()
            lead = LeadRead(
                id=self._next_id("leads"),
                organization_id=organization_id,
                created_at=now,
                updated_at=now,
                **data.model_dump(),
            )
            self._tables["leads"][lead.id] = lead
            return lead

    def update_lead(self, lead_id: int, organization_id: int, changes: dict[str, Any]) -> LeadRead | None:
        return self._update("leads", lead_id, organization_id, changes)

    def _mark_lead_converted(self, lead_id: int, organization_id: int) -> None:
        if self._update("leads", lead_id, organization_id, {"status": "converted"}) is None:
            raise LookupError(f"lead {lead_id} disappeared during conversion")

    def convert_lead_to_customer(
        self,
        lead_id: int,
        organization_id: int,
        data: CustomerCreate,
    ) -> CustomerRead | None:
        with self.unit_of_work():
            if self.get_lead(lead_id, organization_id) is None:
                return None
            customer = self._insert_customer(organization_id, data, converted_from_lead=lead_id)
            self._mark_lead_converted(lead_id, organization_id)
            return customer

    # Customers

    def list_customers(self, organization_id: int) -> list[CustomerRead]:
        customers = [row for row in self._tables["customers"].values() if row.organization_id == organization_id]
        return _newest_first(customers)

    def get_customer(self, customer_id: int, organization_id: int) -> CustomerRead | None:
        return self._scoped("customers", customer_id, organization_id)

    def _ensure_unique_customer_email(self, organization_id: int, email: str, exclude_id: int | None = None) -> None:
        for existing in self._tables["customers"].values():
            if existing.organization_id == organization_id and existing.email == email and existing.id != exclude_id:
                raise ConflictError("Customer with this email already exists")

    def _insert_customer(
        self,
        organization_id: int,
        data: CustomerCreate,
        converted_from_lead: int | None = None,
    ) -> CustomerRead:
        with self._lock:
            email = str(data.email)
            self._ensure_unique_customer_email(organization_id, email)
            now = utcnow()
            customer = CustomerRead(
                id=self._next_id("customers"),
                organization_id=organization_id,
                name=data.name,
                email=email,
                phone=data.phone,
                company=data.company,
                status=data.status,
                value=data.value,
                last_contact=data.last_contact or now,
                converted_from_lead=converted_from_lead,
                assigned_to=data.assigned_to,
                created_at=now,
                updated_at=now,
            )
            self._tables["customers"][customer.id] = customer
            return customer

    def create_customer(self, organization_id: int, data: CustomerCreate) -> CustomerRead:
        return self._insert_customer(organization_id, data)

    def update_customer(
        self,
        customer_id: int,
        organization_id: int,
        changes: dict[str, Any],
    ) -> CustomerRead | None:
        with self._lock:
            if changes.get("email") is not None and self._scoped("customers", customer_id, organization_id):
                changes = {**changes, "email": str(changes["email"])}
                self._ensure_unique_customer_email(organization_id, changes["email"], exclude_id=customer_id)
            return self._update("customers", customer_id, organization_id, changes)

    # Deals

    def list_deals(self, organization_id: int, stage: str | None = None) -> list[DealRead]:
        deals = [
            deal
            for deal in self._tables["deals"].values()
            if deal.organization_id == organization_id and (not stage or deal.stage == stage)
        ]
        return _newest_first(deals)

    def get_deal(self, deal_id: int, organization_id: int) -> DealRead | None:
        return self._scoped("deals", deal_id, organization_id)

    def create_deal(self, organization_id: int, data: DealCreate) -> DealRead:
        with self._lock:
            now = utcnow()
            payload = data.model_dump()
            if payload["probability"] is None:
                payload["probability"] = DEAL_STAGE_PROBABILITIES[data.stage]
            deal = DealRead(
                id=self._next_id("deals"),
                organization_id=organization_id,
                created_at=now,
                updated_at=now,
                **payload,
            )
            self._tables["deals"][deal.id] = deal
            return deal

    def update_deal(self, deal_id: int, organization_id: int, changes: dict[str, Any]) -> DealRead | None:
        return self._update("deals", deal_id, organization_id, changes)

    # Activities

    def list_activities(
        self,
        organization_id: int,
        related_to: tuple[RelatedRecordType, int] | None = None,
    ) -> list[ActivityRead]:
        activities = []
        for activity in self._tables["activities"].values():
            if activity.organization_id != organization_id:
                continue
            if related_to is not None:
                ref = activity.related_to
                if ref is None or (ref.type, ref.id) != related_to:
                    continue
            activities.append(activity)
        return _newest_first(activities)

    def get_activity(self, activity_id: int, organization_id: int) -> ActivityRead | None:
        return self._scoped("activities", activity_id, organization_id)

    def create_activity(
        self,
        organization_id: int,
        data: ActivityCreate,
        created_by: int,
        assigned_to: int,
    ) -> ActivityRead:
        with self._lock:
            now = utcnow()
            activity = ActivityRead(
                id=self._next_id("activities"),
                organization_id=organization_id,
                type=data.type,
                title=data.title,
                description=data.description,
                status="pending",
                due_date=data.due_date,
                completed_at=None,
                related_to=data.related_to,
                created_by=created_by,
                assigned_to=assigned_to,
                created_at=now,
                updated_at=now,
            )
            self._tables["activities"][activity.id] = activity
            return activity

    def update_activity(
        self,
        activity_id: int,
        organization_id: int,
        changes: dict[str, Any],
    ) -> ActivityRead | None:
        return self._update("activities", activity_id, organization_id, changes)

    # Sales data and analytics

    def list_sales_data(self, organization_id: int) -> list[SalesDataRead]:
        rows = [row for row in self._tables["sales_data"].values() if row.organization_id == organization_id]
        return _newest_first(rows)

    def create_sales_data(self, organization_id: int, data: SalesDataCreate) -> SalesDataRead:
        with self._lock:
            row = SalesDataRead(
                id=self._next_id("sales_data"),
                organization_id=organization_id,
                created_at=utcnow(),
                **data.model_dump(),
            )
            self._tables["sales_data"][row.id] = row
            return row

    def get_dashboard_metrics(self, organization_id: int) -> DashboardMetrics:
        revenue = sum((row.revenue for row in self.list_sales_data(organization_id)), Decimal("0"))
        deals = self.list_deals(organization_id)
        leads = self.list_leads(organization_id)
        converted = sum(1 for lead in leads if lead.status == "converted")
        total_value = sum((deal.value for deal in deals), Decimal("0"))

        return DashboardMetrics(
            total_revenue=float(revenue),
            total_deals=len(deals),
            total_customers=len(self.list_customers(organization_id)),
            total_leads=len(leads),
            conversion_rate=(converted / len(leads)) * 100 if leads else 0.0,
            avg_deal_value=float(total_value / len(deals)) if deals else 0.0,
        )
