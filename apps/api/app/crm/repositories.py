from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import ConflictError
from app.crm.models import Activity, Customer, Deal, Lead, Organization, SalesData, User
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
    related_ref,
)


logger = logging.getLogger("app.crm.storage")

_RELATED_COLUMNS: dict[str, str] = {
    "customer": "customer_id",
    "lead": "lead_id",
    "deal": "deal_id",
}


class DatabaseStorage:
    """SQLAlchemy-backed storage bound to one session.

    Standalone writes commit on their own. Inside ``unit_of_work`` writes only
    flush and the outermost block commits once, or rolls everything back.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self._depth = 0

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        self._depth += 1
        try:
            yield
        except Exception:
            self._depth -= 1
            if self._depth == 0:
                self.session.rollback()
            raise
        self._depth -= 1
        if self._depth == 0:
            try:
                self.session.commit()
            except IntegrityError as exc:
                self.session.rollback()
                raise ConflictError("Conflicting record already exists") from exc

    def _flush_or_commit(self, conflict_message: str) -> None:
        try:
            if self._depth > 0:
                self.session.flush()
            else:
                self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.info("storage.conflict", extra={"error": conflict_message})
            raise ConflictError(conflict_message) from exc

    def _apply(self, row: Any, changes: dict[str, Any]) -> None:
        for field_name, value in changes.items():
            setattr(row, field_name, value)

    # Organizations

    def create_organization(self, data: OrganizationCreate) -> OrganizationRead:
        organization = Organization(name=data.name, slug=data.slug, settings=dict(data.settings))
        self.session.add(organization)
        self._flush_or_commit("Organization slug already exists")
        return OrganizationRead.model_validate(organization)

    def get_organization(self, organization_id: int) -> OrganizationRead | None:
        organization = self.session.get(Organization, organization_id)
        return OrganizationRead.model_validate(organization) if organization is not None else None

    def get_organization_by_slug(self, slug: str) -> OrganizationRead | None:
        organization = self.session.scalar(select(Organization).where(Organization.slug == slug))
        return OrganizationRead.model_validate(organization) if organization is not None else None

    def update_organization_subscription(
        self,
        organization_id: int,
        plan: str,
        status: str,
        subscription_id: str | None = None,
    ) -> OrganizationRead | None:
        organization = self.session.get(Organization, organization_id)
        if organization is None:
            return None
        organization.subscription_plan = plan
        organization.subscription_status = status
        if subscription_id is not None:
            organization.subscription_id = subscription_id
        self._flush_or_commit("Organization update conflict")
        return OrganizationRead.model_validate(organization)

    # Users

    def create_user(self, organization_id: int, data: UserCreate, password_hash: str) -> UserRead:
        user = User(
            username=data.username,
            email=str(data.email),
            password_hash=password_hash,
            first_name=data.first_name,
            last_name=data.last_name,
            role=data.role,
            organization_id=organization_id,
        )
        self.session.add(user)
        self._flush_or_commit("Username or email already exists")
        return UserRead.model_validate(user)

    def get_user(self, user_id: int) -> UserRecord | None:
        user = self.session.get(User, user_id)
        return UserRecord.model_validate(user) if user is not None else None

    def get_user_by_username(self, username: str) -> UserRecord | None:
        user = self.session.scalar(select(User).where(User.username == username))
        return UserRecord.model_validate(user) if user is not None else None

    def list_users(self, organization_id: int) -> list[UserRead]:
        stmt = select(User).where(User.organization_id == organization_id).order_by(User.id)
        return [UserRead.model_validate(user) for user in self.session.scalars(stmt)]

    def count_users(self, organization_id: int) -> int:
        stmt = select(func.count()).select_from(User).where(User.organization_id == organization_id)
        return int(self.session.scalar(stmt) or 0)

    def update_user_role(self, user_id: int, organization_id: int, role: str) -> UserRead | None:
        user = self.session.scalar(
            select(User).where(and_(User.id == user_id, User.organization_id == organization_id))
        )
        if user is None:
            return None
        user.role = role
        self._flush_or_commit("User update conflict")
        return UserRead.model_validate(user)

    # Leads

    def list_leads(self, organization_id: int, status: str | None = None) -> list[LeadRead]:
        stmt: Select[tuple[Lead]] = select(Lead).where(Lead.organization_id == organization_id)
        if status:
            stmt = stmt.where(Lead.status == status)
        stmt = stmt.order_by(Lead.created_at.desc(), Lead.id.desc())
        return [LeadRead.model_validate(lead) for lead in self.session.scalars(stmt)]

    def _scoped_lead(self, lead_id: int, organization_id: int) -> Lead | None:
        return self.session.scalar(
            select(Lead).where(and_(Lead.id == lead_id, Lead.organization_id == organization_id))
        )

    def get_lead(self, lead_id: int, organization_id: int) -> LeadRead | None:
        lead = self._scoped_lead(lead_id, organization_id)
        return LeadRead.model_validate(lead) if lead is not None else None

    def create_lead(self, organization_id: int, data: LeadCreate) -> LeadRead:
        lead = Lead(
            organization_id=organization_id,
            first_name=data.first_name,
            last_name=data.last_name,
            email=str(data.email) if data.email is not None else None,
            phone=data.phone,
            company=data.company,
            source=data.source,
            status=data.status,
            score=data.score,
            notes=data.notes,
            assigned_to=data.assigned_to,
        )
        self.session.add(lead)
        self._flush_or_commit("Lead conflict")
        return LeadRead.model_validate(lead)

    def update_lead(self, lead_id: int, organization_id: int, changes: dict[str, Any]) -> LeadRead | None:
        lead = self._scoped_lead(lead_id, organization_id)
        if lead is None:
            return None
        self._apply(lead, changes)
        self._flush_or_commit("Lead conflict")
        return LeadRead.model_validate(lead)

    def _mark_lead_converted(self, lead_id: int, organization_id: int) -> None:
        lead = self._scoped_lead(lead_id, organization_id)
        if lead is None:
            raise LookupError(f"lead {lead_id} disappeared during conversion")
        lead.status = "converted"
        self.session.flush()

    def convert_lead_to_customer(
        self,
        lead_id: int,
        organization_id: int,
        data: CustomerCreate,
    ) -> CustomerRead | None:
        with self.unit_of_work():
            if self._scoped_lead(lead_id, organization_id) is None:
                return None
            customer = self._insert_customer(organization_id, data, converted_from_lead=lead_id)
            self._mark_lead_converted(lead_id, organization_id)
        return CustomerRead.model_validate(customer)

    # Customers

    def list_customers(self, organization_id: int) -> list[CustomerRead]:
        stmt = (
            select(Customer)
            .where(Customer.organization_id == organization_id)
            .order_by(Customer.created_at.desc(), Customer.id.desc())
        )
        return [CustomerRead.model_validate(customer) for customer in self.session.scalars(stmt)]

    def _scoped_customer(self, customer_id: int, organization_id: int) -> Customer | None:
        return self.session.scalar(
            select(Customer).where(and_(Customer.id == customer_id, Customer.organization_id == organization_id))
        )

    def get_customer(self, customer_id: int, organization_id: int) -> CustomerRead | None:
        customer = self._scoped_customer(customer_id, organization_id)
        return CustomerRead.model_validate(customer) if customer is not None else None

    def _insert_customer(
        self,
        organization_id: int,
        data: CustomerCreate,
        converted_from_lead: int | None = None,
    ) -> Customer:
        customer = Customer(
            organization_id=organization_id,
            name=data.name,
            email=str(data.email),
            phone=data.phone,
            company=data.company,
            status=data.status,
            value=data.value,
            converted_from_lead=converted_from_lead,
            assigned_to=data.assigned_to,
        )
        if data.last_contact is not None:
            customer.last_contact = data.last_contact
        self.session.add(customer)
        self._flush_or_commit("Customer with this email already exists")
        return customer

    def create_customer(self, organization_id: int, data: CustomerCreate) -> CustomerRead:
        return CustomerRead.model_validate(self._insert_customer(organization_id, data))

    def update_customer(
        self,
        customer_id: int,
        organization_id: int,
        changes: dict[str, Any],
    ) -> CustomerRead | None:
        customer = self._scoped_customer(customer_id, organization_id)
        if customer is None:
            return None
        if "email" in changes and changes["email"] is not None:
            changes = {**changes, "email": str(changes["email"])}
        self._apply(customer, changes)
        self._flush_or_commit("Customer with this email already exists")
        return CustomerRead.model_validate(customer)

    # Deals

    def list_deals(self, organization_id: int, stage: str | None = None) -> list[DealRead]:
        stmt: Select[tuple[Deal]] = select(Deal).where(Deal.organization_id == organization_id)
        if stage:
            stmt = stmt.where(Deal.stage == stage)
        stmt = stmt.order_by(Deal.created_at.desc(), Deal.id.desc())
        return [DealRead.model_validate(deal) for deal in self.session.scalars(stmt)]

    def _scoped_deal(self, deal_id: int, organization_id: int) -> Deal | None:
        return self.session.scalar(
            select(Deal).where(and_(Deal.id == deal_id, Deal.organization_id == organization_id))
        )

    def get_deal(self, deal_id: int, organization_id: int) -> DealRead | None:
        deal = self._scoped_deal(deal_id, organization_id)
        return DealRead.model_validate(deal) if deal is not None else None

    def create_deal(self, organization_id: int, data: DealCreate) -> DealRead:
        deal = Deal(
            organization_id=organization_id,
            title=data.title,
            value=data.value,
            stage=data.stage,
            probability=data.probability if data.probability is not None else DEAL_STAGE_PROBABILITIES[data.stage],
            customer_id=data.customer_id,
            assigned_to=data.assigned_to,
            expected_close_date=data.expected_close_date,
            notes=data.notes,
        )
        self.session.add(deal)
        self._flush_or_commit("Deal conflict")
        return DealRead.model_validate(deal)

    def update_deal(self, deal_id: int, organization_id: int, changes: dict[str, Any]) -> DealRead | None:
        deal = self._scoped_deal(deal_id, organization_id)
        if deal is None:
            return None
        self._apply(deal, changes)
        self._flush_or_commit("Deal conflict")
        return DealRead.model_validate(deal)

    # Activities

    @staticmethod
    def _to_activity_read(activity: Activity) -> ActivityRead:
        related_to = None
        for record_type, column in _RELATED_COLUMNS.items():
            record_id = getattr(activity, column)
            if record_id is not None:
                related_to = related_ref(record_type, record_id)
                break
        return ActivityRead(
            id=activity.id,
            organization_id=activity.organization_id,
            type=activity.type,  # type: ignore[arg-type]
            title=activity.title,
            description=activity.description,
            status=activity.status,  # type: ignore[arg-type]
            due_date=activity.due_date,
            completed_at=activity.completed_at,
            related_to=related_to,
            created_by=activity.created_by,
            assigned_to=activity.assigned_to,
            created_at=activity.created_at,
            updated_at=activity.updated_at,
        )

    def list_activities(
        self,
        organization_id: int,
        related_to: tuple[RelatedRecordType, int] | None = None,
    ) -> list[ActivityRead]:
        stmt: Select[tuple[Activity]] = select(Activity).where(Activity.organization_id == organization_id)
        if related_to is not None:
            record_type, record_id = related_to
            stmt = stmt.where(getattr(Activity, _RELATED_COLUMNS[record_type]) == record_id)
        stmt = stmt.order_by(Activity.created_at.desc(), Activity.id.desc())
        return [self._to_activity_read(activity) for activity in self.session.scalars(stmt)]

    def _scoped_activity(self, activity_id: int, organization_id: int) -> Activity | None:
        return self.session.scalar(
            select(Activity).where(and_(Activity.id == activity_id, Activity.organization_id == organization_id))
        )

    def get_activity(self, activity_id: int, organization_id: int) -> ActivityRead | None:
        activity = self._scoped_activity(activity_id, organization_id)
        return self._to_activity_read(activity) if activity is not None else None

    def create_activity(
        self,
        organization_id: int,
        data: ActivityCreate,
        created_by: int,
        assigned_to: int,
    ) -> ActivityRead:
        activity = Activity(
            organization_id=organization_id,
            type=data.type,
            title=data.title,
            description=data.description,
            status="pending",
            due_date=data.due_date,
            created_by=created_by,
            assigned_to=assigned_to,
        )
        if data.related_to is not None:
            setattr(activity, _RELATED_COLUMNS[data.related_to.type], data.related_to.id)
        self.session.add(activity)
        self._flush_or_commit("Activity conflict")
        return self._to_activity_read(activity)

    def update_activity(
        self,
        activity_id: int,
        organization_id: int,
        changes: dict[str, Any],
    ) -> ActivityRead | None:
        activity = self._scoped_activity(activity_id, organization_id)
        if activity is None:
            return None
        self._apply(activity, changes)
        self._flush_or_commit("Activity conflict")
        return self._to_activity_read(activity)

    # Sales data and analytics

    def list_sales_data(self, organization_id: int) -> list[SalesDataRead]:
        stmt = (
            select(SalesData)
            .where(SalesData.organization_id == organization_id)
            .order_by(SalesData.created_at.desc(), SalesData.id.desc())
        )
        return [SalesDataRead.model_validate(row) for row in self.session.scalars(stmt)]

    def create_sales_data(self, organization_id: int, data: SalesDataCreate) -> SalesDataRead:
        row = SalesData(
            organization_id=organization_id,
            month=data.month,
            year=data.year,
            revenue=data.revenue,
            deals=data.deals,
            new_customers=data.new_customers,
        )
        self.session.add(row)
        self._flush_or_commit("Sales data conflict")
        return SalesDataRead.model_validate(row)

    def get_dashboard_metrics(self, organization_id: int) -> DashboardMetrics:
        total_revenue = self.session.scalar(
            select(func.coalesce(func.sum(SalesData.revenue), 0)).where(SalesData.organization_id == organization_id)
        )
        total_deals = self.session.scalar(
            select(func.count()).select_from(Deal).where(Deal.organization_id == organization_id)
        )
        total_customers = self.session.scalar(
            select(func.count()).select_from(Customer).where(Customer.organization_id == organization_id)
        )
        total_leads = self.session.scalar(
            select(func.count()).select_from(Lead).where(Lead.organization_id == organization_id)
        )
        converted_leads = self.session.scalar(
            select(func.count())
            .select_from(Lead)
            .where(and_(Lead.organization_id == organization_id, Lead.status == "converted"))
        )
        avg_deal_value = self.session.scalar(
            select(func.coalesce(func.avg(Deal.value), 0)).where(Deal.organization_id == organization_id)
        )

        leads = int(total_leads or 0)
        conversion_rate = (int(converted_leads or 0) / leads) * 100 if leads > 0 else 0.0
        return DashboardMetrics(
            total_revenue=float(total_revenue or 0),
            total_deals=int(total_deals or 0),
            total_customers=int(total_customers or 0),
            total_leads=leads,
            conversion_rate=conversion_rate,
            avg_deal_value=float(avg_deal_value or 0),
        )
