from __future__ import annotations

from collections.abc import Iterator
from contextlib import AbstractContextManager
from typing import Any, Protocol

from starlette.requests import Request

from app.crm.repositories import DatabaseStorage
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


class CrmStorage(Protocol):
    """Tenant-scoped persistence used by the services.

    Every read and write of business records takes the organization id and
    filters on it; a record from another organization behaves as missing.
    ``update_*`` returns ``None`` for a missing record. Unique violations
    raise ``ConflictError``.
    """

    def unit_of_work(self) -> AbstractContextManager[None]: ...

    def create_organization(self, data: OrganizationCreate) -> OrganizationRead: ...

    def get_organization(self, organization_id: int) -> OrganizationRead | None: ...

    def get_organization_by_slug(self, slug: str) -> OrganizationRead | None: ...

    def update_organization_subscription(
        self,
        organization_id: int,
        plan: str,
        status: str,
        subscription_id: str | None = None,
    ) -> OrganizationRead | None: ...

    def create_user(self, organization_id: int, data: UserCreate, password_hash: str) -> UserRead: ...

    def get_user(self, user_id: int) -> UserRecord | None: ...

    def get_user_by_username(self, username: str) -> UserRecord | None: ...

    def list_users(self, organization_id: int) -> list[UserRead]: ...

    def count_users(self, organization_id: int) -> int: ...

    def update_user_role(self, user_id: int, organization_id: int, role: str) -> UserRead | None: ...

    def list_leads(self, organization_id: int, status: str | None = None) -> list[LeadRead]: ...

    def get_lead(self, lead_id: int, organization_id: int) -> LeadRead | None: ...

    def create_lead(self, organization_id: int, data: LeadCreate) -> LeadRead: ...

    def update_lead(self, lead_id: int, organization_id: int, changes: dict[str, Any]) -> LeadRead | None: ...

    def convert_lead_to_customer(
        self,
        lead_id: int,
        organization_id: int,
        data: CustomerCreate,
    ) -> CustomerRead | None: ...

    def list_customers(self, organization_id: int) -> list[CustomerRead]: ...

    def get_customer(self, customer_id: int, organization_id: int) -> CustomerRead | None: ...

    def create_customer(self, organization_id: int, data: CustomerCreate) -> CustomerRead: ...

    def update_customer(
        self,
        customer_id: int,
        organization_id: int,
        changes: dict[str, Any],
    ) -> CustomerRead | None: ...

    def list_deals(self, organization_id: int, stage: str | None = None) -> list[DealRead]: ...

    def get_deal(self, deal_id: int, organization_id: int) -> DealRead | None: ...

    def create_deal(self, organization_id: int, data: DealCreate) -> DealRead: ...

    def update_deal(self, deal_id: int, organization_id: int, changes: dict[str, Any]) -> DealRead | None: ...

    def list_activities(
        self,
        organization_id: int,
        related_to: tuple[RelatedRecordType, int] | None = None,
    ) -> list[ActivityRead]: ...

    def get_activity(self, activity_id: int, organization_id: int) -> ActivityRead | None: ...

    def create_activity(
        self,
        organization_id: int,
        data: ActivityCreate,
        created_by: int,
        assigned_to: int,
    ) -> ActivityRead: ...

    def update_activity(
        self,
        activity_id: int,
        organization_id: int,
        changes: dict[str, Any],
    ) -> ActivityRead | None: ...

    def list_sales_data(self, organization_id: int) -> list[SalesDataRead]: ...

    def create_sales_data(self, organization_id: int, data: SalesDataCreate) -> SalesDataRead: ...

    def get_dashboard_metrics(self, organization_id: int) -> DashboardMetrics: ...


def get_storage(request: Request) -> Iterator[CrmStorage]:
    memory_storage = getattr(request.app.state, "memory_storage", None)
    if memory_storage is not None:
        yield memory_storage
        return

    session = request.app.state.session_factory()
    try:
        yield DatabaseStorage(session)
    finally:
        session.close()
