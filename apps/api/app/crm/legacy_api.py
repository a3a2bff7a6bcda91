from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status

from app.core.config import get_settings
from app.crm.schemas import CustomerCreate, CustomerRead, CustomerUpdate, SalesDataCreate, SalesDataRead
from app.crm.service import AnalyticsService, CustomerService
from app.crm.storage import CrmStorage, get_storage


router = APIRouter(prefix="/api", tags=["legacy"])
customer_service = CustomerService()
analytics_service = AnalyticsService()


def get_legacy_organization_id(request: Request) -> int:
    """Single-tenant routes predate organizations and always act on the demo one."""
    settings = getattr(request.app.state, "settings", None) or get_settings()
    return settings.demo_organization_id


@router.get("/customers", response_model=list[CustomerRead])
def list_customers(
    storage: CrmStorage = Depends(get_storage),
    organization_id: int = Depends(get_legacy_organization_id),
) -> list[CustomerRead]:
    return customer_service.list_customers(storage, organization_id)


@router.post("/customers", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
def create_customer(
    dto: CustomerCreate,
    storage: CrmStorage = Depends(get_storage),
    organization_id: int = Depends(get_legacy_organization_id),
) -> CustomerRead:
    return customer_service.create_customer(storage, organization_id, dto)


@router.get("/customers/{customer_id}", response_model=CustomerRead)
def get_customer(
    customer_id: int,
    storage: CrmStorage = Depends(get_storage),
    organization_id: int = Depends(get_legacy_organization_id),
) -> CustomerRead:
    return customer_service.get_customer(storage, organization_id, customer_id)


@router.put("/customers/{customer_id}", response_model=CustomerRead)
def update_customer(
    customer_id: int,
    dto: CustomerUpdate,
    storage: CrmStorage = Depends(get_storage),
    organization_id: int = Depends(get_legacy_organization_id),
) -> CustomerRead:
    return customer_service.update_customer(storage, organization_id, customer_id, dto)


@router.get("/sales-data", response_model=list[SalesDataRead])
def list_sales_data(
    storage: CrmStorage = Depends(get_storage),
    organization_id: int = Depends(get_legacy_organization_id),
) -> list[SalesDataRead]:
    return analytics_service.list_sales_data(storage, organization_id)


@router.post("/sales-data", response_model=SalesDataRead, status_code=status.HTTP_201_CREATED)
def create_sales_data(
    dto: SalesDataCreate,
    storage: CrmStorage = Depends(get_storage),
    organization_id: int = Depends(get_legacy_organization_id),
) -> SalesDataRead:
    return analytics_service.create_sales_data(storage, organization_id, dto)
