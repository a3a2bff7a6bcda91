from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request, status

from app.core.auth import AuthUser
from app.core.capabilities import Capability
from app.core.rbac import require_capability
from app.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ActivityUpdate,
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    DashboardMetrics,
    DealCreate,
    DealRead,
    DealStage,
    DealUpdate,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadStatus,
    LeadUpdate,
    LoginRequest,
    LoginResponse,
    OrganizationRead,
    OrganizationSignUpRequest,
    OrganizationSignUpResponse,
    SalesDataCreate,
    SalesDataRead,
    SuccessResponse,
    UserCreate,
    UserRead,
    UserRoleUpdate,
)
from app.crm.service import (
    ActivityService,
    AnalyticsService,
    AuthService,
    CustomerService,
    DealService,
    LeadService,
    OrganizationService,
    UserService,
)
from app.crm.storage import CrmStorage, get_storage


PREFIX = "/api/commercial"

auth_router = APIRouter(prefix=PREFIX, tags=["crm.auth"])
organizations_router = APIRouter(prefix=PREFIX, tags=["crm.organizations"])
users_router = APIRouter(prefix=PREFIX, tags=["crm.users"])
leads_router = APIRouter(prefix=PREFIX, tags=["crm.leads"])
customers_router = APIRouter(prefix=PREFIX, tags=["crm.customers"])
deals_router = APIRouter(prefix=PREFIX, tags=["crm.deals"])
activities_router = APIRouter(prefix=PREFIX, tags=["crm.activities"])
analytics_router = APIRouter(prefix=PREFIX, tags=["crm.analytics"])

auth_service = AuthService()
organization_service = OrganizationService()
user_service = UserService()
lead_service = LeadService()
customer_service = CustomerService()
deal_service = DealService()
activity_service = ActivityService()
analytics_service = AnalyticsService()

routers = (
    auth_router,
    organizations_router,
    users_router,
    leads_router,
    customers_router,
    deals_router,
    activities_router,
    analytics_router,
)


@auth_router.post("/auth/login", response_model=LoginResponse)
def login(dto: LoginRequest, storage: CrmStorage = Depends(get_storage)) -> LoginResponse:
    return auth_service.login(storage, dto)


@organizations_router.post(
    "/organizations",
    response_model=OrganizationSignUpResponse,
    status_code=status.HTTP_201_CREATED,
)
def sign_up(dto: OrganizationSignUpRequest, storage: CrmStorage = Depends(get_storage)) -> OrganizationSignUpResponse:
    return organization_service.sign_up(storage, dto)


@organizations_router.get("/organizations/{organization_id}", response_model=OrganizationRead)
def get_organization(
    organization_id: int,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.ORGANIZATION_READ)),
) -> OrganizationRead:
    return organization_service.get_organization(storage, user, organization_id)


@users_router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    dto: UserCreate,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.USERS_MANAGE)),
) -> UserRead:
    return user_service.create_user(storage, user, dto)


@users_router.get("/users", response_model=list[UserRead])
def list_users(
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.USERS_READ)),
) -> list[UserRead]:
    return user_service.list_users(storage, user)


@users_router.get("/users/organization/{organization_id}", response_model=list[UserRead])
def list_organization_users(
    organization_id: int,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.USERS_READ)),
) -> list[UserRead]:
    return user_service.list_users(storage, user, organization_id)


@users_router.patch("/users/{user_id}/role", response_model=SuccessResponse)
def change_user_role(
    user_id: int,
    dto: UserRoleUpdate,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.USERS_MANAGE)),
) -> SuccessResponse:
    user_service.change_role(storage, user, user_id, dto.role)
    return SuccessResponse()


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    lead_status: LeadStatus | None = Query(default=None, alias="status"),
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_READ)),
) -> list[LeadRead]:
    return lead_service.list_leads(storage, user, lead_status)


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    dto: LeadCreate,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_WRITE)),
) -> LeadRead:
    return lead_service.create_lead(storage, user, dto)


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    lead_id: int,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_READ)),
) -> LeadRead:
    return lead_service.get_lead(storage, user, lead_id)


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    lead_id: int,
    dto: LeadUpdate,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_WRITE)),
) -> LeadRead:
    return lead_service.update_lead(storage, user, lead_id, dto)


@leads_router.post("/leads/{lead_id}/convert", response_model=CustomerRead)
def convert_lead(
    request: Request,
    lead_id: int,
    dto: LeadConvertRequest | None = None,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_WRITE)),
) -> CustomerRead:
    customer = lead_service.convert_lead(storage, user, lead_id, dto or LeadConvertRequest())
    metrics = getattr(request.app.state, "metrics", None)
    if metrics is not None:
        metrics.observe_lead_converted()
    return customer


@customers_router.get("/customers", response_model=list[CustomerRead])
def list_customers(
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_READ)),
) -> list[CustomerRead]:
    return customer_service.list_customers(storage, user.organization_id)


@customers_router.post("/customers", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
def create_customer(
    dto: CustomerCreate,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_WRITE)),
) -> CustomerRead:
    return customer_service.create_customer(storage, user.organization_id, dto)


@customers_router.get("/customers/{customer_id}", response_model=CustomerRead)
def get_customer(
    customer_id: int,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_READ)),
) -> CustomerRead:
    return customer_service.get_customer(storage, user.organization_id, customer_id)


@customers_router.patch("/customers/{customer_id}", response_model=CustomerRead)
def update_customer(
    customer_id: int,
    dto: CustomerUpdate,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_WRITE)),
) -> CustomerRead:
    return customer_service.update_customer(storage, user.organization_id, customer_id, dto)


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    stage: DealStage | None = Query(default=None),
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_READ)),
) -> list[DealRead]:
    return deal_service.list_deals(storage, user, stage)


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    dto: DealCreate,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_WRITE)),
) -> DealRead:
    return deal_service.create_deal(storage, user, dto)


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    deal_id: int,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_READ)),
) -> DealRead:
    return deal_service.get_deal(storage, user, deal_id)


@deals_router.patch("/deals/{deal_id}", response_model=DealRead)
def update_deal(
    deal_id: int,
    dto: DealUpdate,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_WRITE)),
) -> DealRead:
    return deal_service.update_deal(storage, user, deal_id, dto)


@activities_router.get("/activities", response_model=list[ActivityRead])
def list_activities(
    entity_type: Literal["customer", "lead", "deal"] | None = Query(default=None, alias="entityType"),
    entity_id: int | None = Query(default=None, alias="entityId"),
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_READ)),
) -> list[ActivityRead]:
    return activity_service.list_activities(storage, user, entity_type, entity_id)


@activities_router.post("/activities", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_activity(
    dto: ActivityCreate,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_WRITE)),
) -> ActivityRead:
    return activity_service.create_activity(storage, user, dto)


@activities_router.patch("/activities/{activity_id}", response_model=ActivityRead)
def update_activity(
    activity_id: int,
    dto: ActivityUpdate,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_WRITE)),
) -> ActivityRead:
    return activity_service.update_activity(storage, user, activity_id, dto)


@analytics_router.get("/dashboard/metrics", response_model=DashboardMetrics)
def get_dashboard_metrics(
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.ANALYTICS_READ)),
) -> DashboardMetrics:
    return analytics_service.get_dashboard_metrics(storage, user.organization_id)


@analytics_router.get("/sales-data", response_model=list[SalesDataRead])
def list_sales_data(
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.ANALYTICS_READ)),
) -> list[SalesDataRead]:
    return analytics_service.list_sales_data(storage, user.organization_id)


@analytics_router.post("/sales-data", response_model=SalesDataRead, status_code=status.HTTP_201_CREATED)
def create_sales_data(
    dto: SalesDataCreate,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.RECORDS_WRITE)),
) -> SalesDataRead:
    return analytics_service.create_sales_data(storage, user.organization_id, dto)
