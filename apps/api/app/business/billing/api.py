from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from app.business.billing.plans import SUBSCRIPTION_PLANS, get_plan
from app.business.billing.schemas import (
    SubscriptionCreateRequest,
    SubscriptionPlanRead,
    SubscriptionResult,
    SubscriptionUsageRead,
)
from app.business.billing.service import billing_service
from app.core.auth import AuthUser
from app.core.capabilities import Capability
from app.core.errors import NotFoundError
from app.core.rbac import require_capability
from app.crm.storage import CrmStorage, get_storage
from app.metrics import resolve_http_path_label


router = APIRouter(prefix="/api/commercial/subscription", tags=["billing.subscription"])


def _respond(request: Request, result: SubscriptionResult, action: str) -> SubscriptionResult | JSONResponse:
    metrics = getattr(request.app.state, "metrics", None)
    if not result.success:
        if metrics is not None:
            metrics.observe_http_error(
                status=status.HTTP_400_BAD_REQUEST,
                method=request.method,
                route=resolve_http_path_label(request),
            )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=result.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
    if metrics is not None:
        metrics.observe_subscription_change(action)
    return result


@router.get("/plans", response_model=list[SubscriptionPlanRead])
def list_plans() -> list[SubscriptionPlanRead]:
    return billing_service.list_plans()


@router.get("/usage", response_model=SubscriptionUsageRead)
def get_usage(
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.BILLING_READ)),
) -> SubscriptionUsageRead:
    organization = storage.get_organization(user.organization_id)
    if organization is None:
        raise NotFoundError("Organization not found")
    plan = get_plan(organization.subscription_plan) or SUBSCRIPTION_PLANS["starter"]
    usage = billing_service.get_usage_stats(storage, organization.id)
    return SubscriptionUsageRead(
        plan=billing_service.to_plan_read(plan),
        usage=usage,
        limits=billing_service.check_plan_limits(plan, usage),
        organization=organization,
    )


@router.post(
    "/create",
    response_model=SubscriptionResult,
    response_model_exclude_none=True,
)
def create_subscription(
    request: Request,
    dto: SubscriptionCreateRequest,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.BILLING_MANAGE)),
) -> SubscriptionResult | JSONResponse:
    result = billing_service.create_subscription(storage, user.organization_id, dto.plan)
    return _respond(request, result, "create")


@router.post("/cancel", response_model=SubscriptionResult, response_model_exclude_none=True)
def cancel_subscription(
    request: Request,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.BILLING_MANAGE)),
) -> SubscriptionResult | JSONResponse:
    return _respond(request, billing_service.cancel_subscription(storage, user.organization_id), "cancel")


@router.post("/suspend", response_model=SubscriptionResult, response_model_exclude_none=True)
def suspend_subscription(
    request: Request,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.BILLING_MANAGE)),
) -> SubscriptionResult | JSONResponse:
    return _respond(request, billing_service.suspend_subscription(storage, user.organization_id), "suspend")


@router.post("/resume", response_model=SubscriptionResult, response_model_exclude_none=True)
def resume_subscription(
    request: Request,
    storage: CrmStorage = Depends(get_storage),
    user: AuthUser = Depends(require_capability(Capability.BILLING_MANAGE)),
) -> SubscriptionResult | JSONResponse:
    return _respond(request, billing_service.resume_subscription(storage, user.organization_id), "resume")
