from app.business.billing.api import router
from app.business.billing.plans import SUBSCRIPTION_PLANS, SubscriptionPlan, get_plan
from app.business.billing.schemas import (
    PlanLimitCheck,
    SubscriptionCreateRequest,
    SubscriptionPlanRead,
    SubscriptionResult,
    SubscriptionUsageRead,
    UsageStats,
)
from app.business.billing.service import BillingService, billing_service

__all__ = [
    "router",
    "SUBSCRIPTION_PLANS",
    "SubscriptionPlan",
    "get_plan",
    "PlanLimitCheck",
    "SubscriptionCreateRequest",
    "SubscriptionPlanRead",
    "SubscriptionResult",
    "SubscriptionUsageRead",
    "UsageStats",
    "BillingService",
    "billing_service",
]
