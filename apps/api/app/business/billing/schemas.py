from __future__ import annotations

from app.crm.schemas import CamelModel, OrganizationRead


class SubscriptionPlanRead(CamelModel):
    id: str
    name: str
    price: int
    features: list[str]
    user_limit: int
    storage_limit: str


class UsageStats(CamelModel):
    users: int
    customers: int
    leads: int
    deals: int
    storage_used: str


class PlanLimitCheck(CamelModel):
    within_limits: bool
    violations: list[str]


class SubscriptionCreateRequest(CamelModel):
    plan: str


class SubscriptionResult(CamelModel):
    success: bool
    subscription_id: str | None = None
    plan: str | None = None
    status: str | None = None
    message: str | None = None
    error: str | None = None


class SubscriptionUsageRead(CamelModel):
    plan: SubscriptionPlanRead
    usage: UsageStats
    limits: PlanLimitCheck
    organization: OrganizationRead
