from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from app import events
from app.business.billing.plans import SUBSCRIPTION_PLANS, SubscriptionPlan, get_plan
from app.business.billing.schemas import PlanLimitCheck, SubscriptionPlanRead, SubscriptionResult, UsageStats
from app.crm.lifecycle import SUBSCRIPTION_STATUS
from app.crm.storage import CrmStorage


logger = logging.getLogger("app.billing")

PLACEHOLDER_STORAGE_USED = "0.5GB"


@dataclass(slots=True)
class BillingService:
    """Simulated subscription billing. No payment gateway is called.

    Expected failures (unknown plan, unknown organization, a status change the
    subscription lifecycle forbids) come back as ``success=False`` results.
    """

    clock: Callable[[], float] = field(default=time.time)

    def list_plans(self) -> list[SubscriptionPlanRead]:
        return [self.to_plan_read(plan) for plan in SUBSCRIPTION_PLANS.values()]

    @staticmethod
    def to_plan_read(plan: SubscriptionPlan) -> SubscriptionPlanRead:
        return SubscriptionPlanRead(
            id=plan.id,
            name=plan.name,
            price=plan.price,
            features=list(plan.features),
            user_limit=plan.user_limit,
            storage_limit=plan.storage_limit,
        )

    def create_subscription(self, storage: CrmStorage, organization_id: int, plan_id: str) -> SubscriptionResult:
        plan = get_plan(plan_id)
        if plan is None:
            return SubscriptionResult(success=False, error="Invalid plan selected")

        subscription_id = f"sub_{int(self.clock() * 1000)}_{organization_id}"
        result = self._change_status(
            storage,
            organization_id,
            action="create",
            target_status="active",
            plan_id=plan.id,
            subscription_id=subscription_id,
        )
        if result.success:
            result.subscription_id = subscription_id
            result.message = "Subscription created successfully"
        return result

    def cancel_subscription(self, storage: CrmStorage, organization_id: int) -> SubscriptionResult:
        result = self._change_status(
            storage,
            organization_id,
            action="cancel",
            target_status="cancelled",
            plan_id="starter",
        )
        if result.success:
            result.message = "Subscription cancelled successfully"
        return result

    def suspend_subscription(self, storage: CrmStorage, organization_id: int) -> SubscriptionResult:
        result = self._change_status(storage, organization_id, action="suspend", target_status="suspended")
        if result.success:
            result.message = "Subscription suspended"
        return result

    def resume_subscription(self, storage: CrmStorage, organization_id: int) -> SubscriptionResult:
        organization = storage.get_organization(organization_id)
        if organization is not None and organization.subscription_status != "suspended":
            return SubscriptionResult(
                success=False,
                error=f"Cannot resume a {organization.subscription_status} subscription",
            )
        result = self._change_status(storage, organization_id, action="resume", target_status="active")
        if result.success:
            result.message = "Subscription resumed"
        return result

    def get_usage_stats(self, storage: CrmStorage, organization_id: int) -> UsageStats:
        metrics = storage.get_dashboard_metrics(organization_id)
        return UsageStats(
            users=storage.count_users(organization_id),
            customers=metrics.total_customers,
            leads=metrics.total_leads,
            deals=metrics.total_deals,
            storage_used=PLACEHOLDER_STORAGE_USED,
        )

    def check_plan_limits(self, plan: SubscriptionPlan, usage: UsageStats) -> PlanLimitCheck:
        violations: list[str] = []
        if plan.user_limit > 0 and usage.users > plan.user_limit:
            violations.append(f"User limit exceeded ({usage.users}/{plan.user_limit})")
        return PlanLimitCheck(within_limits=not violations, violations=violations)

    def _change_status(
        self,
        storage: CrmStorage,
        organization_id: int,
        *,
        action: str,
        target_status: str,
        plan_id: str | None = None,
        subscription_id: str | None = None,
    ) -> SubscriptionResult:
        organization = storage.get_organization(organization_id)
        if organization is None:
            return SubscriptionResult(success=False, error="Organization not found")

        current_status = organization.subscription_status
        if not SUBSCRIPTION_STATUS.can_transition(current_status, target_status):
            logger.info(
                "billing.transition_rejected",
                extra={"entity_type": "organization", "entity_id": organization_id, "error": action},
            )
            return SubscriptionResult(
                success=False,
                error=f"Invalid subscription transition {current_status} -> {target_status}",
            )

        plan = plan_id or organization.subscription_plan
        updated = storage.update_organization_subscription(organization_id, plan, target_status, subscription_id)
        if updated is None:
            return SubscriptionResult(success=False, error="Organization not found")

        events.publish(
            events.build_envelope(
                "billing.subscription.changed",
                organization_id=organization_id,
                payload={
                    "action": action,
                    "plan": updated.subscription_plan,
                    "from_status": current_status,
                    "status": updated.subscription_status,
                    "subscription_id": updated.subscription_id,
                },
            )
        )
        return SubscriptionResult(success=True, plan=updated.subscription_plan, status=updated.subscription_status)


billing_service = BillingService()
