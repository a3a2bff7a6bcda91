from __future__ import annotations

from dataclasses import dataclass


UNLIMITED = -1


@dataclass(frozen=True, slots=True)
class SubscriptionPlan:
    id: str
    name: str
    price: int
    features: tuple[str, ...]
    user_limit: int
    storage_limit: str

    @property
    def is_unlimited(self) -> bool:
        return self.user_limit == UNLIMITED


SUBSCRIPTION_PLANS: dict[str, SubscriptionPlan] = {
    "starter": SubscriptionPlan(
        id="starter",
        name="Starter",
        price=29,
        features=(
            "Up to 5 users",
            "1,000 contacts",
            "Basic reporting",
            "Email support",
        ),
        user_limit=5,
        storage_limit="1GB",
    ),
    "professional": SubscriptionPlan(
        id="professional",
        name="Professional",
        price=99,
        features=(
            "Up to 25 users",
            "10,000 contacts",
            "Advanced reporting",
            "Priority support",
            "API access",
            "Custom fields",
        ),
        user_limit=25,
        storage_limit="10GB",
    ),
    "enterprise": SubscriptionPlan(
        id="enterprise",
        name="Enterprise",
        price=299,
        features=(
            "Unlimited users",
            "100,000+ contacts",
            "Custom reporting",
            "Dedicated support",
            "API access",
            "Custom integrations",
            "Advanced security",
            "White-label options",
        ),
        user_limit=UNLIMITED,
        storage_limit="100GB",
    ),
}


def get_plan(plan_id: str) -> SubscriptionPlan | None:
    return SUBSCRIPTION_PLANS.get(plan_id)
