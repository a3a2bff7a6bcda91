from __future__ import annotations

from collections.abc import Generator

import pytest

from app import events
from app.business.billing.plans import SUBSCRIPTION_PLANS, get_plan
from app.business.billing.schemas import UsageStats
from app.business.billing.service import BillingService
from app.crm.memory import MemoryStorage
from app.crm.schemas import OrganizationCreate


@pytest.fixture(autouse=True)
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


@pytest.fixture()
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture()
def service() -> BillingService:
    return BillingService(clock=lambda: 1_700_000_000.5)


@pytest.fixture()
def organization_id(storage: MemoryStorage) -> int:
    return storage.create_organization(OrganizationCreate(name="Acme", slug="acme")).id


def _usage(users: int) -> UsageStats:
    return UsageStats(users=users, customers=0, leads=0, deals=0, storage_used="0.5GB")


def test_plan_catalogue() -> None:
    assert list(SUBSCRIPTION_PLANS) == ["starter", "professional", "enterprise"]
    assert get_plan("starter").user_limit == 5
    assert get_plan("professional").user_limit == 25
    assert get_plan("enterprise").is_unlimited
    assert get_plan("platinum") is None


def test_list_plans_serializes_features(service: BillingService) -> None:
    plans = service.list_plans()

    assert [plan.id for plan in plans] == ["starter", "professional", "enterprise"]
    assert plans[0].model_dump(by_alias=True)["userLimit"] == 5
    assert plans[2].user_limit == -1


def test_unlimited_plan_never_violates(service: BillingService) -> None:
    result = service.check_plan_limits(SUBSCRIPTION_PLANS["enterprise"], _usage(10_000))

    assert result.within_limits
    assert result.violations == []


def test_user_limit_violation_message(service: BillingService) -> None:
    at_limit = service.check_plan_limits(SUBSCRIPTION_PLANS["starter"], _usage(5))
    over_limit = service.check_plan_limits(SUBSCRIPTION_PLANS["starter"], _usage(6))

    assert at_limit.within_limits
    assert not over_limit.within_limits
    assert over_limit.violations == ["User limit exceeded (6/5)"]


def test_invalid_plan_does_not_touch_organization(
    service: BillingService,
    storage: MemoryStorage,
    organization_id: int,
) -> None:
    before = storage.get_organization(organization_id)

    result = service.create_subscription(storage, organization_id, "platinum")

    assert not result.success
    assert result.error == "Invalid plan selected"
    assert storage.get_organization(organization_id) == before
    assert list(events.published_events) == []


def test_create_subscription_activates_plan(
    service: BillingService,
    storage: MemoryStorage,
    organization_id: int,
) -> None:
    result = service.create_subscription(storage, organization_id, "professional")

    assert result.success
    assert result.subscription_id == f"sub_1700000000500_{organization_id}"
    assert result.message == "Subscription created successfully"
    organization = storage.get_organization(organization_id)
    assert organization.subscription_plan == "professional"
    assert organization.subscription_status == "active"
    assert organization.subscription_id == result.subscription_id

    published = [item for item in events.published_events if item["event_type"] == "billing.subscription.changed"]
    assert published[-1]["payload"]["action"] == "create"
    assert published[-1]["payload"]["from_status"] == "trial"


def test_create_subscription_for_missing_organization(service: BillingService, storage: MemoryStorage) -> None:
    result = service.create_subscription(storage, 404, "starter")

    assert not result.success
    assert result.error == "Organization not found"


def test_suspend_resume_and_cancel(
    service: BillingService,
    storage: MemoryStorage,
    organization_id: int,
) -> None:
    assert service.create_subscription(storage, organization_id, "enterprise").success

    suspended = service.suspend_subscription(storage, organization_id)
    assert suspended.success and suspended.status == "suspended"

    resumed = service.resume_subscription(storage, organization_id)
    assert resumed.success and resumed.status == "active"

    cancelled = service.cancel_subscription(storage, organization_id)
    assert cancelled.success
    assert cancelled.status == "cancelled"
    assert cancelled.plan == "starter"


def test_cancelled_subscription_is_terminal(
    service: BillingService,
    storage: MemoryStorage,
    organization_id: int,
) -> None:
    assert service.cancel_subscription(storage, organization_id).success

    again = service.create_subscription(storage, organization_id, "professional")

    assert not again.success
    assert again.error == "Invalid subscription transition cancelled -> active"
    assert storage.get_organization(organization_id).subscription_status == "cancelled"


def test_trial_cannot_be_suspended_or_resumed(
    service: BillingService,
    storage: MemoryStorage,
    organization_id: int,
) -> None:
    assert not service.suspend_subscription(storage, organization_id).success
    resumed = service.resume_subscription(storage, organization_id)
    assert not resumed.success
    assert resumed.error == "Cannot resume a trial subscription"


def test_usage_stats_count_organization_records(
    service: BillingService,
    storage: MemoryStorage,
    organization_id: int,
) -> None:
    usage = service.get_usage_stats(storage, organization_id)

    assert usage.users == 0
    assert usage.customers == 0
    assert usage.storage_used == "0.5GB"
