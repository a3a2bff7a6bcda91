from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.core.errors import ConflictError
from app.crm.memory import MemoryStorage
from app.crm.repositories import DatabaseStorage
from app.crm.schemas import (
    ActivityCreate,
    CustomerCreate,
    DealCreate,
    LeadCreate,
    OrganizationCreate,
    SalesDataCreate,
    UserCreate,
)
from app.crm.storage import CrmStorage


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(params=["memory", "database"])
def storage(request: pytest.FixtureRequest) -> CrmStorage:
    if request.param == "memory":
        return MemoryStorage()
    return DatabaseStorage(request.getfixturevalue("db_session"))


def _organization(storage: CrmStorage, slug: str) -> int:
    return storage.create_organization(OrganizationCreate(name=slug.title(), slug=slug)).id


def _user(storage: CrmStorage, organization_id: int, username: str) -> int:
    return storage.create_user(
        organization_id,
        UserCreate(username=username, email=f"{username}@example.com", password="password123"),
        "not-a-real-hash",
    ).id


def test_new_organization_starts_on_starter_trial(storage: CrmStorage) -> None:
    organization = storage.create_organization(OrganizationCreate(name="Acme", slug="acme"))

    assert organization.subscription_plan == "starter"
    assert organization.subscription_status == "trial"
    assert storage.get_organization_by_slug("acme") == organization


def test_duplicate_slug_conflicts(storage: CrmStorage) -> None:
    _organization(storage, "acme")
    with pytest.raises(ConflictError):
        _organization(storage, "acme")


def test_records_are_isolated_per_organization(storage: CrmStorage) -> None:
    first = _organization(storage, "first")
    second = _organization(storage, "second")

    customer = storage.create_customer(first, CustomerCreate(name="Acme", email="buyer@acme.com"))
    lead = storage.create_lead(first, LeadCreate(first_name="Ada", last_name="Lovelace"))
    deal = storage.create_deal(first, DealCreate(title="Big deal", value=Decimal("1000"), probability=10))

    assert storage.list_customers(second) == []
    assert storage.list_leads(second) == []
    assert storage.list_deals(second) == []
    assert storage.get_customer(customer.id, second) is None
    assert storage.get_lead(lead.id, second) is None
    assert storage.get_deal(deal.id, second) is None
    assert storage.update_customer(customer.id, second, {"name": "Hijacked"}) is None
    assert storage.get_customer(customer.id, first).name == "Acme"


def test_same_customer_email_allowed_in_different_organizations(storage: CrmStorage) -> None:
    first = _organization(storage, "first")
    second = _organization(storage, "second")

    storage.create_customer(first, CustomerCreate(name="Acme", email="buyer@acme.com"))
    storage.create_customer(second, CustomerCreate(name="Acme", email="buyer@acme.com"))

    assert len(storage.list_customers(first)) == 1
    assert len(storage.list_customers(second)) == 1


def test_duplicate_customer_email_conflicts(storage: CrmStorage) -> None:
    organization_id = _organization(storage, "acme")
    storage.create_customer(organization_id, CustomerCreate(name="Acme", email="buyer@acme.com"))

    with pytest.raises(ConflictError, match="Customer with this email already exists"):
        storage.create_customer(organization_id, CustomerCreate(name="Other", email="buyer@acme.com"))
    assert len(storage.list_customers(organization_id)) == 1


def test_update_of_missing_record_returns_none(storage: CrmStorage) -> None:
    organization_id = _organization(storage, "acme")

    assert storage.update_customer(999, organization_id, {"name": "Ghost"}) is None
    assert storage.update_lead(999, organization_id, {"status": "contacted"}) is None
    assert storage.update_deal(999, organization_id, {"stage": "proposal"}) is None
    assert storage.update_activity(999, organization_id, {"status": "completed"}) is None
    assert storage.update_user_role(999, organization_id, "manager") is None


def test_lists_are_scoped_and_filtered(storage: CrmStorage) -> None:
    organization_id = _organization(storage, "acme")
    storage.create_lead(organization_id, LeadCreate(first_name="A", last_name="One"))
    storage.create_lead(organization_id, LeadCreate(first_name="B", last_name="Two", status="contacted"))
    storage.create_deal(organization_id, DealCreate(title="Early", probability=10))
    storage.create_deal(organization_id, DealCreate(title="Late", stage="proposal", probability=50))

    assert [lead.first_name for lead in storage.list_leads(organization_id, status="contacted")] == ["B"]
    assert [deal.title for deal in storage.list_deals(organization_id, stage="proposal")] == ["Late"]
    assert len(storage.list_leads(organization_id)) == 2


def test_user_lookup_and_role_change(storage: CrmStorage) -> None:
    organization_id = _organization(storage, "acme")
    user_id = _user(storage, organization_id, "ada")

    record = storage.get_user_by_username("ada")
    assert record is not None
    assert record.password_hash == "not-a-real-hash"
    assert "password_hash" not in record.to_public().model_dump()

    updated = storage.update_user_role(user_id, organization_id, "manager")
    assert updated is not None and updated.role == "manager"
    assert storage.count_users(organization_id) == 1


def test_duplicate_username_conflicts(storage: CrmStorage) -> None:
    organization_id = _organization(storage, "acme")
    _user(storage, organization_id, "ada")
    with pytest.raises(ConflictError):
        _user(storage, organization_id, "ada")


def test_dashboard_conversion_rate(storage: CrmStorage) -> None:
    organization_id = _organization(storage, "acme")
    for index in range(200):
        storage.create_lead(
            organization_id,
            LeadCreate(first_name=f"Lead{index}", last_name="Test", status="converted" if index < 45 else "new"),
        )

    metrics = storage.get_dashboard_metrics(organization_id)

    assert metrics.total_leads == 200
    assert metrics.conversion_rate == pytest.approx(22.5)


def test_dashboard_metrics_aggregate(storage: CrmStorage) -> None:
    organization_id = _organization(storage, "acme")
    other = _organization(storage, "other")
    storage.create_deal(organization_id, DealCreate(title="A", value=Decimal("50000"), probability=10))
    storage.create_deal(organization_id, DealCreate(title="B", value=Decimal("75000"), probability=10))
    storage.create_deal(other, DealCreate(title="C", value=Decimal("1"), probability=10))
    storage.create_sales_data(organization_id, SalesDataCreate(month="Jan", revenue=Decimal("12000"), deals=3))
    storage.create_sales_data(organization_id, SalesDataCreate(month="Feb", revenue=Decimal("8000"), deals=2))
    storage.create_customer(organization_id, CustomerCreate(name="Acme", email="buyer@acme.com"))

    metrics = storage.get_dashboard_metrics(organization_id)

    assert metrics.total_deals == 2
    assert metrics.avg_deal_value == pytest.approx(62500)
    assert metrics.total_revenue == pytest.approx(20000)
    assert metrics.total_customers == 1


def test_dashboard_metrics_for_empty_organization(storage: CrmStorage) -> None:
    organization_id = _organization(storage, "empty")

    metrics = storage.get_dashboard_metrics(organization_id)

    assert metrics.total_revenue == 0
    assert metrics.conversion_rate == 0
    assert metrics.avg_deal_value == 0


def test_convert_lead_links_customer_and_marks_lead(storage: CrmStorage) -> None:
    organization_id = _organization(storage, "acme")
    lead = storage.create_lead(organization_id, LeadCreate(first_name="Ada", last_name="Lovelace"))

    customer = storage.convert_lead_to_customer(
        lead.id,
        organization_id,
        CustomerCreate(name="Ada Lovelace", email="ada@example.com"),
    )

    assert customer is not None
    assert customer.converted_from_lead == lead.id
    assert storage.get_lead(lead.id, organization_id).status == "converted"


def test_convert_missing_lead_returns_none(storage: CrmStorage) -> None:
    organization_id = _organization(storage, "acme")

    result = storage.convert_lead_to_customer(
        404,
        organization_id,
        CustomerCreate(name="Ghost", email="ghost@example.com"),
    )

    assert result is None
    assert storage.list_customers(organization_id) == []


def test_conversion_is_atomic_when_marking_fails(storage: CrmStorage, monkeypatch: pytest.MonkeyPatch) -> None:
    organization_id = _organization(storage, "acme")
    lead = storage.create_lead(organization_id, LeadCreate(first_name="Ada", last_name="Lovelace"))

    def fail(lead_id: int, org_id: int) -> None:
        raise RuntimeError("injected failure")

    monkeypatch.setattr(storage, "_mark_lead_converted", fail)

    with pytest.raises(RuntimeError):
        storage.convert_lead_to_customer(
            lead.id,
            organization_id,
            CustomerCreate(name="Ada Lovelace", email="ada@example.com"),
        )

    assert storage.list_customers(organization_id) == []
    assert storage.get_lead(lead.id, organization_id).status == "new"


def test_unit_of_work_rolls_back_every_write(storage: CrmStorage) -> None:
    with pytest.raises(ConflictError):
        with storage.unit_of_work():
            organization_id = _organization(storage, "acme")
            _user(storage, organization_id, "ada")
            _user(storage, organization_id, "ada")

    assert storage.get_organization_by_slug("acme") is None
    assert storage.get_user_by_username("ada") is None


def test_activity_related_record_round_trips(storage: CrmStorage) -> None:
    organization_id = _organization(storage, "acme")
    user_id = _user(storage, organization_id, "ada")
    deal = storage.create_deal(organization_id, DealCreate(title="Deal", probability=10))
    storage.create_activity(
        organization_id,
        ActivityCreate(type="call", title="Intro call", related_to={"type": "deal", "id": deal.id}),
        created_by=user_id,
        assigned_to=user_id,
    )
    storage.create_activity(
        organization_id,
        ActivityCreate(type="note", title="Unrelated"),
        created_by=user_id,
        assigned_to=user_id,
    )

    related = storage.list_activities(organization_id, related_to=("deal", deal.id))

    assert [activity.title for activity in related] == ["Intro call"]
    assert related[0].related_to is not None
    assert related[0].related_to.type == "deal"
    assert related[0].related_to.id == deal.id
    assert related[0].status == "pending"
    assert len(storage.list_activities(organization_id)) == 2


def test_subscription_update(storage: CrmStorage) -> None:
    organization_id = _organization(storage, "acme")

    updated = storage.update_organization_subscription(organization_id, "professional", "active", "sub_1_1")

    assert updated is not None
    assert updated.subscription_plan == "professional"
    assert updated.subscription_status == "active"
    assert updated.subscription_id == "sub_1_1"
    assert storage.update_organization_subscription(999, "starter", "active") is None
