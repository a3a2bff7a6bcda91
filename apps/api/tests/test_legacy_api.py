from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.crm.seed import SAMPLE_CUSTOMERS, SAMPLE_SALES
from app.main import create_app


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    settings = Settings(storage_backend="memory", seed_demo_data=True, rate_limit_disabled=True, demo_mode=True)
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def test_seeded_customers_are_listed(client: TestClient) -> None:
    response = client.get("/api/customers")

    assert response.status_code == 200
    assert sorted(item["name"] for item in response.json()) == sorted(name for name, *_ in SAMPLE_CUSTOMERS)
    assert all(item["organizationId"] == 1 for item in response.json())


def test_customer_create_read_update(client: TestClient) -> None:
    created = client.post("/api/customers", json={"name": "Initech", "email": "bill@initech.com", "value": "900"})
    customer_id = created.json()["id"]

    fetched = client.get(f"/api/customers/{customer_id}")
    updated = client.put(f"/api/customers/{customer_id}", json={"status": "active", "phone": "555-0100"})

    assert created.status_code == 201
    assert fetched.status_code == 200
    assert fetched.json()["email"] == "bill@initech.com"
    assert updated.status_code == 200
    assert updated.json()["status"] == "active"
    assert updated.json()["phone"] == "555-0100"
    assert updated.json()["name"] == "Initech"


def test_missing_customer_is_not_found(client: TestClient) -> None:
    fetched = client.get("/api/customers/999")
    updated = client.put("/api/customers/999", json={"status": "active"})

    assert fetched.status_code == 404
    assert fetched.json() == {"error": "Customer not found", "status": 404}
    assert updated.status_code == 404


def test_legacy_duplicate_email_conflicts(client: TestClient) -> None:
    response = client.post("/api/customers", json={"name": "Acme again", "email": "contact@acme.com"})

    assert response.status_code == 409


def test_sales_data(client: TestClient) -> None:
    listed = client.get("/api/sales-data")
    created = client.post("/api/sales-data", json={"month": "Jul", "revenue": "31000", "deals": 44, "newCustomers": 3})

    assert listed.status_code == 200
    assert len(listed.json()) == len(SAMPLE_SALES)
    assert created.status_code == 201
    assert created.json()["newCustomers"] == 3
    assert len(client.get("/api/sales-data").json()) == len(SAMPLE_SALES) + 1


def test_demo_mode_acts_as_sales_rep_of_demo_organization(client: TestClient) -> None:
    customers = client.get("/api/commercial/customers")
    users = client.post(
        "/api/commercial/users",
        json={"username": "intruder", "email": "intruder@example.com", "password": "password123"},
    )

    assert customers.status_code == 200
    assert len(customers.json()) == len(SAMPLE_CUSTOMERS)
    assert users.status_code == 403


def test_demo_activity_needs_an_assignee(client: TestClient) -> None:
    anonymous = client.post("/api/commercial/activities", json={"type": "task", "title": "Call back"})
    assigned = client.post("/api/commercial/activities", json={"type": "task", "title": "Call back", "assignedTo": 1})

    assert anonymous.status_code == 400
    assert assigned.status_code == 201
    assert assigned.json()["createdBy"] == 1
    assert assigned.json()["assignedTo"] == 1


def test_dashboard_reflects_seed(client: TestClient) -> None:
    response = client.get("/api/commercial/dashboard/metrics")

    assert response.status_code == 200
    body = response.json()
    assert body["totalCustomers"] == len(SAMPLE_CUSTOMERS)
    assert body["totalRevenue"] == float(sum(revenue for _, revenue, _ in SAMPLE_SALES))
