from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.main import create_app


def _client(metrics_enabled: bool) -> TestClient:
    settings = Settings(
        storage_backend="memory",
        seed_demo_data=True,
        rate_limit_disabled=True,
        metrics_enabled=metrics_enabled,
    )
    return TestClient(create_app(settings))


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    with _client(metrics_enabled=True) as test_client:
        yield test_client


def _login(client: TestClient) -> str:
    response = client.post("/api/commercial/auth/login", json={"username": "admin", "password": "admin123"})
    assert response.status_code == 200
    return response.json()["token"]


def test_metrics_disabled_returns_not_found() -> None:
    with _client(metrics_enabled=False) as client:
        response = client.get("/metrics")

    assert response.status_code == 404
    assert response.json()["error"] == "Route /metrics not found"


def test_metrics_exposes_http_and_process_collectors(client: TestClient) -> None:
    assert client.get("/api/customers/1").status_code == 200
    client.get("/api/customers/999")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    payload = response.text
    assert 'http_requests_total{method="GET",path="/api/customers/{id}",status="200"} 1.0' in payload
    assert 'http_requests_total{method="GET",path="/api/customers/{id}",status="404"} 1.0' in payload
    assert "http_request_duration_seconds_bucket" in payload
    assert "python_info" in payload

    registry = client.app.state.metrics.registry
    assert (
        registry.get_sample_value(
            "http_errors_total",
            {"status_code": "404", "method": "GET", "route": "/api/customers/{id}"},
        )
        == 1.0
    )


def test_business_counters(client: TestClient) -> None:
    token = _login(client)
    headers = {"Authorization": f"Bearer {token}"}
    lead = client.post(
        "/api/commercial/leads",
        json={"firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"},
        headers=headers,
    ).json()

    assert client.post(f"/api/commercial/leads/{lead['id']}/convert", headers=headers).status_code == 200
    assert (
        client.post("/api/commercial/subscription/create", json={"plan": "enterprise"}, headers=headers).status_code
        == 200
    )
    assert client.post("/api/commercial/subscription/suspend", headers=headers).status_code == 200

    payload = client.get("/metrics").text

    assert "crm_leads_converted_total 1.0" in payload
    assert 'billing_subscription_changes_total{action="create"} 1.0' in payload
    assert 'billing_subscription_changes_total{action="suspend"} 1.0' in payload


def test_each_app_owns_its_registry() -> None:
    with _client(metrics_enabled=True) as first, _client(metrics_enabled=True) as second:
        first.get("/api/customers")
        payload = second.get("/metrics").text

    assert 'path="/api/customers"' not in payload
