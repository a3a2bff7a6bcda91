from __future__ import annotations

import asyncio
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.core.database import Base
from app.crm.repositories import DatabaseStorage
from app.crm.seed import SAMPLE_CUSTOMERS
from app.main import create_app


@pytest.fixture()
def app(tmp_path: Path) -> FastAPI:
    settings = Settings(
        storage_backend="database",
        database_url=f"sqlite+pysqlite:///{tmp_path / 'crm.db'}",
        seed_demo_data=True,
        demo_mode=True,
        rate_limit_disabled=True,
    )
    app = create_app(settings)
    Base.metadata.create_all(bind=app.state.engine)
    return app


@pytest.fixture()
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    with TestClient(app) as test_client:
        yield test_client


def _on_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def test_engine_follows_configured_database_url(app: FastAPI, tmp_path: Path) -> None:
    assert app.state.memory_storage is None
    assert app.state.engine.url.database == str(tmp_path / "crm.db")


def test_startup_seed_and_requests_use_configured_database(client: TestClient) -> None:
    customers = client.get("/api/customers")
    created = client.post("/api/customers", json={"name": "Initech", "email": "bill@initech.com"})

    assert customers.status_code == 200
    assert len(customers.json()) == len(SAMPLE_CUSTOMERS)
    assert created.status_code == 201
    assert client.get(f"/api/customers/{created.json()['id']}").json()["name"] == "Initech"


def test_token_lookup_runs_off_the_event_loop(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[bool] = []
    original_get_user = DatabaseStorage.get_user

    def recording_get_user(self: DatabaseStorage, user_id: int):  # type: ignore[no-untyped-def]
        calls.append(_on_event_loop())
        return original_get_user(self, user_id)

    monkeypatch.setattr(DatabaseStorage, "get_user", recording_get_user)

    response = client.get("/api/commercial/customers", headers={"Authorization": "Bearer 1"})

    assert response.status_code == 200
    assert len(response.json()) == len(SAMPLE_CUSTOMERS)
    assert calls
    assert not any(calls)
