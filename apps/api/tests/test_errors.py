from __future__ import annotations

import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.core.errors import ConflictError, InvalidTransitionError, NotFoundError
from app.main import create_app


def _app_with_failing_routes(app_env: str) -> FastAPI:
    app = create_app(
        Settings(app_env=app_env, storage_backend="memory", seed_demo_data=False, rate_limit_disabled=True)
    )

    @app.get("/boom")
    def boom() -> None:
        raise RuntimeError("kaboom")

    @app.get("/missing")
    def missing() -> None:
        raise NotFoundError("Widget not found", details={"id": 7})

    @app.get("/stuck")
    def stuck() -> None:
        raise InvalidTransitionError("Invalid widget transition a -> b", details={"from": "a", "to": "b"})

    return app


def test_typed_errors_map_to_status_and_envelope() -> None:
    client = TestClient(_app_with_failing_routes("production"))

    missing = client.get("/missing")
    stuck = client.get("/stuck")

    assert missing.status_code == 404
    assert missing.json() == {"error": "Widget not found", "status": 404, "details": {"id": 7}}
    assert stuck.status_code == 409
    assert stuck.json()["details"] == {"from": "a", "to": "b"}


def test_invalid_transition_is_a_conflict() -> None:
    assert issubclass(InvalidTransitionError, ConflictError)


def test_unhandled_error_hides_stack_outside_development(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR)
    client = TestClient(_app_with_failing_routes("production"), raise_server_exceptions=False)

    response = client.get("/boom")

    assert response.status_code == 500
    assert response.json() == {"error": "Internal Server Error", "status": 500}
    assert any(record.getMessage() == "request.unhandled" and record.exc_info for record in caplog.records)


def test_unhandled_error_includes_stack_in_development() -> None:
    client = TestClient(_app_with_failing_routes("development"), raise_server_exceptions=False)

    response = client.get("/boom")

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Internal Server Error"
    assert any("kaboom" in line for line in body["details"]["stack"])
