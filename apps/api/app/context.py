from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
organization_id_var: ContextVar[int | None] = ContextVar("organization_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_organization_id(value: int | None) -> Token[int | None]:
    return organization_id_var.set(value)


def get_organization_id() -> int | None:
    return organization_id_var.get()


def get_log_context() -> dict[str, str | int | None]:
    return {"correlation_id": get_correlation_id(), "organization_id": get_organization_id()}
