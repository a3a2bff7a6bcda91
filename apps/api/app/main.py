from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.orm import Session, sessionmaker

from app.api.routes import router as api_router
from app.core.config import Settings, get_settings
from app.core.context import RequestContextMiddleware
from app.core.database import build_engine, build_session_factory
from app.core.errors import register_error_handlers
from app.core.events import InternalEvent, event_bus
from app.crm.memory import MemoryStorage
from app.crm.repositories import DatabaseStorage
from app.crm.seed import seed_demo_data
from app.events import DOMAIN_EVENT_TYPES
from app.logging import configure_logging
from app.metrics import AppMetrics
from app.middleware.rate_limit import FixedWindowRateLimiter, RateLimitMiddleware, default_rate_limit_rules
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


def _on_domain_event(event: InternalEvent) -> None:
    envelope = event.payload
    logger.info(
        "domain_event",
        extra={
            "event_name": event.name,
            "organization_id": envelope.get("organization_id"),
            "event_payload": envelope.get("payload"),
        },
    )


def _register_subscriptions() -> None:
    global _subscriptions_registered
    if _subscriptions_registered:
        return
    event_bus.subscribe("system.started", _on_system_started)
    for event_name in DOMAIN_EVENT_TYPES:
        event_bus.subscribe(event_name, _on_domain_event)
    _subscriptions_registered = True


def _seed_database(session_factory: sessionmaker[Session]) -> None:
    session = session_factory()
    try:
        seed_demo_data(DatabaseStorage(session))
    except Exception as exc:
        logger.exception("seed.failed", extra={"error": str(exc)[:500]})
    finally:
        session.close()


async def _sweep_rate_limits(limiter: FixedWindowRateLimiter, interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        evicted = limiter.sweep()
        if evicted:
            logger.debug("rate_limit.swept", extra={"event_payload": {"evicted": evicted}})


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    _register_subscriptions()
    if settings.seed_demo_data and app.state.memory_storage is None:
        _seed_database(app.state.session_factory)

    sweeper = asyncio.create_task(
        _sweep_rate_limits(app.state.rate_limiter, settings.rate_limit_sweep_interval_seconds)
    )
    event_bus.publish("system.started", {"service": settings.app_name})
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        if app.state.engine is not None:
            app.state.engine.dispose()


def create_app(
    settings: Settings | None = None,
    *,
    rate_limiter: FixedWindowRateLimiter | None = None,
) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.metrics = AppMetrics()
    app.state.rate_limiter = rate_limiter if rate_limiter is not None else FixedWindowRateLimiter()
    if settings.storage_backend.lower() == "memory":
        app.state.memory_storage = MemoryStorage(seed=settings.seed_demo_data)
        app.state.engine = None
        app.state.session_factory = None
    else:
        app.state.memory_storage = None
        app.state.engine = build_engine(settings.database_url)
        app.state.session_factory = build_session_factory(app.state.engine)

    app.add_middleware(
        RateLimitMiddleware,
        limiter=app.state.rate_limiter,
        rules=default_rate_limit_rules(settings),
        metrics=app.state.metrics,
        disabled=settings.rate_limit_disabled,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestContextMiddleware)
    register_error_handlers(app)
    app.include_router(api_router)

    if settings.otel_enabled:
        setup_otel(settings.app_name)
        FastAPIInstrumentor().instrument_app(app, server_request_hook=server_request_hook)

    return app


app = create_app()
