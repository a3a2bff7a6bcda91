from __future__ import annotations

import resource
import time
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import Response

from app.business.billing.api import router as billing_router
from app.core.config import get_settings
from app.core.errors import NotFoundError
from app.crm.api import routers as crm_routers
from app.crm.legacy_api import router as legacy_router
from app.metrics import metrics_content_type


STARTED_AT = time.monotonic()

router = APIRouter()
for crm_router in crm_routers:
    router.include_router(crm_router)
router.include_router(billing_router)
router.include_router(legacy_router)


@router.get("/health", tags=["system"])
def health(request: Request) -> dict[str, Any]:
    settings = getattr(request.app.state, "settings", None) or get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "uptimeSeconds": round(time.monotonic() - STARTED_AT, 3),
        "memory": {"maxRssKb": resource.getrusage(resource.RUSAGE_SELF).ru_maxrss},
    }


@router.get("/metrics", tags=["system"])
def metrics(request: Request) -> Response:
    settings = getattr(request.app.state, "settings", None) or get_settings()
    app_metrics = getattr(request.app.state, "metrics", None)
    if not settings.metrics_enabled or app_metrics is None:
        raise NotFoundError(f"Route {request.url.path} not found")
    return Response(content=app_metrics.generate_payload(), media_type=metrics_content_type())
