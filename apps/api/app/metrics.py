from __future__ import annotations

import re

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    GCCollector,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)
from starlette.requests import Request


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


class AppMetrics:
    """Prometheus collectors owned by one application instance.

    Each instance registers on its own ``CollectorRegistry`` so that separate
    apps (and separate tests) never share counter state.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        ProcessCollector(registry=self.registry)
        PlatformCollector(registry=self.registry)
        GCCollector(registry=self.registry)

        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "path", "status"],
            registry=self.registry,
        )
        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_errors_total = Counter(
            "http_errors_total",
            "Total number of HTTP errors",
            ["status_code", "method", "route"],
            registry=self.registry,
        )
        self.rate_limit_hits_total = Counter(
            "rate_limit_hits_total",
            "Total number of rate limit hits",
            ["endpoint"],
            registry=self.registry,
        )
        self.crm_leads_converted_total = Counter(
            "crm_leads_converted_total",
            "Total leads converted into customers",
            registry=self.registry,
        )
        self.billing_subscription_changes_total = Counter(
            "billing_subscription_changes_total",
            "Subscription changes by action",
            ["action"],
            registry=self.registry,
        )

    def observe_http_request(self, method: str, path: str, status: int, duration: float) -> None:
        self.http_requests_total.labels(method=method, path=path, status=str(status)).inc()
        self.http_request_duration_seconds.labels(method=method, path=path).observe(duration)

    def observe_http_error(self, status: int, method: str, route: str) -> None:
        self.http_errors_total.labels(status_code=str(status), method=method, route=route).inc()

    def observe_rate_limited(self, endpoint: str) -> None:
        self.rate_limit_hits_total.labels(endpoint=endpoint).inc()

    def observe_lead_converted(self) -> None:
        self.crm_leads_converted_total.inc()

    def observe_subscription_change(self, action: str) -> None:
        self.billing_subscription_changes_total.labels(action=action).inc()

    def generate_payload(self) -> bytes:
        return generate_latest(self.registry)


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
