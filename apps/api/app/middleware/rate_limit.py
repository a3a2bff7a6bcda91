from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from app.core.config import Settings
from app.metrics import resolve_http_path_label

if TYPE_CHECKING:
    from app.metrics import AppMetrics


logger = logging.getLogger("app.rate_limit")

DEFAULT_MESSAGE = "Too many requests, please try again later"
AUTH_MESSAGE = "Too many authentication attempts, please try again later"


@dataclass(frozen=True)
class WindowState:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """Counts hits per key inside fixed windows that open on the first hit.

    State is process-local. The clock is injectable so tests can move time
    without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, WindowState] = {}

    def now(self) -> float:
        return self._clock()

    def hit(self, key: str, window_seconds: int) -> WindowState:
        now = self._clock()
        with self._lock:
            current = self._windows.get(key)
            if current is None or now >= current.reset_at:
                current = WindowState(count=1, reset_at=now + window_seconds)
            else:
                current = WindowState(count=current.count + 1, reset_at=current.reset_at)
            self._windows[key] = current
            return current

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, window in self._windows.items() if now >= window.reset_at]
            for key in expired:
                del self._windows[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    path_prefix: str
    window_seconds: int
    max_requests: int
    message: str = DEFAULT_MESSAGE
    methods: frozenset[str] | None = None
    skip_successful_requests: bool = False

    def matches(self, request: Request) -> bool:
        if not request.url.path.startswith(self.path_prefix):
            return False
        return self.methods is None or request.method.upper() in self.methods


def default_rate_limit_rules(settings: Settings) -> list[RateLimitRule]:
    return [
        RateLimitRule(
            name="auth",
            path_prefix="/api/commercial/auth/login",
            window_seconds=settings.rate_limit_auth_window_seconds,
            max_requests=settings.rate_limit_auth_max_requests,
            message=AUTH_MESSAGE,
            methods=frozenset({"POST"}),
            skip_successful_requests=True,
        ),
        RateLimitRule(
            name="general",
            path_prefix="/api",
            window_seconds=settings.rate_limit_window_seconds,
            max_requests=settings.rate_limit_max_requests,
        ),
    ]


def _client_ip(request: Request) -> str:
    context = getattr(request.state, "context", None)
    if context is not None:
        return context.client_ip
    return request.client.host if request.client else "unknown"


def _limit_headers(rule: RateLimitRule, window: WindowState) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(rule.max_requests),
        "X-RateLimit-Remaining": str(max(0, rule.max_requests - window.count)),
        "X-RateLimit-Reset": datetime.fromtimestamp(window.reset_at, tz=timezone.utc).isoformat(),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        *,
        limiter: FixedWindowRateLimiter,
        rules: Sequence[RateLimitRule],
        metrics: AppMetrics | None = None,
        disabled: bool = False,
    ) -> None:
        super().__init__(app)
        self.limiter = limiter
        self.rules = list(rules)
        self.metrics = metrics
        self.disabled = disabled

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        if self.disabled:
            return await call_next(request)

        matched = [rule for rule in self.rules if rule.matches(request)]
        if not matched:
            return await call_next(request)

        client_ip = _client_ip(request)
        path = request.url.path
        hits: list[tuple[RateLimitRule, str, WindowState]] = []
        for rule in matched:
            key = f"{rule.name}:{client_ip}:{path}"
            hits.append((rule, key, self.limiter.hit(key, rule.window_seconds)))

        tightest_rule, _, tightest_window = min(hits, key=lambda item: item[0].max_requests - item[2].count)
        headers = _limit_headers(tightest_rule, tightest_window)

        exceeded = next(((rule, window) for rule, _, window in hits if window.count > rule.max_requests), None)
        if exceeded is not None:
            rule, window = exceeded
            return self._limited_response(request, rule, window, headers)

        response: Response = await call_next(request)
        if response.status_code < 400:
            for rule, key, _ in hits:
                if rule.skip_successful_requests:
                    self.limiter.reset(key)
        response.headers.update(headers)
        return response

    def _limited_response(
        self,
        request: Request,
        rule: RateLimitRule,
        window: WindowState,
        headers: dict[str, str],
    ) -> JSONResponse:
        retry_after = max(1, math.ceil(window.reset_at - self.limiter.now()))
        endpoint = resolve_http_path_label(request)
        logger.warning(
            "rate_limit.exceeded",
            extra={"client_ip": _client_ip(request), "path": endpoint, "retry_after": retry_after},
        )
        if self.metrics is not None:
            self.metrics.observe_rate_limited(endpoint=endpoint)
            self.metrics.observe_http_error(status=429, method=request.method, route=endpoint)

        headers = {**headers, "Retry-After": str(retry_after)}
        return JSONResponse(
            status_code=429,
            content={"error": rule.message, "status": 429, "retryAfter": retry_after},
            headers=headers,
        )
