from __future__ import annotations

import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from gridrank.core.metrics import http_request_duration_seconds, http_requests_in_progress, http_requests_total


def route_template(request: Request) -> str:
    route = request.scope.get("route")
    # Raw paths carry scan and campaign ids.
    return getattr(route, "path", None) or "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Request counters and latency keyed by route template.

    Requests that raise are counted as 500 before the exception propagates to
    the app-level handler.
    """

    def __init__(self, app: ASGIApp, *, excluded_paths: tuple[str, ...] = ("/metrics",)) -> None:
        super().__init__(app)
        self.excluded_paths = frozenset(excluded_paths)

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.excluded_paths:
            return await call_next(request)

        in_progress = http_requests_in_progress.labels(method=request.method)
        in_progress.inc()
        started_at = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            in_progress.dec()
            path = route_template(request)
            http_requests_total.labels(method=request.method, path=path, status=str(status_code)).inc()
            http_request_duration_seconds.labels(method=request.method, path=path).observe(time.perf_counter() - started_at)
