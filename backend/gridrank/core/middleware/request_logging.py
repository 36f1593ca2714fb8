from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


logger = logging.getLogger("gridrank.api")

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        started_at = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "http.request.unhandled",
                extra={"request_id": request_id, "method": request.method, "path": request.url.path},
            )
            raise

        # Router fills path_params on the shared scope during call_next.
        path_params = request.scope.get("path_params") or {}
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        logger.log(
            logging.WARNING if response.status_code >= 500 else logging.INFO,
            "http.request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": int((time.perf_counter() - started_at) * 1000),
                "scan_id": path_params.get("scan_id"),
                "campaign_id": path_params.get("campaign_id"),
            },
        )
        return response
