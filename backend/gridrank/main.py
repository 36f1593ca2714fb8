from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from gridrank.api.response import exception_envelope
from gridrank.api.v1.router import api_router
from gridrank.core.config import get_settings
from gridrank.core.logging_config import configure_logging
from gridrank.core.metrics import render_metrics
from gridrank.core.middleware import MetricsMiddleware, RequestLoggingMiddleware
from gridrank.core.tracing import setup_tracing
from gridrank.db.redis_client import get_redis_client

settings = get_settings()
configure_logging(log_level=settings.log_level, app_env=settings.app_env, json_logs=settings.log_json)
logger = logging.getLogger("gridrank.api")


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    # Raises when Redis is configured but unreachable; returns None in test mode.
    get_redis_client()
    logger.info("GridRank API started (env=%s, provider=%s)", settings.app_env, settings.ranking_provider_backend)
    yield
    logger.info("GridRank API stopped")


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(MetricsMiddleware)
setup_tracing(app, otel_exporter_endpoint=settings.otel_exporter_endpoint)
app.include_router(api_router, prefix=settings.api_v1_prefix)

if settings.metrics_enabled:

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        payload, content_type = render_metrics()
        return Response(content=payload, media_type=content_type)


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    code: str,
    details: dict | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=exception_envelope(request, status_code, message, code, details),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        return _error_response(request, exc.status_code, str(detail.get("message") or "Request failed"), f"http_{exc.status_code}", detail)
    message = detail if isinstance(detail, str) else "Request failed"
    return _error_response(request, exc.status_code, message, f"http_{exc.status_code}")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(request, 422, "Validation failed", "validation_error", {"errors": exc.errors()})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    return _error_response(request, 500, "Internal server error", "internal_server_error")
