from __future__ import annotations

import logging

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger("gridrank.tracing")
TRACER_NAME = "gridrank"
_provider_installed = False


def get_tracer() -> trace.Tracer:
    """Spans are no-ops until an exporter is installed."""
    return trace.get_tracer(TRACER_NAME)


def install_tracer_provider(otel_exporter_endpoint: str, *, service_name: str) -> bool:
    global _provider_installed
    endpoint = otel_exporter_endpoint.strip()
    if not endpoint or _provider_installed:
        return False
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    HTTPXClientInstrumentor().instrument()
    _provider_installed = True
    logger.info("OpenTelemetry tracing enabled (service=%s, endpoint=%s)", service_name, endpoint)
    return True


def setup_tracing(app: FastAPI, *, otel_exporter_endpoint: str, service_name: str = "gridrank-api") -> bool:
    if not install_tracer_provider(otel_exporter_endpoint, service_name=service_name):
        return False
    FastAPIInstrumentor.instrument_app(app)
    return True
