from gridrank.core.middleware.metrics import MetricsMiddleware
from gridrank.core.middleware.request_logging import RequestLoggingMiddleware

__all__ = [
    "MetricsMiddleware",
    "RequestLoggingMiddleware",
]
