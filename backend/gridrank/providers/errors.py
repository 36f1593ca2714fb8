from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx


# DataForSEO envelope/task status codes.
STATUS_SUCCESS = 20000
STATUS_SUCCESS_PARTIAL = 20100
STATUS_INVALID_REQUEST = 40001
STATUS_AUTH_ERROR = 40100
STATUS_PAYMENT_REQUIRED = 40200
STATUS_RATE_LIMIT_EXCEEDED = 40202
STATUS_NOT_FOUND = 40400
STATUS_INTERNAL_ERROR = 50000

SCAN_FATAL_REASON_CODES = frozenset({"payment_required", "auth_failed"})


@dataclass(frozen=True)
class ErrorClassification:
    error_code: str
    reason_code: str
    retryable: bool
    severity: str


class ProviderError(Exception):
    def __init__(
        self,
        message: str,
        *,
        error_code: str,
        reason_code: str,
        retryable: bool,
        severity: str,
        upstream_payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.reason_code = reason_code
        self.retryable = retryable
        self.severity = severity
        self.upstream_payload = upstream_payload

    @property
    def scan_fatal(self) -> bool:
        return self.reason_code in SCAN_FATAL_REASON_CODES


class ProviderTimeoutError(ProviderError):
    def __init__(self, message: str = "Provider request timed out.", *, upstream_payload: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_code="provider_timeout",
            reason_code="timeout",
            retryable=True,
            severity="error",
            upstream_payload=upstream_payload,
        )


class ProviderConnectionError(ProviderError):
    def __init__(self, message: str = "Provider connection failed.", *, upstream_payload: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_code="provider_connection",
            reason_code="connection_error",
            retryable=True,
            severity="error",
            upstream_payload=upstream_payload,
        )


class ProviderRateLimitError(ProviderError):
    def __init__(self, message: str = "Provider rate-limited request.", *, upstream_payload: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_code="provider_rate_limited",
            reason_code="rate_limited",
            retryable=True,
            severity="warning",
            upstream_payload=upstream_payload,
        )


class ProviderAuthError(ProviderError):
    def __init__(self, message: str = "Provider authentication failed.", *, upstream_payload: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_code="provider_auth",
            reason_code="auth_failed",
            retryable=False,
            severity="critical",
            upstream_payload=upstream_payload,
        )


class ProviderPaymentRequiredError(ProviderError):
    def __init__(
        self,
        message: str = "Payment required. Check the ranking data provider account balance.",
        *,
        upstream_payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            error_code="provider_payment_required",
            reason_code="payment_required",
            retryable=False,
            severity="critical",
            upstream_payload=upstream_payload,
        )


class ProviderBadRequestError(ProviderError):
    def __init__(self, message: str = "Provider rejected request payload.", *, upstream_payload: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_code="provider_bad_request",
            reason_code="bad_request",
            retryable=False,
            severity="error",
            upstream_payload=upstream_payload,
        )


class ProviderResponseFormatError(ProviderError):
    def __init__(self, message: str = "Provider response format is invalid.", *, upstream_payload: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_code="provider_response_invalid",
            reason_code="response_invalid",
            retryable=False,
            severity="error",
            upstream_payload=upstream_payload,
        )


class ProviderDependencyError(ProviderError):
    def __init__(self, message: str = "Provider dependency unavailable.", *, upstream_payload: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_code="provider_dependency_unavailable",
            reason_code="dependency_unavailable",
            retryable=True,
            severity="error",
            upstream_payload=upstream_payload,
        )


class ProviderInternalError(ProviderError):
    def __init__(self, message: str = "Provider internal error.", *, upstream_payload: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_code="provider_internal_error",
            reason_code="internal_error",
            retryable=False,
            severity="critical",
            upstream_payload=upstream_payload,
        )


class ScanValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


def classification_from_status_code(status_code: int) -> ErrorClassification | None:
    if status_code in {STATUS_SUCCESS, STATUS_SUCCESS_PARTIAL}:
        return None
    if status_code == STATUS_PAYMENT_REQUIRED:
        return ErrorClassification("provider_payment_required", "payment_required", False, "critical")
    if status_code == STATUS_RATE_LIMIT_EXCEEDED:
        return ErrorClassification("provider_rate_limited", "rate_limited", True, "warning")
    if status_code == STATUS_AUTH_ERROR:
        return ErrorClassification("provider_auth", "auth_failed", False, "critical")
    if 40000 <= status_code < 50000:
        return ErrorClassification("provider_bad_request", "bad_request", False, "error")
    if status_code >= 50000:
        return ErrorClassification("provider_dependency_unavailable", "dependency_unavailable", True, "error")
    return ErrorClassification("provider_internal_error", "internal_error", False, "critical")


def classification_from_exception(exc: Exception) -> ErrorClassification:
    if isinstance(exc, ProviderError):
        return ErrorClassification(
            error_code=exc.error_code,
            reason_code=exc.reason_code,
            retryable=exc.retryable,
            severity=exc.severity,
        )
    if isinstance(exc, TimeoutError | httpx.TimeoutException):
        return ErrorClassification("provider_timeout", "timeout", True, "error")
    if isinstance(exc, ConnectionError | httpx.ConnectError):
        return ErrorClassification("provider_connection", "connection_error", True, "error")
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code if exc.response is not None else 0
        if status_code == 401 or status_code == 403:
            return ErrorClassification("provider_auth", "auth_failed", False, "critical")
        if status_code == 402:
            return ErrorClassification("provider_payment_required", "payment_required", False, "critical")
        if status_code == 429:
            return ErrorClassification("provider_rate_limited", "rate_limited", True, "warning")
        if 400 <= status_code < 500:
            return ErrorClassification("provider_bad_request", "bad_request", False, "error")
        if status_code >= 500:
            return ErrorClassification("provider_dependency_unavailable", "dependency_unavailable", True, "error")
    if isinstance(exc, httpx.HTTPError):
        return ErrorClassification("provider_dependency_unavailable", "dependency_unavailable", True, "error")
    return ErrorClassification("provider_internal_error", "internal_error", False, "critical")


_ERROR_TYPES: dict[str, type[ProviderError]] = {
    "timeout": ProviderTimeoutError,
    "connection_error": ProviderConnectionError,
    "rate_limited": ProviderRateLimitError,
    "auth_failed": ProviderAuthError,
    "payment_required": ProviderPaymentRequiredError,
    "bad_request": ProviderBadRequestError,
    "response_invalid": ProviderResponseFormatError,
    "dependency_unavailable": ProviderDependencyError,
    "internal_error": ProviderInternalError,
}


def _typed_error(classification: ErrorClassification, message: str, upstream_payload: dict[str, Any] | None = None) -> ProviderError:
    error_type = _ERROR_TYPES.get(classification.reason_code)
    if error_type is not None:
        return error_type(message, upstream_payload=upstream_payload)
    return ProviderError(
        message,
        error_code=classification.error_code,
        reason_code=classification.reason_code,
        retryable=classification.retryable,
        severity=classification.severity,
        upstream_payload=upstream_payload,
    )


def classify_provider_error(exc: Exception) -> ProviderError:
    if isinstance(exc, ProviderError):
        return exc
    classification = classification_from_exception(exc)
    return _typed_error(classification, str(exc) or classification.reason_code)


def provider_error_from_status(status_code: int, message: str, *, upstream_payload: dict[str, Any] | None = None) -> ProviderError | None:
    classification = classification_from_status_code(status_code)
    if classification is None:
        return None
    return _typed_error(classification, f"[{status_code}] {message}".strip(), upstream_payload)


_HUMAN_MESSAGES = {
    "payment_required": "Scan stopped: the ranking data provider reported payment required (account balance exhausted).",
    "auth_failed": "Scan stopped: the ranking data provider rejected the configured credentials.",
    "rate_limited": "The ranking data provider kept rate-limiting requests.",
    "timeout": "The ranking data provider timed out.",
    "connection_error": "Could not connect to the ranking data provider.",
    "dependency_unavailable": "The ranking data provider is temporarily unavailable.",
}


def human_error_message(error: ProviderError) -> str:
    return _HUMAN_MESSAGES.get(error.reason_code, "The ranking data provider returned an unexpected error.")
