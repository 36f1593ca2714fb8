from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Mapping, TypeVar

from gridrank.core.config import Settings
from gridrank.core.metrics import limiter_wait_seconds, provider_calls_total, provider_retries_total
from gridrank.observability.events import emit_provider_retry
from gridrank.providers.errors import ProviderError, ProviderTimeoutError
from gridrank.providers.rate_limiter import BaseEndpointLimiter, EndpointClass, LimiterSnapshot, build_limiters
from gridrank.providers.retry import RetryExhaustedError, RetryPolicy

logger = logging.getLogger("gridrank.scheduler")

T = TypeVar("T")


class RequestScheduler:
    """Single gate for every outbound provider call.

    Each attempt acquires capacity from the endpoint class limiter, so retries
    are throttled exactly like first attempts.
    """

    def __init__(
        self,
        limiters: Mapping[EndpointClass, BaseEndpointLimiter],
        retry_policies: Mapping[EndpointClass, RetryPolicy],
        *,
        default_timeout_seconds: float | None = 30.0,
    ) -> None:
        missing = [endpoint_class.value for endpoint_class in EndpointClass if endpoint_class not in limiters]
        if missing:
            raise ValueError(f"Missing limiter for endpoint classes: {', '.join(missing)}")
        self._limiters = dict(limiters)
        self._retry_policies = dict(retry_policies)
        self.default_timeout_seconds = default_timeout_seconds

    def limiter_for(self, endpoint_class: EndpointClass) -> BaseEndpointLimiter:
        return self._limiters[EndpointClass(endpoint_class)]

    def max_concurrency(self, endpoint_class: EndpointClass) -> int:
        return self.limiter_for(endpoint_class).config.max_concurrent

    def snapshot(self) -> dict[str, LimiterSnapshot]:
        return {endpoint_class.value: limiter.snapshot() for endpoint_class, limiter in self._limiters.items()}

    def _retry_policy(self, endpoint_class: EndpointClass) -> RetryPolicy:
        policy = self._retry_policies.get(endpoint_class)
        if policy is None:
            policy = self._retry_policies.get(EndpointClass.GENERAL) or RetryPolicy()
        return policy

    async def schedule(
        self,
        endpoint_class: EndpointClass,
        operation: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        endpoint_class = EndpointClass(endpoint_class)
        limiter = self.limiter_for(endpoint_class)
        policy = self._retry_policy(endpoint_class)
        timeout_seconds = timeout if timeout is not None else self.default_timeout_seconds
        label = endpoint_class.value

        async def attempt() -> T:
            waited = await limiter.acquire()
            limiter_wait_seconds.labels(endpoint_class=label).observe(waited)
            try:
                if timeout_seconds is None:
                    return await operation()
                return await asyncio.wait_for(operation(), timeout=timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise ProviderTimeoutError(f"Provider call timed out after {timeout_seconds}s.") from exc
            finally:
                await limiter.release()

        def on_retry(attempt_number: int, error: ProviderError, delay: float) -> None:
            provider_retries_total.labels(endpoint_class=label, reason_code=error.reason_code).inc()
            emit_provider_retry(
                endpoint_class=label,
                attempt=attempt_number,
                reason_code=error.reason_code,
                delay_seconds=delay,
            )

        try:
            result = await policy.execute(attempt, on_retry=on_retry)
        except RetryExhaustedError as exc:
            provider_calls_total.labels(endpoint_class=label, outcome="exhausted").inc()
            logger.warning(
                "Provider retries exhausted",
                extra={"endpoint_class": label},
            )
            raise exc.last_error from None
        except ProviderError:
            provider_calls_total.labels(endpoint_class=label, outcome="failed").inc()
            raise
        provider_calls_total.labels(endpoint_class=label, outcome="success").inc()
        return result


def build_retry_policies(
    settings: Settings,
    *,
    sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> dict[EndpointClass, RetryPolicy]:
    return {
        endpoint_class: RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            multiplier=settings.retry_multiplier,
            max_delay_seconds=settings.retry_max_delay_seconds,
            jitter_ratio=settings.retry_jitter_ratio,
            sleep_fn=sleep_fn,
        )
        for endpoint_class in EndpointClass
    }


def build_request_scheduler(
    settings: Settings,
    *,
    clock: Callable[[], float] = time.monotonic,
    sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RequestScheduler:
    return RequestScheduler(
        build_limiters(settings, clock=clock, sleep_fn=sleep_fn),
        build_retry_policies(settings, sleep_fn=sleep_fn),
        default_timeout_seconds=settings.provider_timeout_seconds,
    )
