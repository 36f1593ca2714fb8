from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from gridrank.providers.errors import ProviderError, classify_provider_error


T = TypeVar("T")


class RetryExhaustedError(Exception):
    def __init__(self, last_error: ProviderError, attempts: int) -> None:
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class RetryPolicy:
    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        multiplier: float = 2.0,
        max_delay_seconds: float = 30.0,
        jitter_ratio: float = 0.1,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        random_fn: Callable[[float, float], float] = random.uniform,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.multiplier = multiplier
        self.max_delay_seconds = max_delay_seconds
        self.jitter_ratio = jitter_ratio
        self.sleep_fn = sleep_fn
        self.random_fn = random_fn

    def delay_for_attempt(self, attempt_number: int) -> float:
        base = min(self.max_delay_seconds, self.base_delay_seconds * (self.multiplier ** (attempt_number - 1)))
        if self.jitter_ratio <= 0:
            return base
        jitter_multiplier = 1.0 + self.random_fn(-self.jitter_ratio, self.jitter_ratio)
        return max(0.0, min(self.max_delay_seconds, base * jitter_multiplier))

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        classify_error: Callable[[Exception], ProviderError] = classify_provider_error,
        on_retry: Callable[[int, ProviderError, float], None] | None = None,
    ) -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:  # noqa: PERF203
                provider_error = classify_error(exc)
                if not provider_error.retryable:
                    if provider_error is exc:
                        raise
                    raise provider_error from exc
                if attempt >= self.max_attempts:
                    raise RetryExhaustedError(last_error=provider_error, attempts=attempt)
                delay = self.delay_for_attempt(attempt)
                if on_retry is not None:
                    on_retry(attempt, provider_error, delay)
                await self.sleep_fn(delay)
                attempt += 1
