from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, TypeVar


T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float
    backoff_factor: float = 2.0
    attempt_timeout_seconds: float | None = None
    timeout_growth: Literal["fixed", "linear"] = "fixed"

    def timeout_for_attempt(self, attempt: int) -> float | None:
        if self.attempt_timeout_seconds is None:
            return None
        if self.timeout_growth == "linear":
            return self.attempt_timeout_seconds * attempt
        return self.attempt_timeout_seconds

    def delay_for_attempt(self, attempt: int) -> float:
        return min(self.max_delay_seconds, self.base_delay_seconds * (self.backoff_factor ** (attempt - 1)))


class AsyncRetriesService:
    def __init__(self, sleep: Sleep | None = None) -> None:
        self._sleep = sleep or asyncio.sleep

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        *,
        policy: RetryPolicy,
        should_retry: Callable[[Exception], bool] | None = None,
        delay_for: Callable[[Exception, int], float] | None = None,
        on_retry: Callable[[Exception, int, float], None] | None = None,
    ) -> T:
        if policy.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if policy.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if policy.max_delay_seconds < 0:
            raise ValueError("max_delay_seconds must be >= 0")
        if policy.backoff_factor < 1.0:
            raise ValueError("backoff_factor must be >= 1.0")

        last_error: Exception | None = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                timeout = policy.timeout_for_attempt(attempt)
                if timeout is None:
                    return await operation(attempt)
                return await asyncio.wait_for(operation(attempt), timeout=timeout)
            except Exception as exc:
                if should_retry is not None and not should_retry(exc):
                    raise
                if attempt >= policy.max_attempts:
                    raise
                last_error = exc
                delay = delay_for(exc, attempt) if delay_for is not None else policy.delay_for_attempt(attempt)
                if on_retry is not None:
                    on_retry(exc, attempt, delay)
                if delay > 0:
                    await self._sleep(delay)

        assert last_error is not None
        raise last_error
