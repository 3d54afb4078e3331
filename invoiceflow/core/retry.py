"""
Retry policy value object + generic async "retry with backoff" helper.

Usage::

    policy = RetryPolicy(max_attempts=3, base_delay=1.0)
    text = await retry_async(
        policy,
        lambda: provider.extract_text(data, content_type),
        timeout=120.0,
        operation="ocr",
    )

Timeouts are converted to ProviderError so they are retried exactly like a
provider failure. Only exceptions listed in `retry_on` are retried; anything
else propagates on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from invoiceflow.core.errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_attempts : total attempts including the first call
    base_delay   : delay (seconds) before the first retry
    multiplier   : growth factor between consecutive retries
    max_delay    : cap on any single delay
    """
    max_attempts: int   = 3
    base_delay:   float = 1.0
    multiplier:   float = 2.0
    max_delay:    float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry `retry_number` (1 = first retry)."""
        exponent = max(retry_number - 1, 0)
        return min(self.base_delay * (self.multiplier ** exponent), self.max_delay)


async def call_with_timeout(
    fn: Callable[[], Awaitable[T]],
    timeout: float | None,
    operation: str,
) -> T:
    """Await fn() bounded by `timeout`; a timeout becomes a ProviderError."""
    if timeout is None:
        return await fn()
    try:
        return await asyncio.wait_for(fn(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ProviderError(operation, f"timed out after {timeout:.0f}s") from exc


async def retry_async(
    policy: RetryPolicy,
    fn: Callable[[], Awaitable[T]],
    *,
    timeout: float | None = None,
    retry_on: tuple[type[BaseException], ...] = (ProviderError,),
    operation: str = "call",
) -> T:
    """
    Run `fn` until it succeeds or the policy's attempts are exhausted.
    The last exception is re-raised unchanged.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.base_delay,
            exp_base=policy.multiplier,
            max=policy.max_delay,
        ),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            n = attempt.retry_state.attempt_number
            if n > 1:
                logger.info("Retry | operation=%s attempt=%d/%d", operation, n, policy.max_attempts)
            return await call_with_timeout(fn, timeout, operation)
    raise AssertionError("unreachable")  # pragma: no cover
