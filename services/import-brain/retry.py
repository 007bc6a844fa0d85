"""Retry policy for inference calls.

Transient failures back off exponentially (base_delay * multiplier^attempt)
up to max_attempts; anything else is raised immediately. The whole series is
bounded by overall_timeout.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import settings
from errors import InferenceTimeout, TransientServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    overall_timeout: float | None = 180.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            multiplier=settings.RETRY_BACKOFF,
            max_delay=settings.RETRY_MAX_DELAY,
            overall_timeout=settings.RETRY_OVERALL_TIMEOUT,
        )


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run fn under policy, retrying TransientServiceError only."""
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(TransientServiceError),
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.base_delay,
            exp_base=policy.multiplier,
            max=policy.max_delay,
        ),
        reraise=True,
        sleep=sleep,
        before_sleep=lambda state: logger.warning(
            "Inference service unavailable, retrying in %.1fs (attempt %d/%d)",
            state.next_action.sleep,  # type: ignore[union-attr]
            state.attempt_number,
            policy.max_attempts,
        ),
    )

    # AsyncRetrying only awaits coroutine functions; fn may be any callable
    # returning an awaitable.
    async def attempt() -> T:
        return await fn()

    if policy.overall_timeout is None:
        return await retrying(attempt)

    try:
        return await asyncio.wait_for(retrying(attempt), timeout=policy.overall_timeout)
    except asyncio.TimeoutError as e:
        logger.error("Inference call exceeded overall timeout of %.0fs", policy.overall_timeout)
        raise InferenceTimeout(f"Inference call timed out after {policy.overall_timeout:.0f}s") from e
