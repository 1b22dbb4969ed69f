from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .errors import RetryExhausted, TransientError
from .logging import ServiceLogger

T = TypeVar("T")

logger = ServiceLogger("retry")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with a per-attempt timeout."""

    max_attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 2.0
    timeout: float = 5.0

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))


@dataclass
class AttemptLog:
    attempts: int = 0
    last_error: Optional[str] = None


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    step: str,
    log: Optional[AttemptLog] = None,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    **context,
) -> T:
    """Run ``operation`` until it succeeds or ``policy.max_attempts`` is spent.

    A timeout counts as a retryable failure. Errors outside ``retry_on`` propagate
    immediately so business-rule violations are never retried.
    """
    log = log if log is not None else AttemptLog()
    last_error: Optional[BaseException] = None
    for attempt in range(1, policy.max_attempts + 1):
        log.attempts += 1
        try:
            return await asyncio.wait_for(operation(), timeout=policy.timeout)
        except asyncio.TimeoutError as exc:
            last_error = exc
            log.last_error = f"timed out after {policy.timeout}s"
        except retry_on as exc:
            last_error = exc
            log.last_error = str(exc) or type(exc).__name__

        if attempt < policy.max_attempts:
            delay = policy.delay_for(attempt)
            logger.warning(
                "Retrying step",
                step=step,
                attempt=attempt,
                delay=delay,
                error=log.last_error,
                **context,
            )
            await asyncio.sleep(delay)

    logger.error("Retry budget exhausted", step=step, attempts=policy.max_attempts, error=log.last_error, **context)
    raise RetryExhausted(step, policy.max_attempts, last_error)
