"""Failure classification and a small retry combinator for upstream calls."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


class FailureKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    TERMINAL = "terminal"


@dataclass(slots=True, frozen=True)
class Failure:
    """A classified, non-raising request failure."""

    kind: FailureKind
    message: str
    status: int | None = None
    retry_after: float | None = None

    @property
    def retryable(self) -> bool:
        return self.kind is not FailureKind.TERMINAL


BackoffFn = Callable[[int, Failure], float]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """How many attempts to make, how long to wait and which failures qualify."""

    max_attempts: int = 1
    backoff: BackoffFn | None = None
    retry_on: Callable[[Failure], bool] = lambda failure: failure.retryable

    def delay(self, attempt: int, failure: Failure) -> float:
        if self.backoff is None:
            return 0.0
        return max(0.0, float(self.backoff(attempt, failure)))


def exponential_backoff(
    *,
    base: float = 0.3,
    rate_limit_base: float = 2.0,
) -> BackoffFn:
    """``base * 2**attempt``; 429s honour ``Retry-After`` or use ``rate_limit_base``."""

    def _backoff(attempt: int, failure: Failure) -> float:
        if failure.kind is FailureKind.RATE_LIMITED:
            if failure.retry_after is not None and failure.retry_after > 0:
                return failure.retry_after
            return rate_limit_base * (2**attempt)
        return base * (2**attempt)

    return _backoff


NO_RETRY = RetryPolicy(max_attempts=1)


async def call_with_retry(
    fn: Callable[[], Awaitable[T | Failure]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "request",
) -> T | Failure:
    """Await ``fn`` until it succeeds or ``policy`` gives up.

    ``fn`` reports failures by returning a :class:`Failure` rather than
    raising. The last failure is returned once attempts are exhausted.
    """

    attempts = max(1, int(policy.max_attempts))
    result: T | Failure = Failure(FailureKind.TERMINAL, "no attempt made")
    for attempt in range(attempts):
        result = await fn()
        if not isinstance(result, Failure):
            return result
        if attempt + 1 >= attempts or not policy.retry_on(result):
            break
        wait = policy.delay(attempt, result)
        log.warning(
            "%s failed (%s: %s), retrying in %.2fs (attempt %d/%d)",
            label,
            result.kind.value,
            result.message,
            wait,
            attempt + 1,
            attempts,
        )
        await sleep(wait)
    return result


__all__ = [
    "Failure",
    "FailureKind",
    "NO_RETRY",
    "RetryPolicy",
    "call_with_retry",
    "exponential_backoff",
]
