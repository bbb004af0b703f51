from __future__ import annotations

import asyncio
import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import httpx

from ..domain.errors import NotFoundError, RangeTooLargeError, RateLimitError, RPCError, ServerError
from ..domain.models import RetryContext
from ..domain.value_types import ErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]

_RATE_LIMIT_HINTS = ("rate limit", "too many requests", "429")
_NETWORK_HINTS = ("econnreset", "connection reset", "etimedout", "timed out", "timeout",
                  "enotfound", "name resolution", "network")
_SERVER_HINTS = ("500", "502", "503", "504")
_RANGE_HINTS = ("more than 10000 results", "10000 results", "block range",
                "range is too large", "exceed maximum block range")


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception onto the retry taxonomy."""
    if isinstance(exc, RangeTooLargeError):
        return "range_too_large"
    if isinstance(exc, RateLimitError):
        return "rate_limit"
    if isinstance(exc, ServerError):
        return "server"
    if isinstance(exc, NotFoundError):
        return "not_found"
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        if code == 429: return "rate_limit"
        if code >= 500: return "server"
        return "fatal"
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return "network"
    if not isinstance(exc, (RPCError, OSError, RuntimeError)):
        return "fatal"
    # untyped provider errors: fall back to the message
    msg = str(exc).lower()
    if any(h in msg for h in _RATE_LIMIT_HINTS):
        return "rate_limit"
    if any(h in msg for h in _RANGE_HINTS):
        return "range_too_large"
    if isinstance(exc, RPCError) and exc.code == -32005:
        return "rate_limit"
    if any(h in msg for h in _NETWORK_HINTS):
        return "network"
    if any(h in msg for h in _SERVER_HINTS):
        return "server"
    return "fatal"


_RETRYABLE: frozenset[ErrorKind] = frozenset({"rate_limit", "network", "server", "not_found"})


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) in _RETRYABLE


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_retries: int = 5
    initial_delay_s: float = 1.0
    max_delay_s: float = 30.0
    is_retryable: Callable[[BaseException], bool] = is_retryable

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("delays must be >= 0")

    def cap(self, attempt: int) -> float:
        """Upper bound of the jittered delay after failed attempt ``attempt``."""
        return min(self.initial_delay_s * (2 ** attempt), self.max_delay_s)

    def delay(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        # full jitter
        return self.cap(attempt) * rand()


@dataclass(slots=True)
class RetryStats:
    """Counters for operational visibility; never read by the retry logic."""
    classified: Counter = field(default_factory=Counter)
    retries: int = 0
    recovered: int = 0
    exhausted: int = 0
    non_retryable: int = 0

    def as_dict(self) -> dict[str, int]:
        out = {f"classified_{k}": v for k, v in sorted(self.classified.items())}
        out.update(retries=self.retries, recovered=self.recovered,
                   exhausted=self.exhausted, non_retryable=self.non_retryable)
        return out


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    stats: RetryStats | None = None,
    sleep: Sleep = asyncio.sleep,
    rand: Callable[[], float] = random.random,
    label: str = "",
) -> T:
    """Run ``operation`` with classified exponential backoff and full jitter.

    Attempts ``0..max_retries`` inclusive. Non-retryable errors propagate
    immediately without sleeping; after the last attempt the last error
    propagates unchanged.
    """
    for attempt in range(policy.max_retries + 1):
        try:
            result = await operation()
        except Exception as e:
            kind = classify_error(e)
            if stats is not None:
                stats.classified[kind] += 1
            if not policy.is_retryable(e):
                if stats is not None:
                    stats.non_retryable += 1
                logger.debug("non-retryable %s error in %s: %s", kind, label or "operation", e)
                raise
            if attempt == policy.max_retries:
                if stats is not None:
                    stats.exhausted += 1
                logger.error("max retries (%d) exceeded for %s: %s", policy.max_retries, label or "operation", e)
                raise
            ctx = RetryContext(attempt=attempt, delay_s=policy.delay(attempt, rand), kind=kind)
            if stats is not None:
                stats.retries += 1
            logger.warning("retrying %s after %s error (attempt %d/%d, sleeping %.0f ms): %s",
                           label or "operation", ctx.kind, attempt + 1, policy.max_retries,
                           ctx.delay_s * 1000, e)
            await sleep(ctx.delay_s)
            continue
        if attempt > 0 and stats is not None:
            stats.recovered += 1
        return result
    raise AssertionError("unreachable")
