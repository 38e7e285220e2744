"""Minimal async retry with explicit error contracts.

Design goals:
- Small API surface
- Explicit state (policy + attempt counters)
- No brittle substring matching for retry decisions
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

import httpx

from segue.errors import (
    APIError,
    AuthError,
    PermanentError,
    RateLimitError,
    TransientError,
    UnexpectedEnvelopeError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff and optional jitter.

    With the defaults, three consecutive transient failures sleep 2s and then
    4s between attempts before the last error surfaces.
    """

    max_attempts: int = 3
    initial_delay_s: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay_s: float = 60.0
    jitter: bool = False  # "full jitter" when enabled
    max_elapsed_s: float | None = None
    #: Decode failures on success envelopes get this many retries per call.
    max_envelope_retries: int = 1

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.initial_delay_s < 0:
            raise ValueError("RetryPolicy.initial_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            raise ValueError("RetryPolicy.max_delay_s must be >= 0")
        if self.max_elapsed_s is not None and self.max_elapsed_s < 0:
            raise ValueError("RetryPolicy.max_elapsed_s must be >= 0 or None")
        if self.max_envelope_retries < 0:
            raise ValueError("RetryPolicy.max_envelope_retries must be >= 0")


@dataclass(frozen=True)
class AttemptOutcome:
    """Diagnostics for one attempt; not part of the functional contract."""

    attempt: int
    elapsed_s: float
    error: BaseException | None = None
    delay_s: float | None = None


def _retry_after_from_error(exc: BaseException) -> float | None:
    if isinstance(exc, APIError):
        v = exc.retry_after_s
        if isinstance(v, (int, float)) and v >= 0:
            return float(v)
    return None


def _is_transient_network_error(exc: BaseException) -> bool:
    for e in _walk_exception_chain(exc):
        if isinstance(e, (TimeoutError, asyncio.TimeoutError)):
            return True
        if isinstance(e, (httpx.TransportError, httpx.TimeoutException)):
            return True
    return False


def should_retry_submission(exc: BaseException) -> bool:
    """Return True when a submission (or first status check) should be retried.

    Contract:
    - Cancellation is never retried.
    - AuthError and PermanentError abort immediately.
    - TransientError, RateLimitError and UnexpectedEnvelopeError are retried.
    - Raw network/timeouts are retried as a pragmatic fallback.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, (AuthError, PermanentError)):
        return False
    if isinstance(exc, (TransientError, RateLimitError, UnexpectedEnvelopeError)):
        return True
    if isinstance(exc, APIError):
        return exc.retryable is True
    return _is_transient_network_error(exc)


def compute_backoff_delay(policy: RetryPolicy, *, retry_index: int) -> float:
    """Delay before retry number *retry_index* (1-based)."""
    base = policy.initial_delay_s * (
        policy.backoff_multiplier ** max(0, retry_index - 1)
    )
    base = min(policy.max_delay_s, base)
    if base <= 0:
        return 0.0
    if not policy.jitter:
        return base
    # Full jitter: random in [0, base] to avoid thundering herd.
    return random.random() * base  # noqa: S311


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry_submission,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_attempt: Callable[[AttemptOutcome], None] | None = None,
) -> T:
    """Run an async factory with bounded retries.

    ``UnexpectedEnvelopeError`` is retried at most
    ``policy.max_envelope_retries`` times per call regardless of
    ``max_attempts``; after that it surfaces.
    """
    start = time.monotonic()
    last_exc: BaseException | None = None
    envelope_retries = 0

    for attempt in range(1, policy.max_attempts + 1):
        attempt_start = time.monotonic()
        try:
            result = await factory()
        except Exception as exc:
            last_exc = exc
            elapsed = time.monotonic() - attempt_start
            retry = should_retry(exc) and attempt < policy.max_attempts
            if retry and isinstance(exc, UnexpectedEnvelopeError):
                envelope_retries += 1
                retry = envelope_retries <= policy.max_envelope_retries

            if not retry:
                if on_attempt is not None:
                    on_attempt(AttemptOutcome(attempt, elapsed, error=exc))
                raise

            retry_after = _retry_after_from_error(exc)
            delay = compute_backoff_delay(policy, retry_index=attempt)
            if retry_after is not None:
                delay = max(delay, retry_after)

            if policy.max_elapsed_s is not None:
                remaining = policy.max_elapsed_s - (time.monotonic() - start)
                if remaining <= 0:
                    raise
                delay = min(delay, remaining)

            if on_attempt is not None:
                on_attempt(AttemptOutcome(attempt, elapsed, error=exc, delay_s=delay))
            log.debug(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt,
                policy.max_attempts,
                type(exc).__name__,
                delay,
            )
            if delay > 0:
                await sleep(delay)
        else:
            if on_attempt is not None:
                on_attempt(AttemptOutcome(attempt, time.monotonic() - attempt_start))
            return result

    # Unreachable: the loop always returns or raises.
    if last_exc is None:  # pragma: no cover
        raise RuntimeError("retry_async exhausted without an exception")
    raise last_exc
