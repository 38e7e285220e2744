"""Poll loop: drive a submitted task to a terminal state.

States: submitted → polling → succeeded | failed | timed out.

The loop sleeps ``interval_s`` before each check. Rate limits and
service-unavailable signals switch it to exponential backoff (1s, doubling,
capped), and the next successful check returns it to the normal interval.
Timeouts are indeterminate: the provider-side job may still finish.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import TYPE_CHECKING

from segue.errors import (
    PollTimeoutError,
    RateLimitError,
    TransientError,
    UnexpectedEnvelopeError,
)
from segue.retry import RetryPolicy, retry_async
from segue.telemetry import Telemetry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from segue.models import TaskHandle, TaskStatus
    from segue.providers.base import ProviderAdapter
    from segue.retry import AttemptOutcome

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollPolicy:
    """Poll cadence, backoff bounds and hard ceilings."""

    interval_s: float = 2.0
    backoff_initial_s: float = 1.0
    backoff_max_s: float = 60.0
    max_attempts: int = 180
    timeout_s: float = 600.0

    def __post_init__(self) -> None:
        """Validate invariants so every loop is guaranteed to end."""
        if self.interval_s < 0:
            raise ValueError("PollPolicy.interval_s must be >= 0")
        if self.backoff_initial_s < 0:
            raise ValueError("PollPolicy.backoff_initial_s must be >= 0")
        if self.backoff_max_s < self.backoff_initial_s:
            raise ValueError("PollPolicy.backoff_max_s must be >= backoff_initial_s")
        if self.max_attempts < 1:
            raise ValueError("PollPolicy.max_attempts must be >= 1")
        if self.timeout_s <= 0:
            raise ValueError("PollPolicy.timeout_s must be > 0")


def next_backoff_delay(
    policy: PollPolicy, previous: float | None, retry_after_s: float | None = None
) -> float:
    """Delay after a backoff signal.

    Never smaller than *previous*, at least the provider's Retry-After, and
    never above ``backoff_max_s``.
    """
    if previous is None:
        delay = policy.backoff_initial_s
    else:
        delay = previous * 2 if previous > 0 else policy.backoff_initial_s
    if retry_after_s is not None:
        delay = max(delay, retry_after_s)
    return min(delay, policy.backoff_max_s)


class PollLoop:
    """Repeatedly invoke ``adapter.check_status`` until a terminal state.

    The first check runs under the submission retry policy; later checks are
    single attempts governed by the backoff rules above.
    """

    def __init__(
        self,
        *,
        policy: PollPolicy | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.policy = policy or PollPolicy()
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock
        self._telemetry = telemetry or Telemetry()

    async def run(
        self,
        adapter: ProviderAdapter,
        handle: TaskHandle,
        *,
        on_status: Callable[[TaskStatus], None] | None = None,
    ) -> TaskStatus:
        """Return the terminal status for *handle*.

        Raises:
            PollTimeoutError: Attempt ceiling or wall-clock timeout reached.
            UnknownStateError: The provider reported an unrecognized state.
            AuthError, PermanentError: Propagated from the adapter immediately.
        """
        policy = self.policy
        task_id = handle.provider_task_id
        start = self._clock()
        attempts = 0
        backoff: float | None = None
        envelope_strikes = 0
        last_state: str | None = None
        retry_delays: list[float] = []

        def _note_retry(outcome: AttemptOutcome) -> None:
            if outcome.delay_s is not None:
                retry_delays.append(outcome.delay_s)

        while True:
            elapsed = self._clock() - start
            if attempts >= policy.max_attempts or elapsed >= policy.timeout_s:
                self._telemetry.record(
                    "poll.timeout",
                    provider=handle.provider,
                    task_id=task_id,
                    attempts=attempts,
                    elapsed_s=elapsed,
                )
                raise PollTimeoutError(
                    f"{handle.provider} task {task_id} did not finish after "
                    f"{attempts} check(s) / {elapsed:.0f}s",
                    provider=handle.provider,
                    phase="poll",
                )

            await self._sleep(backoff if backoff is not None else policy.interval_s)
            attempts += 1

            try:
                if attempts == 1:
                    status = await retry_async(
                        lambda: adapter.check_status(handle),
                        policy=self.retry_policy,
                        sleep=self._sleep,
                        on_attempt=_note_retry,
                    )
                else:
                    status = await adapter.check_status(handle)
            except (RateLimitError, TransientError, UnexpectedEnvelopeError) as e:
                if isinstance(e, UnexpectedEnvelopeError):
                    envelope_strikes += 1
                    if envelope_strikes > self.retry_policy.max_envelope_retries:
                        raise
                if backoff is None and retry_delays:
                    # Continue from the first check's retries; never shorten.
                    backoff = retry_delays[-1]
                retry_delays.clear()
                backoff = next_backoff_delay(policy, backoff, e.retry_after_s)
                log.warning(
                    "Poll of %s task %s hit %s; backing off %.1fs",
                    handle.provider,
                    task_id,
                    type(e).__name__,
                    backoff,
                )
                self._telemetry.record(
                    "poll.backoff",
                    provider=handle.provider,
                    task_id=task_id,
                    delay_s=backoff,
                    status_code=e.status_code,
                )
                continue

            backoff = None
            retry_delays.clear()
            envelope_strikes = 0
            if status.state != last_state:
                last_state = status.state
                log.debug("%s task %s is %s", handle.provider, task_id, status.state)
                self._telemetry.record(
                    "poll.status",
                    provider=handle.provider,
                    task_id=task_id,
                    state=status.state,
                    raw_state=status.raw_state,
                )
                notify_observer(on_status, status)
            if status.is_terminal:
                return status


def notify_observer(
    observer: Callable[[TaskStatus], None] | None, status: TaskStatus
) -> None:
    """Deliver *status* to *observer*; a failing observer is only logged."""
    if observer is None:
        return
    try:
        observer(status)
    except Exception as e:
        log.error("Status observer failed: %s", e, exc_info=True)
