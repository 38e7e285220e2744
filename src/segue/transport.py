"""Retrying HTTP transport shared by provider adapters.

``send`` performs exactly one HTTP exchange and classifies its outcome;
``execute`` runs a whole call (send plus decode) under the retry policy. The
split keeps envelope decode failures inside the retried unit.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from segue._http import DEFAULT_TIMEOUT_S
from segue.providers._errors import map_http_error, wrap_transport_error
from segue.retry import AttemptOutcome, RetryPolicy, retry_async
from segue.telemetry import Telemetry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

log = logging.getLogger(__name__)


class RetryingTransport:
    """Bounded-attempt HTTP calls with classification and diagnostics.

    The transport owns its ``httpx.AsyncClient`` unless one is injected.
    Attempts are observable through logging and the ``transport.attempt``
    telemetry event; neither is part of the functional contract.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        policy: RetryPolicy | None = None,
        telemetry: Telemetry | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self.policy = policy or RetryPolicy()
        self._telemetry = telemetry or Telemetry()
        self._sleep = sleep

    async def send(
        self,
        method: str,
        url: str,
        *,
        provider: str,
        phase: str,
        headers: dict[str, str] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        """One HTTP exchange. Non-2xx and network failures raise APIError."""
        start = time.monotonic()
        try:
            response = await self._client.request(method, url, headers=headers, json=json)
        except Exception as e:
            raise wrap_transport_error(e, provider=provider, phase=phase) from e

        self._telemetry.record(
            "transport.response",
            provider=provider,
            phase=phase,
            status_code=response.status_code,
            response_bytes=len(response.content),
            elapsed_s=time.monotonic() - start,
        )
        if not response.is_success:
            raise map_http_error(response, provider=provider, phase=phase)
        return response

    async def execute(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        provider: str,
        phase: str,
        policy: RetryPolicy | None = None,
    ) -> T:
        """Run *call* under the retry policy and return its result."""

        def _observe(outcome: AttemptOutcome) -> None:
            err = outcome.error
            result = "ok" if err is None else type(err).__name__
            if err is not None:
                log.info(
                    "%s %s attempt %d failed after %.2fs: %s",
                    provider,
                    phase,
                    outcome.attempt,
                    outcome.elapsed_s,
                    err,
                )
            self._telemetry.record(
                "transport.attempt",
                provider=provider,
                phase=phase,
                attempt=outcome.attempt,
                elapsed_s=outcome.elapsed_s,
                outcome=result,
                delay_s=outcome.delay_s,
            )

        return await retry_async(
            call,
            policy=policy or self.policy,
            sleep=self._sleep,
            on_attempt=_observe,
        )

    async def download(self, url: str, *, provider: str) -> bytes:
        """Fetch a finished artifact; retried like a submission."""

        async def _once() -> bytes:
            response = await self.send("GET", url, provider=provider, phase="download")
            if not response.content:
                raise wrap_transport_error(
                    httpx.ReadError("empty artifact body"),
                    provider=provider,
                    phase="download",
                )
            return response.content

        data = await self.execute(_once, provider=provider, phase="download")
        log.debug("Downloaded %d bytes from %s", len(data), provider)
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> RetryingTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
