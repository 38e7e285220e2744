"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off adapters and HTTP stubs as coverage expands.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from segue.cache import ResultCache
from segue.continuity import ContinuityBridge
from segue.errors import FrameExtractionError
from segue.orchestrator import Orchestrator
from segue.poll import PollLoop, PollPolicy
from segue.retry import RetryPolicy

if TYPE_CHECKING:
    from pathlib import Path

    from segue.journal import TaskJournal
    from segue.policy import BillingPolicy
    from segue.telemetry import Telemetry
    from tests.conftest import FakeAdapter, InMemoryArtifactStore

#: Polls as fast as the event loop allows; ceilings stay finite.
FAST_POLL = PollPolicy(
    interval_s=0.0,
    backoff_initial_s=0.0,
    backoff_max_s=0.0,
    max_attempts=20,
    timeout_s=60.0,
)
FAST_RETRY = RetryPolicy(max_attempts=3, initial_delay_s=0.0)


@dataclass
class SleepRecorder:
    """Async sleep replacement that records requested delays and only yields."""

    delays: list[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@dataclass
class FakeFrameExtractor:
    """Derives a "frame" from the stored artifact; fails on chosen call indexes."""

    store: InMemoryArtifactStore
    fail_on: set[int] = field(default_factory=set)
    calls: list[Path] = field(default_factory=list)

    def extract_last_frame(self, path: Path) -> bytes:
        index = len(self.calls)
        self.calls.append(path)
        if index in self.fail_on:
            raise FrameExtractionError(f"no frame in {path.name}")
        return b"frame:" + self.store.read(path)


class StaticHeaders:
    """AuthSigner double returning fixed headers and counting invalidations."""

    def __init__(self, headers: dict[str, str] | None = None) -> None:
        self._headers = headers or {"Authorization": "Bearer test-token"}
        self.invalidations = 0

    async def headers(self) -> dict[str, str]:
        return dict(self._headers)

    def invalidate(self) -> None:
        self.invalidations += 1


@dataclass
class ScriptedHTTP:
    """``httpx.MockTransport`` handler answering from per-route queues.

    Each route is keyed by ``(method, path)``. Queued responses are consumed
    in order and the last one repeats; unknown routes answer 404.
    """

    routes: dict[tuple[str, str], list[dict[str, Any]]] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    def add(
        self, method: str, path: str, status: int = 200, **kwargs: Any
    ) -> ScriptedHTTP:
        self.routes.setdefault((method, path), []).append(
            {"status_code": status, **kwargs}
        )
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": f"no route {request.url.path}"})
        spec = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(**spec)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def calls_to(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r for r in self.requests if r.method == method and r.url.path == path
        ]


def make_orchestrator(
    *adapters: FakeAdapter,
    store: InMemoryArtifactStore,
    journal: TaskJournal | None = None,
    extractor: Any = None,
    billing: BillingPolicy | None = None,
    telemetry: Telemetry | None = None,
    poll_policy: PollPolicy = FAST_POLL,
    budget_bytes: int | None = None,
    request_concurrency: int = 4,
) -> Orchestrator:
    """Wire an orchestrator around fakes with no real sleeping anywhere."""
    return Orchestrator(
        {a.name: a for a in adapters},
        default_provider=adapters[0].name,
        cache=ResultCache(store, budget_bytes=budget_bytes, telemetry=telemetry),
        journal=journal,
        continuity=ContinuityBridge(
            extractor or FakeFrameExtractor(store), telemetry=telemetry
        ),
        poll_loop=PollLoop(
            policy=poll_policy,
            retry_policy=FAST_RETRY,
            sleep=SleepRecorder(),
            telemetry=telemetry,
        ),
        billing=billing,
        telemetry=telemetry,
        request_concurrency=request_concurrency,
    )
