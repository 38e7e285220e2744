"""Mock adapter for demo mode and tests."""

from __future__ import annotations

import itertools
from typing import TYPE_CHECKING

from segue.fingerprint import digest_bytes
from segue.models import TaskHandle, TaskStatus
from segue.providers.base import ProviderCapabilities, normalize_for

if TYPE_CHECKING:
    from segue.models import (
        DurationMode,
        DurationNormalization,
        GenerationRequest,
        QualityTier,
    )

MOCK_URL_SCHEME = "mock://"


class MockAdapter:
    """Mock adapter that never touches the network.

    Every task reports pending once, processing ``processing_polls`` times,
    then succeeds with a synthetic clip. The clip bytes are derived from the
    task id, so identical runs produce identical artifacts. Only tasks that
    have not yet succeeded are tracked.
    """

    name = "mock"

    def __init__(
        self,
        *,
        processing_polls: int = 1,
        duration_mode: DurationMode = "round_up",
        clip_seconds: int = 5,
    ) -> None:
        self._processing_polls = processing_polls
        self._capabilities = ProviderCapabilities(
            supports_seed_image=True,
            supports_tail_image=True,
            supports_negative_prompt=True,
            duration_mode=duration_mode,
            clip_seconds=clip_seconds,
        )
        self._ids = itertools.count(1)
        self._checks: dict[str, int] = {}
        self.submit_count = 0

    @property
    def outstanding(self) -> int:
        """Tasks submitted but not yet reported as succeeded."""
        return len(self._checks)

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    def model_for_tier(self, tier: QualityTier) -> str:
        return f"mock-{tier.value.lower()}"

    def normalize_duration(self, seconds: float) -> DurationNormalization:
        return normalize_for(self._capabilities, seconds)

    async def submit(
        self, request: GenerationRequest, *, fingerprint: str = ""
    ) -> TaskHandle:
        self.submit_count += 1
        task_id = f"mock-{next(self._ids)}"
        self._checks[task_id] = 0
        return TaskHandle(
            provider_task_id=task_id,
            provider=self.name,
            status_url=f"{MOCK_URL_SCHEME}status/{task_id}",
            fingerprint=fingerprint,
            submitted_duration=self.normalize_duration(request.duration_seconds).submitted,
        )

    async def check_status(self, handle: TaskHandle) -> TaskStatus:
        task_id = handle.provider_task_id
        # Untracked ids are finished tasks, including ones journaled by an
        # earlier process.
        seen = self._checks.get(task_id)
        if seen is not None:
            self._checks[task_id] = seen + 1
            if seen == 0:
                return TaskStatus.pending(raw_state="waiting")
            if seen <= self._processing_polls:
                return TaskStatus.processing(raw_state="processing")
            del self._checks[task_id]
        return TaskStatus.succeeded(
            f"{MOCK_URL_SCHEME}video/{task_id}", raw_state="succeed"
        )

    async def download(self, url: str) -> bytes:
        return f"mock-video:{digest_bytes(url.encode())}".encode()
