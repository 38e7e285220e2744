"""Provider protocol: minimal interface for video generation providers."""

from __future__ import annotations

import base64
from dataclasses import dataclass
import math
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from segue.errors import ConfigurationError
from segue.models import DurationNormalization

if TYPE_CHECKING:
    from collections.abc import Sequence

    from segue.models import (
        DurationMode,
        GenerationRequest,
        QualityTier,
        TaskHandle,
        TaskStatus,
    )

DEFAULT_VALID_DURATIONS: tuple[int, ...] = (5, 10)
DEFAULT_CLIP_SECONDS = 5


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags exposed by providers."""

    valid_durations: tuple[int, ...] = DEFAULT_VALID_DURATIONS
    supports_seed_image: bool = True
    supports_tail_image: bool = False
    supports_negative_prompt: bool = False
    duration_mode: DurationMode = "round_up"
    clip_seconds: int = DEFAULT_CLIP_SECONDS

    def __post_init__(self) -> None:
        """Reject duration policies no submission could satisfy."""
        if not self.valid_durations or any(d <= 0 for d in self.valid_durations):
            raise ConfigurationError(
                "valid_durations must be a non-empty set of positive integers"
            )
        if self.duration_mode not in ("round_up", "fixed_clip"):
            raise ConfigurationError(
                f"Unknown duration mode {self.duration_mode!r}",
                hint="Use 'round_up' or 'fixed_clip'.",
            )
        fixed = self.duration_mode == "fixed_clip"
        if fixed and self.clip_seconds not in self.valid_durations:
            raise ConfigurationError(
                f"clip_seconds={self.clip_seconds} is not a valid duration",
                hint=f"Pick one of {sorted(self.valid_durations)}.",
            )


@runtime_checkable
class ProviderAdapter(Protocol):
    """Minimal adapter protocol: submit, check_status, plus pure helpers.

    The adapter is the only place that knows a provider's wire shapes and
    status vocabulary.
    """

    name: str

    async def submit(
        self, request: GenerationRequest, *, fingerprint: str = ""
    ) -> TaskHandle:
        """Submit *request* and return the provider's handle for it."""
        ...

    async def check_status(self, handle: TaskHandle) -> TaskStatus:
        """Perform one status check (no retries)."""
        ...

    async def download(self, url: str) -> bytes:
        """Fetch the finished video behind *url*."""
        ...

    def normalize_duration(self, seconds: float) -> DurationNormalization:
        """Map a requested duration onto one the provider accepts."""
        ...

    def model_for_tier(self, tier: QualityTier) -> str:
        """Pure tier → model mapping."""
        ...

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Duration policy and feature flags."""
        ...


def round_up_duration(seconds: float, valid: Sequence[int]) -> DurationNormalization:
    """Round *seconds* up to the next valid duration.

    Durations never shrink below the smallest valid value. Anything above the
    largest valid value is clamped to it (the clamp is visible in
    ``DurationNormalization.rounded``).
    """
    ordered = sorted(valid)
    target = math.ceil(seconds - 1e-9)
    for candidate in ordered:
        if candidate >= target:
            return DurationNormalization(requested=seconds, submitted=candidate)
    return DurationNormalization(requested=seconds, submitted=ordered[-1])


def normalize_for(caps: ProviderCapabilities, seconds: float) -> DurationNormalization:
    """Apply the provider's duration mode to *seconds*."""
    if caps.duration_mode == "fixed_clip":
        return DurationNormalization(requested=seconds, submitted=caps.clip_seconds)
    return round_up_duration(seconds, caps.valid_durations)


def encode_image(data: bytes, *, data_uri: bool = False) -> str:
    """Base64-encode a seed image, optionally as a JPEG data URI."""
    encoded = base64.b64encode(data).decode("ascii")
    if data_uri:
        return f"data:image/jpeg;base64,{encoded}"
    return encoded
