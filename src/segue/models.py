"""Domain models shared by adapters, the poll loop, and the cache."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time
from typing import TYPE_CHECKING, Literal

from segue.errors import ConfigurationError

if TYPE_CHECKING:
    from pathlib import Path

ProviderName = Literal["kling", "pollo", "mock"]
TaskState = Literal["pending", "processing", "succeeded", "failed"]
DurationMode = Literal["round_up", "fixed_clip"]


class QualityTier(str, Enum):
    """Customer-facing quality tiers; adapters map each onto a concrete model."""

    ECONOMY = "Economy"
    BASIC = "Basic"
    PRO = "Pro"
    PREMIUM = "Premium"


@dataclass(frozen=True)
class GenerationRequest:
    """An immutable request for one video clip."""

    prompt: str
    duration_seconds: float = 5.0
    quality_tier: QualityTier = QualityTier.BASIC
    seed_image: bytes | None = field(default=None, repr=False)
    seed_tail_image: bytes | None = field(default=None, repr=False)
    negative_prompt: str | None = None
    camera_hint: str | None = None
    #: Position of a follow-on clip when a long request is split into
    #: fixed-length clips. Part of the cache identity; never sent to providers.
    segment_index: int | None = None

    def __post_init__(self) -> None:
        """Reject requests no provider could accept."""
        if not isinstance(self.prompt, str) or not self.prompt.strip():
            raise ConfigurationError(
                "prompt is empty or whitespace-only",
                hint="Each request needs a non-empty prompt.",
            )
        if self.duration_seconds <= 0:
            raise ConfigurationError(
                f"duration_seconds must be > 0, got {self.duration_seconds}",
                hint="Providers accept short clips, typically 5 or 10 seconds.",
            )
        if self.segment_index is not None and self.segment_index < 0:
            raise ConfigurationError(
                f"segment_index must be >= 0, got {self.segment_index}"
            )
        if not isinstance(self.quality_tier, QualityTier):
            object.__setattr__(self, "quality_tier", QualityTier(self.quality_tier))

    @property
    def has_seed(self) -> bool:
        """Whether an image seeds this request."""
        return self.seed_image is not None


@dataclass(frozen=True)
class DurationNormalization:
    """Record of how a requested duration became a submitted one."""

    requested: float
    submitted: int

    @property
    def rounded(self) -> bool:
        """True when the submitted duration differs from the request."""
        return float(self.submitted) != float(self.requested)


@dataclass(frozen=True)
class TaskHandle:
    """A single submitted unit of provider work. Immutable once created."""

    provider_task_id: str
    provider: str
    status_url: str
    fingerprint: str = ""
    submitted_at: float = field(default_factory=time.time)
    submitted_duration: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Serialize for the task journal."""
        return {
            "provider_task_id": self.provider_task_id,
            "provider": self.provider,
            "status_url": self.status_url,
            "fingerprint": self.fingerprint,
            "submitted_at": self.submitted_at,
            "submitted_duration": self.submitted_duration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> TaskHandle:
        """Rebuild a handle written by :meth:`to_dict`."""
        duration = data.get("submitted_duration")
        submitted_at = data.get("submitted_at")
        return cls(
            provider_task_id=str(data["provider_task_id"]),
            provider=str(data["provider"]),
            status_url=str(data.get("status_url", "")),
            fingerprint=str(data.get("fingerprint", "")),
            submitted_at=float(submitted_at)
            if isinstance(submitted_at, int | float)
            else time.time(),
            submitted_duration=int(duration) if isinstance(duration, int) else None,
        )


@dataclass(frozen=True)
class TaskStatus:
    """Provider-agnostic task status.

    ``raw_state`` keeps the provider's own word for diagnostics; nothing
    downstream of the adapter should branch on it.
    """

    state: TaskState
    video_url: str | None = None
    reason: str | None = None
    raw_state: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Succeeded and failed admit no further transitions."""
        return self.state in ("succeeded", "failed")

    @classmethod
    def pending(cls, raw_state: str | None = None) -> TaskStatus:
        return cls("pending", raw_state=raw_state)

    @classmethod
    def processing(cls, raw_state: str | None = None) -> TaskStatus:
        return cls("processing", raw_state=raw_state)

    @classmethod
    def succeeded(cls, video_url: str, raw_state: str | None = None) -> TaskStatus:
        return cls("succeeded", video_url=video_url, raw_state=raw_state)

    @classmethod
    def failed(cls, reason: str | None, raw_state: str | None = None) -> TaskStatus:
        return cls("failed", reason=reason, raw_state=raw_state)


CacheState = Literal["in_progress", "complete", "failed"]


@dataclass
class CacheEntry:
    """Cache bookkeeping for one fingerprint."""

    fingerprint: str
    state: CacheState
    handle: TaskHandle | None = None
    artifact_path: Path | None = None
    size_bytes: int = 0
    produced_at: float | None = None
    reason: str | None = None
    failed_at: float | None = None


@dataclass(frozen=True)
class ContinuityLink:
    """Audit record tying clip N's artifact to clip N+1's seed."""

    from_fingerprint: str
    to_fingerprint: str
    seed_digest: str
