"""Segue: continuity-chained video generation over async provider APIs.

Public API:
    - generate(): One clip, cached by request fingerprint
    - generate_chain(): Ordered clips, each seeded from the previous clip's last frame
    - Orchestrator: Long-lived orchestration with status streams and reconcile
    - GenerationRequest: Immutable request value
    - Config: Configuration dataclass
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from segue.config import Config
from segue.errors import (
    APIError,
    AuthError,
    ConfigurationError,
    CredentialNotFoundError,
    ErrorReport,
    FrameExtractionError,
    GenerationFailedError,
    InternalError,
    PermanentError,
    PollTimeoutError,
    RateLimitError,
    SegueError,
    TransientError,
    UnexpectedEnvelopeError,
    UnknownStateError,
    describe_error,
)
from segue.models import GenerationRequest, QualityTier, TaskHandle, TaskStatus
from segue.orchestrator import Orchestrator
from segue.poll import PollPolicy
from segue.policy import BillingPolicy, DemoBilling, NoBilling
from segue.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("segue-video")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("segue").addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)


async def generate(
    request: GenerationRequest,
    *,
    config: Config,
    provider: str | None = None,
    on_status: Callable[[TaskStatus], None] | None = None,
) -> Path:
    """Generate one clip and return the path of the cached artifact.

    Args:
        request: What to generate.
        config: Configuration specifying the provider and credentials.
        provider: Override ``config.provider`` for this call.
        on_status: Called with each distinct status while the task runs.

    Example:
        config = Config(provider="kling")
        path = await generate(GenerationRequest("a lighthouse at dusk"), config=config)
    """
    async with Orchestrator.from_config(config) as orchestrator:
        return await orchestrator.generate(
            request, provider=provider, on_status=on_status
        )


async def generate_chain(
    requests: Sequence[GenerationRequest],
    *,
    config: Config,
    provider: str | None = None,
    continuity: bool = True,
    on_status: Callable[[TaskStatus], None] | None = None,
) -> list[Path]:
    """Generate an ordered sequence of clips with visual continuity.

    Each clip after the first is seeded with the last frame of the clip
    before it. If a frame cannot be extracted, that link falls back to a
    plain request and the chain carries on.

    Example:
        paths = await generate_chain(
            [GenerationRequest("a knight rides out"), GenerationRequest("the gate closes")],
            config=Config(provider="pollo"),
        )
    """
    async with Orchestrator.from_config(config) as orchestrator:
        return await orchestrator.generate_chain(
            requests, provider=provider, continuity=continuity, on_status=on_status
        )


__all__ = [
    "APIError",
    "AuthError",
    "BillingPolicy",
    "Config",
    "ConfigurationError",
    "CredentialNotFoundError",
    "DemoBilling",
    "ErrorReport",
    "FrameExtractionError",
    "GenerationFailedError",
    "GenerationRequest",
    "InternalError",
    "NoBilling",
    "Orchestrator",
    "PermanentError",
    "PollPolicy",
    "PollTimeoutError",
    "QualityTier",
    "RateLimitError",
    "RetryPolicy",
    "SegueError",
    "TaskHandle",
    "TaskStatus",
    "TransientError",
    "UnexpectedEnvelopeError",
    "UnknownStateError",
    "describe_error",
    "generate",
    "generate_chain",
]
