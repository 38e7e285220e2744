"""Native Kling adapter: signed bearer token, wrapped envelopes."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from segue.errors import AuthError, UnexpectedEnvelopeError, UnknownStateError
from segue.models import QualityTier, TaskHandle, TaskStatus
from segue.providers._envelope import decode_json, unwrap
from segue.providers.base import (
    DEFAULT_CLIP_SECONDS,
    ProviderCapabilities,
    encode_image,
    normalize_for,
)

if TYPE_CHECKING:
    from segue.auth import AuthSigner
    from segue.models import DurationMode, DurationNormalization, GenerationRequest
    from segue.transport import RetryingTransport

log = logging.getLogger(__name__)

KLING_BASE_URL = "https://api-singapore.klingai.com"
TEXT2VIDEO_PATH = "/v1/videos/text2video"
IMAGE2VIDEO_PATH = "/v1/videos/image2video"

#: Tier → (model_name, mode)
_TIER_MODELS: dict[QualityTier, tuple[str, str]] = {
    QualityTier.ECONOMY: ("kling-v1-6", "std"),
    QualityTier.BASIC: ("kling-v1-6", "pro"),
    QualityTier.PRO: ("kling-v2-5-turbo", "pro"),
    QualityTier.PREMIUM: ("kling-v2-master", "pro"),
}

_CODE_HINTS: dict[int | str, str] = {
    1102: "The Kling resource pack is depleted. Top up the account, then retry.",
}


class _KlingVideo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str
    duration: str | None = None


class _KlingTaskResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    videos: list[_KlingVideo] = Field(default_factory=list)


class KlingTask(BaseModel):
    """``data`` member of a Kling submit or status envelope."""

    model_config = ConfigDict(extra="ignore")

    task_id: str
    task_status: str | None = None
    task_status_msg: str | None = None
    task_result: _KlingTaskResult | None = None


class KlingAdapter:
    """Adapter for the native Kling video API.

    Vocabulary: ``submitted`` → pending, ``processing`` → processing,
    ``succeed`` → succeeded, ``failed`` → failed.
    """

    name = "kling"

    def __init__(
        self,
        transport: RetryingTransport,
        signer: AuthSigner,
        *,
        base_url: str = KLING_BASE_URL,
        duration_mode: DurationMode = "round_up",
        clip_seconds: int = DEFAULT_CLIP_SECONDS,
        aspect_ratio: str = "16:9",
        cfg_scale: float = 0.5,
    ) -> None:
        self._transport = transport
        self._signer = signer
        self._base_url = base_url.rstrip("/")
        self._aspect_ratio = aspect_ratio
        self._cfg_scale = cfg_scale
        self._capabilities = ProviderCapabilities(
            supports_seed_image=True,
            supports_tail_image=True,
            supports_negative_prompt=True,
            duration_mode=duration_mode,
            clip_seconds=clip_seconds,
        )

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    def model_for_tier(self, tier: QualityTier) -> str:
        return _TIER_MODELS[QualityTier(tier)][0]

    def mode_for_tier(self, tier: QualityTier) -> str:
        return _TIER_MODELS[QualityTier(tier)][1]

    def normalize_duration(self, seconds: float) -> DurationNormalization:
        return normalize_for(self._capabilities, seconds)

    def endpoint_for(self, request: GenerationRequest) -> str:
        path = IMAGE2VIDEO_PATH if request.has_seed else TEXT2VIDEO_PATH
        return f"{self._base_url}{path}"

    def build_payload(self, request: GenerationRequest, duration: int) -> dict[str, Any]:
        """Wire body for a submission; durations travel as strings."""
        payload: dict[str, Any] = {
            "model_name": self.model_for_tier(request.quality_tier),
            "prompt": request.prompt,
            "duration": str(duration),
            "mode": self.mode_for_tier(request.quality_tier),
            "aspect_ratio": self._aspect_ratio,
            "cfg_scale": self._cfg_scale,
        }
        if request.negative_prompt:
            payload["negative_prompt"] = request.negative_prompt
        if request.seed_image is not None:
            payload["image"] = encode_image(request.seed_image)
            if request.seed_tail_image is not None:
                payload["image_tail"] = encode_image(request.seed_tail_image)
        elif request.seed_tail_image is not None:
            # image2video needs a head frame; text2video has no tail field.
            log.warning(
                "Kling ignores a tail image without a seed image; "
                "submitting as text-to-video"
            )
        return payload

    async def _call(
        self, method: str, url: str, *, phase: str, json: dict[str, Any] | None = None
    ) -> KlingTask:
        headers = await self._signer.headers()
        try:
            response = await self._transport.send(
                method, url, provider=self.name, phase=phase, headers=headers, json=json
            )
        except AuthError:
            # A rejected token is never reused.
            self._signer.invalidate()
            raise
        body = decode_json(response, provider=self.name, phase=phase)
        return unwrap(
            body, KlingTask, provider=self.name, phase=phase, code_hints=_CODE_HINTS
        )

    async def submit(
        self, request: GenerationRequest, *, fingerprint: str = ""
    ) -> TaskHandle:
        duration = self.normalize_duration(request.duration_seconds).submitted
        url = self.endpoint_for(request)
        payload = self.build_payload(request, duration)

        async def _once() -> KlingTask:
            return await self._call("POST", url, phase="submit", json=payload)

        task = await self._transport.execute(_once, provider=self.name, phase="submit")
        log.info(
            "Submitted kling task %s (model=%s, duration=%ss)",
            task.task_id,
            payload["model_name"],
            duration,
        )
        return TaskHandle(
            provider_task_id=task.task_id,
            provider=self.name,
            status_url=f"{url}/{task.task_id}",
            fingerprint=fingerprint,
            submitted_duration=duration,
        )

    async def check_status(self, handle: TaskHandle) -> TaskStatus:
        task = await self._call("GET", handle.status_url, phase="poll")
        return self.parse_status(task)

    async def download(self, url: str) -> bytes:
        return await self._transport.download(url, provider=self.name)

    def parse_status(self, task: KlingTask) -> TaskStatus:
        raw = (task.task_status or "").strip().lower()
        if raw == "submitted":
            return TaskStatus.pending(raw_state=raw)
        if raw == "processing":
            return TaskStatus.processing(raw_state=raw)
        if raw == "succeed":
            videos = task.task_result.videos if task.task_result else []
            if not videos or not videos[0].url:
                raise UnexpectedEnvelopeError(
                    f"kling task {task.task_id} succeeded without a video URL",
                    provider=self.name,
                    phase="poll",
                )
            return TaskStatus.succeeded(videos[0].url, raw_state=raw)
        if raw == "failed":
            return TaskStatus.failed(task.task_status_msg, raw_state=raw)
        raise UnknownStateError(
            f"kling task {task.task_id} reported unknown state {task.task_status!r}",
            provider=self.name,
            phase="poll",
        )
