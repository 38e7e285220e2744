"""Pollo adapter: static API key, one endpoint per tier, mixed envelopes."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from segue.errors import UnexpectedEnvelopeError, UnknownStateError
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

POLLO_BASE_URL = "https://pollo.ai/api/platform"
STATUS_PATH = "/generation/task/status"


@dataclass(frozen=True)
class PolloRoute:
    """How one tier is reached on Pollo."""

    model: str
    mode: str | None = None
    supports_tail_image: bool = False
    extra: tuple[tuple[str, Any], ...] = ()


_TIER_ROUTES: dict[QualityTier, PolloRoute] = {
    QualityTier.ECONOMY: PolloRoute(
        "kling-ai/kling-v1-6",
        mode="std",
        supports_tail_image=True,
        extra=(("strength", 50),),
    ),
    QualityTier.BASIC: PolloRoute(
        "pollo/pollo-v1-6",
        mode="basic",
        supports_tail_image=True,
        extra=(("resolution", "480p"),),
    ),
    QualityTier.PRO: PolloRoute("kling-ai/kling-v2-5-turbo", extra=(("strength", 50),)),
    QualityTier.PREMIUM: PolloRoute(
        "runway/runway-gen-4-turbo", extra=(("aspectRatio", "16:9"),)
    ),
}


class PolloTask(BaseModel):
    """Submit/status payload, wrapped or flat depending on the route."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    task_id: str = Field(alias="taskId")
    status: str | None = None
    video_url: str | None = Field(default=None, alias="videoUrl")
    fail_msg: str | None = Field(default=None, alias="failMsg")


class PolloAdapter:
    """Adapter for the Pollo platform API.

    Vocabulary: ``waiting`` → pending, ``processing`` → processing,
    ``succeed`` → succeeded, ``failed`` → failed.
    """

    name = "pollo"

    def __init__(
        self,
        transport: RetryingTransport,
        signer: AuthSigner,
        *,
        base_url: str = POLLO_BASE_URL,
        duration_mode: DurationMode = "round_up",
        clip_seconds: int = DEFAULT_CLIP_SECONDS,
    ) -> None:
        self._transport = transport
        self._signer = signer
        self._base_url = base_url.rstrip("/")
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
        return _TIER_ROUTES[QualityTier(tier)].model

    def normalize_duration(self, seconds: float) -> DurationNormalization:
        return normalize_for(self._capabilities, seconds)

    def endpoint_for(self, request: GenerationRequest) -> str:
        return f"{self._base_url}/generation/{self.model_for_tier(request.quality_tier)}"

    def status_url_for(self, task_id: str) -> str:
        return f"{self._base_url}{STATUS_PATH}/{task_id}"

    def build_payload(self, request: GenerationRequest, duration: int) -> dict[str, Any]:
        route = _TIER_ROUTES[request.quality_tier]
        data: dict[str, Any] = {"prompt": request.prompt, "length": duration}
        if route.mode is not None:
            data["mode"] = route.mode
        data.update(route.extra)
        if request.negative_prompt:
            data["negativePrompt"] = request.negative_prompt
        if request.seed_image is not None:
            data["image"] = encode_image(request.seed_image, data_uri=True)
        if request.seed_tail_image is not None:
            if route.supports_tail_image:
                data["imageTail"] = encode_image(request.seed_tail_image, data_uri=True)
            else:
                log.debug("Tier %s ignores the tail image", request.quality_tier.value)
        return {"input": data, "webhookUrl": None}

    async def _call(
        self, method: str, url: str, *, phase: str, json: dict[str, Any] | None = None
    ) -> PolloTask:
        headers = await self._signer.headers()
        response = await self._transport.send(
            method, url, provider=self.name, phase=phase, headers=headers, json=json
        )
        body = decode_json(response, provider=self.name, phase=phase)
        return unwrap(body, PolloTask, provider=self.name, phase=phase)

    async def submit(
        self, request: GenerationRequest, *, fingerprint: str = ""
    ) -> TaskHandle:
        duration = self.normalize_duration(request.duration_seconds).submitted
        url = self.endpoint_for(request)
        payload = self.build_payload(request, duration)

        async def _once() -> PolloTask:
            return await self._call("POST", url, phase="submit", json=payload)

        task = await self._transport.execute(_once, provider=self.name, phase="submit")
        log.info(
            "Submitted pollo task %s (route=%s, duration=%ss)",
            task.task_id,
            self.model_for_tier(request.quality_tier),
            duration,
        )
        return TaskHandle(
            provider_task_id=task.task_id,
            provider=self.name,
            status_url=self.status_url_for(task.task_id),
            fingerprint=fingerprint,
            submitted_duration=duration,
        )

    async def check_status(self, handle: TaskHandle) -> TaskStatus:
        task = await self._call("GET", handle.status_url, phase="poll")
        return self.parse_status(task)

    async def download(self, url: str) -> bytes:
        return await self._transport.download(url, provider=self.name)

    def parse_status(self, task: PolloTask) -> TaskStatus:
        raw = (task.status or "").strip().lower()
        if raw == "waiting":
            return TaskStatus.pending(raw_state=raw)
        if raw == "processing":
            return TaskStatus.processing(raw_state=raw)
        if raw == "succeed":
            if not task.video_url:
                raise UnexpectedEnvelopeError(
                    f"pollo task {task.task_id} succeeded without a videoUrl",
                    provider=self.name,
                    phase="poll",
                )
            return TaskStatus.succeeded(task.video_url, raw_state=raw)
        if raw == "failed":
            return TaskStatus.failed(task.fail_msg, raw_state=raw)
        raise UnknownStateError(
            f"pollo task {task.task_id} reported unknown state {task.status!r}",
            provider=self.name,
            phase="poll",
        )
