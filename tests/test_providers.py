"""Provider adapters against recorded wire shapes."""

from __future__ import annotations

import base64
import json
import logging

import pytest

from segue.errors import (
    AuthError,
    ConfigurationError,
    PermanentError,
    RateLimitError,
    TransientError,
    UnexpectedEnvelopeError,
    UnknownStateError,
)
from segue.models import GenerationRequest, QualityTier, TaskHandle
from segue.providers import KlingAdapter, MockAdapter, PolloAdapter
from segue.providers.base import (
    ProviderAdapter,
    ProviderCapabilities,
    encode_image,
    normalize_for,
    round_up_duration,
)
from segue.providers.kling import KlingTask
from segue.retry import RetryPolicy
from segue.transport import RetryingTransport
from tests.helpers import ScriptedHTTP, SleepRecorder, StaticHeaders

pytestmark = pytest.mark.contract

KLING_T2V = "/v1/videos/text2video"
KLING_I2V = "/v1/videos/image2video"
KLING_STATUS_URL = f"https://api-singapore.klingai.com{KLING_T2V}/k-1"
POLLO_ROOT = "/api/platform"
POLLO_STATUS = f"{POLLO_ROOT}/generation/task/status"
POLLO_VIDEO = "https://cdn/p.mp4"


def _transport(http: ScriptedHTTP, **policy: float) -> RetryingTransport:
    return RetryingTransport(
        http.client(),
        policy=RetryPolicy(initial_delay_s=0.0, **policy),
        sleep=SleepRecorder(),
    )


def _kling_body(data: dict, code: int = 0, message: str = "SUCCEED") -> dict:
    return {"code": code, "message": message, "request_id": "req-1", "data": data}


# =============================================================================
# Duration normalization and tiers
# =============================================================================


@pytest.mark.parametrize(
    ("requested", "submitted"),
    [(1, 5), (4.2, 5), (5, 5), (5.0, 5), (6, 10), (7, 10), (10, 10), (12, 10)],
)
def test_round_up_duration(requested: float, submitted: int) -> None:
    result = round_up_duration(requested, (5, 10))
    assert result.submitted == submitted
    assert result.rounded is (float(requested) != float(submitted))


def test_fixed_clip_mode_always_submits_clip_length() -> None:
    caps = ProviderCapabilities(duration_mode="fixed_clip", clip_seconds=5)
    assert normalize_for(caps, 12).submitted == 5
    assert normalize_for(caps, 3).submitted == 5


def test_capabilities_reject_impossible_policies() -> None:
    with pytest.raises(ConfigurationError):
        ProviderCapabilities(duration_mode="fixed_clip", clip_seconds=7)
    with pytest.raises(ConfigurationError):
        ProviderCapabilities(duration_mode="stretch")  # type: ignore[arg-type]
    with pytest.raises(ConfigurationError):
        ProviderCapabilities(valid_durations=())


def test_adapters_satisfy_the_protocol() -> None:
    http = ScriptedHTTP()
    transport = _transport(http)
    for adapter in (
        KlingAdapter(transport, StaticHeaders()),
        PolloAdapter(transport, StaticHeaders()),
        MockAdapter(),
    ):
        assert isinstance(adapter, ProviderAdapter)


@pytest.mark.parametrize(
    ("tier", "kling_model", "pollo_model"),
    [
        (QualityTier.ECONOMY, "kling-v1-6", "kling-ai/kling-v1-6"),
        (QualityTier.BASIC, "kling-v1-6", "pollo/pollo-v1-6"),
        (QualityTier.PRO, "kling-v2-5-turbo", "kling-ai/kling-v2-5-turbo"),
        (QualityTier.PREMIUM, "kling-v2-master", "runway/runway-gen-4-turbo"),
    ],
)
def test_tier_to_model_mapping(
    tier: QualityTier, kling_model: str, pollo_model: str
) -> None:
    transport = _transport(ScriptedHTTP())
    assert KlingAdapter(transport, StaticHeaders()).model_for_tier(tier) == kling_model
    assert PolloAdapter(transport, StaticHeaders()).model_for_tier(tier) == pollo_model


def test_image_encoding() -> None:
    assert encode_image(b"\xff\xd8") == base64.b64encode(b"\xff\xd8").decode()
    uri = encode_image(b"\xff\xd8", data_uri=True)
    assert uri.startswith("data:image/jpeg;base64,")


# =============================================================================
# Kling
# =============================================================================


@pytest.mark.asyncio
async def test_kling_text_submit_payload_and_handle() -> None:
    http = ScriptedHTTP().add(
        "POST",
        KLING_T2V,
        json=_kling_body({"task_id": "k-1", "task_status": "submitted"}),
    )
    adapter = KlingAdapter(_transport(http), StaticHeaders())
    request = GenerationRequest(
        "a lighthouse at dusk", duration_seconds=7, negative_prompt="blurry"
    )

    handle = await adapter.submit(request, fingerprint="fp-1")

    assert handle.provider_task_id == "k-1"
    assert handle.provider == "kling"
    assert handle.fingerprint == "fp-1"
    assert handle.submitted_duration == 10
    assert handle.status_url.endswith(f"{KLING_T2V}/k-1")
    (sent,) = http.requests
    assert sent.headers["Authorization"] == "Bearer test-token"
    body = json.loads(sent.content)
    assert body["duration"] == "10"
    assert body["model_name"] == "kling-v1-6"
    assert body["mode"] == "pro"
    assert body["negative_prompt"] == "blurry"
    assert "image" not in body


@pytest.mark.asyncio
async def test_kling_seeded_submit_uses_image_endpoint() -> None:
    http = ScriptedHTTP().add(
        "POST",
        KLING_I2V,
        json=_kling_body({"task_id": "k-2", "task_status": "submitted"}),
    )
    adapter = KlingAdapter(_transport(http), StaticHeaders())
    request = GenerationRequest("p", seed_image=b"head", seed_tail_image=b"tail")

    await adapter.submit(request)

    body = json.loads(http.requests[0].content)
    assert body["image"] == base64.b64encode(b"head").decode()
    assert body["image_tail"] == base64.b64encode(b"tail").decode()



@pytest.mark.asyncio
async def test_kling_tail_without_seed_is_logged_and_dropped(
    caplog: pytest.LogCaptureFixture,
) -> None:
    http = ScriptedHTTP().add(
        "POST",
        KLING_T2V,
        json=_kling_body({"task_id": "k-3", "task_status": "submitted"}),
    )
    adapter = KlingAdapter(_transport(http), StaticHeaders())
    request = GenerationRequest("p", seed_tail_image=b"tail")

    with caplog.at_level(logging.WARNING, logger="segue.providers.kling"):
        await adapter.submit(request)

    body = json.loads(http.requests[0].content)
    assert "image" not in body
    assert "image_tail" not in body
    assert "tail image" in caplog.text

@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("raw", "state"),
    [("submitted", "pending"), ("processing", "processing"), ("failed", "failed")],
)
async def test_kling_status_vocabulary(raw: str, state: str) -> None:
    http = ScriptedHTTP().add(
        "GET",
        f"{KLING_T2V}/k-1",
        json=_kling_body(
            {"task_id": "k-1", "task_status": raw, "task_status_msg": "nsfw"}
        ),
    )
    adapter = KlingAdapter(_transport(http), StaticHeaders())
    handle = TaskHandle("k-1", "kling", KLING_STATUS_URL)

    status = await adapter.check_status(handle)

    assert status.state == state
    assert status.raw_state == raw
    if state == "failed":
        assert status.reason == "nsfw"


@pytest.mark.asyncio
async def test_kling_success_carries_video_url() -> None:
    data = {
        "task_id": "k-1",
        "task_status": "succeed",
        "task_result": {
            "videos": [{"id": "v", "url": "https://cdn/v.mp4", "duration": "5"}]
        },
    }
    http = ScriptedHTTP().add("GET", f"{KLING_T2V}/k-1", json=_kling_body(data))
    adapter = KlingAdapter(_transport(http), StaticHeaders())
    handle = TaskHandle("k-1", "kling", KLING_STATUS_URL)

    status = await adapter.check_status(handle)

    assert status.state == "succeeded"
    assert status.video_url == "https://cdn/v.mp4"


def test_kling_unknown_state_is_an_error() -> None:
    adapter = KlingAdapter(_transport(ScriptedHTTP()), StaticHeaders())
    with pytest.raises(UnknownStateError):
        adapter.parse_status(KlingTask(task_id="k-1", task_status="queued"))
    with pytest.raises(UnexpectedEnvelopeError):
        adapter.parse_status(KlingTask(task_id="k-1", task_status="succeed"))


@pytest.mark.asyncio
async def test_kling_resource_pack_depleted_has_guidance() -> None:
    http = ScriptedHTTP().add(
        "POST",
        KLING_T2V,
        json={"code": 1102, "message": "Account balance not enough", "data": None},
    )
    adapter = KlingAdapter(_transport(http), StaticHeaders())

    with pytest.raises(PermanentError) as exc_info:
        await adapter.submit(GenerationRequest("p"))

    assert exc_info.value.body == "Account balance not enough"
    assert exc_info.value.hint is not None
    assert "resource pack" in exc_info.value.hint
    assert len(http.requests) == 1


@pytest.mark.asyncio
async def test_kling_success_envelope_with_bad_data_is_retried_once() -> None:
    http = ScriptedHTTP().add(
        "POST", KLING_T2V, json=_kling_body({"unexpected": True})
    )
    adapter = KlingAdapter(_transport(http, max_attempts=5), StaticHeaders())

    with pytest.raises(UnexpectedEnvelopeError):
        await adapter.submit(GenerationRequest("p"))

    assert len(http.requests) == 2


@pytest.mark.asyncio
async def test_kling_auth_failure_invalidates_the_token() -> None:
    http = ScriptedHTTP().add("POST", KLING_T2V, 401, json={"message": "token expired"})
    signer = StaticHeaders()
    adapter = KlingAdapter(_transport(http), signer)

    with pytest.raises(AuthError):
        await adapter.submit(GenerationRequest("p"))

    assert signer.invalidations == 1
    assert len(http.requests) == 1


# =============================================================================
# HTTP status mapping (shared)
# =============================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "body", "error", "attempts"),
    [
        (401, {"message": "unauthorized"}, AuthError, 1),
        (403, {"message": "forbidden"}, AuthError, 1),
        (400, {"message": "Invalid API key provided"}, AuthError, 1),
        (400, {"message": "prompt exceeds 2500 characters"}, PermanentError, 1),
        (404, {"message": "no such model"}, PermanentError, 1),
        (429, {"message": "too many requests"}, RateLimitError, 3),
        (503, {"message": "busy"}, TransientError, 3),
    ],
)
async def test_pollo_http_status_mapping(
    status: int, body: dict, error: type[Exception], attempts: int
) -> None:
    http = ScriptedHTTP().add(
        "POST", f"{POLLO_ROOT}/generation/pollo/pollo-v1-6", status, json=body
    )
    adapter = PolloAdapter(_transport(http), StaticHeaders({"x-api-key": "k"}))

    with pytest.raises(error) as exc_info:
        await adapter.submit(GenerationRequest("p"))

    assert exc_info.value.status_code == status
    assert exc_info.value.provider == "pollo"
    assert len(http.requests) == attempts


@pytest.mark.asyncio
async def test_rate_limit_retry_after_is_honored() -> None:
    http = (
        ScriptedHTTP()
        .add(
            "POST",
            KLING_T2V,
            429,
            headers={"Retry-After": "3"},
            json={"message": "slow"},
        )
        .add("POST", KLING_T2V, json=_kling_body({"task_id": "k-1"}))
    )
    sleep = SleepRecorder()
    transport = RetryingTransport(
        http.client(), policy=RetryPolicy(initial_delay_s=1.0), sleep=sleep
    )
    adapter = KlingAdapter(transport, StaticHeaders())

    handle = await adapter.submit(GenerationRequest("p"))

    assert handle.provider_task_id == "k-1"
    assert sleep.delays == [3.0]


# =============================================================================
# Pollo
# =============================================================================


@pytest.mark.asyncio
async def test_pollo_flat_submit_and_payload() -> None:
    http = ScriptedHTTP().add(
        "POST",
        f"{POLLO_ROOT}/generation/kling-ai/kling-v1-6",
        json={"taskId": "p-1", "status": "waiting"},
    )
    adapter = PolloAdapter(_transport(http), StaticHeaders({"x-api-key": "k"}))
    request = GenerationRequest(
        "p",
        duration_seconds=5,
        quality_tier=QualityTier.ECONOMY,
        seed_image=b"head",
        seed_tail_image=b"tail",
    )

    handle = await adapter.submit(request, fingerprint="fp")

    assert handle.provider_task_id == "p-1"
    assert handle.status_url == f"https://pollo.ai{POLLO_STATUS}/p-1"
    sent = json.loads(http.requests[0].content)
    assert sent["webhookUrl"] is None
    data = sent["input"]
    assert data["length"] == 5
    assert data["mode"] == "std"
    assert data["strength"] == 50
    assert data["image"].startswith("data:image/jpeg;base64,")
    assert data["imageTail"].startswith("data:image/jpeg;base64,")
    assert http.requests[0].headers["x-api-key"] == "k"


@pytest.mark.asyncio
async def test_pollo_tail_image_dropped_where_unsupported() -> None:
    http = ScriptedHTTP().add(
        "POST",
        f"{POLLO_ROOT}/generation/runway/runway-gen-4-turbo",
        json={"taskId": "p-2", "status": "waiting"},
    )
    adapter = PolloAdapter(_transport(http), StaticHeaders())
    request = GenerationRequest(
        "p", quality_tier=QualityTier.PREMIUM, seed_image=b"head", seed_tail_image=b"t"
    )

    await adapter.submit(request)

    data = json.loads(http.requests[0].content)["input"]
    assert "imageTail" not in data
    assert data["aspectRatio"] == "16:9"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {
            "code": "SUCCESS",
            "message": "ok",
            "data": {"taskId": "p-1", "status": "succeed", "videoUrl": POLLO_VIDEO},
        },
        {"taskId": "p-1", "status": "succeed", "videoUrl": POLLO_VIDEO},
    ],
    ids=["wrapped", "flat"],
)
async def test_pollo_status_accepts_both_envelopes(body: dict) -> None:
    http = ScriptedHTTP().add("GET", f"{POLLO_STATUS}/p-1", json=body)
    adapter = PolloAdapter(_transport(http), StaticHeaders())
    handle = TaskHandle("p-1", "pollo", f"https://pollo.ai{POLLO_STATUS}/p-1")

    status = await adapter.check_status(handle)

    assert status.state == "succeeded"
    assert status.video_url == POLLO_VIDEO


@pytest.mark.asyncio
async def test_pollo_failed_status_keeps_reason() -> None:
    http = ScriptedHTTP().add(
        "GET",
        f"{POLLO_STATUS}/p-1",
        json={"taskId": "p-1", "status": "failed", "failMsg": "content rejected"},
    )
    adapter = PolloAdapter(_transport(http), StaticHeaders())
    handle = TaskHandle("p-1", "pollo", f"https://pollo.ai{POLLO_STATUS}/p-1")

    status = await adapter.check_status(handle)

    assert status.state == "failed"
    assert status.reason == "content rejected"


@pytest.mark.asyncio
async def test_pollo_error_envelope_is_permanent() -> None:
    http = ScriptedHTTP().add(
        "GET",
        f"{POLLO_STATUS}/p-1",
        json={"code": "BAD_REQUEST", "message": "task not found", "data": None},
    )
    adapter = PolloAdapter(_transport(http), StaticHeaders())
    handle = TaskHandle("p-1", "pollo", f"https://pollo.ai{POLLO_STATUS}/p-1")

    with pytest.raises(PermanentError) as exc_info:
        await adapter.check_status(handle)

    assert exc_info.value.body == "task not found"


@pytest.mark.asyncio
async def test_pollo_non_json_body_is_unexpected_envelope() -> None:
    http = ScriptedHTTP().add(
        "GET", f"{POLLO_STATUS}/p-1", content=b"<html>oops</html>"
    )
    adapter = PolloAdapter(_transport(http), StaticHeaders())
    handle = TaskHandle("p-1", "pollo", f"https://pollo.ai{POLLO_STATUS}/p-1")

    with pytest.raises(UnexpectedEnvelopeError):
        await adapter.check_status(handle)


# =============================================================================
# Mock
# =============================================================================


@pytest.mark.asyncio
async def test_mock_adapter_walks_the_lifecycle() -> None:
    adapter = MockAdapter(processing_polls=2)
    handle = await adapter.submit(GenerationRequest("p", duration_seconds=6))

    states = [(await adapter.check_status(handle)).state for _ in range(4)]

    assert states == ["pending", "processing", "processing", "succeeded"]
    assert handle.submitted_duration == 10
    final = await adapter.check_status(handle)
    assert final.video_url is not None
    assert await adapter.download(final.video_url) == await adapter.download(
        final.video_url
    )


@pytest.mark.asyncio
async def test_mock_adapter_forgets_finished_tasks() -> None:
    adapter = MockAdapter(processing_polls=0)
    handles = [await adapter.submit(GenerationRequest(f"p{i}")) for i in range(3)]
    assert adapter.outstanding == 3

    for handle in handles:
        assert (await adapter.check_status(handle)).state == "pending"
        assert (await adapter.check_status(handle)).state == "succeeded"

    assert adapter.outstanding == 0
    assert adapter.submit_count == 3
