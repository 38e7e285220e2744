"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration, marker registration,
and automatic API test skipping. All fixtures here are autouse unless noted.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import time

import pytest

from segue.models import GenerationRequest, TaskHandle, TaskStatus
from segue.providers.base import ProviderCapabilities, normalize_for
from segue.storage import ARTIFACT_SUFFIX, StoredArtifact

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeAdapter:
    """Adapter test double for orchestration behavior verification.

    ``statuses`` is consumed one item per ``check_status`` call (exceptions
    are raised); once empty, every check reports success. ``gate``, when set,
    holds each submission until the test releases it.
    """

    name: str = "fake"
    statuses: list[TaskStatus | BaseException] = field(default_factory=list)
    submit_errors: list[BaseException] = field(default_factory=list)
    video: bytes = b"fake-video:"
    gate: asyncio.Event | None = None
    submit_calls: int = 0
    check_calls: int = 0
    submitted: list[GenerationRequest] = field(default_factory=list)
    _capabilities: ProviderCapabilities = field(default_factory=ProviderCapabilities)

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    def model_for_tier(self, tier):
        return f"fake-{tier.value.lower()}"

    def normalize_duration(self, seconds):
        return normalize_for(self._capabilities, seconds)

    async def submit(
        self, request: GenerationRequest, *, fingerprint: str = ""
    ) -> TaskHandle:
        self.submit_calls += 1
        n = self.submit_calls
        duration = self.normalize_duration(request.duration_seconds).submitted
        self.submitted.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return TaskHandle(
            provider_task_id=f"task-{n}",
            provider=self.name,
            status_url=f"fake://status/task-{n}",
            fingerprint=fingerprint,
            submitted_duration=duration,
        )

    async def check_status(self, handle: TaskHandle) -> TaskStatus:
        self.check_calls += 1
        if self.statuses:
            item = self.statuses.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return TaskStatus.succeeded(
            f"fake://video/{handle.provider_task_id}", raw_state="succeed"
        )

    async def download(self, url: str) -> bytes:
        return self.video + url.encode()


class InMemoryArtifactStore:
    """Artifact store double keeping bytes in a dict keyed by path."""

    def __init__(self, root: str = "/mem") -> None:
        self.root = Path(root)
        self.files: dict[Path, bytes] = {}
        self.mtimes: dict[Path, float] = {}
        self.deleted: list[Path] = []

    def write(self, name: str, data: bytes) -> Path:
        path = self.root / name
        self.files[path] = data
        self.mtimes[path] = time.time()
        return path

    def read(self, path: Path) -> bytes:
        return self.files[path]

    def exists(self, path: Path) -> bool:
        return path in self.files

    def delete(self, path: Path) -> None:
        self.deleted.append(path)
        self.files.pop(path, None)

    def scan(self) -> list[StoredArtifact]:
        return [
            StoredArtifact(
                name=p.name.removesuffix(ARTIFACT_SUFFIX),
                path=p,
                size_bytes=len(data),
                modified_at=self.mtimes[p],
            )
            for p, data in self.files.items()
        ]


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def memory_store() -> InMemoryArtifactStore:
    return InMemoryArtifactStore()


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears KLING_*, POLLO_* and SEGUE_* env vars to prevent test pollution.
    Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    for key in list(os.environ.keys()):
        if key.startswith(("KLING_", "POLLO_", "SEGUE_")):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# API Test Configuration
# =============================================================================


@pytest.fixture
def kling_keys():
    """Return (access, secret) from the environment or skip the test."""
    access = os.getenv("KLING_ACCESS_KEY")
    secret = os.getenv("KLING_SECRET_KEY")
    if not (access and secret):
        pytest.skip("KLING_ACCESS_KEY / KLING_SECRET_KEY not set")
    return access, secret


@pytest.fixture
def pollo_api_key():
    """Return POLLO_API_KEY or skip the test if unavailable."""
    key = os.getenv("POLLO_API_KEY")
    if not key:
        pytest.skip("POLLO_API_KEY not set")
    return key
