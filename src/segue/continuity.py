"""Continuity bridge: carry the last frame of clip N into the seed of clip N+1.

Extraction failures never abort a chain. The link is dropped, a warning is
logged, and the next clip is generated from its plain request.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
import logging
from pathlib import Path
import subprocess
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from segue.errors import FrameExtractionError
from segue.fingerprint import digest_bytes
from segue.models import ContinuityLink
from segue.telemetry import Telemetry

if TYPE_CHECKING:
    from segue.models import GenerationRequest

log = logging.getLogger(__name__)


@runtime_checkable
class FrameExtractor(Protocol):
    """Pull a JPEG of the final frame out of a video file."""

    def extract_last_frame(self, path: Path) -> bytes:
        """Return JPEG bytes; raise on any failure."""
        ...


class FfmpegFrameExtractor:
    """Shell out to ``ffmpeg`` to grab a frame just before the end of the clip.

    Requires FFmpeg on the system. Runs synchronously; the bridge calls it
    from a worker thread.
    """

    def __init__(
        self,
        *,
        ffmpeg_bin: str = "ffmpeg",
        offset_s: float = 0.1,
        timeout_s: float = 30.0,
    ) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.offset_s = offset_s
        self.timeout_s = timeout_s

    def command(self, path: Path) -> list[str]:
        return [
            self.ffmpeg_bin,
            "-v", "error",
            "-sseof", f"-{self.offset_s}",
            "-i", str(path),
            "-frames:v", "1",
            "-f", "image2pipe",
            "-vcodec", "mjpeg",
            "-q:v", "2",
            "-",
        ]  # fmt: skip

    def extract_last_frame(self, path: Path) -> bytes:
        path = Path(path)
        if not path.is_file():
            raise FrameExtractionError(f"Artifact not found: {path}")
        try:
            proc = subprocess.run(  # noqa: S603
                self.command(path),
                check=True,
                capture_output=True,
                timeout=self.timeout_s,
            )
        except FileNotFoundError as e:
            raise FrameExtractionError(
                f"{self.ffmpeg_bin} is not installed",
                hint="Install FFmpeg or inject another FrameExtractor.",
            ) from e
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode("utf-8", errors="replace").strip()
            raise FrameExtractionError(
                f"ffmpeg could not read {path.name}: {stderr[-300:] or e.returncode}"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise FrameExtractionError(
                f"ffmpeg timed out after {self.timeout_s}s on {path.name}"
            ) from e
        if not proc.stdout:
            raise FrameExtractionError(f"ffmpeg produced no frame for {path.name}")
        return proc.stdout


class ContinuityBridge:
    """Extract seeds from finished artifacts and thread them into requests."""

    def __init__(
        self,
        extractor: FrameExtractor | None = None,
        *,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._extractor = extractor or FfmpegFrameExtractor()
        self._telemetry = telemetry or Telemetry()
        self.links: list[ContinuityLink] = []

    async def extract_seed(self, artifact_path: Path) -> bytes | None:
        """Return the seed for the next clip, or None when continuity drops."""
        try:
            seed = await asyncio.to_thread(
                self._extractor.extract_last_frame, Path(artifact_path)
            )
        except Exception as e:
            log.warning("Dropping continuity for %s: %s", Path(artifact_path).name, e)
            self._telemetry.record(
                "continuity.dropped",
                artifact=str(artifact_path),
                reason=type(e).__name__,
            )
            return None
        if not seed:
            log.warning("Dropping continuity for %s: empty frame", Path(artifact_path).name)
            self._telemetry.record(
                "continuity.dropped", artifact=str(artifact_path), reason="empty"
            )
            return None
        return seed

    def inject_seed(self, request: GenerationRequest, seed: bytes) -> GenerationRequest:
        """Return *request* with *seed* as its leading image."""
        return replace(request, seed_image=seed)

    def record_link(
        self, from_fingerprint: str, to_fingerprint: str, seed: bytes
    ) -> ContinuityLink:
        link = ContinuityLink(
            from_fingerprint=from_fingerprint,
            to_fingerprint=to_fingerprint,
            seed_digest=digest_bytes(seed),
        )
        self.links.append(link)
        self._telemetry.record(
            "continuity.link",
            from_fingerprint=from_fingerprint,
            to_fingerprint=to_fingerprint,
            seed_digest=link.seed_digest,
        )
        return link
