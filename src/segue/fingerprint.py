"""Fingerprint: deterministic identity of a logically unique generation request."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from segue.models import GenerationRequest


def digest_bytes(data: bytes) -> str:
    """Hex SHA-256 of raw bytes (seed images, extracted frames)."""
    return hashlib.sha256(data).hexdigest()


def compute_fingerprint(
    request: GenerationRequest,
    *,
    provider: str,
    duration: int | float | None = None,
) -> str:
    """Compute the cache key for *request* as submitted to *provider*.

    Key = sha256 over provider, tier, normalized duration, text fields, the
    presence plus content digest of each seed image, and the segment index of
    a split clip. Every field is length-prefixed so that adjacent values cannot
    run together (``("ab", "c")`` and ``("a", "bc")`` hash differently), and
    absent optional fields are distinguished from empty ones.
    """
    if duration is None:
        duration = request.duration_seconds

    fields: list[str | None] = [
        provider,
        request.quality_tier.value,
        _format_duration(duration),
        request.prompt,
        request.negative_prompt,
        request.camera_hint,
        digest_bytes(request.seed_image) if request.seed_image is not None else None,
        digest_bytes(request.seed_tail_image)
        if request.seed_tail_image is not None
        else None,
        str(request.segment_index) if request.segment_index is not None else None,
    ]

    h = hashlib.sha256()
    for value in fields:
        if value is None:
            h.update(b"-;")
            continue
        encoded = value.encode("utf-8")
        h.update(f"{len(encoded)}:".encode())
        h.update(encoded)
        h.update(b";")
    return h.hexdigest()


def _format_duration(value: int | float) -> str:
    # 5 and 5.0 are the same duration.
    as_float = float(value)
    if as_float.is_integer():
        return str(int(as_float))
    return repr(as_float)
