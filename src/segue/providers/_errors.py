"""Shared provider-side error helpers.

Adapters map HTTP outcomes into the APIError taxonomy here so the transport
and poll loop can make bounded, deterministic decisions.
"""

from __future__ import annotations

import asyncio
from email.utils import parsedate_to_datetime
import json
import time
from typing import TYPE_CHECKING, Any

import httpx

from segue._http import AUTH_HINT_FRAGMENTS
from segue.errors import (
    APIError,
    AuthError,
    PermanentError,
    RateLimitError,
    TransientError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

_BODY_PREVIEW_CHARS = 500


def extract_retry_after_s(headers: Mapping[str, str] | None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""
    if headers is None:
        return None
    raw: Any = None
    try:
        raw = headers.get("Retry-After")
    except Exception:
        raw = None
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        seconds = float(raw)
    except ValueError:
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            return None
        seconds = when.timestamp() - time.time()
    return max(0.0, seconds)


def provider_message(body: str) -> str | None:
    """Best-effort extraction of a human message from an error body."""
    try:
        data = json.loads(body)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    for key in ("message", "error", "detail", "msg"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, dict):
            inner = value.get("message")
            if isinstance(inner, str) and inner.strip():
                return inner.strip()
    issues = data.get("issues")
    if isinstance(issues, list):
        messages = [
            i["message"]
            for i in issues
            if isinstance(i, dict) and isinstance(i.get("message"), str)
        ]
        if messages:
            return "; ".join(messages)
    return None


def _auth_hint(provider: str) -> str:
    if provider == "kling":
        return "Check KLING_ACCESS_KEY and KLING_SECRET_KEY, then reconfigure credentials."
    if provider == "pollo":
        return "Check the Pollo API key in the key store (or POLLO_API_KEY)."
    return "Check the provider credentials and reconfigure them."


def map_http_error(response: httpx.Response, *, provider: str, phase: str) -> APIError:
    """Map a non-2xx response into the error taxonomy.

    - 401/403 → AuthError
    - 400 mentioning an invalid key or endpoint → AuthError with guidance
    - 429 → RateLimitError carrying Retry-After
    - 5xx → TransientError
    - anything else → PermanentError with the provider's body
    """
    status = response.status_code
    body = response.text[:_BODY_PREVIEW_CHARS] if response.content else ""
    message = provider_message(body) or body or response.reason_phrase
    common: dict[str, Any] = {
        "status_code": status,
        "provider": provider,
        "phase": phase,
        "body": message or None,
    }
    prefix = f"{provider} {phase} failed (status={status})"

    if status in (401, 403):
        return AuthError(f"{prefix}: {message}", hint=_auth_hint(provider), **common)
    if status == 400 and any(f in body.lower() for f in AUTH_HINT_FRAGMENTS):
        return AuthError(
            f"{prefix}: {message}",
            hint=f"The provider rejected the key or endpoint. {_auth_hint(provider)}",
            **common,
        )
    if status == 429:
        return RateLimitError(
            f"{prefix}: {message}",
            retry_after_s=extract_retry_after_s(response.headers),
            **common,
        )
    if 500 <= status <= 599:
        return TransientError(
            f"{prefix}: {message}",
            retry_after_s=extract_retry_after_s(response.headers),
            **common,
        )
    return PermanentError(f"{prefix}: {message}", **common)


def wrap_transport_error(exc: BaseException, *, provider: str, phase: str) -> APIError:
    """Map network-level exceptions into TransientError.

    Already-mapped APIErrors only get missing context filled in.
    """
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    if isinstance(exc, APIError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        return exc

    for e in _walk_exception_chain(exc):
        if isinstance(e, (httpx.TransportError, httpx.TimeoutException, TimeoutError)):
            return TransientError(
                f"{provider} {phase} failed: {type(e).__name__}: {e}",
                provider=provider,
                phase=phase,
            )
    return PermanentError(
        f"{provider} {phase} failed: {type(exc).__name__}: {exc}",
        provider=provider,
        phase=phase,
    )
