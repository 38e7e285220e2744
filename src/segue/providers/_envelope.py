"""Response envelope unwrapping shared by provider adapters.

Providers answer in one of two shapes:

- wrapped: ``{"code": ..., "message": ..., "data": {...}}`` where the success
  code is ``0`` (integer) or ``"SUCCESS"`` (string, any case);
- flat: the payload fields at the top level.

A wrapped body whose outer code says success but whose ``data`` does not
decode is *not* a provider failure. It surfaces as
``UnexpectedEnvelopeError`` so the transport can retry it once.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from segue.errors import PermanentError, UnexpectedEnvelopeError

if TYPE_CHECKING:
    from collections.abc import Mapping

    import httpx

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class Envelope(BaseModel):
    """Outer ``code``/``message``/``data`` triple."""

    model_config = ConfigDict(extra="allow")

    code: int | str
    message: str | None = None
    data: Any = None


def is_wrapped(body: object) -> bool:
    """Whether *body* looks like a ``code``/``message``/``data`` envelope."""
    if not isinstance(body, dict) or "code" not in body:
        return False
    return "data" in body or "message" in body


def is_success_code(code: int | str) -> bool:
    if isinstance(code, bool):
        return False
    if isinstance(code, int):
        return code == 0
    return code.strip().upper() == "SUCCESS"


def decode_json(response: httpx.Response, *, provider: str, phase: str) -> Any:
    """Parse a 2xx body as JSON; garbage on a success status is retryable once."""
    try:
        return response.json()
    except ValueError as e:
        raise UnexpectedEnvelopeError(
            f"{provider} {phase} returned a non-JSON body (status={response.status_code})",
            status_code=response.status_code,
            provider=provider,
            phase=phase,
        ) from e


def unwrap(
    body: Any,
    model: type[M],
    *,
    provider: str,
    phase: str,
    code_hints: Mapping[int | str, str] | None = None,
) -> M:
    """Decode *body* into *model*, accepting both envelope shapes.

    Raises:
        UnexpectedEnvelopeError: Success envelope whose ``data`` did not decode.
        PermanentError: Non-success envelope code, or a flat body that did not
            decode.
    """
    if is_wrapped(body):
        try:
            envelope = Envelope.model_validate(body)
        except ValidationError as e:
            raise UnexpectedEnvelopeError(
                f"{provider} {phase} returned a malformed envelope",
                provider=provider,
                phase=phase,
            ) from e

        if not is_success_code(envelope.code):
            message = envelope.message or f"code {envelope.code}"
            hint = (code_hints or {}).get(envelope.code)
            raise PermanentError(
                f"{provider} {phase} rejected (code={envelope.code}): {message}",
                hint=hint,
                provider=provider,
                phase=phase,
                body=message,
            )

        try:
            return model.model_validate(envelope.data)
        except ValidationError as e:
            log.warning(
                "%s %s: success envelope with undecodable data (%d error(s))",
                provider,
                phase,
                e.error_count(),
            )
            raise UnexpectedEnvelopeError(
                f"{provider} {phase} returned a success envelope whose data did "
                f"not match {model.__name__}",
                provider=provider,
                phase=phase,
            ) from e

    try:
        return model.model_validate(body)
    except ValidationError as e:
        raise PermanentError(
            f"{provider} {phase} returned an unrecognized response shape",
            provider=provider,
            phase=phase,
            body=str(body)[:500],
        ) from e
