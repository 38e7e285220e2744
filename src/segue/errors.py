"""Exception hierarchy for Segue."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from collections.abc import Iterator


class SegueError(Exception):
    """Base exception for all Segue errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(SegueError):
    """Configuration validation or resolution failed."""


class CredentialNotFoundError(SegueError):
    """The credential store has no secret for the requested provider."""


class InternalError(SegueError):
    """A Segue internal error (bug) or invariant violation."""


class FrameExtractionError(SegueError):
    """A seed frame could not be pulled from a finished clip."""


class APIError(SegueError):
    """Provider call failed.

    Adapters attach retry metadata so the transport and poll loop can make
    bounded, deterministic decisions without brittle substring matching.
    """

    retryable_default: bool | None = None

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = self.retryable_default if retryable is None else retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase
        self.body = body


class AuthError(APIError):
    """Credential rejected or missing (HTTP 401, or 400 naming the key)."""

    retryable_default = False


class RateLimitError(APIError):
    """Rate limit exceeded (HTTP 429)."""

    retryable_default = True


class TransientError(APIError):
    """Network failure or 5xx; safe to retry within bounds."""

    retryable_default = True


class PermanentError(APIError):
    """Provider rejected the request for a reason retries will not fix."""

    retryable_default = False


class UnexpectedEnvelopeError(APIError):
    """A success envelope whose payload did not decode into the expected shape."""

    retryable_default = True


class UnknownStateError(APIError):
    """The provider reported a task state outside the known vocabulary."""

    retryable_default = False


class PollTimeoutError(APIError):
    """Polling gave up before a terminal state.

    The provider-side job may still complete; callers must treat this as
    indeterminate rather than as a confirmed failure.
    """

    retryable_default = False


class GenerationFailedError(APIError):
    """The provider reported the task as failed."""

    retryable_default = False

    def __init__(
        self,
        message: str,
        *,
        reason: str | None = None,
        provider: str | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint, provider=provider, phase="poll")
        self.reason = reason


ErrorKind = Literal[
    "auth",
    "rate_limited",
    "transient",
    "permanent",
    "unexpected_envelope",
    "unknown_state",
    "timeout",
    "failed",
    "configuration",
    "internal",
]

_KINDS: tuple[tuple[type[SegueError], ErrorKind], ...] = (
    (AuthError, "auth"),
    (RateLimitError, "rate_limited"),
    (TransientError, "transient"),
    (UnexpectedEnvelopeError, "unexpected_envelope"),
    (UnknownStateError, "unknown_state"),
    (PollTimeoutError, "timeout"),
    (GenerationFailedError, "failed"),
    (PermanentError, "permanent"),
    (ConfigurationError, "configuration"),
    (CredentialNotFoundError, "auth"),
)

_DEFAULT_HINTS: dict[ErrorKind, str] = {
    "auth": "Check the provider credentials and reconfigure them if they changed.",
    "rate_limited": "The provider is throttling requests. Try again later.",
    "transient": "The provider was temporarily unreachable. Try again later.",
    "timeout": (
        "Generation is taking longer than expected. The job may still finish; "
        "try again later."
    ),
    "unexpected_envelope": "The provider returned an unexpected response. Try again.",
    "unknown_state": "The provider reported an unrecognized task state.",
}


@dataclass(frozen=True)
class ErrorReport:
    """Stable, provider-agnostic error shape for calling UI code."""

    kind: ErrorKind
    message: str
    hint: str | None
    retryable: bool


def describe_error(exc: BaseException) -> ErrorReport:
    """Map any exception onto the single external error shape.

    Permanent and failed errors surface the provider's message verbatim.
    """
    kind: ErrorKind = "internal"
    for cls, k in _KINDS:
        if isinstance(exc, cls):
            kind = k
            break

    if isinstance(exc, GenerationFailedError) and exc.reason:
        message = exc.reason
    elif isinstance(exc, PermanentError) and exc.body:
        message = exc.body
    else:
        message = str(exc) or type(exc).__name__

    hint = exc.hint if isinstance(exc, SegueError) else None
    if hint is None:
        hint = _DEFAULT_HINTS.get(kind)

    retryable = bool(getattr(exc, "retryable", False)) or kind == "timeout"
    return ErrorReport(kind=kind, message=message, hint=hint, retryable=retryable)


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
