"""Telemetry sink interfaces.

Recording is fire-and-forget: a failing sink is logged and otherwise ignored,
so telemetry can never block or fail an orchestration path. Events are
dot-separated lowercase names such as ``transport.attempt``.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import logging
import os
import re
from typing import Any, Protocol, runtime_checkable

log = logging.getLogger(__name__)

# Evaluated once at import time; explicit opt-in avoids surprise log volume.
_TELEMETRY_ENABLED = os.getenv("SEGUE_TELEMETRY") == "1"
_STRICT_EVENTS = os.getenv("SEGUE_TELEMETRY_STRICT_EVENTS") == "1"

_EVENT_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*(?:\.[a-z][a-z0-9_]*)*$")


@runtime_checkable
class TelemetrySink(Protocol):
    """Duck-typed protocol for telemetry sinks."""

    def record(self, event: str, fields: dict[str, Any]) -> None: ...  # noqa: D102


@dataclass(frozen=True, slots=True)
class NoOpTelemetrySink:
    """Stateless sink that drops everything."""

    def record(self, event: str, fields: dict[str, Any]) -> None:  # noqa: ARG002
        return None


class LoggingTelemetrySink:
    """Write events to a logger at DEBUG level."""

    __slots__ = ("_logger",)

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("segue.events")

    def record(self, event: str, fields: dict[str, Any]) -> None:
        if self._logger.isEnabledFor(logging.DEBUG):
            rendered = " ".join(f"{k}={v!r}" for k, v in sorted(fields.items()))
            self._logger.debug("%s %s", event, rendered)


class RecordingTelemetrySink:
    """In-memory sink for development and tests."""

    def __init__(self, max_entries_per_event: int = 1000) -> None:
        self.max_entries = max_entries_per_event
        self.events: dict[str, deque[dict[str, Any]]] = {}

    def record(self, event: str, fields: dict[str, Any]) -> None:
        if event not in self.events:
            self.events[event] = deque(maxlen=self.max_entries)
        self.events[event].append(dict(fields))

    def named(self, event: str) -> list[dict[str, Any]]:
        """All recorded field sets for *event*, oldest first."""
        return list(self.events.get(event, ()))

    def reset(self) -> None:
        """Clear all collected telemetry (testing convenience)."""
        self.events.clear()


class Telemetry:
    """Fan events out to sinks, shielding callers from sink failures."""

    __slots__ = ("sinks",)

    def __init__(self, *sinks: TelemetrySink) -> None:
        self.sinks = sinks

    @classmethod
    def from_env(cls, *sinks: TelemetrySink) -> Telemetry:
        """Build the default telemetry.

        Explicit sinks always win. Otherwise ``SEGUE_TELEMETRY=1`` installs a
        logging sink, and anything else yields a silent instance.
        """
        if sinks:
            return cls(*sinks)
        if _TELEMETRY_ENABLED:
            return cls(LoggingTelemetrySink())
        return cls()

    @property
    def is_enabled(self) -> bool:
        return bool(self.sinks)

    def record(self, event: str, **fields: Any) -> None:
        """Record *event*; never raises."""
        if not self.sinks:
            return
        if _STRICT_EVENTS and not _EVENT_NAME_PATTERN.fullmatch(event):
            log.warning("Dropping telemetry event with invalid name: %r", event)
            return
        for sink in self.sinks:
            try:
                sink.record(event, fields)
            except Exception as e:
                log.error(
                    "Telemetry sink '%s' failed: %s",
                    type(sink).__name__,
                    e,
                    exc_info=True,
                )
