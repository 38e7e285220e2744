"""Durable journal of outstanding provider tasks.

A handle is recorded before polling starts and removed once the task reaches
a terminal outcome. Whatever remains after a crash is billed work that
``Orchestrator.reconcile()`` can pick up again.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from segue.models import TaskHandle

if TYPE_CHECKING:
    import os

log = logging.getLogger(__name__)


class TaskJournal:
    """Single JSON file mapping provider task → serialized TaskHandle.

    Keyed by ``provider:task_id`` so two tasks for the same fingerprint (a
    resubmission after a timeout, say) never overwrite each other.
    Uses copy-on-write: write to a temp file and rename for atomicity.
    Shape::

      {"kling:<task_id>": {"provider_task_id": ..., "provider": ...,
                           "fingerprint": ..., "submitted_at": ..., ...}}
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        """Initialize the journal pointing at a JSON file path."""
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def record(self, handle: TaskHandle) -> None:
        """Persist *handle*, replacing any earlier record of the same task."""
        key = _key(handle)
        async with self._lock:
            data = self._read_all()
            data[key] = handle.to_dict()
            self._write_all(data)
        log.debug("Journaled %s task %s", handle.provider, handle.provider_task_id)

    async def remove(self, handle: TaskHandle) -> bool:
        """Forget *handle*; returns whether it was journaled."""
        key = _key(handle)
        async with self._lock:
            data = self._read_all()
            if key not in data:
                return False
            del data[key]
            self._write_all(data)
        return True

    async def find(self, fingerprint: str, *, provider: str) -> TaskHandle | None:
        """Most recent outstanding *provider* task for *fingerprint*, if any."""
        if not fingerprint:
            return None
        matches = [
            h
            for h in await self.pending()
            if h.fingerprint == fingerprint and h.provider == provider
        ]
        return matches[-1] if matches else None

    async def pending(self) -> list[TaskHandle]:
        """Handles still outstanding, oldest submission first."""
        async with self._lock:
            data = self._read_all()
        handles: list[TaskHandle] = []
        for key, raw in data.items():
            if not isinstance(raw, dict):
                continue
            try:
                handle = TaskHandle.from_dict(raw)
            except (KeyError, TypeError, ValueError):
                log.warning("Skipping unreadable journal entry %s", key[:12])
                continue
            handles.append(handle)
        return sorted(handles, key=lambda h: h.submitted_at)

    def _read_all(self) -> dict[str, dict[str, object]]:
        """Read and deserialize the entire JSON file into a mapping."""
        if not self._path.exists():
            return {}
        try:
            result = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("Task journal %s is unreadable (%s); starting empty", self._path, e)
            return {}
        return result if isinstance(result, dict) else {}

    def _write_all(self, data: dict[str, dict[str, object]]) -> None:
        """Persist data atomically via temp file rename."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self._path)


def _key(handle: TaskHandle) -> str:
    return f"{handle.provider}:{handle.provider_task_id}"
