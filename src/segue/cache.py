"""Result cache: fingerprint-addressed clips with single-flight generation.

At most one submission is outstanding per fingerprint. A second caller for a
fingerprint that is already in progress receives the same future instead of
triggering a duplicate (and duplicately billed) provider call.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import TYPE_CHECKING

from segue._singleflight import KeyedLocks, join_or_create
from segue.errors import InternalError
from segue.models import CacheEntry
from segue.storage import ARTIFACT_SUFFIX
from segue.telemetry import Telemetry

if TYPE_CHECKING:
    from pathlib import Path

    from segue.models import TaskHandle
    from segue.storage import ArtifactStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlreadyComplete:
    """The fingerprint has a stored artifact."""

    entry: CacheEntry


@dataclass(frozen=True)
class AlreadyInProgress:
    """Another caller owns the work; await ``future`` for its outcome."""

    future: asyncio.Future[CacheEntry]


@dataclass(frozen=True)
class WorkToken:
    """Proof that the holder is the single creator for ``fingerprint``."""

    fingerprint: str
    future: asyncio.Future[CacheEntry]


@dataclass(frozen=True)
class Started:
    """The caller now owns the work for this fingerprint."""

    token: WorkToken


BeginResult = AlreadyComplete | AlreadyInProgress | Started


class ResultCache:
    """Fingerprint → CacheEntry map backed by an artifact store.

    Mutations for a fingerprint are serialized by that fingerprint's lock;
    unrelated fingerprints never contend. Complete entries beyond
    ``budget_bytes`` are evicted oldest-produced first. Failed entries are
    kept for ``failed_ttl_s`` so callers can inspect the reason, then dropped.
    In-progress entries are never evicted.
    """

    def __init__(
        self,
        store: ArtifactStore,
        *,
        budget_bytes: int | None = None,
        failed_ttl_s: float = 300.0,
        telemetry: Telemetry | None = None,
    ) -> None:
        """Create a cache and index artifacts already present in *store*."""
        if budget_bytes is not None and budget_bytes < 0:
            raise ValueError("budget_bytes must be >= 0 or None")
        if failed_ttl_s < 0:
            raise ValueError("failed_ttl_s must be >= 0")
        self._failed_ttl = failed_ttl_s
        self._store = store
        self._budget = budget_bytes
        self._telemetry = telemetry or Telemetry()
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Future[CacheEntry]] = {}
        self._locks: KeyedLocks[str] = KeyedLocks()
        self._reindex()

    def _reindex(self) -> None:
        for artifact in self._store.scan():
            self._entries[artifact.name] = CacheEntry(
                fingerprint=artifact.name,
                state="complete",
                artifact_path=artifact.path,
                size_bytes=artifact.size_bytes,
                produced_at=artifact.modified_at,
            )
        if self._entries:
            log.debug("Indexed %d cached artifact(s)", len(self._entries))

    @property
    def total_bytes(self) -> int:
        """Bytes held by complete entries."""
        return sum(e.size_bytes for e in self._entries.values() if e.state == "complete")

    @property
    def budget_bytes(self) -> int | None:
        return self._budget

    def lookup(self, fingerprint: str) -> CacheEntry | None:
        """Return the entry for *fingerprint* without side effects."""
        return self._entries.get(fingerprint)

    def entries(self) -> list[CacheEntry]:
        """Snapshot of all entries."""
        return list(self._entries.values())

    async def begin_or_join(self, fingerprint: str) -> BeginResult:
        """Return the cached artifact, the in-flight future, or a new work token."""
        async with self._locks.hold(fingerprint):
            entry = self._entries.get(fingerprint)
            if entry is not None and entry.state == "complete":
                if entry.artifact_path is not None and self._store.exists(
                    entry.artifact_path
                ):
                    self._telemetry.record("cache.hit", fingerprint=fingerprint)
                    return AlreadyComplete(entry)
                # The file vanished underneath us; regenerate.
                log.warning(
                    "Cached artifact for %s is missing; regenerating", fingerprint[:12]
                )
                del self._entries[fingerprint]

            fut, creator = join_or_create(fingerprint, self._inflight)
            if not creator:
                self._telemetry.record("cache.join", fingerprint=fingerprint)
                return AlreadyInProgress(fut)

            # A failed entry is replaced: failures are never cached permanently.
            self._entries[fingerprint] = CacheEntry(
                fingerprint=fingerprint, state="in_progress"
            )
            self._telemetry.record("cache.miss", fingerprint=fingerprint)
            return Started(WorkToken(fingerprint, fut))

    async def attach_handle(self, token: WorkToken, handle: TaskHandle) -> None:
        """Record the provider handle for an in-progress entry."""
        async with self._locks.hold(token.fingerprint):
            entry = self._owned_entry(token)
            entry.handle = handle

    async def store(self, token: WorkToken, data: bytes) -> CacheEntry:
        """Persist the artifact, complete the entry, and wake joiners."""
        fp = token.fingerprint
        async with self._locks.hold(fp):
            entry = self._owned_entry(token)
            path = await asyncio.to_thread(
                self._store.write, f"{fp}{ARTIFACT_SUFFIX}", data
            )
            entry.state = "complete"
            entry.artifact_path = path
            entry.size_bytes = len(data)
            entry.produced_at = time.time()
            entry.reason = None
            entry.failed_at = None
            self._inflight.pop(fp, None)
            if not token.future.done():
                token.future.set_result(entry)
        self._telemetry.record("cache.store", fingerprint=fp, size_bytes=len(data))
        await self.evict_to_budget(protect=fp)
        return entry

    async def fail(self, token: WorkToken, exc: BaseException) -> None:
        """Mark the entry failed and propagate *exc* to joiners."""
        fp = token.fingerprint
        async with self._locks.hold(fp):
            entry = self._owned_entry(token)
            entry.state = "failed"
            entry.reason = str(exc) or type(exc).__name__
            entry.failed_at = time.time()
            self._inflight.pop(fp, None)
            if not token.future.done():
                token.future.set_exception(exc)
        self._telemetry.record("cache.fail", fingerprint=fp, reason=entry.reason)
        await self.expire_failures()

    async def reject(self, token: WorkToken, exc: BaseException) -> None:
        """Drop an entry whose submission never produced a provider task.

        Joiners receive *exc*. Nothing is cached, not even a failure.
        """
        fp = token.fingerprint
        async with self._locks.hold(fp):
            self._owned_entry(token)
            del self._entries[fp]
            del self._inflight[fp]
            if not token.future.done():
                token.future.set_exception(exc)
        self._telemetry.record("cache.reject", fingerprint=fp, reason=type(exc).__name__)

    async def abandon(self, token: WorkToken) -> None:
        """Drop an in-progress entry after cancellation.

        Only in-flight work is affected; an entry that already reached a
        terminal state is left exactly as it is.
        """
        fp = token.fingerprint
        async with self._locks.hold(fp):
            entry = self._entries.get(fp)
            if entry is not None and entry.state == "in_progress":
                del self._entries[fp]
            if self._inflight.get(fp) is token.future:
                del self._inflight[fp]
            if not token.future.done():
                token.future.cancel()
        self._telemetry.record("cache.abandon", fingerprint=fp)

    async def expire_failures(self) -> list[str]:
        """Drop failed entries older than ``failed_ttl_s``."""
        cutoff = time.time() - self._failed_ttl
        expired: list[str] = []
        for fp in [
            e.fingerprint
            for e in self._entries.values()
            if e.state == "failed" and (e.failed_at or 0.0) <= cutoff
        ]:
            async with self._locks.hold(fp):
                entry = self._entries.get(fp)
                if entry is None or entry.state != "failed":
                    continue
                del self._entries[fp]
            expired.append(fp)
        if expired:
            log.debug("Expired %d failed cache entr(ies)", len(expired))
        return expired

    async def evict_to_budget(self, *, protect: str | None = None) -> list[str]:
        """Remove complete entries oldest-first until under budget.

        *protect* names a fingerprint that must survive this pass (the clip
        that was just produced for a waiting caller).
        """
        await self.expire_failures()
        if self._budget is None:
            return []
        evicted: list[str] = []
        candidates = sorted(
            (e for e in self._entries.values() if e.state == "complete"),
            key=lambda e: e.produced_at or 0.0,
        )
        for candidate in candidates:
            if self.total_bytes <= self._budget:
                break
            fp = candidate.fingerprint
            if fp == protect:
                continue
            async with self._locks.hold(fp):
                entry = self._entries.get(fp)
                if entry is None or entry.state != "complete":
                    continue
                if entry.artifact_path is not None:
                    await asyncio.to_thread(self._store.delete, entry.artifact_path)
                del self._entries[fp]
            evicted.append(fp)
            log.info("Evicted cached clip %s (%d bytes)", fp[:12], candidate.size_bytes)
            self._telemetry.record(
                "cache.evict", fingerprint=fp, size_bytes=candidate.size_bytes
            )
        return evicted

    async def clear(self) -> int:
        """Delete every complete or failed entry; in-flight work is untouched."""
        removed = 0
        for fp in list(self._entries):
            async with self._locks.hold(fp):
                entry = self._entries.get(fp)
                if entry is None or entry.state == "in_progress":
                    continue
                if entry.artifact_path is not None:
                    await asyncio.to_thread(self._store.delete, entry.artifact_path)
                del self._entries[fp]
                removed += 1
        return removed

    def artifact_path(self, fingerprint: str) -> Path | None:
        entry = self._entries.get(fingerprint)
        if entry is None or entry.state != "complete":
            return None
        return entry.artifact_path

    def _owned_entry(self, token: WorkToken) -> CacheEntry:
        entry = self._entries.get(token.fingerprint)
        if (
            entry is None
            or entry.state != "in_progress"
            or self._inflight.get(token.fingerprint) is not token.future
        ):
            raise InternalError(
                f"Work token for {token.fingerprint[:12]} no longer owns its entry",
                hint="This is a Segue internal error. Please report it.",
            )
        return entry
