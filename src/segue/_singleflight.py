"""Async single-flight helpers.

Used to coordinate concurrent requests for the same key so only one coroutine
performs the work, while others await the same Future. Locks are per key:
unrelated keys never contend.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Hashable

K = TypeVar("K", bound="Hashable")
T = TypeVar("T")


def consume_future_exception(fut: asyncio.Future[Any]) -> None:
    """Avoid 'Future exception was never retrieved' for coordination futures."""
    try:
        _ = fut.exception()
    except asyncio.CancelledError:
        return


class KeyedLocks(Generic[K]):
    """One ``asyncio.Lock`` per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[K, asyncio.Lock] = {}
        self._users: dict[K, int] = {}

    @asynccontextmanager
    async def hold(self, key: K) -> AsyncIterator[None]:
        """Serialize mutations for *key* only."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users[key] - 1
            if remaining:
                self._users[key] = remaining
            else:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def join_or_create(
    key: K, inflight: dict[K, asyncio.Future[T]]
) -> tuple[asyncio.Future[T], bool]:
    """Return the in-flight future for *key*, creating it if absent.

    The boolean is True for the single creator. Call while holding the key's
    lock.
    """
    fut = inflight.get(key)
    if fut is not None:
        return fut, False
    fut = asyncio.get_running_loop().create_future()
    fut.add_done_callback(consume_future_exception)
    inflight[key] = fut
    return fut, True
