"""Subscription Manager: observer reference counts and delayed eviction."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from logging import getLogger
from types import TracebackType
from typing import Any

from tagsync.duration import to_seconds
from tagsync.errors import CacheError
from tagsync.store import CacheStore, Observer
from tagsync.types import FetchStatus

logger = getLogger(__name__)


class Subscription:
    """A view's handle on one cache entry.

    Usage:
        sub = engine.subscribe("lectures_by_course", {"course_id": "c1"})
        lectures = await sub.wait()
        ...
        sub.dispose()
    """

    def __init__(
        self,
        manager: SubscriptionManager,
        key: str,
        refetch: Callable[[], Awaitable[Any]],
        keep_unused_for: int,
        pending: asyncio.Task[Any] | None = None,
    ) -> None:
        self.key = key
        self._manager = manager
        self._refetch = refetch
        self._keep_unused_for = keep_unused_for
        self._pending = pending
        self._removers: list[Callable[[], None]] = []
        self._disposed = False

    @property
    def data(self) -> Any:
        entry = self._manager.store.get(self.key)
        return entry.data if entry is not None else None

    @property
    def status(self) -> FetchStatus:
        entry = self._manager.store.get(self.key)
        return entry.status if entry is not None else FetchStatus.IDLE

    @property
    def error(self) -> CacheError | None:
        entry = self._manager.store.get(self.key)
        return entry.error if entry is not None else None

    @property
    def version(self) -> int:
        entry = self._manager.store.get(self.key)
        return entry.version if entry is not None else 0

    @property
    def is_stale(self) -> bool:
        entry = self._manager.store.get(self.key)
        return entry is None or not self._manager.store.is_fresh(entry)

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def wait(self) -> Any:
        """Wait for the fetch started by subscribing, then return the data.

        Raises:
            NetworkError, ServerError: that fetch failed.
        """
        if self._pending is not None:
            await asyncio.shield(self._pending)
        return self.data

    async def refetch(self) -> Any:
        """Fetch again regardless of freshness."""
        if self._disposed:
            raise RuntimeError(f"Subscription to {self.key} has been disposed")
        return await self._refetch()

    def on_change(self, observer: Observer) -> Callable[[], None]:
        """Call ``observer(entry)`` whenever the entry changes until disposal."""
        remove = self._manager.store.add_observer(self.key, observer)
        self._removers.append(remove)
        return remove

    def dispose(self) -> None:
        """Stop observing; the entry may be evicted after its grace period."""
        if self._disposed:
            return
        self._disposed = True
        for remove in self._removers:
            remove()
        self._removers.clear()
        self._manager.release(self.key, self._keep_unused_for)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.dispose()

    def __repr__(self) -> str:
        return f"Subscription({self.key}, status={self.status.value})"


class SubscriptionManager:
    """Counts subscribers per entry and evicts entries nobody watches.

    When the count drops to zero the entry is kept for a grace period, in
    case the view comes back, then evicted unless re-subscribed.
    """

    def __init__(
        self,
        store: CacheStore,
        *,
        on_evict: Callable[[str], None] | None = None,
    ) -> None:
        self.store = store
        self.on_evict = on_evict
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def subscribe(
        self,
        key: str,
        refetch: Callable[[], Awaitable[Any]],
        *,
        keep_unused_for: int,
        pending: asyncio.Task[Any] | None = None,
    ) -> Subscription:
        """Count a new observer of ``key``; the entry must already exist.

        ``pending`` is the fetch the new subscription's ``wait()`` awaits.
        """
        entry = self.store.get(key)
        if entry is None:
            raise KeyError(key)
        entry.subscriber_count += 1
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        return Subscription(self, key, refetch, keep_unused_for, pending)

    def release(self, key: str, keep_unused_for: int) -> None:
        entry = self.store.get(key)
        if entry is None or entry.subscriber_count == 0:
            return
        entry.subscriber_count -= 1
        if entry.subscriber_count == 0:
            self._schedule_eviction(key, keep_unused_for)

    def expire_if_unused(self, key: str, keep_unused_for: int) -> None:
        """Start the eviction clock for an entry filled without a subscriber."""
        entry = self.store.get(key)
        if entry is None or entry.subscriber_count > 0 or key in self._timers:
            return
        self._schedule_eviction(key, keep_unused_for)

    def is_eviction_scheduled(self, key: str) -> bool:
        return key in self._timers

    def cancel_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    def _schedule_eviction(self, key: str, delay: int) -> None:
        if delay <= 0:
            self._evict_if_unused(key)
            return
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(
            to_seconds(delay), self._evict_if_unused, key
        )

    def _evict_if_unused(self, key: str) -> None:
        self._timers.pop(key, None)
        entry = self.store.get(key)
        if entry is None or entry.subscriber_count > 0:
            return
        self.store.evict(key)
        if self.on_evict is not None:
            self.on_evict(key)
