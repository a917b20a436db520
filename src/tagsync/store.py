"""In-memory cache store with per-key observer lists."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Iterator
from logging import getLogger
from typing import Any

from tagsync.errors import CacheError
from tagsync.tag_index import TagIndex
from tagsync.types import CacheEntry, FetchStatus, Tag

logger = getLogger(__name__)

Observer = Callable[[CacheEntry[Any]], None]


def now_ms() -> int:
    return int(time.time() * 1000)


class CacheStore:
    """Owns every CacheEntry and keeps the tag index in step with them.

    All operations are synchronous and run to completion, so on a single
    event loop they are atomic with respect to each other.
    """

    def __init__(self, tag_index: TagIndex | None = None) -> None:
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._observers: dict[str, list[Observer]] = {}
        self.tag_index = tag_index if tag_index is not None else TagIndex()

    def get(self, key: str) -> CacheEntry[Any] | None:
        return self._entries.get(key)

    def ensure(
        self, key: str, endpoint: str, args: Any, *, stale_after: int
    ) -> CacheEntry[Any]:
        """Return the entry for ``key``, creating an idle placeholder if absent."""
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(
                key=key, endpoint=endpoint, args=args, stale_after=stale_after
            )
            self._entries[key] = entry
        return entry

    def upsert(
        self,
        key: str,
        data: Any,
        tags: Iterable[Tag] | None = None,
        *,
        fetched: bool = True,
    ) -> int:
        """Replace the data for ``key`` and return its new version.

        ``tags=None`` keeps the entry's current tags. Only a ``fetched`` write
        (server data) marks the entry successful and fresh; local patches pass
        ``fetched=False`` and leave status, stale mark and age as they were.

        Raises:
            KeyError: if ``key`` has no entry (see ``ensure``).
        """
        entry = self._entries[key]
        if tags is not None:
            entry.tags = frozenset(tags)
            self.tag_index.register(key, entry.tags)
        entry.data = data
        entry.version += 1
        if fetched:
            entry.status = FetchStatus.SUCCESS
            entry.error = None
            entry.invalidated = False
            entry.last_updated_at = now_ms()
        self._notify(entry)
        return entry.version

    def mark_loading(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.status = FetchStatus.LOADING
        self._notify(entry)

    def mark_error(self, key: str, error: CacheError) -> None:
        """Record a failed fetch; previous data stays displayable."""
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.status = FetchStatus.ERROR
        entry.error = error
        self._notify(entry)

    def mark_stale(self, key: str) -> None:
        """Force a refetch on next observation without dropping data."""
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.invalidated = True
        entry.invalidations += 1
        self._notify(entry)

    def evict(self, key: str) -> None:
        """Remove ``key`` and its tag registrations.

        Raises:
            ValueError: if the entry still has subscribers.
        """
        entry = self._entries.get(key)
        if entry is None:
            return
        if entry.subscriber_count > 0:
            raise ValueError(
                f"Cannot evict {key}: {entry.subscriber_count} active subscriber(s)"
            )
        del self._entries[key]
        self.tag_index.deregister(key)
        self._observers.pop(key, None)
        logger.debug("evicted %s", key)

    def is_fresh(self, entry: CacheEntry[Any], now: int | None = None) -> bool:
        if entry.invalidated or entry.status is not FetchStatus.SUCCESS:
            return False
        now = now_ms() if now is None else now
        return now < entry.last_updated_at + entry.stale_after

    def add_observer(self, key: str, observer: Observer) -> Callable[[], None]:
        """Call ``observer(entry)`` after every change to ``key``.

        Returns a function that removes the observer again.
        """
        observers = self._observers.setdefault(key, [])
        observers.append(observer)

        def remove() -> None:
            current = self._observers.get(key)
            if current is not None and observer in current:
                current.remove(observer)
                if not current:
                    del self._observers[key]

        return remove

    def keys(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()
        self._observers.clear()
        self.tag_index.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[CacheEntry[Any]]:
        return iter(list(self._entries.values()))

    def _notify(self, entry: CacheEntry[Any]) -> None:
        for observer in list(self._observers.get(entry.key, ())):
            try:
                observer(entry)
            except Exception:
                logger.exception("observer for %s raised", entry.key)
