"""Invalidation Coordinator: tag fan-out to stale marks and refetches."""

from __future__ import annotations

from collections.abc import Collection, Iterable
from logging import getLogger

from tagsync.fetch import FetchCoordinator
from tagsync.store import CacheStore
from tagsync.tags import serialize_tag
from tagsync.types import Tag

logger = getLogger(__name__)


class InvalidationCoordinator:
    """Marks every entry matching a set of tags stale.

    Entries somebody is watching are refetched right away; the rest are only
    marked and get refreshed when they are next subscribed to. Collection and
    entity tags go through the same path.
    """

    def __init__(self, store: CacheStore, fetcher: FetchCoordinator) -> None:
        self._store = store
        self._fetcher = fetcher

    def invalidate(
        self,
        tags: Iterable[Tag],
        *,
        exact: bool = False,
        skip: Collection[str] = (),
    ) -> set[str]:
        """Invalidate entries by tags and return the affected keys.

        By default a tag also matches entries carrying a more specific tag:
        ``("course",)`` reaches entries tagged ``("course", "c1")``. With
        ``exact=True`` only entries with the exact tag are affected. Keys in
        ``skip`` are left untouched.

        Every key is handled once per call, however many tags match it, and
        all of them are processed before this returns.
        """
        tag_list = list(tags)
        keys = self._store.tag_index.lookup_many(tag_list, exact=exact)
        keys.difference_update(skip)
        logger.debug(
            "invalidating %s -> %d entries",
            ", ".join(sorted(serialize_tag(t) for t in tag_list)),
            len(keys),
        )
        self.refresh_keys(keys)
        return keys

    def refresh_keys(self, keys: Iterable[str]) -> None:
        """Mark ``keys`` stale; refetch the ones with subscribers."""
        for key in sorted(keys):
            entry = self._store.get(key)
            if entry is None:
                continue
            self._store.mark_stale(key)
            if entry.subscriber_count > 0:
                self._fetcher.refresh(key)
