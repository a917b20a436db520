"""Inverted index from tags to the entry keys carrying them."""

from __future__ import annotations

from collections.abc import Iterable

from tagsync.tags import tag_prefixes
from tagsync.types import Tag


class TagIndex:
    """Back-references only: tag -> keys. Owns no entry data.

    Two views are kept in step: ``_exact`` maps a tag to the keys that carry
    it verbatim, ``_by_prefix`` maps every prefix of a carried tag to those
    keys, so ``("course",)`` finds entries tagged ``("course", "c1")``.
    """

    def __init__(self) -> None:
        self._exact: dict[Tag, set[str]] = {}
        self._by_prefix: dict[Tag, set[str]] = {}
        self._tags_by_key: dict[str, frozenset[Tag]] = {}

    def register(self, key: str, tags: Iterable[Tag]) -> None:
        """Replace whatever ``key`` was registered under with ``tags``."""
        self.deregister(key)
        tag_set = frozenset(tags)
        if not tag_set:
            return
        self._tags_by_key[key] = tag_set
        for t in tag_set:
            self._exact.setdefault(t, set()).add(key)
            for prefix in tag_prefixes(t):
                self._by_prefix.setdefault(prefix, set()).add(key)

    def deregister(self, key: str) -> None:
        tag_set = self._tags_by_key.pop(key, None)
        if tag_set is None:
            return
        for t in tag_set:
            _discard(self._exact, t, key)
            for prefix in tag_prefixes(t):
                _discard(self._by_prefix, prefix, key)

    def lookup(self, tag: Tag, *, exact: bool = False) -> set[str]:
        """Keys tagged with ``tag`` (or, unless ``exact``, a more specific tag)."""
        index = self._exact if exact else self._by_prefix
        return set(index.get(tag, ()))

    def lookup_many(self, tags: Iterable[Tag], *, exact: bool = False) -> set[str]:
        """Union of ``lookup`` over ``tags``; each key appears once."""
        keys: set[str] = set()
        for t in tags:
            keys |= self.lookup(t, exact=exact)
        return keys

    def tags_for(self, key: str) -> frozenset[Tag]:
        return self._tags_by_key.get(key, frozenset())

    def clear(self) -> None:
        self._exact.clear()
        self._by_prefix.clear()
        self._tags_by_key.clear()

    def __len__(self) -> int:
        return len(self._exact)

    def __contains__(self, tag: object) -> bool:
        return tag in self._exact


def _discard(index: dict[Tag, set[str]], tag: Tag, key: str) -> None:
    keys = index.get(tag)
    if keys is None:
        return
    keys.discard(key)
    if not keys:
        del index[tag]
