"""CacheEngine - the public face of the cache-consistency engine.

Provides:
- endpoint/mutation registration (plain definitions or decorators)
- subscribe(): views observe an entry, fetching it when absent or stale
- mutate(): optimistic mutations with guarded rollback
- invalidate(): tag fan-out
- create()/teardown(): explicit lifecycle, one engine per session
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping
from logging import getLogger
from types import TracebackType
from typing import Any, TypeVar

from tagsync.codec import check_args, encode_key
from tagsync.duration import parse_duration
from tagsync.errors import UnknownEndpointError
from tagsync.fetch import FetchCoordinator
from tagsync.invalidation import InvalidationCoordinator
from tagsync.mutations import OptimisticMutationExecutor
from tagsync.store import CacheStore, Observer
from tagsync.subscriptions import Subscription, SubscriptionManager
from tagsync.tags import normalize_tags
from tagsync.types import (
    CacheEntry,
    Duration,
    EndpointDefinition,
    MutationDefinition,
    PatchSpec,
    Recipe,
    TagLike,
    Transport,
)
from tagsync.version_guard import VersionGuard

logger = getLogger(__name__)

F = TypeVar("F", bound=Transport)


class CacheEngine:
    """Normalized query cache kept consistent across views and mutations.

    Build one with ``CacheEngine.create()`` (or ``create_engine()``) at
    session start and call ``teardown()`` at logout:

        engine = CacheEngine.create(stale_after="60s")

        @engine.endpoint(tags=lambda args, result: [("lectures", args["course_id"])])
        async def lectures_by_course(args):
            return await api.get(f"/lectures/{args['course_id']}")

        sub = engine.subscribe("lectures_by_course", {"course_id": "c1"})
        await sub.wait()
    """

    def __init__(
        self,
        *,
        stale_after: int = 60_000,
        keep_unused_for: int = 30_000,
        rate_limit_retries: int = 3,
        rate_limit_backoff: int = 1000,
        rate_limit_max_backoff: int = 30_000,
    ) -> None:
        self._keep_unused_for = keep_unused_for
        self._endpoints: dict[str, EndpointDefinition] = {}
        self._mutations: dict[str, MutationDefinition] = {}
        self._closed = False

        self.store = CacheStore()
        self.guard = VersionGuard()
        self.fetcher = FetchCoordinator(
            self.store,
            self._endpoints,
            default_stale_after=stale_after,
            rate_limit_retries=rate_limit_retries,
            rate_limit_backoff=rate_limit_backoff,
            rate_limit_max_backoff=rate_limit_max_backoff,
        )
        self.invalidation = InvalidationCoordinator(self.store, self.fetcher)
        self.executor = OptimisticMutationExecutor(
            self.store, self.invalidation, self.guard
        )
        self.fetcher.on_landed = self.executor.rebase
        self.subscriptions = SubscriptionManager(
            self.store, on_evict=self.fetcher.forget
        )

    @classmethod
    def create(
        cls,
        *,
        stale_after: Duration = "60s",
        keep_unused_for: Duration = "30s",
        rate_limit_retries: int = 3,
        rate_limit_backoff: Duration = "1s",
        rate_limit_max_backoff: Duration = "30s",
    ) -> CacheEngine:
        """Create an empty engine.

        Args:
            stale_after: How long fetched data counts as fresh
            keep_unused_for: Grace period before an unobserved entry is evicted
            rate_limit_retries: Retries for a fetch answered with HTTP 429
            rate_limit_backoff: First backoff delay; doubles per retry
            rate_limit_max_backoff: Upper bound for any single backoff delay

        Raises:
            ValueError: on a malformed duration or a negative retry count.
        """
        if rate_limit_retries < 0:
            raise ValueError("rate_limit_retries must not be negative")
        backoff = parse_duration(rate_limit_backoff)
        max_backoff = parse_duration(rate_limit_max_backoff)
        if max_backoff < backoff:
            raise ValueError("rate_limit_max_backoff must be >= rate_limit_backoff")
        return cls(
            stale_after=parse_duration(stale_after),
            keep_unused_for=parse_duration(keep_unused_for),
            rate_limit_retries=rate_limit_retries,
            rate_limit_backoff=backoff,
            rate_limit_max_backoff=max_backoff,
        )

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register_endpoint(self, definition: EndpointDefinition) -> EndpointDefinition:
        self._check_name(definition.name)
        if definition.stale_after is not None:
            parse_duration(definition.stale_after)
        if definition.keep_unused_for is not None:
            parse_duration(definition.keep_unused_for)
        self._endpoints[definition.name] = definition
        return definition

    def register_mutation(self, definition: MutationDefinition) -> MutationDefinition:
        self._check_name(definition.name)
        self._mutations[definition.name] = definition
        return definition

    def endpoint(
        self,
        name: str | None = None,
        *,
        tags: Callable[[Any, Any], list[TagLike]],
        stale_after: Duration | None = None,
        keep_unused_for: Duration | None = None,
    ) -> Callable[[F], F]:
        """Decorator that registers an async fetch function as an endpoint."""

        def decorator(fn: F) -> F:
            self.register_endpoint(
                EndpointDefinition(
                    name=name or fn.__name__,
                    transport=fn,
                    build_tags=tags,
                    stale_after=stale_after,
                    keep_unused_for=keep_unused_for,
                )
            )
            return fn

        return decorator

    def mutation(
        self,
        name: str | None = None,
        *,
        tags: Callable[[Any], list[TagLike]],
        patch_plan: Callable[[Any], Mapping[str, PatchSpec]] | None = None,
        entity_id: Callable[[Any], str | None] | None = None,
    ) -> Callable[[F], F]:
        """Decorator that registers an async request function as a mutation."""

        def decorator(fn: F) -> F:
            self.register_mutation(
                MutationDefinition(
                    name=name or fn.__name__,
                    transport=fn,
                    declared_tags=tags,
                    patch_plan=patch_plan or (lambda args: {}),
                    entity_id=entity_id,
                )
            )
            return fn

        return decorator

    def key_for(self, endpoint: str, args: Any = None) -> str:
        """Entry key for ``endpoint`` called with ``args``."""
        self._get_endpoint(endpoint)
        check_args(args)
        return encode_key(endpoint, args)

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        endpoint: str,
        args: Any = None,
        *,
        on_change: Observer | None = None,
    ) -> Subscription:
        """Observe ``endpoint(args)``; starts a fetch if absent or stale.

        Must be called from a running event loop.
        """
        self._check_open()
        definition = self._get_endpoint(endpoint)
        key = self.key_for(endpoint, args)
        entry = self.store.ensure(
            key, endpoint, args, stale_after=self.fetcher.stale_after_for(definition)
        )
        keep_unused_for = self._keep_unused_for_endpoint(definition)

        pending = None
        if self.fetcher.is_in_flight(key) or not self.store.is_fresh(entry):
            pending = asyncio.create_task(
                self._fetch_for_subscribers(key, definition, args, keep_unused_for)
            )
            self.fetcher.track(pending)
        subscription = self.subscriptions.subscribe(
            key,
            lambda: self.fetcher.ensure_fresh(key, definition, args, force=True),
            keep_unused_for=keep_unused_for,
            pending=pending,
        )
        if on_change is not None:
            subscription.on_change(on_change)
        return subscription

    async def prefetch(
        self, endpoint: str, args: Any = None, *, force: bool = False
    ) -> Any:
        """Fetch into the cache without subscribing."""
        self._check_open()
        definition = self._get_endpoint(endpoint)
        key = self.key_for(endpoint, args)
        try:
            return await self.fetcher.ensure_fresh(key, definition, args, force=force)
        finally:
            self.subscriptions.expire_if_unused(
                key, self._keep_unused_for_endpoint(definition)
            )

    def select(self, endpoint: str, args: Any = None) -> CacheEntry[Any] | None:
        """Current entry for ``endpoint(args)``, without fetching."""
        return self.store.get(self.key_for(endpoint, args))

    def update_query_data(self, endpoint: str, args: Any, recipe: Recipe) -> int | None:
        """Patch a cached entry by hand; returns the new version, or None."""
        self._check_open()
        return self.executor.patch_entry(self.key_for(endpoint, args), recipe)

    # -------------------------------------------------------------------------
    # Mutations and invalidation
    # -------------------------------------------------------------------------

    async def mutate(self, name: str, args: Any = None) -> Any:
        """Run mutation ``name`` optimistically and return its result.

        Raises:
            UnknownEndpointError: no mutation is registered as ``name``.
            NetworkError, ServerError: the request failed and the cache was
                rolled back.
        """
        self._check_open()
        definition = self._mutations.get(name)
        if definition is None:
            raise UnknownEndpointError(name)
        check_args(args)
        return await self.executor.execute(definition, args)

    def invalidate(self, tags: Iterable[TagLike], *, exact: bool = False) -> set[str]:
        """Invalidate entries by tags; returns the affected keys."""
        self._check_open()
        return self.invalidation.invalidate(normalize_tags(tags), exact=exact)

    async def wait_idle(self) -> None:
        """Wait for background refetches started by invalidation to finish."""
        await self.fetcher.wait_idle()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def reset(self) -> None:
        """Drop all cached state, keeping registrations (session end)."""
        self.subscriptions.cancel_all()
        self.fetcher.cancel_all()
        self.executor.clear()
        self.store.clear()
        logger.debug("cache reset")

    def teardown(self) -> None:
        """Reset and refuse further use."""
        if self._closed:
            return
        self.reset()
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> CacheEngine:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.teardown()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("CacheEngine has been torn down")

    def _check_name(self, name: str) -> None:
        if not name:
            raise ValueError("Endpoint name must be a non-empty string")
        if name in self._endpoints or name in self._mutations:
            raise ValueError(f"{name!r} is already registered")

    def _get_endpoint(self, name: str) -> EndpointDefinition:
        definition = self._endpoints.get(name)
        if definition is None:
            raise UnknownEndpointError(name)
        return definition

    async def _fetch_for_subscribers(
        self,
        key: str,
        definition: EndpointDefinition,
        args: Any,
        keep_unused_for: int,
    ) -> Any:
        entry = self.store.get(key)
        if entry is None or entry.subscriber_count == 0:
            # Disposed before the fetch got to run
            return None
        try:
            return await self.fetcher.ensure_fresh(key, definition, args)
        finally:
            self.subscriptions.expire_if_unused(key, keep_unused_for)

    def _keep_unused_for_endpoint(self, definition: EndpointDefinition) -> int:
        if definition.keep_unused_for is None:
            return self._keep_unused_for
        return parse_duration(definition.keep_unused_for)


def create_engine(
    *,
    stale_after: Duration = "60s",
    keep_unused_for: Duration = "30s",
    rate_limit_retries: int = 3,
    rate_limit_backoff: Duration = "1s",
    rate_limit_max_backoff: Duration = "30s",
) -> CacheEngine:
    """Create a cache engine; see ``CacheEngine.create``."""
    return CacheEngine.create(
        stale_after=stale_after,
        keep_unused_for=keep_unused_for,
        rate_limit_retries=rate_limit_retries,
        rate_limit_backoff=rate_limit_backoff,
        rate_limit_max_backoff=rate_limit_max_backoff,
    )


__all__ = ["CacheEngine", "create_engine"]
