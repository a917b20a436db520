"""Fetch Coordinator: deduplicated transport calls that populate the store."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tagsync.duration import parse_duration, to_seconds
from tagsync.errors import (
    CacheError,
    EvictionRaceError,
    NetworkError,
    RateLimitError,
    UnknownEndpointError,
)
from tagsync.store import CacheStore
from tagsync.tags import expand_tags, normalize_tags
from tagsync.types import CacheEntry, EndpointDefinition, Transport

logger = logging.getLogger(__name__)

# (key, entry version when the fetch started)
LandedHook = Callable[[str, int], None]


async def call_transport(transport: Transport, args: Any) -> Any:
    """Await ``transport(args)``, mapping untyped failures to NetworkError."""
    try:
        return await transport(args)
    except CacheError:
        raise
    except Exception as e:
        raise NetworkError(f"{type(e).__name__}: {e}") from e


class FetchCoordinator:
    """At most one transport call per key; late callers share its future."""

    def __init__(
        self,
        store: CacheStore,
        endpoints: Mapping[str, EndpointDefinition],
        *,
        default_stale_after: int,
        rate_limit_retries: int = 3,
        rate_limit_backoff: int = 1000,
        rate_limit_max_backoff: int = 30_000,
        on_landed: LandedHook | None = None,
    ) -> None:
        self._store = store
        self._endpoints = endpoints
        self._default_stale_after = default_stale_after
        self._rate_limit_retries = rate_limit_retries
        self._max_backoff = rate_limit_max_backoff
        self._exponential = wait_exponential(
            multiplier=to_seconds(rate_limit_backoff),
            max=to_seconds(rate_limit_max_backoff),
        )
        self.on_landed = on_landed
        self._in_flight: dict[str, asyncio.Future[Any]] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def stale_after_for(self, endpoint: EndpointDefinition) -> int:
        if endpoint.stale_after is None:
            return self._default_stale_after
        return parse_duration(endpoint.stale_after)

    async def ensure_fresh(
        self,
        key: str,
        endpoint: EndpointDefinition,
        args: Any,
        *,
        force: bool = False,
    ) -> Any:
        """Return fresh data for ``key``, fetching it if needed.

        Args:
            key: Entry key, as produced by ``encode_key(endpoint.name, args)``
            endpoint: Endpoint whose transport produces the data
            args: Arguments passed to the transport and to ``build_tags``
            force: Fetch even if the cached entry is still fresh

        Raises:
            NetworkError, ServerError: the transport failed; every caller
                waiting on the same key receives the same error.
        """
        existing = self._in_flight.get(key)
        if existing is not None:
            return await asyncio.shield(existing)

        entry = self._store.ensure(
            key, endpoint.name, args, stale_after=self.stale_after_for(endpoint)
        )
        if not force and self._store.is_fresh(entry):
            return entry.data

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await self._fetch(key, entry, endpoint, args)
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except BaseException as e:
            if not future.done():
                future.set_exception(e)
                # Waiters re-raise it from their own await
                future.exception()
            raise
        else:
            if not future.done():
                future.set_result(result)
            return result
        finally:
            if self._in_flight.get(key) is future:
                del self._in_flight[key]

    def refresh(self, key: str) -> asyncio.Task[Any] | None:
        """Refetch ``key`` in a tracked background task."""
        entry = self._store.get(key)
        if entry is None:
            return None
        endpoint = self._endpoints.get(entry.endpoint)
        if endpoint is None:
            raise UnknownEndpointError(entry.endpoint)
        task = asyncio.create_task(
            self.ensure_fresh(key, endpoint, entry.args, force=True)
        )
        self.track(task)
        return task

    def forget(self, key: str) -> None:
        """Detach ``key`` from its in-flight fetch after the entry was evicted.

        Callers already waiting still get the result; the next caller starts
        a fetch for the new entry instead of joining one that will be dropped.
        """
        if self._in_flight.pop(key, None) is not None:
            logger.debug("detached in-flight fetch of evicted %s", key)

    def track(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)

    async def wait_idle(self) -> None:
        """Wait until no background refresh is running."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._background_tasks):
            task.cancel()
        for future in self._in_flight.values():
            if not future.done():
                future.cancel()
        self._in_flight.clear()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _fetch(
        self,
        key: str,
        entry: CacheEntry[Any],
        endpoint: EndpointDefinition,
        args: Any,
    ) -> Any:
        started_version = entry.version
        started_invalidations = entry.invalidations
        self._store.mark_loading(key)
        logger.debug("fetching %s", key)

        try:
            result = await self._call_with_backoff(endpoint, args)
        except CacheError as e:
            if self._store.get(key) is entry:
                self._store.mark_error(key, e)
            logger.debug("fetch of %s failed: %r", key, e)
            raise

        if self._store.get(key) is not entry:
            logger.info("%s", EvictionRaceError(key))
            return result

        tags = expand_tags(normalize_tags(endpoint.build_tags(args, result)))
        self._store.upsert(key, result, tags)
        if self.on_landed is not None:
            self.on_landed(key, started_version)

        if entry.invalidations != started_invalidations:
            # Invalidated mid-flight: this result may predate the change
            logger.debug("%s was invalidated during its fetch", key)
            self._store.mark_stale(key)
            if entry.subscriber_count > 0:
                self.refresh(key)
        return entry.data

    async def _call_with_backoff(self, endpoint: EndpointDefinition, args: Any) -> Any:
        result: Any = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._rate_limit_retries + 1),
            wait=self._wait,
            retry=retry_if_exception_type(RateLimitError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                result = await call_transport(endpoint.transport, args)
        return result

    def _wait(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return to_seconds(min(error.retry_after, self._max_backoff))
        return self._exponential(retry_state)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug("background refresh failed: %r", error)


__all__ = ["FetchCoordinator", "call_transport"]
