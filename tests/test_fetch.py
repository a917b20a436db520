"""Tests for the fetch coordinator."""

import asyncio

import pytest

from tagsync import (
    CacheEngine,
    EndpointDefinition,
    FetchStatus,
    NetworkError,
    RateLimitError,
    ServerError,
)

ARGS = {"course_id": "c1"}


def lecture_tags(args, result) -> list:
    return [("lectures", args["course_id"]), *(("lecture", item["id"]) for item in result)]


def register(engine: CacheEngine, transport, **kwargs) -> str:
    engine.register_endpoint(
        EndpointDefinition("lectures", transport, build_tags=lecture_tags, **kwargs)
    )
    return engine.key_for("lectures", ARGS)


class TestDeduplication:
    """Tests for single-flight fetching."""

    async def test_concurrent_subscribers_share_one_request(
        self, engine, fake_transport
    ) -> None:
        transport = fake_transport(default=[{"id": "l1"}])
        register(engine, transport)

        a = engine.subscribe("lectures", ARGS)
        b = engine.subscribe("lectures", ARGS)
        results = await asyncio.gather(a.wait(), b.wait())

        assert results == [[{"id": "l1"}], [{"id": "l1"}]]
        assert len(transport.calls) == 1

    async def test_prefetch_joins_subscription_fetch(self, engine, fake_transport) -> None:
        transport = fake_transport(default=[])
        register(engine, transport)
        transport.hold()

        sub = engine.subscribe("lectures", ARGS)
        await asyncio.sleep(0)
        prefetch = asyncio.create_task(engine.prefetch("lectures", ARGS, force=True))
        await asyncio.sleep(0)
        transport.release()
        await asyncio.gather(sub.wait(), prefetch)

        assert len(transport.calls) == 1

    async def test_fresh_entry_not_refetched(self, engine, fake_transport) -> None:
        transport = fake_transport(default=[])
        register(engine, transport)

        await engine.prefetch("lectures", ARGS)
        sub = engine.subscribe("lectures", ARGS)
        await sub.wait()

        assert len(transport.calls) == 1

    async def test_force_refetches(self, engine, fake_transport) -> None:
        transport = fake_transport(default=[])
        register(engine, transport)

        await engine.prefetch("lectures", ARGS)
        await engine.prefetch("lectures", ARGS, force=True)
        assert len(transport.calls) == 2

    async def test_stale_after_per_endpoint(self, engine, fake_transport) -> None:
        transport = fake_transport(default=[])
        register(engine, transport, stale_after=0)

        await engine.prefetch("lectures", ARGS)
        await engine.prefetch("lectures", ARGS)
        assert len(transport.calls) == 2


class TestLanding:
    """Tests for what a completed fetch writes."""

    async def test_success_stores_data_and_tags(self, engine, fake_transport) -> None:
        key = register(engine, fake_transport(default=[{"id": "l1"}]))

        await engine.prefetch("lectures", ARGS)

        entry = engine.store.get(key)
        assert entry.status is FetchStatus.SUCCESS
        assert entry.version == 1
        assert entry.tags == {
            ("lectures", "c1"),
            ("lectures",),
            ("lecture", "l1"),
            ("lecture",),
        }

    async def test_failure_keeps_previous_data(self, engine, fake_transport) -> None:
        transport = fake_transport([{"id": "l1"}], ServerError(503, "down"))
        key = register(engine, transport)
        sub = engine.subscribe("lectures", ARGS)
        await sub.wait()

        with pytest.raises(ServerError, match="503"):
            await sub.refetch()

        entry = engine.store.get(key)
        assert entry.status is FetchStatus.ERROR
        assert isinstance(entry.error, ServerError)
        assert entry.data == [{"id": "l1"}]
        assert entry.version == 1

    async def test_all_waiters_see_the_same_error(self, engine, fake_transport) -> None:
        transport = fake_transport(ServerError(500))
        register(engine, transport)
        transport.hold()

        a = engine.subscribe("lectures", ARGS)
        b = engine.subscribe("lectures", ARGS)
        await asyncio.sleep(0)
        transport.release()
        results = await asyncio.gather(a.wait(), b.wait(), return_exceptions=True)

        assert all(isinstance(r, ServerError) for r in results)
        assert len(transport.calls) == 1

    async def test_untyped_failure_becomes_network_error(
        self, engine, fake_transport
    ) -> None:
        register(engine, fake_transport(ConnectionResetError("reset")))

        with pytest.raises(NetworkError, match="ConnectionResetError"):
            await engine.prefetch("lectures", ARGS)

    async def test_result_dropped_after_eviction(self, engine, fake_transport) -> None:
        transport = fake_transport(default=[{"id": "l1"}])
        key = register(engine, transport, keep_unused_for=0)
        transport.hold()

        sub = engine.subscribe("lectures", ARGS)
        await asyncio.sleep(0)
        sub.dispose()
        assert key not in engine.store

        transport.release()
        assert await sub.wait() is None
        assert key not in engine.store
        assert engine.store.tag_index.lookup(("lecture", "l1")) == set()

    async def test_resubscribe_after_eviction_fetches_again(
        self, engine, fake_transport
    ) -> None:
        transport = fake_transport(default=[{"id": "l1"}])
        key = register(engine, transport, keep_unused_for=0)
        transport.hold()

        first = engine.subscribe("lectures", ARGS)
        await asyncio.sleep(0)
        first.dispose()
        assert not engine.fetcher.is_in_flight(key)

        second = engine.subscribe("lectures", ARGS)
        await asyncio.sleep(0)
        transport.release()

        assert await second.wait() == [{"id": "l1"}]
        assert second.status is FetchStatus.SUCCESS
        assert len(transport.calls) == 2
        assert engine.store.tag_index.lookup(("lecture", "l1")) == {key}

    async def test_invalidated_mid_flight_refetches(
        self, engine, fake_transport
    ) -> None:
        transport = fake_transport(default=[{"id": "l1"}])
        key = register(engine, transport)
        sub = engine.subscribe("lectures", ARGS)
        await sub.wait()

        transport.hold()
        refetch = asyncio.create_task(sub.refetch())
        await asyncio.sleep(0)
        engine.invalidate([("lectures", "c1")])
        transport.release()
        await refetch
        await engine.wait_idle()

        # initial, the refetch, and one more for the invalidation it raced
        assert len(transport.calls) == 3
        entry = engine.store.get(key)
        assert engine.store.is_fresh(entry)


class TestRateLimit:
    """Tests for 429 backoff."""

    async def test_retries_rate_limited_fetch(self, engine, fake_transport) -> None:
        transport = fake_transport(
            RateLimitError(), RateLimitError(retry_after=1), default=[]
        )
        register(engine, transport)

        assert await engine.prefetch("lectures", ARGS) == []
        assert len(transport.calls) == 3

    async def test_gives_up_after_retries(self, fake_transport) -> None:
        engine = CacheEngine.create(
            rate_limit_retries=1, rate_limit_backoff="1ms", rate_limit_max_backoff="1ms"
        )
        transport = fake_transport(default=RateLimitError())
        key = register(engine, transport)

        with pytest.raises(RateLimitError):
            await engine.prefetch("lectures", ARGS)

        assert len(transport.calls) == 2
        assert engine.store.get(key).status is FetchStatus.ERROR
        engine.teardown()

    async def test_other_errors_not_retried(self, engine, fake_transport) -> None:
        transport = fake_transport(ServerError(500), default=[])
        register(engine, transport)

        with pytest.raises(ServerError):
            await engine.prefetch("lectures", ARGS)
        assert len(transport.calls) == 1

    async def test_retry_after_is_capped(self, engine) -> None:
        """A huge Retry-After waits no longer than the configured maximum."""
        calls = 0

        async def transport(args):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RateLimitError(retry_after=3_600_000)
            return []

        register(engine, transport)
        await asyncio.wait_for(engine.prefetch("lectures", ARGS), timeout=2)
        assert calls == 2
