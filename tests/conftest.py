"""Shared pytest fixtures."""

import asyncio
from collections import deque
from typing import Any

import pytest

from tagsync import CacheEngine


class FakeTransport:
    """Stand-in for an endpoint transport.

    Responses are consumed in order, then ``default`` is used (called with
    the args if callable). Exceptions are raised instead of returned. While
    ``hold()`` is active, calls block until ``release()``.
    """

    def __init__(self, *responses: Any, default: Any = None) -> None:
        self.calls: list[Any] = []
        self._responses = deque(responses)
        self._default = default
        self._gate: asyncio.Event | None = None

    def hold(self) -> None:
        self._gate = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()

    def respond(self, *responses: Any) -> None:
        self._responses.extend(responses)

    async def __call__(self, args: Any) -> Any:
        self.calls.append(args)
        if self._gate is not None:
            await self._gate.wait()
        if self._responses:
            value = self._responses.popleft()
        elif callable(self._default):
            value = self._default(args)
        else:
            value = self._default
        if isinstance(value, BaseException):
            raise value
        return value


@pytest.fixture
def fake_transport() -> type[FakeTransport]:
    return FakeTransport


@pytest.fixture
async def engine():
    """A fresh engine with fast rate-limit backoff, torn down after the test."""
    engine = CacheEngine.create(
        stale_after="10s",
        keep_unused_for="10s",
        rate_limit_backoff="1ms",
        rate_limit_max_backoff="5ms",
    )
    yield engine
    engine.teardown()
    # Let cancelled background refreshes unwind
    await asyncio.sleep(0)
