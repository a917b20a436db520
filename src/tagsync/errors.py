"""Error taxonomy for the cache engine.

``NetworkError`` and ``ServerError`` reach callers. ``ConflictSkip`` and
``EvictionRaceError`` describe internal recovery decisions; they are logged,
never raised out of the engine.
"""

from __future__ import annotations


class CacheError(Exception):
    """Base class for every error the engine produces."""


class NetworkError(CacheError):
    """The transport failed to complete the request."""


class ServerError(CacheError):
    """The transport completed but the server rejected the request."""

    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(f"HTTP {status}: {message}" if message else f"HTTP {status}")
        self.status = status
        self.message = message


class RateLimitError(ServerError):
    """The server answered 429; ``retry_after`` is in milliseconds."""

    def __init__(
        self,
        message: str = "Too many requests",
        *,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(429, message)
        self.retry_after = retry_after


class ConflictSkip(CacheError):
    """A rollback was declined because the entry moved on."""

    def __init__(self, key: str, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"{key}: expected version {expected_version}, found {actual_version}"
        )
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version


class EvictionRaceError(CacheError):
    """A fetch landed after its entry had been evicted; the result is dropped."""

    def __init__(self, key: str) -> None:
        super().__init__(f"{key} was evicted while its fetch was in flight")
        self.key = key


class UnknownEndpointError(CacheError, KeyError):
    """No endpoint or mutation is registered under the given name."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"No endpoint or mutation registered as {self.name!r}"


__all__ = [
    "CacheError",
    "ConflictSkip",
    "EvictionRaceError",
    "NetworkError",
    "RateLimitError",
    "ServerError",
    "UnknownEndpointError",
]
