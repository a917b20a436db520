"""Core types for the tagsync cache engine."""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import (
    TYPE_CHECKING,
    Any,
    Generic,
    NewType,
    TypeVar,
)

if TYPE_CHECKING:
    from tagsync.errors import CacheError

T = TypeVar("T")

# ("lectures",) is a collection tag, ("lecture", "l1") an entity tag
if TYPE_CHECKING:
    Tag = NewType("Tag", tuple[str, ...])
else:
    Tag = tuple

# Anything tags.normalize_tag accepts: "lectures", ("lecture", "l1"),
# {"type": "lecture", "id": "l1"}
TagLike = str | tuple[str, ...] | Mapping[str, Any]

# "30s", "5m", "2h", a timedelta, or milliseconds
Duration = str | int | timedelta

Transport = Callable[[Any], Awaitable[Any]]
Recipe = Callable[[Any], Any]


class FetchStatus(enum.Enum):
    """Lifecycle of the fetch behind a cache entry."""

    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class MutationState(enum.Enum):
    """Lifecycle of a single mutation."""

    CREATED = "created"
    OPTIMISTICALLY_APPLIED = "optimistically_applied"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    SUPERSEDED_SKIP = "superseded_skip"
    DISCARDED = "discarded"


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    """A cached query result with its bookkeeping."""

    key: str
    endpoint: str
    args: Any
    data: T | None = None
    status: FetchStatus = FetchStatus.IDLE
    error: CacheError | None = None
    tags: frozenset[Tag] = frozenset()
    version: int = 0
    subscriber_count: int = 0
    last_updated_at: int = 0  # Unix timestamp ms
    stale_after: int = 0  # ms
    invalidated: bool = False
    invalidations: int = 0


@dataclass(frozen=True, slots=True)
class PatchSpec:
    """How one cache entry changes while a mutation is in flight.

    ``forward`` and ``inverse`` receive a private copy of the entry data and
    may either mutate it in place (returning None) or return a replacement.
    Without ``inverse`` the pre-image saved before ``forward`` is restored.
    ``adopt(data, result)`` folds the server's answer into the entry.
    """

    forward: Recipe
    inverse: Recipe | None = None
    adopt: Callable[[Any, Any], Any] | None = None


@dataclass(slots=True, eq=False)
class AppliedPatch:
    """An optimistic patch that is currently visible in the store."""

    mutation_id: int
    target_key: str
    forward: Recipe
    inverse: Recipe | None
    pre_image: Any
    applied_at_version: int
    adopt: Callable[[Any, Any], Any] | None = None


@dataclass(slots=True, eq=False)
class Mutation:
    """One dispatched mutation; owns its applied patches until it settles."""

    id: int
    name: str
    declared_tags: frozenset[Tag]
    entity_id: str | None
    started_at: int  # Unix timestamp ms
    state: MutationState = MutationState.CREATED
    patches: list[AppliedPatch] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class EndpointDefinition:
    """A query endpoint the engine can fetch and cache."""

    name: str
    transport: Transport
    build_tags: Callable[[Any, Any], list[TagLike]]
    stale_after: Duration | None = None
    keep_unused_for: Duration | None = None


@dataclass(frozen=True, slots=True)
class MutationDefinition:
    """A mutation endpoint with its optimistic patch plan."""

    name: str
    transport: Transport
    declared_tags: Callable[[Any], list[TagLike]]
    patch_plan: Callable[[Any], Mapping[str, PatchSpec]] = lambda args: {}
    entity_id: Callable[[Any], str | None] | None = None


@dataclass(frozen=True, slots=True)
class MutationResult(Generic[T]):
    """Result of a mutation with extra tags to invalidate."""

    result: T
    invalidates: list[TagLike]
