"""tagsync - Optimistic, tag-invalidated query cache for asyncio clients."""

from contextlib import suppress

# Key codec
from tagsync.codec import UNSET, check_args, encode_key

# Duration parsing
from tagsync.duration import parse_duration

# Engine API
from tagsync.engine import CacheEngine, create_engine

# Errors
from tagsync.errors import (
    CacheError,
    ConflictSkip,
    EvictionRaceError,
    NetworkError,
    RateLimitError,
    ServerError,
    UnknownEndpointError,
)
from tagsync.subscriptions import Subscription
from tagsync.tags import define_tags, expand_tags, normalize_tag, tag

# Core types
from tagsync.types import (
    CacheEntry,
    Duration,
    EndpointDefinition,
    FetchStatus,
    MutationDefinition,
    MutationResult,
    MutationState,
    PatchSpec,
    Tag,
)
from tagsync.version_guard import VersionGuard

# Optional transport - only available when httpx is installed
with suppress(ImportError):
    from tagsync.transports import HttpTransport

__version__ = "0.1.0"

__all__ = [
    "UNSET",
    "CacheEngine",
    "CacheEntry",
    "CacheError",
    "ConflictSkip",
    "Duration",
    "EndpointDefinition",
    "EvictionRaceError",
    "FetchStatus",
    "HttpTransport",
    "MutationDefinition",
    "MutationResult",
    "MutationState",
    "NetworkError",
    "PatchSpec",
    "RateLimitError",
    "ServerError",
    "Subscription",
    "Tag",
    "UnknownEndpointError",
    "VersionGuard",
    "check_args",
    "create_engine",
    "define_tags",
    "encode_key",
    "expand_tags",
    "normalize_tag",
    "parse_duration",
    "tag",
]
