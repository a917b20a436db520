"""Optimistic Mutation Executor.

A mutation runs in four steps:
1. Every entry in its patch plan that is already cached gets the forward
   patch, synchronously, before the request leaves.
2. The transport is awaited.
3. On success the server's payload is adopted where the plan asks for it,
   saved inverses are dropped, and the declared tags are invalidated.
4. On failure each patch is reverted only if the Version Guard confirms
   nobody replaced the entry since; otherwise the entry is refetched.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from collections import deque
from collections.abc import Mapping
from logging import getLogger
from typing import Any, NamedTuple

from tagsync.errors import CacheError
from tagsync.fetch import call_transport
from tagsync.invalidation import InvalidationCoordinator
from tagsync.store import CacheStore, now_ms
from tagsync.tags import normalize_tags
from tagsync.types import (
    AppliedPatch,
    Mutation,
    MutationDefinition,
    MutationResult,
    MutationState,
    PatchSpec,
    Recipe,
)
from tagsync.version_guard import VersionGuard

logger = getLogger(__name__)


class SettledMutation(NamedTuple):
    id: int
    name: str
    outcome: MutationState


def run_recipe(recipe: Recipe, data: Any) -> Any:
    """Apply ``recipe`` to a private copy of ``data``.

    The recipe may edit the copy in place and return None, or return a
    replacement value.
    """
    draft = copy.deepcopy(data)
    result = recipe(draft)
    return draft if result is None else result


class OptimisticMutationExecutor:
    """Owns in-flight mutations and their patches until they settle."""

    def __init__(
        self,
        store: CacheStore,
        invalidation: InvalidationCoordinator,
        guard: VersionGuard | None = None,
        *,
        history_size: int = 50,
    ) -> None:
        self._store = store
        self._invalidation = invalidation
        self.guard = guard if guard is not None else VersionGuard()
        self._ids = itertools.count(1)
        self._pending: dict[str, list[AppliedPatch]] = {}
        self.active: dict[int, Mutation] = {}
        self.history: deque[SettledMutation] = deque(maxlen=history_size)

    def pending_patches(self, key: str) -> list[AppliedPatch]:
        return list(self._pending.get(key, ()))

    async def execute(self, definition: MutationDefinition, args: Any) -> Any:
        """Run ``definition`` optimistically and return the server's result.

        Raises:
            NetworkError, ServerError: the request failed; the cache has been
                rolled back (or refetched where rollback was unsafe).
        """
        mutation = Mutation(
            id=next(self._ids),
            name=definition.name,
            declared_tags=normalize_tags(definition.declared_tags(args)),
            entity_id=definition.entity_id(args) if definition.entity_id else None,
            started_at=now_ms(),
        )
        self.active[mutation.id] = mutation
        try:
            self._apply(mutation, definition.patch_plan(args))
            try:
                outcome = await call_transport(definition.transport, args)
            except asyncio.CancelledError:
                self._abandon(mutation)
                raise
            except CacheError as e:
                logger.debug(
                    "mutation %s #%d failed: %r", mutation.name, mutation.id, e
                )
                self._roll_back(mutation)
                raise
            return self._confirm(mutation, outcome)
        finally:
            self._settle(mutation)

    def rebase(self, key: str, fetch_started_at_version: int) -> None:
        """Re-apply pending patches on top of data a fetch just stored.

        Only patches applied after that fetch started are re-applied; the
        server could not have seen them yet.
        """
        patches = self._pending.get(key)
        entry = self._store.get(key)
        if not patches or entry is None:
            return
        for patch in patches:
            if not self.guard.should_rebase(patch, fetch_started_at_version):
                continue
            try:
                patched = run_recipe(patch.forward, entry.data)
            except Exception:
                logger.exception(
                    "re-applying mutation %d to %s", patch.mutation_id, key
                )
                continue
            patch.pre_image = copy.deepcopy(entry.data)
            patch.applied_at_version = self._store.upsert(key, patched, fetched=False)
            logger.debug("re-applied mutation %d to %s", patch.mutation_id, key)

    def patch_entry(self, key: str, recipe: Recipe) -> int | None:
        """Apply a one-off patch to a cached entry outside any mutation.

        Returns the new version, or None when ``key`` holds no data.
        """
        entry = self._store.get(key)
        if entry is None or entry.data is None:
            return None
        return self._store.upsert(
            key, run_recipe(recipe, entry.data), fetched=False
        )

    def clear(self) -> None:
        self._pending.clear()
        self.active.clear()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _apply(self, mutation: Mutation, plan: Mapping[str, PatchSpec]) -> None:
        for key, spec in plan.items():
            entry = self._store.get(key)
            if entry is None or entry.data is None:
                # Only materialized entries are patched
                logger.debug("mutation %d: %s not cached, no patch", mutation.id, key)
                continue
            pre_image = copy.deepcopy(entry.data)
            try:
                patched = run_recipe(spec.forward, entry.data)
            except Exception:
                self._roll_back(mutation)
                raise
            patch = AppliedPatch(
                mutation_id=mutation.id,
                target_key=key,
                forward=spec.forward,
                inverse=spec.inverse,
                pre_image=pre_image,
                applied_at_version=self._store.upsert(key, patched, fetched=False),
                adopt=spec.adopt,
            )
            mutation.patches.append(patch)
            self._pending.setdefault(key, []).append(patch)
        mutation.state = MutationState.OPTIMISTICALLY_APPLIED

    def _confirm(self, mutation: Mutation, outcome: Any) -> Any:
        if isinstance(outcome, MutationResult):
            result = outcome.result
            tags = mutation.declared_tags | normalize_tags(outcome.invalidates)
        else:
            result = outcome
            tags = mutation.declared_tags

        adopted: set[str] = set()
        if result is not None:
            for patch in mutation.patches:
                entry = self._store.get(patch.target_key)
                if patch.adopt is None or entry is None or entry.data is None:
                    continue
                adopt = patch.adopt
                adopted_data = run_recipe(lambda d: adopt(d, result), entry.data)
                self._store.upsert(patch.target_key, adopted_data, fetched=False)
                adopted.add(patch.target_key)

        self._release(mutation)
        mutation.state = MutationState.CONFIRMED
        self._invalidation.invalidate(tags, skip=adopted)
        return result

    def _roll_back(self, mutation: Mutation) -> None:
        superseded: list[str] = []
        for patch in reversed(mutation.patches):
            entry = self._store.get(patch.target_key)
            if entry is None:
                continue
            if self.guard.check_revert(entry, patch) is not None:
                superseded.append(patch.target_key)
                continue
            if patch.inverse is None:
                restored = patch.pre_image
            else:
                restored = run_recipe(patch.inverse, entry.data)
            self._store.upsert(patch.target_key, restored, fetched=False)

        self._release(mutation)
        self._invalidation.refresh_keys(superseded)
        if superseded:
            mutation.state = MutationState.SUPERSEDED_SKIP
        else:
            mutation.state = MutationState.ROLLED_BACK

    def _abandon(self, mutation: Mutation) -> None:
        # Outcome unknown: the server may or may not have applied it
        self._release(mutation)
        self._invalidation.refresh_keys(p.target_key for p in mutation.patches)

    def _release(self, mutation: Mutation) -> None:
        for patch in mutation.patches:
            patches = self._pending.get(patch.target_key)
            if patches is None:
                continue
            if patch in patches:
                patches.remove(patch)
            if not patches:
                del self._pending[patch.target_key]

    def _settle(self, mutation: Mutation) -> None:
        self._release(mutation)
        self.active.pop(mutation.id, None)
        self.history.append(SettledMutation(mutation.id, mutation.name, mutation.state))
        mutation.state = MutationState.DISCARDED
        mutation.patches.clear()
