"""Version Guard: decides whether a recorded patch may still touch an entry."""

from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from typing import Any

from tagsync.errors import ConflictSkip
from tagsync.types import AppliedPatch, CacheEntry

logger = getLogger(__name__)


@dataclass(slots=True)
class VersionGuard:
    """Compares an entry's current version with the one a patch recorded.

    A mismatch means somebody else replaced the data after the patch went
    in; the caller must leave the entry alone and refetch instead.
    """

    skips: int = 0
    reverts: int = 0
    rebases: int = 0

    def allows(self, entry: CacheEntry[Any] | None, applied_at_version: int) -> bool:
        return entry is not None and entry.version == applied_at_version

    def check_revert(
        self, entry: CacheEntry[Any] | None, patch: AppliedPatch
    ) -> ConflictSkip | None:
        """Return None when ``patch`` may be reverted, else the conflict."""
        if self.allows(entry, patch.applied_at_version):
            self.reverts += 1
            return None
        self.skips += 1
        actual = entry.version if entry is not None else -1
        conflict = ConflictSkip(patch.target_key, patch.applied_at_version, actual)
        logger.info("rollback skipped (mutation %d): %s", patch.mutation_id, conflict)
        return conflict

    def should_rebase(self, patch: AppliedPatch, fetch_started_at_version: int) -> bool:
        """A landed fetch predates ``patch`` when it started below its version."""
        if fetch_started_at_version < patch.applied_at_version:
            self.rebases += 1
            return True
        return False
