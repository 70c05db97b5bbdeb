"""Tag allocation for anonymous identities.

A tag is a number from 0000 to 9999. No two owners hold the same tag within
one UTC hour; the window advancing is what frees tags, rows are only ever
removed by per-owner retention.
"""
from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from anonrelay.core.errors import TagInvariantError, TagsExhaustedError
from anonrelay.persistence.repos import tags as tags_repo
from anonrelay.services import retention
from anonrelay.services.telemetry import increment_counter
from anonrelay.services.window import current_window, next_window, utc_now


logger = logging.getLogger(__name__)

TAG_MIN = 0
TAG_MAX = 9999


def pick_tag(claimed: Sequence[int], seed: int) -> int | None:
    """Return the smallest unclaimed tag >= seed, or None when none is left.

    `claimed` must be sorted ascending. Collisions shift the candidate forward
    past the claimed tag instead of re-rolling, so the result is deterministic
    for a given claimed set and seed.

    Claimed tags below the seed never move the candidate. Bumping it once per
    claimed tag <= seed (as a plain counter would) can jump over a free tag,
    e.g. seed 5 with {1, 6} would yield 7 instead of 5.
    """
    candidate = seed
    for tag in claimed:
        if candidate < tag:
            break
        if candidate == tag:
            candidate = tag + 1
    if candidate > TAG_MAX:
        return None
    return candidate


class TagAllocator:
    def __init__(
        self,
        *,
        time_provider: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
        retention_count: int = retention.DEFAULT_RETENTION,
    ) -> None:
        # Allow time and randomness injection for deterministic window tests.
        self._time_provider = time_provider or utc_now
        self._rng = rng or random.Random()
        self._retention_count = retention_count

    async def get_current_tag(self, session: AsyncSession, owner_id: str) -> int | None:
        window_start = current_window(self._time_provider())
        return await tags_repo.get_current_tag(session, owner_id, window_start)

    async def allocate(self, session: AsyncSession, owner_id: str) -> int:
        # Must run inside the caller's transaction so read, insert and prune commit together.
        now = self._time_provider()
        window_start = current_window(now)
        claimed = await tags_repo.list_claimed_tags(session, window_start)

        seed = self._rng.randint(TAG_MIN, TAG_MAX)
        tag = pick_tag(claimed, seed)
        if tag is None:
            increment_counter("anon_tags_exhausted_total")
            logger.warning(
                "anon_tags_exhausted window=%s claimed=%s", window_start.isoformat(), len(claimed)
            )
            raise TagsExhaustedError(resets_at=next_window(now))
        if tag in set(claimed):
            raise TagInvariantError(
                f"allocator chose claimed tag {tag} for window {window_start.isoformat()}"
            )

        await tags_repo.insert_tag(session, owner_id, tag, now)
        await retention.prune(session, owner_id, self._retention_count)
        increment_counter("anon_tags_allocated_total")
        logger.info("anon_tag_allocated owner=%s tag=%04d window=%s", owner_id, tag, window_start.isoformat())
        return tag
