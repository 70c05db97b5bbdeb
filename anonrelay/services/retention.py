from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from anonrelay.persistence.repos.tags import prune_owner_tags


logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 20


async def prune(session: AsyncSession, owner_id: str, keep: int = DEFAULT_RETENTION) -> int:
    # Runs in the caller's transaction; errors propagate so the triggering insert rolls back too.
    deleted = await prune_owner_tags(session, owner_id, keep)
    if deleted:
        logger.debug("anon_tags_pruned owner=%s deleted=%s keep=%s", owner_id, deleted, keep)
    return deleted
