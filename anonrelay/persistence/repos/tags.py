from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from anonrelay.domain.models import AnonTag
from anonrelay.services.window import current_window


async def list_claimed_tags(session: AsyncSession, window_start: datetime) -> list[int]:
    result = await session.execute(
        select(AnonTag.tag).where(AnonTag.window_start == window_start).order_by(AnonTag.tag.asc())
    )
    return [int(tag) for tag in result.scalars().all()]


async def get_current_tag(
    session: AsyncSession, owner_id: str, window_start: datetime
) -> int | None:
    # Latest claim wins; id breaks created_at ties at coarse clock resolution.
    result = await session.execute(
        select(AnonTag.tag)
        .where(AnonTag.owner_id == owner_id, AnonTag.window_start == window_start)
        .order_by(AnonTag.created_at.desc(), AnonTag.id.desc())
        .limit(1)
    )
    tag = result.scalar_one_or_none()
    return int(tag) if tag is not None else None


async def count_owner_tags(session: AsyncSession, owner_id: str, window_start: datetime) -> int:
    result = await session.execute(
        select(func.count(AnonTag.id)).where(
            AnonTag.owner_id == owner_id,
            AnonTag.window_start == window_start,
        )
    )
    return int(result.scalar_one())


async def insert_tag(
    session: AsyncSession, owner_id: str, tag: int, created_at: datetime
) -> AnonTag:
    record = AnonTag(
        owner_id=owner_id,
        tag=tag,
        window_start=current_window(created_at),
        created_at=created_at,
    )
    session.add(record)
    # Flush now so a (window, tag) collision surfaces inside the allocation unit.
    await session.flush()
    return record


async def prune_owner_tags(session: AsyncSession, owner_id: str, keep: int) -> int:
    stale = await session.execute(
        select(AnonTag.id)
        .where(AnonTag.owner_id == owner_id)
        .order_by(AnonTag.created_at.desc(), AnonTag.id.desc())
        .offset(max(keep, 0))
    )
    stale_ids = list(stale.scalars().all())
    if not stale_ids:
        return 0
    result = await session.execute(delete(AnonTag).where(AnonTag.id.in_(stale_ids)))
    return int(result.rowcount or 0)


async def find_tag_owner(session: AsyncSession, tag: int, at: datetime) -> AnonTag | None:
    # Resolve who held a tag in the window containing `at`, if the row is still retained.
    result = await session.execute(
        select(AnonTag).where(AnonTag.tag == tag, AnonTag.window_start == current_window(at))
    )
    return result.scalar_one_or_none()


async def list_owner_tags(session: AsyncSession, owner_id: str, limit: int = 20) -> list[AnonTag]:
    result = await session.execute(
        select(AnonTag)
        .where(AnonTag.owner_id == owner_id)
        .order_by(AnonTag.created_at.desc(), AnonTag.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
