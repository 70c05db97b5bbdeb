from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from anonrelay.domain.models import AnonMute


async def get_active_mute(session: AsyncSession, owner_id: str, now: datetime) -> AnonMute | None:
    result = await session.execute(
        select(AnonMute).where(
            AnonMute.owner_id == owner_id,
            or_(AnonMute.end_date.is_(None), AnonMute.end_date > now),
        )
    )
    return result.scalar_one_or_none()


async def mute_owner(
    session: AsyncSession,
    owner_id: str,
    *,
    end_date: datetime | None,
    reason: str | None,
) -> AnonMute:
    # Replace any previous mute so the latest moderator decision applies.
    existing = await session.get(AnonMute, owner_id)
    if existing is not None:
        existing.end_date = end_date
        existing.reason = reason
        await session.flush()
        return existing
    mute = AnonMute(owner_id=owner_id, end_date=end_date, reason=reason)
    session.add(mute)
    await session.flush()
    return mute


async def unmute_owner(session: AsyncSession, owner_id: str) -> bool:
    result = await session.execute(delete(AnonMute).where(AnonMute.owner_id == owner_id))
    return bool(result.rowcount)


def describe_mute(mute: AnonMute) -> str:
    # Render the user-facing mute notice without leaking moderator identity.
    if mute.end_date is None:
        until = "until a moderator lifts it"
    else:
        end = mute.end_date
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        until = f"until {end.strftime('%Y-%m-%d %H:%M')} UTC"
    message = f"You are muted from sending anonymous messages {until}."
    if mute.reason:
        message = f"{message} Reason: {mute.reason}"
    return message
