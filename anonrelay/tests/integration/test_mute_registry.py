from __future__ import annotations

from datetime import timedelta

import pytest

from anonrelay.persistence.db import transaction_scope
from anonrelay.persistence.repos.mutes import (
    describe_mute,
    get_active_mute,
    mute_owner,
    unmute_owner,
)


@pytest.mark.asyncio
async def test_indefinite_mute_stays_active(session_factory, clock) -> None:
    async with transaction_scope(session_factory) as session:
        await mute_owner(session, "u1", end_date=None, reason=None)

    clock.advance(hours=24 * 30)
    async with session_factory() as session:
        mute = await get_active_mute(session, "u1", clock())
    assert mute is not None
    assert describe_mute(mute) == (
        "You are muted from sending anonymous messages until a moderator lifts it."
    )


@pytest.mark.asyncio
async def test_remute_replaces_previous_decision(session_factory, clock) -> None:
    async with transaction_scope(session_factory) as session:
        await mute_owner(session, "u1", end_date=None, reason="first")
    async with transaction_scope(session_factory) as session:
        await mute_owner(session, "u1", end_date=clock() + timedelta(hours=1), reason="second")

    async with session_factory() as session:
        mute = await get_active_mute(session, "u1", clock())
        assert mute is not None
        assert mute.reason == "second"
        assert await get_active_mute(session, "u1", clock() + timedelta(hours=2)) is None


@pytest.mark.asyncio
async def test_unmute_removes_row(session_factory, clock) -> None:
    async with transaction_scope(session_factory) as session:
        await mute_owner(session, "u1", end_date=None, reason=None)
    async with transaction_scope(session_factory) as session:
        assert await unmute_owner(session, "u1") is True
    async with transaction_scope(session_factory) as session:
        assert await unmute_owner(session, "u1") is False
        assert await get_active_mute(session, "u1", clock()) is None
