from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from anonrelay.core.errors import (
    AllocationConflictError,
    DeliveryFailedError,
    MessageRejectedError,
    NothingToRotateError,
    OwnerMutedError,
    RetagLimitError,
    TagsExhaustedError,
)
from anonrelay.domain.models import AnonTag
from anonrelay.persistence.db import transaction_scope
from anonrelay.persistence.repos import tags as tags_repo
from anonrelay.persistence.repos.mutes import mute_owner
from anonrelay.providers.webhooks.fake import FakeWebhookPlatform
from anonrelay.services.commands import AnonCommands
from anonrelay.services.endpoint_cache import EndpointCache
from anonrelay.services.identity import AnonIdentityService
from anonrelay.services.tag_allocator import TAG_MAX, TagAllocator
from anonrelay.services.telemetry import counters_snapshot
from anonrelay.services.window import current_window
from anonrelay.tests.utils.ledger import FixedRandom, count_rows, fill_window, window_tags


def _service(session_factory, clock, platform, allocator=None) -> AnonIdentityService:
    # Fresh cache per service so endpoint state never leaks between tests.
    return AnonIdentityService(
        session_factory=session_factory,
        platform=platform,
        endpoint_cache=EndpointCache(),
        allocator=allocator,
        time_provider=clock,
    )


@pytest.fixture
def platform() -> FakeWebhookPlatform:
    return FakeWebhookPlatform()


@pytest.mark.asyncio
async def test_rotate_until_limit_end_to_end(session_factory, clock, platform) -> None:
    service = _service(session_factory, clock, platform)
    window = current_window(clock())

    sent = await service.send_anonymously("u1", "c1", "hello")
    t0 = sent.tag
    assert 0 <= t0 <= TAG_MAX
    assert await count_rows(session_factory, owner_id="u1") == 1

    first = await service.rotate_tag("u1")
    assert first.old_tag == t0
    assert first.new_tag != t0
    assert await count_rows(session_factory, owner_id="u1") == 2

    await service.rotate_tag("u1")
    await service.rotate_tag("u1")
    assert await count_rows(session_factory, owner_id="u1", window_start=window) == 4

    with pytest.raises(RetagLimitError):
        await service.rotate_tag("u1")
    assert await count_rows(session_factory, owner_id="u1", window_start=window) == 4


@pytest.mark.asyncio
async def test_limit_resets_in_next_window(session_factory, clock, platform) -> None:
    service = _service(session_factory, clock, platform)
    await service.send_anonymously("u1", "c1", "hello")
    for _ in range(3):
        await service.rotate_tag("u1")
    with pytest.raises(RetagLimitError):
        await service.rotate_tag("u1")

    clock.advance(hours=1)
    # No tag yet in the new window, so rotation has nothing to rotate.
    with pytest.raises(NothingToRotateError):
        await service.rotate_tag("u1")
    sent = await service.send_anonymously("u1", "c1", "new hour")
    result = await service.rotate_tag("u1")
    assert result.old_tag == sent.tag


@pytest.mark.asyncio
async def test_send_reuses_current_tag_and_identity(session_factory, clock, platform) -> None:
    service = _service(session_factory, clock, platform)

    first = await service.send_anonymously("u1", "c1", "one")
    clock.advance(minutes=30)
    second = await service.send_anonymously("u1", "c1", "two")

    assert first.tag == second.tag
    assert await count_rows(session_factory, owner_id="u1") == 1
    identities = [message.identity for message in platform.dispatched]
    assert identities[0] == identities[1]
    assert identities[0].username == f"Anonymous#{first.tag:04d}"
    assert identities[0].avatar_url.endswith(f"cache={first.tag}")
    assert [message.content for message in platform.dispatched] == ["one", "two"]


@pytest.mark.asyncio
async def test_delivery_failure_keeps_claimed_tag(session_factory, clock, platform) -> None:
    service = _service(session_factory, clock, platform)
    platform.fail_dispatch = True

    with pytest.raises(DeliveryFailedError):
        await service.send_anonymously("u1", "c1", "hello")
    assert await count_rows(session_factory, owner_id="u1") == 1

    platform.fail_dispatch = False
    async with session_factory() as session:
        claimed = await tags_repo.get_current_tag(session, "u1", current_window(clock()))
    sent = await service.send_anonymously("u1", "c1", "hello again")
    assert sent.tag == claimed
    assert await count_rows(session_factory, owner_id="u1") == 1


@pytest.mark.asyncio
async def test_endpoint_lookup_failure_is_reported_as_delivery_failure(
    session_factory, clock, platform
) -> None:
    service = _service(session_factory, clock, platform)
    platform.fail_lookup = True

    with pytest.raises(DeliveryFailedError):
        await service.send_anonymously("u1", "c1", "hello")
    assert counters_snapshot()["anon_delivery_failures_total"] == 1


@pytest.mark.asyncio
async def test_concurrent_sends_to_new_channel_share_one_lookup(session_factory, clock) -> None:
    platform = FakeWebhookPlatform(lookup_delay_s=0.05)
    service = _service(session_factory, clock, platform)

    await asyncio.gather(
        service.send_anonymously("u1", "c9", "first"),
        service.send_anonymously("u2", "c9", "second"),
    )

    assert platform.lookup_calls == ["c9"]
    endpoints = {message.endpoint for message in platform.dispatched}
    assert len(endpoints) == 1


@pytest.mark.asyncio
async def test_concurrent_allocations_never_share_a_tag(session_factory, clock, platform) -> None:
    service = _service(session_factory, clock, platform)
    owners = [f"owner-{index}" for index in range(40)]

    sent = await asyncio.gather(
        *(service.send_anonymously(owner, f"c{index % 3}", "hi") for index, owner in enumerate(owners))
    )

    tags = [message.tag for message in sent]
    assert len(set(tags)) == len(owners)
    stored = await window_tags(session_factory, clock())
    assert sorted(stored) == sorted(tags)


@pytest.mark.asyncio
async def test_lost_race_is_retried_with_fresh_read(session_factory, clock, platform, monkeypatch) -> None:
    await fill_window(session_factory, clock(), [7])
    real_list = tags_repo.list_claimed_tags
    calls = {"count": 0}

    async def _stale_then_real(session, window_start):
        # First read misses the competing claim, as if another process committed after it.
        calls["count"] += 1
        if calls["count"] == 1:
            return []
        return await real_list(session, window_start)

    monkeypatch.setattr(tags_repo, "list_claimed_tags", _stale_then_real)
    allocator = TagAllocator(time_provider=clock, rng=FixedRandom(7))
    service = _service(session_factory, clock, platform, allocator=allocator)

    sent = await service.send_anonymously("u1", "c1", "hello")

    assert sent.tag == 8
    assert counters_snapshot()["anon_allocation_conflicts_total"] == 1


@pytest.mark.asyncio
async def test_persistent_conflicts_are_bounded(session_factory, clock, platform, monkeypatch) -> None:
    await fill_window(session_factory, clock(), [7])

    async def _always_stale(session, window_start):
        return []

    monkeypatch.setattr(tags_repo, "list_claimed_tags", _always_stale)
    allocator = TagAllocator(time_provider=clock, rng=FixedRandom(7))
    service = _service(session_factory, clock, platform, allocator=allocator)

    with pytest.raises(AllocationConflictError):
        await service.send_anonymously("u1", "c1", "hello")
    assert counters_snapshot()["anon_allocation_conflicts_total"] == 3
    assert await count_rows(session_factory, owner_id="u1") == 0


@pytest.mark.asyncio
async def test_exhausted_window_rejects_send(session_factory, clock, platform) -> None:
    await fill_window(session_factory, clock(), range(TAG_MAX + 1))
    service = _service(session_factory, clock, platform)

    with pytest.raises(TagsExhaustedError):
        await service.send_anonymously("late-owner", "c1", "hello")
    assert platform.dispatched == []


@pytest.mark.asyncio
async def test_rejected_message_claims_no_tag(session_factory, clock, platform) -> None:
    service = _service(session_factory, clock, platform)

    with pytest.raises(MessageRejectedError):
        await service.send_anonymously("u1", "c1", "x" * 2001)
    assert await count_rows(session_factory) == 0


@pytest.mark.asyncio
async def test_muted_owner_cannot_send(session_factory, clock, platform) -> None:
    async with transaction_scope(session_factory) as session:
        await mute_owner(session, "u1", end_date=clock() + timedelta(hours=2), reason="spam")
        await mute_owner(session, "u2", end_date=clock() - timedelta(minutes=1), reason=None)
    service = _service(session_factory, clock, platform)

    with pytest.raises(OwnerMutedError) as excinfo:
        await service.send_anonymously("u1", "c1", "hello")
    assert "Reason: spam" in excinfo.value.message
    assert await count_rows(session_factory, owner_id="u1") == 0

    # Expired mutes no longer apply.
    await service.send_anonymously("u2", "c1", "hello")


@pytest.mark.asyncio
async def test_commands_boundary_round_trip(session_factory, clock, platform) -> None:
    commands = AnonCommands(_service(session_factory, clock, platform))

    missing = await commands.anon_retag(owner_id="u1")
    assert missing.ok is False
    assert missing.content.startswith("You don't have a tag to reset!")

    sent = await commands.anon(owner_id="u1", channel_id="c1", message="hello")
    assert sent.content == "Sent!"

    rotated = await commands.anon_retag(owner_id="u1")
    assert rotated.ok is True
    assert rotated.content.startswith("Done: #")


@pytest.mark.asyncio
async def test_unrelated_integrity_error_is_not_retried(session_factory, clock, platform, monkeypatch) -> None:
    async def _insert_without_owner(session, owner_id, tag, created_at):
        session.add(AnonTag(owner_id=None, tag=tag, window_start=current_window(created_at), created_at=created_at))
        await session.flush()

    monkeypatch.setattr(tags_repo, "insert_tag", _insert_without_owner)
    service = _service(session_factory, clock, platform)

    with pytest.raises(IntegrityError):
        await service.send_anonymously("u1", "c1", "hello")
    assert "anon_allocation_conflicts_total" not in counters_snapshot()
    assert await count_rows(session_factory) == 0


@pytest.mark.asyncio
async def test_limit_errors_name_the_next_window(session_factory, clock, platform) -> None:
    service = _service(session_factory, clock, platform)
    await service.send_anonymously("u1", "c1", "hello")
    for _ in range(3):
        await service.rotate_tag("u1")

    with pytest.raises(RetagLimitError) as excinfo:
        await service.rotate_tag("u1")
    assert excinfo.value.resets_at == current_window(clock()) + timedelta(hours=1)
    assert excinfo.value.message.endswith("(16:00 UTC).")
