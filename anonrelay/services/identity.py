from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from anonrelay.core.config import Settings, get_settings
from anonrelay.core.errors import (
    AllocationConflictError,
    DeliveryFailedError,
    NothingToRotateError,
    OwnerMutedError,
    RetagLimitError,
    TransientError,
)
from anonrelay.domain.models import TAG_CONSTRAINT_NAME, AnonMute
from anonrelay.persistence.db import transaction_scope
from anonrelay.persistence.repos.mutes import describe_mute, get_active_mute
from anonrelay.providers.webhooks.base import DisplayIdentity, SentMessage, WebhookPlatform
from anonrelay.services.endpoint_cache import EndpointCache
from anonrelay.services.retag_limiter import RetagLimiter
from anonrelay.services.sanitizer import AuthorContext, MentionSanitizer, Sanitizer
from anonrelay.services.tag_allocator import TagAllocator
from anonrelay.services.telemetry import increment_counter
from anonrelay.services.window import next_window, utc_now


logger = logging.getLogger(__name__)

T = TypeVar("T")

MuteLookup = Callable[[AsyncSession, str, datetime], Awaitable[AnonMute | None]]

# Postgres serialization_failure and deadlock_detected.
_CONFLICT_SQLSTATES = {"40001", "40P01"}


@dataclass(frozen=True)
class RetagResult:
    old_tag: int
    new_tag: int


def format_tag(tag: int) -> str:
    return f"#{tag:04d}"


def _is_tag_collision(exc: IntegrityError) -> bool:
    # Postgres names the constraint; SQLite only lists its columns.
    text = str(exc.orig)
    if TAG_CONSTRAINT_NAME in text:
        return True
    if getattr(exc.orig, "constraint_name", None) == TAG_CONSTRAINT_NAME:
        return True
    return "UNIQUE constraint failed: anon_tags.window_start, anon_tags.tag" in text


def _is_allocation_conflict(exc: DBAPIError) -> bool:
    # Only a lost race on the (window, tag) constraint is retried; other integrity errors are bugs.
    if isinstance(exc, IntegrityError):
        return _is_tag_collision(exc)
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _CONFLICT_SQLSTATES:
        return True
    return "database is locked" in str(orig)


class AnonIdentityService:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        platform: WebhookPlatform,
        endpoint_cache: EndpointCache,
        sanitizer: Sanitizer | None = None,
        allocator: TagAllocator | None = None,
        limiter: RetagLimiter | None = None,
        mute_lookup: MuteLookup | None = None,
        time_provider: Callable[[], datetime] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._time_provider = time_provider or utc_now
        self._session_factory = session_factory
        self._platform = platform
        self._endpoint_cache = endpoint_cache
        self._sanitizer = sanitizer or MentionSanitizer()
        self._allocator = allocator or TagAllocator(
            time_provider=self._time_provider,
            retention_count=self._settings.anon_tag_retention,
        )
        self._limiter = limiter or RetagLimiter(
            max_retags=self._settings.anon_max_retags,
            time_provider=self._time_provider,
        )
        self._mute_lookup = mute_lookup or get_active_mute
        # Serializes allocation units in this process; the (window, tag) constraint covers other processes.
        self._allocation_lock = asyncio.Lock()

    def display_identity(self, tag: int) -> DisplayIdentity:
        # Same tag, same name and avatar for the whole window.
        return DisplayIdentity(
            username=f"{self._settings.anon_display_name_prefix}{format_tag(tag)}",
            avatar_url=self._settings.anon_avatar_url_template.format(tag=tag),
        )

    async def _in_allocation_unit(
        self,
        owner_id: str,
        operation: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        # Each attempt is a fresh transaction, so a lost race rolls back and re-reads the window.
        attempts = max(1, self._settings.anon_allocation_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                async with self._allocation_lock:
                    async with transaction_scope(self._session_factory) as session:
                        return await operation(session)
            except DBAPIError as exc:
                if not _is_allocation_conflict(exc):
                    raise
                increment_counter("anon_allocation_conflicts_total")
                logger.warning(
                    "anon_allocation_conflict owner=%s attempt=%s/%s", owner_id, attempt, attempts
                )
        raise AllocationConflictError(
            f"tag allocation for owner {owner_id} conflicted {attempts} times"
        )

    async def _check_mute(self, owner_id: str) -> None:
        async with self._session_factory() as session:
            mute = await self._mute_lookup(session, owner_id, self._time_provider())
        if mute is not None:
            raise OwnerMutedError(describe_mute(mute))

    async def send_anonymously(
        self,
        owner_id: str,
        channel_id: str,
        raw_message: str,
        author: AuthorContext | None = None,
    ) -> SentMessage:
        await self._check_mute(owner_id)
        safe_message = self._sanitizer.sanitize(raw_message, author or AuthorContext())

        async def _claim(session: AsyncSession) -> int:
            current = await self._allocator.get_current_tag(session, owner_id)
            if current is not None:
                return current
            return await self._allocator.allocate(session, owner_id)

        tag = await self._in_allocation_unit(owner_id, _claim)

        # The claimed tag stays committed even if delivery fails; a resend reuses it.
        try:
            endpoint = await self._endpoint_cache.resolve(
                channel_id, self._platform.lookup_or_create_endpoint
            )
            message_id = await self._platform.dispatch(endpoint, self.display_identity(tag), safe_message)
        except TransientError as exc:
            increment_counter("anon_delivery_failures_total")
            logger.warning(
                "anon_delivery_failed owner=%s channel=%s error=%s",
                owner_id,
                channel_id,
                exc,
            )
            raise DeliveryFailedError() from exc

        increment_counter("anon_messages_sent_total")
        return SentMessage(message_id=message_id, channel_id=channel_id, tag=tag)

    async def rotate_tag(self, owner_id: str) -> RetagResult:
        async def _rotate(session: AsyncSession) -> RetagResult:
            old_tag = await self._allocator.get_current_tag(session, owner_id)
            if old_tag is None:
                raise NothingToRotateError()
            if not await self._limiter.can_retag(session, owner_id):
                raise RetagLimitError(
                    self._limiter.max_retags, resets_at=next_window(self._time_provider())
                )
            new_tag = await self._allocator.allocate(session, owner_id)
            return RetagResult(old_tag=old_tag, new_tag=new_tag)

        result = await self._in_allocation_unit(owner_id, _rotate)
        logger.info(
            "anon_tag_rotated owner=%s old=%04d new=%04d", owner_id, result.old_tag, result.new_tag
        )
        return result
