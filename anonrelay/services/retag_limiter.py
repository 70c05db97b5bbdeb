from __future__ import annotations

from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from anonrelay.persistence.repos.tags import count_owner_tags
from anonrelay.services.window import current_window, utc_now


DEFAULT_MAX_RETAGS = 3


class RetagLimiter:
    def __init__(
        self,
        *,
        max_retags: int = DEFAULT_MAX_RETAGS,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._max_retags = max_retags
        self._time_provider = time_provider or utc_now

    @property
    def max_retags(self) -> int:
        return self._max_retags

    async def count_in_window(self, session: AsyncSession, owner_id: str) -> int:
        return await count_owner_tags(session, owner_id, current_window(self._time_provider()))

    async def can_retag(self, session: AsyncSession, owner_id: str) -> bool:
        # The first tag plus max_retags rotations are allowed per window.
        return await self.count_in_window(session, owner_id) <= self._max_retags
