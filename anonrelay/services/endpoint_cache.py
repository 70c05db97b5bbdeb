"""Process-wide cache of webhook endpoints keyed by channel.

Creating a webhook is not idempotent on the platform side, so concurrent
misses for the same channel share a single in-flight lookup-or-create call.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from anonrelay.core.errors import EndpointUnavailableError
from anonrelay.providers.webhooks.base import WebhookEndpoint
from anonrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

LookupOrCreate = Callable[[str], Awaitable[WebhookEndpoint]]


class EndpointCache:
    def __init__(self, *, lookup_timeout_s: float | None = None) -> None:
        self._entries: dict[str, WebhookEndpoint] = {}
        self._inflight: dict[str, asyncio.Future[WebhookEndpoint]] = {}
        self._lock = asyncio.Lock()
        self._lookup_timeout_s = lookup_timeout_s

    def get(self, channel_id: str) -> WebhookEndpoint | None:
        return self._entries.get(channel_id)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def resolve(self, channel_id: str, lookup_or_create: LookupOrCreate) -> WebhookEndpoint:
        cached = self._entries.get(channel_id)
        if cached is not None:
            increment_counter("endpoint_cache_hits_total")
            return cached

        async with self._lock:
            cached = self._entries.get(channel_id)
            if cached is not None:
                increment_counter("endpoint_cache_hits_total")
                return cached
            inflight = self._inflight.get(channel_id)
            leader = inflight is None
            if inflight is None:
                inflight = asyncio.get_running_loop().create_future()
                self._inflight[channel_id] = inflight

        if not leader:
            increment_counter("endpoint_cache_waits_total")
            # Shield so a cancelled waiter does not cancel the shared lookup.
            return await asyncio.shield(inflight)

        increment_counter("endpoint_cache_misses_total")
        try:
            endpoint = await self._lookup(channel_id, lookup_or_create)
        except asyncio.CancelledError:
            self._release(channel_id, inflight, EndpointUnavailableError(
                f"endpoint lookup for channel {channel_id} was cancelled"
            ))
            raise
        except Exception as exc:
            self._release(channel_id, inflight, exc)
            raise

        self._entries[channel_id] = endpoint
        self._inflight.pop(channel_id, None)
        inflight.set_result(endpoint)
        logger.info("endpoint_cached channel=%s endpoint=%s", channel_id, endpoint.id)
        return endpoint

    async def _lookup(self, channel_id: str, lookup_or_create: LookupOrCreate) -> WebhookEndpoint:
        try:
            if self._lookup_timeout_s is None:
                endpoint = await lookup_or_create(channel_id)
            else:
                endpoint = await asyncio.wait_for(lookup_or_create(channel_id), self._lookup_timeout_s)
        except asyncio.TimeoutError as exc:
            raise EndpointUnavailableError(
                f"endpoint lookup for channel {channel_id} timed out"
            ) from exc
        if not endpoint.usable:
            raise EndpointUnavailableError(f"endpoint for channel {channel_id} has no token")
        return endpoint

    def _release(
        self,
        channel_id: str,
        inflight: asyncio.Future[WebhookEndpoint],
        exc: BaseException,
    ) -> None:
        # Wake every waiter with the failure; nothing is cached so the next call retries.
        self._inflight.pop(channel_id, None)
        if not inflight.done():
            inflight.set_exception(exc)
            # Mark retrieved so a failure with no waiters is not reported again by asyncio.
            inflight.exception()
        logger.warning("endpoint_lookup_failed channel=%s error=%s", channel_id, type(exc).__name__)
