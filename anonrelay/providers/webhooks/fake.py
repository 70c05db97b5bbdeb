from __future__ import annotations

import asyncio
from dataclasses import dataclass

from anonrelay.core.errors import PlatformError
from anonrelay.providers.webhooks.base import DisplayIdentity, WebhookEndpoint


@dataclass(frozen=True)
class DispatchedMessage:
    endpoint: WebhookEndpoint
    identity: DisplayIdentity
    content: str


class FakeWebhookPlatform:
    def __init__(self, *, lookup_delay_s: float = 0.0) -> None:
        # Deterministic in-memory platform for local runs and tests.
        self.lookup_calls: list[str] = []
        self.dispatched: list[DispatchedMessage] = []
        self.fail_dispatch = False
        self.fail_lookup = False
        self._lookup_delay_s = lookup_delay_s
        self._endpoints: dict[str, WebhookEndpoint] = {}

    async def lookup_or_create_endpoint(self, channel_id: str) -> WebhookEndpoint:
        self.lookup_calls.append(channel_id)
        if self._lookup_delay_s:
            await asyncio.sleep(self._lookup_delay_s)
        if self.fail_lookup:
            raise PlatformError("fake lookup failure")
        endpoint = self._endpoints.get(channel_id)
        if endpoint is None:
            index = len(self._endpoints) + 1
            endpoint = WebhookEndpoint(
                id=f"wh-{index}",
                token=f"token-{index}",
                channel_id=channel_id,
            )
            self._endpoints[channel_id] = endpoint
        return endpoint

    async def dispatch(
        self,
        endpoint: WebhookEndpoint,
        identity: DisplayIdentity,
        content: str,
    ) -> str | None:
        if self.fail_dispatch:
            raise PlatformError("fake dispatch failure")
        self.dispatched.append(DispatchedMessage(endpoint=endpoint, identity=identity, content=content))
        return f"msg-{len(self.dispatched)}"
