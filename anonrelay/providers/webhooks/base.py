from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class WebhookEndpoint:
    # Opaque delivery handle; id and token are forwarded, never interpreted.
    id: str
    token: str | None
    channel_id: str

    @property
    def usable(self) -> bool:
        return bool(self.id) and bool(self.token)


@dataclass(frozen=True)
class DisplayIdentity:
    username: str
    avatar_url: str


@dataclass(frozen=True)
class SentMessage:
    message_id: str | None
    channel_id: str
    tag: int


class WebhookPlatform(Protocol):
    async def lookup_or_create_endpoint(self, channel_id: str) -> WebhookEndpoint:
        ...

    async def dispatch(
        self,
        endpoint: WebhookEndpoint,
        identity: DisplayIdentity,
        content: str,
    ) -> str | None:
        ...
