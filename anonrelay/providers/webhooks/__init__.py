from __future__ import annotations

from anonrelay.providers.webhooks.base import (
    DisplayIdentity,
    SentMessage,
    WebhookEndpoint,
    WebhookPlatform,
)
from anonrelay.providers.webhooks.factory import get_webhook_platform


__all__ = [
    "DisplayIdentity",
    "SentMessage",
    "WebhookEndpoint",
    "WebhookPlatform",
    "get_webhook_platform",
]
