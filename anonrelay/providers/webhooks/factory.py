from __future__ import annotations

from anonrelay.core.config import get_settings
from anonrelay.core.errors import ProviderConfigError
from anonrelay.providers.webhooks.base import WebhookPlatform
from anonrelay.providers.webhooks.discord import DiscordWebhookPlatform
from anonrelay.providers.webhooks.fake import FakeWebhookPlatform


def get_webhook_platform() -> WebhookPlatform:
    settings = get_settings()
    provider = (settings.webhook_provider or "discord").lower()

    if provider == "fake":
        return FakeWebhookPlatform()
    if provider == "discord":
        return DiscordWebhookPlatform()

    raise ProviderConfigError(f"Unsupported webhook provider: {provider}")
