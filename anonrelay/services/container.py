from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from anonrelay.core.config import get_settings
from anonrelay.persistence.db import SessionLocal
from anonrelay.providers.webhooks import WebhookPlatform, get_webhook_platform
from anonrelay.services.endpoint_cache import EndpointCache
from anonrelay.services.identity import AnonIdentityService


def build_identity_service(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    platform: WebhookPlatform | None = None,
    endpoint_cache: EndpointCache | None = None,
) -> AnonIdentityService:
    # The bot process builds this once; the endpoint cache lives as long as the service.
    settings = get_settings()
    cache = endpoint_cache or EndpointCache(
        lookup_timeout_s=settings.endpoint_lookup_timeout_ms / 1000.0,
    )
    return AnonIdentityService(
        session_factory=session_factory or SessionLocal,
        platform=platform or get_webhook_platform(),
        endpoint_cache=cache,
        settings=settings,
    )
