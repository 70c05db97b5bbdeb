from __future__ import annotations

import logging
import time
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from anonrelay.core.config import get_settings
from anonrelay.core.errors import PlatformAuthError, PlatformError, ProviderConfigError
from anonrelay.providers.webhooks.base import DisplayIdentity, WebhookEndpoint
from anonrelay.services.resilience import (
    CircuitBreaker,
    default_retry_policy,
    get_resilience_redis,
    retry_async,
)
from anonrelay.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "discord.webhooks"


class DiscordWebhook(BaseModel):
    # Subset of the Discord webhook object; tokens are only present for incoming webhooks we can use.
    id: str
    token: str | None = None
    channel_id: str | None = None
    name: str | None = None


class DiscordMessage(BaseModel):
    id: str
    channel_id: str | None = None


class DiscordWebhookPlatform:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._breaker: CircuitBreaker | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(
            base_url=self._settings.discord_api_base_url,
            timeout=timeout_s,
        )
        return self._client

    def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is None:
            self._breaker = CircuitBreaker(_INTEGRATION, redis=get_resilience_redis())
        return self._breaker

    def _auth_headers(self) -> dict[str, str]:
        token = self._settings.discord_bot_token
        if not token:
            raise ProviderConfigError("DISCORD_BOT_TOKEN is required for the discord webhook provider")
        return {"Authorization": f"Bot {token}"}

    async def _request(
        self,
        method: str,
        url: str,
        *,
        idempotent: bool,
        headers: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        client = self._get_client()
        breaker = self._get_breaker()
        policy = default_retry_policy(idempotent=idempotent)
        start = time.monotonic()
        await breaker.before_call()

        async def _call() -> httpx.Response:
            response = await client.request(method, url, headers=headers, json=json, params=params)
            if response.status_code >= 500:
                # Raise so retry_async sees the status and backs off.
                error = PlatformError(f"Discord error: {response.status_code}")
                setattr(error, "status_code", response.status_code)
                raise error
            return response

        try:
            response = await retry_async(_call, policy=policy)
        except (httpx.HTTPError, PlatformError, TimeoutError) as exc:
            await breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            if isinstance(exc, PlatformError):
                raise
            raise PlatformError(f"Discord {method} request failed.") from exc

        # Discord answered, so the platform is healthy even when it rejects the request.
        await breaker.record_success()
        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code in {401, 403}:
            record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=False)
            raise PlatformAuthError(f"Discord auth error: {response.status_code}; check bot permissions.")
        if response.status_code >= 400:
            record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=False)
            error = PlatformError(f"Discord error: {response.status_code}")
            setattr(error, "status_code", response.status_code)
            raise error

        record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=True)
        return response

    async def lookup_or_create_endpoint(self, channel_id: str) -> WebhookEndpoint:
        # Reuse any webhook in the channel that carries a token before creating a new one.
        headers = self._auth_headers()
        response = await self._request(
            "GET", f"/channels/{channel_id}/webhooks", idempotent=True, headers=headers
        )
        try:
            existing = [DiscordWebhook.model_validate(item) for item in response.json()]
        except (ValidationError, ValueError, TypeError) as exc:
            raise PlatformError("Discord returned an unreadable webhook list.") from exc
        for webhook in existing:
            if webhook.token:
                return WebhookEndpoint(id=webhook.id, token=webhook.token, channel_id=channel_id)

        # A create lost to a timeout is not resent; the next lookup finds it through the GET above.
        response = await self._request(
            "POST",
            f"/channels/{channel_id}/webhooks",
            idempotent=False,
            headers=headers,
            json={"name": self._settings.discord_webhook_name},
        )
        try:
            created = DiscordWebhook.model_validate(response.json())
        except (ValidationError, ValueError) as exc:
            raise PlatformError("Discord returned an unreadable webhook.") from exc
        logger.info("discord_webhook_created channel=%s webhook=%s", channel_id, created.id)
        return WebhookEndpoint(id=created.id, token=created.token, channel_id=channel_id)

    async def dispatch(
        self,
        endpoint: WebhookEndpoint,
        identity: DisplayIdentity,
        content: str,
    ) -> str | None:
        payload = {
            "username": identity.username,
            "avatar_url": identity.avatar_url,
            "content": content,
        }
        # Webhook executions authenticate with the webhook token in the path, not the bot token.
        response = await self._request(
            "POST",
            f"/webhooks/{endpoint.id}/{endpoint.token}",
            idempotent=False,
            json=payload,
            params={"wait": "true"},
        )
        try:
            return DiscordMessage.model_validate(response.json()).id
        except (ValidationError, ValueError):
            return None
