"""Retry and circuit breaking for calls to the webhook platform.

Webhook creation and webhook execution are not idempotent: if the platform
applied a POST but the response was lost, sending it again creates a second
webhook or posts the anonymous message twice. Retries therefore depend on
whether the failed request could have been applied, not only on whether the
failure looks transient.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable

import httpx
from redis.asyncio import Redis

from anonrelay.core.config import get_settings
from anonrelay.core.errors import IntegrationUnavailableError, ProviderConfigError
from anonrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Raised before any request bytes reached the platform.
NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)
# The request may or may not have been applied.
IN_DOUBT_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError, TimeoutError)


def is_retryable(exc: Exception, *, idempotent: bool) -> bool:
    # A 5xx status means the platform refused the request, so any call may be repeated.
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status >= 500
    if isinstance(exc, NOT_SENT_ERRORS):
        return True
    if isinstance(exc, IN_DOUBT_ERRORS):
        return idempotent
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    idempotent: bool = True

    def backoff_s(self, attempt: int) -> float:
        # Exponential from backoff_ms, jittered so bot processes do not retry in lockstep.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def default_retry_policy(*, idempotent: bool = True) -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=max(1, settings.ext_retry_max_attempts),
        backoff_ms=settings.ext_retry_backoff_ms,
        idempotent=idempotent,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    policy = policy or default_retry_policy()
    retryable = retryable or partial(is_retryable, idempotent=policy.idempotent)
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless the policy allows another attempt
            if not retryable(exc):
                if not policy.idempotent and isinstance(exc, IN_DOUBT_ERRORS):
                    increment_counter("external_retries_unsafe_total")
                    logger.warning(
                        "external_retry_skipped attempt=%s reason=in_doubt error=%s",
                        attempt,
                        type(exc).__name__,
                    )
                raise
            if attempt >= policy.max_attempts:
                raise
            delay_s = policy.backoff_s(attempt)
            increment_counter("external_retries_total")
            logger.info(
                "external_retry attempt=%s/%s delay_ms=%.0f error=%s",
                attempt,
                policy.max_attempts,
                delay_s * 1000.0,
                type(exc).__name__,
            )
            await asyncio.sleep(delay_s)
            attempt += 1


_shared_redis: tuple[asyncio.AbstractEventLoop, Redis] | None = None


def get_resilience_redis() -> Redis | None:
    # Breaker state is shared across bot processes only when Redis is configured.
    global _shared_redis
    url = get_settings().redis_url
    if not url:
        return None
    loop = asyncio.get_running_loop()
    # Clients are bound to the loop that created them.
    if _shared_redis is not None and _shared_redis[0] is loop:
        return _shared_redis[1]
    try:
        client = Redis.from_url(url, encoding="utf-8", decode_responses=True)
    except ValueError as exc:
        raise ProviderConfigError(f"invalid REDIS_URL: {exc}") from exc
    _shared_redis = (loop, client)
    return client


CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> CircuitBreakerConfig:
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass
class BreakerState:
    status: str = CLOSED
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0

    def to_mapping(self) -> dict[str, str]:
        return {
            "status": self.status,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "trials": str(self.trials),
        }

    @classmethod
    def from_mapping(cls, raw: dict[str, str]) -> BreakerState:
        if not raw:
            return cls()
        opened_at = raw.get("opened_at") or None
        return cls(
            status=raw.get("status", CLOSED),
            failures=int(raw.get("failures", 0)),
            opened_at=float(opened_at) if opened_at is not None else None,
            trials=int(raw.get("trials", 0)),
        )


class CircuitBreaker:
    """Stops calling an integration after repeated unhealthy outcomes.

    Callers record a failure only for outcomes that say the platform is
    unhealthy (5xx, timeouts, network errors). Any other HTTP response means
    the platform answered and counts as a success.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig.from_settings()
        # Shared state needs wall-clock time so every process agrees on opened_at.
        self._time = time_source or (time.time if redis is not None else time.monotonic)
        self._local = BreakerState()

    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def _load(self) -> BreakerState:
        if self._redis is None:
            return self._local
        return BreakerState.from_mapping(await self._redis.hgetall(self._key()))

    async def _store(self, state: BreakerState) -> None:
        if self._redis is None:
            self._local = state
            return
        key = self._key()
        await self._redis.hset(key, mapping=state.to_mapping())
        await self._redis.expire(key, max(self._config.open_seconds * 4, 60))

    def _move(self, state: BreakerState, status: str) -> BreakerState:
        if state.status != status:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.status, status)
            increment_counter(f"circuit_breaker_transitions_total.{self._name}.{status}")
        return BreakerState(status=status, opened_at=self._time() if status == OPEN else None)

    async def before_call(self) -> None:
        state = await self._load()
        if state.status == OPEN:
            if state.opened_at is not None and self._time() - state.opened_at < self._config.open_seconds:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            state = self._move(state, HALF_OPEN)
        if state.status == HALF_OPEN:
            if state.trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            state.trials += 1
            await self._store(state)

    async def record_success(self) -> None:
        state = await self._load()
        if state.status == CLOSED and state.failures == 0:
            return
        await self._store(self._move(state, CLOSED))

    async def record_failure(self) -> None:
        state = await self._load()
        if state.status == HALF_OPEN:
            await self._store(self._move(state, OPEN))
            return
        state.failures += 1
        if state.failures >= self._config.failure_threshold:
            state = self._move(state, OPEN)
        await self._store(state)
