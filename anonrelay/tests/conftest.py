from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from anonrelay.core.config import get_settings
from anonrelay.persistence.db import build_engine, build_session_factory, create_schema
from anonrelay.services.telemetry import reset_telemetry


class MutableClock:
    # Injected time provider so tests can move between allocation windows.
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 14, 15, 9, 26, tzinfo=timezone.utc))


@pytest.fixture(autouse=True)
def reset_state_between_tests():
    # Keep settings overrides and counters from leaking across tests.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db_engine(tmp_path):
    # File-backed sqlite so concurrent sessions see each other's commits.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'anonrelay.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)
