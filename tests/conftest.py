"""Shared test fixtures and configuration."""

from __future__ import annotations

import datetime as dt
import os
from typing import AsyncGenerator, Callable
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

os.environ.setdefault("FAMILYWALL_ENV", "test")
os.environ.setdefault("FAMILYWALL_LOG_LEVEL", "WARNING")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from familywall.config import Settings
from familywall.database import create_engine, create_tables
from familywall.modules.calendar.cache import CalendarEventCache
from familywall.modules.calendar.models import CalendarConfiguration, ProviderCalendar, ProviderEvent
from familywall.modules.calendar.registry import CalendarRegistry
from familywall.modules.calendar.service import CalendarEventService

# A Tuesday morning, naive UTC like everything in the cache
NOW = dt.datetime(2026, 3, 10, 9, 30)


class FakeClock:
    """Settable clock injected wherever services read the current time."""

    def __init__(self, now: dt.datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **delta: float) -> dt.datetime:
        self.now += dt.timedelta(**delta)
        return self.now


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Return test settings backed by a throwaway SQLite file."""
    return Settings(
        _env_file=None,
        familywall_env="test",
        familywall_log_level="WARNING",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'familywall.db'}",
        calendar_startup_delay_seconds=0,
        calendar_fetch_timeout_seconds=5.0,
    )


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed engine so every session sees the same data."""
    engine = create_engine(settings.database_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(session_factory, settings, clock) -> CalendarRegistry:
    return CalendarRegistry({}, session_factory, settings, clock)


@pytest.fixture
def cache(session_factory, clock) -> CalendarEventCache:
    return CalendarEventCache(session_factory, single_writer=True, clock=clock)


@pytest.fixture
def event_service(session_factory, clock) -> CalendarEventService:
    return CalendarEventService(session_factory, clock)


@pytest.fixture
def make_event() -> Callable[..., ProviderEvent]:
    """Build a provider event starting ``days`` after NOW."""

    def _make(event_id: str, title: str = "", days: float = 1, hours: float = 1, **fields) -> ProviderEvent:
        start = fields.pop("start", NOW + dt.timedelta(days=days))
        return ProviderEvent(
            id=event_id,
            title=title or f"Event {event_id}",
            start=start,
            end=fields.pop("end", start + dt.timedelta(hours=hours)),
            **fields,
        )

    return _make


@pytest_asyncio.fixture
async def work_calendar(registry: CalendarRegistry) -> CalendarConfiguration:
    """The "Work" Graph calendar, enabled, syncing every 15 minutes."""
    return await registry.add(
        CalendarConfiguration(calendar_id="work", source="Graph", name="Work", sync_interval_minutes=15)
    )


@pytest_asyncio.fixture
async def family_calendar(registry: CalendarRegistry) -> CalendarConfiguration:
    return await registry.add(
        CalendarConfiguration(
            calendar_id="https://example.com/family.ics", source="ICS", name="Family", display_order=1,
        )
    )


@pytest.fixture
def mock_client() -> AsyncMock:
    """Authenticated provider client returning no events."""
    client = AsyncMock()
    client.is_authenticated.return_value = True
    client.fetch_events.return_value = []
    client.list_calendars.return_value = [
        ProviderCalendar(id="cal-1", name="Calendar", is_default=True, can_edit=True),
        ProviderCalendar(id="cal-2", name="Birthdays"),
        ProviderCalendar(id="cal-3", name="Holidays", owner="Family"),
    ]
    return client
