"""Tests for the read-side calendar event service."""

from __future__ import annotations

import datetime as dt

import pytest
import pytest_asyncio

from familywall.modules.calendar.models import EventResponseStatus, EventStatus

from conftest import NOW

WEEK = NOW + dt.timedelta(days=7)


@pytest_asyncio.fixture
async def populated(cache, registry, work_calendar, family_calendar, make_event):
    """Work and Family calendars with a handful of events; a third, disabled calendar."""
    await cache.reconcile(work_calendar, [
        make_event("standup", title="Standup", days=1, location="Room 4"),
        make_event("review", title="Design review", days=2, description="Quarterly ROADMAP review"),
        make_event("weekly", title="1:1", days=3, is_recurring=True, recurrence_rule="FREQ=WEEKLY"),
        make_event("gone", title="Old meeting", days=-3),
    ])
    await cache.reconcile(family_calendar, [
        make_event("bday", title="Grandma", days=4, is_all_day=True, is_birthday=True),
        make_event("trip", title="Trip", days=20, status=EventStatus.TENTATIVE),
    ])
    hidden = await registry.add(
        family_calendar.model_copy(update={"id": None, "calendar_id": "hidden", "name": "Hidden", "is_enabled": False})
    )
    await cache.reconcile(hidden, [make_event("secret", title="Standup secret", days=1)])
    return hidden


class TestQueries:
    """Tests for event queries."""

    @pytest.mark.asyncio
    async def test_get_events_filters_window_and_disabled(self, event_service, populated) -> None:
        events = await event_service.get_events(NOW, WEEK)
        assert [e.provider_key for e in events] == ["standup", "review", "weekly", "bday"]

    @pytest.mark.asyncio
    async def test_events_for_calendar_includes_disabled(self, event_service, populated) -> None:
        events = await event_service.get_events_for_calendar("hidden", NOW, WEEK)
        assert [e.provider_key for e in events] == ["secret"]

    @pytest.mark.asyncio
    async def test_events_by_date(self, event_service, populated) -> None:
        events = await event_service.get_events_by_date((NOW + dt.timedelta(days=2)).date())
        assert [e.provider_key for e in events] == ["review"]

    @pytest.mark.asyncio
    async def test_upcoming(self, event_service, populated) -> None:
        events = await event_service.get_upcoming_events(count=2)
        assert [e.provider_key for e in events] == ["standup", "review"]

    @pytest.mark.asyncio
    async def test_search_is_case_insensitive(self, event_service, populated) -> None:
        assert [e.provider_key for e in await event_service.search_events("roadmap")] == ["review"]
        assert [e.provider_key for e in await event_service.search_events("ROOM")] == ["standup"]
        assert [e.provider_key for e in await event_service.search_events("standup")] == ["standup"]

    @pytest.mark.asyncio
    async def test_search_treats_wildcards_literally(self, event_service, populated) -> None:
        assert await event_service.search_events("%") == []

    @pytest.mark.asyncio
    async def test_by_status(self, event_service, populated) -> None:
        events = await event_service.get_events_by_status(EventStatus.TENTATIVE)
        assert [e.provider_key for e in events] == ["trip"]

    @pytest.mark.asyncio
    async def test_recurring(self, event_service, populated) -> None:
        assert [e.provider_key for e in await event_service.get_recurring_events()] == ["weekly"]

    @pytest.mark.asyncio
    async def test_birthdays(self, event_service, populated) -> None:
        events = await event_service.get_birthdays(NOW, NOW + dt.timedelta(days=30))
        assert [e.title for e in events] == ["Grandma"]

    @pytest.mark.asyncio
    async def test_counts(self, event_service, populated, family_calendar) -> None:
        assert await event_service.get_event_count(NOW, WEEK) == 4
        assert await event_service.get_event_count_by_calendar(NOW, WEEK) == {
            "work": 3,
            family_calendar.calendar_id: 1,
        }

    @pytest.mark.asyncio
    async def test_get_event(self, event_service, cache, populated) -> None:
        (cached,) = await cache.find("Graph", "work", start=NOW, end=NOW + dt.timedelta(days=1, hours=1))
        event = await event_service.get_event(cached.id)
        assert event.title == "Standup"
        assert event.duration_minutes == 60
        assert await event_service.get_event(99999) is None


class TestResponseStatus:
    """Tests for the single local mutation."""

    @pytest.mark.asyncio
    async def test_update_response_status(self, event_service, cache, clock, populated) -> None:
        (cached,) = await cache.find("ICS", "hidden")
        clock.advance(minutes=1)

        updated = await event_service.update_response_status(cached.id, EventResponseStatus.TENTATIVE)

        assert updated.response_status == EventResponseStatus.TENTATIVE
        assert updated.updated_at == clock.now

    @pytest.mark.asyncio
    async def test_update_missing_event(self, event_service) -> None:
        assert await event_service.update_response_status(4242, EventResponseStatus.DECLINED) is None
