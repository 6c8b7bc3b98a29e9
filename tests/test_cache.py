"""Tests for the local event cache and reconciliation."""

from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from familywall.database import create_engine
from familywall.modules.calendar.cache import CalendarEventCache
from familywall.modules.calendar.errors import PersistenceFailure
from familywall.modules.calendar.models import (
    CalendarConfiguration,
    EventResponseStatus,
    EventStatus,
)

from conftest import NOW

_SYNC_FIELDS = {"last_synced_at"}


def _snapshot(events) -> dict[str, dict]:
    return {e.provider_key: e.model_dump(exclude=_SYNC_FIELDS) for e in events}


class TestReconcile:
    """Three-way diff between a fetch and the cached rows of one calendar."""

    @pytest.mark.asyncio
    async def test_inserts_into_empty_calendar(self, cache, work_calendar, make_event) -> None:
        result = await cache.reconcile(work_calendar, [make_event("a"), make_event("b", days=2)])

        assert (result.inserted, result.updated, result.deleted) == (2, 0, 0)
        cached = await cache.find("Graph", "work")
        assert [e.provider_key for e in cached] == ["a", "b"]
        assert all(e.created_at == e.updated_at == e.last_synced_at == NOW for e in cached)

    @pytest.mark.asyncio
    async def test_idempotent(self, cache, clock, work_calendar, make_event) -> None:
        """Reconciling the same fetch twice only moves the sync timestamp."""
        events = [make_event("a", location="Office"), make_event("b", days=3, attendees=("Ann", "Bob"))]
        await cache.reconcile(work_calendar, events)
        first = await cache.find("Graph", "work")

        clock.advance(minutes=15)
        result = await cache.reconcile(work_calendar, events)
        second = await cache.find("Graph", "work")

        assert (result.inserted, result.updated, result.unchanged, result.deleted) == (0, 0, 2, 0)
        assert _snapshot(first) == _snapshot(second)
        assert [e.id for e in first] == [e.id for e in second]
        assert all(e.last_synced_at == clock.now for e in second)

    @pytest.mark.asyncio
    async def test_deletion_by_absence(self, cache, work_calendar, make_event) -> None:
        await cache.reconcile(work_calendar, [make_event("A"), make_event("B", days=2), make_event("C", days=3)])

        result = await cache.reconcile(work_calendar, [make_event("A"), make_event("C", days=3)])

        assert result.deleted == 1
        assert {e.provider_key for e in await cache.find("Graph", "work")} == {"A", "C"}

    @pytest.mark.asyncio
    async def test_deletes_rows_outside_the_window(self, cache, work_calendar, make_event) -> None:
        """Rows are compared regardless of when they start."""
        await cache.reconcile(work_calendar, [make_event("old", days=-200), make_event("now")])

        await cache.reconcile(work_calendar, [make_event("now")])

        assert [e.provider_key for e in await cache.find("Graph", "work")] == ["now"]

    @pytest.mark.asyncio
    async def test_update_touches_updated_at(self, cache, clock, work_calendar, make_event) -> None:
        await cache.reconcile(work_calendar, [make_event("a", title="Standup")])
        clock.advance(hours=1)

        result = await cache.reconcile(
            work_calendar, [make_event("a", title="Standup", status=EventStatus.CANCELLED)],
        )

        assert result.updated == 1
        (event,) = await cache.find("Graph", "work")
        assert event.status == EventStatus.CANCELLED
        assert event.created_at == NOW
        assert event.updated_at == clock.now

    @pytest.mark.asyncio
    async def test_work_scenario(self, cache, registry, clock, work_calendar, make_event) -> None:
        """An updated title and a new event, nothing deleted."""
        await cache.reconcile(work_calendar, [make_event("e1", title="Standup", days=1)])
        before = await registry.mark_synced(work_calendar)
        clock.advance(minutes=15)

        result = await cache.reconcile(
            work_calendar,
            [make_event("e1", title="Standup (updated)", days=1), make_event("e2", days=2)],
        )
        after = await registry.mark_synced(work_calendar)

        assert (result.inserted, result.updated, result.deleted) == (1, 1, 0)
        cached = {e.provider_key: e for e in await cache.find("Graph", "work")}
        assert cached["e1"].title == "Standup (updated)"
        assert "e2" in cached
        assert after > before
        assert (await registry.get(work_calendar.id)).last_sync_at == after

    @pytest.mark.asyncio
    async def test_empty_fetch_purges(self, cache, work_calendar, make_event) -> None:
        await cache.reconcile(work_calendar, [make_event("a"), make_event("b")])

        result = await cache.reconcile(work_calendar, [])

        assert result.deleted == 2
        assert await cache.find("Graph", "work") == []

    @pytest.mark.asyncio
    async def test_duplicate_ids_last_wins(self, cache, work_calendar, make_event) -> None:
        result = await cache.reconcile(
            work_calendar, [make_event("a", title="First"), make_event("a", title="Second")],
        )

        assert result.inserted == 1
        (event,) = await cache.find("Graph", "work")
        assert event.title == "Second"

    @pytest.mark.asyncio
    async def test_calendars_are_isolated(self, cache, registry, work_calendar, make_event) -> None:
        home = await registry.add(CalendarConfiguration(calendar_id="home", source="Graph", name="Home"))
        await cache.reconcile(work_calendar, [make_event("w1")])
        await cache.reconcile(home, [make_event("h1")])

        await cache.reconcile(work_calendar, [])

        assert await cache.find("Graph", "work") == []
        assert [e.provider_key for e in await cache.find("Graph", "home")] == ["h1"]

    @pytest.mark.asyncio
    async def test_key_owned_by_other_calendar_is_skipped(self, cache, registry, work_calendar, make_event) -> None:
        home = await registry.add(CalendarConfiguration(calendar_id="home", source="Graph", name="Home"))
        await cache.reconcile(work_calendar, [make_event("shared", title="Work copy")])

        result = await cache.reconcile(home, [make_event("shared", title="Home copy"), make_event("h1")])

        assert result.conflicts == 1
        assert result.inserted == 1
        (work_event,) = await cache.find("Graph", "work")
        assert work_event.title == "Work copy"


class TestLocalFields:
    """Fields owned locally survive syncs."""

    @pytest.mark.asyncio
    async def test_response_status_preserved(self, cache, event_service, work_calendar, make_event) -> None:
        await cache.reconcile(work_calendar, [make_event("a")])
        (event,) = await cache.find("Graph", "work")
        await event_service.update_response_status(event.id, EventResponseStatus.ACCEPTED)

        result = await cache.reconcile(work_calendar, [make_event("a")])

        assert result.unchanged == 1
        (event,) = await cache.find("Graph", "work")
        assert event.response_status == EventResponseStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_provider_response_overrides(self, cache, event_service, work_calendar, make_event) -> None:
        await cache.reconcile(work_calendar, [make_event("a")])
        (event,) = await cache.find("Graph", "work")
        await event_service.update_response_status(event.id, EventResponseStatus.ACCEPTED)

        await cache.reconcile(work_calendar, [make_event("a", response_status=EventResponseStatus.DECLINED)])

        (event,) = await cache.find("Graph", "work")
        assert event.response_status == EventResponseStatus.DECLINED

    @pytest.mark.asyncio
    async def test_unchanged_provider_response_keeps_local(self, cache, event_service, work_calendar, make_event) -> None:
        declined = make_event("a", response_status=EventResponseStatus.DECLINED)
        await cache.reconcile(work_calendar, [declined])
        (event,) = await cache.find("Graph", "work")
        await event_service.update_response_status(event.id, EventResponseStatus.ACCEPTED)

        result = await cache.reconcile(work_calendar, [declined])

        assert result.unchanged == 1
        (event,) = await cache.find("Graph", "work")
        assert event.response_status == EventResponseStatus.ACCEPTED
        assert event.provider_response_status == EventResponseStatus.DECLINED

        result = await cache.reconcile(
            work_calendar, [make_event("a", response_status=EventResponseStatus.TENTATIVE)],
        )

        assert result.updated == 1
        (event,) = await cache.find("Graph", "work")
        assert event.response_status == EventResponseStatus.TENTATIVE
        assert event.provider_response_status == EventResponseStatus.TENTATIVE


class TestRepository:
    """Smaller repository operations."""

    @pytest.mark.asyncio
    async def test_upsert_never_deletes(self, cache, work_calendar, make_event) -> None:
        await cache.upsert(work_calendar, [make_event("a"), make_event("b")])

        result = await cache.upsert(work_calendar, [make_event("c")])

        assert result.inserted == 1
        assert {e.provider_key for e in await cache.find("Graph", "work")} == {"a", "b", "c"}

    @pytest.mark.asyncio
    async def test_delete_missing(self, cache, work_calendar, make_event) -> None:
        await cache.upsert(work_calendar, [make_event("a"), make_event("b"), make_event("c")])

        deleted = await cache.delete_missing(work_calendar, ["b"])

        assert deleted == 2
        assert [e.provider_key for e in await cache.find("Graph", "work")] == ["b"]

    @pytest.mark.asyncio
    async def test_find_with_range(self, cache, work_calendar, make_event) -> None:
        await cache.upsert(work_calendar, [make_event("a", days=1), make_event("b", days=10)])

        found = await cache.find("Graph", "work", start=NOW, end=NOW + dt.timedelta(days=5))

        assert [e.provider_key for e in found] == ["a"]

    @pytest.mark.asyncio
    async def test_clear(self, cache, work_calendar, make_event) -> None:
        await cache.upsert(work_calendar, [make_event("a"), make_event("b")])

        assert await cache.clear(work_calendar) == 2
        assert await cache.find("Graph", "work") == []


class TestPersistenceFailure:
    """Database errors surface as PersistenceFailure and roll back."""

    @pytest.mark.asyncio
    async def test_unregistered_calendar_rolls_back(self, cache, make_event) -> None:
        ghost = CalendarConfiguration(calendar_id="ghost", source="Graph", name="Ghost")

        with pytest.raises(PersistenceFailure) as info:
            await cache.reconcile(ghost, [make_event("a")])

        assert info.value.calendar_id == "ghost"
        assert await cache.find("Graph", "ghost") == []

    @pytest.mark.asyncio
    async def test_missing_schema(self, tmp_path, clock, make_event) -> None:
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        try:
            factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
            broken = CalendarEventCache(factory, single_writer=True, clock=clock)
            calendar = CalendarConfiguration(calendar_id="work", source="Graph", name="Work")

            with pytest.raises(PersistenceFailure):
                await broken.reconcile(calendar, [make_event("a")])
        finally:
            await engine.dispose()
