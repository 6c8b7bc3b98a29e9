"""Tests for the calendar registry."""

from __future__ import annotations

import pytest

from familywall.modules.calendar.errors import ConfigurationError
from familywall.modules.calendar.models import CalendarConfiguration
from familywall.modules.calendar.registry import COLOR_PALETTE, CalendarRegistry


def _calendar(calendar_id: str, **fields) -> CalendarConfiguration:
    fields.setdefault("name", calendar_id.title())
    fields.setdefault("source", "Graph")
    return CalendarConfiguration(calendar_id=calendar_id, **fields)


class TestDiscovery:
    """Tests for calendar discovery."""

    @pytest.mark.asyncio
    async def test_colors_and_order_follow_provider_order(self, session_factory, settings, clock, mock_client) -> None:
        registry = CalendarRegistry({"Graph": mock_client}, session_factory, settings, clock)

        found = await registry.discover("Graph")

        assert [c.calendar_id for c in found] == ["cal-1", "cal-2", "cal-3"]
        assert [c.color for c in found] == ["#3788D8", "#D83737", "#37D875"]
        assert [c.display_order for c in found] == [1, 2, 3]
        assert found[0].is_default and found[0].can_edit
        assert found[2].owner == "Family"
        assert all(c.id is None and c.source == "Graph" for c in found)

    @pytest.mark.asyncio
    async def test_deterministic(self, session_factory, settings, clock, mock_client) -> None:
        registry = CalendarRegistry({"Graph": mock_client}, session_factory, settings, clock)

        first = await registry.discover("Graph")
        second = await registry.discover("Graph")

        assert [c.color for c in first] == [c.color for c in second]

    @pytest.mark.asyncio
    async def test_palette_wraps(self, session_factory, settings, clock, mock_client) -> None:
        from familywall.modules.calendar.models import ProviderCalendar

        mock_client.list_calendars.return_value = [ProviderCalendar(id=f"c{i}", name=f"C{i}") for i in range(10)]
        registry = CalendarRegistry({"Graph": mock_client}, session_factory, settings, clock)

        found = await registry.discover("Graph")

        assert found[8].color == COLOR_PALETTE[0]
        assert found[9].color == COLOR_PALETTE[1]

    @pytest.mark.asyncio
    async def test_unknown_source(self, registry) -> None:
        with pytest.raises(ConfigurationError):
            await registry.discover("CalDAV")

    @pytest.mark.asyncio
    async def test_discovery_does_not_save(self, session_factory, settings, clock, mock_client) -> None:
        registry = CalendarRegistry({"Graph": mock_client}, session_factory, settings, clock)
        await registry.discover("Graph")
        assert await registry.list_calendars() == []


class TestCrud:
    """Tests for adding, updating and deleting calendars."""

    @pytest.mark.asyncio
    async def test_add_and_get(self, registry, clock) -> None:
        stored = await registry.add(_calendar("work", color="#D83737"))

        assert stored.id is not None
        assert stored.created_at == clock.now
        fetched = await registry.get(stored.id)
        assert fetched == stored
        assert (await registry.get_by_calendar_id("work")).id == stored.id
        assert await registry.get_by_calendar_id("work", source="ICS") is None

    @pytest.mark.asyncio
    async def test_add_duplicate_rejected(self, registry) -> None:
        await registry.add(_calendar("work"))
        with pytest.raises(ValueError, match="already configured"):
            await registry.add(_calendar("work", name="Work again"))

    @pytest.mark.asyncio
    async def test_same_id_different_source_allowed(self, registry) -> None:
        await registry.add(_calendar("shared"))
        await registry.add(_calendar("shared", source="ICS"))
        assert len(await registry.list_calendars()) == 2

    @pytest.mark.asyncio
    async def test_update_keeps_identity(self, registry, clock) -> None:
        stored = await registry.add(_calendar("work"))
        clock.advance(minutes=5)

        updated = await registry.update(stored.model_copy(update={"name": "Office", "sync_interval_minutes": 30}))

        assert updated.name == "Office"
        assert updated.sync_interval_minutes == 30
        assert updated.calendar_id == "work"
        assert updated.updated_at == clock.now

    @pytest.mark.asyncio
    async def test_update_missing(self, registry) -> None:
        assert await registry.update(_calendar("gone", id=999)) is None

    @pytest.mark.asyncio
    async def test_delete_cascades_to_events(self, registry, cache, work_calendar, make_event) -> None:
        await cache.reconcile(work_calendar, [make_event("a"), make_event("b")])

        assert await registry.delete(work_calendar.id) is True

        assert await registry.get(work_calendar.id) is None
        assert await cache.find("Graph", "work") == []

    @pytest.mark.asyncio
    async def test_delete_missing(self, registry) -> None:
        assert await registry.delete(12345) is False


class TestSettings:
    """Tests for enable/disable, colors and ordering."""

    @pytest.mark.asyncio
    async def test_enabled_calendars_in_display_order(self, registry) -> None:
        a = await registry.add(_calendar("a", display_order=2))
        b = await registry.add(_calendar("b", display_order=0))
        c = await registry.add(_calendar("c", display_order=1))

        await registry.set_enabled(c.id, False)

        assert [cal.calendar_id for cal in await registry.enabled_calendars()] == ["b", "a"]
        assert [cal.calendar_id for cal in await registry.list_calendars()] == ["b", "c", "a"]
        assert a.is_enabled and b.is_enabled

    @pytest.mark.asyncio
    async def test_set_enabled_many(self, registry) -> None:
        ids = [(await registry.add(_calendar(name))).id for name in ("a", "b", "c")]

        assert await registry.set_enabled_many(ids[:2], False) == 2

        assert [cal.calendar_id for cal in await registry.enabled_calendars()] == ["c"]

    @pytest.mark.asyncio
    async def test_set_color(self, registry) -> None:
        stored = await registry.add(_calendar("a"))
        updated = await registry.set_color(stored.id, "#8b37d8")
        assert updated.color == "#8B37D8"

    @pytest.mark.asyncio
    async def test_set_color_rejects_garbage(self, registry) -> None:
        stored = await registry.add(_calendar("a"))
        with pytest.raises(ValueError):
            await registry.set_color(stored.id, "blue")

    @pytest.mark.asyncio
    async def test_set_enabled_missing(self, registry) -> None:
        assert await registry.set_enabled(404, True) is None

    @pytest.mark.asyncio
    async def test_reorder(self, registry) -> None:
        a = await registry.add(_calendar("a"))
        b = await registry.add(_calendar("b"))
        c = await registry.add(_calendar("c"))

        assert await registry.reorder([c.id, a.id, 999, b.id]) == 3

        calendars = await registry.list_calendars()
        assert [cal.calendar_id for cal in calendars] == ["c", "a", "b"]
        assert [cal.display_order for cal in calendars] == [0, 1, 3]


class TestMinimumInterval:
    """Tests for the cadence derived from enabled calendars."""

    @pytest.mark.asyncio
    async def test_floor_applied(self, registry) -> None:
        for name, interval in (("a", 3), ("b", 20), ("c", 8)):
            await registry.add(_calendar(name, sync_interval_minutes=interval))
        assert await registry.minimum_interval() == 5

    @pytest.mark.asyncio
    async def test_shortest_enabled(self, registry) -> None:
        fast = await registry.add(_calendar("fast", sync_interval_minutes=6))
        await registry.add(_calendar("slow", sync_interval_minutes=45))
        assert await registry.minimum_interval() == 6

        await registry.set_enabled(fast.id, False)
        assert await registry.minimum_interval() == 45

    @pytest.mark.asyncio
    async def test_nothing_enabled_uses_ttl(self, registry, settings) -> None:
        assert await registry.minimum_interval() == settings.calendar_cache_ttl_minutes
