"""Calendar registry: which calendars exist, which are enabled, how often they sync."""

from __future__ import annotations

import datetime as dt
import re
from typing import Callable, Iterable, Mapping, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from familywall.config import Settings, get_settings
from familywall.database import session_scope
from familywall.logging_config import get_logger
from familywall.modules.calendar.errors import ConfigurationError, PersistenceFailure
from familywall.modules.calendar.models import (
    CachedEventRecord,
    CalendarConfiguration,
    CalendarConfigurationRecord,
    utcnow,
)
from familywall.modules.calendar.strategies import ProviderClient

logger = get_logger(__name__)

COLOR_PALETTE = (
    "#3788D8",  # blue
    "#D83737",  # red
    "#37D875",  # green
    "#D87537",  # orange
    "#8B37D8",  # purple
    "#37D8D8",  # cyan
    "#D8D837",  # yellow
    "#D837A7",  # pink
)

_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")

# Identity fields are fixed once a calendar is stored; cached events hang off them.
_EDITABLE_FIELDS = (
    "name",
    "owner",
    "description",
    "color",
    "display_order",
    "is_enabled",
    "is_default",
    "can_edit",
    "sync_interval_minutes",
    "sync_past_events",
    "future_days_to_sync",
)


class CalendarRegistry:
    """Persistent set of configured calendars plus discovery from provider clients."""

    def __init__(
        self,
        discovery_clients: Optional[Mapping[str, ProviderClient]] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._clients = dict(discovery_clients or {})
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._clock = clock

    def _session(self):
        return session_scope(self._session_factory)

    @staticmethod
    def _to_model(record: CalendarConfigurationRecord) -> CalendarConfiguration:
        return CalendarConfiguration.model_validate(record)

    @property
    def sources(self) -> list[str]:
        """Sources that support discovery."""
        return sorted(self._clients)

    # ── Discovery ────────────────────────────────────────────────────

    async def discover(self, source: str) -> list[CalendarConfiguration]:
        """List the calendars a source offers, as unsaved configurations.

        Colors cycle through ``COLOR_PALETTE`` and display order counts up
        from 1, both following the order the provider returns.
        """
        client = self._clients.get(source)
        if client is None:
            raise ConfigurationError(f"Source '{source}' is not supported for discovery", source=source)

        logger.info("calendar_discovery_started", source=source)
        found = await client.list_calendars()
        now = self._clock()
        calendars = [
            CalendarConfiguration(
                calendar_id=item.id,
                name=item.name,
                source=source,
                owner=item.owner,
                is_default=item.is_default,
                can_edit=item.can_edit,
                color=COLOR_PALETTE[index % len(COLOR_PALETTE)],
                display_order=index + 1,
                created_at=now,
                updated_at=now,
            )
            for index, item in enumerate(found)
        ]
        logger.info("calendar_discovery_completed", source=source, count=len(calendars))
        return calendars

    # ── CRUD ─────────────────────────────────────────────────────────

    async def add(self, calendar: CalendarConfiguration) -> CalendarConfiguration:
        """Store a new calendar. Raises ``ValueError`` if (source, calendar_id) already exists."""
        now = self._clock()
        async with self._session() as session:
            existing = await session.execute(
                select(CalendarConfigurationRecord.id).where(
                    CalendarConfigurationRecord.source == calendar.source,
                    CalendarConfigurationRecord.calendar_id == calendar.calendar_id,
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise ValueError(f"Calendar already configured: {calendar.source}:{calendar.calendar_id}")

            record = CalendarConfigurationRecord(
                calendar_id=calendar.calendar_id,
                source=calendar.source,
                created_at=now,
                updated_at=now,
                **{field: getattr(calendar, field) for field in _EDITABLE_FIELDS},
            )
            session.add(record)
            await session.flush()
            stored = self._to_model(record)

        logger.info("calendar_added", calendar_id=stored.calendar_id, source=stored.source, id=stored.id, name=stored.name)
        return stored

    async def update(self, calendar: CalendarConfiguration) -> Optional[CalendarConfiguration]:
        """Save the editable fields of a stored calendar. Returns None if it no longer exists."""
        if calendar.id is None:
            raise ValueError("Cannot update a calendar that has not been added")
        async with self._session() as session:
            record = await session.get(CalendarConfigurationRecord, calendar.id)
            if record is None:
                return None
            for field in _EDITABLE_FIELDS:
                setattr(record, field, getattr(calendar, field))
            record.updated_at = self._clock()
            await session.flush()
            stored = self._to_model(record)

        logger.info("calendar_updated", id=stored.id, name=stored.name)
        return stored

    async def delete(self, calendar_id: int) -> bool:
        """Delete a calendar together with all of its cached events."""
        async with self._session() as session:
            record = await session.get(CalendarConfigurationRecord, calendar_id)
            if record is None:
                return False
            result = await session.execute(
                delete(CachedEventRecord).where(
                    CachedEventRecord.source == record.source,
                    CachedEventRecord.calendar_id == record.calendar_id,
                )
            )
            await session.delete(record)
            name = record.name

        logger.info("calendar_deleted", id=calendar_id, name=name, events_deleted=result.rowcount or 0)
        return True

    async def get(self, calendar_id: int) -> Optional[CalendarConfiguration]:
        async with self._session() as session:
            record = await session.get(CalendarConfigurationRecord, calendar_id)
            return self._to_model(record) if record else None

    async def get_by_calendar_id(
        self, calendar_id: str, source: Optional[str] = None,
    ) -> Optional[CalendarConfiguration]:
        """Look up by provider calendar id, optionally narrowed to one source."""
        stmt = select(CalendarConfigurationRecord).where(CalendarConfigurationRecord.calendar_id == calendar_id)
        if source is not None:
            stmt = stmt.where(CalendarConfigurationRecord.source == source)
        async with self._session() as session:
            record = (await session.execute(stmt.order_by(CalendarConfigurationRecord.id))).scalars().first()
            return self._to_model(record) if record else None

    async def list_calendars(self) -> list[CalendarConfiguration]:
        """All calendars in display order."""
        async with self._session() as session:
            rows = (await session.execute(
                select(CalendarConfigurationRecord).order_by(
                    CalendarConfigurationRecord.display_order, CalendarConfigurationRecord.id,
                )
            )).scalars().all()
            return [self._to_model(row) for row in rows]

    async def enabled_calendars(self) -> list[CalendarConfiguration]:
        """Enabled calendars in display order."""
        async with self._session() as session:
            rows = (await session.execute(
                select(CalendarConfigurationRecord)
                .where(CalendarConfigurationRecord.is_enabled.is_(True))
                .order_by(CalendarConfigurationRecord.display_order, CalendarConfigurationRecord.id)
            )).scalars().all()
            return [self._to_model(row) for row in rows]

    # ── Settings changes ─────────────────────────────────────────────

    async def _change(self, calendar_id: int, **values) -> Optional[CalendarConfiguration]:
        async with self._session() as session:
            record = await session.get(CalendarConfigurationRecord, calendar_id)
            if record is None:
                logger.warning("calendar_not_found", id=calendar_id)
                return None
            for field, value in values.items():
                setattr(record, field, value)
            record.updated_at = self._clock()
            await session.flush()
            return self._to_model(record)

    async def set_enabled(self, calendar_id: int, enabled: bool) -> Optional[CalendarConfiguration]:
        calendar = await self._change(calendar_id, is_enabled=enabled)
        if calendar:
            logger.info("calendar_enabled_changed", id=calendar_id, name=calendar.name, enabled=enabled)
        return calendar

    async def set_enabled_many(self, calendar_ids: Iterable[int], enabled: bool) -> int:
        """Enable or disable several calendars at once. Returns how many matched."""
        ids = list(calendar_ids)
        if not ids:
            return 0
        async with self._session() as session:
            result = await session.execute(
                update(CalendarConfigurationRecord)
                .where(CalendarConfigurationRecord.id.in_(ids))
                .values(is_enabled=enabled, updated_at=self._clock())
            )
        count = result.rowcount or 0
        logger.info("calendars_enabled_changed", count=count, enabled=enabled)
        return count

    async def set_color(self, calendar_id: int, color: str) -> Optional[CalendarConfiguration]:
        if not _HEX_COLOR.match(color):
            raise ValueError(f"Invalid color '{color}', expected #RRGGBB")
        calendar = await self._change(calendar_id, color=color.upper())
        if calendar:
            logger.info("calendar_color_changed", id=calendar_id, name=calendar.name, color=calendar.color)
        return calendar

    async def reorder(self, ordered_ids: list[int]) -> int:
        """Set display order to each id's position in ``ordered_ids``; unknown ids are ignored."""
        now = self._clock()
        async with self._session() as session:
            records = (await session.execute(
                select(CalendarConfigurationRecord).where(CalendarConfigurationRecord.id.in_(ordered_ids))
            )).scalars().all()
            by_id = {record.id: record for record in records}
            for position, calendar_id in enumerate(ordered_ids):
                record = by_id.get(calendar_id)
                if record is not None:
                    record.display_order = position
                    record.updated_at = now

        logger.info("calendars_reordered", count=len(by_id))
        return len(by_id)

    async def mark_synced(
        self, calendar: CalendarConfiguration, synced_at: Optional[dt.datetime] = None,
    ) -> dt.datetime:
        """Stamp the calendar's last successful sync time."""
        synced_at = synced_at or self._clock()
        try:
            async with self._session() as session:
                await session.execute(
                    update(CalendarConfigurationRecord)
                    .where(
                        CalendarConfigurationRecord.source == calendar.source,
                        CalendarConfigurationRecord.calendar_id == calendar.calendar_id,
                    )
                    .values(last_sync_at=synced_at)
                )
        except SQLAlchemyError as exc:
            raise PersistenceFailure(
                f"Could not record sync time for {calendar.source}:{calendar.calendar_id}: {exc}",
                source=calendar.source,
                calendar_id=calendar.calendar_id,
            ) from exc
        return synced_at

    # ── Cadence ──────────────────────────────────────────────────────

    async def minimum_interval(self) -> int:
        """Shortest sync interval among enabled calendars, never below the configured floor.

        Falls back to the cache TTL when nothing is enabled.
        """
        async with self._session() as session:
            shortest = (await session.execute(
                select(func.min(CalendarConfigurationRecord.sync_interval_minutes))
                .where(CalendarConfigurationRecord.is_enabled.is_(True))
            )).scalar_one_or_none()
        if shortest is None:
            return self._settings.calendar_cache_ttl_minutes
        return max(self._settings.calendar_min_interval_minutes, shortest)
