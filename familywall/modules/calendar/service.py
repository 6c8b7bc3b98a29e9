"""Read-side calendar service: what the display and the API show from the cache.

Every query except the direct lookups is limited to enabled calendars. Events
are owned by their providers, so the only local change allowed is the
attendance response.
"""

from __future__ import annotations

import datetime as dt
from typing import Callable, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import Select

from familywall.database import session_scope
from familywall.logging_config import get_logger
from familywall.modules.calendar.models import (
    CachedEvent,
    CachedEventRecord,
    CalendarConfigurationRecord,
    EventResponseStatus,
    EventStatus,
    to_naive_utc,
    utcnow,
)

logger = get_logger(__name__)


class CalendarEventService:
    """Queries over cached events."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def _session(self):
        return session_scope(self._session_factory)

    @staticmethod
    def _enabled_events(*columns) -> Select:
        return (
            select(*(columns or (CachedEventRecord,)))
            .select_from(CachedEventRecord)
            .join(
                CalendarConfigurationRecord,
                and_(
                    CalendarConfigurationRecord.source == CachedEventRecord.source,
                    CalendarConfigurationRecord.calendar_id == CachedEventRecord.calendar_id,
                ),
            )
            .where(CalendarConfigurationRecord.is_enabled.is_(True))
        )

    @staticmethod
    def _starting_between(stmt: Select, start: dt.datetime, end: dt.datetime) -> Select:
        return stmt.where(
            CachedEventRecord.start >= to_naive_utc(start),
            CachedEventRecord.start <= to_naive_utc(end),
        )

    async def _fetch(self, stmt: Select) -> list[CachedEvent]:
        stmt = stmt.order_by(CachedEventRecord.start, CachedEventRecord.id)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [CachedEvent.model_validate(row) for row in rows]

    async def get_event(self, event_id: int) -> Optional[CachedEvent]:
        async with self._session() as session:
            record = await session.get(CachedEventRecord, event_id)
            return CachedEvent.model_validate(record) if record else None

    async def get_events(self, start: dt.datetime, end: dt.datetime) -> list[CachedEvent]:
        """Events of enabled calendars starting within [start, end]."""
        return await self._fetch(self._starting_between(self._enabled_events(), start, end))

    async def get_events_for_calendar(
        self,
        calendar_id: str,
        start: dt.datetime,
        end: dt.datetime,
        source: Optional[str] = None,
    ) -> list[CachedEvent]:
        """Events of one calendar, enabled or not."""
        stmt = select(CachedEventRecord).where(CachedEventRecord.calendar_id == calendar_id)
        if source is not None:
            stmt = stmt.where(CachedEventRecord.source == source)
        return await self._fetch(self._starting_between(stmt, start, end))

    async def get_events_by_date(self, day: dt.date) -> list[CachedEvent]:
        """Events starting on the given UTC day."""
        start = dt.datetime.combine(day, dt.time.min)
        end = start + dt.timedelta(days=1)
        return await self._fetch(
            self._enabled_events().where(CachedEventRecord.start >= start, CachedEventRecord.start < end)
        )

    async def get_upcoming_events(self, count: int = 10) -> list[CachedEvent]:
        """The next ``count`` events starting from now."""
        stmt = self._enabled_events().where(CachedEventRecord.start >= self._clock()).limit(count)
        return await self._fetch(stmt)

    async def search_events(self, query: str) -> list[CachedEvent]:
        """Case-insensitive substring search over title, description and location."""
        needle = query.lower()
        stmt = self._enabled_events().where(
            or_(
                func.lower(CachedEventRecord.title).contains(needle, autoescape=True),
                func.lower(CachedEventRecord.description).contains(needle, autoescape=True),
                func.lower(CachedEventRecord.location).contains(needle, autoescape=True),
            )
        )
        return await self._fetch(stmt)

    async def get_events_by_status(self, status: EventStatus) -> list[CachedEvent]:
        return await self._fetch(self._enabled_events().where(CachedEventRecord.status == status.value))

    async def get_recurring_events(self) -> list[CachedEvent]:
        return await self._fetch(self._enabled_events().where(CachedEventRecord.is_recurring.is_(True)))

    async def get_birthdays(self, start: dt.datetime, end: dt.datetime) -> list[CachedEvent]:
        stmt = self._enabled_events().where(CachedEventRecord.is_birthday.is_(True))
        return await self._fetch(self._starting_between(stmt, start, end))

    async def get_event_count(self, start: dt.datetime, end: dt.datetime) -> int:
        stmt = self._starting_between(
            self._enabled_events(func.count(CachedEventRecord.id)), start, end,
        )
        async with self._session() as session:
            return (await session.execute(stmt)).scalar_one()

    async def get_event_count_by_calendar(self, start: dt.datetime, end: dt.datetime) -> dict[str, int]:
        """Event counts keyed by calendar id."""
        stmt = self._starting_between(
            self._enabled_events(CachedEventRecord.calendar_id, func.count(CachedEventRecord.id))
            .group_by(CachedEventRecord.calendar_id),
            start,
            end,
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
        return {calendar_id: count for calendar_id, count in rows}

    async def update_response_status(
        self, event_id: int, status: EventResponseStatus,
    ) -> Optional[CachedEvent]:
        """Record the user's attendance response locally; later syncs keep it."""
        async with self._session() as session:
            record = await session.get(CachedEventRecord, event_id)
            if record is None:
                logger.warning("calendar_event_not_found", event_id=event_id)
                return None
            record.response_status = status.value
            record.updated_at = self._clock()
            await session.flush()
            event = CachedEvent.model_validate(record)

        logger.info("calendar_event_response_updated", event_id=event_id, status=status.value)
        return event
