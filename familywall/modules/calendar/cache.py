"""Local database cache for calendar events.

Stores events fetched from remote providers so the display can always render
them without hitting the remote server. ``reconcile`` makes a calendar's
cached rows match a fresh fetch exactly: insert what is new, update what
changed, delete what the provider no longer returns, all in one transaction.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from familywall.config import get_settings
from familywall.database import session_scope
from familywall.logging_config import get_logger
from familywall.modules.calendar.errors import PersistenceFailure
from familywall.modules.calendar.models import (
    CachedEvent,
    CachedEventRecord,
    CalendarConfiguration,
    ProviderEvent,
    ReconcileResult,
    to_naive_utc,
    utcnow,
)

logger = get_logger(__name__)

# SQLite caps bound parameters per statement
_IN_CHUNK = 500


def _chunks(items: list[str], size: int = _IN_CHUNK) -> Iterable[list[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class CalendarEventCache:
    """Repository over cached events plus the reconciliation algorithm."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        single_writer: Optional[bool] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        if single_writer is None:
            single_writer = get_settings().is_sqlite
        self._session_factory = session_factory
        self._clock = clock
        self._calendar_locks: dict[tuple[str, str], asyncio.Lock] = {}
        # SQLite allows one writer at a time
        self._writer_lock: Optional[asyncio.Lock] = asyncio.Lock() if single_writer else None

    # ── Plumbing ─────────────────────────────────────────────────────

    def _session(self):
        return session_scope(self._session_factory)

    def _calendar_lock(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._calendar_locks.get(key)
        if lock is None:
            lock = self._calendar_locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _write_guard(self, calendar: CalendarConfiguration) -> AsyncIterator[None]:
        async with self._calendar_lock(calendar.key):
            if self._writer_lock is None:
                yield
            else:
                async with self._writer_lock:
                    yield

    @asynccontextmanager
    async def _transaction(self, calendar: CalendarConfiguration, action: str) -> AsyncIterator[AsyncSession]:
        """Serialized write transaction; database errors surface as ``PersistenceFailure``."""
        async with self._write_guard(calendar):
            try:
                async with self._session() as session:
                    yield session
            except SQLAlchemyError as exc:
                logger.error(
                    "calendar_cache_write_failed",
                    action=action, source=calendar.source, calendar_id=calendar.calendar_id,
                    error=f"{type(exc).__name__}: {exc}",
                )
                raise PersistenceFailure(
                    f"Could not {action} cache for {calendar.source}:{calendar.calendar_id}: {exc}",
                    source=calendar.source,
                    calendar_id=calendar.calendar_id,
                ) from exc

    @staticmethod
    def _provider_fields(event: ProviderEvent) -> dict[str, Any]:
        """Columns owned by the provider (``response_status`` is handled separately)."""
        return {
            "title": event.title,
            "start": to_naive_utc(event.start),
            "end": to_naive_utc(event.end),
            "is_all_day": event.is_all_day,
            "is_birthday": event.is_birthday,
            "is_recurring": event.is_recurring,
            "recurrence_rule": event.recurrence_rule,
            "location": event.location,
            "description": event.description,
            "organizer": event.organizer,
            "attendees": list(event.attendees),
            "status": event.status.value,
            "online_meeting_url": event.online_meeting_url,
        }

    @staticmethod
    async def _load(session: AsyncSession, calendar: CalendarConfiguration) -> dict[str, CachedEventRecord]:
        rows = (await session.execute(
            select(CachedEventRecord).where(
                CachedEventRecord.source == calendar.source,
                CachedEventRecord.calendar_id == calendar.calendar_id,
            )
        )).scalars().all()
        return {row.provider_key: row for row in rows}

    @staticmethod
    async def _keys_owned_elsewhere(
        session: AsyncSession, calendar: CalendarConfiguration, keys: list[str],
    ) -> dict[str, str]:
        """Provider keys of this source already cached under another calendar."""
        owned: dict[str, str] = {}
        for chunk in _chunks(keys):
            rows = await session.execute(
                select(CachedEventRecord.provider_key, CachedEventRecord.calendar_id).where(
                    CachedEventRecord.source == calendar.source,
                    CachedEventRecord.calendar_id != calendar.calendar_id,
                    CachedEventRecord.provider_key.in_(chunk),
                )
            )
            owned.update({key: calendar_id for key, calendar_id in rows.all()})
        return owned

    @staticmethod
    def _dedupe(calendar: CalendarConfiguration, events: Iterable[ProviderEvent]) -> dict[str, ProviderEvent]:
        incoming: dict[str, ProviderEvent] = {}
        for event in events:
            if event.id in incoming:
                logger.debug("calendar_duplicate_event_in_fetch", calendar_id=calendar.calendar_id, key=event.id)
            incoming[event.id] = event
        return incoming

    async def _apply_upserts(
        self,
        session: AsyncSession,
        calendar: CalendarConfiguration,
        existing: dict[str, CachedEventRecord],
        incoming: dict[str, ProviderEvent],
        now: dt.datetime,
        result: ReconcileResult,
    ) -> None:
        new_keys = [key for key in incoming if key not in existing]
        conflicts = await self._keys_owned_elsewhere(session, calendar, new_keys) if new_keys else {}

        for key, event in incoming.items():
            fields = self._provider_fields(event)
            record = existing.get(key)

            if record is None:
                if key in conflicts:
                    logger.warning(
                        "calendar_event_key_conflict",
                        source=calendar.source, key=key,
                        calendar_id=calendar.calendar_id, owner_calendar_id=conflicts[key],
                    )
                    result.conflicts += 1
                    continue
                session.add(CachedEventRecord(
                    source=calendar.source,
                    provider_key=key,
                    calendar_id=calendar.calendar_id,
                    response_status=event.response_status.value if event.response_status else None,
                    provider_response_status=event.response_status.value if event.response_status else None,
                    created_at=now,
                    updated_at=now,
                    last_synced_at=now,
                    **fields,
                ))
                result.inserted += 1
                continue

            # The local response only yields to a response the provider has not sent before
            provider_response = event.response_status.value if event.response_status else None
            if provider_response is not None and provider_response != record.provider_response_status:
                fields["provider_response_status"] = provider_response
                fields["response_status"] = provider_response
            changed = False
            for column, value in fields.items():
                if getattr(record, column) != value:
                    setattr(record, column, value)
                    changed = True
            record.last_synced_at = now
            if changed:
                record.updated_at = now
                result.updated += 1
            else:
                result.unchanged += 1

    @staticmethod
    async def _delete_rows(session: AsyncSession, records: list[CachedEventRecord]) -> int:
        ids = [record.id for record in records]
        for i in range(0, len(ids), _IN_CHUNK):
            await session.execute(delete(CachedEventRecord).where(CachedEventRecord.id.in_(ids[i:i + _IN_CHUNK])))
        return len(ids)

    # ── Repository interface ─────────────────────────────────────────

    async def find(
        self,
        source: str,
        calendar_id: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> list[CachedEvent]:
        """Cached events of one calendar, optionally limited to events starting in [start, end]."""
        stmt = select(CachedEventRecord).where(
            CachedEventRecord.source == source,
            CachedEventRecord.calendar_id == calendar_id,
        )
        if start is not None:
            stmt = stmt.where(CachedEventRecord.start >= to_naive_utc(start))
        if end is not None:
            stmt = stmt.where(CachedEventRecord.start <= to_naive_utc(end))
        stmt = stmt.order_by(CachedEventRecord.start, CachedEventRecord.id)

        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [CachedEvent.model_validate(row) for row in rows]

    async def upsert(self, calendar: CalendarConfiguration, events: Iterable[ProviderEvent]) -> ReconcileResult:
        """Insert or update the given events without deleting anything."""
        result = ReconcileResult()
        async with self._transaction(calendar, "upsert") as session:
            existing = await self._load(session, calendar)
            incoming = self._dedupe(calendar, events)
            await self._apply_upserts(session, calendar, existing, incoming, self._clock(), result)
        return result

    async def delete_missing(self, calendar: CalendarConfiguration, kept_keys: Iterable[str]) -> int:
        """Delete the calendar's cached events whose provider key is not in ``kept_keys``."""
        kept = set(kept_keys)
        async with self._transaction(calendar, "delete_missing") as session:
            existing = await self._load(session, calendar)
            deleted = await self._delete_rows(session, [r for k, r in existing.items() if k not in kept])
        return deleted

    async def reconcile(self, calendar: CalendarConfiguration, events: Iterable[ProviderEvent]) -> ReconcileResult:
        """Make the calendar's cached rows match ``events`` exactly, in one transaction.

        The fetch result is the whole truth for the calendar: anything cached
        but absent from it is deleted, including rows outside the fetch window.
        Locally set ``response_status`` survives unless the provider sends a new response.
        """
        result = ReconcileResult()
        now = self._clock()
        incoming = self._dedupe(calendar, events)

        async with self._transaction(calendar, "reconcile") as session:
            existing = await self._load(session, calendar)
            await self._apply_upserts(session, calendar, existing, incoming, now, result)
            result.deleted = await self._delete_rows(
                session, [record for key, record in existing.items() if key not in incoming],
            )

        if not incoming and result.deleted:
            logger.warning(
                "calendar_cache_purged_by_empty_fetch",
                source=calendar.source, calendar_id=calendar.calendar_id, deleted=result.deleted,
            )
        logger.info(
            "calendar_cache_reconciled",
            source=calendar.source, calendar_id=calendar.calendar_id,
            inserted=result.inserted, updated=result.updated,
            unchanged=result.unchanged, deleted=result.deleted, conflicts=result.conflicts,
        )
        return result

    async def clear(self, calendar: CalendarConfiguration) -> int:
        """Remove every cached event of one calendar."""
        async with self._transaction(calendar, "clear") as session:
            result = await session.execute(
                delete(CachedEventRecord).where(
                    CachedEventRecord.source == calendar.source,
                    CachedEventRecord.calendar_id == calendar.calendar_id,
                )
            )
        logger.info("calendar_cache_cleared", source=calendar.source, calendar_id=calendar.calendar_id)
        return result.rowcount or 0
