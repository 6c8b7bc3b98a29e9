"""Background calendar sync: keeps the local cache aligned with every enabled calendar.

One long-lived task runs the cadence. Each cycle fans out one task per enabled
calendar, fetches through the source's strategy and reconciles the result into
the cache. Failures stay inside the calendar that caused them, except a failed
database write, which aborts the cycle so it is retried soon.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Any, Callable, Mapping, Optional, Protocol, runtime_checkable

from familywall.config import Settings, get_settings
from familywall.logging_config import get_logger
from familywall.modules.calendar.cache import CalendarEventCache
from familywall.modules.calendar.errors import (
    AuthenticationRequired,
    ConfigurationError,
    FetchFailed,
    PersistenceFailure,
)
from familywall.modules.calendar.models import (
    CalendarConfiguration,
    CalendarSyncResult,
    ProviderEvent,
    SyncOutcome,
    SyncReport,
    to_naive_utc,
    utcnow,
)
from familywall.modules.calendar.registry import CalendarRegistry
from familywall.modules.calendar.strategies import ProviderClient, SyncStrategy

logger = get_logger(__name__)


@runtime_checkable
class SyncObserver(Protocol):
    """Receives a report after every sync cycle."""

    async def on_sync_completed(self, report: SyncReport) -> None: ...


class CalendarSyncService:
    """Timer-driven sync orchestrator."""

    def __init__(
        self,
        registry: CalendarRegistry,
        strategies: Mapping[str, SyncStrategy],
        cache: CalendarEventCache,
        authenticators: Optional[Mapping[str, ProviderClient]] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._strategies = dict(strategies)
        self._cache = cache
        self._authenticators = dict(authenticators or {})
        self._settings = settings or get_settings()
        self._clock = clock

        self._observers: list[SyncObserver] = []
        self._calendar_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._calendar_sync_times: dict[tuple[str, str], dt.datetime] = {}
        self._last_sync_time: Optional[dt.datetime] = None
        self._last_report: Optional[SyncReport] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    # ── Introspection ────────────────────────────────────────────────

    @property
    def strategies(self) -> dict[str, SyncStrategy]:
        return dict(self._strategies)

    @property
    def last_sync_time(self) -> Optional[dt.datetime]:
        """When the last cycle finished without a persistence failure."""
        return self._last_sync_time

    @property
    def last_report(self) -> Optional[SyncReport]:
        return self._last_report

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def calendar_last_sync(self, calendar: CalendarConfiguration) -> Optional[dt.datetime]:
        """Last successful sync of one calendar during this process's lifetime."""
        return self._calendar_sync_times.get(calendar.key)

    def status(self) -> dict[str, Any]:
        """Diagnostic snapshot of the sync service."""
        return {
            "running": self.is_running,
            "last_sync_time": self._last_sync_time.isoformat() if self._last_sync_time else None,
            "strategies": sorted(self._strategies),
            "calendars": {
                f"{source}:{calendar_id}": synced_at.isoformat()
                for (source, calendar_id), synced_at in sorted(self._calendar_sync_times.items())
            },
            "last_report": self._last_report.model_dump(mode="json") if self._last_report else None,
        }

    # ── Wiring ───────────────────────────────────────────────────────

    def register_strategy(self, strategy: SyncStrategy) -> None:
        self._strategies[strategy.source] = strategy
        logger.info("calendar_strategy_registered", source=strategy.source)

    def subscribe(self, observer: SyncObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: SyncObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def _publish(self, report: SyncReport) -> None:
        for observer in list(self._observers):
            try:
                await observer.on_sync_completed(report)
            except Exception as exc:
                logger.error(
                    "calendar_sync_observer_failed",
                    observer=type(observer).__name__, error=f"{type(exc).__name__}: {exc}",
                )

    # ── Scheduling ───────────────────────────────────────────────────

    async def next_interval_minutes(self) -> int:
        """Minutes until the next cycle: the shortest enabled interval, capped by the cache TTL."""
        shortest = await self._registry.minimum_interval()
        return max(
            self._settings.calendar_min_interval_minutes,
            min(shortest, self._settings.calendar_cache_ttl_minutes),
        )

    def sync_window(
        self, calendar: CalendarConfiguration, now: Optional[dt.datetime] = None,
    ) -> tuple[dt.datetime, dt.datetime]:
        """Fetch window for a calendar, anchored at midnight UTC today."""
        now = to_naive_utc(now or self._clock())
        today = dt.datetime.combine(now.date(), dt.time.min)
        start = today
        if calendar.sync_past_events:
            start -= dt.timedelta(days=self._settings.calendar_past_days)
        return start, today + dt.timedelta(days=calendar.future_days_to_sync)

    # ── Sync ─────────────────────────────────────────────────────────

    def _calendar_lock(self, calendar: CalendarConfiguration) -> asyncio.Lock:
        lock = self._calendar_locks.get(calendar.key)
        if lock is None:
            lock = self._calendar_locks[calendar.key] = asyncio.Lock()
        return lock

    @staticmethod
    def _result(calendar: CalendarConfiguration, outcome: SyncOutcome, **values: Any) -> CalendarSyncResult:
        return CalendarSyncResult(
            calendar_id=calendar.calendar_id,
            source=calendar.source,
            name=calendar.name,
            outcome=outcome,
            **values,
        )

    async def _fetch(self, calendar: CalendarConfiguration) -> list[ProviderEvent]:
        source = calendar.source

        authenticator = self._authenticators.get(source)
        if authenticator is not None:
            try:
                authenticated = await authenticator.is_authenticated()
            except Exception as exc:
                raise FetchFailed(
                    f"Authentication check failed for {source}: {exc}",
                    source=source, calendar_id=calendar.calendar_id,
                ) from exc
            if not authenticated:
                raise AuthenticationRequired(
                    f"{source} is not authenticated", source=source, calendar_id=calendar.calendar_id,
                )

        strategy = self._strategies.get(source)
        if strategy is None:
            raise ConfigurationError(
                f"No sync strategy registered for source '{source}'",
                source=source, calendar_id=calendar.calendar_id,
            )

        start, end = self.sync_window(calendar)
        timeout = self._settings.calendar_fetch_timeout_seconds
        try:
            return await asyncio.wait_for(strategy.fetch(calendar.calendar_id, start, end), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise FetchFailed(
                f"Fetch timed out after {timeout:g}s", source=source, calendar_id=calendar.calendar_id,
            ) from exc
        except FetchFailed:
            raise
        except Exception as exc:
            raise FetchFailed(
                f"{type(exc).__name__}: {exc}", source=source, calendar_id=calendar.calendar_id,
            ) from exc

    async def sync_one(self, calendar: CalendarConfiguration) -> CalendarSyncResult:
        """Fetch and reconcile a single calendar.

        Fetch, auth and configuration problems are reported in the result and
        leave the cache untouched. ``PersistenceFailure`` propagates.
        """
        log = logger.bind(source=calendar.source, calendar_id=calendar.calendar_id, calendar=calendar.name)

        async with self._calendar_lock(calendar):
            try:
                events = await self._fetch(calendar)
            except AuthenticationRequired as exc:
                log.warning("calendar_sync_skipped_auth", reason=str(exc))
                return self._result(calendar, SyncOutcome.SKIPPED_AUTH, error=str(exc))
            except ConfigurationError as exc:
                log.warning("calendar_sync_skipped_config", reason=str(exc))
                return self._result(calendar, SyncOutcome.SKIPPED_CONFIG, error=str(exc))
            except FetchFailed as exc:
                log.error("calendar_fetch_failed", error=str(exc))
                return self._result(calendar, SyncOutcome.FAILED, error=str(exc))

            if not events and not self._settings.calendar_allow_empty_purge:
                log.warning("calendar_empty_fetch_ignored")
                return self._result(calendar, SyncOutcome.SKIPPED_EMPTY)

            reconciled = await self._cache.reconcile(calendar, events)
            synced_at = await self._registry.mark_synced(calendar, self._clock())
            self._calendar_sync_times[calendar.key] = synced_at

        log.info(
            "calendar_synced",
            fetched=len(events), inserted=reconciled.inserted,
            updated=reconciled.updated, deleted=reconciled.deleted,
        )
        return self._result(
            calendar,
            SyncOutcome.SYNCED,
            fetched=len(events),
            inserted=reconciled.inserted,
            updated=reconciled.updated,
            deleted=reconciled.deleted,
            synced_at=synced_at,
        )

    async def sync_all(self, manual: bool = False) -> SyncReport:
        """Sync every enabled calendar concurrently and publish the report.

        Raises the first ``PersistenceFailure`` once all calendars are done;
        the aggregate sync time only advances when there was none.
        """
        started_at = self._clock()
        calendars = await self._registry.enabled_calendars()
        logger.info("calendar_sync_cycle_started", calendars=len(calendars), manual=manual)

        outcomes = await asyncio.gather(
            *(self.sync_one(calendar) for calendar in calendars),
            return_exceptions=True,
        )

        results: list[CalendarSyncResult] = []
        persistence_error: Optional[PersistenceFailure] = None
        for calendar, outcome in zip(calendars, outcomes):
            if isinstance(outcome, CalendarSyncResult):
                results.append(outcome)
                continue
            if not isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, PersistenceFailure):
                persistence_error = persistence_error or outcome
                logger.error(
                    "calendar_persistence_failed",
                    source=calendar.source, calendar_id=calendar.calendar_id, error=str(outcome),
                )
            else:
                logger.error(
                    "calendar_sync_unexpected_error",
                    source=calendar.source, calendar_id=calendar.calendar_id,
                    error=f"{type(outcome).__name__}: {outcome}",
                )
            results.append(self._result(calendar, SyncOutcome.FAILED, error=str(outcome)))

        finished_at = self._clock()
        report = SyncReport(started_at=started_at, finished_at=finished_at, results=results, manual=manual)
        self._last_report = report
        if persistence_error is None:
            self._last_sync_time = finished_at

        logger.info(
            "calendar_sync_cycle_completed",
            synced=report.synced, failed=report.failed, total=len(results),
            duration_ms=int((finished_at - started_at).total_seconds() * 1000),
        )
        await self._publish(report)

        if persistence_error is not None:
            raise persistence_error
        return report

    async def trigger_manual_sync(self) -> SyncReport:
        """Run a cycle now without disturbing the timer."""
        logger.info("calendar_manual_sync_requested")
        return await self.sync_all(manual=True)

    # ── Lifecycle ────────────────────────────────────────────────────

    @staticmethod
    async def _sleep(stop_event: asyncio.Event, seconds: float) -> bool:
        """Sleep unless stopped first. Returns True when a stop was requested."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return stop_event.is_set()

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Sync loop: startup grace period, then cycle until stopped or cancelled."""
        stop_event = self._stop_event = stop_event or asyncio.Event()
        logger.info(
            "calendar_sync_service_started",
            strategies=sorted(self._strategies),
            startup_delay_seconds=self._settings.calendar_startup_delay_seconds,
        )
        try:
            if await self._sleep(stop_event, self._settings.calendar_startup_delay_seconds):
                return
            while True:
                try:
                    await self.sync_all()
                    minutes = await self.next_interval_minutes()
                except Exception as exc:
                    minutes = self._settings.calendar_error_retry_minutes
                    logger.error(
                        "calendar_sync_cycle_failed",
                        error=f"{type(exc).__name__}: {exc}", retry_minutes=minutes,
                    )
                logger.debug("calendar_sync_next_cycle", minutes=minutes)
                if await self._sleep(stop_event, minutes * 60):
                    return
        except asyncio.CancelledError:
            logger.info("calendar_sync_service_cancelled")
            raise
        except Exception as exc:
            logger.critical("calendar_sync_service_crashed", error=f"{type(exc).__name__}: {exc}")
            raise
        finally:
            logger.info("calendar_sync_service_stopped")

    def start(self) -> asyncio.Task:
        """Launch the sync loop as a background task."""
        if not self._strategies:
            logger.critical("calendar_sync_not_configured", reason="no sync strategies registered")
            raise ConfigurationError("No calendar sync strategies registered")
        if self.is_running:
            return self._task
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._stop_event), name="calendar-sync")
        return self._task

    async def stop(self, grace_seconds: float = 5.0) -> None:
        """Stop the loop, cancelling an in-flight cycle that outlives the grace period."""
        if self._stop_event is not None:
            self._stop_event.set()
        task, self._task = self._task, None
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=grace_seconds)
        if not done:
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)
