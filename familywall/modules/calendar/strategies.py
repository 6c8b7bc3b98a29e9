"""Sync strategies: one per source tag, selected by exact string match.

A strategy only talks to its provider client and hands back ``ProviderEvent``s;
it knows nothing about the local cache.
"""

from __future__ import annotations

import datetime as dt
from typing import Iterable, Mapping, Protocol, runtime_checkable

from familywall.logging_config import get_logger
from familywall.modules.calendar.errors import FetchFailed
from familywall.modules.calendar.models import CalendarSource, ProviderCalendar, ProviderEvent

logger = get_logger(__name__)


@runtime_checkable
class ProviderClient(Protocol):
    """What the sync engine needs from a concrete calendar provider client."""

    async def is_authenticated(self) -> bool: ...

    async def fetch_events(
        self, calendar_id: str, start: dt.datetime, end: dt.datetime,
    ) -> list[ProviderEvent]: ...

    async def list_calendars(self) -> list[ProviderCalendar]: ...


@runtime_checkable
class SyncStrategy(Protocol):
    """Fetch contract for one source kind."""

    source: str

    async def fetch(
        self, calendar_id: str, start: dt.datetime, end: dt.datetime,
    ) -> list[ProviderEvent]: ...


class ProviderSyncStrategy:
    """Strategy backed by a provider client; every client error surfaces as ``FetchFailed``."""

    def __init__(self, source: str, client: ProviderClient) -> None:
        self.source = source
        self._client = client

    @property
    def client(self) -> ProviderClient:
        return self._client

    async def fetch(
        self, calendar_id: str, start: dt.datetime, end: dt.datetime,
    ) -> list[ProviderEvent]:
        logger.debug(
            "strategy_fetch_started",
            source=self.source, calendar_id=calendar_id,
            start=start.isoformat(), end=end.isoformat(),
        )
        try:
            events = await self._client.fetch_events(calendar_id, start, end)
        except FetchFailed as exc:
            exc.source = exc.source or self.source
            exc.calendar_id = exc.calendar_id or calendar_id
            raise
        except Exception as exc:
            raise FetchFailed(
                f"{self.source} fetch failed for {calendar_id}: {type(exc).__name__}: {exc}",
                source=self.source,
                calendar_id=calendar_id,
            ) from exc

        logger.debug("strategy_fetch_completed", source=self.source, calendar_id=calendar_id, count=len(events))
        return list(events)

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(source={self.source}, client={type(self._client).__name__})>"


class GraphSyncStrategy(ProviderSyncStrategy):
    """Microsoft Graph calendars."""

    def __init__(self, client: ProviderClient) -> None:
        super().__init__(CalendarSource.GRAPH.value, client)


class IcsSyncStrategy(ProviderSyncStrategy):
    """Subscribed iCalendar feeds; the feed URL is the calendar id."""

    def __init__(self, client: ProviderClient) -> None:
        super().__init__(CalendarSource.ICS.value, client)


def build_strategies(clients: Mapping[str, ProviderClient]) -> dict[str, SyncStrategy]:
    """Build the ``source -> strategy`` lookup from a ``source -> client`` mapping."""
    strategies: dict[str, SyncStrategy] = {}
    for source, client in clients.items():
        if source == CalendarSource.GRAPH:
            strategies[source] = GraphSyncStrategy(client)
        elif source == CalendarSource.ICS:
            strategies[source] = IcsSyncStrategy(client)
        else:
            strategies[source] = ProviderSyncStrategy(source, client)
    return strategies


def strategy_map(strategies: Iterable[SyncStrategy]) -> dict[str, SyncStrategy]:
    """Index strategies by their source tag, rejecting duplicates."""
    result: dict[str, SyncStrategy] = {}
    for strategy in strategies:
        if strategy.source in result:
            raise ValueError(f"Duplicate sync strategy for source: {strategy.source}")
        result[strategy.source] = strategy
    return result
