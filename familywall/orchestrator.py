"""Composition root: builds provider clients and calendar services from settings.

The API, the CLI and the server all work through one ``Orchestrator``.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from familywall import __version__
from familywall.config import Settings, get_settings
from familywall.logging_config import get_logger
from familywall.modules.calendar.cache import CalendarEventCache
from familywall.modules.calendar.models import CalendarSource, utcnow
from familywall.modules.calendar.providers import GraphCalendarClient, IcsFeedClient, StaticTokenProvider
from familywall.modules.calendar.registry import CalendarRegistry
from familywall.modules.calendar.service import CalendarEventService
from familywall.modules.calendar.strategies import ProviderClient, build_strategies
from familywall.modules.calendar.sync import CalendarSyncService

logger = get_logger(__name__)


class Orchestrator:
    """Owns the calendar registry, cache, read service and sync service."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clients: Optional[Mapping[str, ProviderClient]] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self.clients: dict[str, ProviderClient] = dict(clients) if clients is not None else self._default_clients()
        self.strategies = build_strategies(self.clients)

        self.registry = CalendarRegistry(self.clients, session_factory, self._settings, clock)
        self.cache = CalendarEventCache(session_factory, single_writer=self._settings.is_sqlite, clock=clock)
        self.events = CalendarEventService(session_factory, clock)
        self.sync = CalendarSyncService(
            self.registry,
            self.strategies,
            self.cache,
            authenticators=self.clients,
            settings=self._settings,
            clock=clock,
        )

    def _default_clients(self) -> dict[str, ProviderClient]:
        timeout = self._settings.calendar_fetch_timeout_seconds
        return {
            CalendarSource.GRAPH.value: GraphCalendarClient(
                StaticTokenProvider(self._settings.msgraph_access_token),
                base_url=self._settings.msgraph_base_url,
                timeout=timeout,
            ),
            CalendarSource.ICS.value: IcsFeedClient(self._settings.ics_feeds, timeout=timeout),
        }

    async def start(self) -> None:
        """Start background calendar sync."""
        self.sync.start()
        logger.info("orchestrator_started", sources=sorted(self.strategies))

    async def shutdown(self) -> None:
        await self.sync.stop()
        logger.info("orchestrator_stopped")

    async def status(self) -> dict[str, Any]:
        """Health summary used by the API and CLI."""
        authenticated = {}
        for source, client in sorted(self.clients.items()):
            try:
                authenticated[source] = await client.is_authenticated()
            except Exception as exc:
                logger.warning("provider_status_unavailable", source=source, error=str(exc))
                authenticated[source] = False
        return {
            "version": __version__,
            "environment": self._settings.familywall_env,
            "providers": authenticated,
            "sync": self.sync.status(),
        }
