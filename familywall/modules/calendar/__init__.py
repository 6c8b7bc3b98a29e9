"""Calendar sync, local event cache and calendar registry."""

from familywall.modules.calendar.cache import CalendarEventCache
from familywall.modules.calendar.errors import (
    AuthenticationRequired,
    CalendarSyncError,
    ConfigurationError,
    FetchFailed,
    PersistenceFailure,
)
from familywall.modules.calendar.models import (
    CachedEvent,
    CalendarConfiguration,
    CalendarSource,
    ProviderCalendar,
    ProviderEvent,
    SyncReport,
)
from familywall.modules.calendar.registry import CalendarRegistry
from familywall.modules.calendar.service import CalendarEventService
from familywall.modules.calendar.sync import CalendarSyncService, SyncObserver

__all__ = [
    "AuthenticationRequired",
    "CachedEvent",
    "CalendarConfiguration",
    "CalendarEventCache",
    "CalendarEventService",
    "CalendarRegistry",
    "CalendarSource",
    "CalendarSyncError",
    "CalendarSyncService",
    "ConfigurationError",
    "FetchFailed",
    "PersistenceFailure",
    "ProviderCalendar",
    "ProviderEvent",
    "SyncObserver",
    "SyncReport",
]
