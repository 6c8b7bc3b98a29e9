"""Calendar sync error taxonomy.

Per-calendar errors (fetch, auth, configuration) are contained by the sync
service; only ``PersistenceFailure`` escapes a sync cycle.
"""

from __future__ import annotations

from typing import Optional


class CalendarSyncError(Exception):
    """Base class for calendar sync errors."""

    def __init__(self, message: str, source: Optional[str] = None, calendar_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source
        self.calendar_id = calendar_id


class FetchFailed(CalendarSyncError):
    """A source could not deliver events (network, provider outage, bad payload, timeout)."""


class AuthenticationRequired(FetchFailed):
    """The source needs the user to re-authenticate before it can be read."""


class ConfigurationError(CalendarSyncError):
    """The calendar cannot be synced as configured, e.g. no strategy for its source."""


class PersistenceFailure(CalendarSyncError):
    """A reconciliation or sync stamp could not be committed to the cache."""
