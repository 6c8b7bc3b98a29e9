"""Database models and Pydantic schemas for calendars, cached events and sync runs."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from familywall.database import Base

DEFAULT_CALENDAR_COLOR = "#3788D8"


def utcnow() -> dt.datetime:
    """Current time as naive UTC, the representation used in the cache."""
    return dt.datetime.now(dt.UTC).replace(tzinfo=None)


def to_naive_utc(value: dt.datetime) -> dt.datetime:
    """Normalize a datetime to naive UTC (aware values are converted first)."""
    if value.tzinfo is not None:
        return value.astimezone(dt.UTC).replace(tzinfo=None)
    return value


class CalendarSource(StrEnum):
    """Source tags with a bundled strategy."""

    GRAPH = "Graph"
    ICS = "ICS"


class EventStatus(StrEnum):
    """Provider-owned event status."""

    CONFIRMED = "Confirmed"
    TENTATIVE = "Tentative"
    CANCELLED = "Cancelled"


class EventResponseStatus(StrEnum):
    """Attendance response, owned locally once set."""

    NOT_RESPONDED = "NotResponded"
    ACCEPTED = "Accepted"
    DECLINED = "Declined"
    TENTATIVE = "Tentative"


# =============================================================================
# SQLAlchemy records
# =============================================================================


class CalendarConfigurationRecord(Base):
    """A configured calendar: identity, display metadata and sync policy."""

    __tablename__ = "calendar_configurations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    calendar_id = Column(String(1024), nullable=False)
    source = Column(String(32), nullable=False)
    name = Column(String(256), nullable=False)
    owner = Column(String(256), nullable=True)
    description = Column(Text, nullable=True)
    color = Column(String(16), nullable=False, default=DEFAULT_CALENDAR_COLOR)
    display_order = Column(Integer, nullable=False, default=0)
    is_enabled = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    can_edit = Column(Boolean, nullable=False, default=False)
    sync_interval_minutes = Column(Integer, nullable=False, default=15)
    sync_past_events = Column(Boolean, nullable=False, default=False)
    future_days_to_sync = Column(Integer, nullable=False, default=90)
    last_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("source", "calendar_id"),
        Index("ix_calendar_configurations_enabled_order", "is_enabled", "display_order"),
    )

    def __repr__(self) -> str:
        return (
            f"<CalendarConfigurationRecord(id={self.id}, source={self.source}, "
            f"calendar_id={self.calendar_id}, enabled={self.is_enabled})>"
        )


class CachedEventRecord(Base):
    """Locally cached copy of one provider event."""

    __tablename__ = "cached_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String(32), nullable=False)
    provider_key = Column(String(1024), nullable=False)
    calendar_id = Column(String(1024), nullable=False)
    title = Column(String(1024), nullable=False, default="")
    start = Column(DateTime, nullable=False)
    end = Column(DateTime, nullable=False)
    is_all_day = Column(Boolean, nullable=False, default=False)
    is_birthday = Column(Boolean, nullable=False, default=False)
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurrence_rule = Column(String(1024), nullable=True)
    location = Column(String(1024), nullable=True)
    description = Column(Text, nullable=True)
    organizer = Column(String(512), nullable=True)
    attendees = Column(JSON, nullable=False, default=list)
    status = Column(String(16), nullable=False, default=EventStatus.CONFIRMED.value)
    response_status = Column(String(16), nullable=True)
    provider_response_status = Column(String(16), nullable=True)
    online_meeting_url = Column(String(2048), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    last_synced_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("source", "provider_key"),
        ForeignKeyConstraint(
            ["source", "calendar_id"],
            ["calendar_configurations.source", "calendar_configurations.calendar_id"],
            ondelete="CASCADE",
        ),
        Index("ix_cached_events_calendar", "source", "calendar_id"),
        Index("ix_cached_events_range", "start", "end"),
        Index("ix_cached_events_recurring", "is_recurring"),
        Index("ix_cached_events_last_synced", "last_synced_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CachedEventRecord(id={self.id}, source={self.source}, "
            f"provider_key={self.provider_key}, title={self.title!r})>"
        )


# =============================================================================
# Pydantic schemas
# =============================================================================


class ProviderEvent(BaseModel):
    """One event as returned by a source, before it touches the cache."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    title: str = ""
    start: dt.datetime
    end: dt.datetime
    is_all_day: bool = False
    is_birthday: bool = False
    is_recurring: bool = False
    recurrence_rule: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    organizer: Optional[str] = None
    attendees: tuple[str, ...] = ()
    status: EventStatus = EventStatus.CONFIRMED
    response_status: Optional[EventResponseStatus] = None
    online_meeting_url: Optional[str] = None

    @model_validator(mode="after")
    def _end_not_before_start(self) -> "ProviderEvent":
        if self.end < self.start:
            raise ValueError(f"event {self.id} ends before it starts")
        return self


class ProviderCalendar(BaseModel):
    """A calendar a source reports as available."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    owner: Optional[str] = None
    can_edit: bool = False
    is_default: bool = False


class CalendarConfiguration(BaseModel):
    """Plain data view of a configured calendar."""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    calendar_id: str
    name: str
    source: str
    owner: Optional[str] = None
    description: Optional[str] = None
    color: str = DEFAULT_CALENDAR_COLOR
    display_order: int = 0
    is_enabled: bool = True
    is_default: bool = False
    can_edit: bool = False
    sync_interval_minutes: int = Field(default=15, ge=1)
    sync_past_events: bool = False
    future_days_to_sync: int = Field(default=90, ge=1)
    last_sync_at: Optional[dt.datetime] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    @property
    def key(self) -> tuple[str, str]:
        """Natural key (source, calendar_id)."""
        return self.source, self.calendar_id


class CachedEvent(BaseModel):
    """Plain data view of a cached event."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    source: str
    provider_key: str
    calendar_id: str
    title: str
    start: dt.datetime
    end: dt.datetime
    is_all_day: bool = False
    is_birthday: bool = False
    is_recurring: bool = False
    recurrence_rule: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    organizer: Optional[str] = None
    attendees: list[str] = Field(default_factory=list)
    status: EventStatus = EventStatus.CONFIRMED
    response_status: Optional[EventResponseStatus] = None
    provider_response_status: Optional[EventResponseStatus] = None
    online_meeting_url: Optional[str] = None
    created_at: dt.datetime
    updated_at: dt.datetime
    last_synced_at: Optional[dt.datetime] = None

    @property
    def duration_minutes(self) -> int:
        """Event duration in minutes."""
        return int((self.end - self.start).total_seconds() / 60)


class ReconcileResult(BaseModel):
    """Counts of what one reconciliation did to a calendar's rows."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    conflicts: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.updated or self.deleted)


class SyncOutcome(StrEnum):
    """How one calendar fared in a sync cycle."""

    SYNCED = "synced"
    SKIPPED_AUTH = "skipped_auth"
    SKIPPED_CONFIG = "skipped_config"
    SKIPPED_EMPTY = "skipped_empty"
    FAILED = "failed"


class CalendarSyncResult(BaseModel):
    """Result of syncing one calendar."""

    calendar_id: str
    source: str
    name: str = ""
    outcome: SyncOutcome
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    error: Optional[str] = None
    synced_at: Optional[dt.datetime] = None


class SyncReport(BaseModel):
    """Everything one sync cycle did, published to observers."""

    started_at: dt.datetime
    finished_at: dt.datetime
    results: list[CalendarSyncResult] = Field(default_factory=list)
    manual: bool = False

    @property
    def synced(self) -> int:
        return sum(1 for r in self.results if r.outcome == SyncOutcome.SYNCED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.outcome == SyncOutcome.FAILED)
