"""API route definitions for FamilyWall."""

from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from familywall.logging_config import get_logger
from familywall.modules.calendar.errors import (
    AuthenticationRequired,
    ConfigurationError,
    FetchFailed,
    PersistenceFailure,
)
from familywall.modules.calendar.models import (
    DEFAULT_CALENDAR_COLOR,
    CachedEvent,
    CalendarConfiguration,
    CalendarSyncResult,
    EventResponseStatus,
    EventStatus,
    SyncReport,
    utcnow,
)

logger = get_logger(__name__)

router = APIRouter()


# ── Request Models ───────────────────────────────────────────────────

class CalendarCreateRequest(BaseModel):
    """Add a calendar, usually one returned by discovery."""

    calendar_id: str = Field(..., min_length=1)
    source: str
    name: str
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


class CalendarUpdateRequest(BaseModel):
    """Partial update of a calendar's editable settings."""

    name: Optional[str] = None
    description: Optional[str] = None
    sync_interval_minutes: Optional[int] = Field(default=None, ge=1)
    sync_past_events: Optional[bool] = None
    future_days_to_sync: Optional[int] = Field(default=None, ge=1)


class EnableRequest(BaseModel):
    enabled: bool


class BulkEnableRequest(BaseModel):
    ids: list[int]
    enabled: bool


class ColorRequest(BaseModel):
    color: str


class ReorderRequest(BaseModel):
    ids: list[int]


class ResponseStatusRequest(BaseModel):
    status: EventResponseStatus


# ── Orchestrator accessor (set from main.py) ────────────────────────

_orchestrator = None


def set_orchestrator(orch: Any) -> None:
    """Inject the orchestrator instance."""
    global _orchestrator
    _orchestrator = orch


def get_orchestrator():
    """Get the orchestrator, raising if not initialized."""
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="System not initialized")
    return _orchestrator


def _window(
    start: Optional[dt.datetime], end: Optional[dt.datetime], days: int,
) -> tuple[dt.datetime, dt.datetime]:
    start = start or utcnow()
    return start, end or start + dt.timedelta(days=days)


async def _calendar_or_404(calendar_id: int) -> CalendarConfiguration:
    calendar = await get_orchestrator().registry.get(calendar_id)
    if calendar is None:
        raise HTTPException(status_code=404, detail=f"Calendar {calendar_id} not found")
    return calendar


# ── Health ───────────────────────────────────────────────────────────

@router.get("/health")
async def health_check() -> dict[str, Any]:
    """System health check."""
    orch = get_orchestrator()
    status = await orch.status()
    return {"status": "healthy", **status}


# ── Calendars ────────────────────────────────────────────────────────

@router.get("/calendars", response_model=list[CalendarConfiguration])
async def list_calendars() -> list[CalendarConfiguration]:
    """All configured calendars in display order."""
    return await get_orchestrator().registry.list_calendars()


@router.get("/calendars/discover/{source}", response_model=list[CalendarConfiguration])
async def discover_calendars(source: str) -> list[CalendarConfiguration]:
    """Calendars the source offers, not yet saved."""
    try:
        return await get_orchestrator().registry.discover(source)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except AuthenticationRequired as exc:
        raise HTTPException(status_code=401, detail=str(exc))
    except FetchFailed as exc:
        raise HTTPException(status_code=502, detail=str(exc))


@router.post("/calendars", response_model=CalendarConfiguration, status_code=201)
async def add_calendar(request: CalendarCreateRequest) -> CalendarConfiguration:
    try:
        return await get_orchestrator().registry.add(CalendarConfiguration(**request.model_dump()))
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.patch("/calendars/{calendar_id}", response_model=CalendarConfiguration)
async def update_calendar(calendar_id: int, request: CalendarUpdateRequest) -> CalendarConfiguration:
    calendar = await _calendar_or_404(calendar_id)
    changed = calendar.model_copy(update=request.model_dump(exclude_none=True))
    updated = await get_orchestrator().registry.update(changed)
    if updated is None:
        raise HTTPException(status_code=404, detail=f"Calendar {calendar_id} not found")
    return updated


@router.post("/calendars/enabled")
async def set_calendars_enabled(request: BulkEnableRequest) -> dict[str, Any]:
    """Enable or disable several calendars at once."""
    count = await get_orchestrator().registry.set_enabled_many(request.ids, request.enabled)
    return {"updated": count, "enabled": request.enabled}


@router.post("/calendars/reorder")
async def reorder_calendars(request: ReorderRequest) -> dict[str, Any]:
    count = await get_orchestrator().registry.reorder(request.ids)
    return {"reordered": count}


@router.post("/calendars/{calendar_id}/enabled", response_model=CalendarConfiguration)
async def set_calendar_enabled(calendar_id: int, request: EnableRequest) -> CalendarConfiguration:
    calendar = await get_orchestrator().registry.set_enabled(calendar_id, request.enabled)
    if calendar is None:
        raise HTTPException(status_code=404, detail=f"Calendar {calendar_id} not found")
    return calendar


@router.post("/calendars/{calendar_id}/color", response_model=CalendarConfiguration)
async def set_calendar_color(calendar_id: int, request: ColorRequest) -> CalendarConfiguration:
    try:
        calendar = await get_orchestrator().registry.set_color(calendar_id, request.color)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if calendar is None:
        raise HTTPException(status_code=404, detail=f"Calendar {calendar_id} not found")
    return calendar


@router.post("/calendars/{calendar_id}/sync", response_model=CalendarSyncResult)
async def sync_calendar(calendar_id: int) -> CalendarSyncResult:
    """Sync a single calendar now."""
    calendar = await _calendar_or_404(calendar_id)
    try:
        return await get_orchestrator().sync.sync_one(calendar)
    except PersistenceFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@router.delete("/calendars/{calendar_id}")
async def delete_calendar(calendar_id: int) -> dict[str, Any]:
    """Delete a calendar and its cached events."""
    deleted = await get_orchestrator().registry.delete(calendar_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Calendar {calendar_id} not found")
    return {"status": "deleted", "id": calendar_id}


# ── Events ───────────────────────────────────────────────────────────

@router.get("/events", response_model=list[CachedEvent])
async def list_events(
    start: Optional[dt.datetime] = Query(None),
    end: Optional[dt.datetime] = Query(None),
    days: int = Query(7, ge=1),
) -> list[CachedEvent]:
    """Events of enabled calendars starting in the window (default: the next 7 days)."""
    start_dt, end_dt = _window(start, end, days)
    return await get_orchestrator().events.get_events(start_dt, end_dt)


@router.get("/events/upcoming", response_model=list[CachedEvent])
async def upcoming_events(count: int = Query(10, ge=1, le=500)) -> list[CachedEvent]:
    return await get_orchestrator().events.get_upcoming_events(count)


@router.get("/events/search", response_model=list[CachedEvent])
async def search_events(q: str = Query(..., min_length=1)) -> list[CachedEvent]:
    return await get_orchestrator().events.search_events(q)


@router.get("/events/recurring", response_model=list[CachedEvent])
async def recurring_events() -> list[CachedEvent]:
    return await get_orchestrator().events.get_recurring_events()


@router.get("/events/birthdays", response_model=list[CachedEvent])
async def birthdays(
    start: Optional[dt.datetime] = Query(None),
    end: Optional[dt.datetime] = Query(None),
    days: int = Query(30, ge=1),
) -> list[CachedEvent]:
    start_dt, end_dt = _window(start, end, days)
    return await get_orchestrator().events.get_birthdays(start_dt, end_dt)


@router.get("/events/status/{status}", response_model=list[CachedEvent])
async def events_by_status(status: EventStatus) -> list[CachedEvent]:
    return await get_orchestrator().events.get_events_by_status(status)


@router.get("/events/date/{day}", response_model=list[CachedEvent])
async def events_by_date(day: dt.date) -> list[CachedEvent]:
    return await get_orchestrator().events.get_events_by_date(day)


@router.get("/events/calendar", response_model=list[CachedEvent])
async def events_for_calendar(
    calendar_id: str = Query(..., min_length=1),
    source: Optional[str] = Query(None),
    start: Optional[dt.datetime] = Query(None),
    end: Optional[dt.datetime] = Query(None),
    days: int = Query(7, ge=1),
) -> list[CachedEvent]:
    """Events of one calendar (ICS calendar ids are URLs, so it is a query parameter)."""
    start_dt, end_dt = _window(start, end, days)
    return await get_orchestrator().events.get_events_for_calendar(calendar_id, start_dt, end_dt, source=source)


@router.get("/events/count")
async def event_count(
    start: Optional[dt.datetime] = Query(None),
    end: Optional[dt.datetime] = Query(None),
    days: int = Query(7, ge=1),
) -> dict[str, Any]:
    start_dt, end_dt = _window(start, end, days)
    events = get_orchestrator().events
    return {
        "total": await events.get_event_count(start_dt, end_dt),
        "by_calendar": await events.get_event_count_by_calendar(start_dt, end_dt),
    }


@router.get("/events/{event_id}", response_model=CachedEvent)
async def get_event(event_id: int) -> CachedEvent:
    event = await get_orchestrator().events.get_event(event_id)
    if event is None:
        raise HTTPException(status_code=404, detail=f"Event {event_id} not found")
    return event


@router.put("/events/{event_id}/response", response_model=CachedEvent)
async def update_response(event_id: int, request: ResponseStatusRequest) -> CachedEvent:
    """Record the attendance response locally."""
    event = await get_orchestrator().events.update_response_status(event_id, request.status)
    if event is None:
        raise HTTPException(status_code=404, detail=f"Event {event_id} not found")
    return event


# ── Sync ─────────────────────────────────────────────────────────────

@router.post("/sync", response_model=SyncReport)
async def trigger_sync() -> SyncReport:
    """Trigger a manual sync of all enabled calendars."""
    try:
        return await get_orchestrator().sync.trigger_manual_sync()
    except PersistenceFailure as exc:
        logger.error("manual_sync_failed", error=str(exc))
        raise HTTPException(status_code=503, detail=str(exc))


@router.get("/sync/status")
async def sync_status() -> dict[str, Any]:
    return get_orchestrator().sync.status()
