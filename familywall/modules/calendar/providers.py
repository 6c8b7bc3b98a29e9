"""Calendar provider clients (Microsoft Graph, ICS feeds).

Each client answers three questions for the sync engine: is it authenticated,
which calendars does it offer, and which events fall into a date window. The
clients map their native payloads to ``ProviderEvent`` / ``ProviderCalendar``.
"""

from __future__ import annotations

import datetime as dt
import re
from typing import Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import quote, urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from icalendar import Calendar
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from familywall import __version__
from familywall.logging_config import get_logger
from familywall.modules.calendar.errors import AuthenticationRequired, FetchFailed
from familywall.modules.calendar.models import (
    CalendarSource,
    EventResponseStatus,
    EventStatus,
    ProviderCalendar,
    ProviderEvent,
    to_naive_utc,
)

logger = get_logger(__name__)

TokenProvider = Callable[[], Awaitable[Optional[str]]]

USER_AGENT = f"FamilyWall/{__version__}"


def _is_transient(exc: BaseException) -> bool:
    """Network failures and 5xx responses are worth another attempt."""
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


_transient_retry = retry(
    retry=retry_if_exception(_is_transient),
    stop=stop_after_attempt(3),
    wait=wait_exponential(min=1, max=10),
    reraise=True,
)


class StaticTokenProvider:
    """Token provider returning a fixed bearer token (empty means signed out)."""

    def __init__(self, token: str = "") -> None:
        self._token = token

    async def __call__(self) -> Optional[str]:
        return self._token or None


# ── Microsoft Graph ──────────────────────────────────────────────────

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")

_GRAPH_FREQ = {
    "daily": "DAILY",
    "weekly": "WEEKLY",
    "absoluteMonthly": "MONTHLY",
    "relativeMonthly": "MONTHLY",
    "absoluteYearly": "YEARLY",
    "relativeYearly": "YEARLY",
}

_GRAPH_WEEK_INDEX = {"first": 1, "second": 2, "third": 3, "fourth": 4, "last": -1}

_GRAPH_RESPONSES = {
    "accepted": EventResponseStatus.ACCEPTED,
    "declined": EventResponseStatus.DECLINED,
    "tentativelyAccepted": EventResponseStatus.TENTATIVE,
}


def _graph_datetime(block: Optional[dict[str, Any]]) -> Optional[dt.datetime]:
    """Parse a Graph ``dateTimeTimeZone`` block into naive UTC."""
    if not block or not block.get("dateTime"):
        return None
    value = dt.datetime.fromisoformat(_FRACTION_RE.sub(r"\1", block["dateTime"]))
    if value.tzinfo is None:
        tz_name = block.get("timeZone") or "UTC"
        if tz_name != "UTC":
            try:
                value = value.replace(tzinfo=ZoneInfo(tz_name))
            except (ZoneInfoNotFoundError, ValueError):
                logger.debug("graph_unknown_timezone", timezone=tz_name)
    return to_naive_utc(value)


def _graph_recurrence_rule(recurrence: Optional[dict[str, Any]]) -> Optional[str]:
    """Translate a Graph ``patternedRecurrence`` into an RRULE string."""
    if not recurrence:
        return None
    pattern = recurrence.get("pattern") or {}
    pattern_type = pattern.get("type", "")
    freq = _GRAPH_FREQ.get(pattern_type)
    if freq is None:
        return None

    parts = [f"FREQ={freq}"]
    interval = pattern.get("interval") or 1
    if interval > 1:
        parts.append(f"INTERVAL={interval}")

    days = [d[:2].upper() for d in pattern.get("daysOfWeek") or []]
    if days:
        if pattern_type.startswith("relative"):
            index = _GRAPH_WEEK_INDEX.get(pattern.get("index", "first"), 1)
            days = [f"{index}{d}" for d in days]
        parts.append("BYDAY=" + ",".join(days))
    if pattern_type in ("absoluteMonthly", "absoluteYearly") and pattern.get("dayOfMonth"):
        parts.append(f"BYMONTHDAY={pattern['dayOfMonth']}")
    if pattern_type.endswith("Yearly") and pattern.get("month"):
        parts.append(f"BYMONTH={pattern['month']}")

    rng = recurrence.get("range") or {}
    if rng.get("type") == "endDate" and rng.get("endDate"):
        parts.append("UNTIL=" + rng["endDate"].replace("-", ""))
    elif rng.get("type") == "numbered" and rng.get("numberOfOccurrences"):
        parts.append(f"COUNT={rng['numberOfOccurrences']}")
    return ";".join(parts)


def _graph_person(block: Optional[dict[str, Any]]) -> Optional[str]:
    address = (block or {}).get("emailAddress") or {}
    return address.get("name") or address.get("address") or None


class GraphCalendarClient:
    """Microsoft Graph calendar client over httpx."""

    source = CalendarSource.GRAPH
    PAGE_SIZE = 100
    DEFAULT_CALENDAR = "calendar"

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str = "https://graph.microsoft.com/v1.0",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._token_provider = token_provider
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def is_authenticated(self) -> bool:
        return bool(await self._token_provider())

    async def _token(self) -> str:
        token = await self._token_provider()
        if not token:
            raise AuthenticationRequired("Microsoft Graph authentication required", source=self.source)
        return token

    @_transient_retry
    async def _get(self, url: str, params: Optional[dict[str, str]] = None) -> dict[str, Any]:
        token = await self._token()
        async with httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=self._transport,
        ) as client:
            resp = await client.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Prefer": 'outlook.timezone="UTC"',
                    "User-Agent": USER_AGENT,
                },
            )
        if resp.status_code == 401:
            raise AuthenticationRequired("Microsoft Graph rejected the access token", source=self.source)
        resp.raise_for_status()
        return resp.json()

    async def list_calendars(self) -> list[ProviderCalendar]:
        data = await self._get(
            "/me/calendars",
            params={"$top": "50", "$select": "id,name,owner,canEdit,isDefaultCalendar"},
        )
        calendars = [
            ProviderCalendar(
                id=item["id"],
                name=item.get("name") or "(Unnamed calendar)",
                owner=(item.get("owner") or {}).get("name") or (item.get("owner") or {}).get("address"),
                can_edit=bool(item.get("canEdit", False)),
                is_default=bool(item.get("isDefaultCalendar", False)),
            )
            for item in data.get("value", [])
        ]
        logger.info("graph_calendars_listed", count=len(calendars))
        return calendars

    async def fetch_events(
        self, calendar_id: str, start: dt.datetime, end: dt.datetime,
    ) -> list[ProviderEvent]:
        if calendar_id == self.DEFAULT_CALENDAR:
            path = "/me/calendar/calendarView"
        else:
            path = f"/me/calendars/{quote(calendar_id, safe='')}/calendarView"
        params = {
            "startDateTime": to_naive_utc(start).isoformat() + "Z",
            "endDateTime": to_naive_utc(end).isoformat() + "Z",
            "$orderby": "start/dateTime",
            "$top": str(self.PAGE_SIZE),
        }

        items: list[dict[str, Any]] = []
        data = await self._get(path, params=params)
        items.extend(data.get("value", []))
        while data.get("@odata.nextLink"):
            data = await self._get(data["@odata.nextLink"])
            items.extend(data.get("value", []))

        events = [self._to_provider_event(item) for item in await self._fold_series(items)]
        events.sort(key=lambda e: e.start)
        logger.info("graph_events_fetched", calendar_id=calendar_id, count=len(events), items=len(items))
        return events

    async def _fold_series(self, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Replace expanded occurrences by their series master.

        calendarView returns each occurrence of a series but not the master, so
        the master (with its ``recurrence`` pattern) is fetched once per series.
        Modified instances (``exception``) stay separate records.
        """
        singles: list[dict[str, Any]] = []
        masters: dict[str, Optional[dict[str, Any]]] = {}
        for item in items:
            kind = item.get("type", "singleInstance")
            if kind == "seriesMaster":
                masters[item["id"]] = item
            elif kind == "occurrence" and item.get("seriesMasterId"):
                masters.setdefault(item["seriesMasterId"], None)
            else:
                singles.append(item)

        for master_id, master in masters.items():
            if master is None:
                masters[master_id] = await self._get(f"/me/events/{quote(master_id, safe='')}")
        return singles + list(masters.values())

    @staticmethod
    def _to_provider_event(item: dict[str, Any]) -> ProviderEvent:
        subject = item.get("subject") or "(No subject)"
        categories = item.get("categories") or []
        start = _graph_datetime(item.get("start"))
        end = _graph_datetime(item.get("end")) or start
        if start is None:
            raise FetchFailed(f"Graph event {item.get('id')} has no start", source=CalendarSource.GRAPH)

        if item.get("isCancelled"):
            status = EventStatus.CANCELLED
        elif item.get("showAs") == "tentative":
            status = EventStatus.TENTATIVE
        else:
            status = EventStatus.CONFIRMED

        response = (item.get("responseStatus") or {}).get("response")
        recurrence = item.get("recurrence")
        online = item.get("onlineMeeting") or {}

        return ProviderEvent(
            id=item["id"],
            title=subject,
            start=start,
            end=max(end, start),
            is_all_day=bool(item.get("isAllDay", False)),
            is_birthday="Birthday" in categories or "birthday" in subject.lower(),
            is_recurring=item.get("type", "singleInstance") != "singleInstance" or bool(recurrence),
            recurrence_rule=_graph_recurrence_rule(recurrence),
            location=(item.get("location") or {}).get("displayName") or None,
            description=item.get("bodyPreview") or None,
            organizer=_graph_person(item.get("organizer")),
            attendees=tuple(p for p in (_graph_person(a) for a in item.get("attendees") or []) if p),
            status=status,
            response_status=_GRAPH_RESPONSES.get(response),
            online_meeting_url=online.get("joinUrl") or item.get("onlineMeetingUrl") or None,
        )


# ── ICS feeds ────────────────────────────────────────────────────────


def _ics_to_utc(value: dt.date | dt.datetime) -> dt.datetime:
    """Convert an iCalendar DATE / DATE-TIME into naive UTC (floating times are taken as UTC)."""
    if isinstance(value, dt.datetime):
        return to_naive_utc(value)
    return dt.datetime.combine(value, dt.time.min)


def _ics_categories(component) -> list[str]:
    raw = component.get("CATEGORIES")
    if raw is None:
        return []
    values = raw if isinstance(raw, list) else [raw]
    result: list[str] = []
    for value in values:
        result.extend(str(cat) for cat in getattr(value, "cats", [value]))
    return result


def _ics_person(address) -> str:
    name = address.params.get("CN") if hasattr(address, "params") else None
    if name:
        return str(name)
    text = str(address)
    return text[7:] if text.lower().startswith("mailto:") else text


def _ics_text(component, name: str) -> Optional[str]:
    value = component.get(name)
    return str(value) if value else None


def _ics_series_ended(rrule, duration: dt.timedelta, window_start: dt.datetime) -> bool:
    """Whether an RRULE's UNTIL puts its last occurrence before the window."""
    until = rrule.get("UNTIL")
    if not until:
        return False
    last = until[0] if isinstance(until, list) else until
    return _ics_to_utc(last) + duration < window_start


def parse_ics_events(
    calendar: Calendar, window_start: dt.datetime, window_end: dt.datetime,
) -> list[ProviderEvent]:
    """Map the VEVENTs of a parsed feed that touch the window to ``ProviderEvent``s.

    Recurring masters are returned once with their RRULE when they start before
    the window ends and their UNTIL (if any) has not passed before it starts;
    overridden instances are keyed ``uid@recurrence-id``.
    """
    window_start = to_naive_utc(window_start)
    window_end = to_naive_utc(window_end)
    events: dict[str, ProviderEvent] = {}

    for component in calendar.walk("VEVENT"):
        uid = str(component.get("UID") or "")
        dtstart = component.get("DTSTART")
        if not uid or dtstart is None:
            continue

        is_all_day = not isinstance(dtstart.dt, dt.datetime)
        start = _ics_to_utc(dtstart.dt)
        if component.get("DTEND") is not None:
            end = _ics_to_utc(component.get("DTEND").dt)
        elif component.get("DURATION") is not None:
            end = start + component.get("DURATION").dt
        else:
            end = start + dt.timedelta(days=1) if is_all_day else start
        end = max(end, start)

        rrule = component.get("RRULE")
        recurrence_id = component.get("RECURRENCE-ID")
        if rrule is not None:
            if start >= window_end or _ics_series_ended(rrule, end - start, window_start):
                continue
        elif start >= window_end or end < window_start:
            continue

        key = uid if recurrence_id is None else f"{uid}@{_ics_to_utc(recurrence_id.dt).isoformat()}"
        summary = str(component.get("SUMMARY") or "(No title)")
        categories = _ics_categories(component)
        raw_status = str(component.get("STATUS") or "").upper()
        attendees = component.get("ATTENDEE") or []
        if not isinstance(attendees, list):
            attendees = [attendees]
        organizer = component.get("ORGANIZER")

        events[key] = ProviderEvent(
            id=key,
            title=summary,
            start=start,
            end=end,
            is_all_day=is_all_day,
            is_birthday=any(c.lower() == "birthday" for c in categories) or "birthday" in summary.lower(),
            is_recurring=rrule is not None or recurrence_id is not None,
            recurrence_rule=rrule.to_ical().decode() if rrule is not None else None,
            location=_ics_text(component, "LOCATION"),
            description=_ics_text(component, "DESCRIPTION"),
            organizer=_ics_person(organizer) if organizer else None,
            attendees=tuple(_ics_person(a) for a in attendees),
            status={
                "TENTATIVE": EventStatus.TENTATIVE,
                "CANCELLED": EventStatus.CANCELLED,
            }.get(raw_status, EventStatus.CONFIRMED),
            online_meeting_url=_ics_text(component, "URL"),
        )

    return sorted(events.values(), key=lambda e: e.start)


class IcsFeedClient:
    """Read-only iCalendar feed client; the feed URL is the calendar id."""

    source = CalendarSource.ICS

    def __init__(
        self,
        feed_urls: Iterable[str] = (),
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._feed_urls = list(feed_urls)
        self._timeout = timeout
        self._transport = transport

    async def is_authenticated(self) -> bool:
        return True

    @staticmethod
    def _http_url(url: str) -> str:
        if url.startswith("webcal://"):
            return "https://" + url[len("webcal://"):]
        return url

    @_transient_retry
    async def _download(self, url: str) -> str:
        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport, follow_redirects=True,
        ) as client:
            resp = await client.get(
                self._http_url(url),
                headers={"Accept": "text/calendar", "User-Agent": USER_AGENT},
            )
        resp.raise_for_status()
        resp.encoding = resp.encoding or "utf-8"
        return resp.text

    async def _load(self, url: str) -> Calendar:
        text = await self._download(url)
        try:
            return Calendar.from_ical(text)
        except ValueError as exc:
            raise FetchFailed(f"Invalid iCalendar data from {url}: {exc}", source=self.source, calendar_id=url) from exc

    async def list_calendars(self) -> list[ProviderCalendar]:
        calendars = []
        for url in self._feed_urls:
            name = urlparse(self._http_url(url)).netloc or url
            try:
                feed = await self._load(url)
                name = str(feed.get("X-WR-CALNAME") or name)
            except (httpx.HTTPError, FetchFailed) as exc:
                logger.warning("ics_feed_name_unavailable", url=url, error=str(exc))
            calendars.append(ProviderCalendar(id=url, name=name))
        return calendars

    async def fetch_events(
        self, calendar_id: str, start: dt.datetime, end: dt.datetime,
    ) -> list[ProviderEvent]:
        feed = await self._load(calendar_id)
        events = parse_ics_events(feed, start, end)
        logger.info("ics_events_fetched", url=calendar_id, count=len(events))
        return events
