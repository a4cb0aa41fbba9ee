from __future__ import annotations

import logging
import re
import threading
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

import caldav
from caldav.lib import error as caldav_error
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from booked.models import (
    CalDAVConfig,
    CalendarInfo,
    CalendarPermissionError,
    MirroredEvent,
    MirrorFields,
    SourceEvent,
    date_to_datetime,
    normalize_availability,
    normalize_status,
    serialize_datetime,
)


logger = logging.getLogger(__name__)

SOURCE_TAG_PROPERTY = "X-BOOKED-SOURCE"
AVAILABILITY_PROPERTY = "X-BOOKED-AVAILABILITY"
_BUSYSTATUS_AVAILABILITY = {
    "FREE": "free",
    "TENTATIVE": "tentative",
    "BUSY": "busy",
    "OOF": "unavailable",
}


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _normalize_calendar_name(value: str) -> str:
    collapsed = re.sub(r"\s+", " ", str(value or "").strip())
    return collapsed.casefold()


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _decoded(vevent: ICEvent, name: str) -> Any:
    return vevent.decoded(name) if vevent.get(name) is not None else None


def _time_range(vevent: ICEvent) -> tuple[datetime | None, datetime | None, bool]:
    dtstart_raw = _decoded(vevent, "DTSTART")
    dtend_raw = _decoded(vevent, "DTEND")
    all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
    start = date_to_datetime(dtstart_raw)
    end = date_to_datetime(dtend_raw)
    if start is not None and end is None:
        duration = _decoded(vevent, "DURATION")
        if isinstance(duration, timedelta):
            end = start + duration
        else:
            end = start + (timedelta(days=1) if all_day else timedelta(hours=1))
    return start, end, all_day


def _availability(vevent: ICEvent) -> str:
    explicit = str(vevent.get(AVAILABILITY_PROPERTY, "")).strip()
    if explicit:
        return normalize_availability(explicit)
    busy_status = str(vevent.get("X-MICROSOFT-CDO-BUSYSTATUS", "")).strip().upper()
    if busy_status in _BUSYSTATUS_AVAILABILITY:
        return _BUSYSTATUS_AVAILABILITY[busy_status]
    if str(vevent.get("TRANSP", "")).strip().upper() == "TRANSPARENT":
        return "free"
    return "busy"


def _recurrence_id(vevent: ICEvent) -> str:
    value = _decoded(vevent, "RECURRENCE-ID")
    if isinstance(value, datetime):
        return serialize_datetime(value) or ""
    if isinstance(value, date):
        return value.isoformat()
    return ""


def parse_source_event(calendar_id: str, raw_data: Any) -> SourceEvent | None:
    calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    vevent = _first_vevent(calendar_obj)
    if vevent is None:
        return None
    uid = str(vevent.get("UID", "")).strip()
    if not uid:
        return None
    start, end, all_day = _time_range(vevent)
    return SourceEvent(
        calendar_id=calendar_id,
        uid=uid,
        start=start,
        end=end,
        all_day=all_day,
        availability=_availability(vevent),
        status=normalize_status(vevent.get("STATUS", "")),
        recurrence_id=_recurrence_id(vevent),
        summary=str(vevent.get("SUMMARY", "")).strip(),
    )


def parse_mirrored_event(calendar_id: str, raw_data: Any) -> MirroredEvent | None:
    calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    vevent = _first_vevent(calendar_obj)
    if vevent is None:
        return None
    uid = str(vevent.get("UID", "")).strip()
    if not uid:
        return None
    start, end, all_day = _time_range(vevent)
    return MirroredEvent(
        calendar_id=calendar_id,
        uid=uid,
        start=start,
        end=end,
        all_day=all_day,
        availability=_availability(vevent),
        status=normalize_status(vevent.get("STATUS", "")),
        title=str(vevent.get("SUMMARY", "")).strip(),
        source_tag=str(vevent.get(SOURCE_TAG_PROPERTY, "")).strip(),
    )


def build_mirror_ical(uid: str, fields: MirrorFields) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", "-//Booked//Busy Mirror//EN")
    calendar_obj.add("VERSION", "2.0")
    vevent = ICEvent()
    vevent.add("UID", uid)
    vevent.add("DTSTAMP", datetime.now(timezone.utc))
    vevent.add("SUMMARY", fields.title)
    vevent.add("CLASS", "PRIVATE")
    if fields.start is not None:
        vevent.add("DTSTART", fields.start.date() if fields.all_day else fields.start)
    if fields.end is not None:
        vevent.add("DTEND", fields.end.date() if fields.all_day else fields.end)
    vevent.add("TRANSP", "TRANSPARENT" if fields.availability == "free" else "OPAQUE")
    vevent.add("STATUS", fields.status.upper())
    vevent.add(AVAILABILITY_PROPERTY, fields.availability)
    vevent.add(SOURCE_TAG_PROPERTY, fields.source_tag)
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


class CalDAVService:
    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}
        # Worker threads of one sync run share the connection and the cache.
        self._lock = threading.RLock()

    def _connect(self) -> None:
        with self._lock:
            if self._principal is not None:
                return
            if not self.config.base_url or not self.config.username:
                raise RuntimeError("CalDAV config is incomplete.")
            self._client = caldav.DAVClient(
                url=self.config.base_url,
                username=self.config.username,
                password=self.config.password,
            )
            try:
                self._principal = self._client.principal()
            except caldav_error.AuthorizationError as exc:
                raise CalendarPermissionError(f"CalDAV login refused for {self.config.username}") from exc

    def list_calendars(self) -> list[CalendarInfo]:
        self._connect()
        calendars: list[CalendarInfo] = []
        with self._lock:
            self._calendar_cache = {}
            for calendar in self._principal.calendars():
                calendar_id = str(calendar.url)
                name = getattr(calendar, "name", "") or calendar_id
                self._calendar_cache[calendar_id] = calendar
                calendars.append(CalendarInfo(calendar_id=calendar_id, name=name, url=calendar_id))
        return calendars

    def _get_calendar(self, calendar_id: str) -> Any:
        with self._lock:
            if calendar_id in self._calendar_cache:
                return self._calendar_cache[calendar_id]
            for calendar in self._principal.calendars():
                cid = str(calendar.url)
                self._calendar_cache[cid] = calendar
            if calendar_id not in self._calendar_cache:
                raise RuntimeError(f"Calendar not found: {calendar_id}")
            return self._calendar_cache[calendar_id]

    def ensure_mirror_calendar(self, calendar_id: str, calendar_name: str) -> CalendarInfo:
        """Find the mirror calendar by id, then by name, creating it if missing."""
        calendars = self.list_calendars()
        calendar_id_norm = _normalize_calendar_id(calendar_id)
        if calendar_id_norm:
            for info in calendars:
                if _normalize_calendar_id(info.calendar_id) == calendar_id_norm:
                    return info
        name_norm = _normalize_calendar_name(calendar_name)
        if name_norm:
            same_name = [info for info in calendars if _normalize_calendar_name(info.name) == name_norm]
            if same_name:
                same_name.sort(key=lambda item: item.calendar_id)
                return same_name[0]

        try:
            calendar = self._principal.make_calendar(name=calendar_name)
        except caldav_error.AuthorizationError as exc:
            raise CalendarPermissionError(f"Not allowed to create calendar {calendar_name!r}") from exc
        created_id = str(calendar.url)
        with self._lock:
            self._calendar_cache[created_id] = calendar
        logger.info("Created mirror calendar %r at %s", calendar_name, created_id)
        return CalendarInfo(
            calendar_id=created_id,
            name=getattr(calendar, "name", calendar_name) or calendar_name,
            url=created_id,
        )

    def fetch_events(self, calendar_id: str, start: datetime, end: datetime) -> list[SourceEvent]:
        self._connect()
        calendar = self._get_calendar(calendar_id)
        try:
            resources = calendar.search(start=start, end=end, event=True, expand=True)
        except caldav_error.AuthorizationError as exc:
            raise CalendarPermissionError(f"Reading calendar {calendar_id} was denied") from exc
        events: list[SourceEvent] = []
        for item in resources:
            event = parse_source_event(calendar_id, item.data)
            if event is not None:
                events.append(event)
        return events

    def create_mirrored_event(self, calendar_id: str, fields: MirrorFields) -> str:
        self._connect()
        calendar = self._get_calendar(calendar_id)
        uid = f"booked-{uuid.uuid4().hex}"
        try:
            calendar.save_event(build_mirror_ical(uid, fields))
        except caldav_error.AuthorizationError as exc:
            raise CalendarPermissionError(f"Writing to calendar {calendar_id} was denied") from exc
        return uid

    def delete_mirrored_event(self, calendar_id: str, uid: str) -> bool:
        """Delete one mirror. ``False`` means it was already gone."""
        self._connect()
        calendar = self._get_calendar(calendar_id)
        try:
            resource = calendar.event_by_uid(uid)
        except caldav_error.NotFoundError:
            return False
        try:
            resource.delete()
        except caldav_error.NotFoundError:
            return False
        except caldav_error.AuthorizationError as exc:
            raise CalendarPermissionError(f"Deleting from calendar {calendar_id} was denied") from exc
        return True

    def list_mirrored_events(self, calendar_id: str, start: datetime, end: datetime) -> list[MirroredEvent]:
        self._connect()
        calendar = self._get_calendar(calendar_id)
        try:
            resources = calendar.search(start=start, end=end, event=True)
        except caldav_error.AuthorizationError as exc:
            raise CalendarPermissionError(f"Reading calendar {calendar_id} was denied") from exc
        events: list[MirroredEvent] = []
        for item in resources:
            event = parse_mirrored_event(calendar_id, item.data)
            if event is not None:
                events.append(event)
        return events
