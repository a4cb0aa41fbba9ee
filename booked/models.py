from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any


AVAILABILITY_VALUES = {"busy", "free", "tentative", "unavailable"}
STATUS_VALUES = {"confirmed", "tentative", "cancelled"}
DEFAULT_MIRROR_TITLE = "Busy"
DEFAULT_MIRROR_CALENDAR_NAME = "Booked"


class BookedError(Exception):
    """Base exception for mirror sync errors."""


class CalendarPermissionError(BookedError):
    """Reading or writing a calendar was denied by the server."""


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def normalize_availability(value: Any) -> str:
    text = str(value or "").strip().lower()
    return text if text in AVAILABILITY_VALUES else "busy"


def normalize_status(value: Any) -> str:
    text = str(value or "").strip().lower()
    if text == "canceled":
        text = "cancelled"
    return text if text in STATUS_VALUES else "confirmed"


def source_tag(source_key: str) -> str:
    return hashlib.sha1(source_key.encode("utf-8")).hexdigest()  # nosec B324


def _clean_ids(values: Any) -> list[str]:
    if not isinstance(values, (list, tuple, set)):
        return []
    seen: list[str] = []
    for value in values:
        text = str(value).strip()
        if text and text not in seen:
            seen.append(text)
    return seen


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
        )


@dataclass
class MirrorConfig:
    calendar_id: str = ""
    calendar_name: str = DEFAULT_MIRROR_CALENDAR_NAME
    title: str = DEFAULT_MIRROR_TITLE

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MirrorConfig":
        data = data or {}
        return cls(
            calendar_id=str(data.get("calendar_id", "")).strip(),
            calendar_name=str(data.get("calendar_name", DEFAULT_MIRROR_CALENDAR_NAME)).strip()
            or DEFAULT_MIRROR_CALENDAR_NAME,
            title=str(data.get("title", DEFAULT_MIRROR_TITLE)).strip() or DEFAULT_MIRROR_TITLE,
        )


@dataclass
class SyncConfig:
    selected_calendar_ids: list[str] = field(default_factory=list)
    debounce_seconds: float = 3.0
    month_threshold_days: int = 21
    max_workers: int = 4
    verify_mirror: bool = True
    interval_seconds: int = 900
    timezone: str = "UTC"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        interval_seconds = int(data.get("interval_seconds", 900))
        if interval_seconds > 0:
            interval_seconds = max(30, interval_seconds)
        else:
            interval_seconds = 0
        return cls(
            selected_calendar_ids=_clean_ids(data.get("selected_calendar_ids", [])),
            debounce_seconds=max(0.0, float(data.get("debounce_seconds", 3.0))),
            month_threshold_days=max(0, int(data.get("month_threshold_days", 21))),
            max_workers=max(1, int(data.get("max_workers", 4))),
            verify_mirror=bool(data.get("verify_mirror", True)),
            interval_seconds=interval_seconds,
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    mirror: MirrorConfig = field(default_factory=MirrorConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            mirror=MirrorConfig.from_dict(data.get("mirror")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SourceEvent:
    calendar_id: str
    uid: str
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    availability: str = "busy"
    status: str = "confirmed"
    recurrence_id: str = ""
    summary: str = ""

    @property
    def key(self) -> str:
        if self.recurrence_id:
            return f"{self.calendar_id}:{self.uid}:{self.recurrence_id}"
        return f"{self.calendar_id}:{self.uid}"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["key"] = self.key
        return payload


@dataclass
class MirrorFields:
    """Everything that is written to the mirror calendar for one source event.

    Only the time range and the scheduling flags are carried over. The title is
    the configured marker and ``source_tag`` is a one-way hash of the source key,
    so nothing identifying about the source event reaches the mirror.
    """

    start: datetime | None
    end: datetime | None
    all_day: bool
    availability: str
    status: str
    title: str
    source_tag: str

    @classmethod
    def from_source(cls, event: SourceEvent, title: str = DEFAULT_MIRROR_TITLE) -> "MirrorFields":
        return cls(
            start=event.start,
            end=event.end,
            all_day=event.all_day,
            availability=normalize_availability(event.availability),
            status=normalize_status(event.status),
            title=title,
            source_tag=source_tag(event.key),
        )


@dataclass
class MirroredEvent:
    calendar_id: str
    uid: str
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    availability: str = "busy"
    status: str = "confirmed"
    title: str = DEFAULT_MIRROR_TITLE
    source_tag: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass
class SyncMapping:
    source_key: str
    mirrored_uid: str


@dataclass
class OperationFailure:
    action: str
    source_key: str
    mirrored_uid: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    created: int = 0
    deleted: int = 0
    kept: int = 0
    failed: int = 0
    failures: list[OperationFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def changes_applied(self) -> int:
        return self.created + self.deleted

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "created": self.created,
            "deleted": self.deleted,
            "kept": self.kept,
            "failed": self.failed,
            "failures": [item.to_dict() for item in self.failures],
            "warnings": list(self.warnings),
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
