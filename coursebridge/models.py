from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, ClassVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


WEEK_PARITY_ALL = "all"
WEEK_PARITY_ODD = "odd"
WEEK_PARITY_EVEN = "even"
WEEK_PARITIES = (WEEK_PARITY_ALL, WEEK_PARITY_ODD, WEEK_PARITY_EVEN)

KIND_PLAIN = "plain"
KIND_TEMPORARY = "temporary"
KIND_COURSE = "course"

DEFAULT_EVENT_COLOR = "#6A8CAF"
DEFAULT_CALENDAR_NAME = "coursebridge schedule"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        # Hand-written dates such as 2025-9-1 lack leading zeros.
        parts = text.split("-")
        if len(parts) != 3:
            raise
        return date(int(parts[0]), int(parts[1]), int(parts[2]))


def epoch_ms(value: datetime) -> int:
    return int(_ensure_tz(value).timestamp() * 1000)


def resolve_timezone(name: str) -> tzinfo:
    text = str(name or "").strip()
    if not text or text.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _normalize_parity(value: Any) -> str:
    text = str(value if value is not None else WEEK_PARITY_ALL).strip().lower()
    # Numeric codes come from older exports: 0=all, 1=odd, 2=even.
    legacy = {"0": WEEK_PARITY_ALL, "1": WEEK_PARITY_ODD, "2": WEEK_PARITY_EVEN}
    text = legacy.get(text, text)
    if text not in WEEK_PARITIES:
        return WEEK_PARITY_ALL
    return text


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

    def is_complete(self) -> bool:
        return bool(self.base_url and self.username)


@dataclass
class SyncConfig:
    interval_seconds: int = 300
    timezone: str = "UTC"
    calendar_name: str = DEFAULT_CALENDAR_NAME
    course_weeks_ahead: int = 16
    reverse_past_days: int = 30
    reverse_future_days: int = 180
    auto_archive: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            calendar_name=str(data.get("calendar_name", DEFAULT_CALENDAR_NAME)).strip()
            or DEFAULT_CALENDAR_NAME,
            course_weeks_ahead=max(1, int(data.get("course_weeks_ahead", 16))),
            reverse_past_days=max(0, int(data.get("reverse_past_days", 30))),
            reverse_future_days=max(1, int(data.get("reverse_future_days", 180))),
            auto_archive=_as_bool(data.get("auto_archive", False)),
        )


@dataclass
class PeriodSlot:
    index: int
    start_time: str
    end_time: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PeriodSlot":
        return cls(
            index=int(data.get("index", 0)),
            start_time=str(data.get("start_time", "")).strip(),
            end_time=str(data.get("end_time", "")).strip(),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SemesterConfig:
    start_date: str = ""
    total_weeks: int = 20
    periods: list[PeriodSlot] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SemesterConfig":
        data = data or {}
        raw_periods = data.get("periods", [])
        periods: list[PeriodSlot] = []
        if isinstance(raw_periods, list):
            for item in raw_periods:
                if not isinstance(item, dict):
                    continue
                slot = PeriodSlot.from_dict(item)
                if slot.index > 0 and slot.start_time and slot.end_time:
                    periods.append(slot)
        return cls(
            start_date=str(data.get("start_date", "") or "").strip(),
            total_weeks=max(1, int(data.get("total_weeks", 20))),
            periods=periods,
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    semester: SemesterConfig = field(default_factory=SemesterConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            sync=SyncConfig.from_dict(data.get("sync")),
            semester=SemesterConfig.from_dict(data.get("semester")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    account: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Event:
    id: str
    title: str
    start_date: date
    end_date: date
    start_time: str = "09:00"
    end_time: str = "10:00"
    location: str = ""
    description: str = ""
    color: str = DEFAULT_EVENT_COLOR

    kind: ClassVar[str] = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind
        payload["start_date"] = self.start_date.isoformat()
        payload["end_date"] = self.end_date.isoformat()
        return payload

    def with_updates(self, **kwargs: Any) -> "Event":
        return replace(self, **kwargs)


@dataclass
class PlainEvent(Event):
    is_important: bool = False
    reminders: list[int] = field(default_factory=list)
    archived_at: int | None = None

    kind: ClassVar[str] = KIND_PLAIN

    @property
    def archived(self) -> bool:
        return self.archived_at is not None


@dataclass
class TemporaryEvent(Event):
    reminders: list[int] = field(default_factory=list)

    kind: ClassVar[str] = KIND_TEMPORARY


@dataclass
class CourseOccurrenceEvent(Event):
    course_id: str = ""

    kind: ClassVar[str] = KIND_COURSE


EVENT_TYPES: dict[str, type[Event]] = {
    KIND_PLAIN: PlainEvent,
    KIND_TEMPORARY: TemporaryEvent,
    KIND_COURSE: CourseOccurrenceEvent,
}


def event_from_dict(data: dict[str, Any]) -> Event:
    kind = str(data.get("kind", KIND_PLAIN)).strip().lower() or KIND_PLAIN
    # Older payloads tag kinds as "event"/"temp".
    kind = {"event": KIND_PLAIN, "temp": KIND_TEMPORARY}.get(kind, kind)
    event_type = EVENT_TYPES.get(kind)
    if event_type is None:
        raise ValueError(f"Unknown event kind: {kind}")
    start_date = parse_iso_date(data.get("start_date"))
    end_date = parse_iso_date(data.get("end_date")) or start_date
    if start_date is None or end_date is None:
        raise ValueError("Event is missing start_date.")
    common: dict[str, Any] = {
        "id": str(data.get("id", "")).strip(),
        "title": str(data.get("title", "") or ""),
        "start_date": start_date,
        "end_date": end_date,
        "start_time": str(data.get("start_time", "09:00") or "09:00").strip(),
        "end_time": str(data.get("end_time", "10:00") or "10:00").strip(),
        "location": str(data.get("location", "") or ""),
        "description": str(data.get("description", "") or ""),
        "color": str(data.get("color", DEFAULT_EVENT_COLOR) or DEFAULT_EVENT_COLOR),
    }
    if event_type is PlainEvent:
        archived_at = data.get("archived_at")
        return PlainEvent(
            **common,
            is_important=bool(data.get("is_important", False)),
            reminders=[int(x) for x in data.get("reminders", []) or []],
            archived_at=int(archived_at) if archived_at is not None else None,
        )
    if event_type is TemporaryEvent:
        return TemporaryEvent(**common, reminders=[int(x) for x in data.get("reminders", []) or []])
    return CourseOccurrenceEvent(**common, course_id=str(data.get("course_id", "") or ""))


@dataclass
class Course:
    id: str
    name: str
    day_of_week: int
    start_period: int
    end_period: int
    start_week: int
    end_week: int
    location: str = ""
    teacher: str = ""
    color: str = DEFAULT_EVENT_COLOR
    week_parity: str = WEEK_PARITY_ALL
    excluded_dates: list[str] = field(default_factory=list)
    is_shadow: bool = False
    parent_course_id: str | None = None

    def __post_init__(self) -> None:
        self.week_parity = _normalize_parity(self.week_parity)
        if self.is_shadow and self.end_week != self.start_week:
            self.end_week = self.start_week

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Course":
        parent = data.get("parent_course_id")
        return cls(
            id=str(data.get("id", "")).strip(),
            name=str(data.get("name", "") or ""),
            day_of_week=min(7, max(1, int(data.get("day_of_week", 1)))),
            start_period=int(data.get("start_period", 1)),
            end_period=int(data.get("end_period", data.get("start_period", 1))),
            start_week=int(data.get("start_week", 1)),
            end_week=int(data.get("end_week", data.get("start_week", 1))),
            location=str(data.get("location", "") or ""),
            teacher=str(data.get("teacher", "") or ""),
            color=str(data.get("color", DEFAULT_EVENT_COLOR) or DEFAULT_EVENT_COLOR),
            week_parity=_normalize_parity(data.get("week_parity")),
            excluded_dates=[str(x).strip() for x in data.get("excluded_dates", []) or [] if str(x).strip()],
            is_shadow=bool(data.get("is_shadow", False)),
            parent_course_id=str(parent).strip() if parent else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def with_updates(self, **kwargs: Any) -> "Course":
        return replace(self, **kwargs)


@dataclass(frozen=True)
class CourseOccurrence:
    course: Course
    date: date

    @property
    def virtual_id(self) -> str:
        return f"course_{self.course.id}_{self.date.isoformat()}"


@dataclass(frozen=True)
class EventFingerprint:
    title: str
    location: str
    start_date: date
    end_date: date
    start_time: str
    end_time: str


@dataclass
class ExternalEvent:
    id: str
    title: str = ""
    location: str = ""
    description: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass
class EventFields:
    title: str
    start: datetime
    end: datetime
    location: str = ""
    description: str = ""
    all_day: bool = False
    color: str = ""


@dataclass
class SyncState:
    sync_enabled: bool = False
    target_calendar_id: str = ""
    mapping: dict[str, str] = field(default_factory=dict)
    last_sync_time: int = 0
    last_semester_hash: str = ""
    last_course_digest: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncState":
        data = data or {}
        raw_mapping = data.get("mapping", {})
        if not isinstance(raw_mapping, dict):
            raise ValueError("mapping must be an object")
        return cls(
            sync_enabled=bool(data.get("sync_enabled", False)),
            target_calendar_id=str(data.get("target_calendar_id", "") or "").strip(),
            mapping={str(k): str(v) for k, v in raw_mapping.items() if str(k) and str(v)},
            last_sync_time=int(data.get("last_sync_time", 0) or 0),
            last_semester_hash=str(data.get("last_semester_hash", "") or ""),
            last_course_digest=str(data.get("last_course_digest", "") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def calendar_resolved(self) -> bool:
        return bool(self.target_calendar_id)


@dataclass
class SyncStatus:
    enabled: bool
    has_permission: bool
    target_calendar_id: str
    last_sync_time: int
    mapped_event_count: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    changes_applied: int
    trigger: str
    failure: str = ""
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.status != "error"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "changes_applied": self.changes_applied,
            "trigger": self.trigger,
            "failure": self.failure,
            "run_at": serialize_datetime(self.run_at),
        }


def reverse_window(now: datetime, past_days: int, future_days: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    return now_utc - timedelta(days=past_days), now_utc + timedelta(days=future_days)


def course_horizon(now: datetime, weeks_ahead: int, tz: tzinfo) -> date:
    return _ensure_tz(now).astimezone(tz).date() + timedelta(weeks=weeks_ahead)


def parse_clock(value: str, fallback: time) -> time:
    try:
        parts = str(value or "").strip().split(":")
        return time(int(parts[0]), int(parts[1]))
    except (ValueError, IndexError):
        return fallback
