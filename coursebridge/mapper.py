from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo

from coursebridge.errors import ConversionError
from coursebridge.models import (
    Course,
    EventFields,
    ExternalEvent,
    PeriodSlot,
    PlainEvent,
    epoch_ms,
    parse_clock,
)


MANAGED_MARKER_TOKEN = "[Managed by coursebridge, do not edit here]"
MANAGED_EVENT_MARKER = f"\n\n\U0001F512 {MANAGED_MARKER_TOKEN}"

# Events pulled in from the external calendar always get this color.
SYNCED_EVENT_COLOR = "#A2B5BB"

ALL_DAY_START = "00:00"
ALL_DAY_END = "23:59"
DEFAULT_EVENT_TIME = time(9, 0)
DEFAULT_COURSE_START = time(8, 0)
DEFAULT_COURSE_END = time(9, 0)


def has_managed_marker(description: str | None) -> bool:
    return MANAGED_MARKER_TOKEN in (description or "")


def strip_managed_marker(description: str | None) -> str:
    text = description or ""
    if MANAGED_MARKER_TOKEN not in text:
        return text.strip()
    text = text.replace(MANAGED_EVENT_MARKER.strip(), "").replace(MANAGED_MARKER_TOKEN, "")
    return text.strip()


def append_managed_marker(description: str | None) -> str:
    text = description or ""
    if has_managed_marker(text):
        return text
    return f"{text}{MANAGED_EVENT_MARKER}"


def _as_aware(value: datetime | None, label: str, external_id: str) -> datetime:
    if not isinstance(value, datetime):
        raise ConversionError(f"External event {external_id} has no valid {label} instant.")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def external_span(external: ExternalEvent, tz: tzinfo) -> tuple[date, date, str, str]:
    """Local (start_date, end_date, start_time, end_time) of an external event.

    All-day boundaries are stored at UTC midnight with an exclusive end, so
    they are read in UTC and the end steps back one tick onto the last day.
    Timed events are read in ``tz`` with seconds dropped.
    """
    start = _as_aware(external.start, "start", external.id)
    end = _as_aware(external.end, "end", external.id)
    if external.all_day:
        start_utc = start.astimezone(timezone.utc)
        end_utc = end.astimezone(timezone.utc) - timedelta(microseconds=1)
        return start_utc.date(), end_utc.date(), ALL_DAY_START, ALL_DAY_END
    start_local = start.astimezone(tz)
    end_local = end.astimezone(tz)
    return (
        start_local.date(),
        end_local.date(),
        start_local.strftime("%H:%M"),
        end_local.strftime("%H:%M"),
    )


def to_internal(
    external: ExternalEvent,
    fixed_id: str | None = None,
    tz: tzinfo = timezone.utc,
    now: datetime | None = None,
) -> PlainEvent:
    start_date, end_date, start_time, end_time = external_span(external, tz)
    if fixed_id:
        event_id = fixed_id
    else:
        stamp = epoch_ms(now or datetime.now(timezone.utc))
        event_id = f"sync_calendar_{external.id}_{stamp}"
    return PlainEvent(
        id=event_id,
        title=external.title or "",
        start_date=start_date,
        end_date=end_date,
        start_time=start_time,
        end_time=end_time,
        location=external.location or "",
        description=strip_managed_marker(external.description),
        color=SYNCED_EVENT_COLOR,
        is_important=False,
    )


def to_external_event_fields(event: PlainEvent, tz: tzinfo) -> EventFields:
    start = datetime.combine(event.start_date, parse_clock(event.start_time, DEFAULT_EVENT_TIME), tzinfo=tz)
    end = datetime.combine(event.end_date, parse_clock(event.end_time, DEFAULT_EVENT_TIME), tzinfo=tz)
    return EventFields(
        title=event.title,
        start=start,
        end=end,
        location=event.location,
        description=event.description,
        all_day=False,
        color=event.color,
    )


def to_external_course_fields(
    course: Course,
    on_date: date,
    period_table: list[PeriodSlot] | None,
    tz: tzinfo,
) -> EventFields:
    slots = {slot.index: slot for slot in period_table or []}
    start_slot = slots.get(course.start_period)
    end_slot = slots.get(course.end_period)
    start_clock = parse_clock(start_slot.start_time, DEFAULT_COURSE_START) if start_slot else DEFAULT_COURSE_START
    end_clock = parse_clock(end_slot.end_time, DEFAULT_COURSE_END) if end_slot else DEFAULT_COURSE_END

    lines: list[str] = []
    if course.teacher.strip():
        lines.append(f"Teacher: {course.teacher}")
    lines.append(f"Periods: {course.start_period}-{course.end_period}")
    return EventFields(
        title=course.name,
        start=datetime.combine(on_date, start_clock, tzinfo=tz),
        end=datetime.combine(on_date, end_clock, tzinfo=tz),
        location=course.location,
        description=append_managed_marker("\n".join(lines)),
        all_day=False,
        color=course.color,
    )


def semester_hash(semester_start: date, total_weeks: int) -> str:
    epoch_day = (semester_start - date(1970, 1, 1)).days
    return f"{epoch_day}_{total_weeks}"
