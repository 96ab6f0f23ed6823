from __future__ import annotations

import uuid
from datetime import date, timedelta
from typing import Iterable

from coursebridge.models import (
    WEEK_PARITY_EVEN,
    WEEK_PARITY_ODD,
    Course,
    CourseOccurrence,
    CourseOccurrenceEvent,
    PeriodSlot,
)


def week_matches_parity(week: int, parity: str) -> bool:
    if parity == WEEK_PARITY_ODD:
        return week % 2 == 1
    if parity == WEEK_PARITY_EVEN:
        return week % 2 == 0
    return True


def week_number(semester_start: date, target: date) -> int:
    return (target - semester_start).days // 7 + 1


def occurrence_date(semester_start: date, week: int, day_of_week: int) -> date:
    return semester_start + timedelta(days=(week - 1) * 7 + (day_of_week - 1))


def expand_course(course: Course, semester_start: date, total_weeks: int) -> list[CourseOccurrence]:
    """Materialize the concrete dates of one recurring course.

    Weeks run from ``course.start_week`` up to ``course.end_week`` capped by
    ``total_weeks``. Weeks rejected by the parity filter are skipped, and a
    date listed in ``course.excluded_dates`` drops that single occurrence.
    Shadow courses span one week and go through the same path.
    """
    occurrences: list[CourseOccurrence] = []
    excluded = set(course.excluded_dates)
    last_week = min(course.end_week, total_weeks)
    for week in range(course.start_week, last_week + 1):
        if not week_matches_parity(week, course.week_parity):
            continue
        on_date = occurrence_date(semester_start, week, course.day_of_week)
        if on_date.isoformat() in excluded:
            continue
        occurrences.append(CourseOccurrence(course=course, date=on_date))
    return occurrences


def expand_all_courses(
    courses: Iterable[Course],
    semester_start: date,
    total_weeks: int,
) -> list[CourseOccurrence]:
    occurrences: list[CourseOccurrence] = []
    for course in courses:
        occurrences.extend(expand_course(course, semester_start, total_weeks))
    return occurrences


def default_period_table() -> list[PeriodSlot]:
    return [PeriodSlot(index=i, start_time=f"{8 + i:02d}:00", end_time=f"{8 + i:02d}:45") for i in range(1, 13)]


def occurrences_on(
    target: date,
    courses: Iterable[Course],
    semester_start: date | None,
    period_table: list[PeriodSlot] | None = None,
) -> list[CourseOccurrenceEvent]:
    """Courses taking place on ``target`` rendered as course-occurrence events.

    Without a semester start every day counts as week 1. Courses whose periods
    are missing from the period table are left out.
    """
    slots = {slot.index: slot for slot in (period_table or default_period_table())}
    current_week = 1 if semester_start is None else week_number(semester_start, target)
    target_iso = target.isoformat()
    events: list[CourseOccurrenceEvent] = []
    for course in courses:
        unbounded = course.start_week == 0 and course.end_week == 0
        if not unbounded and not course.start_week <= current_week <= course.end_week:
            continue
        if not week_matches_parity(current_week, course.week_parity):
            continue
        if course.day_of_week != target.isoweekday():
            continue
        if target_iso in course.excluded_dates:
            continue
        start_slot = slots.get(course.start_period)
        end_slot = slots.get(course.end_period)
        if start_slot is None or end_slot is None:
            continue
        location = course.location
        if course.teacher.strip():
            location = f"{location} | {course.teacher}"
        events.append(
            CourseOccurrenceEvent(
                id=CourseOccurrence(course=course, date=target).virtual_id,
                title=course.name,
                start_date=target,
                end_date=target,
                start_time=start_slot.start_time,
                end_time=end_slot.end_time,
                location=location,
                description=f"Periods {course.start_period}-{course.end_period}",
                color=course.color,
                course_id=course.id,
            )
        )
    return events


def reschedule_occurrence(
    course: Course,
    original_date: date,
    new_date: date,
    semester_start: date,
    *,
    name: str | None = None,
    location: str | None = None,
    start_period: int | None = None,
    end_period: int | None = None,
) -> tuple[Course, Course | None]:
    """Move one occurrence of a course without touching its recurrence rule.

    Returns ``(updated, shadow)``. Editing a shadow course updates it in place
    and yields no new shadow. Editing a regular course excludes
    ``original_date`` from it and creates a shadow locked to the week of
    ``new_date``.
    """
    target_week = week_number(semester_start, new_date)
    changes = {
        "name": course.name if name is None else name,
        "location": course.location if location is None else location,
        "day_of_week": new_date.isoweekday(),
        "start_period": course.start_period if start_period is None else start_period,
        "end_period": course.end_period if end_period is None else end_period,
        "start_week": target_week,
        "end_week": target_week,
    }
    if course.is_shadow:
        return course.with_updates(**changes), None

    original_iso = original_date.isoformat()
    parent = course
    if original_iso not in course.excluded_dates:
        parent = course.with_updates(excluded_dates=[*course.excluded_dates, original_iso])
    shadow = Course(
        id=str(uuid.uuid4()),
        teacher=course.teacher,
        color=course.color,
        is_shadow=True,
        parent_course_id=course.id,
        **changes,
    )
    return parent, shadow
