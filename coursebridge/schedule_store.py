from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Callable, Iterable

from coursebridge.course_expansion import reschedule_occurrence
from coursebridge.fingerprint import reconcile_import
from coursebridge.models import (
    Course,
    Event,
    PlainEvent,
    epoch_ms,
    event_from_dict,
    parse_clock,
)
from coursebridge.state_store import StateStore


EVENTS_KEY = "schedule_events"
ARCHIVED_KEY = "schedule_archived_events"
COURSES_KEY = "schedule_courses"

ENTITY_EVENTS = "events"
ENTITY_COURSES = "courses"

Listener = Callable[[str], None]


def _now_ms() -> int:
    return epoch_ms(datetime.now(timezone.utc))


@dataclass
class ImportSummary:
    added: int = 0
    skipped: int = 0
    archive_status_updates: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def normalize_import_payload(payload: dict[str, Any], now_ms: int | None = None) -> list[Event]:
    """Parse an exported ``{"events": [...], "archived_events": [...]}`` payload.

    Entries from the archived list always carry an archival timestamp and
    entries from the active list never do.
    """
    stamp = now_ms if now_ms is not None else _now_ms()
    normalized: list[Event] = []
    for item in payload.get("events", []) or []:
        event = event_from_dict(item)
        if isinstance(event, PlainEvent) and event.archived:
            event = event.with_updates(archived_at=None)
        normalized.append(event)
    for item in payload.get("archived_events", []) or []:
        event = event_from_dict(item)
        if isinstance(event, PlainEvent) and not event.archived:
            event = event.with_updates(archived_at=stamp)
        normalized.append(event)
    return normalized


class ScheduleStore:
    def __init__(self, state_store: StateStore | None = None) -> None:
        self.state_store = state_store
        self._events_lock = threading.RLock()
        self._courses_lock = threading.RLock()
        self._events: list[Event] = []
        self._archived: list[PlainEvent] = []
        self._courses: list[Course] = []
        self._listeners: list[Listener] = []
        self._load()

    def _load(self) -> None:
        if self.state_store is None:
            return
        self._events = self._load_events(EVENTS_KEY)
        self._archived = [event for event in self._load_events(ARCHIVED_KEY) if isinstance(event, PlainEvent)]
        courses: list[Course] = []
        for item in self.state_store.load_json(COURSES_KEY, []):
            try:
                courses.append(Course.from_dict(item))
            except (ValueError, TypeError, AttributeError) as exc:
                self._record_skip(COURSES_KEY, item, exc)
        self._courses = courses

    def _load_events(self, key: str) -> list[Event]:
        events: list[Event] = []
        for item in self.state_store.load_json(key, []):
            try:
                events.append(event_from_dict(item))
            except (ValueError, TypeError, AttributeError) as exc:
                self._record_skip(key, item, exc)
        return events

    def _record_skip(self, key: str, item: Any, exc: Exception) -> None:
        self.state_store.record_audit_event(
            calendar_id="system",
            uid=key,
            action="skip_malformed_item",
            details={"error": f"{type(exc).__name__}: {exc}", "item": item},
        )

    def _persist_events(self) -> None:
        if self.state_store is None:
            return
        self.state_store.save_json(EVENTS_KEY, [event.to_dict() for event in self._events])
        self.state_store.save_json(ARCHIVED_KEY, [event.to_dict() for event in self._archived])

    def _persist_courses(self) -> None:
        if self.state_store is None:
            return
        self.state_store.save_json(COURSES_KEY, [course.to_dict() for course in self._courses])

    # Change notification

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self, entity: str) -> None:
        for listener in list(self._listeners):
            listener(entity)

    # Snapshots

    def events(self) -> list[Event]:
        with self._events_lock:
            return list(self._events)

    def archived_events(self) -> list[PlainEvent]:
        with self._events_lock:
            return list(self._archived)

    def courses(self) -> list[Course]:
        with self._courses_lock:
            return list(self._courses)

    def get_event(self, event_id: str) -> Event | None:
        with self._events_lock:
            for event in self._events:
                if event.id == event_id:
                    return event
        return None

    # Events

    def add_event(self, event: Event, notify: bool = True) -> None:
        with self._events_lock:
            self._events.append(event)
            self._persist_events()
        if notify:
            self._notify(ENTITY_EVENTS)

    def update_event(self, event: Event, notify: bool = True) -> bool:
        with self._events_lock:
            for index, current in enumerate(self._events):
                if current.id == event.id:
                    self._events[index] = event
                    break
            else:
                return False
            self._persist_events()
        if notify:
            self._notify(ENTITY_EVENTS)
        return True

    def delete_event(self, event_id: str, notify: bool = True) -> bool:
        with self._events_lock:
            remaining = [event for event in self._events if event.id != event_id]
            if len(remaining) == len(self._events):
                return False
            self._events = remaining
            self._persist_events()
        if notify:
            self._notify(ENTITY_EVENTS)
        return True

    def archive_event(self, event_id: str, now_ms: int | None = None, notify: bool = True) -> PlainEvent | None:
        with self._events_lock:
            event = self.get_event(event_id)
            # Only plain events can be archived.
            if not isinstance(event, PlainEvent):
                return None
            archived = event.with_updates(archived_at=now_ms if now_ms is not None else _now_ms())
            self._archived.append(archived)
            self._events = [item for item in self._events if item.id != event_id]
            self._persist_events()
        if notify:
            self._notify(ENTITY_EVENTS)
        return archived

    def restore_event(self, event_id: str, notify: bool = True) -> PlainEvent | None:
        with self._events_lock:
            archived = next((item for item in self._archived if item.id == event_id), None)
            if archived is None:
                return None
            restored = archived.with_updates(archived_at=None)
            self._events.append(restored)
            self._archived = [item for item in self._archived if item.id != event_id]
            self._persist_events()
        if notify:
            self._notify(ENTITY_EVENTS)
        return restored

    def delete_archived_event(self, event_id: str) -> bool:
        with self._events_lock:
            remaining = [item for item in self._archived if item.id != event_id]
            if len(remaining) == len(self._archived):
                return False
            self._archived = remaining
            self._persist_events()
        return True

    def auto_archive_expired(self, now: datetime, tz: tzinfo = timezone.utc) -> int:
        """Archive plain events whose end lies before ``now``."""
        local_now = now.astimezone(tz).replace(tzinfo=None)
        stamp = epoch_ms(now)
        with self._events_lock:
            expired = [
                event
                for event in self._events
                if isinstance(event, PlainEvent)
                and datetime.combine(event.end_date, parse_clock(event.end_time, datetime.max.time())) < local_now
            ]
            if not expired:
                return 0
            archived_ids = {event.id for event in self._archived}
            expired_ids = {event.id for event in expired}
            self._archived.extend(
                event.with_updates(archived_at=stamp) for event in expired if event.id not in archived_ids
            )
            self._events = [event for event in self._events if event.id not in expired_ids]
            self._persist_events()
        self._notify(ENTITY_EVENTS)
        return len(expired)

    def import_events(self, batch: Iterable[Event], preserve_archive_status: bool = True) -> ImportSummary:
        with self._events_lock:
            outcome = reconcile_import(batch, self._events, self._archived, preserve_archive_status)
            for event in outcome.to_add:
                if event.archived:
                    self._archived.append(event)
                else:
                    self._events.append(event)
            for event, should_archive in outcome.to_reconcile_archive_status:
                if should_archive:
                    self.archive_event(event.id, notify=False)
                else:
                    self.restore_event(event.id, notify=False)
            self._persist_events()
        if outcome.to_add or outcome.to_reconcile_archive_status:
            self._notify(ENTITY_EVENTS)
        return ImportSummary(
            added=len(outcome.to_add),
            skipped=len(outcome.to_skip),
            archive_status_updates=len(outcome.to_reconcile_archive_status),
        )

    # Reverse sync callbacks; these never trigger a forward pass.

    def apply_external_added(self, event: PlainEvent) -> None:
        self.add_event(event, notify=False)

    def apply_external_updated(self, incoming: PlainEvent) -> None:
        with self._events_lock:
            current = self.get_event(incoming.id)
            if current is None:
                return
            if isinstance(current, PlainEvent):
                # Local styling wins over whatever the external calendar holds.
                incoming = incoming.with_updates(
                    color=current.color,
                    reminders=list(current.reminders),
                    is_important=current.is_important,
                )
            self.update_event(incoming, notify=False)

    def apply_external_deleted(self, event_id: str) -> None:
        self.delete_event(event_id, notify=False)

    # Courses

    def get_course(self, course_id: str) -> Course | None:
        with self._courses_lock:
            for course in self._courses:
                if course.id == course_id:
                    return course
        return None

    def add_course(self, course: Course, notify: bool = True) -> None:
        with self._courses_lock:
            self._courses.append(course)
            self._persist_courses()
        if notify:
            self._notify(ENTITY_COURSES)

    def replace_courses(self, courses: Iterable[Course], notify: bool = True) -> None:
        with self._courses_lock:
            self._courses = list(courses)
            self._persist_courses()
        if notify:
            self._notify(ENTITY_COURSES)

    def update_course(self, course: Course, notify: bool = True) -> bool:
        with self._courses_lock:
            for index, current in enumerate(self._courses):
                if current.id == course.id:
                    self._courses[index] = course
                    break
            else:
                return False
            self._persist_courses()
        if notify:
            self._notify(ENTITY_COURSES)
        return True

    def delete_course(self, course_id: str, notify: bool = True) -> int:
        """Delete a course; deleting a regular course also drops its shadows.

        Returns the number of courses removed.
        """
        with self._courses_lock:
            target = self.get_course(course_id)
            if target is None:
                return 0
            removed_ids = {target.id}
            if not target.is_shadow:
                removed_ids.update(course.id for course in self._courses if course.parent_course_id == target.id)
            self._courses = [course for course in self._courses if course.id not in removed_ids]
            self._persist_courses()
        if notify:
            self._notify(ENTITY_COURSES)
        return len(removed_ids)

    def reschedule_course_occurrence(
        self,
        course_id: str,
        original_date: date,
        new_date: date,
        semester_start: date,
        notify: bool = True,
        **changes: Any,
    ) -> tuple[Course, Course | None] | None:
        with self._courses_lock:
            course = self.get_course(course_id)
            if course is None:
                return None
            updated, shadow = reschedule_occurrence(course, original_date, new_date, semester_start, **changes)
            self._courses = [updated if item.id == updated.id else item for item in self._courses]
            if shadow is not None:
                self._courses.append(shadow)
            self._persist_courses()
        if notify:
            self._notify(ENTITY_COURSES)
        return updated, shadow
