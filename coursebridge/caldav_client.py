from __future__ import annotations

import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

import caldav
from caldav.lib.error import NotFoundError
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from coursebridge.errors import ProviderUnavailable
from coursebridge.models import CalDAVConfig, CalendarInfo, EventFields, ExternalEvent
from coursebridge.provider import CalendarProvider


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        # All-day boundaries are anchored at UTC midnight.
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return None


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def parse_external_event(raw_data: Any) -> ExternalEvent | None:
    raw_ical = _decode_raw_ical(raw_data)
    calendar_obj = ICalendar.from_ical(raw_ical)
    vevent = _first_vevent(calendar_obj)
    if vevent is None:
        return None

    uid = str(vevent.get("UID", "")).strip()
    if not uid:
        return None
    dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
    dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
    all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
    start = _coerce_datetime(dtstart_raw)
    end = _coerce_datetime(dtend_raw)
    if start is not None and end is None:
        end = start + (timedelta(days=1) if all_day else timedelta(hours=1))
    return ExternalEvent(
        id=uid,
        title=str(vevent.get("SUMMARY", "")).strip(),
        location=str(vevent.get("LOCATION", "")).strip(),
        description=str(vevent.get("DESCRIPTION", "")).strip(),
        start=start,
        end=end,
        all_day=all_day,
    )


def build_ical(uid: str, fields: EventFields) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", "-//coursebridge//Calendar Sync//EN")
    calendar_obj.add("VERSION", "2.0")
    vevent = ICEvent()
    vevent.add("UID", uid)
    vevent.add("DTSTAMP", datetime.now(timezone.utc))
    vevent.add("SUMMARY", fields.title or "")
    vevent.add("DESCRIPTION", fields.description or "")
    if fields.location:
        vevent.add("LOCATION", fields.location)
    if fields.all_day:
        vevent.add("DTSTART", fields.start.date())
        vevent.add("DTEND", fields.end.date())
    else:
        vevent.add("DTSTART", fields.start)
        vevent.add("DTEND", fields.end)
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


class CalDAVProvider(CalendarProvider):
    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.is_complete():
            raise ProviderUnavailable("CalDAV config is incomplete.")
        try:
            self._client = caldav.DAVClient(
                url=self.config.base_url,
                username=self.config.username,
                password=self.config.password,
            )
            self._principal = self._client.principal()
        except Exception as exc:
            raise ProviderUnavailable(f"CalDAV connect failed: {exc}") from exc

    def _get_calendar(self, calendar_id: str) -> Any:
        self._connect()
        wanted = _normalize_calendar_id(calendar_id)
        if wanted in self._calendar_cache:
            return self._calendar_cache[wanted]
        try:
            for calendar in self._principal.calendars():
                self._calendar_cache[_normalize_calendar_id(str(calendar.url))] = calendar
        except Exception as exc:
            raise ProviderUnavailable(f"Listing calendars failed: {exc}") from exc
        if wanted not in self._calendar_cache:
            raise ProviderUnavailable(f"Calendar not found: {calendar_id}")
        return self._calendar_cache[wanted]

    def list_writable_calendars(self) -> list[CalendarInfo]:
        self._connect()
        self._calendar_cache = {}
        try:
            remote_calendars = list(self._principal.calendars())
        except Exception as exc:
            raise ProviderUnavailable(f"Listing calendars failed: {exc}") from exc
        calendars: list[CalendarInfo] = []
        for calendar in remote_calendars:
            calendar_id = str(calendar.url)
            name = getattr(calendar, "name", "") or calendar_id
            self._calendar_cache[_normalize_calendar_id(calendar_id)] = calendar
            calendars.append(CalendarInfo(calendar_id=calendar_id, name=name, account=self.config.username))
        return calendars

    def create_calendar(self, name: str) -> CalendarInfo:
        self._connect()
        try:
            calendar = self._principal.make_calendar(name=name)
        except Exception as exc:
            raise ProviderUnavailable(f"Creating calendar failed: {exc}") from exc
        created_id = str(calendar.url)
        self._calendar_cache[_normalize_calendar_id(created_id)] = calendar
        return CalendarInfo(
            calendar_id=created_id,
            name=getattr(calendar, "name", name) or name,
            account=self.config.username,
        )

    def _find_resource(self, calendar: Any, external_id: str) -> Any:
        try:
            resource = calendar.event_by_uid(external_id)
        except NotFoundError:
            return None
        except Exception as exc:
            raise ProviderUnavailable(f"Lookup of {external_id} failed: {exc}") from exc
        if isinstance(resource, list):
            resource = resource[0] if resource else None
        return resource

    def create_event(self, calendar_id: str, fields: EventFields) -> str | None:
        calendar = self._get_calendar(calendar_id)
        uid = str(uuid.uuid4())
        try:
            calendar.save_event(build_ical(uid, fields))
        except Exception as exc:
            raise ProviderUnavailable(f"Creating event failed: {exc}") from exc
        return uid

    def update_event(self, calendar_id: str, external_id: str, fields: EventFields) -> bool:
        calendar = self._get_calendar(calendar_id)
        resource = self._find_resource(calendar, external_id)
        if resource is None:
            return False
        try:
            resource.data = build_ical(external_id, fields)
            resource.save()
        except NotFoundError:
            return False
        except Exception as exc:
            raise ProviderUnavailable(f"Updating {external_id} failed: {exc}") from exc
        return True

    def delete_event(self, calendar_id: str, external_id: str) -> bool:
        calendar = self._get_calendar(calendar_id)
        resource = self._find_resource(calendar, external_id)
        if resource is None:
            return False
        try:
            resource.delete()
        except NotFoundError:
            return False
        except Exception as exc:
            raise ProviderUnavailable(f"Deleting {external_id} failed: {exc}") from exc
        return True

    def batch_create(self, calendar_id: str, items: dict[str, EventFields]) -> dict[str, str]:
        calendar = self._get_calendar(calendar_id)
        created: dict[str, str] = {}
        for virtual_id, fields in items.items():
            uid = str(uuid.uuid4())
            try:
                calendar.save_event(build_ical(uid, fields))
            except Exception:
                # Partial success: the caller only records the ids returned.
                continue
            created[virtual_id] = uid
        return created

    def batch_delete(self, calendar_id: str, external_ids: list[str]) -> int:
        deleted = 0
        for external_id in external_ids:
            try:
                if self.delete_event(calendar_id, external_id):
                    deleted += 1
            except ProviderUnavailable:
                continue
        return deleted

    def _parse_resources(self, resources: list[Any]) -> list[ExternalEvent]:
        events: list[ExternalEvent] = []
        for resource in resources:
            try:
                event = parse_external_event(getattr(resource, "data", ""))
            except ValueError:
                # Unparseable iCalendar payload; skip this item only.
                continue
            if event is not None:
                events.append(event)
        return events

    def query_by_ids(self, calendar_id: str, external_ids: list[str]) -> list[ExternalEvent]:
        calendar = self._get_calendar(calendar_id)
        events: list[ExternalEvent] = []
        for external_id in external_ids:
            resource = self._find_resource(calendar, external_id)
            if resource is None:
                continue
            try:
                event = parse_external_event(getattr(resource, "data", ""))
            except ValueError:
                event = None
            if event is None:
                # Present remotely but unreadable: no instants, so conversion fails for this item.
                event = ExternalEvent(id=external_id)
            events.append(event)
        return events

    def query_by_range(self, calendar_id: str, start: datetime, end: datetime) -> list[ExternalEvent]:
        calendar = self._get_calendar(calendar_id)
        try:
            resources = calendar.search(start=start, end=end, event=True, expand=False)
        except Exception as exc:
            raise ProviderUnavailable(f"Range query failed: {exc}") from exc
        return self._parse_resources(list(resources))

    def managed_event_ids(self, calendar_id: str, marker: str) -> list[str]:
        calendar = self._get_calendar(calendar_id)
        try:
            resources = list(calendar.events())
        except Exception as exc:
            raise ProviderUnavailable(f"Listing events failed: {exc}") from exc
        return [event.id for event in self._parse_resources(resources) if marker in event.description]
