import unittest
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from coursebridge.errors import ConversionError
from coursebridge.mapper import (
    MANAGED_EVENT_MARKER,
    SYNCED_EVENT_COLOR,
    append_managed_marker,
    has_managed_marker,
    semester_hash,
    strip_managed_marker,
    to_external_course_fields,
    to_external_event_fields,
    to_internal,
)
from coursebridge.models import Course, ExternalEvent, PeriodSlot, PlainEvent


class ToInternalTests(unittest.TestCase):
    def test_all_day_event_uses_utc_and_exclusive_end(self) -> None:
        external = ExternalEvent(
            id="x-1",
            title="Holiday",
            start=datetime(2024, 10, 1, tzinfo=timezone.utc),
            end=datetime(2024, 10, 4, tzinfo=timezone.utc),
            all_day=True,
        )
        # A far-east zone must not shift all-day dates.
        event = to_internal(external, fixed_id="app-1", tz=ZoneInfo("Asia/Shanghai"))

        self.assertEqual(event.id, "app-1")
        self.assertEqual(event.start_date, date(2024, 10, 1))
        self.assertEqual(event.end_date, date(2024, 10, 3))
        self.assertEqual((event.start_time, event.end_time), ("00:00", "23:59"))

    def test_single_all_day_event(self) -> None:
        external = ExternalEvent(
            id="x-1",
            start=datetime(2024, 10, 1, tzinfo=timezone.utc),
            end=datetime(2024, 10, 2, tzinfo=timezone.utc),
            all_day=True,
        )
        event = to_internal(external, fixed_id="a")
        self.assertEqual(event.start_date, event.end_date)

    def test_timed_event_uses_local_zone_and_drops_seconds(self) -> None:
        external = ExternalEvent(
            id="x-2",
            title="Call",
            start=datetime(2024, 9, 5, 23, 30, 42, tzinfo=timezone.utc),
            end=datetime(2024, 9, 6, 0, 15, tzinfo=timezone.utc),
        )
        event = to_internal(external, fixed_id="a", tz=ZoneInfo("Asia/Shanghai"))
        self.assertEqual(event.start_date, date(2024, 9, 6))
        self.assertEqual(event.start_time, "07:30")
        self.assertEqual(event.end_time, "08:15")

    def test_marker_stripped_and_color_forced(self) -> None:
        external = ExternalEvent(
            id="x-3",
            title="Synced",
            description=append_managed_marker("Notes"),
            start=datetime(2024, 9, 5, 9, tzinfo=timezone.utc),
            end=datetime(2024, 9, 5, 10, tzinfo=timezone.utc),
        )
        event = to_internal(external, fixed_id="a")
        self.assertEqual(event.description, "Notes")
        self.assertEqual(event.color, SYNCED_EVENT_COLOR)
        self.assertFalse(event.is_important)

    def test_generated_id_embeds_external_id_and_time(self) -> None:
        external = ExternalEvent(
            id="x-4",
            start=datetime(2024, 9, 5, 9, tzinfo=timezone.utc),
            end=datetime(2024, 9, 5, 10, tzinfo=timezone.utc),
        )
        now = datetime(2024, 9, 1, tzinfo=timezone.utc)
        event = to_internal(external, now=now)
        self.assertEqual(event.id, f"sync_calendar_x-4_{int(now.timestamp() * 1000)}")

    def test_missing_instant_raises(self) -> None:
        external = ExternalEvent(id="x-5", start=None, end=None)
        with self.assertRaises(ConversionError):
            to_internal(external)


class MarkerTests(unittest.TestCase):
    def test_append_is_idempotent(self) -> None:
        once = append_managed_marker("text")
        self.assertEqual(append_managed_marker(once), once)
        self.assertTrue(once.endswith(MANAGED_EVENT_MARKER))
        self.assertTrue(has_managed_marker(once))
        self.assertEqual(strip_managed_marker(once), "text")

    def test_plain_description_untouched(self) -> None:
        self.assertFalse(has_managed_marker("hello"))
        self.assertEqual(strip_managed_marker(" hello "), "hello")


class ExternalFieldTests(unittest.TestCase):
    def test_course_fields_use_period_table(self) -> None:
        course = Course(
            id="c1",
            name="Physics",
            day_of_week=1,
            start_period=1,
            end_period=2,
            start_week=1,
            end_week=16,
            teacher="Dr. Wu",
            location="B-204",
        )
        table = [
            PeriodSlot(index=1, start_time="08:00", end_time="08:45"),
            PeriodSlot(index=2, start_time="08:55", end_time="09:40"),
        ]
        fields = to_external_course_fields(course, date(2024, 9, 2), table, timezone.utc)
        self.assertEqual(fields.start, datetime(2024, 9, 2, 8, 0, tzinfo=timezone.utc))
        self.assertEqual(fields.end, datetime(2024, 9, 2, 9, 40, tzinfo=timezone.utc))
        self.assertIn("Teacher: Dr. Wu", fields.description)
        self.assertIn("Periods: 1-2", fields.description)
        self.assertTrue(has_managed_marker(fields.description))
        self.assertEqual(fields.location, "B-204")

    def test_course_fields_fall_back_for_unknown_periods(self) -> None:
        course = Course(id="c1", name="Physics", day_of_week=1, start_period=7, end_period=8, start_week=1, end_week=1)
        fields = to_external_course_fields(course, date(2024, 9, 2), [], timezone.utc)
        self.assertEqual(fields.start.hour, 8)
        self.assertEqual(fields.end.hour, 9)
        self.assertNotIn("Teacher:", fields.description)

    def test_event_fields_carry_no_marker(self) -> None:
        event = PlainEvent(
            id="e1",
            title="Lab",
            start_date=date(2024, 9, 3),
            end_date=date(2024, 9, 3),
            start_time="14:00",
            end_time="bad",
        )
        fields = to_external_event_fields(event, timezone.utc)
        self.assertFalse(has_managed_marker(fields.description))
        self.assertEqual(fields.start, datetime(2024, 9, 3, 14, 0, tzinfo=timezone.utc))
        # Unparseable clock values fall back to 09:00.
        self.assertEqual(fields.end, datetime(2024, 9, 3, 9, 0, tzinfo=timezone.utc))


class SemesterHashTests(unittest.TestCase):
    def test_hash_is_stable_and_sensitive(self) -> None:
        start = date(2024, 9, 2)
        self.assertEqual(semester_hash(start, 16), semester_hash(date(2024, 9, 2), 16))
        self.assertNotEqual(semester_hash(start, 16), semester_hash(start, 17))
        self.assertNotEqual(semester_hash(start, 16), semester_hash(date(2024, 9, 9), 16))
        self.assertEqual(semester_hash(date(1970, 1, 2), 3), "1_3")


if __name__ == "__main__":
    unittest.main()
