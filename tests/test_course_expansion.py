import unittest
from datetime import date, timedelta

from coursebridge.course_expansion import (
    default_period_table,
    expand_all_courses,
    expand_course,
    occurrences_on,
    reschedule_occurrence,
    week_number,
)
from coursebridge.models import Course, PeriodSlot


def _course(**overrides) -> Course:
    values = {
        "id": "c1",
        "name": "Algebra",
        "day_of_week": 1,
        "start_period": 1,
        "end_period": 2,
        "start_week": 1,
        "end_week": 16,
    }
    values.update(overrides)
    return Course(**values)


class ExpandCourseTests(unittest.TestCase):
    def test_excluded_monday_is_omitted(self) -> None:
        course = _course(excluded_dates=["2024-09-09"])
        occurrences = expand_course(course, date(2024, 9, 2), 16)

        self.assertEqual(len(occurrences), 15)
        dates = [occurrence.date for occurrence in occurrences]
        self.assertEqual(dates[0], date(2024, 9, 2))
        self.assertEqual(dates[1], date(2024, 9, 16))
        self.assertEqual(dates[2], date(2024, 9, 23))
        self.assertNotIn(date(2024, 9, 9), dates)
        self.assertTrue(all(day.isoweekday() == 1 for day in dates))
        self.assertEqual(dates[-1], date(2024, 9, 2) + timedelta(weeks=15))

    def test_odd_parity_capped_by_total_weeks(self) -> None:
        course = _course(end_week=20, week_parity="odd")
        start = date(2024, 9, 2)
        occurrences = expand_course(course, start, 10)
        weeks = [week_number(start, occurrence.date) for occurrence in occurrences]
        self.assertEqual(weeks, [1, 3, 5, 7, 9])

    def test_even_parity(self) -> None:
        course = _course(end_week=6, week_parity="even")
        start = date(2024, 9, 2)
        weeks = [week_number(start, item.date) for item in expand_course(course, start, 20)]
        self.assertEqual(weeks, [2, 4, 6])

    def test_total_weeks_below_start_week_yields_nothing(self) -> None:
        course = _course(start_week=5, end_week=10)
        self.assertEqual(expand_course(course, date(2024, 9, 2), 4), [])

    def test_day_of_week_offsets_date(self) -> None:
        course = _course(day_of_week=3, end_week=1)
        occurrences = expand_course(course, date(2024, 9, 2), 16)
        self.assertEqual([item.date for item in occurrences], [date(2024, 9, 4)])

    def test_virtual_id_format(self) -> None:
        occurrence = expand_course(_course(end_week=1), date(2024, 9, 2), 16)[0]
        self.assertEqual(occurrence.virtual_id, "course_c1_2024-09-02")

    def test_shadow_course_spans_one_week(self) -> None:
        shadow = _course(id="s1", start_week=3, end_week=9, is_shadow=True, parent_course_id="c1")
        self.assertEqual(shadow.end_week, 3)
        occurrences = expand_course(shadow, date(2024, 9, 2), 16)
        self.assertEqual([item.date for item in occurrences], [date(2024, 9, 16)])

    def test_expand_all_keeps_input_order(self) -> None:
        first = _course(id="a", day_of_week=2, end_week=2)
        second = _course(id="b", day_of_week=1, end_week=1)
        occurrences = expand_all_courses([first, second], date(2024, 9, 2), 16)
        self.assertEqual([item.course.id for item in occurrences], ["a", "a", "b"])


class OccurrencesOnTests(unittest.TestCase):
    def test_renders_day_view(self) -> None:
        course = _course(teacher="Dr. Li", location="Room 101", start_period=1, end_period=2)
        events = occurrences_on(date(2024, 9, 16), [course], date(2024, 9, 2))

        self.assertEqual(len(events), 1)
        event = events[0]
        self.assertEqual(event.id, "course_c1_2024-09-16")
        self.assertEqual(event.start_time, "09:00")
        self.assertEqual(event.end_time, "10:45")
        self.assertEqual(event.location, "Room 101 | Dr. Li")
        self.assertEqual(event.description, "Periods 1-2")
        self.assertEqual(event.course_id, "c1")

    def test_skips_wrong_weekday_and_excluded_dates(self) -> None:
        course = _course(excluded_dates=["2024-09-16"])
        self.assertEqual(occurrences_on(date(2024, 9, 17), [course], date(2024, 9, 2)), [])
        self.assertEqual(occurrences_on(date(2024, 9, 16), [course], date(2024, 9, 2)), [])

    def test_skips_unknown_periods(self) -> None:
        table = [PeriodSlot(index=1, start_time="08:00", end_time="08:45")]
        course = _course(start_period=1, end_period=3)
        self.assertEqual(occurrences_on(date(2024, 9, 2), [course], date(2024, 9, 2), table), [])

    def test_without_semester_start_every_day_is_week_one(self) -> None:
        course = _course(start_week=1, end_week=1)
        events = occurrences_on(date(2030, 1, 7), [course], None)
        self.assertEqual(len(events), 1)

    def test_default_period_table(self) -> None:
        table = default_period_table()
        self.assertEqual(len(table), 12)
        self.assertEqual((table[0].start_time, table[0].end_time), ("09:00", "09:45"))
        self.assertEqual(table[-1].index, 12)


class RescheduleOccurrenceTests(unittest.TestCase):
    def test_regular_course_gets_shadow(self) -> None:
        course = _course()
        parent, shadow = reschedule_occurrence(
            course,
            date(2024, 9, 16),
            date(2024, 9, 18),
            date(2024, 9, 2),
            location="Lab 2",
        )

        self.assertIn("2024-09-16", parent.excluded_dates)
        self.assertEqual(parent.start_week, 1)
        self.assertIsNotNone(shadow)
        self.assertTrue(shadow.is_shadow)
        self.assertEqual(shadow.parent_course_id, "c1")
        self.assertEqual((shadow.start_week, shadow.end_week), (3, 3))
        self.assertEqual(shadow.day_of_week, 3)
        self.assertEqual(shadow.location, "Lab 2")
        self.assertEqual(shadow.week_parity, "all")
        dates = [item.date for item in expand_all_courses([parent, shadow], date(2024, 9, 2), 16)]
        self.assertIn(date(2024, 9, 18), dates)
        self.assertNotIn(date(2024, 9, 16), dates)

    def test_shadow_is_edited_in_place(self) -> None:
        shadow = _course(id="s1", start_week=3, end_week=3, is_shadow=True, parent_course_id="c1")
        updated, created = reschedule_occurrence(shadow, date(2024, 9, 16), date(2024, 9, 24), date(2024, 9, 2))
        self.assertIsNone(created)
        self.assertEqual(updated.id, "s1")
        self.assertEqual((updated.start_week, updated.end_week), (4, 4))
        self.assertEqual(updated.day_of_week, 2)


if __name__ == "__main__":
    unittest.main()
