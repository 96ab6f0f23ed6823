import tempfile
import unittest
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from coursebridge.config_manager import ConfigManager
from coursebridge.models import CalendarInfo, Course, EventFields, ExternalEvent, PlainEvent
from coursebridge.provider import CalendarProvider, PermissionGate
from coursebridge.schedule_store import ScheduleStore
from coursebridge.scheduler import SyncScheduler
from coursebridge.state_store import StateStore
from coursebridge.sync_engine import SyncOrchestrator


class _CalendarFake(CalendarProvider):
    def __init__(self) -> None:
        self.events: dict[str, ExternalEvent] = {}
        self._counter = 0

    def _store(self, external_id: str, fields: EventFields) -> None:
        self.events[external_id] = ExternalEvent(
            id=external_id,
            title=fields.title,
            location=fields.location,
            description=fields.description,
            start=fields.start,
            end=fields.end,
            all_day=fields.all_day,
        )

    def list_writable_calendars(self) -> list[CalendarInfo]:
        return [CalendarInfo(calendar_id="cal-1", name="coursebridge schedule")]

    def create_calendar(self, name: str) -> CalendarInfo:
        return CalendarInfo(calendar_id="cal-new", name=name)

    def create_event(self, calendar_id: str, fields: EventFields) -> str | None:
        self._counter += 1
        external_id = f"ext-{self._counter}"
        self._store(external_id, fields)
        return external_id

    def update_event(self, calendar_id: str, external_id: str, fields: EventFields) -> bool:
        if external_id not in self.events:
            return False
        self._store(external_id, fields)
        return True

    def delete_event(self, calendar_id: str, external_id: str) -> bool:
        return self.events.pop(external_id, None) is not None

    def batch_create(self, calendar_id: str, items: dict[str, EventFields]) -> dict[str, str]:
        return {virtual_id: self.create_event(calendar_id, fields) for virtual_id, fields in items.items()}

    def batch_delete(self, calendar_id: str, external_ids: list[str]) -> int:
        return sum(1 for external_id in external_ids if self.delete_event(calendar_id, external_id))

    def query_by_ids(self, calendar_id: str, external_ids: list[str]) -> list[ExternalEvent]:
        return [self.events[external_id] for external_id in external_ids if external_id in self.events]

    def query_by_range(self, calendar_id: str, start: datetime, end: datetime) -> list[ExternalEvent]:
        return [event for event in self.events.values() if event.start < end and event.end > start]

    def managed_event_ids(self, calendar_id: str, marker: str) -> list[str]:
        return [external_id for external_id, event in self.events.items() if marker in event.description]


class _Gate(PermissionGate):
    def has_calendar_access(self) -> bool:
        return True


class SyncSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_manager = ConfigManager(str(Path(self.temp_dir.name) / "config.yaml"))
        self.config_manager.update(
            {
                "semester": {
                    "start_date": "2024-09-02",
                    "total_weeks": 18,
                    "periods": [{"index": 1, "start_time": "08:00", "end_time": "08:45"}],
                }
            }
        )
        self.store = ScheduleStore()
        self.orchestrator = mock.Mock()
        self.scheduler = SyncScheduler(self.orchestrator, self.config_manager, self.store)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_store_changes_request_forward_run(self) -> None:
        self.store.add_course(
            Course(id="c1", name="Algebra", day_of_week=1, start_period=1, end_period=1, start_week=1, end_week=18)
        )
        self.assertEqual(self.scheduler._take_pending(), (True, False))
        self.assertEqual(self.scheduler._take_pending(), (False, False))

    def test_manual_trigger_requests_both_directions(self) -> None:
        self.scheduler.trigger_manual()
        self.assertEqual(self.scheduler._take_pending(), (True, True))

    def test_reverse_trigger_requests_reverse_only(self) -> None:
        self.scheduler.trigger_reverse()
        self.assertEqual(self.scheduler._take_pending(), (False, True))

    def test_run_forward_passes_snapshots_and_semester(self) -> None:
        future = PlainEvent(id="e1", title="Exam", start_date=date(2999, 1, 10), end_date=date(2999, 1, 10))
        self.store.add_event(future)

        self.scheduler.run_forward(trigger="manual")

        args, kwargs = self.orchestrator.sync_forward.call_args
        events, courses, start_date, total_weeks, periods = args
        self.assertEqual([event.id for event in events], ["e1"])
        self.assertEqual(courses, [])
        self.assertEqual(start_date, "2024-09-02")
        self.assertEqual(total_weeks, 18)
        self.assertEqual([slot.index for slot in periods], [1])
        self.assertEqual(kwargs["trigger"], "manual")

    def test_expired_events_are_kept_by_default(self) -> None:
        past = PlainEvent(id="old", title="Fair", start_date=date(2020, 1, 10), end_date=date(2020, 1, 10))
        self.store.add_event(past)

        self.scheduler.run_forward(trigger="data_change")

        events = self.orchestrator.sync_forward.call_args[0][0]
        self.assertEqual([event.id for event in events], ["old"])
        self.assertEqual(self.store.archived_events(), [])

    def test_run_forward_archives_expired_events_when_enabled(self) -> None:
        self.config_manager.update({"sync": {"auto_archive": True}})
        past = PlainEvent(id="old", title="Fair", start_date=date(2020, 1, 10), end_date=date(2020, 1, 10))
        self.store.add_event(past)

        self.scheduler.run_forward(trigger="data_change")

        events = self.orchestrator.sync_forward.call_args[0][0]
        self.assertEqual(events, [])
        self.assertEqual([event.id for event in self.store.archived_events()], ["old"])

    def test_run_reverse_wires_store_callbacks(self) -> None:
        self.scheduler.run_reverse(trigger="calendar_change")

        args, kwargs = self.orchestrator.sync_reverse.call_args
        self.assertEqual(args[0], self.store.apply_external_added)
        self.assertEqual(args[1], self.store.apply_external_updated)
        self.assertEqual(args[2], self.store.apply_external_deleted)
        self.assertEqual(kwargs["trigger"], "calendar_change")

    def test_stop_without_start_is_safe(self) -> None:
        self.scheduler.stop()
        self.orchestrator.sync_forward.assert_not_called()


class StartupRoundTripTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_manager = ConfigManager(str(Path(self.temp_dir.name) / "config.yaml"))
        self.config_manager.update({"semester": {"start_date": "2024-09-02", "total_weeks": 16}})
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.provider = _CalendarFake()
        orchestrator = SyncOrchestrator(
            self.config_manager,
            self.state_store,
            provider=self.provider,
            permission_gate=_Gate(),
        )
        self.assertTrue(orchestrator.enable_sync().ok)
        self.store = ScheduleStore(self.state_store)
        self.scheduler = SyncScheduler(orchestrator, self.config_manager, self.store)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_recent_calendar_event_survives_reverse_then_forward(self) -> None:
        start = (datetime.now(timezone.utc) - timedelta(days=2)).replace(hour=18, minute=0, second=0, microsecond=0)
        self.provider.events["dinner-1"] = ExternalEvent(
            id="dinner-1",
            title="Dinner",
            start=start,
            end=start + timedelta(hours=2),
        )

        reverse = self.scheduler.run_reverse(trigger="startup")
        forward = self.scheduler.run_forward(trigger="startup")

        self.assertEqual(reverse.changes_applied, 1)
        self.assertEqual(forward.status, "success")
        self.assertIn("dinner-1", self.provider.events)
        self.assertEqual([event.title for event in self.store.events()], ["Dinner"])
        self.assertEqual(self.store.archived_events(), [])


if __name__ == "__main__":
    unittest.main()
