import tempfile
import unittest
from pathlib import Path

from coursebridge.models import SyncState
from coursebridge.state_store import SYNC_STATE_KEY, StateStore


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "data" / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_sync_state_round_trip(self) -> None:
        state = SyncState(
            sync_enabled=True,
            target_calendar_id="https://dav.example.com/cal/",
            mapping={"e1": "uid-1"},
            last_sync_time=1725192000000,
            last_semester_hash="19968_16",
        )
        self.store.save_sync_state(state)
        self.assertEqual(self.store.load_sync_state(), state)

    def test_missing_sync_state_is_default(self) -> None:
        self.assertEqual(self.store.load_sync_state(), SyncState())

    def test_corrupt_sync_state_falls_back_and_is_audited(self) -> None:
        self.store.set_meta(SYNC_STATE_KEY, "{not json")
        self.assertEqual(self.store.load_sync_state(), SyncState())

        self.store.set_meta(SYNC_STATE_KEY, '{"mapping": [1, 2]}')
        self.assertEqual(self.store.load_sync_state(), SyncState())

        events = self.store.recent_audit_events(action="malformed_sync_state")
        self.assertEqual(len(events), 2)
        self.assertEqual(events[0]["uid"], SYNC_STATE_KEY)

    def test_sync_runs_are_listed_newest_first(self) -> None:
        for status in ("success", "error"):
            self.store.record_sync_run(
                trigger="manual",
                direction="forward",
                status=status,
                message=status,
                duration_ms=5,
                changes_applied=1,
            )
        runs = self.store.recent_sync_runs(limit=10)
        self.assertEqual([run["status"] for run in runs], ["error", "success"])
        self.assertEqual(runs[0]["direction"], "forward")

    def test_audit_details_are_decoded(self) -> None:
        self.store.record_audit_event(calendar_id="cal", uid="x-1", action="external_added", details={"n": 1})
        self.store.record_audit_event(calendar_id="cal", uid="x-2", action="skip_duplicate", details={})
        events = self.store.recent_audit_events(limit=5)
        self.assertEqual(events[0]["action"], "skip_duplicate")
        self.assertEqual(events[1]["details"], {"n": 1})

    def test_json_blobs(self) -> None:
        self.assertEqual(self.store.load_json("courses", []), [])
        self.store.save_json("courses", [{"id": "c1"}])
        self.assertEqual(self.store.load_json("courses", []), [{"id": "c1"}])
        self.store.set_meta("broken", "[")
        self.assertEqual(self.store.load_json("broken", {"fallback": True}), {"fallback": True})


if __name__ == "__main__":
    unittest.main()
