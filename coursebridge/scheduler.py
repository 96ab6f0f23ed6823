from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional

from coursebridge.config_manager import ConfigManager
from coursebridge.models import SyncResult, resolve_timezone
from coursebridge.schedule_store import ScheduleStore
from coursebridge.sync_engine import SyncOrchestrator


class SyncScheduler:
    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        config_manager: ConfigManager,
        schedule_store: ScheduleStore,
    ) -> None:
        self.orchestrator = orchestrator
        self.config_manager = config_manager
        self.schedule_store = schedule_store
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._pending_lock = threading.Lock()
        self._forward_pending = False
        self._reverse_pending = False
        self.schedule_store.add_listener(self._on_store_changed)

    def _on_store_changed(self, entity: str) -> None:
        self.trigger_forward()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="coursebridge-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_forward(self) -> None:
        with self._pending_lock:
            self._forward_pending = True
        self._wake_event.set()

    def trigger_reverse(self) -> None:
        with self._pending_lock:
            self._reverse_pending = True
        self._wake_event.set()

    def trigger_manual(self) -> None:
        with self._pending_lock:
            self._forward_pending = True
            self._reverse_pending = True
        self._wake_event.set()

    def run_forward(self, trigger: str) -> SyncResult:
        config = self.config_manager.load()
        if config.sync.auto_archive:
            self.schedule_store.auto_archive_expired(datetime.now(timezone.utc), resolve_timezone(config.sync.timezone))
        return self.orchestrator.sync_forward(
            self.schedule_store.events(),
            self.schedule_store.courses(),
            config.semester.start_date,
            config.semester.total_weeks,
            config.semester.periods,
            trigger=trigger,
        )

    def run_reverse(self, trigger: str) -> SyncResult:
        return self.orchestrator.sync_reverse(
            self.schedule_store.apply_external_added,
            self.schedule_store.apply_external_updated,
            self.schedule_store.apply_external_deleted,
            self.schedule_store.events(),
            self.schedule_store.archived_events(),
            trigger=trigger,
        )

    def _take_pending(self) -> tuple[bool, bool]:
        with self._pending_lock:
            pending = (self._forward_pending, self._reverse_pending)
            self._forward_pending = False
            self._reverse_pending = False
        return pending

    def _loop(self) -> None:
        # Pull external edits first so the initial push works from fresh data.
        self.run_reverse(trigger="startup")
        self.run_forward(trigger="startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            woken = self._wake_event.wait(timeout=interval_seconds)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            if not woken:
                self.run_reverse(trigger="scheduled")
                continue
            forward, reverse = self._take_pending()
            if reverse:
                self.run_reverse(trigger="manual" if forward else "calendar_change")
            if forward:
                self.run_forward(trigger="manual" if reverse else "data_change")
