from __future__ import annotations

import hashlib
import json
import re
import threading
import traceback
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Callable, Iterable

from coursebridge.caldav_client import CalDAVProvider
from coursebridge.config_manager import ConfigManager
from coursebridge.course_expansion import expand_all_courses
from coursebridge.errors import (
    CalendarUnresolved,
    ConversionError,
    MalformedPersistedState,
    PermissionDenied,
    ProviderUnavailable,
    SyncError,
)
from coursebridge.fingerprint import is_duplicate_of
from coursebridge.mapper import (
    MANAGED_MARKER_TOKEN,
    has_managed_marker,
    semester_hash,
    to_external_course_fields,
    to_external_event_fields,
    to_internal,
)
from coursebridge.models import (
    AppConfig,
    CalendarInfo,
    Course,
    Event,
    PeriodSlot,
    PlainEvent,
    SyncResult,
    SyncState,
    SyncStatus,
    course_horizon,
    epoch_ms,
    parse_iso_date,
    resolve_timezone,
    reverse_window,
)
from coursebridge.provider import CalendarProvider, CredentialsPermissionGate, PermissionGate
from coursebridge.state_store import StateStore


EventCallback = Callable[[PlainEvent], None]
DeleteCallback = Callable[[str], None]


def _hash_text(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()  # nosec B324


def _normalize_calendar_name(value: str) -> str:
    return re.sub(r"\s+", " ", str(value or "").strip()).casefold()


def _failure_kind(exc: BaseException) -> str:
    if isinstance(exc, SyncError):
        return exc.kind
    return ProviderUnavailable.kind


def course_digest(courses: Iterable[Course], period_table: list[PeriodSlot] | None) -> str:
    payload = {
        "courses": [course.to_dict() for course in courses],
        "periods": [slot.to_dict() for slot in period_table or []],
    }
    return _hash_text(json.dumps(payload, sort_keys=True, ensure_ascii=False))


def parse_semester_start(value: str | date | None) -> date:
    try:
        parsed = parse_iso_date(value)
    except (ValueError, TypeError) as exc:
        raise MalformedPersistedState(f"Unparseable semester start: {value!r}") from exc
    if parsed is None:
        raise MalformedPersistedState("Semester start is not set.")
    return parsed


class SyncOrchestrator:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        provider: CalendarProvider | None = None,
        permission_gate: PermissionGate | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self._provider = provider
        self._permission_gate = permission_gate
        # Forward passes queue up behind each other; reverse passes collapse.
        self._forward_lock = threading.Lock()
        self._reverse_lock = threading.Lock()

    def _provider_for(self, config: AppConfig) -> CalendarProvider:
        if self._provider is not None:
            return self._provider
        return CalDAVProvider(config.caldav)

    def _gate_for(self, config: AppConfig) -> PermissionGate:
        if self._permission_gate is not None:
            return self._permission_gate
        return CredentialsPermissionGate(config.caldav)

    def _audit(self, calendar_id: str, uid: str, action: str, **details: Any) -> None:
        self.state_store.record_audit_event(
            calendar_id=calendar_id or "system",
            uid=uid,
            action=action,
            details=details,
        )

    def _finish(
        self,
        *,
        direction: str,
        trigger: str,
        started_at: datetime,
        status: str,
        message: str,
        changes_applied: int,
        failure: str = "",
    ) -> SyncResult:
        duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        run_id = self.state_store.record_sync_run(
            trigger=trigger,
            direction=direction,
            status=status,
            message=message,
            duration_ms=duration_ms,
            changes_applied=changes_applied,
        )
        return SyncResult(
            status=status,
            message=f"{message} run_id={run_id}",
            duration_ms=duration_ms,
            changes_applied=changes_applied,
            trigger=trigger,
            failure=failure,
        )

    def _phase_error(self, phase: str, calendar_id: str, trigger: str, exc: Exception) -> None:
        self._audit(
            calendar_id,
            phase,
            "phase_error",
            trigger=trigger,
            failure=_failure_kind(exc),
            error=f"{type(exc).__name__}: {exc}",
            traceback=traceback.format_exc(limit=5),
        )

    # Calendar selection

    def _select_calendar(self, provider: CalendarProvider, config: AppConfig) -> CalendarInfo:
        calendars = provider.list_writable_calendars()
        wanted = _normalize_calendar_name(config.sync.calendar_name)
        for calendar in calendars:
            if _normalize_calendar_name(calendar.name) == wanted:
                return calendar
        if calendars:
            return calendars[0]
        return provider.create_calendar(config.sync.calendar_name)

    def _resolve_calendar(
        self,
        provider: CalendarProvider,
        config: AppConfig,
        state: SyncState,
        trigger: str,
    ) -> str:
        if state.calendar_resolved:
            return state.target_calendar_id
        calendar = self._select_calendar(provider, config)
        if not calendar.calendar_id:
            raise CalendarUnresolved("Provider returned a calendar without an id.")
        state.target_calendar_id = calendar.calendar_id
        self.state_store.save_sync_state(state)
        self._audit(calendar.calendar_id, "calendar", "calendar_resolved", trigger=trigger, name=calendar.name)
        return calendar.calendar_id

    # Forward pass

    def _semester_start(self, raw: str | date | None, tz: tzinfo, now: datetime, trigger: str) -> date:
        try:
            return parse_semester_start(raw)
        except MalformedPersistedState as exc:
            fallback = now.astimezone(tz).date()
            self._audit(
                "system",
                "semester",
                "semester_start_fallback",
                trigger=trigger,
                error=str(exc),
                fallback=fallback.isoformat(),
            )
            return fallback

    def _sync_courses(
        self,
        *,
        provider: CalendarProvider,
        calendar_id: str,
        state: SyncState,
        config: AppConfig,
        courses: list[Course],
        semester_start: date,
        total_weeks: int,
        period_table: list[PeriodSlot] | None,
        tz: tzinfo,
        now: datetime,
        trigger: str,
    ) -> int:
        new_hash = semester_hash(semester_start, total_weeks)
        digest = course_digest(courses, period_table)
        if new_hash == state.last_semester_hash and digest == state.last_course_digest:
            return 0

        stale_ids = provider.managed_event_ids(calendar_id, MANAGED_MARKER_TOKEN)
        deleted = provider.batch_delete(calendar_id, stale_ids) if stale_ids else 0

        horizon = course_horizon(now, config.sync.course_weeks_ahead, tz)
        occurrences = [
            occurrence
            for occurrence in expand_all_courses(courses, semester_start, total_weeks)
            if occurrence.date <= horizon
        ]
        items = {
            occurrence.virtual_id: to_external_course_fields(occurrence.course, occurrence.date, period_table, tz)
            for occurrence in occurrences
        }
        created = provider.batch_create(calendar_id, items) if items else {}
        self._audit(
            calendar_id,
            "courses",
            "course_rebuild",
            trigger=trigger,
            semester_hash=new_hash,
            deleted=deleted,
            requested=len(items),
            created=len(created),
            horizon=horizon.isoformat(),
        )
        # Leaving the stored hash untouched makes the next pass rebuild.
        if deleted < len(stale_ids):
            self._audit(
                calendar_id,
                "courses",
                "course_delete_partial",
                trigger=trigger,
                requested=len(stale_ids),
                deleted=deleted,
            )
        if len(created) < len(items):
            self._audit(
                calendar_id,
                "courses",
                "course_batch_partial",
                trigger=trigger,
                missing=sorted(set(items) - set(created)),
            )
        if deleted == len(stale_ids) and len(created) == len(items):
            state.last_semester_hash = new_hash
            state.last_course_digest = digest
        return deleted + len(created)

    def _sync_events(
        self,
        *,
        provider: CalendarProvider,
        calendar_id: str,
        state: SyncState,
        events: list[PlainEvent],
        tz: tzinfo,
        trigger: str,
    ) -> int:
        mapping = state.mapping
        changes = 0
        for event in events:
            fields = to_external_event_fields(event, tz)
            external_id = mapping.get(event.id)
            if external_id:
                if provider.update_event(calendar_id, external_id, fields):
                    changes += 1
                    continue
                mapping.pop(event.id, None)
                self._audit(calendar_id, external_id, "drop_vanished_mapping", trigger=trigger, app_id=event.id)
                continue
            new_id = provider.create_event(calendar_id, fields)
            if not new_id:
                self._audit(calendar_id, "", "create_external_failed", trigger=trigger, app_id=event.id)
                continue
            mapping[event.id] = new_id
            changes += 1
            self._audit(calendar_id, new_id, "create_external", trigger=trigger, app_id=event.id, title=event.title)

        live_ids = {event.id for event in events}
        for app_id in [key for key in mapping if key not in live_ids]:
            external_id = mapping[app_id]
            removed = provider.delete_event(calendar_id, external_id)
            mapping.pop(app_id, None)
            changes += 1
            self._audit(calendar_id, external_id, "tombstone_delete", trigger=trigger, app_id=app_id, removed=removed)
        return changes

    def sync_forward(
        self,
        events: Iterable[Event],
        courses: Iterable[Course],
        semester_start: str | date | None,
        total_weeks: int,
        period_table: list[PeriodSlot] | None = None,
        *,
        trigger: str = "data_change",
        now: datetime | None = None,
    ) -> SyncResult:
        """Push local courses and plain events to the external calendar.

        Courses are rebuilt wholesale, and only when the semester hash or the
        course definitions changed since the last successful rebuild. Plain
        events are matched through the mapping table; local deletions are
        propagated as external deletions.
        """
        with self._forward_lock:
            started_at = datetime.now(timezone.utc)
            now = now or started_at
            config = self.config_manager.load()
            tz = resolve_timezone(config.sync.timezone)

            if not self._gate_for(config).has_calendar_access():
                return self._finish(
                    direction="forward",
                    trigger=trigger,
                    started_at=started_at,
                    status="error",
                    message="Calendar access not granted.",
                    changes_applied=0,
                    failure=PermissionDenied.kind,
                )
            state = self.state_store.load_sync_state()
            if not state.sync_enabled:
                return self._finish(
                    direction="forward",
                    trigger=trigger,
                    started_at=started_at,
                    status="skipped",
                    message="Calendar sync is disabled.",
                    changes_applied=0,
                )

            provider = self._provider_for(config)
            try:
                calendar_id = self._resolve_calendar(provider, config, state, trigger)
            except Exception as exc:
                self._phase_error("calendar", state.target_calendar_id, trigger, exc)
                return self._finish(
                    direction="forward",
                    trigger=trigger,
                    started_at=started_at,
                    status="error",
                    message=f"{type(exc).__name__}: {exc}",
                    changes_applied=0,
                    failure=_failure_kind(exc),
                )

            course_list = list(courses)
            plain_events = [event for event in events if isinstance(event, PlainEvent) and not event.archived]
            changes_applied = 0
            failures: list[str] = []
            errors: list[str] = []

            try:
                changes_applied += self._sync_courses(
                    provider=provider,
                    calendar_id=calendar_id,
                    state=state,
                    config=config,
                    courses=course_list,
                    semester_start=self._semester_start(semester_start, tz, now, trigger),
                    total_weeks=int(total_weeks),
                    period_table=period_table,
                    tz=tz,
                    now=now,
                    trigger=trigger,
                )
            except Exception as exc:
                self._phase_error("courses", calendar_id, trigger, exc)
                failures.append(_failure_kind(exc))
                errors.append(f"courses: {type(exc).__name__}: {exc}")

            try:
                changes_applied += self._sync_events(
                    provider=provider,
                    calendar_id=calendar_id,
                    state=state,
                    events=plain_events,
                    tz=tz,
                    trigger=trigger,
                )
            except Exception as exc:
                self._phase_error("events", calendar_id, trigger, exc)
                failures.append(_failure_kind(exc))
                errors.append(f"events: {type(exc).__name__}: {exc}")

            if not failures:
                state.last_sync_time = epoch_ms(now)
            self.state_store.save_sync_state(state)

            if failures:
                return self._finish(
                    direction="forward",
                    trigger=trigger,
                    started_at=started_at,
                    status="error",
                    message="; ".join(errors),
                    changes_applied=changes_applied,
                    failure=failures[0],
                )
            return self._finish(
                direction="forward",
                trigger=trigger,
                started_at=started_at,
                status="success",
                message=f"Synced {len(course_list)} courses and {len(plain_events)} events.",
                changes_applied=changes_applied,
            )

    # Reverse pass

    def sync_reverse(
        self,
        on_added: EventCallback,
        on_updated: EventCallback,
        on_deleted: DeleteCallback,
        active_events: Iterable[Event],
        archived_events: Iterable[Event],
        *,
        trigger: str = "calendar_change",
        now: datetime | None = None,
    ) -> SyncResult:
        """Pull external changes into the local store through the callbacks.

        Concurrent calls do not wait: while a pass is running, others return
        a successful result with zero changes.
        """
        if not self._reverse_lock.acquire(blocking=False):
            return SyncResult(
                status="success",
                message="Reverse sync already running.",
                duration_ms=0,
                changes_applied=0,
                trigger=trigger,
            )
        try:
            return self._run_reverse(
                on_added,
                on_updated,
                on_deleted,
                list(active_events),
                list(archived_events),
                trigger=trigger,
                now=now,
            )
        finally:
            self._reverse_lock.release()

    def _run_reverse(
        self,
        on_added: EventCallback,
        on_updated: EventCallback,
        on_deleted: DeleteCallback,
        active_events: list[Event],
        archived_events: list[Event],
        *,
        trigger: str,
        now: datetime | None,
    ) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        now = now or started_at
        config = self.config_manager.load()
        tz = resolve_timezone(config.sync.timezone)

        if not self._gate_for(config).has_calendar_access():
            return self._finish(
                direction="reverse",
                trigger=trigger,
                started_at=started_at,
                status="error",
                message="Calendar access not granted.",
                changes_applied=0,
                failure=PermissionDenied.kind,
            )
        state = self.state_store.load_sync_state()
        if not state.sync_enabled:
            return self._finish(
                direction="reverse",
                trigger=trigger,
                started_at=started_at,
                status="skipped",
                message="Calendar sync is disabled.",
                changes_applied=0,
            )
        if not state.calendar_resolved:
            return self._finish(
                direction="reverse",
                trigger=trigger,
                started_at=started_at,
                status="error",
                message="No target calendar configured.",
                changes_applied=0,
                failure=CalendarUnresolved.kind,
            )

        provider = self._provider_for(config)
        calendar_id = state.target_calendar_id
        mapping = state.mapping
        external_to_app = {external_id: app_id for app_id, external_id in mapping.items()}
        added = updated = deleted = 0
        has_changes = False
        failures: list[str] = []
        errors: list[str] = []

        try:
            found = provider.query_by_ids(calendar_id, list(external_to_app)) if external_to_app else []
            found_ids = {external.id for external in found}
            for external_id, app_id in list(external_to_app.items()):
                if external_id in found_ids:
                    continue
                on_deleted(app_id)
                mapping.pop(app_id, None)
                has_changes = True
                deleted += 1
                self._audit(calendar_id, external_id, "external_deleted", trigger=trigger, app_id=app_id)
            for external in found:
                app_id = external_to_app.get(external.id)
                if app_id is None:
                    continue
                try:
                    internal = to_internal(external, fixed_id=app_id, tz=tz)
                except ConversionError as exc:
                    self._audit(calendar_id, external.id, "conversion_failed", trigger=trigger, error=str(exc))
                    continue
                on_updated(internal)
                updated += 1
        except Exception as exc:
            self._phase_error("mapped", calendar_id, trigger, exc)
            failures.append(_failure_kind(exc))
            errors.append(f"mapped: {type(exc).__name__}: {exc}")

        try:
            window_start, window_end = reverse_window(
                now,
                config.sync.reverse_past_days,
                config.sync.reverse_future_days,
            )
            existing = [*active_events, *archived_events]
            for external in provider.query_by_range(calendar_id, window_start, window_end):
                if external.id in external_to_app or has_managed_marker(external.description):
                    continue
                try:
                    if is_duplicate_of(external, existing, tz):
                        self._audit(calendar_id, external.id, "skip_duplicate", trigger=trigger, title=external.title)
                        continue
                    internal = to_internal(external, tz=tz, now=now)
                except ConversionError as exc:
                    self._audit(calendar_id, external.id, "conversion_failed", trigger=trigger, error=str(exc))
                    continue
                on_added(internal)
                mapping[internal.id] = external.id
                external_to_app[external.id] = internal.id
                existing.append(internal)
                has_changes = True
                added += 1
                self._audit(calendar_id, external.id, "external_added", trigger=trigger, app_id=internal.id)
        except Exception as exc:
            self._phase_error("window", calendar_id, trigger, exc)
            failures.append(_failure_kind(exc))
            errors.append(f"window: {type(exc).__name__}: {exc}")

        if has_changes:
            state.last_sync_time = epoch_ms(now)
            self.state_store.save_sync_state(state)

        changes_applied = added + updated + deleted
        if failures:
            return self._finish(
                direction="reverse",
                trigger=trigger,
                started_at=started_at,
                status="error",
                message="; ".join(errors),
                changes_applied=changes_applied,
                failure=failures[0],
            )
        return self._finish(
            direction="reverse",
            trigger=trigger,
            started_at=started_at,
            status="success",
            message=f"Reverse sync: +{added} ~{updated} -{deleted}.",
            changes_applied=changes_applied,
        )

    # Lifecycle

    def enable_sync(self, *, now: datetime | None = None) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        now = now or started_at
        config = self.config_manager.load()
        if not self._gate_for(config).has_calendar_access():
            return self._finish(
                direction="enable",
                trigger="manual",
                started_at=started_at,
                status="error",
                message="Calendar access not granted.",
                changes_applied=0,
                failure=PermissionDenied.kind,
            )
        state = self.state_store.load_sync_state()
        try:
            calendar = self._select_calendar(self._provider_for(config), config)
        except Exception as exc:
            self._phase_error("calendar", state.target_calendar_id, "manual", exc)
            return self._finish(
                direction="enable",
                trigger="manual",
                started_at=started_at,
                status="error",
                message=f"{type(exc).__name__}: {exc}",
                changes_applied=0,
                failure=_failure_kind(exc),
            )

        if calendar.calendar_id != state.target_calendar_id:
            # Mappings and hashes belong to the previous calendar.
            state = SyncState(target_calendar_id=calendar.calendar_id)
        state.sync_enabled = True
        state.last_sync_time = epoch_ms(now)
        self.state_store.save_sync_state(state)
        self._audit(calendar.calendar_id, "calendar", "sync_enabled", name=calendar.name)
        return self._finish(
            direction="enable",
            trigger="manual",
            started_at=started_at,
            status="success",
            message=f"Sync enabled on calendar {calendar.name}.",
            changes_applied=0,
        )

    def disable_sync(self) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        state = self.state_store.load_sync_state()
        state.sync_enabled = False
        self.state_store.save_sync_state(state)
        self._audit(state.target_calendar_id, "calendar", "sync_disabled")
        return self._finish(
            direction="disable",
            trigger="manual",
            started_at=started_at,
            status="success",
            message="Sync disabled.",
            changes_applied=0,
        )

    def sync_status(self) -> SyncStatus:
        config = self.config_manager.load()
        state = self.state_store.load_sync_state()
        return SyncStatus(
            enabled=state.sync_enabled,
            has_permission=self._gate_for(config).has_calendar_access(),
            target_calendar_id=state.target_calendar_id,
            last_sync_time=state.last_sync_time,
            mapped_event_count=len(state.mapping),
        )
