from __future__ import annotations

import os
import uuid
from datetime import date
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from coursebridge.config_manager import ConfigManager
from coursebridge.course_expansion import occurrences_on
from coursebridge.models import (
    AppConfig,
    Course,
    CourseOccurrenceEvent,
    Event,
    PlainEvent,
    event_from_dict,
    parse_iso_date,
)
from coursebridge.schedule_store import ScheduleStore, normalize_import_payload
from coursebridge.scheduler import SyncScheduler
from coursebridge.state_store import StateStore
from coursebridge.sync_engine import SyncOrchestrator


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class EventImportRequest(BaseModel):
    events: list[dict[str, Any]] = Field(default_factory=list)
    archived_events: list[dict[str, Any]] = Field(default_factory=list)
    preserve_archive_status: bool = True


class EventWriteRequest(BaseModel):
    event: dict[str, Any] = Field(default_factory=dict)


class CourseWriteRequest(BaseModel):
    course: dict[str, Any] = Field(default_factory=dict)


class CourseBackupRequest(BaseModel):
    courses: list[dict[str, Any]] = Field(default_factory=list)
    semester_start_date: str | None = None
    total_weeks: int | None = None
    periods: list[dict[str, Any]] | None = None


class RescheduleRequest(BaseModel):
    original_date: str
    new_date: str
    name: str | None = None
    location: str | None = None
    start_period: int | None = None
    end_period: int | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.schedule_store = ScheduleStore(self.state_store)
        self.orchestrator = SyncOrchestrator(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.orchestrator, self.config_manager, self.schedule_store)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_password = str(current.get("caldav", {}).get("password", ""))

    caldav = sanitized.get("caldav")
    if isinstance(caldav, dict):
        caldav = dict(caldav)
        password = caldav.get("password")
        if password is not None:
            password_text = str(password).strip()
            if password_text in {"", "***"}:
                if current_password:
                    caldav.pop("password", None)
                else:
                    caldav["password"] = ""
        if caldav:
            sanitized["caldav"] = caldav
        else:
            sanitized.pop("caldav", None)
    return sanitized


def _parse_day(value: str, label: str = "date") -> date:
    try:
        parsed = parse_iso_date(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"invalid {label}") from exc
    if parsed is None:
        raise HTTPException(status_code=400, detail=f"invalid {label}")
    return parsed


def _configured_semester_start(config: AppConfig) -> date | None:
    try:
        return parse_iso_date(config.semester.start_date)
    except ValueError:
        return None


def _event_from_payload(payload: dict[str, Any], event_id: str | None = None) -> Event:
    data = dict(payload)
    data["id"] = event_id or str(data.get("id", "")).strip() or str(uuid.uuid4())
    try:
        event = event_from_dict(data)
    except (ValueError, TypeError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(event, CourseOccurrenceEvent):
        raise HTTPException(status_code=400, detail="course occurrences are derived from courses")
    if isinstance(event, PlainEvent) and event.archived:
        # Archival goes through the archive endpoint.
        event = event.with_updates(archived_at=None)
    return event


def _course_from_payload(payload: dict[str, Any], course_id: str | None = None) -> Course:
    data = dict(payload)
    data["id"] = course_id or str(data.get("id", "")).strip() or str(uuid.uuid4())
    try:
        course = Course.from_dict(data)
    except (ValueError, TypeError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not course.name.strip():
        raise HTTPException(status_code=400, detail="course name is required")
    if course.start_period > course.end_period:
        raise HTTPException(status_code=400, detail="start_period must not exceed end_period")
    return course


def create_app() -> FastAPI:
    config_path = os.getenv("COURSEBRIDGE_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("COURSEBRIDGE_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="coursebridge admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        payload = _sanitize_config_payload(request.payload, current)
        try:
            app.state.context.config_manager.update(payload)
        except (ValueError, TypeError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/status")
    def get_status() -> dict[str, Any]:
        return app.state.context.orchestrator.sync_status().to_dict()

    @app.post("/api/sync/enable")
    def enable_sync() -> dict[str, Any]:
        result = app.state.context.orchestrator.enable_sync()
        if not result.ok:
            raise HTTPException(status_code=409, detail=result.to_dict())
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync enabled", "result": result.to_dict()}

    @app.post("/api/sync/disable")
    def disable_sync() -> dict[str, Any]:
        result = app.state.context.orchestrator.disable_sync()
        return {"message": "sync disabled", "result": result.to_dict()}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/pull")
    def trigger_pull() -> dict[str, str]:
        app.state.context.scheduler.trigger_reverse()
        return {"message": "calendar pull triggered"}

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/audit")
    def audit_events(limit: int = 100, action: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, action=action)}

    @app.get("/api/events")
    def list_events() -> dict[str, Any]:
        store = app.state.context.schedule_store
        return {
            "events": [event.to_dict() for event in store.events()],
            "archived_events": [event.to_dict() for event in store.archived_events()],
        }

    @app.post("/api/events")
    def create_event(request: EventWriteRequest) -> dict[str, Any]:
        store = app.state.context.schedule_store
        event = _event_from_payload(request.event)
        if store.get_event(event.id) is not None:
            raise HTTPException(status_code=409, detail="event already exists")
        store.add_event(event)
        return {"message": "event created", "event": event.to_dict()}

    @app.put("/api/events/{event_id}")
    def update_event(event_id: str, request: EventWriteRequest) -> dict[str, Any]:
        event = _event_from_payload(request.event, event_id=event_id)
        if not app.state.context.schedule_store.update_event(event):
            raise HTTPException(status_code=404, detail="event not found")
        return {"message": "event updated", "event": event.to_dict()}

    @app.delete("/api/events/{event_id}")
    def delete_event(event_id: str) -> dict[str, str]:
        if not app.state.context.schedule_store.delete_event(event_id):
            raise HTTPException(status_code=404, detail="event not found")
        return {"message": "event deleted"}

    @app.delete("/api/events/archived/{event_id}")
    def delete_archived_event(event_id: str) -> dict[str, str]:
        if not app.state.context.schedule_store.delete_archived_event(event_id):
            raise HTTPException(status_code=404, detail="archived event not found")
        return {"message": "archived event deleted"}

    @app.post("/api/events/import")
    def import_events(request: EventImportRequest) -> dict[str, Any]:
        try:
            batch = normalize_import_payload(
                {"events": request.events, "archived_events": request.archived_events}
            )
        except (ValueError, TypeError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        summary = app.state.context.schedule_store.import_events(
            batch,
            preserve_archive_status=request.preserve_archive_status,
        )
        return {"message": "import completed", "result": summary.to_dict()}

    @app.post("/api/events/{event_id}/archive")
    def archive_event(event_id: str) -> dict[str, Any]:
        archived = app.state.context.schedule_store.archive_event(event_id)
        if archived is None:
            raise HTTPException(status_code=404, detail="event not found or not archivable")
        return {"message": "event archived", "event": archived.to_dict()}

    @app.post("/api/events/{event_id}/restore")
    def restore_event(event_id: str) -> dict[str, Any]:
        restored = app.state.context.schedule_store.restore_event(event_id)
        if restored is None:
            raise HTTPException(status_code=404, detail="archived event not found")
        return {"message": "event restored", "event": restored.to_dict()}

    @app.get("/api/courses")
    def list_courses() -> dict[str, Any]:
        return {"courses": [course.to_dict() for course in app.state.context.schedule_store.courses()]}

    @app.post("/api/courses")
    def create_course(request: CourseWriteRequest) -> dict[str, Any]:
        store = app.state.context.schedule_store
        course = _course_from_payload(request.course)
        if store.get_course(course.id) is not None:
            raise HTTPException(status_code=409, detail="course already exists")
        store.add_course(course)
        return {"message": "course created", "course": course.to_dict()}

    @app.put("/api/courses/{course_id}")
    def update_course(course_id: str, request: CourseWriteRequest) -> dict[str, Any]:
        course = _course_from_payload(request.course, course_id=course_id)
        if not app.state.context.schedule_store.update_course(course):
            raise HTTPException(status_code=404, detail="course not found")
        return {"message": "course updated", "course": course.to_dict()}

    @app.delete("/api/courses/{course_id}")
    def delete_course(course_id: str) -> dict[str, Any]:
        removed = app.state.context.schedule_store.delete_course(course_id)
        if not removed:
            raise HTTPException(status_code=404, detail="course not found")
        return {"message": "course deleted", "removed": removed}

    @app.post("/api/courses/{course_id}/reschedule")
    def reschedule_course(course_id: str, request: RescheduleRequest) -> dict[str, Any]:
        original_date = _parse_day(request.original_date, "original_date")
        new_date = _parse_day(request.new_date, "new_date")
        semester_start = _configured_semester_start(app.state.context.config_manager.load())
        if semester_start is None:
            raise HTTPException(status_code=409, detail="semester start_date is not configured")
        result = app.state.context.schedule_store.reschedule_course_occurrence(
            course_id,
            original_date,
            new_date,
            semester_start,
            name=request.name,
            location=request.location,
            start_period=request.start_period,
            end_period=request.end_period,
        )
        if result is None:
            raise HTTPException(status_code=404, detail="course not found")
        updated, shadow = result
        return {
            "message": "occurrence rescheduled",
            "course": updated.to_dict(),
            "shadow": shadow.to_dict() if shadow is not None else None,
        }

    @app.get("/api/courses/export")
    def export_courses() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        return {
            "courses": [course.to_dict() for course in app.state.context.schedule_store.courses()],
            "semester_start_date": config.semester.start_date,
            "total_weeks": config.semester.total_weeks,
            "periods": [slot.to_dict() for slot in config.semester.periods],
        }

    @app.post("/api/courses/import")
    def import_courses(request: CourseBackupRequest) -> dict[str, Any]:
        courses = [_course_from_payload(item) for item in request.courses]
        semester: dict[str, Any] = {}
        if request.semester_start_date:
            semester["start_date"] = _parse_day(request.semester_start_date, "semester_start_date").isoformat()
        if request.total_weeks is not None:
            semester["total_weeks"] = request.total_weeks
        if request.periods is not None:
            semester["periods"] = request.periods
        if semester:
            try:
                app.state.context.config_manager.update({"semester": semester})
            except (ValueError, TypeError) as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        # Courses go last so their change notification sees the new semester.
        app.state.context.schedule_store.replace_courses(courses)
        return {"message": "courses imported", "count": len(courses)}

    @app.get("/api/courses/day/{day}")
    def courses_on_day(day: str) -> dict[str, Any]:
        target = _parse_day(day)
        config = app.state.context.config_manager.load()
        events = occurrences_on(
            target,
            app.state.context.schedule_store.courses(),
            _configured_semester_start(config),
            config.semester.periods or None,
        )
        return {"date": target.isoformat(), "events": [event.to_dict() for event in events]}

    return app
