from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timezone, tzinfo
from typing import Iterable

from coursebridge.mapper import external_span
from coursebridge.models import Event, EventFingerprint, ExternalEvent, PlainEvent


def _normalize(value: str | None) -> str:
    return (value or "").strip().lower()


def fingerprint(event: Event) -> EventFingerprint:
    return EventFingerprint(
        title=_normalize(event.title),
        location=_normalize(event.location),
        start_date=event.start_date,
        end_date=event.end_date,
        start_time=event.start_time,
        end_time=event.end_time,
    )


def fingerprint_external(external: ExternalEvent, tz: tzinfo = timezone.utc) -> EventFingerprint:
    start_date, end_date, start_time, end_time = external_span(external, tz)
    return EventFingerprint(
        title=_normalize(external.title),
        location=_normalize(external.location),
        start_date=start_date,
        end_date=end_date,
        start_time=start_time,
        end_time=end_time,
    )


@dataclass
class ImportReconciliation:
    to_add: list[PlainEvent] = field(default_factory=list)
    to_skip: list[PlainEvent] = field(default_factory=list)
    # (existing event, should_be_archived)
    to_reconcile_archive_status: list[tuple[PlainEvent, bool]] = field(default_factory=list)


def _index_by_fingerprint(events: Iterable[Event]) -> dict[EventFingerprint, PlainEvent]:
    index: dict[EventFingerprint, PlainEvent] = {}
    for event in events:
        if isinstance(event, PlainEvent):
            index[fingerprint(event)] = event
    return index


def reconcile_import(
    import_batch: Iterable[Event],
    existing_active: Iterable[Event],
    existing_archived: Iterable[Event],
    preserve_archive_status: bool = True,
) -> ImportReconciliation:
    """Split an import batch into new events and content duplicates.

    Duplicates are always skipped, never overwritten. When
    ``preserve_archive_status`` is set the batch decides archival state: an
    archived duplicate of an active event asks for that event to be archived,
    and an active duplicate of an archived event asks for it to be restored.
    """
    active_index = _index_by_fingerprint(existing_active)
    archived_index = _index_by_fingerprint(existing_archived)
    result = ImportReconciliation()

    for candidate in import_batch:
        if not isinstance(candidate, PlainEvent):
            continue
        key = fingerprint(candidate)

        matched_active = active_index.get(key)
        if matched_active is not None:
            if preserve_archive_status and candidate.archived:
                result.to_reconcile_archive_status.append((matched_active, True))
            result.to_skip.append(candidate)
            continue

        matched_archived = archived_index.get(key)
        if matched_archived is not None:
            if preserve_archive_status and not candidate.archived:
                result.to_reconcile_archive_status.append((matched_archived, False))
            result.to_skip.append(candidate)
            continue

        result.to_add.append(candidate)
    return result


def is_duplicate_of(
    external: ExternalEvent,
    existing: Iterable[Event],
    tz: tzinfo = timezone.utc,
) -> bool:
    key = fingerprint_external(external, tz)
    return any(isinstance(event, PlainEvent) and fingerprint(event) == key for event in existing)
