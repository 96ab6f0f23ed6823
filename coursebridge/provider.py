"""Calendar provider interface consumed by the sync orchestrator."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from coursebridge.models import CalDAVConfig, CalendarInfo, EventFields, ExternalEvent


class CalendarProvider(ABC):
    """Raw access to an external calendar store.

    Implementations raise ``ProviderUnavailable`` for transport failures.
    "Not found" is reported through return values, never as an exception, so
    the orchestrator can tell a vanished event from an unreachable server.
    """

    @abstractmethod
    def list_writable_calendars(self) -> list[CalendarInfo]:
        ...

    @abstractmethod
    def create_calendar(self, name: str) -> CalendarInfo:
        ...

    @abstractmethod
    def create_event(self, calendar_id: str, fields: EventFields) -> str | None:
        """Create one event. Returns the new external id, or None on failure."""
        ...

    @abstractmethod
    def update_event(self, calendar_id: str, external_id: str, fields: EventFields) -> bool:
        """Returns False when the event no longer exists."""
        ...

    @abstractmethod
    def delete_event(self, calendar_id: str, external_id: str) -> bool:
        """Returns False when the event no longer exists."""
        ...

    @abstractmethod
    def batch_create(self, calendar_id: str, items: dict[str, EventFields]) -> dict[str, str]:
        """Create many events keyed by a caller-chosen virtual id.

        Returns virtual id -> external id for the items that were created.
        Missing keys are items that failed.
        """
        ...

    @abstractmethod
    def batch_delete(self, calendar_id: str, external_ids: list[str]) -> int:
        ...

    @abstractmethod
    def query_by_ids(self, calendar_id: str, external_ids: list[str]) -> list[ExternalEvent]:
        ...

    @abstractmethod
    def query_by_range(self, calendar_id: str, start: datetime, end: datetime) -> list[ExternalEvent]:
        ...

    @abstractmethod
    def managed_event_ids(self, calendar_id: str, marker: str) -> list[str]:
        """Ids of events whose description contains ``marker``."""
        ...


class PermissionGate(ABC):
    @abstractmethod
    def has_calendar_access(self) -> bool:
        ...


class CredentialsPermissionGate(PermissionGate):
    """Grants access once CalDAV credentials are configured."""

    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config

    def has_calendar_access(self) -> bool:
        return self.config.is_complete()
