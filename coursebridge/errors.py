from __future__ import annotations


class SyncError(Exception):
    """Base class for failures surfaced by a sync pass."""

    kind = "sync_error"


class PermissionDenied(SyncError):
    kind = "permission_denied"


class CalendarUnresolved(SyncError):
    kind = "calendar_unresolved"


class ProviderUnavailable(SyncError):
    kind = "provider_unavailable"


class MalformedPersistedState(SyncError):
    kind = "malformed_state"


class ConversionError(SyncError):
    kind = "conversion_failed"
