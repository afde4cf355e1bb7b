from __future__ import annotations


class CalendarSyncError(RuntimeError):
    """Base class for calendar feed sync failures."""


class ParseError(CalendarSyncError):
    """Raised when a calendar object is not valid iCalendar text."""


class MissingStartTimeError(CalendarSyncError):
    """Raised when a VEVENT has no DTSTART."""


class RemoteFetchError(CalendarSyncError):
    """Raised when a remote calendar cannot be read."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class WebCalNotFoundError(RemoteFetchError):
    """Raised when a WebCal URL does not serve text/calendar."""

    def __init__(self, message: str = "WebCal not found") -> None:
        super().__init__(message, status_code=404)


class RemoteMutationError(CalendarSyncError):
    """Raised when a remote create/update/delete is rejected."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FeedNotFoundError(CalendarSyncError):
    """Raised when a feed reference does not resolve to a stored feed."""


class FeedSyncInProgressError(CalendarSyncError):
    """Raised when another sync of the same feed holds the lock."""


class UnsupportedProviderError(CalendarSyncError):
    """Raised when a feed type has no provider in this package."""


class AccountConfigurationError(CalendarSyncError):
    """Raised when a connected account lacks CalDAV settings or credentials."""


class EventNotFoundError(CalendarSyncError):
    """Raised when an event id does not resolve to a stored event."""
