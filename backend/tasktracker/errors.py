from __future__ import annotations


class TrackerError(Exception):
    """Base class for every failure the tracker reports to its callers."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(TrackerError):
    """Invalid entity field or request value."""

    status_code = 422


class InvalidDurationError(ValidationError):
    """Duration is negative or exceeds the allowed maximum."""


class NotFoundError(TrackerError):
    status_code = 404


class TaskNotFoundError(NotFoundError):
    """Task not found."""


class TimeEntryNotFoundError(NotFoundError):
    """Time entry not found."""


class StateConflictError(TrackerError):
    status_code = 409


class TimerAlreadyActiveError(StateConflictError):
    """A task timer is already running."""


class NoActiveTimerError(StateConflictError):
    """No task timer is running."""


class MealBreakAlreadyActiveError(StateConflictError):
    """A meal break is already running."""


class NoActiveMealBreakError(StateConflictError):
    """No meal break is running."""


class ActiveTaskDeleteError(StateConflictError):
    """The active task cannot be deleted."""


class DuplicateTaskNameError(StateConflictError):
    """A task with this name already exists."""


class EntryStillRunningError(StateConflictError):
    """Running time entries cannot be adjusted."""


class DateError(TrackerError):
    status_code = 400


class InvalidDateError(DateError):
    """Date must be a real calendar date in YYYY-MM-DD format."""


class InvalidDateRangeError(DateError):
    """Start date must not be after end date."""


class StorageError(TrackerError):
    status_code = 500


class StorageQuotaExceededError(StorageError):
    """Snapshot exceeds the storage quota."""

    status_code = 507


class SnapshotSyntaxError(StorageError, ValueError):
    """Stored data is not valid JSON."""

    status_code = 400


class StorageAccessError(StorageError):
    """Storage backend could not be read or written."""

    status_code = 503


class UnsupportedFormatError(TrackerError):
    """Export format is not supported."""

    status_code = 400
