"""Error taxonomy shared by the store, feed and reconciler."""


class PeakTrackerError(Exception):
    """Base class for expected, classified failures."""


class ValidationError(PeakTrackerError):
    """Input supplied by the caller is invalid; retrying will not help."""


class InvalidUsername(ValidationError):
    """Username is empty or too long after trimming."""


class InvalidSessionCode(ValidationError):
    """Session code is not four alphanumeric characters."""


class InvalidLocation(ValidationError):
    """Coordinates are outside the valid range."""


class NotFoundError(PeakTrackerError):
    """A session or member does not exist (or no longer exists)."""


class SessionNotFound(NotFoundError):
    """No live session matches the given code or id."""

    def __init__(self, message: str = "Session not found. Check your code.") -> None:
        super().__init__(message)


class MemberNotFound(NotFoundError):
    """The member row was deleted or is not owned by the caller."""

    def __init__(self, message: str = "Member not found.") -> None:
        super().__init__(message)


class StoreUnavailable(PeakTrackerError):
    """The backing store failed; the operation may be retried."""


class CodeConflict(PeakTrackerError):
    """A session with the same code already exists."""


class SubscriptionError(PeakTrackerError):
    """The change feed subscription was interrupted."""


class SubscriptionClosed(SubscriptionError):
    """The subscription was closed normally (unsubscribe or session end)."""
