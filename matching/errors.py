"""Exceptions raised by the match engine."""


class MatchingError(Exception):
    """Base class for match engine errors."""

    retryable = False


class InputError(MatchingError):
    """Invalid user id or malformed event."""


class TransientStoreError(MatchingError):
    """The persistent store failed; the run can be retried."""

    retryable = True


class DeadlineExceeded(MatchingError):
    """The caller's deadline passed before the run could write."""

    retryable = True


class NotificationError(MatchingError):
    """The push dispatcher failed or rejected the request."""
