"""
Error types raised by the reminder core.

The HTTP layer in main.py maps each of these to a status code; library callers
can catch them directly.
"""


class ReminderError(Exception):
    """Base class for every error raised on purpose by this package."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(ReminderError):
    status_code = 400


class NotFoundError(ReminderError):
    status_code = 404


class PermissionDeniedError(ReminderError):
    status_code = 403


class ConflictError(ReminderError):
    status_code = 409


class AlreadyActiveError(ConflictError):
    pass


class AlreadyPendingError(ConflictError):
    pass


class TransientStoreError(ReminderError):
    """Raised by a store when a transaction lost a race or the backend hiccuped.

    Retried by ``database.transact_with_retry``; surfaces to callers as ConflictError
    once the retry budget is spent.
    """

    status_code = 503
