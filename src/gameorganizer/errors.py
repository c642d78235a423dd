"""Error taxonomy for the lending engine.

Every business-rule failure is raised where it is detected as one of the
classes below and travels unchanged to the caller boundary, where
``error_response`` turns it into a status code and a user-facing message.
"""

import logging

logger = logging.getLogger(__name__)


class LendingError(Exception):
    """Base exception for lending engine errors."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LendingError):
    """Raised for malformed input: missing or inverted dates, bad status values, self-borrowing."""

    status_code = 400


class UnauthenticatedError(LendingError):
    """Raised when no caller identity can be resolved."""

    status_code = 401


class ForbiddenError(LendingError):
    """Raised when the authorization guard denies an operation."""

    status_code = 403


class NotFoundError(LendingError):
    """Raised when a game, account, request or record does not exist."""

    status_code = 404


class ConflictError(LendingError):
    """Raised when a period overlaps an already approved request."""

    status_code = 409


class StateError(LendingError):
    """Raised for illegal state transitions."""

    status_code = 409


def error_response(exc: BaseException) -> tuple[int, str]:
    """Map an exception to a ``(status_code, message)`` pair.

    Unexpected exceptions are logged and reported as a generic server error
    so internals never reach the caller.
    """
    if isinstance(exc, LendingError):
        return exc.status_code, exc.message
    logger.exception("Unexpected error", exc_info=exc)
    return 500, "Internal server error"
