"""Error taxonomy for the booking engine.

Every user-facing failure is a ``BookingError`` subclass carrying the HTTP
status it maps to:

  InputValidationError        400  caller-fixable input problem
  TokenInvalid                403  bad signature, wrong purpose, wrong booking
  NotFoundError               404  unknown host, booking or event type
  SlotConflict                409  slot no longer free, retry after refresh
  TokenExpired                410  token past its expiry
  TokenConsumed               410  token already used once
  RescheduleBudgetExhausted   410  booking already rescheduled the maximum times
  BookingAlreadyTerminal      410  booking is canceled
  RateLimited                 429  caller over quota

``CalendarProviderUnavailable`` sits outside that hierarchy: it is a
soft failure that degrades availability and is never returned to callers.
"""

from __future__ import annotations

from typing import Any


class BookingError(Exception):
    """Base class for errors returned to callers."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    default_message: str = "Internal error"

    def __init__(self, message: str = "", **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InputValidationError(BookingError):
    status_code = 400
    code = "INVALID_INPUT"
    default_message = "Invalid input"


class NotFoundError(BookingError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class TokenInvalid(BookingError):
    status_code = 403
    code = "TOKEN_INVALID"
    default_message = "Invalid token"


class TokenExpired(BookingError):
    status_code = 410
    code = "TOKEN_EXPIRED"
    default_message = "This link has expired"


class TokenConsumed(BookingError):
    status_code = 410
    code = "TOKEN_CONSUMED"
    default_message = "This link has already been used"


class RescheduleBudgetExhausted(BookingError):
    status_code = 410
    code = "RESCHEDULE_LIMIT_REACHED"
    default_message = "Maximum reschedule limit reached for this booking"


class BookingAlreadyTerminal(BookingError):
    status_code = 410
    code = "BOOKING_CANCELED"
    default_message = "This booking has been canceled"


class SlotConflict(BookingError):
    """The requested interval is no longer free.

    Callers refresh availability and retry; stale reads and lost insert races
    both surface as this one error.
    """

    status_code = 409
    code = "SLOT_CONFLICT"
    default_message = "This time slot is no longer available"
    retryable = True


class RateLimited(BookingError):
    status_code = 429
    code = "RATE_LIMITED"
    default_message = "Too many requests. Please try again later."

    def __init__(
        self,
        message: str = "",
        *,
        retry_after: int,
        limit: int,
        remaining: int = 0,
    ) -> None:
        super().__init__(message, retry_after=retry_after, limit=limit)
        self.retry_after = retry_after
        self.limit = limit
        self.remaining = remaining


class CalendarProviderUnavailable(Exception):
    """An external calendar could not be reached or refused the call."""

    def __init__(self, message: str, calendar_id: str | None = None) -> None:
        super().__init__(message)
        self.calendar_id = calendar_id
