"""
Domain errors raised by the booking engine.

Every error carries a stable ``code`` (the name clients branch on) and a
``category``:

- validation: caller input violates a precondition, never retried automatically
- not_found / authorization: the caller cannot act on this resource
- conflict: a concurrent mutation won, retry with fresh data
- external: the payment processor failed, booking left in a well-defined state
- integrity: inconsistent inbound data, logged and never shown to end users

The API layer renders these through a single exception handler (see main.py).
"""

from typing import Any, Optional

from fastapi import status


class BookingEngineError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    category: str = "validation"
    default_code: str = "BookingEngineError"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        payload = {"detail": self.message, "code": self.code, "category": self.category}
        if self.details:
            payload["details"] = self.details
        return payload


# --- validation -----------------------------------------------------------

class ValidationError(BookingEngineError):
    default_code = "ValidationError"


class PastDateError(ValidationError):
    default_code = "PastDate"


class CapacityExceededError(ValidationError):
    default_code = "CapacityExceeded"


class OutOfScheduleError(ValidationError):
    default_code = "OutOfSchedule"


class DateBlackedOutError(ValidationError):
    default_code = "DateBlackedOut"


class NotCancellableError(ValidationError):
    default_code = "NotCancellable"


class InvalidTransitionError(ValidationError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "InvalidTransition"


class InvalidSourceError(ValidationError):
    default_code = "InvalidSource"


class InsufficientParticipantsError(ValidationError):
    default_code = "InsufficientParticipants"


class InvalidParticipantError(ValidationError):
    default_code = "InvalidParticipant"


class OutOfRangeError(ValidationError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_code = "OutOfRange"


# --- lookup / authorization ----------------------------------------------

class NotFoundError(BookingEngineError):
    status_code = status.HTTP_404_NOT_FOUND
    category = "not_found"
    default_code = "NotFound"


class InactiveError(NotFoundError):
    default_code = "Inactive"


class AuthorizationError(BookingEngineError):
    status_code = status.HTTP_403_FORBIDDEN
    category = "authorization"
    default_code = "Unauthorized"


class NotAttendedError(AuthorizationError):
    default_code = "NotAttended"


# --- conflicts ------------------------------------------------------------

class ConflictError(BookingEngineError):
    status_code = status.HTTP_409_CONFLICT
    category = "conflict"
    default_code = "Conflict"


class SlotFullError(ConflictError):
    default_code = "SlotFull"


class AlreadyTerminalError(ConflictError):
    default_code = "AlreadyTerminal"


class BookingNotPendingError(ConflictError):
    default_code = "BookingNotPending"


class PaymentInProgressError(ConflictError):
    default_code = "PaymentInProgress"


class AlreadyRatedError(ConflictError):
    default_code = "AlreadyRated"


class AlreadyReviewedError(ConflictError):
    default_code = "AlreadyReviewed"


class ConcurrentModificationError(ConflictError):
    default_code = "ConcurrentModification"


# --- external dependencies -----------------------------------------------

GENERIC_GATEWAY_MESSAGE = "Payment could not be processed right now. Please try again."


class ExternalDependencyError(BookingEngineError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    category = "external"
    default_code = "GatewayUnavailable"

    def __init__(self, message: str = GENERIC_GATEWAY_MESSAGE, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class GatewayUnavailableError(ExternalDependencyError):
    default_code = "GatewayUnavailable"


class GatewayTimeoutError(GatewayUnavailableError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_code = "GatewayTimeout"


class DeclinedError(ExternalDependencyError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_code = "Declined"

    def __init__(self, message: str = "The payment was declined by the card issuer.", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class CatalogUnavailableError(ExternalDependencyError):
    default_code = "CatalogUnavailable"

    def __init__(self, message: str = "Activity catalog is unavailable. Please try again.", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


# --- inbound webhooks / integrity -----------------------------------------

class BadSignatureError(BookingEngineError):
    category = "authenticity"
    default_code = "BadSignature"


class BadPayloadError(BookingEngineError):
    default_code = "BadPayload"


class IntegrityViolation(BookingEngineError):
    """Never rendered to end users; callers log and dead-letter or reject."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    category = "integrity"
    default_code = "IntegrityViolation"
