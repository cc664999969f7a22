class BookingError(Exception):
    """Base class for every failure the booking service reports to callers."""

    code = "BOOKING_ERROR"
    http_status = 400
    recoverable = False

    def __init__(self, message: str, *, code: str | None = None, booking_id: str | None = None,
                 recoverable: bool | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable
        self.booking_id = booking_id

    def to_dict(self):
        out = {"error": self.message, "code": self.code, "recoverable": self.recoverable}
        if self.booking_id:
            out["booking_id"] = self.booking_id
        if not self.recoverable:
            out["support"] = "Please contact support and quote your booking id."
        return out


# ---------- validation ----------
class ValidationError(BookingError):
    code = "VALIDATION_ERROR"
    http_status = 400
    recoverable = True


class InvalidTimeSlot(ValidationError):
    code = "INVALID_TIME_SLOT"


class SessionTypeInactive(ValidationError):
    code = "SESSION_TYPE_INACTIVE"


class InvalidRefundAmount(ValidationError):
    code = "INVALID_REFUND_AMOUNT"


class NotFoundError(BookingError):
    code = "NOT_FOUND"
    http_status = 404


# ---------- external providers ----------
class ProviderError(BookingError):
    code = "PROVIDER_ERROR"
    http_status = 502
    recoverable = True

    def __init__(self, message: str, *, provider: str, **kwargs):
        super().__init__(message, **kwargs)
        self.provider = provider


class TransientProviderError(ProviderError):
    """Timeouts, connection failures, 429 and 5xx. Retried by the adapters."""

    code = "PROVIDER_UNAVAILABLE"


class PermanentProviderError(ProviderError):
    code = "PROVIDER_REJECTED"
    recoverable = False


# ---------- state machine ----------
class StaleStateError(BookingError):
    """The booking already moved on; re-fetch it and decide again."""

    code = "STALE_STATE"
    http_status = 409
    recoverable = True


class ConcurrentUpdateError(StaleStateError):
    """Another writer changed the booking in the same state since it was read."""

    code = "CONCURRENT_UPDATE"


class ManualInterventionRequired(BookingError):
    code = "MANUAL_INTERVENTION_REQUIRED"
    http_status = 409
    recoverable = False


# ---------- webhook boundary ----------
class WebhookVerificationError(BookingError):
    code = "INVALID_SIGNATURE"
    http_status = 401


class MalformedWebhookError(BookingError):
    code = "MALFORMED_WEBHOOK"
    http_status = 400
