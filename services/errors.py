"""
Booking-domain errors.

Each error carries the HTTP status and the user-facing message the route
layer returns, so handlers stay thin and the wording lives in one place.
"""


class BookingError(Exception):
    status_code = 400
    user_message = "Request could not be completed"

    def __init__(self, message: str = None, **context):
        super().__init__(message or self.user_message)
        self.context = context

    @property
    def message(self) -> str:
        return str(self)


class SlotNotFound(BookingError):
    status_code = 404
    user_message = "Slot not found"


class BookingNotFound(BookingError):
    status_code = 404
    user_message = "Booking not found"


class SlotNoLongerAvailable(BookingError):
    """Claim precondition failed. When raised after a charge, the payment is queued for refund."""
    status_code = 409
    user_message = "This time is no longer available"

    def __init__(self, message: str = None, payment_captured: bool = False, **context):
        if message is None and payment_captured:
            message = (
                "This time is no longer available. Please select another slot "
                "and contact support for a refund if you were already charged."
            )
        super().__init__(message, **context)
        self.payment_captured = payment_captured


class PaymentNotConfirmed(BookingError):
    status_code = 402
    user_message = "Payment was not confirmed"


class InvalidStatusTransition(BookingError):
    status_code = 409
    user_message = "Status change not allowed"

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move booking from {current} to {requested}")
        self.current = current
        self.requested = requested


class MeetingProvisioningFailed(BookingError):
    """Never surfaced as a booking failure; the booking shows 'link pending'."""
    status_code = 502
    user_message = "Meeting link pending"


class RetentionSweepPartialFailure(BookingError):
    status_code = 500
    user_message = "Some rows could not be removed and will be retried"


class SlotConflict(BookingError):
    status_code = 409
    user_message = "Slot already exists for that time"


class InvalidSlotWindow(BookingError):
    status_code = 400
    user_message = "Invalid slot time window"


class InvalidMeetingLink(BookingError):
    status_code = 400
    user_message = "Meeting link must be a valid http(s) URL"


class CancellationWindowClosed(BookingError):
    status_code = 403
    user_message = "Cancellation window has closed"


class SelfBookingNotAllowed(BookingError):
    status_code = 400
    user_message = "You cannot book your own consultation slots"
