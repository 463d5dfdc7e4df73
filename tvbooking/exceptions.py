"""Domain exceptions shared by services, jobs and routers"""

from typing import Optional


class BookingSystemError(Exception):
    """Base class for errors raised by the booking domain"""

    status_code = 500
    # Short message safe to show to customers; details stay in the logs
    public_message = "Something went wrong. Please try again."

    def __init__(self, message: str, *, public_message: Optional[str] = None):
        super().__init__(message)
        if public_message is not None:
            self.public_message = public_message


class ValidationError(BookingSystemError):
    status_code = 400

    def __init__(self, message: str, *, public_message: Optional[str] = None):
        super().__init__(message, public_message=public_message or message)


class NotFoundError(BookingSystemError):
    status_code = 404

    def __init__(self, message: str, *, public_message: Optional[str] = None):
        super().__init__(message, public_message=public_message or message)


class ExternalServiceError(BookingSystemError):
    """Transient failure talking to Stripe, Twilio, Resend or a geocoder"""

    status_code = 502
    public_message = "A service we depend on is having trouble. Please try again."

    def __init__(self, service: str, message: str, *, status: Optional[int] = None):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status = status


class ExternalTimeoutError(ExternalServiceError):
    status_code = 504
    public_message = "This is taking longer than expected. We'll confirm the result shortly."

    def __init__(self, service: str, timeout: float):
        super().__init__(service, f"timed out after {timeout:.1f}s")
        self.timeout = timeout


class PaymentDeclinedError(BookingSystemError):
    """The processor answered and refused the operation"""

    status_code = 402

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message, public_message=message)
        self.code = code


class StateConflictError(BookingSystemError):
    """Operation does not apply to the current state (already captured, already cancelled, ...)"""

    status_code = 409

    def __init__(self, message: str, *, current_state: Optional[str] = None):
        super().__init__(message, public_message=message)
        self.current_state = current_state


class InvalidTransitionError(StateConflictError):
    def __init__(self, kind: str, current: str, target: str):
        super().__init__(
            f"Invalid {kind} transition from {current} to {target}", current_state=current
        )
        self.kind = kind
        self.target = target


class DataUnavailableError(BookingSystemError):
    status_code = 503
    public_message = "Coverage data is temporarily unavailable. Please try again shortly."
