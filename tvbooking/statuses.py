"""
Booking, payment and transaction status model.

Stored values are part of the persisted contract and must not change.
Every status write goes through validate_transition(); Stripe payment
intent states are translated with map_stripe_status().

Lifecycles:
    Booking:     pending → payment_pending → confirmed → in_progress → completed
                 (cancelled / failed reachable before completion)
    Payment:     pending → authorized → captured/completed → refunded
                 (failed / cancelled / expired reachable before capture)
    Transaction: pending → authorized → completed → refunded
"""

from dataclasses import dataclass
from enum import Enum

from .exceptions import InvalidTransitionError, ValidationError


class BookingStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_PENDING = "payment_pending"
    # Legacy synonym of CONFIRMED. Accepted when read, never written.
    PAYMENT_AUTHORIZED = "payment_authorized"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    FAILED = "failed"
    EXPIRED = "expired"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class TransactionType(str, Enum):
    AUTHORIZATION = "authorization"
    CAPTURE = "capture"
    REFUND = "refund"
    INCREMENT = "increment"


B = BookingStatus
P = PaymentStatus
T = TransactionStatus

CONFIRMED_FAMILY = frozenset({B.CONFIRMED, B.PAYMENT_AUTHORIZED, B.IN_PROGRESS, B.COMPLETED})
CAPTURED_FAMILY = frozenset({P.CAPTURED, P.COMPLETED})
OPEN_BOOKING_STATUSES = frozenset({B.PENDING, B.PAYMENT_PENDING})
# Statuses that still occupy a worker's calendar
ACTIVE_BOOKING_STATUSES = frozenset(
    {B.PENDING, B.PAYMENT_PENDING, B.PAYMENT_AUTHORIZED, B.CONFIRMED, B.IN_PROGRESS}
)

BOOKING_TRANSITIONS = {
    B.PENDING: {B.PAYMENT_PENDING, B.CONFIRMED, B.CANCELLED, B.FAILED},
    B.PAYMENT_PENDING: {B.CONFIRMED, B.CANCELLED, B.FAILED},
    B.PAYMENT_AUTHORIZED: {B.CONFIRMED, B.IN_PROGRESS, B.COMPLETED, B.CANCELLED, B.FAILED},
    B.CONFIRMED: {B.IN_PROGRESS, B.COMPLETED, B.CANCELLED, B.FAILED},
    B.IN_PROGRESS: {B.COMPLETED, B.CANCELLED},
    B.COMPLETED: set(),
    B.CANCELLED: set(),
    # A declined card may be retried
    B.FAILED: {B.PAYMENT_PENDING, B.CONFIRMED, B.CANCELLED},
}

PAYMENT_TRANSITIONS = {
    P.PENDING: {P.AUTHORIZED, P.CAPTURED, P.COMPLETED, P.FAILED, P.CANCELLED, P.EXPIRED},
    P.AUTHORIZED: {P.CAPTURED, P.COMPLETED, P.CANCELLED, P.FAILED, P.EXPIRED},
    P.CAPTURED: {P.COMPLETED, P.REFUNDED},
    P.COMPLETED: {P.CAPTURED, P.REFUNDED},
    P.REFUNDED: set(),
    P.CANCELLED: set(),
    P.FAILED: {P.PENDING, P.AUTHORIZED, P.CAPTURED, P.CANCELLED, P.EXPIRED},
    P.EXPIRED: set(),
}

TRANSACTION_TRANSITIONS = {
    T.PENDING: {T.AUTHORIZED, T.COMPLETED, T.FAILED, T.CANCELLED},
    T.AUTHORIZED: {T.COMPLETED, T.FAILED, T.CANCELLED},
    T.COMPLETED: {T.REFUNDED},
    T.FAILED: {T.PENDING, T.AUTHORIZED, T.COMPLETED},
    T.CANCELLED: set(),
    T.REFUNDED: set(),
}

_TABLES = {
    "booking": (BookingStatus, BOOKING_TRANSITIONS),
    "payment": (PaymentStatus, PAYMENT_TRANSITIONS),
    "transaction": (TransactionStatus, TRANSACTION_TRANSITIONS),
}


def validate_transition(kind: str, current, target):
    """
    Check a status write against the allowed-transition table.

    Args:
        kind: "booking", "payment" or "transaction"
        current: Stored value (enum member or raw string)
        target: Value about to be written

    Returns:
        The target as an enum member

    Raises:
        ValidationError: unknown status value
        InvalidTransitionError: write not allowed from the current value
    """
    enum_cls, table = _TABLES[kind]
    try:
        target_value = enum_cls(target)
    except ValueError:
        raise ValidationError(f"Unknown {kind} status: {target}")
    if current is None:
        return target_value
    try:
        current_value = enum_cls(current)
    except ValueError:
        raise ValidationError(f"Unknown stored {kind} status: {current}")

    if current_value == target_value:
        return target_value
    if target_value not in table[current_value]:
        raise InvalidTransitionError(kind, current_value.value, target_value.value)
    return target_value


def can_transition(kind: str, current, target) -> bool:
    try:
        validate_transition(kind, current, target)
        return True
    except (InvalidTransitionError, ValidationError):
        return False


# Booking statuses a transaction may move into a given status under
TRANSACTION_BOOKING_PRECONDITIONS = {
    T.AUTHORIZED: CONFIRMED_FAMILY,
    T.COMPLETED: CONFIRMED_FAMILY,
    T.REFUNDED: CONFIRMED_FAMILY | {B.CANCELLED},
}


def check_transaction_precondition(target, booking_status) -> None:
    """Transactions may only advance once their booking has reached a matching status"""
    allowed = TRANSACTION_BOOKING_PRECONDITIONS.get(TransactionStatus(target))
    if allowed is None or booking_status is None:
        return
    if BookingStatus(booking_status) not in allowed:
        raise InvalidTransitionError(
            "transaction", f"booking:{BookingStatus(booking_status).value}", TransactionStatus(target).value
        )


@dataclass(frozen=True)
class StatusMapping:
    """Canonical local statuses for one external payment intent status"""

    stripe_status: str
    transaction_status: TransactionStatus
    booking_status: BookingStatus
    payment_status: PaymentStatus
    # Stored values already considered consistent with the external state
    accepted_transaction: frozenset
    accepted_booking: frozenset
    accepted_payment: frozenset


_AUTHORIZED = StatusMapping(
    stripe_status="requires_capture",
    transaction_status=T.AUTHORIZED,
    booking_status=B.CONFIRMED,
    payment_status=P.AUTHORIZED,
    accepted_transaction=frozenset({T.AUTHORIZED}),
    accepted_booking=CONFIRMED_FAMILY,
    accepted_payment=frozenset({P.AUTHORIZED}),
)

_SUCCEEDED = StatusMapping(
    stripe_status="succeeded",
    transaction_status=T.COMPLETED,
    booking_status=B.CONFIRMED,
    payment_status=P.CAPTURED,
    accepted_transaction=frozenset({T.COMPLETED, T.REFUNDED}),
    accepted_booking=CONFIRMED_FAMILY,
    accepted_payment=CAPTURED_FAMILY | {P.REFUNDED},
)

_FAILED = StatusMapping(
    stripe_status="canceled",
    transaction_status=T.FAILED,
    booking_status=B.FAILED,
    payment_status=P.FAILED,
    accepted_transaction=frozenset({T.FAILED, T.CANCELLED}),
    accepted_booking=frozenset({B.FAILED, B.CANCELLED}),
    accepted_payment=frozenset({P.FAILED, P.CANCELLED, P.EXPIRED}),
)

_PENDING = StatusMapping(
    stripe_status="processing",
    transaction_status=T.PENDING,
    booking_status=B.PAYMENT_PENDING,
    payment_status=P.PENDING,
    accepted_transaction=frozenset({T.PENDING}),
    accepted_booking=frozenset({B.PAYMENT_PENDING}),
    accepted_payment=frozenset({P.PENDING}),
)

STRIPE_STATUS_MAP = {
    "requires_capture": _AUTHORIZED,
    "succeeded": _SUCCEEDED,
    "canceled": _FAILED,
    "payment_failed": _FAILED,
    "processing": _PENDING,
    "requires_action": _PENDING,
    "requires_payment_method": _PENDING,
    "requires_confirmation": _PENDING,
}


def map_stripe_status(stripe_status: str) -> StatusMapping:
    """Translate a Stripe PaymentIntent status into canonical local statuses"""
    mapping = STRIPE_STATUS_MAP.get(stripe_status)
    if mapping is None:
        raise ValidationError(f"Unknown payment intent status: {stripe_status}")
    return mapping


def is_consistent(status, payment_status) -> bool:
    """Booking/payment pair invariants that must hold for every stored row"""
    status = BookingStatus(status)
    payment_status = PaymentStatus(payment_status)
    if status in CONFIRMED_FAMILY and payment_status == P.PENDING:
        return False
    if payment_status in CAPTURED_FAMILY and status not in CONFIRMED_FAMILY:
        return False
    return True
