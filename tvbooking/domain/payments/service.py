"""Payment service - Authorization hold lifecycle (authorize, capture, increment, cancel, refund)"""

import logging
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from ...config import DEFAULT_CURRENCY, PAYMENT_INTENT_TIMEOUT_SECONDS, PAYMENT_MAX_ATTEMPTS
from ...email_templates import increment_notification_template
from ...exceptions import (
    BookingSystemError,
    ExternalServiceError,
    ExternalTimeoutError,
    NotFoundError,
    PaymentDeclinedError,
    StateConflictError,
    ValidationError,
)
from ...models import Booking
from ...retry import Failed, Succeeded, TimedOut, invoke_with_retry
from ...statuses import (
    CAPTURED_FAMILY,
    CONFIRMED_FAMILY,
    BookingStatus,
    PaymentStatus,
    TransactionStatus,
    TransactionType,
    can_transition,
    map_stripe_status,
)
from ..bookings.repository import BookingRepository
from .reconciliation import ReconciliationService, validate_booking_reference
from .repository import PaymentRepository
from .stripe_service import StripeService, stripe_service

logger = logging.getLogger(__name__)

EXPIRED_AUTHORIZATION_MESSAGE = "Payment authorization has expired"
VALID_CANCELLATION_REASONS = {"duplicate", "fraudulent", "requested_by_customer", "abandoned"}


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


class PaymentService:
    """Service layer for manual-capture card payments"""

    def __init__(
        self,
        db: Session,
        stripe: Optional[StripeService] = None,
        notifier=None,
        retry_delay: float = 0.5,
    ):
        self.db = db
        self.stripe = stripe or stripe_service
        self.notifier = notifier
        self.retry_delay = retry_delay
        self.repo = BookingRepository()
        self.payments = PaymentRepository()
        self.reconciler = ReconciliationService(db, self.stripe, retry_delay=retry_delay)

    async def _call(self, name: str, operation):
        """Run one Stripe call through the retrying invoker"""
        return await invoke_with_retry(
            operation,
            timeout=PAYMENT_INTENT_TIMEOUT_SECONDS,
            max_attempts=PAYMENT_MAX_ATTEMPTS,
            retry_delay=self.retry_delay,
            name=name,
        )

    def _get_booking(self, booking_id: str) -> Booking:
        validate_booking_reference(booking_id)
        booking = self.repo.get_booking(self.db, booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    @staticmethod
    def _pending_response(payment_intent_id: Optional[str] = None) -> dict:
        return {
            "success": False,
            "pending": True,
            "payment_intent_id": payment_intent_id,
            "error": ExternalTimeoutError.public_message,
        }

    @staticmethod
    def _failure_message(error: Exception) -> str:
        if isinstance(error, BookingSystemError):
            return error.public_message
        return ExternalServiceError.public_message

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def create_authorization(
        self,
        booking_id: Optional[str],
        amount: float,
        currency: str = DEFAULT_CURRENCY,
        payment_method: Optional[str] = None,
    ) -> dict:
        """
        Place a manual-capture hold for a booking (or a pre-booking hold when booking_id is None).

        Returns:
            {success, client_secret, payment_intent_id, transaction_id} or {success: False, error}
        """
        validate_booking_reference(booking_id)
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if not currency or len(currency) != 3 or not currency.isalpha():
            raise ValidationError("Currency must be a 3-letter ISO code")

        booking = None
        if booking_id:
            booking = self._get_booking(booking_id)
            if PaymentStatus(booking.payment_status) in CAPTURED_FAMILY | {PaymentStatus.AUTHORIZED}:
                txn = self.payments.get_primary_transaction(self.db, booking.payment_intent_id or "")
                logger.info(f"ℹ️ Booking {booking.id} already holds payment {booking.payment_intent_id}")
                return {
                    "success": True,
                    "already_authorized": True,
                    "client_secret": None,
                    "payment_intent_id": booking.payment_intent_id,
                    "transaction_id": txn.id if txn else None,
                }
            if not can_transition("booking", booking.status, BookingStatus.PAYMENT_PENDING):
                raise StateConflictError(
                    f"Booking is {booking.status} and cannot take a new payment",
                    current_state=booking.status,
                )
            self.repo.update_status(
                self.db,
                booking,
                status=BookingStatus.PAYMENT_PENDING,
                payment_status=PaymentStatus.PENDING,
                extra={"total_price": round(amount, 2)},
            )
            self.db.commit()

        amount_cents = to_cents(amount)
        # One key for every retry of this request so Stripe never places two holds
        idempotency_key = f"auth-{booking_id or 'hold'}-{uuid.uuid4()}"
        logger.info(f"💳 Authorizing {amount_cents} {currency} for booking {booking_id}")

        result = await self._call(
            f"authorize:{booking_id}",
            lambda: self.stripe.create_payment_intent(
                amount_cents,
                currency,
                payment_method=payment_method,
                metadata={"booking_id": booking_id} if booking_id else {},
                idempotency_key=idempotency_key,
            ),
        )

        if isinstance(result, TimedOut):
            logger.warning(f"⚠️ Authorization for booking {booking_id} timed out; left for reconciliation")
            return self._pending_response()

        if isinstance(result, Failed):
            error = result.error
            logger.error(f"❌ Authorization failed for booking {booking_id}: {error}")
            if isinstance(error, PaymentDeclinedError) and booking is not None:
                self.repo.update_status(
                    self.db, booking, status=BookingStatus.FAILED, payment_status=PaymentStatus.FAILED
                )
                self.payments.create_transaction(
                    self.db,
                    booking_id=booking.id,
                    payment_intent_id=None,
                    amount=amount,
                    currency=currency,
                    status=TransactionStatus.FAILED,
                    payment_method=payment_method,
                )
                self.db.commit()
            return {"success": False, "error": self._failure_message(error)}

        intent = result.value
        intent_id = intent["id"]
        mapping = map_stripe_status(intent.get("status"))

        try:
            if booking is not None:
                if booking.payment_intent_id and booking.payment_intent_id != intent_id:
                    # New attempt after a failed one replaces the stale reference
                    self.repo.update_status(self.db, booking, extra={"payment_intent_id": intent_id})
                fixes, conflicts = self.reconciler.apply_mapping(
                    booking, mapping, None, intent_id, amount=amount, currency=currency
                )
                if conflicts:
                    logger.warning(f"⚠️ Authorization {intent_id} left conflicts: {conflicts}")
                txn = self.payments.get_primary_transaction(self.db, intent_id)
                if txn is None:
                    txn = self.payments.create_transaction(
                        self.db, booking.id, intent_id, amount, currency, payment_method=payment_method
                    )
                txn.payment_method = payment_method
                self.repo.add_audit_log(
                    self.db,
                    booking.id,
                    "payment_authorized",
                    {"payment_intent_id": intent_id, "amount": amount, "stripe_status": intent.get("status")},
                )
            else:
                txn = self.payments.create_transaction(
                    self.db,
                    booking_id=None,
                    payment_intent_id=intent_id,
                    amount=amount,
                    currency=currency,
                    status=mapping.transaction_status,
                    payment_method=payment_method,
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"✅ Authorization {intent_id} stored as {txn.status} for booking {booking_id}")
        return {
            "success": True,
            "client_secret": intent.get("client_secret"),
            "payment_intent_id": intent_id,
            "transaction_id": txn.id,
            "status": intent.get("status"),
            "requires_action": intent.get("status") == "requires_action",
        }

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def _captured_amount(self, booking: Booking) -> float:
        capture = self.payments.get_capture_transaction(self.db, booking.payment_intent_id or "")
        return capture.amount if capture else booking.total_price

    async def capture(self, booking_id: str, amount: Optional[float] = None) -> dict:
        """
        Capture a held payment, fully or partially.

        Returns:
            {success, amount_captured}

        Raises:
            StateConflictError: payment is not in a capturable state
        """
        booking = self._get_booking(booking_id)

        if PaymentStatus(booking.payment_status) in CAPTURED_FAMILY:
            logger.info(f"ℹ️ Booking {booking.id} already captured; nothing to do")
            return {
                "success": True,
                "already_captured": True,
                "message": "Payment already captured",
                "amount_captured": self._captured_amount(booking),
            }

        if booking.payment_status != PaymentStatus.AUTHORIZED.value and booking.payment_intent_id:
            # Local row may be lagging behind Stripe
            await self.reconciler.reconcile(booking.id)
            self.db.refresh(booking)
            if PaymentStatus(booking.payment_status) in CAPTURED_FAMILY:
                return {
                    "success": True,
                    "already_captured": True,
                    "message": "Payment already captured",
                    "amount_captured": self._captured_amount(booking),
                }

        if booking.payment_status != PaymentStatus.AUTHORIZED.value or not booking.payment_intent_id:
            raise StateConflictError(
                f"Payment cannot be captured while {booking.payment_status}",
                current_state=booking.payment_status,
            )

        intent_id = booking.payment_intent_id
        amount_cents = None
        if amount is not None:
            if amount <= 0:
                raise ValidationError("Capture amount must be greater than zero")
            if booking.total_price and amount > booking.total_price + 0.005:
                raise ValidationError("Capture amount exceeds the authorized amount")
            amount_cents = to_cents(amount)

        capture_key = f"capture-{intent_id}-{uuid.uuid4()}"
        result = await self._call(
            f"capture:{intent_id}",
            lambda: self.stripe.capture_payment_intent(
                intent_id, amount_to_capture=amount_cents, idempotency_key=capture_key
            ),
        )

        if isinstance(result, TimedOut):
            logger.warning(f"⚠️ Capture of {intent_id} timed out; authorized sweep will settle it")
            return self._pending_response(intent_id)

        if isinstance(result, Failed):
            error = result.error
            if isinstance(error, StateConflictError):
                logger.warning(f"⚠️ Capture of {intent_id} hit unexpected state {error.current_state}")
                reconciled = await self.reconciler.reconcile(booking.id)
                if reconciled["stripe_status"] == "succeeded":
                    self.db.refresh(booking)
                    return {
                        "success": True,
                        "already_captured": True,
                        "message": "Payment already captured",
                        "amount_captured": self._captured_amount(booking),
                    }
                raise StateConflictError(EXPIRED_AUTHORIZATION_MESSAGE, current_state=reconciled["stripe_status"])
            if "cannot be captured" in str(error).lower():
                await self.reconciler.reconcile(booking.id)
                raise StateConflictError(EXPIRED_AUTHORIZATION_MESSAGE, current_state=booking.payment_status)
            logger.error(f"❌ Capture of {intent_id} failed: {error}")
            return {"success": False, "error": self._failure_message(error)}

        intent = result.value
        try:
            fixes, conflicts = self.reconciler.apply_mapping(
                booking, map_stripe_status(intent.get("status")), self.payments.get_primary_transaction(self.db, intent_id), intent_id
            )
            fixes.extend(self.reconciler.record_capture(booking, intent))
            self.repo.add_audit_log(
                self.db,
                booking.id,
                "payment_captured",
                {"payment_intent_id": intent_id, "amount_received": intent.get("amount_received"), "fixes": fixes},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        if conflicts:
            logger.warning(f"⚠️ Capture of {intent_id} recorded with conflicts: {conflicts}")

        amount_captured = round((intent.get("amount_received") or 0) / 100, 2)
        logger.info(f"✅ Captured ${amount_captured:.2f} for booking {booking.id}")
        return {"success": True, "amount_captured": amount_captured, "payment_intent_id": intent_id}

    # ------------------------------------------------------------------
    # Increment
    # ------------------------------------------------------------------

    async def increment(self, booking_id: str, additional_amount: float, services: Optional[list] = None) -> dict:
        """Raise an existing hold for services added after checkout"""
        booking = self._get_booking(booking_id)
        if additional_amount is None or additional_amount <= 0:
            raise ValidationError("Additional amount must be greater than zero")
        if booking.payment_status != PaymentStatus.AUTHORIZED.value or not booking.payment_intent_id:
            raise StateConflictError(
                f"Cannot add to a payment that is {booking.payment_status}",
                current_state=booking.payment_status,
            )

        intent_id = booking.payment_intent_id
        new_total = round((booking.total_price or 0) + additional_amount, 2)
        increment_key = f"increment-{intent_id}-{uuid.uuid4()}"
        result = await self._call(
            f"increment:{intent_id}",
            lambda: self.stripe.increment_authorization(
                intent_id, to_cents(new_total), idempotency_key=increment_key
            ),
        )
        if isinstance(result, TimedOut):
            return self._pending_response(intent_id)
        if isinstance(result, Failed):
            logger.error(f"❌ Increment of {intent_id} failed: {result.error}")
            return {"success": False, "error": self._failure_message(result.error)}

        intent = result.value
        authorized_total = round((intent.get("amount") or to_cents(new_total)) / 100, 2)
        try:
            self.repo.update_status(self.db, booking, extra={"total_price": authorized_total})
            primary = self.payments.get_primary_transaction(self.db, intent_id)
            if primary is not None:
                primary.amount = authorized_total
            self.payments.create_transaction(
                self.db,
                booking_id=booking.id,
                payment_intent_id=intent_id,
                amount=additional_amount,
                currency=intent.get("currency") or DEFAULT_CURRENCY,
                transaction_type=TransactionType.INCREMENT,
                status=TransactionStatus.AUTHORIZED,
            )
            self.repo.add_audit_log(
                self.db,
                booking.id,
                "authorization_incremented",
                {"payment_intent_id": intent_id, "added_amount": additional_amount, "new_total": authorized_total},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        notification_sent = False
        name, email, _ = self.repo.customer_contact(booking)
        if self.notifier is not None and email:
            notification_sent = await self.notifier.send_email(
                self.db,
                email,
                "Your booking total has been updated",
                increment_notification_template(name or "there", additional_amount, authorized_total, services or []),
                email_type="increment_notification",
                booking_id=booking.id,
            )

        logger.info(f"✅ Hold {intent_id} raised by ${additional_amount:.2f} to ${authorized_total:.2f}")
        return {
            "success": True,
            "new_total": authorized_total,
            "added_amount": round(additional_amount, 2),
            "notification_sent": notification_sent,
        }

    # ------------------------------------------------------------------
    # Cancel / refund
    # ------------------------------------------------------------------

    async def release_intent(self, payment_intent_id: str, reason: str = "requested_by_customer") -> tuple[bool, Optional[str]]:
        """
        Cancel an uncaptured intent at Stripe.

        Returns:
            (canceled, stripe_status_if_known). An intent already in a terminal
            state is not an error; its current status is returned instead.
        """
        if reason not in VALID_CANCELLATION_REASONS:
            reason = "requested_by_customer"
        result = await self._call(
            f"cancel:{payment_intent_id}",
            lambda: self.stripe.cancel_payment_intent(payment_intent_id, cancellation_reason=reason),
        )
        if isinstance(result, Succeeded):
            return True, result.value.get("status")
        if isinstance(result, TimedOut):
            raise result.as_error("stripe")
        if isinstance(result.error, StateConflictError):
            logger.info(
                f"ℹ️ PaymentIntent {payment_intent_id} already {result.error.current_state}; cancel skipped"
            )
            return False, result.error.current_state
        if isinstance(result.error, NotFoundError):
            # Nothing left to release at Stripe
            logger.warning(f"⚠️ PaymentIntent {payment_intent_id} not found at Stripe; treating as released")
            return False, None
        if isinstance(result.error, BookingSystemError):
            raise result.error
        raise ExternalServiceError("stripe", str(result.error))

    async def _refund_intent(self, booking: Booking, amount: Optional[float]) -> dict:
        intent_id = booking.payment_intent_id
        amount_cents = to_cents(amount) if amount else None
        # Same key on every retry; a refund that landed before a 5xx is not repeated
        refund_key = f"refund-{booking.id}-{uuid.uuid4()}"
        result = await self._call(
            f"refund:{intent_id}",
            lambda: self.stripe.create_refund(intent_id, amount_cents, idempotency_key=refund_key),
        )
        if isinstance(result, TimedOut):
            raise result.as_error("stripe")
        if isinstance(result, Failed):
            if isinstance(result.error, BookingSystemError):
                raise result.error
            raise ExternalServiceError("stripe", str(result.error))
        refund = result.value
        refunded_amount = round((refund.get("amount") or to_cents(self._captured_amount(booking))) / 100, 2)
        self.repo.update_status(self.db, booking, payment_status=PaymentStatus.REFUNDED)
        self.payments.create_transaction(
            self.db,
            booking_id=booking.id,
            payment_intent_id=intent_id,
            amount=refunded_amount,
            currency=refund.get("currency") or DEFAULT_CURRENCY,
            transaction_type=TransactionType.REFUND,
            status=TransactionStatus.COMPLETED,
            stripe_charge_id=refund.get("charge"),
        )
        return {"refund_id": refund.get("id"), "amount_refunded": refunded_amount}

    async def refund(self, booking_id: str, amount: Optional[float] = None) -> dict:
        """Refund a captured payment (admin)"""
        booking = self._get_booking(booking_id)
        if booking.payment_status == PaymentStatus.REFUNDED.value:
            return {"success": True, "already_refunded": True, "message": "Payment already refunded"}
        if PaymentStatus(booking.payment_status) not in CAPTURED_FAMILY:
            raise StateConflictError(
                f"Only captured payments can be refunded (payment is {booking.payment_status})",
                current_state=booking.payment_status,
            )
        if amount is not None and amount <= 0:
            raise ValidationError("Refund amount must be greater than zero")

        try:
            refund = await self._refund_intent(booking, amount)
            self.repo.add_audit_log(self.db, booking.id, "payment_refunded", refund, actor="admin")
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"✅ Refunded ${refund['amount_refunded']:.2f} for booking {booking.id}")
        return {"success": True, **refund}

    async def cancel_authorization(self, booking_id: str, reason: str = "requested_by_customer") -> dict:
        """
        Cancel a booking's payment: release an uncaptured hold or refund a captured one.

        Safe to repeat; a hold that is already cancelled is reported as success.
        """
        booking = self._get_booking(booking_id)
        terminal_payment = {PaymentStatus.CANCELLED, PaymentStatus.REFUNDED, PaymentStatus.EXPIRED, PaymentStatus.FAILED}
        if booking.status == BookingStatus.CANCELLED.value and PaymentStatus(booking.payment_status) in terminal_payment:
            return {
                "success": True,
                "message": "Booking already cancelled",
                "booking_status": booking.status,
                "payment_status": booking.payment_status,
                "canceled_intent": False,
                "refunded": False,
            }

        canceled_intent = False
        refunded = False
        intent_id = booking.payment_intent_id
        captured = PaymentStatus(booking.payment_status) in CAPTURED_FAMILY

        try:
            if intent_id and not captured:
                try:
                    canceled_intent, stripe_status = await self.release_intent(intent_id, reason)
                except ExternalServiceError as e:
                    logger.error(f"❌ Could not cancel {intent_id} for booking {booking.id}: {e}")
                    return {"success": False, "error": e.public_message}
                if stripe_status == "succeeded":
                    # Captured behind our back; refund instead
                    await self.reconciler.reconcile(booking.id)
                    self.db.refresh(booking)
                    captured = True

            if intent_id and captured:
                try:
                    await self._refund_intent(booking, None)
                except (ExternalServiceError, PaymentDeclinedError) as e:
                    self.db.rollback()
                    logger.error(f"❌ Refund failed while cancelling booking {booking.id}: {e}")
                    return {"success": False, "error": e.public_message}
                refunded = True

            new_status = None
            if can_transition("booking", booking.status, BookingStatus.CANCELLED):
                new_status = BookingStatus.CANCELLED
            new_payment = None
            if not refunded and can_transition("payment", booking.payment_status, PaymentStatus.CANCELLED):
                new_payment = PaymentStatus.CANCELLED
            if not self.repo.update_status(self.db, booking, status=new_status, payment_status=new_payment):
                self.db.rollback()
                raise StateConflictError("Booking changed while cancelling; please retry")

            if intent_id:
                txn = self.payments.get_primary_transaction(self.db, intent_id)
                if txn is not None and can_transition("transaction", txn.status, TransactionStatus.CANCELLED):
                    self.payments.set_status(
                        self.db, txn, TransactionStatus.CANCELLED, booking=booking, cancellation_reason=reason
                    )
            self.repo.add_audit_log(
                self.db,
                booking.id,
                "payment_cancelled",
                {"reason": reason, "canceled_intent": canceled_intent, "refunded": refunded},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"✅ Booking {booking.id} payment cancelled (refunded={refunded})")
        return {
            "success": True,
            "booking_status": booking.status,
            "payment_status": booking.payment_status,
            "canceled_intent": canceled_intent,
            "refunded": refunded,
        }


def is_capturable(booking: Booking) -> bool:
    return (
        booking.payment_status == PaymentStatus.AUTHORIZED.value
        and bool(booking.payment_intent_id)
        and BookingStatus(booking.status) in CONFIRMED_FAMILY
    )
