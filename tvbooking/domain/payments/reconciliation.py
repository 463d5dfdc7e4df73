"""
Payment status reconciliation

Stripe is the source of truth for a payment's state; booking and
transaction rows are a cache of it that can drift (missed webhooks,
client/server races, half-finished transitions). Reconciliation reads
the PaymentIntent, maps it to canonical local statuses and writes only
what differs: booking first, then transaction.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import PAYMENT_INTENT_TIMEOUT_SECONDS, PAYMENT_MAX_ATTEMPTS
from ...exceptions import (
    BookingSystemError,
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ...models import Booking, Transaction
from ...retry import Failed, Succeeded, TimedOut, invoke_with_retry
from ...shared.validators import is_placeholder_booking_id, validate_uuid
from ...statuses import (
    BookingStatus,
    PaymentStatus,
    StatusMapping,
    TransactionStatus,
    TransactionType,
    can_transition,
    check_transaction_precondition,
    is_consistent,
    map_stripe_status,
)
from ..bookings.repository import BookingRepository
from .repository import PaymentRepository
from .stripe_service import StripeService, stripe_service

logger = logging.getLogger(__name__)

# Stripe-equivalent status for a transaction status reported by a client
TRANSACTION_STATUS_SOURCES = {
    TransactionStatus.PENDING: "processing",
    TransactionStatus.AUTHORIZED: "requires_capture",
    TransactionStatus.COMPLETED: "succeeded",
    TransactionStatus.FAILED: "canceled",
    TransactionStatus.CANCELLED: "canceled",
}


def validate_booking_reference(booking_id: Optional[str]) -> None:
    if booking_id is None:
        return
    if is_placeholder_booking_id(booking_id):
        logger.error(f"❌ Placeholder booking id rejected: {booking_id}")
        raise ValidationError("Invalid booking reference", public_message="Invalid booking reference")
    if not validate_uuid(booking_id):
        raise ValidationError("booking_id must be a UUID")


class ReconciliationService:
    """Detects and repairs drift between Stripe and local payment state"""

    def __init__(self, db: Session, stripe: Optional[StripeService] = None, retry_delay: float = 0.5):
        self.db = db
        self.stripe = stripe or stripe_service
        self.repo = BookingRepository()
        self.payments = PaymentRepository()
        self.retry_delay = retry_delay

    async def fetch_intent(self, payment_intent_id: str) -> dict:
        result = await invoke_with_retry(
            lambda: self.stripe.retrieve_payment_intent(payment_intent_id),
            timeout=PAYMENT_INTENT_TIMEOUT_SECONDS,
            max_attempts=PAYMENT_MAX_ATTEMPTS,
            retry_delay=self.retry_delay,
            name=f"retrieve:{payment_intent_id}",
        )
        if isinstance(result, Succeeded):
            return result.value
        if isinstance(result, TimedOut):
            raise result.as_error("stripe")
        assert isinstance(result, Failed)
        if isinstance(result.error, BookingSystemError):
            raise result.error
        raise ExternalServiceError("stripe", str(result.error))

    def apply_mapping(
        self,
        booking: Booking,
        mapping: StatusMapping,
        txn: Optional[Transaction],
        payment_intent_id: str,
        amount: Optional[float] = None,
        currency: str = "USD",
    ) -> tuple[list, list]:
        """
        Write the mapped statuses where they differ.

        Returns:
            (fixes_applied, conflicts) as lists of human-readable strings
        """
        fixes: list = []
        conflicts: list = []

        # 1. Booking row
        new_status = None
        new_payment = None
        refunded = booking.payment_status == PaymentStatus.REFUNDED.value
        if not refunded and BookingStatus(booking.status) not in mapping.accepted_booking:
            if can_transition("booking", booking.status, mapping.booking_status):
                new_status = mapping.booking_status
            else:
                conflicts.append(
                    f"booking.status {booking.status} cannot move to {mapping.booking_status.value}"
                )
        if PaymentStatus(booking.payment_status) not in mapping.accepted_payment:
            if can_transition("payment", booking.payment_status, mapping.payment_status):
                new_payment = mapping.payment_status
            else:
                conflicts.append(
                    f"booking.payment_status {booking.payment_status} cannot move to {mapping.payment_status.value}"
                )

        extra = {}
        if not booking.payment_intent_id:
            extra["payment_intent_id"] = payment_intent_id

        before_status, before_payment = booking.status, booking.payment_status
        if new_status or new_payment or extra:
            if not self.repo.update_status(
                self.db, booking, status=new_status, payment_status=new_payment, extra=extra
            ):
                conflicts.append("booking changed concurrently; will retry on next pass")
                return fixes, conflicts
            if new_status:
                fixes.append(f"booking.status: {before_status} → {booking.status}")
            if new_payment:
                fixes.append(f"booking.payment_status: {before_payment} → {booking.payment_status}")
            if extra:
                fixes.append("booking.payment_intent_id linked")

        # 2. Transaction row, only after the booking write is flushed
        if txn is None:
            if amount is not None:
                try:
                    check_transaction_precondition(mapping.transaction_status, booking.status)
                except InvalidTransitionError as e:
                    conflicts.append(str(e))
                    return fixes, conflicts
                txn = self.payments.create_transaction(
                    self.db,
                    booking_id=booking.id,
                    payment_intent_id=payment_intent_id,
                    amount=amount,
                    currency=currency,
                    status=mapping.transaction_status,
                )
                fixes.append(f"transaction created as {mapping.transaction_status.value}")
        elif TransactionStatus(txn.status) not in mapping.accepted_transaction:
            if can_transition("transaction", txn.status, mapping.transaction_status):
                before = txn.status
                try:
                    self.payments.set_status(self.db, txn, mapping.transaction_status, booking=booking)
                except InvalidTransitionError as e:
                    conflicts.append(str(e))
                    return fixes, conflicts
                fixes.append(f"transaction.status: {before} → {txn.status}")
            else:
                conflicts.append(
                    f"transaction.status {txn.status} cannot move to {mapping.transaction_status.value}"
                )
        return fixes, conflicts

    async def reconcile(self, booking_id: str, payment_intent_id: Optional[str] = None) -> dict:
        """
        Bring one booking in line with Stripe.

        Returns:
            {success, consistent, fixes_applied, conflicts, booking_status, payment_status, stripe_status}
        """
        validate_booking_reference(booking_id)
        booking = self.repo.get_booking(self.db, booking_id)
        if not booking:
            raise NotFoundError("Booking not found")

        intent_id = payment_intent_id or booking.payment_intent_id
        if payment_intent_id and booking.payment_intent_id and payment_intent_id != booking.payment_intent_id:
            # A superseded intent never drives the booking's status
            conflict = f"payment intent {payment_intent_id} is not the booking's current intent {booking.payment_intent_id}"
            logger.warning(f"⚠️ Booking {booking_id}: {conflict}; skipped")
            return {
                "success": True,
                "consistent": False,
                "skipped": True,
                "fixes_applied": [],
                "conflicts": [conflict],
                "booking_status": booking.status,
                "payment_status": booking.payment_status,
                "stripe_status": None,
            }

        if not intent_id:
            consistent = is_consistent(booking.status, booking.payment_status)
            return {
                "success": True,
                "consistent": consistent,
                "fixes_applied": [],
                "conflicts": [] if consistent else ["booking has no payment intent to reconcile against"],
                "booking_status": booking.status,
                "payment_status": booking.payment_status,
                "stripe_status": None,
            }

        intent = await self.fetch_intent(intent_id)
        stripe_status = intent.get("status")
        mapping = map_stripe_status(stripe_status)
        txn = self.payments.get_primary_transaction(self.db, intent_id)

        try:
            fixes, conflicts = self.apply_mapping(
                booking,
                mapping,
                txn,
                intent_id,
                amount=(intent.get("amount") or 0) / 100,
                currency=(intent.get("currency") or "usd"),
            )
            if stripe_status == "succeeded":
                fixes.extend(self.record_capture(booking, intent))
            if fixes:
                self.repo.add_audit_log(
                    self.db,
                    booking.id,
                    "reconcile_payment_status",
                    {"payment_intent_id": intent_id, "stripe_status": stripe_status, "fixes": fixes},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if fixes:
            logger.info(f"🔧 Booking {booking.id} reconciled with {stripe_status}: {fixes}")
        else:
            logger.debug(f"✅ Booking {booking.id} consistent with {stripe_status}")
        if conflicts:
            logger.warning(f"⚠️ Booking {booking.id} reconciliation conflicts: {conflicts}")

        return {
            "success": True,
            "consistent": not fixes and not conflicts,
            "fixes_applied": fixes,
            "conflicts": conflicts,
            "booking_status": booking.status,
            "payment_status": booking.payment_status,
            "stripe_status": stripe_status,
        }

    def record_capture(self, booking: Booking, intent: dict) -> list:
        intent_id = intent["id"]
        if self.payments.get_capture_transaction(self.db, intent_id):
            return []
        received = intent.get("amount_received") or intent.get("amount") or 0
        self.payments.create_transaction(
            self.db,
            booking_id=booking.id,
            payment_intent_id=intent_id,
            amount=received / 100,
            currency=intent.get("currency") or "usd",
            transaction_type=TransactionType.CAPTURE,
            status=TransactionStatus.COMPLETED,
        )
        return ["capture transaction recorded"]

    async def sweep_authorized(self) -> dict:
        """Reconcile every booking holding an uncaptured authorization"""
        bookings = (
            self.db.query(Booking)
            .filter(
                Booking.payment_status == PaymentStatus.AUTHORIZED.value,
                Booking.payment_intent_id.isnot(None),
                Booking.is_archived.is_(False),
            )
            .order_by(Booking.created_at)
            .all()
        )
        summary = {"checked": 0, "fixed": 0, "errors": 0, "fixed_booking_ids": []}
        for booking in bookings:
            summary["checked"] += 1
            try:
                result = await self.reconcile(booking.id)
            except Exception as e:
                self.db.rollback()
                summary["errors"] += 1
                logger.error(f"❌ Reconciliation failed for booking {booking.id}: {e}")
                continue
            if result["fixes_applied"]:
                summary["fixed"] += 1
                summary["fixed_booking_ids"].append(booking.id)
        logger.info(f"📊 Authorized sweep: {summary['checked']} checked, {summary['fixed']} fixed, {summary['errors']} errors")
        return summary

    async def sync_stripe_captures(self, since_days: int = 45) -> dict:
        """Record capture transactions for Stripe charges the ledger never saw"""
        since = int((datetime.utcnow() - timedelta(days=since_days)).timestamp())
        summary = {"synced": 0, "skipped": 0, "errors": 0}
        starting_after = None

        while True:
            result = await invoke_with_retry(
                lambda: self.stripe.list_charges(created_gte=since, starting_after=starting_after),
                timeout=PAYMENT_INTENT_TIMEOUT_SECONDS,
                max_attempts=PAYMENT_MAX_ATTEMPTS,
                retry_delay=self.retry_delay,
                name="list_charges",
            )
            if not isinstance(result, Succeeded):
                summary["errors"] += 1
                logger.error(f"❌ Stripe charge listing failed: {result}")
                break
            page = result.value
            charges = page.get("data") or []

            for charge in charges:
                try:
                    if self._sync_charge(charge):
                        summary["synced"] += 1
                    else:
                        summary["skipped"] += 1
                except Exception as e:
                    self.db.rollback()
                    summary["errors"] += 1
                    logger.error(f"❌ Failed to sync charge {charge.get('id')}: {e}")

            if not page.get("has_more") or not charges:
                break
            starting_after = charges[-1]["id"]

        logger.info(f"📊 Stripe capture sync: {summary}")
        return summary

    def _sync_charge(self, charge: dict) -> bool:
        intent_id = charge.get("payment_intent")
        if charge.get("status") != "succeeded" or charge.get("refunded") or not intent_id:
            return False
        existing = self.payments.get_capture_transaction(self.db, intent_id)
        if existing and existing.status == TransactionStatus.COMPLETED.value:
            return False
        booking = self.repo.get_by_payment_intent(self.db, intent_id)
        amount = charge.get("amount_captured") or charge.get("amount") or 0
        if existing:
            existing.status = TransactionStatus.COMPLETED.value
            existing.amount = round(amount / 100, 2)
            existing.stripe_charge_id = charge.get("id")
        else:
            self.payments.create_transaction(
                self.db,
                booking_id=booking.id if booking else None,
                payment_intent_id=intent_id,
                amount=amount / 100,
                currency=(charge.get("currency") or "usd").upper(),
                transaction_type=TransactionType.CAPTURE,
                status=TransactionStatus.COMPLETED,
                stripe_charge_id=charge.get("id"),
            )
        self.db.commit()
        return True

    def update_transaction_status(
        self, payment_intent_id: str, status: str, booking_id: Optional[str] = None
    ) -> dict:
        """
        Record a client-reported payment outcome.

        Creates the transaction if it does not exist yet and keeps the
        linked booking's payment status in step, booking first.
        """
        if not payment_intent_id:
            raise ValidationError("payment_intent_id is required")
        try:
            target = TransactionStatus(status)
        except ValueError:
            raise ValidationError(f"Unsupported transaction status: {status}")
        source = TRANSACTION_STATUS_SOURCES.get(target)
        if source is None:
            raise ValidationError(f"Unsupported transaction status: {status}")
        validate_booking_reference(booking_id)

        txn = self.payments.get_primary_transaction(self.db, payment_intent_id)
        linked_id = (txn.booking_id if txn else None) or booking_id
        booking = self.repo.get_booking(self.db, linked_id) if linked_id else None

        if txn is None and booking is None:
            raise NotFoundError("No transaction or booking found for this payment")

        mapping = map_stripe_status(source)
        try:
            if booking is not None:
                if txn is not None and not txn.booking_id:
                    txn.booking_id = booking.id
                fixes, conflicts = self.apply_mapping(
                    booking, mapping, txn, payment_intent_id, amount=0 if txn is None else None
                )
            else:
                before = txn.status
                changed = self.payments.set_status(self.db, txn, target)
                fixes = [f"transaction.status: {before} → {txn.status}"] if changed else []
                conflicts = []
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"✅ Transaction status for {payment_intent_id} set to {target.value}: {fixes}")
        return {
            "success": not conflicts,
            "message": f"Transaction status updated to {target.value}",
            "fixes_applied": fixes,
            "conflicts": conflicts,
        }
