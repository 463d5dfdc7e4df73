"""
Abandoned booking cleanup
Expires bookings that never finished checkout and releases their card holds.
Scheduled from the arq worker; the admin endpoint calls the same functions.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..config import PAYMENT_PENDING_TTL_MINUTES, UNPAID_BOOKING_TTL_MINUTES
from ..domain.bookings.repository import BookingRepository
from ..domain.payments.reconciliation import ReconciliationService
from ..domain.payments.repository import PaymentRepository
from ..domain.payments.service import PaymentService
from ..exceptions import ExternalServiceError
from ..models import Booking
from ..statuses import (
    BookingStatus,
    PaymentStatus,
    TransactionStatus,
    can_transition,
    validate_transition,
)

logger = logging.getLogger(__name__)

UNPAID_STATUSES = [BookingStatus.PENDING.value, BookingStatus.PAYMENT_PENDING.value]
UNPAID_PAYMENT_STATUSES = [PaymentStatus.PENDING.value]
JANITOR_STATUSES = [BookingStatus.PAYMENT_PENDING.value]
JANITOR_PAYMENT_STATUSES = [
    PaymentStatus.PENDING.value,
    PaymentStatus.AUTHORIZED.value,
    PaymentStatus.FAILED.value,
]
# Stripe states meaning the customer actually paid; never expire these
PAID_INTENT_STATES = {"succeeded", "processing"}


def _candidates(db: Session, statuses: list, payment_statuses: list, cutoff: datetime) -> list:
    return (
        db.query(Booking)
        .filter(
            Booking.status.in_(statuses),
            Booking.payment_status.in_(payment_statuses),
            Booking.created_at < cutoff,
            Booking.is_archived.is_(False),
        )
        .order_by(Booking.created_at, Booking.id)
        .all()
    )


async def _release_hold(payments: PaymentService, booking: Booking) -> tuple[bool, Optional[str]]:
    """Cancel the booking's intent if it has one. Returns (canceled, stripe_status)"""
    if not booking.payment_intent_id:
        return False, None
    return await payments.release_intent(booking.payment_intent_id, reason="abandoned")


async def _expire_bookings(
    db: Session,
    statuses: list,
    payment_statuses: list,
    ttl_minutes: int,
    job_name: str,
    stripe=None,
    now: Optional[datetime] = None,
    manual: bool = False,
    retry_delay: float = 0.5,
) -> dict:
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=ttl_minutes)
    payments = PaymentService(db, stripe=stripe, retry_delay=retry_delay)
    repo = BookingRepository()
    ledger = PaymentRepository()

    summary = {"cleaned_up": 0, "canceled_intents": 0, "failed_count": 0, "skipped": 0, "booking_ids": []}
    bookings = _candidates(db, statuses, payment_statuses, cutoff)
    logger.info(f"🧹 {job_name}: {len(bookings)} candidate(s) older than {ttl_minutes} min (manual={manual})")

    for booking in bookings:
        booking_id = booking.id
        try:
            try:
                canceled, stripe_status = await _release_hold(payments, booking)
            except ExternalServiceError as e:
                # Leave the row alone; the next run retries it
                summary["failed_count"] += 1
                logger.error(f"❌ {job_name}: could not release hold for booking {booking_id}: {e}")
                continue

            if stripe_status in PAID_INTENT_STATES:
                logger.warning(f"⚠️ {job_name}: booking {booking_id} is paid at Stripe ({stripe_status}); reconciling")
                await ReconciliationService(db, payments.stripe, retry_delay=retry_delay).reconcile(booking_id)
                summary["skipped"] += 1
                continue

            validate_transition("booking", booking.status, BookingStatus.CANCELLED)
            validate_transition("payment", booking.payment_status, PaymentStatus.EXPIRED)
            updated = (
                db.query(Booking)
                .filter(
                    Booking.id == booking_id,
                    Booking.status.in_(statuses),
                    Booking.payment_status.in_(payment_statuses),
                )
                .update(
                    {
                        Booking.status: BookingStatus.CANCELLED.value,
                        Booking.payment_status: PaymentStatus.EXPIRED.value,
                        Booking.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if updated == 0:
                db.rollback()
                summary["skipped"] += 1
                logger.info(f"ℹ️ {job_name}: booking {booking_id} changed before cleanup; skipped")
                continue

            db.refresh(booking)
            if booking.payment_intent_id:
                txn = ledger.get_primary_transaction(db, booking.payment_intent_id)
                if txn is not None and can_transition("transaction", txn.status, TransactionStatus.CANCELLED):
                    ledger.set_status(db, txn, TransactionStatus.CANCELLED, booking=booking, cancellation_reason="abandoned")
            repo.add_audit_log(
                db,
                booking_id,
                "manual_cleanup" if manual else "auto_cleanup",
                {"job": job_name, "canceled_intent": canceled, "stripe_status": stripe_status, "cutoff": cutoff.isoformat()},
                actor="admin" if manual else "system",
            )
            db.commit()
        except Exception as e:
            db.rollback()
            summary["failed_count"] += 1
            logger.error(f"❌ {job_name}: failed to clean booking {booking_id}: {e}")
            continue

        summary["cleaned_up"] += 1
        summary["booking_ids"].append(booking_id)
        if canceled:
            summary["canceled_intents"] += 1
        logger.info(f"✅ {job_name}: booking {booking_id} expired")

    logger.info(f"📊 {job_name} summary: {summary}")
    return summary


async def cleanup_unpaid_bookings(
    db: Session, stripe=None, now: Optional[datetime] = None, manual: bool = False, retry_delay: float = 0.5
) -> dict:
    """
    Expire bookings that never got a payment.

    Selects pending/payment_pending bookings with payment still pending that
    are older than UNPAID_BOOKING_TTL_MINUTES. Safe to run repeatedly: a
    cleaned row no longer matches the status filter.

    Returns:
        {cleaned_up, canceled_intents, failed_count, skipped, booking_ids}
    """
    return await _expire_bookings(
        db,
        UNPAID_STATUSES,
        UNPAID_PAYMENT_STATUSES,
        UNPAID_BOOKING_TTL_MINUTES,
        "unpaid_cleanup",
        stripe=stripe,
        now=now,
        manual=manual,
        retry_delay=retry_delay,
    )


async def cleanup_payment_pending_bookings(
    db: Session, stripe=None, now: Optional[datetime] = None, manual: bool = False, retry_delay: float = 0.5
) -> dict:
    """Janitor for bookings stuck in payment_pending for PAYMENT_PENDING_TTL_MINUTES"""
    return await _expire_bookings(
        db,
        JANITOR_STATUSES,
        JANITOR_PAYMENT_STATUSES,
        PAYMENT_PENDING_TTL_MINUTES,
        "payment_pending_janitor",
        stripe=stripe,
        now=now,
        manual=manual,
        retry_delay=retry_delay,
    )


async def bulk_delete_abandoned(
    db: Session,
    older_than_minutes: int = PAYMENT_PENDING_TTL_MINUTES,
    stripe=None,
    now: Optional[datetime] = None,
    retry_delay: float = 0.5,
) -> dict:
    """
    Hard-delete abandoned payment_pending bookings with their line items,
    transactions and coverage offers.

    Returns:
        {deleted_count, canceled_intents, failed_count, deleted_ids, failed_ids}
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=older_than_minutes)
    payments = PaymentService(db, stripe=stripe, retry_delay=retry_delay)
    repo = BookingRepository()

    summary = {"deleted_count": 0, "canceled_intents": 0, "failed_count": 0, "deleted_ids": [], "failed_ids": []}
    bookings = _candidates(db, JANITOR_STATUSES, [PaymentStatus.PENDING.value, PaymentStatus.FAILED.value], cutoff)
    logger.info(f"🗑️ Bulk delete: {len(bookings)} abandoned booking(s) older than {older_than_minutes} min")

    for booking in bookings:
        booking_id = booking.id
        try:
            canceled, stripe_status = await _release_hold(payments, booking)
            if stripe_status in PAID_INTENT_STATES:
                logger.warning(f"⚠️ Booking {booking_id} is paid at Stripe ({stripe_status}); not deleting")
                summary["failed_count"] += 1
                summary["failed_ids"].append(booking_id)
                continue
            repo.delete_with_cascade(db, booking)
            repo.add_audit_log(
                db,
                booking_id,
                "bulk_delete_abandoned",
                {"canceled_intent": canceled, "cutoff": cutoff.isoformat()},
                actor="admin",
            )
            db.commit()
        except Exception as e:
            db.rollback()
            summary["failed_count"] += 1
            summary["failed_ids"].append(booking_id)
            logger.error(f"❌ Failed to delete abandoned booking {booking_id}: {e}")
            continue

        summary["deleted_count"] += 1
        summary["deleted_ids"].append(booking_id)
        if canceled:
            summary["canceled_intents"] += 1

    logger.info(f"📊 Bulk delete summary: {summary}")
    return summary
