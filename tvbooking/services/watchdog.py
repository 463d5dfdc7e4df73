"""
Booking notification watchdog
Makes sure a paid booking ended up in the right state and that the
customer and worker actually received their emails. Safe to re-run.
"""

import logging

from sqlalchemy.orm import Session

from ..config import FRONTEND_URL
from ..domain.bookings.repository import BookingRepository
from ..domain.payments.reconciliation import ReconciliationService, validate_booking_reference
from ..email_templates import booking_confirmation_template, worker_assignment_template
from ..exceptions import ExternalServiceError, NotFoundError
from ..statuses import CAPTURED_FAMILY, CONFIRMED_FAMILY, BookingStatus, PaymentStatus

logger = logging.getLogger(__name__)


async def run_notification_watchdog(db: Session, booking_id: str, notifier, stripe=None, retry_delay: float = 0.5) -> dict:
    """
    Reconcile one booking's payment and send any confirmation email that is missing.

    Returns:
        {booking_id, reconciliation, emails_sent, already_sent}
    """
    validate_booking_reference(booking_id)
    repo = BookingRepository()
    booking = repo.get_booking(db, booking_id)
    if not booking:
        raise NotFoundError("Booking not found")

    reconciliation = None
    if booking.payment_intent_id:
        try:
            reconciliation = await ReconciliationService(db, stripe, retry_delay=retry_delay).reconcile(booking.id)
        except ExternalServiceError as e:
            # Emails still go out based on what we know locally
            logger.warning(f"⚠️ Watchdog could not reach Stripe for booking {booking.id}: {e}")
            reconciliation = {"success": False, "error": e.public_message}
        db.refresh(booking)

    paid = PaymentStatus(booking.payment_status) in CAPTURED_FAMILY | {PaymentStatus.AUTHORIZED}
    confirmed = BookingStatus(booking.status) in CONFIRMED_FAMILY
    emails_sent = []
    already_sent = []

    if paid and confirmed:
        name, email, _ = repo.customer_contact(booking)
        if email:
            if notifier.has_sent_email(db, booking.id, email, "booking_confirmation"):
                already_sent.append("booking_confirmation")
            elif await notifier.send_email(
                db,
                email,
                "Your TV mounting appointment is confirmed",
                booking_confirmation_template(
                    name or "there", repo.booking_summary(booking), f"{FRONTEND_URL}/bookings/{booking.id}"
                ),
                email_type="booking_confirmation",
                booking_id=booking.id,
            ):
                emails_sent.append("booking_confirmation")

        worker = booking.worker
        if worker is not None and worker.email:
            if notifier.has_sent_email(db, booking.id, worker.email, "worker_assignment"):
                already_sent.append("worker_assignment")
            elif await notifier.send_email(
                db,
                worker.email,
                "New job assigned",
                worker_assignment_template(worker.name or "there", repo.booking_summary(booking)),
                email_type="worker_assignment",
                booking_id=booking.id,
            ):
                emails_sent.append("worker_assignment")

    if emails_sent:
        repo.add_audit_log(db, booking.id, "watchdog_notifications", {"emails_sent": emails_sent})
        db.commit()
    logger.info(f"🐶 Watchdog for booking {booking.id}: sent={emails_sent} already={already_sent}")
    return {
        "booking_id": booking.id,
        "reconciliation": reconciliation,
        "emails_sent": emails_sent,
        "already_sent": already_sent,
    }
