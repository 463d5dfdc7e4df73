"""Stripe webhook endpoint - reconciles bookings when PaymentIntents change"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from .. import config
from ..database import get_db
from ..domain.bookings.repository import BookingRepository
from ..domain.payments.reconciliation import ReconciliationService
from ..exceptions import BookingSystemError
from ..shared.validators import validate_uuid
from ..statuses import PaymentStatus, can_transition
from ..webhook_security import verify_stripe_webhook
from ..wiring import Container, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _find_booking(db: Session, intent: dict):
    repo = BookingRepository()
    booking = repo.get_by_payment_intent(db, intent.get("id") or "")
    if booking is None:
        booking_id = (intent.get("metadata") or {}).get("booking_id")
        if booking_id and validate_uuid(booking_id):
            booking = repo.get_booking(db, booking_id)
    return booking


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    _, raw_body = await verify_stripe_webhook(request, config.STRIPE_WEBHOOK_SECRET)
    try:
        event = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}
    logger.info(f"📥 Stripe webhook {event.get('id')}: {event_type}")

    if event_type.startswith("payment_intent."):
        booking = _find_booking(db, obj)
        if booking is None:
            logger.info(f"ℹ️ No booking for PaymentIntent {obj.get('id')}; ignoring {event_type}")
            return {"received": True, "handled": False}
        try:
            result = await ReconciliationService(db, container.stripe, retry_delay=container.retry_delay).reconcile(
                booking.id, obj.get("id")
            )
        except BookingSystemError as e:
            # Non-2xx makes Stripe redeliver later
            logger.error(f"❌ Webhook reconciliation failed for booking {booking.id}: {e}")
            raise HTTPException(status_code=503, detail="Reconciliation failed, retry later")
        await container.publisher.publish("bookings", "UPDATE", BookingRepository.booking_summary(booking))
        return {"received": True, "handled": True, "fixes_applied": result["fixes_applied"]}

    if event_type == "charge.refunded":
        booking = BookingRepository.get_by_payment_intent(db, obj.get("payment_intent") or "")
        if (
            booking is not None
            and booking.payment_status != PaymentStatus.REFUNDED.value
            and can_transition("payment", booking.payment_status, PaymentStatus.REFUNDED)
        ):
            if BookingRepository.update_status(db, booking, payment_status=PaymentStatus.REFUNDED):
                BookingRepository.add_audit_log(
                    db, booking.id, "payment_refunded", {"charge_id": obj.get("id"), "source": "webhook"}
                )
                db.commit()
                logger.info(f"✅ Booking {booking.id} marked refunded from webhook")
                return {"received": True, "handled": True}
        return {"received": True, "handled": False}

    logger.debug(f"Unhandled Stripe event type {event_type}")
    return {"received": True, "handled": False}
