"""Booking repository - Database operations for bookings, line items and audit log"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import (
    Booking,
    BookingAuditLog,
    BookingService,
    CoverageNotification,
    Service,
    User,
)
from ...statuses import validate_transition

logger = logging.getLogger(__name__)


class BookingRepository:
    """Repository for booking database operations"""

    @staticmethod
    def get_booking(db: Session, booking_id: str) -> Optional[Booking]:
        return db.query(Booking).filter(Booking.id == booking_id).first()

    @staticmethod
    def get_by_payment_intent(db: Session, payment_intent_id: str) -> Optional[Booking]:
        return db.query(Booking).filter(Booking.payment_intent_id == payment_intent_id).first()

    @staticmethod
    def get_user(db: Session, user_id: str) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_service(db: Session, service_id: str) -> Optional[Service]:
        return db.query(Service).filter(Service.id == service_id).first()

    @staticmethod
    def list_active_services(db: Session) -> list:
        return db.query(Service).filter(Service.is_active.is_(True)).order_by(Service.name).all()

    @staticmethod
    def add_line_item(
        db: Session,
        booking: Booking,
        service_name: str,
        base_price: Optional[float],
        quantity: int = 1,
        service_id: Optional[str] = None,
        configuration: Optional[dict] = None,
    ) -> BookingService:
        item = BookingService(
            booking_id=booking.id,
            service_id=service_id,
            service_name=service_name,
            base_price=base_price,
            quantity=quantity,
            configuration=configuration or {},
        )
        db.add(item)
        return item

    @staticmethod
    def line_items_total(booking: Booking) -> float:
        return round(
            sum((item.base_price or 0) * (item.quantity or 1) for item in booking.services), 2
        )

    @staticmethod
    def update_status(
        db: Session,
        booking: Booking,
        status=None,
        payment_status=None,
        extra: Optional[dict] = None,
    ) -> bool:
        """
        Narrow conditional status update.

        Validates both transitions, then updates only if the row still holds
        the values we read. Returns False when another writer got there first;
        callers treat that as an expected race, not an error.
        """
        values = {}
        if status is not None:
            target = validate_transition("booking", booking.status, status)
            if target.value != booking.status:
                values[Booking.status] = target.value
        if payment_status is not None:
            target = validate_transition("payment", booking.payment_status, payment_status)
            if target.value != booking.payment_status:
                values[Booking.payment_status] = target.value
        for key, value in (extra or {}).items():
            values[getattr(Booking, key)] = value
        if not values:
            return True

        values[Booking.updated_at] = datetime.utcnow()
        db.flush()
        updated = (
            db.query(Booking)
            .filter(
                Booking.id == booking.id,
                Booking.status == booking.status,
                Booking.payment_status == booking.payment_status,
            )
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            logger.warning(
                f"⚠️ Booking {booking.id} changed concurrently; skipped update to {status}/{payment_status}"
            )
            db.refresh(booking)
            return False
        db.flush()
        db.refresh(booking)
        return True

    @staticmethod
    def add_audit_log(
        db: Session,
        booking_id: Optional[str],
        operation: str,
        details: Optional[dict] = None,
        status: str = "success",
        actor: str = "system",
    ) -> BookingAuditLog:
        entry = BookingAuditLog(
            booking_id=booking_id,
            operation=operation,
            status=status,
            actor=actor,
            details=details or {},
        )
        db.add(entry)
        return entry

    @staticmethod
    def get_audit_log(db: Session, booking_id: str) -> list:
        return (
            db.query(BookingAuditLog)
            .filter(BookingAuditLog.booking_id == booking_id)
            .order_by(BookingAuditLog.id)
            .all()
        )

    @staticmethod
    def delete_with_cascade(db: Session, booking: Booking) -> None:
        """Hard delete a booking and everything hanging off it"""
        notifications = (
            db.query(CoverageNotification).filter(CoverageNotification.booking_id == booking.id).all()
        )
        for notification in notifications:
            db.delete(notification)
        for txn in list(booking.transactions):
            db.delete(txn)
        # line items go through the delete-orphan cascade
        db.delete(booking)

    @staticmethod
    def customer_contact(booking: Booking) -> tuple[Optional[str], Optional[str], Optional[str]]:
        """(name, email, phone) for a registered or guest customer"""
        if booking.customer is not None:
            return booking.customer.name, booking.customer.email, booking.customer.phone
        guest = booking.guest_customer_info or {}
        return guest.get("name"), guest.get("email"), guest.get("phone")

    @staticmethod
    def booking_summary(booking: Booking) -> dict:
        """Plain dict used by email templates and API responses"""
        return {
            "id": booking.id,
            "status": booking.status,
            "payment_status": booking.payment_status,
            "scheduled_date": booking.scheduled_date.isoformat() if booking.scheduled_date else None,
            "scheduled_start": booking.scheduled_start,
            "duration_minutes": booking.duration_minutes,
            "address": booking.address,
            "zipcode": booking.zipcode,
            "worker_id": booking.worker_id,
            "total_price": booking.total_price or 0,
            "payment_intent_id": booking.payment_intent_id,
            "is_archived": booking.is_archived,
            "services": [
                {
                    "service_name": item.service_name,
                    "base_price": item.base_price,
                    "quantity": item.quantity,
                }
                for item in booking.services
            ],
        }
