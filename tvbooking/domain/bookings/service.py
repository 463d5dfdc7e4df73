"""Booking service - Booking creation, integrity checks and worker actions"""

import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...email_templates import worker_assignment_template
from ...exceptions import NotFoundError, StateConflictError
from ...models import AdminAlert, Booking
from ...statuses import (
    ACTIVE_BOOKING_STATUSES,
    CONFIRMED_FAMILY,
    BookingStatus,
    PaymentStatus,
    is_consistent,
)
from ..coverage.assignment import PRIORITY_SAME_AREA, find_available_workers, worker_has_conflict
from ..coverage.repository import CoverageRepository
from ..coverage.resolver import normalize_zipcode, validate_zipcode
from ..coverage.service import CoverageService
from ..payments.service import PaymentService
from .repository import BookingRepository
from .schemas import BookingCreate, LineItem

logger = logging.getLogger(__name__)

NO_WORKERS_MESSAGE = (
    "Your booking has been received, but there are no workers currently available "
    "in your area. Our team will follow up to schedule a technician."
)
INVALID_ZIP_MESSAGE = "Invalid zipcode provided. Please check the zipcode and try again."


class BookingsService:
    """Service layer for booking business logic"""

    def __init__(self, db: Session, notifier=None, stripe=None, resolver=None, retry_delay: float = 0.5):
        self.db = db
        self.notifier = notifier
        self.repo = BookingRepository()
        self.coverage_repo = CoverageRepository()
        self.payments = PaymentService(db, stripe=stripe, notifier=notifier, retry_delay=retry_delay)
        self.coverage = CoverageService(db, resolver=resolver, notifier=notifier)

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.repo.get_booking(self.db, booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    # ------------------------------------------------------------------
    # Creation and assignment
    # ------------------------------------------------------------------

    async def create_booking(self, data: BookingCreate) -> dict:
        """
        Persist a booking and try to staff it.

        Returns:
            {booking_id, assigned_workers, status: confirmed|pending|error, message}
        """
        zipcode = normalize_zipcode(data.zipcode)
        if not zipcode or not validate_zipcode(zipcode):
            logger.warning(f"⚠️ Booking rejected, invalid zipcode: {data.zipcode}")
            return {"booking_id": None, "assigned_workers": [], "status": "error", "message": INVALID_ZIP_MESSAGE}

        guest_info = None
        if data.customer_id:
            if not self.repo.get_user(self.db, data.customer_id):
                raise NotFoundError("Customer not found")
        else:
            guest_info = data.guest.model_dump()
            guest_info["zipcode"] = guest_info.get("zipcode") or zipcode

        service = None
        if data.service_id:
            service = self.repo.get_service(self.db, data.service_id)
            if not service or not service.is_active:
                raise NotFoundError("Service not found")
        duration = data.duration_minutes or (service.duration_minutes if service else 60)

        booking = Booking(
            customer_id=data.customer_id,
            guest_customer_info=guest_info,
            service_id=service.id if service else None,
            scheduled_date=data.scheduled_date,
            scheduled_start=data.scheduled_start,
            duration_minutes=duration,
            address=data.address,
            zipcode=zipcode,
            location_notes=data.location_notes,
            status=BookingStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
        )
        self.db.add(booking)
        self.db.flush()
        for item in data.services:
            self.repo.add_line_item(
                self.db, booking, item.service_name, item.base_price, item.quantity, item.service_id, item.configuration
            )
        self.db.flush()
        self.db.refresh(booking)
        booking.total_price = self.repo.line_items_total(booking)
        self.repo.add_audit_log(self.db, booking.id, "booking_created", {"zipcode": zipcode})
        self.db.commit()
        logger.info(f"✅ Booking {booking.id} created for ZIP {zipcode} on {booking.scheduled_date}")

        integrity = await self.validate_booking_integrity(booking.id, auto_fix=True)

        candidates = find_available_workers(
            self.db,
            zipcode,
            booking.scheduled_date,
            booking.scheduled_start,
            duration,
            exclude_booking_id=booking.id,
        )
        result = await self._staff_booking(booking, candidates)
        result["warnings"] = integrity["warnings"]
        return result

    async def _staff_booking(self, booking: Booking, candidates: list) -> dict:
        if not candidates:
            logger.warning(f"⚠️ No workers available for booking {booking.id} (ZIP {booking.zipcode})")
            if self.notifier is not None:
                await self.notifier.raise_admin_alert(
                    self.db,
                    "no_coverage",
                    f"No workers available for ZIP {booking.zipcode}",
                    severity="medium",
                    booking_id=booking.id,
                )
            return {
                "booking_id": booking.id,
                "assigned_workers": [],
                "status": "pending",
                "message": NO_WORKERS_MESSAGE,
                "offers_sent": 0,
            }

        top = candidates[0]
        if top.distance_priority == PRIORITY_SAME_AREA:
            if not self.coverage_repo.claim_booking(self.db, booking.id, top.worker_id):
                self.db.refresh(booking)
                return {
                    "booking_id": booking.id,
                    "assigned_workers": [],
                    "status": "confirmed",
                    "message": "Booking already has a technician assigned",
                    "offers_sent": 0,
                }
            self.repo.add_audit_log(
                self.db, booking.id, "worker_assigned", {"worker_id": top.worker_id, "priority": top.distance_priority}
            )
            self.db.commit()
            self.db.refresh(booking)
            await self._notify_assigned_worker(booking, top.worker_name, top.worker_email, top.worker_phone)
            return {
                "booking_id": booking.id,
                "assigned_workers": [top.to_dict()],
                "status": "confirmed",
                "message": f"Booking confirmed. {top.worker_name} will handle your installation.",
                "offers_sent": 0,
            }

        offers = await self.coverage.offer_booking(booking, candidates)
        return {
            "booking_id": booking.id,
            "assigned_workers": [],
            "status": "pending",
            "message": (
                "No technician covers your exact area yet. We've offered the job to "
                f"{len(offers)} nearby technician(s) and will confirm shortly."
            ),
            "offers_sent": len(offers),
        }

    async def _notify_assigned_worker(self, booking: Booking, name: str, email: Optional[str], phone: Optional[str]):
        if self.notifier is None:
            return
        summary = self.repo.booking_summary(booking)
        await self.notifier.send_email(
            self.db,
            email,
            "New job assigned",
            worker_assignment_template(name or "there", summary),
            email_type="worker_assignment",
            booking_id=booking.id,
        )
        await self.notifier.send_sms(
            self.db,
            phone,
            f"New job: {summary['scheduled_date']} at {summary['scheduled_start']}, ZIP {summary['zipcode']}",
            message_type="worker_assignment",
            booking_id=booking.id,
        )

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def _has_open_alert(self, booking_id: str, alert_type: str) -> bool:
        return (
            self.db.query(AdminAlert)
            .filter(
                AdminAlert.booking_id == booking_id,
                AdminAlert.alert_type == alert_type,
                AdminAlert.resolved.is_(False),
            )
            .first()
            is not None
        )

    async def _alert_once(self, booking_id: str, alert_type: str, message: str, severity: str, details: dict):
        if self.notifier is None or self._has_open_alert(booking_id, alert_type):
            return
        await self.notifier.raise_admin_alert(
            self.db, alert_type, message, severity=severity, booking_id=booking_id, details=details
        )

    async def validate_booking_integrity(self, booking_id: str, auto_fix: bool = True) -> dict:
        """
        Check a booking for missing or contradictory data.

        Line items missing from a booking are rebuilt from its service record
        when auto_fix is on. Problems are reported to admins, never to the
        customer.

        Returns:
            {booking_id, is_valid, errors, warnings}
        """
        booking = self.get_booking(booking_id)
        errors: list = []
        warnings: list = []

        if not booking.services:
            if auto_fix and booking.service is not None:
                self.repo.add_line_item(
                    self.db,
                    booking,
                    booking.service.name,
                    booking.service.base_price,
                    service_id=booking.service.id,
                    configuration={"auto_fixed": True},
                )
                self.db.flush()
                self.db.refresh(booking)
                booking.total_price = booking.total_price or self.repo.line_items_total(booking)
                self.repo.add_audit_log(
                    self.db, booking.id, "auto_fix_services", {"service_id": booking.service.id}
                )
                self.db.commit()
                warnings.append("Missing services were restored from the booking's service")
                await self._alert_once(
                    booking.id,
                    "missing_services",
                    "Booking had no services; restored from the service record",
                    "medium",
                    {"service_id": booking.service.id, "auto_fixed": True},
                )
            else:
                errors.append("Booking has no services")
                await self._alert_once(
                    booking.id, "missing_services", "Booking has no services", "high", {"auto_fixed": False}
                )

        _, email, _ = self.repo.customer_contact(booking)
        if not email:
            warnings.append("Customer email is missing")
            await self._alert_once(booking.id, "missing_customer_email", "Booking has no customer email", "medium", {})

        if not is_consistent(booking.status, booking.payment_status):
            errors.append(f"Status {booking.status} conflicts with payment status {booking.payment_status}")
            await self._alert_once(
                booking.id,
                "status_inconsistency",
                f"Booking status {booking.status} conflicts with payment {booking.payment_status}",
                "high",
                {"status": booking.status, "payment_status": booking.payment_status},
            )

        line_total = self.repo.line_items_total(booking)
        if booking.services and abs(line_total - (booking.total_price or 0)) > 0.01:
            warnings.append(f"Total {booking.total_price:.2f} differs from line items {line_total:.2f}")

        result = {"booking_id": booking.id, "is_valid": not errors, "errors": errors, "warnings": warnings}
        if errors or warnings:
            logger.warning(f"⚠️ Integrity check for booking {booking.id}: {result}")
        return result

    # ------------------------------------------------------------------
    # Services added after checkout
    # ------------------------------------------------------------------

    async def add_services(self, booking_id: str, items: list[LineItem], actor: Optional[str] = None) -> dict:
        booking = self.get_booking(booking_id)
        if BookingStatus(booking.status) not in ACTIVE_BOOKING_STATUSES:
            raise StateConflictError(f"Cannot add services to a {booking.status} booking", current_state=booking.status)

        added = round(sum(item.base_price * item.quantity for item in items), 2)
        names = [item.service_name if item.quantity == 1 else f"{item.service_name} x{item.quantity}" for item in items]
        authorized = booking.payment_status == PaymentStatus.AUTHORIZED.value and booking.payment_intent_id

        increment = None
        if authorized and added > 0:
            increment = await self.payments.increment(booking.id, added, names)
            if not increment.get("success"):
                return {"success": False, "error": increment.get("error"), "pending": increment.get("pending", False)}
            self.db.refresh(booking)

        for item in items:
            self.repo.add_line_item(
                self.db, booking, item.service_name, item.base_price, item.quantity, item.service_id, item.configuration
            )
        if increment is None:
            self.repo.update_status(self.db, booking, extra={"total_price": round((booking.total_price or 0) + added, 2)})
        self.repo.add_audit_log(
            self.db, booking.id, "services_added", {"services": names, "amount": added}, actor=actor or "system"
        )
        self.db.commit()
        self.db.refresh(booking)
        logger.info(f"✅ Added {len(items)} service(s) to booking {booking.id}, new total ${booking.total_price:.2f}")
        return {
            "success": True,
            "added_amount": added,
            "new_total": booking.total_price,
            "authorization_incremented": increment is not None,
            "notification_sent": bool(increment and increment.get("notification_sent")),
        }

    # ------------------------------------------------------------------
    # Worker actions
    # ------------------------------------------------------------------

    def _require_active(self, booking: Booking):
        if BookingStatus(booking.status) not in ACTIVE_BOOKING_STATUSES or booking.is_archived:
            raise StateConflictError(f"Booking is {booking.status}", current_state=booking.status)

    async def reassign(self, booking_id: str, worker_id: str, actor: Optional[str] = None) -> dict:
        booking = self.get_booking(booking_id)
        self._require_active(booking)
        worker = self.repo.get_user(self.db, worker_id)
        if not worker or worker.role != "worker" or not worker.is_active:
            raise NotFoundError("Worker not found")
        if booking.worker_id == worker_id:
            return {"success": True, "message": "Worker already assigned", "worker_id": worker_id}
        if worker_has_conflict(
            self.db, worker_id, booking.scheduled_date, booking.scheduled_start, booking.duration_minutes or 60, booking.id
        ):
            raise StateConflictError("Worker already has a booking at that time")

        previous = booking.worker_id
        if not self.repo.update_status(self.db, booking, extra={"worker_id": worker_id}):
            raise StateConflictError("Booking changed while reassigning; please retry")
        self.repo.add_audit_log(
            self.db, booking.id, "worker_reassigned", {"from": previous, "to": worker_id}, actor=actor or "admin"
        )
        self.db.commit()
        await self._notify_assigned_worker(booking, worker.name, worker.email, worker.phone)
        logger.info(f"🔄 Booking {booking.id} reassigned {previous} → {worker_id}")
        return {"success": True, "message": "Booking reassigned", "worker_id": worker_id, "previous_worker_id": previous}

    def reschedule(self, booking_id: str, scheduled_date: date, scheduled_start: str, actor: Optional[str] = None) -> dict:
        booking = self.get_booking(booking_id)
        self._require_active(booking)
        if booking.worker_id and worker_has_conflict(
            self.db,
            booking.worker_id,
            scheduled_date,
            scheduled_start,
            booking.duration_minutes or 60,
            exclude_booking_id=booking.id,
        ):
            raise StateConflictError("The assigned worker is not available at that time")

        before = {"scheduled_date": booking.scheduled_date.isoformat(), "scheduled_start": booking.scheduled_start}
        if not self.repo.update_status(
            self.db, booking, extra={"scheduled_date": scheduled_date, "scheduled_start": scheduled_start}
        ):
            raise StateConflictError("Booking changed while rescheduling; please retry")
        self.repo.add_audit_log(
            self.db,
            booking.id,
            "booking_rescheduled",
            {"from": before, "to": {"scheduled_date": scheduled_date.isoformat(), "scheduled_start": scheduled_start}},
            actor=actor or booking.worker_id or "system",
        )
        self.db.commit()
        logger.info(f"📅 Booking {booking.id} moved to {scheduled_date} {scheduled_start}")
        return {"success": True, "scheduled_date": scheduled_date.isoformat(), "scheduled_start": scheduled_start}

    async def cancel_by_worker(self, booking_id: str, worker_id: str, reason: Optional[str] = None) -> dict:
        """Worker drops a job; the booking goes back to the coverage search without them"""
        booking = self.get_booking(booking_id)
        if booking.worker_id != worker_id:
            raise NotFoundError("Booking not found")
        self._require_active(booking)

        if not self.repo.update_status(self.db, booking, extra={"worker_id": None}):
            raise StateConflictError("Booking changed while cancelling; please retry")
        self.repo.add_audit_log(
            self.db, booking.id, "worker_cancelled", {"reason": reason}, actor=worker_id
        )
        self.db.commit()
        logger.info(f"👋 Worker {worker_id} dropped booking {booking.id}")

        candidates = [
            c
            for c in find_available_workers(
                self.db,
                booking.zipcode,
                booking.scheduled_date,
                booking.scheduled_start,
                booking.duration_minutes or 60,
                exclude_booking_id=booking.id,
            )
            if c.worker_id != worker_id
        ]
        staffing = await self._staff_booking(booking, candidates)
        return {"success": True, **staffing}

    async def complete(self, booking_id: str, worker_id: Optional[str] = None) -> dict:
        """Mark a job done, capturing the held payment first"""
        booking = self.get_booking(booking_id)
        if worker_id and booking.worker_id != worker_id:
            raise NotFoundError("Booking not found")
        if booking.status == BookingStatus.COMPLETED.value:
            return {"success": True, "message": "Booking already completed", "status": booking.status}
        if BookingStatus(booking.status) not in CONFIRMED_FAMILY:
            raise StateConflictError(
                f"Only confirmed bookings can be completed (booking is {booking.status})",
                current_state=booking.status,
            )

        capture = None
        if booking.payment_status == PaymentStatus.AUTHORIZED.value:
            capture = await self.payments.capture(booking.id)
            if not capture.get("success"):
                return {"success": False, "error": capture.get("error"), "pending": capture.get("pending", False)}
            self.db.refresh(booking)

        if not self.repo.update_status(self.db, booking, status=BookingStatus.COMPLETED):
            raise StateConflictError("Booking changed while completing; please retry")
        self.repo.add_audit_log(
            self.db,
            booking.id,
            "booking_completed",
            {"amount_captured": capture.get("amount_captured") if capture else None},
            actor=worker_id or "system",
        )
        self.db.commit()
        logger.info(f"✅ Booking {booking.id} completed")
        return {
            "success": True,
            "status": booking.status,
            "payment_status": booking.payment_status,
            "amount_captured": capture.get("amount_captured") if capture else None,
        }

    def clear_completed(self, worker_id: str) -> dict:
        """Archive a worker's completed jobs"""
        bookings = (
            self.db.query(Booking)
            .filter(
                Booking.worker_id == worker_id,
                Booking.status == BookingStatus.COMPLETED.value,
                Booking.is_archived.is_(False),
            )
            .all()
        )
        now = datetime.utcnow()
        archived = []
        for booking in bookings:
            updated = (
                self.db.query(Booking)
                .filter(Booking.id == booking.id, Booking.is_archived.is_(False))
                .update({Booking.is_archived: True, Booking.archived_at: now}, synchronize_session=False)
            )
            if updated:
                archived.append(booking.id)
                self.repo.add_audit_log(self.db, booking.id, "booking_archived", {}, actor=worker_id)
        self.db.commit()
        logger.info(f"🗄️ Archived {len(archived)} completed booking(s) for worker {worker_id}")
        return {"success": True, "archived_count": len(archived), "booking_ids": archived}
