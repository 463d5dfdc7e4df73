"""Coverage repository - Database operations for worker service areas"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Booking, CoverageNotification, User, WorkerServiceArea
from ...statuses import ACTIVE_BOOKING_STATUSES


class CoverageRepository:
    """Repository for service area and coverage notification queries"""

    @staticmethod
    def get_active_workers(db: Session) -> list:
        return (
            db.query(User)
            .filter(User.role == "worker", User.is_active.is_(True))
            .order_by(User.id)
            .all()
        )

    @staticmethod
    def get_active_areas(db: Session, worker_id: Optional[str] = None) -> list:
        query = (
            db.query(WorkerServiceArea)
            .join(User, User.id == WorkerServiceArea.worker_id)
            .filter(
                WorkerServiceArea.is_active.is_(True),
                User.role == "worker",
                User.is_active.is_(True),
            )
        )
        if worker_id:
            query = query.filter(WorkerServiceArea.worker_id == worker_id)
        return query.all()

    @staticmethod
    def zipcode_owners(db: Session) -> dict:
        """ZIP code → set of worker ids with an active area listing it"""
        owners: dict = {}
        for area in CoverageRepository.get_active_areas(db):
            for zipcode in area.zipcodes or []:
                owners.setdefault(zipcode, set()).add(area.worker_id)
        return owners

    @staticmethod
    def get_area(db: Session, area_id: str) -> Optional[WorkerServiceArea]:
        return db.query(WorkerServiceArea).filter(WorkerServiceArea.id == area_id).first()

    @staticmethod
    def get_area_by_name(db: Session, worker_id: str, area_name: str) -> Optional[WorkerServiceArea]:
        return (
            db.query(WorkerServiceArea)
            .filter(
                WorkerServiceArea.worker_id == worker_id,
                WorkerServiceArea.area_name == area_name,
            )
            .first()
        )

    @staticmethod
    def get_worker_bookings_on(db: Session, worker_id: str, day: date) -> list:
        """Bookings still occupying the worker's calendar on a given day"""
        return (
            db.query(Booking)
            .filter(
                Booking.worker_id == worker_id,
                Booking.scheduled_date == day,
                Booking.status.in_([s.value for s in ACTIVE_BOOKING_STATUSES]),
                Booking.is_archived.is_(False),
            )
            .all()
        )

    @staticmethod
    def get_notification(db: Session, notification_id: str) -> Optional[CoverageNotification]:
        return (
            db.query(CoverageNotification)
            .filter(CoverageNotification.id == notification_id)
            .first()
        )

    @staticmethod
    def get_notifications_for_booking(db: Session, booking_id: str) -> list:
        return (
            db.query(CoverageNotification)
            .filter(CoverageNotification.booking_id == booking_id)
            .order_by(CoverageNotification.priority, CoverageNotification.created_at)
            .all()
        )

    @staticmethod
    def claim_booking(db: Session, booking_id: str, worker_id: str) -> bool:
        """Assign only if nobody holds the booking yet; False means another worker won"""
        updated = (
            db.query(Booking)
            .filter(
                Booking.id == booking_id,
                Booking.worker_id.is_(None),
                Booking.status.in_([s.value for s in ACTIVE_BOOKING_STATUSES]),
            )
            .update({Booking.worker_id: worker_id, Booking.updated_at: datetime.utcnow()},
                    synchronize_session="fetch")
        )
        return updated == 1

    @staticmethod
    def close_other_offers(db: Session, booking_id: str, keep_id: str) -> int:
        return (
            db.query(CoverageNotification)
            .filter(
                CoverageNotification.booking_id == booking_id,
                CoverageNotification.id != keep_id,
                CoverageNotification.status == "pending",
            )
            .update(
                {CoverageNotification.status: "declined",
                 CoverageNotification.responded_at: datetime.utcnow()},
                synchronize_session="fetch",
            )
        )
