"""Coverage service - Service areas, coverage queries and out-of-area job offers"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...config import FRONTEND_URL
from ...email_templates import coverage_offer_template, worker_assignment_template
from ...exceptions import NotFoundError, StateConflictError, ValidationError
from ...models import Booking, CoverageNotification, WorkerServiceArea
from ...statuses import ACTIVE_BOOKING_STATUSES, BookingStatus
from ..bookings.repository import BookingRepository
from .assignment import PRIORITY_SAME_AREA, WorkerCandidate, worker_has_conflict
from .repository import CoverageRepository
from .resolver import CoverageResolver, normalize_zipcode, validate_zipcode
from .zcta import DEFAULT_MIN_INTERSECTION_RATIO, validate_polygon

logger = logging.getLogger(__name__)


class CoverageService:
    """Service layer for coverage business logic"""

    def __init__(self, db: Session, resolver: Optional[CoverageResolver] = None, notifier=None):
        self.db = db
        self.resolver = resolver
        self.notifier = notifier
        self.repo = CoverageRepository()
        self.bookings = BookingRepository()

    def _require_resolver(self) -> CoverageResolver:
        if self.resolver is None:
            raise RuntimeError("CoverageService needs a resolver for polygon queries")
        return self.resolver

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _clean_zipcodes(zipcodes: list) -> list:
        cleaned = []
        for raw in zipcodes:
            zipcode = normalize_zipcode(raw)
            if not zipcode:
                raise ValidationError(f"Invalid zipcode: {raw}")
            if zipcode not in cleaned:
                cleaned.append(zipcode)
        return cleaned

    async def query_coverage(
        self,
        polygon: Optional[list] = None,
        zipcodes_only: Optional[list] = None,
        worker_id: Optional[str] = None,
        include_partial: bool = True,
        min_intersection_ratio: float = DEFAULT_MIN_INTERSECTION_RATIO,
    ) -> dict:
        """
        Resolve a polygon or ZIP list and report who already covers each ZIP.

        Returns:
            {zipcodes, matches, summary: {total, assigned_to_worker, assigned_to_other, unassigned}}
        """
        ratios = {}
        if polygon:
            matches = await self._require_resolver().find_intersecting_zipcodes(
                polygon, include_partial=include_partial, min_intersection_ratio=min_intersection_ratio
            )
            zipcodes = [m.zipcode for m in matches]
            ratios = {m.zipcode: m.to_dict() for m in matches}
        elif zipcodes_only:
            zipcodes = self._clean_zipcodes(zipcodes_only)
        else:
            raise ValidationError("Provide a polygon or a list of zipcodes")

        owners = self.repo.zipcode_owners(self.db)
        summary = {"total": len(zipcodes), "assigned_to_worker": 0, "assigned_to_other": 0, "unassigned": 0}
        details = []
        for zipcode in zipcodes:
            covering = owners.get(zipcode, set())
            if worker_id and worker_id in covering:
                state = "assigned_to_worker"
            elif covering - {worker_id}:
                state = "assigned_to_other"
            else:
                state = "unassigned"
            summary[state] += 1
            entry = {"zipcode": zipcode, "coverage": state, "worker_count": len(covering)}
            if zipcode in ratios:
                entry["intersection_ratio"] = ratios[zipcode]["intersection_ratio"]
                entry["full_coverage"] = ratios[zipcode]["full_coverage"]
            details.append(entry)

        logger.info(f"📊 Coverage query: {summary}")
        return {"zipcodes": zipcodes, "matches": details, "summary": summary}

    def validate_polygon(self, points: list) -> dict:
        return validate_polygon(points).to_dict()

    async def zipcode_for_point(self, lat: float, lng: float) -> dict:
        zipcode = await self._require_resolver().zipcode_for_point(lat, lng)
        return {"zipcode": zipcode, "found": zipcode is not None}

    # ------------------------------------------------------------------
    # Service areas
    # ------------------------------------------------------------------

    def _require_worker(self, worker_id: str):
        worker = self.bookings.get_user(self.db, worker_id)
        if not worker or worker.role != "worker":
            raise NotFoundError("Worker not found")
        return worker

    async def upsert_area(
        self,
        worker_id: str,
        area_name: str,
        polygon: Optional[list] = None,
        zipcodes: Optional[list] = None,
        include_partial: bool = True,
        min_intersection_ratio: float = DEFAULT_MIN_INTERSECTION_RATIO,
    ) -> WorkerServiceArea:
        """Save a named service area from a drawn polygon or an explicit ZIP list"""
        self._require_worker(worker_id)
        area_name = (area_name or "").strip()
        if not area_name:
            raise ValidationError("Area name is required")

        if polygon:
            matches = await self._require_resolver().find_intersecting_zipcodes(
                polygon, include_partial=include_partial, min_intersection_ratio=min_intersection_ratio
            )
            resolved = [m.zipcode for m in matches]
        elif zipcodes:
            resolved = self._clean_zipcodes(zipcodes)
            unknown = [z for z in resolved if not validate_zipcode(z)]
            if unknown:
                raise ValidationError(f"Unknown zipcodes: {', '.join(unknown)}")
        else:
            raise ValidationError("Provide a polygon or a list of zipcodes")
        if not resolved:
            raise ValidationError("The selected area does not contain any zipcodes")

        area = self.repo.get_area_by_name(self.db, worker_id, area_name)
        if area is None:
            area = WorkerServiceArea(worker_id=worker_id, area_name=area_name)
            self.db.add(area)
        area.polygon_coords = [list(p) for p in polygon] if polygon else None
        area.zipcodes = sorted(resolved)
        area.is_active = True
        area.updated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(area)
        logger.info(f"✅ Service area '{area_name}' saved for worker {worker_id} ({len(resolved)} ZIPs)")
        return area

    def list_areas(self, worker_id: str) -> list:
        return self.repo.get_active_areas(self.db, worker_id=worker_id)

    def deactivate_area(self, area_id: str, worker_id: Optional[str] = None) -> WorkerServiceArea:
        area = self.repo.get_area(self.db, area_id)
        if not area or (worker_id and area.worker_id != worker_id):
            raise NotFoundError("Service area not found")
        if area.is_active:
            area.is_active = False
            area.updated_at = datetime.utcnow()
            self.db.commit()
            logger.info(f"🗑️ Service area {area_id} deactivated")
        return area

    def remove_worker_zip(self, worker_id: str, zipcode: str) -> dict:
        """Drop one ZIP from every area of a worker (admin)"""
        zipcode = normalize_zipcode(zipcode)
        if not zipcode:
            raise ValidationError("Invalid zipcode")
        self._require_worker(worker_id)
        changed = 0
        for area in self.repo.get_active_areas(self.db, worker_id=worker_id):
            if zipcode in (area.zipcodes or []):
                # reassign so the JSON column is flagged dirty
                area.zipcodes = [z for z in area.zipcodes if z != zipcode]
                area.updated_at = datetime.utcnow()
                changed += 1
        self.db.commit()
        logger.info(f"✅ Removed ZIP {zipcode} from {changed} area(s) of worker {worker_id}")
        return {"success": True, "areas_updated": changed}

    # ------------------------------------------------------------------
    # Coverage offers
    # ------------------------------------------------------------------

    async def offer_booking(self, booking: Booking, candidates: list) -> list:
        """Create pending offers for out-of-area workers and notify them"""
        existing = {n.worker_id for n in self.repo.get_notifications_for_booking(self.db, booking.id)}
        created = []
        for candidate in candidates:
            if candidate.distance_priority == PRIORITY_SAME_AREA or candidate.worker_id in existing:
                continue
            notification = CoverageNotification(
                booking_id=booking.id,
                worker_id=candidate.worker_id,
                priority=candidate.distance_priority,
                distance_miles=candidate.distance_miles,
                status="pending",
            )
            self.db.add(notification)
            created.append((notification, candidate))
        self.db.commit()

        if self.notifier is not None:
            summary = self.bookings.booking_summary(booking)
            for notification, candidate in created:
                await self._send_offer(notification, candidate, summary)

        logger.info(f"📣 {len(created)} coverage offer(s) sent for booking {booking.id}")
        return [n for n, _ in created]

    async def _send_offer(self, notification: CoverageNotification, candidate: WorkerCandidate, summary: dict):
        accept_url = f"{FRONTEND_URL}/worker/coverage/{notification.id}"
        await self.notifier.send_email(
            self.db,
            candidate.worker_email,
            "A job is available near you",
            coverage_offer_template(candidate.worker_name, summary, candidate.distance_priority, accept_url),
            email_type="coverage_offer",
            booking_id=notification.booking_id,
        )
        await self.notifier.send_sms(
            self.db,
            candidate.worker_phone,
            f"New TV mounting job on {summary['scheduled_date']} at {summary['scheduled_start']} "
            f"(ZIP {summary['zipcode']}). First to accept gets it: {accept_url}",
            message_type="coverage_offer",
            booking_id=notification.booking_id,
        )

    def _get_offer(self, notification_id: str, worker_id: str) -> CoverageNotification:
        notification = self.repo.get_notification(self.db, notification_id)
        if not notification or notification.worker_id != worker_id:
            raise NotFoundError("Coverage offer not found")
        return notification

    @staticmethod
    def _offer_result(notification: CoverageNotification, booking: Optional[Booking], message: str) -> dict:
        return {
            "success": True,
            "notification_id": notification.id,
            "booking_id": notification.booking_id,
            "status": notification.status,
            "assigned_worker_id": booking.worker_id if booking else None,
            "message": message,
        }

    async def accept_offer(self, notification_id: str, worker_id: str) -> dict:
        """
        Accept a coverage offer. The first worker to accept is assigned;
        any later accept or decline is a no-op that reports the outcome.
        """
        notification = self._get_offer(notification_id, worker_id)
        booking = self.bookings.get_booking(self.db, notification.booking_id)
        if notification.status != "pending":
            return self._offer_result(notification, booking, "This offer has already been resolved")
        if booking is None:
            raise NotFoundError("Booking not found")
        if BookingStatus(booking.status) not in ACTIVE_BOOKING_STATUSES:
            notification.status = "declined"
            notification.responded_at = datetime.utcnow()
            self.db.commit()
            logger.info(f"ℹ️ Booking {booking.id} is {booking.status}; offer {notification_id} closed")
            raise StateConflictError("This job is no longer available", current_state=booking.status)

        if booking.worker_id is None and worker_has_conflict(
            self.db,
            worker_id,
            booking.scheduled_date,
            booking.scheduled_start,
            booking.duration_minutes or 60,
            exclude_booking_id=booking.id,
        ):
            raise StateConflictError("You already have a job at that time")

        now = datetime.utcnow()
        if not self.repo.claim_booking(self.db, booking.id, worker_id):
            notification.status = "declined"
            notification.responded_at = now
            self.db.commit()
            self.db.refresh(booking)
            logger.info(f"ℹ️ Booking {booking.id} already taken; offer {notification_id} closed")
            return self._offer_result(notification, booking, "Another worker already accepted this job")

        notification.status = "accepted"
        notification.responded_at = now
        self.repo.close_other_offers(self.db, booking.id, notification.id)
        self.bookings.add_audit_log(
            self.db,
            booking.id,
            "coverage_accepted",
            {"notification_id": notification.id, "priority": notification.priority},
            actor=worker_id,
        )
        self.db.commit()
        self.db.refresh(booking)
        logger.info(f"✅ Worker {worker_id} accepted booking {booking.id}")

        if self.notifier is not None and booking.worker is not None:
            await self.notifier.send_email(
                self.db,
                booking.worker.email,
                "New job assigned",
                worker_assignment_template(booking.worker.name or "there", self.bookings.booking_summary(booking)),
                email_type="worker_assignment",
                booking_id=booking.id,
            )
        return self._offer_result(notification, booking, "Job accepted")

    def decline_offer(self, notification_id: str, worker_id: str) -> dict:
        notification = self._get_offer(notification_id, worker_id)
        booking = self.bookings.get_booking(self.db, notification.booking_id)
        if notification.status != "pending":
            return self._offer_result(notification, booking, "This offer has already been resolved")
        notification.status = "declined"
        notification.responded_at = datetime.utcnow()
        self.db.commit()
        logger.info(f"👋 Worker {worker_id} declined booking {notification.booking_id}")
        return self._offer_result(notification, booking, "Offer declined")
