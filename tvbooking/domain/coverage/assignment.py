"""
Worker auto-assignment

Ranks eligible workers for a booking slot:
    1 = an active service area lists the booking ZIP
    2 = nearby, a covered ZIP lies within NEARBY_RADIUS_MILES
    3 = regional, a covered ZIP shares the 3-digit ZIP prefix
Workers with an overlapping booking in the requested window are excluded.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import NEARBY_RADIUS_MILES
from .repository import CoverageRepository
from .resolver import haversine_miles, normalize_zipcode, zipcode_location

logger = logging.getLogger(__name__)

PRIORITY_SAME_AREA = 1
PRIORITY_NEARBY = 2
PRIORITY_REGIONAL = 3


@dataclass
class WorkerCandidate:
    worker_id: str
    worker_name: str
    worker_email: Optional[str]
    worker_phone: str
    distance_priority: int
    distance_miles: Optional[float] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if data["distance_miles"] is not None:
            data["distance_miles"] = round(data["distance_miles"], 1)
        return data


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and a_end > b_start


def slot_bounds(scheduled_date: date, scheduled_start: str, duration_minutes: int) -> tuple:
    start = datetime.combine(scheduled_date, datetime.strptime(scheduled_start, "%H:%M").time())
    return start, start + timedelta(minutes=duration_minutes)


def worker_has_conflict(
    db: Session,
    worker_id: str,
    scheduled_date: date,
    scheduled_start: str,
    duration_minutes: int,
    exclude_booking_id: Optional[str] = None,
) -> bool:
    start, end = slot_bounds(scheduled_date, scheduled_start, duration_minutes)
    for booking in CoverageRepository.get_worker_bookings_on(db, worker_id, scheduled_date):
        if exclude_booking_id and booking.id == exclude_booking_id:
            continue
        b_start, b_end = slot_bounds(
            booking.scheduled_date, booking.scheduled_start, booking.duration_minutes or 60
        )
        if overlaps(start, end, b_start, b_end):
            logger.debug(f"Worker {worker_id} busy: booking {booking.id} overlaps {scheduled_start}")
            return True
    return False


def _rank_worker(areas: list, zipcode: str, origin: Optional[tuple], radius_miles: float) -> Optional[tuple]:
    """(priority, distance) for one worker's active areas, None when out of reach"""
    covered = {z for area in areas for z in (area.zipcodes or [])}
    if not covered:
        return None
    if zipcode in covered:
        return PRIORITY_SAME_AREA, 0.0

    nearest = None
    if origin is not None:
        for other in covered:
            location = zipcode_location(other)
            if location is None:
                continue
            distance = haversine_miles(origin[0], origin[1], location[0], location[1])
            if nearest is None or distance < nearest:
                nearest = distance
    if nearest is not None and nearest <= radius_miles:
        return PRIORITY_NEARBY, nearest

    prefix = zipcode[:3]
    if any(other[:3] == prefix for other in covered):
        return PRIORITY_REGIONAL, nearest
    return None


def find_available_workers(
    db: Session,
    zipcode: str,
    scheduled_date: date,
    scheduled_start: str,
    duration_minutes: int = 60,
    exclude_booking_id: Optional[str] = None,
    nearby_radius_miles: Optional[float] = None,
) -> list:
    """
    Eligible workers for a slot ordered by priority, then distance, then id.

    Args:
        db: Database session
        zipcode: Booking ZIP code
        scheduled_date: Day of the appointment
        scheduled_start: Start time as HH:MM
        duration_minutes: Length of the appointment
        exclude_booking_id: Ignore this booking when checking conflicts (reschedule)
        nearby_radius_miles: Override of NEARBY_RADIUS_MILES

    Returns:
        List of WorkerCandidate
    """
    zipcode = normalize_zipcode(zipcode)
    if not zipcode:
        return []
    radius = NEARBY_RADIUS_MILES if nearby_radius_miles is None else nearby_radius_miles
    origin = zipcode_location(zipcode)

    areas_by_worker: dict = {}
    for area in CoverageRepository.get_active_areas(db):
        areas_by_worker.setdefault(area.worker_id, []).append(area)

    candidates = []
    for worker in CoverageRepository.get_active_workers(db):
        areas = areas_by_worker.get(worker.id)
        if not areas:
            continue
        rank = _rank_worker(areas, zipcode, origin, radius)
        if rank is None:
            continue
        if worker_has_conflict(
            db, worker.id, scheduled_date, scheduled_start, duration_minutes, exclude_booking_id
        ):
            continue
        priority, distance = rank
        candidates.append(
            WorkerCandidate(
                worker_id=worker.id,
                worker_name=worker.name or "Unknown",
                worker_email=worker.email,
                worker_phone=worker.phone or "",
                distance_priority=priority,
                distance_miles=distance,
            )
        )

    candidates.sort(
        key=lambda c: (
            c.distance_priority,
            c.distance_miles if c.distance_miles is not None else float("inf"),
            c.worker_id,
        )
    )
    logger.info(
        f"📊 {len(candidates)} available worker(s) for ZIP {zipcode} on {scheduled_date} {scheduled_start}"
    )
    return candidates
