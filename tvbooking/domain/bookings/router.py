"""Booking router - FastAPI endpoints for bookings, worker actions and the service catalog"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import require_admin_token
from ...database import get_db
from ...wiring import Container, get_container
from .repository import BookingRepository
from .schemas import (
    AddServicesRequest,
    BookingCreate,
    BookingCreateResponse,
    IntegrityRequest,
    ReassignRequest,
    RescheduleRequest,
    WorkerActionRequest,
)
from .service import BookingsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])
workers_router = APIRouter(prefix="/workers", tags=["Workers"])
catalog_router = APIRouter(prefix="/services", tags=["Services"])

SERVICES_CACHE_KEY = "active_services"


def get_bookings_service(
    db: Session = Depends(get_db), container: Container = Depends(get_container)
) -> BookingsService:
    """Dependency injection for BookingsService"""
    return BookingsService(
        db,
        notifier=container.notifier,
        stripe=container.stripe,
        resolver=container.resolver,
        retry_delay=container.retry_delay,
    )


async def _publish(container: Container, booking) -> None:
    await container.publisher.publish("bookings", "UPDATE", BookingRepository.booking_summary(booking))


# ============================================================================
# BOOKINGS
# ============================================================================


@router.post("", response_model=BookingCreateResponse)
async def create_booking(
    data: BookingCreate,
    service: BookingsService = Depends(get_bookings_service),
    container: Container = Depends(get_container),
):
    """Create a booking and try to assign a worker"""
    result = await service.create_booking(data)
    if result.get("booking_id"):
        await _publish(container, service.get_booking(result["booking_id"]))
    return result


@router.get("/{booking_id}")
async def get_booking(booking_id: str, service: BookingsService = Depends(get_bookings_service)):
    return BookingRepository.booking_summary(service.get_booking(booking_id))


@router.post("/{booking_id}/validate")
async def validate_booking(
    booking_id: str,
    data: IntegrityRequest = IntegrityRequest(),
    service: BookingsService = Depends(get_bookings_service),
):
    return await service.validate_booking_integrity(booking_id, auto_fix=data.auto_fix)


@router.post("/{booking_id}/services")
async def add_services(
    booking_id: str,
    data: AddServicesRequest,
    service: BookingsService = Depends(get_bookings_service),
    container: Container = Depends(get_container),
):
    result = await service.add_services(booking_id, data.services, actor=data.actor)
    if result.get("success"):
        await _publish(container, service.get_booking(booking_id))
    return result


# ============================================================================
# WORKER ACTIONS
# ============================================================================


@router.post("/{booking_id}/reassign", dependencies=[Depends(require_admin_token)])
async def reassign_booking(
    booking_id: str,
    data: ReassignRequest,
    service: BookingsService = Depends(get_bookings_service),
    container: Container = Depends(get_container),
):
    result = await service.reassign(booking_id, data.worker_id, actor=data.actor)
    await _publish(container, service.get_booking(booking_id))
    return result


@router.post("/{booking_id}/reschedule")
async def reschedule_booking(
    booking_id: str,
    data: RescheduleRequest,
    service: BookingsService = Depends(get_bookings_service),
    container: Container = Depends(get_container),
):
    result = service.reschedule(booking_id, data.scheduled_date, data.scheduled_start, actor=data.actor)
    await _publish(container, service.get_booking(booking_id))
    return result


@router.post("/{booking_id}/cancel")
async def worker_cancel_booking(
    booking_id: str,
    data: WorkerActionRequest,
    service: BookingsService = Depends(get_bookings_service),
    container: Container = Depends(get_container),
):
    """Worker drops the job; it goes back to the coverage search"""
    result = await service.cancel_by_worker(booking_id, data.worker_id, reason=data.reason)
    await _publish(container, service.get_booking(booking_id))
    return result


@router.post("/{booking_id}/complete")
async def complete_booking(
    booking_id: str,
    data: WorkerActionRequest,
    service: BookingsService = Depends(get_bookings_service),
    container: Container = Depends(get_container),
):
    result = await service.complete(booking_id, worker_id=data.worker_id)
    await _publish(container, service.get_booking(booking_id))
    return result


@workers_router.post("/{worker_id}/clear-completed")
async def clear_completed(worker_id: str, service: BookingsService = Depends(get_bookings_service)):
    """Archive a worker's completed jobs"""
    return service.clear_completed(worker_id)


# ============================================================================
# SERVICE CATALOG
# ============================================================================


@catalog_router.get("")
async def list_services(db: Session = Depends(get_db), container: Container = Depends(get_container)):
    cached = container.services_cache.get(SERVICES_CACHE_KEY)
    if cached is not None:
        return cached
    services = [
        {
            "id": s.id,
            "name": s.name,
            "description": s.description,
            "base_price": s.base_price,
            "duration_minutes": s.duration_minutes,
        }
        for s in BookingRepository.list_active_services(db)
    ]
    container.services_cache.set(SERVICES_CACHE_KEY, services)
    return services
