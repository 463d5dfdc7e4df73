"""Coverage router - FastAPI endpoints for coverage queries, service areas and job offers"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import require_admin_token
from ...database import get_db
from ...wiring import Container, get_container
from .schemas import (
    CoverageQuery,
    OfferResponseRequest,
    PolygonRequest,
    ServiceAreaResponse,
    ServiceAreaUpsert,
)
from .service import CoverageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/coverage", tags=["Coverage"])


def get_coverage_service(
    db: Session = Depends(get_db), container: Container = Depends(get_container)
) -> CoverageService:
    """Dependency injection for CoverageService"""
    return CoverageService(db, resolver=container.resolver, notifier=container.notifier)


# ============================================================================
# QUERIES
# ============================================================================


@router.post("/query")
async def query_coverage(data: CoverageQuery, service: CoverageService = Depends(get_coverage_service)):
    """ZIP codes in a polygon (or a ZIP list) and who already covers them"""
    return await service.query_coverage(
        polygon=data.polygon,
        zipcodes_only=data.zipcodes_only,
        worker_id=data.worker_id,
        include_partial=data.include_partial,
        min_intersection_ratio=data.min_intersection_ratio,
    )


@router.post("/validate-polygon")
async def validate_polygon(data: PolygonRequest, service: CoverageService = Depends(get_coverage_service)):
    return service.validate_polygon(data.polygon)


@router.get("/zipcode")
async def zipcode_for_point(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    service: CoverageService = Depends(get_coverage_service),
):
    return await service.zipcode_for_point(lat, lng)


# ============================================================================
# SERVICE AREAS
# ============================================================================


@router.post("/areas", response_model=ServiceAreaResponse)
async def upsert_area(
    data: ServiceAreaUpsert,
    service: CoverageService = Depends(get_coverage_service),
    container: Container = Depends(get_container),
):
    area = await service.upsert_area(
        data.worker_id,
        data.area_name,
        polygon=data.polygon,
        zipcodes=data.zipcodes,
        include_partial=data.include_partial,
        min_intersection_ratio=data.min_intersection_ratio,
    )
    await container.publisher.publish(
        "worker_service_areas",
        "UPDATE",
        {"id": area.id, "worker_id": area.worker_id, "area_name": area.area_name, "zipcodes": area.zipcodes},
    )
    return area


@router.get("/areas", response_model=list[ServiceAreaResponse])
async def list_areas(worker_id: str, service: CoverageService = Depends(get_coverage_service)):
    return service.list_areas(worker_id)


@router.delete("/areas/{area_id}", response_model=ServiceAreaResponse)
async def deactivate_area(
    area_id: str,
    worker_id: Optional[str] = None,
    service: CoverageService = Depends(get_coverage_service),
):
    return service.deactivate_area(area_id, worker_id=worker_id)


@router.delete("/workers/{worker_id}/zipcodes/{zipcode}", dependencies=[Depends(require_admin_token)])
async def remove_worker_zipcode(
    worker_id: str, zipcode: str, service: CoverageService = Depends(get_coverage_service)
):
    """Admin: drop one ZIP from a worker's areas"""
    return service.remove_worker_zip(worker_id, zipcode)


# ============================================================================
# COVERAGE OFFERS
# ============================================================================


@router.post("/notifications/{notification_id}/accept")
async def accept_offer(
    notification_id: str,
    data: OfferResponseRequest,
    service: CoverageService = Depends(get_coverage_service),
    container: Container = Depends(get_container),
):
    result = await service.accept_offer(notification_id, data.worker_id)
    await container.publisher.publish(
        "coverage_notifications", "UPDATE", {"id": notification_id, "booking_id": result["booking_id"], "status": result["status"]}
    )
    return result


@router.post("/notifications/{notification_id}/decline")
async def decline_offer(
    notification_id: str,
    data: OfferResponseRequest,
    service: CoverageService = Depends(get_coverage_service),
):
    return service.decline_offer(notification_id, data.worker_id)
