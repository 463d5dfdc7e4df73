"""Admin maintenance endpoints - manual runs of the scheduled sweeps"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .. import config
from ..auth import require_admin_token
from ..database import get_db
from ..domain.payments.reconciliation import ReconciliationService
from ..services.cleanup import (
    bulk_delete_abandoned,
    cleanup_payment_pending_bookings,
    cleanup_unpaid_bookings,
)
from ..services.watchdog import run_notification_watchdog
from ..wiring import Container, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/maintenance", tags=["Maintenance"], dependencies=[Depends(require_admin_token)])


class CleanupRequest(BaseModel):
    job: str = Field(default="unpaid", pattern="^(unpaid|payment_pending|all)$")


class BulkDeleteRequest(BaseModel):
    older_than_minutes: int = Field(default=config.PAYMENT_PENDING_TTL_MINUTES, ge=30)


class SyncCapturesRequest(BaseModel):
    since_days: int = Field(default=45, ge=1, le=365)


@router.post("/cleanup")
async def run_cleanup(
    data: CleanupRequest = CleanupRequest(),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    """Same sweep the worker runs on a schedule, flagged as manual"""
    results = {}
    if data.job in ("unpaid", "all"):
        results["unpaid"] = await cleanup_unpaid_bookings(
            db, stripe=container.stripe, manual=True, retry_delay=container.retry_delay
        )
    if data.job in ("payment_pending", "all"):
        results["payment_pending"] = await cleanup_payment_pending_bookings(
            db, stripe=container.stripe, manual=True, retry_delay=container.retry_delay
        )
    if len(results) == 1:
        return next(iter(results.values()))
    return results


@router.post("/bulk-delete")
async def run_bulk_delete(
    data: BulkDeleteRequest = BulkDeleteRequest(),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    return await bulk_delete_abandoned(
        db, data.older_than_minutes, stripe=container.stripe, retry_delay=container.retry_delay
    )


@router.post("/reconcile-authorized")
async def run_authorized_sweep(db: Session = Depends(get_db), container: Container = Depends(get_container)):
    return await ReconciliationService(db, container.stripe, retry_delay=container.retry_delay).sweep_authorized()


@router.post("/sync-captures")
async def run_capture_sync(
    data: SyncCapturesRequest = SyncCapturesRequest(),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    return await ReconciliationService(db, container.stripe, retry_delay=container.retry_delay).sync_stripe_captures(
        data.since_days
    )


@router.post("/watchdog/{booking_id}")
async def run_watchdog(booking_id: str, db: Session = Depends(get_db), container: Container = Depends(get_container)):
    return await run_notification_watchdog(
        db, booking_id, container.notifier, stripe=container.stripe, retry_delay=container.retry_delay
    )
