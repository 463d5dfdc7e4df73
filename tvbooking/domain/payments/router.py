"""Payment router - FastAPI endpoints for the authorization hold lifecycle"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import require_admin_token
from ...database import get_db
from ...wiring import Container, get_container
from .reconciliation import ReconciliationService
from .schemas import (
    AuthorizeRequest,
    CancelRequest,
    CaptureRequest,
    IncrementRequest,
    ReconcileRequest,
    ReconcileResponse,
    RefundRequest,
    TransactionStatusRequest,
)
from .service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


def get_payment_service(
    db: Session = Depends(get_db), container: Container = Depends(get_container)
) -> PaymentService:
    """Dependency injection for PaymentService"""
    return PaymentService(db, stripe=container.stripe, notifier=container.notifier, retry_delay=container.retry_delay)


def get_reconciliation_service(
    db: Session = Depends(get_db), container: Container = Depends(get_container)
) -> ReconciliationService:
    return ReconciliationService(db, stripe=container.stripe, retry_delay=container.retry_delay)


@router.post("/authorize")
async def authorize_payment(data: AuthorizeRequest, service: PaymentService = Depends(get_payment_service)):
    """Create a manual-capture PaymentIntent and mirror it locally"""
    return await service.create_authorization(
        data.booking_id, data.amount, currency=data.currency, payment_method=data.payment_method
    )


@router.post("/capture")
async def capture_payment(data: CaptureRequest, service: PaymentService = Depends(get_payment_service)):
    return await service.capture(data.booking_id, amount=data.amount)


@router.post("/increment")
async def increment_payment(data: IncrementRequest, service: PaymentService = Depends(get_payment_service)):
    return await service.increment(data.booking_id, data.additional_amount, data.services)


@router.post("/cancel")
async def cancel_payment(data: CancelRequest, service: PaymentService = Depends(get_payment_service)):
    return await service.cancel_authorization(data.booking_id, reason=data.reason)


@router.post("/refund", dependencies=[Depends(require_admin_token)])
async def refund_payment(data: RefundRequest, service: PaymentService = Depends(get_payment_service)):
    return await service.refund(data.booking_id, amount=data.amount)


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_payment(
    data: ReconcileRequest, service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Compare a booking with its PaymentIntent and repair any drift"""
    return await service.reconcile(data.booking_id, data.payment_intent_id)


@router.post("/transaction-status")
async def update_transaction_status(
    data: TransactionStatusRequest, service: ReconciliationService = Depends(get_reconciliation_service)
):
    return service.update_transaction_status(data.payment_intent_id, data.status, data.booking_id)
