"""Payment repository - Database operations for the transaction ledger"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Booking, Transaction
from ...statuses import (
    TransactionStatus,
    TransactionType,
    check_transaction_precondition,
    validate_transition,
)


class PaymentRepository:
    """Repository for transaction rows"""

    @staticmethod
    def get_transaction(db: Session, transaction_id: str) -> Optional[Transaction]:
        return db.query(Transaction).filter(Transaction.id == transaction_id).first()

    @staticmethod
    def get_primary_transaction(db: Session, payment_intent_id: str) -> Optional[Transaction]:
        """The authorization row mirroring a payment intent"""
        return (
            db.query(Transaction)
            .filter(
                Transaction.payment_intent_id == payment_intent_id,
                Transaction.transaction_type == TransactionType.AUTHORIZATION.value,
            )
            .order_by(Transaction.created_at.desc(), Transaction.id)
            .first()
        )

    @staticmethod
    def get_capture_transaction(db: Session, payment_intent_id: str) -> Optional[Transaction]:
        return (
            db.query(Transaction)
            .filter(
                Transaction.payment_intent_id == payment_intent_id,
                Transaction.transaction_type == TransactionType.CAPTURE.value,
            )
            .first()
        )

    @staticmethod
    def list_for_booking(db: Session, booking_id: str) -> list:
        return (
            db.query(Transaction)
            .filter(Transaction.booking_id == booking_id)
            .order_by(Transaction.created_at, Transaction.id)
            .all()
        )

    @staticmethod
    def create_transaction(
        db: Session,
        booking_id: Optional[str],
        payment_intent_id: Optional[str],
        amount: float,
        currency: str = "USD",
        transaction_type: TransactionType = TransactionType.AUTHORIZATION,
        status: TransactionStatus = TransactionStatus.PENDING,
        payment_method: Optional[str] = None,
        stripe_charge_id: Optional[str] = None,
    ) -> Transaction:
        txn = Transaction(
            booking_id=booking_id,
            payment_intent_id=payment_intent_id,
            amount=round(amount, 2),
            currency=currency.upper(),
            transaction_type=TransactionType(transaction_type).value,
            status=TransactionStatus(status).value,
            payment_method=payment_method,
            stripe_charge_id=stripe_charge_id,
        )
        db.add(txn)
        db.flush()
        return txn

    @staticmethod
    def set_status(
        db: Session,
        txn: Transaction,
        status,
        booking: Optional[Booking] = None,
        cancellation_reason: Optional[str] = None,
    ) -> bool:
        """
        Move a transaction to a new status.

        The linked booking must already hold a compatible status, so the
        booking row has to be written first when both change.

        Returns:
            True if a write happened, False when already in that status
        """
        target = validate_transition("transaction", txn.status, status)
        if target.value == txn.status:
            return False
        if booking is not None:
            check_transaction_precondition(target, booking.status)
        txn.status = target.value
        txn.updated_at = datetime.utcnow()
        if target in (TransactionStatus.CANCELLED, TransactionStatus.FAILED) and cancellation_reason:
            txn.cancellation_reason = cancellation_reason
            txn.cancelled_at = datetime.utcnow()
        db.flush()
        return True
