"""Payment domain schemas - Pydantic models for validation"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ...config import DEFAULT_CURRENCY


class AuthorizeRequest(BaseModel):
    """Manual-capture hold for a booking, or a pre-booking hold when booking_id is null"""

    booking_id: Optional[str] = None
    amount: float = Field(gt=0, le=100000)
    currency: str = DEFAULT_CURRENCY
    payment_method: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v):
        v = (v or DEFAULT_CURRENCY).strip().lower()
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Currency must be a 3-letter ISO code")
        return v


class CaptureRequest(BaseModel):
    booking_id: str
    amount: Optional[float] = Field(default=None, gt=0)


class CancelRequest(BaseModel):
    booking_id: str
    reason: str = "requested_by_customer"


class IncrementRequest(BaseModel):
    booking_id: str
    additional_amount: float = Field(gt=0, le=100000)
    services: list[str] = []


class RefundRequest(BaseModel):
    booking_id: str
    amount: Optional[float] = Field(default=None, gt=0)


class ReconcileRequest(BaseModel):
    booking_id: str
    payment_intent_id: Optional[str] = None


class TransactionStatusRequest(BaseModel):
    payment_intent_id: str
    status: str
    booking_id: Optional[str] = None


class ReconcileResponse(BaseModel):
    success: bool = True
    consistent: bool
    fixes_applied: list[str]
    conflicts: list[str] = []
    booking_status: str
    payment_status: str
    stripe_status: Optional[str] = None
    skipped: bool = False
