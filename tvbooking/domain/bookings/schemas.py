"""Booking domain schemas - Pydantic models for validation"""

import re
from datetime import date
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ...shared.validators import sanitize_string, validate_email, validate_us_phone

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _check_time(v: str) -> str:
    if not TIME_PATTERN.match(v or ""):
        raise ValueError("Time must be HH:MM (24h)")
    return v


class GuestCustomer(BaseModel):
    """Contact details for a checkout without an account"""

    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    zipcode: Optional[str] = None

    @field_validator("name")
    @classmethod
    def clean_name(cls, v):
        v = sanitize_string(v, max_length=255)
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("email")
    @classmethod
    def check_email(cls, v):
        return validate_email(v)

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v):
        return validate_us_phone(v)


class LineItem(BaseModel):
    """One service added to a booking"""

    service_id: Optional[str] = None
    service_name: str
    base_price: float = Field(ge=0, le=10000)
    quantity: int = Field(default=1, ge=1, le=20)
    configuration: Optional[dict] = None

    @field_validator("service_name")
    @classmethod
    def clean_service_name(cls, v):
        v = sanitize_string(v, max_length=255)
        if not v:
            raise ValueError("Service name is required")
        return v


class BookingCreate(BaseModel):
    """Schema for creating a booking (registered or guest customer)"""

    customer_id: Optional[str] = None
    guest: Optional[GuestCustomer] = None
    service_id: Optional[str] = None
    scheduled_date: date
    scheduled_start: str
    duration_minutes: Optional[int] = Field(default=None, ge=15, le=720)
    address: Optional[str] = None
    zipcode: str
    location_notes: Optional[str] = None
    services: list[LineItem] = []

    @field_validator("scheduled_start")
    @classmethod
    def check_start(cls, v):
        return _check_time(v)

    @field_validator("address", "location_notes")
    @classmethod
    def clean_text(cls, v):
        return sanitize_string(v)

    @model_validator(mode="after")
    def check_customer(self):
        if not self.customer_id and not self.guest:
            raise ValueError("Either customer_id or guest details are required")
        return self


class BookingCreateResponse(BaseModel):
    booking_id: Optional[str] = None
    assigned_workers: list[dict] = []
    status: str
    message: str
    offers_sent: int = 0
    warnings: list[str] = []


class AddServicesRequest(BaseModel):
    services: list[LineItem]
    actor: Optional[str] = None

    @field_validator("services")
    @classmethod
    def not_empty(cls, v):
        if not v:
            raise ValueError("At least one service is required")
        return v


class ReassignRequest(BaseModel):
    worker_id: str
    actor: Optional[str] = None


class RescheduleRequest(BaseModel):
    scheduled_date: date
    scheduled_start: str
    actor: Optional[str] = None

    @field_validator("scheduled_start")
    @classmethod
    def check_start(cls, v):
        return _check_time(v)


class WorkerActionRequest(BaseModel):
    worker_id: str
    reason: Optional[str] = None


class IntegrityRequest(BaseModel):
    auto_fix: bool = True
