import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_uuid():
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=True)
    email = Column(String(255), unique=True, index=True, nullable=True)
    phone = Column(String(50), nullable=True)  # E.164
    role = Column(String(20), default="customer", nullable=False)  # customer, worker, admin
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    service_areas = relationship(
        "WorkerServiceArea", back_populates="worker", cascade="all, delete-orphan"
    )


class Service(Base):
    __tablename__ = "services"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    base_price = Column(Float, default=0, nullable=False)
    duration_minutes = Column(Integer, default=60, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    customer_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    # Snapshot for guest checkouts: {name, email, phone, zipcode}
    guest_customer_info = Column(JSON, nullable=True)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=True)
    worker_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)

    scheduled_date = Column(Date, nullable=False)
    scheduled_start = Column(String(5), nullable=False)  # HH:MM
    duration_minutes = Column(Integer, default=60, nullable=False)
    address = Column(Text, nullable=True)
    zipcode = Column(String(10), nullable=True, index=True)
    location_notes = Column(Text, nullable=True)

    # pending, payment_pending, payment_authorized (legacy), confirmed, in_progress,
    # completed, cancelled, failed
    status = Column(String(30), default="pending", nullable=False, index=True)
    # pending, authorized, captured, completed, refunded, cancelled, failed, expired
    payment_status = Column(String(30), default="pending", nullable=False, index=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    total_price = Column(Float, default=0, nullable=False)

    is_archived = Column(Boolean, default=False, nullable=False)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    customer = relationship("User", foreign_keys=[customer_id])
    worker = relationship("User", foreign_keys=[worker_id])
    service = relationship("Service")
    services = relationship(
        "BookingService", back_populates="booking", cascade="all, delete-orphan"
    )
    transactions = relationship("Transaction", back_populates="booking")


class BookingService(Base):
    """Line item of a booking"""

    __tablename__ = "booking_services"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=True)
    service_name = Column(String(255), nullable=False)
    base_price = Column(Float, nullable=True)
    quantity = Column(Integer, default=1, nullable=True)
    configuration = Column(JSON, default=dict, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    booking = relationship("Booking", back_populates="services")


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=True, index=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    transaction_type = Column(String(20), default="authorization", nullable=False)
    # pending, authorized, completed, failed, cancelled, refunded
    status = Column(String(20), default="pending", nullable=False)
    amount = Column(Float, nullable=False)  # dollars
    currency = Column(String(3), default="USD", nullable=False)
    payment_method = Column(String(255), nullable=True)
    stripe_charge_id = Column(String(255), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    booking = relationship("Booking", back_populates="transactions")


class WorkerServiceArea(Base):
    __tablename__ = "worker_service_areas"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    worker_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    area_name = Column(String(255), nullable=False)
    # [[lat, lng], ...] as drawn; null for ZIP-list areas
    polygon_coords = Column(JSON, nullable=True)
    zipcodes = Column(JSON, default=list, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    worker = relationship("User", back_populates="service_areas")


class CoverageNotification(Base):
    """Offer of a booking to an out-of-area worker"""

    __tablename__ = "coverage_notifications"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    worker_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    priority = Column(Integer, nullable=False)  # 2 = nearby, 3 = regional
    distance_miles = Column(Float, nullable=True)
    status = Column(String(20), default="pending", nullable=False)  # pending, accepted, declined
    responded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class BookingAuditLog(Base):
    __tablename__ = "booking_audit_log"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(36), nullable=True, index=True)
    operation = Column(String(100), nullable=False)
    status = Column(String(20), default="success", nullable=False)
    actor = Column(String(100), default="system", nullable=False)
    details = Column(JSON, default=dict, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AdminAlert(Base):
    __tablename__ = "admin_alerts"

    id = Column(Integer, primary_key=True, index=True)
    alert_type = Column(String(100), nullable=False)
    severity = Column(String(20), default="medium", nullable=False)  # low, medium, high
    booking_id = Column(String(36), nullable=True, index=True)
    message = Column(Text, nullable=False)
    details = Column(JSON, default=dict, nullable=True)
    resolved = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class EmailLog(Base):
    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(36), nullable=True, index=True)
    recipient_email = Column(String(255), nullable=False)
    email_type = Column(String(50), default="general", nullable=False)
    subject = Column(String(255), nullable=True)
    status = Column(String(20), default="sent", nullable=False)  # sent, failed
    provider_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SmsLog(Base):
    __tablename__ = "sms_logs"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(36), nullable=True, index=True)
    to_phone = Column(String(50), nullable=False)
    message_type = Column(String(50), nullable=False)
    message_body = Column(Text, nullable=False)
    status = Column(String(20), default="sent", nullable=False)  # sent, failed
    twilio_sid = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
