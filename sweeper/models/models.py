import uuid
from datetime import datetime, date, time
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Time,
    Boolean,
    ForeignKey,
    Integer,
    Float,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base
from .enums import BookingStatus, WorkerStatus, AssignmentStatus


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


class Booking(Base):
    """A scheduled cleaning job requested by a customer"""
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = uuid_pk()
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)  # Auth provider user id
    worker_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("workers.id", ondelete="SET NULL"), index=True)
    service_type: Mapped[str] = mapped_column(String(32), nullable=False)  # regular|deep|move_in_out|airbnb|office|commercial
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)  # Local date
    scheduled_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)  # Local time
    address: Mapped[Optional[str]] = mapped_column(Text)
    location_lat: Mapped[float] = mapped_column(Float, nullable=False)
    location_lng: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=BookingStatus.pending.value)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)  # Fixed at creation
    add_ons: Mapped[Optional[list]] = mapped_column(JSON)  # List of add-on ids
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_bookings_status_date', 'status', 'scheduled_date'),
    )


class Worker(Base):
    """A service provider who can be assigned to bookings"""
    __tablename__ = "workers"

    id: Mapped[uuid.UUID] = uuid_pk()
    profile_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=WorkerStatus.offline.value)
    current_lat: Mapped[Optional[float]] = mapped_column(Float)
    current_lng: Mapped[Optional[float]] = mapped_column(Float)
    last_location_update: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    active_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # Concurrent job counter
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Assignment(Base):
    """Links one worker to one booking for its active duration"""
    __tablename__ = "assignments"

    id: Mapped[uuid.UUID] = uuid_pk()
    booking_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    worker_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("workers.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AssignmentStatus.assigned.value)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    estimated_arrival: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Keyed on booking so a retried assign can never create a second row
    __table_args__ = (
        UniqueConstraint("booking_id", name="uq_assignment_booking"),
        Index('idx_assignments_worker_status', 'worker_id', 'status'),
    )


class LocationSample(Base):
    """Append-only worker position history"""
    __tablename__ = "worker_locations"

    id: Mapped[uuid.UUID] = uuid_pk()
    worker_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("workers.id", ondelete="CASCADE"), nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    heading: Mapped[Optional[float]] = mapped_column(Float)  # Degrees
    speed: Mapped[Optional[float]] = mapped_column(Float)  # Device-reported
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_worker_locations_worker_time', 'worker_id', 'timestamp'),
    )


class AuditLog(Base):
    """Append-only audit log for all dispatch actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # booking|worker|assignment
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|ASSIGN|TRANSITION|STATUS
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))  # dispatcher|worker|system
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )


class Notification(Base):
    """Outbox of dispatch events for the notification delivery service"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)  # assignment-created|eta-updated
    booking_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sent|failed
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index('idx_notifications_status_created', 'status', 'created_at'),
    )
