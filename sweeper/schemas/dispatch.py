import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..models.enums import BookingStatus, WorkerStatus


# Pricing
class QuoteRequest(BaseModel):
    service_type: str
    scheduled_date: date
    scheduled_time: time
    lat: float
    lng: float
    add_ons: List[str] = Field(default_factory=list)
    is_recurring: bool = False
    subscription_discount: float = 0


class QuoteResponse(BaseModel):
    total_price: Decimal
    breakdown: Dict[str, Decimal]
    time_multiplier: Decimal
    multiplier_reason: Optional[str] = None
    explanation: List[str]


class AddOnResponse(BaseModel):
    id: str
    name: str
    price: Decimal


class ServiceTypeResponse(BaseModel):
    service_type: str
    base_price: Decimal
    duration: Decimal
    price_per_mile: Decimal


class CatalogResponse(BaseModel):
    services: List[ServiceTypeResponse]
    add_ons: List[AddOnResponse]


# Bookings
class BookingCreate(QuoteRequest):
    customer_id: str
    address: Optional[str] = None
    notes: Optional[str] = None


class BookingResponse(BaseModel):
    id: uuid.UUID
    customer_id: str
    worker_id: Optional[uuid.UUID] = None
    service_type: str
    scheduled_date: date
    scheduled_time: time
    address: Optional[str] = None
    location_lat: float
    location_lng: float
    status: BookingStatus
    price: Decimal
    add_ons: Optional[List[str]] = None
    is_recurring: bool = False
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


class AssignRequest(BaseModel):
    worker_id: uuid.UUID
    estimated_arrival: Optional[datetime] = None
    timeout_seconds: Optional[float] = None


# Workers
class WorkerCreate(BaseModel):
    profile_id: str
    display_name: Optional[str] = None
    status: WorkerStatus = WorkerStatus.offline


class WorkerResponse(BaseModel):
    id: uuid.UUID
    profile_id: str
    display_name: Optional[str] = None
    status: WorkerStatus
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    last_location_update: Optional[datetime] = None
    active_jobs: int

    class Config:
        from_attributes = True


class WorkerStatusUpdate(BaseModel):
    status: WorkerStatus


# Location
class LocationIngest(BaseModel):
    # Range checks happen in the tracker so every caller gets the same error
    lat: float
    lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    timestamp: Optional[datetime] = None


class LocationSampleResponse(BaseModel):
    id: uuid.UUID
    worker_id: uuid.UUID
    lat: float
    lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    timestamp: datetime

    class Config:
        from_attributes = True


class LocationIngestResponse(BaseModel):
    sample: LocationSampleResponse
    eta_minutes: Dict[str, int]


class AuditLogResponse(BaseModel):
    id: uuid.UUID
    entity_type: str
    entity_id: uuid.UUID
    action: str
    actor_id: Optional[str] = None
    changes_json: Optional[dict] = None
    timestamp_utc: datetime
    integrity_hash: Optional[str] = None

    class Config:
        from_attributes = True


# Notification outbox
class NotificationResponse(BaseModel):
    id: uuid.UUID
    event_type: str
    booking_id: uuid.UUID
    payload_json: Optional[dict] = None
    status: str
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NotificationStatusUpdate(BaseModel):
    status: Literal["sent", "failed"]
    error_message: Optional[str] = None
