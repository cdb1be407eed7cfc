"""
Dispatch API routes.
Handles quotes, booking intake, assignment, status transitions and worker
location updates.
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import List
import uuid

from ..db import get_db
from ..config import settings
from ..schemas.dispatch import (
    AddOnResponse,
    AssignRequest,
    AuditLogResponse,
    BookingCreate,
    BookingResponse,
    BookingStatusUpdate,
    CatalogResponse,
    LocationIngest,
    LocationIngestResponse,
    LocationSampleResponse,
    NotificationResponse,
    NotificationStatusUpdate,
    QuoteRequest,
    QuoteResponse,
    ServiceTypeResponse,
    WorkerCreate,
    WorkerResponse,
    WorkerStatusUpdate,
)
from ..services.assignment import AssignmentCoordinator, AssignmentResult
from ..services.audit import get_audit_logs
from ..services.booking_intake import create_booking, quote
from ..services.booking_lifecycle import transition_booking
from ..services.events import EventBus
from ..services.geofence import GeoService
from ..services.location_tracker import LocationTracker
from ..services.notifications import NotificationOutbox, list_pending_notifications, mark_notification
from ..services.pricing import PricingEngine, PricingRequest
from ..services.store import DispatchStore
from ..services.worker_lifecycle import register_worker, set_worker_status

router = APIRouter(prefix="/dispatch", tags=["dispatch"])


def get_store(db: Session = Depends(get_db)) -> DispatchStore:
    return DispatchStore(db)


def get_geo(request: Request) -> GeoService:
    return request.app.state.geo


def get_pricing(request: Request) -> PricingEngine:
    return request.app.state.pricing


def get_publisher(request: Request, db: Session = Depends(get_db)) -> EventBus:
    """Per-request publisher: the outbox on this session, then the app-wide observers."""
    return EventBus(sinks=[NotificationOutbox(db), request.app.state.event_bus])


# Pricing

@router.get("/catalog", response_model=CatalogResponse)
def get_catalog(pricing: PricingEngine = Depends(get_pricing)):
    services = [
        ServiceTypeResponse(
            service_type=name,
            base_price=config.base_price,
            duration=config.duration,
            price_per_mile=config.price_per_mile,
        )
        for name, config in pricing.config.services.items()
    ]
    add_ons = [AddOnResponse(id=a.id, name=a.name, price=a.price) for a in pricing.available_add_ons()]
    return CatalogResponse(services=services, add_ons=add_ons)


@router.post("/quote", response_model=QuoteResponse)
def create_quote(
    payload: QuoteRequest,
    geo: GeoService = Depends(get_geo),
    pricing: PricingEngine = Depends(get_pricing),
):
    result = quote(
        geo,
        pricing,
        payload.service_type,
        payload.scheduled_date,
        payload.scheduled_time,
        payload.lat,
        payload.lng,
        add_ons=payload.add_ons,
        is_recurring=payload.is_recurring,
        subscription_discount=payload.subscription_discount,
    )
    explanation = pricing.explain(
        PricingRequest(
            service_type=payload.service_type,
            scheduled_date=payload.scheduled_date,
            scheduled_time=payload.scheduled_time,
            distance_from_center=geo.distance_from_center((payload.lat, payload.lng)),
            add_ons=payload.add_ons,
            is_recurring=payload.is_recurring,
            subscription_discount=payload.subscription_discount,
        )
    )
    return QuoteResponse(
        total_price=result.total_price,
        breakdown=result.breakdown.model_dump(),
        time_multiplier=result.time_multiplier,
        multiplier_reason=result.multiplier_reason,
        explanation=explanation,
    )


# Bookings

@router.post("/bookings", response_model=BookingResponse, status_code=201)
def create_booking_route(
    payload: BookingCreate,
    store: DispatchStore = Depends(get_store),
    geo: GeoService = Depends(get_geo),
    pricing: PricingEngine = Depends(get_pricing),
):
    return create_booking(
        store,
        geo,
        pricing,
        customer_id=payload.customer_id,
        service_type=payload.service_type,
        scheduled_date=payload.scheduled_date,
        scheduled_time=payload.scheduled_time,
        lat=payload.lat,
        lng=payload.lng,
        address=payload.address,
        add_ons=payload.add_ons,
        is_recurring=payload.is_recurring,
        subscription_discount=payload.subscription_discount,
        notes=payload.notes,
    )


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(booking_id: uuid.UUID, store: DispatchStore = Depends(get_store)):
    booking = store.get_booking(booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


@router.post("/bookings/{booking_id}/assign", response_model=AssignmentResult)
def assign_booking(
    booking_id: uuid.UUID,
    payload: AssignRequest,
    store: DispatchStore = Depends(get_store),
    geo: GeoService = Depends(get_geo),
    publisher: EventBus = Depends(get_publisher),
):
    """
    Assign a worker to a pending booking.
    Exactly one of several concurrent callers succeeds; the rest get 409.
    """
    coordinator = AssignmentCoordinator(
        store,
        geo,
        max_concurrent_jobs=settings.max_concurrent_jobs,
        publisher=publisher,
    )
    return coordinator.assign(
        booking_id,
        payload.worker_id,
        estimated_arrival=payload.estimated_arrival,
        timeout=payload.timeout_seconds,
    )


@router.post("/bookings/{booking_id}/status", response_model=BookingResponse)
def update_booking_status(
    booking_id: uuid.UUID,
    payload: BookingStatusUpdate,
    store: DispatchStore = Depends(get_store),
):
    return transition_booking(store, booking_id, payload.status)


@router.get("/bookings/{booking_id}/audit", response_model=List[AuditLogResponse])
def get_booking_audit(booking_id: uuid.UUID, limit: int = 100, db: Session = Depends(get_db)):
    return get_audit_logs(db, entity_type="booking", entity_id=booking_id, limit=limit)


# Workers

@router.post("/workers", response_model=WorkerResponse, status_code=201)
def create_worker(payload: WorkerCreate, store: DispatchStore = Depends(get_store)):
    try:
        return register_worker(store, payload.profile_id, payload.display_name, payload.status)
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Worker already registered for this profile")


@router.get("/workers/{worker_id}", response_model=WorkerResponse)
def get_worker(worker_id: uuid.UUID, store: DispatchStore = Depends(get_store)):
    worker = store.get_worker(worker_id)
    if not worker:
        raise HTTPException(status_code=404, detail="Worker not found")
    return worker


@router.post("/workers/{worker_id}/status", response_model=WorkerResponse)
def update_worker_status(
    worker_id: uuid.UUID,
    payload: WorkerStatusUpdate,
    store: DispatchStore = Depends(get_store),
):
    return set_worker_status(store, worker_id, payload.status)


@router.post("/workers/{worker_id}/location", response_model=LocationIngestResponse)
def ingest_worker_location(
    worker_id: uuid.UUID,
    payload: LocationIngest,
    store: DispatchStore = Depends(get_store),
    geo: GeoService = Depends(get_geo),
    publisher: EventBus = Depends(get_publisher),
):
    tracker = LocationTracker(store, geo, publisher=publisher)
    update = tracker.ingest_location(
        worker_id,
        payload.lat,
        payload.lng,
        heading=payload.heading,
        speed=payload.speed,
        timestamp=payload.timestamp,
    )
    return LocationIngestResponse(
        sample=LocationSampleResponse.model_validate(update.sample),
        eta_minutes={str(k): v for k, v in update.eta_minutes.items()},
    )


@router.get("/workers/{worker_id}/locations", response_model=List[LocationSampleResponse])
def list_worker_locations(
    worker_id: uuid.UUID,
    limit: int = 100,
    store: DispatchStore = Depends(get_store),
    geo: GeoService = Depends(get_geo),
):
    tracker = LocationTracker(store, geo)
    return tracker.location_history(worker_id, limit=min(limit, 1000))


# Notification outbox, polled by the delivery service

@router.get("/notifications", response_model=List[NotificationResponse])
def list_notifications(limit: int = 50, db: Session = Depends(get_db)):
    """Pending notifications, oldest first."""
    return list_pending_notifications(db, limit=min(limit, 500))


@router.post("/notifications/{notification_id}/status", response_model=NotificationResponse)
def update_notification_status(
    notification_id: uuid.UUID,
    payload: NotificationStatusUpdate,
    db: Session = Depends(get_db),
):
    notification = mark_notification(db, notification_id, payload.status, payload.error_message)
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification
