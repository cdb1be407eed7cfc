"""
Booking intake.
Validates the address against the service area, prices the job and stores it
as pending. The stored price is never recomputed afterwards.
"""
from datetime import date, time
from typing import List, Optional

import structlog

from ..errors import OutOfServiceAreaError
from ..models.enums import BookingStatus
from ..models.models import Booking
from .audit import create_audit_log
from .geofence import Coordinate, GeoService, validate_coordinate
from .pricing import PricingEngine, PricingRequest, PricingResult
from .store import DispatchStore

logger = structlog.get_logger(__name__)


def quote(
    geo: GeoService,
    pricing: PricingEngine,
    service_type: str,
    scheduled_date: date,
    scheduled_time: time,
    lat: float,
    lng: float,
    add_ons: Optional[List[str]] = None,
    is_recurring: bool = False,
    subscription_discount: float = 0,
) -> PricingResult:
    location = validate_coordinate(lat, lng)
    if not geo.is_within_service_area(location):
        raise OutOfServiceAreaError(
            "Address is outside the service area",
            distance_miles=round(geo.distance_from_center(location), 2),
            radius_miles=geo.radius_miles,
        )
    return pricing.compute_price(
        PricingRequest(
            service_type=service_type,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            distance_from_center=geo.distance_from_center(location),
            add_ons=add_ons or [],
            is_recurring=is_recurring,
            subscription_discount=subscription_discount,
        )
    )


def create_booking(
    store: DispatchStore,
    geo: GeoService,
    pricing: PricingEngine,
    customer_id: str,
    service_type: str,
    scheduled_date: date,
    scheduled_time: time,
    lat: float,
    lng: float,
    address: Optional[str] = None,
    add_ons: Optional[List[str]] = None,
    is_recurring: bool = False,
    subscription_discount: float = 0,
    notes: Optional[str] = None,
) -> Booking:
    price = quote(
        geo,
        pricing,
        service_type,
        scheduled_date,
        scheduled_time,
        lat,
        lng,
        add_ons=add_ons,
        is_recurring=is_recurring,
        subscription_discount=subscription_discount,
    )
    location = Coordinate(float(lat), float(lng))

    booking = store.add_booking(
        Booking(
            customer_id=customer_id,
            service_type=price.service_type,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            address=address,
            location_lat=location.lat,
            location_lng=location.lng,
            status=BookingStatus.pending.value,
            price=price.total_price,
            add_ons=list(add_ons or []),
            is_recurring=is_recurring,
            notes=notes,
        )
    )

    create_audit_log(
        store.db,
        entity_type="booking",
        entity_id=booking.id,
        action="CREATE",
        actor_id=customer_id,
        actor_role="customer",
        source="api",
        changes_json={"after": {
            "service_type": booking.service_type,
            "scheduled_date": scheduled_date.isoformat(),
            "scheduled_time": scheduled_time.isoformat(),
            "price": str(price.total_price),
        }},
    )
    logger.info("booking_created", booking_id=str(booking.id), price=str(price.total_price))
    return booking
