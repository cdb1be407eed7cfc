"""
Worker location ingestion.
Stores the latest position and history, then refreshes ETAs for bookings the
worker is driving to.
"""
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import structlog

from ..errors import NotFoundError, ValidationError
from ..models.enums import BookingStatus, EventType
from ..models.models import LocationSample
from .events import DispatchEvent, EventPublisher, emit
from .geofence import Coordinate, GeoService, validate_coordinate
from .store import DispatchStore
from .time_rules import ensure_utc, utc_now

logger = structlog.get_logger(__name__)


@dataclass
class LocationUpdate:
    sample: LocationSample
    eta_minutes: Dict[uuid.UUID, int] = field(default_factory=dict)


def _validate_optional(name: str, value: Optional[float], low: float, high: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be numeric", **{name: value})
    if not math.isfinite(number) or number < low or (high is not None and number > high):
        raise ValidationError(f"{name} out of range", **{name: value})
    return number


class LocationTracker:
    def __init__(self, store: DispatchStore, geo: GeoService, publisher: Optional[EventPublisher] = None):
        self.store = store
        self.geo = geo
        self.publisher = publisher

    def ingest_location(
        self,
        worker_id: uuid.UUID,
        lat: float,
        lng: float,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> LocationUpdate:
        """
        Record a worker position and refresh ETAs.

        Nothing is written when validation fails. Booking, worker status and
        assignments are never modified here; the only outputs are the worker's
        current position, a history sample and ``eta-updated`` events.

        Raises:
            ValidationError: coordinates, heading or speed out of range
            NotFoundError: unknown worker
        """
        position = validate_coordinate(lat, lng)
        heading = _validate_optional("heading", heading, 0.0, 360.0)
        speed = _validate_optional("speed", speed, 0.0, None)

        if self.store.get_worker(worker_id) is None:
            raise NotFoundError("Worker not found", worker_id=worker_id)

        received_at = utc_now()
        sample = self.store.record_location(
            worker_id,
            position.lat,
            position.lng,
            heading,
            speed,
            timestamp=ensure_utc(timestamp) if timestamp else received_at,
            received_at=received_at,
        )

        update = LocationUpdate(sample=sample)
        for assignment, booking in self.store.active_assignments_for_worker(worker_id):
            if BookingStatus(booking.status) != BookingStatus.en_route:
                continue
            destination = Coordinate(booking.location_lat, booking.location_lng)
            minutes = self.geo.travel_minutes(position, destination)
            update.eta_minutes[booking.id] = minutes

            emit(
                self.publisher,
                DispatchEvent(
                    type=EventType.eta_updated,
                    booking_id=booking.id,
                    payload={
                        "minutes": minutes,
                        "workerId": str(worker_id),
                        "assignmentId": str(assignment.id),
                    },
                ),
            )
            logger.info("eta_updated", booking_id=str(booking.id), worker_id=str(worker_id), minutes=minutes)

        return update

    def location_history(self, worker_id: uuid.UUID, limit: int = 100) -> List[LocationSample]:
        if self.store.get_worker(worker_id) is None:
            raise NotFoundError("Worker not found", worker_id=worker_id)
        return self.store.location_history(worker_id, limit=limit)
