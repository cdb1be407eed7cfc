"""
Geofence and ETA service.
Uses the Haversine formula to calculate distance between points.
"""
import math
from typing import NamedTuple, Optional

import structlog

from ..errors import ValidationError
from .routing import RoutingProvider

logger = structlog.get_logger(__name__)

# Earth radius in miles
EARTH_RADIUS_MILES = 3959.0


class Coordinate(NamedTuple):
    lat: float
    lng: float


def validate_coordinate(lat, lng) -> Coordinate:
    """
    Check that a latitude/longitude pair is on the globe.

    Raises:
        ValidationError: if either value is missing, non-numeric, non-finite or
            outside [-90, 90] / [-180, 180].
    """
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise ValidationError("Coordinates must be numeric", lat=lat, lng=lng)

    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise ValidationError("Coordinates must be finite", lat=lat, lng=lng)
    if not -90.0 <= lat_f <= 90.0:
        raise ValidationError(f"Latitude {lat_f} out of range [-90, 90]", lat=lat)
    if not -180.0 <= lng_f <= 180.0:
        raise ValidationError(f"Longitude {lng_f} out of range [-180, 180]", lng=lng)

    return Coordinate(lat_f, lng_f)


def haversine_distance(a: Coordinate, b: Coordinate) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        a: First point
        b: Second point

    Returns:
        Distance in miles
    """
    a = validate_coordinate(*a)
    b = validate_coordinate(*b)

    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    delta_phi = math.radians(b.lat - a.lat)
    delta_lambda = math.radians(b.lng - a.lng)

    h = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    return EARTH_RADIUS_MILES * c


def inside_service_area(point: Coordinate, center: Coordinate, radius_miles: float) -> bool:
    """Return True if ``point`` lies within ``radius_miles`` of ``center`` (inclusive)."""
    if radius_miles is None or radius_miles < 0:
        raise ValidationError("Service radius must be non-negative", radius_miles=radius_miles)
    return haversine_distance(point, center) <= radius_miles


def estimate_eta_minutes(origin: Coordinate, destination: Coordinate, average_speed_mph: float) -> int:
    """
    Straight-line ETA in whole minutes, rounded up.

    Args:
        origin: Worker position
        destination: Booking location
        average_speed_mph: Assumed travel speed

    Returns:
        ceil(distance / speed * 60)
    """
    if average_speed_mph is None or not average_speed_mph > 0:
        raise ValidationError("Average speed must be positive", average_speed_mph=average_speed_mph)
    distance = haversine_distance(origin, destination)
    return int(math.ceil(distance / average_speed_mph * 60))


class GeoService:
    """
    Service-area and travel-time calculations for one configured area.

    A routing provider, when given, supplies road-network travel time; every
    call falls back to the straight-line estimate if it is missing or fails.
    """

    def __init__(
        self,
        center: Coordinate,
        radius_miles: float,
        average_speed_mph: float,
        routing: Optional[RoutingProvider] = None,
    ):
        self.center = validate_coordinate(*center)
        self.radius_miles = radius_miles
        self.average_speed_mph = average_speed_mph
        self.routing = routing

    @classmethod
    def from_settings(cls, settings, routing: Optional[RoutingProvider] = None) -> "GeoService":
        return cls(
            center=Coordinate(settings.service_center_lat, settings.service_center_lng),
            radius_miles=settings.service_radius_miles,
            average_speed_mph=settings.average_speed_mph,
            routing=routing,
        )

    def distance(self, a: Coordinate, b: Coordinate) -> float:
        return haversine_distance(a, b)

    def distance_from_center(self, point: Coordinate) -> float:
        return haversine_distance(point, self.center)

    def is_within_service_area(self, point: Coordinate) -> bool:
        return inside_service_area(point, self.center, self.radius_miles)

    def estimate_eta(self, origin: Coordinate, destination: Coordinate) -> int:
        return estimate_eta_minutes(origin, destination, self.average_speed_mph)

    def travel_minutes(self, origin: Coordinate, destination: Coordinate) -> int:
        """Road-network ETA when a routing provider answers, straight-line otherwise."""
        origin = validate_coordinate(*origin)
        destination = validate_coordinate(*destination)
        if self.routing is not None:
            try:
                seconds = self.routing.travel_seconds(origin, destination)
            except Exception as e:
                logger.warning("routing_fallback", error=str(e))
                seconds = None
            if seconds is not None:
                return int(math.ceil(seconds / 60))
        return self.estimate_eta(origin, destination)
