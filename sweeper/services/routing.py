"""
Mapbox Directions client.
Supplies road-network travel time for ETA estimates.
"""
from typing import Optional, Protocol, Tuple, Any, Dict

import httpx

from ..config import settings


class RoutingProvider(Protocol):
    def travel_seconds(self, origin: Tuple[float, float], destination: Tuple[float, float]) -> Optional[float]:
        """Driving time in seconds, or None when no route exists."""
        ...


class MapboxRoutingProvider:
    """Client for the Mapbox Directions API"""

    base_url = "https://api.mapbox.com/directions/v5/mapbox"

    def __init__(
        self,
        access_token: Optional[str] = None,
        profile: str = "driving",
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.access_token = access_token or settings.mapbox_access_token
        self.profile = profile
        self.timeout = timeout or settings.routing_timeout_seconds
        self._transport = transport

        if not self.access_token:
            raise ValueError("Mapbox access token is required")

    def _request(self, path: str, params: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/{self.profile}/{path}"
        params = {**params, "access_token": self.access_token}
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            response = client.get(url, params=params)
            response.raise_for_status()
            return response.json()

    def travel_seconds(self, origin, destination) -> Optional[float]:
        # Mapbox takes lng,lat pairs
        coordinates = f"{origin[1]},{origin[0]};{destination[1]},{destination[0]}"
        data = self._request(coordinates, {"geometries": "geojson", "overview": "false"})
        routes = data.get("routes") or []
        if not routes:
            return None
        duration = routes[0].get("duration")
        return float(duration) if duration is not None else None


def routing_from_settings() -> Optional[RoutingProvider]:
    if not settings.mapbox_access_token:
        return None
    return MapboxRoutingProvider()
