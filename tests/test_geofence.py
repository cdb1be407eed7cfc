import math

import httpx
import pytest

from sweeper.errors import ValidationError
from sweeper.services.geofence import (
    Coordinate,
    GeoService,
    estimate_eta_minutes,
    haversine_distance,
    inside_service_area,
    validate_coordinate,
)
from sweeper.services.routing import MapboxRoutingProvider

from conftest import CENTER


@pytest.mark.parametrize("point", [(0, 0), (27.5306, -99.4803), (-45.5, 170.25), (89.9, -179.9)])
def test_distance_to_self_is_zero(point):
    assert haversine_distance(Coordinate(*point), Coordinate(*point)) == pytest.approx(0.0, abs=1e-9)


def test_one_degree_of_latitude():
    assert haversine_distance(Coordinate(0, 0), Coordinate(1, 0)) == pytest.approx(69.0976, rel=1e-4)


def test_distance_is_symmetric():
    a = Coordinate(27.5306, -99.4803)
    b = Coordinate(29.4241, -98.4936)
    assert haversine_distance(a, b) == pytest.approx(haversine_distance(b, a))


@pytest.mark.parametrize("radius", [0, 0.5, 25])
def test_center_is_inside_any_radius(radius):
    assert inside_service_area(CENTER, CENTER, radius)


def test_boundary_is_inclusive():
    edge = Coordinate(1, 0)
    radius = haversine_distance(Coordinate(0, 0), edge)
    assert inside_service_area(edge, Coordinate(0, 0), radius)
    assert not inside_service_area(edge, Coordinate(0, 0), radius - 0.01)


def test_negative_radius_rejected():
    with pytest.raises(ValidationError):
        inside_service_area(CENTER, CENTER, -1)


@pytest.mark.parametrize(
    "lat,lng",
    [(91, 0), (-90.5, 0), (0, 181), (0, -180.01), (float("nan"), 0), (0, float("inf")), ("north", 0), (None, 0)],
)
def test_invalid_coordinates(lat, lng):
    with pytest.raises(ValidationError):
        validate_coordinate(lat, lng)


def test_poles_and_antimeridian_are_valid():
    assert validate_coordinate(90, 180) == Coordinate(90.0, 180.0)
    assert validate_coordinate("-90", "-180") == Coordinate(-90.0, -180.0)


def test_eta_rounds_up():
    # 69.0976 miles at 25 mph is 165.8 minutes
    assert estimate_eta_minutes(Coordinate(0, 0), Coordinate(1, 0), 25) == 166


def test_eta_same_point_is_zero():
    assert estimate_eta_minutes(CENTER, CENTER, 25) == 0


@pytest.mark.parametrize("speed", [0, -5, None])
def test_eta_requires_positive_speed(speed):
    with pytest.raises(ValidationError):
        estimate_eta_minutes(CENTER, CENTER, speed)


class _FixedRouting:
    def __init__(self, seconds=None, error=None):
        self.seconds = seconds
        self.error = error
        self.calls = []

    def travel_seconds(self, origin, destination):
        self.calls.append((origin, destination))
        if self.error:
            raise self.error
        return self.seconds


def test_travel_minutes_uses_routing_provider():
    routing = _FixedRouting(seconds=601)
    geo = GeoService(CENTER, 25, 25, routing=routing)
    assert geo.travel_minutes(Coordinate(0, 0), Coordinate(1, 0)) == 11
    assert routing.calls == [(Coordinate(0, 0), Coordinate(1, 0))]


@pytest.mark.parametrize("routing", [_FixedRouting(seconds=None), _FixedRouting(error=httpx.ConnectError("down"))])
def test_travel_minutes_falls_back_to_straight_line(routing):
    geo = GeoService(CENTER, 25, 25, routing=routing)
    assert geo.travel_minutes(Coordinate(0, 0), Coordinate(1, 0)) == 166


def test_geo_service_from_settings():
    from sweeper.config import Settings

    geo = GeoService.from_settings(Settings())
    assert geo.center == Coordinate(27.5306, -99.4803)
    assert geo.radius_miles == 25
    assert geo.is_within_service_area(CENTER)
    # San Antonio is well outside a 25 mile radius of Laredo
    assert not geo.is_within_service_area(Coordinate(29.4241, -98.4936))


def test_mapbox_provider_requests_lng_lat_order():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["token"] = request.url.params.get("access_token")
        return httpx.Response(200, json={"routes": [{"duration": 754.2}]})

    provider = MapboxRoutingProvider(access_token="pk.test", transport=httpx.MockTransport(handler))
    seconds = provider.travel_seconds(Coordinate(27.5, -99.5), Coordinate(27.6, -99.4))

    assert seconds == pytest.approx(754.2)
    assert seen["path"].endswith("/driving/-99.5,27.5;-99.4,27.6")
    assert seen["token"] == "pk.test"


def test_mapbox_provider_no_route():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"routes": []}))
    provider = MapboxRoutingProvider(access_token="pk.test", transport=transport)
    assert provider.travel_seconds(Coordinate(0, 0), Coordinate(0, 1)) is None


def test_mapbox_provider_http_error_falls_back():
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    provider = MapboxRoutingProvider(access_token="pk.test", transport=transport)
    geo = GeoService(CENTER, 25, 25, routing=provider)
    assert geo.travel_minutes(Coordinate(0, 0), Coordinate(1, 0)) == 166


def test_mapbox_provider_requires_token(monkeypatch):
    from sweeper.config import settings

    monkeypatch.setattr(settings, "mapbox_access_token", None)
    with pytest.raises(ValueError):
        MapboxRoutingProvider()


def test_eta_matches_formula():
    a, b = Coordinate(27.5306, -99.4803), Coordinate(27.7, -99.3)
    expected = math.ceil(haversine_distance(a, b) / 30 * 60)
    assert GeoService(CENTER, 25, 30).estimate_eta(a, b) == expected
