import os
import uuid
from datetime import date, time
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("RATE_LIMIT", "100000/minute")
os.environ.pop("MAPBOX_ACCESS_TOKEN", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from sweeper.db import Base, build_engine, get_db
from sweeper.models import models  # noqa: F401  register tables
from sweeper.models.enums import BookingStatus, WorkerStatus
from sweeper.models.models import Booking, Worker
from sweeper.services.events import EventBus
from sweeper.services.geofence import Coordinate, GeoService
from sweeper.services.pricing import PricingConfig, PricingEngine
from sweeper.services.pricing_catalog import load_catalog
from sweeper.services.store import DispatchStore

CENTER = Coordinate(27.5306, -99.4803)
HOLIDAYS = ["2024-01-01", "2024-07-04", "2024-11-28", "2024-12-25"]


@pytest.fixture()
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'dispatch.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True, expire_on_commit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def store(db):
    return DispatchStore(db)


@pytest.fixture()
def geo():
    return GeoService(center=CENTER, radius_miles=25, average_speed_mph=25)


@pytest.fixture()
def pricing_config():
    return PricingConfig.from_catalog(
        load_catalog(),
        free_radius_miles=Decimal("5"),
        minimum_charge=Decimal("80.00"),
        recurring_discount_rate=Decimal("0.10"),
        rush_windows=[(6, 9), (17, 20)],
        holidays=[date.fromisoformat(d) for d in HOLIDAYS],
    )


@pytest.fixture()
def pricing(pricing_config):
    return PricingEngine(pricing_config)


@pytest.fixture()
def bus():
    return EventBus()


@pytest.fixture()
def received(bus):
    events = []
    unsubscribe = bus.subscribe("*", events.append)
    yield events
    unsubscribe()


def make_booking(store, lat=CENTER.lat, lng=CENTER.lng, **overrides) -> Booking:
    fields = dict(
        customer_id="cust-1",
        service_type="regular",
        scheduled_date=date(2024, 7, 10),
        scheduled_time=time(10, 0),
        location_lat=lat,
        location_lng=lng,
        status=BookingStatus.pending.value,
        price=Decimal("120.00"),
        add_ons=[],
        is_recurring=False,
    )
    fields.update(overrides)
    return store.add_booking(Booking(**fields))


def make_worker(store, status=WorkerStatus.available, active_jobs=0, **overrides) -> Worker:
    fields = dict(
        profile_id=f"profile-{uuid.uuid4().hex[:8]}",
        display_name="Test Worker",
        status=WorkerStatus(status).value,
        active_jobs=active_jobs,
    )
    fields.update(overrides)
    return store.add_worker(Worker(**fields))


@pytest.fixture()
def client(session_factory):
    from sweeper.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)
