"""
Seed the local database with sample workers and bookings around the service center.

Usage:
  python scripts/seed_test_data.py

This script is idempotent: workers are upserted by profile_id, and bookings
are only created for customers that have none yet.
"""

from datetime import date, time, timedelta

from sweeper.config import settings
from sweeper.db import SessionLocal, Base, engine
from sweeper.models import models  # noqa: F401
from sweeper.models.enums import WorkerStatus
from sweeper.models.models import Booking, Worker
from sweeper.services.booking_intake import create_booking
from sweeper.services.geofence import GeoService
from sweeper.services.pricing import PricingConfig, PricingEngine
from sweeper.services.store import DispatchStore


def ensure_worker(session, profile_id: str, display_name: str, status: WorkerStatus, lat: float, lng: float) -> Worker:
    worker = session.query(Worker).filter(Worker.profile_id == profile_id).first()
    if worker:
        worker.display_name = display_name
        worker.status = status.value
        session.add(worker)
        session.flush()
        return worker
    worker = Worker(
        profile_id=profile_id,
        display_name=display_name,
        status=status.value,
        current_lat=lat,
        current_lng=lng,
        active_jobs=0,
    )
    session.add(worker)
    session.flush()
    return worker


def ensure_booking(store: DispatchStore, geo, pricing, customer_id: str, **kwargs) -> Booking:
    existing = store.db.query(Booking).filter(Booking.customer_id == customer_id).first()
    if existing:
        return existing
    return create_booking(store, geo, pricing, customer_id=customer_id, **kwargs)


def main() -> None:
    # Ensure tables exist (safe for SQLite dev)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        lat, lng = settings.service_center_lat, settings.service_center_lng

        ensure_worker(session, "seed.maria", "Maria Lopez", WorkerStatus.available, lat + 0.02, lng - 0.01)
        ensure_worker(session, "seed.jose", "Jose Ramirez", WorkerStatus.available, lat - 0.03, lng + 0.02)
        ensure_worker(session, "seed.lin", "Lin Chen", WorkerStatus.offline, lat, lng)
        session.commit()

        store = DispatchStore(session)
        geo = GeoService.from_settings(settings)
        pricing = PricingEngine(PricingConfig.from_settings(settings))
        tomorrow = date.today() + timedelta(days=1)

        ensure_booking(
            store, geo, pricing, "seed-customer-1",
            service_type="regular",
            scheduled_date=tomorrow,
            scheduled_time=time(10, 0),
            lat=lat + 0.05,
            lng=lng + 0.05,
            address="1100 Houston St, Laredo, TX",
            is_recurring=True,
        )
        ensure_booking(
            store, geo, pricing, "seed-customer-2",
            service_type="deep",
            scheduled_date=tomorrow,
            scheduled_time=time(17, 30),
            lat=lat - 0.08,
            lng=lng + 0.04,
            address="4800 San Bernardo Ave, Laredo, TX",
            add_ons=["inside_oven", "inside_fridge"],
        )
        ensure_booking(
            store, geo, pricing, "seed-customer-3",
            service_type="airbnb",
            scheduled_date=tomorrow + timedelta(days=1),
            scheduled_time=time(12, 0),
            lat=lat + 0.1,
            lng=lng - 0.1,
            notes="Lockbox code on file",
        )

        print("Seed completed: workers upserted and bookings created.")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()
