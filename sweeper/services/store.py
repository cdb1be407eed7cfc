"""
Dispatch datastore.

All writes that race are expressed as single-row conditional updates
(compare-and-swap) and committed immediately; the store never holds a
multi-row transaction across calls.
"""
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import update, func
from sqlalchemy.orm import Session

from ..models.enums import AssignmentStatus, BookingStatus, WorkerStatus
from ..models.models import Assignment, Booking, LocationSample, Worker
from .time_rules import utc_now

ACTIVE_ASSIGNMENT_STATUSES = (
    AssignmentStatus.assigned.value,
    AssignmentStatus.en_route.value,
    AssignmentStatus.in_progress.value,
)


class DispatchStore:
    """Repository for bookings, workers, assignments and location history"""

    def __init__(self, db: Session):
        self.db = db

    def _commit_rowcount(self, stmt) -> int:
        try:
            result = self.db.execute(stmt.execution_options(synchronize_session=False))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result.rowcount

    def _add(self, obj):
        self.db.add(obj)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(obj)
        return obj

    # Bookings

    def get_booking(self, booking_id: uuid.UUID) -> Optional[Booking]:
        return self.db.get(Booking, booking_id, populate_existing=True)

    def add_booking(self, booking: Booking) -> Booking:
        return self._add(booking)

    def claim_booking(self, booking_id: uuid.UUID, worker_id: uuid.UUID) -> bool:
        """Assign a worker only if the booking is still pending and unassigned."""
        stmt = (
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.worker_id.is_(None),
                Booking.status == BookingStatus.pending.value,
            )
            .values(worker_id=worker_id, status=BookingStatus.assigned.value, updated_at=utc_now())
        )
        return self._commit_rowcount(stmt) == 1

    def unclaim_booking(self, booking_id: uuid.UUID, worker_id: uuid.UUID) -> bool:
        """Undo claim_booking; matches only the exact state claim_booking wrote."""
        stmt = (
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.worker_id == worker_id,
                Booking.status == BookingStatus.assigned.value,
            )
            .values(worker_id=None, status=BookingStatus.pending.value, updated_at=utc_now())
        )
        return self._commit_rowcount(stmt) == 1

    def compare_and_set_booking_status(
        self,
        booking_id: uuid.UUID,
        expected: BookingStatus,
        target: BookingStatus,
        clear_worker: bool = False,
    ) -> bool:
        values = {"status": target.value, "updated_at": utc_now()}
        if clear_worker:
            values["worker_id"] = None
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == expected.value)
            .values(**values)
        )
        return self._commit_rowcount(stmt) == 1

    # Workers

    def get_worker(self, worker_id: uuid.UUID) -> Optional[Worker]:
        return self.db.get(Worker, worker_id, populate_existing=True)

    def add_worker(self, worker: Worker) -> Worker:
        return self._add(worker)

    def set_worker_status(self, worker_id: uuid.UUID, status: WorkerStatus) -> bool:
        stmt = (
            update(Worker)
            .where(Worker.id == worker_id)
            .values(status=status.value, updated_at=utc_now())
        )
        return self._commit_rowcount(stmt) == 1

    def reserve_capacity(self, worker_id: uuid.UUID, max_jobs: int) -> bool:
        """Increment the job counter only while it is below ``max_jobs`` and the worker is online."""
        stmt = (
            update(Worker)
            .where(
                Worker.id == worker_id,
                Worker.active_jobs < max_jobs,
                Worker.status != WorkerStatus.offline.value,
            )
            .values(active_jobs=Worker.active_jobs + 1, updated_at=utc_now())
        )
        return self._commit_rowcount(stmt) == 1

    def release_capacity(self, worker_id: uuid.UUID) -> bool:
        stmt = (
            update(Worker)
            .where(Worker.id == worker_id, Worker.active_jobs > 0)
            .values(active_jobs=Worker.active_jobs - 1, updated_at=utc_now())
        )
        return self._commit_rowcount(stmt) == 1

    def reconcile_capacity(self, worker_id: uuid.UUID) -> Optional[int]:
        """
        Reset the job counter to the number of active assignments.

        Used for manual repair after a partially failed operation. Returns the
        new value, or None if the counter moved while it was being recomputed.
        """
        worker = self.get_worker(worker_id)
        if worker is None:
            return None
        observed = worker.active_jobs
        active = self.count_active_assignments(worker_id)
        stmt = (
            update(Worker)
            .where(Worker.id == worker_id, Worker.active_jobs == observed)
            .values(active_jobs=active, updated_at=utc_now())
        )
        return active if self._commit_rowcount(stmt) == 1 else None

    def record_location(
        self,
        worker_id: uuid.UUID,
        lat: float,
        lng: float,
        heading: Optional[float],
        speed: Optional[float],
        timestamp: datetime,
        received_at: datetime,
    ) -> LocationSample:
        """Move the worker and append the history sample in one commit."""
        sample = LocationSample(
            worker_id=worker_id,
            lat=lat,
            lng=lng,
            heading=heading,
            speed=speed,
            timestamp=timestamp,
        )
        self.db.add(sample)
        try:
            self.db.execute(
                update(Worker)
                .where(Worker.id == worker_id)
                .values(current_lat=lat, current_lng=lng, last_location_update=received_at)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(sample)
        return sample

    def location_history(self, worker_id: uuid.UUID, limit: int = 100) -> List[LocationSample]:
        return (
            self.db.query(LocationSample)
            .filter(LocationSample.worker_id == worker_id)
            .order_by(LocationSample.timestamp.desc())
            .limit(limit)
            .all()
        )

    def count_location_samples(self, worker_id: uuid.UUID) -> int:
        return (
            self.db.query(func.count(LocationSample.id))
            .filter(LocationSample.worker_id == worker_id)
            .scalar()
        )

    # Assignments

    def get_assignment_for_booking(self, booking_id: uuid.UUID) -> Optional[Assignment]:
        return (
            self.db.query(Assignment)
            .filter(Assignment.booking_id == booking_id)
            .populate_existing()
            .first()
        )

    def insert_assignment(
        self,
        booking_id: uuid.UUID,
        worker_id: uuid.UUID,
        estimated_arrival: Optional[datetime] = None,
    ) -> Assignment:
        assignment = Assignment(
            booking_id=booking_id,
            worker_id=worker_id,
            status=AssignmentStatus.assigned.value,
            assigned_at=utc_now(),
            estimated_arrival=estimated_arrival,
        )
        return self._add(assignment)

    def compare_and_set_assignment_status(
        self,
        booking_id: uuid.UUID,
        expected: AssignmentStatus,
        target: AssignmentStatus,
    ) -> bool:
        stmt = (
            update(Assignment)
            .where(Assignment.booking_id == booking_id, Assignment.status == expected.value)
            .values(status=target.value)
        )
        return self._commit_rowcount(stmt) == 1

    def count_active_assignments(self, worker_id: uuid.UUID) -> int:
        return (
            self.db.query(func.count(Assignment.id))
            .filter(
                Assignment.worker_id == worker_id,
                Assignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
            )
            .scalar()
        )

    def active_assignments_for_worker(self, worker_id: uuid.UUID) -> List[Tuple[Assignment, Booking]]:
        return (
            self.db.query(Assignment, Booking)
            .join(Booking, Booking.id == Assignment.booking_id)
            .filter(
                Assignment.worker_id == worker_id,
                Assignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
            )
            .populate_existing()
            .all()
        )
