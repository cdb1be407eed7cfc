"""
Worker-to-booking assignment.

The booking row is the point of commit: a conditional update that only
matches a pending, unassigned booking. Everything after it (capacity
reservation, assignment row) is compensated if it fails, so losing callers
leave no trace and a partially applied assignment is either rolled back or
reported as corrupt.
"""
import time
import uuid
from datetime import datetime
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from ..errors import (
    AssignmentCorruptionError,
    CapacityError,
    NotFoundError,
    OperationTimeoutError,
    OutOfServiceAreaError,
    StateConflictError,
)
from ..models.enums import AssignmentStatus, BookingStatus, EventType
from ..config import settings
from ..models.models import Assignment, Booking
from .audit import create_audit_log
from .booking_lifecycle import ASSIGNMENT_PHASE, is_terminal
from .events import DispatchEvent, EventPublisher, emit
from .geofence import Coordinate, GeoService
from .store import DispatchStore
from .time_rules import combine_date_time
from .worker_lifecycle import can_accept_assignment

logger = structlog.get_logger(__name__)


class AssignmentResult(BaseModel):
    success: bool = True
    assignment_id: uuid.UUID
    booking_id: uuid.UUID
    worker_id: uuid.UUID
    status: str
    assigned_at: datetime
    estimated_arrival: Optional[datetime] = None
    replayed: bool = False

    @classmethod
    def from_assignment(cls, assignment: Assignment, replayed: bool = False) -> "AssignmentResult":
        return cls(
            assignment_id=assignment.id,
            booking_id=assignment.booking_id,
            worker_id=assignment.worker_id,
            status=assignment.status,
            assigned_at=assignment.assigned_at,
            estimated_arrival=assignment.estimated_arrival,
            replayed=replayed,
        )


class AssignmentCoordinator:
    def __init__(
        self,
        store: DispatchStore,
        geo: GeoService,
        max_concurrent_jobs: int = 1,
        publisher: Optional[EventPublisher] = None,
    ):
        self.store = store
        self.geo = geo
        self.max_concurrent_jobs = max_concurrent_jobs
        self.publisher = publisher

    def assign(
        self,
        booking_id: uuid.UUID,
        worker_id: uuid.UUID,
        estimated_arrival: Optional[datetime] = None,
        timeout: Optional[float] = None,
        actor_id: Optional[str] = None,
    ) -> AssignmentResult:
        """
        Assign ``worker_id`` to ``booking_id`` exactly once.

        Preconditions are checked in order and the first failure wins: the
        booking is pending, it lies inside the service area, the worker is
        online with spare capacity. A retry of a call whose booking update
        already committed returns the original assignment with
        ``replayed=True``.

        Raises:
            NotFoundError: unknown booking or worker
            StateConflictError: booking not pending, or another caller won the race
            OutOfServiceAreaError: booking location outside the service area
            CapacityError: worker offline or at its job limit
            OperationTimeoutError: ``timeout`` seconds elapsed before commit
            AssignmentCorruptionError: a failed assignment could not be rolled back
        """
        deadline = time.monotonic() + timeout if timeout is not None else None

        booking = self.store.get_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", booking_id=booking_id)

        status = BookingStatus(booking.status)
        if status != BookingStatus.pending:
            if status == BookingStatus.assigned and booking.worker_id == worker_id:
                return self._replay(booking, worker_id, estimated_arrival, actor_id)
            raise StateConflictError(
                "Booking is not available for assignment",
                booking_id=booking_id,
                status=status.value,
            )

        location = Coordinate(booking.location_lat, booking.location_lng)
        if not self.geo.is_within_service_area(location):
            raise OutOfServiceAreaError(
                "Booking location is outside the service area",
                booking_id=booking_id,
                distance_miles=round(self.geo.distance_from_center(location), 2),
            )

        worker = self.store.get_worker(worker_id)
        if worker is None:
            raise NotFoundError("Worker not found", worker_id=worker_id)
        allowed, reason = can_accept_assignment(worker, self.max_concurrent_jobs)
        if not allowed:
            raise CapacityError(reason, worker_id=worker_id)

        if deadline is not None and time.monotonic() > deadline:
            raise OperationTimeoutError("Assignment timed out before commit", booking_id=booking_id)

        if not self.store.claim_booking(booking_id, worker_id):
            logger.info("assignment_race_lost", booking_id=str(booking_id), worker_id=str(worker_id))
            raise StateConflictError("Booking already assigned", booking_id=booking_id)

        if not self.store.reserve_capacity(worker_id, self.max_concurrent_jobs):
            self._compensate(booking_id, worker_id, capacity_reserved=False)
            raise CapacityError("Worker reached capacity during assignment", worker_id=worker_id)

        try:
            assignment = self.store.insert_assignment(booking_id, worker_id, estimated_arrival)
        except Exception as e:
            logger.error("assignment_insert_failed", booking_id=str(booking_id), error=str(e))
            self._compensate(booking_id, worker_id, capacity_reserved=True, cause=e)
            raise

        assignment = self._settle(booking_id, worker_id, assignment)
        return self._finish(booking, assignment, actor_id)

    def _replay(
        self,
        booking: Booking,
        worker_id: uuid.UUID,
        estimated_arrival: Optional[datetime],
        actor_id: Optional[str],
    ) -> AssignmentResult:
        existing = self.store.get_assignment_for_booking(booking.id)
        if existing is not None:
            logger.info("assignment_replayed", booking_id=str(booking.id), worker_id=str(worker_id))
            return AssignmentResult.from_assignment(existing, replayed=True)

        # Booking committed but the assignment row never landed. The earlier
        # call may or may not have reserved capacity: a counter above the
        # number of active assignments means the unit is already held.
        worker = self.store.get_worker(worker_id)
        if worker is None:
            raise NotFoundError("Worker not found", worker_id=worker_id)
        already_reserved = (worker.active_jobs or 0) > self.store.count_active_assignments(worker_id)
        if not already_reserved:
            allowed, reason = can_accept_assignment(worker, self.max_concurrent_jobs)
            if not allowed or not self.store.reserve_capacity(worker_id, self.max_concurrent_jobs):
                self._compensate(booking.id, worker_id, capacity_reserved=False)
                raise CapacityError(reason or "Worker reached capacity during assignment", worker_id=worker_id)

        try:
            assignment = self.store.insert_assignment(booking.id, worker_id, estimated_arrival)
        except IntegrityError as e:
            existing = self.store.get_assignment_for_booking(booking.id)
            if existing is None:
                self._compensate(booking.id, worker_id, capacity_reserved=True, cause=e)
                raise
            # A concurrent retry inserted it first and owns the reservation
            if not already_reserved:
                self.store.release_capacity(worker_id)
            return AssignmentResult.from_assignment(existing, replayed=True)
        except Exception as e:
            logger.error("assignment_insert_failed", booking_id=str(booking.id), error=str(e))
            self._compensate(booking.id, worker_id, capacity_reserved=True, cause=e)
            raise

        assignment = self._settle(booking.id, worker_id, assignment)
        result = self._finish(booking, assignment, actor_id)
        return result.model_copy(update={"replayed": True})

    def _settle(self, booking_id: uuid.UUID, worker_id: uuid.UUID, assignment: Assignment) -> Assignment:
        """
        Line a freshly inserted assignment up with its booking.

        A booking transition that commits between the claim and the insert
        finds no assignment to mirror, so it is mirrored here. If the booking
        was cancelled or handed to someone else meanwhile, the assignment is
        cancelled, the capacity unit is returned and StateConflictError raised.
        Both sides move the assignment by compare-and-swap, so capacity is
        released exactly once.
        """
        current = self.store.get_booking(booking_id)
        status = BookingStatus(current.status) if current is not None else BookingStatus.cancelled

        if current is not None and current.worker_id == worker_id and not is_terminal(status):
            phase = ASSIGNMENT_PHASE[status]
            if phase == AssignmentStatus.assigned:
                return assignment
            self.store.compare_and_set_assignment_status(booking_id, AssignmentStatus.assigned, phase)
            return self.store.get_assignment_for_booking(booking_id)

        target = AssignmentStatus.completed if status == BookingStatus.completed else AssignmentStatus.cancelled
        if self.store.compare_and_set_assignment_status(booking_id, AssignmentStatus.assigned, target):
            self.store.release_capacity(worker_id)
        logger.warning(
            "assignment_superseded",
            booking_id=str(booking_id),
            worker_id=str(worker_id),
            booking_status=status.value,
        )
        raise StateConflictError(
            "Booking changed while it was being assigned",
            booking_id=booking_id,
            status=status.value,
        )

    def _finish(self, booking: Booking, assignment: Assignment, actor_id: Optional[str]) -> AssignmentResult:
        result = AssignmentResult.from_assignment(assignment)

        emit(
            self.publisher,
            DispatchEvent(
                type=EventType.assignment_created,
                booking_id=booking.id,
                payload={
                    "assignmentId": str(assignment.id),
                    "workerId": str(assignment.worker_id),
                    "customerId": booking.customer_id,
                    "serviceType": booking.service_type,
                    "scheduledDate": booking.scheduled_date.isoformat(),
                    "scheduledTime": booking.scheduled_time.isoformat(),
                    "scheduledAt": combine_date_time(
                        booking.scheduled_date, booking.scheduled_time, settings.tz_default
                    ).isoformat(),
                    "estimatedArrival": (
                        assignment.estimated_arrival.isoformat() if assignment.estimated_arrival else None
                    ),
                },
            ),
        )

        create_audit_log(
            self.store.db,
            entity_type="booking",
            entity_id=booking.id,
            action="ASSIGN",
            actor_id=actor_id,
            actor_role="dispatcher",
            source="api",
            changes_json={
                "status": {"before": BookingStatus.pending.value, "after": BookingStatus.assigned.value},
                "worker_id": {"before": None, "after": str(assignment.worker_id)},
            },
            context={"assignment_id": str(assignment.id)},
        )
        logger.info(
            "booking_assigned",
            booking_id=str(booking.id),
            worker_id=str(assignment.worker_id),
            assignment_id=str(assignment.id),
        )
        return result

    def _compensate(
        self,
        booking_id: uuid.UUID,
        worker_id: uuid.UUID,
        capacity_reserved: bool,
        cause: Optional[BaseException] = None,
    ) -> None:
        """Undo a committed claim; raise AssignmentCorruptionError if that is impossible."""
        try:
            released = self.store.release_capacity(worker_id) if capacity_reserved else True
            unclaimed = self.store.unclaim_booking(booking_id, worker_id)
        except Exception as rollback_error:
            logger.critical(
                "assignment_rollback_failed",
                booking_id=str(booking_id),
                worker_id=str(worker_id),
                error=str(rollback_error),
            )
            raise AssignmentCorruptionError(
                "Assignment failed and could not be rolled back; manual reconciliation required",
                cause=cause or rollback_error,
                booking_id=booking_id,
                worker_id=worker_id,
            ) from rollback_error

        if not (released and unclaimed):
            logger.critical(
                "assignment_rollback_incomplete",
                booking_id=str(booking_id),
                worker_id=str(worker_id),
                capacity_released=released,
                booking_reverted=unclaimed,
            )
            raise AssignmentCorruptionError(
                "Assignment rollback left booking or worker in an unexpected state",
                cause=cause,
                booking_id=booking_id,
                worker_id=worker_id,
            )

        logger.warning("assignment_rolled_back", booking_id=str(booking_id), worker_id=str(worker_id))
