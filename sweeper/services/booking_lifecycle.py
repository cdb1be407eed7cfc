"""
Booking status machine.

pending -> assigned -> en_route -> in_progress -> completed, with cancellation
allowed from pending, assigned and en_route. pending -> assigned is reserved
for the assignment coordinator.
"""
import uuid
from typing import Dict, FrozenSet, Optional

import structlog

from ..errors import NotFoundError, StateConflictError
from ..models.enums import AssignmentStatus, BookingStatus
from ..models.models import Booking
from .audit import create_audit_log
from .store import DispatchStore

logger = structlog.get_logger(__name__)

TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.pending: frozenset({BookingStatus.assigned, BookingStatus.cancelled}),
    BookingStatus.assigned: frozenset({BookingStatus.en_route, BookingStatus.cancelled}),
    BookingStatus.en_route: frozenset({BookingStatus.in_progress, BookingStatus.cancelled}),
    BookingStatus.in_progress: frozenset({BookingStatus.completed}),
    BookingStatus.completed: frozenset(),
    BookingStatus.cancelled: frozenset(),
}

# Assignment status that mirrors each booking phase; None where no assignment exists
ASSIGNMENT_PHASE: Dict[BookingStatus, Optional[AssignmentStatus]] = {
    BookingStatus.pending: None,
    BookingStatus.assigned: AssignmentStatus.assigned,
    BookingStatus.en_route: AssignmentStatus.en_route,
    BookingStatus.in_progress: AssignmentStatus.in_progress,
    BookingStatus.completed: AssignmentStatus.completed,
    BookingStatus.cancelled: AssignmentStatus.cancelled,
}

WORKER_REQUIRED: FrozenSet[BookingStatus] = frozenset({
    BookingStatus.assigned,
    BookingStatus.en_route,
    BookingStatus.in_progress,
    BookingStatus.completed,
})

TERMINAL: FrozenSet[BookingStatus] = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

for _table in (TRANSITIONS, ASSIGNMENT_PHASE):
    _missing = set(BookingStatus) - set(_table)
    if _missing:
        raise RuntimeError(f"Booking status table is missing {sorted(s.value for s in _missing)}")


def is_terminal(status: BookingStatus) -> bool:
    return BookingStatus(status) in TERMINAL


def requires_worker(status: BookingStatus) -> bool:
    """worker_id must be set exactly in these states."""
    return BookingStatus(status) in WORKER_REQUIRED


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return BookingStatus(target) in TRANSITIONS[BookingStatus(current)]


def validate_transition(current: BookingStatus, target: BookingStatus) -> None:
    if not can_transition(current, target):
        raise StateConflictError(
            f"Cannot move booking from {BookingStatus(current).value} to {BookingStatus(target).value}",
            current=BookingStatus(current).value,
            target=BookingStatus(target).value,
        )


def transition_booking(
    store: DispatchStore,
    booking_id: uuid.UUID,
    target: BookingStatus,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
) -> Booking:
    """
    Move a booking to ``target`` through the status table.

    The booking row is updated with a compare-and-swap on the status that was
    read, so a concurrent transition makes this call fail with
    StateConflictError instead of overwriting it. The active assignment is
    mirrored afterwards, and reaching a terminal state from an assigned phase
    returns one unit of capacity to the worker.

    Raises:
        NotFoundError: unknown booking
        StateConflictError: transition not allowed, or lost to a concurrent update
    """
    target = BookingStatus(target)
    booking = store.get_booking(booking_id)
    if booking is None:
        raise NotFoundError("Booking not found", booking_id=booking_id)

    current = BookingStatus(booking.status)
    if target == BookingStatus.assigned:
        raise StateConflictError(
            "Bookings are assigned through the dispatch coordinator",
            current=current.value,
            target=target.value,
        )
    validate_transition(current, target)

    worker_id = booking.worker_id
    clear_worker = not requires_worker(target)
    if not store.compare_and_set_booking_status(booking_id, current, target, clear_worker=clear_worker):
        raise StateConflictError(
            "Booking changed while updating its status",
            current=current.value,
            target=target.value,
        )

    previous_phase = ASSIGNMENT_PHASE[current]
    next_phase = ASSIGNMENT_PHASE[target]
    assignment_moved = False
    if previous_phase is not None and next_phase is not None:
        assignment_moved = store.compare_and_set_assignment_status(booking_id, previous_phase, next_phase)
        if not assignment_moved:
            logger.warning(
                "assignment_mirror_missed",
                booking_id=str(booking_id),
                expected=previous_phase.value,
                target=next_phase.value,
            )

    if assignment_moved and is_terminal(target) and worker_id is not None:
        store.release_capacity(worker_id)

    create_audit_log(
        store.db,
        entity_type="booking",
        entity_id=booking_id,
        action="TRANSITION",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api",
        changes_json={"status": {"before": current.value, "after": target.value}},
        context={"worker_id": str(worker_id) if worker_id else None},
    )
    logger.info(
        "booking_transitioned",
        booking_id=str(booking_id),
        before=current.value,
        after=target.value,
    )

    return store.get_booking(booking_id)
