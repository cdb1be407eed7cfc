import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from sweeper.errors import (
    AssignmentCorruptionError,
    CapacityError,
    NotFoundError,
    OperationTimeoutError,
    OutOfServiceAreaError,
    StateConflictError,
)
from sweeper.models.enums import AssignmentStatus, BookingStatus, EventType, WorkerStatus
from sweeper.models.models import Assignment, AuditLog
from sweeper.services.assignment import AssignmentCoordinator
from sweeper.services.booking_lifecycle import transition_booking
from sweeper.services.store import DispatchStore

from conftest import make_booking, make_worker

# Roughly 69 miles north of the service center
FAR_LAT = 28.53


def _assignment_count(db, booking_id):
    return db.query(Assignment).filter(Assignment.booking_id == booking_id).count()


def test_assign_success(store, geo, bus, received, db):
    booking = make_booking(store)
    worker = make_worker(store)
    eta = datetime(2024, 7, 10, 9, 45, tzinfo=timezone.utc)

    result = AssignmentCoordinator(store, geo, publisher=bus).assign(
        booking.id, worker.id, estimated_arrival=eta, actor_id="dispatcher-1"
    )

    assert result.success
    assert not result.replayed
    assert result.booking_id == booking.id
    assert result.worker_id == worker.id
    assert result.status == "assigned"

    stored = store.get_booking(booking.id)
    assert stored.status == BookingStatus.assigned.value
    assert stored.worker_id == worker.id
    assert store.get_worker(worker.id).active_jobs == 1
    assert _assignment_count(db, booking.id) == 1

    assert [e.type for e in received] == [EventType.assignment_created]
    assert received[0].booking_id == booking.id
    assert received[0].payload["workerId"] == str(worker.id)
    assert received[0].payload["assignmentId"] == str(result.assignment_id)
    # 10:00 Central Daylight Time
    assert received[0].payload["scheduledAt"] == "2024-07-10T15:00:00+00:00"

    audit = db.query(AuditLog).filter(AuditLog.entity_id == booking.id, AuditLog.action == "ASSIGN").one()
    assert audit.actor_id == "dispatcher-1"


def test_unknown_booking(store, geo):
    worker = make_worker(store)
    with pytest.raises(NotFoundError):
        AssignmentCoordinator(store, geo).assign(uuid.uuid4(), worker.id)


def test_unknown_worker(store, geo):
    booking = make_booking(store)
    with pytest.raises(NotFoundError):
        AssignmentCoordinator(store, geo).assign(booking.id, uuid.uuid4())
    assert store.get_booking(booking.id).status == BookingStatus.pending.value


def test_out_of_service_area(store, geo, received, bus, db):
    booking = make_booking(store, lat=FAR_LAT)
    worker = make_worker(store)

    with pytest.raises(OutOfServiceAreaError):
        AssignmentCoordinator(store, geo, publisher=bus).assign(booking.id, worker.id)

    assert store.get_booking(booking.id).status == BookingStatus.pending.value
    assert store.get_worker(worker.id).active_jobs == 0
    assert _assignment_count(db, booking.id) == 0
    assert received == []


def test_offline_worker(store, geo, db):
    booking = make_booking(store)
    worker = make_worker(store, status=WorkerStatus.offline)

    with pytest.raises(CapacityError):
        AssignmentCoordinator(store, geo).assign(booking.id, worker.id)

    assert store.get_booking(booking.id).worker_id is None
    assert _assignment_count(db, booking.id) == 0


def test_worker_at_capacity(store, geo):
    worker = make_worker(store)
    coordinator = AssignmentCoordinator(store, geo, max_concurrent_jobs=1)
    coordinator.assign(make_booking(store).id, worker.id)

    second = make_booking(store)
    with pytest.raises(CapacityError):
        coordinator.assign(second.id, worker.id)
    assert store.get_booking(second.id).status == BookingStatus.pending.value
    assert store.get_worker(worker.id).active_jobs == 1


def test_higher_capacity_allows_concurrent_jobs(store, geo):
    worker = make_worker(store)
    coordinator = AssignmentCoordinator(store, geo, max_concurrent_jobs=2)
    coordinator.assign(make_booking(store).id, worker.id)
    coordinator.assign(make_booking(store).id, worker.id)
    assert store.get_worker(worker.id).active_jobs == 2


def test_state_conflict_reported_before_service_area(store, geo):
    booking = make_booking(store, lat=FAR_LAT, status=BookingStatus.cancelled.value)
    worker = make_worker(store, status=WorkerStatus.offline)
    with pytest.raises(StateConflictError):
        AssignmentCoordinator(store, geo).assign(booking.id, worker.id)


def test_service_area_reported_before_capacity(store, geo):
    booking = make_booking(store, lat=FAR_LAT)
    worker = make_worker(store, status=WorkerStatus.offline)
    with pytest.raises(OutOfServiceAreaError):
        AssignmentCoordinator(store, geo).assign(booking.id, worker.id)


def test_second_worker_gets_conflict(store, geo):
    booking = make_booking(store)
    first, second = make_worker(store), make_worker(store)
    coordinator = AssignmentCoordinator(store, geo)

    coordinator.assign(booking.id, first.id)
    with pytest.raises(StateConflictError):
        coordinator.assign(booking.id, second.id)

    assert store.get_booking(booking.id).worker_id == first.id
    assert store.get_worker(second.id).active_jobs == 0


def test_retry_is_idempotent(store, geo, bus, received, db):
    booking = make_booking(store)
    worker = make_worker(store)
    coordinator = AssignmentCoordinator(store, geo, publisher=bus)

    first = coordinator.assign(booking.id, worker.id)
    again = coordinator.assign(booking.id, worker.id)

    assert again.replayed
    assert again.assignment_id == first.assignment_id
    assert _assignment_count(db, booking.id) == 1
    assert store.get_worker(worker.id).active_jobs == 1
    assert len(received) == 1


def test_retry_completes_missing_assignment_row(store, geo, bus, received, db):
    booking = make_booking(store)
    worker = make_worker(store)
    # Booking committed and capacity reserved, then the caller died
    assert store.claim_booking(booking.id, worker.id)
    assert store.reserve_capacity(worker.id, 1)

    result = AssignmentCoordinator(store, geo, publisher=bus).assign(booking.id, worker.id)

    assert result.replayed
    assert _assignment_count(db, booking.id) == 1
    assert store.get_worker(worker.id).active_jobs == 1
    assert [e.type for e in received] == [EventType.assignment_created]


def test_stale_read_loses_race(session_factory, geo):
    setup = DispatchStore(session_factory())
    booking = make_booking(setup)
    loser_worker, winner_worker = make_worker(setup), make_worker(setup)

    loser_store = DispatchStore(session_factory())
    winner = AssignmentCoordinator(DispatchStore(session_factory()), geo)
    real_get_worker = loser_store.get_worker

    def get_worker_then_race(worker_id):
        worker = real_get_worker(worker_id)
        # Another dispatcher commits between our checks and our claim
        winner.assign(booking.id, winner_worker.id)
        return worker

    loser_store.get_worker = get_worker_then_race

    with pytest.raises(StateConflictError):
        AssignmentCoordinator(loser_store, geo).assign(booking.id, loser_worker.id)

    check = DispatchStore(session_factory())
    assert check.get_booking(booking.id).worker_id == winner_worker.id
    assert check.get_worker(loser_worker.id).active_jobs == 0
    assert check.get_worker(winner_worker.id).active_jobs == 1
    assert check.db.query(Assignment).filter(Assignment.booking_id == booking.id).count() == 1


def test_concurrent_assign_has_one_winner(session_factory, geo):
    setup = DispatchStore(session_factory())
    booking = make_booking(setup)
    workers = [make_worker(setup) for _ in range(4)]

    barrier = threading.Barrier(len(workers))
    outcomes = []
    lock = threading.Lock()

    def attempt(worker_id):
        session = session_factory()
        try:
            coordinator = AssignmentCoordinator(DispatchStore(session), geo)
            barrier.wait()
            try:
                result = coordinator.assign(booking.id, worker_id)
                outcome = ("ok", result.worker_id)
            except StateConflictError:
                outcome = ("conflict", worker_id)
            with lock:
                outcomes.append(outcome)
        finally:
            session.close()

    threads = [threading.Thread(target=attempt, args=(w.id,)) for w in workers]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    winners = [w for kind, w in outcomes if kind == "ok"]
    assert len(outcomes) == len(workers)
    assert len(winners) == 1

    check = DispatchStore(session_factory())
    assert check.get_booking(booking.id).worker_id == winners[0]
    assert check.db.query(Assignment).filter(Assignment.booking_id == booking.id).count() == 1
    assert sum(check.get_worker(w.id).active_jobs for w in workers) == 1


def test_insert_failure_is_rolled_back(store, geo, bus, received, db, monkeypatch):
    booking = make_booking(store)
    worker = make_worker(store)

    def broken_insert(*args, **kwargs):
        raise RuntimeError("assignments table unavailable")

    monkeypatch.setattr(store, "insert_assignment", broken_insert)

    with pytest.raises(RuntimeError):
        AssignmentCoordinator(store, geo, publisher=bus).assign(booking.id, worker.id)

    reverted = store.get_booking(booking.id)
    assert reverted.status == BookingStatus.pending.value
    assert reverted.worker_id is None
    assert store.get_worker(worker.id).active_jobs == 0
    assert received == []


def test_capacity_lost_after_claim_is_rolled_back(store, geo, monkeypatch):
    booking = make_booking(store)
    worker = make_worker(store)
    monkeypatch.setattr(store, "reserve_capacity", lambda worker_id, max_jobs: False)

    with pytest.raises(CapacityError):
        AssignmentCoordinator(store, geo).assign(booking.id, worker.id)

    assert store.get_booking(booking.id).status == BookingStatus.pending.value


def test_failed_rollback_reports_corruption(store, geo, monkeypatch):
    booking = make_booking(store)
    worker = make_worker(store)
    insert_error = RuntimeError("insert failed")

    def broken_insert(*args, **kwargs):
        raise insert_error

    def broken_unclaim(*args, **kwargs):
        raise RuntimeError("connection lost")

    monkeypatch.setattr(store, "insert_assignment", broken_insert)
    monkeypatch.setattr(store, "unclaim_booking", broken_unclaim)

    with pytest.raises(AssignmentCorruptionError) as exc:
        AssignmentCoordinator(store, geo).assign(booking.id, worker.id)
    assert exc.value.cause is insert_error
    assert exc.value.status_code == 500


def test_incomplete_rollback_reports_corruption(store, geo, monkeypatch):
    booking = make_booking(store)
    worker = make_worker(store)

    def broken_insert(*args, **kwargs):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(store, "insert_assignment", broken_insert)
    monkeypatch.setattr(store, "unclaim_booking", lambda booking_id, worker_id: False)

    with pytest.raises(AssignmentCorruptionError):
        AssignmentCoordinator(store, geo).assign(booking.id, worker.id)


class _BrokenPublisher:
    def publish(self, event):
        raise ConnectionError("notification service down")


def test_publisher_failure_does_not_fail_assignment(store, geo):
    booking = make_booking(store)
    worker = make_worker(store)

    result = AssignmentCoordinator(store, geo, publisher=_BrokenPublisher()).assign(booking.id, worker.id)

    assert result.success
    assert store.get_booking(booking.id).status == BookingStatus.assigned.value


def test_timeout_before_commit_leaves_no_trace(store, geo, db):
    booking = make_booking(store)
    worker = make_worker(store)

    # A deadline already in the past expires before the booking is claimed
    with pytest.raises(OperationTimeoutError):
        AssignmentCoordinator(store, geo).assign(booking.id, worker.id, timeout=-1)

    assert store.get_booking(booking.id).status == BookingStatus.pending.value
    assert store.get_worker(worker.id).active_jobs == 0
    assert _assignment_count(db, booking.id) == 0


def test_generous_timeout_succeeds(store, geo):
    booking = make_booking(store)
    worker = make_worker(store)
    arrival = datetime.now(timezone.utc) + timedelta(minutes=20)
    result = AssignmentCoordinator(store, geo).assign(booking.id, worker.id, estimated_arrival=arrival, timeout=30)
    assert result.estimated_arrival is not None


def _transition_before_insert(monkeypatch, store, session_factory, target):
    """Commit a booking transition from another session right before the assignment row lands."""
    real_insert = store.insert_assignment

    def insert_after_transition(booking_id, worker_id, estimated_arrival=None):
        transition_booking(DispatchStore(session_factory()), booking_id, target)
        return real_insert(booking_id, worker_id, estimated_arrival)

    monkeypatch.setattr(store, "insert_assignment", insert_after_transition)


def test_cancel_during_assignment_releases_capacity(store, geo, bus, received, db, session_factory, monkeypatch):
    booking = make_booking(store)
    worker = make_worker(store)
    _transition_before_insert(monkeypatch, store, session_factory, BookingStatus.cancelled)

    with pytest.raises(StateConflictError):
        AssignmentCoordinator(store, geo, publisher=bus).assign(booking.id, worker.id)

    cancelled = store.get_booking(booking.id)
    assert cancelled.status == BookingStatus.cancelled.value
    assert cancelled.worker_id is None
    assignment = store.get_assignment_for_booking(booking.id)
    assert assignment.status == AssignmentStatus.cancelled.value
    assert store.get_worker(worker.id).active_jobs == 0
    assert store.count_active_assignments(worker.id) == 0
    assert EventType.assignment_created not in [e.type for e in received]


def test_progress_during_assignment_is_mirrored(store, geo, session_factory, monkeypatch):
    booking = make_booking(store)
    worker = make_worker(store)
    _transition_before_insert(monkeypatch, store, session_factory, BookingStatus.en_route)

    result = AssignmentCoordinator(store, geo).assign(booking.id, worker.id)

    assert result.status == AssignmentStatus.en_route.value
    assert store.get_assignment_for_booking(booking.id).status == AssignmentStatus.en_route.value
    assert store.get_worker(worker.id).active_jobs == 1

    # Cancelling later frees the worker exactly once
    transition_booking(store, booking.id, BookingStatus.cancelled)
    assert store.get_worker(worker.id).active_jobs == 0


def test_retry_without_reservation_respects_capacity(store, geo, db):
    stranded = make_booking(store)
    other = make_booking(store)
    worker = make_worker(store)
    # Booking committed, then the caller died before reserving capacity
    assert store.claim_booking(stranded.id, worker.id)

    coordinator = AssignmentCoordinator(store, geo, max_concurrent_jobs=1)
    coordinator.assign(other.id, worker.id)

    with pytest.raises(CapacityError):
        coordinator.assign(stranded.id, worker.id)

    reverted = store.get_booking(stranded.id)
    assert reverted.status == BookingStatus.pending.value
    assert reverted.worker_id is None
    assert _assignment_count(db, stranded.id) == 0
    assert store.get_worker(worker.id).active_jobs == 1


def test_retry_without_reservation_reserves_capacity(store, geo, db):
    booking = make_booking(store)
    worker = make_worker(store)
    assert store.claim_booking(booking.id, worker.id)

    result = AssignmentCoordinator(store, geo).assign(booking.id, worker.id)

    assert result.replayed
    assert _assignment_count(db, booking.id) == 1
    assert store.get_worker(worker.id).active_jobs == 1
