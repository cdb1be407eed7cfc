"""
Worker status rules.

Status changes are requested by the dispatcher or the worker's own device
and may go from any state to any other. Assignment eligibility is the only
rule enforced here: offline workers and workers at their concurrent-job
limit cannot take a new booking.
"""
import uuid
from typing import Optional, Tuple

import structlog

from ..errors import NotFoundError, ValidationError
from ..models.enums import WorkerStatus
from ..models.models import Worker
from .audit import compute_diff, create_audit_log
from .store import DispatchStore

logger = structlog.get_logger(__name__)

ASSIGNABLE = {
    WorkerStatus.available: True,
    WorkerStatus.en_route: True,
    WorkerStatus.on_job: True,
    WorkerStatus.on_break: True,
    WorkerStatus.offline: False,
}

ONBOARDING_STATUSES = (WorkerStatus.offline, WorkerStatus.available)

if set(ASSIGNABLE) != set(WorkerStatus):
    raise RuntimeError("Worker assignability table does not cover every status")


def parse_worker_status(value) -> WorkerStatus:
    try:
        return WorkerStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown worker status: {value}", status=value)


def can_accept_assignment(worker: Worker, max_concurrent_jobs: int) -> Tuple[bool, Optional[str]]:
    """
    Check if a worker may be given another booking.

    Returns:
        Tuple of (allowed, reason); reason is None when allowed
    """
    status = WorkerStatus(worker.status)
    if not ASSIGNABLE[status]:
        return False, "Worker is offline and cannot be assigned"
    if (worker.active_jobs or 0) >= max_concurrent_jobs:
        return False, f"Worker is at capacity ({worker.active_jobs}/{max_concurrent_jobs} jobs)"
    return True, None


def register_worker(
    store: DispatchStore,
    profile_id: str,
    display_name: Optional[str] = None,
    status=WorkerStatus.offline,
) -> Worker:
    initial = parse_worker_status(status)
    if initial not in ONBOARDING_STATUSES:
        raise ValidationError("New workers start offline or available", status=initial.value)

    worker = store.add_worker(
        Worker(profile_id=profile_id, display_name=display_name, status=initial.value, active_jobs=0)
    )
    create_audit_log(
        store.db,
        entity_type="worker",
        entity_id=worker.id,
        action="CREATE",
        actor_id=profile_id,
        actor_role="worker",
        source="api",
        changes_json={"after": {"status": initial.value}},
    )
    return worker


def set_worker_status(
    store: DispatchStore,
    worker_id: uuid.UUID,
    status,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
) -> Worker:
    target = parse_worker_status(status)
    worker = store.get_worker(worker_id)
    if worker is None:
        raise NotFoundError("Worker not found", worker_id=worker_id)

    before = worker.status
    if not store.set_worker_status(worker_id, target):
        raise NotFoundError("Worker not found", worker_id=worker_id)

    create_audit_log(
        store.db,
        entity_type="worker",
        entity_id=worker_id,
        action="STATUS",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api",
        changes_json=compute_diff({"status": before}, {"status": target.value}),
    )
    logger.info("worker_status_changed", worker_id=str(worker_id), before=before, after=target.value)

    return store.get_worker(worker_id)
