"""
Reset worker job counters to the number of active assignments.

Run after an AssignmentCorruptionError or a crash between a booking update
and its capacity bookkeeping.

Usage:
    python scripts/reconcile_capacity.py [--dry-run] [--worker WORKER_ID]
"""
import argparse
import uuid

from sweeper.db import SessionLocal
from sweeper.models.models import Worker
from sweeper.services.store import DispatchStore


def reconcile(dry_run: bool = False, worker_id: uuid.UUID = None):
    db = SessionLocal()
    try:
        store = DispatchStore(db)
        query = db.query(Worker)
        if worker_id:
            query = query.filter(Worker.id == worker_id)

        for worker in query.all():
            active = store.count_active_assignments(worker.id)
            if worker.active_jobs == active:
                continue
            label = worker.display_name or worker.profile_id
            before = worker.active_jobs
            if dry_run:
                print(f"[dry-run] {label}: active_jobs {before} -> {active}")
                continue
            result = store.reconcile_capacity(worker.id)
            if result is None:
                print(f"{label}: counter changed while reconciling, run again")
            else:
                print(f"{label}: active_jobs {before} -> {result}")
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reconcile worker capacity counters")
    parser.add_argument("--dry-run", action="store_true", help="Only report mismatches")
    parser.add_argument("--worker", type=uuid.UUID, help="Reconcile a single worker")
    args = parser.parse_args()
    reconcile(dry_run=args.dry_run, worker_id=args.worker)
