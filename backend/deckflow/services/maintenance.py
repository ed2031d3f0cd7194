from __future__ import annotations

import logging

from deckflow.errors import InvalidTransition, JobNotFound
from deckflow.services.job_queue import StalledEntry
from deckflow.services.orchestrator import reconcile_orphaned_jobs


logger = logging.getLogger("deckflow.maintenance")


def recover_stalled_jobs(runtime) -> list[StalledEntry]:
    """Return expired leases to their queues; fail jobs whose attempts ran out."""
    recovered: list[StalledEntry] = []
    for family, queue in runtime.queues.items():
        for stalled in queue.scan_stalled():
            recovered.append(stalled)
            if not stalled.terminal:
                runtime.events.emit(
                    stalled.job_id,
                    "attempt_failed",
                    error={"code": "INFRA_ERROR", "message": "Worker lease expired"},
                    attempt=stalled.attempts_made,
                )
                continue
            message = f"Worker lease expired on attempt {stalled.attempts_made}"
            try:
                runtime.jobs.update_status(stalled.job_id, "failed", error_code="INFRA_ERROR", error_message=message)
            except (InvalidTransition, JobNotFound) as exc:
                logger.warning("job=%s stalled_job_not_failed queue=%s reason=%s", stalled.job_id, family, exc)
                continue
            runtime.events.emit(
                stalled.job_id,
                "failed",
                error={"code": "INFRA_ERROR", "message": message},
                attempt=stalled.attempts_made,
            )
            logger.warning("job=%s stalled_job_failed queue=%s attempts=%s", stalled.job_id, family, stalled.attempts_made)
    return recovered


def purge_finished_entries(runtime) -> dict[str, int]:
    return {family: queue.purge_expired() for family, queue in runtime.queues.items()}


def run_maintenance(runtime) -> dict:
    stalled = recover_stalled_jobs(runtime)
    requeued = reconcile_orphaned_jobs(runtime)
    purged = purge_finished_entries(runtime)
    return {
        "stalled": [entry.job_id for entry in stalled],
        "requeued": requeued,
        "purged": purged,
    }
