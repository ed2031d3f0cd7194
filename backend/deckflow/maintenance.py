from __future__ import annotations

import logging

from celery.signals import worker_process_init, worker_process_shutdown

from deckflow.celery_app import celery_app
from deckflow.runtime import Runtime, build_runtime
from deckflow.services import maintenance
from deckflow.services.orchestrator import reconcile_orphaned_jobs as _reconcile


logger = logging.getLogger("deckflow.maintenance")

_runtime: Runtime | None = None


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


@worker_process_init.connect
def _open_runtime(**_kwargs) -> None:
    get_runtime()


@worker_process_shutdown.connect
def _close_runtime(**_kwargs) -> None:
    global _runtime
    if _runtime is not None:
        _runtime.close()
        _runtime = None


@celery_app.task(name="deckflow.maintenance.recover_stalled_jobs")
def recover_stalled_jobs() -> list[dict]:
    stalled = maintenance.recover_stalled_jobs(get_runtime())
    if stalled:
        logger.info("stalled_scan recovered=%s", len(stalled))
    return [
        {"job_id": entry.job_id, "queue": entry.queue, "attempts": entry.attempts_made, "terminal": entry.terminal}
        for entry in stalled
    ]


@celery_app.task(name="deckflow.maintenance.reconcile_orphaned_jobs")
def reconcile_orphaned_jobs() -> list[str]:
    return _reconcile(get_runtime())


@celery_app.task(name="deckflow.maintenance.purge_finished_entries")
def purge_finished_entries() -> dict[str, int]:
    return maintenance.purge_finished_entries(get_runtime())
