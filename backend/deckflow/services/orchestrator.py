from __future__ import annotations

import logging
from typing import Any

from deckflow.models import Job
from deckflow.schemas import ExportRequest
from deckflow.services.job_store import job_payload


logger = logging.getLogger("deckflow.jobs")

# Lower runs first; PDF renders faster than PPTX.
EXPORT_PRIORITIES = {"pdf": 1, "pptx": 2}


def priority_for(family: str, payload: dict[str, Any]) -> int:
    if family == "export":
        return EXPORT_PRIORITIES.get(str(payload.get("format")), 5)
    return 0


def queue_payload(job: Job, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "tenant_id": job.tenant_id,
        "family": job.family,
        "parent_job_id": job.parent_job_id,
        "request": payload if payload is not None else job_payload(job),
    }


def spawn_dependent_jobs(
    runtime,
    upstream: Job,
    *,
    deck_id: str,
    formats: list[str],
    theme_id: str | None = None,
    brand_kit: dict[str, Any] | None = None,
) -> list[Job]:
    """Create each export job durably, then enqueue it.

    A crash between the two steps leaves a queued job without a queue entry;
    ``reconcile_orphaned_jobs`` picks those up. Idempotency keys make a re-run
    of the upstream job reuse the export jobs it already created.
    """
    spawned: list[Job] = []
    for fmt in formats:
        payload = ExportRequest(
            deck_id=deck_id,
            format=fmt,
            theme_id=theme_id,
            brand_kit=brand_kit,
            generation_job_id=upstream.id,
        ).model_dump(mode="json")
        child = runtime.jobs.create(
            family="export",
            tenant_id=upstream.tenant_id,
            payload=payload,
            idempotency_key=f"export:{upstream.id}:{fmt}",
            parent_job_id=upstream.id,
        )
        if child.status == "queued":
            runtime.queue("export").enqueue(child.id, queue_payload(child, payload), priority=priority_for("export", payload))
        logger.info("job=%s export_job_spawned export_job=%s format=%s status=%s", upstream.id, child.id, fmt, child.status)
        spawned.append(child)
    return spawned


def reconcile_orphaned_jobs(runtime, *, older_than_seconds: float | None = None) -> list[str]:
    """Re-enqueue jobs stuck in ``queued`` with no queue entry."""
    threshold = runtime.settings.reconcile_min_age_seconds if older_than_seconds is None else older_than_seconds
    requeued: list[str] = []
    for job in runtime.jobs.list_stale_queued(older_than_seconds=threshold):
        queue = runtime.queues.get(job.family)
        if queue is None or queue.has_entry(job.id):
            continue
        payload = job_payload(job)
        queue.enqueue(job.id, queue_payload(job, payload), priority=priority_for(job.family, payload))
        requeued.append(job.id)
        logger.warning("job=%s reconciled_orphaned_job family=%s", job.id, job.family)
    return requeued
