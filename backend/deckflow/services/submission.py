from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from deckflow.errors import JobNotFound, JobValidationError, classify_error
from deckflow.models import Job
from deckflow.schemas import PAYLOAD_SCHEMAS
from deckflow.services.job_store import job_payload
from deckflow.services.orchestrator import priority_for, queue_payload


logger = logging.getLogger("deckflow.jobs")


def _check_references(runtime, job: Job, request) -> None:
    generation_job_id = getattr(request, "generation_job_id", None)
    if not generation_job_id:
        return
    try:
        upstream = runtime.jobs.get(generation_job_id, job.tenant_id)
    except JobNotFound as exc:
        raise JobValidationError(f"generation_job_id: job {generation_job_id} not found") from exc
    if upstream.family != "generation":
        raise JobValidationError(f"generation_job_id: job {generation_job_id} is not a generation job")


def submit_job(
    runtime,
    *,
    family: str,
    tenant_id: str,
    payload: dict[str, Any],
    idempotency_key: str | None = None,
) -> Job:
    schema = PAYLOAD_SCHEMAS.get(family)
    if schema is None:
        raise ValueError(f"Unknown job family: {family}")

    job, created = runtime.jobs.create_or_get(
        family=family,
        tenant_id=tenant_id,
        payload=payload,
        idempotency_key=idempotency_key,
    )
    if not created:
        # A replayed key gets the job it already made, whatever the new body says.
        return job

    try:
        request = schema.model_validate(job_payload(job))
        _check_references(runtime, job, request)
    except (ValidationError, JobValidationError) as exc:
        # Never enqueued, so no queue attempt is ever recorded for it.
        err = classify_error(exc)
        logger.info("job=%s submission_rejected code=%s message=%s", job.id, err.code, err.message)
        return runtime.jobs.update_status(job.id, "failed", error_code=err.code, error_message=err.message)

    normalized = request.model_dump(mode="json")
    runtime.queue(family).enqueue(job.id, queue_payload(job, normalized), priority=priority_for(family, normalized))
    logger.info("job=%s submitted family=%s tenant=%s", job.id, family, tenant_id)
    return job
