"""
Error taxonomy for job execution.

Every failure a worker observes is reduced to one of four categories before it
is persisted on the job and handed back to the queue:

- validation: malformed payload, never retried
- pipeline: the collaborator could not produce valid output, retried up to the family limit
- transient: storage, queue or network trouble, retried with backoff
- not_found: referenced job or resource missing (or owned by another tenant), never retried
"""
from __future__ import annotations

from typing import Any

import redis
import requests
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from deckflow.pipelines.base import PipelineError


VALIDATION = "validation"
PIPELINE = "pipeline"
TRANSIENT = "transient"
NOT_FOUND = "not_found"

ERROR_CODES = {
    "INVALID_REQUEST": VALIDATION,
    "MODEL_ERROR": PIPELINE,
    "RENDER_ERROR_PDF": PIPELINE,
    "RENDER_ERROR_PPTX": PIPELINE,
    "EXTRACTION_ERROR": PIPELINE,
    "INFRA_ERROR": TRANSIENT,
    "UPLOAD_ERROR": TRANSIENT,
    "INTERNAL_ERROR": TRANSIENT,
    "NOT_FOUND": NOT_FOUND,
}


class DeckflowError(Exception):
    category = TRANSIENT
    default_code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    @property
    def retriable(self) -> bool:
        return self.category in {PIPELINE, TRANSIENT}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class JobValidationError(DeckflowError):
    category = VALIDATION
    default_code = "INVALID_REQUEST"
    http_status = 400


class PipelineContentError(DeckflowError):
    category = PIPELINE
    default_code = "MODEL_ERROR"


class TransientInfraError(DeckflowError):
    category = TRANSIENT
    default_code = "INFRA_ERROR"
    http_status = 503


class JobNotFound(DeckflowError):
    category = NOT_FOUND
    default_code = "NOT_FOUND"
    http_status = 404


class ResourceNotFound(JobNotFound):
    pass


class InvalidTransition(DeckflowError):
    """Raised when a status write would move a job backward."""

    category = VALIDATION
    default_code = "INVALID_REQUEST"
    http_status = 409

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(
            f"Job {job_id} cannot move from {current} to {requested}",
            details={"job_id": job_id, "current": current, "requested": requested},
        )


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for row in exc.errors()[:5]:
        location = ".".join(str(item) for item in row.get("loc", ()))
        parts.append(f"{location}: {row.get('msg')}" if location else str(row.get("msg")))
    return "; ".join(parts) or "Validation failed"


def classify_error(exc: BaseException) -> DeckflowError:
    if isinstance(exc, DeckflowError):
        return exc
    if isinstance(exc, ValidationError):
        return JobValidationError(_validation_message(exc))
    if isinstance(exc, PipelineError):
        return PipelineContentError(str(exc), details={"pipeline_code": exc.code})
    if isinstance(exc, (redis.RedisError, OperationalError, requests.RequestException)):
        return TransientInfraError(str(exc) or exc.__class__.__name__)
    if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
        return TransientInfraError(str(exc) or exc.__class__.__name__)
    return TransientInfraError(str(exc) or "An unexpected error occurred", code="INTERNAL_ERROR")
