from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from deckflow.errors import InvalidTransition, JobNotFound
from deckflow.models import JOB_STATUSES, Job


logger = logging.getLogger("deckflow.jobs")

_ALLOWED_TRANSITIONS = {
    "queued": {"queued", "running", "failed"},
    "running": {"running", "completed", "failed"},
    "completed": {"completed"},
    "failed": {"failed"},
}


def _sanitize_text(value: str) -> str:
    # PostgreSQL text columns reject NUL bytes.
    return value.replace("\x00", "")


def decode_json(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
        return parsed if isinstance(parsed, dict) else {"value": parsed}
    except ValueError:
        return {}


def job_payload(job: Job) -> dict[str, Any]:
    return decode_json(job.payload_json)


def job_result(job: Job) -> dict[str, Any] | None:
    return decode_json(job.result_json) if job.result_json else None


class JobStore:
    """Durable job records. Every read from outside the worker is tenant scoped."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def create(
        self,
        *,
        family: str,
        tenant_id: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
        parent_job_id: str | None = None,
    ) -> Job:
        job, _created = self.create_or_get(
            family=family,
            tenant_id=tenant_id,
            payload=payload,
            idempotency_key=idempotency_key,
            parent_job_id=parent_job_id,
        )
        return job

    def create_or_get(
        self,
        *,
        family: str,
        tenant_id: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
        parent_job_id: str | None = None,
    ) -> tuple[Job, bool]:
        """Like create(), but also reports whether this call inserted the row."""
        if idempotency_key:
            existing = self.find_by_idempotency_key(idempotency_key, tenant_id)
            if existing is not None:
                logger.info("job=%s idempotent_create_hit key=%s", existing.id, idempotency_key)
                return existing, False

        now = datetime.utcnow()
        job = Job(
            id=str(uuid4()),
            family=family,
            tenant_id=tenant_id,
            status="queued",
            progress_pct=0,
            payload_json=_sanitize_text(json.dumps(payload, ensure_ascii=False, default=str)),
            idempotency_key=idempotency_key,
            parent_job_id=parent_job_id,
            created_at=now,
            updated_at=now,
        )
        db = self.session_factory()
        try:
            db.add(job)
            db.commit()
        except IntegrityError:
            db.rollback()
            if not idempotency_key:
                raise
            # Lost a race against a concurrent create with the same key.
            winner = self.find_by_idempotency_key(idempotency_key, tenant_id)
            if winner is None:
                raise
            return winner, False
        finally:
            db.close()
        return job, True

    def find_by_idempotency_key(self, idempotency_key: str, tenant_id: str) -> Job | None:
        db = self.session_factory()
        try:
            return db.scalar(
                select(Job).where(Job.idempotency_key == idempotency_key, Job.tenant_id == tenant_id)
            )
        finally:
            db.close()

    def get(self, job_id: str, tenant_id: str) -> Job:
        db = self.session_factory()
        try:
            job = db.scalar(select(Job).where(Job.id == job_id, Job.tenant_id == tenant_id))
        finally:
            db.close()
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def get_unscoped(self, job_id: str) -> Job:
        db = self.session_factory()
        try:
            job = db.get(Job, job_id)
        finally:
            db.close()
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def _mutate(self, job_id: str, mutate) -> Job:
        db = self.session_factory()
        try:
            job = db.scalar(select(Job).where(Job.id == job_id).with_for_update())
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            mutate(job)
            job.updated_at = datetime.utcnow()
            db.add(job)
            db.commit()
            return job
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def update_status(
        self,
        job_id: str,
        status: str,
        *,
        progress: int | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> Job:
        if status not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {status}")

        def mutate(job: Job) -> None:
            if status not in _ALLOWED_TRANSITIONS[job.status]:
                raise InvalidTransition(job.id, job.status, status)
            job.status = status
            if progress is not None:
                job.progress_pct = max(0, min(100, int(progress)))
            if status == "running" and job.started_at is None:
                job.started_at = datetime.utcnow()
            if status in {"completed", "failed"} and job.completed_at is None:
                job.completed_at = datetime.utcnow()
            if error_code is not None:
                job.error_code = error_code
            if error_message is not None:
                job.error_message = _sanitize_text(error_message)

        return self._mutate(job_id, mutate)

    def update_progress(self, job_id: str, progress: int) -> Job:
        value = max(0, min(100, int(progress)))

        def mutate(job: Job) -> None:
            if job.status == "running" and value > job.progress_pct:
                job.progress_pct = value

        return self._mutate(job_id, mutate)

    def set_result(self, job_id: str, result_refs: dict[str, Any]) -> Job:
        def mutate(job: Job) -> None:
            if "completed" not in _ALLOWED_TRANSITIONS[job.status]:
                raise InvalidTransition(job.id, job.status, "completed")
            merged = job_result(job) or {}
            merged.update(result_refs)
            job.result_json = json.dumps(merged, ensure_ascii=False, default=str)
            job.status = "completed"
            job.progress_pct = 100
            job.error_code = None
            job.error_message = None
            if job.completed_at is None:
                job.completed_at = datetime.utcnow()

        return self._mutate(job_id, mutate)

    def merge_result_refs(self, job_id: str, result_refs: dict[str, Any]) -> Job:
        def mutate(job: Job) -> None:
            merged = job_result(job) or {}
            for key, value in result_refs.items():
                if isinstance(value, dict) and isinstance(merged.get(key), dict):
                    merged[key] = {**merged[key], **value}
                else:
                    merged[key] = value
            job.result_json = json.dumps(merged, ensure_ascii=False, default=str)

        return self._mutate(job_id, mutate)

    def list_for_tenant(
        self,
        tenant_id: str,
        *,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Job]:
        db = self.session_factory()
        try:
            query = select(Job).where(Job.tenant_id == tenant_id)
            if status:
                query = query.where(Job.status == status)
            query = query.order_by(Job.created_at.desc()).limit(max(1, min(limit, 100))).offset(max(0, offset))
            return list(db.scalars(query).all())
        finally:
            db.close()

    def list_children(self, parent_job_id: str) -> list[Job]:
        db = self.session_factory()
        try:
            return list(
                db.scalars(
                    select(Job).where(Job.parent_job_id == parent_job_id).order_by(Job.created_at.asc())
                ).all()
            )
        finally:
            db.close()

    def list_stale_queued(self, *, older_than_seconds: float, limit: int = 200) -> list[Job]:
        cutoff = datetime.utcnow() - timedelta(seconds=older_than_seconds)
        db = self.session_factory()
        try:
            return list(
                db.scalars(
                    select(Job)
                    .where(Job.status == "queued", Job.created_at <= cutoff)
                    .order_by(Job.created_at.asc())
                    .limit(limit)
                ).all()
            )
        finally:
            db.close()
