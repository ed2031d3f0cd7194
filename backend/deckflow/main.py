from __future__ import annotations

from typing import Any

from fastapi import Body, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from deckflow.config import settings
from deckflow.errors import DeckflowError
from deckflow.models import Job
from deckflow.runtime import Runtime, build_runtime
from deckflow.schemas import JobErrorOut, JobOut, SubmitOut
from deckflow.services.event_bus import format_sse, terminal_event
from deckflow.services.job_store import job_result
from deckflow.services.submission import submit_job


def _job_out(job: Job) -> JobOut:
    error = None
    if job.error_code:
        error = JobErrorOut(code=job.error_code, message=job.error_message or "")
    return JobOut(
        id=job.id,
        family=job.family,
        status=job.status,
        progress=job.progress_pct,
        result_refs=job_result(job),
        error=error,
        parent_job_id=job.parent_job_id,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def tenant_header(x_tenant_id: str = Header(..., min_length=1)) -> str:
    return x_tenant_id


def _submit(runtime: Runtime, family: str, tenant_id: str, payload: dict[str, Any], idempotency_key: str | None):
    job = submit_job(runtime, family=family, tenant_id=tenant_id, payload=payload, idempotency_key=idempotency_key)
    if job.status == "failed" and job.error_code == "INVALID_REQUEST":
        body = {"error": {"code": job.error_code, "message": job.error_message or "", "details": {"job_id": job.id}}}
        return JSONResponse(status_code=400, content=body)
    return JSONResponse(status_code=202, content=SubmitOut(job_id=job.id, status=job.status).model_dump())


def create_app(runtime: Runtime | None = None) -> FastAPI:
    app = FastAPI(title=settings.app_name)
    app.state.runtime = runtime
    prefix = settings.api_prefix

    @app.on_event("startup")
    def on_startup():
        if app.state.runtime is None:
            app.state.runtime = build_runtime()

    @app.on_event("shutdown")
    def on_shutdown():
        if runtime is None and app.state.runtime is not None:
            app.state.runtime.close()
            app.state.runtime = None

    @app.exception_handler(DeckflowError)
    async def deckflow_error_handler(_request: Request, exc: DeckflowError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.post(f"{prefix}/generations", response_model=SubmitOut, status_code=202)
    def submit_generation(
        payload: dict[str, Any] = Body(...),
        tenant_id: str = Depends(tenant_header),
        idempotency_key: str | None = Header(default=None),
        rt: Runtime = Depends(get_runtime),
    ):
        return _submit(rt, "generation", tenant_id, payload, idempotency_key)

    @app.post(f"{prefix}/exports", response_model=SubmitOut, status_code=202)
    def submit_export(
        payload: dict[str, Any] = Body(...),
        tenant_id: str = Depends(tenant_header),
        idempotency_key: str | None = Header(default=None),
        rt: Runtime = Depends(get_runtime),
    ):
        return _submit(rt, "export", tenant_id, payload, idempotency_key)

    @app.post(f"{prefix}/extractions", response_model=SubmitOut, status_code=202)
    def submit_extraction(
        payload: dict[str, Any] = Body(...),
        tenant_id: str = Depends(tenant_header),
        idempotency_key: str | None = Header(default=None),
        rt: Runtime = Depends(get_runtime),
    ):
        return _submit(rt, "extraction", tenant_id, payload, idempotency_key)

    @app.get(f"{prefix}/jobs", response_model=list[JobOut])
    def list_jobs(
        status: str | None = Query(default=None),
        limit: int = Query(default=20, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
        tenant_id: str = Depends(tenant_header),
        rt: Runtime = Depends(get_runtime),
    ):
        return [_job_out(job) for job in rt.jobs.list_for_tenant(tenant_id, status=status, limit=limit, offset=offset)]

    @app.get(f"{prefix}/jobs/{{job_id}}", response_model=JobOut)
    def get_job(job_id: str, tenant_id: str = Depends(tenant_header), rt: Runtime = Depends(get_runtime)):
        return _job_out(rt.jobs.get(job_id, tenant_id))

    @app.get(f"{prefix}/jobs/{{job_id}}/events")
    def stream_job_events(job_id: str, tenant_id: str = Depends(tenant_header), rt: Runtime = Depends(get_runtime)):
        job = rt.jobs.get(job_id, tenant_id)
        headers = {"Cache-Control": "no-cache, no-transform"}
        if job.is_terminal:
            return StreamingResponse(iter([format_sse(terminal_event(job))]), media_type="text/event-stream", headers=headers)

        def stream():
            # Subscribed on first iteration; a request dropped before streaming opens nothing.
            with rt.events.subscribe(job_id) as subscription:
                # A job that settled between the status read and the subscribe never publishes again.
                latest = rt.jobs.get_unscoped(job_id)
                if latest.is_terminal:
                    yield format_sse(terminal_event(latest))
                    return
                for event in subscription:
                    yield format_sse(event)

        return StreamingResponse(stream(), media_type="text/event-stream", headers=headers)

    return app


app = create_app()
