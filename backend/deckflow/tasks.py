from __future__ import annotations

from dataclasses import dataclass
from time import perf_counter
from typing import Any, Callable
from uuid import NAMESPACE_URL, uuid5

from pydantic import BaseModel
from sqlalchemy import select

from deckflow.errors import PipelineContentError
from deckflow.models import ExtractedDocument, Job
from deckflow.pipelines.base import PipelineProgress
from deckflow.runtime import Runtime
from deckflow.schemas import ExportRequest, ExtractionRequest, GenerationRequest
from deckflow.services.deck_store import deck_id_for_job
from deckflow.services.doc_extractor import extract_content
from deckflow.services.job_queue import QueueEntry
from deckflow.services.job_store import job_result
from deckflow.services.job_trace import job_log, preview_text
from deckflow.services.orchestrator import spawn_dependent_jobs
from deckflow.services.progress import COMPLETED_PCT, ProgressDebouncer, progress_for
from deckflow.services.render_client import CONTENT_TYPES
from deckflow.storage import export_key


@dataclass
class JobContext:
    runtime: Runtime
    job: Job
    entry: QueueEntry

    @property
    def attempt(self) -> int:
        return self.entry.attempts_made

    def emit(self, event_type: str, **payload: Any) -> int:
        return self.runtime.events.emit(self.job.id, event_type, **payload)


def _deck_view_url(runtime: Runtime, deck_id: str) -> str:
    return f"{runtime.settings.public_base_url.rstrip('/')}/decks/{deck_id}"


def _event_type_for(progress: PipelineProgress) -> str:
    if progress.outline is not None:
        return "outline_ready"
    if progress.slide is not None:
        return "slide_ready"
    if progress.delta is not None:
        return "block_delta"
    if progress.stage in {"validation", "repair"}:
        return "validation_result"
    if progress.stage == "images":
        return "image_progress"
    return "stage_progress"


def _progress_pct(progress: PipelineProgress) -> int:
    if progress.stage == "images":
        return progress_for("images", progress.image_index, progress.total_images)
    return progress_for(progress.stage, progress.slide_index, progress.total_slides)


def _outline_preview(outline: dict | None, max_rows: int = 6) -> list[dict]:
    rows = []
    if not isinstance(outline, dict):
        return rows
    for row in (outline.get("slides") or [])[:max_rows]:
        if not isinstance(row, dict):
            continue
        rows.append({"title": preview_text(str(row.get("title") or ""), 80), "type": row.get("type")})
    return rows


def run_generation_job(ctx: JobContext, request: GenerationRequest) -> dict[str, Any]:
    runtime, job = ctx.runtime, ctx.job
    started = perf_counter()
    job_log(
        job.id,
        "generation_job_start",
        attempt=ctx.attempt,
        num_slides=request.num_slides,
        language=request.language,
        image_mode=request.image_mode,
        export_as=request.export_as,
        input_preview=preview_text(request.input_text),
    )

    # Clients subscribe right after submission; give them a moment before the first event.
    if runtime.settings.event_grace_seconds > 0:
        runtime.sleep(runtime.settings.event_grace_seconds)
    ctx.emit("started", progress=0, attempt=ctx.attempt, requested_slides=request.num_slides)

    deck_id, created = runtime.decks.ensure_deck(
        deck_id=deck_id_for_job(job.id),
        tenant_id=job.tenant_id,
        job_id=job.id,
        language=request.language,
        theme_id=request.theme_id,
    )
    view_url = _deck_view_url(runtime, deck_id)
    runtime.jobs.merge_result_refs(job.id, {"deck_id": deck_id, "view_url": view_url})
    ctx.emit("resource_created", deck_id=deck_id, view_url=view_url, created=created)
    job_log(job.id, "deck_ready", deck_id=deck_id, created=created)

    debouncer = ProgressDebouncer(
        lambda pct: runtime.jobs.update_progress(job.id, pct),
        window=runtime.settings.progress_debounce_seconds,
    )
    counters = {"slides": 0, "deltas": 0}

    def on_progress(progress: PipelineProgress) -> None:
        pct = _progress_pct(progress)
        debouncer.update(pct)

        if progress.outline is not None:
            runtime.decks.set_outline(deck_id, progress.outline)
            job_log(job.id, "outline_ready", slides=_outline_preview(progress.outline))
        if progress.slide is not None:
            position = progress.slide_index if progress.slide_index is not None else counters["slides"]
            runtime.decks.upsert_slide(deck_id=deck_id, job_id=job.id, position=position, slide=progress.slide)
            counters["slides"] += 1
            job_log(job.id, "slide_saved", position=position, type=progress.slide.get("type"))
        if progress.delta is not None:
            counters["deltas"] += 1

        ctx.emit(
            _event_type_for(progress),
            stage=progress.stage,
            progress=pct,
            message=progress.message or None,
            deck_id=deck_id,
            slide_index=progress.slide_index,
            total_slides=progress.total_slides,
            outline=progress.outline,
            slide=progress.slide,
            block_index=progress.block_index,
            block_kind=progress.block_kind,
            delta=progress.delta,
            image_index=progress.image_index,
            total_images=progress.total_images,
            image_url=progress.image_url,
            validation=progress.validation,
        )

    try:
        result = runtime.pipeline.generate(request, on_progress)
    finally:
        # The final result write below sets 100; a failed attempt keeps whatever was last stored.
        debouncer.close(flush=False)

    deck = result.deck
    slide_count = runtime.decks.finalize(
        deck_id=deck_id,
        job_id=job.id,
        title=deck.title,
        theme_id=deck.theme_id or request.theme_id,
        brand_kit=deck.brand_kit,
        slides=deck.slides,
        outline=result.outline,
    )
    refs = {"deck_id": deck_id, "view_url": view_url, "slide_count": slide_count}
    completed = runtime.jobs.set_result(job.id, refs)

    export_job_ids = ensure_generation_dependents(runtime, completed, request=request)
    ctx.emit(
        "completed",
        progress=COMPLETED_PCT,
        deck_id=deck_id,
        view_url=view_url,
        slide_count=slide_count,
        export_job_ids=export_job_ids or None,
    )
    job_log(
        job.id,
        "generation_job_complete",
        deck_id=deck_id,
        slide_count=slide_count,
        streamed_slides=counters["slides"],
        deltas=counters["deltas"],
        export_job_ids=export_job_ids,
        elapsed_ms=round((perf_counter() - started) * 1000),
    )
    return refs


def ensure_generation_dependents(
    runtime: Runtime,
    job: Job,
    *,
    request: GenerationRequest | None = None,
) -> dict[str, str]:
    """Create (or find) the export jobs a completed generation job asked for."""
    request = request or GenerationRequest.model_validate_json(job.payload_json)
    if not request.export_as:
        return {}
    refs = job_result(job) or {}
    deck_id = refs.get("deck_id") or deck_id_for_job(job.id)
    children = spawn_dependent_jobs(
        runtime,
        job,
        deck_id=deck_id,
        formats=list(request.export_as),
        theme_id=request.theme_id,
    )
    export_job_ids = {fmt: child.id for fmt, child in zip(request.export_as, children)}
    runtime.jobs.merge_result_refs(job.id, {"export_job_ids": export_job_ids})
    return export_job_ids


def run_export_job(ctx: JobContext, request: ExportRequest) -> dict[str, Any]:
    runtime, job = ctx.runtime, ctx.job
    started = perf_counter()
    job_log(
        job.id,
        "export_job_start",
        attempt=ctx.attempt,
        deck_id=request.deck_id,
        format=request.format,
        generation_job_id=request.generation_job_id,
    )
    ctx.emit("started", progress=0, attempt=ctx.attempt, format=request.format, deck_id=request.deck_id)

    upstream = None
    if request.generation_job_id:
        # Only a generation job of the same tenant may receive the export back-reference.
        upstream = runtime.jobs.get(request.generation_job_id, job.tenant_id)

    deck = runtime.decks.get_deck(request.deck_id, tenant_id=job.tenant_id)
    runtime.jobs.update_progress(job.id, 10)

    brand_kit = request.brand_kit.model_dump(exclude_none=True) if request.brand_kit else None
    data = runtime.renderer.render(
        deck,
        request.format,
        theme_id=request.theme_id or deck.get("theme_id"),
        brand_kit=brand_kit or deck.get("brand_kit"),
    )
    job_log(job.id, "export_rendered", bytes=len(data), format=request.format)
    runtime.jobs.update_progress(job.id, 70)

    key = runtime.storage.put(export_key(request.deck_id, request.format), data, CONTENT_TYPES[request.format])
    runtime.jobs.update_progress(job.id, 90)
    file_url, expires_at = runtime.storage.signed_url(key, runtime.settings.export_url_ttl_seconds)

    refs = {
        "deck_id": request.deck_id,
        "format": request.format,
        "file_url": file_url,
        "storage_key": key,
        "expires_at": expires_at.isoformat(),
    }
    runtime.jobs.set_result(job.id, refs)
    if upstream is not None:
        runtime.jobs.merge_result_refs(
            upstream.id,
            {"exports": {request.format: {"file_url": file_url, "expires_at": refs["expires_at"]}}},
        )
    ctx.emit("completed", progress=COMPLETED_PCT, **refs)
    job_log(
        job.id,
        "export_job_complete",
        format=request.format,
        storage_key=key,
        elapsed_ms=round((perf_counter() - started) * 1000),
    )
    return refs


def _save_extracted_document(
    runtime: Runtime,
    *,
    job: Job,
    request: ExtractionRequest,
    text: str,
    char_count: int,
    truncated: bool,
) -> str:
    document_id = str(uuid5(NAMESPACE_URL, f"deckflow:extraction:{job.id}"))
    db = runtime.session_factory()
    try:
        row = db.scalar(select(ExtractedDocument).where(ExtractedDocument.job_id == job.id))
        if row is None:
            row = ExtractedDocument(id=document_id, tenant_id=job.tenant_id, job_id=job.id)
        row.source_key = request.source_key
        row.mime_type = request.mime_type
        row.text = text
        row.char_count = char_count
        row.truncated = 1 if truncated else 0
        db.add(row)
        db.commit()
        return row.id
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def run_extraction_job(ctx: JobContext, request: ExtractionRequest) -> dict[str, Any]:
    runtime, job = ctx.runtime, ctx.job
    job_log(
        job.id,
        "extraction_job_start",
        attempt=ctx.attempt,
        source_key=request.source_key,
        mime_type=request.mime_type,
    )
    ctx.emit("started", progress=0, attempt=ctx.attempt, source_key=request.source_key)

    data = runtime.storage.get(request.source_key)
    runtime.jobs.update_progress(job.id, 20)
    try:
        extracted = extract_content(data, request.mime_type, max_chars=runtime.settings.extraction_max_chars)
    except Exception as exc:
        raise PipelineContentError(
            f"Could not extract text from {request.source_key}: {exc}",
            code="EXTRACTION_ERROR",
        ) from exc
    runtime.jobs.update_progress(job.id, 80)

    document_id = _save_extracted_document(
        runtime,
        job=job,
        request=request,
        text=extracted.text,
        char_count=extracted.char_count,
        truncated=extracted.truncated,
    )
    refs = {"document_id": document_id, "char_count": extracted.char_count, "truncated": extracted.truncated}
    runtime.jobs.set_result(job.id, refs)
    ctx.emit("completed", progress=COMPLETED_PCT, **refs)
    job_log(job.id, "extraction_job_complete", preview=preview_text(extracted.text), **refs)
    return refs


@dataclass(frozen=True)
class JobHandler:
    schema: type[BaseModel]
    run: Callable[[JobContext, Any], dict[str, Any]]
    # Called when a re-delivered entry finds its job already completed.
    on_redelivered_complete: Callable[[Runtime, Job], Any] | None = None


JOB_HANDLERS: dict[str, JobHandler] = {
    "generation": JobHandler(GenerationRequest, run_generation_job, ensure_generation_dependents),
    "export": JobHandler(ExportRequest, run_export_job),
    "extraction": JobHandler(ExtractionRequest, run_extraction_job),
}
