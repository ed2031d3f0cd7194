import pytest

from deckflow.errors import InvalidTransition, JobNotFound
from deckflow.services.job_store import job_payload, job_result


def _create(runtime, **overrides):
    fields = {"family": "generation", "tenant_id": "tenant-a", "payload": {"input_text": "hello"}}
    fields.update(overrides)
    return runtime.jobs.create(**fields)


def test_create_starts_queued_at_zero(runtime):
    job = _create(runtime)

    assert job.status == "queued"
    assert job.progress_pct == 0
    assert job.started_at is None
    assert job_payload(job) == {"input_text": "hello"}
    assert job_result(job) is None


def test_idempotency_key_returns_existing_job_per_tenant(runtime):
    first = _create(runtime, idempotency_key="abc")
    again = _create(runtime, idempotency_key="abc", payload={"input_text": "different"})
    other_tenant = _create(runtime, idempotency_key="abc", tenant_id="tenant-b")

    assert again.id == first.id
    assert job_payload(again) == {"input_text": "hello"}
    assert other_tenant.id != first.id


def test_create_or_get_reports_whether_row_was_inserted(runtime):
    fields = {"family": "generation", "tenant_id": "tenant-a", "payload": {"input_text": "hello"}}

    first, created = runtime.jobs.create_or_get(idempotency_key="abc", **fields)
    again, created_again = runtime.jobs.create_or_get(idempotency_key="abc", **fields)

    assert created is True
    assert created_again is False
    assert again.id == first.id


def test_get_is_tenant_scoped(runtime):
    job = _create(runtime)

    assert runtime.jobs.get(job.id, "tenant-a").id == job.id
    with pytest.raises(JobNotFound):
        runtime.jobs.get(job.id, "tenant-b")
    with pytest.raises(JobNotFound):
        runtime.jobs.get("missing", "tenant-a")


def test_status_moves_forward_only(runtime):
    job = _create(runtime)

    running = runtime.jobs.update_status(job.id, "running")
    assert running.started_at is not None
    completed = runtime.jobs.set_result(job.id, {"deck_id": "d1"})
    assert completed.status == "completed"
    assert completed.progress_pct == 100
    assert completed.completed_at is not None

    with pytest.raises(InvalidTransition):
        runtime.jobs.update_status(job.id, "running")
    with pytest.raises(InvalidTransition):
        runtime.jobs.update_status(job.id, "failed")
    assert runtime.jobs.get_unscoped(job.id).status == "completed"


def test_failed_job_cannot_complete(runtime):
    job = _create(runtime)
    runtime.jobs.update_status(job.id, "failed", error_code="INVALID_REQUEST", error_message="bad")

    with pytest.raises(InvalidTransition):
        runtime.jobs.set_result(job.id, {"deck_id": "d1"})
    stored = runtime.jobs.get_unscoped(job.id)
    assert stored.status == "failed"
    assert stored.error_code == "INVALID_REQUEST"


def test_started_at_is_set_once(runtime):
    job = _create(runtime)
    first = runtime.jobs.update_status(job.id, "running")
    second = runtime.jobs.update_status(job.id, "running", error_code="INFRA_ERROR", error_message="retrying")

    assert second.started_at == first.started_at
    assert second.error_code == "INFRA_ERROR"


def test_progress_only_increases_while_running(runtime):
    job = _create(runtime)
    assert runtime.jobs.update_progress(job.id, 40).progress_pct == 0

    runtime.jobs.update_status(job.id, "running")
    assert runtime.jobs.update_progress(job.id, 40).progress_pct == 40
    assert runtime.jobs.update_progress(job.id, 30).progress_pct == 40
    assert runtime.jobs.update_progress(job.id, 250).progress_pct == 100


def test_set_result_clears_error_from_earlier_attempt(runtime):
    job = _create(runtime)
    runtime.jobs.update_status(job.id, "running", error_code="INFRA_ERROR", error_message="timeout")

    completed = runtime.jobs.set_result(job.id, {"deck_id": "d1"})

    assert completed.error_code is None
    assert completed.error_message is None


def test_merge_result_refs_merges_nested_maps(runtime):
    job = _create(runtime)
    runtime.jobs.update_status(job.id, "running")
    runtime.jobs.set_result(job.id, {"deck_id": "d1", "exports": {"pdf": {"file_url": "a"}}})

    merged = runtime.jobs.merge_result_refs(job.id, {"exports": {"pptx": {"file_url": "b"}}})

    assert job_result(merged) == {
        "deck_id": "d1",
        "exports": {"pdf": {"file_url": "a"}, "pptx": {"file_url": "b"}},
    }


def test_list_for_tenant_and_children(runtime):
    parent = _create(runtime)
    child = _create(runtime, family="export", payload={"deck_id": "d1", "format": "pdf"}, parent_job_id=parent.id)
    _create(runtime, tenant_id="tenant-b")

    listed = runtime.jobs.list_for_tenant("tenant-a")
    assert {job.id for job in listed} == {parent.id, child.id}
    assert [job.id for job in runtime.jobs.list_children(parent.id)] == [child.id]
    assert [job.id for job in runtime.jobs.list_for_tenant("tenant-a", status="running")] == []


def test_unknown_status_is_rejected(runtime):
    job = _create(runtime)
    with pytest.raises(ValueError):
        runtime.jobs.update_status(job.id, "paused")
