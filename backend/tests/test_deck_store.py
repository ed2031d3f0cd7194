import pytest

from deckflow.errors import ResourceNotFound
from deckflow.services.deck_store import PLACEHOLDER_TITLE, deck_id_for_job


def _slide(text, kind="content"):
    return {"type": kind, "layout_variant": "default", "blocks": [{"kind": "text", "text": text}]}


@pytest.fixture
def job(runtime):
    return runtime.jobs.create(family="generation", tenant_id="tenant-a", payload={"input_text": "x"})


def test_deck_id_is_stable_per_job():
    assert deck_id_for_job("job-1") == deck_id_for_job("job-1")
    assert deck_id_for_job("job-1") != deck_id_for_job("job-2")


def test_ensure_deck_is_get_or_create(runtime, job):
    deck_id = deck_id_for_job(job.id)

    assert runtime.decks.ensure_deck(deck_id=deck_id, tenant_id="tenant-a", job_id=job.id) == (deck_id, True)
    assert runtime.decks.ensure_deck(deck_id=deck_id, tenant_id="tenant-a", job_id=job.id) == (deck_id, False)
    assert runtime.decks.get_deck(deck_id)["title"] == PLACEHOLDER_TITLE


def test_upsert_slide_overwrites_same_position(runtime, job):
    deck_id, _ = runtime.decks.ensure_deck(deck_id=deck_id_for_job(job.id), tenant_id="tenant-a", job_id=job.id)

    runtime.decks.upsert_slide(deck_id=deck_id, job_id=job.id, position=0, slide=_slide("first"))
    runtime.decks.upsert_slide(deck_id=deck_id, job_id=job.id, position=0, slide=_slide("again"))

    slides = runtime.decks.get_deck(deck_id)["slides"]
    assert len(slides) == 1
    assert slides[0]["blocks"][0]["text"] == "again"


def test_finalize_rewrites_and_truncates(runtime, job):
    deck_id, _ = runtime.decks.ensure_deck(deck_id=deck_id_for_job(job.id), tenant_id="tenant-a", job_id=job.id)
    for position in range(4):
        runtime.decks.upsert_slide(deck_id=deck_id, job_id=job.id, position=position, slide=_slide(f"draft {position}"))

    count = runtime.decks.finalize(
        deck_id=deck_id,
        job_id=job.id,
        title="Final",
        theme_id="nordic",
        brand_kit={"primary_color": "#003366"},
        slides=[_slide("one", "title"), _slide("two")],
        outline={"title": "Final", "slides": []},
    )

    deck = runtime.decks.get_deck(deck_id, tenant_id="tenant-a")
    assert count == 2
    assert deck["title"] == "Final"
    assert deck["theme_id"] == "nordic"
    assert deck["brand_kit"] == {"primary_color": "#003366"}
    assert [(slide["position"], slide["type"]) for slide in deck["slides"]] == [(0, "title"), (1, "content")]


def test_set_outline_updates_title(runtime, job):
    deck_id, _ = runtime.decks.ensure_deck(deck_id=deck_id_for_job(job.id), tenant_id="tenant-a", job_id=job.id)

    runtime.decks.set_outline(deck_id, {"title": "Roadmap", "slides": [{"title": "Intro"}]})

    deck = runtime.decks.get_deck(deck_id)
    assert deck["title"] == "Roadmap"
    assert deck["outline"]["slides"] == [{"title": "Intro"}]


def test_get_deck_is_tenant_scoped(runtime, job):
    deck_id, _ = runtime.decks.ensure_deck(deck_id=deck_id_for_job(job.id), tenant_id="tenant-a", job_id=job.id)

    with pytest.raises(ResourceNotFound):
        runtime.decks.get_deck(deck_id, tenant_id="tenant-b")
