from __future__ import annotations

from deckflow.pipelines.base import (
    BaseGenerationPipeline,
    DeckContent,
    PipelineProgress,
    PipelineResult,
    ProgressCallback,
)


DEFAULT_SLIDE_COUNT = 5


def _sentences(text: str) -> list[str]:
    rows = [part.strip() for part in text.replace("\n", " ").split(".")]
    return [row for row in rows if row]


class MockPipeline(BaseGenerationPipeline):
    """Deterministic stand-in for the AI pipeline, used locally and in tests."""

    name = "mock"

    def __init__(self, delta_chunk_size: int = 24):
        self.delta_chunk_size = max(1, delta_chunk_size)

    def generate(self, request, on_progress: ProgressCallback) -> PipelineResult:
        total = int(request.num_slides or DEFAULT_SLIDE_COUNT)
        sentences = _sentences(request.input_text) or [request.input_text.strip()]
        title = sentences[0][:80]

        outline = {
            "title": title,
            "slides": [
                {"index": idx, "title": f"{title} ({idx + 1}/{total})" if idx else title}
                for idx in range(total)
            ],
        }
        on_progress(PipelineProgress(stage="outline", message="Outline complete", total_slides=total, outline=outline))

        slides: list[dict] = []
        for idx in range(total):
            body = sentences[idx % len(sentences)]
            for start in range(0, len(body), self.delta_chunk_size):
                on_progress(
                    PipelineProgress(
                        stage="content",
                        message="Block started" if start == 0 else "Block delta",
                        slide_index=idx,
                        total_slides=total,
                        block_index=1,
                        block_kind="text",
                        delta=body[start : start + self.delta_chunk_size],
                    )
                )
            slide = {
                "type": "title" if idx == 0 else "content",
                "layout_variant": "default",
                "blocks": [
                    {"kind": "title", "text": outline["slides"][idx]["title"]},
                    {"kind": "text", "text": body},
                ],
            }
            slides.append(slide)
            on_progress(
                PipelineProgress(
                    stage="content",
                    message=f"Slide {idx + 1} complete",
                    slide_index=idx,
                    total_slides=total,
                    slide=slide,
                )
            )

        on_progress(
            PipelineProgress(
                stage="validation",
                message="Validation complete",
                total_slides=total,
                validation={"valid": True, "issues": []},
            )
        )

        final_slides = [dict(row, blocks=[dict(block) for block in row["blocks"]]) for row in slides]
        if request.image_mode == "ai":
            for idx, slide in enumerate(final_slides):
                url = f"mock://images/{idx}.png"
                slide["blocks"].append({"kind": "image", "url": url})
                on_progress(
                    PipelineProgress(
                        stage="images",
                        message=f"Image {idx + 1} complete",
                        image_index=idx,
                        total_images=total,
                        image_url=url,
                    )
                )

        deck = DeckContent(
            title=title,
            language=request.language,
            theme_id=request.theme_id,
            slides=final_slides,
        )
        return PipelineResult(deck=deck, outline=outline)
