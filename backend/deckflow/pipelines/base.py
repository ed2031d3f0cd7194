from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


PIPELINE_STAGES = ("outline", "content", "validation", "repair", "images")


class PipelineError(Exception):
    """The generation pipeline could not produce valid output."""

    def __init__(self, message: str, code: str = "CONTENT_FAILED"):
        super().__init__(message)
        self.code = code


@dataclass
class PipelineProgress:
    stage: str
    message: str = ""
    slide_index: int | None = None
    total_slides: int | None = None
    outline: dict[str, Any] | None = None
    slide: dict[str, Any] | None = None
    block_index: int | None = None
    block_kind: str | None = None
    delta: str | None = None
    total_images: int | None = None
    image_index: int | None = None
    image_url: str | None = None
    validation: dict[str, Any] | None = None


@dataclass
class DeckContent:
    title: str
    language: str = "no"
    theme_id: str | None = None
    brand_kit: dict[str, Any] | None = None
    slides: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class PipelineResult:
    deck: DeckContent
    outline: dict[str, Any] | None = None


ProgressCallback = Callable[[PipelineProgress], None]


class BaseGenerationPipeline:
    name = "base"

    def generate(self, request, on_progress: ProgressCallback) -> PipelineResult:
        raise NotImplementedError
