from deckflow.pipelines.base import BaseGenerationPipeline
from deckflow.pipelines.mock_pipeline import MockPipeline


def get_pipeline(name: str | None = None) -> BaseGenerationPipeline:
    candidate = (name or "mock").lower()

    # Only the deterministic pipeline ships in this repository; real pipelines plug in here.
    if candidate != "mock":
        raise ValueError(f"Unknown generation pipeline: {name}")
    return MockPipeline()
