from typing import Any

import requests

from deckflow.errors import PipelineContentError


CONTENT_TYPES = {
    "pdf": "application/pdf",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}


class RenderClient:
    def __init__(self, base_url: str, timeout: int = 180):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def render(
        self,
        deck: dict[str, Any],
        fmt: str,
        *,
        theme_id: str | None = None,
        brand_kit: dict[str, Any] | None = None,
    ) -> bytes:
        payload = {
            "deckId": deck["id"],
            "title": deck.get("title"),
            "language": deck.get("language"),
            "themeId": theme_id or deck.get("theme_id"),
            "brandKit": brand_kit or deck.get("brand_kit"),
            "slides": deck.get("slides", []),
        }
        response = requests.post(f"{self.base_url}/render/{fmt}", json=payload, timeout=self.timeout)
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise PipelineContentError(
                f"{fmt.upper()} render failed: {exc}",
                code=f"RENDER_ERROR_{fmt.upper()}",
            ) from exc
        return response.content
