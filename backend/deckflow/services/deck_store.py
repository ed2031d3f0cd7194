from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from uuid import NAMESPACE_URL, uuid5

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from deckflow.errors import ResourceNotFound
from deckflow.models import Deck, Slide
from deckflow.services.job_store import decode_json


PLACEHOLDER_TITLE = "Generating presentation..."


def deck_id_for_job(job_id: str) -> str:
    # Stable across re-deliveries so a retried job keeps writing into the same deck.
    return str(uuid5(NAMESPACE_URL, f"deckflow:deck:{job_id}"))


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def serialize_slide(row: Slide) -> dict[str, Any]:
    content = decode_json(row.content_json)
    return {
        "position": row.position,
        "type": row.slide_type,
        "layout_variant": row.layout_variant,
        "blocks": content.get("blocks", []),
    }


def serialize_deck(deck: Deck) -> dict[str, Any]:
    return {
        "id": deck.id,
        "tenant_id": deck.tenant_id,
        "job_id": deck.job_id,
        "title": deck.title,
        "language": deck.language,
        "theme_id": deck.theme_id,
        "brand_kit": decode_json(deck.brand_kit_json) or None,
        "outline": decode_json(deck.outline_json) or None,
        "slides": [serialize_slide(row) for row in sorted(deck.slides, key=lambda item: item.position)],
    }


class DeckStore:
    """The deck being built by a generation job. Each write is its own short transaction."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def ensure_deck(
        self,
        *,
        deck_id: str,
        tenant_id: str,
        job_id: str,
        language: str = "no",
        theme_id: str | None = None,
        title: str = PLACEHOLDER_TITLE,
    ) -> tuple[str, bool]:
        """Get-or-create; returns (deck_id, created)."""
        db = self.session_factory()
        try:
            if db.get(Deck, deck_id) is not None:
                return deck_id, False
            now = datetime.utcnow()
            db.add(
                Deck(
                    id=deck_id,
                    tenant_id=tenant_id,
                    job_id=job_id,
                    title=title,
                    language=language,
                    theme_id=theme_id,
                    created_at=now,
                    updated_at=now,
                )
            )
            db.commit()
            return deck_id, True
        except IntegrityError:
            db.rollback()
            return deck_id, False
        finally:
            db.close()

    def _load(self, db: Session, deck_id: str) -> Deck:
        deck = db.get(Deck, deck_id)
        if deck is None:
            raise ResourceNotFound(f"Deck {deck_id} not found")
        return deck

    def set_outline(self, deck_id: str, outline: dict[str, Any]) -> None:
        db = self.session_factory()
        try:
            deck = self._load(db, deck_id)
            deck.outline_json = _dump(outline)
            if outline.get("title"):
                deck.title = str(outline["title"])
            deck.updated_at = datetime.utcnow()
            db.add(deck)
            db.commit()
        finally:
            db.close()

    def upsert_slide(self, *, deck_id: str, job_id: str, position: int, slide: dict[str, Any]) -> None:
        db = self.session_factory()
        try:
            self._write_slide(db, deck_id=deck_id, job_id=job_id, position=position, slide=slide)
            db.commit()
        except IntegrityError:
            # A concurrent duplicate execution inserted the same unit first; overwrite it.
            db.rollback()
            self._write_slide(db, deck_id=deck_id, job_id=job_id, position=position, slide=slide)
            db.commit()
        finally:
            db.close()

    def _write_slide(self, db: Session, *, deck_id: str, job_id: str, position: int, slide: dict[str, Any]) -> None:
        row = db.scalar(select(Slide).where(Slide.job_id == job_id, Slide.position == position))
        if row is None:
            row = Slide(deck_id=deck_id, job_id=job_id, position=position)
        row.slide_type = str(slide.get("type") or "content")
        row.layout_variant = str(slide.get("layout_variant") or "default")
        row.content_json = _dump({"blocks": list(slide.get("blocks") or [])})
        row.updated_at = datetime.utcnow()
        db.add(row)

    def finalize(
        self,
        *,
        deck_id: str,
        job_id: str,
        title: str,
        theme_id: str | None,
        brand_kit: dict[str, Any] | None,
        slides: list[dict[str, Any]],
        outline: dict[str, Any] | None = None,
    ) -> int:
        """Reconcile the finished pipeline output into the incrementally written slides."""
        db = self.session_factory()
        try:
            deck = self._load(db, deck_id)
            deck.title = title or deck.title
            if theme_id:
                deck.theme_id = theme_id
            if brand_kit:
                deck.brand_kit_json = _dump(brand_kit)
            if outline and not deck.outline_json:
                deck.outline_json = _dump(outline)
            deck.updated_at = datetime.utcnow()
            db.add(deck)
            for position, slide in enumerate(slides):
                self._write_slide(db, deck_id=deck_id, job_id=job_id, position=position, slide=slide)
            db.execute(delete(Slide).where(Slide.job_id == job_id, Slide.position >= len(slides)))
            db.commit()
            return len(slides)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_deck(self, deck_id: str, tenant_id: str | None = None) -> dict[str, Any]:
        db = self.session_factory()
        try:
            query = select(Deck).where(Deck.id == deck_id).options(selectinload(Deck.slides))
            if tenant_id is not None:
                query = query.where(Deck.tenant_id == tenant_id)
            deck = db.scalar(query)
            if deck is None:
                raise ResourceNotFound(f"Deck {deck_id} not found")
            return serialize_deck(deck)
        finally:
            db.close()
