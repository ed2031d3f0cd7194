from __future__ import annotations

import json
import logging

from deckflow.config import settings


logger = logging.getLogger("deckflow.jobs")

_ALWAYS_LOGGED = {
    "generation_job_start",
    "export_job_start",
    "extraction_job_start",
    "job_failed",
}


def preview_text(text: str | None, limit: int | None = None) -> str:
    raw = str(text or "").replace("\r", " ").replace("\n", " ").strip()
    if not raw:
        return ""
    cap = int(limit or settings.log_preview_chars)
    if len(raw) <= cap:
        return raw
    return raw[:cap].rstrip() + " ..."


def job_log(job_id: str, message: str, **fields) -> None:
    """Emit one ``job=<id> <message> | key=<json> ...`` line per job milestone."""
    warning = "warning" in str(message).lower()
    if not settings.verbose_job_trace and not warning and message not in _ALWAYS_LOGGED:
        return
    level = logging.WARNING if warning else logging.INFO
    try:
        details = " ".join(
            f"{key}={json.dumps(value, ensure_ascii=False, default=str)}"
            for key, value in fields.items()
            if value is not None
        )
    except (TypeError, ValueError):
        details = "log_error=true"
    if details:
        logger.log(level, "job=%s %s | %s", job_id, message, details)
    else:
        logger.log(level, "job=%s %s", job_id, message)
