from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from typing import Any

import redis
from pydantic import ValidationError

from deckflow.models import Job
from deckflow.schemas import ProgressEvent
from deckflow.services.job_store import job_result


logger = logging.getLogger("deckflow.events")

EVENT_TYPES = (
    "started",
    "resource_created",
    "outline_ready",
    "slide_ready",
    "block_delta",
    "validation_result",
    "image_progress",
    "stage_progress",
    "attempt_failed",
    "completed",
    "failed",
)
TERMINAL_EVENTS = frozenset({"completed", "failed"})


def make_event(job_id: str, event_type: str, payload: dict[str, Any] | None = None) -> ProgressEvent:
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")
    clean = {key: value for key, value in (payload or {}).items() if value is not None}
    return ProgressEvent(job_id=job_id, type=event_type, timestamp=int(time.time() * 1000), payload=clean)


def terminal_event(job: Job) -> ProgressEvent:
    """The event a finished job would have ended its stream with, rebuilt from the store."""
    if job.status == "completed":
        return make_event(job.id, "completed", {"progress": 100, **(job_result(job) or {})})
    return make_event(job.id, "failed", {"error": {"code": job.error_code, "message": job.error_message}})


class Subscription:
    """Live view of one job's events. Anything published before subscribing is gone."""

    def __init__(self, client: redis.Redis, channel: str, *, idle_timeout: float, poll_seconds: float = 0.1):
        self.channel = channel
        self.idle_timeout = idle_timeout
        self.poll_seconds = poll_seconds
        self._pubsub = client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(channel)
        self._closed = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __iter__(self) -> Iterator[ProgressEvent]:
        deadline = time.monotonic() + self.idle_timeout
        while not self._closed:
            message = self._pubsub.get_message(timeout=self.poll_seconds)
            if message is None or message.get("type") != "message":
                if time.monotonic() >= deadline:
                    logger.info("channel=%s subscription_idle_timeout", self.channel)
                    return
                continue
            try:
                event = ProgressEvent.model_validate_json(message["data"])
            except ValidationError:
                logger.warning("channel=%s dropped_malformed_event", self.channel)
                continue
            deadline = time.monotonic() + self.idle_timeout
            yield event
            if event.type in TERMINAL_EVENTS:
                self.close()
                return

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._pubsub.unsubscribe(self.channel)
            self._pubsub.close()
        except redis.RedisError as exc:
            logger.warning("channel=%s unsubscribe_failed error=%s", self.channel, exc)


class EventBus:
    """Best-effort fan-out; the job store stays the source of truth."""

    def __init__(self, client: redis.Redis, *, prefix: str = "deckflow", idle_timeout: float = 300):
        self.client = client
        self.prefix = prefix
        self.idle_timeout = idle_timeout

    def channel(self, job_id: str) -> str:
        return f"{self.prefix}:events:{job_id}"

    def publish(self, job_id: str, event: ProgressEvent) -> int:
        try:
            receivers = int(self.client.publish(self.channel(job_id), event.model_dump_json()))
        except redis.RedisError as exc:
            logger.warning("job=%s publish_failed type=%s error=%s", job_id, event.type, exc)
            return 0
        logger.debug("job=%s published type=%s receivers=%s", job_id, event.type, receivers)
        return receivers

    def emit(self, job_id: str, event_type: str, **payload: Any) -> int:
        return self.publish(job_id, make_event(job_id, event_type, payload))

    def subscribe(self, job_id: str, *, idle_timeout: float | None = None) -> Subscription:
        return Subscription(
            self.client,
            self.channel(job_id),
            idle_timeout=self.idle_timeout if idle_timeout is None else idle_timeout,
        )


def format_sse(event: ProgressEvent) -> str:
    return f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"
