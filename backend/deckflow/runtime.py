"""
Composition root.

Every process (API, worker pool, Celery maintenance worker) builds exactly one
Runtime at startup and closes it on shutdown; nothing below reaches for a
module-level connection.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import redis
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from deckflow.config import JOB_FAMILIES, Settings, settings as default_settings
from deckflow.db import Base, make_engine, make_session_factory
from deckflow.pipelines.base import BaseGenerationPipeline
from deckflow.pipelines.factory import get_pipeline
from deckflow.services.deck_store import DeckStore
from deckflow.services.event_bus import EventBus
from deckflow.services.job_queue import JobQueue
from deckflow.services.job_store import JobStore
from deckflow.services.render_client import RenderClient
from deckflow.storage import ObjectStorage


logger = logging.getLogger("deckflow")


@dataclass
class Runtime:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    redis: redis.Redis
    jobs: JobStore
    decks: DeckStore
    queues: dict[str, JobQueue]
    events: EventBus
    pipeline: BaseGenerationPipeline
    renderer: RenderClient
    storage: ObjectStorage
    sleep: Callable[[float], None] = field(default=time.sleep)

    def queue(self, family: str) -> JobQueue:
        try:
            return self.queues[family]
        except KeyError:
            raise ValueError(f"Unknown job family: {family}") from None

    def close(self) -> None:
        try:
            self.redis.close()
        except redis.RedisError as exc:
            logger.warning("redis_close_failed error=%s", exc)
        self.engine.dispose()
        logger.info("runtime_closed")


def configure_logging(config: Settings) -> None:
    level = getattr(logging, str(config.log_level).upper(), logging.INFO)
    logging.getLogger("deckflow").setLevel(level)
    if config.suppress_httpx_info_logs:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_runtime(
    config: Settings | None = None,
    *,
    redis_client: redis.Redis | None = None,
    pipeline: BaseGenerationPipeline | None = None,
    renderer: RenderClient | None = None,
    storage: ObjectStorage | None = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
    create_schema: bool = True,
) -> Runtime:
    config = config or default_settings
    configure_logging(config)

    engine = make_engine(config.database_url)
    if create_schema:
        Base.metadata.create_all(bind=engine)
    session_factory = make_session_factory(engine)
    client = redis_client or redis.Redis.from_url(config.redis_url, decode_responses=True)

    queues = {
        family: JobQueue(
            client,
            family,
            config.queue_policy(family),
            prefix=config.queue_prefix,
            completed_retention_seconds=config.completed_retention_seconds,
            failed_retention_seconds=config.failed_retention_seconds,
            clock=clock,
        )
        for family in JOB_FAMILIES
    }
    runtime = Runtime(
        settings=config,
        engine=engine,
        session_factory=session_factory,
        redis=client,
        jobs=JobStore(session_factory),
        decks=DeckStore(session_factory),
        queues=queues,
        events=EventBus(client, prefix=config.queue_prefix, idle_timeout=config.subscribe_idle_timeout_seconds),
        pipeline=pipeline or get_pipeline(config.default_pipeline),
        renderer=renderer or RenderClient(config.renderer_url, timeout=config.renderer_timeout_seconds),
        storage=storage
        or ObjectStorage(
            config.storage_root,
            public_base_url=config.public_base_url,
            signing_secret=config.storage_signing_secret,
        ),
        sleep=sleep,
    )
    logger.info("runtime_ready database=%s families=%s", engine.url.render_as_string(hide_password=True), list(queues))
    return runtime
