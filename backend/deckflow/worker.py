"""
Execution engine.

A Worker leases entries from the per-family queues, runs the matching handler
from ``deckflow.tasks`` on a bounded thread pool and settles the entry (ack or
nack) once the job store reflects the outcome. A LeaseKeeper thread renews the
lease while the handler runs; if renewal fails the entry is treated as stalled
and another worker may pick it up, so handlers must tolerate re-execution.
"""
from __future__ import annotations

import logging
import os
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from uuid import uuid4

import redis

from deckflow.config import JOB_FAMILIES
from deckflow.errors import DeckflowError, InvalidTransition, JobNotFound, classify_error
from deckflow.runtime import Runtime
from deckflow.services.event_bus import terminal_event
from deckflow.services.job_queue import JobQueue, LeaseLost, QueueEntry
from deckflow.services.job_store import job_payload
from deckflow.services.job_trace import job_log
from deckflow.tasks import JOB_HANDLERS, JobContext


logger = logging.getLogger("deckflow.worker")


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class LeaseKeeper(threading.Thread):
    def __init__(self, queue: JobQueue, entry: QueueEntry, worker_id: str, interval: float):
        super().__init__(name=f"lease-{entry.job_id[:8]}", daemon=True)
        self.queue = queue
        self.entry = entry
        self.worker_id = worker_id
        self.interval = max(0.05, float(interval))
        self.lost = False
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self.entry = self.queue.renew_lease(self.entry, self.worker_id)
            except LeaseLost:
                self.lost = True
                logger.warning("job=%s lease_lost queue=%s worker=%s", self.entry.job_id, self.queue.name, self.worker_id)
                return
            except redis.RedisError as exc:
                logger.warning("job=%s lease_renew_failed error=%s", self.entry.job_id, exc)

    def stop(self) -> None:
        self._stopped.set()
        if self.is_alive() and self is not threading.current_thread():
            self.join(timeout=self.interval)


class Worker:
    def __init__(self, runtime: Runtime, families: tuple[str, ...] | list[str] = JOB_FAMILIES, worker_id: str | None = None):
        unknown = [family for family in families if family not in JOB_HANDLERS]
        if unknown:
            raise ValueError(f"Unknown job families: {', '.join(unknown)}")
        self.runtime = runtime
        self.families = tuple(families)
        self.worker_id = worker_id or default_worker_id()
        self._stopping = threading.Event()
        self._pools: dict[str, ThreadPoolExecutor] = {}
        self._slots: dict[str, threading.Semaphore] = {}

    def process_next(self, family: str) -> str | None:
        """Lease and run one entry inline. Returns the settled outcome, or None if the queue is empty."""
        entry = self.runtime.queue(family).lease(self.worker_id)
        if entry is None:
            return None
        return self.execute(family, entry)

    def drain(self, family: str, *, limit: int = 100) -> list[str]:
        outcomes = []
        for _ in range(limit):
            outcome = self.process_next(family)
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes

    def execute(self, family: str, entry: QueueEntry) -> str:
        queue = self.runtime.queue(family)
        keeper = LeaseKeeper(queue, entry, self.worker_id, self.runtime.settings.queue_policy(family).lease_renew_seconds)
        keeper.start()
        try:
            return self._run(family, queue, keeper)
        finally:
            keeper.stop()

    def _run(self, family: str, queue: JobQueue, keeper: LeaseKeeper) -> str:
        entry = keeper.entry
        handler = JOB_HANDLERS[family]
        try:
            job = self.runtime.jobs.get_unscoped(entry.job_id)
        except JobNotFound as exc:
            job_log(entry.job_id, "job_record_missing_warning", queue=family)
            return self._settle_failure(queue, keeper, exc, retriable=False)

        if job.is_terminal:
            job_log(job.id, "job_already_terminal", status=job.status, attempt=entry.attempts_made)
            if job.status == "completed" and handler.on_redelivered_complete is not None:
                handler.on_redelivered_complete(self.runtime, job)
            return self._ack(queue, keeper, "skipped")

        ctx = JobContext(runtime=self.runtime, job=job, entry=entry)
        try:
            request = handler.schema.model_validate(job_payload(job))
            self.runtime.jobs.update_status(job.id, "running")
            handler.run(ctx, request)
        except Exception as exc:
            return self._handle_failure(ctx, queue, keeper, exc)
        return self._ack(queue, keeper, "completed")

    def _handle_failure(self, ctx: JobContext, queue: JobQueue, keeper: LeaseKeeper, exc: Exception) -> str:
        err = classify_error(exc)
        entry = keeper.entry
        terminal = entry.will_exhaust(err.retriable)
        job_id = ctx.job.id
        if err.code == "INTERNAL_ERROR":
            logger.exception("job=%s unexpected_error attempt=%s", job_id, entry.attempts_made)
        job_log(
            job_id,
            "job_failed" if terminal else "job_attempt_failed",
            attempt=entry.attempts_made,
            max_attempts=entry.max_attempts,
            code=err.code,
            category=err.category,
            error_message=err.message,
        )

        try:
            self.runtime.jobs.update_status(
                job_id,
                "failed" if terminal else "running",
                error_code=err.code,
                error_message=err.message,
            )
        except InvalidTransition as transition:
            # The job already reached a terminal state; subscribers get that state, not this failure.
            job_log(job_id, "failure_not_recorded_warning", current=transition.details.get("current"))
            self._emit_stored_outcome(job_id)
            return self._settle_failure(queue, keeper, err, retriable=err.retriable)
        except Exception:
            logger.exception("job=%s failure_write_failed code=%s", job_id, err.code)

        ctx.emit(
            "failed" if terminal else "attempt_failed",
            error={"code": err.code, "message": err.message},
            attempt=entry.attempts_made,
            max_attempts=entry.max_attempts,
            retriable=err.retriable,
        )
        return self._settle_failure(queue, keeper, err, retriable=err.retriable)

    def _emit_stored_outcome(self, job_id: str) -> None:
        try:
            job = self.runtime.jobs.get_unscoped(job_id)
        except Exception:
            logger.exception("job=%s stored_outcome_read_failed", job_id)
            return
        if job.is_terminal:
            self.runtime.events.publish(job_id, terminal_event(job))

    def _settle_failure(self, queue: JobQueue, keeper: LeaseKeeper, exc: Exception, *, retriable: bool) -> str:
        message = exc.message if isinstance(exc, DeckflowError) else str(exc)
        code = exc.code if isinstance(exc, DeckflowError) else "INTERNAL_ERROR"
        try:
            return queue.nack(keeper.entry, retriable=retriable, error=f"{code}: {message}")
        except LeaseLost:
            job_log(keeper.entry.job_id, "nack_lease_lost_warning", queue=queue.name)
            return "lost"

    def _ack(self, queue: JobQueue, keeper: LeaseKeeper, outcome: str) -> str:
        try:
            queue.ack(keeper.entry)
        except LeaseLost:
            job_log(keeper.entry.job_id, "ack_lease_lost_warning", queue=queue.name, outcome=outcome)
            return "lost"
        return outcome

    def run_forever(self) -> None:
        poll = self.runtime.settings.worker_poll_seconds
        for family in self.families:
            policy = self.runtime.settings.queue_policy(family)
            self._pools[family] = ThreadPoolExecutor(max_workers=policy.concurrency, thread_name_prefix=f"deckflow-{family}")
            self._slots[family] = threading.Semaphore(policy.concurrency)
        logger.info("worker_started worker=%s families=%s", self.worker_id, list(self.families))
        try:
            while not self._stopping.is_set():
                if not self._dispatch_available():
                    self._stopping.wait(poll)
        finally:
            for pool in self._pools.values():
                pool.shutdown(wait=True)
            self._pools.clear()
            logger.info("worker_stopped worker=%s", self.worker_id)

    def _dispatch_available(self) -> bool:
        dispatched = False
        for family in self.families:
            slots = self._slots[family]
            while not self._stopping.is_set() and slots.acquire(blocking=False):
                try:
                    entry = self.runtime.queue(family).lease(self.worker_id)
                except redis.RedisError as exc:
                    slots.release()
                    logger.warning("lease_failed queue=%s error=%s", family, exc)
                    break
                if entry is None:
                    slots.release()
                    break
                dispatched = True
                future = self._pools[family].submit(self.execute, family, entry)
                future.add_done_callback(lambda done, fam=family: self._on_done(fam, done))
        return dispatched

    def _on_done(self, family: str, future: Future) -> None:
        self._slots[family].release()
        exc = future.exception()
        if exc is not None:
            logger.error("execution_crashed queue=%s error=%s", family, exc, exc_info=exc)

    def stop(self) -> None:
        self._stopping.set()
