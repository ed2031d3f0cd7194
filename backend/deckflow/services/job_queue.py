"""
Redis-backed job queue with leasing.

Each family gets its own queue. An entry is a Redis hash keyed by the job id, so
re-enqueueing the same job updates it in place. Entry ids move between sorted
sets as they progress:

    waiting   score = priority band + enqueue time (lowest leased first)
    delayed   score = time the entry becomes eligible again (retry backoff)
    active    score = lock expiry; past-due members are stalled
    completed score = finish time, purged after the retention window
    failed    score = finish time, purged after the retention window

Every multi-key move runs inside WATCH/MULTI so two workers can never hold the
same entry.
"""
from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any
from uuid import uuid4

import redis

from deckflow.config import QueuePolicy


logger = logging.getLogger("deckflow.queue")

_PRIORITY_BAND = 10**13


class LeaseLost(Exception):
    """The caller no longer holds the lock on this entry."""


@dataclass(frozen=True)
class QueueEntry:
    job_id: str
    queue: str
    payload: dict[str, Any]
    priority: int
    attempts_made: int
    max_attempts: int
    backoff_base_ms: int
    lock_owner: str | None
    lock_expires_at: float
    state: str
    last_error: str | None = None
    # Minted per lease; a worker id alone is shared by every thread of a process.
    lock_token: str | None = None

    def will_exhaust(self, retriable: bool) -> bool:
        return not retriable or self.attempts_made >= self.max_attempts


@dataclass(frozen=True)
class StalledEntry:
    job_id: str
    queue: str
    attempts_made: int
    terminal: bool


class JobQueue:
    def __init__(
        self,
        client: redis.Redis,
        name: str,
        policy: QueuePolicy,
        *,
        prefix: str = "deckflow",
        completed_retention_seconds: int = 24 * 60 * 60,
        failed_retention_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.name = name
        self.policy = policy
        self.prefix = prefix
        self.completed_retention_seconds = completed_retention_seconds
        self.failed_retention_seconds = failed_retention_seconds
        self.clock = clock

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:{self.name}:{suffix}"

    def _entry_key(self, job_id: str) -> str:
        return self._key(f"entry:{job_id}")

    @property
    def waiting_key(self) -> str:
        return self._key("waiting")

    @property
    def delayed_key(self) -> str:
        return self._key("delayed")

    @property
    def active_key(self) -> str:
        return self._key("active")

    @property
    def completed_key(self) -> str:
        return self._key("completed")

    @property
    def failed_key(self) -> str:
        return self._key("failed")

    @staticmethod
    def _order_score(priority: int, at: float) -> float:
        return float(max(0, int(priority)) * _PRIORITY_BAND + int(at * 1000))

    def enqueue(self, job_id: str, payload: dict[str, Any], priority: int = 0) -> str:
        entry_key = self._entry_key(job_id)
        encoded = json.dumps(payload, ensure_ascii=False, default=str)
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(entry_key)
                    state = pipe.hget(entry_key, "state")
                    if state in {"active", "completed", "failed"}:
                        # In flight or archived: the job id already has its delivery.
                        if state == "active":
                            pipe.multi()
                            pipe.hset(entry_key, "payload", encoded)
                            pipe.execute()
                        else:
                            pipe.unwatch()
                        logger.info("queue=%s job=%s enqueue_dedup state=%s", self.name, job_id, state)
                        return job_id

                    now = self.clock()
                    enqueued_at = float(pipe.hget(entry_key, "enqueued_at") or now)
                    pipe.multi()
                    pipe.hset(
                        entry_key,
                        mapping={
                            "job_id": job_id,
                            "payload": encoded,
                            "priority": int(priority),
                            "max_attempts": self.policy.max_attempts,
                            "backoff_base_ms": self.policy.backoff_base_ms,
                            "enqueued_at": enqueued_at,
                        },
                    )
                    if state != "delayed":
                        pipe.hsetnx(entry_key, "attempts_made", 0)
                        pipe.hset(entry_key, "state", "waiting")
                        pipe.zadd(self.waiting_key, {job_id: self._order_score(priority, enqueued_at)})
                    pipe.execute()
                    break
                except redis.WatchError:
                    continue
        logger.info("queue=%s job=%s enqueued priority=%s", self.name, job_id, priority)
        return job_id

    def _promote_delayed(self, now: float) -> None:
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(self.delayed_key)
                    due = pipe.zrangebyscore(self.delayed_key, "-inf", now)
                    if not due:
                        pipe.unwatch()
                        return
                    priorities = {job_id: int(pipe.hget(self._entry_key(job_id), "priority") or 0) for job_id in due}
                    pipe.multi()
                    for job_id in due:
                        pipe.zrem(self.delayed_key, job_id)
                        pipe.zadd(self.waiting_key, {job_id: self._order_score(priorities[job_id], now)})
                        pipe.hset(self._entry_key(job_id), "state", "waiting")
                    pipe.execute()
                    return
                except redis.WatchError:
                    continue

    def lease(self, worker_id: str) -> QueueEntry | None:
        now = self.clock()
        self._promote_delayed(now)
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(self.waiting_key)
                    head = pipe.zrange(self.waiting_key, 0, 0)
                    if not head:
                        pipe.unwatch()
                        return None
                    job_id = head[0]
                    entry_key = self._entry_key(job_id)
                    attempts = int(pipe.hget(entry_key, "attempts_made") or 0) + 1
                    expires_at = now + self.policy.lease_seconds
                    token = uuid4().hex
                    pipe.multi()
                    pipe.zrem(self.waiting_key, job_id)
                    pipe.zadd(self.active_key, {job_id: expires_at})
                    pipe.hset(
                        entry_key,
                        mapping={
                            "state": "active",
                            "lock_owner": worker_id,
                            "lock_token": token,
                            "lock_expires_at": expires_at,
                            "attempts_made": attempts,
                        },
                    )
                    pipe.execute()
                    break
                except redis.WatchError:
                    continue
        entry = self.get_entry(job_id)
        logger.info(
            "queue=%s job=%s leased worker=%s attempt=%s/%s",
            self.name,
            job_id,
            worker_id,
            entry.attempts_made if entry else "?",
            entry.max_attempts if entry else "?",
        )
        return entry

    def _check_owner(self, pipe, entry_key: str, worker_id: str | None, token: str | None) -> None:
        owner, current_token, state = pipe.hmget(entry_key, "lock_owner", "lock_token", "state")
        if state != "active" or not owner or owner != worker_id or not token or current_token != token:
            pipe.unwatch()
            raise LeaseLost(f"{entry_key} is not leased by {worker_id} (owner={owner or '-'}, state={state})")

    def renew_lease(self, entry: QueueEntry, worker_id: str) -> QueueEntry:
        entry_key = self._entry_key(entry.job_id)
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(entry_key)
                    self._check_owner(pipe, entry_key, worker_id, entry.lock_token)
                    expires_at = self.clock() + self.policy.lease_seconds
                    pipe.multi()
                    pipe.hset(entry_key, "lock_expires_at", expires_at)
                    pipe.zadd(self.active_key, {entry.job_id: expires_at})
                    pipe.execute()
                    return replace(entry, lock_owner=worker_id, lock_expires_at=expires_at)
                except redis.WatchError:
                    continue

    def ack(self, entry: QueueEntry) -> None:
        entry_key = self._entry_key(entry.job_id)
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(entry_key)
                    self._check_owner(pipe, entry_key, entry.lock_owner, entry.lock_token)
                    now = self.clock()
                    pipe.multi()
                    pipe.zrem(self.active_key, entry.job_id)
                    pipe.zadd(self.completed_key, {entry.job_id: now})
                    pipe.hset(
                        entry_key,
                        mapping={
                            "state": "completed",
                            "finished_at": now,
                            "lock_owner": "",
                            "lock_token": "",
                            "lock_expires_at": 0,
                        },
                    )
                    pipe.execute()
                    break
                except redis.WatchError:
                    continue
        logger.info("queue=%s job=%s acked", self.name, entry.job_id)

    def backoff_seconds(self, attempts_made: int, backoff_base_ms: int | None = None) -> float:
        base = self.policy.backoff_base_ms if backoff_base_ms is None else backoff_base_ms
        return (base * (2 ** max(0, attempts_made - 1))) / 1000.0

    def nack(self, entry: QueueEntry, retriable: bool, error: str | None = None) -> str:
        """Reschedule with backoff or move to the failed bucket; returns "retry" or "failed"."""
        entry_key = self._entry_key(entry.job_id)
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(entry_key)
                    self._check_owner(pipe, entry_key, entry.lock_owner, entry.lock_token)
                    attempts, max_attempts, base_ms = pipe.hmget(
                        entry_key, "attempts_made", "max_attempts", "backoff_base_ms"
                    )
                    attempts = int(attempts or 0)
                    max_attempts = int(max_attempts or self.policy.max_attempts)
                    now = self.clock()
                    pipe.multi()
                    pipe.zrem(self.active_key, entry.job_id)
                    common = {"lock_owner": "", "lock_token": "", "lock_expires_at": 0, "last_error": (error or "")[:2000]}
                    if retriable and attempts < max_attempts:
                        available_at = now + self.backoff_seconds(attempts, int(base_ms or self.policy.backoff_base_ms))
                        pipe.zadd(self.delayed_key, {entry.job_id: available_at})
                        pipe.hset(entry_key, mapping={**common, "state": "delayed", "available_at": available_at})
                        outcome = "retry"
                    else:
                        pipe.zadd(self.failed_key, {entry.job_id: now})
                        pipe.hset(entry_key, mapping={**common, "state": "failed", "finished_at": now})
                        outcome = "failed"
                    pipe.execute()
                    break
                except redis.WatchError:
                    continue
        logger.info(
            "queue=%s job=%s nacked outcome=%s attempts=%s/%s retriable=%s",
            self.name,
            entry.job_id,
            outcome,
            attempts,
            max_attempts,
            retriable,
        )
        return outcome

    def scan_stalled(self) -> list[StalledEntry]:
        now = self.clock()
        expired = self.client.zrangebyscore(self.active_key, "-inf", now)
        stalled: list[StalledEntry] = []
        for job_id in expired:
            entry_key = self._entry_key(job_id)
            with self.client.pipeline() as pipe:
                while True:
                    try:
                        pipe.watch(entry_key, self.active_key)
                        score = pipe.zscore(self.active_key, job_id)
                        if score is None or score > now:
                            # Renewed or settled since the range read.
                            pipe.unwatch()
                            break
                        attempts, max_attempts, priority = pipe.hmget(
                            entry_key, "attempts_made", "max_attempts", "priority"
                        )
                        attempts = int(attempts or 0)
                        terminal = attempts >= int(max_attempts or self.policy.max_attempts)
                        pipe.multi()
                        pipe.zrem(self.active_key, job_id)
                        common = {"lock_owner": "", "lock_token": "", "lock_expires_at": 0, "last_error": "lease expired"}
                        if terminal:
                            pipe.zadd(self.failed_key, {job_id: now})
                            pipe.hset(entry_key, mapping={**common, "state": "failed", "finished_at": now})
                        else:
                            pipe.zadd(self.waiting_key, {job_id: self._order_score(int(priority or 0), now)})
                            pipe.hset(entry_key, mapping={**common, "state": "waiting"})
                        pipe.execute()
                        stalled.append(
                            StalledEntry(job_id=job_id, queue=self.name, attempts_made=attempts, terminal=terminal)
                        )
                        logger.warning(
                            "queue=%s job=%s stalled attempts=%s terminal=%s", self.name, job_id, attempts, terminal
                        )
                        break
                    except redis.WatchError:
                        continue
        return stalled

    def purge_expired(self) -> int:
        now = self.clock()
        removed = 0
        for key, retention in (
            (self.completed_key, self.completed_retention_seconds),
            (self.failed_key, self.failed_retention_seconds),
        ):
            expired = self.client.zrangebyscore(key, "-inf", now - retention)
            if not expired:
                continue
            with self.client.pipeline() as pipe:
                pipe.zrem(key, *expired)
                for job_id in expired:
                    pipe.delete(self._entry_key(job_id))
                pipe.execute()
            removed += len(expired)
        if removed:
            logger.info("queue=%s purged=%s", self.name, removed)
        return removed

    def get_entry(self, job_id: str) -> QueueEntry | None:
        raw = self.client.hgetall(self._entry_key(job_id))
        if not raw:
            return None
        try:
            payload = json.loads(raw.get("payload") or "{}")
        except ValueError:
            payload = {}
        return QueueEntry(
            job_id=job_id,
            queue=self.name,
            payload=payload if isinstance(payload, dict) else {},
            priority=int(raw.get("priority") or 0),
            attempts_made=int(raw.get("attempts_made") or 0),
            max_attempts=int(raw.get("max_attempts") or self.policy.max_attempts),
            backoff_base_ms=int(raw.get("backoff_base_ms") or self.policy.backoff_base_ms),
            lock_owner=raw.get("lock_owner") or None,
            lock_expires_at=float(raw.get("lock_expires_at") or 0),
            state=raw.get("state") or "waiting",
            last_error=raw.get("last_error") or None,
            lock_token=raw.get("lock_token") or None,
        )

    def has_entry(self, job_id: str) -> bool:
        return bool(self.client.exists(self._entry_key(job_id)))

    def counts(self) -> dict[str, int]:
        return {
            "waiting": int(self.client.zcard(self.waiting_key)),
            "delayed": int(self.client.zcard(self.delayed_key)),
            "active": int(self.client.zcard(self.active_key)),
            "completed": int(self.client.zcard(self.completed_key)),
            "failed": int(self.client.zcard(self.failed_key)),
        }
