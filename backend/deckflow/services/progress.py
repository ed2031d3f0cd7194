from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable


logger = logging.getLogger("deckflow.jobs")

# stage -> (min_pct, max_pct); fixed stages use the same value twice.
STAGE_BANDS: dict[str, tuple[int, int]] = {
    "outline": (0, 10),
    "content": (10, 70),
    "validation": (75, 75),
    "repair": (80, 80),
    "images": (80, 95),
}
SCALED_STAGES = frozenset({"content", "images"})
COMPLETED_PCT = 100


def progress_for(stage: str, index: int | None = None, total: int | None = None) -> int:
    """Percent complete for a pipeline callback.

    Scaled stages interpolate across their band by ``(index + 1) / total`` so the
    last unit lands on the band's upper bound. Without usable index/total they
    report the band midpoint. Unknown stages report 0, which never moves a
    debounced value backward.
    """
    if stage == "completed":
        return COMPLETED_PCT
    band = STAGE_BANDS.get(stage)
    if band is None:
        return 0
    low, high = band
    if stage not in SCALED_STAGES:
        return high
    if index is None or not total or total <= 0:
        return round((low + high) / 2)
    done = min(max(index + 1, 0), total)
    return low + round(done / total * (high - low))


class ProgressDebouncer:
    """At most one store write per rolling window; the trailing value is flushed by a timer.

    Values at or below the last written value are dropped, so the stored
    progress never regresses.
    """

    def __init__(
        self,
        write: Callable[[int], object],
        *,
        window: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self._write = write
        self.window = window
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._last_write_at: float | None = None
        self._pending: int | None = None
        self._timer = None
        self._closed = False
        self.last_written = -1

    def update(self, value: int) -> None:
        with self._lock:
            if self._closed:
                return
            target = max(int(value), self._pending if self._pending is not None else -1)
            if target <= self.last_written:
                return
            now = self._clock()
            if self._last_write_at is None or now - self._last_write_at >= self.window:
                self._cancel_timer()
                self._write_locked(target, now)
                return
            self._pending = target
            if self._timer is None:
                delay = self.window - (now - self._last_write_at)
                self._timer = self._timer_factory(delay, self._flush_trailing)
                self._timer.daemon = True
                self._timer.start()

    def _write_locked(self, value: int, now: float) -> None:
        self._pending = None
        self._last_write_at = now
        self.last_written = value
        self._write(value)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _flush_trailing(self) -> None:
        with self._lock:
            self._timer = None
            if self._closed or self._pending is None or self._pending <= self.last_written:
                return
            try:
                self._write_locked(self._pending, self._clock())
            except Exception:
                # Runs on the timer thread; the next write or the final result catches up.
                logger.exception("trailing progress write failed")

    def flush(self) -> None:
        with self._lock:
            self._cancel_timer()
            if not self._closed and self._pending is not None and self._pending > self.last_written:
                self._write_locked(self._pending, self._clock())

    def close(self, *, flush: bool = True) -> None:
        if flush:
            self.flush()
        with self._lock:
            self._cancel_timer()
            self._closed = True
