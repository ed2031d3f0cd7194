import pytest

from deckflow.services.progress import ProgressDebouncer, progress_for


class FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.callback()


class TimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, delay, callback):
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer


class MonotonicClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.mark.parametrize(
    "stage,index,total,expected",
    [
        ("outline", None, None, 10),
        ("content", 0, 3, 30),
        ("content", 1, 3, 50),
        ("content", 2, 3, 70),
        ("validation", None, None, 75),
        ("repair", None, None, 80),
        ("images", 0, 5, 83),
        ("images", 4, 5, 95),
        ("completed", None, None, 100),
    ],
)
def test_progress_for_maps_stage_and_index(stage, index, total, expected):
    assert progress_for(stage, index, total) == expected


def test_progress_for_without_index_reports_band_midpoint():
    assert progress_for("content") == 40
    assert progress_for("content", 2, 0) == 40


def test_progress_for_unknown_stage_is_zero():
    assert progress_for("thinking", 1, 2) == 0


def test_progress_for_clamps_index_past_total():
    assert progress_for("content", 9, 3) == 70


def test_content_progress_is_monotonic_across_slides():
    values = [progress_for("content", idx, 7) for idx in range(7)]
    assert values == sorted(values)
    assert values[-1] == 70


def test_debouncer_writes_first_value_immediately_and_trailing_value_once():
    writes = []
    clock = MonotonicClock()
    timers = TimerFactory()
    debouncer = ProgressDebouncer(writes.append, window=1.0, clock=clock, timer_factory=timers)

    debouncer.update(10)
    clock.now = 0.2
    debouncer.update(20)
    debouncer.update(30)
    debouncer.update(25)

    assert writes == [10]
    assert len(timers.timers) == 1
    assert timers.timers[0].delay == pytest.approx(0.8)
    assert timers.timers[0].daemon is True

    clock.now = 1.0
    timers.timers[0].fire()
    assert writes == [10, 30]


def test_debouncer_never_writes_a_lower_value():
    writes = []
    clock = MonotonicClock()
    debouncer = ProgressDebouncer(writes.append, window=1.0, clock=clock, timer_factory=TimerFactory())

    debouncer.update(50)
    clock.now = 5.0
    debouncer.update(40)
    debouncer.update(50)

    assert writes == [50]
    assert debouncer.last_written == 50


def test_debouncer_writes_again_once_window_elapsed():
    writes = []
    clock = MonotonicClock()
    timers = TimerFactory()
    debouncer = ProgressDebouncer(writes.append, window=1.0, clock=clock, timer_factory=timers)

    debouncer.update(10)
    clock.now = 0.5
    debouncer.update(20)
    clock.now = 1.6
    debouncer.update(35)

    assert writes == [10, 35]
    assert timers.timers[0].cancelled is True


def test_debouncer_flush_and_close():
    writes = []
    clock = MonotonicClock()
    timers = TimerFactory()
    debouncer = ProgressDebouncer(writes.append, window=1.0, clock=clock, timer_factory=timers)

    debouncer.update(10)
    debouncer.update(60)
    debouncer.close()

    assert writes == [10, 60]
    debouncer.update(90)
    assert writes == [10, 60]


def test_debouncer_close_without_flush_drops_pending_value():
    writes = []
    clock = MonotonicClock()
    timers = TimerFactory()
    debouncer = ProgressDebouncer(writes.append, window=1.0, clock=clock, timer_factory=timers)

    debouncer.update(10)
    debouncer.update(60)
    debouncer.close(flush=False)
    timers.timers[0].fire()

    assert writes == [10]


def test_debouncer_trailing_write_failure_is_logged_not_raised(caplog):
    clock = MonotonicClock()
    timers = TimerFactory()
    calls = []

    def write(value):
        calls.append(value)
        if len(calls) > 1:
            raise RuntimeError("database unavailable")

    debouncer = ProgressDebouncer(write, window=1.0, clock=clock, timer_factory=timers)
    debouncer.update(10)
    debouncer.update(20)
    timers.timers[0].fire()

    assert calls == [10, 20]
    assert "trailing progress write failed" in caplog.text
