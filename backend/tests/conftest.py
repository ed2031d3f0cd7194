"""Shared fixtures: in-memory SQLite, fakeredis and a controllable clock."""

import fakeredis
import pytest

from deckflow.config import Settings
from deckflow.runtime import build_runtime
from deckflow.worker import Worker


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRenderer:
    """Records render calls and returns a small fake document."""

    def __init__(self):
        self.calls = []
        self.fail_with = None

    def render(self, deck, fmt, *, theme_id=None, brand_kit=None):
        self.calls.append({"deck_id": deck["id"], "format": fmt, "slides": len(deck["slides"])})
        if self.fail_with is not None:
            raise self.fail_with
        return f"%{fmt.upper()} {deck['id']}".encode("utf-8")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        storage_root=tmp_path / "storage",
        public_base_url="http://testserver",
        event_grace_seconds=0,
        progress_debounce_seconds=0,
        reconcile_min_age_seconds=0,
    )


@pytest.fixture
def runtime(test_settings, redis_client, renderer, clock):
    rt = build_runtime(
        test_settings,
        redis_client=redis_client,
        renderer=renderer,
        clock=clock,
        sleep=lambda _seconds: None,
    )
    yield rt
    rt.close()


@pytest.fixture
def worker(runtime):
    return Worker(runtime, worker_id="worker-a")


@pytest.fixture
def generation_payload():
    def build(**overrides):
        payload = {
            "input_text": "Quarterly results. Revenue grew. Costs fell. Outlook is stable.",
            "num_slides": 3,
            "language": "en",
        }
        payload.update(overrides)
        return payload

    return build
