import pytest
import redis

from deckflow.services.event_bus import EventBus, format_sse, make_event


@pytest.fixture
def bus(redis_client):
    return EventBus(redis_client, prefix="test", idle_timeout=0.5)


def test_make_event_drops_none_values_and_stamps_time():
    event = make_event("job-1", "slide_ready", {"slide_index": 0, "slide": None})

    assert event.job_id == "job-1"
    assert event.payload == {"slide_index": 0}
    assert event.timestamp > 0


def test_make_event_rejects_unknown_type():
    with pytest.raises(ValueError):
        make_event("job-1", "generation_complete")


def test_publish_without_subscribers_is_a_no_op(bus):
    assert bus.emit("job-1", "started", progress=0) == 0


def test_subscriber_receives_events_in_order_until_terminal(bus):
    with bus.subscribe("job-1") as subscription:
        bus.emit("job-1", "started", progress=0)
        bus.emit("job-1", "slide_ready", slide_index=0)
        bus.emit("job-1", "completed", progress=100, deck_id="d1")
        bus.emit("job-1", "slide_ready", slide_index=1)

        events = list(subscription)

    assert [event.type for event in events] == ["started", "slide_ready", "completed"]
    assert events[-1].payload == {"progress": 100, "deck_id": "d1"}


def test_subscriber_only_sees_its_own_job(bus):
    with bus.subscribe("job-1") as subscription:
        bus.emit("job-2", "started")
        bus.emit("job-1", "failed", error={"code": "MODEL_ERROR", "message": "no"})

        events = list(subscription)

    assert [(event.job_id, event.type) for event in events] == [("job-1", "failed")]


def test_events_published_before_subscribing_are_lost(bus):
    bus.emit("job-1", "started")
    with bus.subscribe("job-1", idle_timeout=0.2) as subscription:
        events = list(subscription)

    assert events == []


def test_malformed_messages_are_skipped(bus, redis_client):
    with bus.subscribe("job-1") as subscription:
        redis_client.publish(bus.channel("job-1"), "not json")
        bus.emit("job-1", "completed")

        events = list(subscription)

    assert [event.type for event in events] == ["completed"]


def test_publish_failure_is_swallowed_and_logged(caplog):
    class BrokenRedis:
        def publish(self, channel, message):
            raise redis.ConnectionError("down")

    bus = EventBus(BrokenRedis(), prefix="test")

    assert bus.emit("job-1", "started") == 0
    assert "publish_failed" in caplog.text


def test_format_sse():
    event = make_event("job-1", "completed", {"progress": 100})
    text = format_sse(event)

    assert text.startswith("event: completed\ndata: {")
    assert text.endswith("\n\n")
