"""
Tests for event publishing: envelope, bounded retry, and the two transports.
"""

import json

from core.events import EventBus, RedisEventTransport
from services.event_publisher import EventPublisher
from tests.fakes import FakeRedis, RecordingTransport


class TestEventPublisher:

    def test_envelope(self, publisher, transport):
        assert publisher.publish("training.workout.created", {"id": "a-1"}, correlation_id="req-9") is True

        [(topic, envelope)] = transport.events
        assert topic == "training.workout.created"
        assert envelope["topic"] == topic
        assert envelope["source"] == "training-service-test"
        assert envelope["payload"] == {"id": "a-1"}
        assert envelope["correlation_id"] == "req-9"
        assert envelope["event_id"]
        assert envelope["occurred_at"]

    def test_event_ids_are_unique(self, publisher, transport):
        publisher.publish("t", {})
        publisher.publish("t", {})
        ids = {envelope["event_id"] for _, envelope in transport.events}
        assert len(ids) == 2

    def test_retries_until_accepted(self):
        transport = RecordingTransport(failures=2)
        sleeps = []
        publisher = EventPublisher(transport, attempts=3, delay_s=0.5, source="test", sleep=sleeps.append)

        assert publisher.publish("t", {"n": 1}) is True
        assert transport.calls == 3
        assert sleeps == [0.5, 0.5]
        assert transport.payloads("t") == [{"n": 1}]

    def test_gives_up_without_raising(self):
        transport = RecordingTransport(failures=5)
        sleeps = []
        publisher = EventPublisher(transport, attempts=3, delay_s=1, source="test", sleep=sleeps.append)

        assert publisher.publish("t", {}) is False
        assert transport.calls == 3
        # no sleep after the final attempt
        assert sleeps == [1, 1]
        assert transport.events == []

    def test_at_least_one_attempt(self):
        transport = RecordingTransport()
        publisher = EventPublisher(transport, attempts=0, delay_s=0, source="test")
        assert publisher.publish("t", {}) is True
        assert transport.calls == 1


class TestEventBus:

    def test_dispatches_to_subscribers(self):
        bus = EventBus()
        seen = []
        bus.subscribe("a", lambda envelope: seen.append(("first", envelope["n"])))
        bus.subscribe("a", lambda envelope: seen.append(("second", envelope["n"])))
        bus.subscribe("b", lambda envelope: seen.append(("other", envelope["n"])))

        bus.publish("a", {"n": 1})
        assert seen == [("first", 1), ("second", 1)]

    def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        seen = []

        def broken(envelope):
            raise RuntimeError("boom")

        bus.subscribe("a", broken)
        bus.subscribe("a", seen.append)
        bus.publish("a", {"n": 1})
        assert seen == [{"n": 1}]

    def test_no_subscribers(self):
        bus = EventBus()
        bus.publish("nobody", {})
        assert bus.handlers_for("nobody") == []

    def test_publisher_over_bus(self):
        bus = EventBus()
        seen = []
        bus.subscribe("t", seen.append)
        EventPublisher(bus, attempts=1, delay_s=0, source="test").publish("t", {"x": 1})
        assert seen[0]["payload"] == {"x": 1}


class TestRedisEventTransport:

    def test_publishes_json_on_prefixed_channel(self):
        redis_client = FakeRedis()
        transport = RedisEventTransport(redis_client, channel_prefix="events")
        EventPublisher(transport, attempts=1, delay_s=0, source="test").publish("training.workout.assigned", {"n": 2})

        [(channel, message)] = redis_client.published
        assert channel == "events:training.workout.assigned"
        assert json.loads(message)["payload"] == {"n": 2}
