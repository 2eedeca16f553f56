"""
Tests for structured logging and the consumed-event context.
"""

import json
import logging

from core.logging import (
    EventContextFilter,
    JSONFormatter,
    TextFormatter,
    current_event_context,
    event_context,
)
from services.event_publisher import EventPublisher
from tests.fakes import RecordingTransport

ENVELOPE = {
    "event_id": "evt-1",
    "topic": "planning.phase.changed",
    "correlation_id": "corr-9",
    "payload": {"teamId": "team-1"},
}


def record(message="Phase synced"):
    return logging.LogRecord("services.planning_phase_adjuster", logging.INFO, __file__, 10, message, None, None)


class TestEventContext:

    def test_context_is_scoped_to_the_block(self):
        with event_context(ENVELOPE):
            assert current_event_context() == {
                "event_id": "evt-1",
                "topic": "planning.phase.changed",
                "correlation_id": "corr-9",
            }
        assert current_event_context() == {}

    def test_missing_fields_are_left_out(self):
        with event_context({"topic": "medical.injury.reported", "payload": {}}):
            assert current_event_context() == {"topic": "medical.injury.reported"}


class TestFormatters:

    def test_json_includes_event_context(self):
        entry = record()
        with event_context(ENVELOPE):
            EventContextFilter().filter(entry)

        data = json.loads(JSONFormatter().format(entry))
        assert data["message"] == "Phase synced"
        assert data["service"] == "training-service"
        assert data["event"]["event_id"] == "evt-1"

    def test_json_without_event(self):
        entry = record()
        EventContextFilter().filter(entry)
        assert "event" not in json.loads(JSONFormatter().format(entry))

    def test_json_merges_extra_fields(self):
        entry = record()
        entry.extra_fields = {"status_code": 201}
        assert json.loads(JSONFormatter().format(entry))["status_code"] == 201

    def test_text_appends_topic_and_id(self):
        entry = record()
        with event_context(ENVELOPE):
            EventContextFilter().filter(entry)
        assert TextFormatter().format(entry).endswith("[planning.phase.changed evt-1]")


class TestCorrelation:

    def test_published_events_inherit_correlation_id(self):
        publisher = EventPublisher(RecordingTransport())
        with event_context(ENVELOPE):
            assert publisher.envelope("training.workout.assigned", {})["correlation_id"] == "corr-9"

    def test_event_id_used_when_no_correlation_id(self):
        publisher = EventPublisher(RecordingTransport())
        with event_context({"event_id": "evt-2", "topic": "medical.restriction.created"}):
            assert publisher.envelope("training.workout.assigned", {})["correlation_id"] == "evt-2"

    def test_explicit_correlation_id_wins(self):
        publisher = EventPublisher(RecordingTransport())
        with event_context(ENVELOPE):
            envelope = publisher.envelope("training.workout.assigned", {}, correlation_id="mine")
        assert envelope["correlation_id"] == "mine"
