"""
Event bus primitives.

`EventBus` is an in-process publish/subscribe handle: handlers subscribe to
topic names and receive the event envelope when something is published.
`RedisEventTransport` pushes envelopes onto Redis pub/sub channels so other
services can consume them. Both expose ``publish(topic, envelope)`` and are
wrapped by ``services.event_publisher.EventPublisher``. `RedisEventSubscriber`
is the receiving side, used by the event consumer process.
"""
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import redis

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]


class EventBus:
    """In-process topic registry with synchronous dispatch."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}

    def subscribe(self, topic: str, handler: Handler) -> None:
        """
        Subscribe a handler to a topic.

        Example:
            bus.subscribe(TOPIC_PHASE_CHANGED, adjuster.handle_phase_changed)
        """
        self._handlers.setdefault(topic, []).append(handler)
        logger.debug(f"Subscribed handler to event: {topic}")

    def handlers_for(self, topic: str) -> List[Handler]:
        return list(self._handlers.get(topic, []))

    def publish(self, topic: str, envelope: Dict[str, Any]) -> None:
        """Call every handler subscribed to ``topic``.

        A failing handler is logged and does not stop the others.
        """
        for handler in self.handlers_for(topic):
            try:
                handler(envelope)
            except Exception as e:
                logger.error(f"Error in event handler for {topic}: {e}", exc_info=True)


class RedisEventTransport:
    """Publishes envelopes as JSON on ``{prefix}:{topic}`` Redis channels."""

    def __init__(self, client: redis.Redis, channel_prefix: str = "events"):
        self._client = client
        self.channel_prefix = channel_prefix

    def publish(self, topic: str, envelope: Dict[str, Any]) -> None:
        channel = f"{self.channel_prefix}:{topic}"
        self._client.publish(channel, json.dumps(envelope, default=str))


class RedisEventSubscriber:
    """
    Listens on ``{prefix}:{pattern}`` channels and hands each decoded envelope
    to a callback. ``listen`` blocks until the connection closes.
    """

    def __init__(self, client: redis.Redis, patterns: List[str], channel_prefix: str = "events"):
        self._client = client
        self.channel_prefix = channel_prefix
        self.channels = [f"{channel_prefix}:{pattern}" for pattern in patterns]

    def decode(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if message.get("type") not in ("message", "pmessage"):
            return None
        try:
            envelope = json.loads(message["data"])
        except (TypeError, ValueError) as e:
            logger.warning(f"Undecodable event on {message.get('channel')}: {e}")
            return None
        if not isinstance(envelope, dict):
            return None
        if not envelope.get("topic"):
            channel = message.get("channel") or ""
            envelope["topic"] = channel[len(self.channel_prefix) + 1:] or None
        return envelope

    def listen(self, on_envelope: Handler) -> None:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        pubsub.psubscribe(*self.channels)
        logger.info(f"Listening for events on {', '.join(self.channels)}")
        try:
            for message in pubsub.listen():
                envelope = self.decode(message)
                if envelope is not None:
                    on_envelope(envelope)
        finally:
            pubsub.close()


# Topics consumed from other services
CONSUMED_PATTERNS = ["planning.*", "medical.*"]
TOPIC_PHASE_CHANGED = "planning.phase.changed"
TOPIC_SEASON_PLAN_UPDATED = "planning.season_plan.updated"
TOPIC_WORKLOAD_THRESHOLD_BREACH = "planning.workload.threshold_breach"
TOPIC_TEMPLATE_APPLIED = "planning.template.applied"
TOPIC_RESTRICTION_CREATED = "medical.restriction.created"
TOPIC_RESTRICTION_UPDATED = "medical.restriction.updated"
TOPIC_RESTRICTION_CLEARED = "medical.restriction.cleared"
TOPIC_INJURY_REPORTED = "medical.injury.reported"

# Topics published by the training service
EVENT_WORKOUT_CREATED = "training.workout.created"
EVENT_WORKOUT_ASSIGNED = "training.workout.assigned"
EVENT_WORKOUT_COMPLETED = "training.workout.completed"
EVENT_WORKOUT_CANCELLED = "training.workout.cancelled"
EVENT_WORKOUT_RESCHEDULED = "training.workout.rescheduled"
EVENT_INJURY_REPORTED = "training.injury.reported"
EVENT_OVERRIDE_CREATED = "training.override.created"
EVENT_ASSIGNMENT_PHASE_ADJUSTED = "training.assignment.phase_adjusted"
EVENT_PHASE_ADJUSTMENTS_APPLIED = "training.phase.adjustments_applied"
EVENT_MEDICAL_OVERRIDE_CREATED = "training.medical.override.created"
EVENT_MEDICAL_SYNC_COMPLETED = "training.medical.sync.completed"
EVENT_MEDICAL_CONCERN_REPORTED = "training.medical.concern.reported"
