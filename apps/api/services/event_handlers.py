"""
Subscriptions for events consumed from the planning and medical services.

Each handler runs inside its own service scope, so a consumed event gets a
fresh session and sees committed state only.
"""

import logging
from typing import Callable, ContextManager, Dict, Tuple

from core.events import (
    TOPIC_INJURY_REPORTED,
    TOPIC_PHASE_CHANGED,
    TOPIC_RESTRICTION_CLEARED,
    TOPIC_RESTRICTION_CREATED,
    TOPIC_RESTRICTION_UPDATED,
    TOPIC_SEASON_PLAN_UPDATED,
    TOPIC_TEMPLATE_APPLIED,
    TOPIC_WORKLOAD_THRESHOLD_BREACH,
    EventBus,
)
from core.logging import event_context

logger = logging.getLogger(__name__)

# topic -> (service attribute, handler method)
ROUTES: Dict[str, Tuple[str, str]] = {
    TOPIC_PHASE_CHANGED: ("phase_adjuster", "handle_phase_changed"),
    TOPIC_SEASON_PLAN_UPDATED: ("phase_adjuster", "handle_season_plan_updated"),
    TOPIC_WORKLOAD_THRESHOLD_BREACH: ("phase_adjuster", "handle_workload_breach"),
    TOPIC_TEMPLATE_APPLIED: ("phase_adjuster", "handle_template_applied"),
    TOPIC_RESTRICTION_CREATED: ("medical_sync", "handle_restriction_changed"),
    TOPIC_RESTRICTION_UPDATED: ("medical_sync", "handle_restriction_changed"),
    TOPIC_RESTRICTION_CLEARED: ("medical_sync", "handle_restriction_cleared"),
    TOPIC_INJURY_REPORTED: ("medical_sync", "handle_injury_reported"),
}


def _scoped(scope: Callable[[], ContextManager], topic: str, service: str, method: str):
    def handler(envelope):
        with event_context(envelope), scope() as services:
            getattr(getattr(services, service), method)(envelope)
        logger.debug(f"Handled {topic} event {envelope.get('event_id')}")

    handler.__name__ = method
    return handler


def register_training_handlers(bus: EventBus, scope: Callable[[], ContextManager]) -> EventBus:
    """
    Subscribe every consumed topic on ``bus``.

    ``scope`` is a zero-argument context manager factory yielding a
    ``TrainingServices``; ``services.container.service_scope`` in production.
    """
    for topic, (service, method) in ROUTES.items():
        bus.subscribe(topic, _scoped(scope, topic, service, method))
    logger.info(f"Registered {len(ROUTES)} training event handlers")
    return bus


def dispatch(bus: EventBus, envelope: dict) -> None:
    """Dispatch an envelope received from another service."""
    topic = envelope.get("topic")
    if not topic:
        logger.warning("Dropping event without topic")
        return
    if not bus.handlers_for(topic):
        logger.debug(f"No handlers for {topic}")
        return
    bus.publish(topic, envelope)
