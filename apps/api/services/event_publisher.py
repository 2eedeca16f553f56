"""
Event Publisher

Wraps a transport (``EventBus`` in-process, ``RedisEventTransport`` across
services) with an envelope and bounded retry. Publishing happens after the
domain change has committed, so failures are logged and reported as False,
never raised.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from core.config import settings
from core.logging import current_event_context

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(
        self,
        transport,
        attempts: Optional[int] = None,
        delay_s: Optional[float] = None,
        source: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.transport = transport
        self.attempts = max(1, attempts if attempts is not None else settings.EVENT_PUBLISH_RETRY_ATTEMPTS)
        self.delay_s = delay_s if delay_s is not None else settings.EVENT_PUBLISH_RETRY_DELAY_S
        self.source = source or settings.EVENT_SOURCE
        self._sleep = sleep

    def envelope(self, topic: str, payload: Dict[str, Any], correlation_id: Optional[str] = None) -> Dict[str, Any]:
        if correlation_id is None:
            # events raised while handling a consumed event stay correlated with it
            handling = current_event_context()
            correlation_id = handling.get("correlation_id") or handling.get("event_id")
        envelope = {
            "event_id": str(uuid.uuid4()),
            "topic": topic,
            "source": self.source,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
            "payload": payload,
        }
        if correlation_id:
            envelope["correlation_id"] = correlation_id
        return envelope

    def publish(self, topic: str, payload: Dict[str, Any], correlation_id: Optional[str] = None) -> bool:
        """Publish with fixed-delay retry. Returns True once the transport accepts it."""
        envelope = self.envelope(topic, payload, correlation_id)
        for attempt in range(1, self.attempts + 1):
            try:
                self.transport.publish(topic, envelope)
                return True
            except Exception as e:
                logger.warning(f"Publish of {topic} failed (attempt {attempt}/{self.attempts}): {e}")
                if attempt < self.attempts and self.delay_s > 0:
                    self._sleep(self.delay_s)

        logger.error(f"Giving up on event {topic} ({envelope['event_id']}) after {self.attempts} attempts")
        return False
