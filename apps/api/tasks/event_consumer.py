"""
Event consumer process.

Subscribes to the planning and medical channels on Redis and enqueues each
envelope as a ``tasks.handle_event`` job, so handlers run on the Celery
workers with their own database session. Run from ``apps/api`` with:

    python -m tasks.event_consumer
"""
import logging
from typing import Dict

import redis

from core.config import settings
from core.events import CONSUMED_PATTERNS, RedisEventSubscriber
from core.logging import setup_logging
from tasks.training_tasks import handle_event_task

logger = logging.getLogger(__name__)


def forward(envelope: Dict) -> None:
    handle_event_task.delay(envelope)
    logger.debug(f"Enqueued {envelope.get('topic')} event {envelope.get('event_id')}")


def main() -> None:
    setup_logging()
    # no socket_timeout: listen() blocks between messages
    client = redis.from_url(settings.REDIS_URL, decode_responses=True, health_check_interval=30)
    subscriber = RedisEventSubscriber(client, CONSUMED_PATTERNS, settings.EVENT_CHANNEL_PREFIX)
    subscriber.listen(forward)


if __name__ == "__main__":
    main()
