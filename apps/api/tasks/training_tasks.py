"""
Celery tasks for the training service.

Medical sync and phase adjustment can take a while for large organizations,
so the API and event consumers enqueue them here instead of running inline.
"""

import logging
from datetime import date
from typing import Dict, List, Optional

from celery import Task

from core.exceptions import UpstreamServiceError
from services.container import service_scope, shared_bus
from services.event_handlers import dispatch
from tasks import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.sync_medical_restrictions", bind=True, max_retries=3, default_retry_delay=60)
def sync_medical_restrictions_task(
    self: Task,
    organization_id: str,
    team_id: Optional[str] = None,
    player_ids: Optional[List[str]] = None,
    from_date: Optional[str] = None,
) -> Dict:
    """Mirror medical restrictions into overrides for an organization."""
    try:
        with service_scope() as services:
            result = services.medical_sync.sync_medical_restrictions(
                organization_id,
                team_id=team_id,
                player_ids=player_ids,
                from_date=date.fromisoformat(from_date) if from_date else None,
            )
        return {"status": "success", **result.model_dump()}
    except UpstreamServiceError as e:
        logger.warning(f"Medical sync for org {organization_id} failed, retrying: {e.detail}")
        raise self.retry(exc=e)


@celery_app.task(name="tasks.sync_phase_updates")
def sync_phase_updates_task(team_id: str) -> Dict:
    """Re-apply the team's current planning phase to its active assignments."""
    with service_scope() as services:
        summary = services.phase_adjuster.sync_phase_updates(team_id)
    return {"status": "success", **summary.model_dump()}


@celery_app.task(name="tasks.expire_overrides")
def expire_overrides_task() -> Dict:
    """Expire live overrides past their expiry date. Runs daily via beat."""
    with service_scope() as services:
        expired = services.overrides.expire_past_due()
    if expired:
        logger.info(f"Expired {expired} overrides")
    return {"status": "success", "expired": expired}


@celery_app.task(name="tasks.handle_event")
def handle_event_task(envelope: Dict) -> Dict:
    """Run the handlers for an event consumed from another service."""
    dispatch(shared_bus(), envelope)
    return {"status": "success", "topic": envelope.get("topic")}
