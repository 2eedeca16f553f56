"""
Service wiring

Builds the training services around one database session. The Redis cache
and the event publisher are process-wide; everything holding a session is
built per request, per task or per consumed event.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterator, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from core.cache import CacheClient, connect_redis
from core.config import settings
from core.database import get_db, get_db_sync
from core.events import EventBus, RedisEventTransport
from services.assignment_engine import AssignmentEngine
from services.clients import MedicalServiceClient, OrganizationServiceClient, PlanningServiceClient
from services.compliance_checker import ComplianceChecker
from services.event_handlers import register_training_handlers
from services.event_publisher import EventPublisher
from services.exercise_alternatives import ExerciseAlternativeFinder
from services.medical_sync import MedicalSyncService
from services.override_store import MedicalOverrideStore
from services.planning_phase_adjuster import PlanningPhaseAdjuster

logger = logging.getLogger(__name__)


@dataclass
class TrainingServices:
    db: Session
    overrides: MedicalOverrideStore
    engine: AssignmentEngine
    phase_adjuster: PlanningPhaseAdjuster
    compliance: ComplianceChecker
    medical_sync: MedicalSyncService


@lru_cache()
def shared_cache() -> CacheClient:
    return CacheClient.from_settings()


@lru_cache()
def shared_bus() -> EventBus:
    """In-process bus with the consumed topics routed to the training handlers."""
    return register_training_handlers(EventBus(), service_scope)


@lru_cache()
def shared_publisher() -> EventPublisher:
    """Publishes on Redis when it is reachable, else on the in-process bus."""
    client = connect_redis()
    if client is None:
        logger.warning("Publishing events in-process only")
        return EventPublisher(shared_bus())
    return EventPublisher(RedisEventTransport(client, settings.EVENT_CHANNEL_PREFIX))


def build_services(
    db: Session,
    cache: Optional[CacheClient] = None,
    publisher: Optional[EventPublisher] = None,
    medical_client=None,
    planning_client=None,
    organization_client=None,
) -> TrainingServices:
    cache = cache if cache is not None else shared_cache()
    publisher = publisher if publisher is not None else shared_publisher()
    medical_client = medical_client or MedicalServiceClient.from_settings()
    planning_client = planning_client or PlanningServiceClient.from_settings()
    organization_client = organization_client or OrganizationServiceClient.from_settings()

    overrides = MedicalOverrideStore(db, cache)
    phase_adjuster = PlanningPhaseAdjuster(db, planning_client, cache, publisher)
    return TrainingServices(
        db=db,
        overrides=overrides,
        engine=AssignmentEngine(
            db,
            overrides,
            organization_client=organization_client,
            planning_client=planning_client,
            cache=cache,
            publisher=publisher,
            phase_adjuster=phase_adjuster,
        ),
        phase_adjuster=phase_adjuster,
        compliance=ComplianceChecker(db, overrides, cache),
        medical_sync=MedicalSyncService(
            db,
            medical_client,
            overrides,
            alternative_finder=ExerciseAlternativeFinder(db),
            cache=cache,
            publisher=publisher,
        ),
    )


@contextmanager
def service_scope() -> Iterator[TrainingServices]:
    """Services over a fresh session, for tasks and event handlers."""
    db = get_db_sync()
    try:
        yield build_services(db)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_services(db: Session = Depends(get_db)) -> TrainingServices:
    """FastAPI dependency: services bound to the request's session."""
    return build_services(db)
