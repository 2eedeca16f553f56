"""
Pytest configuration and fixtures

Every test gets a fresh in-memory SQLite schema, so nothing leaks between
tests. Redis, the event transport and the collaborator services are replaced
by the in-memory fakes in tests/fakes.py.
"""
import os
import sys

import pytest

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.cache import CacheClient
from core.database import Base
from models import ExerciseTemplate, SessionExercise, WorkoutSession
from services.container import build_services
from services.event_publisher import EventPublisher
from tests.fakes import (
    ORG_ID,
    TEAM_ID,
    FakeMedicalClient,
    FakeOrganizationClient,
    FakePlanningClient,
    FakeRedis,
    RecordingTransport,
)


@pytest.fixture(scope="function")
def db_session():
    """Session over a private in-memory database with the full schema."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return CacheClient(fake_redis, 300)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def publisher(transport):
    return EventPublisher(transport, attempts=3, delay_s=0, source="training-service-test")


@pytest.fixture
def organization_client():
    return FakeOrganizationClient(teams={TEAM_ID: ["p1", "p2", "p3", "p4", "p5"]})


@pytest.fixture
def medical_client():
    return FakeMedicalClient()


@pytest.fixture
def planning_client():
    return FakePlanningClient()


@pytest.fixture
def services(db_session, cache, publisher, medical_client, planning_client, organization_client):
    return build_services(
        db_session,
        cache=cache,
        publisher=publisher,
        medical_client=medical_client,
        planning_client=planning_client,
        organization_client=organization_client,
    )


@pytest.fixture
def make_template(db_session):
    def _make(name, category="strength", **fields):
        template = ExerciseTemplate(
            organization_id=fields.pop("organization_id", ORG_ID),
            name=name,
            category=category,
            movement_patterns=fields.pop("movement_patterns", []),
            primary_muscles=fields.pop("primary_muscles", []),
            secondary_muscles=fields.pop("secondary_muscles", []),
            equipment=fields.pop("equipment", []),
            default_intensity=fields.pop("default_intensity", 50),
            **fields,
        )
        db_session.add(template)
        db_session.commit()
        return template
    return _make


@pytest.fixture
def make_session(db_session):
    def _make(name="Strength A", templates=(), workout_type="strength", **fields):
        session = WorkoutSession(
            organization_id=ORG_ID,
            team_id=TEAM_ID,
            name=name,
            type=workout_type,
            **fields,
        )
        session.exercises = [
            SessionExercise(
                exercise_template_id=t.id,
                name=t.name,
                order_index=i,
                requires_supervision=False,
            )
            for i, t in enumerate(templates)
        ]
        db_session.add(session)
        db_session.commit()
        return session
    return _make
