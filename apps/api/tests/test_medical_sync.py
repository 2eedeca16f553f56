"""
Tests for the medical sync service

Covers:
  1. Mirroring restrictions into overrides (grouping, combining, idempotence)
  2. Status handling on resync and expiry of cleared restrictions
  3. Concern reporting
  4. Exercise alternatives, with the local fallback and cache
  5. Manual medical overrides
  6. Handlers for medical-service events
"""

import uuid
from datetime import date, datetime, timedelta, timezone

import pytest

from core.events import (
    EVENT_INJURY_REPORTED,
    EVENT_MEDICAL_CONCERN_REPORTED,
    EVENT_MEDICAL_OVERRIDE_CREATED,
    EVENT_MEDICAL_SYNC_COMPLETED,
)
from core.exceptions import NotFoundError, UpstreamServiceError
from models import WorkoutAssignment, WorkoutPlayerOverride
from schemas import (
    AlternativeExercise,
    CreateMedicalOverrideRequest,
    GetAlternativesRequest,
    ReportMedicalConcernRequest,
)
from services.constants import OverrideStatus, Priority, RestrictionSeverity
from services.medical_sync import alternatives_cache_key, combined_expiry, restriction_snapshot
from tests.fakes import ORG_ID, TEAM_ID, USER_ID, restriction

TODAY = date.today()


@pytest.fixture
def templates(make_template):
    return {
        "jump_squats": make_template(
            "Jump Squats", "plyometric",
            movement_patterns=["jumping", "squatting"],
            primary_muscles=["quadriceps", "glutes"],
            default_intensity=85,
        ),
        "wall_sits": make_template(
            "Wall Sits", "plyometric",
            movement_patterns=["isometric"],
            primary_muscles=["quadriceps", "glutes"],
            default_intensity=40,
        ),
    }


@pytest.fixture
def session(make_session, templates):
    return make_session("Lower Body Power", templates=list(templates.values()))


@pytest.fixture
def assign(db_session, session):
    def _assign(player_id, status="active", workout_session=None):
        assignment = WorkoutAssignment(
            workout_session_id=(workout_session or session).id,
            player_id=player_id,
            team_id=TEAM_ID,
            organization_id=ORG_ID,
            status=status,
            effective_date=TODAY,
            scheduled_date=TODAY,
        )
        db_session.add(assignment)
        db_session.commit()
        return assignment
    return _assign


@pytest.fixture
def sync(services):
    return services.medical_sync


def knee(player_id="p1", **fields):
    values = dict(restricted_movements=["jumping"], max_exertion_level=80)
    values.update(fields)
    return restriction(player_id, "moderate", **values)


def overrides_for(db_session, player_id):
    return db_session.query(WorkoutPlayerOverride).filter(
        WorkoutPlayerOverride.player_id == player_id
    ).order_by(WorkoutPlayerOverride.effective_date).all()


# ===================================================================
# Snapshot helpers
# ===================================================================


class TestSnapshot:

    def test_combines_most_conservatively(self):
        snapshot = restriction_snapshot([
            knee(),
            restriction("p1", "severe", affected_body_parts=["hamstrings"], max_exertion_level=50,
                        requires_supervision=True),
        ])
        assert snapshot.severity == RestrictionSeverity.SEVERE
        assert snapshot.medical_record_ids == ["rec-p1-moderate", "rec-p1-severe"]
        assert snapshot.restricted_movements == ["jumping"]
        assert snapshot.affected_body_parts == ["hamstrings"]
        assert snapshot.max_exertion_level == 50
        assert snapshot.requires_supervision is True

    def test_open_ended_expiry_wins(self):
        assert combined_expiry([knee(expiry_date=TODAY), knee()]) is None
        assert combined_expiry([knee(expiry_date=TODAY), knee(expiry_date=TODAY + timedelta(days=3))]) == (
            TODAY + timedelta(days=3)
        )


# ===================================================================
# Sync
# ===================================================================


class TestSync:

    def test_creates_one_override_per_assignment(self, sync, db_session, assign, medical_client, templates, transport):
        assign("p1")
        assign("p2")
        medical_client.restrictions = [knee("p1"), knee("p2")]

        result = sync.sync_medical_restrictions(ORG_ID)

        assert (result.synced, result.created, result.updated) == (2, 2, 0)
        [override] = overrides_for(db_session, "p1")
        assert override.status == OverrideStatus.APPROVED.value
        assert override.approved_by == "system"
        assert override.medical_record_id == "rec-p1-moderate"
        assert override.modifications_model.load_multiplier == 0.6
        assert override.modifications_model.exclude_exercises == [str(templates["jump_squats"].id)]
        assert override.metadata_model.source == "medical_staff"

        [payload] = transport.payloads(EVENT_MEDICAL_SYNC_COMPLETED)
        assert payload["created"] == 2

    def test_second_run_updates_in_place(self, sync, db_session, assign, medical_client):
        assign("p1")
        assign("p2")
        medical_client.restrictions = [knee("p1"), knee("p2")]

        sync.sync_medical_restrictions(ORG_ID)
        first_synced_at = overrides_for(db_session, "p1")[0].metadata_model.synced_at
        result = sync.sync_medical_restrictions(ORG_ID)

        assert (result.created, result.updated) == (0, 2)
        assert db_session.query(WorkoutPlayerOverride).count() == 2
        metadata = overrides_for(db_session, "p1")[0].metadata_model
        assert metadata.synced_at == first_synced_at
        assert metadata.last_synced_at >= first_synced_at

    def test_same_day_restrictions_share_one_override(self, sync, db_session, assign, medical_client):
        assign("p1")
        medical_client.restrictions = [
            knee(),
            restriction("p1", "severe", affected_body_parts=["hamstrings"], max_exertion_level=50),
        ]

        result = sync.sync_medical_restrictions(ORG_ID)

        assert result.created == 1
        [override] = overrides_for(db_session, "p1")
        assert override.modifications_model.load_multiplier == 0.3
        assert override.modifications_model.rest_multiplier == 2.0
        assert override.restriction_snapshot.max_exertion_level == 50

    def test_different_days_get_separate_overrides(self, sync, db_session, assign, medical_client):
        assign("p1")
        medical_client.restrictions = [knee(), knee(id="rec-old", effective_date=TODAY - timedelta(days=2))]

        assert sync.sync_medical_restrictions(ORG_ID).created == 2
        assert [o.medical_record_id for o in overrides_for(db_session, "p1")] == ["rec-old", "rec-p1-moderate"]

    def test_only_active_assignments(self, sync, db_session, assign, make_session, medical_client):
        assign("p1", status="cancelled", workout_session=make_session("Other"))
        live = assign("p1")
        medical_client.restrictions = [knee()]

        sync.sync_medical_restrictions(ORG_ID)
        assert [o.workout_assignment_id for o in overrides_for(db_session, "p1")] == [live.id]

    def test_player_filter(self, sync, db_session, assign, medical_client):
        assign("p1")
        assign("p2")
        medical_client.restrictions = [knee("p1"), knee("p2")]

        result = sync.sync_medical_restrictions(ORG_ID, player_ids=["p2"])

        assert result.synced == 1
        assert overrides_for(db_session, "p1") == []

    def test_supervision_needs_approval(self, sync, db_session, assign, medical_client):
        assign("p1")
        medical_client.restrictions = [knee(requires_supervision=True)]

        sync.sync_medical_restrictions(ORG_ID)
        [override] = overrides_for(db_session, "p1")
        assert override.status == OverrideStatus.PENDING.value
        assert override.approved_by is None

    def test_resync_keeps_staff_approval(self, sync, services, db_session, assign, medical_client):
        assign("p1")
        medical_client.restrictions = [knee(requires_supervision=True)]
        sync.sync_medical_restrictions(ORG_ID)
        services.overrides.approve(overrides_for(db_session, "p1")[0].id, "doc-1")

        sync.sync_medical_restrictions(ORG_ID)

        [override] = overrides_for(db_session, "p1")
        assert override.status == OverrideStatus.APPROVED.value
        assert override.approved_by == "doc-1"

    def test_cleared_restriction_expires_override(self, sync, db_session, assign, medical_client):
        assign("p1")
        medical_client.restrictions = [knee()]
        sync.sync_medical_restrictions(ORG_ID)

        medical_client.restrictions = [knee(status="cleared")]
        result = sync.sync_medical_restrictions(ORG_ID, include_expired=True)

        assert result.updated == 1
        assert overrides_for(db_session, "p1")[0].status == OverrideStatus.EXPIRED.value

    def test_expired_restriction_never_creates(self, sync, db_session, assign, medical_client):
        assign("p1")
        medical_client.restrictions = [knee(status="expired")]

        result = sync.sync_medical_restrictions(ORG_ID, include_expired=True)

        assert (result.created, result.updated) == (0, 0)
        assert overrides_for(db_session, "p1") == []

    def test_fetch_failure_propagates(self, sync, assign, medical_client):
        assign("p1")
        medical_client.down = True
        with pytest.raises(UpstreamServiceError):
            sync.sync_medical_restrictions(ORG_ID)


# ===================================================================
# Concerns
# ===================================================================


def concern(session=None, severity=Priority.HIGH, concern_type="injury"):
    return ReportMedicalConcernRequest(
        player_id="p1",
        session_id=session.id if session else None,
        concern_type=concern_type,
        severity=severity,
        description="Sharp pain landing",
        affected_body_parts=["knee"],
        reported_by=USER_ID,
        occurred_at=datetime.now(timezone.utc),
    )


class TestConcerns:

    def test_concern_restricts_session(self, sync, db_session, session, assign, medical_client, transport):
        assign("p1")

        result = sync.report_medical_concern(concern(session))

        assert result.concern_id == "concern-1"
        assert medical_client.concerns[0]["playerId"] == "p1"
        assert medical_client.concerns[0]["affectedBodyParts"] == ["knee"]

        [override] = overrides_for(db_session, "p1")
        assert override.status == OverrideStatus.PENDING.value
        assert override.medical_record_id == "concern-1"
        assert override.expiry_date == TODAY + timedelta(days=7)
        assert override.requires_review is True
        assert override.modifications_model.load_multiplier == 0.5
        assert override.modifications_model.custom_modifications["concern_id"] == "concern-1"
        assert override.metadata_model.related_incident_id == "concern-1"

        assert transport.topics() == [EVENT_MEDICAL_CONCERN_REPORTED, EVENT_INJURY_REPORTED]

    def test_low_severity_only_reports(self, sync, db_session, session, assign, transport):
        assign("p1")

        sync.report_medical_concern(concern(session, severity=Priority.LOW, concern_type="fatigue"))

        assert overrides_for(db_session, "p1") == []
        assert transport.topics() == [EVENT_MEDICAL_CONCERN_REPORTED]

    def test_without_session(self, sync, db_session, assign):
        assign("p1")
        sync.report_medical_concern(concern())
        assert overrides_for(db_session, "p1") == []

    def test_medical_service_down(self, sync, medical_client, session):
        medical_client.down = True
        with pytest.raises(UpstreamServiceError):
            sync.report_medical_concern(concern(session))


# ===================================================================
# Alternatives
# ===================================================================


class TestAlternatives:

    def test_no_restrictions(self, sync, session, fake_redis):
        result = sync.get_exercise_alternatives(GetAlternativesRequest(player_id="p1", workout_id=session.id))

        assert result.alternatives == []
        assert result.load_adjustment == 1.0
        assert result.general_recommendations == ["No active medical restrictions found"]
        assert alternatives_cache_key("p1", session.id) not in fake_redis._store

    def test_workout_alternatives(self, sync, session, templates, medical_client):
        medical_client.restrictions = [knee()]

        result = sync.get_exercise_alternatives(GetAlternativesRequest(player_id="p1", workout_id=session.id))

        assert result.load_adjustment == 0.6
        assert result.rest_adjustment == 1.5
        by_name = {a.original_exercise.name: a for a in result.alternatives}
        assert by_name["Jump Squats"].cannot_perform is True
        assert by_name["Wall Sits"].cannot_perform is False
        assert [a.alternative_name for a in by_name["Jump Squats"].suggested_alternatives] == ["Wall Sits"]

    def test_explicit_exercises(self, sync, templates, medical_client):
        medical_client.restrictions = [knee()]
        request = GetAlternativesRequest(player_id="p1", exercise_ids=[templates["wall_sits"].id])

        result = sync.get_exercise_alternatives(request)
        assert [a.original_exercise.name for a in result.alternatives] == ["Wall Sits"]

    def test_cached(self, sync, session, medical_client, fake_redis):
        medical_client.restrictions = [knee()]
        request = GetAlternativesRequest(player_id="p1", workout_id=session.id)
        first = sync.get_exercise_alternatives(request)

        assert alternatives_cache_key("p1", session.id) in fake_redis._store
        medical_client.restrictions = []
        assert sync.get_exercise_alternatives(request) == first

    def test_falls_back_to_local_overrides(self, sync, assign, medical_client):
        assign("p1")
        medical_client.restrictions = [knee()]
        sync.sync_medical_restrictions(ORG_ID)
        medical_client.down = True

        [local] = sync.player_restrictions("p1")
        assert local.id == "rec-p1-moderate"
        assert local.restricted_movements == ["jumping"]
        assert local.max_exertion_level == 80

    def test_service_down_and_nothing_local(self, sync, medical_client):
        medical_client.down = True
        assert sync.player_restrictions("p1") == []


# ===================================================================
# Manual overrides
# ===================================================================


class TestCreateMedicalOverride:

    def _request(self, assignment, templates, **fields):
        jump_squats = str(templates["jump_squats"].id)
        wall_sits = str(templates["wall_sits"].id)
        values = dict(
            workout_assignment_id=assignment.id,
            player_id="p1",
            medical_record_id="rec-p1-moderate",
            restriction=knee(),
            alternatives=[
                AlternativeExercise(
                    original_exercise_id=jump_squats,
                    alternative_exercise_id=wall_sits,
                    alternative_name="Wall Sits",
                    reason="Similar muscles, no jumping",
                    load_multiplier=0.6,
                    rest_multiplier=1.5,
                    suitability_score=85,
                ),
                AlternativeExercise(
                    original_exercise_id=wall_sits,
                    alternative_exercise_id=wall_sits,
                    reason="Modified in place",
                    load_multiplier=0.6,
                    rest_multiplier=1.5,
                    suitability_score=70,
                ),
            ],
        )
        values.update(fields)
        return CreateMedicalOverrideRequest(**values)

    def test_substitutes_replace_exclusions(self, sync, assign, templates, transport):
        assignment = assign("p1")

        override = sync.create_medical_override(self._request(assignment, templates), USER_ID)

        modifications = override.modifications_model
        [substitution] = modifications.substitute_exercises
        assert substitution.original_exercise_id == str(templates["jump_squats"].id)
        assert substitution.substitute_exercise_id == str(templates["wall_sits"].id)
        assert modifications.exclude_exercises == []
        assert override.status == OverrideStatus.PENDING.value

        [payload] = transport.payloads(EVENT_MEDICAL_OVERRIDE_CREATED)
        assert payload["auto_approved"] is False
        assert payload["severity"] == "moderate"

    def test_auto_approve(self, sync, assign, templates):
        assignment = assign("p1")
        override = sync.create_medical_override(
            self._request(assignment, templates, auto_approve=True, notes="ok to train"), USER_ID
        )
        assert override.status == OverrideStatus.APPROVED.value
        assert override.approved_by == USER_ID
        assert override.approval_notes == "ok to train"

    def test_unknown_assignment(self, sync, assign, templates):
        assignment = assign("p1")
        request = self._request(assignment, templates, workout_assignment_id=uuid.uuid4())
        with pytest.raises(NotFoundError):
            sync.create_medical_override(request)


# ===================================================================
# Event handlers
# ===================================================================


class TestEventHandlers:

    def test_restriction_changed_resyncs_player(self, sync, db_session, assign, medical_client):
        assign("p1")
        assign("p2")
        medical_client.restrictions = [knee("p1"), knee("p2")]

        sync.handle_restriction_changed({"payload": {"playerId": "p1", "details": {"organizationId": ORG_ID}}})

        assert len(overrides_for(db_session, "p1")) == 1
        assert overrides_for(db_session, "p2") == []

    def test_restriction_changed_without_organization(self, sync, db_session, assign, medical_client):
        assign("p1")
        medical_client.restrictions = [knee()]
        sync.handle_restriction_changed({"payload": {"playerId": "p1"}})
        assert overrides_for(db_session, "p1") == []

    def test_restriction_cleared(self, sync, db_session, assign, medical_client):
        assign("p1")
        medical_client.restrictions = [knee()]
        sync.sync_medical_restrictions(ORG_ID)

        sync.handle_restriction_cleared({"payload": {"restrictionId": "rec-p1-moderate"}})

        assert overrides_for(db_session, "p1")[0].status == OverrideStatus.EXPIRED.value

    def test_injury_reported(self, sync, db_session, session, assign, medical_client):
        assign("p1")
        sync.handle_injury_reported({"payload": {
            "playerId": "p1",
            "sessionId": str(session.id),
            "severity": "high",
            "bodyParts": ["ankle"],
            "reportedBy": "physio-1",
        }})

        assert medical_client.concerns[0]["concernType"] == "injury"
        [override] = overrides_for(db_session, "p1")
        assert override.restriction_snapshot.affected_body_parts == ["ankle"]
