"""
Tests for session compliance against medical overrides.
"""

import uuid
from datetime import date

import pytest

from core.exceptions import NotFoundError
from models import WorkoutAssignment
from schemas import OverrideModifications, RestrictionSnapshot
from services.compliance_checker import compliance_cache_key, most_severe
from services.constants import ComplianceStatus, OverrideStatus, OverrideType
from tests.fakes import ORG_ID, TEAM_ID

TODAY = date.today()


@pytest.fixture
def jump_session(make_template, make_session):
    jump_squats = make_template(
        "Jump Squats", "plyometric",
        movement_patterns=["jumping", "squatting"],
        primary_muscles=["quadriceps"],
        default_intensity=85,
    )
    wall_sits = make_template("Wall Sits", "plyometric", movement_patterns=["isometric"], default_intensity=40)
    return make_session("Lower Body Power", templates=[jump_squats, wall_sits])


@pytest.fixture
def assign(db_session):
    def _assign(session, player_id, status="active"):
        assignment = WorkoutAssignment(
            workout_session_id=session.id,
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


def add_override(services, assignment, status=OverrideStatus.APPROVED, **snapshot):
    snapshot.setdefault("severity", "moderate")
    return services.overrides.upsert(
        assignment.id,
        assignment.player_id,
        OverrideType.MEDICAL,
        TODAY,
        status=status,
        medical_record_id=f"rec-{assignment.player_id}",
        modifications=OverrideModifications(load_multiplier=0.6),
        medical_restrictions=RestrictionSnapshot(**snapshot),
    )[0]


class TestMostSevere:

    def test_empty_is_not_applicable(self):
        assert most_severe([]) == ComplianceStatus.NOT_APPLICABLE

    @pytest.mark.parametrize("others", [
        [ComplianceStatus.COMPLIANT],
        [ComplianceStatus.PARTIAL, ComplianceStatus.COMPLIANT],
        [ComplianceStatus.NOT_APPLICABLE, ComplianceStatus.PARTIAL],
    ])
    def test_non_compliant_dominates(self, others):
        assert most_severe(others + [ComplianceStatus.NON_COMPLIANT]) == ComplianceStatus.NON_COMPLIANT

    def test_partial_beats_compliant(self):
        assert most_severe([ComplianceStatus.COMPLIANT, ComplianceStatus.PARTIAL]) == ComplianceStatus.PARTIAL


class TestCheckCompliance:

    def test_no_restrictions_is_not_applicable(self, services, jump_session, assign):
        assign(jump_session, "p1")
        result = services.compliance.check_compliance(jump_session.id, detailed=True)

        assert result.overall_status == ComplianceStatus.NOT_APPLICABLE
        assert result.requires_approval is False
        assert [p.player_id for p in result.player_compliance] == ["p1"]

    def test_unknown_session(self, services):
        with pytest.raises(NotFoundError):
            services.compliance.check_compliance(uuid.uuid4())

    def test_restricted_movement_is_non_compliant(self, services, jump_session, assign):
        assign(jump_session, "p1")
        assignment = assign(jump_session, "p2")
        add_override(services, assignment, restricted_movements=["jumping"])

        result = services.compliance.check_compliance(jump_session.id, detailed=True)

        assert result.overall_status == ComplianceStatus.NON_COMPLIANT
        assert result.requires_approval is True
        assert result.approval_status == "pending"
        p2 = next(p for p in result.player_compliance if p.player_id == "p2")
        assert [v.violation_type.value for v in p2.violations] == ["movement"]
        assert p2.violations[0].exercise_name == "Jump Squats"
        assert "Reduce workout load to 60% of prescribed" in p2.recommendations

    def test_intensity_and_supervision_violations(self, services, jump_session, assign):
        assignment = assign(jump_session, "p1")
        add_override(services, assignment, max_exertion_level=70, requires_supervision=True)

        result = services.compliance.check_compliance(jump_session.id, player_id="p1", detailed=True)
        kinds = sorted(v.violation_type.value for v in result.player_compliance[0].violations)

        # Jump Squats breaks the ceiling; both exercises lack supervision
        assert kinds == ["intensity", "supervision", "supervision"]

    def test_summary_check_reports_no_violations(self, services, jump_session, assign):
        assignment = assign(jump_session, "p1")
        add_override(services, assignment, restricted_movements=["jumping"])

        result = services.compliance.check_compliance(jump_session.id, detailed=False)
        assert result.player_compliance[0].violations == []
        assert result.overall_status == ComplianceStatus.COMPLIANT

    def test_pending_override_is_partial(self, services, jump_session, assign):
        assignment = assign(jump_session, "p1")
        add_override(services, assignment, status=OverrideStatus.PENDING)

        result = services.compliance.check_compliance(jump_session.id)
        assert result.overall_status == ComplianceStatus.PARTIAL

    def test_cancelled_assignments_are_ignored(self, services, jump_session, assign):
        assignment = assign(jump_session, "p1", status="cancelled")
        add_override(services, assignment, restricted_movements=["jumping"])

        result = services.compliance.check_compliance(jump_session.id, detailed=True)
        assert result.player_compliance == []

    def test_result_is_cached_and_invalidated(self, services, jump_session, assign, fake_redis):
        assignment = assign(jump_session, "p1")
        services.compliance.check_compliance(jump_session.id, player_id="p1")
        assert compliance_cache_key(jump_session.id, "p1") in fake_redis._store

        add_override(services, assignment, restricted_movements=["jumping"])
        assert compliance_cache_key(jump_session.id, "p1") not in fake_redis._store

        result = services.compliance.check_compliance(jump_session.id, player_id="p1", detailed=True)
        assert result.overall_status == ComplianceStatus.NON_COMPLIANT


class TestBulkCompliance:

    def test_unknown_sessions_are_skipped(self, services, jump_session, assign):
        assign(jump_session, "p1")
        results = services.compliance.check_bulk_compliance([jump_session.id, uuid.uuid4()])
        assert [r.session_id for r in results] == [jump_session.id]
