"""
Tests for the planning phase adjuster

Covers:
  1. Load, frequency and intensity adjustments
  2. Re-running a phase and switching phases (no compounding)
  3. Planning data caching and the stale fallback during outages
  4. Workload reduction and the consumed planning events
"""

from datetime import date, timedelta

import pytest

from core.events import EVENT_ASSIGNMENT_PHASE_ADJUSTED, EVENT_PHASE_ADJUSTMENTS_APPLIED
from core.exceptions import NotFoundError
from models import WorkoutAssignment
from schemas import PlanningPhase
from services.planning_phase_adjuster import assignment_frequency, frequency_interval
from tests.fakes import ORG_ID, TEAM_ID

TODAY = date.today()


def phase(phase_id="phase-1", **fields):
    values = dict(
        id=phase_id,
        name="Pre-season",
        start_date=TODAY - timedelta(days=14),
        end_date=TODAY + timedelta(days=14),
        load_multiplier=0.8,
        training_frequency=3.5,
        intensity="high",
    )
    values.update(fields)
    return PlanningPhase(**values)


@pytest.fixture
def adjuster(services):
    return services.phase_adjuster


@pytest.fixture
def make_assignment(db_session, make_session):
    session = make_session()

    def _make(player_id="p1", day=TODAY, **fields):
        values = dict(
            workout_session_id=session.id,
            player_id=player_id,
            team_id=TEAM_ID,
            organization_id=ORG_ID,
            status="active",
            effective_date=day,
            scheduled_date=day,
            recurrence_type="weekly",
            recurrence_pattern={"interval": 1, "days_of_week": [0, 2, 4]},
            load_progression={"base_load": 100, "progression_type": "linear"},
            performance_thresholds={"target_heart_rate_zone": {"min": 120, "max": 160}},
        )
        values.update(fields)
        assignment = WorkoutAssignment(**values)
        db_session.add(assignment)
        db_session.commit()
        return assignment
    return _make


# ===================================================================
# Helpers
# ===================================================================


class TestFrequency:

    @pytest.mark.parametrize("per_week, interval", [(7, 1), (3.5, 2), (2, 4), (1, 7), (14, 1)])
    def test_interval(self, per_week, interval):
        assert frequency_interval(per_week) == interval

    def test_weekly_frequency_counts_days(self, make_assignment):
        assert assignment_frequency(make_assignment()) == 3

    def test_one_off_assignment(self, make_assignment):
        assert assignment_frequency(make_assignment(recurrence_type="none", recurrence_pattern=None)) == 1


# ===================================================================
# Adjustments
# ===================================================================


class TestApplyPhase:

    def test_adjusts_load_frequency_and_intensity(self, adjuster, planning_client, make_assignment, transport):
        planning_client.phase = phase()
        assignment = make_assignment()

        summary = adjuster.apply_phase_adjustments(TEAM_ID, "phase-1")

        assert (summary.updated, summary.skipped, summary.errors) == (1, 0, [])
        assert assignment.load_progression["base_load"] == 80
        assert assignment.recurrence_pattern["interval"] == 2
        assert assignment.performance_thresholds["target_heart_rate_zone"]["max"] == 192

        metadata = assignment.metadata_model
        assert metadata.planning_phase_id == "phase-1"
        assert [e.kind for e in metadata.phase_adjustments] == ["load", "frequency", "intensity"]
        assert metadata.original_planning_data.base_load == 100

        [payload] = transport.payloads(EVENT_ASSIGNMENT_PHASE_ADJUSTED)
        assert payload["adjustments"] == ["load", "frequency", "intensity"]
        assert len(transport.payloads(EVENT_PHASE_ADJUSTMENTS_APPLIED)) == 1

    def test_rerun_is_a_no_op(self, adjuster, planning_client, make_assignment, transport):
        planning_client.phase = phase()
        assignment = make_assignment()

        adjuster.apply_phase_adjustments(TEAM_ID, "phase-1")
        summary = adjuster.apply_phase_adjustments(TEAM_ID, "phase-1")

        assert (summary.updated, summary.skipped) == (0, 1)
        assert assignment.load_progression["base_load"] == 80
        assert len(assignment.metadata_model.phase_adjustments) == 3
        assert len(transport.payloads(EVENT_PHASE_ADJUSTMENTS_APPLIED)) == 1

    def test_switching_phase_does_not_compound(self, adjuster, planning_client, make_assignment):
        planning_client.phase = phase()
        assignment = make_assignment()
        adjuster.apply_phase_adjustments(TEAM_ID, "phase-1")

        planning_client.phase = phase("phase-2", load_multiplier=1.1, intensity="recovery")
        adjuster.invalidate_team(TEAM_ID)
        adjuster.apply_phase_adjustments(TEAM_ID, "phase-2")

        assert assignment.load_progression["base_load"] == 110
        assert assignment.performance_thresholds["target_heart_rate_zone"]["max"] == 96
        load_entries = [e for e in assignment.metadata_model.phase_adjustments if e.kind == "load"]
        assert [(e.original_value, e.adjusted_value) for e in load_entries] == [(100, 80), (80, 110)]

    def test_only_assignments_in_window(self, adjuster, planning_client, make_assignment):
        planning_client.phase = phase()
        inside = make_assignment("p1")
        outside = make_assignment("p2", day=TODAY + timedelta(days=30))

        adjuster.apply_phase_adjustments(TEAM_ID, "phase-1")

        assert inside.load_progression["base_load"] == 80
        assert outside.load_progression["base_load"] == 100

    def test_player_filter(self, adjuster, planning_client, make_assignment):
        planning_client.phase = phase()
        make_assignment("p1")
        other = make_assignment("p2")

        summary = adjuster.apply_phase_adjustments(TEAM_ID, "phase-1", player_ids=["p1"])

        assert summary.updated == 1
        assert other.metadata_model.planning_phase_id is None

    def test_missing_fields_are_left_alone(self, adjuster, planning_client, make_assignment):
        planning_client.phase = phase()
        assignment = make_assignment(load_progression=None, performance_thresholds=None)

        adjuster.apply_phase_adjustments(TEAM_ID, "phase-1")

        assert assignment.load_progression is None
        assert [e.kind for e in assignment.metadata_model.phase_adjustments] == ["frequency"]

    def test_assignments_by_phase(self, services, adjuster, planning_client, make_assignment):
        planning_client.phase = phase()
        tagged = make_assignment("p1")
        make_assignment("p2", day=TODAY + timedelta(days=30))
        adjuster.apply_phase_adjustments(TEAM_ID, "phase-1")

        found = services.engine.get_assignments_by_phase(TEAM_ID, "phase-1")
        assert [a.id for a in found] == [tagged.id]
        assert services.engine.get_assignments_by_phase(TEAM_ID, "phase-9") == []

    def test_phase_must_be_current(self, adjuster, planning_client, make_assignment):
        planning_client.phase = phase()
        with pytest.raises(NotFoundError):
            adjuster.apply_phase_adjustments(TEAM_ID, "phase-0")

    def test_sync_without_phase(self, adjuster, planning_client):
        summary = adjuster.sync_phase_updates(TEAM_ID)
        assert summary.phase_id is None
        assert summary.updated == 0


# ===================================================================
# Planning data cache
# ===================================================================


class TestPlanningCache:

    def test_phase_is_cached(self, adjuster, planning_client):
        planning_client.phase = phase()
        adjuster.get_current_phase(TEAM_ID)
        adjuster.get_current_phase(TEAM_ID)
        assert planning_client.phase_calls == 1

    def test_stale_copy_served_during_outage(self, adjuster, planning_client):
        planning_client.phase = phase()
        adjuster.get_current_phase(TEAM_ID)
        adjuster.invalidate_team(TEAM_ID)
        planning_client.down = True

        assert adjuster.get_current_phase(TEAM_ID).id == "phase-1"

    def test_outage_with_nothing_cached(self, adjuster, planning_client):
        planning_client.down = True
        assert adjuster.get_current_phase(TEAM_ID) is None
        assert adjuster.get_season_plan(TEAM_ID) is None

    def test_template_outage(self, adjuster, planning_client):
        planning_client.down = True
        assert adjuster.get_template("tpl-1") is None


# ===================================================================
# Workload and events
# ===================================================================


class TestWorkloadReduction:

    def test_reduces_upcoming_assignments(self, adjuster, make_assignment):
        upcoming = make_assignment("p1")
        past = make_assignment("p1", day=TODAY - timedelta(days=3))

        assert adjuster.apply_workload_reduction(["p1"], reduction=0.25) == 1
        assert upcoming.load_progression["base_load"] == 75
        assert past.load_progression["base_load"] == 100
        [entry] = upcoming.metadata_model.phase_adjustments
        assert entry.kind == "workload"
        assert entry.reduction == 0.25

    def test_no_players(self, adjuster):
        assert adjuster.apply_workload_reduction([]) == 0


class TestEventHandlers:

    def test_phase_changed_refreshes_and_applies(self, adjuster, planning_client, make_assignment):
        planning_client.phase = phase()
        assignment = make_assignment()
        adjuster.get_current_phase(TEAM_ID)

        planning_client.phase = phase("phase-2", load_multiplier=0.5)
        adjuster.handle_phase_changed({"payload": {"teamId": TEAM_ID, "phaseId": "phase-2"}})

        assert assignment.metadata_model.planning_phase_id == "phase-2"
        assert assignment.load_progression["base_load"] == 50

    def test_phase_changed_without_team(self, adjuster, planning_client):
        adjuster.handle_phase_changed({"payload": {}})
        assert planning_client.phase_calls == 0

    def test_workload_breach_accepts_percentages(self, adjuster, planning_client, make_assignment):
        assignment = make_assignment("p2")
        adjuster.handle_workload_breach({
            "payload": {"teamId": TEAM_ID, "playerId": "p2", "recommendedReduction": 30}
        })
        assert assignment.load_progression["base_load"] == 70
        assert planning_client.analysis_requests == []

    def test_workload_breach_asks_planning_for_reduction(self, adjuster, planning_client, make_assignment):
        planning_client.analysis = {"recommendedReduction": 0.4}
        assignment = make_assignment("p2")

        adjuster.handle_workload_breach({"payload": {"teamId": TEAM_ID, "playerIds": ["p2"]}})

        assert planning_client.analysis_requests == [{"teamId": TEAM_ID, "playerIds": ["p2"]}]
        assert assignment.load_progression["base_load"] == 60

    def test_workload_breach_default_when_analysis_down(self, adjuster, planning_client, make_assignment):
        planning_client.down = True
        assignment = make_assignment("p2")

        adjuster.handle_workload_breach({"payload": {"playerId": "p2"}})

        assert assignment.load_progression["base_load"] == 80

    def test_template_applied_drops_cached_template(self, adjuster, planning_client, cache, fake_redis):
        planning_client.template = {"id": "tpl-1", "name": "Strength block"}
        adjuster.get_template("tpl-1")
        assert "planning:template:tpl-1" in fake_redis._store

        adjuster.handle_template_applied({"payload": {"templateId": "tpl-1", "teamId": TEAM_ID}})
        assert "planning:template:tpl-1" not in fake_redis._store
