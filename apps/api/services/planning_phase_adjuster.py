"""
Planning Phase Adjuster

Keeps active assignments in step with the team's season plan. For each
assignment inside the current phase window it rewrites, independently:

- load:       load_progression.base_load = round(original * phase.load_multiplier)
- frequency:  recurrence_pattern.interval = max(1, round(7 / phase.training_frequency))
- intensity:  target heart-rate max = round(original max * INTENSITY_MULTIPLIERS[phase.intensity])

Multipliers apply to the values recorded before any planning adjustment, so
moving between phases never compounds. Every change is appended to the
assignment's metadata history and the assignment is tagged with the phase
id; an assignment already tagged with the current phase is left alone,
which makes re-running a phase a no-op.

Planning data is read through the cache (phase 1 h, season plan 2 h). A
longer-lived stale copy is served when the planning service is down; with
nothing cached the adjuster returns None and training carries on unadjusted.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from core.cache import CacheClient
from core.config import settings
from core.events import EVENT_ASSIGNMENT_PHASE_ADJUSTED, EVENT_PHASE_ADJUSTMENTS_APPLIED
from core.exceptions import NotFoundError, UpstreamServiceError
from models import WorkoutAssignment
from schemas import (
    FrequencyAdjustment,
    IntensityAdjustment,
    LoadAdjustment,
    OriginalPlanningData,
    PhaseAdjustmentSummary,
    PlanningPhase,
    SeasonPlan,
    WorkloadAdjustment,
)
from services.constants import (
    DEFAULT_WORKLOAD_REDUCTION,
    INTENSITY_MULTIPLIERS,
    AssignmentStatus,
    PhaseIntensity,
    RecurrenceType,
)
from services.rounding import round_half_up

logger = logging.getLogger(__name__)


def _phase_key(team_id: str) -> str:
    return f"planning:phase:{team_id}"


def _season_plan_key(team_id: str) -> str:
    return f"planning:season_plan:{team_id}"


def _template_key(template_id: str) -> str:
    return f"planning:template:{template_id}"


def _stale(key: str) -> str:
    return f"{key}:stale"


def _field(payload: Dict[str, Any], *names: str, default=None):
    """Read the first present key; collaborators send camelCase, we accept both."""
    for name in names:
        if payload.get(name) is not None:
            return payload[name]
    return default


def assignment_frequency(assignment: WorkoutAssignment) -> float:
    """Sessions per week implied by the assignment's recurrence."""
    pattern = assignment.recurrence_pattern or {}
    if not pattern or assignment.recurrence_type == RecurrenceType.NONE.value:
        return 1
    if assignment.recurrence_type == RecurrenceType.WEEKLY.value:
        return len(pattern.get("days_of_week") or []) or 1
    if assignment.recurrence_type == RecurrenceType.DAILY.value:
        return 7 / (pattern.get("interval") or 1)
    return 1


def frequency_interval(training_frequency: float) -> int:
    return max(1, round_half_up(7 / training_frequency))


class PlanningPhaseAdjuster:
    def __init__(
        self,
        db: Session,
        planning_client,
        cache: Optional[CacheClient] = None,
        publisher=None,
    ):
        self.db = db
        self.planning = planning_client
        self.cache = cache
        self.publisher = publisher

    # =========================================================================
    # Planning data (cache-backed, stale-tolerant)
    # =========================================================================

    def _cached_fetch(self, key: str, ttl: int, fetch, model_cls):
        if self.cache:
            cached = self.cache.get(key)
            if cached:
                return model_cls.model_validate(cached)

        try:
            fresh = fetch()
        except UpstreamServiceError as e:
            stale = self.cache.get(_stale(key)) if self.cache else None
            if stale:
                logger.warning(f"Planning service unavailable ({e.detail}); serving stale {key}")
                return model_cls.model_validate(stale)
            logger.warning(f"Planning service unavailable ({e.detail}); no planning data for {key}")
            return None

        if fresh is not None and self.cache:
            data = fresh.model_dump(mode="json")
            self.cache.set(key, data, ttl)
            self.cache.set(_stale(key), data, settings.PLANNING_STALE_CACHE_TTL_S)
        return fresh

    def get_current_phase(self, team_id: str) -> Optional[PlanningPhase]:
        return self._cached_fetch(
            _phase_key(team_id),
            settings.PLANNING_PHASE_CACHE_TTL_S,
            lambda: self.planning.get_current_phase(team_id),
            PlanningPhase,
        )

    def get_season_plan(self, team_id: str) -> Optional[SeasonPlan]:
        return self._cached_fetch(
            _season_plan_key(team_id),
            settings.SEASON_PLAN_CACHE_TTL_S,
            lambda: self.planning.get_season_plan(team_id),
            SeasonPlan,
        )

    def get_template(self, template_id: str) -> Optional[Dict[str, Any]]:
        key = _template_key(template_id)
        if self.cache:
            cached = self.cache.get(key)
            if cached:
                return cached
        try:
            template = self.planning.get_template(template_id)
        except UpstreamServiceError as e:
            logger.warning(f"Could not load planning template {template_id}: {e.detail}")
            return None
        if template and self.cache:
            self.cache.set(key, template, settings.PLANNING_PHASE_CACHE_TTL_S)
        return template

    def recommended_reduction(self, player_ids: Sequence[str], team_id: Optional[str] = None) -> float:
        """Ask planning for a load cut; fall back to the default when it cannot answer."""
        try:
            analysis = self.planning.analyze_workload({"teamId": team_id, "playerIds": list(player_ids)})
        except UpstreamServiceError as e:
            logger.warning(f"Workload analysis unavailable, using default reduction: {e.detail}")
            return DEFAULT_WORKLOAD_REDUCTION
        return _field(analysis, "recommendedReduction", "recommended_reduction", default=DEFAULT_WORKLOAD_REDUCTION)

    def invalidate_team(self, team_id: str) -> None:
        """Drop the fresh copies; stale copies stay as the outage fallback."""
        if self.cache:
            self.cache.delete(_phase_key(team_id))
            self.cache.delete(_season_plan_key(team_id))

    # =========================================================================
    # Adjustments
    # =========================================================================

    def adjust_assignment(
        self, assignment: WorkoutAssignment, phase: PlanningPhase, applied_by: str = "system"
    ) -> List:
        """
        Apply ``phase`` to one assignment in memory (caller commits).

        Returns the history entries appended; empty when no adjustable field
        is present. The assignment is tagged with the phase id either way.
        """
        metadata = assignment.metadata_model
        now = datetime.now(timezone.utc)
        load_progression = dict(assignment.load_progression or {})
        recurrence = dict(assignment.recurrence_pattern or {})
        thresholds = dict(assignment.performance_thresholds or {})
        zone = dict(thresholds.get("target_heart_rate_zone") or {})

        if metadata.original_planning_data is None:
            metadata.original_planning_data = OriginalPlanningData(
                base_load=load_progression.get("base_load"),
                original_frequency=assignment_frequency(assignment),
                original_intensity=zone or None,
            )
        original = metadata.original_planning_data
        common = {"applied_at": now, "applied_by": applied_by, "phase_id": phase.id}
        entries = []

        current_load = load_progression.get("base_load")
        if current_load is not None and phase.load_multiplier is not None:
            basis = original.base_load if original.base_load is not None else current_load
            adjusted = round_half_up(basis * phase.load_multiplier)
            entries.append(LoadAdjustment(
                original_value=current_load,
                adjusted_value=adjusted,
                reason=f"Phase {phase.name or phase.id} load multiplier: {phase.load_multiplier:g}",
                **common,
            ))
            load_progression["base_load"] = adjusted
            assignment.load_progression = load_progression

        if recurrence and phase.training_frequency:
            current_interval = recurrence.get("interval") or 1
            adjusted = frequency_interval(phase.training_frequency)
            entries.append(FrequencyAdjustment(
                original_value=current_interval,
                adjusted_value=adjusted,
                reason=f"Phase {phase.name or phase.id} training frequency: {phase.training_frequency:g}/week",
                **common,
            ))
            recurrence["interval"] = adjusted
            assignment.recurrence_pattern = recurrence

        if zone.get("max") is not None and phase.intensity:
            intensity = PhaseIntensity(phase.intensity)
            basis = original.original_intensity.max if original.original_intensity else zone["max"]
            adjusted = round_half_up(basis * INTENSITY_MULTIPLIERS[intensity])
            entries.append(IntensityAdjustment(
                original_value=zone["max"],
                adjusted_value=adjusted,
                intensity=intensity,
                reason=f"Phase {phase.name or phase.id} intensity: {intensity.value}",
                **common,
            ))
            zone["max"] = adjusted
            thresholds["target_heart_rate_zone"] = zone
            assignment.performance_thresholds = thresholds

        metadata.planning_phase_id = phase.id
        metadata.last_phase_adjustment = now
        metadata.phase_adjustments.extend(entries)
        assignment.metadata_model = metadata
        return entries

    def _phase_assignments(self, team_id: str, phase: PlanningPhase, player_ids: Optional[Sequence[str]] = None):
        query = self.db.query(WorkoutAssignment).filter(
            WorkoutAssignment.team_id == team_id,
            WorkoutAssignment.status == AssignmentStatus.ACTIVE.value,
            WorkoutAssignment.player_id.isnot(None),
            WorkoutAssignment.effective_date >= phase.start_date,
            WorkoutAssignment.effective_date <= phase.end_date,
        )
        if player_ids:
            query = query.filter(WorkoutAssignment.player_id.in_(list(player_ids)))
        return query.order_by(WorkoutAssignment.effective_date).all()

    def _publish(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.publisher:
            self.publisher.publish(topic, payload)

    def _invalidate_player(self, player_id: Optional[str]) -> None:
        if self.cache and player_id:
            self.cache.invalidate_pattern(f"player_assignments:{player_id}:*")

    def apply_phase_adjustments(
        self,
        team_id: str,
        phase_id: str,
        player_ids: Optional[Sequence[str]] = None,
    ) -> PhaseAdjustmentSummary:
        """
        Adjust the team's active assignments inside the phase window.

        ``phase_id`` must be the team's current phase. Assignments already
        tagged with it are skipped.
        """
        phase = self.get_current_phase(team_id)
        if phase is None or phase.id != phase_id:
            raise NotFoundError("Current planning phase", f"{phase_id} for team {team_id}")

        summary = PhaseAdjustmentSummary(team_id=team_id, phase_id=phase.id)
        for assignment in self._phase_assignments(team_id, phase, player_ids):
            if assignment.metadata_model.planning_phase_id == phase.id:
                summary.skipped += 1
                continue
            try:
                entries = self.adjust_assignment(assignment, phase)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"Phase adjustment failed for assignment {assignment.id}: {e}")
                summary.errors.append(f"Assignment {assignment.id}: {e}")
                continue

            summary.updated += 1
            self._invalidate_player(assignment.player_id)
            self._publish(EVENT_ASSIGNMENT_PHASE_ADJUSTED, {
                "assignment_id": str(assignment.id),
                "team_id": team_id,
                "player_id": assignment.player_id,
                "phase_id": phase.id,
                "adjustments": [entry.kind for entry in entries],
            })

        if summary.updated:
            self._publish(EVENT_PHASE_ADJUSTMENTS_APPLIED, summary.model_dump(mode="json"))
        logger.info(
            f"Phase {phase.id} for team {team_id}: updated={summary.updated} "
            f"skipped={summary.skipped} errors={len(summary.errors)}"
        )
        return summary

    def sync_phase_updates(self, team_id: str) -> PhaseAdjustmentSummary:
        """Re-apply the current phase; only assignments tagged with another phase change."""
        phase = self.get_current_phase(team_id)
        if phase is None:
            logger.info(f"No current planning phase for team {team_id}; nothing to sync")
            return PhaseAdjustmentSummary(team_id=team_id)
        return self.apply_phase_adjustments(team_id, phase.id)

    def apply_workload_reduction(
        self,
        player_ids: Sequence[str],
        reduction: float = DEFAULT_WORKLOAD_REDUCTION,
        team_id: Optional[str] = None,
        reason: str = "Workload threshold breach",
        today: Optional[date] = None,
    ) -> int:
        """Cut base load of the players' current and upcoming active assignments."""
        if not player_ids:
            return 0
        reduction = min(max(reduction, 0.0), 1.0)
        day = today or date.today()
        query = self.db.query(WorkoutAssignment).filter(
            WorkoutAssignment.player_id.in_(list(player_ids)),
            WorkoutAssignment.status == AssignmentStatus.ACTIVE.value,
            WorkoutAssignment.scheduled_date >= day,
        )
        if team_id:
            query = query.filter(WorkoutAssignment.team_id == team_id)

        updated = 0
        for assignment in query.all():
            load_progression = dict(assignment.load_progression or {})
            current = load_progression.get("base_load")
            if current is None:
                continue
            adjusted = round_half_up(current * (1 - reduction))
            load_progression["base_load"] = adjusted
            assignment.load_progression = load_progression

            metadata = assignment.metadata_model
            metadata.phase_adjustments.append(WorkloadAdjustment(
                applied_at=datetime.now(timezone.utc),
                phase_id=metadata.planning_phase_id,
                reason=reason,
                original_value=current,
                adjusted_value=adjusted,
                reduction=reduction,
            ))
            assignment.metadata_model = metadata
            self.db.commit()
            updated += 1
            self._invalidate_player(assignment.player_id)
        return updated

    # =========================================================================
    # Event handlers
    # =========================================================================

    def handle_phase_changed(self, envelope: Dict[str, Any]) -> None:
        payload = envelope.get("payload", envelope)
        team_id = _field(payload, "teamId", "team_id")
        if not team_id:
            logger.warning("Phase change event without team id; ignoring")
            return
        self.invalidate_team(team_id)
        self.sync_phase_updates(team_id)

    def handle_season_plan_updated(self, envelope: Dict[str, Any]) -> None:
        self.handle_phase_changed(envelope)

    def handle_workload_breach(self, envelope: Dict[str, Any]) -> None:
        payload = envelope.get("payload", envelope)
        player_ids = _field(payload, "playerIds", "player_ids", default=[])
        single = _field(payload, "playerId", "player_id")
        if single and single not in player_ids:
            player_ids = [*player_ids, single]
        team_id = _field(payload, "teamId", "team_id")
        reduction = _field(payload, "recommendedReduction", "recommended_reduction")
        if reduction is None:
            reduction = self.recommended_reduction(player_ids, team_id)
        if reduction > 1:
            reduction = reduction / 100  # sent as a percentage
        updated = self.apply_workload_reduction(
            player_ids,
            reduction=reduction,
            team_id=team_id,
            reason=_field(payload, "reason", default="Workload threshold breach"),
        )
        logger.info(f"Workload breach: reduced load on {updated} assignments for {len(player_ids)} players")

    def handle_template_applied(self, envelope: Dict[str, Any]) -> None:
        payload = envelope.get("payload", envelope)
        template_id = _field(payload, "templateId", "template_id")
        if template_id and self.cache:
            self.cache.delete(_template_key(template_id))
        team_id = _field(payload, "teamId", "team_id")
        if team_id:
            self.invalidate_team(team_id)
