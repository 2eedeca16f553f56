"""
Compliance Checker

Cross-references a workout session's assignments, the session's exercises
and each player's active medical overrides, producing a verdict per player
and a rolled-up verdict for the session:

    not_applicable  no active medical override
    compliant       overrides exist, all approved, nothing violated
    partial         overrides exist, nothing violated, some still pending
    non_compliant   at least one exercise violates an override

The session verdict is the most severe player verdict. Results are cached
per (session, player | "all"); the override store drops those keys on write.
"""

import logging
from datetime import date, datetime, timezone
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from core.cache import CacheClient
from core.config import settings
from core.exceptions import NotFoundError
from models import ExerciseTemplate, SessionExercise, WorkoutAssignment, WorkoutPlayerOverride, WorkoutSession
from schemas import ComplianceResult, ComplianceViolation, PlayerCompliance
from services import restriction_mapper
from services.constants import (
    COMPLIANCE_RANK,
    AssignmentStatus,
    ComplianceStatus,
    OverrideStatus,
    RestrictionSeverity,
    ViolationType,
)
from services.override_store import MedicalOverrideStore

logger = logging.getLogger(__name__)

_CLOSED_STATUSES = (AssignmentStatus.CANCELLED.value, AssignmentStatus.ARCHIVED.value)


def compliance_cache_key(session_id, player_id: Optional[str] = None, detailed: bool = False) -> str:
    return f"medical:compliance:{session_id}:{player_id or 'all'}:{'detailed' if detailed else 'summary'}"


def most_severe(statuses: Sequence[ComplianceStatus]) -> ComplianceStatus:
    """Session verdict: non_compliant > partial > compliant > not_applicable."""
    if not statuses:
        return ComplianceStatus.NOT_APPLICABLE
    return max(statuses, key=lambda s: COMPLIANCE_RANK[ComplianceStatus(s)])


def exercise_violations(
    exercise: SessionExercise,
    template: Optional[ExerciseTemplate],
    override: WorkoutPlayerOverride,
) -> List[ComplianceViolation]:
    """Violations of one override by one session exercise."""
    snapshot = override.restriction_snapshot
    severity = snapshot.severity or restriction_mapper.priority_to_severity(override.metadata_model.priority)
    excluded = set(override.modifications_model.exclude_exercises)
    exercise_ids = {str(exercise.id)}
    if exercise.exercise_template_id:
        exercise_ids.add(str(exercise.exercise_template_id))

    def violation(kind: ViolationType, description: str, sev=severity) -> ComplianceViolation:
        return ComplianceViolation(
            restriction_id=override.medical_record_id,
            exercise_id=str(exercise.exercise_template_id or exercise.id),
            exercise_name=exercise.name,
            violation_type=kind,
            description=description,
            severity=sev,
        )

    violations = []
    if exercise_ids & excluded:
        violations.append(violation(
            ViolationType.MOVEMENT,
            f'Exercise "{exercise.name}" is restricted due to medical condition',
        ))

    if template is not None:
        restricted = set(snapshot.restricted_movements) & set(template.movement_patterns or [])
        if restricted:
            violations.append(violation(
                ViolationType.MOVEMENT,
                f"Exercise contains restricted movement patterns: {', '.join(sorted(restricted))}",
            ))
        ceiling = snapshot.max_exertion_level
        if ceiling is not None and (template.default_intensity or 0) > ceiling:
            violations.append(violation(
                ViolationType.INTENSITY,
                f"Exercise intensity ({template.default_intensity:g}%) exceeds maximum allowed ({ceiling:g}%)",
            ))

    if snapshot.requires_supervision and not exercise.requires_supervision:
        violations.append(violation(
            ViolationType.SUPERVISION,
            "Exercise requires supervision due to medical restriction",
            RestrictionSeverity.MODERATE,
        ))
    return violations


def override_recommendations(override: WorkoutPlayerOverride) -> List[str]:
    modifications = override.modifications_model
    snapshot = override.restriction_snapshot
    recommendations = []
    if modifications.exempt:
        recommendations.append(
            f"Player should be exempted from this workout due to {snapshot.restriction_type}"
        )
    elif modifications.load_multiplier is not None and modifications.load_multiplier < 1:
        recommendations.append(
            f"Reduce workout load to {modifications.load_multiplier * 100:g}% of prescribed"
        )
    if snapshot.requires_supervision:
        recommendations.append("This player requires direct supervision during workout")
    return recommendations


class ComplianceChecker:
    def __init__(self, db: Session, override_store: MedicalOverrideStore, cache: Optional[CacheClient] = None):
        self.db = db
        self.override_store = override_store
        self.cache = cache
        self.ttl = settings.COMPLIANCE_CACHE_TTL_S

    def _session_exercises(self, session_id: UUID):
        exercises = self.db.query(SessionExercise).filter(
            SessionExercise.workout_session_id == session_id
        ).order_by(SessionExercise.order_index).all()
        template_ids = [e.exercise_template_id for e in exercises if e.exercise_template_id]
        templates = {}
        if template_ids:
            templates = {
                t.id: t for t in self.db.query(ExerciseTemplate).filter(ExerciseTemplate.id.in_(template_ids)).all()
            }
        return [(e, templates.get(e.exercise_template_id)) for e in exercises]

    def player_compliance(
        self,
        assignment: WorkoutAssignment,
        player_id: str,
        exercises,
        detailed: bool,
        today: Optional[date] = None,
    ) -> PlayerCompliance:
        overrides = self.override_store.active_medical_overrides(
            player_id=player_id, workout_assignment_id=assignment.id, on=today
        )
        if not overrides:
            return PlayerCompliance(
                player_id=player_id,
                assignment_id=assignment.id,
                status=ComplianceStatus.NOT_APPLICABLE,
            )

        restrictions = []
        violations: List[ComplianceViolation] = []
        recommendations: List[str] = []
        for override in overrides:
            restrictions.append(restriction_mapper.override_to_restriction(override))
            if detailed:
                for exercise, template in exercises:
                    violations.extend(exercise_violations(exercise, template, override))
            for recommendation in override_recommendations(override):
                if recommendation not in recommendations:
                    recommendations.append(recommendation)

        if violations:
            status = ComplianceStatus.NON_COMPLIANT
        elif any(o.status == OverrideStatus.PENDING.value for o in overrides):
            status = ComplianceStatus.PARTIAL
        else:
            status = ComplianceStatus.COMPLIANT

        return PlayerCompliance(
            player_id=player_id,
            assignment_id=assignment.id,
            status=status,
            restrictions=restrictions,
            violations=violations,
            recommendations=recommendations,
        )

    def check_compliance(
        self,
        session_id: UUID,
        player_id: Optional[str] = None,
        detailed: bool = False,
    ) -> ComplianceResult:
        key = compliance_cache_key(session_id, player_id, detailed)
        if self.cache:
            cached = self.cache.get(key)
            if cached:
                return ComplianceResult.model_validate(cached)

        session = self.db.query(WorkoutSession).filter(WorkoutSession.id == session_id).first()
        if not session:
            raise NotFoundError("Workout session", str(session_id))

        query = self.db.query(WorkoutAssignment).filter(
            WorkoutAssignment.workout_session_id == session_id,
            WorkoutAssignment.player_id.isnot(None),
            WorkoutAssignment.status.notin_(_CLOSED_STATUSES),
        )
        if player_id:
            query = query.filter(WorkoutAssignment.player_id == player_id)
        assignments = query.order_by(WorkoutAssignment.player_id).all()

        exercises = self._session_exercises(session_id) if detailed else []
        players = [
            self.player_compliance(assignment, assignment.player_id, exercises, detailed)
            for assignment in assignments
        ]
        overall = most_severe([p.status for p in players])
        requires_approval = overall == ComplianceStatus.NON_COMPLIANT

        result = ComplianceResult(
            session_id=session_id,
            overall_status=overall,
            checked_at=datetime.now(timezone.utc),
            player_compliance=players,
            requires_approval=requires_approval,
            approval_status="pending" if requires_approval else None,
        )

        if self.cache:
            self.cache.set(key, result.model_dump(mode="json"), self.ttl)
        logger.debug(f"Compliance for session {session_id} ({player_id or 'all'}): {overall.value}")
        return result

    def check_bulk_compliance(
        self,
        session_ids: Sequence[UUID],
        player_id: Optional[str] = None,
        detailed: bool = False,
    ) -> List[ComplianceResult]:
        """One result per session; unknown sessions are logged and skipped."""
        results = []
        for session_id in session_ids:
            try:
                results.append(self.check_compliance(session_id, player_id, detailed))
            except NotFoundError as e:
                logger.warning(f"Skipping compliance for session {session_id}: {e.detail}")
        return results
