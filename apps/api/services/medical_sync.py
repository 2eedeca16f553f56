"""
Medical Sync Service

One-way mirror of the medical service's restrictions into local medical
overrides. The medical service is the source of truth; overrides are the
training service's working copy, annotated with sync metadata.

``sync_medical_restrictions`` is the only way restrictions become overrides.
It groups a player's restrictions by effective date, combines each group
most-conservatively (lowest load, longest rest, union of exclusions,
tightest exertion ceiling, any flag set wins) and upserts one override per
(assignment, player, effective date) on each of the player's active
assignments. Running it twice with the same input leaves the same rows.

Also here: concern reporting, exercise alternatives for a player, manual
medical override creation, and the handlers for medical-service events.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from core.cache import CacheClient
from core.config import settings
from core.events import (
    EVENT_INJURY_REPORTED,
    EVENT_MEDICAL_CONCERN_REPORTED,
    EVENT_MEDICAL_OVERRIDE_CREATED,
    EVENT_MEDICAL_SYNC_COMPLETED,
)
from core.exceptions import NotFoundError, UpstreamServiceError
from models import ExerciseTemplate, SessionExercise, WorkoutAssignment, WorkoutPlayerOverride
from schemas import (
    AlternativesResult,
    ConcernReportResult,
    CreateMedicalOverrideRequest,
    ExerciseSubstitution,
    GetAlternativesRequest,
    MedicalRestriction,
    MedicalSyncResult,
    OverrideMetadata,
    ReportMedicalConcernRequest,
    RestrictionSnapshot,
)
from services import restriction_mapper
from services.constants import (
    CONCERN_OVERRIDE_DAYS,
    CONCERN_REVIEW_HOURS,
    AssignmentStatus,
    OverrideStatus,
    OverrideType,
    Priority,
    RestrictionSeverity,
    RestrictionStatus,
)
from services.exercise_alternatives import ExerciseAlternativeFinder
from services.override_store import MedicalOverrideStore

logger = logging.getLogger(__name__)

_SEVERITY_ORDER = list(RestrictionSeverity)

# Load multiplier applied by a reported concern, by reported priority
CONCERN_LOAD_MULTIPLIERS = {
    Priority.CRITICAL: 0.0,
    Priority.HIGH: 0.5,
    Priority.MEDIUM: 0.7,
    Priority.LOW: 0.7,
}
CONCERN_REST_MULTIPLIER = 1.5


def alternatives_cache_key(player_id: str, workout_id=None, exercise_ids: Sequence = ()) -> str:
    key = f"medical:alternatives:{player_id}:{workout_id or 'general'}"
    if exercise_ids:
        key += ":" + ",".join(sorted(str(e) for e in exercise_ids))
    return key


def most_severe(restrictions: Sequence) -> RestrictionSeverity:
    return max((RestrictionSeverity(r.severity) for r in restrictions), key=_SEVERITY_ORDER.index)


def restriction_snapshot(restrictions: Sequence[MedicalRestriction]) -> RestrictionSnapshot:
    """Combined snapshot of the restrictions behind one override."""
    ceilings = [r.max_exertion_level for r in restrictions]

    def union(attr):
        values: List[str] = []
        for r in restrictions:
            for value in getattr(r, attr):
                if value not in values:
                    values.append(value)
        return values

    notes = [r.medical_notes for r in restrictions if r.medical_notes]
    return RestrictionSnapshot(
        severity=most_severe(restrictions),
        medical_record_ids=sorted(r.id for r in restrictions),
        affected_body_parts=union("affected_body_parts"),
        restricted_movements=union("restricted_movements"),
        restricted_exercise_types=union("restricted_exercise_types"),
        max_exertion_level=min(ceilings) if ceilings else None,
        requires_supervision=any(r.requires_supervision for r in restrictions),
        clearance_required=any(r.clearance_required for r in restrictions),
        medical_notes="\n".join(notes) or None,
    )


def combined_expiry(restrictions: Sequence[MedicalRestriction]) -> Optional[date]:
    """Latest expiry; open-ended if any restriction is open-ended."""
    expiries = [r.expiry_date for r in restrictions]
    if any(e is None for e in expiries):
        return None
    return max(expiries)


def _field(payload: Dict[str, Any], *names: str, default=None):
    for name in names:
        if payload.get(name) is not None:
            return payload[name]
    return default


class MedicalSyncService:
    def __init__(
        self,
        db: Session,
        medical_client,
        override_store: MedicalOverrideStore,
        alternative_finder: Optional[ExerciseAlternativeFinder] = None,
        cache: Optional[CacheClient] = None,
        publisher=None,
    ):
        self.db = db
        self.medical = medical_client
        self.overrides = override_store
        self.finder = alternative_finder or ExerciseAlternativeFinder(db)
        self.cache = cache
        self.publisher = publisher

    def _publish(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.publisher:
            self.publisher.publish(topic, payload)

    def _session_templates(self, session_id) -> List[ExerciseTemplate]:
        return self.db.query(ExerciseTemplate).join(
            SessionExercise, SessionExercise.exercise_template_id == ExerciseTemplate.id
        ).filter(SessionExercise.workout_session_id == session_id).all()

    def _active_assignments(self, player_id: str, organization_id: str, team_id: Optional[str] = None):
        today = date.today()
        query = self.db.query(WorkoutAssignment).filter(
            WorkoutAssignment.player_id == player_id,
            WorkoutAssignment.organization_id == organization_id,
            WorkoutAssignment.status == AssignmentStatus.ACTIVE.value,
            (WorkoutAssignment.expiry_date.is_(None)) | (WorkoutAssignment.expiry_date >= today),
        )
        if team_id:
            query = query.filter(WorkoutAssignment.team_id == team_id)
        return query.order_by(WorkoutAssignment.scheduled_date).all()

    # =========================================================================
    # Sync
    # =========================================================================

    def sync_medical_restrictions(
        self,
        organization_id: str,
        team_id: Optional[str] = None,
        player_ids: Optional[List[str]] = None,
        from_date: Optional[date] = None,
        include_expired: bool = False,
    ) -> MedicalSyncResult:
        """
        Mirror the medical service's restrictions into overrides.

        Fetch failures propagate: this is the requested operation, not an
        advisory lookup.
        """
        restrictions = self.medical.get_restrictions(
            organization_id,
            team_id=team_id,
            player_ids=player_ids,
            from_date=from_date,
            include_expired=include_expired,
        )
        if player_ids:
            wanted = set(player_ids)
            restrictions = [r for r in restrictions if r.player_id in wanted]

        groups: Dict[tuple, List[MedicalRestriction]] = defaultdict(list)
        for restriction in restrictions:
            groups[(restriction.player_id, restriction.effective_date)].append(restriction)

        result = MedicalSyncResult(synced=len(restrictions))
        for (player_id, effective_date), group in sorted(groups.items()):
            live = [r for r in group if r.status in (RestrictionStatus.ACTIVE, RestrictionStatus.PENDING)]
            for assignment in self._active_assignments(player_id, organization_id, team_id):
                created = self._mirror(assignment, player_id, effective_date, live or group, expired=not live)
                if created is None:
                    continue
                if created:
                    result.created += 1
                else:
                    result.updated += 1

        logger.info(
            f"Medical sync for org {organization_id}: synced={result.synced} "
            f"created={result.created} updated={result.updated}"
        )
        self._publish(EVENT_MEDICAL_SYNC_COMPLETED, {
            "organization_id": organization_id,
            "team_id": team_id,
            "player_ids": player_ids or [],
            **result.model_dump(),
        })
        return result

    def _mirror(
        self,
        assignment: WorkoutAssignment,
        player_id: str,
        effective_date: date,
        restrictions: List[MedicalRestriction],
        expired: bool = False,
    ) -> Optional[bool]:
        """
        Upsert the override for one assignment. Returns True when a row was
        created, False when one was updated and None when there was nothing to
        expire.
        """
        now = datetime.now(timezone.utc)
        snapshot = restriction_snapshot(restrictions)
        modifications = restriction_mapper.combined_modifications(
            restrictions, self._session_templates(assignment.workout_session_id)
        )
        existing = self.overrides.get_by_identity(assignment.id, player_id, effective_date)
        previous = existing.metadata_model if existing else None
        if expired and existing is None:
            return None

        if expired:
            status = OverrideStatus.EXPIRED
        elif existing and existing.status in (OverrideStatus.APPROVED.value, OverrideStatus.PENDING.value):
            status = OverrideStatus(existing.status)
        else:
            status = OverrideStatus.PENDING if snapshot.requires_supervision else OverrideStatus.APPROVED

        first = min(restrictions, key=lambda r: r.id)
        fields = dict(
            status=status,
            expiry_date=combined_expiry(restrictions),
            modifications=modifications,
            medical_record_id=first.id,
            medical_restrictions=snapshot,
            requested_by=first.prescribed_by,
            requested_at=first.prescribed_at,
            requires_review=snapshot.clearance_required,
            override_metadata=OverrideMetadata(
                source="medical_staff",
                priority=restriction_mapper.severity_to_priority(snapshot.severity),
                synced_at=previous.synced_at if previous and previous.synced_at else now,
                last_synced_at=now,
            ),
        )
        if status == OverrideStatus.APPROVED and not (existing and existing.approved_by):
            fields.update(approved_by="system", approved_at=now)

        _, created = self.overrides.upsert(
            assignment.id, player_id, OverrideType.MEDICAL, effective_date, **fields
        )
        return created

    # =========================================================================
    # Concerns
    # =========================================================================

    def report_medical_concern(self, request: ReportMedicalConcernRequest) -> ConcernReportResult:
        """Forward a concern to the medical service and restrict the session meanwhile."""
        response = self.medical.report_concern({
            "playerId": request.player_id,
            "sessionId": str(request.session_id) if request.session_id else None,
            "exerciseId": request.exercise_id,
            "concernType": request.concern_type,
            "severity": request.severity.value,
            "description": request.description,
            "affectedBodyParts": request.affected_body_parts,
            "reportedBy": request.reported_by,
            "occurredAt": request.occurred_at.isoformat(),
        })
        concern_id = str(response["id"])

        if request.session_id and request.severity != Priority.LOW:
            now = datetime.now(timezone.utc)
            today = date.today()
            assignments = self.db.query(WorkoutAssignment).filter(
                WorkoutAssignment.workout_session_id == request.session_id,
                WorkoutAssignment.player_id == request.player_id,
            ).all()
            for assignment in assignments:
                self.overrides.upsert(
                    assignment.id,
                    request.player_id,
                    OverrideType.MEDICAL,
                    today,
                    status=OverrideStatus.PENDING,
                    expiry_date=today + timedelta(days=CONCERN_OVERRIDE_DAYS),
                    modifications={
                        "load_multiplier": CONCERN_LOAD_MULTIPLIERS[request.severity],
                        "rest_multiplier": CONCERN_REST_MULTIPLIER,
                        "custom_modifications": {
                            "concern_id": concern_id,
                            "concern_type": request.concern_type,
                            "reported_at": request.occurred_at.isoformat(),
                        },
                    },
                    medical_record_id=concern_id,
                    medical_restrictions=RestrictionSnapshot(
                        severity=restriction_mapper.priority_to_severity(request.severity),
                        medical_record_ids=[concern_id],
                        affected_body_parts=request.affected_body_parts,
                        requires_supervision=request.severity in (Priority.HIGH, Priority.CRITICAL),
                        clearance_required=True,
                        medical_notes=f"Concern reported: {request.description}",
                    ),
                    requested_by=request.reported_by,
                    requested_at=now,
                    requires_review=True,
                    next_review_date=now + timedelta(hours=CONCERN_REVIEW_HOURS),
                    override_metadata=OverrideMetadata(
                        source="player_request",
                        priority=request.severity,
                        related_incident_id=concern_id,
                    ),
                )

        self._publish(EVENT_MEDICAL_CONCERN_REPORTED, {
            "concern_id": concern_id,
            "player_id": request.player_id,
            "session_id": str(request.session_id) if request.session_id else None,
            "severity": request.severity.value,
            "reported_by": request.reported_by,
        })
        if request.concern_type == "injury":
            self._publish(EVENT_INJURY_REPORTED, {
                "concern_id": concern_id,
                "player_id": request.player_id,
                "affected_body_parts": request.affected_body_parts,
            })
        return ConcernReportResult(concern_id=concern_id, status=response.get("status", "reported"))

    # =========================================================================
    # Alternatives
    # =========================================================================

    def player_restrictions(self, player_id: str) -> List[MedicalRestriction]:
        """Active restrictions from the medical service, or the local mirror if it is down."""
        try:
            return restriction_mapper.active_restrictions(self.medical.get_player_restrictions(player_id))
        except UpstreamServiceError as e:
            logger.warning(f"Medical service unavailable for player {player_id}; using local overrides: {e.detail}")

        restrictions = {}
        for override in self.overrides.active_medical_overrides(player_id=player_id):
            restriction = restriction_mapper.override_to_restriction(override)
            restrictions.setdefault(restriction.id, restriction)
        return list(restrictions.values())

    def get_exercise_alternatives(self, request: GetAlternativesRequest) -> AlternativesResult:
        key = alternatives_cache_key(request.player_id, request.workout_id, request.exercise_ids)
        if self.cache:
            cached = self.cache.get(key)
            if cached:
                return AlternativesResult.model_validate(cached)

        restrictions = self.player_restrictions(request.player_id)
        if not restrictions:
            return AlternativesResult(
                player_id=request.player_id,
                general_recommendations=restriction_mapper.general_recommendations([]),
            )

        if request.exercise_ids:
            exercises = self.db.query(ExerciseTemplate).filter(
                ExerciseTemplate.id.in_(list(request.exercise_ids))
            ).all()
        elif request.workout_id:
            exercises = self._session_templates(request.workout_id)
        else:
            exercises = []

        load, rest = restriction_mapper.combined_multipliers(restrictions)
        result = AlternativesResult(
            player_id=request.player_id,
            restrictions=restrictions,
            alternatives=[self.finder.alternatives_for_exercise(e, restrictions) for e in exercises],
            general_recommendations=restriction_mapper.general_recommendations(restrictions),
            load_adjustment=load,
            rest_adjustment=rest,
        )
        if self.cache:
            self.cache.set(key, result.model_dump(mode="json"), settings.ALTERNATIVES_CACHE_TTL_S)
        return result

    # =========================================================================
    # Manual overrides
    # =========================================================================

    def create_medical_override(
        self, request: CreateMedicalOverrideRequest, user_id: Optional[str] = None
    ) -> WorkoutPlayerOverride:
        """Override from one restriction plus the alternatives staff picked."""
        assignment = self.db.query(WorkoutAssignment).filter(
            WorkoutAssignment.id == request.workout_assignment_id
        ).first()
        if not assignment:
            raise NotFoundError("Workout assignment", str(request.workout_assignment_id))

        restriction = request.restriction
        now = datetime.now(timezone.utc)
        modifications = restriction_mapper.generate_modifications(
            restriction, self._session_templates(assignment.workout_session_id)
        )
        modifications.substitute_exercises = [
            ExerciseSubstitution(
                original_exercise_id=alt.original_exercise_id,
                substitute_exercise_id=alt.alternative_exercise_id,
                reason=alt.reason,
            )
            for alt in request.alternatives
            if alt.alternative_exercise_id != alt.original_exercise_id
        ]
        # A substituted exercise is replaced, not excluded
        substituted = {s.original_exercise_id for s in modifications.substitute_exercises}
        modifications.exclude_exercises = [e for e in modifications.exclude_exercises if e not in substituted]

        approved = request.auto_approve
        override, _ = self.overrides.upsert(
            assignment.id,
            request.player_id,
            OverrideType.MEDICAL,
            restriction.effective_date,
            status=OverrideStatus.APPROVED if approved else OverrideStatus.PENDING,
            expiry_date=restriction.expiry_date,
            modifications=modifications,
            medical_record_id=request.medical_record_id,
            medical_restrictions=restriction_snapshot([restriction]),
            requested_by=restriction.prescribed_by or user_id,
            requested_at=now,
            approved_by=(user_id or "system") if approved else None,
            approved_at=now if approved else None,
            approval_notes=request.notes,
            requires_review=restriction.clearance_required,
            override_metadata=OverrideMetadata(
                source="medical_staff",
                priority=restriction_mapper.severity_to_priority(restriction.severity),
            ),
        )

        self._publish(EVENT_MEDICAL_OVERRIDE_CREATED, {
            "override_id": str(override.id),
            "player_id": request.player_id,
            "workout_assignment_id": str(assignment.id),
            "severity": RestrictionSeverity(restriction.severity).value,
            "auto_approved": approved,
        })
        return override

    # =========================================================================
    # Event handlers
    # =========================================================================

    def handle_restriction_changed(self, envelope: Dict[str, Any]) -> None:
        """medical.restriction.created / updated: resync the player."""
        payload = envelope.get("payload", envelope)
        details = payload.get("details") or {}
        player_id = _field(payload, "playerId", "player_id")
        organization_id = _field(payload, "organizationId", "organization_id") or _field(
            details, "organizationId", "organization_id"
        )
        if not player_id or not organization_id:
            logger.warning("Restriction event without player or organization; ignoring")
            return
        self.sync_medical_restrictions(organization_id, player_ids=[player_id])

    def handle_restriction_cleared(self, envelope: Dict[str, Any]) -> None:
        payload = envelope.get("payload", envelope)
        restriction_id = _field(payload, "restrictionId", "restriction_id", "id")
        if not restriction_id:
            logger.warning("Restriction cleared event without restriction id; ignoring")
            return
        self.overrides.expire_for_medical_record(str(restriction_id))

    def handle_injury_reported(self, envelope: Dict[str, Any]) -> None:
        payload = envelope.get("payload", envelope)
        occurred_at = _field(payload, "occurredAt", "occurred_at") or datetime.now(timezone.utc)
        self.report_medical_concern(ReportMedicalConcernRequest(
            player_id=_field(payload, "playerId", "player_id"),
            session_id=_field(payload, "sessionId", "session_id"),
            concern_type="injury",
            severity=_field(payload, "severity", default=Priority.MEDIUM),
            description=_field(payload, "description", default=""),
            affected_body_parts=_field(payload, "bodyParts", "affectedBodyParts", "affected_body_parts", default=[]),
            reported_by=_field(payload, "reportedBy", "reported_by", default="system"),
            occurred_at=occurred_at,
        ))
