"""
Assignment Engine

Creates workout assignments for players across the organization hierarchy
and keeps them consistent:

- bulk_assign: resolve a target (explicit players, team, line, position, age
  group, custom group) to players, detect conflicts, create one assignment
  per conflict-free player
- cascade_assign: an org-level parent plus children fanned out to the team,
  its sub-teams and their players, with a skip/replace/merge policy for
  players already booked that day
- check_conflicts / resolve_conflict: scheduling, medical exemption and
  load-limit conflicts; resolution is cancel, reschedule, merge or override

Players are processed one at a time and each creation commits on its own,
so one player's failure is counted and never rolls back the others. The
unique constraint on (session, organization, player, effective date) is
the serialization point: a racing duplicate insert is reported as a
"duplicate" conflict carrying the row that won.
"""

import json
import logging
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.cache import CacheClient
from core.config import settings
from core.events import (
    EVENT_OVERRIDE_CREATED,
    EVENT_WORKOUT_ASSIGNED,
    EVENT_WORKOUT_CANCELLED,
    EVENT_WORKOUT_COMPLETED,
    EVENT_WORKOUT_CREATED,
    EVENT_WORKOUT_RESCHEDULED,
)
from core.exceptions import ConflictError, NotFoundError, UpstreamServiceError, ValidationError
from models import SessionExercise, WorkoutAssignment, WorkoutPlayerOverride, WorkoutSession
from schemas import (
    AssignmentMetadata,
    AssignmentResult,
    AssignmentTarget,
    BulkAssignRequest,
    CascadeAssignRequest,
    CompleteAssignmentRequest,
    ConflictCheckRequest,
    ConflictInfo,
    CreatePlayerOverrideRequest,
    MergeOptions,
    MergeRecord,
    OverrideMetadata,
    OverrideModifications,
    ResolveConflictRequest,
    WorkoutAssignmentResponse,
)
from services.constants import (
    ASSIGNMENT_TRANSITIONS,
    OPEN_ASSIGNMENT_STATUSES,
    AssignmentStatus,
    AssignmentType,
    CascadeConflictPolicy,
    ConflictType,
    OverrideStatus,
    OverrideType,
    Priority,
    ResolutionAction,
)
from services.override_store import MedicalOverrideStore
from services.rounding import round_half_up

logger = logging.getLogger(__name__)

_OPEN = [s.value for s in OPEN_ASSIGNMENT_STATUSES]

SCHEDULING_RESOLUTIONS = [
    ResolutionAction.CANCEL,
    ResolutionAction.RESCHEDULE,
    ResolutionAction.MERGE,
    ResolutionAction.OVERRIDE,
]
MEDICAL_RESOLUTIONS = [ResolutionAction.OVERRIDE]
LOAD_RESOLUTIONS = [ResolutionAction.RESCHEDULE, ResolutionAction.CANCEL, ResolutionAction.OVERRIDE]


def player_assignments_cache_key(player_id: str, filters: Dict) -> str:
    return f"player_assignments:{player_id}:{json.dumps(filters, sort_keys=True, default=str)}"


def assignment_load(assignment: WorkoutAssignment) -> float:
    """Training load an assignment contributes (its base load, 0 when unset)."""
    return float(assignment.base_load or 0)


def week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def to_response(assignment: WorkoutAssignment) -> WorkoutAssignmentResponse:
    return WorkoutAssignmentResponse.model_validate(assignment)


def _event_payload(assignment: WorkoutAssignment) -> Dict:
    return {
        "assignment_id": str(assignment.id),
        "workout_session_id": str(assignment.workout_session_id),
        "player_id": assignment.player_id,
        "team_id": assignment.team_id,
        "organization_id": assignment.organization_id,
        "status": assignment.status,
        "scheduled_date": assignment.scheduled_date.isoformat(),
        "parent_assignment_id": str(assignment.parent_assignment_id) if assignment.parent_assignment_id else None,
    }


class AssignmentEngine:
    def __init__(
        self,
        db: Session,
        override_store: MedicalOverrideStore,
        organization_client=None,
        planning_client=None,
        cache: Optional[CacheClient] = None,
        publisher=None,
        phase_adjuster=None,
    ):
        self.db = db
        self.overrides = override_store
        self.organization = organization_client
        self.planning = planning_client
        self.cache = cache
        self.publisher = publisher
        self.phase_adjuster = phase_adjuster

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_assignment(self, assignment_id: UUID) -> WorkoutAssignment:
        assignment = self.db.query(WorkoutAssignment).filter(WorkoutAssignment.id == assignment_id).first()
        if not assignment:
            raise NotFoundError("Workout assignment", str(assignment_id))
        return assignment

    def get_workout_session(self, session_id: UUID) -> WorkoutSession:
        session = self.db.query(WorkoutSession).filter(WorkoutSession.id == session_id).first()
        if not session:
            raise NotFoundError("Workout session", str(session_id))
        return session

    def get_player_assignments(
        self,
        player_id: str,
        status: Optional[AssignmentStatus] = None,
        assignment_type: Optional[AssignmentType] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        include_expired: bool = False,
    ) -> List[WorkoutAssignmentResponse]:
        filters = {
            "status": status.value if status else None,
            "assignment_type": assignment_type.value if assignment_type else None,
            "start_date": start_date,
            "end_date": end_date,
            "include_expired": include_expired,
        }
        key = player_assignments_cache_key(player_id, filters)
        if self.cache:
            cached = self.cache.get(key)
            if cached is not None:
                return [WorkoutAssignmentResponse.model_validate(item) for item in cached]

        query = self.db.query(WorkoutAssignment).filter(WorkoutAssignment.player_id == player_id)
        if status:
            query = query.filter(WorkoutAssignment.status == status.value)
        if assignment_type:
            query = query.filter(WorkoutAssignment.assignment_type == assignment_type.value)
        if start_date:
            query = query.filter(WorkoutAssignment.scheduled_date >= start_date)
        if end_date:
            query = query.filter(WorkoutAssignment.scheduled_date <= end_date)
        if not include_expired:
            today = date.today()
            query = query.filter(
                (WorkoutAssignment.expiry_date.is_(None)) | (WorkoutAssignment.expiry_date >= today)
            )

        assignments = [to_response(a) for a in query.order_by(WorkoutAssignment.scheduled_date).all()]
        if self.cache:
            self.cache.set(
                key,
                [a.model_dump(mode="json") for a in assignments],
                settings.PLAYER_ASSIGNMENTS_CACHE_TTL_S,
            )
        return assignments

    def get_assignments_by_phase(
        self,
        team_id: str,
        phase_id: str,
        status: Optional[AssignmentStatus] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[WorkoutAssignment]:
        query = self.db.query(WorkoutAssignment).filter(WorkoutAssignment.team_id == team_id)
        if status:
            query = query.filter(WorkoutAssignment.status == status.value)
        if start_date and end_date:
            query = query.filter(
                WorkoutAssignment.effective_date >= start_date,
                WorkoutAssignment.effective_date <= end_date,
            )
        # Metadata is JSON; filter in Python so this works on every backend
        return [
            a for a in query.order_by(WorkoutAssignment.effective_date).all()
            if a.metadata_model.planning_phase_id == phase_id
        ]

    # =========================================================================
    # Target resolution
    # =========================================================================

    def _require_organization(self):
        if self.organization is None:
            raise ValidationError("Hierarchy targets need the organization service", field="assignment_target")
        return self.organization

    def resolve_target_players(
        self, assignment_type: AssignmentType, target: AssignmentTarget
    ) -> List[str]:
        """Concrete player ids for a target, in a stable order without repeats."""
        if target.player_ids:
            players = list(target.player_ids)
        elif assignment_type == AssignmentType.INDIVIDUAL:
            raise ValidationError("Individual assignments need player ids", field="player_ids")
        elif assignment_type == AssignmentType.CUSTOM_GROUP:
            if not target.group_id:
                raise ValidationError("Custom group assignments need a group id", field="group_id")
            players = self._require_organization().get_group_players(target.group_id)
        else:
            if not target.team_id:
                raise ValidationError(f"{assignment_type.value} assignments need a team id", field="team_id")
            players = self._require_organization().get_team_players(
                target.team_id,
                line=target.line_id if assignment_type == AssignmentType.LINE else None,
                position=target.position if assignment_type == AssignmentType.POSITION else None,
                age_group=target.age_group if assignment_type == AssignmentType.AGE_GROUP else None,
            )
        return list(dict.fromkeys(players))

    def _cascade_targets(self, request: CascadeAssignRequest, default_team_id: str) -> List[Tuple[str, str]]:
        """(player_id, team_id) pairs a cascade fans out to."""
        target = request.assignment_target
        root_team = target.team_id or default_team_id
        excluded_teams = set(request.exclude_team_ids)
        pairs: List[Tuple[str, str]] = []

        has_node = target.player_ids or target.team_id or target.group_id
        if request.cascade_to_players and has_node and root_team not in excluded_teams:
            players = self.resolve_target_players(request.assignment_type, target)
            pairs.extend((p, root_team) for p in players)

        if request.cascade_to_sub_teams and target.team_id:
            org = self._require_organization()
            for sub_team in org.get_sub_teams(target.team_id):
                if sub_team in excluded_teams:
                    continue
                pairs.extend((p, sub_team) for p in org.get_team_players(sub_team))

        excluded_players = set(request.exclude_player_ids)
        seen = set()
        result = []
        for player_id, team_id in pairs:
            if player_id in excluded_players or player_id in seen:
                continue
            seen.add(player_id)
            result.append((player_id, team_id))
        return result

    # =========================================================================
    # Conflict detection
    # =========================================================================

    def _open_assignments(self, player_id: str, start: date, end: date, workout_types: Sequence[str] = ()):
        query = self.db.query(WorkoutAssignment).filter(
            WorkoutAssignment.player_id == player_id,
            WorkoutAssignment.status.in_(_OPEN),
            WorkoutAssignment.scheduled_date >= start,
            WorkoutAssignment.scheduled_date <= end,
        )
        if workout_types:
            query = query.join(WorkoutSession, WorkoutSession.id == WorkoutAssignment.workout_session_id).filter(
                WorkoutSession.type.in_(list(workout_types))
            )
        return query.order_by(WorkoutAssignment.scheduled_date).all()

    def scheduling_conflicts(
        self,
        player_ids: Iterable[str],
        start: date,
        end: date,
        workout_types: Sequence[str] = (),
        proposed: Optional[Dict] = None,
    ) -> List[ConflictInfo]:
        conflicts = []
        for player_id in player_ids:
            existing = self._open_assignments(player_id, start, end, workout_types)
            if not existing:
                continue
            conflicts.append(ConflictInfo(
                id=f"scheduling-{existing[0].id}-{player_id}",
                player_id=player_id,
                conflict_type=ConflictType.SCHEDULING,
                existing_assignment=to_response(existing[0]),
                proposed_assignment=proposed or {},
                message=f"Player already has {len(existing)} assignment(s) scheduled between {start} and {end}",
                severity=Priority.MEDIUM,
                resolution_options=SCHEDULING_RESOLUTIONS,
            ))
        return conflicts

    def medical_conflicts(self, player_ids: Iterable[str], start: date, end: date) -> List[ConflictInfo]:
        """Approved medical exemptions overlapping the window."""
        conflicts = []
        for player_id in player_ids:
            overrides = self.overrides.find(
                player_id=player_id,
                statuses=[OverrideStatus.APPROVED],
                override_type=OverrideType.MEDICAL,
                start_date=start,
                end_date=end,
            )
            for override in overrides:
                modifications = override.modifications_model
                if not modifications.exempt:
                    continue
                assignment = self.db.query(WorkoutAssignment).filter(
                    WorkoutAssignment.id == override.workout_assignment_id
                ).first()
                conflicts.append(ConflictInfo(
                    id=f"medical-{override.id}",
                    player_id=player_id,
                    conflict_type=ConflictType.MEDICAL,
                    existing_assignment=to_response(assignment) if assignment else None,
                    message=f"Player has medical exemption: {modifications.exemption_reason or 'medical restriction'}",
                    severity=Priority.HIGH,
                    resolution_options=MEDICAL_RESOLUTIONS,
                ))
        return conflicts

    def load_conflicts(
        self,
        player_ids: Iterable[str],
        start: date,
        end: date,
        max_daily_load: Optional[float] = None,
        max_weekly_load: Optional[float] = None,
        proposed_load: float = 0,
    ) -> List[ConflictInfo]:
        """
        Days/ISO weeks in the window where existing load plus ``proposed_load``
        exceeds the ceilings. At most one daily and one weekly conflict per player.
        """
        if max_daily_load is None and max_weekly_load is None:
            return []

        conflicts = []
        scan_start = week_start(start)
        scan_end = week_start(end) + timedelta(days=6)
        for player_id in player_ids:
            assignments = self._open_assignments(player_id, scan_start, scan_end)
            daily = defaultdict(float)
            weekly = defaultdict(float)
            for a in assignments:
                daily[a.scheduled_date] += assignment_load(a)
                weekly[week_start(a.scheduled_date)] += assignment_load(a)

            if max_daily_load is not None:
                day = start
                while day <= end:
                    total = daily[day] + proposed_load
                    if total > max_daily_load:
                        conflicts.append(self._load_conflict(
                            player_id, f"daily-{day.isoformat()}",
                            f"Daily load {total:g} on {day} exceeds limit {max_daily_load:g}",
                            [a for a in assignments if a.scheduled_date == day],
                        ))
                        break
                    day += timedelta(days=1)

            if max_weekly_load is not None:
                week = week_start(start)
                while week <= end:
                    total = weekly[week] + proposed_load
                    if total > max_weekly_load:
                        conflicts.append(self._load_conflict(
                            player_id, f"weekly-{week.isoformat()}",
                            f"Weekly load {total:g} for week of {week} exceeds limit {max_weekly_load:g}",
                            [a for a in assignments if week_start(a.scheduled_date) == week],
                        ))
                        break
                    week += timedelta(days=7)
        return conflicts

    def _load_conflict(self, player_id, suffix, message, existing) -> ConflictInfo:
        return ConflictInfo(
            id=f"load-{player_id}-{suffix}",
            player_id=player_id,
            conflict_type=ConflictType.LOAD_LIMIT,
            existing_assignment=to_response(existing[0]) if existing else None,
            message=message,
            severity=Priority.HIGH,
            resolution_options=LOAD_RESOLUTIONS,
        )

    def check_conflicts(self, request: ConflictCheckRequest) -> List[ConflictInfo]:
        if request.end_date < request.start_date:
            raise ValidationError("end_date must not be before start_date", field="end_date")

        conflicts = self.scheduling_conflicts(
            request.player_ids, request.start_date, request.end_date, request.workout_types
        )
        if request.check_medical_restrictions:
            conflicts.extend(self.medical_conflicts(request.player_ids, request.start_date, request.end_date))
        if request.check_load_limits:
            conflicts.extend(self.load_conflicts(
                request.player_ids,
                request.start_date,
                request.end_date,
                request.max_daily_load,
                request.max_weekly_load,
                request.proposed_load,
            ))
        return conflicts

    def _conflicts_for_request(self, request: BulkAssignRequest, player_ids: List[str], session: WorkoutSession):
        day = request.scheduled_date
        proposed = {
            "workout_session_id": str(request.workout_session_id),
            "workout_type": session.type,
            "scheduled_date": day.isoformat(),
        }
        conflicts = self.scheduling_conflicts(player_ids, day, day, proposed=proposed)
        if request.check_medical_restrictions:
            conflicts.extend(self.medical_conflicts(player_ids, day, day))
        if request.check_load_limits:
            base_load = request.load_progression.base_load if request.load_progression else 0
            conflicts.extend(self.load_conflicts(
                player_ids, day, day, request.max_daily_load, request.max_weekly_load, base_load
            ))
        return conflicts

    # =========================================================================
    # Creation
    # =========================================================================

    def _new_assignment(
        self,
        request: BulkAssignRequest,
        player_id: Optional[str],
        team_id: str,
        organization_id: str,
        user_id: str,
        parent_assignment_id: Optional[UUID] = None,
    ) -> WorkoutAssignment:
        def dump(value):
            return value.model_dump(mode="json", exclude_none=True) if value is not None else None

        return WorkoutAssignment(
            workout_session_id=request.workout_session_id,
            player_id=player_id,
            team_id=team_id,
            organization_id=organization_id,
            assignment_type=request.assignment_type.value,
            status=request.status.value,
            assignment_target=dump(request.assignment_target),
            effective_date=request.effective_date or request.scheduled_date,
            expiry_date=request.expiry_date,
            scheduled_date=request.scheduled_date,
            scheduled_at=request.scheduled_at,
            recurrence_type=request.recurrence_type.value,
            recurrence_pattern=dump(request.recurrence_pattern),
            load_progression=dump(request.load_progression),
            performance_thresholds=dump(request.performance_thresholds),
            priority=request.priority,
            allow_player_overrides=request.allow_player_overrides,
            parent_assignment_id=parent_assignment_id,
            assignment_metadata=AssignmentMetadata().model_dump(mode="json"),
            created_by=user_id,
            updated_by=user_id,
        )

    def _find_by_identity(self, request: BulkAssignRequest, player_id: str, organization_id: str):
        return self.db.query(WorkoutAssignment).filter(
            WorkoutAssignment.workout_session_id == request.workout_session_id,
            WorkoutAssignment.organization_id == organization_id,
            WorkoutAssignment.player_id == player_id,
            WorkoutAssignment.effective_date == (request.effective_date or request.scheduled_date),
        ).first()

    def _create_for_player(
        self,
        request: BulkAssignRequest,
        player_id: str,
        team_id: str,
        organization_id: str,
        user_id: str,
        result: AssignmentResult,
        created: List[WorkoutAssignment],
        parent_assignment_id: Optional[UUID] = None,
    ) -> None:
        """Create and commit one player's assignment, recording the outcome in ``result``."""
        assignment = self._new_assignment(
            request, player_id, team_id, organization_id, user_id, parent_assignment_id
        )
        try:
            self.db.add(assignment)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._find_by_identity(request, player_id, organization_id)
            if existing is None:
                logger.error(f"Integrity error creating assignment for player {player_id}")
                result.failed += 1
                result.failed_player_ids.append(player_id)
                return
            logger.info(f"Assignment for player {player_id} already exists ({existing.id})")
            result.conflicts.append(ConflictInfo(
                id=f"duplicate-{existing.id}",
                player_id=player_id,
                conflict_type=ConflictType.DUPLICATE,
                existing_assignment=to_response(existing),
                proposed_assignment={"workout_session_id": str(request.workout_session_id)},
                message="Assignment already exists for this player, session and date",
                severity=Priority.LOW,
                resolution_options=[],
            ))
            return
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to create assignment for player {player_id}: {e}")
            result.failed += 1
            result.failed_player_ids.append(player_id)
            return

        result.created += 1
        result.assignments.append(to_response(assignment))
        created.append(assignment)
        self.invalidate_player(player_id)
        self._publish(EVENT_WORKOUT_ASSIGNED, _event_payload(assignment))

    def _bulk_assign(
        self, request: BulkAssignRequest, user_id: str, organization_id: str
    ) -> Tuple[AssignmentResult, List[WorkoutAssignment]]:
        session = self.get_workout_session(request.workout_session_id)
        player_ids = self.resolve_target_players(request.assignment_type, request.assignment_target)
        if not player_ids:
            raise ValidationError("No players found for the specified target", field="assignment_target")

        logger.info(
            f"Bulk assigning session {session.id} to {len(player_ids)} players "
            f"({request.assignment_type.value}) in org {organization_id}"
        )
        result = AssignmentResult()
        result.conflicts = self._conflicts_for_request(request, player_ids, session)
        conflicted = {c.player_id for c in result.conflicts}
        team_id = request.assignment_target.team_id or organization_id

        created: List[WorkoutAssignment] = []
        for player_id in player_ids:
            if player_id in conflicted:
                continue
            self._create_for_player(request, player_id, team_id, organization_id, user_id, result, created)

        logger.info(
            f"Bulk assignment of session {session.id}: created={result.created} "
            f"failed={result.failed} conflicts={len(result.conflicts)}"
        )
        return result, created

    def bulk_assign(self, request: BulkAssignRequest, user_id: str, organization_id: str) -> AssignmentResult:
        result, _ = self._bulk_assign(request, user_id, organization_id)
        return result

    def bulk_assign_with_phase_adjustments(
        self, request: BulkAssignRequest, user_id: str, organization_id: str
    ) -> AssignmentResult:
        """Bulk assign, then apply the team's current planning phase to what was created."""
        result, created = self._bulk_assign(request, user_id, organization_id)
        team_id = request.assignment_target.team_id
        if not created or not team_id or self.phase_adjuster is None:
            return result

        phase = self.phase_adjuster.get_current_phase(team_id)
        if phase is None:
            return result

        for assignment in created:
            try:
                entries = self.phase_adjuster.adjust_assignment(assignment, phase, applied_by=user_id)
                self.db.commit()
                result.phase_adjustments += len(entries)
            except Exception as e:
                self.db.rollback()
                logger.warning(f"Failed to apply phase adjustments to assignment {assignment.id}: {e}")

        result.assignments = [to_response(a) for a in created]
        return result

    def cascade_assign(self, request: CascadeAssignRequest, user_id: str, organization_id: str) -> AssignmentResult:
        session = self.get_workout_session(request.workout_session_id)
        merge_options = None
        if request.respect_existing_assignments and request.conflict_resolution == CascadeConflictPolicy.MERGE:
            if not request.merge_options:
                raise ValidationError("Merge conflict resolution requires merge options", field="merge_options")
            merge_options = MergeOptions.model_validate({
                "incoming_workout_session_id": request.workout_session_id,
                **request.merge_options,
            })

        root_team = request.assignment_target.team_id or organization_id
        parent = self._new_assignment(request, None, root_team, organization_id, user_id)
        self.db.add(parent)
        self.db.commit()
        logger.info(f"Cascade parent {parent.id} for session {session.id} in org {organization_id}")

        result = AssignmentResult(created=1, assignments=[to_response(parent)])
        self._publish(EVENT_WORKOUT_CREATED, _event_payload(parent))
        if not (request.cascade_to_sub_teams or request.cascade_to_players):
            return result

        created: List[WorkoutAssignment] = []
        same_type = [session.type] if session.type else []
        for player_id, team_id in self._cascade_targets(request, root_team):
            if request.respect_existing_assignments:
                existing = self._open_assignments(
                    player_id, request.scheduled_date, request.scheduled_date, same_type
                )
                if existing:
                    policy = request.conflict_resolution
                    if policy == CascadeConflictPolicy.SKIP:
                        result.skipped += 1
                        continue
                    if policy == CascadeConflictPolicy.MERGE:
                        try:
                            merged = self.merge_into(existing[0], merge_options, user_id)
                            result.assignments.append(to_response(merged))
                            result.skipped += 1
                        except Exception as e:
                            self.db.rollback()
                            logger.error(f"Cascade merge failed for player {player_id}: {e}")
                            result.failed += 1
                            result.failed_player_ids.append(player_id)
                        continue
                    try:
                        for old in existing:
                            self.transition(old, AssignmentStatus.CANCELLED, user_id)
                    except Exception as e:
                        self.db.rollback()
                        logger.error(f"Cascade replace failed for player {player_id}: {e}")
                        result.failed += 1
                        result.failed_player_ids.append(player_id)
                        continue

            self._create_for_player(
                request, player_id, team_id, organization_id, user_id, result, created,
                parent_assignment_id=parent.id,
            )

        logger.info(
            f"Cascade {parent.id}: created={result.created} skipped={result.skipped} failed={result.failed}"
        )
        return result

    # =========================================================================
    # Status and resolution
    # =========================================================================

    @staticmethod
    def check_transition(assignment: WorkoutAssignment, new_status: AssignmentStatus) -> AssignmentStatus:
        current = AssignmentStatus(assignment.status)
        new_status = AssignmentStatus(new_status)
        if new_status not in ASSIGNMENT_TRANSITIONS[current]:
            raise ValidationError(
                f"Cannot move assignment from {current.value} to {new_status.value}", field="status"
            )
        return new_status

    def transition(self, assignment: WorkoutAssignment, new_status: AssignmentStatus, user_id: Optional[str] = None):
        new_status = self.check_transition(assignment, new_status)
        assignment.status = new_status.value
        assignment.updated_by = user_id
        self.db.commit()
        self.invalidate_player(assignment.player_id)
        if new_status == AssignmentStatus.CANCELLED:
            self._publish(EVENT_WORKOUT_CANCELLED, _event_payload(assignment))
        return assignment

    def cancel_assignment(self, assignment_id: UUID, user_id: Optional[str] = None) -> WorkoutAssignment:
        return self.transition(self.get_assignment(assignment_id), AssignmentStatus.CANCELLED, user_id)

    def _require_open(self, assignment: WorkoutAssignment, action: str) -> None:
        if assignment.status not in _OPEN:
            raise ValidationError(f"Cannot {action} a {assignment.status} assignment", field="status")

    def reschedule(self, assignment: WorkoutAssignment, new_date: date, user_id: Optional[str] = None):
        """Move to ``new_date``; the effective/expiry window shifts by the same amount."""
        self._require_open(assignment, "reschedule")
        delta = new_date - assignment.scheduled_date
        previous = assignment.scheduled_date
        assignment.scheduled_date = new_date
        assignment.effective_date = assignment.effective_date + delta
        if assignment.expiry_date:
            assignment.expiry_date = assignment.expiry_date + delta
        if assignment.scheduled_at:
            assignment.scheduled_at = assignment.scheduled_at + delta
        assignment.updated_by = user_id
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"Player already has this workout on {new_date}")

        self.invalidate_player(assignment.player_id)
        payload = _event_payload(assignment)
        payload["previous_scheduled_date"] = previous.isoformat()
        self._publish(EVENT_WORKOUT_RESCHEDULED, payload)
        return assignment

    def _merge_exercises(self, existing: WorkoutSession, incoming: WorkoutSession, strategy: str):
        if strategy == "existing_only":
            return list(existing.exercises)
        if strategy == "incoming_only":
            return list(incoming.exercises)

        def identity(exercise: SessionExercise):
            return exercise.exercise_template_id or exercise.name

        merged = list(existing.exercises)
        present = {identity(e) for e in merged}
        for exercise in incoming.exercises:
            if identity(exercise) not in present:
                merged.append(exercise)
                present.add(identity(exercise))
        return merged

    def merge_into(self, assignment: WorkoutAssignment, options: MergeOptions, user_id: Optional[str] = None):
        """
        Combine the assignment's workout with another one into a new session
        and point the assignment at it. Both source sessions are left untouched.
        """
        self._require_open(assignment, "merge")
        existing = self.get_workout_session(assignment.workout_session_id)
        incoming = self.get_workout_session(options.incoming_workout_session_id)

        exercises = self._merge_exercises(existing, incoming, options.exercise_strategy)
        durations = [d for d in (existing.estimated_duration, incoming.estimated_duration) if d is not None]
        loads = [v for v in (existing.estimated_load, incoming.estimated_load) if v is not None]
        combine = sum if options.duration_strategy == "sum" else max

        merged = WorkoutSession(
            organization_id=existing.organization_id,
            team_id=existing.team_id,
            name=options.name or f"{existing.name} + {incoming.name}",
            type=existing.type,
            status=existing.status,
            estimated_duration=combine(durations) if durations else None,
            estimated_load=combine(loads) if loads else None,
            created_by=user_id,
        )
        merged.exercises = [
            SessionExercise(
                exercise_template_id=e.exercise_template_id,
                name=e.name,
                order_index=index,
                duration=e.duration,
                requires_supervision=e.requires_supervision,
            )
            for index, e in enumerate(exercises)
        ]
        self.db.add(merged)
        self.db.flush()

        metadata = assignment.metadata_model
        metadata.phase_adjustments.append(MergeRecord(
            applied_at=datetime.now(timezone.utc),
            applied_by=user_id or "system",
            reason=f"Merged with {incoming.name}",
            previous_workout_session_id=str(existing.id),
            incoming_workout_session_id=str(incoming.id),
            merged_workout_session_id=str(merged.id),
        ))
        assignment.metadata_model = metadata
        assignment.workout_session_id = merged.id
        assignment.exercises_total = len(merged.exercises)
        assignment.updated_by = user_id
        self.db.commit()

        self.invalidate_player(assignment.player_id)
        logger.info(f"Merged session {incoming.id} into assignment {assignment.id} as session {merged.id}")
        return assignment

    def resolve_conflict(self, request: ResolveConflictRequest, user_id: str) -> WorkoutAssignment:
        """Apply exactly one resolution to the conflicting assignment."""
        assignment = self.get_assignment(request.assignment_id)
        logger.info(f"Resolving conflict on assignment {assignment.id} with {request.resolution.value}")

        if request.resolution == ResolutionAction.CANCEL:
            self.transition(assignment, AssignmentStatus.CANCELLED, user_id)
        elif request.resolution == ResolutionAction.RESCHEDULE:
            if not request.new_scheduled_date:
                raise ValidationError("New scheduled date required for reschedule", field="new_scheduled_date")
            self.reschedule(assignment, request.new_scheduled_date, user_id)
        elif request.resolution == ResolutionAction.MERGE:
            if request.merge_options is None:
                raise ValidationError("Merge resolution requires merge options", field="merge_options")
            self.merge_into(assignment, request.merge_options, user_id)
        elif request.resolution == ResolutionAction.OVERRIDE:
            if not request.affected_player_ids:
                raise ValidationError("Override resolution requires affected players", field="affected_player_ids")
            for player_id in request.affected_player_ids:
                self.create_player_override(assignment.id, CreatePlayerOverrideRequest(
                    player_id=player_id,
                    override_type=OverrideType.SCHEDULING,
                    effective_date=assignment.effective_date,
                    expiry_date=assignment.expiry_date,
                    modifications=OverrideModifications(
                        exempt=True,
                        exemption_reason=request.reason or "Conflict override",
                    ),
                ), user_id)

        for player_id in request.affected_player_ids:
            self.invalidate_player(player_id)
        return assignment

    # =========================================================================
    # Overrides and completion
    # =========================================================================

    def create_player_override(
        self, assignment_id: UUID, request: CreatePlayerOverrideRequest, user_id: str
    ) -> WorkoutPlayerOverride:
        assignment = self.get_assignment(assignment_id)
        if not assignment.allow_player_overrides:
            raise ValidationError("Player overrides not allowed for this assignment", field="allow_player_overrides")

        now = datetime.now(timezone.utc)
        approved = request.auto_approve
        source = "medical_staff" if request.override_type == OverrideType.MEDICAL else "coach"
        override, created = self.overrides.upsert(
            assignment.id,
            request.player_id,
            request.override_type,
            request.effective_date,
            status=OverrideStatus.APPROVED if approved else OverrideStatus.PENDING,
            expiry_date=request.expiry_date,
            modifications=request.modifications,
            medical_record_id=request.medical_record_id,
            medical_restrictions=request.medical_restrictions,
            requested_by=user_id,
            requested_at=now,
            approved_by=user_id if approved else None,
            approved_at=now if approved else None,
            approval_notes=request.approval_notes,
            override_metadata=OverrideMetadata(source=source),
        )
        self.invalidate_player(request.player_id)
        self._publish(EVENT_OVERRIDE_CREATED, {
            "override_id": str(override.id),
            "assignment_id": str(assignment.id),
            "player_id": request.player_id,
            "override_type": request.override_type.value,
            "status": override.status,
            "created": created,
        })
        return override

    def complete_assignment(
        self, assignment_id: UUID, request: CompleteAssignmentRequest, user_id: Optional[str] = None
    ) -> WorkoutAssignment:
        """Mark completed and report the outcome to the planning service (best effort)."""
        assignment = self.get_assignment(assignment_id)
        self.check_transition(assignment, AssignmentStatus.COMPLETED)
        assignment.completed_at = request.completed_at
        assignment.exercises_completed = round_half_up(
            (assignment.exercises_total or 1) * request.completion_rate / 100
        )
        self.transition(assignment, AssignmentStatus.COMPLETED, user_id)

        if self.planning is not None:
            try:
                self.planning.report_completion({
                    "assignmentId": str(assignment.id),
                    "playerId": request.player_id,
                    "completedAt": request.completed_at.isoformat(),
                    "actualLoad": request.actual_load,
                    "completionRate": request.completion_rate,
                    "performance": request.performance,
                })
            except UpstreamServiceError as e:
                logger.warning(f"Planning not notified of completion of {assignment.id}: {e.detail}")

        payload = _event_payload(assignment)
        payload.update({"actual_load": request.actual_load, "completion_rate": request.completion_rate})
        self._publish(EVENT_WORKOUT_COMPLETED, payload)
        return assignment

    # =========================================================================
    # Side effects
    # =========================================================================

    def invalidate_player(self, player_id: Optional[str]) -> None:
        if self.cache and player_id:
            self.cache.invalidate_pattern(f"player_assignments:{player_id}:*")

    def _publish(self, topic: str, payload: Dict) -> None:
        if self.publisher:
            self.publisher.publish(topic, payload)
