from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from datetime import datetime, date
from uuid import UUID
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from services.constants import (
    AssignmentStatus,
    AssignmentType,
    CascadeConflictPolicy,
    ComplianceStatus,
    ConflictType,
    OverrideStatus,
    OverrideType,
    PhaseIntensity,
    Priority,
    RecurrenceType,
    ResolutionAction,
    RestrictionSeverity,
    RestrictionStatus,
    ViolationType,
)


def _coerce_date(value: Any) -> Any:
    """Accept ISO datetimes where a date is expected (collaborators send both)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and "T" in value:
        return value.split("T", 1)[0]
    return value


class CamelModel(BaseModel):
    """Wire format of the medical and planning services (camelCase JSON)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Collaborator contracts (fetched, never owned)
# ---------------------------------------------------------------------------

class MedicalRestriction(CamelModel):
    id: str
    player_id: str
    severity: RestrictionSeverity
    status: RestrictionStatus = RestrictionStatus.ACTIVE
    affected_body_parts: List[str] = Field(default_factory=list)
    restricted_movements: List[str] = Field(default_factory=list)
    restricted_exercise_types: List[str] = Field(default_factory=list)
    max_exertion_level: float = 100
    requires_supervision: bool = False
    clearance_required: bool = False
    effective_date: date
    expiry_date: Optional[date] = None
    medical_notes: Optional[str] = None
    prescribed_by: Optional[str] = None
    prescribed_at: Optional[datetime] = None

    @field_validator("effective_date", "expiry_date", mode="before")
    @classmethod
    def accept_datetimes(cls, value):
        return _coerce_date(value)


class PlanningPhase(CamelModel):
    id: str
    name: str = ""
    type: Optional[str] = None
    start_date: date
    end_date: date
    load_multiplier: float = 1.0
    training_frequency: Optional[float] = None  # sessions per week
    game_frequency: Optional[float] = None
    intensity: Optional[PhaseIntensity] = None
    focus: List[str] = Field(default_factory=list)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def accept_datetimes(cls, value):
        return _coerce_date(value)

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


class SeasonPlan(CamelModel):
    id: str
    team_id: str
    season: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    current_phase_id: Optional[str] = None
    phases: List[PlanningPhase] = Field(default_factory=list)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def accept_datetimes(cls, value):
        return _coerce_date(value)


# ---------------------------------------------------------------------------
# Structured JSON columns
# ---------------------------------------------------------------------------

class HeartRateZone(BaseModel):
    min: float
    max: float


class PerformanceThresholds(BaseModel):
    target_heart_rate_zone: Optional[HeartRateZone] = None
    min_completion_rate: Optional[float] = None
    max_rpe: Optional[float] = None


class LoadProgression(BaseModel):
    base_load: float
    progression_type: Literal["linear", "step", "undulating", "custom"] = "linear"
    progression_rate: Optional[float] = None
    min_load: Optional[float] = None
    max_load: Optional[float] = None


class RecurrencePattern(BaseModel):
    interval: int = 1
    days_of_week: List[int] = Field(default_factory=list)  # 0 = Monday
    exceptions: List[date] = Field(default_factory=list)


class AssignmentTarget(BaseModel):
    """Hierarchy node the assignment is aimed at."""
    player_ids: List[str] = Field(default_factory=list)
    team_id: Optional[str] = None
    line_id: Optional[str] = None
    position: Optional[str] = None
    age_group: Optional[str] = None
    group_id: Optional[str] = None


class IntensityZone(BaseModel):
    min: float = 0
    max: float


class ExerciseSubstitution(BaseModel):
    original_exercise_id: str
    substitute_exercise_id: str
    reason: Optional[str] = None


class OverrideModifications(BaseModel):
    load_multiplier: Optional[float] = None
    rest_multiplier: Optional[float] = None
    exclude_exercises: List[str] = Field(default_factory=list)
    substitute_exercises: List[ExerciseSubstitution] = Field(default_factory=list)
    intensity_zone: Optional[IntensityZone] = None
    max_heart_rate: Optional[float] = None
    exempt: bool = False
    exemption_reason: Optional[str] = None
    custom_modifications: Dict[str, Any] = Field(default_factory=dict)


class RestrictionSnapshot(BaseModel):
    """Copy of the medical restriction(s) behind a medical override."""
    restriction_type: str = "injury"
    severity: Optional[RestrictionSeverity] = None
    medical_record_ids: List[str] = Field(default_factory=list)
    affected_body_parts: List[str] = Field(default_factory=list)
    restricted_movements: List[str] = Field(default_factory=list)
    restricted_exercise_types: List[str] = Field(default_factory=list)
    max_exertion_level: Optional[float] = None
    requires_supervision: bool = False
    clearance_required: bool = False
    medical_notes: Optional[str] = None


class OverrideMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    source: Literal["medical_staff", "coach", "player_request", "system"] = "system"
    priority: Optional[Priority] = None
    synced_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    related_incident_id: Optional[str] = None


class _AdjustmentEntry(BaseModel):
    applied_at: datetime
    applied_by: str = "system"
    phase_id: Optional[str] = None
    reason: str = ""


class LoadAdjustment(_AdjustmentEntry):
    kind: Literal["load"] = "load"
    original_value: float
    adjusted_value: float


class FrequencyAdjustment(_AdjustmentEntry):
    kind: Literal["frequency"] = "frequency"
    original_value: int
    adjusted_value: int


class IntensityAdjustment(_AdjustmentEntry):
    kind: Literal["intensity"] = "intensity"
    original_value: float
    adjusted_value: float
    intensity: PhaseIntensity


class WorkloadAdjustment(_AdjustmentEntry):
    kind: Literal["workload"] = "workload"
    original_value: float
    adjusted_value: float
    reduction: float


class MergeRecord(_AdjustmentEntry):
    kind: Literal["merge"] = "merge"
    previous_workout_session_id: str
    incoming_workout_session_id: str
    merged_workout_session_id: str


AdjustmentEntry = Annotated[
    Union[LoadAdjustment, FrequencyAdjustment, IntensityAdjustment, WorkloadAdjustment, MergeRecord],
    Field(discriminator="kind"),
]


class OriginalPlanningData(BaseModel):
    base_load: Optional[float] = None
    original_frequency: Optional[float] = None
    original_intensity: Optional[HeartRateZone] = None


class AssignmentMetadata(BaseModel):
    """Versioned provenance stored on each assignment.

    ``phase_adjustments`` only ever grows; entries are appended.
    """
    model_config = ConfigDict(extra="ignore")

    version: Literal[1] = 1
    planning_phase_id: Optional[str] = None
    last_phase_adjustment: Optional[datetime] = None
    original_planning_data: Optional[OriginalPlanningData] = None
    phase_adjustments: List[AdjustmentEntry] = Field(default_factory=list)
    notes: Optional[str] = None


# ---------------------------------------------------------------------------
# Assignment engine
# ---------------------------------------------------------------------------

class WorkoutAssignmentResponse(BaseModel):
    id: UUID
    workout_session_id: UUID
    player_id: Optional[str] = None
    team_id: str
    organization_id: str
    assignment_type: AssignmentType
    status: AssignmentStatus
    assignment_target: Optional[AssignmentTarget] = None
    effective_date: date
    expiry_date: Optional[date] = None
    scheduled_date: date
    scheduled_at: Optional[datetime] = None
    recurrence_type: RecurrenceType = RecurrenceType.NONE
    recurrence_pattern: Optional[RecurrencePattern] = None
    load_progression: Optional[LoadProgression] = None
    performance_thresholds: Optional[PerformanceThresholds] = None
    priority: int = 0
    parent_assignment_id: Optional[UUID] = None
    metadata: Optional[AssignmentMetadata] = Field(
        default=None,
        validation_alias=AliasChoices("assignment_metadata", "metadata"),
    )

    model_config = ConfigDict(from_attributes=True)


class WorkoutPlayerOverrideResponse(BaseModel):
    id: UUID
    workout_assignment_id: UUID
    player_id: str
    override_type: OverrideType
    status: OverrideStatus
    effective_date: date
    expiry_date: Optional[date] = None
    modifications: OverrideModifications
    medical_record_id: Optional[str] = None
    medical_restrictions: Optional[RestrictionSnapshot] = None
    requested_by: Optional[str] = None
    approved_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ConflictInfo(BaseModel):
    id: str
    player_id: str
    conflict_type: ConflictType
    existing_assignment: Optional[WorkoutAssignmentResponse] = None
    proposed_assignment: Dict[str, Any] = Field(default_factory=dict)
    message: str
    severity: Priority
    resolution_options: List[ResolutionAction] = Field(default_factory=list)


class AssignmentResult(BaseModel):
    created: int = 0
    failed: int = 0
    skipped: int = 0
    conflicts: List[ConflictInfo] = Field(default_factory=list)
    assignments: List[WorkoutAssignmentResponse] = Field(default_factory=list)
    failed_player_ids: List[str] = Field(default_factory=list)
    phase_adjustments: int = 0


class BulkAssignRequest(BaseModel):
    workout_session_id: UUID
    assignment_type: AssignmentType = AssignmentType.INDIVIDUAL
    assignment_target: AssignmentTarget
    scheduled_date: date
    scheduled_at: Optional[datetime] = None
    effective_date: Optional[date] = None  # defaults to scheduled_date
    expiry_date: Optional[date] = None
    recurrence_type: RecurrenceType = RecurrenceType.NONE
    recurrence_pattern: Optional[RecurrencePattern] = None
    load_progression: Optional[LoadProgression] = None
    performance_thresholds: Optional[PerformanceThresholds] = None
    priority: int = Field(default=5, ge=0, le=10)
    allow_player_overrides: bool = True
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    check_medical_restrictions: bool = False
    check_load_limits: bool = False
    max_daily_load: Optional[float] = None
    max_weekly_load: Optional[float] = None


class MergeOptions(BaseModel):
    """How two workouts on the same slot are combined.

    exercise_strategy:
        union: existing exercises first, then incoming ones not already present
        existing_only / incoming_only: keep one side's exercises
    duration_strategy:
        sum: durations add up; max: the longer workout wins
    """
    incoming_workout_session_id: UUID
    exercise_strategy: Literal["union", "existing_only", "incoming_only"] = "union"
    duration_strategy: Literal["sum", "max"] = "sum"
    name: Optional[str] = None


class CascadeAssignRequest(BulkAssignRequest):
    assignment_type: AssignmentType = AssignmentType.TEAM
    cascade_to_sub_teams: bool = False
    cascade_to_players: bool = True
    exclude_team_ids: List[str] = Field(default_factory=list)
    exclude_player_ids: List[str] = Field(default_factory=list)
    respect_existing_assignments: bool = True
    conflict_resolution: CascadeConflictPolicy = CascadeConflictPolicy.SKIP
    merge_options: Optional[Dict[str, Any]] = None


class ConflictCheckRequest(BaseModel):
    player_ids: List[str]
    start_date: date
    end_date: date
    workout_types: List[str] = Field(default_factory=list)
    check_medical_restrictions: bool = False
    check_load_limits: bool = False
    max_daily_load: Optional[float] = None
    max_weekly_load: Optional[float] = None
    proposed_load: float = 0


class ResolveConflictRequest(BaseModel):
    assignment_id: UUID
    resolution: ResolutionAction
    new_scheduled_date: Optional[date] = None
    merge_options: Optional[MergeOptions] = None
    affected_player_ids: List[str] = Field(default_factory=list)
    reason: Optional[str] = None


class CreatePlayerOverrideRequest(BaseModel):
    player_id: str
    override_type: OverrideType
    effective_date: date
    expiry_date: Optional[date] = None
    modifications: OverrideModifications = Field(default_factory=OverrideModifications)
    medical_record_id: Optional[str] = None
    medical_restrictions: Optional[RestrictionSnapshot] = None
    approval_notes: Optional[str] = None
    auto_approve: bool = True


class CompleteAssignmentRequest(BaseModel):
    player_id: str
    completed_at: datetime
    actual_load: float
    completion_rate: float = Field(ge=0, le=100)
    performance: Dict[str, float] = Field(default_factory=dict)


class PhaseAdjustmentSummary(BaseModel):
    team_id: str
    phase_id: Optional[str] = None
    updated: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Medical sync / compliance / alternatives
# ---------------------------------------------------------------------------

class SyncMedicalRestrictionsRequest(BaseModel):
    organization_id: str
    team_id: Optional[str] = None
    player_ids: List[str] = Field(default_factory=list)
    from_date: Optional[date] = None
    include_expired: bool = False


class MedicalSyncResult(BaseModel):
    synced: int = 0
    created: int = 0
    updated: int = 0


class ComplianceCheckRequest(BaseModel):
    session_id: UUID
    player_id: Optional[str] = None
    detailed: bool = False


class BulkComplianceRequest(BaseModel):
    session_ids: List[UUID]
    player_id: Optional[str] = None
    detailed: bool = False


class ComplianceViolation(BaseModel):
    restriction_id: Optional[str] = None
    exercise_id: str
    exercise_name: Optional[str] = None
    violation_type: ViolationType
    description: str
    severity: RestrictionSeverity


class PlayerCompliance(BaseModel):
    player_id: str
    assignment_id: Optional[UUID] = None
    status: ComplianceStatus
    restrictions: List[MedicalRestriction] = Field(default_factory=list)
    violations: List[ComplianceViolation] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class ComplianceResult(BaseModel):
    session_id: UUID
    overall_status: ComplianceStatus
    checked_at: datetime
    player_compliance: List[PlayerCompliance] = Field(default_factory=list)
    requires_approval: bool = False
    approval_status: Optional[str] = None


class ReportMedicalConcernRequest(BaseModel):
    player_id: str
    session_id: Optional[UUID] = None
    exercise_id: Optional[str] = None
    concern_type: Literal["injury", "pain", "discomfort", "fatigue", "other"] = "injury"
    severity: Priority = Priority.MEDIUM
    description: str = ""
    affected_body_parts: List[str] = Field(default_factory=list)
    reported_by: str
    occurred_at: datetime


class ConcernReportResult(BaseModel):
    concern_id: str
    status: str


class GetAlternativesRequest(BaseModel):
    player_id: str
    workout_id: Optional[UUID] = None
    exercise_ids: List[UUID] = Field(default_factory=list)


class ExerciseSummary(BaseModel):
    id: str
    name: str
    category: str
    primary_muscles: List[str] = Field(default_factory=list)
    equipment: List[str] = Field(default_factory=list)


class AlternativeExercise(BaseModel):
    original_exercise_id: str
    alternative_exercise_id: str
    alternative_name: Optional[str] = None
    reason: str
    load_multiplier: float
    rest_multiplier: float
    modifications: List[str] = Field(default_factory=list)
    requires_supervision: bool = False
    suitability_score: float = Field(ge=0, le=100)


class ExerciseAlternatives(BaseModel):
    original_exercise: ExerciseSummary
    suggested_alternatives: List[AlternativeExercise] = Field(default_factory=list)
    cannot_perform: bool
    requires_approval: bool


class AlternativesResult(BaseModel):
    player_id: str
    restrictions: List[MedicalRestriction] = Field(default_factory=list)
    alternatives: List[ExerciseAlternatives] = Field(default_factory=list)
    general_recommendations: List[str] = Field(default_factory=list)
    load_adjustment: float = 1.0
    rest_adjustment: float = 1.0


class CreateMedicalOverrideRequest(BaseModel):
    workout_assignment_id: UUID
    player_id: str
    medical_record_id: str
    restriction: MedicalRestriction
    alternatives: List[AlternativeExercise] = Field(default_factory=list)
    auto_approve: bool = False
    notes: Optional[str] = None
