from sqlalchemy import Column, Integer, Boolean, CheckConstraint, Float, Date, DateTime, ForeignKey, Text, String, Index, UniqueConstraint, JSON, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid

from schemas import AssignmentMetadata, OverrideMetadata, OverrideModifications, RestrictionSnapshot

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB, "postgresql")


class ExerciseTemplate(Base):
    """Library exercise. Restriction checks read movement/muscle/intensity data from here."""
    __tablename__ = "exercise_template"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Text, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    category = Column(String(50), nullable=False, index=True)  # e.g. 'strength', 'plyometric'
    movement_patterns = Column(JSONType, nullable=False, default=list)  # e.g. ['jumping', 'squatting']
    primary_muscles = Column(JSONType, nullable=False, default=list)
    secondary_muscles = Column(JSONType, nullable=False, default=list)
    equipment = Column(JSONType, nullable=False, default=list)
    default_intensity = Column(Float, nullable=False, default=50)  # % of max exertion
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class WorkoutSession(Base):
    __tablename__ = "workout_session"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Text, nullable=False, index=True)
    team_id = Column(Text, nullable=True, index=True)
    name = Column(String(255), nullable=False)
    type = Column(String(50), nullable=False, default="strength")  # workout type
    status = Column(String(30), nullable=False, default="scheduled")
    estimated_duration = Column(Integer, nullable=True)  # minutes
    estimated_load = Column(Float, nullable=True)
    created_by = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    exercises = relationship(
        "SessionExercise",
        back_populates="workout_session",
        order_by="SessionExercise.order_index",
        cascade="all, delete-orphan",
    )


class SessionExercise(Base):
    """One exercise slot inside a workout session."""
    __tablename__ = "session_exercise"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workout_session_id = Column(Uuid, ForeignKey("workout_session.id"), nullable=False, index=True)
    exercise_template_id = Column(Uuid, ForeignKey("exercise_template.id"), nullable=True)
    name = Column(String(255), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    duration = Column(Integer, nullable=True)  # minutes
    requires_supervision = Column(Boolean, default=False, nullable=False)

    workout_session = relationship("WorkoutSession", back_populates="exercises")
    exercise_template = relationship("ExerciseTemplate")


class WorkoutAssignment(Base):
    """
    A workout session scheduled for one player (or, with player_id NULL, the
    org-level parent of a cascade). Children keep a back-reference to the
    parent but are independent records once created.
    """
    __tablename__ = "workout_assignment"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workout_session_id = Column(Uuid, ForeignKey("workout_session.id"), nullable=False, index=True)
    player_id = Column(Text, nullable=True, index=True)
    team_id = Column(Text, nullable=False, index=True)
    organization_id = Column(Text, nullable=False, index=True)
    assignment_type = Column(String(30), nullable=False, default="individual")
    status = Column(String(20), nullable=False, default="draft", index=True)
    assignment_target = Column(JSONType, nullable=True)

    effective_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=True)
    scheduled_date = Column(Date, nullable=False, index=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)

    recurrence_type = Column(String(20), nullable=False, default="none")
    recurrence_pattern = Column(JSONType, nullable=True)  # RecurrencePattern
    load_progression = Column(JSONType, nullable=True)  # LoadProgression
    performance_thresholds = Column(JSONType, nullable=True)  # PerformanceThresholds
    priority = Column(Integer, nullable=False, default=5)
    allow_player_overrides = Column(Boolean, nullable=False, default=True)

    parent_assignment_id = Column(Uuid, ForeignKey("workout_assignment.id"), nullable=True, index=True)
    # 'metadata' is reserved on declarative classes
    assignment_metadata = Column("metadata", JSONType, nullable=False, default=dict)  # AssignmentMetadata

    exercises_total = Column(Integer, nullable=True)
    exercises_completed = Column(Integer, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(Text, nullable=True)
    updated_by = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    workout_session = relationship("WorkoutSession")
    parent = relationship("WorkoutAssignment", remote_side=[id], back_populates="children")
    children = relationship("WorkoutAssignment", back_populates="parent")
    player_overrides = relationship("WorkoutPlayerOverride", back_populates="workout_assignment")

    __table_args__ = (
        # A session lands once per player per day within an organization.
        UniqueConstraint(
            "workout_session_id", "organization_id", "player_id", "effective_date",
            name="uq_workout_assignment_session_org_player_date",
        ),
        CheckConstraint("priority >= 0 AND priority <= 10", name="ck_workout_assignment_priority"),
        Index("ix_workout_assignment_player_scheduled", "player_id", "scheduled_date"),
    )

    @property
    def metadata_model(self) -> AssignmentMetadata:
        return AssignmentMetadata.model_validate(self.assignment_metadata or {})

    @metadata_model.setter
    def metadata_model(self, value: AssignmentMetadata) -> None:
        # Reassign (not mutate) so SQLAlchemy sees the JSON change
        self.assignment_metadata = value.model_dump(mode="json")

    @property
    def base_load(self):
        return (self.load_progression or {}).get("base_load")


class WorkoutPlayerOverride(Base):
    """
    Player-specific modification of an assignment. Never deleted: rows move
    between pending/approved/rejected/expired.
    """
    __tablename__ = "workout_player_override"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workout_assignment_id = Column(Uuid, ForeignKey("workout_assignment.id"), nullable=False, index=True)
    player_id = Column(Text, nullable=False, index=True)
    override_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)
    effective_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=True)

    modifications = Column(JSONType, nullable=False, default=dict)  # OverrideModifications
    medical_record_id = Column(Text, nullable=True, index=True)
    medical_restrictions = Column(JSONType, nullable=True)  # RestrictionSnapshot

    requested_by = Column(Text, nullable=True)
    requested_at = Column(DateTime(timezone=True), nullable=True)
    approved_by = Column(Text, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    approval_notes = Column(Text, nullable=True)
    requires_review = Column(Boolean, nullable=False, default=False)
    next_review_date = Column(DateTime(timezone=True), nullable=True)

    override_metadata = Column("metadata", JSONType, nullable=False, default=dict)  # OverrideMetadata
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    workout_assignment = relationship("WorkoutAssignment", back_populates="player_overrides")

    __table_args__ = (
        UniqueConstraint(
            "workout_assignment_id", "player_id", "effective_date",
            name="uq_workout_player_override_assignment_player_date",
        ),
        CheckConstraint(
            "override_type <> 'medical' OR medical_record_id IS NOT NULL",
            name="ck_workout_player_override_medical_record",
        ),
    )

    @property
    def modifications_model(self) -> OverrideModifications:
        return OverrideModifications.model_validate(self.modifications or {})

    @property
    def restriction_snapshot(self) -> RestrictionSnapshot:
        return RestrictionSnapshot.model_validate(self.medical_restrictions or {})

    @property
    def metadata_model(self) -> OverrideMetadata:
        return OverrideMetadata.model_validate(self.override_metadata or {})
