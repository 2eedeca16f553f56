"""
Enumerations shared by the assignment, override and planning services.

Values match the strings stored in the database and exchanged with the
medical and planning services.
"""

from enum import Enum


class AssignmentType(str, Enum):
    """Hierarchy node an assignment was derived from."""
    INDIVIDUAL = "individual"
    TEAM = "team"
    LINE = "line"
    POSITION = "position"
    AGE_GROUP = "age_group"
    CUSTOM_GROUP = "custom_group"


class AssignmentStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


# Legal status moves. Archived is terminal.
ASSIGNMENT_TRANSITIONS = {
    AssignmentStatus.DRAFT: {AssignmentStatus.ACTIVE, AssignmentStatus.CANCELLED},
    AssignmentStatus.ACTIVE: {AssignmentStatus.COMPLETED, AssignmentStatus.CANCELLED},
    AssignmentStatus.COMPLETED: {AssignmentStatus.ARCHIVED},
    AssignmentStatus.CANCELLED: {AssignmentStatus.ARCHIVED},
    AssignmentStatus.ARCHIVED: set(),
}

# Assignments that still occupy a player's calendar
OPEN_ASSIGNMENT_STATUSES = (AssignmentStatus.ACTIVE, AssignmentStatus.DRAFT)


class RecurrenceType(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class OverrideType(str, Enum):
    MEDICAL = "medical"
    PERFORMANCE = "performance"
    SCHEDULING = "scheduling"
    CUSTOM = "custom"


class OverrideStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


# Overrides that still modify the player's workout
LIVE_OVERRIDE_STATUSES = (OverrideStatus.PENDING, OverrideStatus.APPROVED)


class RestrictionSeverity(str, Enum):
    """Ordered from least to most restrictive."""
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"
    COMPLETE = "complete"


class RestrictionStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    EXPIRED = "expired"
    CLEARED = "cleared"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ComplianceStatus(str, Enum):
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non_compliant"
    PARTIAL = "partial"
    NOT_APPLICABLE = "not_applicable"


# Higher rank wins when rolling player verdicts up to a session verdict.
COMPLIANCE_RANK = {
    ComplianceStatus.NOT_APPLICABLE: 0,
    ComplianceStatus.COMPLIANT: 1,
    ComplianceStatus.PARTIAL: 2,
    ComplianceStatus.NON_COMPLIANT: 3,
}


class ViolationType(str, Enum):
    MOVEMENT = "movement"
    INTENSITY = "intensity"
    SUPERVISION = "supervision"


class ConflictType(str, Enum):
    SCHEDULING = "scheduling"
    MEDICAL = "medical"
    LOAD_LIMIT = "load_limit"
    DUPLICATE = "duplicate"


class ResolutionAction(str, Enum):
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"
    MERGE = "merge"
    OVERRIDE = "override"


class CascadeConflictPolicy(str, Enum):
    """What a cascade does when the player already has a same-day assignment."""
    SKIP = "skip"
    REPLACE = "replace"
    MERGE = "merge"


class PhaseIntensity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    PEAK = "peak"
    RECOVERY = "recovery"


# Target heart-rate ceiling multiplier per planning-phase intensity
INTENSITY_MULTIPLIERS = {
    PhaseIntensity.LOW: 0.8,
    PhaseIntensity.MEDIUM: 1.0,
    PhaseIntensity.HIGH: 1.2,
    PhaseIntensity.PEAK: 1.4,
    PhaseIntensity.RECOVERY: 0.6,
}

# Fraction of base load removed when a workload threshold is breached
# and the planning service does not recommend a value.
DEFAULT_WORKLOAD_REDUCTION = 0.2

# Medical concerns create a pending override for this long.
CONCERN_OVERRIDE_DAYS = 7
CONCERN_REVIEW_HOURS = 24
