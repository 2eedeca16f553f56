"""
Restriction Mapper

Pure translation of medical restrictions into training modifications:
- severity -> load / rest multipliers and priority label
- several restrictions -> most conservative combination
- exercise exclusion set (category, movement pattern, muscle, intensity)
- cautionary notes and general recommendations shown to coaches

No I/O. Restriction arguments may be ``MedicalRestriction`` objects from the
medical service or ``RestrictionSnapshot`` copies stored on overrides; both
expose the same attribute names. Exercises are ``ExerciseTemplate`` rows (or
anything with the same attributes).
"""

from typing import Iterable, List, Optional, Sequence, Tuple

from schemas import (
    IntensityZone,
    MedicalRestriction,
    OverrideModifications,
)
from services.constants import Priority, RestrictionSeverity, RestrictionStatus
from services.rounding import round_half_up


# =============================================================================
# LOOKUP TABLES
# =============================================================================

NO_RESTRICTION_LOAD = 1.0
NO_RESTRICTION_REST = 1.0

LOAD_MULTIPLIERS = {
    RestrictionSeverity.MILD: 0.8,
    RestrictionSeverity.MODERATE: 0.6,
    RestrictionSeverity.SEVERE: 0.3,
    RestrictionSeverity.COMPLETE: 0.0,
}

# Complete restrictions exempt the player outright; 2.0 keeps the table monotonic.
REST_MULTIPLIERS = {
    RestrictionSeverity.MILD: 1.2,
    RestrictionSeverity.MODERATE: 1.5,
    RestrictionSeverity.SEVERE: 2.0,
    RestrictionSeverity.COMPLETE: 2.0,
}

SEVERITY_PRIORITY = {
    RestrictionSeverity.MILD: Priority.LOW,
    RestrictionSeverity.MODERATE: Priority.MEDIUM,
    RestrictionSeverity.SEVERE: Priority.HIGH,
    RestrictionSeverity.COMPLETE: Priority.CRITICAL,
}

PRIORITY_SEVERITY = {priority: severity for severity, priority in SEVERITY_PRIORITY.items()}

# Age-neutral max heart rate used to turn an exertion ceiling into bpm
ESTIMATED_MAX_HEART_RATE = 190

EXEMPTION_REASON = "Medical restriction - complete rest required"


def _check_total(table: dict, name: str, enum_cls) -> None:
    missing = [member for member in enum_cls if member not in table]
    if missing:
        raise RuntimeError(f"{name} has no entry for {', '.join(m.value for m in missing)}")


_check_total(LOAD_MULTIPLIERS, "LOAD_MULTIPLIERS", RestrictionSeverity)
_check_total(REST_MULTIPLIERS, "REST_MULTIPLIERS", RestrictionSeverity)
_check_total(SEVERITY_PRIORITY, "SEVERITY_PRIORITY", RestrictionSeverity)
_check_total(PRIORITY_SEVERITY, "PRIORITY_SEVERITY", Priority)


# =============================================================================
# MULTIPLIERS
# =============================================================================

def load_multiplier(severity: Optional[RestrictionSeverity]) -> float:
    """Load multiplier for one severity. ``None`` means no restriction."""
    if severity is None:
        return NO_RESTRICTION_LOAD
    return LOAD_MULTIPLIERS[RestrictionSeverity(severity)]


def rest_multiplier(severity: Optional[RestrictionSeverity]) -> float:
    if severity is None:
        return NO_RESTRICTION_REST
    return REST_MULTIPLIERS[RestrictionSeverity(severity)]


def severity_to_priority(severity: RestrictionSeverity) -> Priority:
    return SEVERITY_PRIORITY[RestrictionSeverity(severity)]


def priority_to_severity(priority) -> RestrictionSeverity:
    """Reverse mapping. Unknown or missing priorities read as moderate."""
    try:
        return PRIORITY_SEVERITY[Priority(priority)]
    except ValueError:
        return RestrictionSeverity.MODERATE


def combined_multipliers(restrictions: Iterable) -> Tuple[float, float]:
    """
    (load, rest) across several restrictions: the minimum load multiplier and
    the maximum rest multiplier. Empty input gives (1.0, 1.0).
    """
    load = NO_RESTRICTION_LOAD
    rest = NO_RESTRICTION_REST
    for restriction in restrictions:
        load = min(load, load_multiplier(restriction.severity))
        rest = max(rest, rest_multiplier(restriction.severity))
    return load, rest


def active_restrictions(restrictions: Iterable[MedicalRestriction]) -> List[MedicalRestriction]:
    return [r for r in restrictions if r.status == RestrictionStatus.ACTIVE]


# =============================================================================
# EXCLUSION
# =============================================================================

def _max_exertion(restriction) -> float:
    value = getattr(restriction, "max_exertion_level", None)
    return 100 if value is None else value


def prohibition_reasons(exercise, restriction) -> List[str]:
    """Why ``exercise`` is off-limits under ``restriction`` (empty when allowed)."""
    reasons = []
    if exercise.category in (restriction.restricted_exercise_types or []):
        reasons.append(f"{exercise.category} exercises are restricted")

    movements = set(exercise.movement_patterns or []) & set(restriction.restricted_movements or [])
    if movements:
        reasons.append(f"restricted movement: {', '.join(sorted(movements))}")

    muscles = set(exercise.primary_muscles or []) | set(exercise.secondary_muscles or [])
    body_parts = muscles & set(restriction.affected_body_parts or [])
    if body_parts:
        reasons.append(f"loads affected body part: {', '.join(sorted(body_parts))}")

    if (exercise.default_intensity or 0) > _max_exertion(restriction):
        reasons.append(
            f"intensity {exercise.default_intensity:g}% exceeds max exertion {_max_exertion(restriction):g}%"
        )
    return reasons


def is_exercise_prohibited(exercise, restrictions: Iterable) -> bool:
    return any(prohibition_reasons(exercise, r) for r in restrictions)


def excluded_exercise_ids(exercises: Iterable, restrictions: Sequence) -> List[str]:
    """Ids of every exercise in ``exercises`` prohibited by any restriction."""
    return [str(e.id) for e in exercises if is_exercise_prohibited(e, restrictions)]


# =============================================================================
# MODIFICATIONS
# =============================================================================

def generate_modifications(restriction, exercises: Iterable = ()) -> OverrideModifications:
    """Override modifications for a single restriction."""
    return combined_modifications([restriction], exercises)


def combined_modifications(restrictions: Sequence, exercises: Iterable = ()) -> OverrideModifications:
    """
    Most conservative modifications for several restrictions that apply to the
    same player on the same day: lowest load, longest rest, union of
    exclusions, lowest exertion ceiling, exempt if any restriction is complete.
    """
    load, rest = combined_multipliers(restrictions)
    modifications = OverrideModifications(load_multiplier=load, rest_multiplier=rest)

    if any(RestrictionSeverity(r.severity) == RestrictionSeverity.COMPLETE for r in restrictions):
        modifications.exempt = True
        modifications.exemption_reason = EXEMPTION_REASON

    ceiling = min((_max_exertion(r) for r in restrictions), default=100)
    if ceiling < 100:
        modifications.intensity_zone = IntensityZone(min=0, max=ceiling)
        modifications.max_heart_rate = round_half_up(ESTIMATED_MAX_HEART_RATE * ceiling / 100)

    modifications.exclude_exercises = excluded_exercise_ids(exercises, restrictions)
    return modifications


def exercise_modification_notes(restrictions: Sequence) -> List[str]:
    """Cautionary notes for performing an exercise in place under restrictions."""
    notes: List[str] = []

    def add(note: str) -> None:
        if note not in notes:
            notes.append(note)

    for restriction in restrictions:
        if _max_exertion(restriction) < 80:
            add(f"Keep heart rate below {round_half_up(_max_exertion(restriction))}% of maximum")
        if restriction.affected_body_parts:
            add(f"Avoid excessive stress on {', '.join(restriction.affected_body_parts)}")

    load, rest = combined_multipliers(restrictions)
    if load < 1.0:
        add(f"Reduce weight/resistance to {round_half_up(load * 100)}% of normal")
    if rest > 1.0:
        add(f"Increase rest periods by {round_half_up((rest - 1) * 100)}%")
    return notes


def general_recommendations(restrictions: Sequence) -> List[str]:
    if not restrictions:
        return ["No active medical restrictions found"]

    recommendations: List[str] = []

    def add(text: str) -> None:
        if text not in recommendations:
            recommendations.append(text)

    for restriction in restrictions:
        severity = RestrictionSeverity(restriction.severity)
        if severity in (RestrictionSeverity.SEVERE, RestrictionSeverity.COMPLETE):
            add("Consider postponing high-intensity training until medical clearance")
        if restriction.requires_supervision:
            add("Ensure qualified supervision is present during all training sessions")
        if _max_exertion(restriction) < 70:
            add("Focus on technique and mobility work rather than strength/power")
        if {"back", "spine"} & set(restriction.affected_body_parts or []):
            add("Prioritize core stability and avoid axial loading")
        if restriction.clearance_required:
            add("Obtain medical clearance before returning to full training")

    add("Monitor for any signs of pain or discomfort during exercise")
    add("Ensure proper warm-up and cool-down protocols are followed")
    if len(restrictions) > 1:
        add("Multiple restrictions present - consider individualized programming")
    return recommendations


def override_to_restriction(override) -> MedicalRestriction:
    """Rebuild a restriction view from a locally stored medical override."""
    snapshot = override.restriction_snapshot
    metadata = override.metadata_model
    severity = snapshot.severity or priority_to_severity(metadata.priority)
    return MedicalRestriction(
        id=override.medical_record_id or str(override.id),
        player_id=override.player_id,
        severity=severity,
        status=RestrictionStatus.ACTIVE,
        affected_body_parts=snapshot.affected_body_parts,
        restricted_movements=snapshot.restricted_movements,
        restricted_exercise_types=snapshot.restricted_exercise_types,
        max_exertion_level=_max_exertion(snapshot),
        requires_supervision=snapshot.requires_supervision,
        clearance_required=snapshot.clearance_required,
        effective_date=override.effective_date,
        expiry_date=override.expiry_date,
        medical_notes=snapshot.medical_notes,
        prescribed_by=override.requested_by,
        prescribed_at=override.requested_at,
    )
