"""
Exercise Alternative Finder

Ranks substitute exercises for one that a player's medical restrictions
prohibit. Candidates come from the same category within the same
organization; anything still prohibited is dropped.

Suitability starts at 100:
- up to -30 for primary-muscle non-overlap (proportional)
- -10 if the equipment differs
- -15 if the candidate is more intense than the original
- +10 if the candidate sits below 80% of the tightest exertion ceiling
Clamped to [0, 100]; anything under 60 is discarded; best three are kept.
"""

import logging
from typing import List, Sequence

from sqlalchemy.orm import Session

from models import ExerciseTemplate
from schemas import AlternativeExercise, ExerciseAlternatives, ExerciseSummary
from services import restriction_mapper

logger = logging.getLogger(__name__)

MIN_SUITABILITY = 60
MAX_ALTERNATIVES = 3
MODIFIED_IN_PLACE_SCORE = 80

MUSCLE_PENALTY = 30
EQUIPMENT_PENALTY = 10
INTENSITY_PENALTY = 15
SAFETY_BONUS = 10
SAFETY_FRACTION = 0.8


def score_candidate(original, candidate, restrictions: Sequence) -> float:
    score = 100.0

    original_muscles = set(original.primary_muscles or [])
    if original_muscles:
        overlap = len(original_muscles & set(candidate.primary_muscles or []))
        score -= MUSCLE_PENALTY * (1 - overlap / len(original_muscles))

    if sorted(set(original.equipment or [])) != sorted(set(candidate.equipment or [])):
        score -= EQUIPMENT_PENALTY

    if (candidate.default_intensity or 0) > (original.default_intensity or 0):
        score -= INTENSITY_PENALTY

    ceilings = [r.max_exertion_level for r in restrictions if r.max_exertion_level is not None]
    if ceilings and (candidate.default_intensity or 0) < min(ceilings) * SAFETY_FRACTION:
        score += SAFETY_BONUS

    return round(max(0.0, min(100.0, score)), 2)


def _alternative_reason(original, candidate, restrictions: Sequence) -> str:
    reasons = []
    if any(r.restricted_movements for r in restrictions):
        reasons.append("avoids restricted movement patterns")
    if any(r.affected_body_parts for r in restrictions):
        reasons.append("targets different muscle groups")
    if (candidate.default_intensity or 0) < (original.default_intensity or 0):
        reasons.append("lower intensity option")
    if "bodyweight" in (candidate.equipment or []):
        reasons.append("no equipment required")

    if reasons:
        return f"Alternative exercise that {', '.join(reasons)}"
    return "Safe alternative based on medical restrictions"


def rank_alternatives(original, candidates: Sequence, restrictions: Sequence) -> List[AlternativeExercise]:
    """Score, filter and order ``candidates`` as substitutes for ``original``."""
    load, rest = restriction_mapper.combined_multipliers(restrictions)
    notes = restriction_mapper.exercise_modification_notes(restrictions)
    supervision = any(r.requires_supervision for r in restrictions)

    ranked = []
    for candidate in candidates:
        if str(candidate.id) == str(original.id):
            continue
        if restriction_mapper.is_exercise_prohibited(candidate, restrictions):
            continue
        score = score_candidate(original, candidate, restrictions)
        if score < MIN_SUITABILITY:
            continue
        ranked.append(AlternativeExercise(
            original_exercise_id=str(original.id),
            alternative_exercise_id=str(candidate.id),
            alternative_name=candidate.name,
            reason=_alternative_reason(original, candidate, restrictions),
            load_multiplier=load,
            rest_multiplier=rest,
            modifications=notes,
            requires_supervision=supervision,
            suitability_score=score,
        ))

    ranked.sort(key=lambda a: a.suitability_score, reverse=True)
    return ranked[:MAX_ALTERNATIVES]


def modified_in_place(exercise, restrictions: Sequence, reason: str) -> AlternativeExercise:
    """Keep the exercise itself, with reduced load/rest and cautionary notes."""
    load, rest = restriction_mapper.combined_multipliers(restrictions)
    return AlternativeExercise(
        original_exercise_id=str(exercise.id),
        alternative_exercise_id=str(exercise.id),
        alternative_name=exercise.name,
        reason=reason,
        load_multiplier=load,
        rest_multiplier=rest,
        modifications=restriction_mapper.exercise_modification_notes(restrictions),
        requires_supervision=any(r.requires_supervision for r in restrictions),
        suitability_score=MODIFIED_IN_PLACE_SCORE,
    )


def summarize_exercise(exercise) -> ExerciseSummary:
    return ExerciseSummary(
        id=str(exercise.id),
        name=exercise.name,
        category=exercise.category,
        primary_muscles=list(exercise.primary_muscles or []),
        equipment=list(exercise.equipment or []),
    )


class ExerciseAlternativeFinder:
    """Looks up candidate exercises in the database and ranks them."""

    def __init__(self, db: Session):
        self.db = db

    def candidates_for(self, exercise: ExerciseTemplate) -> List[ExerciseTemplate]:
        return self.db.query(ExerciseTemplate).filter(
            ExerciseTemplate.organization_id == exercise.organization_id,
            ExerciseTemplate.category == exercise.category,
            ExerciseTemplate.id != exercise.id,
            ExerciseTemplate.is_active.is_(True),
        ).all()

    def find_alternatives(self, exercise: ExerciseTemplate, restrictions: Sequence) -> List[AlternativeExercise]:
        return rank_alternatives(exercise, self.candidates_for(exercise), restrictions)

    def alternatives_for_exercise(self, exercise: ExerciseTemplate, restrictions: Sequence) -> ExerciseAlternatives:
        """
        Substitutes for a prohibited exercise, or the exercise itself with
        in-place modifications when it is allowed or nothing qualifies.
        """
        summary = summarize_exercise(exercise)
        supervision = any(r.requires_supervision for r in restrictions)

        if not restriction_mapper.is_exercise_prohibited(exercise, restrictions):
            return ExerciseAlternatives(
                original_exercise=summary,
                suggested_alternatives=[
                    modified_in_place(exercise, restrictions, "Can be performed with modifications")
                ],
                cannot_perform=False,
                requires_approval=supervision,
            )

        alternatives = self.find_alternatives(exercise, restrictions)
        if not alternatives:
            logger.info(f"No substitute cleared {MIN_SUITABILITY} for exercise {exercise.id}; modifying in place")
            alternatives = [
                modified_in_place(exercise, restrictions, "No suitable substitute; modify, don't substitute")
            ]

        return ExerciseAlternatives(
            original_exercise=summary,
            suggested_alternatives=alternatives,
            cannot_perform=True,
            requires_approval=True,
        )
