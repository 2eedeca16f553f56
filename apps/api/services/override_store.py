"""
Medical Override Store

Persistence and queries for WorkoutPlayerOverride rows. The identity of an
override is (workout_assignment_id, player_id, effective_date); writing the
same identity twice updates the existing row, which is what makes medical
sync idempotent. Rows are never deleted, only moved between statuses.

Every write runs the configured invalidation patterns so compliance,
alternatives and assignment caches for the player are dropped.
"""

import logging
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.cache import CacheClient
from core.exceptions import NotFoundError, ValidationError
from models import WorkoutAssignment, WorkoutPlayerOverride
from schemas import OverrideMetadata, OverrideModifications, RestrictionSnapshot
from services.constants import LIVE_OVERRIDE_STATUSES, OverrideStatus, OverrideType

logger = logging.getLogger(__name__)

# Formatted with player_id and session_id after each write
DEFAULT_INVALIDATION_PATTERNS = (
    "medical:compliance:{session_id}:{player_id}:*",
    "medical:compliance:{session_id}:all:*",
    "medical:alternatives:{player_id}:*",
    "player_assignments:{player_id}:*",
)

_JSON_FIELDS = {
    "modifications": OverrideModifications,
    "medical_restrictions": RestrictionSnapshot,
    "override_metadata": OverrideMetadata,
}


def _to_column(name, value):
    """Structured fields are stored as plain JSON."""
    model_cls = _JSON_FIELDS.get(name)
    if model_cls is None or value is None:
        return value
    if isinstance(value, dict):
        value = model_cls.model_validate(value)
    return value.model_dump(mode="json", exclude_none=True)


def _status_values(statuses: Iterable) -> List[str]:
    return [OverrideStatus(s).value for s in statuses]


class MedicalOverrideStore:
    def __init__(
        self,
        db: Session,
        cache: Optional[CacheClient] = None,
        invalidation_patterns: Sequence[str] = DEFAULT_INVALIDATION_PATTERNS,
    ):
        self.db = db
        self.cache = cache
        self.invalidation_patterns = tuple(invalidation_patterns)

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, override_id: UUID) -> WorkoutPlayerOverride:
        override = self.db.query(WorkoutPlayerOverride).filter(
            WorkoutPlayerOverride.id == override_id
        ).first()
        if not override:
            raise NotFoundError("Override", str(override_id))
        return override

    def get_by_identity(
        self, workout_assignment_id: UUID, player_id: str, effective_date: date
    ) -> Optional[WorkoutPlayerOverride]:
        return self.db.query(WorkoutPlayerOverride).filter(
            WorkoutPlayerOverride.workout_assignment_id == workout_assignment_id,
            WorkoutPlayerOverride.player_id == player_id,
            WorkoutPlayerOverride.effective_date == effective_date,
        ).first()

    def find(
        self,
        workout_assignment_id: Optional[UUID] = None,
        workout_assignment_ids: Optional[Iterable[UUID]] = None,
        player_id: Optional[str] = None,
        statuses: Optional[Iterable] = None,
        override_type: Optional[OverrideType] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        medical_record_id: Optional[str] = None,
    ) -> List[WorkoutPlayerOverride]:
        """
        Filter overrides. ``start_date``/``end_date`` select rows whose
        [effective_date, expiry_date] window overlaps the range; an open
        expiry runs forever.
        """
        query = self.db.query(WorkoutPlayerOverride)
        if workout_assignment_id is not None:
            query = query.filter(WorkoutPlayerOverride.workout_assignment_id == workout_assignment_id)
        if workout_assignment_ids is not None:
            query = query.filter(WorkoutPlayerOverride.workout_assignment_id.in_(list(workout_assignment_ids)))
        if player_id is not None:
            query = query.filter(WorkoutPlayerOverride.player_id == player_id)
        if statuses is not None:
            query = query.filter(WorkoutPlayerOverride.status.in_(_status_values(statuses)))
        if override_type is not None:
            query = query.filter(WorkoutPlayerOverride.override_type == OverrideType(override_type).value)
        if medical_record_id is not None:
            query = query.filter(WorkoutPlayerOverride.medical_record_id == medical_record_id)
        if end_date is not None:
            query = query.filter(WorkoutPlayerOverride.effective_date <= end_date)
        if start_date is not None:
            query = query.filter(or_(
                WorkoutPlayerOverride.expiry_date.is_(None),
                WorkoutPlayerOverride.expiry_date >= start_date,
            ))
        return query.order_by(WorkoutPlayerOverride.effective_date).all()

    def active_medical_overrides(
        self,
        player_id: Optional[str] = None,
        workout_assignment_id: Optional[UUID] = None,
        on: Optional[date] = None,
    ) -> List[WorkoutPlayerOverride]:
        """Pending or approved medical overrides in force on ``on`` (default today)."""
        day = on or date.today()
        return self.find(
            workout_assignment_id=workout_assignment_id,
            player_id=player_id,
            statuses=LIVE_OVERRIDE_STATUSES,
            override_type=OverrideType.MEDICAL,
            start_date=day,
            end_date=day,
        )

    # =========================================================================
    # Writes
    # =========================================================================

    def _validate(self, override_type, medical_record_id) -> None:
        if OverrideType(override_type) == OverrideType.MEDICAL and not medical_record_id:
            raise ValidationError("Medical overrides require a medical record", field="medical_record_id")

    def _apply(self, override: WorkoutPlayerOverride, fields: dict) -> None:
        for name, value in fields.items():
            if name in ("override_type", "status") and value is not None:
                value = getattr(value, "value", value)
            setattr(override, name, _to_column(name, value))

    def create(
        self,
        workout_assignment_id: UUID,
        player_id: str,
        override_type: OverrideType,
        effective_date: date,
        **fields,
    ) -> WorkoutPlayerOverride:
        """Insert a new override. Raises ``IntegrityError`` if the identity exists."""
        self._validate(override_type, fields.get("medical_record_id"))
        override = WorkoutPlayerOverride(
            workout_assignment_id=workout_assignment_id,
            player_id=player_id,
            effective_date=effective_date,
        )
        self._apply(override, {"override_type": override_type, **fields})
        self.db.add(override)
        self.db.commit()
        self._after_write(override)
        return override

    def upsert(
        self,
        workout_assignment_id: UUID,
        player_id: str,
        override_type: OverrideType,
        effective_date: date,
        **fields,
    ) -> Tuple[WorkoutPlayerOverride, bool]:
        """
        Create the override or update the row that already holds the identity.

        Returns (override, created). A row in any status is reused, so a
        re-issued restriction revives an expired override instead of failing
        on the unique constraint.
        """
        self._validate(override_type, fields.get("medical_record_id"))
        existing = self.get_by_identity(workout_assignment_id, player_id, effective_date)
        if existing:
            return self.update(existing, override_type=override_type, **fields), False

        try:
            return self.create(workout_assignment_id, player_id, override_type, effective_date, **fields), True
        except IntegrityError:
            # Lost a race with a concurrent insert for the same identity
            self.db.rollback()
            existing = self.get_by_identity(workout_assignment_id, player_id, effective_date)
            if existing is None:
                raise
            logger.info(
                f"Override for assignment {workout_assignment_id} player {player_id} "
                f"on {effective_date} already exists; updating"
            )
            return self.update(existing, override_type=override_type, **fields), False

    def update(self, override: WorkoutPlayerOverride, **fields) -> WorkoutPlayerOverride:
        if "override_type" in fields or "medical_record_id" in fields:
            self._validate(
                fields.get("override_type", override.override_type),
                fields.get("medical_record_id", override.medical_record_id),
            )
        self._apply(override, fields)
        self.db.commit()
        self._after_write(override)
        return override

    def approve(self, override_id: UUID, approved_by: str, notes: Optional[str] = None) -> WorkoutPlayerOverride:
        override = self.get(override_id)
        return self.update(
            override,
            status=OverrideStatus.APPROVED,
            approved_by=approved_by,
            approved_at=datetime.now(timezone.utc),
            approval_notes=notes or override.approval_notes,
        )

    def reject(self, override_id: UUID, rejected_by: str, notes: Optional[str] = None) -> WorkoutPlayerOverride:
        override = self.get(override_id)
        return self.update(
            override,
            status=OverrideStatus.REJECTED,
            approved_by=rejected_by,
            approved_at=datetime.now(timezone.utc),
            approval_notes=notes or override.approval_notes,
        )

    def expire(self, override_id: UUID) -> WorkoutPlayerOverride:
        return self.update(self.get(override_id), status=OverrideStatus.EXPIRED)

    def expire_for_medical_record(self, medical_record_id: str) -> int:
        """Expire live overrides linked to a cleared medical record."""
        overrides = self.find(medical_record_id=medical_record_id, statuses=LIVE_OVERRIDE_STATUSES)
        for override in overrides:
            override.status = OverrideStatus.EXPIRED.value
        self.db.commit()
        for override in overrides:
            self._after_write(override)
        if overrides:
            logger.info(f"Expired {len(overrides)} overrides for medical record {medical_record_id}")
        return len(overrides)

    def expire_past_due(self, today: Optional[date] = None) -> int:
        """Expire live overrides whose expiry date is before ``today``."""
        day = today or date.today()
        overrides = self.db.query(WorkoutPlayerOverride).filter(
            WorkoutPlayerOverride.status.in_(_status_values(LIVE_OVERRIDE_STATUSES)),
            WorkoutPlayerOverride.expiry_date.isnot(None),
            WorkoutPlayerOverride.expiry_date < day,
        ).all()
        for override in overrides:
            override.status = OverrideStatus.EXPIRED.value
        self.db.commit()
        for override in overrides:
            self._after_write(override)
        return len(overrides)

    # =========================================================================
    # Cache invalidation
    # =========================================================================

    def _after_write(self, override: WorkoutPlayerOverride) -> None:
        assignment = self.db.query(WorkoutAssignment).filter(
            WorkoutAssignment.id == override.workout_assignment_id
        ).first()
        session_id = assignment.workout_session_id if assignment else "*"
        self.invalidate(override.player_id, session_id)

    def invalidate(self, player_id: str, session_id) -> int:
        if not self.cache:
            return 0
        deleted = 0
        for template in self.invalidation_patterns:
            pattern = template.format(player_id=player_id, session_id=session_id)
            deleted += self.cache.invalidate_pattern(pattern)
        return deleted
