"""
Workout Assignments API Router

Bulk and cascade assignment, conflict checks and resolution, player
overrides and completion. Caller identity comes from the gateway headers.
"""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel

from schemas import (
    AssignmentResult,
    BulkAssignRequest,
    CascadeAssignRequest,
    CompleteAssignmentRequest,
    ConflictCheckRequest,
    ConflictInfo,
    CreatePlayerOverrideRequest,
    PhaseAdjustmentSummary,
    ResolveConflictRequest,
    WorkoutAssignmentResponse,
    WorkoutPlayerOverrideResponse,
)
from services.assignment_engine import to_response
from services.constants import AssignmentStatus, AssignmentType
from services.container import TrainingServices, get_services

router = APIRouter(prefix="/api/v1/training/assignments", tags=["Workout Assignments"])


class ApplyPhaseRequest(BaseModel):
    team_id: str
    phase_id: str
    player_ids: Optional[List[str]] = None


@router.post("/bulk", response_model=AssignmentResult)
def bulk_assign(
    request: BulkAssignRequest,
    x_user_id: str = Header(..., alias="X-User-Id"),
    x_organization_id: str = Header(..., alias="X-Organization-Id"),
    apply_phase: bool = Query(False, description="Apply the team's current planning phase"),
    services: TrainingServices = Depends(get_services),
):
    """Assign a workout session to every player the target resolves to."""
    if apply_phase:
        return services.engine.bulk_assign_with_phase_adjustments(request, x_user_id, x_organization_id)
    return services.engine.bulk_assign(request, x_user_id, x_organization_id)


@router.post("/cascade", response_model=AssignmentResult)
def cascade_assign(
    request: CascadeAssignRequest,
    x_user_id: str = Header(..., alias="X-User-Id"),
    x_organization_id: str = Header(..., alias="X-Organization-Id"),
    services: TrainingServices = Depends(get_services),
):
    """Assign down the team hierarchy with a parent assignment."""
    return services.engine.cascade_assign(request, x_user_id, x_organization_id)


@router.post("/conflicts/check", response_model=List[ConflictInfo])
def check_conflicts(
    request: ConflictCheckRequest,
    services: TrainingServices = Depends(get_services),
):
    return services.engine.check_conflicts(request)


@router.post("/conflicts/resolve", response_model=WorkoutAssignmentResponse)
def resolve_conflict(
    request: ResolveConflictRequest,
    x_user_id: str = Header(..., alias="X-User-Id"),
    services: TrainingServices = Depends(get_services),
):
    assignment = services.engine.resolve_conflict(request, x_user_id)
    return to_response(assignment)


@router.get("/player/{player_id}", response_model=List[WorkoutAssignmentResponse])
def get_player_assignments(
    player_id: str,
    status: Optional[AssignmentStatus] = None,
    assignment_type: Optional[AssignmentType] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    include_expired: bool = False,
    services: TrainingServices = Depends(get_services),
):
    return services.engine.get_player_assignments(
        player_id,
        status=status,
        assignment_type=assignment_type,
        start_date=start_date,
        end_date=end_date,
        include_expired=include_expired,
    )


@router.get("/team/{team_id}/phase/{phase_id}", response_model=List[WorkoutAssignmentResponse])
def get_assignments_by_phase(
    team_id: str,
    phase_id: str,
    status: Optional[AssignmentStatus] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    services: TrainingServices = Depends(get_services),
):
    """Assignments last adjusted for the given planning phase."""
    assignments = services.engine.get_assignments_by_phase(
        team_id, phase_id, status=status, start_date=start_date, end_date=end_date
    )
    return [to_response(a) for a in assignments]


@router.post("/phase-adjustments", response_model=PhaseAdjustmentSummary)
def apply_phase_adjustments(
    request: ApplyPhaseRequest,
    services: TrainingServices = Depends(get_services),
):
    """Apply a team's current planning phase to its active assignments."""
    return services.phase_adjuster.apply_phase_adjustments(
        request.team_id, request.phase_id, request.player_ids
    )


@router.post("/{assignment_id}/overrides", response_model=WorkoutPlayerOverrideResponse, status_code=201)
def create_player_override(
    assignment_id: UUID,
    request: CreatePlayerOverrideRequest,
    x_user_id: str = Header(..., alias="X-User-Id"),
    services: TrainingServices = Depends(get_services),
):
    override = services.engine.create_player_override(assignment_id, request, x_user_id)
    return WorkoutPlayerOverrideResponse.model_validate(override)


@router.post("/{assignment_id}/complete", response_model=WorkoutAssignmentResponse)
def complete_assignment(
    assignment_id: UUID,
    request: CompleteAssignmentRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    services: TrainingServices = Depends(get_services),
):
    assignment = services.engine.complete_assignment(assignment_id, request, x_user_id)
    return to_response(assignment)
