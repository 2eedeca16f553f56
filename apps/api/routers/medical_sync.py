"""
Medical Sync API Router

Restriction sync, compliance checks, concern reporting, exercise
alternatives and medical override creation.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Header

from schemas import (
    AlternativesResult,
    BulkComplianceRequest,
    ComplianceCheckRequest,
    ComplianceResult,
    ConcernReportResult,
    CreateMedicalOverrideRequest,
    GetAlternativesRequest,
    MedicalSyncResult,
    ReportMedicalConcernRequest,
    SyncMedicalRestrictionsRequest,
    WorkoutPlayerOverrideResponse,
)
from services.container import TrainingServices, get_services

router = APIRouter(prefix="/api/v1/training/medical-sync", tags=["Medical Sync"])


@router.post("/sync", response_model=MedicalSyncResult)
def sync_medical_restrictions(
    request: SyncMedicalRestrictionsRequest,
    services: TrainingServices = Depends(get_services),
):
    """
    Mirror the medical service's restrictions into overrides.

    A medical service failure is returned as 502; nothing is synced.
    """
    return services.medical_sync.sync_medical_restrictions(
        request.organization_id,
        team_id=request.team_id,
        player_ids=request.player_ids or None,
        from_date=request.from_date,
        include_expired=request.include_expired,
    )


@router.post("/compliance", response_model=ComplianceResult)
def check_compliance(
    request: ComplianceCheckRequest,
    services: TrainingServices = Depends(get_services),
):
    return services.compliance.check_compliance(
        request.session_id, player_id=request.player_id, detailed=request.detailed
    )


@router.post("/compliance/bulk", response_model=List[ComplianceResult])
def check_bulk_compliance(
    request: BulkComplianceRequest,
    services: TrainingServices = Depends(get_services),
):
    return services.compliance.check_bulk_compliance(
        request.session_ids, player_id=request.player_id, detailed=request.detailed
    )


@router.post("/concerns", response_model=ConcernReportResult, status_code=201)
def report_medical_concern(
    request: ReportMedicalConcernRequest,
    services: TrainingServices = Depends(get_services),
):
    return services.medical_sync.report_medical_concern(request)


@router.post("/alternatives", response_model=AlternativesResult)
def get_exercise_alternatives(
    request: GetAlternativesRequest,
    services: TrainingServices = Depends(get_services),
):
    return services.medical_sync.get_exercise_alternatives(request)


@router.post("/overrides", response_model=WorkoutPlayerOverrideResponse, status_code=201)
def create_medical_override(
    request: CreateMedicalOverrideRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    services: TrainingServices = Depends(get_services),
):
    override = services.medical_sync.create_medical_override(request, x_user_id)
    return WorkoutPlayerOverrideResponse.model_validate(override)
