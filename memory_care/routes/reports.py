from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from memory_care.database.db import get_db
from memory_care.database.models import User, UserRole
from memory_care.repository import assignment as assignment_registry
from memory_care.repository import report as report_assembler
from memory_care.repository import session as session_lifecycle
from memory_care.schemas import (
    BaselineResponse,
    CohortOverview,
    PatientReport,
    SessionComparison,
)
from memory_care.services.access import doctor_or_admin_access, is_admin, staff_access


router = APIRouter(prefix="/reports", tags=["Reports"])


async def _ensure_can_view(db: AsyncSession, user: User, patient_id: str):
    """Опекун видит отчеты только своего пациента."""
    if user.role != UserRole.caregiver or is_admin(user):
        return
    if not await assignment_registry.is_assigned(db, user.id, patient_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Опекун не связан с этим пациентом.",
        )


@router.get("/patients", response_model=List[PatientReport])
async def list_patient_reports(
    _: User = Depends(doctor_or_admin_access), db: AsyncSession = Depends(get_db)
):
    return await report_assembler.build_all_reports(db)


@router.get("/overview", response_model=CohortOverview)
async def cohort_overview(
    _: User = Depends(doctor_or_admin_access), db: AsyncSession = Depends(get_db)
):
    """Сводка для панели врача: отчеты, сессии, средний прогресс."""
    return await report_assembler.build_cohort_overview(db)


@router.get("/patients/{patient_id}", response_model=PatientReport)
async def patient_report(
    patient_id: str,
    current_user: User = Depends(staff_access),
    db: AsyncSession = Depends(get_db),
):
    await _ensure_can_view(db, current_user, patient_id)
    return await report_assembler.build_report(db, patient_id)


@router.get("/patients/{patient_id}/baseline", response_model=BaselineResponse)
async def patient_baseline(
    patient_id: str,
    current_user: User = Depends(staff_access),
    db: AsyncSession = Depends(get_db),
):
    """Первая завершенная сессия пациента; found=false, если её ещё нет."""
    await _ensure_can_view(db, current_user, patient_id)
    return await report_assembler.build_baseline(db, patient_id)


@router.get("/sessions/{session_id}/comparison", response_model=SessionComparison)
async def session_comparison(
    session_id: str,
    current_user: User = Depends(staff_access),
    db: AsyncSession = Depends(get_db),
):
    """Дельты показателей завершенной сессии относительно базовой линии."""
    session = await session_lifecycle.get_session(db, session_id)
    await _ensure_can_view(db, current_user, session.patient_id)
    return await report_assembler.compare_to_baseline(db, session_id)
