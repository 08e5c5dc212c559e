from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from memory_care.database.db import get_db
from memory_care.database.models import MAX_CAREGIVERS_PER_PATIENT, User, UserRole
from memory_care.repository import assignment as assignment_registry
from memory_care.schemas import (
    AssignmentRequest,
    AssignmentResponse,
    CaregiverAvailabilityResponse,
    CaregiverCountResponse,
    RemoveAssignmentResponse,
    UserResponse,
)
from memory_care.services.access import doctor_or_admin_access, staff_access


router = APIRouter(prefix="/assignments", tags=["Assignments"])


@router.post(
    "",
    response_model=AssignmentResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(doctor_or_admin_access)],
)
async def assign_caregiver(body: AssignmentRequest, db: AsyncSession = Depends(get_db)):
    """Связывает опекуна с пациентом (1 пациент на опекуна, до 3 опекунов на пациента)."""
    return await assignment_registry.assign(
        db, caregiver_id=body.caregiver_id, patient_id=body.patient_id
    )


@router.delete(
    "",
    response_model=RemoveAssignmentResponse,
    dependencies=[Depends(doctor_or_admin_access)],
)
async def remove_assignment(body: AssignmentRequest, db: AsyncSession = Depends(get_db)):
    removed = await assignment_registry.remove(
        db, caregiver_id=body.caregiver_id, patient_id=body.patient_id
    )
    return RemoveAssignmentResponse(
        caregiver_id=body.caregiver_id,
        patient_id=body.patient_id,
        removed=removed,
        message="Связь опекун-пациент удалена" if removed else "Связь не найдена",
    )


@router.get(
    "/patients/{patient_id}/caregivers",
    response_model=List[UserResponse],
    dependencies=[Depends(staff_access)],
)
async def list_caregivers(patient_id: str, db: AsyncSession = Depends(get_db)):
    await assignment_registry.get_user_with_role(db, patient_id, UserRole.patient)
    return await assignment_registry.list_caregivers_of(db, patient_id)


@router.get(
    "/patients/{patient_id}/count",
    response_model=CaregiverCountResponse,
    dependencies=[Depends(staff_access)],
)
async def count_caregivers(patient_id: str, db: AsyncSession = Depends(get_db)):
    count = await assignment_registry.count_caregivers_of(db, patient_id)
    return CaregiverCountResponse(
        patient_id=patient_id, count=count, capacity=MAX_CAREGIVERS_PER_PATIENT
    )


@router.get(
    "/caregivers/{caregiver_id}/available",
    response_model=CaregiverAvailabilityResponse,
    dependencies=[Depends(staff_access)],
)
async def caregiver_availability(caregiver_id: str, db: AsyncSession = Depends(get_db)):
    available = await assignment_registry.is_caregiver_available(db, caregiver_id)
    return CaregiverAvailabilityResponse(caregiver_id=caregiver_id, available=available)


@router.get(
    "/caregivers/{caregiver_id}/patient",
    response_model=Optional[UserResponse],
)
async def patient_of_caregiver(
    caregiver_id: str,
    current_user: User = Depends(staff_access),
    db: AsyncSession = Depends(get_db),
):
    """Пациент опекуна; сам опекун видит только своего пациента."""
    if current_user.role == UserRole.caregiver and current_user.id != caregiver_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Опекун может запрашивать только своего пациента.",
        )
    return await assignment_registry.get_patient_of_caregiver(db, caregiver_id)
