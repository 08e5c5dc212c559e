from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.ext.asyncio import AsyncSession

from memory_care.config.config import settings
from memory_care.database.db import get_db
from memory_care.database.models import AssessmentSession, SessionState, User, UserRole
from memory_care.repository import assignment as assignment_registry
from memory_care.repository import image as image_pool
from memory_care.repository import session as session_lifecycle
from memory_care.schemas import (
    ActivationUpdate,
    DescriptionCreate,
    DescriptionResponse,
    DoctorNoteCreate,
    DoctorNotesReplace,
    PaginatedDescriptionsResponse,
    PaginatedSessionsResponse,
    SessionCountResponse,
    SessionCreate,
    SessionDetailsResponse,
    SessionResponse,
)
from memory_care.services.access import (
    caregiver_access,
    doctor_access,
    is_admin,
    patient_access,
    staff_access,
)
from memory_care.services.auth import auth_service
from memory_care.services.scorer import (
    ConclusionWriter,
    Scorer,
    get_conclusion_writer,
    get_scorer,
)


router = APIRouter(prefix="/sessions", tags=["Sessions"])

# Отправка описания вызывает внешний оценщик
description_rate_limiter = RateLimiter(
    times=settings.description_rate_limit_times,
    seconds=settings.description_rate_limit_seconds,
)


def _ensure_participant(session: AssessmentSession, user: User):
    """Доступ к сессии: врач, администратор или её опекун/пациент."""
    if user.role == UserRole.doctor or is_admin(user):
        return
    if user.id in (session.caregiver_id, session.patient_id):
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN, detail="Нет доступа к этой сессии."
    )


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: SessionCreate,
    current_user: User = Depends(caregiver_access),
    db: AsyncSession = Depends(get_db),
):
    """
    Опекун создает сессию для своего пациента из трех своих свободных фотографий.
    """
    if not is_admin(current_user):
        if not await assignment_registry.is_assigned(db, current_user.id, body.patient_id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Опекун не связан с этим пациентом.",
            )
        for image_id in set(body.image_ids):
            image = await image_pool.get_image(db, image_id)
            if image.uploader_id != current_user.id:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Фотография {image_id} загружена другим пользователем.",
                )
    session = await session_lifecycle.create_session(
        db,
        patient_id=body.patient_id,
        caregiver_id=current_user.id,
        image_ids=body.image_ids,
    )
    return session_lifecycle.session_to_schema(session)


@router.patch("/{session_id}/activation", response_model=SessionResponse)
async def set_activation(
    session_id: str,
    body: ActivationUpdate,
    current_user: User = Depends(caregiver_access),
    db: AsyncSession = Depends(get_db),
):
    session = await session_lifecycle.get_session(db, session_id)
    if session.caregiver_id != current_user.id and not is_admin(current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Активировать сессию может только её опекун.",
        )
    session = await session_lifecycle.set_activation(db, session_id, body.active)
    return session_lifecycle.session_to_schema(session)


@router.post(
    "/{session_id}/descriptions",
    response_model=DescriptionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(description_rate_limiter)],
)
async def submit_description(
    session_id: str,
    body: DescriptionCreate,
    current_user: User = Depends(patient_access),
    db: AsyncSession = Depends(get_db),
    scorer: Scorer = Depends(get_scorer),
    conclusion_writer: ConclusionWriter = Depends(get_conclusion_writer),
):
    """
    Пациент описывает одну фотографию сессии. Если сервис оценки недоступен,
    описание сохраняется, а ответ - 502 ScorerUnavailable.
    """
    return await session_lifecycle.submit_description(
        db,
        session_id=session_id,
        image_id=body.image_id,
        patient_id=current_user.id,
        text=body.text,
        scorer=scorer,
        conclusion_writer=conclusion_writer,
    )


@router.post(
    "/descriptions/{description_id}/score",
    response_model=DescriptionResponse,
    dependencies=[Depends(description_rate_limiter)],
)
async def retry_scoring(
    description_id: str,
    current_user: User = Depends(patient_access),
    db: AsyncSession = Depends(get_db),
    scorer: Scorer = Depends(get_scorer),
    conclusion_writer: ConclusionWriter = Depends(get_conclusion_writer),
):
    """Повторная оценка описания, сохраненного без оценки."""
    return await session_lifecycle.score_pending_description(
        db,
        description_id,
        scorer=scorer,
        conclusion_writer=conclusion_writer,
        patient_id=None if is_admin(current_user) else current_user.id,
    )


@router.get(
    "/count/{patient_id}",
    response_model=SessionCountResponse,
    dependencies=[Depends(staff_access)],
)
async def count_sessions(patient_id: str, db: AsyncSession = Depends(get_db)):
    return SessionCountResponse(
        patient_id=patient_id,
        total=await session_lifecycle.count_sessions(db, patient_id),
        completed=await session_lifecycle.count_completed_sessions(db, patient_id),
    )


@router.get("", response_model=PaginatedSessionsResponse)
async def list_sessions(
    patient_id: Optional[str] = None,
    state: Optional[SessionState] = None,
    active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(auth_service.get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Список сессий. Опекун и пациент видят только свои сессии.
    """
    caregiver_id = None
    if current_user.role == UserRole.caregiver and not is_admin(current_user):
        caregiver_id = current_user.id
    elif current_user.role == UserRole.patient:
        patient_id = current_user.id
    items, total = await session_lifecycle.list_sessions(
        db,
        patient_id=patient_id,
        caregiver_id=caregiver_id,
        state=state,
        active=active,
        page=page,
        limit=limit,
    )
    return PaginatedSessionsResponse(
        items=[session_lifecycle.session_to_schema(s) for s in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/active", response_model=List[SessionResponse])
async def list_active_sessions(
    current_user: User = Depends(patient_access), db: AsyncSession = Depends(get_db)
):
    """Активные незавершенные сессии текущего пациента."""
    sessions = await session_lifecycle.list_active_sessions_for_patient(
        db, current_user.id
    )
    return [session_lifecycle.session_to_schema(s) for s in sessions]


@router.get("/{session_id}", response_model=SessionDetailsResponse)
async def read_session(
    session_id: str,
    current_user: User = Depends(auth_service.get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Сессия целиком. Пациенту эталонные описания не показываются."""
    session = await session_lifecycle.get_session(db, session_id)
    _ensure_participant(session, current_user)
    details = await session_lifecycle.get_session_details(db, session_id)
    if current_user.role == UserRole.patient:
        for image in details.images:
            image.ground_truth = None
    return details


@router.get(
    "/{session_id}/descriptions",
    response_model=PaginatedDescriptionsResponse,
    dependencies=[Depends(staff_access)],
)
async def list_descriptions(
    session_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    items, total = await session_lifecycle.list_descriptions(
        db, session_id, page=page, limit=limit
    )
    return PaginatedDescriptionsResponse(items=items, total=total, page=page, limit=limit)


@router.post(
    "/{session_id}/notes",
    response_model=SessionResponse,
    dependencies=[Depends(doctor_access)],
)
async def add_doctor_note(
    session_id: str, body: DoctorNoteCreate, db: AsyncSession = Depends(get_db)
):
    session = await session_lifecycle.add_doctor_note(db, session_id, body.content)
    return session_lifecycle.session_to_schema(session)


@router.put(
    "/{session_id}/notes",
    response_model=SessionResponse,
    dependencies=[Depends(doctor_access)],
)
async def replace_doctor_notes(
    session_id: str, body: DoctorNotesReplace, db: AsyncSession = Depends(get_db)
):
    """Перезаписывает список заметок врача целиком."""
    session = await session_lifecycle.replace_doctor_notes(db, session_id, body.notes)
    return session_lifecycle.session_to_schema(session)
