import uuid
from typing import Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from memory_care.database.models import (
    IMAGES_PER_SESSION,
    AssessmentSession,
    PatientDescription,
    ReferenceImage,
    Score,
    SessionImage,
    SessionState,
    UserRole,
    utcnow,
)
from memory_care.repository import image as image_pool
from memory_care.repository.assignment import get_user_with_role
from memory_care.schemas import (
    DescriptionResponse,
    DoctorNote,
    GroundTruthResponse,
    ScoreResult,
    SessionDetailsResponse,
    SessionImageDetails,
    SessionResponse,
)
from memory_care.services import notifier
from memory_care.services.errors import (
    AlreadyScored,
    DescriptionAlreadyExists,
    ImageAlreadyAssigned,
    ImageNotInSession,
    InvalidImageSelection,
    NotFoundError,
    SessionFinalized,
    SessionNotActive,
    UpstreamError,
)
from memory_care.services.score_aggregator import session_rates
from memory_care.services.scorer import ConclusionWriter, Scorer


# Разрешенные переходы; completado конечное
ALLOWED_TRANSITIONS: Dict[SessionState, set] = {
    SessionState.pending: {SessionState.pending, SessionState.en_curso, SessionState.completado},
    SessionState.en_curso: {SessionState.en_curso, SessionState.completado},
    SessionState.completado: set(),
}


def transition(current: SessionState, target: SessionState) -> SessionState:
    """
    Проверяет переход состояния сессии и возвращает новое состояние.

    :raises SessionFinalized: сессия уже в completado или переход назад
    """
    if current == SessionState.completado:
        raise SessionFinalized("Сессия завершена и не может быть изменена")
    if target not in ALLOWED_TRANSITIONS[current]:
        raise SessionFinalized(
            f"Недопустимый переход состояния: {current.value} -> {target.value}"
        )
    return target


def session_to_schema(session: AssessmentSession) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        patient_id=session.patient_id,
        caregiver_id=session.caregiver_id,
        created_at=session.created_at,
        is_active=session.is_active,
        state=session.state,
        completed_at=session.completed_at,
        image_ids=[item.image_id for item in session.images],
        session_omission=session.session_omission,
        session_commission=session.session_commission,
        session_recall=session.session_recall,
        session_coherence=session.session_coherence,
        session_fluency=session.session_fluency,
        session_total=session.session_total,
        technical_conclusion=session.technical_conclusion,
        plain_conclusion=session.plain_conclusion,
        doctor_notes=[DoctorNote.model_validate(note) for note in session.doctor_notes or []],
        doctor_reviewed_at=session.doctor_reviewed_at,
    )


async def get_session(
    db: AsyncSession, session_id: str, for_update: bool = False
) -> AssessmentSession:
    stmt = (
        select(AssessmentSession)
        .where(AssessmentSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    session = await db.scalar(stmt)
    if not session:
        raise NotFoundError(f"Сессия {session_id} не найдена")
    return session


async def create_session(
    db: AsyncSession, patient_id: str, caregiver_id: str, image_ids: List[str]
) -> AssessmentSession:
    """
    Создает сессию оценки из трех свободных фотографий.

    Фотографии резервируются по принципу "все или ничего" в той же
    транзакции, что и сама сессия. У каждой фотографии должно быть
    эталонное описание, иначе оценивать будет не с чем.
    """
    if len(image_ids) != IMAGES_PER_SESSION or len(set(image_ids)) != IMAGES_PER_SESSION:
        raise InvalidImageSelection(
            f"Сессия должна содержать ровно {IMAGES_PER_SESSION} разные фотографии"
        )
    await get_user_with_role(db, patient_id, UserRole.patient)
    await get_user_with_role(db, caregiver_id, UserRole.caregiver)

    result = await db.execute(
        select(ReferenceImage).where(ReferenceImage.id.in_(image_ids))
    )
    images = {image.id: image for image in result.scalars().all()}
    missing = [image_id for image_id in image_ids if image_id not in images]
    if missing:
        raise NotFoundError(f"Фотографии не найдены: {missing}")
    without_ground_truth = [
        image_id for image_id in image_ids if images[image_id].ground_truth is None
    ]
    if without_ground_truth:
        raise InvalidImageSelection(
            f"У фотографий нет эталонного описания: {without_ground_truth}"
        )

    await image_pool.try_reserve(db, image_ids)

    session = AssessmentSession(
        patient_id=patient_id,
        caregiver_id=caregiver_id,
        is_active=False,
        state=SessionState.pending,
        doctor_notes=[],
        images=[
            SessionImage(image_id=image_id, position=position)
            for position, image_id in enumerate(image_ids, start=1)
        ],
    )
    db.add(session)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.warning(f"Session creation rejected by constraints: {e}")
        raise ImageAlreadyAssigned(
            "Одна или несколько фотографий уже используются в другой сессии"
        )

    logger.info(
        f"Session {session.id} created for patient {patient_id} by caregiver {caregiver_id}"
    )
    return await get_session(db, session.id)


async def set_activation(
    db: AsyncSession, session_id: str, active: bool
) -> AssessmentSession:
    """Переключает видимость сессии для пациента. Повторная установка того же значения - успех."""
    session = await get_session(db, session_id, for_update=True)
    if session.state == SessionState.completado:
        raise SessionFinalized("Нельзя менять активацию завершенной сессии")

    changed = session.is_active != active
    session.is_active = active
    await db.commit()

    if changed:
        logger.info(f"Session {session_id} {'activated' if active else 'deactivated'}")
        await notifier.notify(
            notifier.SESSION_ACTIVATED if active else notifier.SESSION_DEACTIVATED,
            recipients=[session.patient_id, session.caregiver_id],
            session_id=session.id,
            patient_id=session.patient_id,
        )
    return session


async def get_description(
    db: AsyncSession, session_id: str, image_id: str
) -> Optional[PatientDescription]:
    return await db.scalar(
        select(PatientDescription).where(
            PatientDescription.session_id == session_id,
            PatientDescription.image_id == image_id,
        )
    )


async def submit_description(
    db: AsyncSession,
    session_id: str,
    image_id: str,
    patient_id: str,
    text: str,
    scorer: Scorer,
    conclusion_writer: ConclusionWriter,
) -> PatientDescription:
    """
    Принимает описание фотографии от пациента и оценивает его.

    Описание фиксируется до обращения к оценщику: если оценщик недоступен,
    описание остается сохраненным без оценки, а UpstreamError уходит
    вызывающему коду (повторить можно через score_pending_description).
    После сохранения оценки проверяется завершение сессии.
    """
    session = await get_session(db, session_id, for_update=True)
    if session.patient_id != patient_id:
        raise NotFoundError(f"Сессия {session_id} не найдена у пациента {patient_id}")
    if session.state == SessionState.completado:
        raise SessionFinalized("Сессия уже завершена")
    if not session.is_active:
        raise SessionNotActive("Сессия не активирована для пациента")
    if image_id not in {item.image_id for item in session.images}:
        raise ImageNotInSession(f"Фотография {image_id} не входит в сессию {session_id}")
    if await get_description(db, session_id, image_id):
        raise DescriptionAlreadyExists(
            f"Фотография {image_id} в сессии {session_id} уже описана"
        )

    description = PatientDescription(
        session_id=session_id,
        image_id=image_id,
        patient_id=patient_id,
        text=text,
    )
    description.score = None
    db.add(description)
    if session.state == SessionState.pending:
        session.state = transition(session.state, SessionState.en_curso)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.warning(f"Duplicate description rejected by constraints: {e}")
        raise DescriptionAlreadyExists(
            f"Фотография {image_id} в сессии {session_id} уже описана"
        )
    logger.info(f"Description {description.id} stored for session {session_id}")

    await _score_and_complete(db, session_id, description, scorer, conclusion_writer)
    return description


async def score_pending_description(
    db: AsyncSession,
    description_id: str,
    scorer: Scorer,
    conclusion_writer: ConclusionWriter,
    patient_id: Optional[str] = None,
) -> PatientDescription:
    """
    Повторяет только внешний вызов оценщика для описания без оценки.
    patient_id ограничивает поиск описаниями этого пациента.
    """
    description = await db.scalar(
        select(PatientDescription)
        .where(PatientDescription.id == description_id)
        .execution_options(populate_existing=True)
    )
    if not description or (patient_id and description.patient_id != patient_id):
        raise NotFoundError(f"Описание {description_id} не найдено")
    if description.score is not None:
        raise AlreadyScored(f"Описание {description_id} уже оценено")

    await _score_and_complete(
        db, description.session_id, description, scorer, conclusion_writer
    )
    return description


async def _score_and_complete(
    db: AsyncSession,
    session_id: str,
    description: PatientDescription,
    scorer: Scorer,
    conclusion_writer: ConclusionWriter,
) -> None:
    ground_truth = await image_pool.get_ground_truth_by_image(db, description.image_id)
    result = await scorer.score(description.text, ground_truth)

    description.score = Score(**result.model_dump())
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.warning(f"Score for description {description.id} already stored: {e}")
        raise AlreadyScored(f"Описание {description.id} уже оценено")
    logger.info(
        f"Description {description.id} scored: total={result.total:.3f}"
    )

    await _complete_if_ready(db, session_id, conclusion_writer)


async def _complete_if_ready(
    db: AsyncSession, session_id: str, conclusion_writer: ConclusionWriter
) -> AssessmentSession:
    """
    Переводит сессию в completado, когда у всех трех фотографий есть описание с оценкой.

    Строка сессии блокируется, а UPDATE условный (state != completado), поэтому
    агрегаты считаются ровно один раз даже при параллельных запросах.
    """
    session = await get_session(db, session_id, for_update=True)
    if session.state == SessionState.completado:
        return session

    result = await db.execute(
        select(PatientDescription)
        .where(PatientDescription.session_id == session_id)
        .execution_options(populate_existing=True)
    )
    descriptions = list(result.scalars().all())
    if len(descriptions) < IMAGES_PER_SESSION or any(
        d.score is None for d in descriptions
    ):
        return session

    transition(session.state, SessionState.completado)
    scores = [d.score for d in descriptions]
    rates = session_rates(scores)
    completed = await db.execute(
        update(AssessmentSession)
        .where(
            AssessmentSession.id == session_id,
            AssessmentSession.state != SessionState.completado,
        )
        .values(
            state=SessionState.completado,
            completed_at=utcnow(),
            session_omission=rates.omission,
            session_commission=rates.commission,
            session_recall=rates.recall,
            session_coherence=rates.coherence,
            session_fluency=rates.fluency,
            session_total=rates.total,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    session = await get_session(db, session_id)
    if completed.rowcount == 0:
        logger.debug(f"Session {session_id} was completed by a concurrent request")
        return session
    logger.info(f"Session {session_id} completed: total={rates.total:.3f}")

    try:
        conclusions = await conclusion_writer.write(
            rates,
            [ScoreResult.model_validate(score, from_attributes=True) for score in scores],
        )
    except UpstreamError as e:
        logger.warning(f"Conclusions for session {session_id} not generated: {e}")
    else:
        session.technical_conclusion = conclusions.technical
        session.plain_conclusion = conclusions.plain
        await db.commit()

    await notifier.notify(
        notifier.SESSION_COMPLETED,
        recipients=[session.patient_id, session.caregiver_id],
        session_id=session.id,
        patient_id=session.patient_id,
        session_total=session.session_total,
    )
    if await count_completed_sessions(db, session.patient_id) == 1:
        await notifier.notify(
            notifier.BASELINE_READY,
            recipients=[session.patient_id, session.caregiver_id],
            session_id=session.id,
            patient_id=session.patient_id,
        )
    return session


async def add_doctor_note(
    db: AsyncSession, session_id: str, content: str
) -> AssessmentSession:
    """Добавляет заметку врача в конец списка. Разрешено в любом состоянии."""
    session = await get_session(db, session_id, for_update=True)
    now = utcnow()
    note = DoctorNote(id=str(uuid.uuid4()), content=content, created_at=now)
    session.doctor_notes = list(session.doctor_notes or []) + [
        note.model_dump(mode="json")
    ]
    session.doctor_reviewed_at = now
    await db.commit()
    return session


async def replace_doctor_notes(
    db: AsyncSession, session_id: str, notes: List[DoctorNote]
) -> AssessmentSession:
    """Полностью перезаписывает список заметок (удаление заметок делается так)."""
    session = await get_session(db, session_id, for_update=True)
    session.doctor_notes = [note.model_dump(mode="json") for note in notes]
    session.doctor_reviewed_at = utcnow()
    await db.commit()
    return session


async def list_sessions(
    db: AsyncSession,
    patient_id: Optional[str] = None,
    caregiver_id: Optional[str] = None,
    state: Optional[SessionState] = None,
    active: Optional[bool] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[AssessmentSession], int]:
    filters = []
    if patient_id:
        filters.append(AssessmentSession.patient_id == patient_id)
    if caregiver_id:
        filters.append(AssessmentSession.caregiver_id == caregiver_id)
    if state:
        filters.append(AssessmentSession.state == state)
    if active is not None:
        filters.append(AssessmentSession.is_active == active)

    total = await db.scalar(
        select(func.count()).select_from(AssessmentSession).where(*filters)
    )
    result = await db.execute(
        select(AssessmentSession)
        .where(*filters)
        .order_by(AssessmentSession.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total or 0


async def list_active_sessions_for_patient(
    db: AsyncSession, patient_id: str
) -> List[AssessmentSession]:
    """Сессии, которые пациент может проходить прямо сейчас."""
    result = await db.execute(
        select(AssessmentSession)
        .where(
            AssessmentSession.patient_id == patient_id,
            AssessmentSession.is_active.is_(True),
            AssessmentSession.state != SessionState.completado,
        )
        .order_by(AssessmentSession.created_at.asc())
    )
    return list(result.scalars().all())


async def list_completed_sessions(
    db: AsyncSession, patient_id: str
) -> List[AssessmentSession]:
    """Завершенные сессии пациента в порядке создания."""
    result = await db.execute(
        select(AssessmentSession)
        .where(
            AssessmentSession.patient_id == patient_id,
            AssessmentSession.state == SessionState.completado,
        )
        .order_by(AssessmentSession.created_at.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def count_sessions(db: AsyncSession, patient_id: str) -> int:
    count = await db.scalar(
        select(func.count())
        .select_from(AssessmentSession)
        .where(AssessmentSession.patient_id == patient_id)
    )
    return count or 0


async def count_completed_sessions(db: AsyncSession, patient_id: str) -> int:
    count = await db.scalar(
        select(func.count())
        .select_from(AssessmentSession)
        .where(
            AssessmentSession.patient_id == patient_id,
            AssessmentSession.state == SessionState.completado,
        )
    )
    return count or 0


async def list_descriptions(
    db: AsyncSession, session_id: str, page: int = 1, limit: int = 10
) -> Tuple[List[PatientDescription], int]:
    await get_session(db, session_id)
    total = await db.scalar(
        select(func.count())
        .select_from(PatientDescription)
        .where(PatientDescription.session_id == session_id)
    )
    result = await db.execute(
        select(PatientDescription)
        .where(PatientDescription.session_id == session_id)
        .order_by(PatientDescription.submitted_at.asc())
        .offset((page - 1) * limit)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all()), total or 0


async def get_session_details(
    db: AsyncSession, session_id: str
) -> SessionDetailsResponse:
    """Сессия целиком: фотографии, эталоны, описания пациента и оценки."""
    session = await get_session(db, session_id)
    result = await db.execute(
        select(PatientDescription)
        .where(PatientDescription.session_id == session_id)
        .execution_options(populate_existing=True)
    )
    descriptions = {d.image_id: d for d in result.scalars().all()}
    items = await db.execute(
        select(SessionImage)
        .where(SessionImage.session_id == session_id)
        .order_by(SessionImage.position)
        .execution_options(populate_existing=True)
    )

    images = []
    for item in items.scalars().all():
        ground_truth = item.image.ground_truth
        description = descriptions.get(item.image_id)
        images.append(
            SessionImageDetails(
                image_id=item.image_id,
                position=item.position,
                url=item.image.url,
                ground_truth=(
                    GroundTruthResponse.model_validate(ground_truth)
                    if ground_truth
                    else None
                ),
                description=(
                    DescriptionResponse.model_validate(description)
                    if description
                    else None
                ),
            )
        )
    return SessionDetailsResponse(
        **session_to_schema(session).model_dump(), images=images
    )
