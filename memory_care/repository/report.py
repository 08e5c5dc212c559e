from typing import List

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from memory_care.database.models import SessionState, User, UserRole
from memory_care.repository import session as session_repository
from memory_care.repository.assignment import get_user_with_role
from memory_care.schemas import (
    BaselineResponse,
    CohortOverview,
    PatientReport,
    RateDeltas,
    ReportPeriod,
    ReportSessionData,
    SessionComparison,
)
from memory_care.services.errors import ValidationError
from memory_care.services.score_aggregator import cohort_overview, summarize


def _session_data(session) -> ReportSessionData:
    return ReportSessionData(
        session_id=session.id,
        created_at=session.created_at,
        completed_at=session.completed_at,
        session_total=session.session_total,
        session_recall=session.session_recall,
        session_coherence=session.session_coherence,
        session_fluency=session.session_fluency,
        session_omission=session.session_omission,
        session_commission=session.session_commission,
    )


async def build_report(db: AsyncSession, patient_id: str) -> PatientReport:
    """
    Отчет по пациенту: период, сводка и список завершенных сессий.
    Без завершенных сессий возвращается пустой отчет, а не ошибка.
    """
    patient = await get_user_with_role(db, patient_id, UserRole.patient)
    sessions = await session_repository.list_completed_sessions(db, patient_id)

    period = ReportPeriod()
    if sessions:
        period = ReportPeriod(from_=sessions[0].created_at, to=sessions[-1].created_at)

    return PatientReport(
        patient_id=patient.id,
        patient_name=patient.name,
        period=period,
        summary=summarize(sessions),
        sessions=[_session_data(s) for s in sessions],
    )


async def build_baseline(db: AsyncSession, patient_id: str) -> BaselineResponse:
    """Самая ранняя завершенная сессия пациента целиком, если она есть."""
    await get_user_with_role(db, patient_id, UserRole.patient)
    sessions = await session_repository.list_completed_sessions(db, patient_id)
    if not sessions:
        return BaselineResponse(patient_id=patient_id, found=False)
    details = await session_repository.get_session_details(db, sessions[0].id)
    return BaselineResponse(patient_id=patient_id, found=True, session=details)


async def build_all_reports(db: AsyncSession) -> List[PatientReport]:
    result = await db.execute(
        select(User).where(User.role == UserRole.patient).order_by(User.name)
    )
    reports = []
    for patient in result.scalars().all():
        reports.append(await build_report(db, patient.id))
    logger.debug(f"Built {len(reports)} patient reports")
    return reports


async def build_cohort_overview(db: AsyncSession) -> CohortOverview:
    return cohort_overview(await build_all_reports(db))


async def compare_to_baseline(db: AsyncSession, session_id: str) -> SessionComparison:
    """
    Сравнивает завершенную сессию с базовой линией пациента.

    Дельта по каждому показателю считается как сессия минус базовая линия.
    Для самой базовой сессии все дельты нулевые.

    :raises NotFoundError: сессия не найдена
    :raises ValidationError: сессия еще не завершена
    """
    session = await session_repository.get_session(db, session_id)
    if session.state != SessionState.completado:
        raise ValidationError(f"Сессия {session_id} еще не завершена")

    sessions = await session_repository.list_completed_sessions(db, session.patient_id)
    current, baseline = _session_data(session), _session_data(sessions[0])
    deltas = RateDeltas(
        total=current.session_total - baseline.session_total,
        recall=current.session_recall - baseline.session_recall,
        coherence=current.session_coherence - baseline.session_coherence,
        fluency=current.session_fluency - baseline.session_fluency,
        omission=current.session_omission - baseline.session_omission,
        commission=current.session_commission - baseline.session_commission,
    )
    return SessionComparison(
        session_id=session.id,
        patient_id=session.patient_id,
        is_baseline=sessions[0].id == session.id,
        session=current,
        baseline=baseline,
        deltas=deltas,
    )
