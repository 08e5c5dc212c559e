"""
Агрегация оценок: средние по сессии и сводка по пациенту.

Модуль без ввода-вывода, работает с любыми объектами, у которых есть
нужные атрибуты (ORM-модели или pydantic-схемы).
"""

from typing import Iterable, List, Optional, Sequence

from memory_care.schemas import CohortOverview, PatientReport, PatientSummary, SessionRates

# Порог тренда: 10% шкалы [0, 1]
TREND_THRESHOLD = 0.05
SECONDS_PER_DAY = 86400


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def session_rates(scores: Sequence) -> SessionRates:
    """
    Средние по оценкам трех описаний сессии.
    recall сессии - это среднее rate_exactness.
    """
    if not scores:
        raise ValueError("Нельзя агрегировать пустой список оценок")
    return SessionRates(
        omission=_mean([s.rate_omission for s in scores]),
        commission=_mean([s.rate_commission for s in scores]),
        recall=_mean([s.rate_exactness for s in scores]),
        coherence=_mean([s.coherence for s in scores]),
        fluency=_mean([s.fluency for s in scores]),
        total=_mean([s.total for s in scores]),
    )


def classify_trend(first: float, last: float) -> str:
    diff = last - first
    if diff > TREND_THRESHOLD:
        return "improving"
    if diff < -TREND_THRESHOLD:
        return "declining"
    return "stable"


def slope_per_day(sessions: Sequence) -> Optional[float]:
    """
    Секущая между первой и последней сессией, в единицах total за день.
    Только для двух и более сессий с положительным интервалом времени.
    """
    if len(sessions) < 2:
        return None
    first, last = sessions[0], sessions[-1]
    elapsed_days = (last.created_at - first.created_at).total_seconds() / SECONDS_PER_DAY
    if elapsed_days <= 0:
        return None
    return (last.session_total - first.session_total) / elapsed_days


def summarize(sessions: Iterable) -> PatientSummary:
    """
    Сводка по завершенным сессиям пациента.

    :param sessions: сессии с атрибутами created_at, session_total, session_recall
    :return: PatientSummary; для пустого входа - нули, "stable" и slope None
    """
    ordered: List = sorted(sessions, key=lambda s: s.created_at)
    if not ordered:
        return PatientSummary()

    first_total = ordered[0].session_total
    last_total = ordered[-1].session_total
    return PatientSummary(
        count=len(ordered),
        avg_session_total=_mean([s.session_total for s in ordered]),
        avg_recall=_mean([s.session_recall for s in ordered]),
        first_session_total=first_total,
        last_session_total=last_total,
        trend=classify_trend(first_total, last_total),
        slope_per_day=slope_per_day(ordered),
    )


def cohort_overview(reports: Iterable[PatientReport]) -> CohortOverview:
    """Сводка по всем пациентам для панели врача."""
    reports = [r for r in reports if r.summary.count > 0]
    improvements = [
        r.summary.last_session_total - r.summary.first_session_total
        for r in reports
        if r.summary.last_session_total - r.summary.first_session_total > 0
    ]
    return CohortOverview(
        total_reports=len(reports),
        total_sessions=sum(r.summary.count for r in reports),
        avg_improvement=_mean(improvements),
        patients_with_progress=len(improvements),
    )
