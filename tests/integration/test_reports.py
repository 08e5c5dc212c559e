"""
Integration tests for patient reports, baseline and cohort overview.
"""

from datetime import datetime, timedelta

import pytest

from memory_care.database.models import AssessmentSession, SessionState, UserRole
from memory_care.repository import report as report_assembler
from memory_care.services.errors import NotFoundError, ValidationError


START = datetime(2026, 3, 1, 9, 0, 0)


@pytest.fixture
def add_completed(db, caregiver):
    """Factory: stores a completed session with the given total."""

    async def _add(patient, total, days, recall=0.5):
        session = AssessmentSession(
            patient_id=patient.id,
            caregiver_id=caregiver.id,
            created_at=START + timedelta(days=days),
            is_active=True,
            state=SessionState.completado,
            completed_at=START + timedelta(days=days, hours=1),
            session_omission=0.2,
            session_commission=0.1,
            session_recall=recall,
            session_coherence=0.7,
            session_fluency=0.8,
            session_total=total,
            doctor_notes=[],
        )
        db.add(session)
        await db.commit()
        return session

    return _add


class TestBuildReport:
    """Tests for build_report()."""

    async def test_empty_report(self, db, patient):
        report = await report_assembler.build_report(db, patient.id)

        assert report.patient_name == "Мария"
        assert report.sessions == []
        assert report.summary.count == 0
        assert report.summary.trend == "stable"
        assert report.summary.slope_per_day is None
        assert report.period.from_ is None

    async def test_improving_patient(self, db, patient, add_completed):
        await add_completed(patient, 0.40, days=0)
        await add_completed(patient, 0.70, days=10)

        report = await report_assembler.build_report(db, patient.id)

        assert report.summary.count == 2
        assert report.summary.trend == "improving"
        assert report.summary.slope_per_day == pytest.approx(0.03)
        assert report.period.from_ == START
        assert report.period.to == START + timedelta(days=10)
        assert [s.session_total for s in report.sessions] == [0.40, 0.70]

    async def test_stable_patient(self, db, patient, add_completed):
        await add_completed(patient, 0.70, days=0)
        await add_completed(patient, 0.68, days=5)

        report = await report_assembler.build_report(db, patient.id)
        assert report.summary.trend == "stable"

    async def test_pending_sessions_are_ignored(self, db, patient, caregiver, add_completed):
        await add_completed(patient, 0.5, days=0)
        db.add(
            AssessmentSession(
                patient_id=patient.id,
                caregiver_id=caregiver.id,
                state=SessionState.en_curso,
                doctor_notes=[],
            )
        )
        await db.commit()

        report = await report_assembler.build_report(db, patient.id)
        assert report.summary.count == 1

    async def test_unknown_patient(self, db):
        with pytest.raises(NotFoundError):
            await report_assembler.build_report(db, "missing")

    async def test_serialized_period_uses_from(self, db, patient, add_completed):
        await add_completed(patient, 0.5, days=0)
        report = await report_assembler.build_report(db, patient.id)

        dumped = report.model_dump(by_alias=True)
        assert "from" in dumped["period"]


class TestBaseline:
    """Tests for build_baseline()."""

    async def test_not_found(self, db, patient):
        baseline = await report_assembler.build_baseline(db, patient.id)
        assert baseline.found is False
        assert baseline.session is None

    async def test_earliest_completed(self, db, patient, add_completed):
        later = await add_completed(patient, 0.7, days=10)
        first = await add_completed(patient, 0.4, days=0)

        baseline = await report_assembler.build_baseline(db, patient.id)
        assert baseline.found is True
        assert baseline.session.id == first.id
        assert baseline.session.id != later.id


class TestCompareToBaseline:
    """Tests for compare_to_baseline()."""

    async def test_deltas_against_baseline(self, db, patient, add_completed):
        first = await add_completed(patient, 0.40, days=0, recall=0.5)
        later = await add_completed(patient, 0.70, days=10, recall=0.8)

        comparison = await report_assembler.compare_to_baseline(db, later.id)

        assert comparison.is_baseline is False
        assert comparison.baseline.session_id == first.id
        assert comparison.deltas.total == pytest.approx(0.30)
        assert comparison.deltas.recall == pytest.approx(0.30)
        assert comparison.deltas.fluency == pytest.approx(0.0)

    async def test_baseline_compared_to_itself(self, db, patient, add_completed):
        first = await add_completed(patient, 0.40, days=0)

        comparison = await report_assembler.compare_to_baseline(db, first.id)

        assert comparison.is_baseline is True
        assert comparison.deltas.total == 0.0

    async def test_unfinished_session(self, db, patient, caregiver):
        session = AssessmentSession(
            patient_id=patient.id,
            caregiver_id=caregiver.id,
            state=SessionState.en_curso,
            doctor_notes=[],
        )
        db.add(session)
        await db.commit()

        with pytest.raises(ValidationError):
            await report_assembler.compare_to_baseline(db, session.id)

    async def test_unknown_session(self, db):
        with pytest.raises(NotFoundError):
            await report_assembler.compare_to_baseline(db, "missing")


class TestCohort:
    """Tests for build_all_reports() and build_cohort_overview()."""

    async def test_overview(self, db, make_user, patient, add_completed):
        other = await make_user(UserRole.patient, "Ян")
        idle = await make_user(UserRole.patient, "Ольга")
        await add_completed(patient, 0.40, days=0)
        await add_completed(patient, 0.70, days=10)
        await add_completed(other, 0.60, days=0)
        await add_completed(other, 0.50, days=3)

        reports = await report_assembler.build_all_reports(db)
        assert {r.patient_id for r in reports} == {patient.id, other.id, idle.id}

        overview = await report_assembler.build_cohort_overview(db)
        assert overview.total_reports == 2
        assert overview.total_sessions == 4
        assert overview.patients_with_progress == 1
        assert overview.avg_improvement == pytest.approx(0.3)
