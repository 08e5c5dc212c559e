"""
Unit tests for score aggregation.

Tests cover:
- Session means over the three description scores
- Trend classification around the 0.05 threshold
- Two-point slope per day
- Patient summary and cohort overview
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from memory_care.schemas import PatientReport, PatientSummary, ReportPeriod
from memory_care.services.score_aggregator import (
    classify_trend,
    cohort_overview,
    session_rates,
    slope_per_day,
    summarize,
)


START = datetime(2026, 3, 1, 10, 0, 0)


def _score(total, exactness=0.5, omission=0.2, commission=0.1, coherence=0.6, fluency=0.7):
    return SimpleNamespace(
        rate_omission=omission,
        rate_commission=commission,
        rate_exactness=exactness,
        coherence=coherence,
        fluency=fluency,
        total=total,
    )


def _session(total, days=0, recall=0.5):
    return SimpleNamespace(
        created_at=START + timedelta(days=days),
        session_total=total,
        session_recall=recall,
    )


def _report(patient_id, first, last, count=2):
    return PatientReport(
        patient_id=patient_id,
        patient_name=patient_id,
        period=ReportPeriod(),
        summary=PatientSummary(
            count=count,
            first_session_total=first,
            last_session_total=last,
        ),
        sessions=[],
    )


class TestSessionRates:
    """Tests for per-session means."""

    def test_total_is_mean_of_three_scores(self):
        rates = session_rates([_score(0.3), _score(0.5), _score(0.85)])
        assert abs(rates.total - (0.3 + 0.5 + 0.85) / 3) < 1e-9

    def test_recall_is_mean_of_exactness(self):
        rates = session_rates(
            [_score(0.5, exactness=0.9), _score(0.5, exactness=0.6), _score(0.5, exactness=0.3)]
        )
        assert abs(rates.recall - 0.6) < 1e-9

    def test_all_rates_are_averaged(self):
        rates = session_rates(
            [
                _score(0.4, omission=0.1, commission=0.0, coherence=0.5, fluency=1.0),
                _score(0.6, omission=0.3, commission=0.2, coherence=0.7, fluency=0.8),
            ]
        )
        assert rates.omission == pytest.approx(0.2)
        assert rates.commission == pytest.approx(0.1)
        assert rates.coherence == pytest.approx(0.6)
        assert rates.fluency == pytest.approx(0.9)

    def test_empty_scores_rejected(self):
        with pytest.raises(ValueError):
            session_rates([])


class TestTrend:
    """Tests for trend classification."""

    @pytest.mark.parametrize(
        "first,last,expected",
        [
            (0.40, 0.70, "improving"),
            (0.70, 0.40, "declining"),
            (0.70, 0.68, "stable"),
            (0.50, 0.549, "stable"),
            (0.50, 0.551, "improving"),
            (0.50, 0.449, "declining"),
            (0.50, 0.45, "stable"),
        ],
    )
    def test_classify(self, first, last, expected):
        assert classify_trend(first, last) == expected


class TestSlope:
    """Tests for the two-point slope."""

    def test_slope_over_ten_days(self):
        slope = slope_per_day([_session(0.40, days=0), _session(0.70, days=10)])
        assert slope == pytest.approx(0.03)

    def test_uses_only_first_and_last(self):
        sessions = [_session(0.40, days=0), _session(0.95, days=3), _session(0.70, days=10)]
        assert slope_per_day(sessions) == pytest.approx(0.03)

    def test_single_session_has_no_slope(self):
        assert slope_per_day([_session(0.5)]) is None

    def test_same_timestamp_has_no_slope(self):
        assert slope_per_day([_session(0.4), _session(0.7)]) is None


class TestSummarize:
    """Tests for the patient summary."""

    def test_empty(self):
        summary = summarize([])
        assert summary.count == 0
        assert summary.avg_session_total == 0
        assert summary.avg_recall == 0
        assert summary.first_session_total == 0
        assert summary.last_session_total == 0
        assert summary.trend == "stable"
        assert summary.slope_per_day is None

    def test_improving_patient(self):
        summary = summarize([_session(0.40, days=0), _session(0.70, days=10)])
        assert summary.count == 2
        assert summary.trend == "improving"
        assert summary.slope_per_day == pytest.approx(0.03)
        assert summary.avg_session_total == pytest.approx(0.55)

    def test_stable_patient(self):
        summary = summarize([_session(0.70, days=0), _session(0.68, days=7)])
        assert summary.trend == "stable"

    def test_input_is_ordered_by_creation(self):
        summary = summarize([_session(0.70, days=10), _session(0.40, days=0)])
        assert summary.first_session_total == pytest.approx(0.40)
        assert summary.last_session_total == pytest.approx(0.70)
        assert summary.trend == "improving"

    def test_avg_recall(self):
        summary = summarize(
            [_session(0.5, days=0, recall=0.2), _session(0.5, days=1, recall=0.6)]
        )
        assert summary.avg_recall == pytest.approx(0.4)


class TestCohortOverview:
    """Tests for the doctor dashboard overview."""

    def test_overview(self):
        overview = cohort_overview(
            [
                _report("a", 0.40, 0.70, count=3),
                _report("b", 0.50, 0.60, count=2),
                _report("c", 0.70, 0.60, count=4),
                _report("d", 0.0, 0.0, count=0),
            ]
        )
        assert overview.total_reports == 3
        assert overview.total_sessions == 9
        assert overview.patients_with_progress == 2
        assert overview.avg_improvement == pytest.approx(0.2)

    def test_empty_overview(self):
        overview = cohort_overview([])
        assert overview.total_reports == 0
        assert overview.avg_improvement == 0
