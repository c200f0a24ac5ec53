"""Tests for AltitudeProgressionEngine."""

from datetime import datetime, timedelta, timezone

import pytest

from ihht.domain.models.progression import (
    Confidence,
    PerformanceCategory,
    ProgressionData,
    ProgressionTrend,
    SessionHistoryRecord,
    SessionStats,
    SessionType,
)
from ihht.services.altitude_progression_service import AltitudeProgressionEngine

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    return AltitudeProgressionEngine()


def history(levels, days_since_last=1, mask_lifts=0, total=None) -> ProgressionData:
    """Newest-first history, one session per day, ending at the given levels."""
    records = []
    for i, level in enumerate(levels):
        end = NOW - timedelta(days=days_since_last + i)
        records.append(
            SessionHistoryRecord(
                session_id=f"s-{i}",
                start_time=end - timedelta(minutes=35),
                end_time=end,
                starting_altitude_level=level,
                ending_altitude_level=level,
                mask_lift_count=mask_lifts,
            )
        )
    return ProgressionData.from_history(records, now=NOW, total_sessions=total)


class TestRecommendation:
    def test_first_session_uses_default(self, engine):
        recommendation = engine.recommend_starting_altitude(ProgressionData())

        assert recommendation.level == 6
        assert recommendation.confidence == Confidence.HIGH
        assert recommendation.reasoning == "First session - starting at standard altitude"

    @pytest.mark.parametrize(
        "days,expected",
        [(2, 7), (10, 5), (20, 4), (70, 6)],
    )
    def test_detraining_from_level_seven(self, engine, days, expected):
        data = history([7], days_since_last=days)

        recommendation = engine.recommend_starting_altitude(data)

        assert recommendation.level == expected

    def test_reasoning_mentions_break(self, engine):
        recommendation = engine.recommend_starting_altitude(history([7], days_since_last=10))

        assert "Based on last session ending at level 7" in recommendation.reasoning
        assert "Reduced 2 levels due to 10 day break" in recommendation.reasoning
        assert recommendation.adjustments["detraining"] == -2

    def test_plateau_adds_one_level(self, engine):
        data = history([6, 6, 6, 6, 6])

        recommendation = engine.recommend_starting_altitude(data)

        assert recommendation.level == 7
        assert recommendation.adjustments["trend"] == 1
        assert "plateau" in recommendation.reasoning

    def test_declining_trend_subtracts_one(self, engine):
        data = history([5, 5, 6, 7, 8, 8])
        assert data.trend == ProgressionTrend.DECLINING

        recommendation = engine.recommend_starting_altitude(data)

        assert recommendation.level == 4

    def test_trend_ignored_below_minimum_sessions(self, engine):
        data = history([6, 6])

        assert engine.recommend_starting_altitude(data).level == 6

    def test_malformed_history_falls_back(self, engine):
        data = history([7], total=1).model_copy(update={"days_since_last_session": -3})

        recommendation = engine.recommend_starting_altitude(data)

        assert recommendation.level == 6
        assert recommendation.confidence == Confidence.LOW
        assert recommendation.is_fallback
        assert recommendation.reasoning.startswith("Error in calculation")

    def test_recommendation_always_in_range(self, engine):
        for level in range(11):
            for days in (0, 5, 10, 20, 45, 90):
                data = history([level] * 6, days_since_last=days)
                assert 0 <= engine.recommend_starting_altitude(data).level <= 10


class TestRules:
    @pytest.mark.parametrize(
        "days,adjustment",
        [(None, 0), (0, 0), (3, 0), (4, -1), (7, -1), (8, -2), (14, -2), (15, -3), (30, -3)],
    )
    def test_detraining_thresholds(self, engine, days, adjustment):
        assert engine.calculate_detraining_adjustment(days, 7) == adjustment

    def test_long_break_moves_halfway_to_default(self, engine):
        # (9 + 6) / 2 = 7.5 -> 8
        assert engine.calculate_detraining_adjustment(45, 9) == -1

    def test_reset_returns_to_default(self, engine):
        assert engine.calculate_detraining_adjustment(60, 9) == -3
        assert engine.calculate_detraining_adjustment(90, 2) == 4

    def test_safety_bounds(self, engine):
        assert engine.apply_safety_bounds(12, None) == 10
        assert engine.apply_safety_bounds(-1, None) == 0
        assert engine.apply_safety_bounds(9, 5) == 7
        assert engine.apply_safety_bounds(1, 6) == 3

    @pytest.mark.parametrize(
        "total,confidence",
        [(0, Confidence.BASELINE), (1, Confidence.LOW), (5, Confidence.MEDIUM), (10, Confidence.HIGH)],
    )
    def test_confidence(self, engine, total, confidence):
        assert engine.calculate_confidence(ProgressionData(total_sessions=total)) == confidence


class TestSessionTypeSelection:
    def test_first_session_is_calibration(self, engine):
        assert engine.select_session_type(ProgressionData()) == SessionType.CALIBRATION

    def test_regular_session_is_training(self, engine):
        assert engine.select_session_type(history([6, 6, 7])) == SessionType.TRAINING

    def test_long_break_recalibrates(self, engine):
        data = history([6, 6, 7], days_since_last=31)

        assert engine.should_do_calibration_session(data)

    def test_every_twentieth_session_recalibrates(self, engine):
        data = history([6, 6, 7], total=20)

        assert engine.should_do_calibration_session(data)

    def test_declining_with_heavy_mask_lifts_recalibrates(self, engine):
        data = history([5, 5, 6, 7, 8, 8], mask_lifts=4)

        assert engine.should_do_calibration_session(data)


class TestPerformanceScoring:
    def test_clean_session_is_excellent(self, engine):
        stats = SessionStats(
            mask_lift_count=0,
            min_spo2=86,
            avg_spo2=88,
            completion_rate=1.0,
            session_type=SessionType.TRAINING,
        )

        performance = engine.score_session_performance(stats)

        assert performance.score == 90
        assert performance.category == PerformanceCategory.EXCELLENT
        assert performance.recommendation == 2
        assert "No mask lifts" in performance.factors

    def test_struggling_session(self, engine):
        stats = SessionStats(
            mask_lift_count=4,
            min_spo2=78,
            avg_spo2=84,
            completion_rate=0.5,
        )

        performance = engine.score_session_performance(stats)

        assert performance.score == -10
        assert performance.category == PerformanceCategory.UNSAFE

    def test_missing_spo2_scores_mask_lifts_and_completion_only(self, engine):
        stats = SessionStats(mask_lift_count=1, completion_rate=0.85)

        performance = engine.score_session_performance(stats)

        assert performance.score == 35
        assert performance.category == PerformanceCategory.STRUGGLE

    def test_calibration_band_used_for_calibration(self, engine):
        stats = SessionStats(
            min_spo2=88,
            avg_spo2=92,
            completion_rate=1.0,
            session_type=SessionType.CALIBRATION,
        )

        # lifts 40 + band 30 + near ceiling 10 + completion 10
        assert engine.score_session_performance(stats).score == 90
