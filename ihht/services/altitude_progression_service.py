"""
Altitude progression engine for cross-session progressive overload.

Recommends a starting altitude for a new session from the user's recent
history, and scores finished sessions. Pure and deterministic: history is
loaded by the caller (see SessionController.recommend_starting_altitude).

Recommendation pipeline:
    1. No history -> default level
    2. Base level = last session's ending level
    3. Detraining correction by days since the last session
       (60+ days resets to the default level and skips steps 4-5)
    4. Trend correction (plateau -> +1, declining -> -1)
    5. Clamp to [min, max] and to [base - max_decrease, base + max_increase]
"""

from typing import Dict, List, Optional

import structlog

from ihht.core.config import InstructionConfig, ProgressionConfig, SpO2Band, training_config
from ihht.core.exceptions import ProgressionCalculationError
from ihht.domain.models.progression import (
    AltitudeRecommendation,
    Confidence,
    PerformanceCategory,
    ProgressionData,
    ProgressionTrend,
    SessionPerformance,
    SessionStats,
    SessionType,
    round_half_up,
)

log = structlog.get_logger(__name__)

RECALIBRATION_INTERVAL = 20
RECALIBRATION_BREAK_DAYS = 30
HIGH_MASK_LIFT_SESSION = 3


class AltitudeProgressionEngine:
    """
    Deterministic starting altitude recommendation and session scoring.

    Usage:
        engine = AltitudeProgressionEngine()
        data = await session_store.get_user_progression_data(user_id)
        recommendation = engine.recommend_starting_altitude(data)
    """

    def __init__(
        self,
        config: Optional[ProgressionConfig] = None,
        instruction_config: Optional[InstructionConfig] = None,
    ):
        self.config = config or training_config.progression
        self.instruction_config = instruction_config or training_config.instructions

    # ------------------------------------------------------------------
    # Recommendation
    # ------------------------------------------------------------------

    def recommend_starting_altitude(
        self, progression_data: ProgressionData
    ) -> AltitudeRecommendation:
        """
        Recommend a starting altitude level.

        Never raises: malformed history falls back to the default level with
        low confidence.
        """
        try:
            return self._recommend(progression_data)
        except ProgressionCalculationError as e:
            log.warning("progression_calculation_failed", error=e.message)
            return self.fallback_recommendation(e.message)

    def fallback_recommendation(self, error: str = "") -> AltitudeRecommendation:
        """Default level with low confidence, used when history is unusable."""
        reasoning = "Error in calculation - using default level"
        if error:
            reasoning = f"{reasoning} ({error})"
        return AltitudeRecommendation(
            level=self.config.default_level,
            reasoning=reasoning,
            confidence=Confidence.LOW,
            is_fallback=True,
        )

    def _recommend(self, data: ProgressionData) -> AltitudeRecommendation:
        self._validate(data)

        last = data.last_session
        if last is None:
            log.info("progression_first_session", level=self.config.default_level)
            return AltitudeRecommendation(
                level=self.config.default_level,
                reasoning="First session - starting at standard altitude",
                confidence=Confidence.HIGH,
            )

        base = last.effective_ending_level
        days = data.days_since_last_session
        adjustments: Dict[str, int] = {"base_level": base}
        if days is not None:
            adjustments["days_since_last_session"] = days

        if days is not None and days >= self.config.detraining.reset:
            level = self._clamp_absolute(self.config.default_level)
            adjustments["detraining"] = level - base
            reasoning = (
                f"Based on last session ending at level {base}. "
                f"Reset to standard altitude after a {days} day break. "
                f"Starting at level {level}"
            )
            log.info("progression_reset", base_level=base, days=days, level=level)
            return AltitudeRecommendation(
                level=level,
                reasoning=reasoning,
                confidence=self.calculate_confidence(data),
                adjustments=adjustments,
            )

        detraining = self.calculate_detraining_adjustment(days, base)
        adjustments["detraining"] = detraining

        trend_adjustment = 0
        if data.total_sessions >= self.config.min_sessions_for_trend:
            trend_adjustment = self.calculate_trend_adjustment(data)
        adjustments["trend"] = trend_adjustment

        level = self.apply_safety_bounds(base + detraining + trend_adjustment, base)

        log.info(
            "progression_recommended",
            base_level=base,
            detraining=detraining,
            trend=trend_adjustment,
            level=level,
        )
        return AltitudeRecommendation(
            level=level,
            reasoning=self._reasoning(data, base, detraining, trend_adjustment, level),
            confidence=self.calculate_confidence(data),
            adjustments=adjustments,
        )

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def calculate_detraining_adjustment(
        self, days_since_last_session: Optional[int], current_level: int
    ) -> int:
        """Level change caused by the break since the last session."""
        if days_since_last_session is None:
            return 0

        thresholds = self.config.detraining
        days = days_since_last_session
        if days <= thresholds.no_change:
            return 0
        if days <= thresholds.mild:
            return -1
        if days <= thresholds.moderate:
            return -2
        if days <= thresholds.significant:
            return -3
        if days >= thresholds.reset:
            return self.config.default_level - current_level
        # Long break: halfway back to the default level
        halfway = round_half_up((current_level + self.config.default_level) / 2)
        return halfway - current_level

    def calculate_trend_adjustment(self, data: ProgressionData) -> int:
        """+1 to break a plateau, -1 for a declining trend, otherwise 0."""
        threshold = self.config.plateau_threshold
        recent = data.sessions[:threshold]
        if len(recent) >= threshold:
            levels = {s.effective_ending_level for s in recent}
            if len(levels) == 1:
                log.info("progression_plateau_detected", level=levels.pop())
                return 1

        if data.trend == ProgressionTrend.DECLINING:
            return -1
        return 0

    def apply_safety_bounds(self, level: int, last_level: Optional[int]) -> int:
        """Clamp to the absolute range, then to the allowed change from last_level."""
        level = self._clamp_absolute(level)
        if last_level is not None:
            level = max(
                last_level - self.config.max_decrease,
                min(last_level + self.config.max_increase, level),
            )
        return level

    def calculate_confidence(self, data: ProgressionData) -> Confidence:
        if data.total_sessions >= 10:
            return Confidence.HIGH
        if data.total_sessions >= 5:
            return Confidence.MEDIUM
        if data.total_sessions >= 1:
            return Confidence.LOW
        return Confidence.BASELINE

    def should_do_calibration_session(self, data: ProgressionData) -> bool:
        """
        Decide whether the next session should be a calibration session.

        Calibration is chosen for the first session, after a break of more
        than 30 days, every 20th session, and when a declining trend comes
        with repeated heavy mask-lift sessions.
        """
        if data.total_sessions == 0:
            return True
        if (
            data.days_since_last_session is not None
            and data.days_since_last_session > RECALIBRATION_BREAK_DAYS
        ):
            return True
        if data.total_sessions % RECALIBRATION_INTERVAL == 0:
            return True
        if data.trend == ProgressionTrend.DECLINING and data.total_sessions >= 3:
            heavy = [
                s
                for s in data.sessions[:3]
                if s.mask_lift_count > HIGH_MASK_LIFT_SESSION
            ]
            if len(heavy) >= 2:
                return True
        return False

    def select_session_type(self, data: ProgressionData) -> SessionType:
        if self.should_do_calibration_session(data):
            return SessionType.CALIBRATION
        return SessionType.TRAINING

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score_session_performance(self, stats: SessionStats) -> SessionPerformance:
        """
        Weighted score of a finished session.

        Weights: mask lifts 40, SpO2 band 30, ceiling testing 20, completion 10.
        Missing SpO2 data scores zero in the SpO2 components.
        """
        band = self._band_for(stats.session_type)
        score = 0
        factors: List[str] = []

        if stats.mask_lift_count == 0:
            score += 40
            factors.append("No mask lifts")
        elif stats.mask_lift_count == 1:
            score += 30
            factors.append("One mask lift")
        elif stats.mask_lift_count == 2:
            score += 20
            factors.append("Two mask lifts")
        else:
            factors.append("Multiple mask lifts")

        if stats.min_spo2 is not None and stats.avg_spo2 is not None:
            if stats.min_spo2 >= band.low and stats.avg_spo2 <= band.high:
                score += 30
                factors.append("SpO2 in optimal range")
            elif stats.min_spo2 >= band.low - 2:
                score += 20
                factors.append("SpO2 acceptable")
            elif stats.min_spo2 < band.low - 5:
                score -= 10
                factors.append("SpO2 too low")

        if stats.avg_spo2 is not None:
            if stats.avg_spo2 >= band.high:
                score += 20
                factors.append("Could handle more altitude")
            elif stats.avg_spo2 >= band.high - 2:
                score += 10
                factors.append("Near target ceiling")

        if stats.completion_rate >= 1.0:
            score += 10
            factors.append("Full session completed")
        elif stats.completion_rate >= 0.8:
            score += 5
            factors.append("Most of session completed")

        category = self._categorize(score)
        log.info("session_performance_scored", score=score, category=category.value)
        return SessionPerformance(
            score=score,
            category=category,
            factors=factors,
            recommendation=category.level_bias,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _categorize(score: int) -> PerformanceCategory:
        if score >= 80:
            return PerformanceCategory.EXCELLENT
        if score >= 60:
            return PerformanceCategory.GOOD
        if score >= 40:
            return PerformanceCategory.MAINTAIN
        if score >= 20:
            return PerformanceCategory.STRUGGLE
        return PerformanceCategory.UNSAFE

    def _band_for(self, session_type: SessionType) -> SpO2Band:
        if session_type == SessionType.CALIBRATION:
            return self.instruction_config.calibration_band
        return self.instruction_config.training_band

    def _clamp_absolute(self, level: int) -> int:
        return max(self.config.min_level, min(self.config.max_level, level))

    def _validate(self, data: ProgressionData) -> None:
        if data.sessions and data.last_session is None:
            raise ProgressionCalculationError("History has sessions but no last session")
        if data.total_sessions < len(data.sessions):
            raise ProgressionCalculationError(
                f"total_sessions ({data.total_sessions}) is smaller than the "
                f"history window ({len(data.sessions)})"
            )
        if data.days_since_last_session is not None and data.days_since_last_session < 0:
            raise ProgressionCalculationError(
                f"days_since_last_session is negative ({data.days_since_last_session})"
            )

    def _reasoning(
        self,
        data: ProgressionData,
        base: int,
        detraining: int,
        trend_adjustment: int,
        level: int,
    ) -> str:
        parts = [f"Based on last session ending at level {base}"]

        if detraining < 0:
            parts.append(
                f"Reduced {abs(detraining)} levels due to "
                f"{data.days_since_last_session} day break"
            )

        if trend_adjustment > 0:
            parts.append("Same level for several sessions - progressing to break plateau")
        elif data.trend == ProgressionTrend.IMPROVING:
            parts.append("Recent performance shows improvement")
        elif data.trend == ProgressionTrend.DECLINING:
            parts.append("Recent performance suggests more conservative approach")

        parts.append(f"Starting at level {level} for optimal challenge")
        return ". ".join(parts)
