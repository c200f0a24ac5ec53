"""Progression domain models for cross-session altitude recommendations.

Core Models:
    - SessionHistoryRecord: What a finished session contributes to progression
    - ProgressionData: Bounded window of recent history plus derived metrics
    - AltitudeRecommendation: Output of the progression engine
    - SessionPerformance: Score and category for a just-finished session

Derived metrics (ProgressionData.from_history):
    - days_since_last_session: whole days since the newest session ended
    - average_ending_altitude: rounded mean of ending levels in the window
    - trend: mean ending level of the 3 newest vs the 3 oldest sessions,
      needs at least 6 sessions; a gap above 0.5 level is a trend
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class SessionType(str, Enum):
    """Session type; selects the SpO2 target band."""

    CALIBRATION = "calibration"
    TRAINING = "training"


class ProgressionTrend(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    BASELINE = "baseline"


class PerformanceCategory(str, Enum):
    """Session performance category with its next-session level bias."""

    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    MAINTAIN = "MAINTAIN"
    STRUGGLE = "STRUGGLE"
    UNSAFE = "UNSAFE"

    @property
    def level_bias(self) -> int:
        return _CATEGORY_BIAS[self]


_CATEGORY_BIAS = {
    PerformanceCategory.EXCELLENT: 2,
    PerformanceCategory.GOOD: 1,
    PerformanceCategory.MAINTAIN: 0,
    PerformanceCategory.STRUGGLE: -1,
    PerformanceCategory.UNSAFE: -2,
}


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (2.5 -> 3, 6.5 -> 7)."""
    return int(math.floor(value + 0.5))


class SessionHistoryRecord(BaseModel):
    """A finished session as seen by the progression engine."""

    session_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    starting_altitude_level: int = Field(ge=0, le=10)
    ending_altitude_level: Optional[int] = Field(default=None, ge=0, le=10)
    mask_lift_count: int = Field(default=0, ge=0)
    min_spo2: Optional[int] = None
    avg_spo2: Optional[float] = None
    completion_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    session_type: SessionType = SessionType.TRAINING

    @property
    def effective_ending_level(self) -> int:
        """Ending level, falling back to the starting level when not recorded."""
        if self.ending_altitude_level is not None:
            return self.ending_altitude_level
        return self.starting_altitude_level


class ProgressionData(BaseModel):
    """History window handed to the progression engine.

    ``sessions`` is ordered newest first.
    """

    sessions: List[SessionHistoryRecord] = Field(default_factory=list)
    last_session: Optional[SessionHistoryRecord] = None
    days_since_last_session: Optional[int] = None
    total_sessions: int = 0
    trend: ProgressionTrend = ProgressionTrend.STABLE
    average_ending_altitude: Optional[int] = None

    @classmethod
    def from_history(
        cls,
        sessions: List[SessionHistoryRecord],
        now: Optional[datetime] = None,
        total_sessions: Optional[int] = None,
    ) -> "ProgressionData":
        """Build progression data from newest-first session records.

        Args:
            sessions: Recent finished sessions, newest first
            now: Reference time for days_since_last_session (default: utc now)
            total_sessions: Lifetime session count if known (default: len(sessions))
        """
        now = now or datetime.now(timezone.utc)
        total = total_sessions if total_sessions is not None else len(sessions)

        if not sessions:
            return cls(total_sessions=total)

        last = sessions[0]
        reference = last.end_time or last.start_time
        days_since = _whole_days_between(reference, now)

        ending_levels = [s.effective_ending_level for s in sessions]
        average = round_half_up(sum(ending_levels) / len(ending_levels))

        trend = ProgressionTrend.STABLE
        if len(sessions) >= 6:
            recent_avg = sum(ending_levels[:3]) / 3
            older_avg = sum(ending_levels[-3:]) / 3
            if recent_avg > older_avg + 0.5:
                trend = ProgressionTrend.IMPROVING
            elif recent_avg < older_avg - 0.5:
                trend = ProgressionTrend.DECLINING

        return cls(
            sessions=sessions,
            last_session=last,
            days_since_last_session=days_since,
            total_sessions=total,
            trend=trend,
            average_ending_altitude=average,
        )


def _whole_days_between(earlier: datetime, later: datetime) -> int:
    if earlier.tzinfo is None:
        earlier = earlier.replace(tzinfo=timezone.utc)
    if later.tzinfo is None:
        later = later.replace(tzinfo=timezone.utc)
    return max(0, math.floor((later - earlier).total_seconds() / 86400))


class AltitudeRecommendation(BaseModel):
    """Recommended starting altitude with human-readable reasoning."""

    level: int = Field(ge=0, le=10)
    reasoning: str
    confidence: Confidence
    adjustments: Dict[str, int] = Field(default_factory=dict)
    is_fallback: bool = False


class SessionStats(BaseModel):
    """Inputs to session performance scoring."""

    mask_lift_count: int = 0
    min_spo2: Optional[float] = None
    avg_spo2: Optional[float] = None
    completion_rate: float = 0.0
    session_type: SessionType = SessionType.TRAINING


class SessionPerformance(BaseModel):
    """Weighted performance score of a finished session."""

    score: int
    category: PerformanceCategory
    factors: List[str] = Field(default_factory=list)
    recommendation: int = 0
