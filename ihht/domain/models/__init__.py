"""Domain models package."""

from .phase import Phase, PhaseState, PhaseTransition, parse_phase
from .reading import Reading
from .instruction import (
    AdaptiveInstruction,
    AdjustmentReason,
    AltitudeAdjustment,
    MaskLift,
)
from .progression import (
    AltitudeRecommendation,
    Confidence,
    PerformanceCategory,
    ProgressionData,
    ProgressionTrend,
    SessionHistoryRecord,
    SessionPerformance,
    SessionStats,
    SessionType,
)
from .session import (
    RECOVERY_SCHEMA_VERSION,
    RecoverySnapshot,
    SessionConfig,
    SessionEvent,
    SessionEventType,
    SessionInfo,
    SessionSummary,
)

__all__ = [
    "Phase",
    "PhaseState",
    "PhaseTransition",
    "parse_phase",
    "Reading",
    "AdaptiveInstruction",
    "AdjustmentReason",
    "AltitudeAdjustment",
    "MaskLift",
    "AltitudeRecommendation",
    "Confidence",
    "PerformanceCategory",
    "ProgressionData",
    "ProgressionTrend",
    "SessionHistoryRecord",
    "SessionPerformance",
    "SessionStats",
    "SessionType",
    "RECOVERY_SCHEMA_VERSION",
    "RecoverySnapshot",
    "SessionConfig",
    "SessionEvent",
    "SessionEventType",
    "SessionInfo",
    "SessionSummary",
]
