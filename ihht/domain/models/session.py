"""Session domain models for training session lifecycle management.

Core Models:
    - SessionConfig: Immutable protocol chosen at session start
    - SessionInfo: Read model for the presentation layer
    - RecoverySnapshot: Versioned durable state for resuming a session
    - SessionSummary: Result of a finished session
    - SessionEvent: Named event published by the controller

Session Lifecycle:
    1. start_session: config resolved (altitude recommended if not given),
       scheduler started, snapshot written
    2. ticks and readings: phase state advances, instructions emitted,
       snapshots on every transition and at a bounded interval
    3. end_session (manual or on COMPLETED): timer stopped, readings flushed,
       summary persisted, snapshot deleted
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ihht.domain.models.phase import Phase, PhaseState
from ihht.domain.models.progression import SessionPerformance, SessionType

RECOVERY_SCHEMA_VERSION = 1


class SessionConfig(BaseModel):
    """Immutable session protocol.

    Positivity of cycles and durations is checked by PhaseScheduler.start so
    that a bad protocol surfaces as InvalidConfigError.
    ``starting_altitude_level=None`` asks the controller for a recommendation.
    """

    model_config = ConfigDict(frozen=True)

    total_cycles: int = 3
    hypoxic_duration_seconds: int = 420
    hyperoxic_duration_seconds: int = 180
    starting_altitude_level: Optional[int] = Field(default=None, ge=0, le=10)


class SessionInfo(BaseModel):
    """Snapshot of the live session for display."""

    is_active: bool
    session_id: Optional[str] = None
    current_phase: Optional[Phase] = None
    current_cycle: Optional[int] = None
    total_cycles: Optional[int] = None
    phase_time_remaining_seconds: Optional[float] = None
    next_phase_after_transition: Optional[Phase] = None
    is_paused: bool = False
    session_start_time: Optional[datetime] = None
    current_altitude_level: Optional[int] = None
    session_type: Optional[SessionType] = None
    config: Optional[SessionConfig] = None


class RecoverySnapshot(BaseModel):
    """Minimal state needed to resume an interrupted session.

    ``schema_version`` lets the store reject snapshots written by an older
    layout instead of resuming from partial state.
    """

    schema_version: int = RECOVERY_SCHEMA_VERSION
    session_id: str
    user_id: str
    config: SessionConfig
    phase_state: PhaseState
    session_start_time: datetime
    last_persisted_at: datetime
    current_altitude_level: int = Field(ge=0, le=10)
    session_type: SessionType = SessionType.TRAINING


class SessionSummary(BaseModel):
    """Outcome of a finished session, persisted to session history."""

    session_id: str
    user_id: str
    start_time: datetime
    end_time: datetime
    duration_seconds: int
    end_reason: str
    session_type: SessionType
    total_cycles: int
    cycles_completed: int
    completion_rate: float = Field(ge=0.0, le=1.0)
    starting_altitude_level: int
    ending_altitude_level: int
    mask_lift_count: int = 0
    altitude_adjustment_count: int = 0
    min_spo2: Optional[int] = None
    max_spo2: Optional[int] = None
    avg_spo2: Optional[float] = None
    avg_heart_rate: Optional[float] = None
    reading_count: int = 0
    performance: Optional[SessionPerformance] = None


class SessionEventType(str, Enum):
    """Events published on the controller's event bus."""

    SESSION_STARTED = "session_started"
    PHASE_UPDATE = "phase_update"
    PHASE_ADVANCED = "phase_advanced"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_COMPLETED = "session_completed"
    SESSION_ENDED = "session_ended"
    ALTITUDE_LEVEL_CHANGED = "altitude_level_changed"


class SessionEvent(BaseModel):
    """Event delivered to subscribers."""

    type: SessionEventType
    session_id: str
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)
