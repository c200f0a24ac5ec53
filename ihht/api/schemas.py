"""
API request/response schemas.

Pydantic models for API validation and serialization. Domain models
(SessionInfo, SessionSummary, AltitudeRecommendation, ...) are returned as-is
where they already are the right shape.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ihht.core.config import training_config
from ihht.domain.models.instruction import AdaptiveInstruction
from ihht.domain.models.progression import SessionHistoryRecord, SessionType
from ihht.domain.models.reading import Reading
from ihht.domain.models.session import RecoverySnapshot, SessionConfig, SessionInfo

_defaults = training_config.session_defaults


# ============ SESSION SCHEMAS ============


class StartSessionRequest(BaseModel):
    """Request to start a session. Omitted protocol fields use configured defaults."""

    session_id: Optional[str] = Field(
        default=None, description="Client-chosen ID (generated when omitted)"
    )
    user_id: Optional[str] = None
    session_type: Optional[SessionType] = Field(
        default=None, description="Chosen from history when omitted"
    )
    total_cycles: int = Field(default=_defaults.total_cycles)
    hypoxic_duration_seconds: int = Field(default=_defaults.hypoxic_duration_seconds)
    hyperoxic_duration_seconds: int = Field(default=_defaults.hyperoxic_duration_seconds)
    starting_altitude_level: Optional[int] = Field(
        default=None, ge=0, le=10, description="Recommended from history when omitted"
    )

    def to_config(self) -> SessionConfig:
        return SessionConfig(
            total_cycles=self.total_cycles,
            hypoxic_duration_seconds=self.hypoxic_duration_seconds,
            hyperoxic_duration_seconds=self.hyperoxic_duration_seconds,
            starting_altitude_level=self.starting_altitude_level,
        )


class ControlResponse(BaseModel):
    """Result of pause/resume/skip/disconnect."""

    changed: bool
    session: SessionInfo


class EndSessionRequest(BaseModel):
    reason: str = Field(default="manual", min_length=1, max_length=64)


class AltitudeLevelRequest(BaseModel):
    """The user turned the altitude dial to this level."""

    level: int = Field(..., ge=0, le=10)


class DisconnectRequest(BaseModel):
    error: Optional[str] = Field(default=None, max_length=500)


# ============ READING SCHEMAS ============


class ReadingRequest(BaseModel):
    """Single pulse oximeter sample."""

    timestamp: Optional[datetime] = None
    spo2: Optional[int] = Field(default=None, ge=0, le=100)
    heart_rate: Optional[int] = Field(default=None, gt=0)
    is_finger_detected: bool = True
    signal_strength: Optional[int] = Field(default=None, ge=0)
    perfusion_index: Optional[float] = Field(default=None, ge=0)

    def to_reading(self) -> Reading:
        data = self.model_dump(exclude_none=True)
        return Reading(**data)


class ReadingResponse(BaseModel):
    accepted: bool
    instruction: Optional[AdaptiveInstruction] = None


class ReadingBatchRequest(BaseModel):
    readings: List[ReadingRequest] = Field(..., min_length=1, max_length=1000)


class ReadingBatchResponse(BaseModel):
    accepted: int


# ============ RECOVERY & HISTORY SCHEMAS ============


class RecoveryResponse(BaseModel):
    """Recoverable session, if any."""

    recoverable: bool
    snapshot: Optional[RecoverySnapshot] = None


class SessionHistoryResponse(BaseModel):
    """Finished sessions of a user, newest first."""

    sessions: List[SessionHistoryRecord]
    total: int
