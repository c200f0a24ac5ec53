"""Pulse oximeter reading model.

Readings are immutable events delivered by the sensor feed. A reading with
no SpO2 value (finger not detected, poor signal) is a distinct condition from
low SpO2 and is ignored by the instruction triggers.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Reading(BaseModel):
    """Single pulse oximeter sample."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    spo2: Optional[int] = Field(default=None, ge=0, le=100)
    heart_rate: Optional[int] = Field(default=None, gt=0)
    is_finger_detected: bool = True
    signal_strength: Optional[int] = Field(default=None, ge=0)
    perfusion_index: Optional[float] = Field(default=None, ge=0)

    @property
    def has_spo2(self) -> bool:
        """True when the reading carries a usable SpO2 value."""
        return self.is_finger_detected and self.spo2 is not None and self.spo2 > 0
