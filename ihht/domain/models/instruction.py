"""Adaptive instruction payloads surfaced to the presentation layer.

AdaptiveInstruction is a tagged union discriminated by ``type``:
    - MaskLift: SpO2 stayed at or below the critical floor (escalated when
      it kept falling to the escalation floor during the cooldown)
    - AltitudeAdjustment: suggested dial change (never auto-applied)

Auto-dismiss timers are owned by the presentation layer; the payload only
carries how long the instruction should stay on screen.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class AdjustmentReason(str, Enum):
    """Why an altitude adjustment was suggested."""

    SPO2_ABOVE_TARGET = "spo2_above_target"
    SPO2_BELOW_TARGET = "spo2_below_target"
    REPEATED_MASK_LIFTS = "repeated_mask_lifts"


class MaskLift(BaseModel):
    """Lift the mask briefly and take a breath of room air."""

    model_config = ConfigDict(frozen=True)

    type: Literal["mask_lift"] = "mask_lift"
    spo2_value: int
    threshold_used: int
    cycle: int
    timestamp: datetime
    auto_dismiss_after_seconds: int = 5
    breaths: int = 1
    escalated: bool = False
    message: str = "Lift mask 1mm, small breath"


class AltitudeAdjustment(BaseModel):
    """Turn the altitude dial to a new level."""

    model_config = ConfigDict(frozen=True)

    type: Literal["altitude_adjustment"] = "altitude_adjustment"
    new_level: int = Field(ge=0, le=10)
    delta: int
    reason: AdjustmentReason
    cycle: int
    timestamp: datetime
    auto_dismiss_after_seconds: int = 10
    message: str = ""


AdaptiveInstruction = Annotated[
    Union[MaskLift, AltitudeAdjustment], Field(discriminator="type")
]
