"""Phase domain models for the altitude/recovery cycle state machine.

Core Models:
    - Phase: Canonical phase enum (single source of truth for phase names)
    - PhaseState: Mutable scheduler state, owned by PhaseScheduler
    - PhaseTransition: Record of one state machine step

State Machine:
    ALTITUDE -> TRANSITION(next=RECOVERY) -> RECOVERY
    RECOVERY -> TRANSITION(next=ALTITUDE, cycle + 1)   while cycles remain
    RECOVERY -> COMPLETED                              after the last cycle

Legacy Names:
    Older clients send HYPOXIC/HYPEROXIC. Those names are translated by
    parse_phase() at the input boundary and never reach the state machine.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Phase(str, Enum):
    """Session phase."""

    ALTITUDE = "altitude"
    """Reduced-oxygen breathing through the mask."""

    TRANSITION = "transition"
    """Short mask on/off changeover before the next timed phase."""

    RECOVERY = "recovery"
    """Enriched/normal-oxygen breathing."""

    COMPLETED = "completed"
    """Terminal: all cycles finished."""


_LEGACY_PHASE_NAMES = {
    "hypoxic": Phase.ALTITUDE,
    "hyperoxic": Phase.RECOVERY,
}


def parse_phase(value: str) -> Phase:
    """Translate an external phase name into the canonical Phase.

    Accepts canonical names in any case plus the legacy HYPOXIC/HYPEROXIC
    aliases.

    Raises:
        ValueError: If the name is not a known phase
    """
    key = value.strip().lower()
    if key in _LEGACY_PHASE_NAMES:
        return _LEGACY_PHASE_NAMES[key]
    return Phase(key)


class PhaseState(BaseModel):
    """Mutable phase/cycle state of a running session.

    Owned exclusively by PhaseScheduler; everyone else gets copies.

    Invariants:
        - current_cycle never decreases
        - next_phase_after_transition is set only while in TRANSITION
        - COMPLETED is terminal
    """

    current_phase: Phase = Phase.ALTITUDE
    current_cycle: int = Field(default=1, ge=1)
    phase_time_remaining_seconds: float = Field(default=0.0, ge=0)
    is_paused: bool = False
    next_phase_after_transition: Optional[Phase] = None


class PhaseTransition(BaseModel):
    """One step of the phase state machine."""

    from_phase: Phase
    to_phase: Phase
    from_cycle: int
    to_cycle: int
    skipped: bool = False

    @property
    def cycle_changed(self) -> bool:
        return self.to_cycle != self.from_cycle
