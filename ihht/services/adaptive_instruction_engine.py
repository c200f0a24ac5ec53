"""
Adaptive instruction engine: SpO2-driven safety instructions.

Consumes readings together with the current PhaseState and decides whether
the user should lift the mask or turn the altitude dial. Time is taken from
reading timestamps only, so the engine is deterministic under test.

Triggers (altitude phases only):
    - Mask lift: SpO2 at or below the floor for the sustain period. After an
      emission the trigger re-arms when SpO2 recovers above floor + margin
      or the cooldown elapses, so sustained desaturation repeats the lift
      once per cooldown. A further drop to the escalation floor during the
      cooldown sends one two-breath lift.
    - Altitude adjustment: rolling average above/below the session type's
      band once the window spans the evaluation period, or repeated mask
      lifts in the same phase. One suggestion until the controller confirms
      a new level with set_altitude_level (or a new phase starts).
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Optional, Tuple

import structlog

from ihht.core.config import InstructionConfig, SpO2Band, training_config
from ihht.domain.models.instruction import (
    AdaptiveInstruction,
    AdjustmentReason,
    AltitudeAdjustment,
    MaskLift,
)
from ihht.domain.models.phase import Phase, PhaseState
from ihht.domain.models.progression import SessionType
from ihht.domain.models.reading import Reading

log = structlog.get_logger(__name__)


@dataclass
class PhaseStats:
    """SpO2 statistics of the phase currently being observed.

    Attributes:
        phase: Phase the statistics belong to
        cycle: Cycle the statistics belong to
        sample_count: Valid SpO2 samples seen
        min_spo2: Lowest SpO2 seen
        max_spo2: Highest SpO2 seen
        spo2_total: Sum of SpO2 samples (for the average)
        mask_lift_count: Mask lifts emitted in this phase
    """

    phase: Phase
    cycle: int
    sample_count: int = 0
    min_spo2: Optional[int] = None
    max_spo2: Optional[int] = None
    spo2_total: int = 0
    mask_lift_count: int = 0

    @property
    def avg_spo2(self) -> Optional[float]:
        if self.sample_count == 0:
            return None
        return round(self.spo2_total / self.sample_count, 1)

    def record(self, spo2: int) -> None:
        self.sample_count += 1
        self.spo2_total += spo2
        if self.min_spo2 is None or spo2 < self.min_spo2:
            self.min_spo2 = spo2
        if self.max_spo2 is None or spo2 > self.max_spo2:
            self.max_spo2 = spo2


class AdaptiveInstructionEngine:
    """
    Evaluates live readings against per-phase SpO2 windows.

    Usage:
        engine = AdaptiveInstructionEngine(session_type=SessionType.TRAINING,
                                           altitude_level=6)
        instruction = engine.on_reading(reading, scheduler.state)
        ...
        engine.set_altitude_level(5)  # after the user turned the dial
    """

    def __init__(
        self,
        config: Optional[InstructionConfig] = None,
        session_type: SessionType = SessionType.TRAINING,
        altitude_level: Optional[int] = None,
        min_level: Optional[int] = None,
        max_level: Optional[int] = None,
    ):
        self.config = config or training_config.instructions
        progression = training_config.progression
        self.min_level = progression.min_level if min_level is None else min_level
        self.max_level = progression.max_level if max_level is None else max_level

        self.session_type = session_type
        self.altitude_level = (
            progression.default_level if altitude_level is None else altitude_level
        )

        # Samples are kept long enough for both the window and the evaluation span
        self._retention_seconds = max(
            self.config.window_seconds, self.config.adjustment_window_seconds
        )
        self._window: Deque[Tuple[datetime, int]] = deque()
        self._phase_key: Optional[Tuple[Phase, int]] = None
        self._stats: Optional[PhaseStats] = None

        self._low_since: Optional[datetime] = None
        self._mask_lift_armed = True
        self._escalation_sent = False
        self._lift_spo2: Optional[int] = None
        self._last_mask_lift_at: Optional[datetime] = None

        self._adjustment_armed = True
        self._mask_lifts_at_last_adjustment = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def target_band(self) -> SpO2Band:
        if self.session_type == SessionType.CALIBRATION:
            return self.config.calibration_band
        return self.config.training_band

    @property
    def phase_stats(self) -> Optional[PhaseStats]:
        """Statistics of the phase currently observed (None before any reading)."""
        return self._stats

    def reset(self, session_type: SessionType, altitude_level: int) -> None:
        """Forget all state and prepare for a new session."""
        self.session_type = session_type
        self.altitude_level = altitude_level
        self._phase_key = None
        self._stats = None
        self._clear_phase_state()

    def set_altitude_level(self, level: int) -> None:
        """
        Record a dial change confirmed by the user and re-arm adjustments.

        The rolling window is cleared so the next suggestion is based on
        readings taken at the new level.
        """
        log.info(
            "altitude_level_confirmed",
            previous_level=self.altitude_level,
            new_level=level,
        )
        self.altitude_level = level
        self._window.clear()
        self._adjustment_armed = True
        if self._stats is not None:
            self._mask_lifts_at_last_adjustment = self._stats.mask_lift_count

    def on_reading(
        self, reading: Reading, phase_state: PhaseState
    ) -> Optional[AdaptiveInstruction]:
        """
        Evaluate one reading.

        Args:
            reading: Latest sensor reading
            phase_state: Phase state at the time of the reading

        Returns:
            MaskLift, AltitudeAdjustment, or None
        """
        key = (phase_state.current_phase, phase_state.current_cycle)
        if key != self._phase_key:
            self._enter_phase(*key)

        # Finger not detected: not a sample, and not a break in a low run
        if not reading.has_spo2:
            return None

        spo2 = reading.spo2
        assert spo2 is not None
        timestamp = reading.timestamp
        self._append_sample(timestamp, spo2)
        assert self._stats is not None
        self._stats.record(spo2)

        if phase_state.current_phase != Phase.ALTITUDE:
            return None

        instruction = self._check_mask_lift(timestamp, spo2, phase_state.current_cycle)
        if instruction is not None:
            return instruction
        return self._check_altitude_adjustment(timestamp, phase_state.current_cycle)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _check_mask_lift(
        self, timestamp: datetime, spo2: int, cycle: int
    ) -> Optional[MaskLift]:
        floor = self.config.mask_lift_spo2_floor

        if spo2 <= floor:
            if self._low_since is None:
                self._low_since = timestamp
        else:
            self._low_since = None

        if not self._mask_lift_armed:
            if spo2 > floor + self.config.mask_lift_recovery_margin:
                rearm_reason = "recovered"
            elif self._cooldown_elapsed(timestamp):
                rearm_reason = "cooldown_elapsed"
            else:
                return self._check_escalation(timestamp, spo2, cycle)
            self._mask_lift_armed = True
            log.debug("mask_lift_rearmed", spo2=spo2, cycle=cycle, reason=rearm_reason)

        if self._low_since is None:
            return None
        sustained = (timestamp - self._low_since).total_seconds()
        if sustained < self.config.mask_lift_sustain_seconds:
            return None

        self._mask_lift_armed = False
        self._escalation_sent = False
        self._lift_spo2 = spo2
        return self._emit_mask_lift(timestamp, spo2, cycle, escalated=False)

    def _check_escalation(
        self, timestamp: datetime, spo2: int, cycle: int
    ) -> Optional[MaskLift]:
        """One two-breath lift when SpO2 keeps falling during the cooldown."""
        if self._escalation_sent:
            return None
        critical = self.config.mask_lift_escalation_spo2
        if spo2 > critical or self._lift_spo2 is None or self._lift_spo2 <= critical:
            return None

        self._escalation_sent = True
        return self._emit_mask_lift(timestamp, spo2, cycle, escalated=True)

    def _emit_mask_lift(
        self, timestamp: datetime, spo2: int, cycle: int, escalated: bool
    ) -> MaskLift:
        # Cooldown restarts from the latest lift, escalated or not
        self._last_mask_lift_at = timestamp
        self._low_since = None
        assert self._stats is not None
        self._stats.mask_lift_count += 1

        floor = self.config.mask_lift_spo2_floor
        log.info(
            "mask_lift_escalated" if escalated else "mask_lift_triggered",
            spo2=spo2,
            threshold=floor,
            cycle=cycle,
            phase_mask_lifts=self._stats.mask_lift_count,
        )
        if escalated:
            return MaskLift(
                spo2_value=spo2,
                threshold_used=self.config.mask_lift_escalation_spo2,
                cycle=cycle,
                timestamp=timestamp,
                auto_dismiss_after_seconds=self.config.mask_lift_dismiss_seconds,
                breaths=2,
                escalated=True,
                message="Lift mask and take two deep breaths",
            )
        return MaskLift(
            spo2_value=spo2,
            threshold_used=floor,
            cycle=cycle,
            timestamp=timestamp,
            auto_dismiss_after_seconds=self.config.mask_lift_dismiss_seconds,
        )

    def _check_altitude_adjustment(
        self, timestamp: datetime, cycle: int
    ) -> Optional[AltitudeAdjustment]:
        if not self._adjustment_armed:
            return None
        assert self._stats is not None

        step = self.config.adjustment_step
        lifts = self._stats.mask_lift_count - self._mask_lifts_at_last_adjustment

        if lifts >= self.config.mask_lifts_before_decrease:
            delta = -step
            reason = AdjustmentReason.REPEATED_MASK_LIFTS
            detail = f"{lifts} mask lifts this phase"
        else:
            average = self._window_average()
            if average is None:
                return None
            band = self.target_band
            if average > band.high:
                delta = step
                reason = AdjustmentReason.SPO2_ABOVE_TARGET
                detail = f"average SpO2 {average:.1f}% above {band.high}%"
            elif average < band.low:
                delta = -step
                reason = AdjustmentReason.SPO2_BELOW_TARGET
                detail = f"average SpO2 {average:.1f}% below {band.low}%"
            else:
                return None

        new_level = max(self.min_level, min(self.max_level, self.altitude_level + delta))
        if new_level == self.altitude_level:
            return None

        self._adjustment_armed = False
        log.info(
            "altitude_adjustment_suggested",
            current_level=self.altitude_level,
            new_level=new_level,
            reason=reason.value,
            cycle=cycle,
        )
        direction = "up" if new_level > self.altitude_level else "down"
        return AltitudeAdjustment(
            new_level=new_level,
            delta=new_level - self.altitude_level,
            reason=reason,
            cycle=cycle,
            timestamp=timestamp,
            auto_dismiss_after_seconds=self.config.altitude_adjustment_dismiss_seconds,
            message=f"Turn altitude dial {direction} to level {new_level} ({detail})",
        )

    # ------------------------------------------------------------------
    # Window and phase bookkeeping
    # ------------------------------------------------------------------

    def _window_average(self) -> Optional[float]:
        """Average of the rolling window once it covers the evaluation span."""
        if len(self._window) < self.config.adjustment_min_samples:
            return None
        span = (self._window[-1][0] - self._window[0][0]).total_seconds()
        if span < self.config.adjustment_window_seconds:
            return None
        return sum(spo2 for _, spo2 in self._window) / len(self._window)

    def _append_sample(self, timestamp: datetime, spo2: int) -> None:
        self._window.append((timestamp, spo2))
        while (
            self._window
            and (timestamp - self._window[0][0]).total_seconds() > self._retention_seconds
        ):
            self._window.popleft()

    def _cooldown_elapsed(self, timestamp: datetime) -> bool:
        if self._last_mask_lift_at is None:
            return True
        elapsed = (timestamp - self._last_mask_lift_at).total_seconds()
        return elapsed >= self.config.mask_lift_cooldown_seconds

    def _enter_phase(self, phase: Phase, cycle: int) -> None:
        if self._stats is not None:
            log.debug(
                "phase_stats_closed",
                phase=self._stats.phase.value,
                cycle=self._stats.cycle,
                samples=self._stats.sample_count,
                min_spo2=self._stats.min_spo2,
                avg_spo2=self._stats.avg_spo2,
                mask_lifts=self._stats.mask_lift_count,
            )
        self._phase_key = (phase, cycle)
        self._stats = PhaseStats(phase=phase, cycle=cycle)
        self._clear_phase_state()

    def _clear_phase_state(self) -> None:
        self._window.clear()
        self._low_since = None
        self._mask_lift_armed = True
        self._escalation_sent = False
        self._adjustment_armed = True
        self._last_mask_lift_at = None
        self._lift_spo2 = None
        self._mask_lifts_at_last_adjustment = 0
