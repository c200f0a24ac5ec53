"""
Phase scheduler: altitude/recovery cycle state machine.

Pure state machine driven by tick(); no I/O, no clocks. Remaining phase time
is an explicit counter, so pausing and resuming any number of times never
changes how much phase time a session consumes.

State machine:
    ALTITUDE -(expire)-> TRANSITION(next=RECOVERY) -> RECOVERY
    RECOVERY -(expire)-> TRANSITION(next=ALTITUDE, cycle + 1)  if cycles remain
    RECOVERY -(expire)-> COMPLETED                             otherwise

With transition_seconds == 0 the TRANSITION step is skipped.
"""

from typing import List, Optional

import structlog

from ihht.core.config import training_config
from ihht.core.exceptions import InvalidConfigError, NoActiveSessionError
from ihht.domain.models.phase import Phase, PhaseState, PhaseTransition
from ihht.domain.models.session import SessionConfig

log = structlog.get_logger(__name__)

# Float ticks (e.g. 0.1s) accumulate rounding error; anything below this is zero
_EPSILON = 1e-9


class PhaseScheduler:
    """
    Owns the PhaseState of one session.

    Usage:
        scheduler = PhaseScheduler(transition_seconds=10)
        scheduler.start(config)
        transitions = scheduler.tick(1.0)
    """

    def __init__(self, transition_seconds: Optional[int] = None):
        """
        Initialize scheduler.

        Args:
            transition_seconds: Mask changeover duration between timed phases
                (defaults to training_config.phases.transition_seconds)
        """
        if transition_seconds is None:
            transition_seconds = training_config.phases.transition_seconds
        if transition_seconds < 0:
            raise InvalidConfigError(
                f"transition_seconds must be >= 0, got {transition_seconds}"
            )
        self.transition_seconds = transition_seconds

        self._config: Optional[SessionConfig] = None
        self._state: Optional[PhaseState] = None
        self.last_transition: Optional[PhaseTransition] = None

        # Consumed tick time, excluding paused periods
        self.elapsed_training_seconds = 0.0
        self.elapsed_total_seconds = 0.0
        self.elapsed_phase_seconds = 0.0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_started(self) -> bool:
        return self._state is not None

    @property
    def is_completed(self) -> bool:
        return self._state is not None and self._state.current_phase == Phase.COMPLETED

    @property
    def config(self) -> Optional[SessionConfig]:
        return self._config

    @property
    def state(self) -> PhaseState:
        """Copy of the current phase state."""
        return self._require_state().model_copy()

    @property
    def planned_training_seconds(self) -> int:
        """Altitude plus recovery time of the whole protocol (no transitions)."""
        config = self._require_config()
        return config.total_cycles * (
            config.hypoxic_duration_seconds + config.hyperoxic_duration_seconds
        )

    @property
    def planned_total_seconds(self) -> int:
        """Protocol length including every transition."""
        config = self._require_config()
        transitions = 2 * config.total_cycles - 1
        return self.planned_training_seconds + transitions * self.transition_seconds

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, config: SessionConfig) -> PhaseState:
        """
        Initialize cycle 1 in the ALTITUDE phase.

        Raises:
            InvalidConfigError: total_cycles < 1 or a duration <= 0
        """
        self.validate_config(config)

        self._config = config
        self._state = PhaseState(
            current_phase=Phase.ALTITUDE,
            current_cycle=1,
            phase_time_remaining_seconds=float(config.hypoxic_duration_seconds),
            is_paused=False,
            next_phase_after_transition=None,
        )
        self.last_transition = None
        self.elapsed_training_seconds = 0.0
        self.elapsed_total_seconds = 0.0
        self.elapsed_phase_seconds = 0.0

        log.info(
            "phase_scheduler_started",
            total_cycles=config.total_cycles,
            hypoxic_duration_seconds=config.hypoxic_duration_seconds,
            hyperoxic_duration_seconds=config.hyperoxic_duration_seconds,
            transition_seconds=self.transition_seconds,
        )
        return self.state

    def restore(self, config: SessionConfig, state: PhaseState) -> PhaseState:
        """
        Re-initialize from a recovery snapshot.

        Raises:
            InvalidConfigError: config invalid, or state inconsistent with it
        """
        self.validate_restorable(config, state)

        self._config = config
        self._state = state.model_copy()
        self.last_transition = None
        self.elapsed_phase_seconds = 0.0

        # Credit completed phases so completion rate stays meaningful
        finished_cycles = state.current_cycle - 1
        self.elapsed_training_seconds = float(
            finished_cycles
            * (config.hypoxic_duration_seconds + config.hyperoxic_duration_seconds)
        )
        if state.current_phase == Phase.RECOVERY or (
            state.current_phase == Phase.TRANSITION
            and state.next_phase_after_transition == Phase.RECOVERY
        ):
            self.elapsed_training_seconds += config.hypoxic_duration_seconds
        if state.current_phase in (Phase.ALTITUDE, Phase.RECOVERY):
            duration = self._phase_duration(state.current_phase)
            self.elapsed_training_seconds += max(
                0.0, duration - state.phase_time_remaining_seconds
            )
        self.elapsed_total_seconds = self.elapsed_training_seconds

        log.info(
            "phase_scheduler_restored",
            phase=state.current_phase.value,
            cycle=state.current_cycle,
            remaining=state.phase_time_remaining_seconds,
        )
        return self.state

    # ------------------------------------------------------------------
    # Driving the state machine
    # ------------------------------------------------------------------

    def tick(self, elapsed_seconds: float) -> List[PhaseTransition]:
        """
        Consume elapsed time, transitioning whenever a phase expires.

        Leftover time carries into the following phase, so one tick of N
        seconds is equivalent to N ticks of one second.

        Returns:
            Transitions that happened during this tick (possibly empty).
            Empty while paused or completed.
        """
        state = self._require_state()
        if elapsed_seconds < 0:
            raise ValueError(f"elapsed_seconds must be >= 0, got {elapsed_seconds}")

        if state.is_paused or state.current_phase == Phase.COMPLETED:
            return []

        transitions: List[PhaseTransition] = []
        remaining = float(elapsed_seconds)

        while state.current_phase != Phase.COMPLETED:
            consumed = min(remaining, state.phase_time_remaining_seconds)
            state.phase_time_remaining_seconds -= consumed
            remaining -= consumed
            self._record_consumed(state.current_phase, consumed)

            if state.phase_time_remaining_seconds > _EPSILON:
                break
            state.phase_time_remaining_seconds = 0.0
            transitions.append(self._advance(skipped=False))
            if remaining <= _EPSILON:
                break

        return transitions

    def skip(self) -> bool:
        """
        Force an immediate transition as if the phase timer had expired.

        Returns:
            False (and no state change) when paused or completed
        """
        state = self._require_state()
        if state.is_paused or state.current_phase == Phase.COMPLETED:
            return False

        self._advance(skipped=True)
        return True

    def pause(self) -> bool:
        """Stop consuming phase time. Returns False if already paused/completed."""
        state = self._require_state()
        if state.is_paused or state.current_phase == Phase.COMPLETED:
            return False
        state.is_paused = True
        return True

    def resume(self) -> bool:
        """Continue consuming phase time. Returns False if not paused."""
        state = self._require_state()
        if not state.is_paused:
            return False
        state.is_paused = False
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _advance(self, skipped: bool) -> PhaseTransition:
        state = self._require_state()
        config = self._require_config()
        from_phase = state.current_phase
        from_cycle = state.current_cycle

        if from_phase == Phase.TRANSITION:
            next_phase = state.next_phase_after_transition or Phase.ALTITUDE
            state.current_phase = next_phase
            state.next_phase_after_transition = None
            state.phase_time_remaining_seconds = float(self._phase_duration(next_phase))
        elif from_phase == Phase.ALTITUDE:
            self._enter_transition(Phase.RECOVERY)
        elif from_phase == Phase.RECOVERY:
            if state.current_cycle >= config.total_cycles:
                state.current_phase = Phase.COMPLETED
                state.next_phase_after_transition = None
                state.phase_time_remaining_seconds = 0.0
            else:
                state.current_cycle += 1
                self._enter_transition(Phase.ALTITUDE)

        self.elapsed_phase_seconds = 0.0
        transition = PhaseTransition(
            from_phase=from_phase,
            to_phase=state.current_phase,
            from_cycle=from_cycle,
            to_cycle=state.current_cycle,
            skipped=skipped,
        )
        self.last_transition = transition

        log.info(
            "phase_advanced",
            from_phase=from_phase.value,
            to_phase=state.current_phase.value,
            cycle=state.current_cycle,
            skipped=skipped,
        )
        return transition

    def _enter_transition(self, next_phase: Phase) -> None:
        state = self._require_state()
        if self.transition_seconds > 0:
            state.current_phase = Phase.TRANSITION
            state.next_phase_after_transition = next_phase
            state.phase_time_remaining_seconds = float(self.transition_seconds)
        else:
            state.current_phase = next_phase
            state.next_phase_after_transition = None
            state.phase_time_remaining_seconds = float(self._phase_duration(next_phase))

    def _phase_duration(self, phase: Phase) -> int:
        config = self._require_config()
        if phase == Phase.ALTITUDE:
            return config.hypoxic_duration_seconds
        if phase == Phase.RECOVERY:
            return config.hyperoxic_duration_seconds
        if phase == Phase.TRANSITION:
            return self.transition_seconds
        return 0

    def _record_consumed(self, phase: Phase, seconds: float) -> None:
        self.elapsed_total_seconds += seconds
        self.elapsed_phase_seconds += seconds
        if phase in (Phase.ALTITUDE, Phase.RECOVERY):
            self.elapsed_training_seconds += seconds

    @staticmethod
    def validate_config(config: SessionConfig) -> None:
        """Raise InvalidConfigError for non-positive cycles or durations."""
        if config.total_cycles < 1:
            raise InvalidConfigError(
                f"total_cycles must be >= 1, got {config.total_cycles}"
            )
        if config.hypoxic_duration_seconds <= 0:
            raise InvalidConfigError(
                f"hypoxic_duration_seconds must be > 0, got "
                f"{config.hypoxic_duration_seconds}"
            )
        if config.hyperoxic_duration_seconds <= 0:
            raise InvalidConfigError(
                f"hyperoxic_duration_seconds must be > 0, got "
                f"{config.hyperoxic_duration_seconds}"
            )

    @classmethod
    def validate_restorable(cls, config: SessionConfig, state: PhaseState) -> None:
        """Raise InvalidConfigError unless state can resume under config."""
        cls.validate_config(config)

        if state.current_cycle > config.total_cycles:
            raise InvalidConfigError(
                f"Snapshot cycle {state.current_cycle} exceeds total_cycles "
                f"{config.total_cycles}"
            )
        if state.current_phase == Phase.COMPLETED:
            raise InvalidConfigError("Cannot restore a completed session")
        if (state.current_phase == Phase.TRANSITION) != (
            state.next_phase_after_transition is not None
        ):
            raise InvalidConfigError(
                "next_phase_after_transition must be set exactly while in transition"
            )

    def _require_state(self) -> PhaseState:
        if self._state is None:
            raise NoActiveSessionError("Phase scheduler has not been started")
        return self._state

    def _require_config(self) -> SessionConfig:
        if self._config is None:
            raise NoActiveSessionError("Phase scheduler has not been started")
        return self._config
